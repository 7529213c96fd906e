# app/modules/sales/repository.py
# Sale ledger. Every write is a single-document atomic operation keyed on
# the unique `external_reference` index.

from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Tuple

from bson import ObjectId
from motor.motor_asyncio import AsyncIOMotorCollection, AsyncIOMotorDatabase
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

from app.core.exceptions import RepositoryError
from app.core.logging_setup import logger
from app.db.mongo_client import SALES
from app.db.schemas.common_schemas import to_object_id, utcnow
from app.db.schemas.sale_schemas import IntegrationChannel, SaleDoc, SaleStatus, can_transition


class SaleRepository:
    """Repository for Sale data operations."""
    _collection: AsyncIOMotorCollection

    def __init__(self, db: AsyncIOMotorDatabase):
        self._collection = db[SALES]
        logger.debug("SaleRepository initialized.")

    def _map_doc(self, doc: Optional[Dict[str, Any]]) -> Optional[SaleDoc]:
        """Maps MongoDB document to SaleDoc Pydantic model."""
        if doc:
            try:
                return SaleDoc.model_validate(doc)
            except Exception as e:
                logger.error(f"Failed to map document to SaleDoc: _id={doc.get('_id')}, Error={e}")
                return None
        return None

    def _map_many(self, docs: Iterable[Dict[str, Any]]) -> List[SaleDoc]:
        mapped = [self._map_doc(d) for d in docs]
        return [m for m in mapped if m is not None]

    async def get_by_reference(self, external_reference: str) -> Optional[SaleDoc]:
        log = logger.bind(collection=SALES, external_reference=external_reference)
        try:
            doc = await self._collection.find_one({"external_reference": external_reference})
            return self._map_doc(doc)
        except Exception as e:
            log.exception("Database error finding sale by reference.")
            raise RepositoryError(f"Error fetching sale by reference: {e}") from e

    async def get_by_id(self, sale_id: str) -> Optional[SaleDoc]:
        oid = to_object_id(sale_id)
        if oid is None:
            logger.warning(f"Invalid ObjectId format provided: {sale_id}")
            return None
        try:
            doc = await self._collection.find_one({"_id": oid})
            return self._map_doc(doc)
        except Exception as e:
            logger.bind(collection=SALES, sale_id=sale_id).exception("Database error finding sale by ID.")
            raise RepositoryError(f"Error fetching sale by ID: {e}") from e

    async def create_if_absent(self, sale: SaleDoc) -> Tuple[SaleDoc, bool]:
        """
        Inserts `sale` unless a row with the same external_reference exists.

        Returns (stored_sale, created). Uses an upsert with $setOnInsert so two
        concurrent deliveries cannot both insert; the loser of a racing upsert
        gets DuplicateKeyError and re-reads the winner's row.
        """
        log = logger.bind(collection=SALES, action="create_if_absent", external_reference=sale.external_reference)
        new_id = ObjectId()
        data = sale.model_dump(by_alias=True, exclude={"id"}, mode="python")
        data["_id"] = new_id
        try:
            doc = await self._collection.find_one_and_update(
                {"external_reference": sale.external_reference},
                {"$setOnInsert": data},
                upsert=True,
                return_document=ReturnDocument.AFTER,
            )
        except DuplicateKeyError:
            log.info("Concurrent insert detected. Re-reading existing sale.")
            existing = await self.get_by_reference(sale.external_reference)
            if existing is None:
                raise RepositoryError(f"Sale {sale.external_reference} vanished after duplicate key error.")
            return existing, False
        except Exception as e:
            log.exception("Database error creating sale document.")
            raise RepositoryError(f"Error creating sale: {e}") from e

        stored = self._map_doc(doc)
        if stored is None:
            raise RepositoryError(f"Stored sale {sale.external_reference} could not be mapped.")
        created = doc["_id"] == new_id
        if created:
            log.info(f"Sale document created with ID: {new_id} (status={stored.status})")
        return stored, created

    async def transition(
        self,
        external_reference: str,
        from_statuses: Iterable[SaleStatus],
        to_status: SaleStatus,
        fields: Optional[Dict[str, Any]] = None,
    ) -> Optional[SaleDoc]:
        """
        Moves a sale to `to_status` only if it is currently in one of `from_statuses`.
        Returns the updated sale, or None when no row matched (missing or already moved).
        """
        from_statuses = list(from_statuses)
        if not all(can_transition(s, to_status) for s in from_statuses):
            raise ValueError(f"Illegal sale transition to {to_status.value} from {[s.value for s in from_statuses]}")
        log = logger.bind(collection=SALES, external_reference=external_reference, new_status=to_status.value)
        update = dict(fields or {})
        update["status"] = to_status.value
        update["updated_at"] = utcnow()
        try:
            doc = await self._collection.find_one_and_update(
                {"external_reference": external_reference, "status": {"$in": [s.value for s in from_statuses]}},
                {"$set": update},
                return_document=ReturnDocument.AFTER,
            )
        except Exception as e:
            log.exception("Database error updating sale status.")
            raise RepositoryError(f"Error updating sale status: {e}") from e
        if doc:
            log.info("Sale status updated.")
        return self._map_doc(doc)

    async def _update_many(self, sale_ids: List[str], fields: Dict[str, Any]) -> int:
        oids = [oid for oid in (to_object_id(s) for s in sale_ids) if oid is not None]
        if not oids:
            return 0
        update = dict(fields)
        update["updated_at"] = utcnow()
        try:
            result = await self._collection.update_many({"_id": {"$in": oids}}, {"$set": update})
            return result.modified_count
        except Exception as e:
            logger.bind(collection=SALES, sale_ids=sale_ids).exception("Database error updating sales.")
            raise RepositoryError(f"Error updating sales: {e}") from e

    async def mark_channels(self, sale_ids: List[str], delivered: Dict[IntegrationChannel, bool],
                            attempted_at: Optional[datetime] = None) -> int:
        """Sets the sent flag and timestamp for every delivered channel plus the last-attempt time."""
        now = attempted_at or utcnow()
        fields: Dict[str, Any] = {"integrations_last_attempt": now}
        for channel, ok in delivered.items():
            if ok:
                fields[channel.flag_field] = True
                fields[channel.sent_at_field] = now
        return await self._update_many(sale_ids, fields)

    async def find_due_for_dispatch(self, now: datetime, limit: int) -> List[SaleDoc]:
        """Non-upsell succeeded sales whose consolidated event is due and not yet sent."""
        query = {
            "status": SaleStatus.SUCCEEDED.value,
            "is_upsell": False,
            "facebook_purchase_send_after": {"$lte": now},
            "integrations_facebook_sent": {"$ne": True},
        }
        try:
            cursor = self._collection.find(query).sort("facebook_purchase_send_after", 1).limit(limit)
            return self._map_many(await cursor.to_list(length=limit))
        except Exception as e:
            logger.bind(collection=SALES).exception("Database error selecting sales for dispatch.")
            raise RepositoryError(f"Error selecting sales for dispatch: {e}") from e

    async def find_unsent_upsells(self, created_before: datetime, limit: int) -> List[SaleDoc]:
        """Succeeded upsells whose conversion is still unsent, oldest first."""
        query = {
            "status": SaleStatus.SUCCEEDED.value,
            "is_upsell": True,
            "integrations_facebook_sent": {"$ne": True},
            "created_at": {"$lte": created_before},
        }
        try:
            cursor = self._collection.find(query).sort("created_at", 1).limit(limit)
            return self._map_many(await cursor.to_list(length=limit))
        except Exception as e:
            logger.bind(collection=SALES).exception("Database error selecting unsent upsells.")
            raise RepositoryError(f"Error selecting unsent upsells: {e}") from e

    async def find_children(self, parent_sale_id: str) -> List[SaleDoc]:
        """Succeeded upsell sales linked to `parent_sale_id`, oldest first."""
        query = {"parent_sale_id": parent_sale_id, "status": SaleStatus.SUCCEEDED.value, "is_upsell": True}
        try:
            cursor = self._collection.find(query).sort("created_at", 1)
            return self._map_many(await cursor.to_list(length=None))
        except Exception as e:
            logger.bind(collection=SALES, parent_sale_id=parent_sale_id).exception("Database error loading child sales.")
            raise RepositoryError(f"Error loading child sales: {e}") from e

    @staticmethod
    def missing_integrations_query(date_from: Optional[datetime] = None,
                                   date_to: Optional[datetime] = None) -> Dict[str, Any]:
        query: Dict[str, Any] = {
            "status": SaleStatus.SUCCEEDED.value,
            "$or": [{c.flag_field: {"$ne": True}} for c in IntegrationChannel],
        }
        created: Dict[str, Any] = {}
        if date_from:
            created["$gte"] = date_from
        if date_to:
            created["$lte"] = date_to
        if created:
            query["created_at"] = created
        return query

    async def find_missing_integrations(self, limit: int, date_from: Optional[datetime] = None,
                                        date_to: Optional[datetime] = None) -> List[SaleDoc]:
        """Succeeded sales with at least one unset integration flag, newest first."""
        query = self.missing_integrations_query(date_from, date_to)
        try:
            cursor = self._collection.find(query).sort("created_at", -1).limit(limit)
            return self._map_many(await cursor.to_list(length=limit))
        except Exception as e:
            logger.bind(collection=SALES).exception("Database error scanning integration backlog.")
            raise RepositoryError(f"Error scanning integration backlog: {e}") from e

    async def count_missing_by_channel(self, date_from: Optional[datetime] = None,
                                       date_to: Optional[datetime] = None) -> Dict[str, int]:
        base = self.missing_integrations_query(date_from, date_to)
        base.pop("$or")
        counts: Dict[str, int] = {}
        try:
            for channel in IntegrationChannel:
                counts[channel.value] = await self._collection.count_documents(
                    {**base, channel.flag_field: {"$ne": True}}
                )
        except Exception as e:
            raise RepositoryError(f"Error counting integration backlog: {e}") from e
        return counts
