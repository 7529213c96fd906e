# app/modules/offers/repository.py
# Read-only lookups for offers and their sellers.

from typing import Any, Dict, Optional

from motor.motor_asyncio import AsyncIOMotorCollection, AsyncIOMotorDatabase

from app.core.exceptions import RepositoryError
from app.core.logging_setup import logger
from app.db.mongo_client import OFFERS, USERS
from app.db.schemas.common_schemas import to_object_id
from app.db.schemas.offer_schemas import OfferDoc, OwnerDoc


class OfferRepository:
    _offers: AsyncIOMotorCollection
    _owners: AsyncIOMotorCollection

    def __init__(self, db: AsyncIOMotorDatabase):
        self._offers = db[OFFERS]
        self._owners = db[USERS]

    @staticmethod
    def _map_offer(doc: Optional[Dict[str, Any]]) -> Optional[OfferDoc]:
        if not doc:
            return None
        try:
            return OfferDoc.model_validate(doc)
        except Exception as e:
            logger.error(f"Failed to map document to OfferDoc: _id={doc.get('_id')}, Error={e}")
            return None

    async def get_by_slug(self, slug: str) -> Optional[OfferDoc]:
        try:
            return self._map_offer(await self._offers.find_one({"slug": slug}))
        except Exception as e:
            logger.bind(collection=OFFERS, slug=slug).exception("Database error finding offer by slug.")
            raise RepositoryError(f"Error fetching offer by slug: {e}") from e

    async def get_by_id(self, offer_id: str) -> Optional[OfferDoc]:
        oid = to_object_id(offer_id)
        if oid is None:
            return None
        try:
            return self._map_offer(await self._offers.find_one({"_id": oid}))
        except Exception as e:
            logger.bind(collection=OFFERS, offer_id=offer_id).exception("Database error finding offer by ID.")
            raise RepositoryError(f"Error fetching offer by ID: {e}") from e

    async def get_owner(self, owner_id: str) -> Optional[OwnerDoc]:
        oid = to_object_id(owner_id)
        if oid is None:
            return None
        try:
            doc = await self._owners.find_one({"_id": oid})
        except Exception as e:
            logger.bind(collection=USERS, owner_id=owner_id).exception("Database error finding seller.")
            raise RepositoryError(f"Error fetching seller: {e}") from e
        return OwnerDoc.model_validate(doc) if doc else None
