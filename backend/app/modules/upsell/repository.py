# app/modules/upsell/repository.py

from typing import Any, Dict, Optional

from motor.motor_asyncio import AsyncIOMotorCollection, AsyncIOMotorDatabase

from app.core.exceptions import RepositoryError
from app.core.logging_setup import logger
from app.db.mongo_client import UPSELL_SESSIONS
from app.db.schemas.upsell_schemas import UpsellSessionDoc


class UpsellSessionRepository:
    """Ephemeral one-click sessions. Mongo's TTL index on created_at removes expired ones."""
    _collection: AsyncIOMotorCollection

    def __init__(self, db: AsyncIOMotorDatabase):
        self._collection = db[UPSELL_SESSIONS]

    @staticmethod
    def _map_doc(doc: Optional[Dict[str, Any]]) -> Optional[UpsellSessionDoc]:
        return UpsellSessionDoc.model_validate(doc) if doc else None

    async def create(self, session: UpsellSessionDoc) -> UpsellSessionDoc:
        data = session.model_dump(by_alias=True, exclude={"id"})
        try:
            result = await self._collection.insert_one(data)
        except Exception as e:
            logger.bind(collection=UPSELL_SESSIONS).exception("Database error creating upsell session.")
            raise RepositoryError(f"Error creating upsell session: {e}") from e
        return session.model_copy(update={"id": str(result.inserted_id)})

    async def get(self, token: str) -> Optional[UpsellSessionDoc]:
        try:
            return self._map_doc(await self._collection.find_one({"token": token}))
        except Exception as e:
            logger.bind(collection=UPSELL_SESSIONS).exception("Database error reading upsell session.")
            raise RepositoryError(f"Error reading upsell session: {e}") from e

    async def delete(self, token: str) -> bool:
        try:
            result = await self._collection.delete_one({"token": token})
        except Exception as e:
            logger.bind(collection=UPSELL_SESSIONS).exception("Database error deleting upsell session.")
            raise RepositoryError(f"Error deleting upsell session: {e}") from e
        return result.deleted_count > 0

    async def take(self, token: str) -> Optional[UpsellSessionDoc]:
        """Atomically removes and returns the session. Only one caller ever gets it."""
        try:
            return self._map_doc(await self._collection.find_one_and_delete({"token": token}))
        except Exception as e:
            logger.bind(collection=UPSELL_SESSIONS).exception("Database error claiming upsell session.")
            raise RepositoryError(f"Error claiming upsell session: {e}") from e
