# app/modules/metrics/repository.py

from datetime import datetime
from typing import Optional

from motor.motor_asyncio import AsyncIOMotorCollection, AsyncIOMotorDatabase

from app.core.exceptions import RepositoryError
from app.core.logging_setup import logger
from app.db.mongo_client import CHECKOUT_METRICS
from app.db.schemas.metric_schemas import CheckoutMetricDoc, MetricType


class CheckoutMetricRepository:
    """Insert-only funnel events."""
    _collection: AsyncIOMotorCollection

    def __init__(self, db: AsyncIOMotorDatabase):
        self._collection = db[CHECKOUT_METRICS]

    async def insert(self, metric: CheckoutMetricDoc) -> None:
        try:
            await self._collection.insert_one(metric.model_dump())
        except Exception as e:
            logger.bind(collection=CHECKOUT_METRICS, offer_id=metric.offer_id).exception("Database error recording metric.")
            raise RepositoryError(f"Error recording metric: {e}") from e

    async def exists_since(self, offer_id: str, metric_type: MetricType, ip: Optional[str], since: datetime) -> bool:
        query = {"offer_id": offer_id, "type": metric_type.value, "ip": ip, "created_at": {"$gte": since}}
        try:
            return await self._collection.find_one(query, projection={"_id": 1}) is not None
        except Exception as e:
            raise RepositoryError(f"Error checking metric dedup: {e}") from e
