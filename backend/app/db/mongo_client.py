# app/db/mongo_client.py
import asyncio
from typing import Callable, Optional

from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase
from pymongo import ASCENDING, DESCENDING, IndexModel

from app.core.config import settings
from app.core.logging_setup import logger

SALES = "sales"
OFFERS = "offers"
USERS = "users"
UPSELL_SESSIONS = "upsell_sessions"
CHECKOUT_METRICS = "checkout_metrics"


def reconnect_delay(attempt: int, max_delay: float) -> float:
    """Exponential backoff for reconnect attempt N (1-based): 1s, 2s, 4s... capped."""
    return min(2 ** (attempt - 1), max_delay)


def _redact(uri: str) -> str:
    return uri.split('@')[-1].split('/')[0] if '@' in uri else uri.split('//')[-1].split('/')[0]


class MongoConnection:
    """
    Owns the Motor client for the process.

    A watchdog task pings the server on an interval. When a ping fails it
    keeps probing with exponential backoff; after the configured number
    of failed attempts it calls `on_fatal` so the supervisor can exit the
    process and let the orchestrator restart it.
    """

    def __init__(self, uri: str | None = None, db_name: str | None = None,
                 on_fatal: Optional[Callable[[str], None]] = None,
                 client_factory: Callable[..., AsyncIOMotorClient] = AsyncIOMotorClient):
        self.uri = uri or settings.MONGODB_URI
        self.db_name = db_name or settings.MONGO_DB_NAME
        self.on_fatal = on_fatal
        self._client_factory = client_factory
        self._client: AsyncIOMotorClient | None = None
        self._db: AsyncIOMotorDatabase | None = None
        self._watchdog: asyncio.Task | None = None
        self._stop = asyncio.Event()
        self.healthy = False

    def _build_client(self) -> AsyncIOMotorClient:
        return self._client_factory(
            self.uri,
            maxPoolSize=settings.MONGO_MAX_POOL_SIZE,
            minPoolSize=settings.MONGO_MIN_POOL_SIZE,
            serverSelectionTimeoutMS=10000,
            socketTimeoutMS=45000,
            connectTimeoutMS=10000,
            heartbeatFrequencyMS=10000,
            maxIdleTimeMS=60000,
            retryWrites=True,
            retryReads=True,
            uuidRepresentation='standard',
        )

    async def connect(self) -> None:
        """Establishes the connection. Raises RuntimeError when the first ping fails."""
        if not self.db_name:
            logger.critical("FATAL: MONGO_DB_NAME could not be determined.")
            raise RuntimeError("MONGO_DB_NAME must be set or derivable from MONGODB_URI.")

        logger.info(f"Connecting to MongoDB: {_redact(self.uri)} / DB: {self.db_name}")
        try:
            self._client = self._build_client()
            self._db = self._client[self.db_name]
            await self._client.admin.command('ping')
            self.healthy = True
            logger.success(f"Connected to MongoDB database '{self.db_name}' successfully.")
        except Exception as e:
            logger.critical(f"FATAL: Failed to connect to MongoDB: {e}")
            self.close()
            raise RuntimeError(f"Failed to connect to MongoDB: {e}") from e

    @property
    def db(self) -> AsyncIOMotorDatabase:
        if self._db is None:
            raise RuntimeError("Database not connected. Ensure connect() was called successfully.")
        return self._db

    async def ping(self) -> bool:
        if self._client is None:
            return False
        try:
            await self._client.admin.command('ping')
            return True
        except Exception as e:
            logger.warning(f"MongoDB ping failed: {e}")
            return False

    async def ensure_indexes(self) -> None:
        db = self.db
        await db[SALES].create_indexes([
            IndexModel([("external_reference", ASCENDING)], unique=True, name="uniq_external_reference"),
            IndexModel([("status", ASCENDING), ("is_upsell", ASCENDING), ("facebook_purchase_send_after", ASCENDING)],
                       name="dispatch_poll"),
            IndexModel([("parent_sale_id", ASCENDING)], name="parent_sale"),
            IndexModel([("created_at", DESCENDING)], name="created_at_desc"),
        ])
        await db[UPSELL_SESSIONS].create_indexes([
            IndexModel([("token", ASCENDING)], unique=True, name="uniq_token"),
            IndexModel([("created_at", ASCENDING)], expireAfterSeconds=settings.UPSELL_SESSION_TTL_SECONDS,
                       name="session_ttl"),
        ])
        await db[CHECKOUT_METRICS].create_indexes([
            IndexModel([("offer_id", ASCENDING), ("type", ASCENDING), ("ip", ASCENDING), ("created_at", DESCENDING)],
                       name="metric_dedup"),
        ])
        await db[OFFERS].create_index("slug", unique=True, name="uniq_slug")
        logger.info("MongoDB indexes ensured.")

    # --- Watchdog ---

    def start_watchdog(self) -> None:
        if self._watchdog and not self._watchdog.done():
            return
        self._stop.clear()
        self._watchdog = asyncio.create_task(self._watch(), name="mongo-watchdog")

    async def stop_watchdog(self) -> None:
        self._stop.set()
        if self._watchdog:
            self._watchdog.cancel()
            try:
                await self._watchdog
            except asyncio.CancelledError:
                pass
            self._watchdog = None

    async def _watch(self) -> None:
        interval = settings.MONGO_HEALTHCHECK_INTERVAL_SECONDS
        while not self._stop.is_set():
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=interval)
                break
            except asyncio.TimeoutError:
                pass
            if await self.ping():
                self.healthy = True
                continue
            self.healthy = False
            logger.error("MongoDB connection lost. Starting reconnect.")
            if not await self.reconnect():
                return

    async def reconnect(self, sleep: Callable = asyncio.sleep) -> bool:
        """
        Waits for the server to come back, probing with backoff. The client
        object is kept so repositories holding collection handles stay valid;
        the driver re-establishes its own connections once the server answers.
        Returns False after exhausting attempts.
        """
        max_attempts = settings.MONGO_MAX_RECONNECT_ATTEMPTS
        for attempt in range(1, max_attempts + 1):
            delay = reconnect_delay(attempt, settings.MONGO_RECONNECT_MAX_DELAY_SECONDS)
            logger.warning(f"MongoDB reconnect attempt {attempt}/{max_attempts} in {delay:.0f}s")
            await sleep(delay)
            if await self.ping():
                self.healthy = True
                logger.success(f"MongoDB reconnected after {attempt} attempt(s).")
                return True
            logger.error(f"MongoDB reconnect attempt {attempt} failed.")

        logger.critical(f"MongoDB unreachable after {max_attempts} attempts.")
        if self.on_fatal:
            self.on_fatal("mongo_reconnect_exhausted")
        return False

    def close(self) -> None:
        if self._client:
            try:
                self._client.close()
            except Exception as e:
                logger.error(f"Error closing MongoDB connection: {e}")
        self._client = None
        self._db = None
        self.healthy = False

    async def shutdown(self) -> None:
        await self.stop_watchdog()
        logger.info("Closing MongoDB connection...")
        self.close()
        logger.info("MongoDB connection closed.")
