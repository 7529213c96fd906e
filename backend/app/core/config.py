# app/core/config.py
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field, model_validator
from pathlib import Path
from loguru import logger
from typing import Optional, List

# --- Constants ---
DEFAULT_DB_NAME = "checkout_db"
PRODUCTION = "production"


class Settings(BaseSettings):
    # --- Core App Settings ---
    APP_NAME: str = "Checkout Payment Engine"
    API_V1_PREFIX: str = "/api/v1"
    LOG_LEVEL: str = "INFO"
    ENVIRONMENT: str = "development"  # "production" disables the verification escape hatch
    HOST: str = "0.0.0.0"
    PORT: int = 4242
    RELOAD: bool = False
    FRONTEND_URL: str = "https://pay.snappcheckout.com"

    # --- CORS ---
    ALLOWED_ORIGINS: List[str] = Field(["*"], description="List of allowed CORS origins.")
    GLOBAL_RATE_LIMIT: str = "400/15minutes"

    # --- Database (MongoDB) ---
    MONGODB_URI: str = Field("mongodb://localhost:27017/checkout_db", description="MongoDB connection string")
    MONGO_DB_NAME: Optional[str] = None  # Derived from URI if not set
    MONGO_MAX_POOL_SIZE: int = 50
    MONGO_MIN_POOL_SIZE: int = 5
    MONGO_MAX_RECONNECT_ATTEMPTS: int = 10
    MONGO_RECONNECT_MAX_DELAY_SECONDS: float = 30.0
    MONGO_HEALTHCHECK_INTERVAL_SECONDS: float = 10.0

    # --- Payment Providers ---
    STRIPE_SECRET_KEY: Optional[str] = None
    STRIPE_WEBHOOK_SECRET: Optional[str] = None
    STRIPE_SIGNATURE_TOLERANCE_SECONDS: int = 300
    PAYPAL_API_URL: str = "https://api-m.sandbox.paypal.com"
    PAYPAL_CLIENT_ID: Optional[str] = None
    PAYPAL_CLIENT_SECRET: Optional[str] = None
    PAYPAL_WEBHOOK_ID: Optional[str] = None
    PAGARME_WEBHOOK_SECRET: Optional[str] = None
    WEBHOOK_VERIFICATION_DISABLED: bool = False  # Only honoured outside production

    # --- Concurrency Limiter (per provider channel) ---
    WEBHOOK_CONCURRENCY_LIMIT: int = 10
    WEBHOOK_QUEUE_LIMIT: int = 100
    WEBHOOK_ACQUIRE_TIMEOUT_SECONDS: float = 25.0

    # --- Ledger ---
    LEDGER_WRITE_RETRIES: int = 3
    LEDGER_WRITE_BACKOFF_SECONDS: float = 0.2
    PLACEHOLDER_CUSTOMER_NAME: str = "Unidentified Customer"
    PLACEHOLDER_CUSTOMER_EMAIL: str = "email@not.informed"
    DEFAULT_COUNTRY: str = "BR"
    DEFAULT_CURRENCY: str = "brl"

    # --- Upsell Sessions ---
    UPSELL_SESSION_TTL_SECONDS: int = 1800
    UPSELL_MIN_PRICE_IN_CENTS: int = 50
    UPSELL_PLATFORM_FEE_RATE: float = 0.05

    # --- Consolidated Dispatch Job ---
    DISPATCH_ENABLED: bool = True
    DISPATCH_INTERVAL_SECONDS: float = 60.0
    DISPATCH_BATCH_SIZE: int = 50
    FACEBOOK_PURCHASE_DELAY_SECONDS: int = 600
    FACEBOOK_GRAPH_API_URL: str = "https://graph.facebook.com/v19.0"
    FACEBOOK_TEST_EVENT_CODE: Optional[str] = None

    # --- Outbound HTTP ---
    HTTP_TIMEOUT_SECONDS: float = 30.0
    FACEBOOK_TIMEOUT_SECONDS: float = 15.0

    # --- Metrics ---
    VIEW_DEDUP_WINDOW_HOURS: int = 24

    # --- Process Supervision ---
    FAILURE_CASCADE_THRESHOLD: int = 10
    FAILURE_CASCADE_WINDOW_SECONDS: float = 60.0
    SHUTDOWN_TIMEOUT_SECONDS: float = 30.0
    DISPATCH_STOP_TIMEOUT_SECONDS: float = 10.0

    # --- Health ---
    HEALTH_MAX_RSS_MB: int = 1500
    HEALTH_MAX_LOOP_LAG_MS: int = 5000

    model_config = SettingsConfigDict(
        env_file=str(Path.cwd() / ".env"),  # Single .env file at the root
        env_file_encoding="utf-8",
        extra="ignore",
        case_sensitive=False,
    )

    @model_validator(mode='after')
    def process_and_validate(self) -> 'Settings':
        # Derive DB name if needed
        if self.MONGO_DB_NAME is None and self.MONGODB_URI:
            db_name = self.MONGODB_URI.rsplit('/', 1)[-1].split('?')[0] if self.MONGODB_URI.count('/') >= 3 else ""
            self.MONGO_DB_NAME = db_name or DEFAULT_DB_NAME

        if isinstance(self.ALLOWED_ORIGINS, str):
            self.ALLOWED_ORIGINS = [o.strip() for o in self.ALLOWED_ORIGINS.split(',') if o.strip()]

        if self.WEBHOOK_CONCURRENCY_LIMIT < 1:
            raise ValueError("WEBHOOK_CONCURRENCY_LIMIT must be at least 1.")
        if self.WEBHOOK_QUEUE_LIMIT < 0:
            raise ValueError("WEBHOOK_QUEUE_LIMIT cannot be negative.")
        if self.LEDGER_WRITE_RETRIES < 1:
            raise ValueError("LEDGER_WRITE_RETRIES must be at least 1.")

        if self.is_production and self.WEBHOOK_VERIFICATION_DISABLED:
            logger.warning("WEBHOOK_VERIFICATION_DISABLED is ignored in production.")
            self.WEBHOOK_VERIFICATION_DISABLED = False

        return self

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT.lower() == PRODUCTION

    @property
    def skip_webhook_verification(self) -> bool:
        return self.WEBHOOK_VERIFICATION_DISABLED and not self.is_production


# --- Global Settings Instance ---
try:
    settings = Settings()
    logger.info(f"Settings loaded for {settings.APP_NAME} ({settings.ENVIRONMENT})")
    logger.info(f"MongoDB DB: {settings.MONGO_DB_NAME}")
    logger.info(f"Webhook concurrency: {settings.WEBHOOK_CONCURRENCY_LIMIT} permits, queue {settings.WEBHOOK_QUEUE_LIMIT}")
    if settings.skip_webhook_verification:
        logger.warning("Webhook signature verification is DISABLED (non-production only).")
except ValueError as e:
    logger.critical(f"CONFIGURATION ERROR: {e}")
    import sys
    sys.exit(f"Configuration Error: {e}")
