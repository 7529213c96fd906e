# app/db/schemas/sale_schemas.py
from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field

from .common_schemas import PyObjectId, utcnow


# --- Enums ---
class SaleStatus(str, Enum):
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    REFUNDED = "refunded"


# Allowed forward moves. Anything else is rejected by the ledger.
ALLOWED_TRANSITIONS = {
    SaleStatus.PENDING: {SaleStatus.SUCCEEDED, SaleStatus.FAILED},
    SaleStatus.SUCCEEDED: {SaleStatus.REFUNDED},
    SaleStatus.FAILED: set(),
    SaleStatus.REFUNDED: set(),
}


def can_transition(current: SaleStatus, target: SaleStatus) -> bool:
    return target in ALLOWED_TRANSITIONS[SaleStatus(current)]


class PaymentProvider(str, Enum):
    STRIPE = "stripe"
    PAYPAL = "paypal"
    PAGARME = "pagarme"


class IntegrationChannel(str, Enum):
    ACCESS = "access"
    FACEBOOK = "facebook"
    TRACKING = "tracking"

    @property
    def flag_field(self) -> str:
        return f"integrations_{self.value}_sent"

    @property
    def sent_at_field(self) -> str:
        return f"integrations_{self.value}_sent_at"


# --- Subdocument Models ---
class SaleItem(BaseModel):
    """Line item, denormalized at time of sale."""
    product_id: Optional[str] = None
    name: str
    price_in_cents: int = Field(..., ge=0)
    compare_at_price_in_cents: Optional[int] = Field(None, ge=0)
    is_order_bump: bool = False
    custom_id: Optional[str] = None


# --- Main Document Model ---
class SaleDoc(BaseModel):
    """MongoDB document for one purchase attempt. `external_reference` is the idempotency key."""
    id: Optional[PyObjectId] = Field(None, alias="_id")
    external_reference: str
    owner_id: Optional[str] = None
    offer_id: Optional[str] = None
    provider: PaymentProvider
    ab_test_id: Optional[str] = None

    # Buyer
    customer_name: Optional[str] = None
    customer_email: Optional[str] = None
    customer_phone: Optional[str] = None
    buyer_identity_unresolved: bool = False

    # Attribution
    ip: Optional[str] = None
    country: Optional[str] = None
    user_agent: Optional[str] = None
    fbc: Optional[str] = None
    fbp: Optional[str] = None
    address_city: Optional[str] = None
    address_state: Optional[str] = None
    address_zip_code: Optional[str] = None
    address_country: Optional[str] = None
    utm_source: Optional[str] = None
    utm_medium: Optional[str] = None
    utm_campaign: Optional[str] = None
    utm_term: Optional[str] = None
    utm_content: Optional[str] = None

    # Money (minor units)
    total_amount_in_cents: int = Field(..., ge=0)
    platform_fee_in_cents: int = Field(0, ge=0)
    currency: str = "brl"

    status: SaleStatus = SaleStatus.PENDING
    failure_reason: Optional[str] = None
    failure_message: Optional[str] = None
    payment_method_type: Optional[str] = None
    wallet_type: Optional[str] = None

    is_upsell: bool = False
    parent_sale_id: Optional[str] = None
    items: List[SaleItem] = Field(default_factory=list)

    facebook_purchase_send_after: Optional[datetime] = None

    integrations_access_sent: bool = False
    integrations_access_sent_at: Optional[datetime] = None
    integrations_facebook_sent: bool = False
    integrations_facebook_sent_at: Optional[datetime] = None
    integrations_tracking_sent: bool = False
    integrations_tracking_sent_at: Optional[datetime] = None
    integrations_last_attempt: Optional[datetime] = None

    # Provider credential references, used to issue the one-click session
    provider_account_id: Optional[str] = None
    provider_customer_id: Optional[str] = None
    provider_payment_method_id: Optional[str] = None

    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    model_config = {
        "populate_by_name": True,
        "use_enum_values": True,
    }

    def channel_sent(self, channel: IntegrationChannel) -> bool:
        return bool(getattr(self, channel.flag_field))

    def missing_channels(self) -> List[IntegrationChannel]:
        return [c for c in IntegrationChannel if not self.channel_sent(c)]
