# app/db/schemas/upsell_schemas.py
from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field

from .common_schemas import PyObjectId, utcnow
from .sale_schemas import PaymentProvider


class UpsellSessionDoc(BaseModel):
    """Single-use capability to charge a stored payment method. Expires by TTL index on created_at."""
    id: Optional[PyObjectId] = Field(None, alias="_id")
    token: str
    provider: PaymentProvider
    account_id: Optional[str] = None
    customer_id: Optional[str] = None
    payment_method_id: str
    offer_id: str
    original_sale_id: str

    customer_name: Optional[str] = None
    customer_email: Optional[str] = None
    customer_phone: Optional[str] = None
    ip: Optional[str] = None
    utm_source: Optional[str] = None
    utm_medium: Optional[str] = None
    utm_campaign: Optional[str] = None
    utm_term: Optional[str] = None
    utm_content: Optional[str] = None

    created_at: datetime = Field(default_factory=utcnow)

    model_config = {"populate_by_name": True, "use_enum_values": True}


# --- API payloads ---
class UpsellTokenRequest(BaseModel):
    external_reference: str
    offer_slug: str


class UpsellTokenResponse(BaseModel):
    token: Optional[str] = None
    redirect_url: Optional[str] = None


class UpsellAcceptRequest(BaseModel):
    token: str
    chosen_item_id: Optional[str] = None
    offer_id: Optional[str] = None  # lets a not-found session still get the fallback link


class UpsellRefuseRequest(BaseModel):
    token: Optional[str] = None
    offer_id: Optional[str] = None


class UpsellOutcome(BaseModel):
    success: bool
    redirect_url: Optional[str] = None
    reason: Optional[str] = None
    message: Optional[str] = None
    status: Optional[str] = None
