# app/modules/payments/commands.py
# Provider-neutral shape every inbound payment event is normalized into.

import json
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional

from pydantic import BaseModel, Field

from app.db.schemas.sale_schemas import PaymentProvider
from app.modules.payments.exceptions import MalformedMetadataError


class PaymentEventKind(str, Enum):
    CREATED = "created"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    REFUNDED = "refunded"


class PaymentCommand(BaseModel):
    kind: PaymentEventKind
    provider: PaymentProvider
    external_reference: str
    event_id: Optional[str] = None

    amount_in_cents: Optional[int] = Field(None, ge=0)
    currency: Optional[str] = None
    platform_fee_in_cents: int = Field(0, ge=0)

    # Routing
    offer_slug: Optional[str] = None
    is_upsell: bool = False
    selected_order_bumps: List[str] = Field(default_factory=list)
    upsell_product_name: Optional[str] = None
    upsell_session_token: Optional[str] = None
    parent_sale_id: Optional[str] = None
    ab_test_id: Optional[str] = None

    # Buyer
    customer_name: Optional[str] = None
    customer_email: Optional[str] = None
    customer_phone: Optional[str] = None

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

    payment_method_type: Optional[str] = None
    wallet_type: Optional[str] = None
    provider_account_id: Optional[str] = None
    provider_customer_id: Optional[str] = None
    provider_payment_method_id: Optional[str] = None

    failure_reason: Optional[str] = None
    failure_message: Optional[str] = None


_ATTRIBUTION_KEYS = {
    "customer_name": "customerName",
    "customer_email": "customerEmail",
    "customer_phone": "customerPhone",
    "ip": "ip",
    "country": "country",
    "user_agent": "userAgent",
    "fbc": "fbc",
    "fbp": "fbp",
    "address_city": "addressCity",
    "address_state": "addressState",
    "address_zip_code": "addressZipCode",
    "address_country": "addressCountry",
    "utm_source": "utm_source",
    "utm_medium": "utm_medium",
    "utm_campaign": "utm_campaign",
    "utm_term": "utm_term",
    "utm_content": "utm_content",
    "ab_test_id": "abTestId",
    "upsell_product_name": "productName",
    "upsell_session_token": "originalSessionToken",
    "parent_sale_id": "parentSaleId",
}


def _parse_bumps(raw: Any) -> List[str]:
    if raw in (None, ""):
        return []
    if isinstance(raw, list):
        return [str(b) for b in raw]
    try:
        parsed = json.loads(raw)
    except (TypeError, ValueError) as e:
        raise MalformedMetadataError(f"selectedOrderBumps is not valid JSON: {raw!r}") from e
    if not isinstance(parsed, list):
        raise MalformedMetadataError(f"selectedOrderBumps must be a JSON list: {raw!r}")
    return [str(b) for b in parsed]


def fields_from_metadata(metadata: Mapping[str, Any] | None) -> Dict[str, Any]:
    """
    Maps the checkout metadata convention (camelCase keys set by the checkout
    page on the provider object) to PaymentCommand fields. Empty strings are
    treated as absent.
    """
    metadata = metadata or {}
    fields: Dict[str, Any] = {
        "offer_slug": metadata.get("offerSlug") or metadata.get("originalOfferSlug") or None,
        "is_upsell": str(metadata.get("isUpsell", "")).lower() == "true",
        "selected_order_bumps": _parse_bumps(metadata.get("selectedOrderBumps")),
    }
    for field, key in _ATTRIBUTION_KEYS.items():
        value = metadata.get(key)
        if value not in (None, ""):
            fields[field] = str(value)
    return fields


def require_id(obj: Mapping[str, Any], provider: str) -> str:
    """The provider object's id. Without it the event cannot be keyed in the ledger."""
    value = obj.get("id")
    if not value:
        raise MalformedMetadataError(f"{provider} {obj.get('object') or 'object'} has no id")
    return str(value)
