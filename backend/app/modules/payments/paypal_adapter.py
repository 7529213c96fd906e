# app/modules/payments/paypal_adapter.py
# Wallet processor. Signatures are verified by asking PayPal, and one-click
# upsells charge a vaulted payment source.

import json
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Dict, Mapping, Optional, Tuple

import httpx

from app.core.config import settings
from app.core.exceptions import ProviderAPIError, WebhookAuthenticationError
from app.core.logging_setup import logger
from app.db.schemas.offer_schemas import OwnerDoc
from app.db.schemas.sale_schemas import PaymentProvider
from app.db.schemas.upsell_schemas import UpsellSessionDoc
from app.modules.payments.base import BuyerProfile, ChargeResult
from app.modules.payments.commands import PaymentCommand, PaymentEventKind, fields_from_metadata, require_id
from app.modules.payments.exceptions import MalformedMetadataError, PaymentDeclinedError

REFERENCE_PREFIX = "PAYPAL_"
TRANSMISSION_HEADERS = {
    "auth_algo": "paypal-auth-algo",
    "cert_url": "paypal-cert-url",
    "transmission_id": "paypal-transmission-id",
    "transmission_sig": "paypal-transmission-sig",
    "transmission_time": "paypal-transmission-time",
}

_CAPTURE_EVENTS = {
    "PAYMENT.CAPTURE.COMPLETED": PaymentEventKind.SUCCEEDED,
    "PAYMENT.CAPTURE.DENIED": PaymentEventKind.FAILED,
    "PAYMENT.CAPTURE.REFUNDED": PaymentEventKind.REFUNDED,
}


def to_minor_units(value: Any) -> int:
    """PayPal amounts are decimal strings ("10.50")."""
    try:
        return int((Decimal(str(value)) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))
    except (InvalidOperation, TypeError) as e:
        raise MalformedMetadataError(f"Invalid PayPal amount: {value!r}") from e


def to_major_string(amount_in_cents: int) -> str:
    return f"{Decimal(amount_in_cents) / 100:.2f}"


CUSTOM_ID_MAX_LENGTH = 127
# Short keys for metadata we write ourselves; custom_id is capped at 127 characters
_COMPACT_KEYS = {
    "isUpsell": "u",
    "originalOfferSlug": "o",
    "parentSaleId": "p",
    "originalSessionToken": "t",
    "productName": "n",
}
_EXPANDED_KEYS = {short: key for key, short in _COMPACT_KEYS.items()}
# Dropped in this order when the payload does not fit
_OPTIONAL_COMPACT_KEYS = ("n", "t")


def compact_custom_id(metadata: Mapping[str, str]) -> str:
    """Packs upsell metadata into custom_id, dropping the least needed keys until it fits."""
    compact = {short: metadata[key] for key, short in _COMPACT_KEYS.items() if metadata.get(key)}
    encoded = json.dumps(compact, separators=(",", ":"))
    for short in _OPTIONAL_COMPACT_KEYS:
        if len(encoded) <= CUSTOM_ID_MAX_LENGTH:
            return encoded
        compact.pop(short, None)
        encoded = json.dumps(compact, separators=(",", ":"))
    if len(encoded) <= CUSTOM_ID_MAX_LENGTH:
        return encoded
    # A bare slug is still understood by parse_custom_id
    return (metadata.get("originalOfferSlug") or "")[:CUSTOM_ID_MAX_LENGTH]


def parse_custom_id(custom_id: Optional[str]) -> Dict[str, Any]:
    """custom_id holds the checkout metadata as JSON (full or compact keys), or just the offer slug."""
    if not custom_id:
        return {}
    try:
        parsed = json.loads(custom_id)
    except ValueError:
        return {"offerSlug": custom_id}
    if not isinstance(parsed, dict):
        return {"offerSlug": custom_id}
    return {_EXPANDED_KEYS.get(k, k): v for k, v in parsed.items()}


class PayPalClient:
    """Thin OAuth + REST wrapper over the shared httpx client."""

    def __init__(self, http: httpx.AsyncClient, base_url: str | None = None):
        self.http = http
        self.base_url = (base_url or settings.PAYPAL_API_URL).rstrip("/")

    async def access_token(self, client_id: str, client_secret: str) -> str:
        try:
            resp = await self.http.post(
                f"{self.base_url}/v1/oauth2/token",
                data={"grant_type": "client_credentials"},
                auth=(client_id, client_secret),
            )
            resp.raise_for_status()
            return resp.json()["access_token"]
        except (httpx.HTTPError, KeyError, ValueError) as e:
            raise ProviderAPIError("paypal", f"OAuth token request failed: {e}") from e

    async def post(self, token: str, path: str, payload: Dict[str, Any],
                   request_id: Optional[str] = None) -> Tuple[int, Dict[str, Any]]:
        headers = {"Authorization": f"Bearer {token}", "Content-Type": "application/json"}
        if request_id:
            # PayPal replays the original response for a repeated request id
            headers["PayPal-Request-Id"] = request_id
        try:
            resp = await self.http.post(f"{self.base_url}{path}", json=payload, headers=headers)
        except httpx.HTTPError as e:
            raise ProviderAPIError("paypal", f"POST {path} failed: {e}") from e
        try:
            body = resp.json() if resp.content else {}
        except ValueError:
            body = {}
        return resp.status_code, body


class PayPalWebhookAdapter:
    name = PaymentProvider.PAYPAL.value

    def __init__(self, client: PayPalClient, webhook_id: str | None = None,
                 client_id: str | None = None, client_secret: str | None = None):
        self.client = client
        self.webhook_id = webhook_id or settings.PAYPAL_WEBHOOK_ID
        self.client_id = client_id or settings.PAYPAL_CLIENT_ID
        self.client_secret = client_secret or settings.PAYPAL_CLIENT_SECRET

    async def verify(self, raw_body: bytes, headers: Mapping[str, str]) -> None:
        if settings.skip_webhook_verification:
            logger.warning("PayPal signature verification skipped (non-production escape hatch).")
            return
        transmission = {field: headers.get(header) for field, header in TRANSMISSION_HEADERS.items()}
        missing = [TRANSMISSION_HEADERS[f] for f, v in transmission.items() if not v]
        if missing:
            raise WebhookAuthenticationError(self.name, f"missing headers: {', '.join(missing)}")
        if not (self.webhook_id and self.client_id and self.client_secret):
            raise WebhookAuthenticationError(self.name, "verification credentials not configured")

        try:
            event = json.loads(raw_body)
            token = await self.client.access_token(self.client_id, self.client_secret)
            status_code, body = await self.client.post(
                token,
                "/v1/notifications/verify-webhook-signature",
                {**transmission, "webhook_id": self.webhook_id, "webhook_event": event},
            )
        except (ValueError, ProviderAPIError) as e:
            raise WebhookAuthenticationError(self.name, f"verification error: {e}") from e

        if status_code != 200 or body.get("verification_status") != "SUCCESS":
            raise WebhookAuthenticationError(self.name, f"verification_status={body.get('verification_status')}")

    def to_command(self, event: Dict[str, Any]) -> Optional[PaymentCommand]:
        event_type = event.get("event_type")
        resource = event.get("resource")
        if not isinstance(resource, dict):
            raise MalformedMetadataError(f"PayPal event {event.get('id')} has no resource")

        if event_type == "CHECKOUT.ORDER.APPROVED":
            return self._order_approved(event, resource)

        kind = _CAPTURE_EVENTS.get(event_type)
        if kind is None:
            return None

        order_id = (resource.get("supplementary_data") or {}).get("related_ids", {}).get("order_id")
        if kind == PaymentEventKind.REFUNDED:
            if not order_id:
                raise MalformedMetadataError(f"PayPal refund {resource.get('id')} has no related order id")
            return PaymentCommand(kind=kind, provider=PaymentProvider.PAYPAL,
                                  external_reference=f"{REFERENCE_PREFIX}{order_id}", event_id=event.get("id"))

        fields = fields_from_metadata(parse_custom_id(resource.get("custom_id")))
        amount = resource.get("amount") or {}
        if kind == PaymentEventKind.FAILED:
            reason = (resource.get("status_details") or {}).get("reason")
            fields["failure_reason"] = (reason or "payment_denied").lower()
            fields["failure_message"] = "PayPal payment denied"

        breakdown = resource.get("seller_receivable_breakdown") or {}
        fee = breakdown.get("platform_fees") or []
        return PaymentCommand(
            kind=kind,
            provider=PaymentProvider.PAYPAL,
            external_reference=f"{REFERENCE_PREFIX}{order_id or require_id(resource, self.name)}",
            event_id=event.get("id"),
            amount_in_cents=to_minor_units(amount["value"]) if amount.get("value") else None,
            currency=(amount.get("currency_code") or "").lower() or None,
            platform_fee_in_cents=sum(to_minor_units((f.get("amount") or {}).get("value", 0)) for f in fee),
            payment_method_type="paypal",
            **fields,
        )

    def _order_approved(self, event: Dict[str, Any], order: Dict[str, Any]) -> PaymentCommand:
        units = order.get("purchase_units") or [{}]
        unit = units[0]
        amount = unit.get("amount") or {}
        payer = order.get("payer") or {}
        name = payer.get("name") or {}
        fields = fields_from_metadata(parse_custom_id(unit.get("custom_id")))
        full_name = " ".join(p for p in (name.get("given_name"), name.get("surname")) if p)
        fields.setdefault("customer_name", full_name or None)
        fields.setdefault("customer_email", payer.get("email_address"))

        vault = (((order.get("payment_source") or {}).get("paypal") or {}).get("attributes") or {}).get("vault") or {}
        return PaymentCommand(
            kind=PaymentEventKind.CREATED,
            provider=PaymentProvider.PAYPAL,
            external_reference=f"{REFERENCE_PREFIX}{require_id(order, self.name)}",
            event_id=event.get("id"),
            amount_in_cents=to_minor_units(amount["value"]) if amount.get("value") else None,
            currency=(amount.get("currency_code") or "").lower() or None,
            payment_method_type="paypal",
            provider_payment_method_id=vault.get("id"),
            provider_customer_id=(vault.get("customer") or {}).get("id"),
            **fields,
        )


class PayPalGateway:
    name = PaymentProvider.PAYPAL.value

    def __init__(self, client: PayPalClient):
        self.client = client

    async def fetch_customer(self, command: PaymentCommand, owner: OwnerDoc) -> Optional[BuyerProfile]:
        # Payer details travel with the order event; there is no separate profile to read.
        return None

    async def enrich(self, command: PaymentCommand, owner: OwnerDoc) -> PaymentCommand:
        return command

    async def charge_off_session(self, session: UpsellSessionDoc, owner: OwnerDoc, amount_in_cents: int,
                                 currency: str, metadata: Dict[str, str], description: str) -> ChargeResult:
        if not (owner.paypal_client_id and owner.paypal_client_secret):
            raise ProviderAPIError(self.name, f"seller {owner.id} has no PayPal credentials")
        token = await self.client.access_token(owner.paypal_client_id, owner.paypal_client_secret)
        order_payload = {
            "intent": "CAPTURE",
            "purchase_units": [{
                "amount": {"currency_code": currency.upper(), "value": to_major_string(amount_in_cents)},
                "description": description[:127],
                "custom_id": compact_custom_id(metadata),
            }],
            "payment_source": {
                "paypal": {
                    "vault_id": session.payment_method_id,
                    "attributes": {"customer": {"id": session.customer_id}},
                }
            },
        }
        request_id = f"upsell_{session.token}"
        status_code, order = await self.client.post(token, "/v2/checkout/orders", order_payload, request_id)
        self._raise_for_charge(status_code, order)

        if order.get("status") == "APPROVED":
            status_code, order = await self.client.post(
                token, f"/v2/checkout/orders/{order['id']}/capture", {}, f"{request_id}_capture")
            self._raise_for_charge(status_code, order)

        if order.get("status") != "COMPLETED":
            raise PaymentDeclinedError("not_completed", "PayPal did not complete the charge.", order.get("status"))
        return ChargeResult(f"{REFERENCE_PREFIX}{order['id']}", amount_in_cents, currency)

    def _raise_for_charge(self, status_code: int, body: Dict[str, Any]) -> None:
        if status_code < 400:
            return
        details = (body.get("details") or [{}])[0]
        if status_code == 422:
            raise PaymentDeclinedError((details.get("issue") or "declined").lower(),
                                       details.get("description") or body.get("message") or "payment declined")
        raise ProviderAPIError(self.name, details.get("description") or body.get("message") or "unknown error", status_code)
