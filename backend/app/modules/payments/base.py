# app/modules/payments/base.py
"""
Interfaces every payment provider integration implements.

A `WebhookAdapter` authenticates and normalizes inbound webhooks into a
PaymentCommand. A `ProviderGateway` makes the outbound calls reconciliation
and the one-click upsell need (customer profile lookup, off-session charge).
"""

from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional, Protocol

from app.db.schemas.offer_schemas import OwnerDoc
from app.db.schemas.upsell_schemas import UpsellSessionDoc
from app.modules.payments.commands import PaymentCommand


@dataclass
class BuyerProfile:
    name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None


@dataclass
class ChargeResult:
    external_reference: str
    amount_in_cents: int
    currency: str
    platform_fee_in_cents: int = 0


class WebhookAdapter(Protocol):
    name: str

    async def verify(self, raw_body: bytes, headers: Mapping[str, str]) -> None:
        """Raises WebhookAuthenticationError unless the request is authentic."""

    def to_command(self, event: Dict[str, Any]) -> Optional[PaymentCommand]:
        """Normalizes a parsed event. Returns None for event types the engine ignores."""


class ProviderGateway(Protocol):
    name: str

    async def fetch_customer(self, command: PaymentCommand, owner: OwnerDoc) -> Optional[BuyerProfile]:
        """Looks up the buyer on the provider side. Returns None when unavailable."""

    async def enrich(self, command: PaymentCommand, owner: OwnerDoc) -> PaymentCommand:
        """Fills provider-side details the webhook omits. Never raises."""

    async def charge_off_session(self, session: UpsellSessionDoc, owner: OwnerDoc, amount_in_cents: int,
                                 currency: str, metadata: Dict[str, str], description: str) -> ChargeResult:
        """Charges the stored payment method. Raises PaymentDeclinedError or ProviderAPIError."""
