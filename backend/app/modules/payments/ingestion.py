# app/modules/payments/ingestion.py
# Raw provider webhook -> verified event -> PaymentCommand -> reconciliation,
# under the provider's concurrency limiter.

import json
from enum import Enum
from typing import Mapping, Optional

from app.core.concurrency import LimiterRegistry
from app.core.exceptions import DataError
from app.core.logging_setup import logger
from app.modules.payments.base import WebhookAdapter
from app.modules.payments.exceptions import MalformedMetadataError
from app.modules.sales.service import ReconciliationOutcome, ReconciliationService


class IngestionResult(str, Enum):
    PROCESSED = "processed"
    IGNORED = "ignored"            # event type the engine does not handle
    ACKNOWLEDGED = "acknowledged"  # permanent data problem, logged and not retried


class WebhookIngestionService:
    """
    Everything before and around reconciliation. Authentication failures,
    transient ledger errors and capacity errors propagate so the HTTP layer
    can map them; permanent data errors are acknowledged here.
    """

    def __init__(self, adapters: Mapping[str, WebhookAdapter], limiters: LimiterRegistry,
                 reconciliation: ReconciliationService):
        self.adapters = adapters
        self.limiters = limiters
        self.reconciliation = reconciliation

    async def handle(self, provider: str, raw_body: bytes, headers: Mapping[str, str]) -> IngestionResult:
        adapter = self.adapters[provider]
        log = logger.bind(provider=provider)
        normalized = {k.lower(): v for k, v in headers.items()}

        await adapter.verify(raw_body, normalized)

        try:
            event = json.loads(raw_body)
            if not isinstance(event, dict):
                raise MalformedMetadataError("Webhook body is not a JSON object")
            command = adapter.to_command(event)
        except (ValueError, DataError) as e:
            # json.JSONDecodeError and pydantic's ValidationError are ValueErrors
            log.error(f"Unusable {provider} webhook acknowledged: {e}")
            return IngestionResult.ACKNOWLEDGED

        if command is None:
            log.debug(f"Ignoring {provider} event type {event.get('type') or event.get('event_type')}.")
            return IngestionResult.IGNORED

        log = log.bind(external_reference=command.external_reference, event=command.kind.value)
        try:
            async with self.limiters.get(provider).permit():
                outcome: Optional[ReconciliationOutcome] = await self.reconciliation.apply(command)
        except DataError as e:
            log.error(f"Event acknowledged without a ledger change: {e}")
            return IngestionResult.ACKNOWLEDGED
        log.debug(f"Ingested with outcome {outcome.value}.")
        return IngestionResult.PROCESSED
