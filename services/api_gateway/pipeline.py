# services/api_gateway/pipeline.py
"""Webhook ingestion pipeline, independent of the HTTP framework.

One request walks a strictly sequential chain and stops at the first
failure::

    authenticate -> validate envelope -> duplicate check -> parse -> persist -> respond

The duplicate lookup is only a shortcut. The authoritative backstop is the
UNIQUE constraint on ``transactions.webhook_id``: a concurrent delivery that
loses the insert race is answered as ``duplicate`` as well. There is no
in-process lock; two workers (or two processes) may handle the same
delivery id at the same time and still produce one row.
"""
from __future__ import annotations

import hmac
import json
import logging
import time
import uuid
from dataclasses import dataclass
from typing import Optional, Protocol

from libs.errors import (
    AuthenticationError,
    ConfigurationError,
    DuplicateDeliveryError,
    EnvelopeError,
    ParseFailedError,
    StorageError,
    WebhookError,
)
from libs.models import FailureReason, ParsedFact, ParseFailureRecord, TransactionRecord
from libs.regexes import parse_sms
from libs.sentry import sentry_capture

from services.api_gateway.metrics import (
    DUPLICATES,
    PARSE_FAILURES,
    PROCESSING_TIME,
    WEBHOOK_REQUESTS,
)
from services.api_gateway.schemas import (
    EnvelopeRejected,
    IncomingEnvelope,
    WebhookResponse,
    validate_envelope,
)

logger = logging.getLogger(__name__)

BEARER_PREFIX = "Bearer "


class IngestionStore(Protocol):
    """Subset of :class:`db.gateway.PersistenceGateway` used by the pipeline."""

    async def find_transaction_by_delivery_id(self, delivery_id: str) -> Optional[TransactionRecord]: ...

    async def insert_transaction(
        self, fact: ParsedFact, *, raw_message: str, delivery_id: str
    ) -> TransactionRecord: ...

    async def insert_parse_failure(
        self, *, raw_message: str, reason: FailureReason, delivery_id: str
    ) -> ParseFailureRecord: ...


@dataclass(frozen=True)
class WebhookOutcome:
    http_status: int
    response: WebhookResponse
    category: Optional[str] = None  # None on success


class IngestionPipeline:
    def __init__(self, store: IngestionStore, *, webhook_secret: Optional[str]) -> None:
        self._store = store
        self._secret = webhook_secret

    # ------------------------------------------------------------------ entry
    async def handle(
        self,
        *,
        authorization: Optional[str],
        content_type: Optional[str],
        body: bytes,
    ) -> WebhookOutcome:
        """Run one delivery to its terminal outcome. Never raises."""
        started = time.perf_counter()
        delivery_id: Optional[str] = None
        try:
            self._authenticate(authorization)
            envelope = self._decode_envelope(content_type, body)
            delivery_id = envelope.delivery_id
            outcome = await self._ingest(envelope)
        except WebhookError as exc:
            outcome = WebhookOutcome(
                http_status=exc.http_status,
                response=WebhookResponse(status="error", error=exc.message, webhook_id=delivery_id),
                category=exc.category,
            )
            if exc.http_status >= 500:
                sentry_capture(exc, extras={"webhook_id": delivery_id}, tags={"category": exc.category})
        except Exception as exc:  # noqa: BLE001
            logger.exception("Unhandled error while processing webhook %s", delivery_id)
            sentry_capture(exc, extras={"webhook_id": delivery_id})
            outcome = WebhookOutcome(
                http_status=500,
                response=WebhookResponse(
                    status="error", error="Internal server error", webhook_id=delivery_id
                ),
                category="internal",
            )

        self._report(outcome, delivery_id, time.perf_counter() - started)
        return outcome

    # ------------------------------------------------------------------ steps
    def _authenticate(self, authorization: Optional[str]) -> None:
        if not self._secret:
            raise ConfigurationError()
        if not authorization or not authorization.startswith(BEARER_PREFIX):
            raise AuthenticationError(
                "Missing or invalid authorization header", category="missing_credentials"
            )
        token = authorization[len(BEARER_PREFIX):]
        if not hmac.compare_digest(token.encode("utf-8"), self._secret.encode("utf-8")):
            raise AuthenticationError("Invalid webhook token", category="invalid_credentials")

    def _decode_envelope(self, content_type: Optional[str], body: bytes) -> IncomingEnvelope:
        if not content_type or "application/json" not in content_type.lower():
            raise EnvelopeError("Content-Type must be application/json", category="content_type")
        try:
            raw = json.loads(body)
        except ValueError as exc:  # JSONDecodeError, UnicodeDecodeError
            raise EnvelopeError("Invalid JSON payload", category="invalid_json") from exc

        result = validate_envelope(raw)
        if isinstance(result, EnvelopeRejected):
            logger.debug("Envelope rejected: %s", result.reason)
            raise EnvelopeError("Invalid webhook payload format", category="invalid_payload")
        return result

    async def _ingest(self, envelope: IncomingEnvelope) -> WebhookOutcome:
        delivery_id = envelope.delivery_id

        existing = await self._store.find_transaction_by_delivery_id(delivery_id)
        if existing is not None:
            DUPLICATES.labels(path="lookup").inc()
            logger.info("Delivery %s already stored as %s (lookup)", delivery_id, existing.id)
            return self._duplicate(delivery_id, existing.id)

        fact = parse_sms(envelope.message)
        if not fact.success:
            PARSE_FAILURES.labels(reason=fact.failure_reason.value).inc()
            await self._save_parse_failure(envelope, fact.failure_reason)
            raise ParseFailedError(fact.failure_reason)

        try:
            record = await self._store.insert_transaction(
                fact, raw_message=envelope.message, delivery_id=delivery_id
            )
        except DuplicateDeliveryError as dup:
            DUPLICATES.labels(path="constraint").inc()
            logger.info(
                "Delivery %s lost the insert race to %s (constraint)",
                delivery_id,
                dup.transaction_id,
            )
            return self._duplicate(delivery_id, dup.transaction_id)

        return WebhookOutcome(
            http_status=200,
            response=WebhookResponse(
                status="processed", transaction_id=str(record.id), webhook_id=delivery_id
            ),
        )

    async def _save_parse_failure(self, envelope: IncomingEnvelope, reason: FailureReason) -> None:
        """Best effort: losing the failure record must not change the answer."""
        try:
            await self._store.insert_parse_failure(
                raw_message=envelope.message, reason=reason, delivery_id=envelope.delivery_id
            )
        except StorageError as exc:
            logger.error(
                "Could not store parse failure for %s (%s): %s",
                envelope.delivery_id,
                reason.value,
                exc,
            )
            sentry_capture(
                exc, extras={"webhook_id": envelope.delivery_id}, tags={"reason": reason.value}
            )

    @staticmethod
    def _duplicate(delivery_id: str, transaction_id: uuid.UUID) -> WebhookOutcome:
        return WebhookOutcome(
            http_status=200,
            response=WebhookResponse(
                status="duplicate", transaction_id=str(transaction_id), webhook_id=delivery_id
            ),
        )

    # -------------------------------------------------------------- reporting
    @staticmethod
    def _report(outcome: WebhookOutcome, delivery_id: Optional[str], elapsed: float) -> None:
        status = outcome.response.status
        WEBHOOK_REQUESTS.labels(status=status, category=outcome.category or "none").inc()
        PROCESSING_TIME.observe(elapsed)

        elapsed_ms = elapsed * 1000
        if outcome.category is None:
            logger.info(
                "Webhook %s %s in %.1fms (transaction %s)",
                delivery_id,
                status,
                elapsed_ms,
                outcome.response.transaction_id,
            )
        elif outcome.http_status >= 500:
            logger.error(
                "Webhook %s failed after %.1fms: [%s] %s",
                delivery_id,
                elapsed_ms,
                outcome.category,
                outcome.response.error,
            )
        else:
            logger.warning(
                "Webhook %s rejected after %.1fms: [%s] %s",
                delivery_id,
                elapsed_ms,
                outcome.category,
                outcome.response.error,
            )
