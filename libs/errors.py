# libs/errors.py
"""Error taxonomy of the ingestion path.

Every failure that can end a webhook request is a :class:`WebhookError`
subclass carrying the HTTP status, a machine-readable *category* (used in
logs and metrics) and the human message that goes into the ``error`` field
of the response.
"""
from __future__ import annotations

import uuid
from typing import Optional

from libs.models import FailureReason

__all__ = [
    "WebhookError",
    "ConfigurationError",
    "AuthenticationError",
    "EnvelopeError",
    "ParseFailedError",
    "StorageError",
    "DuplicateDeliveryError",
]


class WebhookError(Exception):
    http_status: int = 500
    category: str = "internal"

    def __init__(self, message: str, *, category: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        if category is not None:
            self.category = category


class ConfigurationError(WebhookError):
    http_status = 500
    category = "configuration"

    def __init__(self, message: str = "Server configuration error") -> None:
        super().__init__(message)


class AuthenticationError(WebhookError):
    """``missing_credentials`` or ``invalid_credentials``."""

    http_status = 401
    category = "missing_credentials"


class EnvelopeError(WebhookError):
    """``content_type``, ``invalid_json`` or ``invalid_payload``."""

    http_status = 400
    category = "invalid_payload"


class ParseFailedError(WebhookError):
    http_status = 400
    category = "parse_failed"

    def __init__(self, reason: FailureReason) -> None:
        super().__init__(f"Parse failed: {reason.value}")
        self.reason = reason


class StorageError(WebhookError):
    """Anything the persistence layer failed at, except *not found*."""

    http_status = 500
    category = "storage"


class DuplicateDeliveryError(Exception):
    """The unique constraint on ``webhook_id`` refused an insert."""

    def __init__(self, delivery_id: str, transaction_id: uuid.UUID) -> None:
        super().__init__(f"delivery {delivery_id} already stored as {transaction_id}")
        self.delivery_id = delivery_id
        self.transaction_id = transaction_id
