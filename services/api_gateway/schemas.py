# services/api_gateway/schemas.py
"""Pydantic DTO-models used by the *API Gateway* and the envelope validator.

Kept apart from ``main.py`` so that:
1. the pipeline can import them without pulling in FastAPI routes;
2. the OpenAPI description lives in one place.
"""
from __future__ import annotations

from typing import Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, StrictStr, ValidationError


class IncomingEnvelope(BaseModel):
    """Webhook body sent by the SMS gateway.

    ``timestamp`` and ``phone`` are advisory: an empty string means
    "not provided" and is accepted. ``message`` and ``webhookId`` must be
    non-empty.
    """

    model_config = ConfigDict(
        frozen=True,
        json_schema_extra={
            "example": {
                "message": "Bancolombia: Recibiste una transferencia por $190,000 de "
                "MARIA CUBAQUE en tu cuenta **7251, el 04/09/2025 a las 08:06",
                "timestamp": "2025-09-04T08:06:30Z",
                "phone": "+573001234567",
                "webhookId": "wh_01J8Z8K9",
            }
        },
    )

    message: StrictStr = Field(..., min_length=1)
    timestamp: StrictStr = Field(...)
    phone: StrictStr = Field(...)
    delivery_id: StrictStr = Field(..., min_length=1, alias="webhookId")


class EnvelopeRejected(BaseModel):
    """Tagged rejection produced by :func:`validate_envelope`."""

    rejected: Literal[True] = True
    reason: str


def validate_envelope(raw: Any) -> Union[IncomingEnvelope, EnvelopeRejected]:
    """Turn an arbitrary decoded JSON value into a typed envelope or a rejection.

    Never raises; nothing partially typed leaves this function.
    """
    if not isinstance(raw, dict):
        return EnvelopeRejected(reason=f"expected a JSON object, got {type(raw).__name__}")
    try:
        return IncomingEnvelope.model_validate(raw)
    except ValidationError as exc:
        fields = sorted({".".join(str(p) for p in err["loc"]) for err in exc.errors()})
        return EnvelopeRejected(reason=f"invalid fields: {', '.join(fields)}")


class WebhookResponse(BaseModel):
    """Body of every ``/api/webhook/sms`` response."""

    model_config = ConfigDict(populate_by_name=True)

    status: Literal["processed", "duplicate", "error"]
    transaction_id: Optional[str] = Field(None, alias="transactionId")
    webhook_id: Optional[str] = Field(None, alias="webhookId")
    error: Optional[str] = None

    def to_json(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)
