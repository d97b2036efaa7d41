"""
Decoding and validation of "send message" queue payloads.
"""

import json
import math
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, StrictStr, ValidationError, field_validator


class PayloadRejected(Exception):
    """The message body can never become a valid payload."""

    def __init__(self, reason: str, field: str | None = None):
        super().__init__(reason if field is None else f"{field}: {reason}")
        self.reason = reason
        self.field = field


class NotificationPayload(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore")

    numbers: tuple[str, ...] = Field(..., min_length=1)
    content: StrictStr = Field(..., min_length=1)
    api_key: StrictStr = Field(..., min_length=1)

    @field_validator("numbers", mode="before")
    @classmethod
    def coerce_numbers(cls, value: Any) -> list[str]:
        if not isinstance(value, list):
            raise ValueError("numbers must be an array")

        coerced = []
        for item in value:
            # bool is an int subclass but never a phone number
            if isinstance(item, bool) or not isinstance(item, (str, int, float)):
                raise ValueError(f"unsupported number entry: {item!r}")
            if isinstance(item, float) and not math.isfinite(item):
                raise ValueError(f"unsupported number entry: {item!r}")
            if isinstance(item, float) and item.is_integer():
                item = int(item)
            coerced.append(str(item))
        return coerced

    def summary(self) -> dict[str, Any]:
        """Loggable view of the payload, without the API key."""
        return {
            "recipients": len(self.numbers),
            "content_preview": self.content[:50],
        }


def parse_payload(body: bytes, default_api_key: str | None = None) -> NotificationPayload:
    """
    Decode a raw message body into a validated payload.

    Args:
        body: Raw message body
        default_api_key: Used when the message carries no api_key

    Returns:
        The validated, immutable payload

    Raises:
        PayloadRejected: naming the violated field where there is one
    """
    try:
        text = body.decode("utf-8")
    except UnicodeDecodeError as e:
        raise PayloadRejected(f"body is not valid UTF-8: {e}") from e

    try:
        data = json.loads(text)
    except (ValueError, RecursionError) as e:
        # JSONDecodeError, oversized integers, pathological nesting
        raise PayloadRejected(f"invalid JSON: {e}") from e

    if not isinstance(data, dict):
        raise PayloadRejected("payload is not a JSON object")

    if not data.get("api_key") and default_api_key:
        data = {**data, "api_key": default_api_key}

    try:
        return NotificationPayload.model_validate(data)
    except ValidationError as e:
        error = e.errors()[0]
        field = str(error["loc"][0]) if error["loc"] else None
        raise PayloadRejected(error["msg"], field=field) from e
