"""
Notification API client.

Performs exactly one POST per call and classifies the result; retrying is
left to the queue.
"""

import time
from dataclasses import dataclass
from typing import Any, Union

import httpx

from notifier.common.config import get_settings
from notifier.common.logging import get_logger
from notifier.common.metrics import NOTIFICATIONS_SENT, SEND_DURATION
from notifier.services.payload import NotificationPayload

logger = get_logger(__name__)

# Worth another delivery attempt besides 5xx
RETRYABLE_STATUS_CODES = {408, 429}


@dataclass(frozen=True)
class Delivered:
    """The API accepted the request."""

    data: dict[str, Any]


@dataclass(frozen=True)
class Rejected:
    """The API refused the request; sending it again will not help."""

    status_code: int
    detail: str


@dataclass(frozen=True)
class TransportFailure:
    """The request did not get through; a later attempt may succeed."""

    reason: str
    status_code: int | None = None


SendOutcome = Union[Delivered, Rejected, TransportFailure]


class NotificationSender:
    """Blocking client for the send-messages endpoint."""

    def __init__(
        self,
        api_url: str,
        timeout: float = 30.0,
        client: httpx.Client | None = None,
    ):
        self.api_url = api_url
        self._client = client or httpx.Client(timeout=timeout)

    def send(self, payload: NotificationPayload) -> SendOutcome:
        """Send one notification request and classify the response."""
        started = time.monotonic()
        try:
            response = self._client.post(
                self.api_url,
                headers={
                    "Content-Type": "application/json",
                    "x-api-key": payload.api_key,
                },
                json={
                    "numbers": list(payload.numbers),
                    "content": payload.content,
                },
            )
        except httpx.TimeoutException as e:
            logger.warning("notification_api_timeout", url=self.api_url, error=str(e))
            return self._record(TransportFailure(reason=f"request timed out: {e}"))
        except httpx.TransportError as e:
            logger.warning("notification_api_unreachable", url=self.api_url, error=str(e))
            return self._record(TransportFailure(reason=str(e)))
        finally:
            SEND_DURATION.observe(time.monotonic() - started)

        return self._record(self._classify(response))

    def _classify(self, response: httpx.Response) -> SendOutcome:
        status = response.status_code

        if response.is_success:
            try:
                data = response.json()
            except ValueError:
                data = None
            if not isinstance(data, dict):
                logger.warning(
                    "notification_api_unexpected_body",
                    status=status,
                    body=response.text[:200],
                )
                data = {"raw": response.text}
            return Delivered(data=data)

        detail = f"{status} {response.reason_phrase} - {response.text}"
        if status >= 500 or status in RETRYABLE_STATUS_CODES:
            logger.warning("notification_api_unavailable", status=status, detail=detail)
            return TransportFailure(reason=detail, status_code=status)

        logger.error("notification_api_rejected", status=status, detail=detail)
        return Rejected(status_code=status, detail=detail)

    @staticmethod
    def _record(outcome: SendOutcome) -> SendOutcome:
        label = {
            Delivered: "delivered",
            Rejected: "rejected",
            TransportFailure: "transport_failure",
        }[type(outcome)]
        NOTIFICATIONS_SENT.labels(outcome=label).inc()
        return outcome

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> "NotificationSender":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()


def get_notification_sender() -> NotificationSender:
    """Get a sender for the configured notification API."""
    settings = get_settings()
    return NotificationSender(
        api_url=settings.api_url,
        timeout=settings.request_timeout_seconds,
    )
