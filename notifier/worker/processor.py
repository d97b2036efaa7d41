from notifier.common.config import get_settings
from notifier.common.logging import get_logger
from notifier.common.queue import Delivery, Disposition
from notifier.services.notification_sender import (
    Delivered,
    NotificationSender,
    Rejected,
    TransportFailure,
    get_notification_sender,
)
from notifier.services.payload import PayloadRejected, parse_payload

logger = get_logger(__name__)


class NotificationProcessor:
    def __init__(
        self,
        sender: NotificationSender | None = None,
        default_api_key: str | None = None,
    ):
        settings = get_settings()
        self.sender = sender or get_notification_sender()
        self.default_api_key = default_api_key or settings.api_key

    def handle(self, delivery: Delivery) -> Disposition:
        """
        Drive one message through validation and delivery.

        Malformed messages and explicit API rejections are dropped, since
        another attempt would fail the same way. Transport failures and
        unexpected errors are requeued.
        """
        try:
            payload = parse_payload(delivery.body, default_api_key=self.default_api_key)
        except PayloadRejected as e:
            if e.field is None:
                logger.error(
                    "invalid_json",
                    reason=e.reason,
                    body_preview=delivery.body[:100].decode("utf-8", "replace"),
                )
            else:
                logger.error("invalid_payload", field=e.field, reason=e.reason)
            return Disposition.DROP

        logger.info("sending_notification", **payload.summary())

        try:
            outcome = self.sender.send(payload)
        except Exception as e:
            logger.exception("notification_send_error", error=str(e))
            return Disposition.REQUEUE

        if isinstance(outcome, Delivered):
            logger.info(
                "notification_delivered",
                response=outcome.data,
                recipients=len(payload.numbers),
            )
            return Disposition.ACK

        if isinstance(outcome, Rejected):
            logger.error(
                "notification_rejected",
                status=outcome.status_code,
                detail=outcome.detail,
                **payload.summary(),
            )
            return Disposition.DROP

        if isinstance(outcome, TransportFailure):
            logger.warning(
                "notification_transport_failure",
                status=outcome.status_code,
                reason=outcome.reason,
            )
            return Disposition.REQUEUE

        logger.error("unknown_send_outcome", outcome=repr(outcome))
        return Disposition.REQUEUE
