import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable

import pika
import pika.exceptions
from pika.adapters.blocking_connection import BlockingChannel
from pika.spec import Basic, BasicProperties

from notifier.common.config import get_settings
from notifier.common.logging import get_logger
from notifier.common.metrics import (
    BROKER_CONNECTED,
    HEALTH_CHECK_FAILURES,
    MESSAGES_PROCESSED,
    RECONNECT_ATTEMPTS,
)
from notifier.common.tracing import bind_delivery, clear_delivery

logger = get_logger(__name__)

# Errors raised by pika when the connection or channel goes away
CONNECTION_ERRORS = (pika.exceptions.AMQPError, OSError)


class AlreadyConnecting(Exception):
    pass


class NotConnected(Exception):
    pass


class BrokerUnavailableError(ConnectionError):
    pass


class FatalSupervisionFailure(Exception):
    """Reconnect attempts are exhausted; the process should exit non-zero."""

    def __init__(self, attempts: int, cause: BaseException | None = None):
        super().__init__(f"Giving up on the broker after {attempts} reconnect attempts: {cause}")
        self.attempts = attempts
        self.cause = cause


class QueueCloseError(Exception):
    def __init__(self, errors: list[Exception]):
        super().__init__(
            "Failed to close RabbitMQ properly: " + ", ".join(str(e) for e in errors)
        )
        self.errors = errors


class DeliveryAlreadyResolved(Exception):
    pass


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


class Disposition(str, Enum):
    ACK = "ack"  # processed
    DROP = "drop"  # acknowledged without processing, never retried
    REQUEUE = "requeue"


@dataclass
class ReconnectState:
    max_attempts: int
    base_delay: float
    backoff_factor: float = 1.0
    max_delay: float = 60.0
    attempts: int = 0

    @property
    def exhausted(self) -> bool:
        return self.attempts >= self.max_attempts

    def next_delay(self) -> float:
        """Delay before the current attempt."""
        delay = self.base_delay * self.backoff_factor ** max(self.attempts - 1, 0)
        return min(delay, self.max_delay)

    def reset(self) -> None:
        self.attempts = 0


class QueueConnection:
    """
    Supervises the connection and channel to the broker.

    The connection and channel handles are only ever mutated here. Loss of
    connectivity (pika errors out of the event pump, or a failed periodic
    queue check) triggers reconnection with backoff until max attempts.
    """

    def __init__(
        self,
        url: str | None = None,
        queue_name: str | None = None,
        connection_factory: Callable[[pika.URLParameters], pika.BlockingConnection] | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        settings = get_settings()
        self.url = url or settings.rabbit_url
        self.queue_name = queue_name or settings.queue_name
        self.prefetch_count = settings.prefetch_count
        self.health_check_interval = settings.health_check_interval_seconds
        self.shutdown_grace = settings.shutdown_grace_seconds
        self.reconnect_state = ReconnectState(
            max_attempts=settings.max_reconnect_attempts,
            base_delay=settings.reconnect_delay_seconds,
            backoff_factor=settings.reconnect_backoff_factor,
            max_delay=settings.reconnect_max_delay_seconds,
        )
        self._connection_factory = connection_factory or pika.BlockingConnection
        self._sleep = sleep

        self._state = ConnectionState.DISCONNECTED
        self._connection: pika.BlockingConnection | None = None
        self._channel: BlockingChannel | None = None
        self._health_timer: Any = None
        self._probe_failure: BaseException | None = None
        self._reconnecting = False
        self._stop_requested = False
        self._reconnect_listeners: list[Callable[[], None]] = []

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def channel(self) -> BlockingChannel:
        if self._channel is None:
            raise NotConnected("Channel is not initialized. Call connect() first.")
        return self._channel

    def is_connected(self) -> bool:
        return self._connection is not None and self._channel is not None

    def add_reconnect_listener(self, listener: Callable[[], None]) -> None:
        """Register a callable run after every successful reconnect."""
        if listener not in self._reconnect_listeners:
            self._reconnect_listeners.append(listener)

    def connect(self) -> None:
        if self._state is ConnectionState.CONNECTING:
            raise AlreadyConnecting("Connection already in progress")

        if self.is_connected():
            logger.warning("rabbitmq_already_connected")
            return

        self._state = ConnectionState.CONNECTING
        logger.info("connecting_to_rabbitmq", queue=self.queue_name)
        try:
            connection, channel = self._open()
        except BaseException:
            self._state = ConnectionState.DISCONNECTED
            raise

        self._connection = connection
        self._channel = channel
        self._state = ConnectionState.CONNECTED
        self.reconnect_state.reset()
        BROKER_CONNECTED.set(1)

        self._install_handlers()
        logger.info("rabbitmq_connected", queue=self.queue_name)

    def _open(self) -> tuple[pika.BlockingConnection, BlockingChannel]:
        connection = None
        try:
            connection = self._connection_factory(pika.URLParameters(self.url))
            channel = connection.channel()
            channel.basic_qos(prefetch_count=self.prefetch_count)
            channel.queue_declare(queue=self.queue_name, durable=True)
        except CONNECTION_ERRORS as e:
            if connection is not None:
                self._close_quietly(connection)
            logger.error("rabbitmq_connect_failed", error=str(e))
            raise BrokerUnavailableError(f"Failed to connect to RabbitMQ: {e}") from e
        return connection, channel

    def _install_handlers(self) -> None:
        connection = self._connection
        connection.add_on_connection_blocked_callback(self._on_blocked)
        connection.add_on_connection_unblocked_callback(self._on_unblocked)
        self._schedule_health_check()

    def _on_blocked(self, connection, method_frame) -> None:
        logger.warning("rabbitmq_connection_blocked", reason=getattr(method_frame.method, "reason", None))

    def _on_unblocked(self, connection, method_frame) -> None:
        logger.info("rabbitmq_connection_unblocked")

    def _schedule_health_check(self) -> None:
        if self._connection is None or self.health_check_interval <= 0:
            return
        self._health_timer = self._connection.call_later(
            self.health_check_interval, self._health_check
        )

    def _health_check(self) -> None:
        """Passive declare of the target queue; runs inside the event pump."""
        self._health_timer = None
        if not self.is_connected():
            return
        try:
            self._channel.queue_declare(queue=self.queue_name, passive=True)
        except CONNECTION_ERRORS as e:
            HEALTH_CHECK_FAILURES.inc()
            logger.error("rabbitmq_health_check_failed", error=str(e))
            # Reconnecting from inside the dead connection's pump is unsafe;
            # process_events picks this up once the pump returns.
            self._probe_failure = e
            return
        logger.debug("rabbitmq_health_check_ok")
        self._schedule_health_check()

    def process_events(self, time_limit: float = 1) -> None:
        """Pump broker I/O once, turning connectivity errors into reconnects."""
        if self._connection is None:
            raise NotConnected("Connection is not initialized. Call connect() first.")

        try:
            self._connection.process_data_events(time_limit=time_limit)
        except CONNECTION_ERRORS as e:
            self.on_connection_lost(e)
            return

        if self._probe_failure is not None:
            cause, self._probe_failure = self._probe_failure, None
            self.on_connection_lost(cause)

    def on_connection_lost(self, cause: BaseException | None = None) -> None:
        if self._reconnecting:
            logger.info("rabbitmq_reconnect_already_pending", cause=str(cause))
            return

        logger.error("rabbitmq_connection_lost", cause=str(cause))
        self._discard_handles()

        if self._stop_requested:
            logger.info("rabbitmq_reconnect_skipped_shutting_down")
            return

        self._reconnect(cause)

    def _discard_handles(self) -> None:
        connection = self._connection
        self._connection = None
        self._channel = None
        self._health_timer = None
        self._probe_failure = None
        self._state = ConnectionState.DISCONNECTED
        BROKER_CONNECTED.set(0)
        if connection is not None and connection.is_open:
            self._close_quietly(connection)

    def _reconnect(self, cause: BaseException | None) -> None:
        self._reconnecting = True
        try:
            while not self._stop_requested:
                state = self.reconnect_state
                if state.exhausted:
                    logger.critical(
                        "rabbitmq_reconnect_exhausted",
                        attempts=state.attempts,
                        cause=str(cause),
                    )
                    raise FatalSupervisionFailure(state.attempts, cause)

                state.attempts += 1
                RECONNECT_ATTEMPTS.inc()
                delay = state.next_delay()
                logger.info(
                    "reconnect_scheduled",
                    attempt=state.attempts,
                    max_attempts=state.max_attempts,
                    delay=delay,
                )
                self._sleep(delay)

                if self._stop_requested:
                    break
                attempt = state.attempts
                try:
                    self.connect()
                    for listener in self._reconnect_listeners:
                        listener()
                except AlreadyConnecting as e:
                    cause = e
                    continue
                except CONNECTION_ERRORS as e:
                    # connect() may have reset the count before a listener failed
                    state.attempts = attempt
                    logger.warning("rabbitmq_reconnect_failed", attempt=attempt, error=str(e))
                    cause = e
                    self._discard_handles()
                    continue

                logger.info("rabbitmq_reconnected")
                return
        finally:
            self._reconnecting = False

    @property
    def stop_requested(self) -> bool:
        return self._stop_requested

    def request_stop(self) -> None:
        self._stop_requested = True

    def close(self) -> None:
        errors: list[Exception] = []
        channel = self._channel
        connection = self._connection

        if self._health_timer is not None and connection is not None:
            try:
                connection.remove_timeout(self._health_timer)
            except CONNECTION_ERRORS as e:
                logger.warning("health_check_timer_not_removed", error=str(e))
        self._health_timer = None

        # Channel first, it lives on the connection
        if channel is not None:
            try:
                if channel.is_open:
                    channel.close()
            except CONNECTION_ERRORS as e:
                logger.error("rabbitmq_channel_close_failed", error=str(e))
                errors.append(e)
            finally:
                self._channel = None

        if connection is not None:
            try:
                if connection.is_open:
                    connection.close()
            except CONNECTION_ERRORS as e:
                logger.error("rabbitmq_connection_close_failed", error=str(e))
                errors.append(e)
            finally:
                self._connection = None

        self._state = ConnectionState.DISCONNECTED
        BROKER_CONNECTED.set(0)

        if errors:
            raise QueueCloseError(errors)
        logger.info("rabbitmq_disconnected")

    def shutdown(self) -> None:
        logger.info("rabbitmq_shutdown_started", grace_seconds=self.shutdown_grace)
        self.request_stop()
        # Let an in-flight message finish before the channel goes away
        self._sleep(self.shutdown_grace)
        self.close()

    @staticmethod
    def _close_quietly(connection: pika.BlockingConnection) -> None:
        try:
            connection.close()
        except CONNECTION_ERRORS as e:
            logger.warning("rabbitmq_stale_connection_close_failed", error=str(e))


class Delivery:
    """One delivered message; must be resolved exactly once."""

    def __init__(
        self,
        channel: BlockingChannel,
        method: Basic.Deliver,
        properties: BasicProperties,
        body: bytes,
    ):
        self.body = body
        self.delivery_tag = method.delivery_tag
        self.redelivered = bool(method.redelivered)
        self.message_id = getattr(properties, "message_id", None)
        self._channel = channel
        self._resolution: str | None = None

    @property
    def resolved(self) -> bool:
        return self._resolution is not None

    def _resolve(self, resolution: str) -> None:
        if self._resolution is not None:
            raise DeliveryAlreadyResolved(
                f"Delivery {self.delivery_tag} already resolved ({self._resolution})"
            )
        self._resolution = resolution

    def ack(self) -> None:
        self._resolve("ack")
        self._channel.basic_ack(delivery_tag=self.delivery_tag)

    def nack(self, requeue: bool = False) -> None:
        self._resolve("requeue" if requeue else "reject")
        self._channel.basic_nack(delivery_tag=self.delivery_tag, requeue=requeue)


class QueueConsumer:
    def __init__(
        self,
        connection: QueueConnection,
        handler: Callable[[Delivery], Disposition],
    ):
        self.connection = connection
        self.handler = handler
        self._should_stop = False
        self.consumer_tag: str | None = None

    def start_consuming(self) -> None:
        """Subscribe to the queue on the current channel."""
        channel = self.connection.channel
        self.consumer_tag = channel.basic_consume(
            queue=self.connection.queue_name,
            on_message_callback=self._on_message,
            auto_ack=False,
        )
        logger.info("consumer_started", queue=self.connection.queue_name)

    def _on_message(
        self,
        ch: BlockingChannel,
        method: Basic.Deliver,
        properties: BasicProperties,
        body: bytes,
    ) -> None:
        delivery = Delivery(ch, method, properties, body)
        bind_delivery(delivery.delivery_tag, delivery.message_id)
        try:
            logger.info(
                "message_received",
                size=len(body),
                redelivered=delivery.redelivered,
            )
            try:
                disposition = self.handler(delivery)
            except Exception as e:
                logger.exception("message_handler_error", error=str(e))
                disposition = Disposition.REQUEUE

            self._apply(delivery, disposition)
        finally:
            clear_delivery()

    def _apply(self, delivery: Delivery, disposition: Disposition) -> None:
        if delivery.resolved:
            logger.error("delivery_resolved_by_handler", disposition=str(disposition))
            return

        if disposition is Disposition.ACK:
            delivery.ack()
            MESSAGES_PROCESSED.labels(disposition="acked").inc()
            logger.info("message_acked")
        elif disposition is Disposition.DROP:
            delivery.ack()
            MESSAGES_PROCESSED.labels(disposition="dropped").inc()
            logger.warning("message_dropped")
        else:
            # Anything unrecognised keeps the message in the queue
            delivery.nack(requeue=True)
            MESSAGES_PROCESSED.labels(disposition="requeued").inc()
            logger.warning("message_requeued")

    def run(self) -> None:
        """Pump broker events until stop() is called."""
        self.connection.add_reconnect_listener(self.start_consuming)
        if self.consumer_tag is None:
            self.start_consuming()

        while not self._should_stop and not self.connection.stop_requested:
            self.connection.process_events(time_limit=1)

        logger.info("consumer_stopped")

    def stop(self) -> None:
        self._should_stop = True
        self.connection.request_stop()
        logger.info("consumer_stopping")
