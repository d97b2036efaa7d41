import signal
import sys

from prometheus_client import start_http_server
from pydantic import ValidationError

from notifier.common.config import get_settings
from notifier.common.logging import get_logger, setup_logging
from notifier.common.queue import (
    CONNECTION_ERRORS,
    FatalSupervisionFailure,
    QueueCloseError,
    QueueConnection,
    QueueConsumer,
)
from notifier.worker.processor import NotificationProcessor

logger = get_logger(__name__)


def main() -> int:
    try:
        settings = get_settings()
    except ValidationError as e:
        setup_logging("INFO")
        logger.critical("invalid_configuration", error=str(e))
        return 1

    setup_logging()
    logger.info("worker_starting", worker_id=settings.worker_id, queue=settings.queue_name)

    if settings.metrics_port:
        start_http_server(settings.metrics_port)
        logger.info("metrics_exporter_started", port=settings.metrics_port)

    processor = NotificationProcessor()
    connection = QueueConnection()
    consumer = QueueConsumer(connection, processor.handle)

    try:
        connection.connect()
        consumer.start_consuming()
    except CONNECTION_ERRORS as e:
        logger.critical("worker_start_failed", error=str(e))
        try:
            connection.close()
        except QueueCloseError as close_error:
            logger.error("worker_shutdown_error", error=str(close_error))
        processor.sender.close()
        return 1

    def handle_shutdown(signum: int, frame) -> None:
        logger.info("shutdown_signal_received", signal=signal.Signals(signum).name)
        consumer.stop()

    signal.signal(signal.SIGTERM, handle_shutdown)
    signal.signal(signal.SIGINT, handle_shutdown)

    exit_code = 0
    try:
        consumer.run()
    except FatalSupervisionFailure as e:
        logger.critical("worker_supervision_failed", error=str(e))
        exit_code = 1
    finally:
        try:
            connection.shutdown()
        except QueueCloseError as e:
            logger.error("worker_shutdown_error", error=str(e))
        processor.sender.close()
        logger.info("worker_stopped", exit_code=exit_code)

    return exit_code


def run() -> None:
    sys.exit(main())


if __name__ == "__main__":
    run()
