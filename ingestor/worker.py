"""The AMS queue ingestion loop."""

from __future__ import annotations

import threading
from typing import Callable, Protocol

from ingestor.config import IngestorConfig
from ingestor.exceptions import CredentialError, ValidationError
from ingestor.logging_utils import bind_correlation_id, get_logger, log_operation
from ingestor.models import ControlRecord, QueueMessage, WorkerMetrics, WorkerState
from ingestor.rate_limiter import RateLimiter
from ingestor.router import PayloadRouter, decode_body

logger = get_logger(__name__)


class ControlSource(Protocol):
    def get_status(self) -> ControlRecord: ...


class MessageQueue(Protocol):
    def receive(self, max_wait_seconds: int | None = None) -> list[QueueMessage]: ...

    def delete(self, receipt_handle: str) -> bool: ...


class IngestionWorker:
    """
    Poll the AMS queue, route each message and acknowledge it once stored.

    One message failing never affects its siblings: the error is logged and
    the message is left on the queue, whose visibility timeout and redrive
    policy own retries and dead-lettering. The control row is re-read every
    iteration. One RateLimiter spans batches so admissions stay spaced across
    batch boundaries; it is rebuilt only when ``messages_per_second`` changes.
    """

    def __init__(
        self,
        config: IngestorConfig,
        control_store: ControlSource,
        queue: MessageQueue,
        router: PayloadRouter,
        connectivity_checks: list[tuple[str, Callable[[], None]]] | None = None,
    ):
        self.config = config
        self.control_store = control_store
        self.queue = queue
        self.router = router
        self.connectivity_checks = connectivity_checks or []
        self.metrics = WorkerMetrics(unknown_datasets=router.unknown_datasets)
        self.state = WorkerState.POLLING
        self._shutdown = threading.Event()
        self._limiter: RateLimiter | None = None

    @property
    def draining(self) -> bool:
        return self._shutdown.is_set()

    def request_shutdown(self) -> None:
        """Stop receiving new batches; the batch in flight is allowed to finish."""
        if not self._shutdown.is_set():
            logger.info("Shutdown requested; draining in-flight messages")
        self._shutdown.set()
        if self.state is not WorkerState.STOPPED:
            self.state = WorkerState.DRAINING

    def _set_state(self, state: WorkerState) -> None:
        if not self.draining:
            self.state = state

    def _wait(self, seconds: float) -> None:
        if seconds > 0:
            self._shutdown.wait(seconds)

    def check_connectivity(self) -> bool:
        """
        Run the startup connectivity checks.

        Credential failures follow ``credential_failure_policy``: ``exit`` re-raises,
        ``idle`` logs and blocks until shutdown so the process stays up for log
        inspection, then returns False. Any other failure is raised.
        """
        for name, check in self.connectivity_checks:
            try:
                check()
            except CredentialError as e:
                if self.config.credential_failure_policy == "exit":
                    logger.critical(f"Credential check failed for {name}", extra={"error": str(e)})
                    raise
                logger.critical(
                    f"Credential check failed for {name}; idling until shutdown",
                    extra={"error": str(e), "policy": self.config.credential_failure_policy},
                )
                self._shutdown.wait()
                return False
            logger.info(f"Connectivity check passed: {name}")
        return True

    def run(self, max_iterations: int | None = None) -> WorkerMetrics:
        """Run the loop until shutdown (or ``max_iterations`` loop iterations)."""
        with log_operation(logger, "ingestion_worker", queue_url=self.config.ams_queue_url):
            try:
                if not self.check_connectivity():
                    return self.metrics
                self._set_state(WorkerState.POLLING)
                while not self.draining:
                    if max_iterations is not None and self.metrics.iterations >= max_iterations:
                        break
                    self.metrics.iterations += 1
                    self.run_iteration()
            finally:
                self._close_limiter()
                self.state = WorkerState.STOPPED
                logger.info("Worker stopped", extra=self.metrics.to_dict())
        return self.metrics

    def run_iteration(self) -> None:
        """One poll cycle: read control, receive a batch, process it."""
        try:
            control = self.control_store.get_status()
        except Exception as e:
            self.metrics.poll_errors += 1
            logger.error("Failed to read worker control", extra={"error": str(e)})
            self._wait(self.config.error_backoff_seconds)
            return

        if not control.enabled:
            self.metrics.disabled_polls += 1
            logger.debug("Worker disabled; waiting", extra={"interval": self.config.disabled_poll_interval_seconds})
            self._wait(self.config.disabled_poll_interval_seconds)
            return

        if self.draining:
            return

        try:
            messages = self.queue.receive()
        except Exception as e:
            self.metrics.poll_errors += 1
            logger.error(
                "Failed to receive messages",
                extra={"error": str(e), "error_type": type(e).__name__},
            )
            self._wait(self.config.error_backoff_seconds)
            return

        if not messages:
            self._wait(self.config.idle_backoff_seconds)
            return

        self.process_batch(messages, control.messages_per_second)

    def process_batch(self, messages: list[QueueMessage], messages_per_second: int = 0) -> None:
        self.metrics.batches += 1
        self.metrics.messages_received += len(messages)

        limiter = self._limiter_for(messages_per_second)
        self._set_state(WorkerState.THROTTLED if limiter.limited else WorkerState.POLLING)
        try:
            futures = [limiter.schedule(self.handle_message, m) for m in messages]
            for future in futures:
                future.result()
        finally:
            self._set_state(WorkerState.POLLING)

    def _limiter_for(self, messages_per_second: int) -> RateLimiter:
        current = self._limiter
        if current is not None and current.rate == (messages_per_second or 0):
            return current
        last_admission = None
        if current is not None:
            current.close(wait=True)
            last_admission = current.last_admission
            logger.info(
                "Message rate changed",
                extra={"from": current.rate, "to": messages_per_second},
            )
        self._limiter = RateLimiter(messages_per_second, name="ams-worker", last_admission=last_admission)
        return self._limiter

    def _close_limiter(self) -> None:
        if self._limiter is not None:
            self._limiter.close(wait=True)
            self._limiter = None

    def handle_message(self, message: QueueMessage) -> bool:
        """Route one message and delete it on success. Never raises."""
        with bind_correlation_id(message.message_id):
            try:
                payload = decode_body(message.body)
                if payload is not None:
                    self.router.route(payload)
            except Exception as e:
                self.metrics.messages_failed += 1
                logger.error(
                    "Message processing failed; leaving it for redelivery",
                    extra={
                        "message_id": message.message_id,
                        "receive_count": message.attributes.get("ApproximateReceiveCount"),
                        "error": str(e),
                        "error_type": type(e).__name__,
                    },
                    exc_info=not isinstance(e, ValidationError),
                )
                return False

            try:
                deleted = self.queue.delete(message.receipt_handle)
            except Exception as e:
                self.metrics.delete_failures += 1
                logger.error(
                    "Failed to delete processed message",
                    extra={"message_id": message.message_id, "error": str(e)},
                )
                return False

            if not deleted:
                self.metrics.delete_failures += 1
            self.metrics.messages_processed += 1
            return True
