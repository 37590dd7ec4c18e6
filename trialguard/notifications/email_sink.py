"""
TRIALGUARD - Email Hand-off
============================
Bounded, asynchronous hand-off of task emails to an external transport.

Features:
- Bounded in-memory queue; payloads are dropped and logged when full
- Background worker thread
- Retry with exponential backoff
- Bounded dead letter buffer for payloads that exhausted their retries,
  resubmitted on demand with retry_dead_letters()
- Metrics for monitoring

Delivery never feeds back into workflow state: a failed email is logged,
it does not roll back the task or signal it describes.
"""

import logging
import queue
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Deque, Dict, List, Optional

from trialguard.database.models import utcnow

logger = logging.getLogger(__name__)


@dataclass
class EmailPayload:
    """Structured task email handed to the transport."""
    task_id: str
    task_title: str
    description: str
    due_date: Optional[datetime]
    priority: str
    assigned_role: str
    trial_id: str
    domain: str
    record_id: str
    source: str
    recipients: List[str]
    kind: str = "created"
    data_context: Dict[str, Any] = field(default_factory=dict)

    @property
    def subject(self) -> str:
        prefix = "Resolved" if self.kind == "auto_resolved" else f"[{self.priority}] New task"
        return f"{prefix}: {self.task_id} {self.task_title}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "task_id": self.task_id,
            "task_title": self.task_title,
            "subject": self.subject,
            "description": self.description,
            "due_date": self.due_date.isoformat() if self.due_date else None,
            "priority": self.priority,
            "assigned_role": self.assigned_role,
            "trial_id": self.trial_id,
            "domain": self.domain,
            "record_id": self.record_id,
            "source": self.source,
            "recipients": list(self.recipients),
            "kind": self.kind,
            "data_context": dict(self.data_context),
        }


class EmailTransport:
    """Sends one payload. Implementations raise EmailDeliveryError on failure."""

    def send(self, payload: EmailPayload, timeout: float) -> None:
        raise NotImplementedError


class LoggingEmailTransport(EmailTransport):
    """Transport that only logs, for deployments without a mail relay."""

    def send(self, payload: EmailPayload, timeout: float) -> None:
        logger.info(f"Email '{payload.subject}' -> {', '.join(payload.recipients)}")


class EmailSink:
    """Accepts payloads for delivery. submit() must never block the caller for long."""

    def submit(self, payload: EmailPayload) -> bool:
        raise NotImplementedError


@dataclass
class EmailSinkMetrics:
    """Track hand-off metrics for monitoring."""
    submitted: int = 0
    dropped: int = 0
    sent: int = 0
    retried: int = 0
    failed: int = 0
    redriven: int = 0


@dataclass
class DeadLetter:
    """A payload that exhausted its retries."""
    payload: EmailPayload
    error: str
    attempts: int
    failed_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "payload": self.payload.to_dict(),
            "error": self.error,
            "attempts": self.attempts,
            "failed_at": self.failed_at.isoformat(),
        }


class QueuedEmailSink(EmailSink):
    """
    Background email sender fed through a bounded queue.

    Usage:
        sink = QueuedEmailSink(LoggingEmailTransport(), max_queue_size=100)
        sink.start()
        sink.submit(payload)
        sink.stop()
    """

    INITIAL_RETRY_DELAY = 0.5  # seconds
    MAX_RETRY_DELAY = 10.0  # seconds
    BACKOFF_MULTIPLIER = 2.0

    def __init__(
        self,
        transport: Optional[EmailTransport] = None,
        max_queue_size: int = 500,
        send_timeout: float = 10.0,
        max_retries: int = 3,
        initial_retry_delay: Optional[float] = None,
        max_dead_letters: int = 100,
    ):
        self.transport = transport or LoggingEmailTransport()
        self.send_timeout = send_timeout
        self.max_retries = max_retries
        self.initial_retry_delay = (
            self.INITIAL_RETRY_DELAY if initial_retry_delay is None else initial_retry_delay
        )
        self.metrics = EmailSinkMetrics()
        # Oldest entries fall off once the buffer is full
        self.dead_letters: Deque[DeadLetter] = deque(maxlen=max_dead_letters)

        self._queue: "queue.Queue[EmailPayload]" = queue.Queue(maxsize=max_queue_size)
        self._lock = threading.Lock()
        self._thread: Optional[threading.Thread] = None
        self._running = False

    def submit(self, payload: EmailPayload) -> bool:
        """Enqueue a payload. Returns False (and logs) when the queue is full."""
        try:
            self._queue.put_nowait(payload)
        except queue.Full:
            with self._lock:
                self.metrics.dropped += 1
            logger.warning(f"Email queue full, dropping email for task {payload.task_id}")
            return False
        with self._lock:
            self.metrics.submitted += 1
        return True

    def _send_with_retry(self, payload: EmailPayload) -> bool:
        delay = self.initial_retry_delay
        attempt = 0
        last_error: Optional[Exception] = None

        while attempt <= self.max_retries:
            try:
                self.transport.send(payload, timeout=self.send_timeout)
                with self._lock:
                    self.metrics.sent += 1
                return True
            except Exception as e:
                last_error = e
                attempt += 1
                if attempt <= self.max_retries:
                    with self._lock:
                        self.metrics.retried += 1
                    logger.warning(
                        f"Email for task {payload.task_id} failed (attempt {attempt}/{self.max_retries}), "
                        f"retrying in {delay:.1f}s: {e}"
                    )
                    time.sleep(delay)
                    delay = min(delay * self.BACKOFF_MULTIPLIER, self.MAX_RETRY_DELAY)

        logger.error(f"Email for task {payload.task_id} dropped after {attempt} attempts: {last_error}")
        with self._lock:
            self.metrics.failed += 1
            self.dead_letters.append(DeadLetter(
                payload=payload, error=str(last_error), attempts=attempt, failed_at=utcnow(),
            ))
        return False

    def retry_dead_letters(self) -> int:
        """
        Resubmit dead-lettered payloads through the queue.

        Payloads the queue cannot take stay in the buffer for a later call.

        Returns:
            Number of payloads re-enqueued
        """
        with self._lock:
            pending = list(self.dead_letters)
            self.dead_letters.clear()

        requeued = 0
        for letter in pending:
            if self.submit(letter.payload):
                requeued += 1
            else:
                with self._lock:
                    self.dead_letters.append(letter)

        with self._lock:
            self.metrics.redriven += requeued
        if pending:
            logger.info(f"Re-enqueued {requeued} of {len(pending)} dead-lettered emails")
        return requeued

    def _worker_loop(self) -> None:
        logger.info("Email worker started")
        while self._running or not self._queue.empty():
            try:
                payload = self._queue.get(timeout=0.2)
            except queue.Empty:
                continue
            try:
                self._send_with_retry(payload)
            finally:
                self._queue.task_done()
        logger.info("Email worker stopped")

    def start(self) -> None:
        """Start the background worker."""
        if self._running:
            return
        self._running = True
        self._thread = threading.Thread(target=self._worker_loop, name="email-sink", daemon=True)
        self._thread.start()

    def drain(self, timeout: float = 5.0) -> bool:
        """Wait until every queued payload has been handled. Returns False on timeout."""
        deadline = time.monotonic() + timeout
        while self._queue.unfinished_tasks:
            if time.monotonic() >= deadline:
                return False
            time.sleep(0.01)
        return True

    def stop(self, timeout: float = 10.0) -> None:
        """Stop the worker after the queue drains."""
        self._running = False
        if self._thread:
            self._thread.join(timeout=timeout)
            if self._thread.is_alive():
                logger.warning("Email worker did not stop in time")
            self._thread = None

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def queue_size(self) -> int:
        return self._queue.qsize()

    def get_metrics(self) -> Dict[str, Any]:
        """Get current hand-off metrics."""
        with self._lock:
            return {
                "submitted": self.metrics.submitted,
                "dropped": self.metrics.dropped,
                "sent": self.metrics.sent,
                "retried": self.metrics.retried,
                "failed": self.metrics.failed,
                "redriven": self.metrics.redriven,
                "queue_size": self._queue.qsize(),
                "dead_letters": len(self.dead_letters),
                "is_running": self._running,
            }
