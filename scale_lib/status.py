"""Outbound status feed for the presentation layer.

The core pushes status text, the active configuration label, the latest raw
line, the latest weight and diagnostic log entries here. Subscribers receive a
StatusSnapshot after every change.
"""

import logging
import threading
from datetime import datetime, timezone
from typing import Callable, List, Optional

from scale_lib import protocol
from scale_lib.models import StatusSnapshot, SupervisorState
from scale_lib.ring_buffer import RingBuffer

logger = logging.getLogger(__name__)

Subscriber = Callable[[StatusSnapshot], None]


class StatusReporter:
    """Thread-safe holder of the current presentation state and diagnostic log."""

    def __init__(self, log_capacity: int = protocol.LOG_CAPACITY) -> None:
        """Initialize reporter.

        Args:
            log_capacity: Maximum number of diagnostic entries kept
        """
        self._lock = threading.RLock()
        self._log: RingBuffer[str] = RingBuffer(maxlen=log_capacity)
        self._subscribers: List[Subscriber] = []

        self._status = "Idle"
        self._state = SupervisorState.IDLE
        self._active = False
        self._config_label = protocol.WEIGHT_PLACEHOLDER
        self._raw_line = protocol.WEIGHT_PLACEHOLDER
        self._weight: Optional[float] = None
        self._channel: Optional[str] = None
        self._updated_at = datetime.now(timezone.utc)

    # ========================================================================
    # Subscription
    # ========================================================================

    def subscribe(self, callback: Subscriber) -> None:
        with self._lock:
            self._subscribers.append(callback)

    def unsubscribe(self, callback: Subscriber) -> None:
        with self._lock:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

    # ========================================================================
    # Updates
    # ========================================================================

    def set_status(self, status: str, state: Optional[SupervisorState] = None) -> None:
        with self._lock:
            self._status = status
            if state is not None:
                self._state = state
        logger.info(f"Status: {status}")
        self._publish()

    def set_active(self, active: bool, config_label: Optional[str] = None) -> None:
        with self._lock:
            self._active = active
            if config_label is not None:
                self._config_label = config_label
        self._publish()

    def set_channel(self, channel: Optional[str]) -> None:
        with self._lock:
            self._channel = channel
        self._publish()

    def set_raw_line(self, raw_line: str) -> None:
        with self._lock:
            self._raw_line = raw_line
        self._publish()

    def set_weight(self, weight: Optional[float]) -> None:
        with self._lock:
            self._weight = weight
        self._publish()

    def log(self, entry: str) -> None:
        """Append a diagnostic entry to the capped log."""
        self._log.append(entry)
        logger.debug(f"[diag] {entry}")
        self._publish()

    def reset_display(self) -> None:
        """Return to the inactive placeholder display."""
        with self._lock:
            self._active = False
            self._config_label = protocol.WEIGHT_PLACEHOLDER
            self._raw_line = protocol.WEIGHT_PLACEHOLDER
            self._weight = None
            self._channel = None
        self._publish()

    # ========================================================================
    # Reads
    # ========================================================================

    def entries(self, limit: Optional[int] = None) -> List[str]:
        """Diagnostic entries, newest first."""
        return self._log.newest(limit)

    def snapshot(self) -> StatusSnapshot:
        with self._lock:
            return StatusSnapshot(
                status=self._status,
                state=self._state,
                active=self._active,
                config_label=self._config_label,
                raw_line=self._raw_line,
                weight=self._weight,
                channel=self._channel,
                updated_at=self._updated_at,
            )

    @property
    def log_capacity(self) -> int:
        return self._log.maxlen

    def _publish(self) -> None:
        with self._lock:
            self._updated_at = datetime.now(timezone.utc)
            subscribers = list(self._subscribers)
        if not subscribers:
            return

        snap = self.snapshot()
        for callback in subscribers:
            try:
                callback(snap)
            except Exception as e:
                logger.error(f"Status subscriber failed: {e}", exc_info=True)
