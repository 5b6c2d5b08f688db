"""Continuous read session with idle-timeout watchdog and optional smoothing."""

import logging
import threading
import time
from typing import Callable, Optional

from scale_lib import protocol
from scale_lib.errors import ChannelLost
from scale_lib.framing import LineFramer
from scale_lib.models import LinkConfig, Telegram
from scale_lib.parsing import TelegramDecoder
from scale_lib.ring_buffer import SmoothingWindow
from scale_lib.status import StatusReporter
from scale_lib.transport import ChannelSession

logger = logging.getLogger(__name__)


class ReadSession:
    """Frames and decodes telegrams from a validated configuration until stopped.

    A reader thread consumes the channel; a watchdog thread resets the displayed
    weight to zero once per idle period, i.e. when no valid telegram arrived
    for longer than ``idle_timeout_s``. The watchdog only reads ``last_seen``.
    """

    def __init__(
        self,
        session: ChannelSession,
        config: LinkConfig,
        decoder: Optional[TelegramDecoder] = None,
        reporter: Optional[StatusReporter] = None,
        idle_timeout_s: float = protocol.IDLE_TIMEOUT_S,
        watchdog_interval_s: float = protocol.WATCHDOG_INTERVAL_S,
        smoothing: Optional[int] = protocol.SMOOTHING_WINDOW,
        on_end: Optional[Callable[["ReadSession"], None]] = None,
    ) -> None:
        """Initialize read session.

        Args:
            session: Channel session to own for the lifetime of this reader
            config: Validated link configuration
            decoder: Telegram decoder. Defaults to TelegramDecoder().
            reporter: Status sink for raw lines and weights
            idle_timeout_s: Silence after which the display resets to zero
            watchdog_interval_s: Watchdog polling period
            smoothing: Moving-average window size; None or 0 disables smoothing
            on_end: Called from the reader thread when the channel reports
                    end-of-stream or the reader fails (not on an explicit stop)
        """
        self._session = session
        self._config = config
        self._decoder = decoder or TelegramDecoder()
        self._reporter = reporter or StatusReporter()
        self._idle_timeout_s = idle_timeout_s
        self._watchdog_interval_s = watchdog_interval_s
        self._window = SmoothingWindow(maxlen=smoothing) if smoothing else None
        self._on_end = on_end

        self._keep_running = threading.Event()
        self._stop_event = threading.Event()
        self._ended = threading.Event()
        self._stop_lock = threading.Lock()
        self._idle_lock = threading.Lock()
        self._reader_thread: Optional[threading.Thread] = None
        self._watchdog_thread: Optional[threading.Thread] = None

        self._display_value: Optional[float] = None
        self._last_raw_line: Optional[str] = None
        self._telegram_count = 0
        self._idle_resets = 0
        self._idle_handled = False

    # ========================================================================
    # Lifecycle
    # ========================================================================

    def start(self) -> None:
        """Open the channel with the configuration and start reader + watchdog.

        Raises:
            LinkError: If the channel rejects the configuration
            RuntimeError: If already started
        """
        if self._reader_thread is not None:
            raise RuntimeError("ReadSession already started")

        self._session.open(self._config)
        self._keep_running.set()
        self._display_value = 0.0
        self._reporter.set_weight(0.0)

        self._reader_thread = threading.Thread(
            target=self._reader_loop, name=f"ScaleReader-{self._session.name}", daemon=True
        )
        self._watchdog_thread = threading.Thread(
            target=self._watchdog_loop, name=f"ScaleWatchdog-{self._session.name}", daemon=True
        )
        self._reader_thread.start()
        self._watchdog_thread.start()
        logger.info(f"Read session started on {self._session.name} with {self._config.label}")

    def stop(self) -> None:
        """Stop reading and close the channel. Idempotent."""
        with self._stop_lock:
            self._keep_running.clear()
            self._stop_event.set()

            current = threading.current_thread()
            for thread in (self._reader_thread, self._watchdog_thread):
                if thread is not None and thread is not current and thread.is_alive():
                    thread.join(timeout=protocol.THREAD_JOIN_TIMEOUT_S)
                    if thread.is_alive():
                        logger.warning(f"{thread.name} did not stop cleanly")

            self._session.close()
        logger.debug(f"Read session on {self._session.name} stopped")

    # ========================================================================
    # State
    # ========================================================================

    @property
    def session(self) -> ChannelSession:
        return self._session

    @property
    def config(self) -> LinkConfig:
        return self._config

    @property
    def is_running(self) -> bool:
        return self._keep_running.is_set()

    @property
    def ended(self) -> bool:
        """True once the channel reported end-of-stream."""
        return self._ended.is_set()

    @property
    def display_value(self) -> Optional[float]:
        return self._display_value

    @property
    def last_raw_line(self) -> Optional[str]:
        return self._last_raw_line

    @property
    def telegram_count(self) -> int:
        return self._telegram_count

    @property
    def idle_resets(self) -> int:
        return self._idle_resets

    def wait_ended(self, timeout: Optional[float] = None) -> bool:
        return self._ended.wait(timeout)

    # ========================================================================
    # Internal: Threads
    # ========================================================================

    def _reader_loop(self) -> None:
        logger.info(f"Reader loop started (thread {threading.get_ident()})")
        framer = LineFramer(self._config.delimiter)

        try:
            for line in framer.frame(self._session.chunks(keep_running=self._keep_running.is_set)):
                self._handle_line(line)
        except Exception as e:
            logger.error(f"Error in reader loop: {e}", exc_info=True)
            self._reporter.log(f"[read loop] {e}")
            if self._keep_running.is_set() and self._session.lost is None:
                self._session.lost = ChannelLost(f"Reader failed on {self._session.name}: {e}")

        if self._session.lost is not None and self._keep_running.is_set():
            self._keep_running.clear()
            self._stop_event.set()
            self._ended.set()
            self._reporter.log(f"[read loop] end of stream: {self._session.lost}")
            if self._on_end is not None:
                self._on_end(self)

        logger.info("Reader loop stopped")

    def _handle_line(self, line: str) -> None:
        telegram = self._decoder.decode(line)
        if not telegram.raw_line:
            return

        self._last_raw_line = telegram.raw_line
        self._reporter.set_raw_line(telegram.raw_line)

        if telegram.matched:
            self._apply(telegram)

    def _apply(self, telegram: Telegram) -> None:
        assert telegram.value is not None
        with self._idle_lock:
            self._session.mark_seen()
            self._idle_handled = False
            self._telegram_count += 1
            value = self._window.push(telegram.value) if self._window is not None else telegram.value
            self._display_value = value
        self._reporter.set_weight(value)
        logger.debug(f"Telegram {telegram.format_tag}: {telegram.raw_line!r} -> {value}")

    def _watchdog_loop(self) -> None:
        # Event.wait doubles as a cancellable sleep
        while not self._stop_event.wait(timeout=self._watchdog_interval_s):
            self._check_idle()

    def _check_idle(self, now: Optional[float] = None) -> bool:
        """Reset the display if the idle threshold passed. Returns True on reset."""
        with self._idle_lock:
            last_seen = self._session.last_seen
            if last_seen is None or self._idle_handled:
                return False

            now = time.monotonic() if now is None else now
            if now - last_seen <= self._idle_timeout_s:
                return False

            self._idle_handled = True
            self._idle_resets += 1
            if self._window is not None:
                self._window.clear()
            self._display_value = 0.0

        self._reporter.set_weight(0.0)
        logger.info(f"No telegram for {now - last_seen:.2f}s, display reset")
        return True
