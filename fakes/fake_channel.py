"""Fake channels that simulate serial scale indicators.

FakeScaleChannel emulates the behavior that matters for auto-detection:
- Rejecting link parameters the "device" does not support
- Streaming telegrams only under the one configuration that matches the
  scale's real settings (anything else looks like silence)
- Splitting output into arbitrary chunks, including mid-delimiter
- Echoing written bytes when wired as a loopback
- Going silent or being unplugged mid-session
"""

import logging
import queue
import threading
import time
from typing import Callable, Iterable, List, Optional, Sequence

from scale_lib.errors import ChannelLost, ChannelNotOpen, LinkError
from scale_lib.models import LinkConfig

logger = logging.getLogger(__name__)


class FakeScaleChannel:
    """Deterministic simulator of a scale indicator behind a serial port.

    Instrumented with open/close counters and the peak number of concurrent
    opens so tests can check the single-owner discipline.
    """

    def __init__(
        self,
        name: str = "FAKE0",
        telemetry_config: Optional[LinkConfig] = None,
        telegrams: Sequence[str] = ("P 12345",),
        accepts: Optional[Callable[[LinkConfig], bool]] = None,
        echo: bool = False,
        chunk_size: int = 3,
        period_s: float = 0.05,
        noise: bytes = b"",
    ) -> None:
        """Initialize fake channel.

        Args:
            name: Channel name (port name)
            telemetry_config: Configuration under which telegrams are readable.
                              None means the scale never sends anything useful.
            telegrams: Telegram bodies cycled through (delimiter appended from
                       the telemetry config)
            accepts: Predicate deciding which configs open successfully.
                     None accepts everything.
            echo: Loop written bytes back to the reader
            chunk_size: Bytes per read chunk when streaming telegrams
            period_s: Pause between telegrams
            noise: Bytes returned under any non-matching config
        """
        self.name = name
        self.telemetry_config = telemetry_config
        self.telegrams = list(telegrams)
        self.accepts = accepts
        self.echo = echo
        self.chunk_size = max(1, chunk_size)
        self.period_s = period_s
        self.noise = noise

        # Instrumentation
        self.open_count = 0
        self.close_count = 0
        self.concurrent_opens = 0
        self.max_concurrent_opens = 0
        self.opened_configs: List[LinkConfig] = []
        self.rejected_configs: List[LinkConfig] = []
        self.written: List[bytes] = []
        self.signals: Optional[dict] = None

        self._config: Optional[LinkConfig] = None
        self._rx: "queue.Queue[bytes]" = queue.Queue()
        self._lock = threading.Lock()
        self._telegram_index = 0
        self._next_emit = 0.0
        self._silent = False
        self._unplugged = False

    def __repr__(self) -> str:
        return f"FakeScaleChannel({self.name!r})"

    # ========================================================================
    # Channel protocol
    # ========================================================================

    @property
    def is_open(self) -> bool:
        return self._config is not None

    @property
    def config(self) -> Optional[LinkConfig]:
        return self._config

    def open(self, config: LinkConfig) -> None:
        with self._lock:
            if self._unplugged:
                raise LinkError(f"{self.name}: device not present")
            if self._config is not None:
                # A real port refuses a second open; surface layering bugs loudly
                self.concurrent_opens += 1
                self.max_concurrent_opens = max(self.max_concurrent_opens, self.concurrent_opens)
                raise RuntimeError(f"{self.name} opened twice without close")
            if self.accepts is not None and not self.accepts(config):
                self.rejected_configs.append(config)
                raise LinkError(f"{self.name}: unsupported parameters {config.label}")

            self._config = config
            self.open_count += 1
            self.concurrent_opens += 1
            self.max_concurrent_opens = max(self.max_concurrent_opens, self.concurrent_opens)
            self.opened_configs.append(config)
            self._rx = queue.Queue()
            self._next_emit = 0.0
        logger.debug(f"{self.name} opened at {config.label}")

    def close(self) -> None:
        with self._lock:
            if self._config is None:
                return
            self._config = None
            self.close_count += 1
            self.concurrent_opens -= 1
        logger.debug(f"{self.name} closed")

    def set_signals(self, dtr: bool = True, rts: bool = True) -> None:
        self.signals = {"dtr": dtr, "rts": rts}

    def read(self, max_bytes: int, timeout: float) -> bytes:
        if self._unplugged:
            raise ChannelLost(f"{self.name}: device disconnected")
        if self._config is None:
            raise ChannelNotOpen(f"{self.name} is not open")

        self._maybe_emit()
        try:
            data = self._rx.get(timeout=max(0.0, timeout)) if timeout > 0 else self._rx.get_nowait()
        except queue.Empty:
            if self._unplugged:
                raise ChannelLost(f"{self.name}: device disconnected")
            return b""

        if len(data) > max_bytes:
            self._push_front(data[max_bytes:])
            data = data[:max_bytes]
        return data

    def write(self, data: bytes) -> int:
        if self._unplugged:
            raise ChannelLost(f"{self.name}: device disconnected")
        if self._config is None:
            raise ChannelNotOpen(f"{self.name} is not open")

        self.written.append(bytes(data))
        if self.echo:
            for i in range(0, len(data), self.chunk_size):
                self._rx.put(bytes(data[i : i + self.chunk_size]))
        return len(data)

    # ========================================================================
    # Test controls
    # ========================================================================

    def inject(self, data: bytes, chunk_sizes: Optional[Iterable[int]] = None) -> None:
        """Queue raw bytes for the reader, optionally with explicit chunking."""
        if chunk_sizes is None:
            self._rx.put(bytes(data))
            return
        pos = 0
        for size in chunk_sizes:
            if pos >= len(data):
                break
            self._rx.put(bytes(data[pos : pos + size]))
            pos += size
        if pos < len(data):
            self._rx.put(bytes(data[pos:]))

    def silence(self) -> None:
        """Stop sending telegrams (link stays open)."""
        self._silent = True

    def resume(self) -> None:
        self._silent = False
        self._next_emit = 0.0

    def unplug(self) -> None:
        """Simulate the device being removed: reads report end-of-stream."""
        self._unplugged = True

    def replug(self) -> None:
        self._unplugged = False

    # ========================================================================
    # Internal
    # ========================================================================

    def _streaming(self) -> bool:
        return (
            not self._silent
            and self.telemetry_config is not None
            and self._config == self.telemetry_config
            and bool(self.telegrams)
        )

    def _maybe_emit(self) -> None:
        now = time.monotonic()
        if not self._rx.empty() or now < self._next_emit:
            return

        if self._streaming():
            assert self._config is not None
            body = self.telegrams[self._telegram_index % len(self.telegrams)]
            self._telegram_index += 1
            frame = (body + self._config.delimiter).encode("ascii")
            for i in range(0, len(frame), self.chunk_size):
                self._rx.put(frame[i : i + self.chunk_size])
            self._next_emit = now + self.period_s
        elif self.noise and not self._silent:
            self._rx.put(self.noise)
            self._next_emit = now + self.period_s

    def _push_front(self, data: bytes) -> None:
        remaining = [data]
        while True:
            try:
                remaining.append(self._rx.get_nowait())
            except queue.Empty:
                break
        for item in remaining:
            self._rx.put(item)


class FakeAuthorization:
    """In-memory Authorization collaborator."""

    def __init__(
        self,
        channels: Optional[Sequence[FakeScaleChannel]] = None,
        grantable: Optional[Sequence[FakeScaleChannel]] = None,
    ) -> None:
        self.channels: List[FakeScaleChannel] = list(channels or [])
        self.grantable: List[FakeScaleChannel] = list(grantable or [])
        self.requests: List[Optional[str]] = []

    def list_authorized_channels(self) -> List[FakeScaleChannel]:
        return list(self.channels)

    def request_authorization(self, hint: Optional[str] = None) -> Optional[FakeScaleChannel]:
        self.requests.append(hint)
        for channel in self.grantable:
            if hint is None or channel.name == hint:
                self.grantable.remove(channel)
                self.channels.append(channel)
                return channel
        return None


def wait_until(predicate: Callable[[], bool], timeout: float = 3.0, interval: float = 0.02) -> bool:
    """Poll predicate until it is true or the timeout elapses."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()
