"""Serial transport layer: channel capability, pyserial channel, single-owner session."""

import logging
import threading
import time
from typing import Callable, Iterator, Optional, Protocol

import serial

from scale_lib import protocol
from scale_lib.errors import ChannelLost, ChannelNotOpen, LinkError
from scale_lib.models import LinkConfig

logger = logging.getLogger(__name__)


class Channel(Protocol):
    """Duplex byte channel (allows test doubles)."""

    name: str

    def open(self, config: LinkConfig) -> None:
        """Open with link parameters. Raises LinkError if rejected."""
        ...

    def close(self) -> None:
        """Close the channel. Idempotent."""
        ...

    def read(self, max_bytes: int, timeout: float) -> bytes:
        """Read up to max_bytes; b"" on timeout. Raises ChannelLost at end-of-stream."""
        ...

    def write(self, data: bytes) -> int:
        """Write bytes to the channel."""
        ...

    @property
    def is_open(self) -> bool:
        """Check if channel is open."""
        ...


class Deadline:
    """Point in time after which a timed wait gives up.

    Every bounded wait in the library (probe window, loopback window, read
    attempts) is expressed against one of these.
    """

    def __init__(self, seconds: float, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._expires_at = clock() + max(0.0, seconds)

    def remaining(self) -> float:
        return max(0.0, self._expires_at - self._clock())

    @property
    def expired(self) -> bool:
        return self._clock() >= self._expires_at

    def bound(self, timeout: float) -> float:
        """Clamp a per-operation timeout so it never outlives the deadline."""
        return min(timeout, self.remaining())


_BYTESIZES = {7: serial.SEVENBITS, 8: serial.EIGHTBITS}
_PARITIES = {"none": serial.PARITY_NONE, "even": serial.PARITY_EVEN, "odd": serial.PARITY_ODD}
_STOPBITS = {1: serial.STOPBITS_ONE, 2: serial.STOPBITS_TWO}


class SerialChannel:
    """Channel backed by a local serial port via pyserial."""

    def __init__(self, port: str) -> None:
        """Initialize channel for a port name.

        Args:
            port: Serial port device name (e.g., "/dev/ttyUSB0", "COM1")
        """
        self.name = port
        self._port: Optional[serial.Serial] = None

    def __repr__(self) -> str:
        return f"SerialChannel({self.name!r})"

    @property
    def is_open(self) -> bool:
        return self._port is not None and self._port.is_open

    def open(self, config: LinkConfig) -> None:
        """Open the port with the given link parameters.

        Raises:
            LinkError: If the port cannot be opened or rejects the parameters
        """
        if self.is_open:
            raise LinkError(f"{self.name} is already open")

        try:
            self._port = serial.Serial(
                port=self.name,
                baudrate=config.baud_rate,
                bytesize=_BYTESIZES[config.data_bits],
                parity=_PARITIES[config.parity],
                stopbits=_STOPBITS[config.stop_bits],
                timeout=protocol.READ_POLL_S,
                write_timeout=protocol.READ_POLL_S * 10,
                rtscts=False,
                dsrdtr=False,
                xonxoff=False,
            )
            logger.info(f"Opened serial port {self.name} at {config.label}")
        except (serial.SerialException, ValueError, OSError) as e:
            self._port = None
            raise LinkError(f"Failed to open {self.name} at {config.label}: {e}") from e

    def close(self) -> None:
        """Close the serial port (no-op if already closed)."""
        port, self._port = self._port, None
        if port is None:
            return
        try:
            if port.is_open:
                port.close()
                logger.info(f"Closed serial port {self.name}")
        except (serial.SerialException, OSError) as e:
            logger.warning(f"Error closing {self.name}: {e}")

    def set_signals(self, dtr: bool = True, rts: bool = True) -> None:
        """Assert modem control lines."""
        if not self.is_open:
            raise ChannelNotOpen(f"{self.name} is not open")
        assert self._port is not None
        try:
            self._port.dtr = dtr
            self._port.rts = rts
        except (serial.SerialException, OSError) as e:
            raise ChannelLost(f"Failed to set signals on {self.name}: {e}") from e

    def read(self, max_bytes: int, timeout: float) -> bytes:
        """Read whatever is available, waiting at most ``timeout`` seconds.

        Raises:
            ChannelLost: If the port is closed or the device went away
        """
        if not self.is_open:
            raise ChannelNotOpen(f"{self.name} is not open")
        assert self._port is not None

        # pyserial reconfigures the open port on every timeout assignment
        timeout = max(0.0, timeout)
        try:
            if self._port.timeout != timeout:
                self._port.timeout = timeout
            waiting = self._port.in_waiting
            return self._port.read(min(max_bytes, waiting) if waiting else 1)
        except (serial.SerialException, OSError) as e:
            raise ChannelLost(f"Failed to read from {self.name}: {e}") from e

    def write(self, data: bytes) -> int:
        """Write raw bytes and flush.

        Raises:
            ChannelLost: If the port is closed or the write fails
        """
        if not self.is_open:
            raise ChannelNotOpen(f"{self.name} is not open")
        assert self._port is not None

        try:
            sent = self._port.write(data)
            self._port.flush()
            logger.debug(f"Sent {sent} bytes to {self.name}: {data!r}")
            return sent or 0
        except (serial.SerialException, OSError) as e:
            raise ChannelLost(f"Failed to write to {self.name}: {e}") from e


class ChannelSession:
    """Single owner of one channel and its active configuration.

    Opening a new configuration always retires the current reader and closes
    the channel first; configurations are mutually exclusive.
    """

    def __init__(self, channel: Channel) -> None:
        """Initialize session.

        Args:
            channel: Object implementing the Channel protocol
                     (e.g., SerialChannel or a fake for testing)
        """
        self._channel = channel
        self._config: Optional[LinkConfig] = None
        self._last_seen: Optional[float] = None
        self._reader_generation = 0
        self._lock = threading.RLock()
        self.lost: Optional[ChannelLost] = None

    @property
    def channel(self) -> Channel:
        return self._channel

    @property
    def name(self) -> str:
        return self._channel.name

    @property
    def config(self) -> Optional[LinkConfig]:
        return self._config

    @property
    def is_open(self) -> bool:
        return self._config is not None and self._channel.is_open

    @property
    def last_seen(self) -> Optional[float]:
        """Monotonic time of the last valid telegram, None if never seen."""
        return self._last_seen

    def mark_seen(self, at: Optional[float] = None) -> None:
        """Record a valid telegram; the timestamp never moves backwards."""
        now = time.monotonic() if at is None else at
        with self._lock:
            if self._last_seen is None or now > self._last_seen:
                self._last_seen = now

    def open(self, config: LinkConfig) -> None:
        """Tear down any current configuration and reopen with ``config``.

        Raises:
            LinkError: If the channel rejects the parameters
        """
        with self._lock:
            self._teardown()
            time.sleep(protocol.REOPEN_DELAY_S)

            self._channel.open(config)
            self._config = config
            self._last_seen = None
            self.lost = None

            set_signals = getattr(self._channel, "set_signals", None)
            if set_signals is not None:
                try:
                    set_signals(dtr=True, rts=True)
                except ChannelLost as e:
                    logger.debug(f"Could not assert control lines on {self.name}: {e}")

            time.sleep(protocol.POST_OPEN_DELAY_S)
            logger.debug(f"Session on {self.name} opened with {config.label}")

    def close(self) -> None:
        """Release the reader and close the channel. Safe to call repeatedly."""
        with self._lock:
            self._teardown()

    def _teardown(self) -> None:
        self._reader_generation += 1
        self._config = None
        try:
            self._channel.close()
        except Exception as e:
            logger.warning(f"Error closing channel {self.name}: {e}")

    def write(self, data: bytes) -> int:
        if not self.is_open:
            raise ChannelNotOpen(f"Session on {self.name} is not open")
        return self._channel.write(data)

    def read_bytes(self, deadline: Deadline, max_bytes: int = 256) -> bytes:
        """Collect raw bytes until the deadline elapses.

        Raises:
            ChannelLost: If the channel goes away while reading
        """
        received = bytearray()
        while not deadline.expired:
            if not self.is_open:
                raise ChannelNotOpen(f"Session on {self.name} is not open")
            received.extend(self._channel.read(max_bytes, deadline.bound(protocol.READ_POLL_S)))
        return bytes(received)

    def chunks(
        self,
        keep_running: Callable[[], bool] = lambda: True,
        deadline: Optional[Deadline] = None,
        max_bytes: int = 256,
    ) -> Iterator[str]:
        """Yield ASCII-decoded text chunks from the channel.

        The stream ends when ``keep_running`` returns False, the deadline
        elapses, a newer reader takes over the channel, or the channel reports
        end-of-stream (recorded in ``self.lost``).
        """
        generation = self._reader_generation
        while keep_running() and generation == self._reader_generation:
            if deadline is not None and deadline.expired:
                return

            timeout = protocol.READ_POLL_S if deadline is None else deadline.bound(protocol.READ_POLL_S)
            try:
                data = self._channel.read(max_bytes, timeout)
            except ChannelLost as e:
                if generation == self._reader_generation:
                    self.lost = e
                    logger.warning(f"Channel {self.name} lost: {e}")
                return

            if data:
                yield data.decode("ascii", errors="replace")
