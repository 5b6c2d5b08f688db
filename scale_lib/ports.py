"""Port authorization and hot-plug notification backed by pyserial's port listing."""

import logging
import threading
from typing import Callable, Iterable, List, Optional, Set

from serial.tools import list_ports

from scale_lib.transport import Channel, SerialChannel

logger = logging.getLogger(__name__)


def available_ports() -> List[str]:
    """Device names of the serial ports currently present."""
    return sorted(p.device for p in list_ports.comports())


class PortAuthorization:
    """Allow-list of serial ports the core may open.

    A port is only added to the list through ``request_authorization``, which
    the supervisor calls in response to a user gesture.
    """

    def __init__(
        self,
        allowed: Optional[Iterable[str]] = None,
        lister: Callable[[], List[str]] = available_ports,
    ) -> None:
        """Initialize authorization.

        Args:
            allowed: Port names granted up front (e.g. from configuration)
            lister: Returns currently present port names
        """
        self._allowed: List[str] = list(dict.fromkeys(allowed or []))
        self._lister = lister
        self._lock = threading.Lock()

    @property
    def allowed(self) -> List[str]:
        with self._lock:
            return list(self._allowed)

    def list_authorized_channels(self) -> List[Channel]:
        """Authorized ports that are currently present, in grant order."""
        present = set(self._lister())
        with self._lock:
            return [SerialChannel(name) for name in self._allowed if name in present]

    def request_authorization(self, hint: Optional[str] = None) -> Optional[Channel]:
        """Grant access to a port.

        Args:
            hint: Port the user picked. Without one, the first present port
                  that is not yet authorized is granted.

        Returns:
            Channel for the granted port, or None if nothing can be granted
        """
        present = self._lister()
        with self._lock:
            if hint is not None:
                if hint not in present:
                    logger.warning(f"Requested port {hint} is not present")
                    return None
                name = hint
            else:
                candidates = [p for p in present if p not in self._allowed]
                if not candidates:
                    logger.info("No unauthorized ports available to grant")
                    return None
                name = candidates[0]

            if name not in self._allowed:
                self._allowed.append(name)
            logger.info(f"Authorized port {name}")
            return SerialChannel(name)


class PortWatcher:
    """Polls the port list and reports appearing / disappearing ports."""

    def __init__(
        self,
        on_connect: Callable[[str], None],
        on_disconnect: Callable[[str], None],
        interval_s: float = 1.0,
        lister: Callable[[], List[str]] = available_ports,
    ) -> None:
        self._on_connect = on_connect
        self._on_disconnect = on_disconnect
        self._interval_s = interval_s
        self._lister = lister
        self._known: Set[str] = set()
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._known = set(self._lister())
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._loop, name="PortWatcher", daemon=True)
        self._thread.start()
        logger.debug(f"Port watcher started, known ports: {sorted(self._known)}")

    def stop(self) -> None:
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout=self._interval_s * 2 + 1.0)
            self._thread = None

    def poll(self) -> None:
        """Diff the port list once and emit events."""
        current = set(self._lister())
        for name in sorted(current - self._known):
            logger.info(f"Serial port appeared: {name}")
            self._on_connect(name)
        for name in sorted(self._known - current):
            logger.info(f"Serial port disappeared: {name}")
            self._on_disconnect(name)
        self._known = current

    def _loop(self) -> None:
        while not self._stop_event.wait(timeout=self._interval_s):
            try:
                self.poll()
            except Exception as e:
                logger.error(f"Error polling serial ports: {e}", exc_info=True)
