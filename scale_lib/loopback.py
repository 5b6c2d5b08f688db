"""Loopback self-test: write a tagged token and look for its echo."""

import logging
import random
import threading
from typing import Optional

from scale_lib import protocol
from scale_lib.errors import ScaleError
from scale_lib.models import LOOPBACK_CONFIG, LinkConfig
from scale_lib.status import StatusReporter
from scale_lib.transport import ChannelSession, Deadline

logger = logging.getLogger(__name__)


def make_token(rng: Optional[random.Random] = None) -> str:
    """Build a unique loopback token, e.g. "LBK042917"."""
    source = rng or random
    return f"{protocol.LOOPBACK_TOKEN_PREFIX}{source.randrange(1_000_000):06d}"


def hexdump(data: bytes) -> str:
    return " ".join(f"{b:02x}" for b in data)


class LoopbackTester:
    """Confirms wiring when no telemetry parsed.

    Success means the exact token bytes came back, which happens with a
    TX/RX jumper or a device that echoes. It does not prove a scale is there.
    """

    def __init__(
        self,
        config: LinkConfig = LOOPBACK_CONFIG,
        attempts: int = protocol.LOOPBACK_ATTEMPTS,
        window_s: float = protocol.LOOPBACK_WINDOW_S,
        pause_s: float = protocol.LOOPBACK_PAUSE_S,
        reporter: Optional[StatusReporter] = None,
        rng: Optional[random.Random] = None,
    ) -> None:
        if attempts < 1:
            raise ValueError(f"attempts must be >= 1, got {attempts}")

        self.config = config
        self.attempts = attempts
        self.window_s = window_s
        self.pause_s = pause_s
        self.reporter = reporter or StatusReporter()
        self._rng = rng

    def run(self, session: ChannelSession, cancel: Optional[threading.Event] = None) -> bool:
        """Run the loopback test. Never raises.

        Args:
            session: Channel session; reopened at the tolerant loopback config
            cancel: When set, no further attempts are made

        Returns:
            True if the token echo was observed within the allowed attempts
        """
        try:
            return self._run(session, cancel or threading.Event())
        except ScaleError as e:
            logger.warning(f"Loopback test on {session.name} failed: {e}")
            self.reporter.log(f"[loopback] error: {e}")
            return False
        except Exception as e:
            logger.error(f"Loopback test on {session.name} crashed: {e}", exc_info=True)
            self.reporter.log(f"[loopback] error: {e}")
            return False

    def _run(self, session: ChannelSession, cancel: threading.Event) -> bool:
        if cancel.is_set():
            return False
        session.open(self.config)

        token = make_token(self._rng)
        expected = token.encode("ascii")
        payload = expected + self.config.delimiter.encode("ascii")

        for attempt in range(1, self.attempts + 1):
            session.write(payload)
            received = session.read_bytes(Deadline(self.window_s))

            if received:
                self.reporter.log(f"[loopback] RX HEX {hexdump(received)}")
                if expected in received:
                    logger.info(f"Loopback echo confirmed on {session.name} (attempt {attempt})")
                    return True
            else:
                self.reporter.log(f"[loopback] no bytes on attempt {attempt}")

            # Event.wait doubles as a cancellable pause
            if attempt < self.attempts and cancel.wait(self.pause_s):
                logger.info(f"Loopback test on {session.name} cancelled")
                return False

        logger.info(f"No loopback echo on {session.name} after {self.attempts} attempts")
        self.reporter.log("[loopback] no echo received")
        return False
