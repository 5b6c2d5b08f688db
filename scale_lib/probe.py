"""Link parameter search: candidate enumeration and per-candidate probing."""

import itertools
import logging
import threading
from typing import Iterator, Optional, Sequence, Tuple

from scale_lib import protocol
from scale_lib.errors import LinkError
from scale_lib.framing import LineFramer
from scale_lib.models import LinkConfig, ProbeResult
from scale_lib.parsing import TelegramDecoder
from scale_lib.status import StatusReporter
from scale_lib.transport import ChannelSession, Deadline

logger = logging.getLogger(__name__)


class ParameterSpace:
    """Ordered, finite, restartable sequence of LinkConfig candidates.

    Baud rate is the outer loop, framing preset the middle loop and delimiter
    the inner loop. The order decides which configuration wins when a link
    produces plausible garbage under several of them.
    """

    def __init__(
        self,
        baud_rates: Sequence[int] = protocol.BAUD_RATES,
        framings: Sequence[Tuple[int, str, int]] = protocol.FRAMINGS,
        delimiters: Sequence[str] = protocol.DELIMITERS,
    ) -> None:
        if not baud_rates or not framings or not delimiters:
            raise ValueError("baud_rates, framings and delimiters must be non-empty")

        self._baud_rates = tuple(baud_rates)
        self._framings = tuple(framings)
        self._delimiters = tuple(delimiters)

        # Validate eagerly so a bad preset fails at construction, not mid-search
        self._candidates = tuple(self._enumerate())

    def _enumerate(self) -> Iterator[LinkConfig]:
        for baud, (data_bits, parity, stop_bits), delimiter in itertools.product(
            self._baud_rates, self._framings, self._delimiters
        ):
            yield LinkConfig(
                baud_rate=baud,
                data_bits=data_bits,  # type: ignore[arg-type]
                parity=parity,  # type: ignore[arg-type]
                stop_bits=stop_bits,  # type: ignore[arg-type]
                delimiter=delimiter,
            )

    def __iter__(self) -> Iterator[LinkConfig]:
        return iter(self._candidates)

    def __len__(self) -> int:
        return len(self._candidates)


class ProbeEngine:
    """Finds a link configuration under which the channel yields a telegram."""

    def __init__(
        self,
        decoder: Optional[TelegramDecoder] = None,
        space: Optional[ParameterSpace] = None,
        window_s: float = protocol.PROBE_WINDOW_S,
        reporter: Optional[StatusReporter] = None,
    ) -> None:
        """Initialize probe engine.

        Args:
            decoder: Telegram decoder. Defaults to TelegramDecoder().
            space: Candidate configurations. Defaults to ParameterSpace().
            window_s: Listening window per candidate in seconds.
            reporter: Status sink for progress and diagnostics.
        """
        if window_s <= 0:
            raise ValueError(f"window_s must be positive, got {window_s}")

        self.decoder = decoder or TelegramDecoder()
        self.space = space or ParameterSpace()
        self.window_s = window_s
        self.reporter = reporter or StatusReporter()

    def probe(
        self,
        session: ChannelSession,
        config: LinkConfig,
        cancel: Optional[threading.Event] = None,
    ) -> ProbeResult:
        """Listen under one configuration until a telegram decodes or the window ends.

        Args:
            session: Channel session; any previous configuration is torn down
            config: Candidate to test
            cancel: When set, listening stops at the next read poll

        Returns:
            Matched ProbeResult with the first decoded telegram, or unmatched
        """
        if cancel is not None and cancel.is_set():
            return ProbeResult(matched=False, config=config)

        try:
            session.open(config)
        except LinkError as e:
            logger.warning(f"Config {config.label} rejected on {session.name}: {e}")
            self.reporter.log(f"[probe] {config.label} rejected: {e}")
            return ProbeResult(matched=False, config=config)

        framer = LineFramer(config.delimiter)
        deadline = Deadline(self.window_s)

        # The partial tail is not flushed at window end: a truncated frame
        # would otherwise decode as a bogus generic value.
        keep_running = (lambda: not cancel.is_set()) if cancel is not None else (lambda: True)
        for chunk in session.chunks(keep_running=keep_running, deadline=deadline):
            for line in framer.feed(chunk):
                telegram = self.decoder.decode(line)
                if not telegram.raw_line:
                    continue
                if telegram.matched:
                    session.mark_seen()
                    logger.info(
                        f"Detected {config.label} on {session.name}: "
                        f"{telegram.raw_line!r} -> {telegram.value}"
                    )
                    return ProbeResult(matched=True, config=config, sample=telegram)

        if session.lost is not None:
            self.reporter.log(f"[probe] {config.label} lost channel: {session.lost}")
        return ProbeResult(matched=False, config=config)

    def auto_detect(
        self, session: ChannelSession, cancel: Optional[threading.Event] = None
    ) -> Optional[ProbeResult]:
        """Try every candidate in order; return the first match.

        Args:
            session: Channel session to probe
            cancel: When set, the search stops and the channel is closed

        Returns:
            First matched ProbeResult, or None when the space is exhausted
            or the search was cancelled
        """
        for config in self.space:
            if cancel is not None and cancel.is_set():
                session.close()
                logger.info(f"Auto-detection on {session.name} cancelled")
                self.reporter.log(f"[probe] cancelled on {session.name}")
                return None

            self.reporter.set_status(f"Probing {config.label}…")
            result = self.probe(session, config, cancel)
            if result.matched:
                assert result.sample is not None
                self.reporter.set_raw_line(result.sample.raw_line)
                self.reporter.set_weight(result.sample.value)
                self.reporter.log(
                    f"✔ Detected {config.label} | RAW={result.sample.raw_line!r} "
                    f"weight={result.sample.value}"
                )
                return result

        session.close()
        logger.info(f"Parameter space exhausted on {session.name} ({len(self.space)} candidates)")
        self.reporter.log(f"[probe] no telemetry on {session.name} after {len(self.space)} candidates")
        return None
