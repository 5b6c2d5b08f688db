"""Supervisor: connect / probe / read / recover lifecycle for one scale."""

import logging
import queue
import threading
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional, Protocol

from scale_lib import protocol
from scale_lib.errors import LinkError
from scale_lib.loopback import LoopbackTester
from scale_lib.models import ActiveMode, LinkConfig, SupervisorState
from scale_lib.parsing import TelegramDecoder
from scale_lib.probe import ProbeEngine
from scale_lib.session import ReadSession
from scale_lib.status import StatusReporter
from scale_lib.transport import Channel, ChannelSession

logger = logging.getLogger(__name__)


class Authorization(Protocol):
    """Grants access to channels (allows test doubles)."""

    def list_authorized_channels(self) -> List[Channel]:
        """Channels the user already granted."""
        ...

    def request_authorization(self, hint: Optional[str] = None) -> Optional[Channel]:
        """Ask for a new channel. Only called in response to a user gesture."""
        ...


class EventKind(Enum):
    """Inbound supervisor events."""

    STARTUP = "startup"
    CONNECT = "connect"
    DISCONNECT = "disconnect"
    AUTHORIZE = "authorize"
    SESSION_ENDED = "session_ended"
    SHUTDOWN = "shutdown"


@dataclass(frozen=True)
class SupervisorEvent:
    kind: EventKind
    channel: Optional[str] = None


class Supervisor:
    """Sequential, non-reentrant state machine driving detection and reading.

    All work happens on one worker thread consuming an event queue, so at most
    one channel is probed or read at a time. Every failure has a recovery
    transition; nothing propagates out of the worker.
    """

    def __init__(
        self,
        authorization: Authorization,
        decoder: Optional[TelegramDecoder] = None,
        probe_engine: Optional[ProbeEngine] = None,
        loopback: Optional[LoopbackTester] = None,
        reporter: Optional[StatusReporter] = None,
        idle_timeout_s: float = protocol.IDLE_TIMEOUT_S,
        smoothing: Optional[int] = protocol.SMOOTHING_WINDOW,
    ) -> None:
        """Initialize supervisor.

        Args:
            authorization: Source of authorized channels
            decoder: Telegram decoder shared by probing and reading
            probe_engine: Parameter search. Defaults to ProbeEngine(decoder).
            loopback: Wiring self-test. Defaults to LoopbackTester().
            reporter: Presentation sink
            idle_timeout_s: Read session idle threshold
            smoothing: Read session moving-average size (None disables)
        """
        self._authorization = authorization
        self._reporter = reporter or StatusReporter()
        self._decoder = decoder or (probe_engine.decoder if probe_engine else TelegramDecoder())
        self._probe = probe_engine or ProbeEngine(decoder=self._decoder, reporter=self._reporter)
        self._loopback = loopback or LoopbackTester(reporter=self._reporter)
        self._idle_timeout_s = idle_timeout_s
        self._smoothing = smoothing

        self._events: "queue.Queue[SupervisorEvent]" = queue.Queue()
        self._worker: Optional[threading.Thread] = None
        self._cancel = threading.Event()

        self._state = SupervisorState.IDLE
        self._state_changed = threading.Condition()
        self.history: List[SupervisorState] = [SupervisorState.IDLE]

        self._session: Optional[ChannelSession] = None
        self._read_session: Optional[ReadSession] = None
        self._active_mode: Optional[ActiveMode] = None
        self._active_config: Optional[LinkConfig] = None

    # ========================================================================
    # Public API
    # ========================================================================

    def start(self) -> None:
        """Start the worker thread and trigger the initial enumeration.

        Raises:
            RuntimeError: If already started
        """
        if self._worker is not None and self._worker.is_alive():
            raise RuntimeError("Supervisor already running")

        self._cancel.clear()
        self._worker = threading.Thread(target=self._run, name="ScaleSupervisor", daemon=True)
        self._worker.start()
        self._post(SupervisorEvent(EventKind.STARTUP))

    def shutdown(self, timeout: float = 10.0) -> bool:
        """Tear down and stop the worker. Safe to call more than once.

        A running probe or loopback test is cancelled at its next poll.

        Returns:
            True once the worker has exited. False if it is still alive after
            ``timeout``; the supervisor then still reports as running.
        """
        if self._worker is None:
            self._teardown()
            return True

        self._cancel.set()
        self._post(SupervisorEvent(EventKind.SHUTDOWN))
        self._worker.join(timeout=timeout)
        if self._worker.is_alive():
            logger.warning(f"Supervisor worker did not stop within {timeout}s")
            return False

        self._worker = None
        return True

    def notify_connect(self, channel: Optional[str] = None) -> None:
        """Hot-plug: a channel appeared."""
        self._post(SupervisorEvent(EventKind.CONNECT, channel))

    def notify_disconnect(self, channel: Optional[str] = None) -> None:
        """Hot-plug: a channel went away."""
        self._post(SupervisorEvent(EventKind.DISCONNECT, channel))

    def authorize(self, hint: Optional[str] = None) -> None:
        """Forward a user authorization gesture.

        Acted on only while AWAITING_AUTHORIZATION; the core never requests
        authorization on its own.
        """
        self._post(SupervisorEvent(EventKind.AUTHORIZE, hint))

    @property
    def state(self) -> SupervisorState:
        return self._state

    @property
    def active_mode(self) -> Optional[ActiveMode]:
        return self._active_mode

    @property
    def active_config(self) -> Optional[LinkConfig]:
        return self._active_config

    @property
    def active_channel(self) -> Optional[str]:
        return self._session.name if self._session is not None else None

    @property
    def read_session(self) -> Optional[ReadSession]:
        return self._read_session

    @property
    def reporter(self) -> StatusReporter:
        return self._reporter

    def is_running(self) -> bool:
        return self._worker is not None and self._worker.is_alive()

    def wait_for_state(self, state: SupervisorState, timeout: float) -> bool:
        """Block until the supervisor is in ``state`` or the timeout elapses."""
        with self._state_changed:
            return self._state_changed.wait_for(lambda: self._state == state, timeout=timeout)

    def wait_until_settled(self, timeout: float) -> bool:
        """Block until every event queued so far has been processed."""
        done = threading.Event()
        self._events.put(_FenceEvent(done))  # type: ignore[arg-type]
        return done.wait(timeout)

    # ========================================================================
    # Internal: Event Loop
    # ========================================================================

    def _post(self, event: SupervisorEvent) -> None:
        logger.debug(f"Queued event {event.kind.value} ({event.channel})")
        self._events.put(event)

    def _run(self) -> None:
        logger.info(f"Supervisor loop started (thread {threading.get_ident()})")
        while True:
            event = self._events.get()
            if isinstance(event, _FenceEvent):
                event.done.set()
                continue
            if event.kind is EventKind.SHUTDOWN:
                self._teardown()
                self._set_state(SupervisorState.IDLE, "Stopped")
                break

            try:
                self._handle(event)
            except Exception as e:
                logger.error(f"Error handling {event.kind.value}: {e}", exc_info=True)
                self._reporter.log(f"[supervisor] {e}")
                self._teardown()
                self._set_state(SupervisorState.ERROR, f"Error: {e}")

        logger.info("Supervisor loop stopped")

    def _handle(self, event: SupervisorEvent) -> None:
        kind = event.kind

        if kind in (EventKind.STARTUP, EventKind.CONNECT):
            if self._state is SupervisorState.ACTIVE:
                logger.debug(f"Ignoring {kind.value} while active")
                return
            if kind is EventKind.CONNECT:
                self._reporter.log(f"[event] serial device connected ({event.channel})")
            self._enumerate()

        elif kind is EventKind.AUTHORIZE:
            if self._state is not SupervisorState.AWAITING_AUTHORIZATION:
                logger.debug(f"Ignoring authorization gesture in state {self._state.value}")
                return
            self._set_state(SupervisorState.AWAITING_AUTHORIZATION, "Requesting permission…")
            channel = self._authorization.request_authorization(event.channel)
            if channel is None:
                self._set_state(SupervisorState.AWAITING_AUTHORIZATION, "Permission required")
                return
            self._set_state(SupervisorState.ENUMERATING, f"Authorized {channel.name}")
            if not self._try_channel(channel) and not self._cancel.is_set():
                self._set_state(
                    SupervisorState.IDLE, "No scale or loopback detected on authorized port"
                )

        elif kind is EventKind.DISCONNECT:
            self._reporter.log(f"[event] serial device disconnected ({event.channel})")
            if self._state is not SupervisorState.ACTIVE:
                return
            if event.channel is not None and event.channel != self.active_channel:
                return
            self._disconnected("Disconnected")

        elif kind is EventKind.SESSION_ENDED:
            if self._state is SupervisorState.ACTIVE and event.channel == self.active_channel:
                self._disconnected("Disconnected (end of stream)")

    # ========================================================================
    # Internal: Transitions
    # ========================================================================

    def _enumerate(self) -> None:
        self._set_state(SupervisorState.ENUMERATING, "Looking for authorized ports…")
        channels = self._authorization.list_authorized_channels()

        if not channels:
            self._set_state(SupervisorState.AWAITING_AUTHORIZATION, "Permission required")
            self._reporter.log("[supervisor] no authorized ports; waiting for user authorization")
            return

        for channel in channels:
            if self._try_channel(channel) or self._cancel.is_set():
                return

        self._set_state(SupervisorState.IDLE, "No scale or loopback detected on authorized ports")

    def _try_channel(self, channel: Channel) -> bool:
        session = ChannelSession(channel)
        self._session = session
        self._reporter.set_channel(channel.name)

        self._set_state(SupervisorState.PROBING, f"Auto-detecting on {channel.name}…")
        result = self._probe.auto_detect(session, self._cancel)
        if self._cancel.is_set():
            self._teardown()
            return False
        if result is not None:
            try:
                self._start_reading(session, result.config)
                return True
            except LinkError as e:
                logger.warning(f"Could not start reading on {channel.name}: {e}")
                self._reporter.log(f"[supervisor] start reading failed: {e}")
                self._teardown()
                return False

        self._set_state(SupervisorState.LOOPBACK_TESTING, "No scale data. Trying loopback…")
        if self._loopback.run(session, self._cancel):
            self._active_mode = ActiveMode.LOOPBACK
            self._active_config = self._loopback.config
            label = f"Loopback @{self._loopback.config.baud_rate}"
            self._reporter.set_active(True, label)
            self._reporter.set_raw_line("ECHO OK")
            self._reporter.set_weight(None)
            self._reporter.log("[loopback] echo OK; connect the scale for live readings")
            self._set_state(SupervisorState.ACTIVE, "Loopback detected (echo OK). Port works.")
            return True

        self._reporter.log(f"[loopback] no echo on {channel.name}")
        self._teardown()
        return False

    def _start_reading(self, session: ChannelSession, config: LinkConfig) -> None:
        read_session = ReadSession(
            session,
            config,
            decoder=self._decoder,
            reporter=self._reporter,
            idle_timeout_s=self._idle_timeout_s,
            smoothing=self._smoothing,
            on_end=self._on_session_end,
        )
        read_session.start()

        self._read_session = read_session
        self._active_mode = ActiveMode.TELEMETRY
        self._active_config = config
        self._reporter.set_active(True, config.label)
        self._set_state(SupervisorState.ACTIVE, "Active (reading)")

    def _on_session_end(self, read_session: ReadSession) -> None:
        # Called on the reader thread; hand over to the worker
        self._post(SupervisorEvent(EventKind.SESSION_ENDED, read_session.session.name))

    def _disconnected(self, status: str) -> None:
        self._teardown()
        self._set_state(SupervisorState.DISCONNECTED, status)
        self._set_state(SupervisorState.IDLE, status)

    def _teardown(self) -> None:
        """Stop the reader and close the channel. Idempotent."""
        if self._read_session is not None:
            self._read_session.stop()
            self._read_session = None
        if self._session is not None:
            self._session.close()
            self._session = None
        self._active_mode = None
        self._active_config = None
        self._reporter.reset_display()

    def _set_state(self, state: SupervisorState, status: str) -> None:
        with self._state_changed:
            if state is not self._state:
                logger.info(f"Supervisor {self._state.value} -> {state.value}")
                self.history.append(state)
            self._state = state
            self._state_changed.notify_all()
        self._reporter.set_status(status, state)


@dataclass(frozen=True)
class _FenceEvent:
    done: threading.Event
