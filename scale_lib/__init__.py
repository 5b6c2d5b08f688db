"""
scale_lib - Auto-detecting reader for serial scale indicators.

Discovers baud rate, framing, line terminator and telegram format, then
streams normalized weights with idle detection and hot-plug recovery.
"""

from scale_lib.controller import Supervisor
from scale_lib.errors import ChannelLost, ChannelNotOpen, LinkError, ScaleError
from scale_lib.framing import LineFramer
from scale_lib.loopback import LoopbackTester
from scale_lib.models import (
    ActiveMode,
    LinkConfig,
    ProbeResult,
    StatusSnapshot,
    SupervisorState,
    Telegram,
    TelegramFormat,
)
from scale_lib.parsing import DecoderSettings, TelegramDecoder, decode_line
from scale_lib.ports import PortAuthorization, PortWatcher
from scale_lib.probe import ParameterSpace, ProbeEngine
from scale_lib.session import ReadSession
from scale_lib.status import StatusReporter
from scale_lib.transport import ChannelSession, Deadline, SerialChannel

__version__ = "0.1.0"

__all__ = [
    "Supervisor",
    "ProbeEngine",
    "ParameterSpace",
    "LoopbackTester",
    "ReadSession",
    "LineFramer",
    "TelegramDecoder",
    "DecoderSettings",
    "decode_line",
    "ChannelSession",
    "SerialChannel",
    "Deadline",
    "PortAuthorization",
    "PortWatcher",
    "StatusReporter",
    "LinkConfig",
    "Telegram",
    "TelegramFormat",
    "ProbeResult",
    "StatusSnapshot",
    "SupervisorState",
    "ActiveMode",
    "ScaleError",
    "LinkError",
    "ChannelLost",
    "ChannelNotOpen",
]
