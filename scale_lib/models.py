"""Data models for the scale link library."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Literal, Optional

from scale_lib import protocol


class TelegramFormat(Enum):
    """Which decoding rule matched a telegram."""

    FLAGGED_FIXED = "flagged_fixed"
    BARE_FIXED = "bare_fixed"
    PREFIXED_FIXED = "prefixed_fixed"
    GENERIC_DECIMAL = "generic_decimal"


class SupervisorState(Enum):
    """Supervisor lifecycle states."""

    IDLE = "idle"
    ENUMERATING = "enumerating"
    AWAITING_AUTHORIZATION = "awaiting_authorization"
    PROBING = "probing"
    LOOPBACK_TESTING = "loopback_testing"
    ACTIVE = "active"
    DISCONNECTED = "disconnected"
    ERROR = "error"


class ActiveMode(Enum):
    """What kind of link the supervisor holds while ACTIVE."""

    TELEMETRY = "telemetry"
    LOOPBACK = "loopback"


@dataclass(frozen=True)
class LinkConfig:
    """Serial link parameters for one candidate configuration.

    Attributes:
        baud_rate: Line speed in baud.
        data_bits: 7 or 8.
        parity: "none", "even" or "odd".
        stop_bits: 1 or 2.
        delimiter: Line terminator, one of CR, CRLF, LF.
    """

    baud_rate: int
    data_bits: Literal[7, 8]
    parity: Literal["none", "even", "odd"]
    stop_bits: Literal[1, 2]
    delimiter: str = protocol.CR

    def __post_init__(self) -> None:
        """Validate link parameters."""
        if self.baud_rate <= 0:
            raise ValueError(f"baud_rate must be positive, got {self.baud_rate}")
        if self.data_bits not in protocol.VALID_DATA_BITS:
            raise ValueError(f"data_bits must be 7 or 8, got {self.data_bits}")
        if self.parity not in protocol.VALID_PARITIES:
            raise ValueError(
                f"parity must be one of {sorted(protocol.VALID_PARITIES)}, got {self.parity!r}"
            )
        if self.stop_bits not in protocol.VALID_STOP_BITS:
            raise ValueError(f"stop_bits must be 1 or 2, got {self.stop_bits}")
        if self.delimiter not in protocol.DELIMITERS:
            raise ValueError(f"Unsupported delimiter {self.delimiter!r}")

    @property
    def framing(self) -> str:
        """Short framing name, e.g. "7N1"."""
        return f"{self.data_bits}{protocol.PARITY_LETTERS[self.parity]}{self.stop_bits}"

    @property
    def label(self) -> str:
        """Human-readable label, e.g. "1200 7N1 CR"."""
        return f"{self.baud_rate} {self.framing} {protocol.DELIMITER_NAMES[self.delimiter]}"


LOOPBACK_CONFIG = LinkConfig(
    baud_rate=protocol.LOOPBACK_BAUD,
    data_bits=8,
    parity="none",
    stop_bits=1,
    delimiter=protocol.CR,
)


@dataclass(frozen=True)
class Telegram:
    """One framed line from the scale and its decoding outcome.

    Attributes:
        raw_line: Trimmed line text.
        value: Normalized weight, or None when no rule matched.
        format_tag: Rule that produced the value.
        flag: Optional scale status letter (P=gross, N=net, T=tare, ...).
        received_at: UTC timestamp when the line was decoded.
    """

    raw_line: str
    value: Optional[float] = None
    format_tag: Optional[TelegramFormat] = None
    flag: Optional[str] = None
    received_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def matched(self) -> bool:
        return self.value is not None


@dataclass(frozen=True)
class ProbeResult:
    """Outcome of probing one link configuration."""

    matched: bool
    config: LinkConfig
    sample: Optional[Telegram] = None


@dataclass(frozen=True)
class StatusSnapshot:
    """Point-in-time view of what the core reports to the presentation layer."""

    status: str
    state: SupervisorState
    active: bool
    config_label: str
    raw_line: str
    weight: Optional[float]
    channel: Optional[str]
    updated_at: datetime

    @property
    def weight_text(self) -> str:
        if self.weight is None:
            return protocol.WEIGHT_PLACEHOLDER
        return f"{self.weight:.{protocol.WEIGHT_DECIMALS}f}"

    def to_dict(self) -> dict:
        return {
            "status": self.status,
            "state": self.state.value,
            "active": self.active,
            "config_label": self.config_label,
            "raw_line": self.raw_line,
            "weight": self.weight,
            "weight_text": self.weight_text,
            "channel": self.channel,
            "updated_at": self.updated_at.isoformat(),
        }
