"""Link parameters, timing and telegram patterns for serial scale indicators.

Defaults are tuned for the indicators seen in the field: 1200 baud 7N1 with a
CR terminator is by far the most common, so it is enumerated first.
"""

import re
from typing import Final, Tuple

# ============================================================================
# Line Delimiters
# ============================================================================

CR: Final[str] = "\r"
CRLF: Final[str] = "\r\n"
LF: Final[str] = "\n"

DELIMITERS: Final[Tuple[str, ...]] = (CR, CRLF, LF)

DELIMITER_NAMES: Final[dict] = {CR: "CR", CRLF: "CRLF", LF: "LF"}

# ============================================================================
# Link Parameter Space (enumeration order is significant)
# ============================================================================

BAUD_RATES: Final[Tuple[int, ...]] = (1200, 9600, 2400, 4800, 19200)

# (data_bits, parity, stop_bits)
FRAMINGS: Final[Tuple[Tuple[int, str, int], ...]] = (
    (7, "none", 1),
    (8, "none", 1),
    (7, "even", 1),
    (7, "odd", 1),
    (8, "even", 1),
    (8, "none", 2),
)

VALID_DATA_BITS: Final[frozenset] = frozenset({7, 8})
VALID_PARITIES: Final[frozenset] = frozenset({"none", "even", "odd"})
VALID_STOP_BITS: Final[frozenset] = frozenset({1, 2})

PARITY_LETTERS: Final[dict] = {"none": "N", "even": "E", "odd": "O"}

# ============================================================================
# Timing Constants (seconds)
# ============================================================================

# Listening window per candidate configuration
PROBE_WINDOW_S: Final[float] = 1.6

# Upper bound for a single channel read; keeps stop flags responsive
READ_POLL_S: Final[float] = 0.1

# Guard pauses around re-opening a channel (avoid hot open/close loops)
REOPEN_DELAY_S: Final[float] = 0.06
POST_OPEN_DELAY_S: Final[float] = 0.04

# Display resets to zero once no valid telegram arrived for this long
IDLE_TIMEOUT_S: Final[float] = 0.8

# Watchdog polling interval
WATCHDOG_INTERVAL_S: Final[float] = 0.12

# Join timeout for reader/watchdog threads
THREAD_JOIN_TIMEOUT_S: Final[float] = 2.0

# ============================================================================
# Loopback Test
# ============================================================================

LOOPBACK_BAUD: Final[int] = 9600
LOOPBACK_ATTEMPTS: Final[int] = 3
LOOPBACK_WINDOW_S: Final[float] = 0.25
LOOPBACK_PAUSE_S: Final[float] = 0.08
LOOPBACK_TOKEN_PREFIX: Final[str] = "LBK"

# ============================================================================
# Display / Reporting
# ============================================================================

SMOOTHING_WINDOW: Final[int] = 3
LOG_CAPACITY: Final[int] = 120
WEIGHT_PLACEHOLDER: Final[str] = "-"
WEIGHT_DECIMALS: Final[int] = 3

# ============================================================================
# Telegram Decoding
# ============================================================================

# Bare/flagged fixed-digit values are grams by default; 0.001 converts to kg
DEFAULT_SCALE_FACTOR: Final[float] = 0.001

DEFAULT_FLAG_LETTERS: Final[str] = "PNTBR"  # P=gross, N=net, T=tare
DEFAULT_PREFIX_MARKER: Final[str] = "D"

FIXED_DIGITS: Final[int] = 5
PREFIXED_DIGITS: Final[int] = 6
PREFIXED_DIVISOR: Final[int] = 1000  # grams -> kilograms


def make_flagged_pattern(flag_letters: str) -> "re.Pattern[str]":
    """Build the flagged fixed-digit pattern: <flag>[ ]DDDDD

    Args:
        flag_letters: Allowed status letters (e.g. "PNTBR")

    Returns:
        Compiled pattern with groups (flag, digits)
    """
    return re.compile(
        rf"^([{re.escape(flag_letters)}]) ?(\d{{{FIXED_DIGITS}}})$"
    )


def make_prefixed_pattern(marker: str) -> "re.Pattern[str]":
    """Build the explicit-prefix pattern: <marker>DDDDDD (case-insensitive)."""
    return re.compile(
        rf"^{re.escape(marker)}(\d{{{PREFIXED_DIGITS}}})$", re.IGNORECASE
    )


RE_BARE_FIXED: Final[re.Pattern[str]] = re.compile(rf"^(\d{{{FIXED_DIGITS}}})$")

# First signed decimal anywhere in the line; comma or period separator
RE_GENERIC_DECIMAL: Final[re.Pattern[str]] = re.compile(
    r"([+\-]?\d{1,6}(?:[.,]\d{1,3})?)"
)
