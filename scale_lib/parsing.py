"""Telegram decoding: one framed line in, one normalized weight (or a miss) out.

Vendor differences are data in a rule table rather than separate code paths.
Rules are tried most specific first, most permissive last.
"""

import logging
import math
import re
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Tuple

from scale_lib import protocol
from scale_lib.models import Telegram, TelegramFormat

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DecoderSettings:
    """Per-deployment decoding assumptions.

    Attributes:
        scale_factor: Multiplier for fixed-digit readings (0.001 = grams to kg).
        bare_digits_are_grams: Apply scale_factor to bare 5-digit readings. When
            False they are taken as already scaled.
        prefix_marker: Marker letter of the explicit-prefix format (D025500).
        flag_letters: Status letters accepted by the flagged format.
    """

    scale_factor: float = protocol.DEFAULT_SCALE_FACTOR
    bare_digits_are_grams: bool = True
    prefix_marker: str = protocol.DEFAULT_PREFIX_MARKER
    flag_letters: str = protocol.DEFAULT_FLAG_LETTERS

    def __post_init__(self) -> None:
        if not math.isfinite(self.scale_factor) or self.scale_factor <= 0:
            raise ValueError(f"scale_factor must be a positive number, got {self.scale_factor}")
        if not self.prefix_marker:
            raise ValueError("prefix_marker must not be empty")
        if not self.flag_letters:
            raise ValueError("flag_letters must not be empty")


# (value, flag) or None
RuleResult = Optional[Tuple[float, Optional[str]]]


@dataclass(frozen=True)
class DecodeRule:
    """One entry of the decoder rule table."""

    format_tag: TelegramFormat
    pattern: "re.Pattern[str]"
    convert: Callable[["re.Match[str]"], Tuple[float, Optional[str]]]
    search: bool = field(default=False)

    def apply(self, line: str) -> RuleResult:
        match = self.pattern.search(line) if self.search else self.pattern.match(line)
        if not match:
            return None
        try:
            value, flag = self.convert(match)
        except (ValueError, OverflowError):
            return None
        if not math.isfinite(value):
            return None
        return value, flag


class TelegramDecoder:
    """Decodes trimmed lines under a fixed-priority rule table."""

    def __init__(self, settings: Optional[DecoderSettings] = None) -> None:
        """Initialize decoder.

        Args:
            settings: Decoding assumptions. Defaults to DecoderSettings().
        """
        self._settings = settings or DecoderSettings()
        self._rules = self._build_rules(self._settings)

    @property
    def settings(self) -> DecoderSettings:
        return self._settings

    @property
    def rules(self) -> List[DecodeRule]:
        return list(self._rules)

    @staticmethod
    def _build_rules(settings: DecoderSettings) -> List[DecodeRule]:
        factor = settings.scale_factor
        bare_factor = factor if settings.bare_digits_are_grams else 1.0

        return [
            DecodeRule(
                TelegramFormat.FLAGGED_FIXED,
                protocol.make_flagged_pattern(settings.flag_letters),
                lambda m: (int(m.group(2)) * factor, m.group(1)),
            ),
            DecodeRule(
                TelegramFormat.BARE_FIXED,
                protocol.RE_BARE_FIXED,
                lambda m: (int(m.group(1)) * bare_factor, None),
            ),
            DecodeRule(
                TelegramFormat.PREFIXED_FIXED,
                protocol.make_prefixed_pattern(settings.prefix_marker),
                lambda m: (int(m.group(1)) / protocol.PREFIXED_DIVISOR, None),
            ),
            DecodeRule(
                TelegramFormat.GENERIC_DECIMAL,
                protocol.RE_GENERIC_DECIMAL,
                lambda m: (float(m.group(1).replace(",", ".")), None),
                search=True,
            ),
        ]

    def decode(self, line: str) -> Telegram:
        """Decode one line.

        A line that matches no rule is an expected outcome (noise, keep-alive
        frames) and is returned as a Telegram with ``value=None``.

        Args:
            line: Framed line; surrounding whitespace is trimmed here

        Returns:
            Telegram with value/format_tag/flag set on a match
        """
        raw = line.strip()
        if raw:
            for rule in self._rules:
                result = rule.apply(raw)
                if result is not None:
                    value, flag = result
                    return Telegram(raw_line=raw, value=value, format_tag=rule.format_tag, flag=flag)

        logger.debug(f"Ignored line (no telegram format matched): {raw!r}")
        return Telegram(raw_line=raw)


def decode_line(line: str, settings: Optional[DecoderSettings] = None) -> Telegram:
    """Decode a single line with a one-off decoder.

    Args:
        line: Raw line text
        settings: Optional decoding assumptions

    Returns:
        Decoded Telegram (``matched`` is False on a miss)
    """
    return TelegramDecoder(settings).decode(line)
