"""Shared fixtures for scale link tests."""

import pytest

from scale_lib import protocol
from scale_lib.models import LinkConfig
from scale_lib.probe import ParameterSpace


@pytest.fixture
def small_space() -> ParameterSpace:
    """8 candidates: 1200/9600 x 7N1/8N1 x CR/CRLF."""
    return ParameterSpace(
        baud_rates=(1200, 9600),
        framings=((7, "none", 1), (8, "none", 1)),
        delimiters=(protocol.CR, protocol.CRLF),
    )


@pytest.fixture
def telemetry_config() -> LinkConfig:
    """Scale's real settings: last candidate of small_space."""
    return LinkConfig(baud_rate=9600, data_bits=8, parity="none", stop_bits=1, delimiter=protocol.CRLF)
