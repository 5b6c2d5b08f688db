"""Tests for the serial channel, deadlines and the single-owner session."""

import pytest
import serial

from fakes.fake_channel import FakeScaleChannel
from scale_lib import protocol
from scale_lib.errors import ChannelLost, ChannelNotOpen, LinkError
from scale_lib.models import LinkConfig
from scale_lib.transport import ChannelSession, Deadline, SerialChannel

CONFIG_A = LinkConfig(baud_rate=1200, data_bits=7, parity="even", stop_bits=1)
CONFIG_B = LinkConfig(baud_rate=9600, data_bits=8, parity="none", stop_bits=2, delimiter=protocol.LF)


class _Clock:
    def __init__(self) -> None:
        self.now = 100.0

    def __call__(self) -> float:
        return self.now


# =============================================================================
# Deadline
# =============================================================================

def test_deadline_counts_down() -> None:
    clock = _Clock()
    deadline = Deadline(1.5, clock=clock)

    assert deadline.remaining() == pytest.approx(1.5)
    assert not deadline.expired

    clock.now += 1.0
    assert deadline.remaining() == pytest.approx(0.5)
    assert deadline.bound(0.1) == pytest.approx(0.1)
    assert deadline.bound(2.0) == pytest.approx(0.5)

    clock.now += 1.0
    assert deadline.expired
    assert deadline.remaining() == 0.0


# =============================================================================
# SerialChannel
# =============================================================================

class _RecordingSerial:
    """Stand-in for serial.Serial that records constructor arguments."""

    instances = []

    def __init__(self, **kwargs) -> None:
        self.kwargs = kwargs
        self.is_open = True
        self.timeout = kwargs.get("timeout")
        self.dtr = False
        self.rts = False
        self.in_waiting = 0
        _RecordingSerial.instances.append(self)

    def close(self) -> None:
        self.is_open = False


@pytest.fixture
def recording_serial(monkeypatch):
    _RecordingSerial.instances = []
    monkeypatch.setattr(serial, "Serial", _RecordingSerial)
    return _RecordingSerial


def test_serial_channel_maps_link_parameters(recording_serial) -> None:
    channel = SerialChannel("/dev/ttyUSB0")
    channel.open(CONFIG_A)

    kwargs = recording_serial.instances[0].kwargs
    assert kwargs["port"] == "/dev/ttyUSB0"
    assert kwargs["baudrate"] == 1200
    assert kwargs["bytesize"] == serial.SEVENBITS
    assert kwargs["parity"] == serial.PARITY_EVEN
    assert kwargs["stopbits"] == serial.STOPBITS_ONE
    assert kwargs["rtscts"] is False
    assert kwargs["xonxoff"] is False
    assert channel.is_open

    channel.close()
    channel.close()
    assert not channel.is_open


def test_serial_channel_two_stop_bits(recording_serial) -> None:
    channel = SerialChannel("COM3")
    channel.open(CONFIG_B)

    kwargs = recording_serial.instances[0].kwargs
    assert kwargs["bytesize"] == serial.EIGHTBITS
    assert kwargs["parity"] == serial.PARITY_NONE
    assert kwargs["stopbits"] == serial.STOPBITS_TWO
    channel.close()


def test_serial_channel_open_failure_is_link_error(monkeypatch) -> None:
    def refuse(**kwargs):
        raise serial.SerialException("could not open port")

    monkeypatch.setattr(serial, "Serial", refuse)
    channel = SerialChannel("/dev/ttyUSB9")

    with pytest.raises(LinkError, match="ttyUSB9"):
        channel.open(CONFIG_A)
    assert not channel.is_open


def test_serial_channel_set_signals(recording_serial) -> None:
    channel = SerialChannel("/dev/ttyUSB0")
    channel.open(CONFIG_A)
    channel.set_signals(dtr=True, rts=True)

    port = recording_serial.instances[0]
    assert port.dtr is True
    assert port.rts is True
    channel.close()


def test_serial_channel_read_requires_open() -> None:
    with pytest.raises(ChannelNotOpen):
        SerialChannel("/dev/ttyUSB0").read(16, 0.1)


# =============================================================================
# ChannelSession
# =============================================================================

def test_reopen_closes_previous_configuration() -> None:
    channel = FakeScaleChannel()
    session = ChannelSession(channel)

    session.open(CONFIG_A)
    session.open(CONFIG_B)

    assert channel.open_count == 2
    assert channel.close_count == 1
    assert channel.max_concurrent_opens == 1
    assert session.config == CONFIG_B
    session.close()
    assert not session.is_open


def test_open_asserts_control_lines() -> None:
    channel = FakeScaleChannel()
    session = ChannelSession(channel)
    session.open(CONFIG_A)

    assert channel.signals == {"dtr": True, "rts": True}
    session.close()


def test_rejected_open_leaves_session_closed() -> None:
    channel = FakeScaleChannel(accepts=lambda config: config == CONFIG_A)
    session = ChannelSession(channel)
    session.open(CONFIG_A)

    with pytest.raises(LinkError):
        session.open(CONFIG_B)
    assert not session.is_open
    assert session.config is None


def test_mark_seen_never_moves_backwards() -> None:
    session = ChannelSession(FakeScaleChannel())

    assert session.last_seen is None
    session.mark_seen(at=10.0)
    session.mark_seen(at=5.0)
    assert session.last_seen == 10.0
    session.mark_seen(at=12.0)
    assert session.last_seen == 12.0


def test_open_resets_last_seen() -> None:
    session = ChannelSession(FakeScaleChannel())
    session.mark_seen(at=10.0)

    session.open(CONFIG_A)
    assert session.last_seen is None
    session.close()


def test_chunks_stop_when_channel_is_reopened() -> None:
    """A reader belonging to a retired configuration stops yielding."""
    channel = FakeScaleChannel()
    session = ChannelSession(channel)
    session.open(CONFIG_A)
    channel.inject(b"abc")

    chunks = session.chunks()
    assert next(chunks) == "abc"

    session.open(CONFIG_B)
    channel.inject(b"def")
    assert list(chunks) == []
    session.close()


def test_chunks_record_end_of_stream() -> None:
    channel = FakeScaleChannel()
    session = ChannelSession(channel)
    session.open(CONFIG_A)
    channel.inject(b"12")

    chunks = session.chunks()
    assert next(chunks) == "12"
    channel.unplug()

    assert list(chunks) == []
    assert isinstance(session.lost, ChannelLost)
    session.close()


def test_chunks_decode_non_ascii_as_replacement() -> None:
    channel = FakeScaleChannel()
    session = ChannelSession(channel)
    session.open(CONFIG_A)
    channel.inject(b"\xffA")

    assert next(session.chunks()) == "�A"
    session.close()


def test_chunks_honor_deadline() -> None:
    session = ChannelSession(FakeScaleChannel())
    session.open(CONFIG_A)

    assert list(session.chunks(deadline=Deadline(0.15))) == []
    session.close()


def test_write_requires_open_session() -> None:
    session = ChannelSession(FakeScaleChannel())

    with pytest.raises(ChannelNotOpen):
        session.write(b"x")


class _TimeoutCountingSerial(_RecordingSerial):
    """Counts timeout assignments; pyserial reconfigures the port on each one."""

    def __init__(self, **kwargs) -> None:
        self.timeout_sets = 0
        super().__init__(**kwargs)
        self.timeout_sets = 0
        self.rx = bytearray(b"P 12345\r")

    @property
    def timeout(self):
        return self._timeout

    @timeout.setter
    def timeout(self, value) -> None:
        self._timeout = value
        self.timeout_sets += 1

    @property
    def in_waiting(self) -> int:
        return len(self.rx)

    @in_waiting.setter
    def in_waiting(self, value) -> None:
        pass

    def read(self, size: int = 1) -> bytes:
        data, self.rx = bytes(self.rx[:size]), self.rx[size:]
        return data


def test_serial_channel_read_keeps_port_timeout(monkeypatch) -> None:
    monkeypatch.setattr(serial, "Serial", _TimeoutCountingSerial)
    channel = SerialChannel("/dev/ttyUSB0")
    channel.open(CONFIG_A)
    port = _TimeoutCountingSerial.instances[-1]

    received = b"".join(channel.read(3, protocol.READ_POLL_S) for _ in range(10))

    assert received == b"P 12345\r"
    assert port.timeout_sets == 0

    channel.read(3, 0.02)
    channel.read(3, 0.02)
    assert port.timeout_sets == 1
    channel.close()
