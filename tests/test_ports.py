"""Tests for port authorization and hot-plug polling (no hardware)."""

from fakes.fake_channel import wait_until
from scale_lib.ports import PortAuthorization, PortWatcher
from scale_lib.transport import SerialChannel


class _Ports:
    def __init__(self, *names: str) -> None:
        self.names = list(names)

    def __call__(self):
        return list(self.names)


def test_only_present_authorized_ports_listed() -> None:
    ports = _Ports("/dev/ttyUSB0", "/dev/ttyUSB1")
    authorization = PortAuthorization(allowed=["/dev/ttyUSB1", "/dev/ttyS9"], lister=ports)

    channels = authorization.list_authorized_channels()

    assert [c.name for c in channels] == ["/dev/ttyUSB1"]
    assert isinstance(channels[0], SerialChannel)


def test_nothing_listed_without_grant() -> None:
    authorization = PortAuthorization(lister=_Ports("/dev/ttyUSB0"))

    assert authorization.list_authorized_channels() == []


def test_request_without_hint_grants_first_new_port() -> None:
    ports = _Ports("/dev/ttyUSB0", "/dev/ttyUSB1")
    authorization = PortAuthorization(allowed=["/dev/ttyUSB0"], lister=ports)

    channel = authorization.request_authorization()

    assert channel is not None and channel.name == "/dev/ttyUSB1"
    assert authorization.allowed == ["/dev/ttyUSB0", "/dev/ttyUSB1"]


def test_request_with_hint() -> None:
    authorization = PortAuthorization(lister=_Ports("/dev/ttyUSB0", "COM3"))

    channel = authorization.request_authorization("COM3")

    assert channel is not None and channel.name == "COM3"
    assert [c.name for c in authorization.list_authorized_channels()] == ["COM3"]


def test_request_for_absent_port_denied() -> None:
    authorization = PortAuthorization(lister=_Ports("/dev/ttyUSB0"))

    assert authorization.request_authorization("/dev/ttyUSB5") is None
    assert authorization.allowed == []


def test_request_with_nothing_new_denied() -> None:
    authorization = PortAuthorization(allowed=["/dev/ttyUSB0"], lister=_Ports("/dev/ttyUSB0"))

    assert authorization.request_authorization() is None


def test_watcher_reports_changes() -> None:
    ports = _Ports("/dev/ttyUSB0")
    connected, disconnected = [], []
    watcher = PortWatcher(connected.append, disconnected.append, lister=ports)
    watcher.start()
    watcher.stop()

    ports.names = ["/dev/ttyUSB0", "/dev/ttyUSB1"]
    watcher.poll()
    ports.names = ["/dev/ttyUSB1"]
    watcher.poll()

    assert connected == ["/dev/ttyUSB1"]
    assert disconnected == ["/dev/ttyUSB0"]


def test_watcher_thread_polls() -> None:
    ports = _Ports()
    connected = []
    watcher = PortWatcher(connected.append, lambda name: None, interval_s=0.02, lister=ports)
    watcher.start()
    try:
        ports.names = ["COM4"]
        assert wait_until(lambda: connected == ["COM4"])
    finally:
        watcher.stop()
