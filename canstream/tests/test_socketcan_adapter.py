import pytest

from canstream import metrics
from canstream.adapters.interface import CanFilter
from canstream.adapters.socketcan import PythonCanSocket, frame_from_message
from canstream.exceptions import PlatformNotSupported


class FakeBus:
    def __init__(self, **kwargs):
        self.kwargs = kwargs
        self.sent = []
        self.filters = "unset"
        self.shut = False
        self._recv_queue = []
        self.recv_timeouts = []

    def send(self, msg):
        # record send
        self.sent.append(msg)

    def recv(self, timeout=None):
        self.recv_timeouts.append(timeout)
        if self._recv_queue:
            return self._recv_queue.pop(0)
        return None

    def set_filters(self, filters=None):
        self.filters = filters

    def shutdown(self):
        self.shut = True


class FakeMsg:
    def __init__(self, arbitration_id, data, is_extended_id=False, is_remote_frame=False,
                 is_error_frame=False, is_fd=False, dlc=None, timestamp=None):
        self.arbitration_id = arbitration_id
        self.data = data
        self.is_extended_id = is_extended_id
        self.is_remote_frame = is_remote_frame
        self.is_error_frame = is_error_frame
        self.is_fd = is_fd
        self.dlc = len(data) if dlc is None else dlc
        self.timestamp = timestamp


@pytest.fixture
def buses(monkeypatch):
    # patch can.Bus to return our FakeBus
    import canstream.adapters.socketcan as sc_mod

    created = []

    def fake_bus_ctor(**kwargs):
        bus = FakeBus(**kwargs)
        created.append(bus)
        return bus

    monkeypatch.setattr(sc_mod.can, "Bus", fake_bus_ctor)
    monkeypatch.setattr(sc_mod.sys, "platform", "linux")
    return created


def test_open_passes_interface_and_channel(buses):
    native = PythonCanSocket()
    h = native.open("vcan0")
    assert buses[0].kwargs == {"interface": "socketcan", "channel": "vcan0"}
    h2 = native.open("vcan1", fd=True)
    assert h2 != h
    assert buses[1].kwargs == {"interface": "socketcan", "channel": "vcan1", "fd": True}


def test_bus_interface_from_environment(buses, monkeypatch):
    monkeypatch.setenv("CAN_BUS_INTERFACE", "virtual")
    native = PythonCanSocket(receive_own_messages=True)
    native.open("test")
    assert buses[0].kwargs == {"interface": "virtual", "channel": "test", "receive_own_messages": True}


def test_socketcan_requires_linux(buses, monkeypatch):
    import canstream.adapters.socketcan as sc_mod
    monkeypatch.setattr(sc_mod.sys, "platform", "win32")
    with pytest.raises(PlatformNotSupported):
        PythonCanSocket().open("can0")
    # other python-can interfaces are not tied to Linux
    PythonCanSocket(bus_interface="virtual").open("test")
    assert len(buses) == 1


def test_send_builds_message(buses):
    native = PythonCanSocket()
    h = native.open("vcan0")
    native.send(h, 0x12345, b"\x01\x02", extended=True)
    native.send(h, 0x10, b"", remote=True, dlc=3)
    data_msg, remote_msg = buses[0].sent
    assert data_msg.arbitration_id == 0x12345
    assert bytes(data_msg.data) == b"\x01\x02"
    assert data_msg.is_extended_id is True
    assert remote_msg.is_remote_frame is True
    assert remote_msg.dlc == 3
    assert metrics.get("native_send") == 2


def test_read_one_converts_message(buses):
    native = PythonCanSocket()
    h = native.open("vcan0")
    buses[0]._recv_queue.append(FakeMsg(0x200, bytearray(b"\x01\x02"), timestamp=12.5))
    frame = native.read_one(h, timeout_ms=100)
    assert frame.can_id == 0x200
    assert frame.data == b"\x01\x02"
    assert frame.timestamp == 12.5
    assert buses[0].recv_timeouts == [0.1]
    assert metrics.get("native_recv") == 1


def test_read_one_returns_none_on_timeout(buses):
    native = PythonCanSocket()
    h = native.open("vcan0")
    assert native.read_one(h, timeout_ms=5) is None
    assert metrics.get("native_recv") == 0


def test_frame_from_message_flags():
    remote = frame_from_message(FakeMsg(0x7FF, bytearray(4), is_remote_frame=True, dlc=4))
    assert remote.remote and remote.data == b"" and remote.dlc == 4
    err = frame_from_message(FakeMsg(0x20000004, bytearray(8), is_error_frame=True))
    assert err.error
    fd = frame_from_message(FakeMsg(0x1, bytearray(12), is_fd=True))
    assert fd.fd and fd.dlc == 12


def test_filters_and_close(buses):
    native = PythonCanSocket()
    h = native.open("vcan0")
    native.set_filters(h, [CanFilter(0x100, 0x7FF), CanFilter(0x18FF0000, 0x1FFF0000, extended=True)])
    assert buses[0].filters == [
        {"can_id": 0x100, "can_mask": 0x7FF, "extended": False},
        {"can_id": 0x18FF0000, "can_mask": 0x1FFF0000, "extended": True},
    ]
    native.clear_filters(h)
    assert buses[0].filters is None
    native.close(h)
    assert buses[0].shut
    native.close(h)  # closing twice is harmless
    with pytest.raises(OSError):
        native.read_one(h, timeout_ms=1)
