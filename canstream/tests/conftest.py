"""Pytest config and shared fixtures.

The repository root is put on sys.path so ``canstream`` imports resolve even
when pytest runs from another working directory.
"""
import asyncio
import os
import sys
import threading

import pytest

_HERE = os.path.dirname(__file__)
PROJECT_ROOT = os.path.abspath(os.path.join(_HERE, "..", ".."))

if PROJECT_ROOT not in sys.path:
    sys.path.insert(0, PROJECT_ROOT)

from canstream import metrics  # noqa: E402
from canstream.adapters.sim import SimSocket  # noqa: E402
from canstream.can_socket import CanSocket  # noqa: E402
from canstream.config import SocketSettings  # noqa: E402

IFACE = "vcan0"


class RecordingSim(SimSocket):
    """SimSocket that counts native reads and can be told to fail them."""

    def __init__(self):
        super().__init__()
        self.reads = 0
        self.sends = []
        self.fail_with = None
        self._count_lock = threading.Lock()

    def read_one(self, handle, timeout_ms=None):
        with self._count_lock:
            self.reads += 1
        if self.fail_with is not None:
            raise self.fail_with
        return super().read_one(handle, timeout_ms)

    def send(self, handle, can_id, data, extended=False, fd=False, remote=False, dlc=None):
        self.sends.append((can_id, bytes(data), extended, fd, remote, dlc))
        super().send(handle, can_id, data, extended, fd, remote, dlc)


@pytest.fixture(autouse=True)
def _reset_metrics():
    metrics.reset_all()
    yield


@pytest.fixture
def sim():
    return RecordingSim()


@pytest.fixture
def settings():
    return SocketSettings(interface_name=IFACE, backend="sim", sequence_timeout_ms=500,
                          receive_timeout_ms=500, listen_interval_ms=5)


@pytest.fixture
def sock(sim, settings):
    s = CanSocket(IFACE, native=sim, settings=settings)
    s.open()
    yield s
    s.close()


@pytest.fixture
def fd_sock(sim, settings):
    s = CanSocket(IFACE, native=sim, can_fd=True, settings=settings)
    s.open()
    yield s
    s.close()


@pytest.fixture
def wait_until():
    async def _wait(predicate, timeout=2.0):
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while not predicate():
            if loop.time() > deadline:
                raise AssertionError("condition not met before timeout")
            await asyncio.sleep(0.005)
    return _wait
