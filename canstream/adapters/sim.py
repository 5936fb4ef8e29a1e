import itertools
import queue
import threading
import time
import logging
from typing import Dict, List, Optional, Sequence

from .interface import CanFilter, Frame
from canstream import metrics

logger = logging.getLogger(__name__)


class _SimChannel:
    """Receive state for one simulated handle."""

    def __init__(self, interface_name: str, fd: bool) -> None:
        self.interface_name = interface_name
        self.fd = fd
        self.q: "queue.Queue[Frame]" = queue.Queue()
        self.filters: Optional[List[CanFilter]] = None


class SimSocket:
    """A simple in-memory native socket primitive for testing.

    Every handle opened on the same interface name shares one simulated bus:
    a frame sent on any handle is delivered to all of them, the sender
    included (loopback).

    Usage:
      sim = SimSocket()
      h = sim.open("vcan0")
      sim.send(h, 0x100, b"\\x01")
      f = sim.read_one(h, timeout_ms=100)
      sim.close(h)
    """

    def __init__(self) -> None:
        self._channels: Dict[int, _SimChannel] = {}
        self._ids = itertools.count(1)
        self._lock = threading.Lock()

    def _channel(self, handle: int) -> _SimChannel:
        with self._lock:
            ch = self._channels.get(handle)
        if ch is None:
            raise OSError(f"Simulated handle {handle} is not open")
        return ch

    def open(self, interface_name: str, fd: bool = False) -> int:
        with self._lock:
            handle = next(self._ids)
            self._channels[handle] = _SimChannel(interface_name, fd)
        logger.debug("SimSocket opened handle %s on %s", handle, interface_name)
        return handle

    def close(self, handle: int) -> None:
        with self._lock:
            ch = self._channels.pop(handle, None)
        if ch is None:
            return
        # drain queue
        while not ch.q.empty():
            try:
                ch.q.get_nowait()
            except queue.Empty:
                break

    def send(self, handle: int, can_id: int, data: bytes, extended: bool = False,
             fd: bool = False, remote: bool = False, dlc: Optional[int] = None) -> None:
        """Deliver a frame to every handle on the sender's interface."""
        ch = self._channel(handle)
        frame = Frame(
            can_id=can_id,
            data=b"" if remote else bytes(data),
            extended=extended,
            remote=remote,
            fd=fd,
            dlc=dlc if remote else None,
            timestamp=time.time(),
        )
        self._deliver(ch.interface_name, frame)
        metrics.inc("sim_send")

    def inject(self, interface_name: str, frame: Frame) -> None:
        """Place a frame on the simulated bus as if another node sent it.

        Use when tests or the API want a frame (error frames included) to
        arrive without going through ``send()`` validation.
        """
        self._deliver(interface_name, frame)
        metrics.inc("sim_inject")

    def _deliver(self, interface_name: str, frame: Frame) -> None:
        with self._lock:
            targets = [ch for ch in self._channels.values() if ch.interface_name == interface_name]
        for ch in targets:
            # classic handles never see FD frames, as with a non-FD raw socket
            if frame.fd and not ch.fd:
                continue
            ch.q.put(frame)

    def read_one(self, handle: int, timeout_ms: Optional[float] = None) -> Optional[Frame]:
        ch = self._channel(handle)
        # consume until timeout, skipping frames that don't match filters
        end = None if timeout_ms is None else (time.monotonic() + float(timeout_ms) / 1000.0)
        while True:
            remaining = None if end is None else max(0.0, end - time.monotonic())
            try:
                f = ch.q.get(timeout=remaining)
            except queue.Empty:
                return None
            if self._frame_matches_filters(ch, f):
                metrics.inc("sim_recv")
                return f
            if end is not None and time.monotonic() >= end:
                return None

    def set_filters(self, handle: int, filters: Sequence[CanFilter]) -> None:
        """Store filters for the handle. They are honored by read_one()."""
        self._channel(handle).filters = list(filters)

    def clear_filters(self, handle: int) -> None:
        self._channel(handle).filters = None

    def pending(self, handle: int) -> int:
        """Number of frames waiting on a handle (filters not applied)."""
        return self._channel(handle).q.qsize()

    @staticmethod
    def _frame_matches_filters(ch: _SimChannel, frame: Frame) -> bool:
        """Return True if the frame matches any filter, or no filters are set."""
        if ch.filters is None:
            return True
        for f in ch.filters:
            if f.extended != frame.extended:
                continue
            if (frame.can_id & f.mask) == (f.can_id & f.mask):
                return True
        return False
