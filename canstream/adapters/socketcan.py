"""SocketCAN native primitive using python-can.

Each handle returned by ``open()`` maps to one ``can.Bus``. The default bus
interface is 'socketcan' (Linux); any other python-can interface name (for
example 'virtual' in tests) can be supplied at construction.

Configuration (via environment variables):
- CAN_BUS_INTERFACE (default: "socketcan")
"""
from __future__ import annotations

import itertools
import logging
import os
import sys
import threading
from typing import Any, Dict, Optional, Sequence

import can

from .interface import CanFilter, Frame
from canstream import metrics
from canstream.exceptions import PlatformNotSupported


logger = logging.getLogger(__name__)

# python-can blocks forever on recv(None); bound it like a very long read instead
_BLOCKING_READ_S = 3600.0


def frame_from_message(msg: "can.Message") -> Frame:
    """Convert a python-can Message into a Frame."""
    remote = bool(msg.is_remote_frame)
    return Frame(
        can_id=msg.arbitration_id,
        data=b"" if remote else bytes(msg.data or b""),
        extended=bool(msg.is_extended_id),
        remote=remote,
        error=bool(msg.is_error_frame),
        fd=bool(msg.is_fd),
        dlc=msg.dlc if remote else None,
        timestamp=getattr(msg, "timestamp", None),
    )


class PythonCanSocket:
    """Native socket primitive backed by python-can buses."""

    def __init__(self, bus_interface: Optional[str] = None, **bus_kwargs: Any) -> None:
        self.bus_interface = bus_interface or os.environ.get("CAN_BUS_INTERFACE", "socketcan")
        self.bus_kwargs = bus_kwargs
        # can.Bus typing is imperfect across python-can versions; use Any to avoid static type issues
        self._buses: Dict[int, Any] = {}
        self._ids = itertools.count(1)
        self._lock = threading.Lock()

    def _bus(self, handle: int) -> Any:
        with self._lock:
            bus = self._buses.get(handle)
        if bus is None:
            raise OSError(f"Unknown or closed CAN handle: {handle}")
        return bus

    def open(self, interface_name: str, fd: bool = False) -> int:
        if self.bus_interface == "socketcan" and not sys.platform.startswith("linux"):
            raise PlatformNotSupported(f"SocketCAN is only available on Linux (running on {sys.platform})")
        kwargs = dict(self.bus_kwargs)
        kwargs.update({"interface": self.bus_interface, "channel": interface_name})
        if fd:
            kwargs["fd"] = True
        logger.info("Opening python-can bus %s", kwargs)
        bus = can.Bus(**kwargs)
        with self._lock:
            handle = next(self._ids)
            self._buses[handle] = bus
        return handle

    def send(self, handle: int, can_id: int, data: bytes, extended: bool = False,
             fd: bool = False, remote: bool = False, dlc: Optional[int] = None) -> None:
        bus = self._bus(handle)
        msg = can.Message(
            arbitration_id=can_id,
            data=b"" if remote else bytes(data),
            is_extended_id=extended,
            is_fd=fd,
            is_remote_frame=remote,
            dlc=dlc if remote else None,
        )
        logger.debug("python-can send id=0x%x data=%s", can_id, bytes(data).hex())
        bus.send(msg)
        metrics.inc("native_send")

    def read_one(self, handle: int, timeout_ms: Optional[float] = None) -> Optional[Frame]:
        bus = self._bus(handle)
        timeout_s = _BLOCKING_READ_S if timeout_ms is None else float(timeout_ms) / 1000.0
        msg = bus.recv(timeout_s)
        if msg is None:
            return None
        metrics.inc("native_recv")
        return frame_from_message(msg)

    def set_filters(self, handle: int, filters: Sequence[CanFilter]) -> None:
        bus = self._bus(handle)
        can_filters = [f.as_python_can() for f in filters]
        logger.info("Applying python-can filters: %s", can_filters)
        bus.set_filters(can_filters)

    def clear_filters(self, handle: int) -> None:
        # python-can accepts None to clear filters
        self._bus(handle).set_filters(None)

    def close(self, handle: int) -> None:
        with self._lock:
            bus = self._buses.pop(handle, None)
        if bus is None:
            return
        logger.info("Closing python-can bus for handle %s", handle)
        bus.shutdown()
