from __future__ import annotations
from dataclasses import dataclass
from typing import Any, Optional, Protocol, Sequence

from canstream.constants import CAN_ID_MAX_STANDARD


@dataclass(frozen=True)
class Frame:
    """One CAN frame as exchanged with a native socket primitive.

    ``data`` is always empty for remote frames; ``dlc`` then records the
    requested length. For every other frame ``dlc`` equals ``len(data)``.
    """
    can_id: int
    data: bytes = b""
    extended: bool = False
    remote: bool = False
    error: bool = False
    fd: bool = False
    dlc: Optional[int] = None
    timestamp: Optional[float] = None

    def __post_init__(self):
        if not isinstance(self.data, bytes):
            object.__setattr__(self, "data", bytes(self.data))
        if self.dlc is None:
            object.__setattr__(self, "dlc", len(self.data))

    @classmethod
    def standard(cls, can_id: int, data: bytes = b"", **kwargs) -> "Frame":
        """Build a frame deriving ``extended`` from the id range."""
        return cls(can_id=can_id, data=bytes(data), extended=can_id > CAN_ID_MAX_STANDARD, **kwargs)

    @property
    def data_hex(self) -> str:
        return self.data.hex()


@dataclass(frozen=True)
class CanFilter:
    """Acceptance filter evaluated by the native primitive.

    A received frame matches when ``received_id & mask == can_id & mask``.
    """
    can_id: int
    mask: int
    extended: bool = False

    def as_python_can(self) -> dict:
        return {"can_id": self.can_id, "can_mask": self.mask, "extended": self.extended}


class NativeSocket(Protocol):
    """Capability surface every native CAN socket primitive implements.

    Handles are opaque; only the primitive that issued one may interpret it.
    """

    def open(self, interface_name: str, fd: bool = False) -> Any:
        ...

    def send(self, handle: Any, can_id: int, data: bytes, extended: bool = False,
             fd: bool = False, remote: bool = False, dlc: Optional[int] = None) -> None:
        ...

    def read_one(self, handle: Any, timeout_ms: Optional[float] = None) -> Optional[Frame]:
        """Block for at most ``timeout_ms`` and return one frame, or None on timeout."""
        ...

    def set_filters(self, handle: Any, filters: Sequence[CanFilter]) -> None:
        ...

    def clear_filters(self, handle: Any) -> None:
        ...

    def close(self, handle: Any) -> None:
        ...
