"""
Helpers for CAN id and payload conversion and candump-style formatting.
"""
import re
from typing import Iterable, List

from canstream.adapters.interface import Frame
from canstream.constants import CAN_ID_MAX_EXTENDED, CAN_ID_MAX_STANDARD
from canstream.exceptions import ErrorCode, SocketCanError
from canstream.frames import CanId

# candump compact format: "123#DEADBEEF", "12345678#01020304", "123#R" or "123#R4"
CANDUMP_RE = re.compile(r'^([0-9A-Fa-f]{1,8})#(?:(R)([0-8])?|([0-9A-Fa-f]*))$')


def number_to_bytes(value: int, length: int = 4) -> List[int]:
    """Little-endian byte list of ``value``."""
    return [(value >> (i * 8)) & 0xFF for i in range(length)]


def bytes_to_number(data: Iterable[int]) -> int:
    """Little-endian integer from a byte sequence."""
    value = 0
    for i, byte in enumerate(data):
        value |= (byte & 0xFF) << (i * 8)
    return value


def is_extended_id(can_id: int) -> bool:
    return can_id > CAN_ID_MAX_STANDARD


def create_standard_id(can_id: int) -> CanId:
    if not (0 <= can_id <= CAN_ID_MAX_STANDARD):
        raise SocketCanError(
            f"Invalid standard CAN ID: {can_id}. Must be between 0 and 0x{CAN_ID_MAX_STANDARD:X}",
            ErrorCode.INVALID_ID,
        )
    return CanId(can_id, False)


def create_extended_id(can_id: int) -> CanId:
    if not (0 <= can_id <= CAN_ID_MAX_EXTENDED):
        raise SocketCanError(
            f"Invalid extended CAN ID: {can_id}. Must be between 0 and 0x{CAN_ID_MAX_EXTENDED:X}",
            ErrorCode.INVALID_ID,
        )
    return CanId(can_id, True)


def format_can_id(can_id: int, extended: bool = None) -> str:
    if extended is None:
        extended = is_extended_id(can_id)
    if extended:
        return f"0x{can_id:08X} (ext)"
    return f"0x{can_id:03X}"


def format_can_data(data: Iterable[int]) -> str:
    return ' '.join(f"{b:02X}" for b in data)


def parse_can_frame(text: str) -> Frame:
    """Parse a candump compact line such as ``123#DEADBEEF`` or ``123#R``.

    Ids with more than three hex digits are extended.
    """
    match = CANDUMP_RE.match(text.strip())
    if not match:
        raise SocketCanError(f"Invalid CAN frame format: {text!r}", ErrorCode.INVALID_FORMAT)
    id_str, remote, dlc, payload = match.groups()
    can_id = int(id_str, 16)
    extended = len(id_str) > 3 or can_id > CAN_ID_MAX_STANDARD
    if extended and can_id > CAN_ID_MAX_EXTENDED:
        raise SocketCanError(f"Invalid extended CAN ID in {text!r}", ErrorCode.INVALID_ID)
    if remote:
        return Frame(can_id=can_id, extended=extended, remote=True, dlc=int(dlc or 0))
    if len(payload) % 2:
        raise SocketCanError(f"Odd number of hex digits in payload: {text!r}", ErrorCode.INVALID_FORMAT)
    return Frame(can_id=can_id, data=bytes.fromhex(payload), extended=extended)


def format_can_frame(frame: Frame) -> str:
    """Inverse of ``parse_can_frame``."""
    id_str = f"{frame.can_id:08X}" if frame.extended else f"{frame.can_id:03X}"
    if frame.remote:
        return f"{id_str}#R{frame.dlc}" if frame.dlc else f"{id_str}#R"
    return f"{id_str}#{frame.data.hex().upper()}"


def format_error(error: BaseException) -> str:
    """``[CODE]: message`` for coded errors, the plain message otherwise."""
    code = getattr(error, 'code', None)
    if code is not None:
        return f"[{code}]: {error}"
    return str(error)
