"""
Frame classification and outbound validation.

``classify`` maps any received frame to exactly one ``FrameKind``. The
``validate_*`` helpers check ids, payloads and filters before anything is
handed to a native primitive; they have no side effects and raise
``SocketCanError`` with a stable code on the first violation found.
"""
from enum import Enum
from typing import Iterable, NamedTuple, Optional, Tuple, Union

from canstream.adapters.interface import CanFilter, Frame
from canstream.constants import (
    BYTE_MAX, CAN_FRAME_MAX_LENGTH, CAN_ID_MAX_EXTENDED, CAN_ID_MAX_STANDARD,
    CAN_ID_MIN, CANFD_FRAME_MAX_LENGTH, CANFD_VALID_LENGTHS, REMOTE_DLC_MAX,
)
from canstream.exceptions import ErrorCode, SocketCanError


class CanId(NamedTuple):
    """CAN id carrying its own standard/extended flag."""
    id: int
    extended: bool


class FrameKind(str, Enum):
    DATA = 'data'
    REMOTE = 'remote'
    ERROR = 'error'
    FD = 'fd'


def classify(frame: Frame) -> FrameKind:
    """Return the single kind of a frame.

    Flags may combine (an error frame can also carry ``fd`` or ``remote``);
    precedence is error, then remote, then fd, then plain data.
    """
    if frame.error:
        return FrameKind.ERROR
    if frame.remote:
        return FrameKind.REMOTE
    if frame.fd:
        return FrameKind.FD
    return FrameKind.DATA


def to_kind(kind: Union[FrameKind, str]) -> FrameKind:
    try:
        return FrameKind(kind)
    except ValueError:
        valid = ', '.join(k.value for k in FrameKind)
        raise SocketCanError(f"Unknown frame type: {kind!r}. Must be one of {valid}",
                             ErrorCode.INVALID_PARAMETERS) from None


def parse_can_id(can_id: Union[int, CanId], extended: Optional[bool] = None) -> Tuple[int, Optional[bool]]:
    """Split an int or ``CanId`` into ``(id, extended)``.

    A ``CanId`` brings its own flag, which wins over ``extended``. Plain ints
    keep ``extended`` as given (None means derive it from the range).
    """
    if isinstance(can_id, CanId):
        return can_id.id, bool(can_id.extended)
    if not isinstance(can_id, int) or isinstance(can_id, bool):
        raise SocketCanError(f"Invalid CAN ID format: {can_id!r}", ErrorCode.INVALID_ID)
    return can_id, extended


def derive_extended(can_id: int, extended: Optional[bool] = None) -> bool:
    """Use the explicit flag when given, else extended iff the id needs 29 bits."""
    if extended is None:
        return can_id > CAN_ID_MAX_STANDARD
    return bool(extended)


def max_id(extended: bool) -> int:
    return CAN_ID_MAX_EXTENDED if extended else CAN_ID_MAX_STANDARD


def validate_can_id(can_id: int, extended: bool) -> None:
    limit = max_id(extended)
    if not isinstance(can_id, int) or isinstance(can_id, bool) or not (CAN_ID_MIN <= can_id <= limit):
        id_type = 'extended' if extended else 'standard'
        raise SocketCanError(
            f"Invalid {id_type} CAN ID: {can_id}. Must be between 0 and 0x{limit:X}",
            ErrorCode.INVALID_ID,
        )


def validate_data(data: Iterable[int], fd: bool = False) -> bytes:
    """Check byte values and payload length; return the payload as bytes."""
    if isinstance(data, (bytes, bytearray)):
        payload = bytes(data)
    else:
        values = list(data)
        for byte in values:
            if not isinstance(byte, int) or isinstance(byte, bool) or not (0 <= byte <= BYTE_MAX):
                raise SocketCanError(
                    f"Invalid byte: {byte!r}. Each byte must be an integer between 0 and 255",
                    ErrorCode.INVALID_BYTE,
                )
        payload = bytes(values)

    if fd:
        if len(payload) not in CANFD_VALID_LENGTHS:
            sizes = ', '.join(str(n) for n in sorted(CANFD_VALID_LENGTHS))
            raise SocketCanError(
                f"CAN FD data length {len(payload)} is invalid. "
                f"Must be one of {sizes} (max {CANFD_FRAME_MAX_LENGTH} bytes)",
                ErrorCode.INVALID_DATA_LENGTH,
            )
    elif len(payload) > CAN_FRAME_MAX_LENGTH:
        raise SocketCanError(
            f"CAN data cannot exceed {CAN_FRAME_MAX_LENGTH} bytes, got {len(payload)}",
            ErrorCode.INVALID_DATA_LENGTH,
        )
    return payload


def validate_remote_dlc(dlc: int) -> None:
    if not isinstance(dlc, int) or isinstance(dlc, bool) or not (0 <= dlc <= REMOTE_DLC_MAX):
        raise SocketCanError(
            f"DLC must be between 0 and {REMOTE_DLC_MAX} for remote frames, got {dlc!r}",
            ErrorCode.INVALID_PARAMETERS,
        )


def validate_outbound(can_id: Union[int, CanId], data: Iterable[int] = b"", extended: Optional[bool] = None,
                      fd: bool = False, remote: bool = False) -> Tuple[int, bytes, bool]:
    """Validate an outbound frame and return ``(can_id, data, extended)``.

    Raises:
        SocketCanError: INVALID_PARAMETERS for remote+fd, INVALID_ID,
            INVALID_BYTE or INVALID_DATA_LENGTH otherwise
    """
    if fd and remote:
        raise SocketCanError("Remote frames are not supported with CAN FD",
                             ErrorCode.INVALID_PARAMETERS)
    can_id, extended = parse_can_id(can_id, extended)
    ext = derive_extended(can_id, extended)
    validate_can_id(can_id, ext)
    payload = validate_data(data, fd=fd)
    if remote and payload:
        raise SocketCanError("Remote frames carry no data; pass the requested length as dlc",
                             ErrorCode.INVALID_DATA_LENGTH)
    return can_id, payload, ext


def validate_inbound(frame: Frame) -> None:
    """Reject frames a native primitive should never produce."""
    if frame.remote and frame.fd:
        raise SocketCanError(f"Received frame 0x{frame.can_id:X} is flagged both remote and FD",
                             ErrorCode.INVALID_PARAMETERS)
    # error frames carry error class bits in the id
    if not frame.error:
        validate_can_id(frame.can_id, frame.extended)
    limit = CANFD_FRAME_MAX_LENGTH if frame.fd else CAN_FRAME_MAX_LENGTH
    if len(frame.data) > limit:
        raise SocketCanError(f"Received frame 0x{frame.can_id:X} carries {len(frame.data)} bytes "
                             f"(max {limit})", ErrorCode.INVALID_DATA_LENGTH)


def validate_filter(flt: CanFilter) -> None:
    limit = max_id(flt.extended)
    id_type = 'extended' if flt.extended else 'standard'
    if not (0 <= flt.can_id <= limit):
        raise SocketCanError(
            f"Invalid {id_type} CAN filter ID: {flt.can_id}. Must be between 0 and 0x{limit:X}",
            ErrorCode.INVALID_FILTER,
        )
    if not (0 <= flt.mask <= limit):
        raise SocketCanError(
            f"Invalid {id_type} CAN filter mask: {flt.mask}. Must be between 0 and 0x{limit:X}",
            ErrorCode.INVALID_FILTER,
        )


def is_remote_frame(frame: Frame) -> bool:
    return bool(frame.remote)


def is_error_frame(frame: Frame) -> bool:
    return bool(frame.error)


def is_can_fd_frame(frame: Frame) -> bool:
    return bool(frame.fd)
