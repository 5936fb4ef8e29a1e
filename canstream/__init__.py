"""
canstream - CAN frame reception over a native socket primitive.

Frames are consumed through push events (``CanSocket.start_listening``),
async iteration (``CanSocket.frames`` and friends) or batch collection
(``CanSocket.collect_frames``).
"""

from canstream.adapters.interface import CanFilter, Frame
from canstream.can_socket import CanSocket, ListenerState
from canstream.config import ConfigManager, SocketSettings, configure_logging
from canstream.exceptions import CanStreamException, ConfigurationError, ErrorCode, SocketCanError
from canstream.frames import CanId, FrameKind, classify, validate_outbound

__version__ = '0.1.0'

__all__ = [
    'CanFilter', 'CanId', 'CanSocket', 'CanStreamException', 'ConfigManager', 'ConfigurationError',
    'ErrorCode', 'Frame', 'FrameKind', 'ListenerState', 'SocketCanError', 'SocketSettings',
    'classify', 'configure_logging', 'validate_outbound',
]
