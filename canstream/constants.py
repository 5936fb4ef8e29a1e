"""
Constants for the canstream package.

This module centralizes the CAN limits, valid FD payload sizes, timing
defaults and event names used throughout the package, providing a single
source of truth for these values.

Constants are organized by category:
- CAN ID ranges and masks
- CAN frame payload limits
- Timing defaults (receive timeouts, listener poll interval)
- Event names emitted by the dispatcher
"""

# CAN ID ranges
CAN_ID_MIN = 0
CAN_ID_MAX_STANDARD = 0x7FF  # Standard CAN (11-bit)
CAN_ID_MAX_EXTENDED = 0x1FFFFFFF  # Extended CAN (29-bit)
STANDARD_ID_MASK = 0x7FF
EXTENDED_ID_MASK = 0x1FFFFFFF

# CAN frame limits
CAN_FRAME_MAX_LENGTH = 8  # Classic CAN maximum data length
CANFD_FRAME_MAX_LENGTH = 64
CANFD_VALID_LENGTHS = frozenset((0, 1, 2, 3, 4, 5, 6, 7, 8, 12, 16, 20, 24, 32, 48, 64))
REMOTE_DLC_MAX = 8
BYTE_MAX = 0xFF

# Timing defaults (milliseconds)
RECEIVE_TIMEOUT_MS_DEFAULT = 1000
SEQUENCE_TIMEOUT_MS_DEFAULT = 1000
LISTEN_INTERVAL_MS_DEFAULT = 10
# Yield to other tasks after each dispatched frame on a busy bus
LISTEN_TICK_PAUSE_S = 0.001

# Default socket settings
CAN_INTERFACE_DEFAULT = 'can0'
CAN_BACKEND_DEFAULT = 'socketcan'

# Dispatcher event names
EVENT_FRAME = 'frame'
EVENT_ERROR = 'error'
EVENT_CLOSE = 'close'
EVENT_LISTENING = 'listening'
EVENT_STOPPED = 'stopped'
EVENT_NAMES = frozenset((EVENT_FRAME, EVENT_ERROR, EVENT_CLOSE, EVENT_LISTENING, EVENT_STOPPED))
