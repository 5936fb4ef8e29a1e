from .interface import CanFilter, Frame, NativeSocket
from .sim import SimSocket
try:
	from .socketcan import PythonCanSocket
except ImportError:
	PythonCanSocket = None

__all__ = ["CanFilter", "Frame", "NativeSocket", "SimSocket", "PythonCanSocket"]
