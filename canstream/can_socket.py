"""
CAN socket wrapper exposing received frames through three consumption models.

- Push: ``start_listening()`` runs a polling task that emits ``frame`` events
  to observers registered with ``on()``.
- Pull: ``frames()``, ``frames_with_id()`` and ``frames_of_type()`` return
  async generators that read one native frame per pull.
- Batch: ``collect_frames()`` drains a ``frames()`` sequence into a list.

The Listener and the sequences share one native read capability. A single
"active reader" marker on the socket lets only one of them read at a time;
the other fails fast with READER_BUSY. One-shot ``receive()`` is not
arbitrated: calling it while a reader is active means each frame goes to
whichever read picks it up first.

Native reads block for up to their timeout, so they run in the event loop's
default executor. A read whose consumer went away (listener stopped, sequence
cancelled) stays attached to the socket and is handed to the next consumer,
so a frame it pulls off the handle is never dropped. Close sequences deterministically with
``contextlib.aclosing`` when breaking out of them early::

    async with aclosing(sock.frames(max_frames=10)) as seq:
        async for frame in seq:
            ...
"""
import asyncio
import errno
import logging
from contextlib import aclosing
from enum import Enum
from typing import Any, AsyncIterator, Callable, Iterable, List, Optional, Sequence, Union

from canstream import metrics
from canstream.adapters.interface import CanFilter, Frame, NativeSocket
from canstream.adapters.sim import SimSocket
from canstream.config import SocketSettings
from canstream.constants import (
    EVENT_CLOSE, EVENT_ERROR, EVENT_FRAME, EVENT_LISTENING, EVENT_STOPPED, LISTEN_TICK_PAUSE_S,
)
from canstream.events import EventDispatcher, Observer
from canstream.exceptions import ErrorCode, PlatformNotSupported, SocketCanError
from canstream.frames import (
    CanId, FrameKind, classify, derive_extended, is_can_fd_frame, is_error_frame, is_remote_frame,
    parse_can_id, to_kind, validate_can_id, validate_filter, validate_inbound, validate_outbound,
    validate_remote_dlc,
)

logger = logging.getLogger(__name__)

FrameFilter = Callable[[Frame], bool]

_LISTENER = 'listener'
_SEQUENCE = 'sequence'


class ListenerState(str, Enum):
    IDLE = 'idle'
    LISTENING = 'listening'


def create_native(backend: str) -> NativeSocket:
    """Build the native primitive named by a settings ``backend`` value."""
    if backend == 'sim':
        return SimSocket()
    # imported here so the simulator works without touching python-can
    from canstream.adapters.socketcan import PythonCanSocket
    return PythonCanSocket(bus_interface=backend)


def _open_error(interface_name: str, e: Exception) -> SocketCanError:
    """Map a native open failure onto a coded SocketCanError."""
    if isinstance(e, PlatformNotSupported):
        code = ErrorCode.PLATFORM_NOT_SUPPORTED
    elif isinstance(e, PermissionError):
        code = ErrorCode.PERMISSION_DENIED
    elif isinstance(e, FileNotFoundError) or (isinstance(e, OSError) and e.errno in (errno.ENODEV, errno.ENXIO)):
        code = ErrorCode.INTERFACE_NOT_FOUND
    else:
        code = ErrorCode.SOCKET_OPEN_ERROR
    return SocketCanError(f"Unable to open CAN socket on '{interface_name}': {e}", code,
                          operation='open', original_error=e)


def _retrieve_outcome(read: asyncio.Future) -> None:
    # a read nobody adopts must not be reported as a never-retrieved exception
    if not read.cancelled():
        read.exception()


class CanSocket:
    """Wrapper around one native CAN socket handle.

    Attributes:
        settings: Timeouts, listener interval and error policy
        events: Dispatcher for 'frame', 'error', 'close', 'listening', 'stopped'
    """

    is_remote_frame = staticmethod(is_remote_frame)
    is_error_frame = staticmethod(is_error_frame)
    is_can_fd_frame = staticmethod(is_can_fd_frame)
    classify = staticmethod(classify)

    def __init__(self, interface_name: str, native: Optional[NativeSocket] = None,
                 default_timeout: Optional[float] = None, can_fd: bool = False,
                 settings: Optional[SocketSettings] = None):
        """Initialize the socket wrapper (the native socket is not opened yet).

        Args:
            interface_name: CAN interface, e.g. 'can0' or 'vcan0'
            native: Native primitive; built from ``settings.backend`` when omitted
            default_timeout: Default receive() timeout in milliseconds
            can_fd: Open the native socket in CAN FD mode
            settings: Socket settings (defaults to ``SocketSettings()``)
        """
        self.settings = settings or SocketSettings()
        self._interface_name = interface_name
        self._native = native if native is not None else create_native(self.settings.backend)
        self._default_timeout = default_timeout
        self._can_fd = can_fd
        self._handle: Any = None
        self._state = ListenerState.IDLE
        self._listener_task: Optional[asyncio.Task] = None
        self._active_reader: Optional[str] = None
        self._pending_read: Optional[asyncio.Future] = None
        self.events = EventDispatcher(raise_unhandled_errors=self.settings.raise_unhandled_errors)

    def __repr__(self) -> str:
        return (f"CanSocket(interface={self._interface_name!r}, open={self.is_open()}, "
                f"fd={self._can_fd}, state={self._state.value})")

    # ----- lifecycle -----

    def open(self) -> None:
        """Open the native socket.

        Raises:
            SocketCanError: PLATFORM_NOT_SUPPORTED, PERMISSION_DENIED,
                INTERFACE_NOT_FOUND or SOCKET_OPEN_ERROR
        """
        if self._handle is not None:
            logger.warning("Attempted to open %s when already open", self._interface_name)
            return
        try:
            self._handle = self._native.open(self._interface_name, self._can_fd)
        except Exception as e:
            raise _open_error(self._interface_name, e) from e
        logger.info("%s socket opened on interface: %s", "CAN FD" if self._can_fd else "CAN",
                    self._interface_name)

    def close(self) -> None:
        """Stop listening, close the native socket and emit 'close'.

        Closing an already closed socket is a no-op.
        """
        if self._handle is None:
            return
        self.stop_listening()
        handle, self._handle = self._handle, None
        self._drop_pending_read()
        try:
            self._native.close(handle)
        except Exception as e:
            raise SocketCanError(f"Error closing socket: {e}", ErrorCode.SOCKET_CLOSE_ERROR,
                                 operation='close', original_error=e) from e
        logger.info("CAN socket closed on interface: %s", self._interface_name)
        self.events.emit(EVENT_CLOSE)

    def is_open(self) -> bool:
        return self._handle is not None

    def get_interface(self) -> str:
        return self._interface_name

    @property
    def is_can_fd(self) -> bool:
        return self._can_fd

    def __enter__(self) -> "CanSocket":
        self.open()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    async def __aenter__(self) -> "CanSocket":
        self.open()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        self.close()

    def _require_open(self, operation: str) -> Any:
        if self._handle is None:
            raise SocketCanError("CAN socket not open", ErrorCode.NOT_OPEN, operation=operation)
        return self._handle

    # ----- events -----

    def on(self, event: str, observer: Observer) -> "CanSocket":
        self.events.on(event, observer)
        return self

    def once(self, event: str, observer: Observer) -> "CanSocket":
        self.events.once(event, observer)
        return self

    def off(self, event: str, observer: Observer) -> "CanSocket":
        self.events.off(event, observer)
        return self

    # ----- transmit and filters -----

    def send(self, can_id: Union[int, CanId], data: Union[bytes, Iterable[int]] = b"",
             extended: Optional[bool] = None, fd: bool = False, remote: bool = False,
             dlc: Optional[int] = None) -> None:
        """Validate and send one frame.

        Args:
            can_id: CAN identifier, an int or a ``CanId`` (whose flag wins over ``extended``)
            data: Payload (max 8 bytes classic, FD valid sizes up to 64)
            extended: Extended id flag; derived from the id range when None
            fd: Send as CAN FD (socket must be opened with can_fd=True)
            remote: Send a remote request frame (data must be empty)
            dlc: Requested length for remote frames (0..8)

        Raises:
            SocketCanError: NOT_OPEN, a validation code, or SEND_ERROR
        """
        handle = self._require_open('send')
        can_id, payload, extended = validate_outbound(can_id, data, extended=extended, fd=fd, remote=remote)
        if remote:
            dlc = 0 if dlc is None else dlc
            validate_remote_dlc(dlc)
        else:
            dlc = None
        if fd and not self._can_fd:
            raise SocketCanError("CAN FD frames require a socket opened with can_fd=True",
                                 ErrorCode.INVALID_PARAMETERS, operation='send')

        try:
            self._native.send(handle, can_id, payload, extended, fd, remote, dlc)
        except Exception as e:
            raise SocketCanError(f"Error during send: {e}", ErrorCode.SEND_ERROR,
                                 operation='send', original_error=e) from e
        metrics.inc("frames_sent")
        logger.debug("CAN frame sent - ID: 0x%x%s, Data: [%s]%s%s", can_id, " (ext)" if extended else "",
                     payload.hex(' '), " FD" if fd else "", f" Remote dlc={dlc}" if remote else "")

    def send_remote(self, can_id: Union[int, CanId], dlc: int = 0, extended: Optional[bool] = None) -> None:
        """Send a remote frame requesting ``dlc`` bytes."""
        validate_remote_dlc(dlc)
        self.send(can_id, b"", extended=extended, remote=True, dlc=dlc)

    def set_filters(self, filters: Sequence[Union[CanFilter, dict]]) -> None:
        """Validate and install acceptance filters on the native socket.

        Dict entries accept 'can_id' (or 'id'), 'mask' (or 'can_mask') and
        'extended'.
        """
        handle = self._require_open('set_filters')
        parsed = [self._to_filter(f) for f in filters]
        for f in parsed:
            validate_filter(f)
        try:
            self._native.set_filters(handle, parsed)
        except Exception as e:
            raise SocketCanError(f"Error setting filters: {e}", ErrorCode.FILTER_ERROR,
                                 operation='set_filters', original_error=e) from e
        logger.info("Set %d CAN filters", len(parsed))

    def clear_filters(self) -> None:
        handle = self._require_open('clear_filters')
        try:
            self._native.clear_filters(handle)
        except Exception as e:
            raise SocketCanError(f"Error clearing filters: {e}", ErrorCode.FILTER_ERROR,
                                 operation='clear_filters', original_error=e) from e
        logger.info("Cleared all CAN filters")

    @staticmethod
    def _to_filter(f: Union[CanFilter, dict]) -> CanFilter:
        if isinstance(f, CanFilter):
            return f
        if isinstance(f, dict):
            try:
                can_id = int(f['can_id'] if 'can_id' in f else f['id'])
                mask = int(f['mask'] if 'mask' in f else f['can_mask'])
            except (KeyError, TypeError, ValueError) as e:
                raise SocketCanError(f"Invalid CAN filter {f!r}: {e}", ErrorCode.INVALID_FILTER) from e
            return CanFilter(can_id=can_id, mask=mask, extended=bool(f.get('extended', False)))
        raise SocketCanError(f"Invalid CAN filter {f!r}", ErrorCode.INVALID_FILTER)

    # ----- reception primitive -----

    @staticmethod
    def _resolve_timeout(*candidates: Optional[float]) -> float:
        timeout = next(t for t in candidates if t is not None)
        if not isinstance(timeout, (int, float)) or isinstance(timeout, bool):
            raise SocketCanError(f"Timeout must be a number of milliseconds, got {timeout!r}",
                                 ErrorCode.INVALID_PARAMETERS)
        if timeout < 0:
            raise SocketCanError(f"Timeout must be non-negative, got {timeout}", ErrorCode.INVALID_PARAMETERS)
        return timeout

    def _drop_pending_read(self) -> None:
        # the handle is going away; an in-flight read has no consumer left
        self._pending_read = None

    async def _next_frame(self, timeout_ms: float, operation: str) -> Frame:
        """Perform one native read: return a frame or raise RECEIVE_TIMEOUT / RECEIVE_ERROR.

        A read left in flight by a consumer that stopped waiting is adopted
        first, bounded by this call's own timeout. When this call times out
        or is cancelled, its read stays pending for the next consumer.
        """
        handle = self._require_open(operation)
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout_ms / 1000.0
        while True:
            read = self._pending_read
            adopted = read is not None
            if not adopted:
                remaining_ms = max(0.0, (deadline - loop.time()) * 1000.0)
                read = loop.run_in_executor(None, self._native.read_one, handle, remaining_ms)
                read.add_done_callback(_retrieve_outcome)
                self._pending_read = read
            # asyncio.wait never cancels the read, even when this task is cancelled
            wait_s = max(0.0, deadline - loop.time()) if adopted else None
            done, _ = await asyncio.wait({read}, timeout=wait_s)
            if not done:
                frame = None
                break
            if self._pending_read is not read:
                # a concurrent receive() already took this result
                continue
            self._pending_read = None
            try:
                frame = read.result()
                if frame is not None:
                    validate_inbound(frame)
            except Exception as e:
                raise SocketCanError(f"Error during receive: {e}", ErrorCode.RECEIVE_ERROR,
                                     operation=operation, original_error=e) from e
            if frame is None and adopted:
                # the adopted read expired on its own timeout; read again with ours
                continue
            break

        if frame is None:
            metrics.inc("receive_timeouts")
            raise SocketCanError(f"No CAN frame received within {timeout_ms} ms",
                                 ErrorCode.RECEIVE_TIMEOUT, operation=operation)
        metrics.inc("frames_received")
        return frame

    async def receive(self, timeout: Optional[float] = None) -> Frame:
        """Receive one frame.

        Args:
            timeout: Milliseconds to wait; falls back to the socket's
                default_timeout, then ``settings.receive_timeout_ms``

        Raises:
            SocketCanError: NOT_OPEN, RECEIVE_TIMEOUT or RECEIVE_ERROR
        """
        timeout_ms = self._resolve_timeout(timeout, self._default_timeout, self.settings.receive_timeout_ms)
        frame = await self._next_frame(timeout_ms, 'receive')
        logger.debug("CAN %s frame received - ID: 0x%x, Data: [%s]", classify(frame).value,
                     frame.can_id, frame.data.hex(' '))
        return frame

    # ----- reader ownership -----

    def _acquire_reader(self, owner: str) -> None:
        if self._active_reader is not None:
            raise SocketCanError(f"CAN socket is already being read by an active {self._active_reader}",
                                 ErrorCode.READER_BUSY, operation=owner)
        self._active_reader = owner

    def _release_reader(self, owner: str) -> None:
        if self._active_reader == owner:
            self._active_reader = None

    # ----- push model -----

    @property
    def is_listening(self) -> bool:
        return self._state is ListenerState.LISTENING

    @property
    def listener_state(self) -> ListenerState:
        return self._state

    async def start_listening(self, interval: Optional[float] = None) -> None:
        """Start the polling task that emits 'frame' events.

        Returns once the task is scheduled and 'listening' was emitted.

        Args:
            interval: Read timeout of each tick in milliseconds
                (defaults to ``settings.listen_interval_ms``)

        Raises:
            SocketCanError: ALREADY_LISTENING, NOT_OPEN or READER_BUSY
        """
        if self._state is ListenerState.LISTENING:
            raise SocketCanError("Already listening for frames", ErrorCode.ALREADY_LISTENING,
                                 operation='start_listening')
        self._require_open('start_listening')
        interval_ms = self._resolve_timeout(interval, self.settings.listen_interval_ms)
        if interval_ms == 0:
            raise SocketCanError("Listening interval must be positive", ErrorCode.INVALID_PARAMETERS)
        self._acquire_reader(_LISTENER)

        self._state = ListenerState.LISTENING
        loop = asyncio.get_running_loop()
        task = loop.create_task(self._listen(interval_ms), name=f"can-listener-{self._interface_name}")
        task.add_done_callback(self._on_listener_done)
        self._listener_task = task
        metrics.inc("listener_sessions")
        logger.info("Listening for CAN frames on %s (interval=%s ms)", self._interface_name, interval_ms)
        self.events.emit(EVENT_LISTENING)

    def stop_listening(self) -> None:
        """Cancel the polling task and emit 'stopped'. No-op when idle."""
        if self._state is not ListenerState.LISTENING:
            return
        task = self._end_session()
        if task is not None and not task.done():
            task.cancel()
        logger.info("Stopped listening on %s", self._interface_name)
        self.events.emit(EVENT_STOPPED)

    def _end_session(self) -> Optional[asyncio.Task]:
        task = self._listener_task
        self._listener_task = None
        self._state = ListenerState.IDLE
        self._release_reader(_LISTENER)
        return task

    def _owns_session(self) -> bool:
        current = asyncio.current_task()
        return current is not None and self._listener_task is current

    async def _listen(self, interval_ms: float) -> None:
        try:
            while self._owns_session():
                try:
                    frame = await self._next_frame(interval_ms, 'listen')
                except SocketCanError as e:
                    if e.code is ErrorCode.RECEIVE_TIMEOUT:
                        # empty tick
                        continue
                    metrics.inc("listener_errors")
                    logger.error(f"Listener on {self._interface_name} stopped after read failure: {e}")
                    error = SocketCanError(f"Listening error: {e}", ErrorCode.LISTENING_ERROR,
                                           operation='listen', original_error=e)
                    self.events.emit(EVENT_ERROR, error)
                    return
                if not self._owns_session():
                    break
                self.events.emit(EVENT_FRAME, frame)
                await asyncio.sleep(LISTEN_TICK_PAUSE_S)
        finally:
            if self._owns_session():
                self._end_session()
                self.events.emit(EVENT_STOPPED)

    @staticmethod
    def _on_listener_done(task: asyncio.Task) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            task.get_loop().call_exception_handler({
                'message': 'Unhandled failure in CAN listener task',
                'exception': exc,
                'task': task,
            })

    # ----- pull model -----

    async def frames(self, timeout: Optional[float] = None, max_frames: Optional[int] = None,
                     filter: Optional[FrameFilter] = None) -> AsyncIterator[Frame]:
        """Yield received frames, one native read per pull.

        Args:
            timeout: Milliseconds bounding each read (default
                ``settings.sequence_timeout_ms``); a read that times out ends
                the sequence with RECEIVE_TIMEOUT
            max_frames: Stop after this many yielded frames (None = unbounded)
            filter: Predicate; frames it rejects are dropped and not counted

        Raises:
            SocketCanError: NOT_OPEN, READER_BUSY, RECEIVE_TIMEOUT or RECEIVE_ERROR
        """
        self._require_open('frames')
        timeout_ms = self._resolve_timeout(timeout, self.settings.sequence_timeout_ms)
        if max_frames is not None and (not isinstance(max_frames, int) or isinstance(max_frames, bool)
                                       or max_frames < 0):
            raise SocketCanError(f"max_frames must be a non-negative integer, got {max_frames!r}",
                                 ErrorCode.INVALID_PARAMETERS, operation='frames')
        if max_frames == 0:
            return

        self._acquire_reader(_SEQUENCE)
        count = 0
        try:
            while max_frames is None or count < max_frames:
                frame = await self._next_frame(timeout_ms, 'frames')
                if filter is not None and not filter(frame):
                    continue
                count += 1
                yield frame
        finally:
            self._release_reader(_SEQUENCE)
            logger.debug("Frame sequence on %s finished after %d frames", self._interface_name, count)

    def frames_with_id(self, can_id: Union[int, CanId], timeout: Optional[float] = None,
                       max_frames: Optional[int] = None,
                       filter: Optional[FrameFilter] = None) -> AsyncIterator[Frame]:
        """Like ``frames()`` but only yields frames whose id equals ``can_id``.

        ``can_id`` may be an int or a ``CanId``; a ``CanId`` range-checks the id
        against its own flag. Matching compares the numeric id only.
        """
        can_id, extended = parse_can_id(can_id)
        validate_can_id(can_id, derive_extended(can_id, extended))

        def matches(frame: Frame) -> bool:
            return frame.can_id == can_id and (filter is None or filter(frame))

        return self.frames(timeout=timeout, max_frames=max_frames, filter=matches)

    def frames_of_type(self, kind: Union[FrameKind, str], timeout: Optional[float] = None,
                       max_frames: Optional[int] = None,
                       filter: Optional[FrameFilter] = None) -> AsyncIterator[Frame]:
        """Like ``frames()`` but only yields frames classified as ``kind``."""
        wanted = to_kind(kind)

        def matches(frame: Frame) -> bool:
            return classify(frame) is wanted and (filter is None or filter(frame))

        return self.frames(timeout=timeout, max_frames=max_frames, filter=matches)

    async def collect_frames(self, max_frames: int, timeout: Optional[float] = None,
                             filter: Optional[FrameFilter] = None) -> List[Frame]:
        """Collect exactly ``max_frames`` frames into a list.

        All-or-nothing: if the sequence fails first, the error propagates and
        the frames read so far are discarded.
        """
        if not isinstance(max_frames, int) or isinstance(max_frames, bool) or max_frames < 1:
            raise SocketCanError(f"collect_frames requires max_frames >= 1, got {max_frames!r}",
                                 ErrorCode.INVALID_PARAMETERS, operation='collect_frames')
        collected: List[Frame] = []
        async with aclosing(self.frames(timeout=timeout, max_frames=max_frames, filter=filter)) as seq:
            async for frame in seq:
                collected.append(frame)
        return collected
