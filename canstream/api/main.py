from fastapi import Body, FastAPI, WebSocket, WebSocketDisconnect, HTTPException
import os
import asyncio
import logging
from collections import deque
from typing import List, Set
from contextlib import asynccontextmanager

import canstream
from canstream.adapters.interface import Frame
from canstream.can_socket import CanSocket
from canstream.config import ConfigManager
from canstream.exceptions import ErrorCode, SocketCanError
from canstream.frames import classify
from canstream.api import metrics as _metrics_module

logger = logging.getLogger(__name__)

RECENT_FRAMES_MAX = 100

_STATUS_BY_CODE = {
    ErrorCode.NOT_OPEN: 503,
    ErrorCode.SEND_ERROR: 502,
    ErrorCode.FILTER_ERROR: 502,
}


def frame_to_dict(frame: Frame) -> dict:
    return {
        "can_id": frame.can_id,
        "data": frame.data.hex(),
        "extended": frame.extended,
        "remote": frame.remote,
        "error": frame.error,
        "fd": frame.fd,
        "dlc": frame.dlc,
        "kind": classify(frame).value,
        "timestamp": frame.timestamp,
    }


def _http_error(e: SocketCanError) -> HTTPException:
    status = _STATUS_BY_CODE.get(e.code, 400)
    return HTTPException(status_code=status, detail={"code": e.code.value, "message": str(e)})


def _build_socket() -> CanSocket:
    settings = ConfigManager().socket_settings
    # the HTTP surface runs against the simulator unless a backend is requested
    if "CAN_BACKEND" not in os.environ:
        settings.backend = "sim"
    return CanSocket(settings.interface_name, can_fd=settings.can_fd, settings=settings)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Open the CAN socket, start the listener and the websocket broadcaster."""
    frame_queue: asyncio.Queue = asyncio.Queue()
    clients: Set[WebSocket] = set()
    recent: deque = deque(maxlen=RECENT_FRAMES_MAX)

    sock = _build_socket()

    def on_frame(frame: Frame) -> None:
        recent.append(frame)
        frame_queue.put_nowait(frame)

    def on_error(error: SocketCanError) -> None:
        logger.error(f"CAN listener error: {error}")
        app.state.last_error = error

    sock.on("frame", on_frame)
    sock.on("error", on_error)
    sock.open()
    await sock.start_listening()

    broadcaster = asyncio.create_task(_broadcaster_task(frame_queue, clients))

    app.state.socket = sock
    app.state.frame_queue = frame_queue
    app.state.clients = clients
    app.state.recent = recent
    app.state.last_error = None

    try:
        yield
    finally:
        logger.info("Shutting down CAN socket and broadcaster...")
        try:
            sock.close()
        except SocketCanError as e:
            logger.warning(f"Error closing CAN socket: {e}", exc_info=True)
        await frame_queue.put(None)
        await broadcaster


app = FastAPI(title="canstream", lifespan=lifespan)
app.include_router(_metrics_module.router)


async def _broadcaster_task(frame_queue: asyncio.Queue, clients: Set[WebSocket]):
    """Consume frames from frame_queue and push them to every websocket client."""
    while True:
        frame = await frame_queue.get()
        if frame is None:
            # shutdown signal
            break
        payload = frame_to_dict(frame)
        to_remove = []
        for ws in list(clients):
            try:
                await ws.send_json(payload)
            except Exception as e:
                logger.debug(f"WebSocket send error, removing client: {e}")
                to_remove.append(ws)
        for ws in to_remove:
            clients.discard(ws)


@app.get("/api/health")
def health():
    sock: CanSocket = getattr(app.state, "socket", None)
    return {
        "status": "ok",
        "service": "canstream",
        "version": canstream.__version__,
        "interface": sock.get_interface() if sock else None,
        "open": bool(sock and sock.is_open()),
        "listening": bool(sock and sock.is_listening),
    }


@app.get("/api/frames")
def recent_frames():
    """Frames most recently delivered by the listener, oldest first."""
    recent = getattr(app.state, "recent", None) or []
    return [frame_to_dict(f) for f in recent]


@app.post("/api/send-frame")
def api_send_frame(payload: dict):
    """Send a frame through the CAN socket.

    Payload: { "can_id": int, "data": "hexstring", "extended"?: bool, "fd"?: bool,
               "remote"?: bool, "dlc"?: int }
    """
    can_id = payload.get("can_id")
    data_hex = payload.get("data", "")
    if can_id is None:
        raise HTTPException(status_code=400, detail="can_id is required")
    try:
        can_id = int(can_id)
    except (ValueError, TypeError):
        raise HTTPException(status_code=400, detail=f"Invalid CAN ID format: {can_id}")
    try:
        data = bytes.fromhex(str(data_hex).replace(' ', '').replace('-', ''))
    except ValueError as e:
        logger.warning(f"Invalid hex data format: {str(data_hex)[:50]}")
        raise HTTPException(status_code=400, detail=f"data must be a valid hex string: {e}")

    sock: CanSocket = getattr(app.state, "socket", None)
    if sock is None:
        raise HTTPException(status_code=503, detail="CAN socket not available")
    try:
        sock.send(
            can_id,
            data,
            extended=payload.get("extended"),
            fd=bool(payload.get("fd", False)),
            remote=bool(payload.get("remote", False)),
            dlc=payload.get("dlc"),
        )
    except SocketCanError as e:
        logger.warning(f"Rejected frame 0x{can_id:X}: {e}")
        raise _http_error(e)
    return {"status": "ok"}


@app.post("/api/filters")
def api_set_filters(filters: List[dict] = Body(...)):
    """Install acceptance filters: [{ "can_id": int, "mask": int, "extended"?: bool }]."""
    sock: CanSocket = getattr(app.state, "socket", None)
    if sock is None:
        raise HTTPException(status_code=503, detail="CAN socket not available")
    try:
        sock.set_filters(filters)
    except SocketCanError as e:
        raise _http_error(e)
    return {"status": "ok", "count": len(filters)}


@app.delete("/api/filters")
def api_clear_filters():
    sock: CanSocket = getattr(app.state, "socket", None)
    if sock is None:
        raise HTTPException(status_code=503, detail="CAN socket not available")
    try:
        sock.clear_filters()
    except SocketCanError as e:
        raise _http_error(e)
    return {"status": "ok"}


@app.websocket("/ws/frames")
async def websocket_frames(ws: WebSocket):
    """Stream frames delivered by the listener to the connected client.

    Messages are JSON objects shaped like ``frame_to_dict``.
    """
    await ws.accept()
    clients: Set[WebSocket] = app.state.clients
    clients.add(ws)
    try:
        # keep the connection open until client disconnects
        while True:
            try:
                await ws.receive_text()
            except WebSocketDisconnect:
                break
    finally:
        clients.discard(ws)
        logger.debug("WebSocket client disconnected and removed")
