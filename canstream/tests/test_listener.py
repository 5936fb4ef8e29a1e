import asyncio

import pytest
from contextlib import aclosing

from canstream import metrics
from canstream.adapters.interface import Frame
from canstream.can_socket import CanSocket, ListenerState
from canstream.exceptions import ErrorCode, SocketCanError

IFACE = "vcan0"


@pytest.mark.asyncio
async def test_start_then_stop_emits_listening_then_stopped(sock):
    events = []
    sock.on("listening", lambda: events.append("listening"))
    sock.on("stopped", lambda: events.append("stopped"))

    await sock.start_listening()
    assert sock.is_listening
    assert sock.listener_state is ListenerState.LISTENING
    await asyncio.sleep(0.02)
    sock.stop_listening()

    assert not sock.is_listening
    assert events == ["listening", "stopped"]
    # let the cancelled task unwind; no extra stopped event
    await asyncio.sleep(0.02)
    assert events == ["listening", "stopped"]


@pytest.mark.asyncio
async def test_second_start_rejected_and_first_session_keeps_running(sock, sim, wait_until):
    got = []
    sock.on("frame", got.append)
    await sock.start_listening()
    with pytest.raises(SocketCanError) as exc:
        await sock.start_listening()
    assert exc.value.code is ErrorCode.ALREADY_LISTENING
    assert sock.is_listening

    sim.inject(IFACE, Frame(0x321, b"\x01"))
    await wait_until(lambda: len(got) == 1)
    assert got[0].can_id == 0x321
    sock.stop_listening()


@pytest.mark.asyncio
async def test_frames_dispatched_in_arrival_order(sock, sim, wait_until):
    got = []
    sock.on("frame", got.append)
    await sock.start_listening(interval=5)
    for can_id in (0x1, 0x2, 0x3):
        sim.inject(IFACE, Frame(can_id, bytes([can_id])))
    await wait_until(lambda: len(got) == 3)
    sock.stop_listening()
    assert [f.can_id for f in got] == [0x1, 0x2, 0x3]
    assert metrics.get("frames_received") == 3


@pytest.mark.asyncio
async def test_timeouts_are_not_surfaced(sock, sim, wait_until):
    errors = []
    sock.on("error", errors.append)
    await sock.start_listening(interval=1)
    await wait_until(lambda: metrics.get("receive_timeouts") >= 3)
    assert errors == []
    assert sock.is_listening
    sock.stop_listening()


@pytest.mark.asyncio
async def test_fatal_read_error_stops_listener(sock, sim, wait_until):
    events = []
    sock.on("error", lambda e: events.append(("error", e)))
    sock.on("stopped", lambda: events.append(("stopped", None)))
    await sock.start_listening()

    sim.fail_with = OSError("Network is down")
    await wait_until(lambda: not sock.is_listening)

    assert [name for name, _ in events] == ["error", "stopped"]
    err = events[0][1]
    assert err.code is ErrorCode.LISTENING_ERROR
    assert err.original_error.code is ErrorCode.RECEIVE_ERROR
    assert metrics.get("listener_errors") == 1
    # the reader marker is free again
    sim.fail_with = None
    await sock.start_listening()
    sock.stop_listening()


@pytest.mark.asyncio
async def test_fatal_error_without_error_observer_goes_to_loop_handler(sock, sim, wait_until):
    loop = asyncio.get_running_loop()
    reported = []
    loop.set_exception_handler(lambda _loop, context: reported.append(context))
    stopped = []
    sock.on("stopped", lambda: stopped.append(True))
    try:
        await sock.start_listening()
        sim.fail_with = OSError("boom")
        await wait_until(lambda: reported)
    finally:
        loop.set_exception_handler(None)
    assert not sock.is_listening
    assert stopped == [True]
    assert reported[0]["exception"].code is ErrorCode.LISTENING_ERROR


@pytest.mark.asyncio
async def test_stop_is_idempotent(sock):
    stopped = []
    sock.on("stopped", lambda: stopped.append(True))
    sock.stop_listening()
    assert stopped == []
    await sock.start_listening()
    sock.stop_listening()
    sock.stop_listening()
    assert stopped == [True]


@pytest.mark.asyncio
async def test_no_frames_dispatched_after_stop(sock, sim, wait_until):
    got = []
    sock.on("frame", got.append)
    await sock.start_listening(interval=300)
    # stop while a native read is in flight
    await wait_until(lambda: sim.reads == 1)
    sock.stop_listening()
    sim.inject(IFACE, Frame(0x10, b"\x01"))
    await asyncio.sleep(0.05)
    assert got == []
    # the frame picked up by the stopped listener's read goes to the next consumer
    frame = await sock.receive(timeout=100)
    assert frame.can_id == 0x10
    assert sim.reads == 1


@pytest.mark.asyncio
async def test_expired_read_left_by_listener_is_replaced(sock, sim, wait_until):
    await sock.start_listening(interval=30)
    await wait_until(lambda: sim.reads >= 1)
    sock.stop_listening()
    loop = asyncio.get_running_loop()
    loop.call_later(0.1, sim.inject, IFACE, Frame(0x11, b"\x02"))
    frame = await sock.receive(timeout=500)
    assert frame.can_id == 0x11


@pytest.mark.asyncio
async def test_stop_from_frame_observer(sock, sim, wait_until):
    got = []

    def on_frame(frame):
        got.append(frame)
        sock.stop_listening()

    sock.on("frame", on_frame)
    await sock.start_listening()
    sim.inject(IFACE, Frame(0x1))
    sim.inject(IFACE, Frame(0x2))
    await wait_until(lambda: not sock.is_listening)
    await asyncio.sleep(0.05)
    assert [f.can_id for f in got] == [0x1]


@pytest.mark.asyncio
async def test_start_requires_open_socket(sim, settings):
    s = CanSocket(IFACE, native=sim, settings=settings)
    with pytest.raises(SocketCanError) as exc:
        await s.start_listening()
    assert exc.value.code is ErrorCode.NOT_OPEN
    assert not s.is_listening


@pytest.mark.asyncio
async def test_listener_and_sequence_are_exclusive(sock, sim):
    sim.inject(IFACE, Frame(0x1))
    async with aclosing(sock.frames(max_frames=2)) as seq:
        first = await seq.__anext__()
        assert first.can_id == 0x1
        with pytest.raises(SocketCanError) as exc:
            await sock.start_listening()
        assert exc.value.code is ErrorCode.READER_BUSY
    assert not sock.is_listening

    await sock.start_listening()
    with pytest.raises(SocketCanError) as exc:
        await sock.collect_frames(max_frames=1)
    assert exc.value.code is ErrorCode.READER_BUSY
    sock.stop_listening()


@pytest.mark.asyncio
async def test_close_stops_listener_and_emits_close(sim, settings):
    s = CanSocket(IFACE, native=sim, settings=settings)
    s.open()
    events = []
    s.on("stopped", lambda: events.append("stopped"))
    s.on("close", lambda: events.append("close"))
    await s.start_listening()
    s.close()
    assert events == ["stopped", "close"]
    assert not s.is_open()
    assert not s.is_listening
