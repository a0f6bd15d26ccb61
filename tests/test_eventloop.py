import socket
import threading
import time

import pytest

from pygnet.codec import BuiltInFrameCodec, LineBasedFrameCodec
from pygnet.connection import Conn
from pygnet.errors import ServerShutdownError
from pygnet.eventloop import EventLoop
from pygnet.events import Action, EventServer


class RecordingHandler(EventServer):
    def __init__(self, greeting=None, closed_action=Action.NONE, reply=None):
        self.greeting = greeting
        self.closed_action = closed_action
        self.reply = reply
        self.opened = []
        self.closed = []
        self.reacted = []

    def on_opened(self, conn):
        self.opened.append(conn)
        return self.greeting, Action.NONE

    def on_closed(self, conn, err):
        self.closed.append((conn, err))
        return self.closed_action

    def react(self, packet, conn):
        self.reacted.append(packet)
        return self.reply, Action.NONE


class EchoHandler(RecordingHandler):
    def react(self, packet, conn):
        with conn.buffer_lock:
            data = bytes(conn.response_buffer)
            conn.response_buffer.clear()
        return data, Action.NONE


@pytest.fixture
def make_loop():
    loops = []

    def factory(handler=None, cap=4096):
        loop = EventLoop(handler if handler is not None else RecordingHandler(), cap, None)
        loops.append(loop)
        return loop

    yield factory
    for loop in loops:
        try:
            loop.shutdown()
        except ServerShutdownError:
            continue
        loop.run()


@pytest.fixture
def stream_pair():
    ours, theirs = socket.socketpair()
    ours.setblocking(False)
    theirs.settimeout(5)
    yield ours, theirs
    ours.close()
    theirs.close()


@pytest.fixture
def dgram_pair():
    ours, theirs = socket.socketpair(socket.AF_UNIX, socket.SOCK_DGRAM)
    ours.setblocking(False)
    theirs.settimeout(5)
    yield ours, theirs
    ours.close()
    theirs.close()


def test_default_read_buffer_cap():
    loop = EventLoop(RecordingHandler(), 0, None)
    assert loop.read_buffer_cap == 0x10000
    loop.shutdown()
    loop.run()


def test_register_opens_connection_and_sends_greeting(make_loop, stream_pair):
    ours, theirs = stream_pair
    handler = RecordingHandler(greeting=b"sweetness\r\n")
    loop = make_loop(handler)
    conn = Conn(ours, loop, BuiltInFrameCodec())
    assert loop.register(conn) is None
    assert conn.opened
    assert loop.connection_count() == 1
    assert handler.opened == [conn]
    assert theirs.recv(64) == b"sweetness\r\n"


def test_read_collects_frames_and_keeps_leftover(make_loop, stream_pair):
    ours, theirs = stream_pair
    loop = make_loop()
    conn = Conn(ours, loop, LineBasedFrameCodec())
    loop.register(conn)
    theirs.sendall(b"ab\ncd\nef")
    time.sleep(0.05)
    loop.read(conn)
    with conn.buffer_lock:
        assert bytes(conn.response_buffer) == b"abcd"
    assert conn.read() == b"ef"
    assert conn.buffer_length() == 2


def test_read_leftover_joins_next_read(make_loop, stream_pair):
    ours, theirs = stream_pair
    loop = make_loop()
    conn = Conn(ours, loop, LineBasedFrameCodec())
    loop.register(conn)
    theirs.sendall(b"hel")
    time.sleep(0.05)
    loop.read(conn)
    theirs.sendall(b"lo\n")
    time.sleep(0.05)
    loop.read(conn)
    with conn.buffer_lock:
        assert bytes(conn.response_buffer) == b"hello"
    assert conn.buffer_length() == 0


def test_read_eof_closes_connection(make_loop, stream_pair):
    ours, theirs = stream_pair
    handler = RecordingHandler()
    loop = make_loop(handler)
    conn = Conn(ours, loop, BuiltInFrameCodec())
    loop.register(conn)
    theirs.close()
    time.sleep(0.05)
    loop.read(conn)
    assert conn.closed
    assert handler.closed == [(conn, None)]
    assert loop.connection_count() == 0


def test_close_conn_fires_on_closed(make_loop, stream_pair):
    ours, theirs = stream_pair
    handler = RecordingHandler()
    loop = make_loop(handler)
    conn = Conn(ours, loop, BuiltInFrameCodec())
    loop.register(conn)
    assert loop.close_conn(conn, None) is None
    assert conn.closed and not conn.opened
    assert handler.closed == [(conn, None)]
    assert loop.connection_count() == 0
    assert theirs.recv(16) == b""


def test_close_conn_twice_is_harmless(make_loop, stream_pair):
    ours, _ = stream_pair
    handler = RecordingHandler()
    loop = make_loop(handler)
    conn = Conn(ours, loop, BuiltInFrameCodec())
    loop.register(conn)
    loop.close_conn(conn, None)
    assert loop.close_conn(conn, None) is None
    assert len(handler.closed) == 1


def test_close_conn_shutdown_request_raises(make_loop, stream_pair):
    ours, _ = stream_pair
    handler = RecordingHandler(closed_action=Action.SHUTDOWN)
    loop = make_loop(handler)
    conn = Conn(ours, loop, BuiltInFrameCodec())
    loop.register(conn)
    with pytest.raises(ServerShutdownError):
        loop.close_conn(conn, None)
    assert loop.connection_count() == 0


def test_handle_action(make_loop, stream_pair):
    ours, _ = stream_pair
    handler = RecordingHandler()
    loop = make_loop(handler)
    conn = Conn(ours, loop, BuiltInFrameCodec())
    loop.register(conn)
    assert loop.handle_action(conn, Action.NONE) is None
    with pytest.raises(ServerShutdownError):
        loop.handle_action(conn, Action.SHUTDOWN)
    assert not conn.closed
    loop.handle_action(conn, Action.CLOSE)
    assert conn.closed
    assert len(handler.closed) == 1


def test_wake_fires_react_and_writes(make_loop, stream_pair):
    ours, theirs = stream_pair
    handler = RecordingHandler(reply=b"Waking up.")
    loop = make_loop(handler)
    conn = Conn(ours, loop, BuiltInFrameCodec())
    loop.register(conn)
    loop.wake(conn)
    assert handler.reacted == [None]
    assert theirs.recv(64) == b"Waking up."


def test_wake_ignores_stale_connection(make_loop, stream_pair):
    ours, _ = stream_pair
    handler = RecordingHandler(reply=b"x")
    loop = make_loop(handler)
    conn = Conn(ours, loop, BuiltInFrameCodec())
    assert loop.wake(conn) is None
    assert handler.reacted == []


def test_write_drains_pending_output(make_loop, stream_pair):
    ours, theirs = stream_pair
    loop = make_loop()
    conn = Conn(ours, loop, BuiltInFrameCodec())
    loop.register(conn)
    payload = bytes(range(256)) * 4096
    received = bytearray()

    def reader():
        while len(received) < len(payload):
            chunk = theirs.recv(65536)
            if not chunk:
                return
            received.extend(chunk)

    thread = threading.Thread(target=reader)
    thread.start()
    conn.write(payload)
    deadline = time.monotonic() + 10
    while conn.has_pending_output() and time.monotonic() < deadline:
        loop.write(conn)
        time.sleep(0.001)
    thread.join(timeout=10)
    assert not conn.has_pending_output()
    assert bytes(received) == payload


def test_read_udp_echoes_datagram(make_loop, dgram_pair):
    ours, theirs = dgram_pair

    class UDPEcho(RecordingHandler):
        def react(self, packet, conn):
            self.reacted.append(packet)
            return packet, Action.NONE

    handler = UDPEcho()
    loop = make_loop(handler)
    conn = Conn(ours, loop, None)
    loop.register(conn)
    assert loop.connection_count() == 0
    theirs.send(b"Hello World!")
    time.sleep(0.05)
    loop.read_udp(conn)
    assert handler.reacted == [b"Hello World!"]
    assert theirs.recv(64) == b"Hello World!"


def test_read_udp_shutdown_action_raises(make_loop, dgram_pair):
    ours, theirs = dgram_pair

    class ShutdownOnPacket(RecordingHandler):
        def react(self, packet, conn):
            return packet, Action.SHUTDOWN

    loop = make_loop(ShutdownOnPacket())
    conn = Conn(ours, loop, None)
    loop.register(conn)
    theirs.send(b"ping")
    time.sleep(0.05)
    with pytest.raises(ServerShutdownError):
        loop.read_udp(conn)
    assert theirs.recv(16) == b"ping"


def test_close_udp_socket(make_loop, dgram_pair):
    ours, _ = dgram_pair
    handler = RecordingHandler()
    loop = make_loop(handler)
    conn = Conn(ours, loop, None)
    loop.register(conn)
    fd = conn.fd
    loop.close_conn(conn, None)
    assert fd not in loop.udp_sockets
    assert handler.closed == [(conn, None)]
    assert ours.fileno() == -1


def test_run_echoes_and_shuts_down(stream_pair):
    ours, theirs = stream_pair
    handler = EchoHandler()
    loop = EventLoop(handler, 4096, None)
    thread = threading.Thread(target=loop.run)
    thread.start()
    conn = Conn(ours, loop, LineBasedFrameCodec())
    loop.trigger(loop.register, conn)
    theirs.sendall(b"hello\n")
    received = b""
    while not received.endswith(b"\n"):
        chunk = theirs.recv(64)
        assert chunk
        received += chunk
    assert received == b"hello\n"
    loop.shutdown()
    thread.join(timeout=5)
    assert not thread.is_alive()
    assert loop.connection_count() == 0
    assert [c for c, _ in handler.closed] == [conn]
    with pytest.raises(ServerShutdownError):
        loop.trigger(loop.shutdown)


def test_async_write_through_running_loop(stream_pair):
    ours, theirs = stream_pair
    loop = EventLoop(RecordingHandler(), 4096, None)
    thread = threading.Thread(target=loop.run)
    thread.start()
    conn = Conn(ours, loop, LineBasedFrameCodec())
    loop.trigger(loop.register, conn)
    conn.async_write(b"abc")
    received = b""
    while not received.endswith(b"\n"):
        chunk = theirs.recv(64)
        assert chunk
        received += chunk
    loop.shutdown()
    thread.join(timeout=5)
    assert received == b"abc\n"
    assert not thread.is_alive()


def test_ticker_shutdown_stops_loop():
    class Ticking(EventServer):
        def __init__(self):
            self.count = 0

        def tick(self):
            self.count += 1
            if self.count >= 3:
                return 0.01, Action.SHUTDOWN
            return 0.01, Action.NONE

    handler = Ticking()
    loop = EventLoop(handler, 4096, None)
    stop = threading.Event()
    run_thread = threading.Thread(target=loop.run)
    tick_thread = threading.Thread(target=loop.ticker, args=(stop,))
    run_thread.start()
    tick_thread.start()
    run_thread.join(timeout=5)
    stop.set()
    tick_thread.join(timeout=5)
    assert not run_thread.is_alive()
    assert not tick_thread.is_alive()
    assert handler.count >= 3