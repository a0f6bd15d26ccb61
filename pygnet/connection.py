"""A single peer connection: buffered input, framed output and async requests."""

from __future__ import annotations

import queue
import socket
import threading
from typing import Any, Iterable

from .codec import BuiltInFrameCodec, Codec
from .errors import GnetError, IncompletePacketError

MAX_BYTES_PER_WRITE = 64 * 1024


class Conn:
    """One connection owned by an event loop.

    Input arrives in two parts: the bytes of the latest read (``feed``) and
    the leftovers of earlier reads that no frame consumed yet (``stash``
    moves the former into the latter). Output that the socket cannot take
    at once is kept in a pending buffer until ``flush`` drains it.

    The loop object must provide ``handler`` (an EventHandler),
    ``close_conn(conn, err)``, ``wake(conn)`` and ``trigger(task, *args)``.
    """

    def __init__(
        self,
        sock: socket.socket,
        loop: Any,
        codec: Codec | None = None,
        local_addr: Any = None,
        remote_addr: Any = None,
        peer: Any = None,
    ) -> None:
        self.sock = sock
        self.loop = loop
        self.codec = codec if codec is not None else BuiltInFrameCodec()
        self.local_addr = local_addr
        self.remote_addr = remote_addr
        self.peer = peer
        self.context: Any = None
        self.opened = False
        self.closed = False
        self.response_buffer = bytearray()
        self.buffer_lock = threading.Lock()
        self.read_ready: queue.Queue[None] = queue.Queue()
        self._latest = b""
        self._inbound = bytearray()
        self._outbound = bytearray()

    @property
    def fd(self) -> int:
        """File descriptor of the underlying socket."""
        return self.sock.fileno()

    # ------------------------------------------------------------------
    # Input side; only safe from the owning event loop.

    def feed(self, data: bytes) -> None:
        """Set the bytes of the latest read, keeping any unconsumed ones."""
        if self._latest:
            self.stash()
        self._latest = bytes(data)

    def stash(self) -> None:
        """Move what is left of the latest read into the inbound buffer."""
        self._inbound.extend(self._latest)
        self._latest = b""

    def read(self) -> bytes:
        """Return all buffered input without consuming it."""
        if not self._inbound:
            return self._latest
        return bytes(self._inbound) + self._latest

    def reset_buffer(self) -> None:
        """Drop all buffered input."""
        self._latest = b""
        self._inbound.clear()

    def read_n(self, n: int) -> tuple[int, bytes]:
        """Return up to ``n`` buffered bytes, and their count, without consuming them.

        A non-positive ``n`` or one larger than what is buffered yields everything.
        """
        total = self.buffer_length()
        if total < n or n <= 0:
            n = total
        if not self._inbound:
            return n, self._latest[:n]
        if len(self._inbound) >= n:
            return n, bytes(self._inbound[:n])
        remaining = n - len(self._inbound)
        return n, bytes(self._inbound) + self._latest[:remaining]

    def shift_n(self, n: int) -> int:
        """Consume ``n`` buffered bytes and return how many were dropped.

        A non-positive ``n`` or one larger than what is buffered drops everything.
        """
        inbound_len = len(self._inbound)
        total = inbound_len + len(self._latest)
        if total < n or n <= 0:
            self.reset_buffer()
            return total
        if not self._inbound:
            self._latest = self._latest[n:]
            return n
        if inbound_len >= n:
            del self._inbound[:n]
            return n
        self._inbound.clear()
        self._latest = self._latest[n - inbound_len:]
        return n

    def buffer_length(self) -> int:
        """Number of buffered input bytes."""
        return len(self._inbound) + len(self._latest)

    def next_frame(self) -> bytes | None:
        """Decode the next frame, or return None when none can be decoded yet."""
        try:
            return self.codec.decode(self)
        except IncompletePacketError:
            return None
        except GnetError:
            return None

    # ------------------------------------------------------------------
    # Output side.

    def _handler(self) -> Any:
        return self.loop.handler

    def _send(self, packet: bytes) -> Any:
        """Send ``packet`` now, keeping whatever the socket does not accept."""
        try:
            n = self.sock.send(packet)
        except (BlockingIOError, InterruptedError):
            self._outbound.extend(packet)
            return None
        except OSError as err:
            return self.loop.close_conn(self, err)
        if n < len(packet):
            self._outbound.extend(packet[n:])
        return None

    def _write_raw(self, data: bytes) -> None:
        """Send ``data`` unencoded, as done for the greeting of a new connection."""
        handler = self._handler()
        try:
            handler.pre_write(self)
            try:
                n = self.sock.send(data)
            except (BlockingIOError, InterruptedError):
                self._outbound.extend(data)
                return
            if n < len(data):
                self._outbound.extend(data[n:])
        finally:
            handler.after_write(self, data)

    def write(self, data: bytes) -> Any:
        """Encode ``data`` and send it, buffering what cannot be sent yet."""
        handler = self._handler()
        try:
            packet = self.codec.encode(self, data)
            handler.pre_write(self)
            if self._outbound:
                self._outbound.extend(packet)
                return None
            return self._send(packet)
        finally:
            handler.after_write(self, data)

    def writev(self, chunks: Iterable[bytes]) -> Any:
        """Encode several chunks and send them in order as one write."""
        chunks = list(chunks)
        handler = self._handler()
        try:
            packets = []
            for chunk in chunks:
                packets.append(self.codec.encode(self, chunk))
                handler.pre_write(self)
            joined = b"".join(packets)
            if self._outbound:
                self._outbound.extend(joined)
                return None
            return self._send(joined)
        finally:
            for chunk in chunks:
                handler.after_write(self, chunk)

    def flush(self) -> int:
        """Send up to MAX_BYTES_PER_WRITE pending bytes; return how many went out.

        Raises OSError for socket failures other than a full send buffer.
        """
        if not self._outbound:
            return 0
        try:
            n = self.sock.send(bytes(self._outbound[:MAX_BYTES_PER_WRITE]))
        except (BlockingIOError, InterruptedError):
            return 0
        del self._outbound[:n]
        return n

    def has_pending_output(self) -> bool:
        """Whether output is waiting for the socket to become writable."""
        return bool(self._outbound)

    def _async_write(self, data: bytes) -> Any:
        if not self.opened:
            return None
        return self.write(data)

    def _async_writev(self, chunks: list[bytes]) -> Any:
        if not self.opened:
            return None
        return self.writev(chunks)

    # ------------------------------------------------------------------
    # Requests that are safe from any thread.

    def async_write(self, data: bytes) -> Any:
        """Ask the event loop to write ``data``."""
        return self.loop.trigger(self._async_write, bytes(data))

    def async_writev(self, chunks: Iterable[bytes]) -> Any:
        """Ask the event loop to write several chunks."""
        return self.loop.trigger(self._async_writev, [bytes(c) for c in chunks])

    def send_to(self, data: bytes) -> None:
        """Send a datagram to the peer, or on the connected socket if there is none."""
        handler = self._handler()
        handler.pre_write(self)
        try:
            if self.peer is None:
                self.sock.send(data)
            else:
                self.sock.sendto(data, self.peer)
        finally:
            handler.after_write(self, data)

    def wake(self) -> Any:
        """Ask the event loop to fire a react event for this connection."""
        return self.loop.trigger(self.loop.wake, self)

    def close(self) -> Any:
        """Ask the event loop to close this connection."""
        return self.loop.trigger(self.loop.close_conn, self, None)

    def _release(self) -> None:
        """Drop buffers and per-connection state once the connection is gone."""
        self.opened = False
        self.context = None
        self.peer = None
        self.local_addr = None
        self.remote_addr = None
        self.reset_buffer()
        self._outbound.clear()