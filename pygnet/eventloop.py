"""A selector-driven event loop that owns connections and runs their callbacks."""

from __future__ import annotations

import logging
import queue
import selectors
import socket
import threading
from typing import Any, Callable

from .connection import Conn
from .errors import GnetError, ServerShutdownError
from .events import Action, EventHandler

DEFAULT_READ_BUFFER_CAP = 0x10000
_HANDLE_POLL_INTERVAL = 0.05

_STREAM = "stream"
_DATAGRAM = "datagram"


class EventLoop:
    """Polls sockets, reads and writes on their behalf and fires handler events.

    Work from other threads is handed over with ``trigger``; it runs on the
    thread that calls ``run``.
    """

    def __init__(
        self,
        handler: EventHandler,
        read_buffer_cap: int = DEFAULT_READ_BUFFER_CAP,
        logger: logging.Logger | None = None,
    ) -> None:
        self.handler = handler
        self.read_buffer_cap = read_buffer_cap if read_buffer_cap > 0 else DEFAULT_READ_BUFFER_CAP
        self.logger = logger if logger is not None else logging.getLogger("pygnet")
        self.connections: dict[int, Conn] = {}
        self.udp_sockets: dict[int, Conn] = {}
        self._count = 0
        self._interest: dict[int, int] = {}
        self._tasks: queue.SimpleQueue[tuple[Callable[..., Any], tuple[Any, ...]]] = queue.SimpleQueue()
        self._selector = selectors.DefaultSelector()
        self._wake_r, self._wake_w = socket.socketpair()
        self._wake_r.setblocking(False)
        self._wake_w.setblocking(False)
        self._selector.register(self._wake_r, selectors.EVENT_READ, None)
        self._closed = False

    def connection_count(self) -> int:
        """Number of open stream connections owned by this loop."""
        return self._count

    def trigger(self, task: Callable[..., Any], *args: Any) -> None:
        """Queue ``task(*args)`` to run on the loop thread."""
        if self._closed:
            raise ServerShutdownError("event loop is closed")
        self._tasks.put((task, args))
        try:
            self._wake_w.send(b"\0")
        except OSError:
            pass

    # ------------------------------------------------------------------
    # Registration and opening.

    @staticmethod
    def _is_datagram(conn: Conn) -> bool:
        return conn.sock.type == socket.SOCK_DGRAM

    def register(self, conn: Conn) -> Any:
        """Start polling ``conn``; stream connections are opened as well."""
        if self._is_datagram(conn):
            try:
                self._selector.register(conn.sock, selectors.EVENT_READ, (_DATAGRAM, conn))
            except (ValueError, KeyError, OSError):
                conn.sock.close()
                conn._release()
                raise
            self.udp_sockets[conn.fd] = conn
            return None
        try:
            self._selector.register(conn.sock, selectors.EVENT_READ, (_STREAM, conn))
        except (ValueError, KeyError, OSError):
            conn.sock.close()
            conn._release()
            raise
        self.connections[conn.fd] = conn
        self._interest[conn.fd] = selectors.EVENT_READ
        return self.open(conn)

    def open(self, conn: Conn) -> Any:
        """Mark ``conn`` open, send the greeting and start its react thread."""
        conn.opened = True
        self._count += 1
        out, action = self.handler.on_opened(conn)
        if out is not None:
            conn._write_raw(out)
        if conn.has_pending_output():
            self._set_interest(conn, selectors.EVENT_READ | selectors.EVENT_WRITE)
        threading.Thread(target=self._handle, args=(conn,), daemon=True).start()
        return self.handle_action(conn, action)

    def _handle(self, conn: Conn) -> None:
        """Fire react for every decoded frame until the connection closes."""
        while not conn.closed:
            try:
                conn.read_ready.get(timeout=_HANDLE_POLL_INTERVAL)
            except queue.Empty:
                continue
            if conn.closed:
                break
            out, action = self.handler.react(None, conn)
            try:
                self.trigger(self._respond, conn, out, action)
            except ServerShutdownError:
                break
            if action in (Action.CLOSE, Action.SHUTDOWN):
                break

    def _respond(self, conn: Conn, out: bytes | None, action: Action) -> Any:
        if conn.closed:
            return None
        if out is not None:
            conn.write(out)
            if conn.closed:
                return None
        if action == Action.CLOSE:
            return self.close_conn(conn, None)
        if action == Action.SHUTDOWN:
            return self.close_conn(conn, ServerShutdownError())
        return None

    # ------------------------------------------------------------------
    # I/O.

    def read(self, conn: Conn) -> Any:
        """Read from ``conn``, hand decoded frames to its react thread, keep the rest."""
        try:
            data = conn.sock.recv(self.read_buffer_cap)
        except (BlockingIOError, InterruptedError):
            return None
        except OSError as exc:
            return self.close_conn(conn, exc)
        if not data:
            return self.close_conn(conn, None)

        conn.feed(data)
        while (packet := conn.next_frame()) is not None:
            with conn.buffer_lock:
                conn.response_buffer.extend(packet)
            conn.read_ready.put(None)
        if not conn.opened:
            return None
        conn.stash()
        return None

    def write(self, conn: Conn) -> Any:
        """Send pending output of ``conn``; stop watching writability once drained."""
        self.handler.pre_write(conn)
        try:
            conn.flush()
        except OSError as exc:
            return self.close_conn(conn, exc)
        if not conn.has_pending_output():
            self._set_interest(conn, selectors.EVENT_READ)
        return None

    def close_conn(self, conn: Conn, err: BaseException | None = None) -> Any:
        """Close ``conn`` and fire on_closed.

        Raises ServerShutdownError when the handler asks for shutdown, and
        GnetError when the socket could not be removed or closed cleanly.
        """
        conn.closed = True
        if self._is_datagram(conn):
            return self._close_udp(conn, err)
        if not conn.opened:
            return None

        while conn.has_pending_output():
            try:
                sent = conn.flush()
            except OSError as exc:
                self.logger.warning("close_conn: error occurs when sending data back to peer, %s", exc)
                break
            if sent == 0:
                break

        problems = []
        fd = conn.fd
        try:
            self._selector.unregister(conn.sock)
        except (KeyError, ValueError, OSError) as exc:
            problems.append(f"failed to delete fd={fd} from poller: {exc}")
        try:
            conn.sock.close()
        except OSError as exc:
            problems.append(f"failed to close fd={fd}: {exc}")

        self.connections.pop(fd, None)
        self._interest.pop(fd, None)
        self._count -= 1
        action = self.handler.on_closed(conn, err)
        conn._release()
        if action == Action.SHUTDOWN:
            raise ServerShutdownError()
        if problems:
            raise GnetError(" & ".join(problems))
        return None

    def _close_udp(self, conn: Conn, err: BaseException | None) -> Any:
        fd = conn.sock.fileno()
        if fd == -1:
            return None
        try:
            self._selector.unregister(conn.sock)
        except (KeyError, ValueError, OSError):
            pass
        conn.sock.close()
        self.udp_sockets.pop(fd, None)
        if self.handler.on_closed(conn, err) == Action.SHUTDOWN:
            raise ServerShutdownError()
        conn._release()
        return None

    def close_all(self) -> None:
        """Close every connection and datagram socket, ignoring their errors."""
        for conn in [*self.connections.values(), *self.udp_sockets.values()]:
            try:
                self.close_conn(conn, None)
            except (GnetError, OSError) as exc:
                self.logger.debug("close_all: %s", exc)

    def wake(self, conn: Conn) -> Any:
        """Fire react for ``conn`` with no packet, ignoring stale connections."""
        if conn.closed or self.connections.get(conn.fd) is not conn:
            return None
        out, action = self.handler.react(None, conn)
        if out is not None:
            conn.write(out)
        return self.handle_action(conn, action)

    def handle_action(self, conn: Conn, action: Action) -> Any:
        """Carry out ``action`` for ``conn``."""
        if action == Action.CLOSE:
            return self.close_conn(conn, None)
        if action == Action.SHUTDOWN:
            raise ServerShutdownError()
        return None

    def read_udp(self, conn: Conn) -> None:
        """Receive one datagram on ``conn`` and fire react with it."""
        fd = conn.fd
        try:
            data, _addr = conn.sock.recvfrom(self.read_buffer_cap)
        except (BlockingIOError, InterruptedError):
            return
        except OSError as exc:
            raise GnetError(f"failed to read UDP packet from fd={fd}, {exc}") from exc
        out, action = self.handler.react(data, conn)
        if out is not None:
            try:
                conn.send_to(out)
            except OSError as exc:
                self.logger.debug("read_udp: failed to send reply: %s", exc)
        if conn.peer is not None:
            conn._release()
        if action == Action.SHUTDOWN:
            raise ServerShutdownError()

    # ------------------------------------------------------------------
    # Running.

    def ticker(self, stop_event: threading.Event) -> None:
        """Fire tick repeatedly until ``stop_event`` is set; honour shutdown requests."""
        while True:
            delay, action = self.handler.tick()
            if action == Action.SHUTDOWN:
                try:
                    self.trigger(self._stop)
                    self.logger.debug("stopping ticker from tick()")
                except GnetError as exc:
                    self.logger.debug("stopping ticker from tick(), trigger: %s", exc)
            if stop_event.wait(max(delay, 0.0)):
                self.logger.debug("stopping ticker from server")
                return

    def run(self) -> None:
        """Poll and dispatch until shut down, then close everything."""
        try:
            while True:
                try:
                    timeout = 0 if not self._tasks.empty() else None
                    for key, mask in self._selector.select(timeout):
                        if key.data is None:
                            self._drain_wakeup()
                            continue
                        kind, conn = key.data
                        if kind == _DATAGRAM:
                            self.read_udp(conn)
                        else:
                            self._on_conn_event(conn, mask)
                    self._run_tasks()
                    self._sync_interest()
                except ServerShutdownError as exc:
                    self.logger.debug("event-loop is exiting in terms of the demand from user, %s", exc)
                    break
                except (GnetError, OSError) as exc:
                    self.logger.debug("event-loop got a nonlethal error: %s", exc)
        finally:
            self.close_all()
            self._closed = True
            self._selector.close()
            self._wake_r.close()
            self._wake_w.close()

    def shutdown(self) -> None:
        """Ask the loop to stop."""
        self.trigger(self._stop)

    @staticmethod
    def _stop() -> None:
        raise ServerShutdownError()

    def _run_tasks(self) -> None:
        while True:
            try:
                task, args = self._tasks.get_nowait()
            except queue.Empty:
                return
            task(*args)

    def _drain_wakeup(self) -> None:
        while True:
            try:
                if not self._wake_r.recv(4096):
                    return
            except (BlockingIOError, InterruptedError):
                return

    def _on_conn_event(self, conn: Conn, mask: int) -> None:
        writable = bool(mask & selectors.EVENT_WRITE)
        if writable and conn.has_pending_output():
            self.write(conn)
        if conn.closed:
            return
        if mask & selectors.EVENT_READ and (not writable or not conn.has_pending_output()):
            self.read(conn)

    def _set_interest(self, conn: Conn, events: int) -> None:
        fd = conn.fd
        if fd not in self._interest or self._interest[fd] == events:
            return
        key = self._selector.get_key(conn.sock)
        self._selector.modify(conn.sock, events, key.data)
        self._interest[fd] = events

    def _sync_interest(self) -> None:
        for conn in list(self.connections.values()):
            wanted = selectors.EVENT_READ
            if conn.has_pending_output():
                wanted |= selectors.EVENT_WRITE
            self._set_interest(conn, wanted)