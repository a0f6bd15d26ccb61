"""Client side: dial outgoing connections and drive them with an event loop."""

from __future__ import annotations

import dataclasses
import enum
import logging
import socket
import threading
from dataclasses import dataclass
from typing import Any

from .codec import BuiltInFrameCodec, Codec
from .connection import Conn
from .errors import ServerShutdownError, UnsupportedProtocolError
from .eventloop import DEFAULT_READ_BUFFER_CAP, EventLoop
from .events import EventHandler

_STREAM_FAMILIES = {
    "tcp": socket.AF_UNSPEC,
    "tcp4": socket.AF_INET,
    "tcp6": socket.AF_INET6,
}
_DATAGRAM_FAMILIES = {
    "udp": socket.AF_UNSPEC,
    "udp4": socket.AF_INET,
    "udp6": socket.AF_INET6,
}


class TCPNoDelayMode(enum.IntEnum):
    """Whether Nagle's algorithm is disabled on TCP connections."""

    NO_DELAY = 0
    DELAY = 1


@dataclass
class ClientOptions:
    """Settings of a Client; durations are in seconds."""

    codec: Codec | None = None
    read_buffer_cap: int = 0
    ticker: bool = False
    tcp_no_delay: TCPNoDelayMode = TCPNoDelayMode.NO_DELAY
    tcp_keep_alive: float = 0.0
    socket_send_buffer: int = 0
    socket_recv_buffer: int = 0
    logger: logging.Logger | None = None
    log_path: str = ""
    log_level: int = logging.INFO


def ceil_to_power_of_two(n: int) -> int:
    """Return the smallest power of two not below ``n``, and at least 2."""
    if n <= 2:
        return 2
    return 1 << (n - 1).bit_length()


def _split_host_port(address: str) -> tuple[str, int]:
    host, sep, port = address.rpartition(":")
    if not sep:
        raise ValueError(f"missing port in address {address!r}")
    host = host.strip("[]") or "localhost"
    return host, int(port)


def _connect(family: int, socktype: int, host: str, port: int) -> socket.socket:
    last_error: OSError | None = None
    for fam, stype, proto, _name, sockaddr in socket.getaddrinfo(host, port, family, socktype):
        sock = socket.socket(fam, stype, proto)
        try:
            sock.connect(sockaddr)
        except OSError as exc:
            sock.close()
            last_error = exc
            continue
        return sock
    raise last_error if last_error is not None else OSError(f"no address found for {host}:{port}")


class Client:
    """Dials connections and runs their events on a single event loop thread."""

    def __init__(self, event_handler: EventHandler, options: ClientOptions | None = None) -> None:
        opts = dataclasses.replace(options) if options is not None else ClientOptions()
        self._log_handler: logging.Handler | None = None
        if opts.logger is None:
            if opts.log_path:
                logger = logging.getLogger(f"pygnet.client.{id(self)}")
                logger.setLevel(opts.log_level)
                self._log_handler = logging.FileHandler(opts.log_path)
                logger.addHandler(self._log_handler)
            else:
                logger = logging.getLogger("pygnet")
            opts.logger = logger
        if opts.codec is None:
            opts.codec = BuiltInFrameCodec()
        if opts.read_buffer_cap <= 0:
            opts.read_buffer_cap = DEFAULT_READ_BUFFER_CAP
        else:
            opts.read_buffer_cap = ceil_to_power_of_two(opts.read_buffer_cap)
        self.options = opts
        self.handler = event_handler
        self.loop = EventLoop(event_handler, opts.read_buffer_cap, opts.logger)
        self._thread: threading.Thread | None = None
        self._ticker_thread: threading.Thread | None = None
        self._ticker_stop = threading.Event()

    def start(self) -> None:
        """Start the event loop thread, and the ticker if enabled."""
        if self._thread is not None:
            raise RuntimeError("client already started")
        self.handler.on_init_complete(None)
        self._thread = threading.Thread(target=self.loop.run, name="pygnet-client", daemon=True)
        self._thread.start()
        if self.options.ticker:
            self._ticker_thread = threading.Thread(
                target=self.loop.ticker, args=(self._ticker_stop,), name="pygnet-ticker", daemon=True
            )
            self._ticker_thread.start()

    def stop(self) -> None:
        """Stop the event loop, closing every connection, then fire on_shutdown."""
        try:
            self.loop.shutdown()
        except ServerShutdownError:
            pass
        if self._thread is not None:
            self._thread.join()
        else:
            self.loop.run()
        self.handler.on_shutdown(None)
        if self._ticker_thread is not None:
            self._ticker_stop.set()
            self._ticker_thread.join()
        if self._log_handler is not None:
            self._log_handler.flush()
            self._log_handler.close()
            self.options.logger.removeHandler(self._log_handler)
            self._log_handler = None

    def dial(self, network: str, address: str) -> Conn:
        """Connect to ``address`` over ``network`` and hand the connection to the loop."""
        if network in _STREAM_FAMILIES:
            host, port = _split_host_port(address)
            sock = _connect(_STREAM_FAMILIES[network], socket.SOCK_STREAM, host, port)
        elif network in _DATAGRAM_FAMILIES:
            host, port = _split_host_port(address)
            sock = _connect(_DATAGRAM_FAMILIES[network], socket.SOCK_DGRAM, host, port)
        elif network == "unix":
            sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
            try:
                sock.connect(address)
            except OSError:
                sock.close()
                raise
        else:
            raise UnsupportedProtocolError()

        try:
            conn = self._wrap(sock, network, address)
        except BaseException:
            sock.close()
            raise
        try:
            self.loop.trigger(self.loop.register, conn)
        except ServerShutdownError:
            sock.close()
            raise
        return conn

    def _wrap(self, sock: socket.socket, network: str, address: str) -> Conn:
        opts = self.options
        if network.startswith("tcp"):
            if opts.tcp_no_delay == TCPNoDelayMode.NO_DELAY:
                sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)
            if opts.tcp_keep_alive > 0:
                self._set_keep_alive(sock, int(opts.tcp_keep_alive))
        if opts.socket_send_buffer > 0:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_SNDBUF, opts.socket_send_buffer)
        if opts.socket_recv_buffer > 0:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_RCVBUF, opts.socket_recv_buffer)
        sock.setblocking(False)

        if network == "unix":
            remote_addr: Any = address
            local_addr: Any = f"{address}.{sock.fileno()}"
            return Conn(sock, self.loop, opts.codec, local_addr, remote_addr)
        local_addr = sock.getsockname()
        remote_addr = sock.getpeername()
        if network in _DATAGRAM_FAMILIES:
            return Conn(sock, self.loop, None, local_addr, remote_addr, peer=None)
        return Conn(sock, self.loop, opts.codec, local_addr, remote_addr)

    @staticmethod
    def _set_keep_alive(sock: socket.socket, seconds: int) -> None:
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_KEEPALIVE, 1)
        seconds = max(seconds, 1)
        for name in ("TCP_KEEPIDLE", "TCP_KEEPINTVL"):
            option = getattr(socket, name, None)
            if option is not None:
                sock.setsockopt(socket.IPPROTO_TCP, option, seconds)

    def __enter__(self) -> Client:
        self.start()
        return self

    def __exit__(self, exc_type: Any, exc: Any, tb: Any) -> None:
        self.stop()