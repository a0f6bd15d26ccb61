"""Frame codecs that split a byte stream into messages and frame replies."""

from __future__ import annotations

import abc
import enum
from dataclasses import dataclass
from typing import Any

from .errors import (
    IncompletePacketError,
    InvalidFixedLengthError,
    TooLessLengthError,
    UnexpectedEOFError,
    UnsupportedLengthError,
)

CRLF_BYTE = b"\n"


class ByteOrder(str, enum.Enum):
    """Byte order of a length field; the value suits ``int.to_bytes``."""

    BIG_ENDIAN = "big"
    LITTLE_ENDIAN = "little"


class Codec(abc.ABC):
    """Encodes outgoing frames and decodes incoming ones.

    ``decode`` raises IncompletePacketError when more data is needed;
    any other error closes the connection.
    """

    @abc.abstractmethod
    def encode(self, conn: Any, buf: bytes) -> bytes:
        """Return the framed form of ``buf``."""

    @abc.abstractmethod
    def decode(self, conn: Any) -> bytes:
        """Take one frame from the connection's buffered input."""


class BuiltInFrameCodec(Codec):
    """Pass-through codec: everything buffered is one frame."""

    def encode(self, conn: Any, buf: bytes) -> bytes:
        return bytes(buf)

    def decode(self, conn: Any) -> bytes:
        buf = conn.read()
        if not buf:
            raise IncompletePacketError()
        frame = bytes(buf)
        conn.reset_buffer()
        return frame


def _encode_delimited(buf: bytes, delimiter: bytes) -> bytes:
    return bytes(buf) + delimiter


def _decode_delimited(conn: Any, delimiter: bytes) -> bytes:
    buf = conn.read()
    idx = bytes(buf).find(delimiter)
    if idx == -1:
        raise IncompletePacketError()
    frame = bytes(buf[:idx])
    conn.shift_n(idx + 1)
    return frame


class DelimiterBasedFrameCodec(Codec):
    """Frames separated by a single delimiter byte."""

    def __init__(self, delimiter: int | bytes) -> None:
        if isinstance(delimiter, int):
            delimiter = bytes([delimiter])
        if len(delimiter) != 1:
            raise ValueError("delimiter must be a single byte")
        self.delimiter = bytes(delimiter)

    def encode(self, conn: Any, buf: bytes) -> bytes:
        return _encode_delimited(buf, self.delimiter)

    def decode(self, conn: Any) -> bytes:
        return _decode_delimited(conn, self.delimiter)


class LineBasedFrameCodec(Codec):
    """Frames separated by newlines."""

    def encode(self, conn: Any, buf: bytes) -> bytes:
        return _encode_delimited(buf, CRLF_BYTE)

    def decode(self, conn: Any) -> bytes:
        return _decode_delimited(conn, CRLF_BYTE)


class FixedLengthFrameCodec(Codec):
    """Frames of a fixed number of bytes."""

    def __init__(self, frame_length: int) -> None:
        if frame_length <= 0:
            raise ValueError("frame length must be positive")
        self.frame_length = frame_length

    def encode(self, conn: Any, buf: bytes) -> bytes:
        if len(buf) % self.frame_length != 0:
            raise InvalidFixedLengthError()
        return bytes(buf)

    def decode(self, conn: Any) -> bytes:
        size, buf = conn.read_n(self.frame_length)
        if size != self.frame_length:
            raise IncompletePacketError()
        frame = bytes(buf)
        conn.shift_n(size)
        return frame


@dataclass(frozen=True)
class EncoderConfig:
    """How the length field is prepended to an outgoing frame."""

    length_field_length: int
    byte_order: ByteOrder = ByteOrder.BIG_ENDIAN
    length_adjustment: int = 0
    length_includes_length_field_length: bool = False


@dataclass(frozen=True)
class DecoderConfig:
    """Where the length field sits in an incoming frame and what to strip."""

    length_field_length: int
    byte_order: ByteOrder = ByteOrder.BIG_ENDIAN
    length_field_offset: int = 0
    length_adjustment: int = 0
    initial_bytes_to_strip: int = 0


class InnerBuffer:
    """A read-only cursor over a byte sequence."""

    def __init__(self, data: bytes) -> None:
        self._data = memoryview(bytes(data))

    def read_n(self, n: int) -> bytes:
        """Consume and return the next ``n`` bytes."""
        if n == 0:
            return b""
        if n < 0:
            raise ValueError("negative length is invalid")
        if n > len(self._data):
            raise ValueError("exceeding buffer length")
        chunk = self._data[:n].tobytes()
        self._data = self._data[n:]
        return chunk

    def __len__(self) -> int:
        return len(self._data)


_LENGTH_LIMITS = {
    1: (256, "length does not fit into a byte: {}"),
    2: (65536, "length does not fit into a short integer: {}"),
    3: (16777216, "length does not fit into a medium integer: {}"),
}


class LengthFieldBasedFrameCodec(Codec):
    """Frames carrying their own length in a header field."""

    def __init__(self, encoder_config: EncoderConfig, decoder_config: DecoderConfig) -> None:
        self.encoder_config = encoder_config
        self.decoder_config = decoder_config

    def encode(self, conn: Any, buf: bytes | None) -> bytes:
        cfg = self.encoder_config
        payload = bytes(buf or b"")
        length = len(payload) + cfg.length_adjustment
        if cfg.length_includes_length_field_length:
            length += cfg.length_field_length
        if length < 0:
            raise TooLessLengthError()

        size = cfg.length_field_length
        if size in _LENGTH_LIMITS:
            limit, message = _LENGTH_LIMITS[size]
            if length >= limit:
                raise ValueError(message.format(length))
        elif size not in (4, 8):
            raise UnsupportedLengthError()
        header = (length & ((1 << (8 * size)) - 1)).to_bytes(size, cfg.byte_order.value)
        return header + payload

    def decode(self, conn: Any) -> bytes:
        cfg = self.decoder_config
        inner = InnerBuffer(conn.read())
        header = b""
        if cfg.length_field_offset > 0:
            try:
                header = inner.read_n(cfg.length_field_offset)
            except ValueError:
                raise IncompletePacketError() from None

        try:
            len_buf, frame_length = self._unadjusted_frame_length(inner)
        except UnexpectedEOFError:
            raise IncompletePacketError() from None

        msg_length = frame_length + cfg.length_adjustment
        try:
            msg = inner.read_n(msg_length)
        except ValueError:
            raise IncompletePacketError() from None

        full_message = header + len_buf + msg
        conn.shift_n(len(full_message))
        return full_message[cfg.initial_bytes_to_strip:]

    def _unadjusted_frame_length(self, inner: InnerBuffer) -> tuple[bytes, int]:
        cfg = self.decoder_config
        size = cfg.length_field_length
        if size not in (1, 2, 3, 4, 8):
            raise UnsupportedLengthError()
        try:
            len_buf = inner.read_n(size)
        except ValueError:
            raise UnexpectedEOFError() from None
        return len_buf, int.from_bytes(len_buf, cfg.byte_order.value)


def read_uint24(byte_order: ByteOrder, b: bytes) -> int:
    """Read a 24-bit unsigned integer from the first three bytes of ``b``."""
    if len(b) < 3:
        raise ValueError("need at least 3 bytes")
    return int.from_bytes(bytes(b[:3]), ByteOrder(byte_order).value)


def write_uint24(byte_order: ByteOrder, v: int) -> bytes:
    """Write the low 24 bits of ``v`` as three bytes."""
    return (v & 0xFFFFFF).to_bytes(3, ByteOrder(byte_order).value)