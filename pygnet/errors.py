"""Exceptions raised by codecs, connections and event loops."""


class GnetError(Exception):
    """Base class of every error the package raises."""

    default_message = "network framework error"

    def __init__(self, message: str | None = None) -> None:
        super().__init__(self.default_message if message is None else message)


class IncompletePacketError(GnetError):
    """Not enough buffered data to decode a whole frame yet."""

    default_message = "incomplete packet"


class InvalidFixedLengthError(GnetError):
    """The data length is not a multiple of the fixed frame length."""

    default_message = "invalid fixed length of bytes"


class TooLessLengthError(GnetError):
    """The adjusted frame length came out negative."""

    default_message = "adjusted frame length is less than zero"


class UnsupportedLengthError(GnetError):
    """The length field size is not 1, 2, 3, 4 or 8 bytes."""

    default_message = "unsupported length field length, only 1, 2, 3, 4 and 8 are allowed"


class UnexpectedEOFError(GnetError):
    """The buffer ended in the middle of a length field."""

    default_message = "unexpected end of buffer"


class ServerShutdownError(GnetError):
    """The server or event loop is shutting down."""

    default_message = "server is going to be shutdown"


class UnsupportedProtocolError(GnetError):
    """The network protocol is not one the package can handle."""

    default_message = "only unix, tcp/tcp4/tcp6 and udp/udp4/udp6 are supported"


class ConnectionClosedError(GnetError):
    """The connection is already closed."""

    default_message = "connection is closed"