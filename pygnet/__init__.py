"""Event-driven networking client with frame codecs, buffered connections and a selector event loop."""

__version__ = "0.1.0"
__all__ = ["client", "codec", "connection", "errors", "eventloop", "events"]