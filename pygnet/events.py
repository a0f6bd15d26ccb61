"""Event callbacks, actions and protocol-address parsing."""

from __future__ import annotations

import enum
from typing import Any


class Action(enum.IntEnum):
    """What should happen after an event has been handled."""

    NONE = 0
    CLOSE = 1
    SHUTDOWN = 2


class EventHandler:
    """Callbacks fired by the server and client event loops.

    Every method has a default that takes no action, so a handler only
    overrides the events it cares about.
    """

    def on_init_complete(self, server: Any) -> Action:
        """Fires when the server is ready to accept connections."""
        return Action.NONE

    def on_shutdown(self, server: Any) -> Action:
        """Fires after all event loops and connections are closed.

        The returned action is ignored by the loops.
        """
        return Action.NONE

    def on_opened(self, conn: Any) -> tuple[bytes | None, Action]:
        """Fires when a connection opens; returned bytes are sent unencoded."""
        return None, Action.NONE

    def on_closed(self, conn: Any, err: BaseException | None) -> Action:
        """Fires when a connection closes, with the last known error."""
        return Action.NONE

    def pre_write(self, conn: Any) -> Action:
        """Fires just before a packet is written to the peer.

        The returned action is ignored by the loops.
        """
        return Action.NONE

    def after_write(self, conn: Any, data: bytes) -> Action:
        """Fires right after a packet is written to the peer.

        The returned action is ignored by the loops.
        """
        return Action.NONE

    def react(self, packet: bytes | None, conn: Any) -> tuple[bytes | None, Action]:
        """Fires when data arrives; returned bytes are sent back to the peer."""
        return None, Action.NONE

    def tick(self) -> tuple[float, Action]:
        """Fires on start and again after the returned delay in seconds."""
        return 0.0, Action.NONE


class EventServer(EventHandler):
    """Built-in handler whose callbacks all take no action."""


def parse_proto_addr(addr: str) -> tuple[str, str]:
    """Split ``scheme://address`` into (network, address), defaulting to tcp."""
    network = "tcp"
    address = addr.lower()
    if "://" in address:
        parts = address.split("://")
        network, address = parts[0], parts[1]
    return network, address