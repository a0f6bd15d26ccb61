# pygnet

An event-driven networking toolkit for the client side. It has connections
with inbound and outbound buffering, a selector-driven event loop that
dispatches socket readiness and user callbacks, a client that dials TCP, UDP
and Unix sockets, and frame codecs that split a byte stream into messages.

## Installation

```
pip install .
```

To run the tests:

```
pip install ".[test]"
pytest
```

## Event handlers

Subclass `pygnet.events.EventServer` and override only the callbacks you
need. The callbacks are `on_init_complete`, `on_shutdown`, `on_opened`,
`on_closed`, `pre_write`, `after_write`, `react` and `tick`. The event loop
acts on the `Action` returned by `on_opened`, `on_closed`, `react` and
`tick`. The values are `Action.NONE`, `Action.CLOSE` and `Action.SHUTDOWN`.

The two kinds of connection deliver data to `react` differently:

- On a stream connection (TCP or Unix), the event loop decodes frames with the
  connection's codec and appends each one to `conn.response_buffer`, a
  `bytearray` guarded by `conn.buffer_lock`. For each frame, `react(None, conn)`
  then fires on a per-connection thread. Bytes returned from `react` are
  encoded and written back on the event loop thread.
- On a UDP connection, `react(data, conn)` receives each datagram directly.
  Bytes returned are sent back with `conn.send_to`.

```python
from pygnet.events import Action, EventServer


class Printer(EventServer):
    def react(self, packet, conn):
        if packet is None:
            with conn.buffer_lock:
                packet = bytes(conn.response_buffer)
                conn.response_buffer.clear()
        print(packet)
        return None, Action.NONE
```

`tick` returns `(delay_in_seconds, action)`. When the client's ticker is
enabled, `tick` fires repeatedly with that delay between calls. Returning
`Action.SHUTDOWN` from `tick` stops the event loop.

`parse_proto_addr` splits a `scheme://address` string. It lower-cases the
address and treats a missing scheme as TCP:

```python
from pygnet.events import parse_proto_addr

parse_proto_addr("tcp://127.0.0.1:9000")   # ("tcp", "127.0.0.1:9000")
parse_proto_addr("127.0.0.1:9000")         # ("tcp", "127.0.0.1:9000")
```

## Codecs

The codecs live in `pygnet.codec`. Each one subclasses `Codec`, which has two
methods, `encode(conn, buf)` and `decode(conn)`.

- `BuiltInFrameCodec` passes bytes through unchanged. All buffered input
  counts as one frame.
- `LineBasedFrameCodec` splits frames on `\n`.
- `DelimiterBasedFrameCodec(delimiter)` splits frames on a single delimiter
  byte, given as an int or as a one-byte `bytes`.
- `FixedLengthFrameCodec(frame_length)` reads frames of a fixed size. Its
  `encode` raises `InvalidFixedLengthError` unless the data length is a
  multiple of the frame length.
- `LengthFieldBasedFrameCodec(encoder_config, decoder_config)` prefixes each
  frame with a length field of 1, 2, 3, 4 or 8 bytes, in big- or
  little-endian order (`ByteOrder.BIG_ENDIAN`, `ByteOrder.LITTLE_ENDIAN`).
  - `EncoderConfig` sets `length_field_length`, `byte_order`,
    `length_adjustment` and `length_includes_length_field_length`.
  - `DecoderConfig` sets `length_field_length`, `byte_order`,
    `length_field_offset`, `length_adjustment` and `initial_bytes_to_strip`.

```python
from pygnet.codec import (
    ByteOrder, DecoderConfig, EncoderConfig, LengthFieldBasedFrameCodec,
)

codec = LengthFieldBasedFrameCodec(
    EncoderConfig(length_field_length=2, byte_order=ByteOrder.BIG_ENDIAN),
    DecoderConfig(length_field_length=2, byte_order=ByteOrder.BIG_ENDIAN,
                  initial_bytes_to_strip=2),
)
frame = codec.encode(None, b"hello")     # b"\x00\x05hello"
```

A length that does not fit the field raises `ValueError`. A field size that
is not supported raises `UnsupportedLengthError`. `read_uint24` and
`write_uint24` convert 24-bit integers to and from three bytes.

A decoder raises `pygnet.errors.IncompletePacketError` when the buffer does
not yet hold a whole frame. Every error the package defines derives from
`pygnet.errors.GnetError`.

## Connections and the event loop

`pygnet.connection.Conn` holds one socket.

- Input side: `read`, `read_n`, `shift_n`, `reset_buffer`, `buffer_length`
  and `next_frame` give access to buffered input.
- Output side: `write` and `writev` encode and send data. Anything the
  socket cannot take at once is kept until `flush`.
- Safe from any thread: `async_write`, `async_writev`, `wake` and `close`
  hand the work to the owning event loop. `send_to` sends a datagram
  directly.

`pygnet.eventloop.EventLoop` polls its sockets with `selectors`.

- `run` dispatches events on the calling thread until the loop is shut down.
  It then closes every connection.
- `trigger(task, *args)` queues work to run on the loop thread.
- `shutdown` asks the loop to stop.
- `connection_count` reports the number of open stream connections.

## Client

```python
from pygnet.client import Client, ClientOptions
from pygnet.codec import LineBasedFrameCodec

with Client(Printer(), ClientOptions(codec=LineBasedFrameCodec(), ticker=False)) as client:
    conn = client.dial("tcp", "127.0.0.1:9000")
    conn.async_write(b"ping")
```

`Client.dial(network, address)` accepts the networks `tcp`, `tcp4`, `tcp6`,
`udp`, `udp4`, `udp6` and `unix`. Any other network raises
`UnsupportedProtocolError`.

`ClientOptions` sets the following:

- `codec`: defaults to `BuiltInFrameCodec`.
- `read_buffer_cap`: rounded up to a power of two, with a default of 64 KiB.
- `ticker`
- `tcp_no_delay`: a `TCPNoDelayMode`.
- `tcp_keep_alive`: in seconds.
- `socket_send_buffer` and `socket_recv_buffer`
- `logger`, `log_path` and `log_level`

`Client.start` runs the event loop, and the ticker if it is enabled, on
background threads. `Client.stop` shuts the loop down, closes every
connection and fires `on_shutdown`. Using the client as a context manager
calls both for you.

## What the package does not do

There is no server: nothing in the package listens on an address or accepts
incoming connections. There is no load balancing across several event loops,
and no command-line program. The package dials outgoing connections and runs
their events on a single event loop.