# trafficreplay

`trafficreplay` holds the building blocks for recording HTTP traffic and
replaying it against other environments. It works on the recorded payload
format, on raw HTTP/1 bytes, and on captured TCP packets. It uses only the
standard library.

## Modules

- **`trafficreplay.protocol`** handles payload framing. Each recorded
  message starts with a one-line header, `<type> <id> <timing> <latency>\n`.
  The type is `1` for a request (`REQUEST_PAYLOAD`), `2` for a response
  (`RESPONSE_PAYLOAD`) and `3` for a replayed response
  (`REPLAYED_RESPONSE_PAYLOAD`). Messages in a stream are joined by
  `PAYLOAD_SEPARATOR`. The module provides:
  - `payload_header`, `payload_meta`, `payload_meta_with_body`,
    `payload_body` and `payload_id` to build and read these parts.
  - `is_request_payload` and `is_origin_payload` to classify a payload.
  - `split_payloads` to split a stream into its payloads.
  - `new_uuid` and `rand_hex` to make random hexadecimal identifiers.
- **`trafficreplay.proto`** reads and edits HTTP/1 payloads at the byte
  level. Every function that changes a payload returns new `bytes`.
  - Headers: `get_header`, `find_header`, `set_header`, `add_header`,
    `delete_header`, `parse_headers` and `get_headers`.
  - Request line and body: `path`, `set_path`, `path_param`,
    `set_path_param`, `set_host`, `method`, `status` and `body`.
  - Title lines: `has_request_title`, `has_response_title` and
    `has_title` recognise request and status lines.
  - Completeness: `check_chunked` checks a chunked body, and
    `has_full_payload` decides whether a message split into pieces is
    complete, by `Content-Length` or by chunked encoding.
- **`trafficreplay.tcp.packet`** decodes captured packets. `parse_packet`
  reads IPv4 or IPv6 headers (IPv6 extension headers included) and the TCP
  header, and returns a `Packet`. It raises subclasses of `PacketError` on
  bad input: `EmptyPacketError`, `HeaderLengthError`, `HeaderMissingError`,
  `HeaderExpectedError` and `HeaderInvalidError`.
- **`trafficreplay.tcp.message`** reassembles packets into messages.
  `MessageParser` groups packets by stream and orders them by sequence
  number. A message is emitted when the `end` hint reports it complete.
  Without an `end` hint, a message is emitted when it expires, which takes
  `message_expire` seconds. `Message.uuid()` gives a request and its
  response the same identifier. `TCPProtocol.parse` accepts `http` or
  `binary`.
- **`trafficreplay.tcp_client`**: `TCPClient` sends a payload over one
  kept-alive connection, with optional TLS that does not verify the
  certificate. It reads the reply until the server closes the connection
  and cuts the reply to the response buffer size.
- **`trafficreplay.size`**: `parse_size` turns sizes such as `42mb`,
  `0x12gB` or `0b111` into byte counts.
- **`trafficreplay.settings`** holds the configuration:
  - The dataclasses `AppSettings`, `FileOutputConfig`, `TCPOutputConfig`
    and `HTTPOutputConfig`.
  - `build_parser` and `parse_settings` for command-line options, which
    are accepted with one or two dashes.
  - `check_settings`, which fills in default size limits.
  - `debug`, which writes a timed line to stderr when
    `SETTINGS.verbose` is at least the level given.

## Examples

Parsing sizes:

```python
from trafficreplay.size import parse_size

parse_size("42mb")    # 44040192
parse_size("0x12gB")  # 19327352832
parse_size("4_2")     # 42
```

Working with a raw HTTP request:

```python
from trafficreplay import proto

payload = b"POST /post HTTP/1.1\r\nContent-Length: 7\r\nHost: www.w3.org\r\n\r\na=1&b=2"

proto.get_header(payload, b"Content-Length")   # b"7"
proto.path(payload)                            # b"/post"
proto.set_path_param(payload, b"param", b"test")
# b"POST /post?param=test HTTP/1.1\r\n..."
proto.has_request_title(payload)               # True
```

Building the header for a recorded payload and reading it back:

```python
from trafficreplay.protocol import (
    payload_header, payload_meta, new_uuid, is_request_payload,
)

meta = payload_header("1", new_uuid(), 1_600_000_000_000_000_000, -1)
payload_meta(meta)         # [b"1", <id>, b"1600000000000000000", b"-1"]
is_request_payload(meta)   # True
```

Reassembling a request from two packets:

```python
from trafficreplay import proto
from trafficreplay.tcp.message import MessageParser
from trafficreplay.tcp.packet import Direction, Packet

parser = MessageParser(
    start=lambda p: (proto.has_request_title(p.payload), proto.has_response_title(p.payload)),
    end=lambda m: proto.has_full_payload(m, *m.packet_data()),
)
common = dict(src_port=60000, dst_port=80, ack=1, direction=Direction.INCOMING)
parser.process_packet(Packet(seq=1, timestamp=1.0, payload=b"GET / HTTP/1.1\r\n", **common))
parser.process_packet(Packet(seq=17, timestamp=2.0, payload=b"Host: localhost\r\n\r\n", **common))

message = parser.read(timeout=1)
message.data()   # b"GET / HTTP/1.1\r\nHost: localhost\r\n\r\n"
```

Reading settings from arguments:

```python
from trafficreplay.settings import check_settings, parse_settings

settings = check_settings(parse_settings(
    ["--output-http", "http://staging.example.com", "--output-http-workers", "4"]
))
settings.output_http                     # ["http://staging.example.com"]
settings.output_http_config.workers_max  # 4
```

## What this package does not do

- It installs no command. `parse_settings` builds an `AppSettings`, but
  nothing in the package runs a replay from it.
- The options for inputs, outputs and middleware are parsed and stored,
  and nothing acts on them. No code reads from files or ports, writes
  recordings to files, forwards payloads over TCP, replays requests over
  HTTP, or starts a middleware command.
- It does not capture packets from network interfaces.
  `MessageParser.packet_handler` takes `PcapPacket` objects that the
  caller has already captured.

## Testing

The test suite uses pytest, declared in the `test` optional dependency
group.