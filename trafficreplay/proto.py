"""Byte-level access to HTTP/1 request and response payloads.

A payload looks like this (line breaks shown escaped)::

    POST /upload HTTP/1.1\\r\\n
    User-Agent: Gor\\r\\n
    Content-Length: 11\\r\\n
    \\r\\n
    Hello world

Functions that modify a payload return a new ``bytes`` object.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any

CRLF = b"\r\n"
EMPTY_LINE = b"\r\n\r\n"
HEADER_DELIM = b": "

METHODS = (
    b"CONNECT",
    b"DELETE",
    b"GET",
    b"HEAD",
    b"OPTIONS",
    b"PATCH",
    b"POST",
    b"PUT",
    b"TRACE",
)

MIN_REQUEST_COUNT = 16  # "GET / HTTP/1.1\r\n"
MIN_RESPONSE_COUNT = 14  # "HTTP/1.1 200\r\n"
VERSION_LEN = 8  # "HTTP/1.1"

_STATUS_CODES = frozenset(
    {100, 101, 102, 103}
    | set(range(200, 209))
    | {226}
    | {300, 301, 302, 303, 304, 305, 307, 308}
    | set(range(400, 419))
    | {421, 422, 423, 424, 425, 426, 428, 429, 431, 451}
    | set(range(500, 509))
    | {510, 511}
)

_HEX_VALUES = {ord(c): int(c, 16) for c in "0123456789abcdefABCDEF"}
_TOKEN_BYTES = frozenset(
    b"!#$%&'*+-.^_`|~0123456789"
    b"ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz"
)
_SIGNED_DECIMAL = re.compile(rb"[+-]?[0-9]+")
_VERSION_LIMIT = 1000000


def _parse_digits(text: bytes, base: int) -> tuple[int, bool]:
    """Parse a non-negative number; stop at the first bad byte.

    Returns the value read so far and whether every byte was a valid digit.
    """
    number = 0
    for byte in text:
        value = _HEX_VALUES.get(byte)
        if value is None or value >= base:
            return number, False
        number = number * base + value
    return number, True


def _parse_http_version(version: bytes) -> tuple[int, int] | None:
    if version == b"HTTP/1.1":
        return 1, 1
    if version == b"HTTP/1.0":
        return 1, 0
    if not version.startswith(b"HTTP/"):
        return None
    dot = version.find(b".")
    if dot < 0:
        return None
    parts = version[5:dot], version[dot + 1 :]
    numbers = []
    for part in parts:
        if not _SIGNED_DECIMAL.fullmatch(part):
            return None
        value = int(part)
        if value < 0 or value > _VERSION_LIMIT:
            return None
        numbers.append(value)
    return numbers[0], numbers[1]


def _is_http1(version: bytes) -> bool:
    parsed = _parse_http_version(version)
    return parsed is not None and parsed[0] == 1 and parsed[1] in (0, 1)


def mime_headers_end_pos(payload: bytes) -> int:
    """Return the position just past the blank line ending the headers, or -1."""
    pos = payload.find(EMPTY_LINE)
    if pos < 0:
        return -1
    return pos + 4


def mime_headers_start_pos(payload: bytes) -> int:
    """Return the position of the second line, where headers start, or -1."""
    pos = payload.find(CRLF)
    if pos < 0:
        return -1
    return pos + 2


def find_header(payload: bytes, name: bytes) -> tuple[bytes, int, int, int, int]:
    """Locate header ``name`` (case-insensitive).

    Returns ``(value, header_start, header_end, value_start, value_end)``;
    ``header_end`` is the position of the line's newline and ``value_end``
    the position of the value's last byte. If the header is absent the
    value is empty and all positions are -1. Multi-line headers are not
    supported.
    """
    missing = (b"", -1, -1, -1, -1)
    if has_title(payload):
        header_start = mime_headers_start_pos(payload)
        if header_start < 0:
            return missing
    else:
        header_start = 0

    wanted = bytes(name).lower()
    header_end = -1
    value_start = value_end = -1
    while header_start < len(payload):
        header_end = payload.find(b"\n", header_start)
        if header_end < 0:
            break
        colon = payload.find(b":", header_start, header_end)
        if colon < 0:
            break
        if bytes(payload[header_start:colon]).lower() == wanted:
            value_start = colon + 1
            value_end = header_end - 2
            break
        header_start = header_end + 1

    if value_start < 0:
        return missing

    while value_start < value_end and payload[value_start] < 0x21:
        value_start += 1
    while value_end > value_start and payload[value_end] < 0x21:
        value_end -= 1
    value = bytes(payload[value_start : value_end + 1])
    return value, header_start, header_end, value_start, value_end


def get_header(payload: bytes, name: bytes) -> bytes:
    """Return the value of header ``name``, or empty bytes if it is absent."""
    return find_header(payload, name)[0]


def parse_headers(payload: bytes) -> dict[str, list[str]] | None:
    """Parse the header section of a request or response.

    The title line is skipped when present. Returns None if the headers
    are malformed or not terminated by a blank line.
    """
    if has_title(payload):
        header_start = mime_headers_start_pos(payload)
        if header_start > len(payload) - 1:
            return None
        payload = payload[header_start:]
    header_end = mime_headers_end_pos(payload)
    if header_end > 1:
        payload = payload[:header_end]
    return get_headers(payload)


def _read_line(data: bytes, pos: int) -> tuple[bytes, int] | None:
    if pos >= len(data):
        return None
    newline = data.find(b"\n", pos)
    if newline < 0:
        return bytes(data[pos:]), len(data)
    line = bytes(data[pos:newline])
    if line.endswith(b"\r"):
        line = line[:-1]
    return line, newline + 1


def _trim(line: bytes) -> bytes:
    return line.strip(b" \t")


def _canonical_key(raw: bytes) -> str:
    if any(byte not in _TOKEN_BYTES for byte in raw):
        return raw.decode("utf-8", "surrogateescape")
    out = bytearray()
    upper = True
    for byte in raw:
        if upper and 0x61 <= byte <= 0x7A:
            byte -= 0x20
        elif not upper and 0x41 <= byte <= 0x5A:
            byte += 0x20
        out.append(byte)
        upper = byte == 0x2D
    return out.decode("ascii")


def get_headers(payload: bytes) -> dict[str, list[str]] | None:
    """Read MIME headers from ``payload`` up to the first blank line.

    Keys are canonicalised (``content-length`` becomes ``Content-Length``),
    continuation lines are joined with a space. Returns None on malformed
    input or when no blank line ends the headers.
    """
    headers: dict[str, list[str]] = {}
    if payload[:1] in (b" ", b"\t"):
        return None
    pos = 0
    while True:
        read = _read_line(payload, pos)
        if read is None:
            return None
        line, pos = read
        if not line:
            return headers
        kv = _trim(line)
        while pos < len(payload) and payload[pos] in (0x20, 0x09):
            while pos < len(payload) and payload[pos] in (0x20, 0x09):
                pos += 1
            read = _read_line(payload, pos)
            if read is None:
                break
            continuation, pos = read
            kv += b" " + _trim(continuation)
        if not kv:
            return headers
        colon = kv.find(b":")
        if colon < 0:
            return None
        key = _canonical_key(kv[:colon])
        if not key:
            continue
        value = kv[colon + 1 :].lstrip(b" \t")
        headers.setdefault(key, []).append(value.decode("utf-8", "surrogateescape"))


def set_header(payload: bytes, name: bytes, value: bytes) -> bytes:
    """Replace the value of header ``name``, adding the header if absent."""
    _, start, _, value_start, value_end = find_header(payload, name)
    if start != -1:
        return bytes(payload[:value_start]) + bytes(value) + bytes(payload[value_end + 1 :])
    return add_header(payload, name, value)


def add_header(payload: bytes, name: bytes, value: bytes) -> bytes:
    """Insert ``name: value`` as the first header.

    A payload without a title line is returned unchanged.
    """
    start = mime_headers_start_pos(payload)
    if start < 1:
        return bytes(payload)
    line = bytes(name) + HEADER_DELIM + bytes(value) + CRLF
    return bytes(payload[:start]) + line + bytes(payload[start:])


def delete_header(payload: bytes, name: bytes) -> bytes:
    """Remove header ``name``; the payload is unchanged if it is absent."""
    _, start, end, _, _ = find_header(payload, name)
    if start != -1:
        return bytes(payload[:start]) + bytes(payload[end + 1 :])
    return bytes(payload)


def body(payload: bytes) -> bytes:
    """Return the body after the headers, or empty bytes if there is none."""
    pos = mime_headers_end_pos(payload)
    if pos == -1 or len(payload) <= pos:
        return b""
    return bytes(payload[pos:])


def path(payload: bytes) -> bytes:
    """Return the request path, or empty bytes if this is not a request."""
    if not has_request_title(payload):
        return b""
    start = payload.find(b" ") + 1
    end = payload.find(b" ", start)
    return bytes(payload[start:end])


def set_path(payload: bytes, new_path: bytes) -> bytes:
    """Return ``payload`` with its path replaced by ``new_path``.

    Gives empty bytes when the payload has no HTTP title.
    """
    if not has_title(payload):
        return b""
    start = payload.find(b" ") + 1
    end = payload.find(b" ", start)
    if end < 0:
        return b""
    return bytes(payload[:start]) + bytes(new_path) + bytes(payload[end:])


def path_param(payload: bytes, name: bytes) -> tuple[bytes, int, int]:
    """Return a query parameter and its value's start and end in the path.

    If the parameter is absent the value is empty and both positions are -1.
    """
    request_path = path(payload)
    name = bytes(name)
    param_start = request_path.find(b"&" + name + b"=")
    if param_start == -1:
        param_start = request_path.find(b"?" + name + b"=")
        if param_start == -1:
            return b"", -1, -1
    value_start = param_start + len(name) + 2
    value_end = request_path.find(b"&", value_start)
    if value_end == -1:
        value_end = len(request_path)
    return request_path[value_start:value_end], value_start, value_end


def set_path_param(payload: bytes, name: bytes, value: bytes) -> bytes:
    """Set a query parameter, replacing it or appending it to the path."""
    request_path = path(payload)
    _, value_start, value_end = path_param(payload, name)
    if value_start != -1:
        new_path = request_path[:value_start] + bytes(value) + request_path[value_end:]
        return set_path(payload, new_path)
    separator = b"?" if b"?" not in request_path else b"&"
    new_path = request_path + separator + bytes(name) + b"=" + bytes(value)
    return set_path(payload, new_path)


def set_host(payload: bytes, url: bytes | None, host: bytes) -> bytes:
    """Point the request at a new host.

    Absolute paths (HTTP/1.0 or proxy requests) get their scheme and host
    replaced by ``url``; otherwise the Host header is set to ``host``.
    """
    request_path = path(payload)
    if request_path.startswith(b"http"):
        host_start = request_path.find(b":") + 3
        slash = request_path.find(b"/", host_start)
        host_end = slash if slash >= 0 else host_start - 1
        new_path = bytes(url or b"") + request_path[host_end:]
        return set_path(payload, new_path)
    return set_header(payload, b"Host", host)


def method(payload: bytes) -> bytes:
    """Return the request method, or empty bytes if there is no space."""
    end = payload.find(b" ")
    if end == -1:
        return b""
    return bytes(payload[:end])


def status(payload: bytes) -> bytes:
    """Return the three-digit response status, or empty bytes."""
    if not has_response_title(payload):
        return b""
    start = payload.find(b" ") + 1
    return bytes(payload[start : start + 3])


def has_response_title(payload: bytes) -> bool:
    """Tell whether ``payload`` starts with an HTTP/1 status line."""
    if len(payload) < MIN_RESPONSE_COUNT:
        return False
    if payload.find(CRLF) == -1:
        return False
    if not _is_http1(bytes(payload[:VERSION_LEN])):
        return False
    if payload[VERSION_LEN] != 0x20:
        return False
    code, ok = _parse_digits(payload[VERSION_LEN + 1 : VERSION_LEN + 4], 10)
    if not ok or code not in _STATUS_CODES:
        return False
    return payload[VERSION_LEN + 4] in (0x20, 0x0D)


def has_request_title(payload: bytes) -> bool:
    """Tell whether ``payload`` starts with an HTTP/1 request line."""
    if len(payload) < MIN_REQUEST_COUNT:
        return False
    title_len = payload.find(CRLF)
    if title_len == -1:
        return False
    if payload[:title_len].count(b" ") != 2:
        return False
    request_method = method(payload)
    if request_method not in METHODS:
        return False
    second_space = payload.find(b" ", len(request_method) + 1)
    if second_space == -1:
        return False
    return _is_http1(bytes(payload[second_space + 1 : title_len]))


def has_title(payload: bytes) -> bool:
    """Tell whether ``payload`` starts with an HTTP/1 request or status line."""
    return has_request_title(payload) or has_response_title(payload)


def check_chunked(buf: bytes) -> tuple[int, bool]:
    """Check the integrity of a chunked body.

    Returns the length of the valid chunks scanned (sizes, extensions and
    CRLFs included) and whether the terminating zero-size chunk was seen.
    """
    chunk_end = 0
    full = False
    while chunk_end < len(buf):
        cr = buf.find(b"\r", chunk_end)
        if cr - chunk_end < 1:
            break
        size_field = buf[chunk_end:cr]
        chunk_len, ok = _parse_digits(size_field, 16)
        if not ok and size_field.find(b";") < 1:
            break
        newline = cr + 1
        all_chunk = newline + chunk_len + 2
        if (
            all_chunk >= len(buf)
            or (buf[newline] & buf[all_chunk]) != 0x0A
            or buf[all_chunk - 1] != 0x0D
        ):
            break
        chunk_end = all_chunk + 1
        if chunk_len == 0:
            full = True
            break
    return chunk_end, full


@dataclass
class _HTTPState:
    body: int = 0
    header_start: int = 0
    header_parsed: bool = False
    has_full_body: bool = False
    is_chunked: bool = False
    body_len: int = 0
    has_trailer: bool = False


def has_full_payload(message: Any, *args: bytes) -> bool:
    """Tell whether the payload pieces in ``args`` form a complete message.

    ``message`` may be None, or an object with a ``protocol_state``
    attribute where parsing progress is kept between calls made as more
    pieces of the same message arrive.
    """
    payloads = args
    state = getattr(message, "protocol_state", None) if message is not None else None
    if not isinstance(state, _HTTPState):
        state = _HTTPState()
        if message is not None:
            message.protocol_state = state

    if state.header_start < 1 and payloads:
        state.header_start = mime_headers_start_pos(payloads[0])
        if state.header_start < 0:
            return False

    if state.body < 1:
        pos = 0
        for data in payloads:
            end = mime_headers_end_pos(data)
            pos += len(data) if end < 0 else end
            if end > 0:
                state.body = pos
                break

    if not state.header_parsed:
        pos = 0
        for data in payloads:
            chunked = get_header(data, b"Transfer-Encoding")
            if chunked and data.find(b"chunked") > 0:
                state.is_chunked = True
                state.has_trailer = len(get_header(data, b"Trailer")) > 0
            else:
                state.body_len, _ = _parse_digits(get_header(data, b"Content-Length"), 10)
            pos += len(data)
            if state.body_len > 0 or pos >= state.body:
                state.header_parsed = True
                break

    body_len = sum(len(data) for data in payloads) - state.body

    if state.is_chunked:
        if body_len < 1:
            return False
        if state.has_trailer:
            return payloads[-1].endswith(b"\r\n\r\n")
        if payloads[-1].endswith(b"0\r\n\r\n"):
            state.has_full_body = True
            return True
        return False

    return state.body_len == body_len