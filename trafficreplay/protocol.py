"""Framing of captured payloads: the metadata header and the separator."""

from __future__ import annotations

import secrets
from collections.abc import Iterator

REQUEST_PAYLOAD = b"1"
RESPONSE_PAYLOAD = b"2"
REPLAYED_RESPONSE_PAYLOAD = b"3"

PAYLOAD_SEPARATOR = "\n🐵🙈🙉\n".encode("utf-8")


def _to_bytes(value: bytes | str) -> bytes:
    return value.encode("utf-8") if isinstance(value, str) else bytes(value)


def rand_hex(length: int) -> bytes:
    """Return ``length`` bytes of random lowercase hexadecimal text.

    An odd length leaves a trailing zero byte, as only whole random bytes
    are encoded.
    """
    return secrets.token_bytes(length // 2).hex().encode("ascii") + b"\x00" * (length % 2)


def new_uuid() -> bytes:
    """Return a new random 24-character hexadecimal identifier."""
    return rand_hex(24)


def split_payloads(data: bytes) -> Iterator[bytes]:
    """Yield the payloads of a stream joined by PAYLOAD_SEPARATOR.

    Data after the last separator is yielded too, unless it is empty.
    """
    *complete, rest = data.split(PAYLOAD_SEPARATOR)
    yield from complete
    if rest:
        yield rest


def payload_header(
    payload_type: bytes | str, uuid: bytes | str, timing: int, latency: int
) -> bytes:
    """Build the metadata line that precedes a payload.

    ``timing`` is the request start or the round-trip time, depending on
    the payload type.
    """
    return b"%s %s %d %d\n" % (_to_bytes(payload_type), _to_bytes(uuid), timing, latency)


def payload_body(payload: bytes) -> bytes:
    """Return what follows the first line of ``payload``."""
    return payload[payload.find(b"\n") + 1 :]


def payload_meta(payload: bytes) -> list[bytes]:
    """Return the space-separated fields of the metadata line, or [] if none."""
    end = payload.find(b"\n")
    if end < 0:
        return []
    return payload[:end].split(b" ")


def payload_meta_with_body(payload: bytes) -> tuple[bytes, bytes]:
    """Split ``payload`` into its metadata line (with newline) and its body.

    A payload without a metadata line gives an empty meta and the whole
    payload as body.
    """
    end = payload.find(b"\n")
    if end > 0 and len(payload) > end + 1:
        return payload[: end + 1], payload[end + 1 :]
    return b"", payload


def payload_id(payload: bytes) -> bytes | None:
    """Return the identifier field of the metadata line, if there is one."""
    meta = payload_meta(payload)
    if len(meta) < 2:
        return None
    return meta[1]


def is_origin_payload(payload: bytes) -> bool:
    """Tell whether the payload is an original request or response."""
    return payload[:1] in (REQUEST_PAYLOAD, RESPONSE_PAYLOAD)


def is_request_payload(payload: bytes) -> bool:
    """Tell whether the payload is a request."""
    return payload[:1] == REQUEST_PAYLOAD