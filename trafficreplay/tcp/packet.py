"""Parsing of captured TCP/IP packets.

A packet is decoded from the raw captured bytes: the link-layer header is
skipped, then the IPv4 or IPv6 header (with IPv6 extension headers) and the
TCP header are read. Errors are raised as subclasses of PacketError.
"""

from __future__ import annotations

import ipaddress
import struct
from dataclasses import dataclass, field
from enum import IntEnum

_UINT32 = 0xFFFFFFFF
_UINT64 = 0xFFFFFFFFFFFFFFFF


class Direction(IntEnum):
    """Direction of a packet or message relative to the watched service."""

    UNKNOWN = 0
    INCOMING = 1
    OUTGOING = 2


@dataclass
class CaptureInfo:
    """Metadata of a captured packet; ``timestamp`` is in seconds."""

    timestamp: float = 0.0
    capture_length: int = 0
    length: int = 0


@dataclass
class PcapPacket:
    """Raw captured data together with its link-layer information."""

    data: bytes
    link_type: int = 0
    link_type_len: int = 0
    capture_info: CaptureInfo = field(default_factory=CaptureInfo)


class PacketError(ValueError):
    """Raised when captured data is not a usable TCP packet."""

    template = "{}"

    def __init__(self, part: str = "") -> None:
        self.part = part
        super().__init__(self.template.format(part))


class EmptyPacketError(PacketError):
    """The TCP segment carries no payload."""

    template = "Empty packet"


class HeaderLengthError(PacketError):
    """A header is shorter than it must be."""

    template = "short {} length"


class HeaderMissingError(PacketError):
    """A header is missing."""

    template = "missing {} header(s)"


class HeaderExpectedError(PacketError):
    """A header differs from the one expected."""

    template = "expected {} header(s)"


class HeaderInvalidError(PacketError):
    """A header field holds an invalid value."""

    template = "invalid {} value"


def ip_to_int(ip: bytes) -> int:
    """Return the last four bytes of an IPv6 address, or an IPv4 address, as an int."""
    if len(ip) == 0:
        return 0
    if len(ip) == 16:
        return struct.unpack(">I", ip[12:16])[0]
    return struct.unpack(">I", ip[:4])[0]


def format_ip(ip: bytes) -> str:
    """Return the textual form of a 4- or 16-byte address."""
    if len(ip) == 0:
        return "<nil>"
    if len(ip) == 4:
        return str(ipaddress.IPv4Address(bytes(ip)))
    if len(ip) == 16:
        addr = ipaddress.IPv6Address(bytes(ip))
        return str(addr.ipv4_mapped) if addr.ipv4_mapped is not None else str(addr)
    return "?" + bytes(ip).hex()


@dataclass(eq=False)
class Packet:
    """A decoded TCP segment."""

    src_port: int = 0
    dst_port: int = 0
    seq: int = 0
    ack: int = 0
    direction: Direction = Direction.UNKNOWN
    timestamp: float = 0.0
    payload: bytes = b""
    src_ip: bytes = b""
    dst_ip: bytes = b""
    version: int = 0
    ack_flag: bool = False
    syn: bool = False
    fin: bool = False
    rst: bool = False
    lost: int = 0
    retry: int = 0
    capture_length: int = 0
    _message_id: int = field(default=0, init=False, repr=False)

    def message_id(self) -> int:
        """Return the identifier shared by all packets of one message."""
        if self._message_id == 0:
            low = ip_to_int(self.src_ip) + ip_to_int(self.dst_ip) + self.ack
            self._message_id = (
                (self.src_port << 48) | (self.dst_port << 32) | low
            ) & _UINT64
        return self._message_id

    def src(self) -> str:
        """Return the source socket as ``ip:port``."""
        return f"{format_ip(self.src_ip)}:{self.src_port}"

    def dst(self) -> str:
        """Return the destination socket as ``ip:port``."""
        return f"{format_ip(self.dst_ip)}:{self.dst_port}"


def _ipv6_extension_header(proto: int) -> bool:
    return proto in (0, 43, 44)


def parse_packet(
    data: bytes,
    link_type: int,
    link_type_len: int,
    capture_info: CaptureInfo,
    allow_empty: bool,
) -> Packet:
    """Decode ``data`` into a Packet.

    ``link_type_len`` bytes of link-layer header are skipped. A segment
    without payload is rejected unless ``allow_empty`` is set.
    """
    data = bytes(data)
    if len(data) < link_type_len:
        raise HeaderLengthError("Link")
    if len(data) <= link_type_len:
        raise HeaderMissingError("IPv4 or IPv6")

    ldata = data[link_type_len:]
    ip_version = ldata[0] >> 4
    if ip_version == 4:
        if len(ldata) < 20:
            raise HeaderLengthError("IPv4")
        proto = ldata[9]
        ihl = (ldata[0] & 0x0F) * 4
        if ihl < 20:
            raise HeaderInvalidError("IPv4's IHL")
        if len(ldata) < ihl:
            raise HeaderLengthError("IPv4 opts")
        net_len = ihl
    elif ip_version == 6:
        if len(ldata) < 40:
            raise HeaderLengthError("IPv6")
        proto = ldata[6]
        net_len = 40
        while _ipv6_extension_header(proto):
            remaining = len(ldata) - net_len
            if remaining < 8:
                raise HeaderExpectedError("IPv6 opts")
            ext_len = 8 if proto == 44 else ((ldata[net_len + 1] + 1) & 0xFF) * 8
            if ext_len == 0:
                raise HeaderInvalidError("IPv6 opts")
            if remaining < ext_len:
                raise HeaderLengthError("IPv6 opts")
            proto = ldata[net_len]
            net_len += ext_len
    else:
        raise HeaderExpectedError("IPv4 or IPv6")

    if proto != 6:
        raise HeaderExpectedError("TCP")
    if len(data) <= net_len:
        raise HeaderMissingError("TCP")

    net_layer = ldata[:net_len]
    ndata = ldata[net_len:]
    if len(ndata) < 20:
        raise HeaderLengthError("TCP")
    data_offset = (ndata[12] >> 4) * 4
    if data_offset < 20:
        raise HeaderInvalidError("TCP's ndata offset")
    if len(ndata) < data_offset:
        raise HeaderLengthError("TCP opts")

    payload = ndata[data_offset:]
    if not allow_empty and not payload:
        raise EmptyPacketError()

    if ip_version == 4:
        version, src_ip, dst_ip = 4, net_layer[12:16], net_layer[16:20]
    else:
        version, src_ip, dst_ip = 6, net_layer[8:24], net_layer[24:40]

    src_port, dst_port, seq, ack = struct.unpack(">HHII", ndata[:12])
    flags = ndata[13]
    return Packet(
        src_port=src_port,
        dst_port=dst_port,
        seq=seq,
        ack=ack,
        timestamp=capture_info.timestamp,
        payload=payload,
        src_ip=src_ip,
        dst_ip=dst_ip,
        version=version,
        fin=bool(flags & 0x01),
        syn=bool(flags & 0x02),
        rst=bool(flags & 0x04),
        ack_flag=bool(flags & 0x10),
        lost=(capture_info.length - capture_info.capture_length) & _UINT32,
        capture_length=capture_info.capture_length,
    )