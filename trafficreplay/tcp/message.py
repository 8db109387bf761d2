"""Reassembly of TCP packets into request and response messages.

Packets are grouped into messages by their source and destination ports,
the addresses and the acknowledgement number. A message is emitted when the
``end`` hint says it is complete, or when it expires. Messages are read
with MessageParser.read.
"""

from __future__ import annotations

import bisect
import ipaddress
import queue
import struct
import threading
import time
from collections import Counter
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Any

from .packet import Direction, Packet, PacketError, PcapPacket, format_ip, ip_to_int, parse_packet

_UINT32 = 0xFFFFFFFF
_SHARDS = 10
_TICK = 0.1
_STOP = object()


class TCPProtocol(IntEnum):
    """Application protocol carried over TCP."""

    HTTP = 0
    BINARY = 1

    @classmethod
    def parse(cls, value: str) -> TCPProtocol:
        """Return the protocol named by ``value``; empty means HTTP."""
        if value in ("", "http"):
            return cls.HTTP
        if value == "binary":
            return cls.BINARY
        raise ValueError(f"unsupported protocol {value}")

    def __str__(self) -> str:
        return "binary" if self is TCPProtocol.BINARY else "http"


@dataclass(eq=False)
class Message:
    """A TCP message made of packets ordered by sequence number."""

    packets: list[Packet] = field(default_factory=list)
    direction: Direction = Direction.UNKNOWN
    src_addr: str = ""
    dst_addr: str = ""
    start: float | None = None
    end: float | None = None
    length: int = 0
    lost_data: int = 0
    timed_out: bool = False
    truncated: bool = False
    ip_version: int = 0
    idx: int = 0
    protocol_state: Any = None
    parser: MessageParser | None = field(default=None, repr=False)

    def uuid(self) -> bytes:
        """Return the 24-character hex identifier shared by a request and its response."""
        first = self.packets[0]
        if self.direction == Direction.INCOMING:
            stream = (first.src_port << 48) | (first.dst_port << 32) | ip_to_int(first.src_ip)
            tail = first.ack
        else:
            stream = (first.dst_port << 48) | (first.src_port << 32) | ip_to_int(first.dst_ip)
            tail = first.seq
        return struct.pack(">QI", stream, tail & _UINT32).hex().encode("ascii")

    def add(self, packet: Packet) -> bool:
        """Insert ``packet`` in sequence order; return False for a duplicate."""
        if any(p.seq == packet.seq for p in self.packets):
            return False
        bisect.insort_right(self.packets, packet, key=lambda p: p.seq)
        self.length += len(packet.payload)
        self.lost_data += packet.lost
        if self.end is None or packet.timestamp > self.end:
            self.end = packet.timestamp
        return True

    def missing_chunk(self) -> bool:
        """Tell whether there is a gap between consecutive packets."""
        next_seq = self.packets[0].seq
        for packet in self.packets:
            if packet.seq != next_seq:
                return True
            next_seq = (next_seq + len(packet.payload)) & _UINT32
        return False

    def packet_data(self) -> list[bytes]:
        """Return the payloads of the packets in order."""
        return [p.payload for p in self.packets]

    def data(self) -> bytes:
        """Return the joined payload of the message."""
        return b"".join(self.packet_data())

    def sort(self) -> None:
        """Order the packets by sequence number."""
        self.packets.sort(key=lambda p: p.seq)


def _normalize_ip(ip: Any) -> ipaddress.IPv4Address | ipaddress.IPv6Address | None:
    if isinstance(ip, (bytes, bytearray)):
        if len(ip) not in (4, 16):
            return None
        addr = ipaddress.ip_address(bytes(ip))
    elif isinstance(ip, str):
        addr = ipaddress.ip_address(ip)
    else:
        addr = ip
    if isinstance(addr, ipaddress.IPv6Address) and addr.ipv4_mapped is not None:
        return addr.ipv4_mapped
    return addr


class MessageParser:
    """Collects packets of messages in progress and emits complete messages.

    ``start`` may decide the direction of a packet that opens a message: it
    returns ``(is_request, is_outgoing)``. ``end`` tells whether a message
    is complete. Without ``end``, messages are emitted only when they
    expire; with it, expired messages are dropped unless
    ``allow_incomplete`` is set.
    """

    def __init__(
        self,
        messages: queue.Queue | None = None,
        ports: Iterable[int] = (),
        ips: Iterable[Any] = (),
        message_expire: float = 1.0,
        allow_incomplete: bool = False,
        start: Callable[[Packet], tuple[bool, bool]] | None = None,
        end: Callable[[Message], bool] | None = None,
    ) -> None:
        self.message_expire = message_expire or 1.0
        self.allow_incomplete = allow_incomplete
        self.start = start
        self.end = end
        self.messages: queue.Queue = messages if messages is not None else queue.Queue()
        self.ports = list(ports)
        self.ips = [_normalize_ip(ip) for ip in ips]
        self.stats: Counter[str] = Counter()
        self._packets: queue.Queue = queue.Queue(maxsize=10000)
        self._shards: list[dict[int, Message]] = [{} for _ in range(_SHARDS)]
        self._lock = threading.RLock()
        self._worker: threading.Thread | None = None
        self._worker_lock = threading.Lock()

    def packet_handler(self, packet: PcapPacket) -> None:
        """Queue a captured packet for background processing.

        The background worker, which also expires old messages, starts
        with the first packet.
        """
        with self._worker_lock:
            if self._worker is None:
                self._worker = threading.Thread(target=self._run, daemon=True)
                self._worker.start()
        self._packets.put(packet)

    def _run(self) -> None:
        last_tick = time.monotonic()
        while True:
            try:
                item = self._packets.get(timeout=_TICK)
            except queue.Empty:
                item = None
            if item is _STOP:
                return
            if item is not None:
                self.process_packet(self._parse(item))
            if time.monotonic() - last_tick >= _TICK:
                self.expire()
                last_tick = time.monotonic()

    def _parse(self, raw: PcapPacket) -> Packet | None:
        try:
            packet = parse_packet(
                raw.data, raw.link_type, raw.link_type_len, raw.capture_info, False
            )
        except PacketError:
            self.stats["packet_error"] += 1
            return None
        if packet.dst_port in self.ports:
            dst = _normalize_ip(packet.dst_ip)
            if dst is not None and dst in self.ips:
                packet.direction = Direction.INCOMING
        return packet

    def process_packet(self, packet: Packet | None) -> None:
        """Add ``packet`` to its message, creating the message if needed."""
        if packet is None:
            return
        with self._lock:
            mid = packet.message_id()
            idx = packet.src_port % _SHARDS
            message = self._shards[idx].get(mid)
            if message is None:
                idx = packet.dst_port % _SHARDS
                message = self._shards[idx].get(mid)
            if message is not None:
                self._add_packet(message, packet)
                return

            if packet.direction == Direction.UNKNOWN and self.start is not None:
                is_in, is_out = self.start(packet)
                if is_in:
                    packet.direction = Direction.INCOMING
                elif is_out:
                    packet.direction = Direction.OUTGOING

            if packet.direction == Direction.INCOMING:
                idx = packet.src_port % _SHARDS
            else:
                idx = packet.dst_port % _SHARDS
            message = Message(
                direction=packet.direction,
                src_addr=format_ip(packet.src_ip),
                dst_addr=format_ip(packet.dst_ip),
                start=packet.timestamp,
                idx=idx,
                parser=self,
            )
            self._shards[idx][mid] = message
            self._add_packet(message, packet)

    def _add_packet(self, message: Message, packet: Packet) -> bool:
        if not message.add(packet):
            return False
        if self.end is not None and self.end(message):
            self.emit(message)
        return True

    def read(self, timeout: float | None = None) -> Message:
        """Return the next emitted message; raise TimeoutError after ``timeout`` seconds."""
        try:
            return self.messages.get(timeout=timeout)
        except queue.Empty:
            raise TimeoutError("no message received in time") from None

    def emit(self, message: Message) -> None:
        """Stop tracking ``message`` and hand it to readers."""
        self.stats["message_count"] += 1
        with self._lock:
            self._shards[message.idx].pop(message.packets[0].message_id(), None)
        self.messages.put(message)

    def expire(self, now: float | None = None) -> None:
        """Time out messages whose last packet is older than the expiry time."""
        if now is None:
            now = time.time()
        with self._lock:
            self.stats["packet_queue"] = self._packets.qsize()
            self.stats["message_queue"] = sum(len(shard) for shard in self._shards)
            for shard in self._shards:
                for mid, message in list(shard.items()):
                    if message.end is None or now - message.end <= self.message_expire:
                        continue
                    message.timed_out = True
                    self.stats["message_timeout_count"] += 1
                    if self.end is None or self.allow_incomplete:
                        self.emit(message)
                    shard.pop(mid, None)

    def close(self) -> None:
        """Stop the background worker after the queued packets are processed."""
        with self._worker_lock:
            worker, self._worker = self._worker, None
        if worker is not None:
            self._packets.put(_STOP)
            worker.join()