# Copyright (c) 2025 Akita Engineering <https://www.akitaengineering.com>
# SPDX-License-Identifier: GPL-3.0-or-later

"""
Binary codec for EDTSP packets.

Every packet is an 8-byte header followed by a fixed-layout payload chosen by
the header type byte. All multi-byte fields are big-endian.

    Header:     magic (H) | type (B) | source_id (I) | payload_len (B)
    DISCOVERY:  interface_type (B) | version (B) | device_name (32s)
    HEARTBEAT:  role (B) | uptime_ms (I) | active_devices (B)
    HANDSHAKE:  handshake_step (B) | target_id (I) | capabilities (H) | interface_type (B)
    CONFIG:     target_id (I) | sensor_id (B) | sampling_rate_ms (H) | enable (B)
    DATA:       sensor_id (B) | timestamp_ms (I) | data_len (B) | data (64s)

Decoding never modifies the buffer it is given.
"""

import logging
import struct
from dataclasses import dataclass, field
from typing import ClassVar, Dict, Type, Union

from .exceptions import (PacketError, InvalidMagic, UnknownType, Truncated,
                         OversizedData, PayloadLengthMismatch)
from .protocol import (MAGIC, HEADER_SIZE, PROTOCOL_VERSION, MAX_DATA_LEN, DEVICE_NAME_LEN,
                       MAX_DEVICE_ID, PacketType, Role, InterfaceType, HandshakeStep, Capability,
                       enum_or_int, type_name, role_name, iface_name)
from .utils import format_id

logger = logging.getLogger(__name__)

HEADER_FORMAT = "!HBIB"


@dataclass(frozen=True)
class Header:
    packet_type: PacketType
    source_id: int
    payload_len: int
    magic: int = MAGIC

    def pack(self) -> bytes:
        try:
            return struct.pack(HEADER_FORMAT, self.magic, int(self.packet_type), self.source_id, self.payload_len)
        except struct.error as e:
            raise PacketError(f"Header field out of range: {e}") from e


def _encode_name(name: str) -> bytes:
    # Leave room for a terminating NUL and never cut a UTF-8 sequence in half
    raw = name.encode("utf-8")[:DEVICE_NAME_LEN - 1]
    return raw.decode("utf-8", "ignore").encode("utf-8")


def _decode_name(raw: bytes) -> str:
    return raw.split(b"\x00", 1)[0].decode("utf-8", "replace")


class Payload:
    """Base for the five payload layouts. Subclasses set TYPE, FORMAT and SIZE."""
    TYPE: ClassVar[PacketType]
    FORMAT: ClassVar[str]
    SIZE: ClassVar[int]

    def _fields(self) -> tuple:
        raise NotImplementedError

    def pack(self) -> bytes:
        try:
            return struct.pack(self.FORMAT, *self._fields())
        except struct.error as e:
            raise PacketError(f"{self.TYPE.name} field out of range: {e}") from e

    @classmethod
    def unpack(cls, data: bytes) -> "Payload":
        raise NotImplementedError

    @classmethod
    def _require(cls, data: bytes, size: int):
        if len(data) < size:
            raise Truncated(f"{cls.TYPE.name} payload needs {size} bytes, got {len(data)}")

    def summary(self) -> str:
        return ""


@dataclass(frozen=True)
class DiscoveryPayload(Payload):
    TYPE: ClassVar[PacketType] = PacketType.DISCOVERY
    FORMAT: ClassVar[str] = "!BB32s"
    SIZE: ClassVar[int] = struct.calcsize("!BB32s")

    interface_type: Union[InterfaceType, int] = InterfaceType.UNKNOWN
    version: int = PROTOCOL_VERSION
    device_name: str = ""

    def _fields(self) -> tuple:
        return (int(self.interface_type), self.version, _encode_name(self.device_name))

    @classmethod
    def unpack(cls, data: bytes) -> "DiscoveryPayload":
        cls._require(data, cls.SIZE)
        iface, version, name = struct.unpack_from(cls.FORMAT, data)
        return cls(enum_or_int(InterfaceType, iface), version, _decode_name(name))

    def summary(self) -> str:
        return f"{self.device_name!r} ({iface_name(self.interface_type)}, v{self.version})"


@dataclass(frozen=True)
class HeartbeatPayload(Payload):
    TYPE: ClassVar[PacketType] = PacketType.HEARTBEAT
    FORMAT: ClassVar[str] = "!BIB"
    SIZE: ClassVar[int] = struct.calcsize("!BIB")

    role: Union[Role, int] = Role.UNKNOWN
    uptime_ms: int = 0
    active_devices: int = 1

    def _fields(self) -> tuple:
        return (int(self.role), self.uptime_ms, self.active_devices)

    @classmethod
    def unpack(cls, data: bytes) -> "HeartbeatPayload":
        cls._require(data, cls.SIZE)
        role, uptime_ms, active_devices = struct.unpack_from(cls.FORMAT, data)
        return cls(enum_or_int(Role, role), uptime_ms, active_devices)

    def summary(self) -> str:
        return f"[{role_name(self.role)}] uptime={self.uptime_ms}ms devices={self.active_devices}"


@dataclass(frozen=True)
class HandshakePayload(Payload):
    TYPE: ClassVar[PacketType] = PacketType.HANDSHAKE
    FORMAT: ClassVar[str] = "!BIHB"
    SIZE: ClassVar[int] = struct.calcsize("!BIHB")

    handshake_step: Union[HandshakeStep, int] = HandshakeStep.SYN
    target_id: int = 0
    capabilities: Capability = Capability.NONE
    interface_type: Union[InterfaceType, int] = InterfaceType.UNKNOWN

    def _fields(self) -> tuple:
        return (int(self.handshake_step), self.target_id, int(self.capabilities), int(self.interface_type))

    @classmethod
    def unpack(cls, data: bytes) -> "HandshakePayload":
        cls._require(data, cls.SIZE)
        step, target_id, caps, iface = struct.unpack_from(cls.FORMAT, data)
        return cls(enum_or_int(HandshakeStep, step), target_id, Capability(caps), enum_or_int(InterfaceType, iface))

    def summary(self) -> str:
        return (f"step={self.handshake_step} target={format_id(self.target_id)} "
                f"caps=0x{int(self.capabilities):04X} ({iface_name(self.interface_type)})")


@dataclass(frozen=True)
class ConfigPayload(Payload):
    TYPE: ClassVar[PacketType] = PacketType.CONFIG
    FORMAT: ClassVar[str] = "!IBHB"
    SIZE: ClassVar[int] = struct.calcsize("!IBHB")

    target_id: int = 0
    sensor_id: int = 0
    sampling_rate_ms: int = 0
    enable: bool = False

    def _fields(self) -> tuple:
        return (self.target_id, self.sensor_id, self.sampling_rate_ms, 1 if self.enable else 0)

    @classmethod
    def unpack(cls, data: bytes) -> "ConfigPayload":
        cls._require(data, cls.SIZE)
        target_id, sensor_id, rate, enable = struct.unpack_from(cls.FORMAT, data)
        return cls(target_id, sensor_id, rate, bool(enable))

    def summary(self) -> str:
        state = "enable" if self.enable else "disable"
        return f"target={format_id(self.target_id)} sensor={self.sensor_id} rate={self.sampling_rate_ms}ms {state}"


@dataclass(frozen=True)
class DataPayload(Payload):
    TYPE: ClassVar[PacketType] = PacketType.DATA
    FIXED_FORMAT: ClassVar[str] = "!BIB"
    FIXED_SIZE: ClassVar[int] = struct.calcsize("!BIB")
    FORMAT: ClassVar[str] = f"!BIB{MAX_DATA_LEN}s"
    SIZE: ClassVar[int] = struct.calcsize(f"!BIB{MAX_DATA_LEN}s")

    sensor_id: int = 0
    timestamp_ms: int = 0
    data: bytes = field(default=b"")

    @property
    def data_len(self) -> int:
        return len(self.data)

    def _fields(self) -> tuple:
        if len(self.data) > MAX_DATA_LEN:
            raise OversizedData(f"DATA carries {len(self.data)} bytes, limit is {MAX_DATA_LEN}")
        # 's' zero-pads the data area to its full 64 bytes
        return (self.sensor_id, self.timestamp_ms, len(self.data), bytes(self.data))

    @classmethod
    def unpack(cls, data: bytes) -> "DataPayload":
        cls._require(data, cls.FIXED_SIZE)
        sensor_id, timestamp_ms, data_len = struct.unpack_from(cls.FIXED_FORMAT, data)
        if data_len > MAX_DATA_LEN:
            raise OversizedData(f"DATA declares {data_len} bytes, limit is {MAX_DATA_LEN}")
        end = cls.FIXED_SIZE + data_len
        if len(data) < end:
            raise Truncated(f"DATA declares {data_len} bytes but only {len(data) - cls.FIXED_SIZE} follow")
        return cls(sensor_id, timestamp_ms, bytes(data[cls.FIXED_SIZE:end]))

    def summary(self) -> str:
        return f"sensor={self.sensor_id} ts={self.timestamp_ms}ms len={self.data_len}"


PAYLOAD_TYPES: Dict[PacketType, Type[Payload]] = {
    PacketType.DISCOVERY: DiscoveryPayload,
    PacketType.HEARTBEAT: HeartbeatPayload,
    PacketType.HANDSHAKE: HandshakePayload,
    PacketType.CONFIG: ConfigPayload,
    PacketType.DATA: DataPayload,
}


@dataclass(frozen=True)
class Packet:
    header: Header
    payload: Payload

    @property
    def packet_type(self) -> PacketType:
        return self.header.packet_type

    @property
    def source_id(self) -> int:
        return self.header.source_id


def payload_size(packet_type: int) -> int:
    """Fixed serialized payload size for a packet type (DATA: including the full data area)."""
    try:
        return PAYLOAD_TYPES[PacketType(packet_type)].SIZE
    except ValueError:
        raise UnknownType(f"Unknown packet type {packet_type}")


def encode(packet_type: int, source_id: int, payload: Payload) -> bytes:
    """
    Builds header + payload for one packet.

    Args:
        packet_type: One of PacketType.
        source_id: Sender identifier, 1..0xFFFFFFFF.
        payload: Payload instance matching packet_type.

    Returns:
        bytes: Exactly HEADER_SIZE + the type's fixed payload size.

    Raises:
        PacketError: Type/payload mismatch or a field out of its wire range.
    """
    try:
        ptype = PacketType(packet_type)
    except ValueError:
        raise UnknownType(f"Cannot encode unknown packet type {packet_type}")
    expected_cls = PAYLOAD_TYPES[ptype]
    if not isinstance(payload, expected_cls):
        raise PacketError(f"{ptype.name} requires {expected_cls.__name__}, got {type(payload).__name__}")
    if not 0 < source_id <= MAX_DEVICE_ID:
        raise PacketError(f"source_id must be in 1..0x{MAX_DEVICE_ID:08X}, got {source_id}")

    body = payload.pack()
    return Header(ptype, source_id, len(body)).pack() + body


def encode_packet(source_id: int, payload: Payload) -> bytes:
    """encode() with the packet type taken from the payload class."""
    return encode(payload.TYPE, source_id, payload)


def decode_header(data: bytes) -> Header:
    """
    Parses and validates the 8-byte header.

    Raises:
        Truncated: Fewer than 8 bytes.
        InvalidMagic: Wrong protocol magic.
        UnknownType: Type byte outside 1..5.
    """
    if len(data) < HEADER_SIZE:
        raise Truncated(f"Header needs {HEADER_SIZE} bytes, got {len(data)}")
    magic, ptype, source_id, payload_len = struct.unpack_from(HEADER_FORMAT, data)
    if magic != MAGIC:
        raise InvalidMagic(f"Bad magic 0x{magic:04X}")
    try:
        ptype = PacketType(ptype)
    except ValueError:
        raise UnknownType(f"Unknown packet type {ptype}")
    return Header(ptype, source_id, payload_len, magic)


def decode_payload(packet_type: int, data: bytes) -> Payload:
    """Parses the bytes following the header for the given packet type."""
    try:
        ptype = PacketType(packet_type)
    except ValueError:
        raise UnknownType(f"Unknown packet type {packet_type}")
    return PAYLOAD_TYPES[ptype].unpack(data)


def decode(data: bytes, strict: bool = False) -> Packet:
    """
    Decodes one datagram into a Packet.

    With strict=True the header payload_len must equal the type's fixed payload
    size; by default it is not cross-checked.
    """
    header = decode_header(data)
    if strict and header.payload_len != payload_size(header.packet_type):
        raise PayloadLengthMismatch(
            f"{header.packet_type.name} payload_len={header.payload_len}, "
            f"expected {payload_size(header.packet_type)}")
    payload = decode_payload(header.packet_type, memoryview(data)[HEADER_SIZE:])
    return Packet(header, payload)


def describe(packet: Packet) -> str:
    """One-line human readable summary of a decoded packet."""
    text = f"{type_name(packet.packet_type)} from {format_id(packet.source_id)}"
    details = packet.payload.summary()
    return f"{text} {details}" if details else text
