# Copyright (c) 2025 Akita Engineering <https://www.akitaengineering.com>
# SPDX-License-Identifier: GPL-3.0-or-later

"""
EDTSP (ED61 Transport Protocol) constants and enumerations.

All wire values here are part of the packet format and must stay stable;
anything that decodes EDTSP traffic relies on them.
"""

from enum import IntEnum, IntFlag
from typing import Type, TypeVar, Union

# --- Protocol Constants ---
MAGIC = 0xED61
PROTOCOL_VERSION = 1
HEADER_SIZE = 8
MAX_PAYLOAD = 255
MAX_DATA_LEN = 64
DEVICE_NAME_LEN = 32

DEFAULT_MULTICAST_GROUP = "239.255.0.1"
DEFAULT_PORT = 5000

HEARTBEAT_INTERVAL_MS = 1000
HEARTBEAT_TIMEOUT_MS = 5000
SWEEP_INTERVAL_MS = 1000
STATUS_INTERVAL_MS = 5000
RECEIVE_TIMEOUT_MS = 100
MAX_DEVICES = 256
MAX_DATAGRAM_SIZE = 512

MAX_DEVICE_ID = 0xFFFFFFFF


class PacketType(IntEnum):
    """Packet kinds carried in the header type byte."""
    DISCOVERY = 1  # Device announcement and presence declaration
    HEARTBEAT = 2  # Liveness signal + Master/Slave role status
    HANDSHAKE = 3  # 3-way handshake + capability mask reporting
    CONFIG = 4     # Master -> Slave configuration (sampling rates)
    DATA = 5       # Sensor data stream


class Role(IntEnum):
    """Device role in the network."""
    UNKNOWN = 0
    SLAVE = 1
    MASTER = 2


class InterfaceType(IntEnum):
    """Physical interface a device is reachable through."""
    UNKNOWN = 0
    ETH = 1
    WIFI = 2
    NR5G = 3

    @property
    def priority(self) -> int:
        """Lower is better; unknown interfaces sort last."""
        return _IFACE_PRIORITY.get(self, 99)


_IFACE_PRIORITY = {InterfaceType.ETH: 1, InterfaceType.WIFI: 2, InterfaceType.NR5G: 3}

_IFACE_NAMES = {InterfaceType.ETH: "ETHERNET", InterfaceType.WIFI: "WIFI", InterfaceType.NR5G: "5G"}


class HandshakeStep(IntEnum):
    SYN = 1
    SYN_ACK = 2
    ACK = 3


class Capability(IntFlag):
    """Sensors and features a device reports (16-bit mask, bit positions fixed)."""
    NONE = 0
    TEMPERATURE = 1 << 0
    HUMIDITY = 1 << 1
    PRESSURE = 1 << 2
    DISTANCE = 1 << 3
    LIGHT = 1 << 4
    MOTION = 1 << 5
    GPS = 1 << 6
    ACCELEROMETER = 1 << 7
    GYROSCOPE = 1 << 8
    MAGNETOMETER = 1 << 9
    CURRENT = 1 << 10
    VOLTAGE = 1 << 11
    GAS = 1 << 12
    SMOKE = 1 << 13
    RELAY = 1 << 14
    PWM = 1 << 15


E = TypeVar("E", bound=IntEnum)


def enum_or_int(enum_cls: Type[E], value: int) -> Union[E, int]:
    """Maps a wire byte onto enum_cls, keeping the raw int when it is out of range."""
    try:
        return enum_cls(value)
    except ValueError:
        return value


def type_name(value: int) -> str:
    try:
        return PacketType(value).name
    except ValueError:
        return "UNKNOWN"


def role_name(value: int) -> str:
    try:
        return Role(value).name
    except ValueError:
        return "INVALID"


def iface_name(value: int) -> str:
    try:
        return _IFACE_NAMES.get(InterfaceType(value), "UNKNOWN")
    except ValueError:
        return "UNKNOWN"


def iface_priority(value: int) -> int:
    try:
        return InterfaceType(value).priority
    except ValueError:
        return 99


def parse_interface_type(name: str) -> InterfaceType:
    """Accepts enum names and display names ("ETH", "ethernet", "5G", ...)."""
    key = str(name).strip().upper()
    for member, display in _IFACE_NAMES.items():
        if key == display:
            return member
    try:
        return InterfaceType[key]
    except KeyError:
        raise ValueError(f"Unknown interface type: {name!r}")
