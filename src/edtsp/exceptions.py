# Copyright (c) 2025 Akita Engineering <https://www.akitaengineering.com>
# SPDX-License-Identifier: GPL-3.0-or-later

class EDTSPException(Exception):
    """Base exception for EDTSP specific errors."""
    pass

class ConfigurationError(EDTSPException):
    """Error related to configuration loading or validation."""
    pass

class NetworkError(EDTSPException):
    """Error related to the datagram transport (setup, send or receive)."""
    pass

class PacketError(EDTSPException):
    """Error related to packet encoding or structural validation of received bytes."""
    pass

class InvalidMagic(PacketError):
    """The first two bytes do not carry the protocol magic."""
    pass

class UnknownType(PacketError):
    """The header type byte is not one of the known packet types."""
    pass

class Truncated(PacketError):
    """Fewer bytes than the header or the payload layout requires."""
    pass

class OversizedData(PacketError):
    """A DATA packet declares more sensor bytes than the format allows."""
    pass

class PayloadLengthMismatch(PacketError):
    """Header payload_len disagrees with the fixed payload size (strict decoding only)."""
    pass

class MembershipError(EDTSPException):
    """Error related to the membership table."""
    pass

class CapacityExceeded(MembershipError):
    """The membership table is full and the device is not already tracked."""
    def __init__(self, device_id: int, capacity: int):
        super().__init__(f"Membership table full ({capacity} devices); device 0x{device_id:08X} not tracked")
        self.device_id = device_id
        self.capacity = capacity
