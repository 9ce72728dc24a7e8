# Copyright (c) 2025 Akita Engineering <https://www.akitaengineering.com>
# SPDX-License-Identifier: GPL-3.0-or-later

import logging
import socket
import struct
from typing import Any, Dict, Optional

from .exceptions import NetworkError
from .protocol import DEFAULT_MULTICAST_GROUP, DEFAULT_PORT, MAX_DATAGRAM_SIZE

# Setup logger for this module
logger = logging.getLogger(__name__)


class DatagramTransport:
    """
    What the node needs from the network: fire-and-forget sends to the group
    and a receive that waits at most a bounded time.
    """

    def open(self):
        """Prepares the transport. Raises NetworkError if that is impossible."""
        pass

    def send(self, data: bytes):
        """Sends one datagram to the group. Raises NetworkError on failure."""
        raise NotImplementedError

    def receive(self, timeout: float) -> Optional[bytes]:
        """Returns one datagram, or None if nothing arrived within timeout seconds."""
        raise NotImplementedError

    def close(self):
        pass


class MulticastTransport(DatagramTransport):
    """UDP socket bound to the group port and joined to the multicast group."""

    def __init__(self,
                 group: str = DEFAULT_MULTICAST_GROUP,
                 port: int = DEFAULT_PORT,
                 ttl: int = 1,
                 max_datagram_size: int = MAX_DATAGRAM_SIZE,
                 interface_address: str = "0.0.0.0"):
        self.group = group
        self.port = port
        self.ttl = ttl
        self.max_datagram_size = max_datagram_size
        self.interface_address = interface_address
        self.sock: Optional[socket.socket] = None

    @classmethod
    def from_config(cls, config: Dict[str, Any]) -> "MulticastTransport":
        return cls(group=config.get("multicast_group", DEFAULT_MULTICAST_GROUP),
                   port=config.get("port", DEFAULT_PORT),
                   ttl=config.get("multicast_ttl", 1),
                   max_datagram_size=config.get("max_datagram_size", MAX_DATAGRAM_SIZE))

    @property
    def is_open(self) -> bool:
        return self.sock is not None

    def open(self):
        """Creates the socket, binds the port and joins the group."""
        if self.sock is not None:
            logger.debug("Open called but socket already open.")
            return

        sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM, socket.IPPROTO_UDP)
        try:
            # Allow several instances on one host
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            if hasattr(socket, "SO_REUSEPORT"):
                try:
                    sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEPORT, 1)
                except OSError:
                    logger.debug("SO_REUSEPORT not supported, continuing with SO_REUSEADDR only.")

            sock.bind(("", self.port))

            mreq = struct.pack("4s4s", socket.inet_aton(self.group), socket.inet_aton(self.interface_address))
            sock.setsockopt(socket.IPPROTO_IP, socket.IP_ADD_MEMBERSHIP, mreq)
            sock.setsockopt(socket.IPPROTO_IP, socket.IP_MULTICAST_TTL, self.ttl)
            sock.setsockopt(socket.IPPROTO_IP, socket.IP_MULTICAST_LOOP, 1)
        except OSError as e:
            sock.close()
            raise NetworkError(f"Failed to join multicast group {self.group}:{self.port}: {e}") from e

        self.sock = sock
        logger.info(f"Listening on {self.group}:{self.port}")

    def send(self, data: bytes):
        if self.sock is None:
            raise NetworkError("Cannot send, transport is not open")
        try:
            sent = self.sock.sendto(data, (self.group, self.port))
        except OSError as e:
            raise NetworkError(f"Send failed: {e}") from e
        if sent != len(data):
            raise NetworkError(f"Short send: {sent} of {len(data)} bytes")

    def receive(self, timeout: float) -> Optional[bytes]:
        if self.sock is None:
            raise NetworkError("Cannot receive, transport is not open")
        self.sock.settimeout(timeout)
        try:
            data, _addr = self.sock.recvfrom(self.max_datagram_size)
        except socket.timeout:
            return None
        except OSError as e:
            raise NetworkError(f"Receive failed: {e}") from e
        return data

    def close(self):
        if self.sock is None:
            logger.debug("Close called but socket not open.")
            return
        try:
            self.sock.close()
        except OSError as e:
            logger.error(f"Error closing socket: {e}", exc_info=True)
        finally:
            self.sock = None
            logger.info("Multicast transport closed.")
