# Copyright (c) 2025 Akita Engineering <https://www.akitaengineering.com>
# SPDX-License-Identifier: GPL-3.0-or-later

import logging
from dataclasses import dataclass
from typing import Dict, List, Optional, Set, Union

from .exceptions import CapacityExceeded
from .protocol import MAX_DEVICES, MAX_DEVICE_ID, Role, role_name
from .utils import format_id

logger = logging.getLogger(__name__)


@dataclass
class DeviceRecord:
    """One peer as last seen on the network."""
    device_id: int
    last_heartbeat_ms: int
    reported_role: Union[Role, int] = Role.UNKNOWN
    active: bool = True

    def __str__(self) -> str:
        state = "active" if self.active else "inactive"
        return f"{format_id(self.device_id)} {role_name(self.reported_role)} ({state})"


class MembershipTable:
    """
    Bounded directory of peer devices, keyed by identifier.

    Records are never removed: a timed-out peer is only marked inactive and
    comes back on its next valid packet. Once `capacity` records exist, unseen
    identifiers are refused rather than evicting anyone. The local device is
    never stored here; count_active() adds it.
    """

    def __init__(self, capacity: int = MAX_DEVICES):
        if capacity <= 0:
            raise ValueError("Membership table capacity must be positive")
        self.capacity = capacity
        self._records: Dict[int, DeviceRecord] = {} # device_id -> record, insertion ordered

    def upsert(self, device_id: int, now_ms: int, reported_role: Union[Role, int] = Role.UNKNOWN) -> bool:
        """
        Records a valid packet from device_id.

        Returns:
            True if a new record was created, False if an existing one was refreshed.
        Raises:
            CapacityExceeded: device_id is unknown and the table is full. Nothing changes.
            ValueError: device_id is 0 or does not fit 32 bits.
        """
        if not 0 < device_id <= MAX_DEVICE_ID:
            raise ValueError(f"Invalid device id {device_id}")

        record = self._records.get(device_id)
        if record is None:
            if len(self._records) >= self.capacity:
                raise CapacityExceeded(device_id, self.capacity)
            self._records[device_id] = DeviceRecord(device_id, now_ms, reported_role, True)
            return True

        record.last_heartbeat_ms = now_ms
        record.reported_role = reported_role
        if not record.active:
            logger.info(f"Device {format_id(device_id)} is active again")
        record.active = True
        return False

    def sweep(self, now_ms: int, timeout_ms: int) -> Set[int]:
        """Marks active records older than timeout_ms inactive; returns the ids that changed."""
        timed_out: Set[int] = set()
        for record in self._records.values():
            if not record.active:
                continue
            elapsed = now_ms - record.last_heartbeat_ms
            if elapsed > timeout_ms:
                logger.warning(f"Device timeout: {format_id(record.device_id)} (last seen {elapsed} ms ago)")
                record.active = False
                timed_out.add(record.device_id)
        return timed_out

    def active_ids(self) -> Set[int]:
        return {device_id for device_id, record in self._records.items() if record.active}

    def count_active(self) -> int:
        """Active peers plus the local device."""
        return len(self.active_ids()) + 1

    def get(self, device_id: int) -> Optional[DeviceRecord]:
        return self._records.get(device_id)

    def records(self) -> List[DeviceRecord]:
        return list(self._records.values())

    def __len__(self) -> int:
        return len(self._records)

    def __contains__(self, device_id: int) -> bool:
        return device_id in self._records

