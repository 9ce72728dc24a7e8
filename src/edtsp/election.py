# Copyright (c) 2025 Akita Engineering <https://www.akitaengineering.com>
# SPDX-License-Identifier: GPL-3.0-or-later

"""
Highest-identifier leader election.

The leader is max(active peers + self). Recomputing is cheap and idempotent,
so it runs after every membership-affecting event, not only on topology change.
"""

from dataclasses import dataclass, field
from typing import Iterable, NamedTuple, Optional

from .protocol import Role, MAX_DEVICE_ID
from .utils import format_id


@dataclass
class SelfState:
    """The local device: identity and start time are fixed, role is owned by the election."""
    device_id: int
    start_ms: int
    role: Role = field(default=Role.UNKNOWN)

    def __post_init__(self):
        if not 0 < self.device_id <= MAX_DEVICE_ID:
            raise ValueError(f"Device id must be a nonzero 32-bit value, got {self.device_id}")

    def uptime_ms(self, now_ms: int) -> int:
        """Milliseconds since start, wrapped to the 32-bit wire field."""
        return (now_ms - self.start_ms) & 0xFFFFFFFF


@dataclass(frozen=True)
class RoleChange:
    old_role: Role
    new_role: Role
    leader_id: int

    def __str__(self) -> str:
        return f"{self.old_role.name} -> {self.new_role.name} (Master ID: {format_id(self.leader_id)})"


class ElectionOutcome(NamedTuple):
    new_role: Role
    changed: bool
    leader_id: int
    previous_role: Role

    @property
    def event(self) -> Optional[RoleChange]:
        if not self.changed:
            return None
        return RoleChange(self.previous_role, self.new_role, self.leader_id)


def elect_leader(self_id: int, active_peer_ids: Iterable[int]) -> int:
    """Returns the identifier of the master: the maximum over the active peers and self."""
    # Identifiers are unique by construction; a random collision with self_id is not detected here.
    leader_id = self_id
    for device_id in active_peer_ids:
        if device_id > leader_id:
            leader_id = device_id
    return leader_id


class ElectionEngine:
    """
    Computes this device's role from the active peer set.

    The engine performs no I/O. It writes only SelfState.role and reports a
    change through the returned ElectionOutcome; announcing it is the caller's job.
    """

    def __init__(self):
        self.last_leader_id: Optional[int] = None

    def recompute(self, self_state: SelfState, active_peer_ids: Iterable[int]) -> ElectionOutcome:
        leader_id = elect_leader(self_state.device_id, active_peer_ids)
        new_role = Role.MASTER if leader_id == self_state.device_id else Role.SLAVE
        previous_role = self_state.role
        self_state.role = new_role
        self.last_leader_id = leader_id

        return ElectionOutcome(new_role, new_role != previous_role, leader_id, previous_role)
