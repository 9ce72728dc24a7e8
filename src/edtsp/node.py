# Copyright (c) 2025 Akita Engineering <https://www.akitaengineering.com>
# SPDX-License-Identifier: GPL-3.0-or-later

import logging
import socket
from collections import defaultdict
from typing import Any, Callable, Dict, Optional

from pubsub import pub

from .config import default_config
from .election import ElectionEngine, ElectionOutcome, SelfState
from .exceptions import ConfigurationError, NetworkError, PacketError, CapacityExceeded
from .identity import FileIdentityProvider
from .membership import MembershipTable
from .network import DatagramTransport, MulticastTransport
from .packets import (Packet, DiscoveryPayload, HeartbeatPayload, Payload,
                      decode, describe, encode_packet)
from .protocol import PROTOCOL_VERSION, PacketType, Role, parse_interface_type, role_name
from .utils import Timer, format_id, monotonic_ms

logger = logging.getLogger(__name__)

# PubSub topics published by the node. Listeners must accept exactly the listed keyword arguments.
TOPIC_ROLE_CHANGED = "edtsp.role.changed"            # node_id, old_role, new_role, leader_id
TOPIC_DEVICE_DISCOVERED = "edtsp.device.discovered"  # node_id, device_id
TOPIC_DEVICE_TIMEOUT = "edtsp.device.timeout"        # node_id, device_ids
TOPIC_DEVICE_REJECTED = "edtsp.device.rejected"      # node_id, device_id

MAX_ACTIVE_DEVICES_FIELD = 0xFF


class Node:
    """
    One EDTSP device: a cooperative, single-threaded loop that announces
    itself, tracks peers and keeps its MASTER/SLAVE role current.

    Each tick runs the due periodic tasks (heartbeat, timeout sweep, status
    report) and then waits at most receive_timeout_ms for one datagram. The
    membership table, self state and role are only touched from this loop.
    """

    def __init__(self,
                 config: Optional[Dict[str, Any]] = None,
                 transport: Optional[DatagramTransport] = None,
                 device_id: Optional[int] = None,
                 identity_provider: Optional[Callable[[], int]] = None,
                 clock: Callable[[], int] = monotonic_ms):
        """
        Initializes the node.
        Args:
            config: Validated configuration (see config.load_config). Defaults if None.
            transport: Datagram transport; a MulticastTransport from config if None.
            device_id: Explicit identifier. Otherwise config 'node_id', then identity_provider,
                       then the persistent id file named by config 'id_file'.
            identity_provider: Callable returning a stable nonzero 32-bit id.
            clock: Monotonic millisecond clock (injectable for tests).
        Raises:
            ConfigurationError: No valid device identifier.
        """
        self.config = config if config is not None else default_config()
        self._clock = clock
        self._running = False

        if device_id is None:
            device_id = self.config.get("node_id")
        if device_id is None:
            provider = identity_provider or FileIdentityProvider(self.config["id_file"])
            device_id = provider()
        try:
            self.state = SelfState(device_id=device_id, start_ms=self._clock())
        except (TypeError, ValueError) as e:
            logger.critical(f"Invalid device identifier: {e}. Node cannot start.")
            raise ConfigurationError(str(e)) from e

        self.transport: DatagramTransport = transport if transport is not None else MulticastTransport.from_config(self.config)
        self.membership = MembershipTable(capacity=self.config["max_devices"])
        self.election = ElectionEngine()

        self.device_name: str = self.config.get("device_name") or socket.gethostname()
        self.interface_type = parse_interface_type(self.config["interface_type"])
        self.device_timeout_ms: int = self.config["device_timeout_ms"]
        self.receive_timeout_ms: int = self.config["receive_timeout_ms"]
        self.strict_payload_len: bool = self.config["strict_payload_len"]

        # Statistics Tracking
        self.stats = defaultdict(int)

        # Timers for periodic actions
        self.heartbeat_timer = Timer(self.config["heartbeat_interval_ms"], clock=self._clock)
        self.sweep_timer = Timer(self.config["sweep_interval_ms"], clock=self._clock)
        self.status_timer = Timer(self.config["status_interval_ms"], clock=self._clock)

    @property
    def device_id(self) -> int:
        return self.state.device_id

    @property
    def role(self) -> Role:
        return self.state.role

    @property
    def is_master(self) -> bool:
        return self.state.role == Role.MASTER

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def leader_id(self) -> Optional[int]:
        """Master identifier from the most recent election, None before the first one."""
        return self.election.last_leader_id

    # --- Lifecycle ---

    def run(self):
        """
        Opens the transport, announces this device and loops until stop().
        A transport setup failure raises NetworkError; there is no degraded mode.
        """
        if self._running:
            logger.warning("Node run() called but already running.")
            return

        logger.info(f"--- Starting EDTSP Node {format_id(self.device_id)} ({self.device_name}) ---")
        self.transport.open()
        self._running = True
        try:
            self.start()
            logger.info("Starting main loop...")
            while self._running:
                self.tick()
        except KeyboardInterrupt:
            logger.info("KeyboardInterrupt received. Initiating shutdown...")
        finally:
            self.shutdown()

    def start(self):
        """Sends the initial DISCOVERY. Called once before the first tick."""
        payload = DiscoveryPayload(self.interface_type, PROTOCOL_VERSION, self.device_name)
        if self._send(payload):
            self.stats['discovery_sent'] += 1
            logger.info("DISCOVERY sent")

    def stop(self):
        """Asks the loop to exit at the next tick boundary."""
        if self._running:
            logger.info(f"Stop requested for node {format_id(self.device_id)}")
        self._running = False

    def shutdown(self):
        """Stops the loop and releases the transport. Safe to call more than once."""
        self._running = False
        self.heartbeat_timer.stop()
        self.sweep_timer.stop()
        self.status_timer.stop()
        if self.transport is not None:
            self.transport.close()
        logger.info(f"Node {format_id(self.device_id)} shutdown sequence complete.")

    # --- Scheduler ---

    def tick(self):
        """One loop iteration: due periodic tasks, then one bounded receive."""
        self._perform_periodic_tasks(self._clock())
        self._receive_once()

    def _perform_periodic_tasks(self, now_ms: int):
        """Executes tasks whose timers are due. Every task fires on the first tick."""
        if self.heartbeat_timer.due():
            self.send_heartbeat(now_ms)
            self.heartbeat_timer.reset()

        if self.sweep_timer.due():
            self.check_timeouts(now_ms)
            self.sweep_timer.reset()

        if self.status_timer.due():
            self.log_status(now_ms)
            self.status_timer.reset()

    def send_heartbeat(self, now_ms: int):
        payload = HeartbeatPayload(
            role=self.state.role,
            uptime_ms=self.state.uptime_ms(now_ms),
            active_devices=min(self.membership.count_active(), MAX_ACTIVE_DEVICES_FIELD),
        )
        if self._send(payload):
            self.stats['heartbeats_sent'] += 1
            logger.debug(f"HEARTBEAT sent: Role={self.state.role.name}")

    def check_timeouts(self, now_ms: int):
        """Sweeps the membership table and re-elects if anyone timed out."""
        timed_out = self.membership.sweep(now_ms, self.device_timeout_ms)
        if timed_out:
            self.stats['device_timeouts'] += len(timed_out)
            self._publish(TOPIC_DEVICE_TIMEOUT, node_id=self.device_id, device_ids=sorted(timed_out))
            self.run_election()
        elif self.state.role == Role.UNKNOWN and now_ms - self.state.start_ms >= self.device_timeout_ms:
            # Nobody answered within one detection window; settle the role on our own.
            logger.info("No peers heard within the detection timeout, electing with the current view.")
            self.run_election()

    def log_status(self, now_ms: int):
        """Read-only dump of self, active peers and counters."""
        active = [r for r in self.membership.records() if r.active]
        logger.info(f"=== Device List ({self.membership.count_active()} active) ===")
        logger.info(f"  Self: ID={format_id(self.device_id)}, Role={self.state.role.name}, "
                    f"Uptime={self.state.uptime_ms(now_ms)} ms")
        for index, record in enumerate(active, start=1):
            logger.info(f"  Device {index}: ID={format_id(record.device_id)}, Role={role_name(record.reported_role)}, "
                        f"Last seen {now_ms - record.last_heartbeat_ms} ms ago")
        for key, value in sorted(self.stats.items()):
            logger.debug(f"{key.replace('_', ' ').capitalize():<28}: {value}")

    # --- Election ---

    def run_election(self) -> ElectionOutcome:
        """Recomputes the role from the active peers and announces a change, if any."""
        outcome = self.election.recompute(self.state, self.membership.active_ids())
        event = outcome.event
        if event is not None:
            self.stats['role_changes'] += 1
            logger.info(f"*** ROLE CHANGE: {event} (My ID: {format_id(self.device_id)}) ***")
            self._publish(TOPIC_ROLE_CHANGED, node_id=self.device_id, old_role=event.old_role,
                          new_role=event.new_role, leader_id=event.leader_id)
        return outcome

    # --- Receive path ---

    def _receive_once(self):
        try:
            data = self.transport.receive(self.receive_timeout_ms / 1000.0)
        except NetworkError as e:
            logger.warning(f"Receive failed: {e}")
            self.stats['receive_failures'] += 1
            return
        if data is not None:
            self.handle_datagram(data)

    def handle_datagram(self, data: bytes) -> Optional[Packet]:
        """
        Decodes and applies one received datagram.

        Returns:
            The decoded packet if it was accepted for dispatch, None if it was discarded.
        """
        self.stats['packets_recv'] += 1
        try:
            packet = decode(data, strict=self.strict_payload_len)
        except PacketError as e:
            self.stats['packets_discarded'] += 1
            self.stats[f'discarded_{type(e).__name__}'] += 1
            logger.debug(f"Discarding {len(data)}-byte datagram: {e}")
            return None

        source_id = packet.source_id
        if source_id == 0:
            self.stats['packets_discarded'] += 1
            logger.debug(f"Discarding {packet.packet_type.name} with source id 0")
            return None
        if source_id == self.device_id:
            self.stats['self_echo'] += 1
            return None

        now_ms = self._clock()
        ptype = packet.packet_type
        logger.debug(f"RX {describe(packet)}")

        if ptype == PacketType.DISCOVERY:
            self.stats['discovery_recv'] += 1
            logger.info(f"RX {describe(packet)}")
            self._apply_presence(source_id, now_ms, Role.UNKNOWN)

        elif ptype == PacketType.HEARTBEAT:
            self.stats['heartbeats_recv'] += 1
            self._apply_presence(source_id, now_ms, packet.payload.role)

        elif ptype in (PacketType.HANDSHAKE, PacketType.CONFIG, PacketType.DATA):
            # Decoded for completeness; no behavior is attached to these yet
            self.stats[f'{ptype.name.lower()}_recv'] += 1
            logger.debug(f"Packet type {ptype.name} from {format_id(source_id)} (not yet handled)")

        return packet

    def _apply_presence(self, source_id: int, now_ms: int, reported_role):
        try:
            is_new = self.membership.upsert(source_id, now_ms, reported_role)
        except CapacityExceeded as e:
            self.stats['capacity_rejections'] += 1
            logger.warning(f"WARNING: Device list full! {e}")
            self._publish(TOPIC_DEVICE_REJECTED, node_id=self.device_id, device_id=source_id)
            return

        if is_new:
            self.stats['devices_discovered'] += 1
            logger.info(f"New device discovered: ID={format_id(source_id)}")
            self._publish(TOPIC_DEVICE_DISCOVERED, node_id=self.device_id, device_id=source_id)
        self.run_election()

    # --- Send path ---

    def _send(self, payload: Payload) -> bool:
        """Encodes and sends one packet. Failures are reported, never retried."""
        data = encode_packet(self.device_id, payload)
        try:
            self.transport.send(data)
        except NetworkError as e:
            self.stats['send_failures'] += 1
            logger.warning(f"Failed to send {payload.TYPE.name}: {e}")
            return False
        self.stats['packets_sent'] += 1
        return True

    def _publish(self, topic: str, **kwargs):
        try:
            pub.sendMessage(topic, **kwargs)
        except Exception:
            logger.exception(f"Error in listener for '{topic}'")
