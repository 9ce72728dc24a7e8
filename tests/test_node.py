import struct

import pytest
from pubsub import pub

from edtsp.exceptions import ConfigurationError
from edtsp.node import Node, TOPIC_DEVICE_DISCOVERED
from edtsp.packets import (DataPayload, DiscoveryPayload, HeartbeatPayload, decode, encode_packet)
from edtsp.protocol import MAGIC, InterfaceType, PacketType, Role


def heartbeat(source_id, role=Role.SLAVE, uptime_ms=0, active_devices=1):
    return encode_packet(source_id, HeartbeatPayload(role, uptime_ms, active_devices))


def discovery(source_id, name="peer"):
    return encode_packet(source_id, DiscoveryPayload(InterfaceType.ETH, 1, name))


def test_start_sends_discovery(make_node, transport):
    node = make_node(0x20)
    node.start()

    packet = decode(transport.sent[0])
    assert packet.packet_type == PacketType.DISCOVERY
    assert packet.source_id == 0x20
    assert packet.payload.device_name == "test-node"
    assert packet.payload.interface_type == InterfaceType.ETH
    assert packet.payload.version == 1


def test_first_tick_sends_heartbeat_with_unknown_role(make_node, transport):
    node = make_node(0x20)
    node.tick()

    packet = decode(transport.sent[0])
    assert packet.packet_type == PacketType.HEARTBEAT
    assert packet.payload.role == Role.UNKNOWN
    assert packet.payload.uptime_ms == 0
    assert packet.payload.active_devices == 1
    assert node.role == Role.UNKNOWN


def test_heartbeat_reports_role_uptime_and_count(make_node, transport, clock):
    node = make_node(0x20)
    node.tick()
    node.handle_datagram(heartbeat(0x10))
    clock.advance(1000)
    node.tick()

    packet = decode(transport.sent[-1])
    assert packet.payload.role == Role.MASTER
    assert packet.payload.uptime_ms == 1000
    assert packet.payload.active_devices == 2


def test_self_echo_is_ignored(make_node):
    node = make_node(0x20)
    assert node.handle_datagram(heartbeat(0x20, Role.MASTER)) is None
    assert node.stats['self_echo'] == 1
    assert len(node.membership) == 0
    assert node.role == Role.UNKNOWN


def test_discovery_from_lower_id_makes_master(make_node, events):
    node = make_node(0x20)
    node.handle_datagram(discovery(0x10))

    assert node.is_master
    assert node.membership.get(0x10).reported_role == Role.UNKNOWN
    assert events.discovered == [(0x20, 0x10)]
    assert events.role_changes == [(0x20, Role.UNKNOWN, Role.MASTER, 0x20)]


def test_higher_peer_takes_over(make_node, events):
    node = make_node(0x20)
    node.handle_datagram(heartbeat(0x10))
    node.handle_datagram(heartbeat(0x30, Role.MASTER))

    assert node.role == Role.SLAVE
    assert node.leader_id == 0x30
    assert node.membership.get(0x30).reported_role == Role.MASTER
    assert events.role_changes[-1] == (0x20, Role.MASTER, Role.SLAVE, 0x30)


def test_master_timeout_triggers_failover(make_node, clock, events):
    node = make_node(0x20)
    node.tick()
    node.handle_datagram(heartbeat(0x30, Role.MASTER))
    node.handle_datagram(heartbeat(0x10))
    assert node.role == Role.SLAVE

    clock.advance(3000)
    node.handle_datagram(heartbeat(0x10))
    clock.advance(2001)
    node.tick()

    assert node.role == Role.MASTER
    assert node.membership.active_ids() == {0x10}
    assert events.timeouts == [(0x20, [0x30])]
    assert events.role_changes[-1] == (0x20, Role.SLAVE, Role.MASTER, 0x20)
    assert node.stats['device_timeouts'] == 1


def test_lone_device_becomes_master_after_timeout(make_node, clock, events):
    node = make_node(0x20)
    node.tick()
    assert node.role == Role.UNKNOWN

    clock.advance(4000)
    node.tick()
    assert node.role == Role.UNKNOWN

    clock.advance(1000)
    node.tick()
    assert node.role == Role.MASTER
    assert events.role_changes == [(0x20, Role.UNKNOWN, Role.MASTER, 0x20)]


def test_send_failure_is_counted_not_raised(make_node, transport):
    node = make_node(0x20)
    transport.fail_sends = True
    node.start()
    node.tick()

    assert transport.sent == []
    assert node.stats['send_failures'] == 2
    assert node.stats['packets_sent'] == 0


def test_malformed_datagrams_are_discarded(make_node):
    node = make_node(0x20)
    bad_magic = struct.pack("!HBIB", 0xABCD, PacketType.HEARTBEAT, 0x10, 6) + b"\x00" * 6
    zero_source = struct.pack("!HBIB", MAGIC, PacketType.HEARTBEAT, 0, 6) + struct.pack("!BIB", 1, 0, 1)

    assert node.handle_datagram(bad_magic) is None
    assert node.handle_datagram(b"\xED\x61") is None
    assert node.handle_datagram(zero_source) is None

    assert node.stats['packets_discarded'] == 3
    assert node.stats['discarded_InvalidMagic'] == 1
    assert node.stats['discarded_Truncated'] == 1
    assert len(node.membership) == 0
    assert node.role == Role.UNKNOWN


def test_strict_payload_len(make_node):
    data = bytearray(heartbeat(0x10))
    data[7] = 99

    lenient = make_node(0x20)
    assert lenient.handle_datagram(bytes(data)) is not None

    strict = make_node(0x21, strict_payload_len=True)
    assert strict.handle_datagram(bytes(data)) is None
    assert strict.stats['discarded_PayloadLengthMismatch'] == 1


def test_other_packet_types_do_not_touch_membership(make_node):
    node = make_node(0x20)
    packet = node.handle_datagram(encode_packet(0x10, DataPayload(1, 5, b"\x01")))

    assert packet.packet_type == PacketType.DATA
    assert node.stats['data_recv'] == 1
    assert len(node.membership) == 0
    assert node.role == Role.UNKNOWN


def test_full_table_rejects_new_device(make_node, events):
    node = make_node(0x20, max_devices=1)
    node.handle_datagram(heartbeat(0x10))
    node.handle_datagram(heartbeat(0x99, Role.MASTER))

    assert 0x99 not in node.membership
    assert node.is_master
    assert events.rejected == [(0x20, 0x99)]
    assert node.stats['capacity_rejections'] == 1


def test_run_until_stopped(make_node, transport):
    node = make_node(0x20)
    transport.inbox.append(heartbeat(0x10))
    calls = []

    def stop_after_three():
        calls.append(1)
        if len(calls) == 3:
            node.stop()
    transport.on_receive = stop_after_three

    node.run()

    assert transport.opened and transport.closed
    assert not node.is_running
    assert len(calls) == 3
    assert decode(transport.sent[0]).packet_type == PacketType.DISCOVERY
    assert node.is_master


def test_listener_errors_do_not_break_the_node(make_node):
    class Exploding:
        def on_discovered(self, node_id, device_id):
            raise RuntimeError("listener bug")

    listener = Exploding()
    pub.subscribe(listener.on_discovered, TOPIC_DEVICE_DISCOVERED)
    try:
        node = make_node(0x20)
        node.handle_datagram(discovery(0x10))
        assert node.is_master
    finally:
        pub.unsubscribe(listener.on_discovered, TOPIC_DEVICE_DISCOVERED)


def test_identity_provider_used_when_no_id_configured(config, transport, clock):
    node = Node(config=config, transport=transport, identity_provider=lambda: 0x77, clock=clock)
    assert node.device_id == 0x77


def test_invalid_device_id_rejected(config, transport):
    with pytest.raises(ConfigurationError):
        Node(config=config, transport=transport, device_id=0)


def test_own_discovery_is_ignored(make_node, events):
    node = make_node(0x20)
    assert node.handle_datagram(discovery(0x20, name="me")) is None
    assert node.stats['self_echo'] == 1
    assert node.stats['discovery_recv'] == 0
    assert len(node.membership) == 0
    assert events.discovered == []
    assert node.role == Role.UNKNOWN


def test_heartbeat_device_count_saturates_at_255(make_node, transport):
    node = make_node(0xFFFF0000, max_devices=300)
    for peer_id in range(1, 261):
        node.handle_datagram(heartbeat(peer_id))
    assert node.membership.count_active() == 261

    node.tick()

    packet = decode(transport.sent[-1])
    assert packet.packet_type == PacketType.HEARTBEAT
    assert packet.payload.active_devices == 255
    assert packet.payload.role == Role.MASTER
