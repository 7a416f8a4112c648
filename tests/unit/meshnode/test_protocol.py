"""
Protocol Router Unit Tests
==========================

[PROTOCOL] Таблица opcode -> handler, NACK на ошибки, расширения CUSTOM.
Узел заменён заглушкой, сокеты не используются.
"""

from dataclasses import dataclass
from typing import Any, List, Optional

import pytest
import pytest_asyncio

from meshnode.broadcast import BroadcastEngine
from meshnode.dht.protocol import DHTProtocol
from meshnode.dht.routing import NodeInfo, NodeInfoCache, RoutingTable
from meshnode.events import EventBus
from meshnode.exceptions import PayloadDecodeError, SubnetMismatch
from meshnode.identity import Identity, authenticate
from meshnode.options import ConnectionOption, Subnet
from meshnode.protocol import ProtocolRouter, nack_payload, pending_key, request_key
from meshnode.wire import BROADCAST_ADDRESS, OpCode, encode_message, parse_message


@dataclass(eq=False)
class StubPeer:
    reliable: bool = True
    close_requested: bool = False

    def __str__(self) -> str:
        return "stub-peer"


class StubNode:
    """Минимальная поверхность Node, которую используют обработчики."""

    def __init__(self, identity: Identity, storage):
        self.identity = identity
        self.dht = DHTProtocol(RoutingTable(identity.address), storage, NodeInfoCache(), identity.address)
        self.broadcast_engine = BroadcastEngine()
        self.events = EventBus()
        self.peers: List[StubPeer] = []
        self.replies: List[tuple] = []
        self.relayed: List[tuple] = []
        self.options: List[tuple] = []
        self.announces: List[tuple] = []
        self.rekeyed: List[tuple] = []
        self.option_error: Optional[Exception] = None

    def handle_reply(self, peer, payload, rejected):
        self.replies.append((payload, rejected))

    def apply_connection_option(self, peer, option, setting):
        if self.option_error is not None:
            raise self.option_error
        if option == ConnectionOption.SUBNET:
            Subnet.from_payload(setting)
        self.options.append((option, setting))

    def established_peers(self):
        return list(self.peers)

    async def relay(self, raw, targets):
        self.relayed.append((raw, list(targets)))

    def record_announce(self, sender, host, port, peer):
        self.announces.append((sender, host, port))
        return NodeInfo(sender, host, port)

    def rekey_peer(self, old_address, new_address):
        self.rekeyed.append((old_address, new_address))


@pytest_asyncio.fixture
async def stub(value_store):
    node = StubNode(Identity(), value_store)
    source = StubPeer()
    node.peers = [source, StubPeer()]
    return node, source


@pytest.fixture
def router():
    return ProtocolRouter()


def build(sender: Identity, receiver: Identity, op: int, payload: Any, to: Optional[bytes] = None):
    data = encode_message(to if to is not None else receiver.address, op, payload, sender)
    return authenticate(parse_message(data, 0), receiver)


async def collect(events: EventBus, name: str) -> list:
    received = []
    await events.subscribe(name, received.append)
    return received


class TestRequestKeys:
    """Test reply matching helpers."""

    @pytest.mark.parametrize("op,payload,expected", [
        (OpCode.FIND_NODE, [b"target"], b"target"),
        (OpCode.FIND_VALUE, ["key"], "key"),
        (OpCode.STORE, [b"owner", "key", "value"], "key"),
        (OpCode.SET_CONNECTION_OPT, [2, []], 2),
        (OpCode.CUSTOM, [7, "body"], 7),
        (OpCode.PING, [], None),
        (OpCode.FIND_NODE, [], None),
        (OpCode.STORE, "garbage", None),
    ])
    def test_request_key(self, op, payload, expected):
        assert request_key(op, payload) == expected

    def test_nack_payload(self):
        assert nack_payload(OpCode.FIND_VALUE, ["key"]) == [OpCode.FIND_VALUE, "key"]
        assert nack_payload(OpCode.PING, []) == [OpCode.PING]

    def test_pending_key_is_hashable(self):
        key = pending_key(OpCode.FIND_VALUE, ["composite", 1])
        assert hash(key) is not None
        assert pending_key(OpCode.PING, None) == (2, None)
        assert pending_key(OpCode.STORE, "k") != pending_key(OpCode.STORE, b"k")


class TestRouting:
    """Test dispatch and NACK generation."""

    def test_every_assigned_opcode_has_handler(self, router):
        assert set(router.handlers) == {int(op) for op in OpCode}
        assert router.handlers[OpCode.ANNOUNCE].opcode == OpCode.ANNOUNCE
        assert router.handlers[OpCode.CHANGE_KEY].opcode == OpCode.CHANGE_KEY

    async def test_ping(self, router, stub, identity_pair):
        node, source = stub
        sender, _ = identity_pair
        reply = await router.route(build(sender, node.identity, OpCode.PING, []), {"node": node, "peer": source})

        assert reply == (OpCode.ACK, [OpCode.PING])

    @pytest.mark.parametrize("op", [12, 13, 14])
    async def test_reserved_opcodes_are_nacked(self, router, stub, identity, op):
        node, source = stub
        reply = await router.route(build(identity, node.identity, op, []), {"node": node, "peer": source})

        assert reply == (OpCode.NACK, [op])

    async def test_malformed_request_is_nacked_with_key(self, router, stub, identity):
        node, source = stub
        message = build(identity, node.identity, OpCode.FIND_NODE, [b"short"])

        reply = await router.route(message, {"node": node, "peer": source})
        assert reply == (OpCode.NACK, [OpCode.FIND_NODE, b"short"])

    async def test_ack_and_nack_resolve_pending(self, router, stub, identity):
        node, source = stub
        ctx = {"node": node, "peer": source}

        assert await router.route(build(identity, node.identity, OpCode.ACK, [2]), ctx) is None
        assert await router.route(build(identity, node.identity, OpCode.NACK, [9, b"t"]), ctx) is None
        assert node.replies == [([2], False), ([9, b"t"], True)]

    async def test_store_and_find_value(self, router, stub, identity):
        node, source = stub
        ctx = {"node": node, "peer": source}

        reply = await router.route(build(identity, node.identity, OpCode.STORE, [identity.address, "k", "v"]), ctx)
        assert reply == (OpCode.ACK, [OpCode.STORE, "k"])

        op, payload = await router.route(build(identity, node.identity, OpCode.FIND_VALUE, ["k"]), ctx)
        assert op == OpCode.ACK
        assert payload[:3] == [OpCode.FIND_VALUE, "k", "v"]


class TestConnectionOptions:
    """Test SET_CONNECTION_OPT handling."""

    async def test_option_is_applied(self, router, stub, identity):
        node, source = stub
        reply = await router.route(
            build(identity, node.identity, OpCode.SET_CONNECTION_OPT, [1, 4]),
            {"node": node, "peer": source},
        )

        assert reply == (OpCode.ACK, [OpCode.SET_CONNECTION_OPT, 1])
        assert node.options == [(1, 4)]

    async def test_subnet_mismatch_closes_after_nack(self, router, stub, identity):
        node, source = stub
        node.option_error = SubnetMismatch("tau", 256, 128)

        reply = await router.route(
            build(identity, node.identity, OpCode.SET_CONNECTION_OPT, [2, []]),
            {"node": node, "peer": source},
        )

        assert reply == (OpCode.NACK, [OpCode.SET_CONNECTION_OPT, 2])
        assert source.close_requested

    @pytest.mark.parametrize("setting", [
        [20, 3, 300, 256, 8, 0, "mesh"],
        [0, 3, 256, 256, 8, 0, "mesh"],
        [20, 3, 256],
        "subnet",
    ])
    async def test_invalid_subnet_closes_after_nack(self, router, stub, identity, setting):
        node, source = stub

        reply = await router.route(
            build(identity, node.identity, OpCode.SET_CONNECTION_OPT, [ConnectionOption.SUBNET, setting]),
            {"node": node, "peer": source},
        )

        assert reply == (OpCode.NACK, [OpCode.SET_CONNECTION_OPT, ConnectionOption.SUBNET])
        assert source.close_requested
        assert node.options == []

    async def test_bad_setting_is_nacked(self, router, stub, identity):
        node, source = stub
        node.option_error = PayloadDecodeError("bad setting")

        reply = await router.route(
            build(identity, node.identity, OpCode.SET_CONNECTION_OPT, [0, "zip"]),
            {"node": node, "peer": source},
        )

        assert reply == (OpCode.NACK, [OpCode.SET_CONNECTION_OPT, 0])
        assert not source.close_requested


class TestFlooding:
    """Test broadcast handlers."""

    async def test_shout_delivered_and_relayed_once(self, router, stub, identity):
        node, source = stub
        shouts = await collect(node.events, "shout")
        message = build(identity, node.identity, OpCode.SHOUT, ["hi"], to=BROADCAST_ADDRESS)
        ctx = {"node": node, "peer": source}

        assert await router.route(message, ctx) is None
        assert await router.route(message, ctx) is None

        assert shouts == [{"sender": identity.address, "data": "hi"}]
        assert len(node.relayed) == 1
        raw, targets = node.relayed[0]
        assert raw.data == message.raw.data
        assert targets == [node.peers[1]]

    async def test_malformed_shout_is_not_remembered(self, router, stub, identity):
        node, source = stub
        message = build(identity, node.identity, OpCode.SHOUT, ["a", "b"], to=BROADCAST_ADDRESS)

        assert await router.route(message, {"node": node, "peer": source}) is None
        assert message.signature not in node.broadcast_engine.seen
        assert node.relayed == []

    async def test_speak_ack_over_unreliable_peer(self, router, stub, identity):
        node, _ = stub
        udp = StubPeer(reliable=False)
        reply = await router.route(
            build(identity, node.identity, OpCode.SPEAK, ["hi"]),
            {"node": node, "peer": udp},
        )

        assert reply == (OpCode.ACK, [OpCode.SPEAK])
        assert node.relayed == []

    async def test_announce(self, router, stub, identity):
        node, source = stub
        announces = await collect(node.events, "announce")

        await router.route(
            build(identity, node.identity, OpCode.ANNOUNCE, ["10.0.0.5", 9000], to=BROADCAST_ADDRESS),
            {"node": node, "peer": source},
        )

        assert node.announces == [(identity.address, "10.0.0.5", 9000)]
        assert announces[0]["port"] == 9000

    async def test_announce_bad_port_dropped(self, router, stub, identity):
        node, source = stub
        await router.route(
            build(identity, node.identity, OpCode.ANNOUNCE, ["10.0.0.5", 0], to=BROADCAST_ADDRESS),
            {"node": node, "peer": source},
        )
        assert node.announces == []

    async def test_change_key_requires_proof(self, router, stub, identity):
        node, source = stub
        new = Identity()
        ctx = {"node": node, "peer": source}

        forged = build(identity, node.identity, OpCode.CHANGE_KEY, [new.address, identity.sign(identity.address)],
                       to=BROADCAST_ADDRESS)
        await router.route(forged, ctx)
        assert node.rekeyed == []

        valid = build(identity, node.identity, OpCode.CHANGE_KEY, [new.address, new.sign(identity.address)],
                      to=BROADCAST_ADDRESS)
        await router.route(valid, ctx)
        assert node.rekeyed == [(identity.address, new.address)]


class TestWhisperAndCustom:
    """Test direct delivery and extensions."""

    async def test_encrypted_whisper(self, router, stub, identity):
        node, source = stub
        whispers = await collect(node.events, "whisper")

        data = encode_message(node.identity.address, OpCode.WHISPER, [b"psst"], identity, encrypted=True)
        message = authenticate(parse_message(data, 0), node.identity)

        assert await router.route(message, {"node": node, "peer": source}) is None
        assert whispers == [{"sender": identity.address, "data": b"psst", "encrypted": True}]

    async def test_malformed_whisper_is_dropped_silently(self, router, stub, identity):
        node, source = stub
        message = build(identity, node.identity, OpCode.WHISPER, "not-a-list")

        assert await router.route(message, {"node": node, "peer": source}) is None

    async def test_extension_sync_and_async(self, router, stub, identity):
        node, source = stub
        ctx = {"node": node, "peer": source}

        async def echo(sender, body):
            return {"echo": body}

        router.register_extension(1, lambda sender, body: body * 2)
        router.register_extension(2, echo)

        assert await router.route(build(identity, node.identity, OpCode.CUSTOM, [1, 21]), ctx) == \
            (OpCode.ACK, [OpCode.CUSTOM, 1, 42])
        assert await router.route(build(identity, node.identity, OpCode.CUSTOM, [2, "x"]), ctx) == \
            (OpCode.ACK, [OpCode.CUSTOM, 2, {"echo": "x"}])

    async def test_unknown_sub_opcode(self, router, stub, identity):
        node, source = stub
        reply = await router.route(
            build(identity, node.identity, OpCode.CUSTOM, [99, None]),
            {"node": node, "peer": source},
        )
        assert reply == (OpCode.NACK, [OpCode.CUSTOM, 99])

    async def test_failing_extension(self, router, stub, identity):
        node, source = stub

        def broken(sender, body):
            raise RuntimeError("boom")

        router.register_extension(3, broken)
        reply = await router.route(
            build(identity, node.identity, OpCode.CUSTOM, [3, None]),
            {"node": node, "peer": source},
        )
        assert reply == (OpCode.NACK, [OpCode.CUSTOM, 3])

    def test_extension_registration_rules(self, router):
        router.register_extension(5, lambda s, b: None)
        with pytest.raises(ValueError):
            router.register_extension(5, lambda s, b: None)
        with pytest.raises(TypeError):
            router.register_extension("5", lambda s, b: None)

        router.unregister_extension(5)
        assert 5 not in router.extensions
