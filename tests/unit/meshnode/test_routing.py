"""
Kademlia Routing Table Unit Tests
=================================

[KADEMLIA] XOR-метрика, k-buckets, замена по правилу Kademlia.
"""

import asyncio
import os
from dataclasses import dataclass

import pytest

from meshnode.dht.routing import (
    KBucket,
    NodeInfo,
    NodeInfoCache,
    RoutingTable,
    bucket_index,
    distance_to_bucket_index,
    random_address_in_bucket,
    xor_distance,
)


@dataclass(eq=False)
class FakePeer:
    address: bytes


LOCAL = b"\x00" * 32


def addr(last: int, first: int = 0) -> bytes:
    return bytes([first]) + b"\x00" * 30 + bytes([last])


def peers_in_bucket(local: bytes, index: int, count: int):
    return [FakePeer(random_address_in_bucket(local, index)) for _ in range(count)]


class TestXorMetric:
    """Test distance function."""

    def test_identity_and_symmetry(self):
        a, b = os.urandom(32), os.urandom(32)
        assert xor_distance(a, a) == 0
        assert xor_distance(a, b) == xor_distance(b, a)

    def test_triangle_inequality(self):
        a, b, c = os.urandom(32), os.urandom(32), os.urandom(32)
        assert xor_distance(a, b) + xor_distance(b, c) >= xor_distance(a, c)

    def test_tau_keeps_low_bits(self):
        assert xor_distance(addr(0x0F, first=0xFF), addr(0x01), tau=8) == 0x0E

    def test_length_mismatch(self):
        with pytest.raises(ValueError):
            xor_distance(b"\x00" * 32, b"\x00" * 20)


class TestBucketIndex:
    """Test prefix length computation."""

    def test_top_bit_is_bucket_zero(self):
        assert bucket_index(LOCAL, addr(0, first=0x80)) == 0

    def test_lowest_bit_is_last_bucket(self):
        assert bucket_index(LOCAL, addr(1)) == 255

    def test_self_is_clamped(self):
        assert distance_to_bucket_index(0) == 255

    def test_small_tau(self):
        assert distance_to_bucket_index(0b100, tau=8) == 5

    @pytest.mark.parametrize("index", [0, 1, 7, 100, 254, 255])
    def test_random_address_lands_in_bucket(self, index):
        local = os.urandom(32)
        for _ in range(5):
            assert bucket_index(local, random_address_in_bucket(local, index)) == index

    def test_random_address_respects_tau(self):
        local = os.urandom(32)
        target = random_address_in_bucket(local, 3, tau=16)

        assert target[:30] == local[:30]
        assert bucket_index(local, target, tau=16) == 3


class TestNodeInfo:
    """Test contact records."""

    def test_payload_roundtrip(self):
        info = NodeInfo(addr(1), "10.0.0.1", 8468)
        assert NodeInfo.from_payload(info.to_payload()) == info

    @pytest.mark.parametrize("item", [
        None,
        [b"a", "host"],
        ["not-bytes", "host", 1],
        [b"a", "host", 0],
        [b"a", "host", 70000],
    ])
    def test_malformed_contact(self, item):
        with pytest.raises(ValueError):
            NodeInfo.from_payload(item)

    def test_cache_is_bounded_lru(self):
        cache = NodeInfoCache(max_size=2)
        first, second, third = (NodeInfo(addr(i), "h", 1) for i in (1, 2, 3))

        cache.put(first)
        cache.put(second)
        cache.put(first)
        cache.put(third)

        assert addr(1) in cache
        assert addr(2) not in cache
        assert len(cache) == 2

    def test_cache_closest(self):
        cache = NodeInfoCache()
        for i in (8, 1, 4, 2):
            cache.put(NodeInfo(addr(i), "h", 1))

        result = cache.closest(LOCAL, 2, exclude=[addr(1)])
        assert [c.address for c in result] == [addr(2), addr(4)]


class TestKBucket:
    """Test single bucket behaviour."""

    def test_add_until_full(self):
        bucket = KBucket(k=2)
        a, b, c = FakePeer(addr(1)), FakePeer(addr(2)), FakePeer(addr(3))

        assert bucket.add(a) == (True, None)
        assert bucket.add(b) == (True, None)
        added, candidate = bucket.add(c)

        assert not added
        assert candidate is a
        assert len(bucket) == 2

    def test_readd_moves_to_tail(self):
        bucket = KBucket(k=3)
        a, b = FakePeer(addr(1)), FakePeer(addr(2))
        bucket.add(a)
        bucket.add(b)
        bucket.add(a)

        assert bucket.addresses == (addr(2), addr(1))
        assert bucket.head is b

    def test_touch(self):
        bucket = KBucket(k=3)
        bucket.add(FakePeer(addr(1)))
        bucket.add(FakePeer(addr(2)))

        assert bucket.touch(addr(1))
        assert not bucket.touch(addr(9))
        assert bucket.addresses == (addr(2), addr(1))

    def test_remove_only_matching_peer_object(self):
        bucket = KBucket()
        old, new = FakePeer(addr(1)), FakePeer(addr(1))
        bucket.add(new)

        assert not bucket.remove(addr(1), old)
        assert bucket.remove(addr(1), new)
        assert len(bucket) == 0

    def test_replace_is_compare_and_swap(self):
        bucket = KBucket(k=2)
        bucket.add(FakePeer(addr(1)))
        snapshot = bucket.addresses

        bucket.add(FakePeer(addr(2)))
        assert not bucket.replace(snapshot, [FakePeer(addr(3))])

        assert bucket.replace(bucket.addresses, [FakePeer(addr(3))])
        assert bucket.addresses == (addr(3),)

    def test_replace_over_capacity(self):
        bucket = KBucket(k=1)
        with pytest.raises(ValueError):
            bucket.replace((), [FakePeer(addr(1)), FakePeer(addr(2))])

    def test_apply_diff(self):
        bucket = KBucket(k=2)
        bucket.add(FakePeer(addr(1)))
        bucket.add(FakePeer(addr(2)))

        bucket.apply_diff(insert=[FakePeer(addr(3))], evict=[addr(1)])
        assert bucket.addresses == (addr(2), addr(3))

    def test_apply_diff_overflow_leaves_bucket_untouched(self):
        bucket = KBucket(k=2)
        bucket.add(FakePeer(addr(1)))

        with pytest.raises(ValueError):
            bucket.apply_diff(insert=[FakePeer(addr(2)), FakePeer(addr(3))])
        assert bucket.addresses == (addr(1),)


class TestRoutingTable:
    """Test routing table operations."""

    def test_tau_wider_than_address(self):
        with pytest.raises(ValueError):
            RoutingTable(b"\x00" * 16, tau=256)

    def test_local_address_is_never_stored(self):
        table = RoutingTable(LOCAL)
        assert table.add_peer(FakePeer(LOCAL)) == (False, None)
        assert len(table) == 0
        assert LOCAL not in table

    def test_peer_lands_in_its_bucket(self):
        table = RoutingTable(LOCAL)
        peer = FakePeer(addr(0, first=0x40))
        table.add_peer(peer)

        assert peer.address in table
        assert table.get(peer.address) is peer
        assert len(table.buckets[1]) == 1

    async def test_full_bucket_keeps_live_head(self):
        table = RoutingTable(LOCAL, k=2)
        first, second, newcomer = peers_in_bucket(LOCAL, 0, 3)
        table.add_peer(first)
        table.add_peer(second)

        pinged = []

        async def ping(peer):
            pinged.append(peer)
            return True

        assert not await table.insert_or_refresh(newcomer, ping)
        assert pinged == [first]
        assert newcomer.address not in table
        assert table.buckets[0].addresses == (second.address, first.address)

    async def test_full_bucket_replaces_dead_head(self):
        table = RoutingTable(LOCAL, k=2)
        first, second, newcomer = peers_in_bucket(LOCAL, 0, 3)
        table.add_peer(first)
        table.add_peer(second)

        async def ping(peer):
            return False

        assert await table.insert_or_refresh(newcomer, ping)
        assert first.address not in table
        assert newcomer.address in table
        assert len(table.buckets[0]) == 2

    async def test_insert_does_not_ping_when_room(self):
        table = RoutingTable(LOCAL)

        async def ping(peer):
            raise AssertionError("ping must not be called")

        assert await table.insert_or_refresh(FakePeer(addr(5)), ping)

    async def test_concurrent_inserts_respect_k(self):
        table = RoutingTable(LOCAL, k=4)
        peers = peers_in_bucket(LOCAL, 0, 12)

        async def ping(peer):
            await asyncio.sleep(0)
            return True

        await asyncio.gather(*(table.insert_or_refresh(p, ping) for p in peers))
        assert len(table.buckets[0]) == 4

    def test_closest_spans_buckets(self):
        table = RoutingTable(LOCAL)
        for value in (0x80, 0x01, 0x10, 0x03):
            table.add_peer(FakePeer(addr(value)))
        table.add_peer(FakePeer(addr(0, first=0x80)))

        result = table.closest(addr(0x02), count=3)
        assert [p.address for p in result] == [addr(0x03), addr(0x01), addr(0x10)]

    def test_closest_exclude(self):
        table = RoutingTable(LOCAL)
        table.add_peer(FakePeer(addr(1)))
        table.add_peer(FakePeer(addr(2)))

        assert [p.address for p in table.closest(LOCAL, exclude=[addr(1)])] == [addr(2)]

    def test_replace_bucket_validates_members(self):
        table = RoutingTable(LOCAL)
        wrong = FakePeer(addr(1))

        with pytest.raises(ValueError):
            table.replace_bucket(0, (), [wrong])
        with pytest.raises(ValueError):
            table.replace_bucket(0, (), [FakePeer(LOCAL)])

    def test_replace_bucket(self):
        table = RoutingTable(LOCAL, k=3)
        old = peers_in_bucket(LOCAL, 0, 2)
        for peer in old:
            table.add_peer(peer)
        new = peers_in_bucket(LOCAL, 0, 3)

        assert table.replace_bucket(0, table.buckets[0].addresses, new)
        assert table.buckets[0].addresses == tuple(p.address for p in new)

    def test_apply_diff_rejects_duplicates(self):
        table = RoutingTable(LOCAL)
        peer = peers_in_bucket(LOCAL, 0, 1)[0]

        with pytest.raises(ValueError):
            table.apply_diff(0, insert=[peer, FakePeer(peer.address)])

    def test_remove_and_touch(self):
        table = RoutingTable(LOCAL)
        peer = FakePeer(addr(1))
        table.add_peer(peer)

        assert table.touch(addr(1))
        assert table.remove(addr(1))
        assert not table.remove(addr(1))
        assert not table.remove(LOCAL)

    def test_refresh_ids_for_non_empty_buckets(self):
        table = RoutingTable(LOCAL)
        table.add_peer(FakePeer(addr(1)))
        table.add_peer(FakePeer(addr(0, first=0x80)))

        ids = table.get_refresh_ids(interval=-1)
        assert sorted(table.bucket_index(t) for t in ids) == [0, 255]
        assert table.get_refresh_ids(interval=3600) == []

    def test_stats(self):
        table = RoutingTable(LOCAL, k=5)
        table.add_peer(FakePeer(addr(1)))
        table.add_peer(FakePeer(addr(2)))

        stats = table.get_stats()
        assert stats["total_peers"] == 2
        assert stats["non_empty_buckets"] == 2
        assert stats["total_buckets"] == 256
        assert stats["k"] == 5
        assert stats["bucket_sizes"] == {254: 1, 255: 1}
