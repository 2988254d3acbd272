import uuid

import pytest

from percas.ring import HashRing


def make_ring(nodes, replica_count):
    ring = HashRing(replica_count)
    for node in nodes:
        ring.add_node(node)
    return ring


def test_hash_ring_three_replicas():
    ring = make_ring(["node1", "node2", "node3"], 3)
    assert ring.replica_count() == 3
    assert ring.nodes() == {
        1130331173203730818: ("node1",),
        3453462956149404857: ("node3",),
        4664643935122212079: ("node1",),
        4945359727197601621: ("node2",),
        8109777462452160152: ("node1",),
        9540586358148544740: ("node2",),
        15364601984093359477: ("node3",),
        16459957557864277864: ("node2",),
        17005984661365267147: ("node3",),
    }
    assert list(ring.nodes()) == sorted(ring.nodes())
    assert ring.lookup("key1") == "node2"
    assert ring.lookup("key2") == "node3"
    assert ring.lookup("key3") == "node1"


def test_hash_ring_one_replica():
    ring = make_ring(["node1", "node2", "node3"], 1)
    assert ring.nodes() == {
        4664643935122212079: ("node1",),
        9540586358148544740: ("node2",),
        15364601984093359477: ("node3",),
    }
    assert ring.lookup("key1") == "node2"
    assert ring.lookup("key2") == "node3"
    assert ring.lookup("key3") == "node1"


def test_from_nodes_default_replicas():
    ring = HashRing.from_nodes(["node-1", "node-2", "node-3"])
    assert ring.replica_count() == 256
    assert ring.lookup("key1") == "node-1"
    assert ring.lookup("key2") == "node-3"
    assert ring.lookup("key3") == "node-3"


def test_empty_ring_has_no_owner():
    ring = HashRing()
    assert ring.lookup("key1") is None
    assert ring.lookup_until("key1", lambda node: True) is None


def test_lookup_until_accepting_everything_matches_lookup():
    ring = make_ring(["node1", "node2", "node3"], 3)
    for key in ("key1", "key2", "key3", "other"):
        assert ring.lookup_until(key, lambda node: True) == ring.lookup(key)


def test_lookup_until_skips_rejected_nodes():
    ring = make_ring(["node1", "node2", "node3"], 1)
    assert ring.lookup_until("key1", lambda node: node != "node2") == "node3"
    assert ring.lookup_until("key2", lambda node: node != "node3") == "node1"
    assert ring.lookup_until("key1", lambda node: False) is None


def test_adding_same_node_twice_is_idempotent():
    ring = make_ring(["node1"], 4)
    before = ring.nodes()
    ring.add_node("node1")
    assert ring.nodes() == before
    assert len(before) == 4


def test_uuid_nodes():
    ids = [uuid.UUID(int=n) for n in (1, 2, 3)]
    ring = HashRing.from_nodes(ids)
    assert ring.lookup("some-key") in ids
    assert len(ring.nodes()) == 3 * 256


def test_unhashable_node_type():
    with pytest.raises(TypeError):
        HashRing(1).add_node(12345)