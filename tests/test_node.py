import json
import uuid

import pytest

from percas.errors import InternalError
from percas.node import NodeInfo, PersistentNodeInfo

NODE_ID = uuid.UUID(int=42)


def make_node(incarnation=0):
    return NodeInfo(
        node_id=NODE_ID,
        node_name="percas",
        cluster_id="percas-cluster",
        advertise_addr="127.0.0.1:7654",
        advertise_peer_addr="127.0.0.1:7655",
        incarnation=incarnation,
    )


def test_init_generates_random_v4_id_when_none_given():
    node = NodeInfo.init(None, "percas", "percas-cluster", "a:1", "a:2")
    other = NodeInfo.init(None, "percas", "percas-cluster", "a:1", "a:2")
    assert node.node_id.version == 4
    assert node.node_id != other.node_id
    assert node.incarnation == 0
    assert node.advertise_addr == "a:1"
    assert node.advertise_peer_addr == "a:2"


def test_init_keeps_given_id():
    node = NodeInfo.init(NODE_ID, "percas", "c", "a:1", "a:2")
    assert node.node_id == NODE_ID


def test_advance_incarnation_increments():
    node = make_node()
    node.advance_incarnation()
    node.advance_incarnation()
    assert node.incarnation == 2


def test_persist_omits_advertised_addresses(tmp_path):
    path = tmp_path / "node.json"
    make_node(incarnation=3).persist(path)
    stored = json.loads(path.read_text())
    assert list(stored) == ["node_id", "node_name", "cluster_id", "incarnation"]
    assert stored["node_id"] == str(NODE_ID)
    assert stored["incarnation"] == 3


def test_load_round_trip_replaces_addresses(tmp_path):
    path = tmp_path / "node.json"
    make_node(incarnation=5).persist(path)
    loaded = NodeInfo.load(path, "10.0.0.9:7654", "10.0.0.9:7655")
    assert loaded == NodeInfo(
        node_id=NODE_ID,
        node_name="percas",
        cluster_id="percas-cluster",
        advertise_addr="10.0.0.9:7654",
        advertise_peer_addr="10.0.0.9:7655",
        incarnation=5,
    )


def test_load_missing_file_returns_none(tmp_path):
    assert NodeInfo.load(tmp_path / "absent.json", "a", "b") is None
    assert PersistentNodeInfo.load(tmp_path / "absent.json") is None


def test_load_corrupt_file_raises_internal_error(tmp_path):
    path = tmp_path / "node.json"
    path.write_text("{not json")
    with pytest.raises(InternalError, match="failed to load node info from file"):
        PersistentNodeInfo.load(path)


def test_load_with_missing_field_raises_internal_error(tmp_path):
    path = tmp_path / "node.json"
    path.write_text(json.dumps({"node_id": str(NODE_ID), "node_name": "x"}))
    with pytest.raises(InternalError):
        NodeInfo.load(path, "a", "b")


def test_persistent_from_node_matches_fields():
    node = make_node(incarnation=7)
    info = PersistentNodeInfo.from_node(node)
    assert info == PersistentNodeInfo(NODE_ID, "percas", "percas-cluster", 7)


def test_node_dict_round_trip():
    node = make_node(incarnation=9)
    assert NodeInfo.from_dict(node.to_dict()) == node
    assert node.to_dict()["node_id"] == str(NODE_ID)


def test_from_dict_rejects_negative_incarnation():
    data = make_node().to_dict()
    data["incarnation"] = -1
    with pytest.raises(ValueError):
        NodeInfo.from_dict(data)


def test_from_dict_rejects_bad_uuid():
    data = make_node().to_dict()
    data["node_id"] = "not-a-uuid"
    with pytest.raises(ValueError):
        NodeInfo.from_dict(data)