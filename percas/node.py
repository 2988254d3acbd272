"""Identity of a cluster node and its persistent on-disk form."""

from __future__ import annotations

import json
import os
import uuid
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from percas.errors import InternalError

_U64_MAX = 2**64 - 1


def _require(data: Any, name: str) -> Any:
    if not isinstance(data, Mapping):
        raise ValueError(f"expected an object, got {data!r}")
    if name not in data:
        raise ValueError(f"missing field `{name}`")
    return data[name]


def _string(data: Any, name: str) -> str:
    value = _require(data, name)
    if not isinstance(value, str):
        raise ValueError(f"`{name}` must be a string, got {value!r}")
    return value


def _uuid(data: Any, name: str) -> uuid.UUID:
    value = _require(data, name)
    if isinstance(value, uuid.UUID):
        return value
    if not isinstance(value, str):
        raise ValueError(f"`{name}` must be a UUID string, got {value!r}")
    return uuid.UUID(value)


def _incarnation(data: Any) -> int:
    value = _require(data, "incarnation")
    if isinstance(value, bool) or not isinstance(value, int) or not 0 <= value <= _U64_MAX:
        raise ValueError(f"`incarnation` must be a non-negative integer, got {value!r}")
    return value


@dataclass
class PersistentNodeInfo:
    """The part of a node's identity kept on disk.

    Advertised addresses are left out, since they may change across restarts.
    """

    node_id: uuid.UUID
    node_name: str
    cluster_id: str
    incarnation: int

    @classmethod
    def from_node(cls, node: NodeInfo) -> PersistentNodeInfo:
        return cls(
            node_id=node.node_id,
            node_name=node.node_name,
            cluster_id=node.cluster_id,
            incarnation=node.incarnation,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "node_id": str(self.node_id),
            "node_name": self.node_name,
            "cluster_id": self.cluster_id,
            "incarnation": self.incarnation,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> PersistentNodeInfo:
        return cls(
            node_id=_uuid(data, "node_id"),
            node_name=_string(data, "node_name"),
            cluster_id=_string(data, "cluster_id"),
            incarnation=_incarnation(data),
        )

    @classmethod
    def load(cls, path: str | os.PathLike[str]) -> PersistentNodeInfo | None:
        """Read the node file; None when it does not exist."""
        path = Path(path)
        if not path.exists():
            return None
        try:
            return cls.from_dict(json.loads(path.read_text(encoding="utf-8")))
        except (OSError, ValueError) as exc:
            raise InternalError(f"failed to load node info from file: {path}") from exc

    def persist(self, path: str | os.PathLike[str]) -> None:
        Path(path).write_text(
            json.dumps(self.to_dict(), indent=2, ensure_ascii=False), encoding="utf-8"
        )


@dataclass
class NodeInfo:
    """A node as seen by its peers."""

    node_id: uuid.UUID
    node_name: str
    cluster_id: str
    advertise_addr: str
    advertise_peer_addr: str
    incarnation: int = 0

    @classmethod
    def init(
        cls,
        node_id: uuid.UUID | None,
        node_name: str,
        cluster_id: str,
        addr: str,
        peer_addr: str,
    ) -> NodeInfo:
        """A fresh node at incarnation 0, with a random id unless one is given."""
        return cls(
            node_id=uuid.uuid4() if node_id is None else node_id,
            node_name=node_name,
            cluster_id=cluster_id,
            advertise_addr=addr,
            advertise_peer_addr=peer_addr,
            incarnation=0,
        )

    def advance_incarnation(self) -> None:
        self.incarnation += 1

    @classmethod
    def load(
        cls,
        path: str | os.PathLike[str],
        advertise_addr: str,
        advertise_peer_addr: str,
    ) -> NodeInfo | None:
        """Restore a node from its file, taking the addresses it advertises now."""
        info = PersistentNodeInfo.load(path)
        if info is None:
            return None
        return cls(
            node_id=info.node_id,
            node_name=info.node_name,
            cluster_id=info.cluster_id,
            advertise_addr=advertise_addr,
            advertise_peer_addr=advertise_peer_addr,
            incarnation=info.incarnation,
        )

    def persist(self, path: str | os.PathLike[str]) -> None:
        PersistentNodeInfo.from_node(self).persist(path)

    def to_dict(self) -> dict[str, Any]:
        return {
            "node_id": str(self.node_id),
            "node_name": self.node_name,
            "cluster_id": self.cluster_id,
            "advertise_addr": self.advertise_addr,
            "advertise_peer_addr": self.advertise_peer_addr,
            "incarnation": self.incarnation,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> NodeInfo:
        return cls(
            node_id=_uuid(data, "node_id"),
            node_name=_string(data, "node_name"),
            cluster_id=_string(data, "cluster_id"),
            advertise_addr=_string(data, "advertise_addr"),
            advertise_peer_addr=_string(data, "advertise_peer_addr"),
            incarnation=_incarnation(data),
        )