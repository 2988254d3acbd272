"""A consistent hash ring with virtual nodes, hashed with SHA-256."""

from __future__ import annotations

import bisect
import hashlib
import uuid
from collections.abc import Callable, Iterable
from itertools import chain
from typing import Any, Generic, TypeVar

DEFAULT_REPLICA_COUNT = 256

T = TypeVar("T")


def _as_bytes(value: Any) -> bytes:
    if isinstance(value, (bytes, bytearray, memoryview)):
        return bytes(value)
    if isinstance(value, str):
        return value.encode("utf-8")
    if isinstance(value, uuid.UUID):
        return value.bytes
    raise TypeError(f"cannot hash {type(value).__name__} on the ring")


def _digest(*parts: bytes) -> int:
    hasher = hashlib.sha256()
    for part in parts:
        hasher.update(part)
    return int.from_bytes(hasher.digest()[:8], "big")


class HashRing(Generic[T]):
    """Maps keys to nodes; each node is placed `replica_count` times on the ring.

    >>> ring = HashRing.from_nodes(["node-1", "node-2", "node-3"])
    >>> ring.lookup("key1")
    'node-1'
    """

    def __init__(self, replica_count: int = DEFAULT_REPLICA_COUNT) -> None:
        self._replica_count = replica_count
        self._digests: list[int] = []
        self._nodes: dict[int, list[T]] = {}

    @classmethod
    def from_nodes(cls, nodes: Iterable[T]) -> HashRing[T]:
        ring: HashRing[T] = cls()
        for node in nodes:
            ring.add_node(node)
        return ring

    def __repr__(self) -> str:
        return f"HashRing(replica_count={self._replica_count}, nodes={self.nodes()!r})"

    def replica_count(self) -> int:
        return self._replica_count

    def nodes(self) -> dict[int, tuple[T, ...]]:
        """Ring positions in order, each with the nodes placed there."""
        return {digest: tuple(self._nodes[digest]) for digest in self._digests}

    def add_node(self, node: T) -> None:
        raw = _as_bytes(node)
        for replica in range(self._replica_count):
            digest = _digest(raw, replica.to_bytes(8, "big"))
            bucket = self._nodes.get(digest)
            if bucket is None:
                self._nodes[digest] = [node]
                bisect.insort(self._digests, digest)
            elif node not in bucket:
                bisect.insort(bucket, node)

    def lookup(self, key: str | bytes) -> T | None:
        """The node responsible for `key`, or None on an empty ring."""
        if not self._digests:
            return None
        index = bisect.bisect_left(self._digests, _digest(_as_bytes(key)))
        if index == len(self._digests):
            index = 0
        return self._nodes[self._digests[index]][0]

    def lookup_until(self, key: str | bytes, predicate: Callable[[T], bool]) -> T | None:
        """The first node from `key`'s position onwards that satisfies `predicate`."""
        digest = _digest(_as_bytes(key))
        start = bisect.bisect_left(self._digests, digest)
        wrap_end = bisect.bisect_right(self._digests, digest)
        for position in chain(self._digests[start:], self._digests[:wrap_end]):
            for node in self._nodes[position]:
                if predicate(node):
                    return node
        return None