"""Routes keys to the cluster node that owns them."""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass

from percas.gossip import GossipState
from percas.member import MemberStatus

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Local:
    """The key is served by this node."""


@dataclass(frozen=True)
class RemoteAddr:
    """The key is served by the node advertising `addr`."""

    addr: str


RouteDest = Local | RemoteAddr


class Proxy:
    """Chooses where a key is served, using the gossip ring and membership."""

    def __init__(self, gossip: GossipState) -> None:
        self._gossip = gossip

    def __repr__(self) -> str:
        return f"Proxy({self._gossip!r})"

    def route(self, key: str | bytes) -> RouteDest:
        """The first alive member clockwise from `key`, or Local when there is none."""
        ring = self._gossip.ring()
        members = self._gossip.membership().members()

        def alive(node_id: uuid.UUID) -> bool:
            member = members.get(node_id)
            return member is not None and member.status is MemberStatus.ALIVE

        node_id = ring.lookup_until(key, alive)
        if node_id is None:
            logger.debug("no target found for key: [%s], current ring: %r", key, ring)
            return Local()
        target = members.get(node_id)
        if target is None or target.info.node_id == self._gossip.current().node_id:
            return Local()
        return RemoteAddr(target.info.advertise_addr)