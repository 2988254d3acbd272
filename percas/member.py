"""Cluster membership: each member's state and the rules for merging updates."""

from __future__ import annotations

import copy
import dataclasses
import logging
import re
import uuid
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from percas.node import NodeInfo

logger = logging.getLogger(__name__)

_TIMESTAMP = re.compile(
    r"(?P<base>\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2})(?:\.(?P<frac>\d+))?"
    r"(?P<tz>Z|[+-]\d{2}:\d{2})",
    re.IGNORECASE,
)


def _to_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _format_timestamp(value: datetime) -> str:
    value = _to_utc(value)
    text = value.strftime("%Y-%m-%dT%H:%M:%S")
    if value.microsecond:
        text += f".{value.microsecond:06d}".rstrip("0")
    return text + "Z"


def _parse_timestamp(text: Any) -> datetime:
    if not isinstance(text, str):
        raise ValueError(f"expected a timestamp string, got {text!r}")
    match = _TIMESTAMP.fullmatch(text.strip())
    if match is None:
        raise ValueError(f"invalid timestamp {text!r}")
    frac = (match.group("frac") or "")[:6]
    tz = match.group("tz")
    tz = "+00:00" if tz.upper() == "Z" else tz
    iso = match.group("base") + (f".{frac.ljust(6, '0')}" if frac else "") + tz
    return _to_utc(datetime.fromisoformat(iso))


class MemberStatus(Enum):
    ALIVE = "Alive"
    DEAD = "Dead"

    def downgrade_to(self, other: MemberStatus) -> MemberStatus:
        """The status after applying `other`; alive stays alive only when both are."""
        if self is MemberStatus.ALIVE and other is MemberStatus.ALIVE:
            return self
        return other


@dataclass
class MemberState:
    info: NodeInfo
    status: MemberStatus
    heartbeat: datetime

    def __post_init__(self) -> None:
        self.status = MemberStatus(self.status)
        self.heartbeat = _to_utc(self.heartbeat)

    def to_dict(self) -> dict[str, Any]:
        return {
            "info": self.info.to_dict(),
            "status": self.status.value,
            "heartbeat": _format_timestamp(self.heartbeat),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> MemberState:
        if not isinstance(data, Mapping):
            raise ValueError(f"expected an object, got {data!r}")
        for name in ("info", "status", "heartbeat"):
            if name not in data:
                raise ValueError(f"missing field `{name}`")
        try:
            status = MemberStatus(data["status"])
        except ValueError:
            raise ValueError(
                f"unknown variant `{data['status']}`, expected `Alive` or `Dead`"
            ) from None
        return cls(
            info=NodeInfo.from_dict(data["info"]),
            status=status,
            heartbeat=_parse_timestamp(data["heartbeat"]),
        )


def _clone(member: MemberState) -> MemberState:
    return dataclasses.replace(member, info=dataclasses.replace(member.info))


class Membership:
    """All known members keyed by node id."""

    def __init__(self) -> None:
        self._members: dict[uuid.UUID, MemberState] = {}

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Membership):
            return NotImplemented
        return self._members == other._members

    def __repr__(self) -> str:
        return f"Membership(members={self.members()!r})"

    def members(self) -> dict[uuid.UUID, MemberState]:
        """The members ordered by node id."""
        return dict(sorted(self._members.items()))

    def is_dead(self, node_id: uuid.UUID) -> bool:
        member = self._members.get(node_id)
        return member is not None and member.status is MemberStatus.DEAD

    def update_member(self, member: MemberState) -> None:
        """Merge a member's state: newer incarnations win, equal ones only downgrade."""
        current = self._members.get(member.info.node_id)
        if current is None:
            logger.info("adding new member: %r", member)
            self._members[member.info.node_id] = _clone(member)
            return
        if current.info.incarnation < member.info.incarnation:
            logger.info(
                "advancing member incarnation from [%d] to [%d]: %r",
                current.info.incarnation,
                member.info.incarnation,
                member,
            )
            self._members[member.info.node_id] = _clone(member)
            return
        if current.info.incarnation > member.info.incarnation:
            return
        current.status = current.status.downgrade_to(member.status)
        if member.status is MemberStatus.DEAD:
            logger.info("member confirmed dead: %r", member)
        current.heartbeat = max(current.heartbeat, member.heartbeat)

    def remove_member(self, node_id: uuid.UUID) -> None:
        logger.info("removing member: %s", node_id)
        self._members.pop(node_id, None)

    def copy(self) -> Membership:
        """An independent copy of this membership."""
        result = Membership()
        result._members = copy.deepcopy(self._members)
        return result