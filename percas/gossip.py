"""Membership gossip between cluster nodes, carried over HTTP."""

from __future__ import annotations

import asyncio
import dataclasses
import logging
import random
import threading
import uuid
from collections.abc import Coroutine, Mapping
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Protocol
from urllib.parse import urljoin, urlsplit

import aiohttp
from aiohttp import web

from percas.config import node_file_path
from percas.errors import ClusterError, InternalError, TransportError
from percas.member import MemberState, MemberStatus, Membership
from percas.node import NodeInfo, PersistentNodeInfo
from percas.ring import HashRing

logger = logging.getLogger(__name__)

DEFAULT_PING_INTERVAL = 1.0
DEFAULT_SYNC_INTERVAL = 5.0
DEFAULT_RETRY_INTERVAL = 1.0
DEFAULT_RETRIES = 3
DEFAULT_REBUILD_RING_INTERVAL = 5.0
DEFAULT_MEMBER_DEADLINE = timedelta(seconds=30)


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Ping:
    """Probe a peer; it answers with an `Ack` carrying its own info."""

    info: NodeInfo


@dataclass
class Ack:
    """Answer to a `Ping`."""

    info: NodeInfo


@dataclass
class Sync:
    """Exchange of full membership lists."""

    members: list[MemberState] = field(default_factory=list)


Message = Ping | Ack | Sync


def encode_message(message: Message) -> dict[str, Any]:
    """The JSON form of a message, tagged by its kind."""
    match message:
        case Ping(info=info):
            return {"Ping": info.to_dict()}
        case Ack(info=info):
            return {"Ack": info.to_dict()}
        case Sync(members=members):
            return {"Sync": {"members": [member.to_dict() for member in members]}}
    raise TypeError(f"not a gossip message: {message!r}")


def decode_message(data: Any) -> Message:
    """Read a message from its JSON form; raises ValueError when malformed."""
    if not isinstance(data, Mapping) or len(data) != 1:
        raise ValueError(f"expected an object with one message kind, got {data!r}")
    ((tag, body),) = data.items()
    if tag == "Ping":
        return Ping(NodeInfo.from_dict(body))
    if tag == "Ack":
        return Ack(NodeInfo.from_dict(body))
    if tag == "Sync":
        if not isinstance(body, Mapping) or "members" not in body:
            raise ValueError("missing field `members`")
        members = body["members"]
        if not isinstance(members, list):
            raise ValueError(f"`members` must be a list, got {members!r}")
        return Sync([MemberState.from_dict(member) for member in members])
    raise ValueError(f"unknown variant `{tag}`, expected one of `Ping`, `Ack`, `Sync`")


class _Sender(Protocol):
    async def send(self, endpoint: str, message: Message) -> Message: ...


class Transport:
    """Posts gossip messages to peers and reads their replies."""

    def __init__(self) -> None:
        self._session: aiohttp.ClientSession | None = None

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
        return self._session

    async def send(self, endpoint: str, message: Message) -> Message:
        """Send `message` to the peer at `endpoint` ("host:port") and return its reply."""
        error = f"failed to send message to {endpoint}"
        base = f"http://{endpoint}"
        try:
            parts = urlsplit(base)
            parts.port  # validates the port
            if not parts.hostname:
                raise ValueError("missing host")
            url = urljoin(base, "gossip")
        except ValueError as exc:
            raise TransportError(error) from exc

        try:
            async with self._get_session().post(url, json=encode_message(message)) as resp:
                if not 200 <= resp.status < 300:
                    raise TransportError(error)
                data = await resp.json(content_type=None)
            return decode_message(data)
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as exc:
            raise TransportError(error) from exc

    async def close(self) -> None:
        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None


class GossipState:
    """This node's view of the cluster, kept current by gossip with peers."""

    def __init__(
        self,
        current_node: NodeInfo,
        initial_peers: list[str],
        directory: str | Path,
        *,
        transport: _Sender | None = None,
        retry_interval: float = DEFAULT_RETRY_INTERVAL,
        retries: int = DEFAULT_RETRIES,
    ) -> None:
        self._dir = Path(directory)
        self._initial_peers = list(initial_peers)
        self._current = dataclasses.replace(current_node)
        self._current_lock = threading.Lock()
        self._membership = Membership()
        self._membership_lock = threading.RLock()
        self._ring: HashRing[uuid.UUID] = HashRing()
        self._ring_lock = threading.Lock()
        self._transport: _Sender = transport if transport is not None else Transport()
        self._retry_interval = retry_interval
        self._retries = retries
        self.listen_addr: str | None = None

    def __repr__(self) -> str:
        return f"GossipState(current={self.current()!r})"

    def current(self) -> NodeInfo:
        with self._current_lock:
            return dataclasses.replace(self._current)

    def membership(self) -> Membership:
        with self._membership_lock:
            return self._membership.copy()

    def ring(self) -> HashRing[uuid.UUID]:
        with self._ring_lock:
            return self._ring

    def _refresh(self, info: NodeInfo, now: datetime) -> None:
        with self._membership_lock:
            existing = self._membership.members().get(info.node_id)
            if existing is not None and existing.info.incarnation < info.incarnation:
                self._membership.update_member(
                    MemberState(dataclasses.replace(info), MemberStatus.ALIVE, now)
                )

    def handle_message(self, message: Message) -> Message | None:
        """Apply a received message and return the reply to send back, if any."""
        logger.debug("received message: %r", message)
        now = _now()
        result: Message | None
        match message:
            case Ping(info=info):
                self._refresh(info, now)
                result = Ack(self.current())
            case Ack(info=info):
                self._refresh(info, now)
                result = None
            case Sync(members=members):
                with self._membership_lock:
                    snapshot = self._membership.copy().members()
                    for member in members:
                        existing = snapshot.get(member.info.node_id)
                        if existing is None or (
                            existing.heartbeat < member.heartbeat
                            and existing.info.incarnation < member.info.incarnation
                        ):
                            self._membership.update_member(member)
                    self._membership.update_member(
                        MemberState(self.current(), MemberStatus.ALIVE, now)
                    )
                    result = Sync(list(self._membership.copy().members().values()))
            case _:
                raise TypeError(f"not a gossip message: {message!r}")

        with self._membership_lock:
            dead = self._membership.is_dead(self.current().node_id)
        if dead:
            logger.info("current node is marked as dead, advancing incarnation")
            self.advance_incarnation()
        return result

    def advance_incarnation(self) -> None:
        """Bump this node's incarnation and persist it."""
        with self._current_lock:
            self._current.advance_incarnation()
            PersistentNodeInfo.from_node(self._current).persist(node_file_path(self._dir))

    def remove_dead_members(self) -> list[NodeInfo]:
        """Drop members dead for longer than the deadline; returns those dropped."""
        now = _now()
        with self._membership_lock:
            dead = [
                dataclasses.replace(member.info)
                for member in self._membership.members().values()
                if member.status is MemberStatus.DEAD
                and member.heartbeat + DEFAULT_MEMBER_DEADLINE < now
            ]
            for node in dead:
                self._membership.remove_member(node.node_id)
        return dead

    def rebuild_ring(self) -> None:
        """Mark this node alive and rebuild the ring from all known members."""
        with self._membership_lock:
            self._membership.update_member(
                MemberState(self.current(), MemberStatus.ALIVE, _now())
            )
            ring = HashRing.from_nodes(self._membership.members().keys())
            with self._ring_lock:
                self._ring = ring

    def mark_dead(self, peer: NodeInfo) -> None:
        """Mark a known peer dead, keeping its last heartbeat; unknown peers are ignored."""
        with self._membership_lock:
            existing = self._membership.members().get(peer.node_id)
            if existing is not None:
                self._membership.update_member(
                    MemberState(dataclasses.replace(peer), MemberStatus.DEAD, existing.heartbeat)
                )

    async def _send_with_retry(self, endpoint: str, message: Message, kind: str) -> Message | None:
        for attempt in range(self._retries + 1):
            try:
                return await self._transport.send(endpoint, message)
            except ClusterError as exc:
                logger.error("failed to send %s message: %s", kind, exc)
            if attempt < self._retries:
                await asyncio.sleep(self._retry_interval)
        return None

    async def ping(self, peer: NodeInfo) -> None:
        """Ping a peer; mark it dead unless it acknowledges."""
        reply = await self._send_with_retry(peer.advertise_peer_addr, Ping(self.current()), "ping")
        if isinstance(reply, Ack):
            self.handle_message(reply)
        else:
            self.mark_dead(peer)

    async def sync(self, peer: NodeInfo) -> None:
        """Exchange membership with a peer; mark it dead unless it answers in kind."""
        message = Sync(list(self.membership().members().values()))
        reply = await self._send_with_retry(peer.advertise_peer_addr, message, "sync")
        if isinstance(reply, Sync):
            self.handle_message(reply)
        else:
            self.mark_dead(peer)

    async def fast_bootstrap(self) -> None:
        """Ping, then sync with, every initial peer, and rebuild the ring."""
        for peer in self._initial_peers:
            reply = await self._send_with_retry(peer, Ping(self.current()), "ping")
            if isinstance(reply, Ack):
                self.handle_message(reply)
        for peer in self._initial_peers:
            message = Sync(list(self.membership().members().values()))
            reply = await self._send_with_retry(peer, message, "sync")
            if isinstance(reply, Sync):
                self.handle_message(reply)
        self.rebuild_ring()

    def _pick_member(self) -> MemberState | None:
        members = list(self.membership().members().values())
        return random.choice(members) if members else None

    async def _probe_loop(self, interval: float, action: str) -> None:
        while True:
            await asyncio.sleep(interval)
            member = self._pick_member()
            if member is None:
                logger.error("no members found in the cluster")
                await self.fast_bootstrap()
                continue
            if member.status is MemberStatus.DEAD:
                logger.debug("skipping dead member: %r", member)
                continue
            logger.debug("%s member: %r", action, member)
            if action == "pinging":
                await self.ping(member.info)
            else:
                await self.sync(member.info)

    async def _rebuild_ring_loop(self) -> None:
        while True:
            await asyncio.sleep(DEFAULT_REBUILD_RING_INTERVAL)
            self.rebuild_ring()

    async def _remove_dead_loop(self) -> None:
        while True:
            await asyncio.sleep(DEFAULT_MEMBER_DEADLINE.total_seconds())
            dead = self.remove_dead_members()
            if dead:
                logger.info("removed dead members: %r", dead)
                self.rebuild_ring()

    @staticmethod
    async def _until_shutdown(
        shutdown: asyncio.Event, work: Coroutine[Any, Any, None], name: str
    ) -> None:
        work_task = asyncio.ensure_future(work)
        waiter = asyncio.ensure_future(shutdown.wait())
        try:
            done, _ = await asyncio.wait({work_task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in (work_task, waiter):
                if not task.done():
                    task.cancel()
            await asyncio.gather(work_task, waiter, return_exceptions=True)
        if work_task in done and not work_task.cancelled():
            work_task.result()
            return
        logger.info("gossip %s task is shutting down", name)

    @staticmethod
    async def _serve(runner: web.AppRunner, shutdown: asyncio.Event, addr: str) -> None:
        logger.info("gossip proxy has started on [%s]", addr)
        try:
            await shutdown.wait()
            logger.info("gossip proxy is closing")
        finally:
            await runner.cleanup()

    async def start(self, shutdown: asyncio.Event, host: str, port: int) -> list[asyncio.Task[None]]:
        """Serve gossip on host:port, bootstrap, and start the periodic tasks.

        Every returned task finishes once `shutdown` is set.
        """
        runner = web.AppRunner(make_app(self))
        await runner.setup()
        try:
            site = web.TCPSite(runner, host, port)
            await site.start()
        except OSError as exc:
            await runner.cleanup()
            raise InternalError("failed to run gossip proxy") from exc
        bound = runner.addresses[0]
        bound_host = f"[{bound[0]}]" if ":" in str(bound[0]) else str(bound[0])
        self.listen_addr = f"{bound_host}:{bound[1]}"

        tasks: list[asyncio.Task[None]] = [
            asyncio.create_task(self._serve(runner, shutdown, self.listen_addr))
        ]
        try:
            with self._membership_lock:
                self._membership.update_member(
                    MemberState(self.current(), MemberStatus.ALIVE, _now())
                )
            await self.fast_bootstrap()
            if not self.membership().members():
                raise InternalError("failed to bootstrap the cluster, no initial peer available")
        except BaseException:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise

        for work, name in (
            (self._probe_loop(DEFAULT_PING_INTERVAL, "pinging"), "ping"),
            (self._probe_loop(DEFAULT_SYNC_INTERVAL, "syncing"), "anti-entropy"),
            (self._rebuild_ring_loop(), "rebuild ring"),
            (self._remove_dead_loop(), "remove dead members"),
        ):
            tasks.append(asyncio.create_task(self._until_shutdown(shutdown, work, name)))
        return tasks


def make_app(state: GossipState) -> web.Application:
    """The HTTP application peers talk to: POST /gossip and GET /members."""

    async def gossip(request: web.Request) -> web.StreamResponse:
        try:
            message = decode_message(await request.json())
        except ValueError as exc:
            raise web.HTTPBadRequest(text=str(exc)) from exc
        logger.debug("received message: %r", message)
        response = state.handle_message(message)
        if response is None:
            return web.Response()
        return web.json_response(encode_message(response))

    async def list_members(request: web.Request) -> web.StreamResponse:
        members = state.membership().members()
        return web.json_response({str(node_id): m.to_dict() for node_id, m in members.items()})

    app = web.Application()
    app.router.add_post("/gossip", gossip)
    app.router.add_get("/members", list_members)
    return app