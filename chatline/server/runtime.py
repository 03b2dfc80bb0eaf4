from __future__ import annotations

import asyncio
import logging
import uuid
from typing import Any, Dict, Optional, Tuple

import websockets

from chatline.core.errors import PresenceReconciliationFailure
from chatline.core.lifecycle import ConnectionLifecycleManager
from chatline.core.membership import MembershipResolver
from chatline.core.presence import PresenceLedger
from chatline.core.registry import Connection, SessionRegistry
from chatline.core.router import EventRouter
from chatline.core.store import ChatStore
from chatline.utils.canonical import dumps_text

log = logging.getLogger("chatline.server.runtime")


class WebSocketLink:
    """Per-connection outbound queue; a slow socket only ever backs up itself."""

    def __init__(self, websocket, maxsize: int = 256) -> None:
        self.websocket = websocket
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self.dropped = 0

    def push(self, frame: Dict[str, Any]) -> bool:
        try:
            self.queue.put_nowait(frame)
        except asyncio.QueueFull:
            self.dropped += 1
            log.warning("Outbound queue full for %s; dropped %s", _fmt_remote(self.websocket), frame.get("type"))
            return False
        return True

    async def pump(self) -> None:
        while True:
            frame = await self.queue.get()
            try:
                await self.websocket.send(dumps_text(frame))
            except websockets.ConnectionClosed:
                return


class ServerRuntime:
    """Websocket front end wiring the presence & fan-out core together."""

    def __init__(self, config: Optional[Dict[str, Any]] = None) -> None:
        config = config or {}
        self.cfg = config
        self.server_id = str(config.get("server_id") or uuid.uuid4())
        self.listen_host, self.listen_port = self._parse_listen(config.get("listen", "0.0.0.0:7001"))
        self.db_path = config.get("db_path", "chatline.db")
        self.heartbeat_secs = float(config.get("heartbeat_secs", 30))
        self.presence_window_secs = float(config.get("presence_window_secs", 300))
        self.send_queue_size = int(config.get("send_queue_size", 256))
        self.roster_ttl_secs = float(config.get("roster_ttl_secs", 30))

        self.store = ChatStore(self.db_path)
        self.registry = SessionRegistry()
        self.resolver = MembershipResolver(self.store, roster_ttl=self.roster_ttl_secs)
        self.ledger = PresenceLedger(self.store, server_id=self.server_id, window_secs=self.presence_window_secs)
        self.lifecycle = ConnectionLifecycleManager(self.store, self.registry, self.resolver, self.ledger)
        self.router = EventRouter(self.store, self.registry, self.resolver, self.ledger, self.lifecycle)

        self._ws_server = None
        self._tasks: list[asyncio.Task] = []

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        await self.store.open()
        try:
            await self.ledger.purge_own()
        except PresenceReconciliationFailure:
            log.warning("Could not purge stale presence rows at startup", exc_info=True)

        self._ws_server = await websockets.serve(self._handle_connection, self.listen_host, self.listen_port)
        log.info("chatline server %s listening on ws://%s:%d", self.server_id, self.listen_host, self.port)

        self._tasks.append(asyncio.create_task(self._heartbeat_loop(), name="presence-heartbeat"))

    async def stop(self) -> None:
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()

        if self._ws_server is not None:
            # closing the server closes every socket; each handler runs its disconnect
            self._ws_server.close()
            await self._ws_server.wait_closed()
            self._ws_server = None

        await self.store.close()

    @property
    def port(self) -> int:
        if self._ws_server is None:
            return self.listen_port
        return self._ws_server.sockets[0].getsockname()[1]

    # ------------------------------------------------------------------
    # Connection handling
    # ------------------------------------------------------------------

    async def _handle_connection(self, websocket) -> None:
        link = WebSocketLink(websocket, maxsize=self.send_queue_size)
        conn = self.lifecycle.open(link.push)
        inbox: asyncio.Queue = asyncio.Queue(maxsize=self.send_queue_size)
        writer = asyncio.create_task(link.pump(), name=f"send-{conn.connection_id}")
        worker = asyncio.create_task(self._process(conn, inbox), name=f"recv-{conn.connection_id}")
        log.debug("Accepted connection %s from %s", conn.connection_id, _fmt_remote(websocket))
        try:
            async for raw in websocket:
                await inbox.put(raw)
        except websockets.ConnectionClosed:
            pass
        finally:
            await self.lifecycle.disconnect(conn)
            await self._drain_worker(inbox, worker)
            writer.cancel()
            await asyncio.gather(writer, return_exceptions=True)

    async def _process(self, conn: Connection, inbox: asyncio.Queue) -> None:
        while True:
            raw = await inbox.get()
            if raw is None or conn.closed:
                return
            try:
                await self.router.handle_raw(conn, raw)
            except Exception:
                log.exception("Unhandled error processing frame on %s", conn.connection_id)

    async def _drain_worker(self, inbox: asyncio.Queue, worker: asyncio.Task) -> None:
        # the worker stops at the next frame boundary; an in-flight event still completes
        try:
            inbox.put_nowait(None)
        except asyncio.QueueFull:
            pass
        await asyncio.gather(worker, return_exceptions=True)

    # ------------------------------------------------------------------
    # Presence upkeep
    # ------------------------------------------------------------------

    async def _heartbeat_loop(self) -> None:
        while True:
            await asyncio.sleep(max(1.0, self.heartbeat_secs))
            await self.refresh_presence()

    async def refresh_presence(self) -> None:
        live = [(c.connection_id, c.user_id) for c in await self.registry.live_connections() if c.user_id is not None]
        try:
            await self.ledger.refresh(live)
            # a connection that closed mid-refresh must not keep the row just rewritten
            for cid, _ in live:
                if await self.registry.get(cid) is None:
                    await self.ledger.drop(cid)
            await self.ledger.sweep()
        except PresenceReconciliationFailure:
            log.warning("Presence refresh failed", exc_info=True)

    # ------------------------------------------------------------------
    # Utilities
    # ------------------------------------------------------------------

    @staticmethod
    def _parse_listen(value: str) -> Tuple[str, int]:
        host, port = value.rsplit(":", 1)
        return host.strip("[]"), int(port)


def _fmt_remote(websocket) -> str:
    peer = getattr(websocket, "remote_address", None)
    if isinstance(peer, tuple):
        return f"{peer[0]}:{peer[1]}"
    return str(peer)


__all__ = ["ServerRuntime", "WebSocketLink"]
