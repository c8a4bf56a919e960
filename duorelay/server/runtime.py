from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from http import HTTPStatus
from typing import Any, Dict, Optional, Union

import websockets
from websockets.asyncio.server import Server, ServerConnection
from websockets.http11 import Request, Response

from duorelay.core import proto
from duorelay.core.errors import InvalidPayload, SlotsFull, StorageError, TransportSendFailure
from duorelay.core.flush import Flusher
from duorelay.core.relay import RelayEngine
from duorelay.core.slots import SlotRegistry
from duorelay.core.store import MessageStore
from duorelay.core.types import Identity

log = logging.getLogger("duorelay.server.runtime")

PLAIN_HTTP_REPLY = "WebSocket server is running. Connect via WebSocket protocol.\n"


@dataclass(slots=True, eq=False)
class Connection:
    websocket: ServerConnection
    identity: Optional[Identity] = None
    send_lock: asyncio.Lock = field(default_factory=asyncio.Lock)

    async def send(self, frame: Dict[str, Any]) -> None:
        text = proto.encode(frame)
        try:
            async with self.send_lock:
                await self.websocket.send(text)
        except websockets.ConnectionClosed as exc:
            raise TransportSendFailure(str(exc)) from exc

    async def close(self) -> None:
        await self.websocket.close()


class RelayServer:
    """Two-slot relay: binds connections, relays messages, flushes inboxes."""

    def __init__(self, config: Dict[str, Any], store: Optional[MessageStore] = None) -> None:
        self.cfg = config
        server_cfg = config.get("server", {})
        self.listen_host = str(server_cfg.get("host", "0.0.0.0"))
        self.listen_port = int(server_cfg.get("port", 8080))

        self.store = store or MessageStore(config.get("store", {}).get("path", ":memory:"))
        self.registry: SlotRegistry[Connection] = SlotRegistry()
        self.engine = RelayEngine(self.registry, self.store)
        self.flusher = Flusher(self.registry, self.store)

        self._ws_server: Optional[Server] = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        await self.store.open()
        self._ws_server = await websockets.serve(
            self.handle_connection,
            self.listen_host,
            self.listen_port,
            process_request=self._process_request,
        )
        log.info("Relay listening on ws://%s:%d", self.listen_host, self.bound_port)

    async def stop(self) -> None:
        if self._ws_server is not None:
            self._ws_server.close()
            await self._ws_server.wait_closed()
            self._ws_server = None
        await self.store.close()

    @property
    def bound_port(self) -> int:
        """Actual listening port (differs from the configured one when that is 0)."""

        if self._ws_server is None:
            return self.listen_port
        return self._ws_server.sockets[0].getsockname()[1]

    # ------------------------------------------------------------------
    # Connection handling
    # ------------------------------------------------------------------

    async def handle_connection(self, websocket: ServerConnection) -> None:
        conn = Connection(websocket=websocket)
        remote = self._fmt_remote(websocket)

        try:
            identity = await self.registry.try_bind(conn)
        except SlotsFull as exc:
            log.info("Connection refused from %s: no slots available", remote)
            await self._send(conn, proto.error_frame(str(exc)))
            await conn.close()
            return

        conn.identity = identity
        log.info("New connection from %s assigned as %s", remote, identity.value)
        try:
            # No await between binding and taking the lock: a relay either
            # snapshotted before the bind (and its row is flushed below) or
            # waits until the inbox is drained.
            async with self.registry.delivery_lock(identity):
                await self._on_join(conn, identity)
            async for raw in websocket:
                await self._on_message(conn, identity, raw)
        except websockets.ConnectionClosedError as exc:
            log.warning("Transport error for %s: %s", identity.value, exc)
        finally:
            await self._on_close(conn, identity)

    async def _on_join(self, conn: Connection, identity: Identity) -> None:
        await self._send(conn, proto.system_frame(f"Welcome to the chat! You are {identity.value}"))

        peer = self.registry.peer_of(identity)
        peer_conn = self.registry.connection_for(peer)
        if peer_conn is not None:
            await self._send(peer_conn, proto.system_frame(f"{identity.value} has joined the chat"))
            await self._send(conn, proto.system_frame(f"{peer.value} is already in the chat"))

        await self.flusher.drain(identity)

    async def _on_message(self, conn: Connection, identity: Identity, raw: Union[str, bytes]) -> None:
        try:
            content = proto.parse_inbound(raw)
            await self.engine.relay(identity, content)
        except InvalidPayload:
            log.warning("Received invalid message structure from %s", identity.value)
            await self._send(conn, proto.error_frame("Invalid message format"))
        except StorageError:
            log.exception("Error processing message from %s", identity.value)
            await self._send(conn, proto.error_frame("Failed to process message"))

    async def _on_close(self, conn: Connection, identity: Identity) -> None:
        ws = conn.websocket
        log.info("%s disconnected. Code: %s, Reason: %s", identity.value, ws.close_code, ws.close_reason)
        if not await self.registry.unbind(identity, conn):
            return
        peer_conn = self.registry.connection_for(self.registry.peer_of(identity))
        if peer_conn is not None:
            await self._send(peer_conn, proto.system_frame(f"{identity.value} has left the chat"))

    # ------------------------------------------------------------------
    # Utilities
    # ------------------------------------------------------------------

    @staticmethod
    async def _send(conn: Connection, frame: Dict[str, Any]) -> None:
        try:
            await conn.send(frame)
        except TransportSendFailure as exc:
            who = conn.identity.value if conn.identity else "unassigned connection"
            log.debug("Could not send %s frame to %s: %s", frame.get("type"), who, exc)

    @staticmethod
    def _process_request(connection: ServerConnection, request: Request) -> Optional[Response]:
        if request.headers.get("Upgrade", "").lower() != "websocket":
            return connection.respond(HTTPStatus.OK, PLAIN_HTTP_REPLY)
        return None

    @staticmethod
    def _fmt_remote(websocket: ServerConnection) -> str:
        peer = websocket.remote_address
        if isinstance(peer, tuple):
            return f"{peer[0]}:{peer[1]}"
        return str(peer)


__all__ = ["RelayServer", "Connection"]
