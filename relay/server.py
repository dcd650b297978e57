from __future__ import annotations

import asyncio
import itertools
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Optional

from websockets.asyncio.server import ServerConnection, serve
from websockets.exceptions import ConnectionClosed

from dealer.errors import TableError
from dealer.models import PLAYERS, ROOMS, SessionConfig
from dealer.registry import PlayerRegistry
from dealer.store import MemoryStore, Subscription

LOGGER = logging.getLogger("table_relay")

# RelayServer puts the shared store on the network: every device (host display
# or player phone) talks to the same MemoryStore through request frames and
# receives its change feed as push frames. Game rules stay on the devices.

ROLES = ("host", "player")


@dataclass
class ClientSession:
    client_id: str
    # Informational only: shows up in logs and the welcome frame, never gates an op.
    role: str
    websocket: ServerConnection
    subscriptions: Dict[str, Subscription] = field(default_factory=dict)
    pumps: Dict[str, asyncio.Task] = field(default_factory=dict)


Handler = Callable[[ClientSession, Dict[str, Any]], Awaitable[Any]]


class RelayServer:
    def __init__(self, config: SessionConfig, store: Optional[MemoryStore] = None) -> None:
        self.config = config
        self.store = store or MemoryStore()
        self.registry = PlayerRegistry(self.store, config)
        self.sessions: Dict[str, ClientSession] = {}
        self._client_ids = itertools.count(1)
        self._handlers: Dict[str, Handler] = {
            "insert": self._op_insert,
            "update": self._op_update,
            "delete": self._op_delete,
            "get": self._op_get,
            "select": self._op_select,
            "subscribe": self._op_subscribe,
            "unsubscribe": self._op_unsubscribe,
            "join": self._op_join,
            "resume": self._op_resume,
            "leave": self._op_leave,
        }

    async def start(self, host: Optional[str] = None, port: Optional[int] = None) -> None:
        host = host or self.config.host
        port = self.config.port if port is None else port
        async with serve(self._handle_connection, host, port):
            LOGGER.info("Table relay listening on %s:%s", host, port)
            await asyncio.Future()

    async def _handle_connection(self, websocket: ServerConnection) -> None:
        # First message must be "hello" so we know who we are talking to.
        hello = await self._read_message(websocket)
        if hello is None or hello.get("type") != "hello":
            await self._send_error(websocket, code="BAD_HELLO", msg="Expected hello")
            await websocket.close()
            return
        role_raw = hello.get("role") or "player"
        role = role_raw.strip().casefold() if isinstance(role_raw, str) else "player"
        if role not in ROLES:
            await self._send_error(websocket, code="BAD_ROLE", msg=f"Unknown role {role_raw!r}")
            await websocket.close()
            return

        session = ClientSession(client_id=f"C-{next(self._client_ids):04d}", role=role, websocket=websocket)
        self.sessions[session.client_id] = session
        LOGGER.info("Client %s connected as %s", session.client_id, role)

        await self._send_json(websocket, "welcome", {
            "client_id": session.client_id,
            "role": role,
            "config": {
                "default_shuffle_factor": self.config.default_shuffle_factor,
                "token_ttl_s": self.config.token_ttl_s,
            },
        })

        try:
            async for raw in websocket:
                message = self._decode(raw)
                if message.get("type") == "request":
                    await self._handle_request(session, message)
                else:
                    await self._send_error(websocket, code="UNKNOWN_TYPE", msg="Unsupported message type")
        except ConnectionClosed:
            pass
        finally:
            await self._drop_session(session)
        LOGGER.info("Client %s (%s) disconnected", session.client_id, role)

    async def _handle_request(self, session: ClientSession, message: Dict[str, Any]) -> None:
        req_id = message.get("req_id")
        op = message.get("op")
        args = message.get("args") or {}
        if not isinstance(req_id, str) or not isinstance(op, str) or not isinstance(args, dict):
            await self._send_error(session.websocket, code="BAD_SCHEMA", msg="req_id, op and args required", req_id=req_id)
            return

        handler = self._handlers.get(op)
        if handler is None:
            await self._send_error(session.websocket, code="UNKNOWN_OP", msg=f"Unsupported op {op}", req_id=req_id)
            return

        try:
            data = await handler(session, args)
        except TableError as exc:
            LOGGER.warning("Rejected %s from %s: %s (%s)", op, session.client_id, exc.msg, exc.code)
            await self._send_error(session.websocket, code=exc.code, msg=exc.msg, req_id=req_id)
            return
        except (KeyError, TypeError, ValueError) as exc:
            LOGGER.warning("Bad %s request from %s: %s", op, session.client_id, exc)
            await self._send_error(session.websocket, code="BAD_REQUEST", msg=str(exc), req_id=req_id)
            return

        LOGGER.debug("Applied %s for %s req=%s", op, session.client_id, req_id)
        await self._send_json(session.websocket, "result", {"req_id": req_id, "data": data})

    # Store operations ------------------------------------------------

    async def _op_insert(self, session: ClientSession, args: Dict[str, Any]) -> Any:
        return await self.store.insert(args["table"], dict(args["values"]))

    async def _op_update(self, session: ClientSession, args: Dict[str, Any]) -> Any:
        expected = args.get("expected_version")
        return await self.store.update(
            args["table"],
            str(args["row_id"]),
            dict(args["changes"]),
            expected_version=int(expected) if expected is not None else None,
        )

    async def _op_delete(self, session: ClientSession, args: Dict[str, Any]) -> Any:
        table, row_id = args["table"], str(args["row_id"])
        removed = await self.store.delete(table, row_id)
        # A token never outlives the seat it resumes.
        if removed is not None and table == ROOMS:
            self.registry.revoke_room(row_id)
        elif removed is not None and table == PLAYERS:
            self.registry.revoke(row_id)
        return removed

    async def _op_get(self, session: ClientSession, args: Dict[str, Any]) -> Any:
        return await self.store.get(args["table"], str(args["row_id"]))

    async def _op_select(self, session: ClientSession, args: Dict[str, Any]) -> Any:
        return await self.store.select(args["table"], args.get("column"), args.get("value"))

    async def _op_subscribe(self, session: ClientSession, args: Dict[str, Any]) -> Any:
        subscription = await self.store.subscribe(args["table"], args["column"], args["value"])
        session.subscriptions[subscription.id] = subscription
        session.pumps[subscription.id] = asyncio.create_task(self._pump(session, subscription))
        LOGGER.info(
            "Client %s subscribed to %s where %s=%s",
            session.client_id,
            subscription.table,
            subscription.column,
            subscription.value,
        )
        return {"sub_id": subscription.id}

    async def _op_unsubscribe(self, session: ClientSession, args: Dict[str, Any]) -> Any:
        sub_id = str(args["sub_id"])
        subscription = session.subscriptions.pop(sub_id, None)
        if subscription is None:
            return False
        await self.store.unsubscribe(subscription)
        session.pumps.pop(sub_id, None)
        return True

    # Registry operations ---------------------------------------------

    async def _op_join(self, session: ClientSession, args: Dict[str, Any]) -> Any:
        result = await self.registry.join(str(args["room_id"]), str(args.get("name") or ""))
        return {"player": result.player.to_record(), "token": result.token, "resumed": result.resumed}

    async def _op_resume(self, session: ClientSession, args: Dict[str, Any]) -> Any:
        player = await self.registry.resume(str(args["token"]))
        return {"player": player.to_record()}

    async def _op_leave(self, session: ClientSession, args: Dict[str, Any]) -> Any:
        return await self.registry.leave(str(args["player_id"]))

    # Change feed -----------------------------------------------------

    async def _pump(self, session: ClientSession, subscription: Subscription) -> None:
        async for event in subscription:
            await self._send_json(session.websocket, "change", {"sub_id": subscription.id, "event": event.to_dict()})

    async def _drop_session(self, session: ClientSession) -> None:
        self.sessions.pop(session.client_id, None)
        for subscription in list(session.subscriptions.values()):
            await self.store.unsubscribe(subscription)
        session.subscriptions.clear()
        for task in session.pumps.values():
            task.cancel()
        session.pumps.clear()

    # Wire helpers ----------------------------------------------------

    async def _send_json(self, websocket: ServerConnection, msg_type: str, payload: Dict[str, Any]) -> None:
        try:
            await websocket.send(self._envelope(msg_type, payload))
        except ConnectionClosed:
            pass

    async def _send_error(
        self,
        websocket: ServerConnection,
        code: str,
        msg: str,
        req_id: Optional[str] = None,
    ) -> None:
        payload: Dict[str, Any] = {"code": code, "msg": msg}
        if req_id is not None:
            payload["req_id"] = req_id
        await self._send_json(websocket, "error", payload)

    def _envelope(self, msg_type: str, payload: Dict[str, Any]) -> str:
        body = {"type": msg_type, "v": 1, "ts": datetime.now(timezone.utc).isoformat()}
        body.update(payload)
        return json.dumps(body)

    async def _read_message(self, websocket: ServerConnection) -> Optional[Dict[str, Any]]:
        try:
            raw = await asyncio.wait_for(websocket.recv(), timeout=5)
            return self._decode(raw)
        except (asyncio.TimeoutError, ConnectionClosed):
            return None

    def _decode(self, raw: Any) -> Dict[str, Any]:
        try:
            message = json.loads(raw)
        except (TypeError, json.JSONDecodeError):
            return {}
        return message if isinstance(message, dict) else {}
