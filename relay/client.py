from __future__ import annotations

import asyncio
import itertools
import json
import logging
import random
from typing import Any, Callable, Dict, List, Optional

from websockets.asyncio.client import ClientConnection, connect
from websockets.exceptions import ConnectionClosed

from dealer.errors import (
    ConflictError,
    NotFoundError,
    SchemaError,
    StoreUnavailableError,
    TableError,
    error_from_code,
)
from dealer.models import PLAYERS, ROOMS, ChangeEvent, LogKind, LogMessage, Player, Room, SessionConfig, Stage
from dealer.reconciler import SessionMirror
from dealer.registry import JoinResult
from dealer.rounds import RoundEngine
from dealer.store import Subscription

LOGGER = logging.getLogger("table_client")


class RelayConnection:
    """One WebSocket to the relay, multiplexing requests and change feeds."""

    def __init__(self, url: str, role: str = "player", config: Optional[SessionConfig] = None) -> None:
        self.url = url
        self.role = role
        self.config = config or SessionConfig()
        self.websocket: Optional[ClientConnection] = None
        self.client_id: Optional[str] = None
        self.pending: Dict[str, asyncio.Future] = {}
        self.subscriptions: Dict[str, Subscription] = {}
        self.early_events: Dict[str, List[ChangeEvent]] = {}
        self.reader_task: Optional[asyncio.Task] = None
        self._req_ids = itertools.count(1)
        self._connect_lock = asyncio.Lock()

    @property
    def connected(self) -> bool:
        return self.websocket is not None and self.reader_task is not None and not self.reader_task.done()

    async def connect(self) -> None:
        # A dropped feed and a retried read can both try to reconnect at once.
        async with self._connect_lock:
            if self.connected:
                return
            try:
                self.websocket = await connect(self.url)
                await self.websocket.send(json.dumps({"type": "hello", "v": 1, "role": self.role}))
                raw = await asyncio.wait_for(self.websocket.recv(), timeout=self.config.request_timeout_s)
            except (OSError, ConnectionClosed, asyncio.TimeoutError) as exc:
                raise StoreUnavailableError(f"Could not reach table relay at {self.url}: {exc}") from exc

            welcome = _decode(raw)
            if welcome.get("type") != "welcome":
                raise StoreUnavailableError(f"Unexpected handshake reply: {welcome.get('type')}")
            self.client_id = welcome.get("client_id")
            self.reader_task = asyncio.create_task(self._reader())
            LOGGER.info("Connected to %s as %s (%s)", self.url, self.client_id, self.role)

    async def close(self) -> None:
        if self.websocket is not None:
            await self.websocket.close()
        if self.reader_task is not None:
            try:
                await self.reader_task
            except asyncio.CancelledError:
                pass
        self.websocket = None
        self.reader_task = None

    async def __aenter__(self) -> "RelayConnection":
        await self.connect()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    async def request(self, op: str, **args: Any) -> Any:
        if not self.connected:
            raise StoreUnavailableError("Not connected to the table relay")
        assert self.websocket is not None
        req_id = f"r{next(self._req_ids)}"
        future: asyncio.Future = asyncio.get_running_loop().create_future()
        self.pending[req_id] = future
        try:
            await self.websocket.send(
                json.dumps({"type": "request", "v": 1, "req_id": req_id, "op": op, "args": args})
            )
            return await asyncio.wait_for(future, timeout=self.config.request_timeout_s)
        except ConnectionClosed as exc:
            raise StoreUnavailableError(f"Connection lost during {op}") from exc
        except asyncio.TimeoutError as exc:
            raise StoreUnavailableError(f"{op} timed out") from exc
        finally:
            self.pending.pop(req_id, None)

    def attach(self, subscription: Subscription) -> None:
        self.subscriptions[subscription.id] = subscription
        # Changes can overtake the subscribe reply; replay whatever got here first.
        for event in self.early_events.pop(subscription.id, []):
            subscription.push(event)

    def detach(self, subscription: Subscription) -> None:
        self.subscriptions.pop(subscription.id, None)
        subscription.close()

    async def _reader(self) -> None:
        assert self.websocket is not None
        try:
            async for raw in self.websocket:
                self._dispatch(_decode(raw))
        except ConnectionClosed:
            pass
        finally:
            LOGGER.info("Connection %s closed", self.client_id)
            for future in self.pending.values():
                if not future.done():
                    future.set_exception(StoreUnavailableError("Connection to the table relay lost"))
            for subscription in list(self.subscriptions.values()):
                subscription.close()
            self.subscriptions.clear()
            self.early_events.clear()

    def _dispatch(self, message: Dict[str, Any]) -> None:
        msg_type = message.get("type")
        if msg_type == "result":
            future = self.pending.get(str(message.get("req_id")))
            if future is not None and not future.done():
                future.set_result(message.get("data"))
        elif msg_type == "error":
            code = str(message.get("code") or "TABLE_ERROR")
            msg = str(message.get("msg") or code)
            future = self.pending.get(str(message.get("req_id")))
            if future is not None and not future.done():
                future.set_exception(error_from_code(code, msg))
            else:
                LOGGER.warning("Relay error %s: %s", code, msg)
        elif msg_type == "change":
            sub_id = str(message.get("sub_id"))
            try:
                event = ChangeEvent.from_dict(message["event"])
            except (KeyError, TypeError, ValueError):
                LOGGER.warning("Dropping malformed change frame for %s", sub_id)
                return
            subscription = self.subscriptions.get(sub_id)
            if subscription is not None:
                subscription.push(event)
            else:
                self.early_events.setdefault(sub_id, []).append(event)
        else:
            LOGGER.debug("Ignoring %s frame", msg_type)


class RemoteStore:
    """Store API over a RelayConnection; same coroutine surface as MemoryStore."""

    def __init__(self, connection: RelayConnection, config: Optional[SessionConfig] = None) -> None:
        self.connection = connection
        self.config = config or connection.config

    async def get(self, table: str, row_id: str) -> Optional[Dict[str, Any]]:
        return await self._read("get", table=table, row_id=str(row_id))

    async def select(self, table: str, column: Optional[str] = None, value: Any = None) -> List[Dict[str, Any]]:
        return list(await self._read("select", table=table, column=column, value=value) or [])

    async def insert(self, table: str, values: Dict[str, Any]) -> Dict[str, Any]:
        return await self.connection.request("insert", table=table, values=values)

    async def update(
        self,
        table: str,
        row_id: str,
        changes: Dict[str, Any],
        expected_version: Optional[int] = None,
    ) -> Dict[str, Any]:
        return await self.connection.request(
            "update", table=table, row_id=str(row_id), changes=changes, expected_version=expected_version
        )

    async def delete(self, table: str, row_id: str) -> Optional[Dict[str, Any]]:
        return await self.connection.request("delete", table=table, row_id=str(row_id))

    async def subscribe(self, table: str, column: str, value: Any) -> Subscription:
        if not self.connection.connected:
            await self.connection.connect()
        data = await self.connection.request("subscribe", table=table, column=column, value=value)
        subscription = Subscription(id=str(data["sub_id"]), table=table, column=column, value=value)
        self.connection.attach(subscription)
        return subscription

    async def unsubscribe(self, subscription: Subscription) -> None:
        self.connection.detach(subscription)
        if self.connection.connected:
            await self.connection.request("unsubscribe", sub_id=subscription.id)

    async def _read(self, op: str, **args: Any) -> Any:
        # Reads are idempotent, so transport failures get a bounded retry with backoff.
        attempts = self.config.read_retries + 1
        for attempt in range(attempts):
            try:
                if not self.connection.connected:
                    await self.connection.connect()
                return await self.connection.request(op, **args)
            except StoreUnavailableError as exc:
                if attempt == attempts - 1:
                    raise
                delay = self.config.retry_backoff_ms * (2 ** attempt) / 1000
                LOGGER.warning("%s failed (%s); retry %s/%s in %.2fs", op, exc.msg, attempt + 1, attempts - 1, delay)
                await asyncio.sleep(delay)
        raise StoreUnavailableError(f"{op} failed")


class RemoteRegistry:
    def __init__(self, connection: RelayConnection) -> None:
        self.connection = connection

    async def join(self, room_id: str, name: str) -> JoinResult:
        data = await self.connection.request("join", room_id=str(room_id), name=name)
        return JoinResult(player=Player.from_row(data["player"]), token=str(data["token"]), resumed=bool(data["resumed"]))

    async def resume(self, token: str) -> Player:
        data = await self.connection.request("resume", token=token)
        return Player.from_row(data["player"])

    async def leave(self, player_id: str) -> bool:
        return bool(await self.connection.request("leave", player_id=str(player_id)))

    async def recover_host(self, room_id: str) -> Room:
        row = await self.connection.request("get", table=ROOMS, row_id=str(room_id).strip())
        if row is None:
            raise NotFoundError(f"Room {room_id} not found")
        return Room.from_row(row)


# TableSession is what one device runs: the host display or a player's phone.
# Actions are plain round-trips to the store; the mirror only changes
# when the change feed says so.


class TableSession:
    def __init__(
        self,
        store,
        registry,
        config: Optional[SessionConfig] = None,
        rng: Optional[random.Random] = None,
    ) -> None:
        self.store = store
        self.registry = registry
        self.config = config or SessionConfig()
        self.engine = RoundEngine(store, self.config, rng)
        self.mirror: Optional[SessionMirror] = None
        self.room_id: Optional[str] = None
        self.player_id: Optional[str] = None
        self.token: Optional[str] = None
        self.is_host = False
        self.alerts: List[str] = []
        self.last_error: Optional[TableError] = None
        self.listeners: List[Callable[[List[LogMessage]], None]] = []
        self._subscriptions: List[Subscription] = []
        self._pumps: List[asyncio.Task] = []
        self._recovery: Optional[asyncio.Task] = None

    # Views -----------------------------------------------------------

    @property
    def ended(self) -> bool:
        return self.mirror is not None and self.mirror.ended

    @property
    def room(self) -> Optional[Room]:
        return self.mirror.room if self.mirror else None

    @property
    def me(self) -> Optional[Player]:
        return self.mirror.me(self.player_id) if self.mirror else None

    @property
    def waiting_for_deal(self) -> bool:
        # Stage can flip to preflop before our own hand update lands.
        room, me = self.room, self.me
        if room is None or room.stage == Stage.WAITING:
            return False
        return me is not None and not me.has_folded and not me.hand

    # Joining ---------------------------------------------------------

    async def create_room(self, shuffle_factor: Optional[int] = None, qr_url: Optional[str] = None) -> Optional[Room]:
        room = await self._guard("create the table", self.engine.create_room(shuffle_factor, qr_url), attached=False)
        if room is not None:
            self.is_host = True
            await self._attach(room.id)
        return room

    async def recover_host(self, room_id: str) -> Optional[Room]:
        room = await self._guard("resume hosting", self.registry.recover_host(room_id), attached=False)
        if room is not None:
            self.is_host = True
            await self._attach(room.id)
        return room

    async def join(self, room_id: str, name: str) -> Optional[Player]:
        if not str(room_id).strip():
            self._alert("Please enter a room code")
            return None
        if not (name or "").strip():
            self._alert("Please enter your name")
            return None
        result = await self._guard("join", self.registry.join(room_id, name), attached=False)
        if result is None:
            return None
        self.player_id = result.player.id
        self.token = result.token
        await self._attach(result.player.room_id)
        return result.player

    async def resume(self, token: str) -> Optional[Player]:
        player = await self._guard("resume", self.registry.resume(token), attached=False)
        if player is None:
            return None
        self.player_id = player.id
        self.token = token
        await self._attach(player.room_id)
        return player

    # Table actions ---------------------------------------------------

    async def advance(self) -> Optional[Room]:
        if self.room_id is None:
            return None
        room = await self._guard("advance the round", self.engine.advance(self.room_id))
        if room is None and self.last_error is None:
            # The room is gone: whoever ended it, this session is over.
            self._end_locally()
        return room

    async def set_shuffle_bias(self, value: int) -> Optional[Room]:
        if self.room_id is None:
            return None
        return await self._guard("change the shuffle", self.engine.set_shuffle_factor(self.room_id, value))

    async def set_qr_url(self, qr_url: Optional[str]) -> Optional[Room]:
        if self.room_id is None:
            return None
        return await self._guard("update the join link", self.engine.set_qr_url(self.room_id, (qr_url or "").strip() or None))

    async def end_room(self) -> bool:
        if self.room_id is None:
            return False
        removed = await self._guard("end the game", self.engine.end_room(self.room_id))
        if self.last_error is None:
            self._end_locally()
        await self.close()
        return bool(removed)

    async def fold(self) -> Optional[Player]:
        if self.player_id is None:
            return None
        return await self._guard("fold", self.engine.fold(self.player_id))

    async def toggle_reveal(self) -> Optional[Player]:
        if self.player_id is None:
            return None
        me = self.me
        current = me.is_revealed if me is not None else None
        return await self._guard("toggle reveal", self.engine.toggle_reveal(self.player_id, current))

    async def leave(self) -> bool:
        if self.player_id is None:
            return False
        removed = await self._guard("leave", self.registry.leave(self.player_id))
        await self.close()
        self.player_id = None
        self.token = None
        return bool(removed)

    # Feed ------------------------------------------------------------

    async def resync(self) -> None:
        """(Re)subscribe to the room's feed, then take a full fetch to cover the gap."""
        if self.room_id is None or self.mirror is None:
            return
        await self._unsubscribe()
        for table, column in ((ROOMS, "id"), (PLAYERS, "room_id")):
            self._subscriptions.append(await self.store.subscribe(table, column, self.room_id))
        self._pumps = [asyncio.create_task(self._pump(subscription)) for subscription in self._subscriptions]
        await self.refresh()

    async def refresh(self) -> None:
        if self.room_id is None or self.mirror is None:
            return
        room_row = await self.store.get(ROOMS, self.room_id)
        player_rows = await self.store.select(PLAYERS, "room_id", self.room_id) if room_row else []
        self._deliver(self.mirror.load_snapshot(room_row, player_rows))
        if self.mirror.ended:
            await self._unsubscribe()

    async def close(self) -> None:
        recovery, self._recovery = self._recovery, None
        if recovery is not None and recovery is not asyncio.current_task():
            recovery.cancel()
        await self._unsubscribe()

    async def _attach(self, room_id: str) -> None:
        await self._unsubscribe()
        self.room_id = str(room_id)
        self.mirror = SessionMirror(self.room_id, log_history=self.config.log_history)
        try:
            await self.resync()
        except TableError as exc:
            self._alert(f"Could not load the table: {exc.msg}")

    async def _pump(self, subscription: Subscription) -> None:
        async for event in subscription:
            if self.mirror is None:
                break
            self._deliver(self.mirror.apply(event))
            if self.mirror.ended:
                break
        if self.mirror is None:
            return
        if self.mirror.ended:
            LOGGER.info("Session for room %s ended", self.room_id)
        elif subscription in self._subscriptions and self._recovery is None:
            # Closed under us rather than by _unsubscribe: the transport dropped.
            await self._recover_feed()

    async def _recover_feed(self) -> None:
        self._recovery = asyncio.current_task()
        try:
            attempts = self.config.read_retries + 1
            for attempt in range(attempts):
                delay = self.config.retry_backoff_ms * (2 ** attempt) / 1000
                await asyncio.sleep(delay)
                try:
                    await self.resync()
                    if not any(task.done() for task in self._pumps):
                        LOGGER.info("Change feed for room %s restored", self.room_id)
                        return
                except StoreUnavailableError as exc:
                    LOGGER.warning("Resubscribe failed (%s); attempt %s/%s", exc.msg, attempt + 1, attempts)
                except TableError as exc:
                    self._alert(f"Could not reload the table: {exc.msg}")
                    return
            self._alert("Lost connection to the table. Rejoin to continue.")
        finally:
            self._recovery = None

    async def _unsubscribe(self) -> None:
        subscriptions, self._subscriptions = self._subscriptions, []
        pumps, self._pumps = self._pumps, []
        current = asyncio.current_task()
        for subscription in subscriptions:
            try:
                await self.store.unsubscribe(subscription)
            except TableError as exc:
                LOGGER.debug("Unsubscribe failed: %s", exc.msg)
        for task in pumps:
            if task is not current:
                task.cancel()

    def _deliver(self, messages: List[LogMessage]) -> None:
        if not messages:
            return
        for listener in self.listeners:
            listener(messages)

    # Errors ----------------------------------------------------------

    async def _guard(self, action: str, coro, attached: bool = True):
        """Run a store round-trip; failures become notices and leave local state alone."""
        self.last_error = None
        try:
            return await coro
        except NotFoundError as exc:
            self.last_error = exc
            LOGGER.info("Cannot %s: %s", action, exc.msg)
            if attached and self.mirror is not None:
                self._end_locally()
            else:
                self._alert(f"Could not {action}. Check the room code.")
        except ConflictError as exc:
            self.last_error = exc
            LOGGER.warning("Conflict while trying to %s: %s", action, exc.msg)
            self._alert(f"Could not {action}: the table changed on another device. Try again.")
        except SchemaError as exc:
            self.last_error = exc
            LOGGER.error("Store schema missing: %s", exc.msg)
            self._alert("The game database is not initialised. Run the setup and try again.")
        except StoreUnavailableError as exc:
            self.last_error = exc
            LOGGER.warning("Store unavailable while trying to %s: %s", action, exc.msg)
            self._alert(f"Could not {action}: connection problem. Try again.")
        except TableError as exc:
            self.last_error = exc
            LOGGER.warning("Failed to %s: %s (%s)", action, exc.msg, exc.code)
            self._alert(f"Could not {action}: {exc.msg}")
        except ValueError as exc:
            self.last_error = TableError(str(exc), code="BAD_REQUEST")
            self._alert(f"Could not {action}: {exc}")
        return None

    def _alert(self, text: str) -> None:
        self.alerts.append(text)
        if self.mirror is not None and not self.mirror.ended:
            self._deliver([self.mirror.notify(text, LogKind.ALERT)])

    def _end_locally(self) -> None:
        if self.mirror is None:
            return
        self._deliver(self.mirror.end_session())


def _decode(raw: Any) -> Dict[str, Any]:
    try:
        message = json.loads(raw)
    except (TypeError, json.JSONDecodeError):
        return {}
    return message if isinstance(message, dict) else {}
