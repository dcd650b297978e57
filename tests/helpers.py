from __future__ import annotations

import json
import random
from typing import Dict, Iterable, List, Optional, Tuple

from dealer.cards import parse_cards
from dealer.models import PLAYERS, ChangeEvent, ChangeKind, Player, PlayerStatus, Room, SessionConfig
from dealer.registry import PlayerRegistry
from dealer.rounds import RoundEngine
from dealer.store import MemoryStore, Subscription


def seeded(seed: int = 7) -> random.Random:
    return random.Random(seed)


async def open_table(
    names: Iterable[str] = ("Ana", "Ben"),
    *,
    shuffle_factor: int = 100,
    seed: int = 7,
    config: Optional[SessionConfig] = None,
) -> Tuple[MemoryStore, RoundEngine, PlayerRegistry, Room, List[Player]]:
    """Create a store with one room and the given players seated."""
    store = MemoryStore()
    engine = RoundEngine(store, config, seeded(seed))
    registry = PlayerRegistry(store, config)
    room = await engine.create_room(shuffle_factor)
    players = [(await registry.join(room.id, name)).player for name in names]
    return store, engine, registry, room, players


def make_player(
    player_id: str,
    name: str,
    hand: Iterable[str] = (),
    *,
    room_id: str = "1234",
    folded: bool = False,
) -> Player:
    return Player(
        id=player_id,
        room_id=room_id,
        name=name,
        hand=parse_cards(hand),
        status=PlayerStatus.FOLDED if folded else PlayerStatus.ACTIVE,
    )


def player_event(
    kind: ChangeKind,
    player_id: str,
    version: int,
    *,
    name: str = "Ana",
    room_id: str = "1234",
    **fields,
) -> ChangeEvent:
    row: Dict[str, object] = {
        "id": player_id,
        "room_id": room_id,
        "name": name,
        "hand": [],
        "status": "active",
        "is_revealed": False,
        "version": version,
    }
    row.update(fields)
    return ChangeEvent(PLAYERS, kind, player_id, row, version)


def drain(subscription: Subscription) -> List[ChangeEvent]:
    """Pop everything already queued on a subscription without waiting."""
    events: List[ChangeEvent] = []
    while not subscription.queue.empty():
        event = subscription.queue.get_nowait()
        if event is not None:
            events.append(event)
    return events


# Fake sockets so we can exercise async paths without opening real connections.
class DummyWebSocket:
    def __init__(self, incoming: Iterable[str] = ()) -> None:
        self.incoming = list(incoming)
        self.sent: List[str] = []
        self.closed = False

    async def send(self, message: str) -> None:
        self.sent.append(message)

    async def recv(self) -> str:
        if not self.incoming:
            raise AssertionError("recv() called with nothing queued")
        return self.incoming.pop(0)

    async def close(self, *args, **kwargs) -> None:
        self.closed = True

    def __aiter__(self) -> "DummyWebSocket":
        return self

    async def __anext__(self) -> str:
        if not self.incoming:
            raise StopAsyncIteration
        return self.incoming.pop(0)

    def frames(self) -> List[Dict[str, object]]:
        return [json.loads(raw) for raw in self.sent]
