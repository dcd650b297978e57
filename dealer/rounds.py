from __future__ import annotations

import logging
import random
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple

from .cards import Card, cards_to_dicts, deal, generate_deck, split_for_round, validate_bias
from .errors import ConflictError, NotFoundError
from .evaluator import resolve_winners
from .models import PLAYERS, ROOMS, STAGES, Player, PlayerStatus, Room, SessionConfig, Stage, Winner

LOGGER = logging.getLogger("round_engine")

# plan_advance is pure: it only computes what a transition writes. RoundEngine
# reads the store, plans, and writes the result back. Nothing here knows about
# sockets.

ROOM_CODE_ATTEMPTS = 50


@dataclass
class RoundTransition:
    # Everything one advance() call persists: a room change set plus per-player change sets.
    from_stage: Stage
    to_stage: Stage
    room_changes: Dict[str, Any]
    player_changes: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    winners: List[Winner] = field(default_factory=list)

    @property
    def is_reset(self) -> bool:
        return self.from_stage == Stage.SHOWDOWN


def next_stage(stage: Stage) -> Stage:
    if stage == Stage.SHOWDOWN:
        return Stage.WAITING
    return STAGES[stage.index + 1]


def fresh_round_cards(shuffle_factor: int, rng: Optional[random.Random] = None) -> Tuple[List[Card], List[Card]]:
    """Community cards and dealing deck for a new round, drawn from a brand new deck."""
    return split_for_round(generate_deck(shuffle_factor, rng))


def plan_advance(room: Room, players: Sequence[Player], rng: Optional[random.Random] = None) -> RoundTransition:
    if room.stage == Stage.SHOWDOWN:
        return plan_reset(room, players, rng)

    target = next_stage(room.stage)
    room_changes: Dict[str, Any] = {"stage": target.value}
    transition = RoundTransition(from_stage=room.stage, to_stage=target, room_changes=room_changes)

    if target == Stage.PREFLOP:
        deck = list(room.deck)
        for player in players:
            # Folded players sit this deal out until the next full reset.
            if player.has_folded:
                continue
            hand = deal(deck, 2)
            transition.player_changes[player.id] = {"hand": cards_to_dicts(hand)}
        room_changes["deck"] = cards_to_dicts(deck)
        room_changes["winners"] = []
    elif target == Stage.SHOWDOWN:
        transition.winners = resolve_winners(room.community_cards, players)
        room_changes["winners"] = [winner.to_dict() for winner in transition.winners]

    return transition


def plan_reset(room: Room, players: Sequence[Player], rng: Optional[random.Random] = None) -> RoundTransition:
    community, deck = fresh_round_cards(room.shuffle_factor, rng)
    room_changes = {
        "stage": Stage.WAITING.value,
        "community_cards": cards_to_dicts(community),
        "deck": cards_to_dicts(deck),
        "winners": [],
        "round_count": room.round_count + 1,
        "dealer_index": room.dealer_index + 1,
    }
    player_changes = {
        player.id: {"hand": [], "status": PlayerStatus.ACTIVE.value, "is_revealed": False}
        for player in players
    }
    return RoundTransition(
        from_stage=room.stage,
        to_stage=Stage.WAITING,
        room_changes=room_changes,
        player_changes=player_changes,
    )


def dealer_player(room: Room, players: Sequence[Player]) -> Optional[Player]:
    if not players:
        return None
    return players[room.dealer_index % len(players)]


def load_player(row: Dict[str, Any]) -> Player:
    try:
        return Player.from_row(row)
    except ValueError:
        # A corrupt hand must not block the table; the player just becomes ineligible.
        LOGGER.warning("Player %s has a malformed hand; treating it as empty", row.get("id"))
        return Player.from_row({**row, "hand": []})


class RoundEngine:
    """Host-side mutations for one shared table, written through a store."""

    def __init__(self, store, config: Optional[SessionConfig] = None, rng: Optional[random.Random] = None) -> None:
        self.store = store
        self.config = config or SessionConfig()
        self.rng = rng or random.Random()

    # Room lifecycle --------------------------------------------------

    async def create_room(self, shuffle_factor: Optional[int] = None, qr_url: Optional[str] = None) -> Room:
        bias = validate_bias(self.config.default_shuffle_factor if shuffle_factor is None else shuffle_factor)
        community, deck = fresh_round_cards(bias, self.rng)

        for _ in range(ROOM_CODE_ATTEMPTS):
            code = str(self.rng.randint(self.config.room_code_min, self.config.room_code_max))
            if await self.store.get(ROOMS, code) is not None:
                continue
            room = Room(id=code, community_cards=community, deck=deck, shuffle_factor=bias, qr_url=qr_url)
            try:
                row = await self.store.insert(ROOMS, room.to_row())
            except ConflictError:
                continue
            LOGGER.info("Room %s created (shuffle_factor=%s)", code, bias)
            return Room.from_row(row)

        raise ConflictError("No free room code available")

    async def end_room(self, room_id: str) -> bool:
        removed = await self.store.delete(ROOMS, room_id)
        if removed is None:
            LOGGER.info("Room %s already gone", room_id)
            return False
        LOGGER.info("Room %s ended", room_id)
        return True

    async def load(self, room_id: str) -> Tuple[Optional[Room], List[Player]]:
        row = await self.store.get(ROOMS, room_id)
        if row is None:
            return None, []
        player_rows = await self.store.select(PLAYERS, "room_id", room_id)
        return Room.from_row(row), [load_player(item) for item in player_rows]

    # Stage transitions -----------------------------------------------

    async def advance(self, room_id: str) -> Optional[Room]:
        """Move the room one stage forward (or reset after showdown).

        Returns ``None`` when the room no longer exists. The room write is
        conditional on the version that was read, so a second host racing on
        the same room gets ``ConflictError`` instead of double-dealing.
        """
        room, players = await self.load(room_id)
        if room is None:
            LOGGER.info("Advance ignored: room %s no longer exists", room_id)
            return None

        transition = plan_advance(room, players, self.rng)
        try:
            row = await self.store.update(ROOMS, room.id, transition.room_changes, expected_version=room.version)
        except NotFoundError:
            LOGGER.info("Advance ignored: room %s ended mid-transition", room_id)
            return None
        except ConflictError:
            LOGGER.warning(
                "Advance rejected for room %s: stage %s changed underneath (version %s)",
                room_id,
                room.stage.value,
                room.version,
            )
            raise

        for player_id, changes in transition.player_changes.items():
            try:
                await self.store.update(PLAYERS, player_id, changes)
            except NotFoundError:
                LOGGER.info("Player %s left before the %s update landed", player_id, transition.to_stage.value)

        LOGGER.info(
            "Room %s: %s -> %s (round %s)",
            room_id,
            transition.from_stage.value,
            transition.to_stage.value,
            row.get("round_count"),
        )
        if transition.to_stage == Stage.SHOWDOWN:
            LOGGER.info("Room %s winners: %s", room_id, [winner.name for winner in transition.winners])
        return Room.from_row(row)

    # Table settings --------------------------------------------------

    async def set_shuffle_factor(self, room_id: str, shuffle_factor: int) -> Room:
        bias = validate_bias(shuffle_factor)
        row = await self.store.update(ROOMS, room_id, {"shuffle_factor": bias})
        LOGGER.info("Room %s shuffle factor set to %s (applies next round)", room_id, bias)
        return Room.from_row(row)

    async def set_qr_url(self, room_id: str, qr_url: Optional[str]) -> Room:
        row = await self.store.update(ROOMS, room_id, {"qr_url": qr_url})
        return Room.from_row(row)

    # Player actions --------------------------------------------------

    async def fold(self, player_id: str) -> Player:
        row = await self.store.update(PLAYERS, player_id, {"status": PlayerStatus.FOLDED.value})
        LOGGER.info("Player %s folded", row.get("name"))
        return load_player(row)

    async def toggle_reveal(self, player_id: str, current: Optional[bool] = None) -> Player:
        if current is None:
            row = await self.store.get(PLAYERS, player_id)
            if row is None:
                raise NotFoundError(f"players row {player_id} not found")
            current = bool(row.get("is_revealed"))
        row = await self.store.update(PLAYERS, player_id, {"is_revealed": not current})
        return load_player(row)
