from __future__ import annotations

import logging
import secrets
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional

from .errors import NotFoundError, SessionExpiredError
from .models import PLAYERS, ROOMS, Player, PlayerStatus, Room, SessionConfig

LOGGER = logging.getLogger("player_registry")

# Identity is name based on purpose: rejoining with the same name (any case)
# takes the same seat back. Two people who pick the same name share one seat.
# Session tokens sit on top of that so a device can resume without retyping.


@dataclass
class SessionToken:
    token: str
    player_id: str
    room_id: str
    expires_at: float


@dataclass
class JoinResult:
    player: Player
    token: str
    resumed: bool


class PlayerRegistry:
    def __init__(
        self,
        store,
        config: Optional[SessionConfig] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.store = store
        self.config = config or SessionConfig()
        self.clock = clock
        self.tokens: Dict[str, SessionToken] = {}

    async def join(self, room_id: str, name: str) -> JoinResult:
        display = (name or "").strip()
        if not display:
            raise ValueError("NAME_REQUIRED")
        room_id = str(room_id).strip()
        if await self.store.get(ROOMS, room_id) is None:
            raise NotFoundError(f"Room {room_id} not found")

        existing = await self._find_by_name(room_id, display)
        if existing is not None:
            LOGGER.info("Player %s resumed seat %s in room %s", display, existing.id, room_id)
            # The seat has one live token; the newest device holds it.
            self.revoke(existing.id)
            return JoinResult(player=existing, token=self._issue(existing), resumed=True)

        fresh = Player(id="", room_id=room_id, name=display, hand=[], status=PlayerStatus.ACTIVE, is_revealed=False)
        row = await self.store.insert(PLAYERS, fresh.to_row())
        player = Player.from_row(row)
        LOGGER.info("Player %s joined room %s as %s", display, room_id, player.id)
        return JoinResult(player=player, token=self._issue(player), resumed=False)

    async def resume(self, token: str) -> Player:
        session = self.tokens.get(token)
        now = self.clock()
        if session is None or session.expires_at <= now:
            self.tokens.pop(token, None)
            raise SessionExpiredError("Session expired; join the room again")
        row = await self.store.get(PLAYERS, session.player_id)
        if row is None:
            self.tokens.pop(token, None)
            raise NotFoundError(f"Player {session.player_id} no longer seated")
        session.expires_at = now + self.config.token_ttl_s
        return Player.from_row(row)

    async def leave(self, player_id: str) -> bool:
        self.revoke(player_id)
        removed = await self.store.delete(PLAYERS, player_id)
        if removed is not None:
            LOGGER.info("Player %s left room %s", removed.get("name"), removed.get("room_id"))
        return removed is not None

    async def recover_host(self, room_id: str) -> Room:
        row = await self.store.get(ROOMS, str(room_id).strip())
        if row is None:
            raise NotFoundError(f"Room {room_id} not found")
        LOGGER.info("Host display re-attached to room %s", room_id)
        return Room.from_row(row)

    def revoke(self, player_id: str) -> None:
        for key in [key for key, item in self.tokens.items() if item.player_id == player_id]:
            del self.tokens[key]

    def revoke_room(self, room_id: str) -> int:
        stale = [key for key, item in self.tokens.items() if item.room_id == str(room_id)]
        for key in stale:
            del self.tokens[key]
        return len(stale)

    def purge_expired(self) -> int:
        now = self.clock()
        expired = [key for key, item in self.tokens.items() if item.expires_at <= now]
        for key in expired:
            del self.tokens[key]
        return len(expired)

    async def _find_by_name(self, room_id: str, name: str) -> Optional[Player]:
        wanted = name.casefold()
        for row in await self.store.select(PLAYERS, "room_id", room_id):
            if str(row.get("name", "")).strip().casefold() == wanted:
                return Player.from_row(row)
        return None

    def _issue(self, player: Player) -> str:
        purged = self.purge_expired()
        if purged:
            LOGGER.debug("Purged %s expired session tokens", purged)
        token = secrets.token_urlsafe(16)
        self.tokens[token] = SessionToken(
            token=token,
            player_id=player.id,
            room_id=player.room_id,
            expires_at=self.clock() + self.config.token_ttl_s,
        )
        return token
