"""Local mirror of one room, kept current from the store's change feed.

The feed is at-least-once and unordered across rows, so every row carries a
version and the mirror only applies an event that is newer than what it has
already seen for that row. Notifications are derived by diffing the snapshot
before and after an applied event, never from the event type alone, so a
duplicate delivery can not fire the same notification twice.
"""

from __future__ import annotations

import itertools
import logging
from collections import deque
from dataclasses import dataclass, field
from typing import Deque, Dict, Iterable, List, Optional, Tuple

from .cards import Card
from .models import (
    PLAYERS,
    ROOMS,
    ChangeEvent,
    ChangeKind,
    LogKind,
    LogMessage,
    Player,
    Room,
    Stage,
)
from .rounds import load_player

LOGGER = logging.getLogger("session_reconciler")

STAGE_MESSAGES = {
    Stage.PREFLOP: ("Cards dealt", LogKind.INFO),
    Stage.FLOP: ("Flop revealed", LogKind.INFO),
    Stage.TURN: ("Turn revealed", LogKind.INFO),
    Stage.RIVER: ("River revealed", LogKind.INFO),
}


@dataclass
class SessionMirror:
    room_id: str
    log_history: int = 5
    room: Optional[Room] = None
    players: Dict[str, Player] = field(default_factory=dict)
    versions: Dict[Tuple[str, str], int] = field(default_factory=dict)
    ended: bool = False
    logs: Deque[LogMessage] = field(default_factory=deque)
    _log_ids: "itertools.count[int]" = field(default_factory=itertools.count, init=False, repr=False)
    _muted: bool = field(default=False, init=False, repr=False)
    _loaded: bool = field(default=False, init=False, repr=False)

    # Queries ---------------------------------------------------------

    @property
    def stage(self) -> Stage:
        return self.room.stage if self.room else Stage.WAITING

    def player_list(self) -> List[Player]:
        return list(self.players.values())

    def me(self, player_id: Optional[str]) -> Optional[Player]:
        if player_id is None:
            return None
        return self.players.get(player_id)

    def visible_community(self) -> List[Card]:
        return self.room.visible_community() if self.room else []

    def recent_logs(self) -> List[LogMessage]:
        return list(self.logs)[-self.log_history :]

    def notify(self, text: str, kind: LogKind = LogKind.ALERT) -> LogMessage:
        return self._log(text, kind)

    def end_session(self) -> List[LogMessage]:
        if self.ended:
            return []
        return self._end_session()

    # Snapshot --------------------------------------------------------

    def load_snapshot(self, room_row: Optional[Dict], player_rows: Iterable[Dict]) -> List[LogMessage]:
        """Merge a full fetch taken on (re)connect.

        Rows already applied at a newer version win; rows the mirror knows
        about but the fetch no longer returns were deleted while we were away.
        """
        if self.ended:
            return []
        if room_row is None:
            return self._end_session()

        # The first fetch only seeds the mirror; announcing every seated player would be noise.
        first_load = not self._loaded
        self._muted = first_load
        self._loaded = True
        try:
            emitted = self._merge_snapshot(room_row, player_rows)
        finally:
            self._muted = False
        return [] if first_load else emitted

    def _merge_snapshot(self, room_row: Dict, player_rows: Iterable[Dict]) -> List[LogMessage]:
        room_event = ChangeEvent(ROOMS, ChangeKind.UPDATE, str(room_row["id"]), room_row, int(room_row.get("version", 0)))
        emitted = self.apply(room_event)
        fetched = set()
        for row in player_rows:
            row_id = str(row["id"])
            fetched.add(row_id)
            kind = ChangeKind.UPDATE if row_id in self.players else ChangeKind.INSERT
            emitted.extend(self.apply(ChangeEvent(PLAYERS, kind, row_id, row, int(row.get("version", 0)))))
        for missing in [player_id for player_id in self.players if player_id not in fetched]:
            version = self.versions.get((PLAYERS, missing), 0) + 1
            emitted.extend(self.apply(ChangeEvent(PLAYERS, ChangeKind.DELETE, missing, {"id": missing}, version)))
        return emitted

    # Reducer ---------------------------------------------------------

    def apply(self, event: ChangeEvent) -> List[LogMessage]:
        if self.ended:
            return []
        key = (event.table, event.row_id)
        seen = self.versions.get(key)
        if seen is not None and event.version <= seen:
            LOGGER.debug("Discarding stale %s %s v%s (have v%s)", event.kind.value, key, event.version, seen)
            return []

        if event.table == ROOMS:
            if event.row_id != self.room_id:
                return []
            self.versions[key] = event.version
            return self._apply_room(event)
        if event.table == PLAYERS:
            if event.kind != ChangeKind.DELETE and str(event.row.get("room_id")) != self.room_id:
                return []
            return self._apply_player(event, key)
        return []

    def _apply_room(self, event: ChangeEvent) -> List[LogMessage]:
        if event.kind == ChangeKind.DELETE:
            return self._end_session()
        previous = self.room
        self.room = Room.from_row(event.row)
        return self._diff_room(previous, self.room)

    def _apply_player(self, event: ChangeEvent, key: Tuple[str, str]) -> List[LogMessage]:
        player_id = event.row_id
        previous = self.players.get(player_id)

        if event.kind == ChangeKind.DELETE:
            self.versions[key] = event.version
            if previous is None:
                return []
            del self.players[player_id]
            return [self._log(f"{previous.name} left the table")]

        if event.kind == ChangeKind.INSERT:
            if previous is not None:
                # Duplicate delivery of an insert we already hold.
                return []
            self.versions[key] = event.version
            player = load_player(event.row)
            self.players[player_id] = player
            return [self._log(f"{player.name} joined the table")]

        if previous is None:
            # Tombstoned, or an insert we never saw; the next snapshot picks it up.
            return []

        self.versions[key] = event.version
        current = load_player(event.row)
        self.players[player_id] = current
        return self._diff_player(previous, current)

    # Derived notifications -------------------------------------------

    def _diff_room(self, previous: Optional[Room], current: Room) -> List[LogMessage]:
        if previous is None or previous.stage == current.stage:
            return []
        stage = current.stage
        if stage == Stage.SHOWDOWN:
            if not current.winners:
                return [self._log("Showdown! No eligible hands", LogKind.ALERT)]
            names = " & ".join(winner.name for winner in current.winners)
            verb = "tie" if len(current.winners) > 1 else "wins"
            return [self._log(f"Showdown! {names} {verb} with {current.winners[0].description}", LogKind.SUCCESS)]
        if stage == Stage.WAITING:
            return [self._log(f"New round #{current.round_count + 1}")]
        text, kind = STAGE_MESSAGES[stage]
        return [self._log(text, kind)]

    def _diff_player(self, previous: Player, current: Player) -> List[LogMessage]:
        messages: List[LogMessage] = []
        if not previous.has_folded and current.has_folded:
            messages.append(self._log(f"{current.name} folded", LogKind.ALERT))
        if previous.is_revealed != current.is_revealed:
            if current.is_revealed:
                messages.append(self._log(f"{current.name} will show their cards"))
            else:
                messages.append(self._log(f"{current.name} will muck"))
        return messages

    def _end_session(self) -> List[LogMessage]:
        self.ended = True
        self.room = None
        self.players.clear()
        return [self._log("Host ended the game", LogKind.ALERT)]

    def _log(self, text: str, kind: LogKind = LogKind.INFO) -> LogMessage:
        message = LogMessage(id=f"{self.room_id}:{next(self._log_ids)}", text=text, kind=kind)
        if self._muted:
            return message
        self.logs.append(message)
        while len(self.logs) > max(self.log_history * 4, self.log_history):
            self.logs.popleft()
        return message
