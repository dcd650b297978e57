from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from .cards import Card, cards_from_dicts, cards_to_dicts

ROOMS = "rooms"
PLAYERS = "players"


class Stage(str, Enum):
    WAITING = "waiting"
    PREFLOP = "preflop"
    FLOP = "flop"
    TURN = "turn"
    RIVER = "river"
    SHOWDOWN = "showdown"

    @property
    def index(self) -> int:
        return STAGES.index(self)

    @property
    def visible_community(self) -> int:
        return VISIBLE_COMMUNITY[self]


STAGES = [Stage.WAITING, Stage.PREFLOP, Stage.FLOP, Stage.TURN, Stage.RIVER, Stage.SHOWDOWN]

# Concealment is presentation only: the room always stores all five cards.
VISIBLE_COMMUNITY = {
    Stage.WAITING: 0,
    Stage.PREFLOP: 0,
    Stage.FLOP: 3,
    Stage.TURN: 4,
    Stage.RIVER: 5,
    Stage.SHOWDOWN: 5,
}


class PlayerStatus(str, Enum):
    ACTIVE = "active"
    FOLDED = "folded"


class LogKind(str, Enum):
    INFO = "info"
    ALERT = "alert"
    SUCCESS = "success"


@dataclass
class SessionConfig:
    host: str = "0.0.0.0"
    port: int = 8765
    default_shuffle_factor: int = 100
    room_code_min: int = 1000
    room_code_max: int = 9999
    token_ttl_s: float = 12 * 60 * 60
    read_retries: int = 3
    retry_backoff_ms: int = 100
    request_timeout_s: float = 10.0
    log_history: int = 5


@dataclass(frozen=True)
class Winner:
    player_id: str
    name: str
    description: str

    def to_dict(self) -> Dict[str, str]:
        return {"player_id": self.player_id, "name": self.name, "description": self.description}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Winner":
        return cls(str(data["player_id"]), str(data.get("name", "")), str(data.get("description", "")))


@dataclass
class Room:
    id: str
    stage: Stage = Stage.WAITING
    community_cards: List[Card] = field(default_factory=list)
    deck: List[Card] = field(default_factory=list)
    shuffle_factor: int = 100
    qr_url: Optional[str] = None
    winners: List[Winner] = field(default_factory=list)
    dealer_index: int = 0
    round_count: int = 0
    created_at: Optional[str] = None
    version: int = 0

    def visible_community(self) -> List[Card]:
        return self.community_cards[: self.stage.visible_community]

    def to_row(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "stage": self.stage.value,
            "community_cards": cards_to_dicts(self.community_cards),
            "deck": cards_to_dicts(self.deck),
            "shuffle_factor": self.shuffle_factor,
            "qr_url": self.qr_url,
            "winners": [winner.to_dict() for winner in self.winners],
            "dealer_index": self.dealer_index,
            "round_count": self.round_count,
        }

    def to_record(self) -> Dict[str, Any]:
        return {**self.to_row(), "created_at": self.created_at, "version": self.version}

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "Room":
        return cls(
            id=str(row["id"]),
            stage=Stage(row.get("stage") or Stage.WAITING.value),
            community_cards=cards_from_dicts(row.get("community_cards")),
            deck=cards_from_dicts(row.get("deck")),
            # Clamped so a bad write can not wedge the next reset.
            shuffle_factor=min(100, max(0, int(row.get("shuffle_factor", 100)))),
            qr_url=row.get("qr_url"),
            winners=[Winner.from_dict(item) for item in row.get("winners") or []],
            dealer_index=int(row.get("dealer_index", 0)),
            round_count=int(row.get("round_count", 0)),
            created_at=row.get("created_at"),
            version=int(row.get("version", 0)),
        )


@dataclass
class Player:
    id: str
    room_id: str
    name: str
    hand: List[Card] = field(default_factory=list)
    status: PlayerStatus = PlayerStatus.ACTIVE
    is_revealed: bool = False
    created_at: Optional[str] = None
    version: int = 0

    @property
    def has_folded(self) -> bool:
        return self.status == PlayerStatus.FOLDED

    def to_row(self) -> Dict[str, Any]:
        return {
            "room_id": self.room_id,
            "name": self.name,
            "hand": cards_to_dicts(self.hand),
            "status": self.status.value,
            "is_revealed": self.is_revealed,
        }

    def to_record(self) -> Dict[str, Any]:
        return {"id": self.id, **self.to_row(), "created_at": self.created_at, "version": self.version}

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "Player":
        return cls(
            id=str(row["id"]),
            room_id=str(row["room_id"]),
            name=str(row.get("name", "")),
            hand=cards_from_dicts(row.get("hand")),
            status=PlayerStatus(row.get("status") or PlayerStatus.ACTIVE.value),
            is_revealed=bool(row.get("is_revealed", False)),
            created_at=row.get("created_at"),
            version=int(row.get("version", 0)),
        )


@dataclass(frozen=True)
class LogMessage:
    id: str
    text: str
    kind: LogKind = LogKind.INFO


class ChangeKind(str, Enum):
    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"


@dataclass(frozen=True)
class ChangeEvent:
    table: str
    kind: ChangeKind
    row_id: str
    row: Dict[str, Any]
    version: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "table": self.table,
            "kind": self.kind.value,
            "row_id": self.row_id,
            "row": self.row,
            "version": self.version,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ChangeEvent":
        return cls(
            table=str(data["table"]),
            kind=ChangeKind(data["kind"]),
            row_id=str(data["row_id"]),
            row=dict(data.get("row") or {}),
            version=int(data.get("version", 0)),
        )
