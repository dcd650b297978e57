"""Shared table primitives: deck, hand resolution, round flow, registry and mirror."""

from .cards import Card, RANKS, SUITS, base_deck, deal, generate_deck, parse_cards
from .errors import ConflictError, NotFoundError, SchemaError, SessionExpiredError, StoreUnavailableError, TableError
from .evaluator import describe_rank, evaluate_best, resolve_winners
from .models import ChangeEvent, ChangeKind, Player, PlayerStatus, Room, SessionConfig, Stage, Winner
from .reconciler import SessionMirror
from .registry import JoinResult, PlayerRegistry
from .rounds import RoundEngine, RoundTransition, plan_advance
from .store import MemoryStore

__all__ = [
    "Card",
    "RANKS",
    "SUITS",
    "base_deck",
    "deal",
    "generate_deck",
    "parse_cards",
    "ConflictError",
    "NotFoundError",
    "SchemaError",
    "SessionExpiredError",
    "StoreUnavailableError",
    "TableError",
    "describe_rank",
    "evaluate_best",
    "resolve_winners",
    "ChangeEvent",
    "ChangeKind",
    "Player",
    "PlayerStatus",
    "Room",
    "SessionConfig",
    "Stage",
    "Winner",
    "SessionMirror",
    "JoinResult",
    "PlayerRegistry",
    "RoundEngine",
    "RoundTransition",
    "plan_advance",
    "MemoryStore",
]
