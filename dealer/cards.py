from __future__ import annotations

import random
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Tuple

SUITS = ("♠", "♥", "♣", "♦")
RANKS = ("2", "3", "4", "5", "6", "7", "8", "9", "10", "J", "Q", "K", "A")

DECK_SIZE = len(SUITS) * len(RANKS)
COMMUNITY_SIZE = 5
SWAPS_PER_CARD = 5

# ASCII aliases so labels like "Th" or "As" parse alongside "10♥" / "A♠".
_SUIT_ALIASES = {"s": "♠", "h": "♥", "c": "♣", "d": "♦"}
_RANK_ALIASES = {"T": "10"}


@dataclass(frozen=True)
class Card:
    rank: str
    suit: str

    def __post_init__(self) -> None:
        if self.rank not in RANKS:
            raise ValueError(f"Invalid rank: {self.rank}")
        if self.suit not in SUITS:
            raise ValueError(f"Invalid suit: {self.suit}")

    @property
    def id(self) -> str:
        return f"{self.rank}{self.suit}"

    def to_dict(self) -> Dict[str, str]:
        return {"suit": self.suit, "rank": self.rank, "id": self.id}

    @classmethod
    def from_dict(cls, data: Dict[str, str]) -> "Card":
        if not isinstance(data, dict):
            raise ValueError(f"Invalid card payload: {data!r}")
        return cls(str(data.get("rank")), str(data.get("suit")))


def base_deck() -> List[Card]:
    """Canonical ordering: suit by suit, ranks low to high within a suit."""
    return [Card(rank, suit) for suit in SUITS for rank in RANKS]


def swap_count(bias_percent: int) -> int:
    return (DECK_SIZE * SWAPS_PER_CARD * bias_percent) // 100


def generate_deck(bias_percent: int = 100, rng: Optional[random.Random] = None) -> List[Card]:
    """Build a fresh deck and scramble it with ``swap_count(bias_percent)`` random swaps.

    The shuffle factor is a fairness slider, not a Fisher-Yates shuffle: each
    pass picks two uniformly random positions (possibly the same one) and
    exchanges them. ``0`` keeps the base order, ``100`` performs 260 swaps
    which is close to uniform for 52 cards; values in between leave some of
    the base ordering intact.
    """
    bias = validate_bias(bias_percent)
    deck = base_deck()
    if bias == 0:
        return deck
    rng = rng or random.Random()
    for _ in range(swap_count(bias)):
        i = rng.randrange(DECK_SIZE)
        j = rng.randrange(DECK_SIZE)
        deck[i], deck[j] = deck[j], deck[i]
    return deck


def validate_bias(bias_percent: int) -> int:
    if isinstance(bias_percent, bool) or not isinstance(bias_percent, int):
        raise ValueError(f"Shuffle factor must be an integer, got {bias_percent!r}")
    if not 0 <= bias_percent <= 100:
        raise ValueError(f"Shuffle factor must be between 0 and 100, got {bias_percent}")
    return bias_percent


def deal(deck: List[Card], count: int) -> List[Card]:
    """Pop ``count`` cards off the tail of ``deck``."""
    if len(deck) < count:
        raise ValueError("Not enough cards left in deck")
    return [deck.pop() for _ in range(count)]


def split_for_round(deck: List[Card]) -> Tuple[List[Card], List[Card]]:
    """Community cards come off the front, the rest stays as the dealing deck."""
    if len(deck) < COMMUNITY_SIZE:
        raise ValueError("Not enough cards left in deck")
    return list(deck[:COMMUNITY_SIZE]), list(deck[COMMUNITY_SIZE:])


def cards_to_dicts(cards: Iterable[Card]) -> List[Dict[str, str]]:
    return [card.to_dict() for card in cards]


def cards_from_dicts(rows: Optional[Iterable[Dict[str, str]]]) -> List[Card]:
    return [Card.from_dict(row) for row in rows or []]


def parse_label(label: str) -> Card:
    label = label.strip()
    if len(label) < 2:
        raise ValueError(f"Invalid card label: {label}")
    rank, suit = label[:-1], label[-1]
    rank = _RANK_ALIASES.get(rank.upper(), rank.upper())
    suit = _SUIT_ALIASES.get(suit.lower(), suit)
    return Card(rank, suit)


def parse_cards(labels: Iterable[str]) -> List[Card]:
    return [parse_label(label) for label in labels]
