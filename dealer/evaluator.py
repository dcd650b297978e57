from __future__ import annotations

import itertools
import logging
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from .cards import COMMUNITY_SIZE, RANKS, Card
from .models import Player, Winner

LOGGER = logging.getLogger("hand_resolver")

RANK_VALUE = {rank: idx for idx, rank in enumerate(RANKS, start=2)}
VALUE_NAME = {value: rank for rank, value in RANK_VALUE.items()}

Score = Tuple[int, List[int]]


def evaluate_best(cards: Sequence[Card]) -> Score:
    """Return a strength tuple for 5 to 7 cards (Texas Hold'em). Higher is better."""
    if len(cards) < 5:
        raise ValueError(f"Need at least 5 cards to evaluate, got {len(cards)}")
    best: Optional[Score] = None
    for combo in itertools.combinations(cards, 5):
        rank = _evaluate_five(combo)
        if best is None or rank > best:
            best = rank
    assert best is not None
    return best


def _evaluate_five(cards: Sequence[Card]) -> Score:
    ranks = sorted((RANK_VALUE[card.rank] for card in cards), reverse=True)
    suits = [card.suit for card in cards]

    is_flush = len(set(suits)) == 1
    straight_high = _straight_high(cards)

    counts: Dict[str, int] = {}
    for card in cards:
        counts.setdefault(card.rank, 0)
        counts[card.rank] += 1

    ordered_counts = sorted(counts.items(), key=lambda x: (x[1], RANK_VALUE[x[0]]), reverse=True)
    count_values = sorted(counts.values(), reverse=True)

    if straight_high and is_flush:
        return (8, [straight_high])
    if count_values[0] == 4:
        four_rank = RANK_VALUE[ordered_counts[0][0]]
        kicker = max(RANK_VALUE[r] for r, c in ordered_counts if r != ordered_counts[0][0])
        return (7, [four_rank, kicker])
    if count_values[0] == 3 and count_values[1] == 2:
        trips = RANK_VALUE[ordered_counts[0][0]]
        pair = RANK_VALUE[ordered_counts[1][0]]
        return (6, [trips, pair])
    if is_flush:
        return (5, ranks)
    if straight_high:
        return (4, [straight_high])
    if count_values[0] == 3:
        trips_rank = RANK_VALUE[ordered_counts[0][0]]
        kickers = [RANK_VALUE[r] for r, c in ordered_counts[1:]]
        return (3, [trips_rank] + kickers)
    if count_values[0] == 2 and count_values[1] == 2:
        pair_high = RANK_VALUE[ordered_counts[0][0]]
        pair_low = RANK_VALUE[ordered_counts[1][0]]
        kicker = max(RANK_VALUE[r] for r, c in ordered_counts if c == 1)
        return (2, [pair_high, pair_low, kicker])
    if count_values[0] == 2:
        pair_rank = RANK_VALUE[ordered_counts[0][0]]
        kickers = [RANK_VALUE[r] for r, c in ordered_counts[1:]]
        return (1, [pair_rank] + kickers)
    return (0, ranks)


def _straight_high(cards: Iterable[Card]) -> Optional[int]:
    ranks = {RANK_VALUE[card.rank] for card in cards}
    if 14 in ranks:  # Ace low
        ranks.add(1)
    ordered = sorted(ranks)
    best = None
    for idx in range(len(ordered) - 4):
        window = ordered[idx : idx + 5]
        if window == list(range(window[0], window[0] + 5)):
            best = window[-1]
    return best


def _plural(value: int) -> str:
    return f"{VALUE_NAME[value]}'s"


def describe_rank(score: Score) -> str:
    category, detail = score
    if category == 8:
        if detail[0] == 14:
            return "Royal Flush"
        return f"Straight Flush, {VALUE_NAME[detail[0]]} High"
    if category == 7:
        return f"Four of a Kind, {_plural(detail[0])}"
    if category == 6:
        return f"Full House, {_plural(detail[0])} over {_plural(detail[1])}"
    if category == 5:
        return f"Flush, {VALUE_NAME[detail[0]]} High"
    if category == 4:
        return f"Straight, {VALUE_NAME[detail[0]]} High"
    if category == 3:
        return f"Three of a Kind, {_plural(detail[0])}"
    if category == 2:
        return f"Two Pair, {_plural(detail[0])} & {_plural(detail[1])}"
    if category == 1:
        return f"Pair, {_plural(detail[0])}"
    return f"High Card, {VALUE_NAME[detail[0]]}"


def eligible_players(players: Iterable[Player]) -> List[Player]:
    return [player for player in players if not player.has_folded and len(player.hand) == 2]


def resolve_winners(community: Sequence[Card], players: Sequence[Player]) -> List[Winner]:
    """Pick the best hand(s) at showdown.

    Folded players and players without exactly two hole cards are skipped.
    Ties share the win and keep the input player order. A malformed hand
    never escapes as an exception: the showdown simply has no winners.
    """
    contenders = eligible_players(players)
    if len(community) < COMMUNITY_SIZE or not contenders:
        return []

    try:
        board = list(community)
        scores = [(player, evaluate_best(list(player.hand) + board)) for player in contenders]
        best = max(score for _, score in scores)
        return [
            Winner(player_id=player.id, name=player.name, description=describe_rank(score))
            for player, score in scores
            if score == best
        ]
    except Exception:
        LOGGER.exception("Failed to resolve showdown for %s players", len(contenders))
        return []
