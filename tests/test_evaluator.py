import random

import pytest

from dealer.cards import generate_deck, parse_cards
from dealer.evaluator import describe_rank, eligible_players, evaluate_best, resolve_winners

from .helpers import make_player


def test_evaluate_best_identifies_all_hand_categories():
    cases = [
        (8, ["Ah", "Kh", "Qh", "Jh", "Th"], "Royal Flush"),
        (8, ["9c", "8c", "7c", "6c", "5c"], "Straight Flush, 9 High"),
        (7, ["Qs", "Qh", "Qd", "Qc", "Kd"], "Four of a Kind, Q's"),
        (6, ["Kc", "Kd", "Ks", "3h", "3s"], "Full House, K's over 3's"),
        (5, ["Ah", "Jh", "9h", "6h", "2h"], "Flush, A High"),
        (4, ["9h", "8d", "7c", "6s", "5h"], "Straight, 9 High"),
        (3, ["7h", "7d", "7s", "Qd", "Js"], "Three of a Kind, 7's"),
        (2, ["Jh", "Jd", "4s", "4c", "As"], "Two Pair, J's & 4's"),
        (1, ["Th", "Ts", "Qh", "8d", "4c"], "Pair, 10's"),
        (0, ["As", "Kd", "Jh", "9c", "4d"], "High Card, A"),
    ]

    for expected_rank, labels, description in cases:
        score = evaluate_best(parse_cards(labels))
        assert score[0] == expected_rank, f"labels={labels}"
        assert describe_rank(score) == description


def test_evaluate_best_handles_wheel_straight():
    cards = parse_cards(["Ah", "2d", "3c", "4s", "5h", "9d", "Kd"])
    score = evaluate_best(cards)
    assert score == (4, [5])
    assert describe_rank(score) == "Straight, 5 High"


def test_evaluate_best_prefers_the_highest_straight_window():
    cards = parse_cards(["2h", "3d", "4c", "5s", "6h", "7d", "Kd"])
    assert evaluate_best(cards) == (4, [7])


def test_evaluate_best_compares_kickers_for_equal_pairs():
    hand_a = parse_cards(["Ah", "Ad", "Kc", "Qs", "9h", "2d", "3c"])
    hand_b = parse_cards(["Ah", "Ad", "Qc", "Js", "8h", "2d", "3c"])
    assert evaluate_best(hand_a) > evaluate_best(hand_b)


def test_evaluate_best_requires_five_cards():
    with pytest.raises(ValueError, match="at least 5"):
        evaluate_best(parse_cards(["Ah", "Kh", "Qh", "Jh"]))


def test_evaluate_best_scores_any_seven_cards_from_a_deck():
    deck = generate_deck(100, random.Random(777))
    for idx in range(0, 42, 7):
        rank, detail = evaluate_best(deck[idx : idx + 7])
        assert 0 <= rank <= 8
        assert isinstance(detail, list)


def test_resolve_winners_picks_the_best_hand():
    board = parse_cards(["2c", "7d", "9h", "Jc", "Ks"])
    players = [
        make_player("p1", "Ana", ["Kh", "Kd"]),
        make_player("p2", "Ben", ["Ah", "Qd"]),
    ]
    winners = resolve_winners(board, players)
    assert [winner.player_id for winner in winners] == ["p1"]
    assert winners[0].name == "Ana"
    assert winners[0].description == "Three of a Kind, K's"


def test_royal_flush_on_the_board_is_a_tie_for_everyone():
    board = parse_cards(["As", "Ks", "Qs", "Js", "Ts"])
    players = [
        make_player("p1", "Ana", ["2h", "3d"]),
        make_player("p2", "Ben", ["4c", "5h"]),
    ]
    winners = resolve_winners(board, players)
    assert [winner.player_id for winner in winners] == ["p1", "p2"]
    assert {winner.description for winner in winners} == {"Royal Flush"}


def test_heart_royal_board_splits_between_clubs_and_diamonds():
    board = parse_cards(["Ah", "Kh", "Qh", "Jh", "Th"])
    players = [
        make_player("a", "A", ["2c", "3c"]),
        make_player("b", "B", ["4d", "5d"]),
    ]
    winners = resolve_winners(board, players)
    assert [(winner.player_id, winner.description) for winner in winners] == [
        ("a", "Royal Flush"),
        ("b", "Royal Flush"),
    ]


def test_resolve_winners_skips_folded_and_dealt_out_players():
    board = parse_cards(["2c", "7d", "9h", "Jc", "Ks"])
    players = [
        make_player("p1", "Ana", ["Ah", "Ad"], folded=True),
        make_player("p2", "Ben", ["3h", "4d"]),
        make_player("p3", "Cy"),
    ]
    assert [player.id for player in eligible_players(players)] == ["p2"]
    assert [winner.player_id for winner in resolve_winners(board, players)] == ["p2"]


def test_resolve_winners_needs_a_full_board_and_a_contender():
    players = [make_player("p1", "Ana", ["Ah", "Ad"])]
    assert resolve_winners(parse_cards(["2c", "7d", "9h", "Jc"]), players) == []
    board = parse_cards(["2c", "7d", "9h", "Jc", "Ks"])
    assert resolve_winners(board, [make_player("p1", "Ana", ["Ah", "Ad"], folded=True)]) == []
    assert resolve_winners(board, []) == []


def test_resolve_winners_swallows_evaluation_failures(monkeypatch):
    board = parse_cards(["2c", "7d", "9h", "Jc", "Ks"])
    players = [make_player("p1", "Ana", ["Ah", "Ad"])]

    def explode(cards):
        raise KeyError("bad card")

    monkeypatch.setattr("dealer.evaluator.evaluate_best", explode)
    assert resolve_winners(board, players) == []
