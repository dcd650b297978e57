import random

import pytest

from dealer.cards import (
    Card,
    base_deck,
    cards_from_dicts,
    cards_to_dicts,
    deal,
    generate_deck,
    parse_cards,
    parse_label,
    split_for_round,
    swap_count,
    validate_bias,
)


def mean_displacement(bias: int, trials: int = 200, seed: int = 1234) -> float:
    rng = random.Random(seed)
    home = {card: idx for idx, card in enumerate(base_deck())}
    total = 0
    for _ in range(trials):
        deck = generate_deck(bias, rng)
        total += sum(abs(idx - home[card]) for idx, card in enumerate(deck))
    return total / (trials * len(home))


def test_base_deck_is_suit_major_with_ascending_ranks():
    deck = base_deck()
    assert len(deck) == 52
    assert len(set(deck)) == 52
    assert deck[0] == Card("2", "♠")
    assert deck[12] == Card("A", "♠")
    assert deck[13] == Card("2", "♥")
    assert deck[-1] == Card("A", "♦")


def test_every_bias_produces_a_complete_deck():
    full = set(base_deck())
    for bias in range(101):
        deck = generate_deck(bias, random.Random(bias))
        assert len(deck) == 52, f"bias={bias}"
        assert set(deck) == full, f"bias={bias}"


def test_bias_zero_keeps_base_order():
    assert generate_deck(0, random.Random(99)) == base_deck()


def test_swap_count_scales_with_bias():
    assert swap_count(0) == 0
    assert swap_count(1) == 2
    assert swap_count(50) == 130
    assert swap_count(100) == 260


def test_higher_bias_moves_cards_further():
    means = {bias: mean_displacement(bias) for bias in (0, 2, 5, 10, 20, 100)}
    assert means[0] == 0
    ordered = [means[bias] for bias in (0, 2, 5, 10, 20)]
    assert ordered == sorted(ordered)
    assert len(set(ordered)) == len(ordered)
    assert means[100] >= means[20]


def test_same_seed_gives_same_deck():
    assert generate_deck(60, random.Random(5)) == generate_deck(60, random.Random(5))


@pytest.mark.parametrize("bad", [-1, 101, True, "50", 50.5])
def test_validate_bias_rejects_out_of_range_or_non_integer(bad):
    with pytest.raises(ValueError, match="Shuffle factor"):
        validate_bias(bad)


def test_deal_pops_from_the_tail():
    deck = base_deck()
    hand = deal(deck, 2)
    assert hand == [Card("A", "♦"), Card("K", "♦")]
    assert len(deck) == 50


def test_deal_raises_when_deck_exhausted():
    deck = [Card("A", "♥"), Card("K", "♦")]
    deal(deck, 2)
    with pytest.raises(ValueError, match="Not enough cards"):
        deal(deck, 1)


def test_split_for_round_takes_community_from_the_front():
    deck = base_deck()
    community, rest = split_for_round(deck)
    assert community == deck[:5]
    assert rest == deck[5:]
    assert len(rest) == 47


def test_card_validation_rejects_invalid_labels():
    with pytest.raises(ValueError, match="Invalid rank"):
        Card("1", "♥")
    with pytest.raises(ValueError, match="Invalid suit"):
        Card("A", "x")


def test_parse_label_accepts_ascii_and_symbol_suits():
    assert parse_label("Th") == Card("10", "♥")
    assert parse_label("10d") == Card("10", "♦")
    assert parse_label("A♠") == Card("A", "♠")
    assert parse_cards(["qc", "2s"]) == [Card("Q", "♣"), Card("2", "♠")]
    with pytest.raises(ValueError):
        parse_label("Z")


def test_card_rows_carry_suit_rank_and_id():
    card = Card("10", "♥")
    assert card.to_dict() == {"suit": "♥", "rank": "10", "id": "10♥"}
    assert cards_from_dicts(cards_to_dicts([card])) == [card]
    with pytest.raises(ValueError):
        cards_from_dicts([{"suit": "♥", "rank": "1"}])
