import asyncio

import pytest

from dealer.cards import base_deck, generate_deck, parse_cards
from dealer.errors import ConflictError
from dealer.models import PLAYERS, ROOMS, PlayerStatus, Room, SessionConfig, Stage
from dealer.rounds import RoundEngine, dealer_player, load_player, next_stage, plan_advance
from dealer.store import MemoryStore

from .helpers import make_player, open_table, seeded


def test_stage_order_wraps_after_showdown():
    order = [Stage.WAITING]
    for _ in range(6):
        order.append(next_stage(order[-1]))
    assert [stage.value for stage in order] == [
        "waiting",
        "preflop",
        "flop",
        "turn",
        "river",
        "showdown",
        "waiting",
    ]


def test_visible_community_follows_stage():
    room = Room(id="1234", community_cards=base_deck()[:5])
    seen = []
    for stage in (Stage.WAITING, Stage.PREFLOP, Stage.FLOP, Stage.TURN, Stage.RIVER, Stage.SHOWDOWN):
        room.stage = stage
        seen.append(len(room.visible_community()))
    assert seen == [0, 0, 3, 4, 5, 5]


def test_preflop_deals_two_cards_to_each_active_player():
    deck = base_deck()
    room = Room(id="1234", community_cards=deck[:5], deck=deck[5:])
    players = [
        make_player("p1", "Ana"),
        make_player("p2", "Ben", folded=True),
        make_player("p3", "Cy"),
    ]
    transition = plan_advance(room, players)

    assert transition.to_stage == Stage.PREFLOP
    assert set(transition.player_changes) == {"p1", "p3"}
    assert transition.player_changes["p1"]["hand"] == [card.to_dict() for card in parse_cards(["A♦", "K♦"])]
    assert len(transition.room_changes["deck"]) == 47 - 4
    dealt = [card["id"] for changes in transition.player_changes.values() for card in changes["hand"]]
    remaining = [card["id"] for card in transition.room_changes["deck"]]
    assert not set(dealt) & set(remaining)


def test_middle_stages_only_move_the_stage():
    room = Room(id="1234", stage=Stage.FLOP, community_cards=base_deck()[:5], deck=base_deck()[5:])
    transition = plan_advance(room, [make_player("p1", "Ana", ["2h", "3h"])])
    assert transition.room_changes == {"stage": "turn"}
    assert transition.player_changes == {}


def test_showdown_records_winners():
    room = Room(id="1234", stage=Stage.RIVER, community_cards=parse_cards(["As", "Ks", "Qs", "Js", "Ts"]))
    players = [make_player("p1", "Ana", ["2h", "3d"]), make_player("p2", "Ben", ["4c", "5h"])]
    transition = plan_advance(room, players)
    assert transition.to_stage == Stage.SHOWDOWN
    assert [winner["player_id"] for winner in transition.room_changes["winners"]] == ["p1", "p2"]


def test_reset_after_showdown_starts_a_fresh_round():
    room = Room(
        id="1234",
        stage=Stage.SHOWDOWN,
        community_cards=parse_cards(["As", "Ks", "Qs", "Js", "Ts"]),
        shuffle_factor=0,
        round_count=3,
        dealer_index=1,
    )
    players = [
        make_player("p1", "Ana", ["2h", "3d"], folded=True),
        make_player("p2", "Ben", ["4c", "5h"]),
    ]
    transition = plan_advance(room, players, seeded())

    assert transition.is_reset
    changes = transition.room_changes
    assert changes["stage"] == "waiting"
    assert changes["round_count"] == 4
    assert changes["dealer_index"] == 2
    assert changes["winners"] == []
    # Bias 0 keeps the base order, so the new board is the first five base cards.
    assert [card["id"] for card in changes["community_cards"]] == [card.id for card in base_deck()[:5]]
    assert len(changes["deck"]) == 47
    for player_changes in transition.player_changes.values():
        assert player_changes == {"hand": [], "status": "active", "is_revealed": False}


def test_reset_draws_the_board_from_a_brand_new_deck():
    previous = generate_deck(100, seeded(1))
    room = Room(
        id="1234",
        stage=Stage.SHOWDOWN,
        community_cards=previous[:5],
        deck=previous[5:43],
        shuffle_factor=100,
    )
    changes = plan_advance(room, [], seeded(2)).room_changes

    fresh = generate_deck(100, seeded(2))
    board = [card["id"] for card in changes["community_cards"]]
    deck = [card["id"] for card in changes["deck"]]
    assert board == [card.id for card in fresh[:5]]
    assert deck == [card.id for card in fresh[5:]]
    # Every card is back, including the ones dealt and shown last round.
    assert len(set(board + deck)) == 52


def test_out_of_range_shuffle_factor_is_clamped_on_load():
    assert Room.from_row({"id": "1234", "shuffle_factor": 150}).shuffle_factor == 100
    assert Room.from_row({"id": "1234", "shuffle_factor": -5}).shuffle_factor == 0

    room = Room.from_row({"id": "1234", "stage": "showdown", "shuffle_factor": 150})
    transition = plan_advance(room, [], seeded())
    assert transition.room_changes["stage"] == "waiting"


def test_dealer_player_rotates_with_dealer_index():
    players = [make_player("p1", "Ana"), make_player("p2", "Ben")]
    assert dealer_player(Room(id="1", dealer_index=0), players).id == "p1"
    assert dealer_player(Room(id="1", dealer_index=3), players).id == "p2"
    assert dealer_player(Room(id="1"), []) is None


def test_load_player_blanks_malformed_hand():
    player = load_player({"id": "p1", "room_id": "1234", "name": "Ana", "hand": [{"rank": "1", "suit": "x"}]})
    assert player.hand == []


def test_create_room_uses_code_range_and_default_bias():
    async def scenario():
        store, engine, _, room, _ = await open_table(names=())
        assert 1000 <= int(room.id) <= 9999
        assert room.stage == Stage.WAITING
        assert len(room.community_cards) == 5
        assert len(room.deck) == 47
        assert room.shuffle_factor == 100
        assert room.version == 1

    asyncio.run(scenario())


def test_create_room_skips_codes_in_use():
    async def scenario():
        config = SessionConfig(room_code_min=1000, room_code_max=1001)
        engine = RoundEngine(MemoryStore(), config, seeded())
        first = await engine.create_room()
        second = await engine.create_room()
        assert {first.id, second.id} == {"1000", "1001"}
        with pytest.raises(ConflictError, match="No free room code"):
            await engine.create_room()

    asyncio.run(scenario())


def test_full_round_through_the_store():
    async def scenario():
        store, engine, _, room, players = await open_table(("Ana", "Ben", "Cy"))
        stages = []
        for _ in range(5):
            room = await engine.advance(room.id)
            stages.append(room.stage)
        assert stages == [Stage.PREFLOP, Stage.FLOP, Stage.TURN, Stage.RIVER, Stage.SHOWDOWN]

        rows = await store.select(PLAYERS, "room_id", room.id)
        assert all(len(row["hand"]) == 2 for row in rows)
        assert len(room.deck) == 47 - 6
        assert room.winners

        room = await engine.advance(room.id)
        assert room.stage == Stage.WAITING
        assert room.round_count == 1
        assert room.winners == []
        rows = await store.select(PLAYERS, "room_id", room.id)
        assert all(row["hand"] == [] and row["status"] == "active" for row in rows)

    asyncio.run(scenario())


def test_folded_player_is_not_dealt_in():
    async def scenario():
        store, engine, _, room, players = await open_table(("Ana", "Ben"))
        await engine.fold(players[1].id)
        await engine.advance(room.id)
        ben = await store.get(PLAYERS, players[1].id)
        assert ben["hand"] == []
        assert ben["status"] == PlayerStatus.FOLDED.value

    asyncio.run(scenario())


def test_stale_advance_raises_conflict(monkeypatch):
    async def scenario():
        store, engine, _, room, _ = await open_table(("Ana",))
        original_load = engine.load

        async def racing_load(room_id):
            loaded = await original_load(room_id)
            # Another host advances between our read and our write.
            await store.update(ROOMS, room_id, {"stage": "preflop"})
            return loaded

        monkeypatch.setattr(engine, "load", racing_load)
        with pytest.raises(ConflictError):
            await engine.advance(room.id)
        assert (await store.get(ROOMS, room.id))["stage"] == "preflop"

    asyncio.run(scenario())


def test_advance_on_missing_room_returns_none():
    async def scenario():
        store, engine, _, room, _ = await open_table(("Ana",))
        assert await engine.end_room(room.id) is True
        assert await engine.advance(room.id) is None
        assert await engine.end_room(room.id) is False

    asyncio.run(scenario())


def test_malformed_hand_does_not_block_showdown():
    async def scenario():
        store, engine, _, room, players = await open_table(("Ana", "Ben"))
        for _ in range(4):
            room = await engine.advance(room.id)
        await store.update(PLAYERS, players[0].id, {"hand": [{"rank": "1", "suit": "x"}, {"rank": "2", "suit": "♠"}]})
        room = await engine.advance(room.id)
        assert room.stage == Stage.SHOWDOWN
        assert [winner.player_id for winner in room.winners] == [players[1].id]

    asyncio.run(scenario())


def test_settings_and_player_actions():
    async def scenario():
        store, engine, _, room, players = await open_table(("Ana",))
        updated = await engine.set_shuffle_factor(room.id, 0)
        assert updated.shuffle_factor == 0
        with pytest.raises(ValueError):
            await engine.set_shuffle_factor(room.id, 150)
        assert (await engine.set_qr_url(room.id, "https://example.test/join")).qr_url == "https://example.test/join"

        shown = await engine.toggle_reveal(players[0].id)
        assert shown.is_revealed is True
        hidden = await engine.toggle_reveal(players[0].id, current=True)
        assert hidden.is_revealed is False
        folded = await engine.fold(players[0].id)
        assert folded.has_folded

    asyncio.run(scenario())
