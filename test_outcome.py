from decimal import Decimal

import pytest

from casino_backend.models.game import (
    DEFAULT_OUTCOME,
    OUTCOME_TABLE,
    GameType,
    compute_outcome,
    outcome_params,
)


@pytest.mark.parametrize("game_type", list(GameType))
def test_won_exactly_below_threshold(game_type):
    threshold, _ = OUTCOME_TABLE[game_type]
    for draw in range(100):
        outcome = compute_outcome(game_type, draw, 10**18)
        assert outcome.won == (draw < threshold)
        assert outcome.draw == draw
        if not outcome.won:
            assert outcome.win_amount == 0


@pytest.mark.parametrize("game_type,bet,expected", [
    (GameType.MINES, 3, 6),
    (GameType.PLINKO, 3, 6),           # 6.6
    (GameType.ROULETTE, 1, 1),         # 1.9
    (GameType.ROULETTE, 10**18, 19 * 10**17),
    (GameType.WHEEL, 3, 7),            # 7.5
    (GameType.WHEEL, 1, 2),            # 2.5
])
def test_win_amount_is_floored(game_type, bet, expected):
    assert compute_outcome(game_type, 0, bet).win_amount == expected


def test_win_amount_exact_for_huge_bets():
    bet = 123456789012345678901234567891
    outcome = compute_outcome(GameType.PLINKO, 5, bet)
    assert outcome.win_amount == bet * 22 // 10


def test_draw_uses_full_random_value():
    value = 2**256 - 1  # ...35 mod 100
    outcome = compute_outcome(GameType.ROULETTE, value, 100)
    assert outcome.draw == value % 100
    assert outcome.won == (value % 100 < 48)


def test_unknown_game_type_uses_default():
    assert outcome_params(9) == DEFAULT_OUTCOME
    assert compute_outcome(9, 49, 10).win_amount == 18
    assert not compute_outcome(9, 50, 10).won


def test_zero_bet_wins_nothing():
    outcome = compute_outcome(GameType.MINES, 1, 0)
    assert outcome.won
    assert outcome.win_amount == 0


def test_negative_bet_rejected():
    with pytest.raises(ValueError):
        compute_outcome(GameType.MINES, 1, -1)


def test_table_values():
    assert OUTCOME_TABLE[GameType.ROULETTE] == (48, Decimal("1.9"))
    assert GameType.label(2) == "ROULETTE"
    assert GameType.label(42) == "UNKNOWN(42)"
