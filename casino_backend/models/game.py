from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from enum import IntEnum
from fractions import Fraction
from typing import Dict, Tuple, Union


class GameType(IntEnum):
    """Matches the uint8 game type emitted by the casino contract."""

    MINES = 0
    PLINKO = 1
    ROULETTE = 2
    WHEEL = 3

    @classmethod
    def label(cls, value: int) -> str:
        try:
            return cls(value).name
        except ValueError:
            return f"UNKNOWN({value})"


# game type -> (win threshold on a 0..99 draw, payout multiplier)
OUTCOME_TABLE: Dict[int, Tuple[int, Decimal]] = {
    GameType.MINES: (45, Decimal("2.0")),
    GameType.PLINKO: (40, Decimal("2.2")),
    GameType.ROULETTE: (48, Decimal("1.9")),
    GameType.WHEEL: (35, Decimal("2.5")),
}
DEFAULT_OUTCOME: Tuple[int, Decimal] = (50, Decimal("1.8"))


@dataclass(frozen=True)
class GameOutcome:
    won: bool
    win_amount: int
    draw: int

    def to_dict(self) -> Dict:
        return {"won": self.won, "winAmount": int(self.win_amount), "draw": self.draw}


def outcome_params(game_type: int) -> Tuple[int, Decimal]:
    return OUTCOME_TABLE.get(int(game_type), DEFAULT_OUTCOME)


def compute_outcome(game_type: Union[GameType, int], random_value: int, bet_amount: int) -> GameOutcome:
    """
    Pure payout step of the settlement pipeline.

    draw = random_value mod 100; the game is won when draw < threshold and pays
    floor(bet_amount * multiplier). The multiplication is exact (Fraction), so
    wei-sized bets floor correctly.
    """
    if bet_amount < 0:
        raise ValueError("bet_amount must be >= 0")

    draw = int(random_value) % 100
    threshold, multiplier = outcome_params(game_type)

    if draw >= threshold:
        return GameOutcome(won=False, win_amount=0, draw=draw)

    ratio = Fraction(multiplier)
    win_amount = (int(bet_amount) * ratio.numerator) // ratio.denominator
    return GameOutcome(won=True, win_amount=win_amount, draw=draw)
