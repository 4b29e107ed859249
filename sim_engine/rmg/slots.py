"""Slots — three reels, each symbol derived from (outcome, reel index)."""
from decimal import Decimal

from sim_engine.rmg.base import BaseGameAdapter, GameVerdict
from sim_engine.rmg.bets import SlotsBet

REEL_COUNT = 3

# (name, multiplier, upper bound of the 0-99 key band); rarer symbols pay more
SYMBOLS = [
    ("cherry", 2, 25),
    ("lemon", 3, 45),
    ("orange", 4, 63),
    ("grape", 5, 78),
    ("diamond", 8, 88),
    ("star", 10, 95),
    ("seven", 20, 100),
]
SYMBOL_MULTIPLIERS = {name: mult for name, mult, _ in SYMBOLS}


def reel_key(outcome: float, reel_index: int) -> Decimal:
    """(outcome * (reel+1) * 13) mod 100, computed in Decimal so 2-dp outcomes stay exact.

    Matches the float formula on every outcome: a key only lands on an integer
    band edge when the product is exact in binary too.
    """
    return (Decimal(str(outcome)) * (reel_index + 1) * 13) % 100


def symbol_for(outcome: float, reel_index: int) -> str:
    key = reel_key(outcome, reel_index)
    for name, _, upper in SYMBOLS:
        if key < upper:
            return name
    return SYMBOLS[-1][0]


class SlotsAdapter(BaseGameAdapter):
    game_type = "slots"
    display_name = "Slots"
    bet_model = SlotsBet

    def spin(self, outcome: float) -> list[str]:
        return [symbol_for(outcome, i) for i in range(REEL_COUNT)]

    def evaluate(self, outcome: float, bet: SlotsBet) -> GameVerdict:
        self.check_bet(bet)
        reels = self.spin(outcome)
        a, b, c = reels
        if a == b == c:
            mult, line = float(SYMBOL_MULTIPLIERS[a]), "three_of_a_kind"
        elif a == b or b == c:
            # Adjacent pair pays half the symbol value
            mult, line = SYMBOL_MULTIPLIERS[b] * 0.5, "pair"
        else:
            mult, line = 0.0, "none"
        return GameVerdict(won=mult > 0, multiplier=mult,
                           details={"reels": reels, "line": line})

    def paytable(self) -> list[dict]:
        rows, lower = [], 0
        for name, mult, upper in SYMBOLS:
            rows.append({"symbol": name, "three_of_a_kind": mult, "pair": mult * 0.5,
                         "reel_weight": (upper - lower) / 100})
            lower = upper
        return rows
