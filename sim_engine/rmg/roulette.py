"""Roulette — 13-pocket mini wheel (0 green, odd red, even black)."""
from sim_engine.rmg.base import BaseGameAdapter, GameVerdict
from sim_engine.rmg.bets import ROULETTE_POCKETS, RouletteBet, RouletteBetType

RED_NUMBERS = frozenset(n for n in range(1, ROULETTE_POCKETS) if n % 2 == 1)

PAYOUTS = {
    RouletteBetType.RED: 2,
    RouletteBetType.BLACK: 2,
    RouletteBetType.EVEN: 2,
    RouletteBetType.ODD: 2,
    RouletteBetType.LOW: 2,
    RouletteBetType.HIGH: 2,
    RouletteBetType.GREEN: 12,
    RouletteBetType.NUMBER: 12,
}


def color_of(pocket: int) -> str:
    if pocket == 0:
        return "green"
    return "red" if pocket in RED_NUMBERS else "black"


def _covers(bet: RouletteBet, pocket: int) -> bool:
    bt = bet.bet_type
    if bt == RouletteBetType.NUMBER:
        return pocket == bet.number
    if bt == RouletteBetType.GREEN:
        return pocket == 0
    # Zero loses every outside bet
    if pocket == 0:
        return False
    if bt == RouletteBetType.RED:
        return pocket in RED_NUMBERS
    if bt == RouletteBetType.BLACK:
        return pocket not in RED_NUMBERS
    if bt == RouletteBetType.EVEN:
        return pocket % 2 == 0
    if bt == RouletteBetType.ODD:
        return pocket % 2 == 1
    if bt == RouletteBetType.LOW:
        return pocket <= 6
    return pocket >= 7


class RouletteAdapter(BaseGameAdapter):
    game_type = "roulette"
    display_name = "Roulette"
    bet_model = RouletteBet

    def evaluate(self, outcome: float, bet: RouletteBet) -> GameVerdict:
        self.check_bet(bet)
        pocket = self.bucket_index(outcome, ROULETTE_POCKETS)
        won = _covers(bet, pocket)
        return GameVerdict(
            won=won,
            multiplier=float(PAYOUTS[bet.bet_type]) if won else 0.0,
            details={"pocket": pocket, "color": color_of(pocket), "bet_type": bet.bet_type.value},
        )

    def paytable(self) -> list[dict]:
        return [{"bet_type": bt.value, "multiplier": m} for bt, m in PAYOUTS.items()]
