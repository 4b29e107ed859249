"""Dice — roll-under against a player-chosen target, fixed 1% edge."""
from decimal import Decimal

from sim_engine.rmg.base import BaseGameAdapter, GameVerdict
from sim_engine.rmg.bets import DiceBet
from tools.provably_fair import RTP_NUMERATOR, calculate_multiplier, check_win


class DiceAdapter(BaseGameAdapter):
    game_type = "dice"
    display_name = "Dice"
    bet_model = DiceBet

    def evaluate(self, outcome: float, bet: DiceBet) -> GameVerdict:
        self.check_bet(bet)
        payout = calculate_multiplier(bet.target)
        won = check_win(outcome, bet.target)
        return GameVerdict(
            won=won,
            multiplier=payout if won else 0.0,
            details={"target": bet.target, "roll": outcome, "payout_multiplier": payout},
        )

    def exact_multiplier(self, verdict: GameVerdict, bet: DiceBet) -> Decimal:
        return Decimal(RTP_NUMERATOR) / Decimal(str(bet.target))

    def paytable(self) -> list[dict]:
        return [
            {"target": t, "win_chance": t / 100, "multiplier": round(calculate_multiplier(t), 4)}
            for t in (2, 10, 25, 49.5, 50, 75, 90, 98)
        ]
