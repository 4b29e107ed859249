"""Balloon — pick a pop chance; survive it and the payout scales to keep a 1% edge."""
from decimal import Decimal

from sim_engine.rmg.base import BaseGameAdapter, GameVerdict
from sim_engine.rmg.bets import BALLOON_MAX_RISK, BalloonBet
from tools.provably_fair import RTP_NUMERATOR


def balloon_multiplier(risk: int) -> float:
    return RTP_NUMERATOR / (100 - risk)


class BalloonAdapter(BaseGameAdapter):
    game_type = "balloon"
    display_name = "Balloon"
    bet_model = BalloonBet

    def evaluate(self, outcome: float, bet: BalloonBet) -> GameVerdict:
        self.check_bet(bet)
        popped = outcome < bet.risk
        payout = balloon_multiplier(bet.risk)
        return GameVerdict(
            won=not popped,
            multiplier=0.0 if popped else payout,
            details={"risk": bet.risk, "popped": popped, "payout_multiplier": payout},
        )

    def exact_multiplier(self, verdict: GameVerdict, bet: BalloonBet) -> Decimal:
        return Decimal(RTP_NUMERATOR) / Decimal(100 - bet.risk)

    def paytable(self) -> list[dict]:
        return [
            {"risk": r, "survive_chance": (100 - r) / 100, "multiplier": round(balloon_multiplier(r), 4)}
            for r in (1, 10, 25, 50, 75, 90, BALLOON_MAX_RISK)
        ]
