"""Plinko — the outcome picks one of 13 buckets directly."""
from sim_engine.rmg.base import BaseGameAdapter, GameVerdict
from sim_engine.rmg.bets import PlinkoBet

# Edge buckets pay big, the centre returns half the stake
PLINKO_MULTIPLIERS = [16, 9, 2, 1.4, 1.1, 1, 0.5, 1, 1.1, 1.4, 2, 9, 16]


class PlinkoAdapter(BaseGameAdapter):
    game_type = "plinko"
    display_name = "Plinko"
    bet_model = PlinkoBet

    def evaluate(self, outcome: float, bet: PlinkoBet) -> GameVerdict:
        self.check_bet(bet)
        bucket = self.bucket_index(outcome, len(PLINKO_MULTIPLIERS))
        mult = float(PLINKO_MULTIPLIERS[bucket])
        return GameVerdict(
            won=mult > 0,
            multiplier=mult,
            details={"bucket": bucket, "bucket_count": len(PLINKO_MULTIPLIERS)},
        )

    def paytable(self) -> list[dict]:
        return [{"bucket": i, "multiplier": m} for i, m in enumerate(PLINKO_MULTIPLIERS)]
