"""
FAIRPLAY — Base Game Adapter

Abstract base for every game's payout rules. An adapter maps the shared
outcome (0.00 .. 99.99, from tools.provably_fair) plus the player's bet spec
to a verdict. Adapters never draw randomness of their own.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from decimal import Decimal

from tools.fair_errors import InvalidArgument
from tools.provably_fair import OUTCOME_MODULUS, quantize_amount


@dataclass(frozen=True)
class GameVerdict:
    """Win/lose decision for one outcome."""
    won: bool
    multiplier: float           # payout multiplier applied to the bet, 0 on a loss
    details: dict = field(default_factory=dict)


class BaseGameAdapter(ABC):
    """Abstract base for all game adapters."""

    game_type: str = "base"
    display_name: str = "Base Game"
    bet_model = None

    @abstractmethod
    def evaluate(self, outcome: float, bet) -> GameVerdict:
        """Apply the game rules to one outcome."""
        ...

    @abstractmethod
    def paytable(self) -> list[dict]:
        """Static payout table for the UI/API."""
        ...

    def check_bet(self, bet):
        if self.bet_model is None or not isinstance(bet, self.bet_model):
            raise InvalidArgument(
                f"{self.display_name} cannot settle a {type(bet).__name__}")
        return bet

    def compute_rtp(self, bet) -> float:
        """Exact return-to-player for a bet.

        The outcome space is 10,000 equally likely values (two-decimal
        granularity), so the expectation is a plain enumeration.
        """
        self.check_bet(bet)
        total = 0.0
        for i in range(OUTCOME_MODULUS):
            total += self.evaluate(i / 100, bet).multiplier
        return total / OUTCOME_MODULUS

    def compute_house_edge(self, bet) -> float:
        return 1.0 - self.compute_rtp(bet)

    def exact_multiplier(self, verdict: GameVerdict, bet) -> Decimal:
        """Decimal form of the verdict multiplier; override where it is a ratio."""
        return Decimal(str(verdict.multiplier))

    def win_amount(self, bet_amount: Decimal, verdict: GameVerdict, bet) -> Decimal:
        """Credited amount at 8 dp, zero on a loss."""
        if not verdict.won:
            return Decimal("0")
        return quantize_amount(bet_amount * self.exact_multiplier(verdict, bet))

    def metadata(self) -> dict:
        """Return game metadata for the UI/API."""
        return {
            "game_type": self.game_type,
            "display_name": self.display_name,
            "paytable": self.paytable(),
        }

    @staticmethod
    def bucket_index(outcome: float, bucket_count: int) -> int:
        """floor(outcome/100 * n), clamped to [0, n-1]."""
        idx = int(outcome / 100 * bucket_count)
        return max(0, min(bucket_count - 1, idx))
