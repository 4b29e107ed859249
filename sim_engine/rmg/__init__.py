"""
FAIRPLAY — Game Adapter Registry

Every game settles from the same provably fair outcome (0.00 .. 99.99).
Each adapter exposes: evaluate(), paytable(), metadata() and compute_rtp().

Usage:
    from sim_engine.rmg import get_game_adapter, evaluate_bet
    adapter = get_game_adapter("roulette")
    verdict = evaluate_bet(49.45, {"game": "roulette", "bet_type": "red"})
"""

from sim_engine.rmg.balloon import BalloonAdapter
from sim_engine.rmg.bets import BetSpec, GameType, parse_bet_spec
from sim_engine.rmg.dice import DiceAdapter
from sim_engine.rmg.plinko import PlinkoAdapter
from sim_engine.rmg.roulette import RouletteAdapter
from sim_engine.rmg.slots import SlotsAdapter
from tools.fair_errors import InvalidArgument

GAME_ADAPTERS = {
    "dice": DiceAdapter,
    "roulette": RouletteAdapter,
    "slots": SlotsAdapter,
    "plinko": PlinkoAdapter,
    "balloon": BalloonAdapter,
}

GAME_TYPES = list(GAME_ADAPTERS.keys())


def get_game_adapter(game):
    """Get the adapter for a game type."""
    key = game.value if isinstance(game, GameType) else str(game or "").lower()
    cls = GAME_ADAPTERS.get(key)
    if cls is None:
        raise InvalidArgument(f"Unknown game type: {game}. Available: {GAME_TYPES}")
    return cls()


def evaluate_bet(outcome: float, bet):
    """Parse a bet spec (dict or model) and settle it against an outcome.

    Returns (bet_model, GameVerdict).
    """
    spec = parse_bet_spec(bet)
    verdict = get_game_adapter(spec.game).evaluate(outcome, spec)
    return spec, verdict


__all__ = [
    "GAME_ADAPTERS", "GAME_TYPES", "BetSpec", "GameType",
    "get_game_adapter", "evaluate_bet", "parse_bet_spec",
]
