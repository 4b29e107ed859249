#!/usr/bin/env python3
"""
FAIRPLAY — Outcome Engine & Game Adapter Test Suite

Run: python tests.py
     python tests.py -v               # verbose
     python tests.py TestOutcomeEngine

Test categories:
  TestOutcomeEngine   — HMAC derivation, golden vectors, verification
  TestDiceMath        — multiplier, edge, win amounts
  TestBetSpecs        — tagged bet parsing and validation
  TestGameAdapters    — dice, roulette, slots, plinko, balloon rules
"""

import math
import sys
import unittest
from decimal import Decimal
from pathlib import Path

# ── Ensure project root is on sys.path ──
PROJECT_ROOT = Path(__file__).parent
sys.path.insert(0, str(PROJECT_ROOT))

from config.settings import FairPlayConfig
from sim_engine.rmg import GAME_TYPES, evaluate_bet, get_game_adapter
from sim_engine.rmg.bets import (
    BalloonBet, DiceBet, PlinkoBet, RouletteBet, RouletteBetType, SlotsBet,
    parse_bet_spec,
)
from sim_engine.rmg.roulette import color_of
from sim_engine.rmg.slots import SYMBOLS, symbol_for
from tools.fair_errors import InvalidArgument
from tools.provably_fair import (
    AMOUNT_QUANT, HOUSE_EDGE, OUTCOME_MODULUS, build_verification_steps,
    calculate_multiplier, calculate_outcome, calculate_win_amount, check_win,
    generate_secure_random_seed, hmac_sha256, quantize_amount, sha256_hex, verify_outcome,
)

GOLDEN_HMAC = "4b7a95d1999ec49d625472247e26cd5d181f04b674d8f98ce663ea26f5deb9cd"


# ============================================================
# Outcome Engine
# ============================================================

class TestOutcomeEngine(unittest.TestCase):
    """HMAC-SHA256 → outcome derivation."""

    def test_golden_vector(self):
        """abc123 / player1 / 0 → 4b7a95d1 → 1266324945 → 49.45."""
        result = calculate_outcome("abc123", "player1", 0)
        self.assertEqual(result.hmac, GOLDEN_HMAC)
        self.assertEqual(result.hex, "4b7a95d1")
        self.assertEqual(int(result.hex, 16), 1266324945)
        self.assertEqual(result.outcome, 49.45)

    def test_more_vectors(self):
        self.assertEqual(calculate_outcome("abc123", "player1", 1).outcome, 54.66)
        self.assertEqual(calculate_outcome("abc123", "player1", 2).outcome, 31.62)
        # High bit set: the prefix must be read as unsigned
        self.assertEqual(calculate_outcome("abc123", "lucky", 1).hex, "e837a954")
        self.assertEqual(calculate_outcome("abc123", "lucky", 1).outcome, 19.40)

    def test_deterministic(self):
        a = calculate_outcome("server", "client", 7)
        b = calculate_outcome("server", "client", 7)
        self.assertEqual(a, b)

    def test_outcome_range(self):
        seed = generate_secure_random_seed()
        for nonce in range(200):
            outcome = calculate_outcome(seed, "range-check", nonce).outcome
            self.assertGreaterEqual(outcome, 0.0)
            self.assertLess(outcome, 100.0)
            self.assertEqual(round(outcome, 2), outcome)

    def test_message_format(self):
        """Message is client_seed + ':' + nonce, keyed by the server seed."""
        self.assertEqual(hmac_sha256("abc123", "player1:0"), GOLDEN_HMAC)

    def test_sha256_commitment(self):
        self.assertEqual(
            sha256_hex("abc123"),
            "6ca13d52ca70c883e0f0bb101e425a89e8624de51db2d2392593af6a84118090",
        )

    def test_bad_nonce_rejected(self):
        for nonce in (-1, 1.5, "0", None, True):
            with self.assertRaises(InvalidArgument):
                calculate_outcome("abc123", "player1", nonce)

    def test_verify_two_decimal_equality(self):
        self.assertTrue(verify_outcome("abc123", "player1", 0, 49.45))
        self.assertTrue(verify_outcome("abc123", "player1", 0, "49.45"))
        self.assertTrue(verify_outcome("abc123", "player1", 0, 49.4500000001))
        self.assertFalse(verify_outcome("abc123", "player1", 0, 49.46))
        self.assertFalse(verify_outcome("abc123", "player1", 1, 49.45))
        self.assertFalse(verify_outcome("wrong", "player1", 0, 49.45))

    def test_verify_garbage_is_false(self):
        self.assertFalse(verify_outcome("abc123", "player1", 0, "not-a-number"))
        self.assertFalse(verify_outcome("abc123", "player1", 0, None))
        self.assertFalse(verify_outcome("abc123", "player1", 0, math.nan))

    def test_random_seed(self):
        seed = generate_secure_random_seed(32)
        self.assertEqual(len(seed), 64)
        int(seed, 16)
        self.assertNotEqual(seed, generate_secure_random_seed(32))
        self.assertEqual(len(generate_secure_random_seed(16)), 32)
        with self.assertRaises(InvalidArgument):
            generate_secure_random_seed(0)

    def test_verification_steps(self):
        steps = build_verification_steps()
        self.assertTrue(any("HMAC-SHA256" in s for s in steps))
        self.assertTrue(any("10000" in s for s in steps))


# ============================================================
# Dice Math
# ============================================================

class TestDiceMath(unittest.TestCase):

    def test_multiplier_keeps_one_percent_edge(self):
        for target in (1, 2.5, 10, 33.33, 49.5, 50, 75, 98, 99.99):
            m = calculate_multiplier(target)
            self.assertAlmostEqual(m * target / 100, 0.99, places=9)

    def test_multiplier_at_fifty(self):
        self.assertAlmostEqual(calculate_multiplier(50), 1.98)

    def test_multiplier_rejects_out_of_range(self):
        for target in (0, -5, 100, 150, math.inf, math.nan, "abc", None):
            with self.assertRaises(InvalidArgument) as ctx:
                calculate_multiplier(target)
            self.assertEqual(ctx.exception.reason, "Target must be between 0 and 100")

    def test_check_win_is_strict(self):
        self.assertTrue(check_win(49.99, 50))
        self.assertFalse(check_win(50.0, 50))
        self.assertFalse(check_win(50.01, 50))

    def test_win_amount_formatting(self):
        self.assertEqual(calculate_win_amount(1.0, 49.99, 50), "1.98000000")
        self.assertEqual(calculate_win_amount("1.0", 49.99, 50), "1.98000000")
        self.assertEqual(calculate_win_amount(1.0, 50.00, 50), "0")

    def test_win_amount_rounds_to_eight_places(self):
        # 1 * 99 / 7 = 14.142857142857...
        self.assertEqual(calculate_win_amount("1", 3.0, 7), "14.14285714")

    def test_win_amount_rejects_bad_bet(self):
        with self.assertRaises(InvalidArgument):
            calculate_win_amount("abc", 10.0, 50)

    def test_amount_quantum_follows_config(self):
        self.assertEqual(AMOUNT_QUANT, Decimal(1).scaleb(-FairPlayConfig.AMOUNT_DECIMALS))
        self.assertEqual(quantize_amount(Decimal("0.123456785")), Decimal("0.12345679"))

    def test_huge_amounts_raise_invalid_argument(self):
        self.assertEqual(quantize_amount(Decimal("1e30")), Decimal("1e30"))
        with self.assertRaises(InvalidArgument):
            quantize_amount(Decimal("1e70"))


# ============================================================
# Bet Specs
# ============================================================

class TestBetSpecs(unittest.TestCase):

    def test_discriminated_parse(self):
        self.assertIsInstance(parse_bet_spec({"game": "dice", "target": 49.5}), DiceBet)
        self.assertIsInstance(parse_bet_spec({"game": "roulette", "bet_type": "red"}), RouletteBet)
        self.assertIsInstance(parse_bet_spec({"game": "slots"}), SlotsBet)
        self.assertIsInstance(parse_bet_spec({"game": "plinko"}), PlinkoBet)
        self.assertIsInstance(parse_bet_spec({"game": "balloon", "risk": 40}), BalloonBet)

    def test_model_passthrough(self):
        bet = DiceBet(target=25)
        self.assertIs(parse_bet_spec(bet), bet)

    def test_invalid_specs(self):
        bad = [
            {"game": "poker"},
            {"target": 50},
            {"game": "dice", "target": 100},
            {"game": "dice", "target": 0},
            {"game": "roulette", "bet_type": "number"},
            {"game": "roulette", "bet_type": "red", "number": 3},
            {"game": "roulette", "bet_type": "number", "number": 13},
            {"game": "roulette", "bet_type": "purple"},
            {"game": "balloon", "risk": 0},
            {"game": "balloon", "risk": 96},
            "dice",
        ]
        for data in bad:
            with self.assertRaises(InvalidArgument, msg=str(data)):
                parse_bet_spec(data)

    def test_error_reason_mentions_bet(self):
        with self.assertRaises(InvalidArgument) as ctx:
            parse_bet_spec({"game": "balloon", "risk": 99})
        self.assertTrue(ctx.exception.reason.startswith("Invalid bet"))


# ============================================================
# Game Adapters
# ============================================================

class TestGameAdapters(unittest.TestCase):

    def test_registry(self):
        self.assertEqual(sorted(GAME_TYPES), ["balloon", "dice", "plinko", "roulette", "slots"])
        self.assertEqual(get_game_adapter("Dice").game_type, "dice")
        with self.assertRaises(InvalidArgument):
            get_game_adapter("crash")

    def test_adapter_rejects_foreign_bet(self):
        with self.assertRaises(InvalidArgument):
            get_game_adapter("plinko").evaluate(10.0, DiceBet(target=50))

    def test_won_iff_positive_multiplier(self):
        bets = [
            DiceBet(target=50), RouletteBet(bet_type=RouletteBetType.ODD),
            SlotsBet(), PlinkoBet(), BalloonBet(risk=30),
        ]
        for bet in bets:
            adapter = get_game_adapter(bet.game)
            for outcome in (0.0, 1.0, 15.38, 33.33, 50.0, 77.77, 99.99):
                v = adapter.evaluate(outcome, bet)
                self.assertEqual(v.won, v.multiplier > 0, f"{bet.game} @ {outcome}")

    def test_dice(self):
        adapter = get_game_adapter("dice")
        win = adapter.evaluate(49.99, DiceBet(target=50))
        self.assertTrue(win.won)
        self.assertAlmostEqual(win.multiplier, 1.98)
        lose = adapter.evaluate(50.0, DiceBet(target=50))
        self.assertFalse(lose.won)
        self.assertEqual(lose.multiplier, 0.0)
        self.assertEqual(adapter.win_amount(Decimal("1"), win, DiceBet(target=50)), Decimal("1.98"))

    def test_dice_rtp(self):
        adapter = get_game_adapter("dice")
        self.assertAlmostEqual(adapter.compute_rtp(DiceBet(target=50)), 0.99, places=6)
        self.assertAlmostEqual(adapter.compute_rtp(DiceBet(target=49.5)), 0.99, places=6)
        self.assertAlmostEqual(adapter.compute_house_edge(DiceBet(target=25)), HOUSE_EDGE, places=6)

    def test_roulette_pockets(self):
        self.assertEqual(color_of(0), "green")
        self.assertEqual(color_of(1), "red")
        self.assertEqual(color_of(12), "black")
        adapter = get_game_adapter("roulette")
        self.assertEqual(adapter.evaluate(0.0, RouletteBet(bet_type="green")).details["pocket"], 0)
        self.assertEqual(adapter.evaluate(7.7, RouletteBet(bet_type="red")).details["pocket"], 1)
        self.assertEqual(adapter.evaluate(99.99, RouletteBet(bet_type="red")).details["pocket"], 12)

    def test_roulette_payouts(self):
        adapter = get_game_adapter("roulette")
        green = adapter.evaluate(0.0, RouletteBet(bet_type="green"))
        self.assertTrue(green.won)
        self.assertEqual(green.multiplier, 12.0)
        # Zero loses every outside bet
        for bt in ("red", "black", "even", "odd", "low", "high"):
            self.assertFalse(adapter.evaluate(0.0, RouletteBet(bet_type=bt)).won, bt)
        # 50.00 → pocket 6: black, even, low
        self.assertEqual(adapter.evaluate(50.0, RouletteBet(bet_type="black")).multiplier, 2.0)
        self.assertEqual(adapter.evaluate(50.0, RouletteBet(bet_type="even")).multiplier, 2.0)
        self.assertEqual(adapter.evaluate(50.0, RouletteBet(bet_type="low")).multiplier, 2.0)
        self.assertFalse(adapter.evaluate(50.0, RouletteBet(bet_type="high")).won)
        straight = adapter.evaluate(50.0, RouletteBet(bet_type="number", number=6))
        self.assertEqual(straight.multiplier, 12.0)
        self.assertFalse(adapter.evaluate(50.0, RouletteBet(bet_type="number", number=7)).won)

    def test_slots_symbols(self):
        self.assertEqual(get_game_adapter("slots").spin(1.0), ["cherry", "lemon", "lemon"])
        self.assertEqual(symbol_for(15.38, 0), "seven")
        # 12.50 * 2 * 13 = 325, key lands exactly on the cherry/lemon edge
        self.assertEqual(symbol_for(12.50, 1), "lemon")
        self.assertEqual(symbol_for(12.49, 1), "cherry")

    def test_slots_keys_agree_with_float_formula(self):
        def float_symbol(outcome, reel):
            key = (outcome * (reel + 1) * 13) % 100
            return next((name for name, _, upper in SYMBOLS if key < upper), SYMBOLS[-1][0])

        mismatches = [(i, reel) for i in range(OUTCOME_MODULUS) for reel in range(3)
                      if symbol_for(i / 100, reel) != float_symbol(i / 100, reel)]
        self.assertEqual(mismatches, [])

    def test_slots_lines(self):
        adapter = get_game_adapter("slots")
        cherries = adapter.evaluate(0.0, SlotsBet())
        self.assertEqual(cherries.details["line"], "three_of_a_kind")
        self.assertEqual(cherries.multiplier, 2.0)

        sevens = adapter.evaluate(15.38, SlotsBet())
        self.assertEqual(sevens.details["reels"], ["seven", "seven", "seven"])
        self.assertEqual(sevens.multiplier, 20.0)

        pair = adapter.evaluate(1.0, SlotsBet())
        self.assertEqual(pair.details["line"], "pair")
        self.assertEqual(pair.multiplier, 1.5)

        # 50.00 → orange, cherry, orange: no adjacent pair
        nothing = adapter.evaluate(50.0, SlotsBet())
        self.assertEqual(nothing.details["reels"], ["orange", "cherry", "orange"])
        self.assertFalse(nothing.won)

    def test_plinko_buckets(self):
        adapter = get_game_adapter("plinko")
        self.assertEqual(adapter.evaluate(0.0, PlinkoBet()).multiplier, 16.0)
        self.assertEqual(adapter.evaluate(50.0, PlinkoBet()).details["bucket"], 6)
        self.assertEqual(adapter.evaluate(50.0, PlinkoBet()).multiplier, 0.5)
        self.assertEqual(adapter.evaluate(99.99, PlinkoBet()).details["bucket"], 12)
        self.assertEqual(len(adapter.paytable()), 13)

    def test_balloon(self):
        adapter = get_game_adapter("balloon")
        popped = adapter.evaluate(49.99, BalloonBet(risk=50))
        self.assertTrue(popped.details["popped"])
        self.assertFalse(popped.won)
        survived = adapter.evaluate(50.0, BalloonBet(risk=50))
        self.assertTrue(survived.won)
        self.assertAlmostEqual(survived.multiplier, 1.98)
        self.assertEqual(
            adapter.win_amount(Decimal("1"), adapter.evaluate(99.0, BalloonBet(risk=93)), BalloonBet(risk=93)),
            Decimal("14.14285714"),
        )

    def test_balloon_rtp(self):
        adapter = get_game_adapter("balloon")
        for risk in (1, 25, 50, 95):
            self.assertAlmostEqual(adapter.compute_rtp(BalloonBet(risk=risk)), 0.99, places=6)

    def test_evaluate_bet_from_dict(self):
        spec, verdict = evaluate_bet(0.0, {"game": "roulette", "bet_type": "green"})
        self.assertIsInstance(spec, RouletteBet)
        self.assertTrue(verdict.won)

    def test_metadata(self):
        for game in GAME_TYPES:
            meta = get_game_adapter(game).metadata()
            self.assertEqual(meta["game_type"], game)
            self.assertTrue(meta["paytable"])


# ============================================================
# Main
# ============================================================

if __name__ == "__main__":
    # Configure logging to suppress noise during tests
    import logging
    logging.disable(logging.WARNING)

    unittest.main(verbosity=2)
