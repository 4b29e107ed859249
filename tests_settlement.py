#!/usr/bin/env python3
"""
Tests for the Ledger & Settlement Engine

Validates:
1. A bet writes session + WAGER + WIN/LOSS + balance change atomically
2. WON/LOST status agrees with win_amount; LOSS rows carry a zero amount
3. Nonces run 0, 1, 2, … per (user, seed) and restart after rotation
4. Rejected bets (bad input, missing wallet, insufficient funds) leave no rows
5. A failure mid-settlement rolls back every write of the attempt
6. Lock contention is retried, then surfaced as SettlementFailure
7. Concurrent bets get distinct contiguous nonces and no lost update
8. Deposits move the balance only on approval; the ledger audit balances
"""

import sqlite3
import sys
import tempfile
import unittest
from concurrent.futures import ThreadPoolExecutor
from decimal import Decimal
from pathlib import Path
from unittest.mock import patch

# ── Ensure project root is on sys.path ──
PROJECT_ROOT = Path(__file__).parent
sys.path.insert(0, str(PROJECT_ROOT))

from config.settings import FairPlayConfig
from tools.fair_errors import InsufficientFunds, InvalidArgument, NotFound, SettlementFailure
from tools.fair_repository import FairRepository, FairStore, ServerSeed, TxStatus
from tools.ledger import USER_LOCK_STRIPES, LedgerEngine, parse_amount
from tools.provably_fair import sha256_hex, verify_outcome
from tools.seed_manager import SeedManager


class LedgerTestCase(unittest.TestCase):
    """Fresh SQLite file, one funded ETH wallet for alice."""

    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.repo = FairRepository(str(Path(self._tmp.name) / "ledger.db"))
        self.seeds = SeedManager(self.repo)
        self.ledger = LedgerEngine(self.repo, seeds=self.seeds, retry_delay=0)
        self.ledger.open_wallets("alice")

    def tearDown(self):
        self._tmp.cleanup()

    def install_seed(self, value="abc123", next_value="next-seed"):
        """Make a known seed active so outcomes are predictable."""
        with self.repo.transaction() as store:
            return store.insert_server_seed(ServerSeed(
                id=f"seed-{value}", seed_value=value, seed_hash=sha256_hex(value),
                is_active=True, next_seed_hash=sha256_hex(next_value),
                next_seed_value=next_value,
            ))

    def fund(self, user_id, amount, currency="ETH"):
        tx = self.ledger.request_deposit(user_id, currency, amount)
        return self.ledger.approve_deposit(tx.id)

    def balance(self, user_id="alice", currency="ETH") -> Decimal:
        return self.ledger.get_wallet(user_id, currency).available_balance

    def count(self, table) -> int:
        with self.repo.transaction(write=False) as store:
            return store.db.execute(f"SELECT COUNT(*) AS c FROM {table}").fetchone()["c"]


# ============================================================
# Settlement
# ============================================================

class TestPlaceBet(LedgerTestCase):

    def setUp(self):
        super().setUp()
        self.install_seed()
        self.fund("alice", "10")

    def test_winning_dice_bet(self):
        """abc123/player1/0 → 49.45 < 50: WON, 1 * 1.98."""
        result = self.ledger.place_bet("alice", "1", "ETH", "player1", target=50)
        self.assertEqual(result.outcome, 49.45)
        self.assertTrue(result.won)
        self.assertEqual(result.win_amount, "1.98000000")
        self.assertEqual(result.session.status, "WON")
        self.assertEqual(result.session.nonce, 0)
        self.assertEqual(result.session.game, "dice")
        self.assertIsNotNone(result.session.completed_at)

        wager, win = result.transactions
        self.assertEqual((wager.type, wager.amount), ("WAGER", "-1.00000000"))
        self.assertEqual((wager.balance_before, wager.balance_after), ("10.00000000", "9.00000000"))
        self.assertEqual((win.type, win.amount), ("WIN", "1.98000000"))
        self.assertEqual((win.balance_before, win.balance_after), ("9.00000000", "10.98000000"))
        self.assertEqual(self.balance(), Decimal("10.98"))
        self.assertEqual(result.balance, "10.98000000")

    def test_losing_dice_bet(self):
        self.ledger.place_bet("alice", "1", "ETH", "player1", target=50)
        result = self.ledger.place_bet("alice", "1", "ETH", "player1", target=50)
        self.assertEqual(result.session.nonce, 1)
        self.assertEqual(result.outcome, 54.66)
        self.assertFalse(result.won)
        self.assertEqual(result.win_amount, "0")
        self.assertEqual(result.session.status, "LOST")
        loss = result.transactions[1]
        self.assertEqual(loss.type, "LOSS")
        self.assertEqual(Decimal(loss.amount), 0)
        self.assertEqual(self.balance(), Decimal("9.98"))

    def test_other_games_share_the_nonce_sequence(self):
        plinko = self.ledger.place_bet("alice", "1", "ETH", "player1", bet={"game": "plinko"})
        self.assertEqual(plinko.session.game_data["bucket"], 6)
        # 0.5x still counts as a (partial) win
        self.assertTrue(plinko.won)
        self.assertEqual(plinko.win_amount, "0.50000000")

        balloon = self.ledger.place_bet("alice", "1", "ETH", "player1",
                                        bet={"game": "balloon", "risk": 50})
        self.assertEqual(balloon.session.nonce, 1)
        self.assertFalse(balloon.session.game_data["popped"])
        self.assertEqual(balloon.win_amount, "1.98000000")

        slots = self.ledger.place_bet("alice", "1", "ETH", "player1", bet={"game": "slots"})
        self.assertEqual(slots.session.game_data["reels"], ["cherry", "cherry", "lemon"])
        self.assertEqual(slots.win_amount, "1.00000000")

        # A new client seed does not reset the nonce; only rotation does
        roulette = self.ledger.place_bet("alice", "1", "ETH", "lucky",
                                         bet={"game": "roulette", "bet_type": "green"})
        self.assertEqual(roulette.session.nonce, 3)
        self.assertEqual(roulette.outcome, 18.07)
        self.assertEqual(roulette.session.game_data["bet"], {"game": "roulette", "bet_type": "green", "number": None})

    def test_sessions_are_verifiable(self):
        for _ in range(5):
            r = self.ledger.place_bet("alice", "0.1", "ETH", "check", target=60)
            self.assertTrue(verify_outcome("abc123", "check", r.session.nonce, r.session.outcome))
            self.assertEqual(r.session.game_data["hex"], r.session.game_data["hmac"][:8])

    def test_nonces_are_contiguous_and_restart_on_rotation(self):
        nonces = [self.ledger.place_bet("alice", "0.01", "ETH", "n", target=50).session.nonce
                  for _ in range(4)]
        self.assertEqual(nonces, [0, 1, 2, 3])
        self.seeds.rotate_server_seed()
        after = self.ledger.place_bet("alice", "0.01", "ETH", "n", target=50)
        self.assertEqual(after.session.nonce, 0)
        self.assertEqual(after.session.server_seed_id, self.seeds.get_active_server_seed().id)

    def test_amount_is_quantized(self):
        result = self.ledger.place_bet("alice", "0.123456789", "eth", "q", target=50)
        self.assertEqual(result.session.bet_amount, "0.12345679")
        self.assertEqual(result.session.currency, "ETH")

    def test_whole_balance_can_be_staked(self):
        result = self.ledger.place_bet("alice", "10", "ETH", "player1", target=50)
        self.assertEqual(result.transactions[0].balance_after, "0.00000000")

    def test_auto_rotation_after_limit(self):
        with patch.object(FairPlayConfig, "SEED_ROTATION_BET_LIMIT", 2):
            first = self.ledger.place_bet("alice", "0.01", "ETH", "r", target=50)
            second = self.ledger.place_bet("alice", "0.01", "ETH", "r", target=50)
            third = self.ledger.place_bet("alice", "0.01", "ETH", "r", target=50)
        self.assertIsNone(first.rotated_seed_id)
        self.assertIsNotNone(second.rotated_seed_id)
        self.assertEqual(third.session.server_seed_id, second.rotated_seed_id)
        self.assertEqual(third.session.nonce, 0)
        self.assertEqual(self.seeds.get_active_server_seed().seed_value, "next-seed")


class TestRejectedBets(LedgerTestCase):

    def setUp(self):
        super().setUp()
        self.install_seed()
        self.fund("alice", "1")

    def assert_untouched(self):
        self.assertEqual(self.count("game_sessions"), 0)
        self.assertEqual(self.count("transactions"), 1)   # the funding deposit
        self.assertEqual(self.balance(), Decimal("1"))

    def test_insufficient_funds(self):
        with self.assertRaises(InsufficientFunds) as ctx:
            self.ledger.place_bet("alice", "1.00000001", "ETH", "x", target=50)
        self.assertEqual(ctx.exception.reason, "Insufficient balance")
        self.assert_untouched()

    def test_invalid_arguments(self):
        cases = [
            dict(bet_amount="0", target=50),
            dict(bet_amount="-1", target=50),
            dict(bet_amount="abc", target=50),
            dict(bet_amount="NaN", target=50),
            dict(bet_amount="Infinity", target=50),
            dict(bet_amount="0.000000001", target=50),
            dict(bet_amount=True, target=50),
            dict(bet_amount="1e30", target=50),
            dict(bet_amount="123456789012345678901.5", target=50),
            dict(bet_amount="1", target=0),
            dict(bet_amount="1", target=100),
            dict(bet_amount="1"),
            dict(bet_amount="1", target=50, bet={"game": "plinko"}),
            dict(bet_amount="1", bet={"game": "balloon", "risk": 99}),
        ]
        for kwargs in cases:
            with self.assertRaises(InvalidArgument, msg=str(kwargs)):
                self.ledger.place_bet("alice", currency="ETH", client_seed="x", **kwargs)
        with self.assertRaises(InvalidArgument):
            self.ledger.place_bet("alice", "1", "ETH", "", target=50)
        with self.assertRaises(InvalidArgument):
            self.ledger.place_bet("alice", "1", "ETH", None, target=50)
        self.assert_untouched()

    def test_amount_above_maximum(self):
        limit = FairPlayConfig.MAX_AMOUNT
        with self.assertRaises(InvalidArgument) as ctx:
            self.ledger.place_bet("alice", str(limit + Decimal("0.00000001")), "ETH", "x", target=50)
        self.assertEqual(ctx.exception.reason, f"Bet amount exceeds the maximum of {limit}")
        with self.assertRaises(InvalidArgument):
            self.ledger.request_deposit("alice", "ETH", "1e30")
        self.assert_untouched()

    def test_missing_wallet(self):
        with self.assertRaises(NotFound):
            self.ledger.place_bet("alice", "0.5", "DOGE", "x", target=50)
        with self.assertRaises(NotFound):
            self.ledger.place_bet("bob", "0.5", "ETH", "x", target=50)
        self.assert_untouched()

    def test_business_errors_are_not_retried(self):
        real = FairStore.get_wallet
        calls = []

        def counting(store, *args, **kwargs):
            calls.append(args)
            return real(store, *args, **kwargs)

        with patch.object(FairStore, "get_wallet", new=counting):
            with self.assertRaises(InsufficientFunds):
                self.ledger.place_bet("alice", "5", "ETH", "x", target=50)
        self.assertEqual(len(calls), 1)


# ============================================================
# Atomicity & Retries
# ============================================================

class TestSettlementFailures(LedgerTestCase):

    def setUp(self):
        super().setUp()
        self.install_seed()
        self.fund("alice", "5")

    def test_failure_mid_settlement_rolls_back(self):
        with patch.object(FairStore, "set_game_session_status", side_effect=RuntimeError("disk on fire")):
            with self.assertRaises(SettlementFailure) as ctx:
                self.ledger.place_bet("alice", "1", "ETH", "x", target=50)
        self.assertEqual(ctx.exception.reason, "Failed to place bet. Please try again.")
        self.assertEqual(self.count("game_sessions"), 0)
        self.assertEqual(self.count("transactions"), 1)
        self.assertEqual(self.balance(), Decimal("5"))
        # The next bet reuses nonce 0
        self.assertEqual(self.ledger.place_bet("alice", "1", "ETH", "x", target=50).session.nonce, 0)

    def test_transient_error_is_retried(self):
        real = FairStore.max_nonce
        calls = []

        def flaky(store, user_id, seed_id):
            calls.append(seed_id)
            if len(calls) == 1:
                raise sqlite3.OperationalError("database is locked")
            return real(store, user_id, seed_id)

        with patch.object(FairStore, "max_nonce", new=flaky):
            with self.assertLogs("fairplay.ledger", level="WARNING"):
                result = self.ledger.place_bet("alice", "1", "ETH", "player1", target=50)
        self.assertEqual(len(calls), 2)
        self.assertEqual(result.session.nonce, 0)
        self.assertEqual(self.count("game_sessions"), 1)
        self.assertEqual(self.count("transactions"), 3)

    def test_retries_are_bounded(self):
        ledger = LedgerEngine(self.repo, seeds=self.seeds, max_retries=2, retry_delay=0)
        calls = []

        def always_locked(store, user_id, seed_id):
            calls.append(seed_id)
            raise sqlite3.OperationalError("database is locked")

        with patch.object(FairStore, "max_nonce", new=always_locked):
            with self.assertRaises(SettlementFailure) as ctx:
                ledger.place_bet("alice", "1", "ETH", "x", target=50)
        self.assertEqual(len(calls), 3)
        self.assertEqual(ctx.exception.reason, "Failed to place bet. Please try again.")
        self.assertEqual(self.count("game_sessions"), 0)
        self.assertEqual(self.balance(), Decimal("5"))


# ============================================================
# Concurrency
# ============================================================

class TestConcurrentBets(LedgerTestCase):

    def setUp(self):
        super().setUp()
        self.seeds.initialize()
        self.fund("alice", "100")

    def _assert_serializable(self, results, start=Decimal("100")):
        nonces = sorted(r.session.nonce for r in results)
        self.assertEqual(nonces, list(range(len(results))))
        expected = start
        for r in results:
            expected += Decimal(r.win_amount) - Decimal(r.session.bet_amount)
        self.assertEqual(self.balance(), expected)
        self.assertTrue(self.ledger.audit_ledger("alice", "ETH").ok)

    def test_parallel_bets_same_engine(self):
        with ThreadPoolExecutor(max_workers=8) as pool:
            futures = [pool.submit(self.ledger.place_bet, "alice", "0.5", "ETH", "race", None,
                                   {"game": "dice", "target": 50})
                       for _ in range(20)]
            results = [f.result() for f in futures]
        self._assert_serializable(results)

    def test_parallel_bets_across_engines(self):
        """Two engines share no in-process lock; storage must serialize them."""
        other = LedgerEngine(self.repo, seeds=SeedManager(self.repo), retry_delay=0)
        with ThreadPoolExecutor(max_workers=8) as pool:
            futures = []
            for i in range(16):
                engine = self.ledger if i % 2 else other
                futures.append(pool.submit(engine.place_bet, "alice", "0.25", "ETH", "race",
                                           None, {"game": "plinko"}))
            results = [f.result() for f in futures]
        self._assert_serializable(results)

    def test_lock_table_is_bounded(self):
        for i in range(100):
            with self.assertRaises(NotFound):
                self.ledger.place_bet(f"ghost{i}", "1", "ETH", "x", target=50)
        self.assertEqual(len(self.ledger._user_locks), USER_LOCK_STRIPES)
        self.assertIs(self.ledger._user_lock("alice"), self.ledger._user_lock("alice"))

    def test_users_do_not_block_each_other(self):
        self.ledger.open_wallets("bob")
        self.fund("bob", "100")
        with ThreadPoolExecutor(max_workers=6) as pool:
            futures = [pool.submit(self.ledger.place_bet, user, "1", "ETH", "mix", 75)
                       for user in ["alice", "bob"] * 6]
            results = [f.result() for f in futures]
        for user in ("alice", "bob"):
            mine = [r for r in results if r.session.user_id == user]
            self.assertEqual(sorted(r.session.nonce for r in mine), list(range(6)))
            self.assertTrue(self.ledger.audit_ledger(user, "ETH").ok)


# ============================================================
# Wallets, deposits, history, audit
# ============================================================

class TestWalletsAndDeposits(LedgerTestCase):

    def test_open_wallets_is_idempotent(self):
        wallets = self.ledger.open_wallets("alice")
        self.assertEqual(sorted(w.currency for w in wallets), ["BTC", "ETH", "USDT"])
        self.assertEqual(self.count("wallets"), 3)
        for w in wallets:
            self.assertEqual(w.available_balance, 0)

    def test_deposit_lifecycle(self):
        tx = self.ledger.request_deposit("alice", "ETH", "5")
        self.assertEqual(tx.status, TxStatus.PENDING)
        self.assertEqual(self.balance(), 0)

        approved = self.ledger.approve_deposit(tx.id)
        self.assertEqual(approved.status, TxStatus.COMPLETED)
        self.assertEqual((approved.balance_before, approved.balance_after), ("0.00000000", "5.00000000"))
        self.assertEqual(approved.ledger_seq, 0)
        self.assertEqual(self.balance(), Decimal("5"))

        with self.assertRaises(InvalidArgument) as ctx:
            self.ledger.approve_deposit(tx.id)
        self.assertEqual(ctx.exception.reason, "Transaction is not pending")
        self.assertEqual(self.balance(), Decimal("5"))

    def test_decline_deposit(self):
        tx = self.ledger.request_deposit("alice", "BTC", "2", metadata={"tx_hash": "0xabc"})
        declined = self.ledger.decline_deposit(tx.id)
        self.assertEqual(declined.status, TxStatus.FAILED)
        self.assertEqual(self.balance(currency="BTC"), 0)
        with self.assertRaises(InvalidArgument):
            self.ledger.approve_deposit(tx.id)
        self.assertTrue(self.ledger.audit_ledger("alice", "BTC").ok)

    def test_deposit_errors(self):
        with self.assertRaises(NotFound):
            self.ledger.request_deposit("nobody", "ETH", "1")
        with self.assertRaises(InvalidArgument):
            self.ledger.request_deposit("alice", "ETH", "-3")
        with self.assertRaises(NotFound):
            self.ledger.approve_deposit("missing")
        with self.assertRaises(NotFound):
            self.ledger.decline_deposit("missing")

    def test_parse_amount(self):
        self.assertEqual(parse_amount("1.5"), Decimal("1.50000000"))
        self.assertEqual(parse_amount(2), Decimal("2"))
        with self.assertRaises(InvalidArgument):
            parse_amount(None)
        limit = FairPlayConfig.MAX_AMOUNT
        self.assertEqual(parse_amount(str(limit)), limit)

    def test_large_balances_stay_exact(self):
        limit = FairPlayConfig.MAX_AMOUNT
        for _ in range(3):
            self.fund("alice", f"{limit - Decimal('0.00000001')}")
        self.assertEqual(self.balance(), limit * 3 - Decimal("0.00000003"))
        self.assertTrue(self.ledger.audit_ledger("alice", "ETH").ok)

    def test_open_wallets_rejects_bad_currencies(self):
        for currencies in ("USDT", ["DOGE"], [], [7], {"ETH": 1}):
            with self.assertRaises(InvalidArgument, msg=repr(currencies)):
                self.ledger.open_wallets("carol", currencies)
        self.assertEqual(self.ledger.list_wallets("carol"), [])

        wallets = self.ledger.open_wallets("carol", ["btc"])
        self.assertEqual([w.currency for w in wallets], ["BTC"])


class TestHistoryAndAudit(LedgerTestCase):

    def setUp(self):
        super().setUp()
        self.install_seed()
        self.fund("alice", "10")

    def test_sessions_most_recent_first(self):
        for _ in range(4):
            self.ledger.place_bet("alice", "0.1", "ETH", "h", target=50)
        sessions = self.ledger.get_user_game_sessions("alice")
        self.assertEqual([s.nonce for s in sessions], [3, 2, 1, 0])
        self.assertEqual(len(self.ledger.get_user_game_sessions("alice", limit=2)), 2)
        self.assertEqual(self.ledger.get_user_game_sessions("bob"), [])
        with self.assertRaises(InvalidArgument):
            self.ledger.get_user_game_sessions("alice", limit=0)

    def test_verification_payload_discloses_after_rotation(self):
        result = self.ledger.place_bet("alice", "1", "ETH", "player1", target=50)
        before = self.ledger.get_session_for_verification(result.session.id)
        self.assertIsNone(before["disclosure"])
        self.assertNotIn("seed_value", before["server_seed"])
        self.assertEqual(before["server_seed"]["seed_hash"], sha256_hex("abc123"))

        self.seeds.rotate_server_seed()
        after = self.ledger.get_session_for_verification(result.session.id)
        self.assertEqual(after["disclosure"], {
            "server_seed": "abc123",
            "seed_hash": sha256_hex("abc123"),
            "client_seed": "player1",
            "nonce": 0,
            "outcome": 49.45,
            "verified": True,
        })
        self.assertTrue(after["verification_steps"])

    def test_verification_unknown_session(self):
        with self.assertRaises(NotFound):
            self.ledger.get_session_for_verification("missing")

    def test_audit_balances(self):
        for target in (10, 50, 90):
            self.ledger.place_bet("alice", "1", "ETH", "audit", target=target)
        self.fund("alice", "2.5")
        audit = self.ledger.audit_ledger("alice", "ETH")
        self.assertTrue(audit.ok, audit.problems)
        self.assertEqual(audit.entries, 8)
        self.assertEqual(Decimal(audit.ledger_sum), self.balance())

        txs = self.ledger.get_transactions("alice", "ETH")
        self.assertEqual([t.ledger_seq for t in txs], list(range(8)))
        for prev, nxt in zip(txs, txs[1:]):
            self.assertEqual(prev.balance_after, nxt.balance_before)

    def test_audit_detects_tampering(self):
        self.ledger.place_bet("alice", "1", "ETH", "audit", target=50)
        with self.repo.transaction() as store:
            store.db.execute("UPDATE wallets SET available_balance = '999' WHERE user_id = 'alice' AND currency = 'ETH'")
        audit = self.ledger.audit_ledger("alice", "ETH")
        self.assertFalse(audit.ok)
        self.assertTrue(any("wallet balance" in p for p in audit.problems))


if __name__ == "__main__":
    unittest.main(verbosity=2)
