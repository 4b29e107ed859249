#!/usr/bin/env python3
"""
Tests for the /api/fair HTTP surface

Validates:
1. Seed commitments are public, plaintext is not
2. Rotation needs the operator token
3. /verify reproduces the golden vector without auth
4. Bets settle over HTTP; engine errors map to 400/402/404/503
5. Session disclosure, wallets, history, deposits and audit endpoints
6. Player routes need a signed-in session and act only for that player
"""

import sys
import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch

# ── Ensure project root is on sys.path ──
PROJECT_ROOT = Path(__file__).parent
sys.path.insert(0, str(PROJECT_ROOT))

from config.settings import FairPlayConfig
from tools.fair_repository import FairRepository, FairStore
from tools.provably_fair import sha256_hex
from web_app import create_app

TOKEN = "op-secret"


class ApiTestCase(unittest.TestCase):

    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.repo = FairRepository(str(Path(self._tmp.name) / "api.db"))
        self.app = create_app(repository=self.repo,
                              config={"TESTING": True, "FAIRPLAY_ADMIN_TOKEN": TOKEN})
        self.client = self.app.test_client()

    def tearDown(self):
        self._tmp.cleanup()

    def operator(self):
        return {"X-Admin-Token": TOKEN}

    def login(self, user_id="alice", client=None):
        client = client or self.client
        resp = client.post(f"/api/fair/players/{user_id}/login", headers=self.operator())
        self.assertEqual(resp.status_code, 200)
        return client

    def funded_user(self, user_id="alice", amount="10"):
        self.login(user_id)
        self.client.post("/api/fair/wallets", json={})
        tx = self.client.post("/api/fair/deposits",
                              json={"currency": "ETH", "amount": amount}).get_json()
        resp = self.client.post(f"/api/fair/deposits/{tx['id']}/approve", headers=self.operator())
        self.assertEqual(resp.status_code, 200)
        return user_id

    def bet(self, **overrides):
        body = {"bet_amount": "1", "currency": "ETH", "client_seed": "http-seed", "target": 50}
        body.update(overrides)
        return self.client.post("/api/fair/bet", json=body)


class TestSeedEndpoints(ApiTestCase):

    def test_active_seed_is_commitment_only(self):
        resp = self.client.get("/api/fair/seed")
        self.assertEqual(resp.status_code, 200)
        data = resp.get_json()
        self.assertTrue(data["is_active"])
        self.assertEqual(len(data["seed_hash"]), 64)
        self.assertIn("next_seed_hash", data)
        self.assertNotIn("seed_value", data)
        self.assertNotIn("next_seed_value", data)

    def test_rotate_requires_token(self):
        self.assertEqual(self.client.post("/api/fair/seed/rotate").status_code, 403)
        resp = self.client.post("/api/fair/seed/rotate", headers={"X-Admin-Token": "guess"})
        self.assertEqual(resp.status_code, 403)

    def test_rotate_promotes_committed_seed(self):
        before = self.client.get("/api/fair/seed").get_json()
        resp = self.client.post("/api/fair/seed/rotate", headers=self.operator())
        self.assertEqual(resp.status_code, 200)
        active = resp.get_json()["active"]
        self.assertEqual(active["seed_hash"], before["next_seed_hash"])

        retired = self.client.get(f"/api/fair/seeds/{before['id']}").get_json()
        self.assertEqual(sha256_hex(retired["seed_value"]), before["seed_hash"])

    def test_rotate_locked_without_configured_token(self):
        app = create_app(repository=self.repo, config={"TESTING": True, "FAIRPLAY_ADMIN_TOKEN": ""})
        resp = app.test_client().post("/api/fair/seed/rotate", headers={"X-Admin-Token": ""})
        self.assertEqual(resp.status_code, 403)


class TestVerifyEndpoint(ApiTestCase):

    def test_golden_vector(self):
        resp = self.client.post("/api/fair/verify", json={
            "server_seed": "abc123", "client_seed": "player1", "nonce": 0, "outcome": 49.45})
        self.assertEqual(resp.status_code, 200)
        data = resp.get_json()
        self.assertTrue(data["valid"])
        self.assertEqual(data["computed"]["outcome"], 49.45)
        self.assertEqual(data["computed"]["hex"], "4b7a95d1")
        self.assertEqual(data["seed_hash"], sha256_hex("abc123"))

    def test_mismatch_is_not_an_error(self):
        resp = self.client.post("/api/fair/verify", json={
            "server_seed": "abc123", "client_seed": "player1", "nonce": 0, "outcome": 12.34})
        self.assertEqual(resp.status_code, 200)
        self.assertFalse(resp.get_json()["valid"])

    def test_bad_requests(self):
        resp = self.client.post("/api/fair/verify", json={"server_seed": "abc123", "client_seed": "p"})
        self.assertEqual(resp.status_code, 400)
        self.assertEqual(resp.get_json()["error"], "Nonce must be a non-negative integer")
        resp = self.client.post("/api/fair/verify", data="nope", content_type="text/plain")
        self.assertEqual(resp.status_code, 400)


class TestBetEndpoints(ApiTestCase):

    def setUp(self):
        super().setUp()
        self.funded_user()

    def test_place_bet(self):
        resp = self.bet()
        self.assertEqual(resp.status_code, 200)
        data = resp.get_json()
        self.assertEqual(data["session"]["nonce"], 0)
        self.assertEqual(data["session"]["status"], "WON" if data["won"] else "LOST")
        self.assertEqual(len(data["transactions"]), 2)

    def test_place_bet_with_spec(self):
        resp = self.bet(target=None, bet={"game": "roulette", "bet_type": "number", "number": 7})
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.get_json()["session"]["game"], "roulette")

    def test_error_statuses(self):
        resp = self.bet(target=100)
        self.assertEqual(resp.status_code, 400)
        self.assertEqual(resp.get_json()["error"], "Target must be between 0 and 100")

        resp = self.bet(bet_amount="1000")
        self.assertEqual(resp.status_code, 402)
        self.assertEqual(resp.get_json()["error"], "Insufficient balance")

        resp = self.bet(bet_amount="1e30")
        self.assertEqual(resp.status_code, 400)
        self.assertEqual(resp.get_json()["error"],
                         f"Bet amount exceeds the maximum of {FairPlayConfig.MAX_AMOUNT}")

        resp = self.bet(currency="DOGE")
        self.assertEqual(resp.status_code, 404)

        with patch.object(FairStore, "set_game_session_status", side_effect=RuntimeError("boom")):
            resp = self.bet()
        self.assertEqual(resp.status_code, 503)
        self.assertEqual(resp.get_json()["error"], "Failed to place bet. Please try again.")

    def test_session_verification(self):
        session_id = self.bet().get_json()["session"]["id"]
        data = self.client.get(f"/api/fair/sessions/{session_id}/verification").get_json()
        self.assertIsNone(data["disclosure"])

        self.client.post("/api/fair/seed/rotate", headers=self.operator())
        data = self.client.get(f"/api/fair/sessions/{session_id}/verification").get_json()
        self.assertTrue(data["disclosure"]["verified"])

        resp = self.client.get("/api/fair/sessions/missing/verification")
        self.assertEqual(resp.status_code, 404)

    def test_wallet_and_history(self):
        self.bet()
        self.bet()
        wallet = self.client.get("/api/fair/wallets/eth").get_json()
        self.assertEqual(wallet["currency"], "ETH")
        self.assertEqual(wallet["user_id"], "alice")
        self.assertEqual(self.client.get("/api/fair/wallets/DOGE").status_code, 404)

        listed = self.client.get("/api/fair/wallets").get_json()["wallets"]
        self.assertEqual([w["currency"] for w in listed], ["BTC", "ETH", "USDT"])

        history = self.client.get("/api/fair/sessions?limit=1").get_json()
        self.assertEqual(history["count"], 1)
        self.assertEqual(history["sessions"][0]["nonce"], 1)
        self.assertEqual(self.client.get("/api/fair/sessions?limit=abc").status_code, 400)

    def test_audit_requires_operator(self):
        self.bet()
        self.assertEqual(self.client.get("/api/fair/audit/alice/ETH").status_code, 403)
        audit = self.client.get("/api/fair/audit/alice/ETH", headers=self.operator()).get_json()
        self.assertTrue(audit["ok"])
        self.assertEqual(audit["entries"], 3)

    def test_decline_deposit(self):
        tx = self.client.post("/api/fair/deposits", json={"currency": "ETH", "amount": "3"}).get_json()
        self.assertEqual(tx["status"], "PENDING")
        resp = self.client.post(f"/api/fair/deposits/{tx['id']}/decline", headers=self.operator())
        self.assertEqual(resp.get_json()["status"], "FAILED")


class TestPlayerAuth(ApiTestCase):

    def test_player_routes_require_sign_in(self):
        calls = [
            ("post", "/api/fair/bet"),
            ("post", "/api/fair/wallets"),
            ("get", "/api/fair/wallets"),
            ("get", "/api/fair/wallets/ETH"),
            ("post", "/api/fair/deposits"),
            ("get", "/api/fair/sessions"),
        ]
        for method, path in calls:
            resp = getattr(self.client, method)(path, json={})
            self.assertEqual(resp.status_code, 401, path)
            self.assertEqual(resp.get_json()["error"], "Sign-in required")

    def test_login_requires_operator(self):
        self.assertEqual(self.client.post("/api/fair/players/alice/login").status_code, 403)
        resp = self.client.post("/api/fair/players/alice/login", headers={"X-Admin-Token": "guess"})
        self.assertEqual(resp.status_code, 403)
        self.assertEqual(self.client.get("/api/fair/wallets").status_code, 401)

    def test_cannot_act_for_another_player(self):
        self.funded_user("alice")
        other = self.login("bob", client=self.app.test_client())
        other.post("/api/fair/wallets", json={})

        resp = self.bet(user_id="bob")
        self.assertEqual(resp.status_code, 403)
        self.assertEqual(resp.get_json()["error"], "Cannot act for another player")
        resp = self.client.post("/api/fair/deposits",
                                json={"user_id": "bob", "currency": "ETH", "amount": "1"})
        self.assertEqual(resp.status_code, 403)

        resp = self.bet(user_id="alice")
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.get_json()["session"]["user_id"], "alice")
        self.assertEqual(other.get("/api/fair/sessions").get_json()["count"], 0)

    def test_logout(self):
        self.login("alice")
        self.assertEqual(self.client.get("/api/fair/wallets").status_code, 200)
        self.client.post("/api/fair/logout")
        self.assertEqual(self.client.get("/api/fair/wallets").status_code, 401)

    def test_open_wallets_validates_currencies(self):
        self.login("carol")
        resp = self.client.post("/api/fair/wallets", json={"currencies": "USDT"})
        self.assertEqual(resp.status_code, 400)
        resp = self.client.post("/api/fair/wallets", json={"currencies": ["DOGE"]})
        self.assertEqual(resp.get_json()["error"], "Unsupported currency: DOGE")
        self.assertEqual(self.client.get("/api/fair/wallets").get_json()["wallets"], [])

        resp = self.client.post("/api/fair/wallets", json={"currencies": ["usdt"]})
        self.assertEqual([w["currency"] for w in resp.get_json()["wallets"]], ["USDT"])


class TestMiscEndpoints(ApiTestCase):

    def test_games_listing(self):
        games = self.client.get("/api/fair/games").get_json()["games"]
        self.assertEqual({g["game_type"] for g in games},
                         {"dice", "roulette", "slots", "plinko", "balloon"})

    def test_health_and_404(self):
        self.assertEqual(self.client.get("/health").get_json()["storage"], "sqlite")
        resp = self.client.get("/api/fair/nothing-here")
        self.assertEqual(resp.status_code, 404)
        self.assertEqual(resp.get_json()["error"], "Not found")


if __name__ == "__main__":
    import logging
    logging.disable(logging.WARNING)

    unittest.main(verbosity=2)
