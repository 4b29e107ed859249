#!/usr/bin/env python3
"""
Tests for the server seed lifecycle (commit-reveal)

Validates:
1. initialize() creates one active seed with a committed successor, idempotently
2. Rotation promotes the pre-committed plaintext: sha256(new) == old.next_seed_hash
3. Exactly one active seed survives any number of rotations
4. A tampered commitment aborts rotation without touching storage
5. Missing active seed: rotate raises NotFound, get_active self-heals
6. Plaintext is disclosed only for rotated seeds
"""

import sys
import tempfile
import unittest
from pathlib import Path

# ── Ensure project root is on sys.path ──
PROJECT_ROOT = Path(__file__).parent
sys.path.insert(0, str(PROJECT_ROOT))

from tools.fair_errors import NotFound, SettlementFailure, TransientStorageError
from tools.fair_repository import FairRepository, ServerSeed
from tools.provably_fair import sha256_hex
from tools.seed_manager import SeedManager


class SeedTestCase(unittest.TestCase):

    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.repo = FairRepository(str(Path(self._tmp.name) / "seeds.db"))
        self.seeds = SeedManager(self.repo)

    def tearDown(self):
        self._tmp.cleanup()

    def active_count(self) -> int:
        with self.repo.transaction(write=False) as store:
            return store.db.execute(
                "SELECT COUNT(*) AS c FROM server_seeds WHERE is_active = 1").fetchone()["c"]


class TestSeedInitialization(SeedTestCase):

    def test_initialize_commits_successor(self):
        seed = self.seeds.initialize()
        self.assertTrue(seed.is_active)
        self.assertEqual(len(seed.seed_value), 64)
        self.assertEqual(seed.seed_hash, sha256_hex(seed.seed_value))
        self.assertEqual(seed.next_seed_hash, sha256_hex(seed.next_seed_value))
        self.assertNotEqual(seed.seed_value, seed.next_seed_value)

    def test_initialize_is_idempotent(self):
        first = self.seeds.initialize()
        second = self.seeds.initialize()
        self.assertEqual(first.id, second.id)
        self.assertEqual(self.active_count(), 1)

    def test_get_active_self_heals(self):
        with self.assertLogs("fairplay.seeds", level="WARNING"):
            seed = self.seeds.get_active_server_seed()
        self.assertTrue(seed.is_active)
        self.assertEqual(self.seeds.get_active_server_seed().id, seed.id)

    def test_custom_seed_length(self):
        seed = SeedManager(self.repo, seed_bytes=16).initialize()
        self.assertEqual(len(seed.seed_value), 32)

    def test_storage_rejects_second_active_seed(self):
        self.seeds.initialize()
        with self.assertRaises(TransientStorageError):
            with self.repo.transaction() as store:
                store.insert_server_seed(ServerSeed(
                    id="rogue", seed_value="x", seed_hash=sha256_hex("x"), is_active=True))
        self.assertEqual(self.active_count(), 1)


class TestSeedRotation(SeedTestCase):

    def test_rotation_reveals_committed_plaintext(self):
        old = self.seeds.initialize()
        new = self.seeds.rotate_server_seed()

        self.assertNotEqual(new.id, old.id)
        self.assertEqual(new.seed_value, old.next_seed_value)
        self.assertEqual(sha256_hex(new.seed_value), old.next_seed_hash)
        self.assertEqual(new.seed_hash, old.next_seed_hash)

        retired = self.seeds.get_seed_for_verification(old.id)
        self.assertFalse(retired.is_active)
        self.assertIsNotNone(retired.rotated_at)
        self.assertEqual(self.seeds.get_active_server_seed().id, new.id)

    def test_commitment_chain_over_many_rotations(self):
        chain = [self.seeds.initialize()]
        for _ in range(5):
            chain.append(self.seeds.rotate_server_seed())
        for prev, nxt in zip(chain, chain[1:]):
            self.assertEqual(sha256_hex(nxt.seed_value), prev.next_seed_hash)
        self.assertEqual(self.active_count(), 1)

    def test_rotate_without_active_seed(self):
        with self.assertRaises(NotFound):
            self.seeds.rotate_server_seed()

    def test_tampered_commitment_aborts(self):
        seed = self.seeds.initialize()
        with self.repo.transaction() as store:
            store.db.execute("UPDATE server_seeds SET next_seed_value = ? WHERE id = ?",
                             ["not-the-committed-seed", seed.id])

        with self.assertRaises(SettlementFailure):
            self.seeds.rotate_server_seed()

        still = self.seeds.get_active_server_seed()
        self.assertEqual(still.id, seed.id)
        self.assertIsNone(still.rotated_at)
        self.assertEqual(self.active_count(), 1)


class TestSeedDisclosure(SeedTestCase):

    def test_active_seed_hides_plaintext(self):
        view = SeedManager.public_view(self.seeds.initialize())
        self.assertNotIn("seed_value", view)
        self.assertNotIn("next_seed_value", view)
        self.assertIn("seed_hash", view)
        self.assertIn("next_seed_hash", view)

    def test_rotated_seed_discloses_plaintext(self):
        old = self.seeds.initialize()
        self.seeds.rotate_server_seed()
        view = SeedManager.public_view(self.seeds.get_seed_for_verification(old.id))
        self.assertEqual(view["seed_value"], old.seed_value)
        self.assertEqual(sha256_hex(view["seed_value"]), view["seed_hash"])

    def test_unknown_seed(self):
        with self.assertRaises(NotFound):
            self.seeds.get_seed_for_verification("missing")

    def test_first_nonce_is_zero(self):
        seed = self.seeds.initialize()
        self.assertEqual(self.seeds.get_next_nonce("nobody", seed.id), 0)


if __name__ == "__main__":
    unittest.main(verbosity=2)
