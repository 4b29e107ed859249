"""
FAIRPLAY — Server Seed Lifecycle (commit-reveal)

    UNCOMMITTED ──initialize()──▶ ACTIVE ──rotate_server_seed()──▶ ROTATED

At any moment exactly one seed is active. Its hash is public, and so is the
hash of the seed that will replace it (next_seed_hash). The plaintext behind
next_seed_hash is stored with the active row and becomes the next active
seed_value on rotation, so players can check the chain link by link:

    sha256(new.seed_value) == old.next_seed_hash

A seed's plaintext is disclosed only after it has been rotated out.
"""

from __future__ import annotations

import logging
import uuid
from typing import Optional

from config.settings import FairPlayConfig
from tools.fair_errors import NotFound, SettlementFailure
from tools.fair_repository import FairRepository, FairStore, ServerSeed, utc_now
from tools.provably_fair import generate_secure_random_seed, sha256_hex

logger = logging.getLogger("fairplay.seeds")


class SeedManager:
    """Owns the server_seeds table. One authoritative issuer per deployment."""

    def __init__(self, repository: FairRepository, seed_bytes: Optional[int] = None):
        self.repo = repository
        self.seed_bytes = seed_bytes or FairPlayConfig.SEED_BYTES

    def _new_seed_value(self) -> str:
        return generate_secure_random_seed(self.seed_bytes)

    def _build_active(self, seed_value: str) -> ServerSeed:
        upcoming = self._new_seed_value()
        return ServerSeed(
            id=str(uuid.uuid4()),
            seed_value=seed_value,
            seed_hash=sha256_hex(seed_value),
            is_active=True,
            next_seed_hash=sha256_hex(upcoming),
            next_seed_value=upcoming,
        )

    # ── Lifecycle ──

    def initialize(self) -> ServerSeed:
        """Create the first active seed (with its committed successor) if none exists."""
        with self.repo.transaction() as store:
            return self.ensure_active(store)

    def ensure_active(self, store: FairStore) -> ServerSeed:
        """initialize() inside a caller's transaction."""
        existing = store.get_server_seed_by_active(for_update=True)
        if existing:
            return existing
        seed = store.insert_server_seed(self._build_active(self._new_seed_value()))
        logger.info(f"Server seed initialized: {seed.id} hash={seed.seed_hash[:16]}…")
        return seed

    def get_active_server_seed(self, store: Optional[FairStore] = None) -> ServerSeed:
        """Return the active seed, creating one if storage has none."""
        if store is not None:
            seed = store.get_server_seed_by_active()
            if seed is None:
                logger.warning("No active server seed found, initializing")
                seed = self.ensure_active(store)
            return seed

        with self.repo.transaction(write=False) as read:
            seed = read.get_server_seed_by_active()
        if seed is None:
            logger.warning("No active server seed found, initializing")
            seed = self.initialize()
        return seed

    def rotate_server_seed(self, store: Optional[FairStore] = None) -> ServerSeed:
        """Retire the active seed and promote the committed one, atomically."""
        if store is not None:
            return self._rotate(store)
        with self.repo.transaction() as tx:
            return self._rotate(tx)

    def _rotate(self, store: FairStore) -> ServerSeed:
        current = store.get_server_seed_by_active(for_update=True)
        if current is None:
            raise NotFound("No active server seed to rotate")

        promoted = current.next_seed_value
        if not promoted or sha256_hex(promoted) != current.next_seed_hash:
            logger.error(f"Seed {current.id}: stored successor does not match its commitment")
            raise SettlementFailure("Committed next seed does not match next_seed_hash")

        rotated_at = utc_now()
        store.set_server_seed(current.id, is_active=False, rotated_at=rotated_at)
        new_seed = store.insert_server_seed(self._build_active(promoted))
        logger.info(f"Server seed rotated: {current.id} → {new_seed.id}")
        return new_seed

    def get_next_nonce(self, user_id: str, server_seed_id: str,
                       store: Optional[FairStore] = None) -> int:
        """max(nonce) + 1 for this user on this seed, or 0 for a first bet."""
        if store is None:
            with self.repo.transaction(write=False) as read:
                current = read.max_nonce(user_id, server_seed_id)
        else:
            current = store.max_nonce(user_id, server_seed_id)
        return 0 if current is None else current + 1

    def rotate_if_exhausted(self, store: FairStore, seed: ServerSeed) -> Optional[ServerSeed]:
        """Auto-rotate once a seed has served SEED_ROTATION_BET_LIMIT bets."""
        limit = FairPlayConfig.SEED_ROTATION_BET_LIMIT
        if limit <= 0 or store.count_sessions_for_seed(seed.id) < limit:
            return None
        logger.info(f"Seed {seed.id} reached {limit} bets, rotating")
        return self._rotate(store)

    # ── Disclosure ──

    def get_seed_for_verification(self, seed_id: str) -> ServerSeed:
        with self.repo.transaction(write=False) as read:
            seed = read.get_server_seed_by_id(seed_id)
        if seed is None:
            raise NotFound("Server seed not found")
        return seed

    @staticmethod
    def public_view(seed: ServerSeed) -> dict:
        """Commitments always; plaintext only once the seed is retired."""
        view = {
            "id": seed.id,
            "seed_hash": seed.seed_hash,
            "next_seed_hash": seed.next_seed_hash,
            "is_active": seed.is_active,
            "rotated_at": seed.rotated_at,
            "created_at": seed.created_at,
        }
        if not seed.is_active and seed.rotated_at:
            view["seed_value"] = seed.seed_value
        return view
