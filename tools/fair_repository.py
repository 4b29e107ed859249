"""
FAIRPLAY — Storage Repository

Row types for seeds, wallets, game sessions and ledger transactions, and the
SQL that reads and writes them. Every method runs on the connection of one
open transaction; the Ledger and the Seed Manager compose them:

    repo = FairRepository("data/fairplay.db")
    with repo.transaction() as store:
        wallet = store.get_wallet("u1", "ETH", for_update=True)
        store.set_wallet("u1", "ETH", wallet.available_balance - bet)

Leaving the block commits; any exception rolls the whole block back.
Driver errors come out as TransientStorageError (retryable) or
SettlementFailure, never as raw sqlite3/psycopg exceptions.
"""

from __future__ import annotations

import json
import logging
from contextlib import contextmanager
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from pathlib import Path
from typing import Iterator, Optional

from config.database import (
    DatabaseConnection, connect, init_schema, is_postgres_target,
    is_storage_error, is_transient_error,
)
from config.settings import FairPlayConfig
from tools.fair_errors import FairPlayError, SettlementFailure, TransientStorageError

logger = logging.getLogger("fairplay.db")


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _load_json(value) -> dict:
    if not value:
        return {}
    return json.loads(value) if isinstance(value, str) else dict(value)


# ═══════════════════════════════════════════════════════════════
# Row Types
# ═══════════════════════════════════════════════════════════════

class SessionStatus:
    PENDING = "PENDING"
    WON = "WON"
    LOST = "LOST"


class TxType:
    DEPOSIT = "DEPOSIT"
    WAGER = "WAGER"
    WIN = "WIN"
    LOSS = "LOSS"


class TxStatus:
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


@dataclass
class ServerSeed:
    id: str
    seed_value: str
    seed_hash: str
    is_active: bool
    next_seed_hash: Optional[str] = None
    next_seed_value: Optional[str] = None     # plaintext behind next_seed_hash
    rotated_at: Optional[str] = None
    created_at: Optional[str] = None

    @classmethod
    def from_row(cls, row: dict) -> "ServerSeed":
        return cls(
            id=row["id"],
            seed_value=row["seed_value"],
            seed_hash=row["seed_hash"],
            is_active=bool(row["is_active"]),
            next_seed_hash=row.get("next_seed_hash"),
            next_seed_value=row.get("next_seed_value"),
            rotated_at=row.get("rotated_at"),
            created_at=str(row["created_at"]) if row.get("created_at") else None,
        )


@dataclass
class Wallet:
    user_id: str
    currency: str
    available_balance: Decimal = Decimal("0")
    locked_balance: Decimal = Decimal("0")
    updated_at: Optional[str] = None

    @classmethod
    def from_row(cls, row: dict) -> "Wallet":
        return cls(
            user_id=row["user_id"],
            currency=row["currency"],
            available_balance=Decimal(row["available_balance"]),
            locked_balance=Decimal(row["locked_balance"]),
            updated_at=str(row["updated_at"]) if row.get("updated_at") else None,
        )

    def to_dict(self) -> dict:
        return {
            "user_id": self.user_id,
            "currency": self.currency,
            "available_balance": f"{self.available_balance:f}",
            "locked_balance": f"{self.locked_balance:f}",
            "updated_at": self.updated_at,
        }


@dataclass
class GameSession:
    id: str
    user_id: str
    server_seed_id: str
    client_seed: str
    nonce: int
    game: str
    bet_amount: str
    currency: str
    outcome: float
    multiplier: float = 0.0
    win_amount: str = "0"
    status: str = SessionStatus.PENDING
    game_data: dict = field(default_factory=dict)
    created_at: Optional[str] = None
    completed_at: Optional[str] = None

    @classmethod
    def from_row(cls, row: dict) -> "GameSession":
        return cls(
            id=row["id"],
            user_id=row["user_id"],
            server_seed_id=row["server_seed_id"],
            client_seed=row["client_seed"],
            nonce=int(row["nonce"]),
            game=row["game"],
            bet_amount=row["bet_amount"],
            currency=row["currency"],
            outcome=float(row["outcome"]),
            multiplier=float(row["multiplier"] or 0),
            win_amount=row["win_amount"],
            status=row["status"],
            game_data=_load_json(row.get("game_data")),
            created_at=str(row["created_at"]) if row.get("created_at") else None,
            completed_at=row.get("completed_at"),
        )

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class Transaction:
    id: str
    user_id: str
    type: str
    currency: str
    amount: str                               # signed, 8 dp
    balance_before: Optional[str] = None
    balance_after: Optional[str] = None
    status: str = TxStatus.PENDING
    game_session_id: Optional[str] = None
    metadata: dict = field(default_factory=dict)
    ledger_seq: Optional[int] = None
    created_at: Optional[str] = None
    completed_at: Optional[str] = None

    @classmethod
    def from_row(cls, row: dict) -> "Transaction":
        seq = row.get("ledger_seq")
        return cls(
            id=row["id"],
            user_id=row["user_id"],
            type=row["type"],
            currency=row["currency"],
            amount=row["amount"],
            balance_before=row.get("balance_before"),
            balance_after=row.get("balance_after"),
            status=row["status"],
            game_session_id=row.get("game_session_id"),
            metadata=_load_json(row.get("metadata")),
            ledger_seq=int(seq) if seq is not None else None,
            created_at=str(row["created_at"]) if row.get("created_at") else None,
            completed_at=row.get("completed_at"),
        )

    def to_dict(self) -> dict:
        return asdict(self)


# ═══════════════════════════════════════════════════════════════
# Unit of Work
# ═══════════════════════════════════════════════════════════════

class FairStore:
    """Repository calls bound to one open transaction."""

    def __init__(self, db: DatabaseConnection):
        self.db = db

    # ── Wallets ──

    def get_wallet(self, user_id: str, currency: str,
                   for_update: bool = False) -> Optional[Wallet]:
        sql = "SELECT * FROM wallets WHERE user_id = ? AND currency = ?"
        if for_update:
            sql += " FOR UPDATE"
        row = self.db.execute(sql, [user_id, currency]).fetchone()
        return Wallet.from_row(row) if row else None

    def insert_wallet(self, wallet: Wallet) -> Wallet:
        wallet.updated_at = wallet.updated_at or utc_now()
        self.db.execute(
            "INSERT INTO wallets (user_id, currency, available_balance, locked_balance, updated_at) "
            "VALUES (?,?,?,?,?)",
            [wallet.user_id, wallet.currency, f"{wallet.available_balance:f}",
             f"{wallet.locked_balance:f}", wallet.updated_at],
        )
        return wallet

    def set_wallet(self, user_id: str, currency: str, available_balance: Decimal):
        self.db.execute(
            "UPDATE wallets SET available_balance = ?, updated_at = ? "
            "WHERE user_id = ? AND currency = ?",
            [f"{available_balance:f}", utc_now(), user_id, currency],
        )

    def list_wallets(self, user_id: str) -> list[Wallet]:
        rows = self.db.execute(
            "SELECT * FROM wallets WHERE user_id = ? ORDER BY currency", [user_id]
        ).fetchall()
        return [Wallet.from_row(r) for r in rows]

    # ── Transactions ──

    def insert_transaction(self, tx: Transaction) -> Transaction:
        tx.created_at = tx.created_at or utc_now()
        self.db.execute(
            "INSERT INTO transactions (id, user_id, type, currency, amount, balance_before, "
            "balance_after, status, game_session_id, metadata, ledger_seq, created_at, completed_at) "
            "VALUES (?,?,?,?,?,?,?,?,?,?,?,?,?)",
            [tx.id, tx.user_id, tx.type, tx.currency, tx.amount, tx.balance_before,
             tx.balance_after, tx.status, tx.game_session_id, json.dumps(tx.metadata),
             tx.ledger_seq, tx.created_at, tx.completed_at],
        )
        return tx

    def get_transaction(self, tx_id: str, for_update: bool = False) -> Optional[Transaction]:
        sql = "SELECT * FROM transactions WHERE id = ?"
        if for_update:
            sql += " FOR UPDATE"
        row = self.db.execute(sql, [tx_id]).fetchone()
        return Transaction.from_row(row) if row else None

    def set_transaction_status(self, tx_id: str, status: str,
                               balance_before: Optional[str] = None,
                               balance_after: Optional[str] = None,
                               ledger_seq: Optional[int] = None) -> str:
        completed_at = utc_now()
        self.db.execute(
            "UPDATE transactions SET status = ?, "
            "balance_before = COALESCE(?, balance_before), "
            "balance_after = COALESCE(?, balance_after), "
            "ledger_seq = COALESCE(?, ledger_seq), completed_at = ? WHERE id = ?",
            [status, balance_before, balance_after, ledger_seq, completed_at, tx_id],
        )
        return completed_at

    def list_transactions(self, user_id: str, currency: Optional[str] = None,
                          status: Optional[str] = None,
                          game_session_id: Optional[str] = None) -> list[Transaction]:
        sql = "SELECT * FROM transactions WHERE user_id = ?"
        params: list = [user_id]
        if currency:
            sql += " AND currency = ?"
            params.append(currency)
        if status:
            sql += " AND status = ?"
            params.append(status)
        if game_session_id:
            sql += " AND game_session_id = ?"
            params.append(game_session_id)
        # Completed rows in chain order, then the unsequenced ones by age
        sql += " ORDER BY CASE WHEN ledger_seq IS NULL THEN 1 ELSE 0 END, ledger_seq, created_at"
        return [Transaction.from_row(r) for r in self.db.execute(sql, params).fetchall()]

    def max_ledger_seq(self, user_id: str, currency: str) -> Optional[int]:
        row = self.db.execute(
            "SELECT MAX(ledger_seq) AS m FROM transactions WHERE user_id = ? AND currency = ?",
            [user_id, currency],
        ).fetchone()
        return int(row["m"]) if row and row["m"] is not None else None

    # ── Game sessions ──

    def insert_game_session(self, session: GameSession) -> GameSession:
        session.created_at = session.created_at or utc_now()
        self.db.execute(
            "INSERT INTO game_sessions (id, user_id, server_seed_id, client_seed, nonce, game, "
            "bet_amount, currency, outcome, multiplier, win_amount, status, game_data, "
            "created_at, completed_at) VALUES (?,?,?,?,?,?,?,?,?,?,?,?,?,?,?)",
            [session.id, session.user_id, session.server_seed_id, session.client_seed,
             session.nonce, session.game, session.bet_amount, session.currency,
             session.outcome, session.multiplier, session.win_amount, session.status,
             json.dumps(session.game_data), session.created_at, session.completed_at],
        )
        return session

    def set_game_session_status(self, session_id: str, status: str, multiplier: float,
                                win_amount: str, game_data: Optional[dict] = None) -> str:
        completed_at = utc_now()
        self.db.execute(
            "UPDATE game_sessions SET status = ?, multiplier = ?, win_amount = ?, "
            "game_data = ?, completed_at = ? WHERE id = ?",
            [status, multiplier, win_amount, json.dumps(game_data or {}), completed_at, session_id],
        )
        return completed_at

    def get_game_session(self, session_id: str) -> Optional[GameSession]:
        row = self.db.execute("SELECT * FROM game_sessions WHERE id = ?", [session_id]).fetchone()
        return GameSession.from_row(row) if row else None

    def list_game_sessions(self, user_id: str, limit: int = 50) -> list[GameSession]:
        rows = self.db.execute(
            "SELECT * FROM game_sessions WHERE user_id = ? "
            "ORDER BY created_at DESC, nonce DESC LIMIT ?",
            [user_id, int(limit)],
        ).fetchall()
        return [GameSession.from_row(r) for r in rows]

    def max_nonce(self, user_id: str, server_seed_id: str) -> Optional[int]:
        row = self.db.execute(
            "SELECT MAX(nonce) AS m FROM game_sessions WHERE user_id = ? AND server_seed_id = ?",
            [user_id, server_seed_id],
        ).fetchone()
        return int(row["m"]) if row and row["m"] is not None else None

    def count_sessions_for_seed(self, server_seed_id: str) -> int:
        row = self.db.execute(
            "SELECT COUNT(*) AS c FROM game_sessions WHERE server_seed_id = ?",
            [server_seed_id],
        ).fetchone()
        return int(row["c"]) if row else 0

    # ── Server seeds ──

    def get_server_seed_by_active(self, for_update: bool = False) -> Optional[ServerSeed]:
        sql = "SELECT * FROM server_seeds WHERE is_active = 1"
        if for_update:
            sql += " FOR UPDATE"
        row = self.db.execute(sql).fetchone()
        return ServerSeed.from_row(row) if row else None

    def get_server_seed_by_id(self, seed_id: str) -> Optional[ServerSeed]:
        row = self.db.execute("SELECT * FROM server_seeds WHERE id = ?", [seed_id]).fetchone()
        return ServerSeed.from_row(row) if row else None

    def insert_server_seed(self, seed: ServerSeed) -> ServerSeed:
        seed.created_at = seed.created_at or utc_now()
        self.db.execute(
            "INSERT INTO server_seeds (id, seed_value, seed_hash, is_active, next_seed_hash, "
            "next_seed_value, rotated_at, created_at) VALUES (?,?,?,?,?,?,?,?)",
            [seed.id, seed.seed_value, seed.seed_hash, 1 if seed.is_active else 0,
             seed.next_seed_hash, seed.next_seed_value, seed.rotated_at, seed.created_at],
        )
        return seed

    def set_server_seed(self, seed_id: str, is_active: bool, rotated_at: Optional[str] = None):
        self.db.execute(
            "UPDATE server_seeds SET is_active = ?, rotated_at = COALESCE(?, rotated_at) WHERE id = ?",
            [1 if is_active else 0, rotated_at, seed_id],
        )


# ═══════════════════════════════════════════════════════════════
# Repository
# ═══════════════════════════════════════════════════════════════

class FairRepository:
    """Opens storage transactions against one SQLite file or PostgreSQL URL."""

    def __init__(self, target: Optional[str] = None, create_schema: bool = True):
        self.target = target or FairPlayConfig.database_target()
        if not is_postgres_target(self.target):
            Path(self.target).parent.mkdir(parents=True, exist_ok=True)
        if create_schema:
            db = connect(self.target)
            try:
                init_schema(db)
            finally:
                db.close()

    @property
    def is_postgres(self) -> bool:
        return is_postgres_target(self.target)

    @contextmanager
    def transaction(self, write: bool = True) -> Iterator[FairStore]:
        """One atomic unit: commit on normal exit, roll back on any exception.

        write=True takes the storage write lock up front (BEGIN IMMEDIATE on
        SQLite) so concurrent writers queue instead of failing mid-way.
        """
        db = None
        try:
            db = connect(self.target)
            if write:
                db.begin()
            yield FairStore(db)
            db.commit()
        except FairPlayError:
            _safe_rollback(db)
            raise
        except Exception as e:
            _safe_rollback(db)
            if is_transient_error(e):
                raise TransientStorageError(f"Storage busy: {e}") from e
            if is_storage_error(e):
                logger.error(f"Storage error, transaction rolled back: {e}")
                raise SettlementFailure("Storage operation failed") from e
            raise
        finally:
            if db is not None:
                db.close()


def _safe_rollback(db: Optional[DatabaseConnection]):
    if db is None:
        return
    try:
        db.rollback()
    except Exception as e:
        logger.warning(f"Rollback failed: {e}")
