"""
FAIRPLAY — Database Abstraction Layer

Dual-mode: SQLite for local dev and tests, PostgreSQL for production.
The target string decides: anything starting with "postgres" goes through a
psycopg3 connection pool, everything else is treated as a SQLite file path.

Usage:
    from config.database import connect, init_schema

    db = connect("fairplay.db")
    try:
        db.begin()
        db.execute("SELECT * FROM wallets WHERE user_id = ? FOR UPDATE", [uid])
        row = db.fetchone()
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()
"""

import logging
import sqlite3
import threading

logger = logging.getLogger("fairplay.db")

# ── Connection pools (PostgreSQL only), one per conninfo ──
_pg_pools = {}
_pg_pools_lock = threading.Lock()


def is_postgres_target(target: str) -> bool:
    return str(target).startswith("postgres")


def _get_pg_pool(conninfo: str):
    """Lazy-init a PostgreSQL connection pool for this conninfo."""
    from psycopg.rows import dict_row
    from psycopg_pool import ConnectionPool

    # Railway-style postgres:// but psycopg wants postgresql://
    if conninfo.startswith("postgres://"):
        conninfo = conninfo.replace("postgres://", "postgresql://", 1)
    with _pg_pools_lock:
        pool = _pg_pools.get(conninfo)
        if pool is None:
            pool = ConnectionPool(
                conninfo=conninfo,
                min_size=2,
                max_size=20,
                max_idle=300,
                kwargs={"row_factory": dict_row, "autocommit": False},
            )
            _pg_pools[conninfo] = pool
            logger.info("PostgreSQL pool initialized (min=2, max=20)")
    return pool


# ── SQLite dict-row wrapper ──
class _SqliteDict(dict):
    """Makes sqlite3 rows behave like a dict with .get() support."""
    pass


def _sqlite_dict_factory(cursor, row):
    d = _SqliteDict()
    for idx, col in enumerate(cursor.description):
        d[col[0]] = row[idx]
    return d


def _open_sqlite(path: str):
    """Open a raw SQLite connection in manual-transaction mode."""
    conn = sqlite3.connect(path, timeout=10, isolation_level=None,
                           check_same_thread=False)
    conn.row_factory = _sqlite_dict_factory
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA busy_timeout=5000")
    conn.execute("PRAGMA foreign_keys=ON")
    return conn


# ═══════════════════════════════════════════════════════════════
# Public API
# ═══════════════════════════════════════════════════════════════

class DatabaseConnection:
    """Unified wrapper around SQLite or PostgreSQL connections.

    Normalizes the interface so callers don't care which backend is active.
    - Accepts ? or %s placeholders, converts to the active backend
    - Returns list[dict] from queries
    - begin() takes the write lock up front (BEGIN IMMEDIATE on SQLite);
      PostgreSQL opens its transaction implicitly and relies on FOR UPDATE
    """

    def __init__(self, conn, is_pg=False, pool=None):
        self._conn = conn
        self._is_pg = is_pg
        self._pool = pool
        self._cursor = None

    @property
    def is_pg(self) -> bool:
        return self._is_pg

    def _adapt_sql(self, sql):
        """Convert between placeholder styles and strip PG-only clauses."""
        if self._is_pg:
            sql = sql.replace("?", "%s")
        else:
            sql = sql.replace("%s", "?")
            # SQLite serializes writers with BEGIN IMMEDIATE instead
            sql = sql.replace(" FOR UPDATE", "")
        return sql

    def execute(self, sql, params=None):
        """Execute a query. Returns self for chaining."""
        sql = self._adapt_sql(sql)
        self._cursor = self._conn.execute(sql, params or [])
        return self

    def executescript(self, sql):
        """Execute multiple statements. For PG, splits on semicolons."""
        if self._is_pg:
            for stmt in sql.split(";"):
                stmt = stmt.strip()
                if stmt:
                    self._conn.execute(stmt)
        else:
            self._conn.executescript(sql)
        return self

    def fetchone(self):
        """Fetch one row as dict, or None."""
        if self._cursor is None:
            return None
        row = self._cursor.fetchone()
        return dict(row) if row and not isinstance(row, dict) else row

    def fetchall(self):
        """Fetch all rows as list[dict]."""
        if self._cursor is None:
            return []
        rows = self._cursor.fetchall()
        return [dict(r) if not isinstance(r, dict) else r for r in rows]

    def begin(self):
        if not self._is_pg:
            self._conn.execute("BEGIN IMMEDIATE")
        return self

    def commit(self):
        self._conn.commit()

    def rollback(self):
        self._conn.rollback()

    def close(self):
        if self._pool is not None:
            # Return connection to pool
            self._pool.putconn(self._conn)
        else:
            self._conn.close()


def connect(target: str) -> DatabaseConnection:
    """Open a DatabaseConnection for a postgres URL or a SQLite file path.
    Caller MUST close this connection."""
    if is_postgres_target(target):
        pool = _get_pg_pool(target)
        return DatabaseConnection(pool.getconn(), is_pg=True, pool=pool)
    return DatabaseConnection(_open_sqlite(target), is_pg=False)


# ── Retryable driver errors ──
# serialization_failure, deadlock_detected, lock_not_available
_PG_TRANSIENT_SQLSTATES = {"40001", "40P01", "55P03"}
_CONFLICT_CONSTRAINTS = ("uq_session_nonce", "uq_ledger_seq", "uq_active_seed")


def is_transient_error(exc: BaseException) -> bool:
    """True when a storage error is worth retrying at the transaction boundary.

    Covers lock contention, serialization failures, dropped connections and
    unique-index conflicts on nonce, ledger sequence and active-seed
    assignment.
    """
    if isinstance(exc, sqlite3.OperationalError):
        msg = str(exc).lower()
        return "locked" in msg or "busy" in msg
    if isinstance(exc, sqlite3.IntegrityError):
        msg = str(exc).lower()
        return ("game_sessions.nonce" in msg
                or "transactions.ledger_seq" in msg
                or "server_seeds.is_active" in msg)

    if type(exc).__name__ == "PoolTimeout":
        return True

    sqlstate = getattr(exc, "sqlstate", None)
    if not sqlstate:
        return False
    if sqlstate in _PG_TRANSIENT_SQLSTATES or sqlstate.startswith("08"):
        return True
    if sqlstate == "23505":
        constraint = getattr(getattr(exc, "diag", None), "constraint_name", "") or ""
        return constraint in _CONFLICT_CONSTRAINTS
    return False


def is_storage_error(exc: BaseException) -> bool:
    """True for any error raised by the SQLite or psycopg drivers."""
    if isinstance(exc, sqlite3.Error):
        return True
    return type(exc).__module__.startswith("psycopg")


# ═══════════════════════════════════════════════════════════════
# Schema Initialization
# ═══════════════════════════════════════════════════════════════

# SQL that works for BOTH SQLite and PostgreSQL
# TEXT for timestamps and decimal amounts, INTEGER for booleans
SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS server_seeds (
    id TEXT PRIMARY KEY,
    seed_value TEXT NOT NULL,
    seed_hash TEXT NOT NULL,
    is_active INTEGER NOT NULL DEFAULT 0,
    next_seed_hash TEXT,
    next_seed_value TEXT,
    rotated_at TEXT,
    created_at TEXT DEFAULT (CURRENT_TIMESTAMP)
);

CREATE UNIQUE INDEX IF NOT EXISTS uq_active_seed ON server_seeds(is_active) WHERE is_active = 1;

CREATE TABLE IF NOT EXISTS wallets (
    user_id TEXT NOT NULL,
    currency TEXT NOT NULL,
    available_balance TEXT NOT NULL DEFAULT '0',
    locked_balance TEXT NOT NULL DEFAULT '0',
    updated_at TEXT DEFAULT (CURRENT_TIMESTAMP),
    PRIMARY KEY (user_id, currency)
);

CREATE TABLE IF NOT EXISTS game_sessions (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    server_seed_id TEXT NOT NULL,
    client_seed TEXT NOT NULL,
    nonce INTEGER NOT NULL,
    game TEXT NOT NULL DEFAULT 'dice',
    bet_amount TEXT NOT NULL,
    currency TEXT NOT NULL,
    outcome REAL NOT NULL,
    multiplier REAL NOT NULL DEFAULT 0,
    win_amount TEXT NOT NULL DEFAULT '0',
    status TEXT NOT NULL DEFAULT 'PENDING',
    game_data TEXT DEFAULT '{}',
    created_at TEXT DEFAULT (CURRENT_TIMESTAMP),
    completed_at TEXT,
    FOREIGN KEY (server_seed_id) REFERENCES server_seeds(id)
);

CREATE UNIQUE INDEX IF NOT EXISTS uq_session_nonce ON game_sessions(user_id, server_seed_id, nonce);
CREATE INDEX IF NOT EXISTS idx_sessions_user ON game_sessions(user_id);
CREATE INDEX IF NOT EXISTS idx_sessions_seed ON game_sessions(server_seed_id);

CREATE TABLE IF NOT EXISTS transactions (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    type TEXT NOT NULL,
    currency TEXT NOT NULL,
    amount TEXT NOT NULL,
    balance_before TEXT,
    balance_after TEXT,
    status TEXT NOT NULL DEFAULT 'PENDING',
    game_session_id TEXT,
    metadata TEXT DEFAULT '{}',
    ledger_seq INTEGER,
    created_at TEXT DEFAULT (CURRENT_TIMESTAMP),
    completed_at TEXT,
    FOREIGN KEY (game_session_id) REFERENCES game_sessions(id)
);

CREATE UNIQUE INDEX IF NOT EXISTS uq_ledger_seq ON transactions(user_id, currency, ledger_seq);
CREATE INDEX IF NOT EXISTS idx_tx_user_currency ON transactions(user_id, currency);
CREATE INDEX IF NOT EXISTS idx_tx_session ON transactions(game_session_id);
CREATE INDEX IF NOT EXISTS idx_tx_status ON transactions(status)
"""


def init_schema(db: DatabaseConnection):
    """Create tables and indexes. Safe to call on every startup."""
    db.executescript(SCHEMA_SQL)
    db.commit()
    mode = "PostgreSQL" if db.is_pg else "SQLite"
    logger.info(f"Database schema ready ({mode})")
