"""
FAIRPLAY — Configuration

All tunables are read from the environment (or a local .env file).
Defaults are safe for local development against SQLite.

Usage:
    from config.settings import FairPlayConfig
    retries = FairPlayConfig.SETTLEMENT_MAX_RETRIES
"""

import os
from decimal import Decimal
from pathlib import Path
from dotenv import load_dotenv

load_dotenv()

BASE_DIR = Path(__file__).parent.parent
DATA_DIR = Path(os.getenv("DATA_DIR", str(BASE_DIR / "data")))


class FairPlayConfig:

    # --- Storage ---
    # postgres://... selects PostgreSQL, anything else falls back to SQLite at DB_PATH
    DATABASE_URL = os.getenv("DATABASE_URL", "")
    DB_PATH = os.getenv("DB_PATH", str(DATA_DIR / "fairplay.db"))

    # --- Seeds ---
    SEED_BYTES = int(os.getenv("SEED_BYTES", "32"))
    # Rotate the active server seed after this many bets (0 = manual only)
    SEED_ROTATION_BET_LIMIT = int(os.getenv("SEED_ROTATION_BET_LIMIT", "0"))

    # --- Settlement ---
    SETTLEMENT_MAX_RETRIES = int(os.getenv("SETTLEMENT_MAX_RETRIES", "3"))
    SETTLEMENT_RETRY_DELAY = float(os.getenv("SETTLEMENT_RETRY_DELAY", "0.05"))
    # Ledger amounts are stored rounded half-up to this many decimal places
    AMOUNT_DECIMALS = int(os.getenv("AMOUNT_DECIMALS", "8"))
    # Largest single bet or deposit accepted
    MAX_AMOUNT = Decimal(os.getenv("MAX_AMOUNT", "1000000000"))

    # --- Wallets ---
    SUPPORTED_CURRENCIES = [
        c.strip().upper()
        for c in os.getenv("SUPPORTED_CURRENCIES", "ETH,BTC,USDT").split(",")
        if c.strip()
    ]

    # --- Operator access (seed rotation, deposit approval, player sign-in) ---
    ADMIN_TOKEN = os.getenv("FAIRPLAY_ADMIN_TOKEN", "").strip()

    # --- Player sessions (signed Flask session cookie) ---
    SECRET_KEY = (os.getenv("FLASK_SECRET_KEY") or os.getenv("SECRET_KEY") or "").strip()

    @classmethod
    def database_target(cls) -> str:
        """Return the URL or file path the repository should connect to."""
        if cls.DATABASE_URL.startswith("postgres"):
            return cls.DATABASE_URL
        return cls.DB_PATH
