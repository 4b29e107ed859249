"""
FAIRPLAY — Provably Fair Outcome Engine

Server-seed + client-seed + nonce system for verifiable random outcomes.

Architecture:
    Server publishes seed_hash = SHA-256(server_seed) before any bet.
    Player supplies client_seed; nonce counts the player's bets on that seed.
    For each bet:
        hmac    = HMAC-SHA256(key=server_seed, msg=client_seed + ":" + nonce)
        hex     = hmac[:8]                       (4 bytes, unsigned 32-bit)
        outcome = (int(hex, 16) % 10000) / 100   (0.00 .. 99.99)
    After rotation the server_seed is revealed; anyone can re-run the
    derivation and check SHA-256(server_seed) == seed_hash.

Everything here is a pure function. No state, no I/O.

Usage:
    from tools.provably_fair import calculate_outcome, verify_outcome

    result = calculate_outcome("abc123", "player1", 0)
    print(result.outcome, result.hex, result.hmac)
    verify_outcome("abc123", "player1", 0, result.outcome)   # True
"""

from __future__ import annotations

import hashlib
import hmac
import math
import secrets
from contextlib import contextmanager
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP, localcontext

from config.settings import FairPlayConfig
from tools.fair_errors import InvalidArgument

HOUSE_EDGE = 0.01
RTP_NUMERATOR = 99            # multiplier = 99 / target  →  1% edge
OUTCOME_MODULUS = 10000       # outcome granularity: 0.01
AMOUNT_DECIMALS = FairPlayConfig.AMOUNT_DECIMALS
AMOUNT_QUANT = Decimal(1).scaleb(-AMOUNT_DECIMALS)
AMOUNT_PRECISION = 60         # significant digits for ledger arithmetic


# ═══════════════════════════════════════════════════════════════
# Data Structures
# ═══════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class OutcomeResult:
    """Result of one outcome derivation with its audit trail."""
    outcome: float      # 0.00 .. 99.99
    hex: str            # first 8 hex chars of the HMAC
    hmac: str           # full lowercase HMAC-SHA256

    def to_dict(self) -> dict:
        return {"outcome": self.outcome, "hex": self.hex, "hmac": self.hmac}


# ═══════════════════════════════════════════════════════════════
# Hashing Primitives
# ═══════════════════════════════════════════════════════════════

def sha256_hex(value: str) -> str:
    """SHA-256 commitment of a seed, lowercase hex."""
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


def hmac_sha256(key: str, message: str) -> str:
    return hmac.new(
        key=key.encode("utf-8"),
        msg=message.encode("utf-8"),
        digestmod=hashlib.sha256,
    ).hexdigest()


def generate_secure_random_seed(length: int = 32) -> str:
    """Cryptographically secure random bytes, hex-encoded.

    Only used for server seeds, never for outcome computation.
    """
    if length <= 0:
        raise InvalidArgument("Seed length must be positive")
    return secrets.token_bytes(length).hex()


# ═══════════════════════════════════════════════════════════════
# Core Derivation
# ═══════════════════════════════════════════════════════════════

def _check_nonce(nonce) -> int:
    if isinstance(nonce, bool) or not isinstance(nonce, int) or nonce < 0:
        raise InvalidArgument("Nonce must be a non-negative integer")
    return nonce


def calculate_outcome(server_seed: str, client_seed: str, nonce: int) -> OutcomeResult:
    """Derive the bet outcome in [0, 100) from the seed triple.

    Reproduced bit-exact by every verifier, so never change this formula.
    """
    _check_nonce(nonce)
    digest = hmac_sha256(server_seed, f"{client_seed}:{nonce}")
    hex_part = digest[:8]
    decimal_value = int(hex_part, 16)
    outcome = (decimal_value % OUTCOME_MODULUS) / 100
    return OutcomeResult(outcome=outcome, hex=hex_part, hmac=digest)


def verify_outcome(server_seed: str, client_seed: str, nonce: int,
                   expected_outcome) -> bool:
    """Recompute and compare at 2-decimal string precision.

    String comparison sidesteps binary float drift (49.45 vs 49.450000001).
    """
    try:
        expected = float(expected_outcome)
    except (TypeError, ValueError):
        return False
    if not math.isfinite(expected):
        return False
    result = calculate_outcome(server_seed, client_seed, nonce)
    return f"{result.outcome:.2f}" == f"{expected:.2f}"


def build_verification_steps() -> list[str]:
    """Human-readable recipe shipped with every disclosure payload."""
    return [
        "1. Check: SHA-256(server_seed) == seed_hash (published before play)",
        "2. Compute: hmac = HMAC-SHA256(key=server_seed, msg=client_seed + ':' + str(nonce))",
        "3. Take the first 8 hex chars of hmac -> unsigned 32-bit integer",
        "4. outcome = (integer % 10000) / 100",
        "5. Apply the game rules to outcome to get the payout multiplier",
    ]


# ═══════════════════════════════════════════════════════════════
# Dice Math (roll-under, 1% house edge)
# ═══════════════════════════════════════════════════════════════

def _check_target(target) -> float:
    if isinstance(target, bool):
        raise InvalidArgument("Target must be between 0 and 100")
    try:
        value = float(target)
    except (TypeError, ValueError):
        raise InvalidArgument("Target must be between 0 and 100")
    if not math.isfinite(value) or value <= 0 or value >= 100:
        raise InvalidArgument("Target must be between 0 and 100")
    return value


def calculate_multiplier(target) -> float:
    """Payout multiplier for a roll-under target.

    P(win) = target/100 and payout = 99/target, so EV = 0.99 at any target.
    """
    return RTP_NUMERATOR / _check_target(target)


def check_win(outcome: float, target) -> bool:
    """Strict roll-under: landing exactly on target loses."""
    return outcome < target


@contextmanager
def amount_context():
    """Decimal context wide enough that balance sums never round."""
    with localcontext() as ctx:
        ctx.prec = AMOUNT_PRECISION
        yield ctx


def quantize_amount(value: Decimal) -> Decimal:
    """Round half-up to AMOUNT_DECIMALS places."""
    with amount_context():
        try:
            return value.quantize(AMOUNT_QUANT, rounding=ROUND_HALF_UP)
        except InvalidOperation:
            raise InvalidArgument("Amount is out of range")


def calculate_win_amount(bet_amount, outcome: float, target) -> str:
    """bet * 99/target to 8 decimal places on a win, "0" otherwise."""
    target_value = _check_target(target)
    try:
        bet = Decimal(str(bet_amount))
    except InvalidOperation:
        raise InvalidArgument("Bet amount must be a positive number")
    if not bet.is_finite():
        raise InvalidArgument("Bet amount must be a positive number")
    if not check_win(outcome, target_value):
        return "0"
    multiplier = Decimal(RTP_NUMERATOR) / Decimal(str(target_value))
    return f"{quantize_amount(bet * multiplier):f}"
