"""
FAIRPLAY — Ledger & Settlement Engine

Ties one provably fair outcome to one balance mutation. A bet is a single
storage transaction:

    wallet (locked) → active seed → nonce → outcome → verdict
        → session PENDING → WAGER → WIN | LOSS → session WON | LOST → commit

Nothing of a failed attempt survives: the PENDING session, the wager row and
the balance change all roll back together. Bets of one user are serialized
in-process by a lock striped on the user id and across processes by the
storage write lock (BEGIN IMMEDIATE on SQLite, SELECT … FOR UPDATE on
PostgreSQL).

Lock contention and nonce/sequence conflicts are retried with linear backoff;
business rejections (bad input, missing wallet, insufficient funds) are not.

Usage:
    ledger = LedgerEngine(FairRepository())
    ledger.open_wallets("user-1")
    result = ledger.place_bet("user-1", "0.5", "ETH", "my-seed", target=49.5)
    print(result.session.nonce, result.outcome, result.win_amount)
"""

from __future__ import annotations

import logging
import threading
import time
import uuid
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Callable, Optional

from config.settings import FairPlayConfig
from sim_engine.rmg import get_game_adapter, parse_bet_spec
from sim_engine.rmg.bets import DiceBet
from tools.fair_errors import (
    FairPlayError, InsufficientFunds, InvalidArgument, NotFound,
    SettlementFailure, TransientStorageError,
)
from tools.fair_repository import (
    FairRepository, FairStore, GameSession, SessionStatus, Transaction,
    TxStatus, TxType, Wallet, utc_now,
)
from tools.provably_fair import (
    amount_context, build_verification_steps, calculate_multiplier, calculate_outcome,
    quantize_amount, verify_outcome,
)
from tools.seed_manager import SeedManager

logger = logging.getLogger("fairplay.ledger")

SETTLEMENT_FAILED_MSG = "Failed to place bet. Please try again."

# Users hash onto a fixed set of locks, so unknown ids cost nothing
USER_LOCK_STRIPES = 64


# ═══════════════════════════════════════════════════════════════
# Amount Helpers
# ═══════════════════════════════════════════════════════════════

def parse_amount(value, label: str = "Bet amount") -> Decimal:
    """Positive finite decimal, quantized to 8 dp."""
    message = f"{label} must be a positive number"
    if isinstance(value, bool) or value is None:
        raise InvalidArgument(message)
    try:
        amount = Decimal(str(value).strip())
    except InvalidOperation:
        raise InvalidArgument(message)
    if not amount.is_finite() or amount <= 0:
        raise InvalidArgument(message)
    if amount > FairPlayConfig.MAX_AMOUNT:
        raise InvalidArgument(f"{label} exceeds the maximum of {FairPlayConfig.MAX_AMOUNT}")
    amount = quantize_amount(amount)
    if amount <= 0:
        raise InvalidArgument(message)
    return amount


def format_amount(value: Decimal) -> str:
    return f"{quantize_amount(value):f}"


def _require_text(value, message: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise InvalidArgument(message)
    return value


def _normalize_currency(currency) -> str:
    return _require_text(currency, "Currency is required").strip().upper()


# ═══════════════════════════════════════════════════════════════
# Result Types
# ═══════════════════════════════════════════════════════════════

@dataclass
class BetResult:
    """What place_bet hands back once the settlement is committed."""
    session: GameSession
    outcome: float
    won: bool
    win_amount: str
    transactions: list[Transaction] = field(default_factory=list)
    balance: Optional[str] = None
    rotated_seed_id: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "session": self.session.to_dict(),
            "outcome": self.outcome,
            "won": self.won,
            "win_amount": self.win_amount,
            "transactions": [t.to_dict() for t in self.transactions],
            "balance": self.balance,
            "rotated_seed_id": self.rotated_seed_id,
        }


@dataclass
class LedgerAudit:
    user_id: str
    currency: str
    wallet_balance: str
    ledger_sum: str
    entries: int
    problems: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.problems

    def to_dict(self) -> dict:
        return {
            "user_id": self.user_id,
            "currency": self.currency,
            "wallet_balance": self.wallet_balance,
            "ledger_sum": self.ledger_sum,
            "entries": self.entries,
            "ok": self.ok,
            "problems": list(self.problems),
        }


# ═══════════════════════════════════════════════════════════════
# Engine
# ═══════════════════════════════════════════════════════════════

class LedgerEngine:
    """Owns every mutation of wallets and transactions."""

    def __init__(self, repository: FairRepository,
                 seeds: Optional[SeedManager] = None,
                 max_retries: Optional[int] = None,
                 retry_delay: Optional[float] = None):
        self.repo = repository
        self.seeds = seeds or SeedManager(repository)
        self.max_retries = FairPlayConfig.SETTLEMENT_MAX_RETRIES if max_retries is None else max_retries
        self.retry_delay = FairPlayConfig.SETTLEMENT_RETRY_DELAY if retry_delay is None else retry_delay
        self._user_locks = [threading.Lock() for _ in range(USER_LOCK_STRIPES)]

    def _user_lock(self, user_id: str) -> threading.Lock:
        return self._user_locks[hash(user_id) % len(self._user_locks)]

    def _with_retries(self, operation: str, attempt_fn: Callable, failure_msg: str):
        """Run attempt_fn, retrying transient storage errors with linear backoff."""
        attempt = 0
        while True:
            attempt += 1
            try:
                return attempt_fn()
            except TransientStorageError as e:
                if attempt > self.max_retries:
                    logger.error(f"{operation} gave up after {attempt} attempts: {e}")
                    raise SettlementFailure(failure_msg) from e
                logger.warning(f"{operation} attempt {attempt} hit contention ({e}), retrying")
                time.sleep(self.retry_delay * attempt)
            except FairPlayError:
                raise
            except Exception as e:
                logger.exception(f"{operation} failed unexpectedly")
                raise SettlementFailure(failure_msg) from e

    # ── Betting ──

    @staticmethod
    def _resolve_bet(target, bet):
        if target is not None and bet is not None:
            raise InvalidArgument("Provide either a dice target or a bet spec, not both")
        if target is not None:
            # Same range check and message as the multiplier
            calculate_multiplier(target)
            return DiceBet(target=float(target))
        if bet is None:
            raise InvalidArgument("A dice target or a bet spec is required")
        return parse_bet_spec(bet)

    def place_bet(self, user_id: str, bet_amount, currency: str, client_seed: str,
                  target=None, bet=None) -> BetResult:
        """Settle one bet atomically. Raises before any write on invalid input."""
        _require_text(user_id, "User id is required")
        amount = parse_amount(bet_amount)
        currency = _normalize_currency(currency)
        _require_text(client_seed, "Client seed is required")
        spec = self._resolve_bet(target, bet)

        with self._user_lock(user_id):
            return self._with_retries(
                "place_bet",
                lambda: self._settle_once(user_id, amount, currency, client_seed, spec),
                SETTLEMENT_FAILED_MSG,
            )

    def _settle_once(self, user_id: str, amount: Decimal, currency: str,
                     client_seed: str, spec) -> BetResult:
        with self.repo.transaction() as store, amount_context():
            wallet = store.get_wallet(user_id, currency, for_update=True)
            if wallet is None:
                raise NotFound("Wallet not found")
            if wallet.available_balance < amount:
                raise InsufficientFunds("Insufficient balance")

            seed = self.seeds.get_active_server_seed(store)
            nonce = self.seeds.get_next_nonce(user_id, seed.id, store)
            result = calculate_outcome(seed.seed_value, client_seed, nonce)

            adapter = get_game_adapter(spec.game)
            verdict = adapter.evaluate(result.outcome, spec)
            win = adapter.win_amount(amount, verdict, spec)
            won = verdict.won and win > 0
            win_str = format_amount(win) if won else "0"

            session = store.insert_game_session(GameSession(
                id=str(uuid.uuid4()),
                user_id=user_id,
                server_seed_id=seed.id,
                client_seed=client_seed,
                nonce=nonce,
                game=spec.game,
                bet_amount=format_amount(amount),
                currency=currency,
                outcome=result.outcome,
                game_data={"bet": spec.model_dump(mode="json")},
            ))

            seq = store.max_ledger_seq(user_id, currency)
            seq = 0 if seq is None else seq + 1
            meta = {"game": spec.game, "nonce": nonce, "outcome": result.outcome}

            balance = wallet.available_balance
            wager = self._post(store, user_id, currency, TxType.WAGER, -amount,
                               balance, session.id, meta, seq)
            balance = balance - amount

            if won:
                settle = self._post(store, user_id, currency, TxType.WIN, win,
                                    balance, session.id, meta, seq + 1)
                balance = balance + win
            else:
                settle = self._post(store, user_id, currency, TxType.LOSS, Decimal("0"),
                                    balance, session.id, meta, seq + 1)
            store.set_wallet(user_id, currency, balance)

            session.status = SessionStatus.WON if won else SessionStatus.LOST
            session.multiplier = verdict.multiplier
            session.win_amount = win_str
            session.game_data = {
                **session.game_data,
                **verdict.details,
                "hex": result.hex,
                "hmac": result.hmac,
            }
            session.completed_at = store.set_game_session_status(
                session.id, session.status, session.multiplier, win_str, session.game_data)

            rotated = self.seeds.rotate_if_exhausted(store, seed)

        logger.info(
            f"Bet settled: user={user_id} game={spec.game} nonce={nonce} "
            f"outcome={result.outcome:.2f} {session.status} win={win_str} {currency}")
        return BetResult(
            session=session,
            outcome=result.outcome,
            won=won,
            win_amount=win_str,
            transactions=[wager, settle],
            balance=format_amount(balance),
            rotated_seed_id=rotated.id if rotated else None,
        )

    @staticmethod
    def _post(store: FairStore, user_id: str, currency: str, tx_type: str,
              amount: Decimal, before: Decimal, session_id: Optional[str],
              metadata: dict, seq: int) -> Transaction:
        """Append one completed ledger row."""
        now = utc_now()
        return store.insert_transaction(Transaction(
            id=str(uuid.uuid4()),
            user_id=user_id,
            type=tx_type,
            currency=currency,
            amount=format_amount(amount),
            balance_before=format_amount(before),
            balance_after=format_amount(before + amount),
            status=TxStatus.COMPLETED,
            game_session_id=session_id,
            metadata=metadata,
            ledger_seq=seq,
            created_at=now,
            completed_at=now,
        ))

    # ── Wallets ──

    def open_wallets(self, user_id: str, currencies: Optional[list[str]] = None) -> list[Wallet]:
        """Create zero-balance wallets the user does not have yet."""
        _require_text(user_id, "User id is required")
        if currencies is None:
            currencies = FairPlayConfig.SUPPORTED_CURRENCIES
        if not isinstance(currencies, (list, tuple)) or not currencies:
            raise InvalidArgument("Currencies must be a non-empty list of currency codes")
        wanted = [_normalize_currency(c) for c in currencies]
        for currency in wanted:
            if currency not in FairPlayConfig.SUPPORTED_CURRENCIES:
                raise InvalidArgument(f"Unsupported currency: {currency}")

        def attempt():
            with self.repo.transaction() as store:
                for currency in wanted:
                    if store.get_wallet(user_id, currency) is None:
                        store.insert_wallet(Wallet(user_id=user_id, currency=currency))
                        logger.info(f"Wallet opened: user={user_id} currency={currency}")
                return [w for w in store.list_wallets(user_id) if w.currency in wanted]

        return self._with_retries("open_wallets", attempt, "Failed to open wallets")

    def get_wallet(self, user_id: str, currency: str) -> Wallet:
        currency = _normalize_currency(currency)
        with self.repo.transaction(write=False) as store:
            wallet = store.get_wallet(user_id, currency)
        if wallet is None:
            raise NotFound("Wallet not found")
        return wallet

    def list_wallets(self, user_id: str) -> list[Wallet]:
        with self.repo.transaction(write=False) as store:
            return store.list_wallets(user_id)

    # ── Deposits (operator-approved) ──

    def request_deposit(self, user_id: str, currency: str, amount,
                        metadata: Optional[dict] = None) -> Transaction:
        """Record a PENDING deposit. The balance moves only on approval."""
        _require_text(user_id, "User id is required")
        value = parse_amount(amount, label="Deposit amount")
        currency = _normalize_currency(currency)

        def attempt():
            with self.repo.transaction() as store:
                if store.get_wallet(user_id, currency) is None:
                    raise NotFound("Wallet not found")
                return store.insert_transaction(Transaction(
                    id=str(uuid.uuid4()),
                    user_id=user_id,
                    type=TxType.DEPOSIT,
                    currency=currency,
                    amount=format_amount(value),
                    status=TxStatus.PENDING,
                    metadata=metadata or {},
                ))

        tx = self._with_retries("request_deposit", attempt, "Failed to record deposit")
        logger.info(f"Deposit requested: {tx.id} user={user_id} {tx.amount} {currency}")
        return tx

    def _pending_deposit(self, store: FairStore, transaction_id: str) -> Transaction:
        tx = store.get_transaction(transaction_id, for_update=True)
        if tx is None:
            raise NotFound("Transaction not found")
        if tx.type != TxType.DEPOSIT or tx.status != TxStatus.PENDING:
            raise InvalidArgument("Transaction is not pending")
        return tx

    def _deposit_owner(self, transaction_id: str) -> str:
        with self.repo.transaction(write=False) as store:
            tx = store.get_transaction(transaction_id)
        if tx is None:
            raise NotFound("Transaction not found")
        return tx.user_id

    def approve_deposit(self, transaction_id: str) -> Transaction:
        """PENDING → COMPLETED and credit the wallet in one transaction."""
        user_id = self._deposit_owner(transaction_id)

        def attempt():
            with self.repo.transaction() as store, amount_context():
                tx = self._pending_deposit(store, transaction_id)
                wallet = store.get_wallet(tx.user_id, tx.currency, for_update=True)
                if wallet is None:
                    raise NotFound("Wallet not found")
                seq = store.max_ledger_seq(tx.user_id, tx.currency)
                before = wallet.available_balance
                after = before + Decimal(tx.amount)
                tx.balance_before = format_amount(before)
                tx.balance_after = format_amount(after)
                tx.ledger_seq = 0 if seq is None else seq + 1
                tx.status = TxStatus.COMPLETED
                tx.completed_at = store.set_transaction_status(
                    tx.id, TxStatus.COMPLETED, tx.balance_before, tx.balance_after, tx.ledger_seq)
                store.set_wallet(tx.user_id, tx.currency, after)
                return tx

        with self._user_lock(user_id):
            tx = self._with_retries("approve_deposit", attempt, "Failed to approve deposit")
        logger.info(f"Deposit approved: {tx.id} user={tx.user_id} +{tx.amount} {tx.currency}")
        return tx

    def decline_deposit(self, transaction_id: str) -> Transaction:
        def attempt():
            with self.repo.transaction() as store:
                tx = self._pending_deposit(store, transaction_id)
                tx.status = TxStatus.FAILED
                tx.completed_at = store.set_transaction_status(tx.id, TxStatus.FAILED)
                return tx

        tx = self._with_retries("decline_deposit", attempt, "Failed to decline deposit")
        logger.info(f"Deposit declined: {tx.id} user={tx.user_id}")
        return tx

    # ── History & verification ──

    def get_user_game_sessions(self, user_id: str, limit: int = 50) -> list[GameSession]:
        if isinstance(limit, bool) or not isinstance(limit, int) or limit <= 0:
            raise InvalidArgument("Limit must be a positive integer")
        with self.repo.transaction(write=False) as store:
            return store.list_game_sessions(user_id, limit=min(limit, 500))

    def get_transactions(self, user_id: str, currency: Optional[str] = None) -> list[Transaction]:
        with self.repo.transaction(write=False) as store:
            return store.list_transactions(
                user_id, currency=_normalize_currency(currency) if currency else None)

    def get_session_for_verification(self, session_id: str) -> dict:
        """Session plus everything needed to re-derive its outcome.

        The raw server seed is included only once that seed has been rotated.
        """
        with self.repo.transaction(write=False) as store:
            session = store.get_game_session(session_id)
            if session is None:
                raise NotFound("Game session not found")
            seed = store.get_server_seed_by_id(session.server_seed_id)
        if seed is None:
            raise NotFound("Server seed not found")

        seed_view = SeedManager.public_view(seed)
        payload = {
            "session": session.to_dict(),
            "server_seed": seed_view,
            "verification_steps": build_verification_steps(),
            "disclosure": None,
        }
        if "seed_value" in seed_view:
            payload["disclosure"] = {
                "server_seed": seed.seed_value,
                "seed_hash": seed.seed_hash,
                "client_seed": session.client_seed,
                "nonce": session.nonce,
                "outcome": session.outcome,
                "verified": verify_outcome(seed.seed_value, session.client_seed,
                                           session.nonce, session.outcome),
            }
        else:
            payload["message"] = "Server seed is revealed after the next rotation"
        return payload

    # ── Audit ──

    def audit_ledger(self, user_id: str, currency: str) -> LedgerAudit:
        """Check chain continuity and that the ledger sums to the wallet balance."""
        currency = _normalize_currency(currency)
        with self.repo.transaction(write=False) as store:
            wallet = store.get_wallet(user_id, currency)
            if wallet is None:
                raise NotFound("Wallet not found")
            rows = store.list_transactions(user_id, currency=currency, status=TxStatus.COMPLETED)

        problems = []
        total = Decimal("0")
        previous_after = Decimal("0")
        for i, tx in enumerate(rows):
            amount = Decimal(tx.amount)
            before = Decimal(tx.balance_before)
            after = Decimal(tx.balance_after)
            total += amount
            if tx.ledger_seq != i:
                problems.append(f"{tx.id}: ledger_seq {tx.ledger_seq}, expected {i}")
            if before != previous_after:
                problems.append(f"{tx.id}: balance_before {tx.balance_before} does not follow {format_amount(previous_after)}")
            if before + amount != after:
                problems.append(f"{tx.id}: {tx.balance_before} + {tx.amount} != {tx.balance_after}")
            if after < 0:
                problems.append(f"{tx.id}: negative balance {tx.balance_after}")
            previous_after = after

        if total != wallet.available_balance:
            problems.append(
                f"ledger sum {format_amount(total)} != wallet balance {format_amount(wallet.available_balance)}")
        if problems:
            logger.warning(f"Ledger audit failed for {user_id}/{currency}: {len(problems)} problem(s)")

        return LedgerAudit(
            user_id=user_id,
            currency=currency,
            wallet_balance=format_amount(wallet.available_balance),
            ledger_sum=format_amount(total),
            entries=len(rows),
            problems=problems,
        )
