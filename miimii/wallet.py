"""
Wallet Service for MiiMii
=========================
Authoritative balances, holds and the ledger.

Every mutation runs under a per-user lock and inside one database
transaction, so a debit and its compensating credit are committed in a
single ledger write. Every mutation is idempotent on its reference: a
replay with the same payload returns the earlier ledger entry, a replay
with a different payload is a Conflict.

Expected business outcomes (insufficient funds, limits, conflicts) come
back as ``Result`` failures rather than exceptions.
"""

import logging
import threading
from collections import defaultdict
from contextlib import contextmanager
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Callable, Dict, Iterator, List, Optional, Set
from zoneinfo import ZoneInfo

from miimii.database import Database, Repository
from miimii.errors import Conflict, InsufficientFunds, InternalError, InvalidInput, LimitExceeded, Result
from miimii.models import (
    Category, Hold, Transaction, TransactionStatus, TransactionType, VirtualAccount,
    Wallet, WalletState, WalletSummary, format_naira, money, utcnow,
)

logger = logging.getLogger(__name__)

REVERSAL_SUFFIX = "_rev"
# Metadata flag on a pending debit whose provider call has returned.
HANDED_OFF = "handed_off"


class WalletService:

    def __init__(self, db: Database, timezone: str = "Africa/Lagos", daily_limit: int = 5_000_000,
                 clock: Callable[[], datetime] = utcnow):
        self.db = db
        self.tz = ZoneInfo(timezone)
        self.daily_limit = money(daily_limit)
        self.clock = clock
        self._locks: Dict[str, threading.Lock] = defaultdict(threading.Lock)
        self._locks_guard = threading.Lock()
        self._in_flight: Set[str] = set()
        self._in_flight_guard = threading.Lock()

    def _lock(self, user_id: str) -> threading.Lock:
        with self._locks_guard:
            return self._locks[user_id]

    def _today(self) -> str:
        return self.clock().astimezone(self.tz).date().isoformat()

    # ------------------------------------------------------------------
    # Wallet lifecycle
    # ------------------------------------------------------------------

    def create_wallet(self, user_id: str) -> Wallet:
        with self._lock(user_id), self.db.transaction() as repo:
            row = repo.find_one("wallets", {"user_id": user_id})
            if row:
                return Wallet.from_row(row)
            wallet = Wallet(user_id=user_id, daily_limit=self.daily_limit, daily_spent_date=self._today(),
                            updated_at=self.clock())
            repo.create("wallets", wallet.to_row())
            logger.info(f"Wallet created for user {user_id}")
            return wallet

    def get_wallet(self, user_id: str) -> Optional[Wallet]:
        row = self.db.find_one("wallets", {"user_id": user_id})
        return Wallet.from_row(row) if row else None

    def attach_virtual_account(self, user_id: str, account: VirtualAccount) -> Wallet:
        with self._lock(user_id), self.db.transaction() as repo:
            row = repo.find_one("wallets", {"user_id": user_id}, for_update=True)
            if not row:
                raise InternalError(f"No wallet for user {user_id}")
            wallet = Wallet.from_row(row)
            wallet.virtual_account = account
            wallet.state = WalletState.ACTIVE
            wallet.updated_at = self.clock()
            self._save(repo, wallet)
            return wallet

    def record_provisioning_attempt(self, user_id: str) -> int:
        with self._lock(user_id), self.db.transaction() as repo:
            row = repo.find_one("wallets", {"user_id": user_id}, for_update=True)
            if not row:
                return 0
            attempts = int(row.get("provisioning_attempts") or 0) + 1
            repo.update("wallets", {"user_id": user_id}, {"provisioning_attempts": attempts})
            return attempts

    # ------------------------------------------------------------------
    # Debit / credit
    # ------------------------------------------------------------------

    def debit(self, user_id: str, amount: Decimal, reference: str, metadata: Dict[str, Any] = None,
              fee: Decimal = Decimal("0"), category: Category = Category.TRANSFER,
              description: str = "", status: TransactionStatus = TransactionStatus.INITIATED) -> Result:
        """Take ``amount + fee`` from the available balance."""
        txn = Transaction(
            reference=reference, user_id=user_id, type=TransactionType.DEBIT, category=category,
            amount=amount, fee=fee, status=status, description=description,
            metadata=dict(metadata or {}), created_at=self.clock(), updated_at=self.clock(),
        )
        if txn.total_amount <= 0:
            return Result.failure(InvalidInput("Amount must be greater than zero."))

        with self._lock(user_id), self.db.transaction() as repo:
            replay = self._replay(repo, txn)
            if replay is not None:
                return replay

            wallet, error = self._spendable_wallet(repo, user_id, txn.total_amount)
            if error:
                return Result.failure(error)

            wallet.available -= txn.total_amount
            wallet.daily_spent += txn.total_amount
            wallet.updated_at = self.clock()
            self._save(repo, wallet)
            repo.create("transactions", txn.to_row())

        logger.info(f"Debited {format_naira(txn.total_amount)} from {user_id} ({reference})")
        return Result.success(txn)

    def credit(self, user_id: str, amount: Decimal, reference: str, metadata: Dict[str, Any] = None,
               category: Category = Category.FUNDING, description: str = "") -> Result:
        txn = Transaction(
            reference=reference, user_id=user_id, type=TransactionType.CREDIT, category=category,
            amount=amount, status=TransactionStatus.COMPLETED, description=description,
            metadata=dict(metadata or {}), created_at=self.clock(), updated_at=self.clock(),
        )
        if txn.total_amount <= 0:
            return Result.failure(InvalidInput("Amount must be greater than zero."))

        with self._lock(user_id), self.db.transaction() as repo:
            replay = self._replay(repo, txn)
            if replay is not None:
                return replay
            row = repo.find_one("wallets", {"user_id": user_id}, for_update=True)
            if not row:
                return Result.failure(InvalidInput("No wallet found for this account."))
            self._post_credit(repo, Wallet.from_row(row), txn)

        logger.info(f"Credited {format_naira(txn.total_amount)} to {user_id} ({reference})")
        return Result.success(txn)

    def reverse(self, reference: str, reason: str = "") -> Result:
        """
        Compensate a debit that did not go through: the debit ends up
        ``reversed`` and a ``reversal`` credit ``<reference>_rev`` restores the
        funds, both in one ledger write.
        """
        row = self.db.find_one("transactions", {"reference": reference})
        if not row:
            return Result.failure(InvalidInput(f"Unknown transaction {reference}"))
        original = Transaction.from_row(row)

        with self._lock(original.user_id), self.db.transaction() as repo:
            original = Transaction.from_row(repo.find_one("transactions", {"reference": reference}))
            reversal_ref = reference + REVERSAL_SUFFIX

            if original.status == TransactionStatus.REVERSED:
                existing = repo.find_one("transactions", {"reference": reversal_ref})
                return Result.success(Transaction.from_row(existing)) if existing else \
                    Result.failure(InternalError(f"{reference} reversed without a reversal entry"))
            if original.type != TransactionType.DEBIT:
                return Result.failure(Conflict("Only debits can be reversed."))
            if original.status == TransactionStatus.COMPLETED:
                return Result.failure(Conflict("A completed transaction cannot be reversed automatically."))

            if original.status != TransactionStatus.FAILED:
                self._set_status(repo, original, TransactionStatus.FAILED)
            wallet_row = repo.find_one("wallets", {"user_id": original.user_id}, for_update=True)
            wallet = Wallet.from_row(wallet_row)

            reversal = Transaction(
                reference=reversal_ref, user_id=original.user_id, type=TransactionType.CREDIT,
                category=Category.REVERSAL, amount=original.total_amount,
                status=TransactionStatus.COMPLETED,
                description=f"Reversal of {reference}" + (f": {reason}" if reason else ""),
                metadata={"reverses": reference, "reason": reason},
                created_at=self.clock(), updated_at=self.clock(),
            )
            if self._is_today(original.created_at):
                wallet.daily_spent = max(Decimal("0.00"), wallet.daily_spent - original.total_amount)
            self._post_credit(repo, wallet, reversal)
            self._set_status(repo, original, TransactionStatus.REVERSED)

        logger.info(f"Reversed {reference}: {format_naira(original.total_amount)} returned ({reason})")
        return Result.success(reversal)

    # ------------------------------------------------------------------
    # Holds
    # ------------------------------------------------------------------

    def hold(self, user_id: str, amount: Decimal, reference: str) -> Result:
        """Move funds from available to pending until captured or released."""
        hold = Hold(user_id=user_id, amount=money(amount), reference=reference, created_at=self.clock())
        if hold.amount <= 0:
            return Result.failure(InvalidInput("Amount must be greater than zero."))

        with self._lock(user_id), self.db.transaction() as repo:
            existing = repo.find_one("holds", {"reference": reference})
            if existing:
                prior = Hold.from_row(existing)
                if prior.user_id != user_id or prior.amount != hold.amount:
                    return Result.failure(Conflict("A similar transaction is already in progress."))
                return Result.success(prior)

            wallet, error = self._spendable_wallet(repo, user_id, hold.amount)
            if error:
                return Result.failure(error)
            wallet.available -= hold.amount
            wallet.pending += hold.amount
            wallet.daily_spent += hold.amount
            wallet.updated_at = self.clock()
            self._save(repo, wallet)
            repo.create("holds", hold.to_row())

        logger.info(f"Held {format_naira(hold.amount)} for {user_id} ({reference})")
        return Result.success(hold)

    def release(self, hold_id: str) -> Result:
        row = self.db.find_one("holds", {"id": hold_id})
        if not row:
            return Result.failure(InvalidInput(f"Unknown hold {hold_id}"))
        hold = Hold.from_row(row)

        with self._lock(hold.user_id), self.db.transaction() as repo:
            hold = Hold.from_row(repo.find_one("holds", {"id": hold_id}))
            if hold.status == "released":
                return Result.success(hold)
            if hold.status != "active":
                return Result.failure(Conflict(f"Hold {hold_id} is already {hold.status}."))
            wallet = Wallet.from_row(repo.find_one("wallets", {"user_id": hold.user_id}, for_update=True))
            wallet.pending -= hold.amount
            wallet.available += hold.amount
            if self._is_today(hold.created_at):
                wallet.daily_spent = max(Decimal("0.00"), wallet.daily_spent - hold.amount)
            wallet.updated_at = self.clock()
            self._save(repo, wallet)
            repo.update("holds", {"id": hold_id}, {"status": "released"})
            hold.status = "released"

        logger.info(f"Released hold {hold.reference}")
        return Result.success(hold)

    def capture(self, hold_id: str, category: Category, fee: Decimal = Decimal("0"),
                description: str = "", metadata: Dict[str, Any] = None,
                status: TransactionStatus = TransactionStatus.COMPLETED,
                provider_reference: str = None) -> Result:
        """Turn a hold into a debit ledger entry carrying the hold's reference."""
        row = self.db.find_one("holds", {"id": hold_id})
        if not row:
            return Result.failure(InvalidInput(f"Unknown hold {hold_id}"))
        hold = Hold.from_row(row)

        with self._lock(hold.user_id), self.db.transaction() as repo:
            hold = Hold.from_row(repo.find_one("holds", {"id": hold_id}))
            if hold.status == "captured":
                existing = repo.find_one("transactions", {"reference": hold.reference})
                return Result.success(Transaction.from_row(existing))
            if hold.status != "active":
                return Result.failure(Conflict(f"Hold {hold_id} is already {hold.status}."))

            fee = money(fee)
            txn = Transaction(
                reference=hold.reference, user_id=hold.user_id, type=TransactionType.DEBIT,
                category=category, amount=hold.amount - fee, fee=fee, total_amount=hold.amount,
                status=status, description=description, provider_reference=provider_reference,
                metadata=dict(metadata or {}), created_at=self.clock(), updated_at=self.clock(),
            )
            if status == TransactionStatus.PENDING:
                # Holds are captured only once their provider call has returned.
                txn.metadata[HANDED_OFF] = True
            wallet = Wallet.from_row(repo.find_one("wallets", {"user_id": hold.user_id}, for_update=True))
            wallet.pending -= hold.amount
            wallet.updated_at = self.clock()
            self._save(repo, wallet)
            repo.create("transactions", txn.to_row())
            repo.update("holds", {"id": hold_id}, {"status": "captured"})

        logger.info(f"Captured hold {hold.reference} as {status.value} debit")
        return Result.success(txn)

    # ------------------------------------------------------------------
    # Ledger status
    # ------------------------------------------------------------------

    def mark_status(self, reference: str, status: TransactionStatus, provider_reference: str = None,
                    metadata: Dict[str, Any] = None) -> Result:
        with self.db.transaction() as repo:
            row = repo.find_one("transactions", {"reference": reference}, for_update=True)
            if not row:
                return Result.failure(InvalidInput(f"Unknown transaction {reference}"))
            txn = Transaction.from_row(row)
            if txn.status == status and not (provider_reference or metadata):
                return Result.success(txn)
            if txn.status != status and not txn.status.can_become(status):
                return Result.failure(InternalError(
                    f"Illegal status change {txn.status.value} -> {status.value} on {reference}"
                ))
            if provider_reference:
                txn.provider_reference = provider_reference
            if metadata:
                txn.metadata.update(metadata)
            self._set_status(repo, txn, status)
        return Result.success(txn)

    def hand_off(self, reference: str, provider_reference: str = None) -> Result:
        """The turn is finished with a pending debit; the reconciler may settle it from now on."""
        return self.mark_status(reference, TransactionStatus.PENDING, provider_reference=provider_reference,
                                metadata={HANDED_OFF: True})

    def find_transaction(self, reference: str) -> Optional[Transaction]:
        row = self.db.find_one("transactions", {"reference": reference})
        return Transaction.from_row(row) if row else None

    @contextmanager
    def in_flight(self, reference: str) -> Iterator[None]:
        """Mark a debit as owned by a running provider call; the sweep skips it meanwhile."""
        with self._in_flight_guard:
            self._in_flight.add(reference)
        try:
            yield
        finally:
            with self._in_flight_guard:
                self._in_flight.discard(reference)

    def pending_transactions(self, older_than: timedelta, limit: int = 100) -> List[Transaction]:
        cutoff = (self.clock() - older_than).isoformat()
        rows = self.db.find_all(
            "transactions",
            {"status__in": [TransactionStatus.PENDING.value, TransactionStatus.INITIATED.value],
             "type": TransactionType.DEBIT.value, "updated_at__lt": cutoff},
            order_by="updated_at ASC", limit=limit,
        )
        with self._in_flight_guard:
            owned = set(self._in_flight)
        return [Transaction.from_row(row) for row in rows if row["reference"] not in owned]

    def recent_transactions(self, user_id: str, limit: int = 5) -> List[Transaction]:
        rows = self.db.find_all("transactions", {"user_id": user_id}, order_by="created_at DESC", limit=limit)
        return [Transaction.from_row(row) for row in rows]

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_summary(self, user_id: str) -> Optional[WalletSummary]:
        wallet = self.get_wallet(user_id)
        if wallet is None:
            return None
        daily_spent = wallet.daily_spent if wallet.daily_spent_date == self._today() else Decimal("0.00")
        return WalletSummary(
            balance=wallet.available + wallet.pending,
            available=wallet.available,
            pending=wallet.pending,
            daily_limit=wallet.daily_limit,
            daily_spent=daily_spent,
            daily_remaining=max(Decimal("0.00"), wallet.daily_limit - daily_spent),
            virtual_account=wallet.virtual_account,
            state=wallet.state,
        )

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _replay(self, repo: Repository, txn: Transaction) -> Optional[Result]:
        row = repo.find_one("transactions", {"reference": txn.reference})
        if not row:
            return None
        prior = Transaction.from_row(row)
        same = (prior.user_id == txn.user_id and prior.type == txn.type
                and prior.total_amount == txn.total_amount)
        if not same:
            logger.warning(f"Reference {txn.reference} reused with a different payload")
            return Result.failure(Conflict("A similar transaction is already in progress."))
        logger.info(f"Replay of {txn.reference}; returning the original entry")
        return Result.success(prior)

    def _spendable_wallet(self, repo: Repository, user_id: str, amount: Decimal):
        row = repo.find_one("wallets", {"user_id": user_id}, for_update=True)
        if not row:
            return None, InvalidInput("You don't have a wallet yet. Please complete your setup.")
        wallet = Wallet.from_row(row)
        if wallet.state == WalletState.FROZEN:
            return None, InvalidInput("Your wallet is frozen. Please contact support.")

        today = self._today()
        if wallet.daily_spent_date != today:
            wallet.daily_spent = Decimal("0.00")
            wallet.daily_spent_date = today

        if amount > wallet.available:
            return None, InsufficientFunds(
                f"Insufficient balance. Available: {format_naira(wallet.available)}",
                available=str(wallet.available),
            )
        if wallet.daily_spent + amount > wallet.daily_limit:
            remaining = max(Decimal("0.00"), wallet.daily_limit - wallet.daily_spent)
            return None, LimitExceeded(
                f"Daily limit reached. Remaining today: {format_naira(remaining)}",
                remaining=str(remaining),
            )
        return wallet, None

    def _post_credit(self, repo: Repository, wallet: Wallet, txn: Transaction):
        wallet.available += txn.total_amount
        wallet.updated_at = self.clock()
        self._save(repo, wallet)
        repo.create("transactions", txn.to_row())

    def _set_status(self, repo: Repository, txn: Transaction, status: TransactionStatus):
        txn.status = status
        txn.updated_at = self.clock()
        repo.update("transactions", {"reference": txn.reference}, {
            "status": status.value,
            "provider_reference": txn.provider_reference,
            "metadata": txn.to_row()["metadata"],
            "updated_at": txn.updated_at.isoformat(),
        })

    def _save(self, repo: Repository, wallet: Wallet):
        row = wallet.to_row()
        user_id = row.pop("user_id")
        repo.update("wallets", {"user_id": user_id}, row)

    def _is_today(self, moment: datetime) -> bool:
        return moment.astimezone(self.tz).date().isoformat() == self._today()
