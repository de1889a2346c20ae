"""
Pending transaction reconciler
==============================
Debits whose provider outcome was unknown stay ``pending``. Every minute
the reconciler asks the provider about them and settles them. A row is
swept two minutes after its turn hands it off, or once it is older than
the longest provider call can run when no hand-off was recorded (the
turn may still be waiting on the provider). Rows a running turn owns in
this process are never swept:

- completed: mark the debit completed and send the receipt
- failed: compensate (debit -> failed -> reversed plus a ``_rev`` credit)
- still pending: leave it for the next sweep
- not found: treated as still pending until ``NOT_FOUND_CEILING`` after
  the debit was created, then compensated

Provider callbacks go through ``resolve`` as well.
"""

import logging
from datetime import timedelta
from typing import Dict

from miimii.activity import ActivityLog
from miimii.errors import MiiMiiError, ProviderRejected
from miimii.models import Category, Transaction, TransactionStatus, format_naira
from miimii.notifications import NotificationEmitter
from miimii.providers.base import LONGEST_CALL_SECONDS, ProviderResult
from miimii.providers.gateway import ProviderGateway
from miimii.receipts import Receipt, ReceiptService
from miimii.users import UserRepository
from miimii.wallet import HANDED_OFF, WalletService

logger = logging.getLogger(__name__)

SWEEP_INTERVAL_SECONDS = 60
HANDED_OFF_AGE = timedelta(minutes=2)
PENDING_AGE = timedelta(seconds=LONGEST_CALL_SECONDS) + timedelta(minutes=1)
NOT_FOUND_CEILING = timedelta(hours=1)

_TITLES = {
    Category.TRANSFER: "Transfer Receipt",
    Category.AIRTIME: "Airtime Receipt",
    Category.DATA: "Data Receipt",
    Category.BILL: "Electricity Receipt",
}


class Reconciler:

    def __init__(self, wallet: WalletService, gateway: ProviderGateway, users: UserRepository,
                 notifier: NotificationEmitter, receipts: ReceiptService, activity: ActivityLog):
        self.wallet = wallet
        self.gateway = gateway
        self.users = users
        self.notifier = notifier
        self.receipts = receipts
        self.activity = activity

    def sweep(self) -> Dict[str, int]:
        counts = {"completed": 0, "reversed": 0, "pending": 0, "errors": 0}
        now = self.wallet.clock()
        for txn in self.wallet.pending_transactions(HANDED_OFF_AGE):
            if not txn.metadata.get(HANDED_OFF) and now - txn.updated_at < PENDING_AGE:
                continue
            try:
                result = self.gateway.get_status(txn.reference, txn.category.value)
            except ProviderRejected as e:
                if now - txn.created_at < NOT_FOUND_CEILING:
                    # "Not found yet" and "never sent" look the same until the ceiling.
                    logger.info(f"{txn.reference} not found at provider yet: {e}")
                    counts["pending"] += 1
                    continue
                result = ProviderResult(status="failed", message=str(e))
            except MiiMiiError as e:
                logger.warning(f"Status check for {txn.reference} failed: {e}")
                counts["errors"] += 1
                continue
            outcome = self.resolve(txn.reference, result)
            counts[outcome] = counts.get(outcome, 0) + 1
        if any(counts.values()):
            logger.info(f"Reconciler sweep: {counts}")
        return counts

    def resolve(self, reference: str, result: ProviderResult) -> str:
        txn = self.wallet.find_transaction(reference)
        if txn is None:
            logger.warning(f"Reconcile: unknown reference {reference}")
            return "errors"
        if txn.status not in (TransactionStatus.PENDING, TransactionStatus.INITIATED):
            return txn.status.value if txn.status.value in ("completed", "reversed") else "errors"

        if result.status == "completed":
            return self._complete(txn, result)
        if result.status == "failed":
            return self._compensate(txn, result.message)
        return "pending"

    def _complete(self, txn: Transaction, result: ProviderResult) -> str:
        metadata = {"token": result.token} if result.token else None
        marked = self.wallet.mark_status(txn.reference, TransactionStatus.COMPLETED,
                                         provider_reference=result.provider_reference, metadata=metadata)
        if not marked.ok:
            logger.error(f"Could not complete {txn.reference}: {marked.error}")
            return "errors"
        user = self.users.get(txn.user_id)
        if user:
            lines = [("Description", txn.description)]
            if result.token:
                lines.append(("Token", result.token))
            self.receipts.send(user.phone, Receipt.for_transaction(
                marked.value, _TITLES.get(txn.category, "Receipt"), lines,
            ))
        self.activity.log(txn.user_id, "transaction_settled", reference=txn.reference)
        logger.info(f"Reconciled {txn.reference} as completed")
        return "completed"

    def _compensate(self, txn: Transaction, reason: str) -> str:
        reversed_ = self.wallet.reverse(txn.reference, reason or "provider reported failure")
        if not reversed_.ok:
            logger.error(f"Could not reverse {txn.reference}: {reversed_.error}")
            return "errors"
        user = self.users.get(txn.user_id)
        if user:
            self.notifier.text(
                user.phone,
                f"❌ Your {txn.category.value} ({txn.description or txn.reference}) did not go through. "
                f"{format_naira(txn.total_amount)} has been returned to your wallet.",
            )
        self.activity.log(txn.user_id, "transaction_reversed", reference=txn.reference, reason=reason)
        logger.info(f"Reconciled {txn.reference} as reversed")
        return "reversed"
