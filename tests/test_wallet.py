from decimal import Decimal

import pytest

from miimii.errors import Conflict, InsufficientFunds, InvalidInput, LimitExceeded
from miimii.fees import bill_fee, data_fee, transfer_fee
from miimii.models import Category, TransactionStatus, TransactionType
from miimii.wallet import HANDED_OFF, WalletService


@pytest.fixture
def wallet(ctx, user):
    return ctx.wallet


@pytest.fixture
def limited(ctx, db, clock):
    """A wallet with a ₦6,000 daily limit and ₦20,000 in it."""
    service = WalletService(db, daily_limit=6000, clock=clock)
    other, _ = ctx.users.get_or_create("+2348099999999")
    service.create_wallet(other.id)
    service.credit(other.id, Decimal("20000"), "FUND_limited")
    return service, other.id


# -----------------------------------------------------------------------
# Fees
# -----------------------------------------------------------------------

class TestFees:

    def test_flat_transfer_fee(self):
        assert transfer_fee(Decimal("5000")) == Decimal("50.00")
        assert transfer_fee(Decimal("10000")) == Decimal("50.00")
        assert transfer_fee(Decimal("5000"), same_bank=True) == Decimal("10.00")

    def test_large_transfer_adds_rounded_up_percentage(self):
        # 0.5% of 10,001 above the threshold is 50.005, rounded up to 51.
        assert transfer_fee(Decimal("20001")) == Decimal("101.00")

    def test_bill_fee_is_clamped(self):
        assert bill_fee(Decimal("500")) == Decimal("25.00")
        assert bill_fee(Decimal("10000")) == Decimal("150.00")
        assert bill_fee(Decimal("100000")) == Decimal("500.00")

    def test_data_fee_comes_from_settings(self):
        assert data_fee(Decimal("350"), 10) == Decimal("10.00")


# -----------------------------------------------------------------------
# Debit / credit
# -----------------------------------------------------------------------

class TestDebit:

    def test_debit_moves_available_and_records_entry(self, wallet, user):
        result = wallet.debit(user.id, Decimal("5000"), "TXN_1", fee=Decimal("50"))
        assert result.ok
        txn = result.value
        assert txn.total_amount == Decimal("5050.00")
        assert txn.status == TransactionStatus.INITIATED
        assert txn.type == TransactionType.DEBIT

        summary = wallet.get_summary(user.id)
        assert summary.available == Decimal("14950.00")
        assert summary.daily_spent == Decimal("5050.00")

    def test_replay_is_idempotent(self, wallet, user):
        first = wallet.debit(user.id, Decimal("1000"), "TXN_1").value
        second = wallet.debit(user.id, Decimal("1000"), "TXN_1").value
        assert first.id == second.id
        assert wallet.get_summary(user.id).available == Decimal("19000.00")

    def test_reused_reference_with_new_amount_conflicts(self, wallet, user):
        wallet.debit(user.id, Decimal("1000"), "TXN_1")
        result = wallet.debit(user.id, Decimal("2000"), "TXN_1")
        assert isinstance(result.error, Conflict)
        assert wallet.get_summary(user.id).available == Decimal("19000.00")

    def test_insufficient_funds(self, wallet, user):
        result = wallet.debit(user.id, Decimal("25000"), "TXN_1")
        assert isinstance(result.error, InsufficientFunds)
        assert "₦20,000" in result.error.message
        assert wallet.find_transaction("TXN_1") is None

    def test_daily_limit(self, limited):
        service, user_id = limited
        assert service.debit(user_id, Decimal("5000"), "TXN_1").ok
        result = service.debit(user_id, Decimal("2000"), "TXN_2")
        assert isinstance(result.error, LimitExceeded)
        assert result.error.details["remaining"] == "1000.00"

    def test_daily_spend_resets_next_day(self, limited, clock):
        service, user_id = limited
        assert service.debit(user_id, Decimal("5000"), "TXN_1").ok
        clock.advance(days=1)
        assert service.debit(user_id, Decimal("5000"), "TXN_2").ok

    def test_zero_amount_rejected(self, wallet, user):
        assert isinstance(wallet.debit(user.id, Decimal("0"), "TXN_0").error, InvalidInput)

    def test_credit_replay(self, wallet, user):
        wallet.credit(user.id, Decimal("500"), "FUND_2")
        wallet.credit(user.id, Decimal("500"), "FUND_2")
        assert wallet.get_summary(user.id).available == Decimal("20500.00")


# -----------------------------------------------------------------------
# Reversal
# -----------------------------------------------------------------------

class TestReverse:

    def test_reverse_restores_funds_once(self, wallet, user):
        wallet.debit(user.id, Decimal("5000"), "TXN_1", fee=Decimal("50"))
        wallet.mark_status("TXN_1", TransactionStatus.PENDING)

        reversal = wallet.reverse("TXN_1", "declined").value
        assert reversal.reference == "TXN_1_rev"
        assert reversal.category == Category.REVERSAL
        assert reversal.amount == Decimal("5050.00")
        assert wallet.find_transaction("TXN_1").status == TransactionStatus.REVERSED

        again = wallet.reverse("TXN_1").value
        assert again.id == reversal.id
        summary = wallet.get_summary(user.id)
        assert summary.available == Decimal("20000.00")
        assert summary.daily_spent == Decimal("0.00")

    def test_completed_cannot_be_reversed(self, wallet, user):
        wallet.debit(user.id, Decimal("1000"), "TXN_1")
        wallet.mark_status("TXN_1", TransactionStatus.COMPLETED)
        assert isinstance(wallet.reverse("TXN_1").error, Conflict)

    def test_credit_cannot_be_reversed(self, wallet):
        assert isinstance(wallet.reverse("FUND_seed").error, Conflict)

    def test_illegal_status_change(self, wallet, user):
        wallet.debit(user.id, Decimal("1000"), "TXN_1")
        wallet.mark_status("TXN_1", TransactionStatus.COMPLETED)
        assert not wallet.mark_status("TXN_1", TransactionStatus.PENDING).ok

    def test_hand_off_keeps_pending_and_records_reference(self, wallet, user):
        wallet.debit(user.id, Decimal("1000"), "TXN_1")
        wallet.mark_status("TXN_1", TransactionStatus.PENDING)
        txn = wallet.hand_off("TXN_1", "R9").value
        assert txn.status == TransactionStatus.PENDING
        assert txn.provider_reference == "R9"
        assert wallet.find_transaction("TXN_1").metadata[HANDED_OFF] is True

    def test_settled_debit_cannot_be_handed_off(self, wallet, user):
        wallet.debit(user.id, Decimal("1000"), "TXN_1")
        wallet.mark_status("TXN_1", TransactionStatus.COMPLETED)
        assert not wallet.hand_off("TXN_1").ok


# -----------------------------------------------------------------------
# Holds
# -----------------------------------------------------------------------

class TestHolds:

    def test_hold_then_capture(self, wallet, user):
        hold = wallet.hold(user.id, Decimal("1010"), "DATA_1").value
        summary = wallet.get_summary(user.id)
        assert summary.available == Decimal("18990.00")
        assert summary.pending == Decimal("1010.00")
        assert summary.balance == Decimal("20000.00")

        txn = wallet.capture(hold.id, Category.DATA, fee=Decimal("10")).value
        assert txn.reference == "DATA_1"
        assert txn.amount == Decimal("1000.00")
        assert txn.total_amount == Decimal("1010.00")
        summary = wallet.get_summary(user.id)
        assert summary.pending == Decimal("0.00")
        assert summary.balance == Decimal("18990.00")

    def test_release_returns_funds(self, wallet, user):
        hold = wallet.hold(user.id, Decimal("500"), "AIRTIME_1").value
        assert wallet.release(hold.id).ok
        assert wallet.release(hold.id).ok
        summary = wallet.get_summary(user.id)
        assert summary.available == Decimal("20000.00")
        assert summary.pending == Decimal("0.00")
        assert summary.daily_spent == Decimal("0.00")

    def test_released_hold_cannot_be_captured(self, wallet, user):
        hold = wallet.hold(user.id, Decimal("500"), "AIRTIME_1").value
        wallet.release(hold.id)
        assert isinstance(wallet.capture(hold.id, Category.AIRTIME).error, Conflict)

    def test_hold_respects_balance(self, wallet, user):
        assert isinstance(wallet.hold(user.id, Decimal("30000"), "BILL_1").error, InsufficientFunds)

    def test_hold_replay(self, wallet, user):
        first = wallet.hold(user.id, Decimal("500"), "AIRTIME_1").value
        assert wallet.hold(user.id, Decimal("500"), "AIRTIME_1").value.id == first.id
        assert isinstance(wallet.hold(user.id, Decimal("600"), "AIRTIME_1").error, Conflict)
