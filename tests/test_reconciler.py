from datetime import timedelta
from decimal import Decimal

import pytest

from miimii.errors import CircuitOpenError, ProviderRejected
from miimii.models import Category, TransactionStatus
from miimii.providers.base import LONG_TIMEOUT, ProviderResult
from miimii.reconciler import PENDING_AGE, Reconciler


@pytest.fixture
def reconciler(ctx):
    return Reconciler(ctx.wallet, ctx.gateway, ctx.users, ctx.notifier, ctx.receipts, ctx.activity)


@pytest.fixture
def pending(ctx, user, clock):
    """A ₦5,050 transfer debit whose provider outcome is unknown, eleven minutes old."""
    ctx.wallet.debit(user.id, Decimal("5000"), "TXN_1", fee=Decimal("50"), description="Transfer to John Doe")
    ctx.wallet.mark_status("TXN_1", TransactionStatus.PENDING)
    clock.advance(minutes=11)
    return "TXN_1"


class TestSweep:

    def test_completed_at_provider(self, ctx, reconciler, gateway, platform, pending, user):
        gateway.status_result = ProviderResult("completed", provider_reference="R77")
        assert reconciler.sweep()["completed"] == 1

        txn = ctx.wallet.find_transaction(pending)
        assert txn.status == TransactionStatus.COMPLETED
        assert txn.provider_reference == "R77"
        assert ctx.wallet.get_summary(user.id).available == Decimal("14950.00")
        assert platform.documents[-1][2] == "Transfer Receipt"
        assert gateway.called("get_status") == [("get_status", "TXN_1", "transfer")]

    def test_failed_at_provider_is_compensated(self, ctx, reconciler, gateway, platform, pending, user):
        gateway.status_result = ProviderResult("failed", message="Beneficiary account closed")
        assert reconciler.sweep()["reversed"] == 1

        assert ctx.wallet.find_transaction(pending).status == TransactionStatus.REVERSED
        assert ctx.wallet.find_transaction("TXN_1_rev").category == Category.REVERSAL
        assert ctx.wallet.get_summary(user.id).available == Decimal("20000.00")
        assert "₦5,050 has been returned" in platform.last_text()

    def test_not_found_stays_pending_until_the_ceiling(self, ctx, reconciler, gateway, clock, pending, user):
        gateway.status_error = ProviderRejected("Transaction not found")
        assert reconciler.sweep()["pending"] == 1
        assert ctx.wallet.find_transaction(pending).status == TransactionStatus.PENDING
        assert ctx.wallet.get_summary(user.id).available == Decimal("14950.00")

        clock.advance(hours=1)
        assert reconciler.sweep()["reversed"] == 1
        assert ctx.wallet.find_transaction(pending).status == TransactionStatus.REVERSED
        assert ctx.wallet.get_summary(user.id).available == Decimal("20000.00")

    def test_still_pending_is_left_alone(self, ctx, reconciler, gateway, pending):
        assert reconciler.sweep()["pending"] == 1
        assert ctx.wallet.find_transaction(pending).status == TransactionStatus.PENDING

    def test_provider_down_is_retried_next_sweep(self, ctx, reconciler, gateway, pending):
        gateway.status_error = CircuitOpenError("bellbank is temporarily unavailable")
        assert reconciler.sweep()["errors"] == 1
        assert ctx.wallet.find_transaction(pending).status == TransactionStatus.PENDING

    def test_rows_younger_than_the_longest_call_are_not_swept(self, ctx, reconciler, gateway, clock, user):
        ctx.wallet.debit(user.id, Decimal("1000"), "TXN_2")
        ctx.wallet.mark_status("TXN_2", TransactionStatus.PENDING)
        clock.advance(minutes=9)
        reconciler.sweep()
        assert not gateway.called("get_status")

    def test_handed_off_rows_are_swept_after_two_minutes(self, ctx, reconciler, gateway, clock, user):
        ctx.wallet.debit(user.id, Decimal("1000"), "TXN_3")
        ctx.wallet.mark_status("TXN_3", TransactionStatus.PENDING)
        ctx.wallet.hand_off("TXN_3")
        clock.advance(minutes=1)
        reconciler.sweep()
        assert not gateway.called("get_status")

        clock.advance(minutes=2)
        assert reconciler.sweep()["pending"] == 1
        assert gateway.called("get_status") == [("get_status", "TXN_3", "transfer")]

    def test_rows_owned_by_a_running_turn_are_skipped(self, ctx, reconciler, gateway, pending):
        with ctx.wallet.in_flight(pending):
            assert reconciler.sweep()["pending"] == 0
        assert not gateway.called("get_status")
        assert reconciler.sweep()["pending"] == 1

    def test_pending_age_outlasts_a_fully_retried_transfer(self):
        assert PENDING_AGE > timedelta(seconds=LONG_TIMEOUT * 3)


class TestCallbacks:

    def test_vas_callback_settles_pending_purchase(self, ctx, reconciler, gateway, platform, user):
        hold = ctx.wallet.hold(user.id, Decimal("2025"), "BILL_1").value
        ctx.wallet.capture(hold.id, Category.BILL, fee=Decimal("25"), description="IKEJA prepaid",
                           status=TransactionStatus.PENDING)

        reference, result = gateway.vas.parse_callback({
            "request-id": "BILL_1", "status": "success", "token": "1234-5678",
        })
        assert reconciler.resolve(reference, result) == "completed"
        assert ctx.wallet.find_transaction("BILL_1").status == TransactionStatus.COMPLETED

    def test_failed_callback_refunds(self, ctx, reconciler, gateway, user):
        hold = ctx.wallet.hold(user.id, Decimal("500"), "AIRTIME_1").value
        ctx.wallet.capture(hold.id, Category.AIRTIME, status=TransactionStatus.PENDING)

        reference, result = gateway.vas.parse_callback({"request-id": "AIRTIME_1", "status": "fail"})
        assert reconciler.resolve(reference, result) == "reversed"
        assert ctx.wallet.get_summary(user.id).available == Decimal("20000.00")

    def test_duplicate_callback_is_harmless(self, ctx, reconciler, gateway, user):
        hold = ctx.wallet.hold(user.id, Decimal("500"), "AIRTIME_1").value
        ctx.wallet.capture(hold.id, Category.AIRTIME, status=TransactionStatus.PENDING)
        reference, result = gateway.vas.parse_callback({"request-id": "AIRTIME_1", "status": "fail"})

        reconciler.resolve(reference, result)
        assert reconciler.resolve(reference, result) == "reversed"
        assert ctx.wallet.get_summary(user.id).available == Decimal("20000.00")

    def test_unknown_reference(self, reconciler):
        assert reconciler.resolve("NOPE", ProviderResult("completed")) == "errors"
