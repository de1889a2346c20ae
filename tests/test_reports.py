from datetime import date
from decimal import Decimal

from miimii.receipts import Receipt, render_pdf, render_text
from miimii.reports import DailyReport, ledger_frame, summarise


class TestDailyReport:

    def test_summary_groups_by_category_and_status(self, ctx, user):
        ctx.wallet.debit(user.id, Decimal("1000"), "TXN_1", fee=Decimal("50"))
        ctx.wallet.debit(user.id, Decimal("2000"), "TXN_2", fee=Decimal("50"))

        summary = summarise(ledger_frame(ctx.db, date(2024, 5, 1)))
        assert int(summary["count"].sum()) == 3
        assert summary["fees"].sum() == 100.0

    def test_other_days_are_excluded(self, ctx, user):
        assert ledger_frame(ctx.db, date(2024, 4, 30)).empty

    def test_skipped_without_ops_phone(self, ctx, platform, user):
        assert DailyReport(ctx.db, ctx.notifier, clock=ctx.clock).send() is None
        assert not platform.documents

    def test_sent_as_document(self, ctx, platform, user):
        report = DailyReport(ctx.db, ctx.notifier, ops_phone="+2348000000001", clock=ctx.clock)
        assert report.send(date(2024, 5, 1))
        to, filename, caption, content = platform.documents[-1]
        assert filename == "miimii_report_2024-05-01.pdf"
        assert content.startswith(b"%PDF")


class TestReceipts:

    def test_text_rendering(self, ctx, user):
        txn = ctx.wallet.debit(user.id, Decimal("5000"), "TXN_9", fee=Decimal("50")).value
        receipt = Receipt.for_transaction(txn, "Transfer Receipt", [("Recipient", "John Doe")])
        text = render_text(receipt)
        assert text.startswith("🧾 *Transfer Receipt*")
        assert "Recipient: John Doe" in text
        assert "Total: ₦5,050" in text
        assert render_pdf(receipt).startswith(b"%PDF")
