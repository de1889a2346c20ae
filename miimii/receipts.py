"""
Receipts
========
Transaction receipts rendered as a one-page PDF with fpdf and sent as a
WhatsApp document. When rendering or upload fails the same fields go out
as a text message instead.
"""

import os
import logging
import tempfile
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import List, Optional, Tuple

from fpdf import FPDF

from miimii.models import Transaction, format_naira, utcnow
from miimii.notifications import NotificationEmitter

logger = logging.getLogger(__name__)


@dataclass
class Receipt:
    title: str
    reference: str
    amount: Decimal
    fee: Decimal
    total: Decimal
    status: str
    lines: List[Tuple[str, str]] = field(default_factory=list)
    timestamp: datetime = field(default_factory=utcnow)

    @classmethod
    def for_transaction(cls, txn: Transaction, title: str, lines: List[Tuple[str, str]] = None) -> "Receipt":
        return cls(
            title=title,
            reference=txn.reference,
            amount=txn.amount,
            fee=txn.fee,
            total=txn.total_amount,
            status=txn.status.value,
            lines=list(lines or []),
            timestamp=txn.updated_at,
        )

    def rows(self) -> List[Tuple[str, str]]:
        rows = list(self.lines)
        rows += [
            ("Amount", format_naira(self.amount)),
            ("Fee", format_naira(self.fee)),
            ("Total", format_naira(self.total)),
            ("Status", self.status.title()),
            ("Reference", self.reference),
            ("Date", self.timestamp.strftime("%Y-%m-%d %H:%M UTC")),
        ]
        return rows


def _latin(text: str) -> str:
    # The core PDF fonts only cover latin-1.
    return text.replace("₦", "NGN ").encode("latin-1", "replace").decode("latin-1")


def render_pdf(receipt: Receipt) -> bytes:
    pdf = FPDF()
    pdf.set_auto_page_break(auto=True, margin=15)
    pdf.add_page()

    pdf.set_font("Arial", "B", 16)
    pdf.cell(0, 10, "MiiMii", 0, 1, "C")
    pdf.set_font("Arial", "B", 13)
    pdf.cell(0, 10, _latin(receipt.title), 0, 1, "C")
    pdf.ln(6)

    pdf.set_font("Arial", "", 12)
    for label, value in receipt.rows():
        pdf.cell(50, 10, _latin(label), 1, 0, "L")
        pdf.cell(130, 10, _latin(str(value)), 1, 1, "L")

    pdf.ln(8)
    pdf.set_font("Arial", "I", 10)
    pdf.cell(0, 8, "Thank you for using MiiMii.", 0, 1, "C")

    temp_file = tempfile.NamedTemporaryFile(suffix=".pdf", delete=False)
    pdf_path = temp_file.name
    temp_file.close()
    try:
        pdf.output(pdf_path)
        with open(pdf_path, "rb") as f:
            return f.read()
    finally:
        os.remove(pdf_path)


def render_text(receipt: Receipt) -> str:
    lines = [f"🧾 *{receipt.title}*", ""]
    lines += [f"{label}: {value}" for label, value in receipt.rows()]
    return "\n".join(lines)


class ReceiptService:

    def __init__(self, notifier: NotificationEmitter):
        self.notifier = notifier

    def send(self, phone: str, receipt: Receipt) -> Optional[str]:
        try:
            content = render_pdf(receipt)
        except Exception as e:
            logger.error(f"Receipt render failed for {receipt.reference}: {e}")
        else:
            message_id = self.notifier.send_document(
                phone, content, f"receipt_{receipt.reference}.pdf", caption=receipt.title,
            )
            if message_id:
                return message_id
        return self.notifier.text(phone, render_text(receipt))
