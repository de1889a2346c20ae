"""
Daily operations report
=======================
Summarises yesterday's ledger (counts and sums per category and status)
with pandas, renders it as a PDF with fpdf and sends it to the operations
phone as a document.
"""

import os
import logging
import tempfile
from datetime import datetime, time, timedelta, timezone as dt_timezone
from typing import Callable, Optional
from zoneinfo import ZoneInfo

import pandas as pd
from fpdf import FPDF

from miimii.database import Database
from miimii.models import utcnow
from miimii.notifications import NotificationEmitter

logger = logging.getLogger(__name__)


def _day_bounds(day, tz: ZoneInfo):
    start = datetime.combine(day, time.min, tzinfo=tz)
    end = start + timedelta(days=1)
    return start.astimezone(dt_timezone.utc).isoformat(), end.astimezone(dt_timezone.utc).isoformat()


def ledger_frame(db: Database, day, timezone: str = "Africa/Lagos") -> pd.DataFrame:
    start, end = _day_bounds(day, ZoneInfo(timezone))
    rows = db.find_all("transactions", {"created_at__gte": start, "created_at__lt": end})
    df = pd.DataFrame(rows, columns=["reference", "type", "category", "status", "total_amount", "fee"])
    if not df.empty:
        df["total_amount"] = df["total_amount"].astype(float)
        df["fee"] = df["fee"].astype(float)
    return df


def summarise(df: pd.DataFrame) -> pd.DataFrame:
    if df.empty:
        return pd.DataFrame(columns=["category", "status", "count", "total", "fees"])
    grouped = df.groupby(["category", "status"]).agg(
        count=("reference", "count"),
        total=("total_amount", "sum"),
        fees=("fee", "sum"),
    )
    return grouped.reset_index().sort_values(["category", "status"])


def render_report(summary: pd.DataFrame, day) -> str:
    """Write the report to a temporary PDF and return its path."""
    pdf = FPDF()
    pdf.set_auto_page_break(auto=True, margin=15)
    pdf.add_page()

    pdf.set_font("Arial", "B", 16)
    pdf.cell(0, 10, "MiiMii Daily Operations Report", 0, 1, "C")
    pdf.set_font("Arial", "", 12)
    pdf.cell(0, 10, f"Ledger date: {day.isoformat()}", 0, 1, "C")
    pdf.ln(8)

    pdf.cell(0, 10, f"Transactions: {int(summary['count'].sum()) if not summary.empty else 0}", 0, 1)
    pdf.cell(0, 10, f"Volume: NGN {summary['total'].sum() if not summary.empty else 0:,.2f}", 0, 1)
    pdf.cell(0, 10, f"Fees: NGN {summary['fees'].sum() if not summary.empty else 0:,.2f}", 0, 1)
    pdf.ln(8)

    pdf.set_font("Arial", "B", 12)
    for title, width in (("Category", 45), ("Status", 35), ("Count", 25), ("Total (NGN)", 45), ("Fees (NGN)", 35)):
        pdf.cell(width, 10, title, 1, 0, "L")
    pdf.ln()
    pdf.set_font("Arial", "", 12)
    for _, row in summary.iterrows():
        pdf.cell(45, 10, str(row["category"]), 1, 0, "L")
        pdf.cell(35, 10, str(row["status"]), 1, 0, "L")
        pdf.cell(25, 10, str(int(row["count"])), 1, 0, "R")
        pdf.cell(45, 10, f"{row['total']:,.2f}", 1, 0, "R")
        pdf.cell(35, 10, f"{row['fees']:,.2f}", 1, 1, "R")

    temp_file = tempfile.NamedTemporaryFile(suffix=".pdf", delete=False)
    pdf_path = temp_file.name
    temp_file.close()
    pdf.output(pdf_path)
    return pdf_path


class DailyReport:

    def __init__(self, db: Database, notifier: NotificationEmitter, ops_phone: str = "",
                 timezone: str = "Africa/Lagos", clock: Callable[[], datetime] = utcnow):
        self.db = db
        self.notifier = notifier
        self.ops_phone = ops_phone
        self.timezone = timezone
        self.clock = clock

    def send(self, day=None) -> Optional[str]:
        if not self.ops_phone:
            logger.info("Daily report skipped: OPS_PHONE is not set")
            return None
        day = day or (self.clock().astimezone(ZoneInfo(self.timezone)).date() - timedelta(days=1))
        summary = summarise(ledger_frame(self.db, day, self.timezone))
        pdf_path = render_report(summary, day)
        try:
            with open(pdf_path, "rb") as f:
                content = f.read()
        finally:
            os.remove(pdf_path)
        logger.info(f"Daily report for {day.isoformat()} generated ({len(content)} bytes)")
        return self.notifier.send_document(
            self.ops_phone, content, f"miimii_report_{day.isoformat()}.pdf",
            caption=f"Daily report {day.isoformat()}",
        )
