from datetime import datetime
from decimal import Decimal
from io import BytesIO
from typing import Iterable, Optional, Sequence, Tuple

from reportlab.lib import colors
from reportlab.lib.pagesizes import A4
from reportlab.lib.styles import getSampleStyleSheet
from reportlab.lib.units import mm
from reportlab.platypus import Paragraph, SimpleDocTemplate, Spacer, Table, TableStyle

# (name, unit price, quantity)
LineItem = Tuple[str, Decimal, int]


class ReceiptPDF:
    """
    Tiny helper to generate a minimal order receipt PDF.
    Output: bytes of a single-page A4 PDF in most cases.
    """

    def __init__(self, title: str = "EventPass – Receipt") -> None:
        self.title = title

    def _fmt_amount(self, amount: Decimal | float | int, currency: str) -> str:
        try:
            q = Decimal(str(amount)).quantize(Decimal("0.01"))
        except ArithmeticError:
            q = Decimal("0.00")
        return f"{q} {currency.upper()}"

    def build(
        self,
        *,
        receipt_no: str,
        date: datetime,
        status: str,
        billed_to: str,
        event_title: str,
        items: Sequence[LineItem],
        currency: str = "ETB",
        transaction_ref: str = "",
        event_date: Optional[datetime] = None,
        note_lines: Optional[Iterable[str]] = None,
    ) -> bytes:
        buf = BytesIO()
        doc = SimpleDocTemplate(
            buf,
            pagesize=A4,
            leftMargin=20 * mm,
            rightMargin=20 * mm,
            topMargin=22 * mm,
            bottomMargin=20 * mm,
            title=self.title,
        )
        styles = getSampleStyleSheet()
        story: list = []

        story.append(Paragraph(self.title, styles["Title"]))
        story.append(Spacer(1, 6))

        meta_rows = [
            ["Receipt #", receipt_no],
            ["Date", date.strftime("%d %B %Y")],
            ["Status", status.capitalize()],
        ]
        if transaction_ref:
            meta_rows.append(["Reference", transaction_ref])
        meta_tbl = Table(meta_rows, colWidths=[35 * mm, 120 * mm], hAlign="LEFT")
        meta_tbl.setStyle(
            TableStyle(
                [
                    ("FONTNAME", (0, 0), (-1, -1), "Helvetica"),
                    ("FONTSIZE", (0, 0), (-1, -1), 10),
                    ("BOTTOMPADDING", (0, 0), (-1, -1), 4),
                ]
            )
        )
        story.append(meta_tbl)
        story.append(Spacer(1, 10))

        story.append(Paragraph("<b>Billed To</b>", styles["Heading4"]))
        story.append(Paragraph(billed_to or "Attendee", styles["Normal"]))
        story.append(Spacer(1, 8))

        story.append(Paragraph("<b>Event</b>", styles["Heading4"]))
        when = f" – {event_date.strftime('%d %B %Y %H:%M')}" if event_date else ""
        story.append(Paragraph(f"{event_title}{when}", styles["Normal"]))
        story.append(Spacer(1, 8))

        rows = [["Ticket", "Unit price", "Qty", "Amount"]]
        total = Decimal("0.00")
        for name, unit_price, qty in items:
            line_total = Decimal(str(unit_price)) * int(qty)
            total += line_total
            rows.append(
                [
                    name,
                    self._fmt_amount(unit_price, currency),
                    str(qty),
                    self._fmt_amount(line_total, currency),
                ]
            )
        rows.append(["", "", "Total", self._fmt_amount(total, currency)])
        tbl = Table(rows, colWidths=[70 * mm, 35 * mm, 15 * mm, 35 * mm])
        tbl.setStyle(
            TableStyle(
                [
                    ("GRID", (0, 0), (-1, 0), 0.5, colors.black),
                    ("BACKGROUND", (0, 0), (-1, 0), colors.whitesmoke),
                    ("FONTNAME", (0, 0), (-1, 0), "Helvetica-Bold"),
                    ("FONTNAME", (0, 1), (-1, -1), "Helvetica"),
                    ("FONTNAME", (2, -1), (-1, -1), "Helvetica-Bold"),
                    ("LINEABOVE", (0, -1), (-1, -1), 0.5, colors.black),
                    ("FONTSIZE", (0, 0), (-1, -1), 10),
                    ("ALIGN", (1, 1), (-1, -1), "RIGHT"),
                    ("VALIGN", (0, 0), (-1, -1), "MIDDLE"),
                ]
            )
        )
        story.append(tbl)
        story.append(Spacer(1, 10))

        notes = list(note_lines or [])
        if not notes:
            notes = ["This is a receipt for your records. Present your ticket QR codes at entry."]
        for line in notes:
            story.append(Paragraph(line, styles["Italic"]))
        story.append(Spacer(1, 6))

        doc.build(story)
        return buf.getvalue()
