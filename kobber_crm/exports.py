"""CSV and PDF exports of opportunity lists."""
from __future__ import annotations

import html
import io
import logging
from datetime import date, datetime
from typing import Any, Iterable, List, Optional, Sequence

import pandas as pd
from reportlab.lib import colors
from reportlab.lib.pagesizes import A4, landscape
from reportlab.lib.styles import getSampleStyleSheet
from reportlab.lib.units import mm
from reportlab.platypus import Paragraph, SimpleDocTemplate, Spacer, Table, TableStyle

from .models import Opportunity

logger = logging.getLogger(__name__)

FILE_PREFIX = "kobber_leads"

CSV_COLUMNS: tuple[str, ...] = (
    "Date",
    "Salesperson",
    "Customer",
    "Phone",
    "Email",
    "City",
    "State",
    "Type",
    "Shop",
    "Focus",
    "Vehicle",
    "Part",
    "Source",
    "Sale?",
    "Amount",
    "Payment",
    "Channel",
    "Loss reason",
    "Missing part",
    "Notes",
)


class ExportError(RuntimeError):
    """Raised when an export document cannot be produced."""


def format_created(value: str) -> str:
    """Render an ISO timestamp as ``dd/mm/yyyy``."""

    if not value:
        return ""
    try:
        return datetime.fromisoformat(value).strftime("%d/%m/%Y")
    except ValueError:
        return value


def _flatten(value: Any) -> str:
    if value is None:
        return ""
    return " ".join(str(value).split())


def export_rows(records: Iterable[Opportunity]) -> List[List[str]]:
    rows = []
    for record in records:
        rows.append(
            [
                format_created(record.created_at),
                _flatten(record.salesperson_email),
                _flatten(record.customer_name),
                _flatten(record.customer_phone),
                _flatten(record.customer_email),
                _flatten(record.customer_city),
                _flatten(record.customer_state),
                _flatten(record.customer_type),
                _flatten(record.shop_name),
                _flatten(record.shop_focus),
                _flatten(record.vehicle_model),
                _flatten(record.part_sought),
                _flatten(record.source),
                "YES" if record.sale_made else "NO",
                _flatten(record.sale_amount),
                _flatten(record.payment_method),
                _flatten(record.sales_channel),
                _flatten(record.loss_reason),
                _flatten(record.missing_part),
                _flatten(record.notes),
            ]
        )
    return rows


def build_csv(records: Iterable[Opportunity]) -> bytes:
    """Return a header line plus one line per record, UTF-8 with BOM."""

    try:
        df = pd.DataFrame(export_rows(records), columns=list(CSV_COLUMNS))
        return df.to_csv(index=False, lineterminator="\n").encode("utf-8-sig")
    except Exception as exc:
        logger.exception("CSV export failed")
        raise ExportError("Could not build the CSV export.") from exc


PDF_COLUMNS: tuple[tuple[str, float], ...] = (
    ("Date", 0.08),
    ("Salesperson", 0.13),
    ("Customer", 0.14),
    ("Phone", 0.10),
    ("Vehicle / part", 0.19),
    ("Source", 0.12),
    ("Result", 0.07),
    ("Amount / reason", 0.17),
)


def _pdf_row(record: Opportunity, style) -> list:
    vehicle_part = " - ".join(part for part in (record.vehicle_model, record.part_sought) if part)
    if record.sale_made:
        detail = f"R$ {record.sale_amount}" if record.sale_amount else ""
        if record.payment_method:
            detail = f"{detail} ({record.payment_method})".strip()
    else:
        detail = record.loss_reason
        if record.missing_part:
            detail = f"{detail}: {record.missing_part}"
    cells = [
        format_created(record.created_at),
        record.salesperson_email.split("@")[0] if record.salesperson_email else "",
        record.customer_name,
        record.customer_phone,
        vehicle_part,
        record.source,
        record.outcome_label,
        detail,
    ]
    return [Paragraph(html.escape(_flatten(cell)), style) for cell in cells]


def build_pdf(
    records: Sequence[Opportunity],
    title: str,
    summary: Optional[str] = None,
    generated_on: Optional[date] = None,
) -> bytes:
    """Build a landscape A4 report listing ``records`` in a fixed table layout."""

    try:
        buffer = io.BytesIO()
        doc = SimpleDocTemplate(
            buffer,
            pagesize=landscape(A4),
            leftMargin=12 * mm,
            rightMargin=12 * mm,
            topMargin=15 * mm,
            bottomMargin=15 * mm,
            title=title,
        )
        styles = getSampleStyleSheet()
        cell_style = styles["BodyText"].clone("Cell")
        cell_style.fontSize = 8
        cell_style.leading = 10
        muted = styles["Normal"].clone("Muted")
        muted.textColor = colors.grey

        story: List[Any] = [Paragraph(html.escape(title), styles["Title"])]
        generated = (generated_on or date.today()).strftime("%d/%m/%Y")
        story.append(Paragraph(f"Generated on {generated} - {len(records)} record(s)", muted))
        if summary:
            story.append(Spacer(1, 4))
            story.append(Paragraph(html.escape(summary), styles["Normal"]))
        story.append(Spacer(1, 8))

        header = [Paragraph(f"<b>{label}</b>", cell_style) for label, _ in PDF_COLUMNS]
        table_data = [header] + [_pdf_row(record, cell_style) for record in records]
        col_widths = [doc.width * share for _, share in PDF_COLUMNS]
        table = Table(table_data, colWidths=col_widths, repeatRows=1)
        table.setStyle(
            TableStyle(
                [
                    ("BACKGROUND", (0, 0), (-1, 0), colors.lightgrey),
                    ("VALIGN", (0, 0), (-1, -1), "TOP"),
                    ("GRID", (0, 0), (-1, -1), 0.5, colors.grey),
                    ("ROWBACKGROUNDS", (0, 1), (-1, -1), [colors.white, colors.whitesmoke]),
                    ("LEFTPADDING", (0, 0), (-1, -1), 4),
                    ("RIGHTPADDING", (0, 0), (-1, -1), 4),
                ]
            )
        )
        story.append(table)
        doc.build(story)
        return buffer.getvalue()
    except Exception as exc:
        logger.exception("PDF export failed")
        raise ExportError("Could not build the PDF export.") from exc


def export_filename(extension: str, today: Optional[date] = None) -> str:
    stamp = (today or date.today()).strftime("%d-%m-%Y")
    return f"{FILE_PREFIX}_{stamp}.{extension.lstrip('.')}"
