"""Monthly sales statistics over an in-memory list of opportunities."""
from __future__ import annotations

from calendar import monthrange
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Iterable, Optional, Sequence

import pandas as pd

from .models import Opportunity


@dataclass(frozen=True)
class MonthlySummary:
    month: str
    total_amount: Decimal = Decimal("0")
    sales_count: int = 0
    losses_count: int = 0
    by_salesperson: dict[str, Decimal] = field(default_factory=dict)
    by_loss_reason: dict[str, int] = field(default_factory=dict)
    by_source: dict[str, int] = field(default_factory=dict)
    by_channel: dict[str, int] = field(default_factory=dict)

    @property
    def total_count(self) -> int:
        return self.sales_count + self.losses_count

    @property
    def conversion_rate(self) -> float:
        if not self.total_count:
            return 0.0
        return self.sales_count / self.total_count

    @property
    def average_ticket(self) -> Decimal:
        if not self.sales_count:
            return Decimal("0")
        return (self.total_amount / self.sales_count).quantize(Decimal("0.01"))


def month_key(value: date) -> str:
    return f"{value.year:04d}-{value.month:02d}"


def add_months(base: date, months: int) -> date:
    """Return ``base`` shifted by ``months`` while clamping the day to the target month."""

    if not isinstance(base, date):
        raise TypeError("base must be a date instance")
    try:
        months = int(months)
    except (TypeError, ValueError):
        raise TypeError("months must be an integer") from None

    month_index = base.month - 1 + months
    year = base.year + month_index // 12
    month = month_index % 12 + 1
    day = min(base.day, monthrange(year, month)[1])
    return date(year, month, day)


def previous_month(month: str) -> str:
    year, mon = (int(part) for part in month.split("-"))
    return month_key(add_months(date(year, mon, 1), -1))


def month_label(month: str) -> str:
    year, mon = (int(part) for part in month.split("-"))
    return date(year, mon, 1).strftime("%b %Y")


def filter_by_month(records: Iterable[Opportunity], month: Optional[str]) -> list[Opportunity]:
    if not month:
        return list(records)
    return [record for record in records if record.created_month == month]


def available_months(records: Iterable[Opportunity], today: Optional[date] = None) -> list[str]:
    months = {record.created_month for record in records if record.created_at}
    months.add(month_key(today or date.today()))
    return sorted(months, reverse=True)


def _frame(records: Sequence[Opportunity]) -> pd.DataFrame:
    return pd.DataFrame(
        [
            {
                "sale_made": record.sale_made,
                "amount": record.amount,
                "salesperson": record.salesperson_email or "unknown",
                "loss_reason": record.loss_reason or "Not informed",
                "source": record.source or "Not informed",
                "channel": record.sales_channel or "Not informed",
            }
            for record in records
        ],
        columns=["sale_made", "amount", "salesperson", "loss_reason", "source", "channel"],
    )


def _counts(series: pd.Series) -> dict[str, int]:
    return {str(key): int(value) for key, value in series.value_counts().items()}


def summarize_month(records: Iterable[Opportunity], month: str) -> MonthlySummary:
    """Fold the records created in ``month`` (``YYYY-MM``) into totals."""

    selected = filter_by_month(records, month)
    df = _frame(selected)
    if df.empty:
        return MonthlySummary(month=month)

    sales = df[df["sale_made"]]
    losses = df[~df["sale_made"]]
    by_salesperson = {
        str(name): sum(group, Decimal("0"))
        for name, group in sales.groupby("salesperson")["amount"]
    }
    by_salesperson = dict(sorted(by_salesperson.items(), key=lambda item: item[1], reverse=True))
    return MonthlySummary(
        month=month,
        total_amount=sum(sales["amount"], Decimal("0")),
        sales_count=int(len(sales)),
        losses_count=int(len(losses)),
        by_salesperson=by_salesperson,
        by_loss_reason=_counts(losses["loss_reason"]),
        by_source=_counts(df["source"]),
        by_channel=_counts(df["channel"]),
    )


def format_metric_delta(current: int, previous: int) -> Optional[str]:
    """Format a delta label comparing the current value to the previous month.

    Returns ``None`` when nothing changed so ``st.metric`` draws no arrow.
    """

    diff = int(current) - int(previous)
    if diff == 0:
        return None
    if previous == 0:
        return f"+{current} (new this month)"
    pct = (diff / previous) * 100
    return f"{diff:+d} ({pct:+.1f}%) vs last month"


def breakdown_frame(values: dict, label: str, value_label: str) -> pd.DataFrame:
    """Turn a summary mapping into a two-column frame for charts and tables."""

    return pd.DataFrame(list(values.items()), columns=[label, value_label])
