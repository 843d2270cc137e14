"""
Spending aggregation over a user's receipts.

Everything here is a pure, single-pass fold over validated receipts:
1. Spend per category (and total) inside a half-open date range [start, end)
2. The same figures for the equally long period right before it
3. Budget progress per category
4. Yearly tax report for business expenses
5. Per-day totals for the spending calendar

Receipts are validated at ingestion (positive Decimal amounts), so nothing
here coerces or skips bad values. Rounding to cents happens once, at output.
"""

from __future__ import annotations

import csv
import io
import logging
from datetime import date
from decimal import Decimal, ROUND_HALF_UP
from typing import Dict, Iterable, List, Optional, Tuple

from pydantic import BaseModel

from receiptwise.graph.state import Category, Receipt, TaxCategory, quantize

logger = logging.getLogger(__name__)

ONE_DP = Decimal("0.1")
ZERO = Decimal("0")

SORT_ORDERS = ("date-desc", "date-asc", "amount-desc", "amount-asc")


class CategorySpending(BaseModel):
    category: Category
    total: Decimal


class SpendingSummary(BaseModel):
    start: date
    end: date
    total: Decimal
    by_category: List[CategorySpending]
    previous_start: date
    previous_end: date
    previous_total: Decimal
    previous_by_category: List[CategorySpending]
    change_pct: Optional[Decimal] = None
    top_categories: List[CategorySpending]


class BudgetProgress(BaseModel):
    category: Category
    budget: Decimal
    spent: Decimal
    remaining: Decimal
    progress_pct: Decimal
    over_budget: bool


class TaxReportRow(BaseModel):
    tax_category: TaxCategory
    count: int
    total: Decimal


class TaxReport(BaseModel):
    year: int
    rows: List[TaxReportRow]
    count: int
    total: Decimal


class DaySpending(BaseModel):
    date: date
    total: Decimal
    level: str


# ---------------------------------------------------------------------------
# Date ranges
# ---------------------------------------------------------------------------

def month_range(year: int, month: int) -> Tuple[date, date]:
    """Return [first day of month, first day of next month)."""
    start = date(year, month, 1)
    end = date(year + 1, 1, 1) if month == 12 else date(year, month + 1, 1)
    return start, end


def year_range(year: int) -> Tuple[date, date]:
    return date(year, 1, 1), date(year + 1, 1, 1)


def previous_period(start: date, end: date) -> Tuple[date, date]:
    """The range of the same length that ends where this one starts."""
    if end < start:
        raise ValueError("end must not be before start")
    return start - (end - start), start


def in_range(receipt: Receipt, start: Optional[date], end: Optional[date]) -> bool:
    """Half-open test: start <= receipt.date < end. None leaves that side open."""
    if start is not None and receipt.date < start:
        return False
    if end is not None and receipt.date >= end:
        return False
    return True


# ---------------------------------------------------------------------------
# Category spending
# ---------------------------------------------------------------------------

def spending_by_category(
    receipts: Iterable[Receipt],
    start: Optional[date] = None,
    end: Optional[date] = None,
) -> List[CategorySpending]:
    """Sum receipt amounts per category, every category included."""
    buckets: Dict[Category, Decimal] = {c: ZERO for c in Category}
    for receipt in receipts:
        if in_range(receipt, start, end):
            buckets[receipt.category] += receipt.amount
    return [CategorySpending(category=c, total=quantize(t)) for c, t in buckets.items()]


def total_spending(
    receipts: Iterable[Receipt],
    start: Optional[date] = None,
    end: Optional[date] = None,
) -> Decimal:
    """Total spend, equal to the sum of the rounded per-category totals."""
    return _sum_totals(spending_by_category(receipts, start, end))


def _sum_totals(by_category: Iterable[CategorySpending]) -> Decimal:
    return sum((row.total for row in by_category), ZERO)


def top_categories(by_category: Iterable[CategorySpending], n: int = 3) -> List[CategorySpending]:
    """Categories with any spend, largest first."""
    spent = [row for row in by_category if row.total > ZERO]
    return sorted(spent, key=lambda row: row.total, reverse=True)[:max(n, 0)]


def _percent_change(current: Decimal, previous: Decimal) -> Optional[Decimal]:
    if previous == ZERO:
        return None
    return ((current - previous) / previous * 100).quantize(ONE_DP, rounding=ROUND_HALF_UP)


def spending_summary(
    receipts: Iterable[Receipt],
    start: date,
    end: date,
    top_n: int = 3,
) -> SpendingSummary:
    """Spend for [start, end) next to the equally long period before it."""
    receipts = list(receipts)
    prev_start, prev_end = previous_period(start, end)

    current = spending_by_category(receipts, start, end)
    previous = spending_by_category(receipts, prev_start, prev_end)
    total = _sum_totals(current)
    previous_total = _sum_totals(previous)

    return SpendingSummary(
        start=start,
        end=end,
        total=total,
        by_category=current,
        previous_start=prev_start,
        previous_end=prev_end,
        previous_total=previous_total,
        previous_by_category=previous,
        change_pct=_percent_change(total, previous_total),
        top_categories=top_categories(current, top_n),
    )


# ---------------------------------------------------------------------------
# Budgets
# ---------------------------------------------------------------------------

def budget_progress(
    budgets: Dict[Category, Decimal],
    receipts: Iterable[Receipt],
    start: date,
    end: date,
) -> List[BudgetProgress]:
    """Spent versus ceiling for every category that has a budget set."""
    spent = {row.category: row.total for row in spending_by_category(receipts, start, end)}

    progress: List[BudgetProgress] = []
    for category in Category:
        budget = budgets.get(category, ZERO)
        if budget <= ZERO:
            continue
        used = spent[category]
        progress.append(
            BudgetProgress(
                category=category,
                budget=quantize(budget),
                spent=used,
                remaining=quantize(budget - used),
                progress_pct=(used / budget * 100).quantize(ONE_DP, rounding=ROUND_HALF_UP),
                over_budget=used > budget,
            )
        )
    return progress


# ---------------------------------------------------------------------------
# Tax report
# ---------------------------------------------------------------------------

def tax_report(receipts: Iterable[Receipt], year: int) -> TaxReport:
    """Business expenses of one calendar year grouped by tax category."""
    start, end = year_range(year)
    counts: Dict[TaxCategory, int] = {}
    totals: Dict[TaxCategory, Decimal] = {}

    for receipt in receipts:
        if not receipt.is_business_expense or not in_range(receipt, start, end):
            continue
        # drafts guarantee a tax category on every business expense
        key = receipt.tax_category
        counts[key] = counts.get(key, 0) + 1
        totals[key] = totals.get(key, ZERO) + receipt.amount

    rows = [
        TaxReportRow(tax_category=key, count=counts[key], total=quantize(totals[key]))
        for key in counts
    ]
    rows.sort(key=lambda row: row.total, reverse=True)
    return TaxReport(
        year=year,
        rows=rows,
        count=sum(row.count for row in rows),
        total=sum((row.total for row in rows), ZERO),
    )


# ---------------------------------------------------------------------------
# Calendar
# ---------------------------------------------------------------------------

def _spending_level(amount: Decimal, max_amount: Decimal) -> str:
    percentage = amount / max_amount * 100
    if percentage > 75:
        return "very_high"
    if percentage > 50:
        return "high"
    if percentage > 25:
        return "medium"
    return "low"


def daily_spending(receipts: Iterable[Receipt], start: date, end: date) -> List[DaySpending]:
    """Per-day totals in [start, end), each tagged with a level relative to the busiest day."""
    per_day: Dict[date, Decimal] = {}
    for receipt in receipts:
        if in_range(receipt, start, end):
            per_day[receipt.date] = per_day.get(receipt.date, ZERO) + receipt.amount

    if not per_day:
        return []
    busiest = max(per_day.values())
    return [
        DaySpending(date=day, total=quantize(amount), level=_spending_level(amount, busiest))
        for day, amount in sorted(per_day.items())
    ]


# ---------------------------------------------------------------------------
# Listing and export
# ---------------------------------------------------------------------------

def filter_receipts(
    receipts: Iterable[Receipt],
    business_only: bool = False,
    category: Optional[Category] = None,
    sort: str = "date-desc",
) -> List[Receipt]:
    """Apply the receipts-list filters, then sort."""
    if sort not in SORT_ORDERS:
        raise ValueError(f"Unknown sort order {sort!r}; expected one of {', '.join(SORT_ORDERS)}")

    result = [
        r for r in receipts
        if (not business_only or r.is_business_expense)
        and (category is None or r.category == category)
    ]
    field, direction = sort.split("-")
    result.sort(key=lambda r: getattr(r, field), reverse=direction == "desc")
    return result


def _write_csv(rows: List[List[object]]) -> str:
    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\n")
    writer.writerows(rows)
    return buffer.getvalue()


def business_expenses_csv(receipts: Iterable[Receipt]) -> str:
    """CSV export of business expenses (Date, Merchant, Amount, Category, Description)."""
    rows: List[List[object]] = [["Date", "Merchant", "Amount", "Category", "Description"]]
    for r in receipts:
        if not r.is_business_expense:
            continue
        rows.append([r.date.isoformat(), r.merchant, str(quantize(r.amount)), r.category.value, r.description])
    return _write_csv(rows)


def tax_report_csv(report: TaxReport) -> str:
    rows: List[List[object]] = [["Tax Category", "Count", "Total"]]
    for row in report.rows:
        rows.append([row.tax_category.value, row.count, str(row.total)])
    rows.append(["Total", report.count, str(quantize(report.total))])
    return _write_csv(rows)
