"""Dashboard reporting over the invoice and purchase ledgers.

Everything here is a pure function of the ledgers it is handed plus a
reporting window, except :func:`calculate_dashboard`, which reads the ledgers
from a runtime context first.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable, List, Optional, Sequence, TypeVar, Union

from . import core_logic, data_manager, log
from .constants import RECENT_INVOICE_LIMIT, TimeRange


LedgerRecord = Union[data_manager.Invoice, data_manager.Purchase]
RecordT = TypeVar("RecordT", data_manager.Invoice, data_manager.Purchase)

CURRENCY_SYMBOL = "₹"


@dataclass(frozen=True)
class DashboardSummary:
    """Headline figures for one reporting window."""

    total_sales: Decimal
    total_purchase_cost: Decimal
    cost_of_goods_sold: Decimal
    gross_profit: Decimal


def range_start(time_range: TimeRange, now: Optional[datetime] = None) -> Optional[date]:
    """Return the first calendar day included in ``time_range``.

    Weeks start on Sunday. ``TimeRange.ALL`` has no lower bound and yields
    ``None``.
    """
    today = (now or datetime.now()).date()
    time_range = TimeRange(time_range)
    if time_range is TimeRange.TODAY:
        return today
    if time_range is TimeRange.WEEK:
        # date.weekday() counts from Monday; shift so Sunday is day zero.
        return today - timedelta(days=(today.weekday() + 1) % 7)
    if time_range is TimeRange.MONTH:
        return today.replace(day=1)
    if time_range is TimeRange.YEAR:
        return today.replace(month=1, day=1)
    return None


def record_day(record: LedgerRecord) -> date:
    """Return the calendar day a ledger record was created on."""
    return date.fromisoformat(record.date[:10])


def filter_by_range(
    records: Iterable[RecordT],
    time_range: TimeRange,
    *,
    now: Optional[datetime] = None,
) -> List[RecordT]:
    """Keep the records dated on or after the start of ``time_range``.

    The boundary day itself is included. Input order is preserved. Records
    whose date cannot be read are logged and left out of bounded windows.
    """
    start = range_start(time_range, now)
    if start is None:
        return list(records)
    kept = []
    for record in records:
        try:
            day = record_day(record)
        except ValueError:
            log.warning("Skipping record '%s' with unreadable date '%s'", record_id(record), record.date)
            continue
        if day >= start:
            kept.append(record)
    return kept


def record_id(record: LedgerRecord) -> str:
    if isinstance(record, data_manager.Invoice):
        return record.invoice_id
    return record.purchase_id


def cost_of_goods_sold(invoices: Iterable[data_manager.Invoice]) -> Decimal:
    """Sum the snapshotted cost basis of every unit sold on ``invoices``."""
    return sum(
        (
            item.cost_price_at_sale * item.quantity
            for invoice in invoices
            for item in invoice.items
        ),
        Decimal("0"),
    )


def aggregate(
    invoices: Sequence[data_manager.Invoice],
    purchases: Sequence[data_manager.Purchase],
) -> DashboardSummary:
    """Fold already-filtered ledgers into a :class:`DashboardSummary`.

    Gross profit is sales minus cost of goods sold. Purchase spend is reported
    alongside it but does not enter the profit figure.
    """
    total_sales = sum((invoice.total for invoice in invoices), Decimal("0"))
    total_purchase_cost = sum((purchase.total_cost for purchase in purchases), Decimal("0"))
    cogs = cost_of_goods_sold(invoices)
    return DashboardSummary(
        total_sales=total_sales,
        total_purchase_cost=total_purchase_cost,
        cost_of_goods_sold=cogs,
        gross_profit=total_sales - cogs,
    )


def recent_invoices(
    invoices: Iterable[data_manager.Invoice],
    limit: Optional[int] = RECENT_INVOICE_LIMIT,
) -> List[data_manager.Invoice]:
    """Return the ``limit`` newest invoices by creation sequence.

    ``limit=None`` returns the whole ledger newest first.
    """
    return sorted(invoices, key=lambda invoice: invoice.sequence, reverse=True)[:limit]


def calculate_dashboard(
    context: core_logic.RuntimeContext,
    time_range: TimeRange = TimeRange.ALL,
    *,
    now: Optional[datetime] = None,
) -> DashboardSummary:
    """Compute the dashboard figures for the stored ledgers."""
    invoices = filter_by_range(core_logic.list_invoices(context), time_range, now=now)
    purchases = filter_by_range(core_logic.list_purchases(context), time_range, now=now)
    summary = aggregate(invoices, purchases)
    log.debug(
        "Calculated dashboard for '%s': sales=%s purchases=%s profit=%s",
        TimeRange(time_range).value,
        summary.total_sales,
        summary.total_purchase_cost,
        summary.gross_profit,
    )
    return summary


def group_indian(digits: str) -> str:
    """Insert separators the Indian way: last three digits, then pairs."""
    if len(digits) <= 3:
        return digits
    head, tail = digits[:-3], digits[-3:]
    pairs = []
    while len(head) > 2:
        pairs.insert(0, head[-2:])
        head = head[:-2]
    if head:
        pairs.insert(0, head)
    return ",".join(pairs + [tail])


def format_currency(amount: Decimal) -> str:
    """Format ``amount`` as whole rupees, e.g. ``₹1,23,457``.

    Rounding happens only here; stored amounts keep their full precision.
    """
    rounded = Decimal(amount).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
    sign = "-" if rounded < 0 else ""
    return f"{sign}{CURRENCY_SYMBOL}{group_indian(str(abs(rounded)))}"
