from __future__ import annotations

from dataclasses import dataclass
from datetime import date, timedelta
from decimal import ROUND_HALF_UP, Decimal
import logging
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from sqlalchemy.exc import SQLAlchemyError

from backend.currency_conversion import (
    ExchangeRateService,
    RateProviderUnavailable,
    normalize_currency,
)

log = logging.getLogger(__name__)

ZERO = Decimal("0")


@dataclass(frozen=True)
class ExpenseLine:
    amount: Decimal
    date: date
    currency: Optional[str] = None
    # Type of the row's category; None when the row is uncategorized.
    kind: Optional[str] = "expense"
    category_id: Optional[int] = None
    category_name: Optional[str] = None
    tags: Tuple[Tuple[int, str], ...] = ()


@dataclass(frozen=True)
class WalletBalance:
    balance: Decimal
    currency: Optional[str] = None


@dataclass(frozen=True)
class DashboardTotals:
    currency: str
    total_expenses: Decimal
    total_income: Decimal
    total_balance: Decimal
    net_savings: Decimal


@dataclass(frozen=True)
class DailyTotal:
    date: date
    label: str
    amount: Decimal


@dataclass(frozen=True)
class BreakdownEntry:
    key: str
    name: str
    amount: Decimal


@dataclass(frozen=True)
class MonthlyReport:
    month: date
    currency: str
    income: Decimal
    expense: Decimal
    savings: Decimal
    savings_rate: Decimal
    categories: List[BreakdownEntry]
    daily: List[DailyTotal]


@dataclass(frozen=True)
class TrendPoint:
    month: date
    label: str
    income: Decimal
    expense: Decimal


class NormalizingTotals:
    """Sums amounts in one display currency.

    Rates are looked up once per (date, currency) pair. When a lookup fails
    the raw, unconverted amount is added instead.
    """

    def __init__(self, rate_service: ExchangeRateService, display_currency: str) -> None:
        self.rate_service = rate_service
        self.display_currency = normalize_currency(display_currency)
        self._rates: Dict[Tuple[date, str], Optional[Decimal]] = {}

    def convert(self, amount: Decimal, currency: Optional[str], on_date: date) -> Decimal:
        amount = _coerce_amount(amount)
        source = _safe_currency(currency, self.display_currency)
        if source == self.display_currency:
            return amount
        rate = self._rate_for(on_date, source)
        if rate is None:
            return amount
        return amount * rate

    def line(self, item: ExpenseLine) -> Decimal:
        return self.convert(item.amount, item.currency, item.date)

    def breakdown(
        self,
        items: Iterable[ExpenseLine],
        buckets: Callable[[ExpenseLine], Iterable[Tuple[str, str]]],
    ) -> List[BreakdownEntry]:
        """Adds each line's converted amount to every (key, name) bucket it falls in.

        Entries come back largest first.
        """
        names: Dict[str, str] = {}
        amounts: Dict[str, Decimal] = {}
        for item in items:
            converted = self.line(item)
            for key, name in buckets(item):
                names.setdefault(key, name)
                amounts[key] = amounts.get(key, ZERO) + converted
        entries = [BreakdownEntry(key=key, name=names[key], amount=amounts[key]) for key in names]
        entries.sort(key=lambda entry: entry.amount, reverse=True)
        return entries

    def _rate_for(self, on_date: date, source: str) -> Optional[Decimal]:
        key = (on_date, source)
        if key not in self._rates:
            try:
                self._rates[key] = self.rate_service.get_rate(
                    on_date, source, self.display_currency
                )
            except (RateProviderUnavailable, ValueError, SQLAlchemyError):
                log.warning(
                    "Conversion %s->%s failed for %s, using raw amount",
                    source,
                    self.display_currency,
                    on_date,
                    exc_info=True,
                )
                self._rates[key] = None
        return self._rates[key]


def summarize_dashboard(
    expenses: Iterable[ExpenseLine],
    wallets: Iterable[WalletBalance],
    display_currency: str,
    rate_service: ExchangeRateService,
    today: date | None = None,
) -> DashboardTotals:
    today = today or date.today()
    totals = NormalizingTotals(rate_service, display_currency)

    expense_total = ZERO
    income_total = ZERO
    for item in expenses:
        if (item.date.year, item.date.month) != (today.year, today.month):
            continue
        # Uncategorized rows count as neither income nor expense.
        if item.kind == "income":
            income_total += totals.line(item)
        elif item.kind == "expense":
            expense_total += totals.line(item)

    # Wallets carry no balance history, so today's rate applies.
    balance_total = ZERO
    for wallet in wallets:
        balance_total += totals.convert(wallet.balance, wallet.currency, today)

    return DashboardTotals(
        currency=totals.display_currency,
        total_expenses=expense_total,
        total_income=income_total,
        total_balance=balance_total,
        net_savings=income_total - expense_total,
    )


def daily_expense_totals(
    expenses: Iterable[ExpenseLine],
    display_currency: str,
    rate_service: ExchangeRateService,
    today: date | None = None,
    days: int = 7,
) -> List[DailyTotal]:
    if days < 1:
        raise ValueError("days must be at least 1.")
    today = today or date.today()
    totals = NormalizingTotals(rate_service, display_currency)
    window = [today - timedelta(days=offset) for offset in range(days - 1, -1, -1)]
    by_day: Dict[date, Decimal] = {day: ZERO for day in window}
    for item in expenses:
        if item.kind != "expense" or item.date not in by_day:
            continue
        by_day[item.date] += totals.convert(item.amount, item.currency, item.date)
    return [
        DailyTotal(date=day, label=day.strftime("%a"), amount=by_day[day])
        for day in window
    ]


def monthly_report(
    expenses: Iterable[ExpenseLine],
    month: date,
    display_currency: str,
    rate_service: ExchangeRateService,
) -> MonthlyReport:
    """Income, spending, savings rate and per-category and per-day spending for one month."""
    start = month.replace(day=1)
    end = _shift_month(start, 1) - timedelta(days=1)
    totals = NormalizingTotals(rate_service, display_currency)
    lines = [item for item in expenses if start <= item.date <= end]

    income = sum((totals.line(item) for item in lines if item.kind == "income"), ZERO)
    expense = sum((totals.line(item) for item in lines if item.kind == "expense"), ZERO)
    savings = income - expense
    savings_rate = ZERO
    if income > 0:
        savings_rate = (savings / income * 100).quantize(Decimal("0.01"), ROUND_HALF_UP)

    by_day: Dict[date, Decimal] = {}
    for offset in range((end - start).days + 1):
        by_day[start + timedelta(days=offset)] = ZERO
    for item in lines:
        if item.kind == "expense":
            by_day[item.date] += totals.line(item)

    return MonthlyReport(
        month=start,
        currency=totals.display_currency,
        income=income,
        expense=expense,
        savings=savings,
        savings_rate=savings_rate,
        categories=totals.breakdown(_spending(lines), _category_bucket),
        daily=[
            DailyTotal(date=day, label=day.strftime("%d"), amount=amount)
            for day, amount in by_day.items()
        ],
    )


def category_breakdown(
    expenses: Iterable[ExpenseLine],
    display_currency: str,
    rate_service: ExchangeRateService,
    start: date | None = None,
    end: date | None = None,
) -> List[BreakdownEntry]:
    totals = NormalizingTotals(rate_service, display_currency)
    return totals.breakdown(_spending(_within(expenses, start, end)), _category_bucket)


def tag_breakdown(
    expenses: Iterable[ExpenseLine],
    display_currency: str,
    rate_service: ExchangeRateService,
    start: date | None = None,
    end: date | None = None,
) -> List[BreakdownEntry]:
    """Spending per tag. A line with several tags counts in full for each of them."""
    totals = NormalizingTotals(rate_service, display_currency)
    return totals.breakdown(_spending(_within(expenses, start, end)), _tag_buckets)


def monthly_trend(
    expenses: Iterable[ExpenseLine],
    display_currency: str,
    rate_service: ExchangeRateService,
    today: date | None = None,
    months: int = 6,
) -> List[TrendPoint]:
    """Income and expense per calendar month, oldest first, ending with the current month."""
    if months < 1:
        raise ValueError("months must be at least 1.")
    today = today or date.today()
    current = today.replace(day=1)
    window = [_shift_month(current, -offset) for offset in range(months - 1, -1, -1)]
    income: Dict[date, Decimal] = {month: ZERO for month in window}
    expense: Dict[date, Decimal] = {month: ZERO for month in window}
    totals = NormalizingTotals(rate_service, display_currency)
    for item in expenses:
        month = item.date.replace(day=1)
        if month not in income:
            continue
        if item.kind == "income":
            income[month] += totals.line(item)
        elif item.kind == "expense":
            expense[month] += totals.line(item)
    return [
        TrendPoint(
            month=month, label=month.strftime("%b"), income=income[month], expense=expense[month]
        )
        for month in window
    ]


def _spending(items: Iterable[ExpenseLine]) -> List[ExpenseLine]:
    return [item for item in items if item.kind != "income"]


def _within(
    items: Iterable[ExpenseLine], start: date | None, end: date | None
) -> List[ExpenseLine]:
    return [
        item
        for item in items
        if (start is None or item.date >= start) and (end is None or item.date <= end)
    ]


def _category_bucket(item: ExpenseLine) -> List[Tuple[str, str]]:
    if item.category_id is None:
        return [("uncategorized", "Uncategorized")]
    return [(str(item.category_id), item.category_name or "Uncategorized")]


def _tag_buckets(item: ExpenseLine) -> List[Tuple[str, str]]:
    if not item.tags:
        return [("no-tags", "No Tags")]
    return [(str(tag_id), name) for tag_id, name in item.tags]


def _shift_month(value: date, months: int) -> date:
    month_index = (value.year * 12 + value.month - 1) + months
    return date(month_index // 12, month_index % 12 + 1, 1)


def _safe_currency(value: Optional[str], fallback: str) -> str:
    if not value:
        return fallback
    try:
        return normalize_currency(value)
    except ValueError:
        return fallback


def _coerce_amount(amount: Decimal) -> Decimal:
    if isinstance(amount, Decimal):
        return amount
    return Decimal(str(amount))
