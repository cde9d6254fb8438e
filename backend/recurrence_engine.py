from __future__ import annotations

from calendar import monthrange
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from decimal import Decimal
import logging
from typing import Iterable, List, Mapping, Sequence

from sqlalchemy.exc import SQLAlchemyError

from backend.store import RecordStore, expense_tags, expenses, recurring_expenses

log = logging.getLogger(__name__)

SUPPORTED_FREQUENCIES = {"daily", "weekly", "monthly", "yearly"}
MAX_OCCURRENCES_PER_RUN = 12
FORWARD_HORIZON_MONTHS = 12

STATUS_COMPLETED = "completed"
STATUS_PENDING = "pending"


class RuleNotFound(LookupError):
    """Raised when a rule disappears while its occurrences are being written."""


@dataclass(frozen=True)
class RecurrenceRule:
    id: int
    created_by: int
    amount: Decimal
    currency: str
    frequency: str
    start_date: date
    interval: int = 1
    end_date: date | None = None
    last_processed: date | None = None
    description: str = ""
    category_id: int | None = None
    wallet_id: int | None = None
    group_id: int | None = None


@dataclass(frozen=True)
class Recurrence:
    frequency: str
    interval: int = 1
    end_date: date | None = None


@dataclass(frozen=True)
class NewExpense:
    amount: Decimal
    date: date
    currency: str
    description: str = ""
    category_id: int | None = None
    wallet_id: int | None = None
    group_id: int | None = None
    tag_ids: Sequence[int] = field(default_factory=tuple)
    recurrence: Recurrence | None = None


def next_occurrence(
    value: date,
    frequency: str,
    interval: int = 1,
    anchor_day: int | None = None,
) -> date:
    """Step ``value`` forward by one recurrence period.

    Monthly and yearly steps keep ``anchor_day`` (default: the day of
    ``value``) and clamp to the last day of shorter months.
    """
    normalized = _validate_frequency(frequency)
    interval = _validate_interval(interval)
    if normalized == "daily":
        return value + timedelta(days=interval)
    if normalized == "weekly":
        return value + timedelta(weeks=interval)
    months = interval if normalized == "monthly" else interval * 12
    return _add_months(value, months, anchor_day or value.day)


def first_due_date(rule: RecurrenceRule) -> date:
    if rule.last_processed is None:
        return rule.start_date
    return next_occurrence(
        rule.last_processed, rule.frequency, rule.interval, rule.start_date.day
    )


def advance_due_occurrences(
    store: RecordStore,
    rule: RecurrenceRule,
    as_of: date | None = None,
    limit: int = MAX_OCCURRENCES_PER_RUN,
) -> int:
    """Materialize due occurrences of ``rule`` up to ``as_of``.

    At most ``limit`` rows are written per call; the rest of a backlog is
    picked up by later calls. Returns the number of rows written.
    """
    as_of = as_of or date.today()
    cursor = first_due_date(rule)
    if rule.end_date is not None and cursor > rule.end_date:
        return 0
    created = _materialize(store, rule, cursor, as_of, STATUS_COMPLETED, limit)
    if created:
        log.info(
            "Generated %d occurrence(s) for recurring expense %s through %s",
            len(created),
            rule.id,
            created[-1]["date"],
        )
    return len(created)


def expand_forward_series(
    store: RecordStore,
    rule: RecurrenceRule,
    tag_ids: Iterable[int] = (),
    today: date | None = None,
) -> List[dict]:
    """Write the future ``pending`` occurrences of a newly created rule.

    Occurrences run from the one after the watermark up to and including
    ``rule.end_date`` (or one year from ``today``). The watermark moves with
    every row so the catch-up sweep never writes those dates again.
    """
    today = today or date.today()
    cutoff = rule.end_date or _add_months(today, FORWARD_HORIZON_MONTHS, today.day)
    created = _materialize(store, rule, first_due_date(rule), cutoff, STATUS_PENDING, None)

    tag_ids = list(tag_ids)
    if created and tag_ids:
        store.insert(
            expense_tags,
            [
                {"expense_id": row["id"], "tag_id": tag_id}
                for row in created
                for tag_id in tag_ids
            ],
        )
    return created


def process_recurring_expenses(
    store: RecordStore, user_id: int, as_of: date | None = None
) -> int:
    """Catch-up sweep over every rule owned by ``user_id``."""
    as_of = as_of or date.today()
    rows = store.select(
        recurring_expenses, {"created_by": user_id}, order_by=["created_at", "id"]
    )
    processed_count = 0
    for row in rows:
        try:
            processed_count += advance_due_occurrences(store, rule_from_row(row), as_of)
        except (ValueError, SQLAlchemyError):
            log.exception("Skipping recurring expense %s", row["id"])
    return processed_count


def settle_pending_expenses(
    store: RecordStore, user_id: int, as_of: date | None = None
) -> int:
    """Mark the user's pending expenses dated on or before ``as_of`` completed."""
    as_of = as_of or date.today()
    pending = store.select(expenses, {"created_by": user_id, "status": STATUS_PENDING})
    settled = 0
    for row in pending:
        if _as_date(row["date"]) > as_of:
            continue
        if store.update(expenses, row["id"], {"status": STATUS_COMPLETED}):
            settled += 1
    return settled


def create_expense(
    store: RecordStore,
    user_id: int,
    expense: NewExpense,
    today: date | None = None,
) -> dict:
    """Record an expense and, if it recurs, its rule and forward series.

    The initial row is ``completed`` and becomes the rule's first
    occurrence: the rule starts with ``last_processed`` set to its date.
    """
    if expense.amount <= 0:
        raise ValueError("Amount must be greater than zero.")
    recurrence = expense.recurrence
    if recurrence is not None:
        _validate_frequency(recurrence.frequency)
        _validate_interval(recurrence.interval)
        if recurrence.end_date is not None and recurrence.end_date < expense.date:
            raise ValueError("End date must be on or after the expense date.")

    tag_ids = list(dict.fromkeys(expense.tag_ids))
    with store.transaction() as tx:
        [initial] = tx.insert(
            expenses,
            [
                {
                    "created_by": user_id,
                    "amount": expense.amount,
                    "description": expense.description,
                    "date": expense.date,
                    "currency": expense.currency,
                    "category_id": expense.category_id,
                    "wallet_id": expense.wallet_id,
                    "group_id": expense.group_id,
                    "status": STATUS_COMPLETED,
                }
            ],
        )
        if tag_ids:
            tx.insert(
                expense_tags,
                [{"expense_id": initial["id"], "tag_id": tag_id} for tag_id in tag_ids],
            )
        if recurrence is None:
            return initial

        [rule_row] = tx.insert(
            recurring_expenses,
            [
                {
                    "created_by": user_id,
                    "expense_id": initial["id"],
                    "amount": expense.amount,
                    "description": expense.description,
                    "currency": expense.currency,
                    "category_id": expense.category_id,
                    "wallet_id": expense.wallet_id,
                    "group_id": expense.group_id,
                    "frequency": _normalize_frequency(recurrence.frequency),
                    "interval": recurrence.interval,
                    "start_date": expense.date,
                    "end_date": recurrence.end_date,
                    "last_processed": expense.date,
                }
            ],
        )
        initial = tx.update(
            expenses, initial["id"], {"recurring_expense_id": rule_row["id"]}
        )

    expand_forward_series(store, rule_from_row(rule_row), tag_ids, today)
    return initial


def reschedule_recurring_rule(
    store: RecordStore,
    rule_id: int,
    patch: Mapping,
    today: date | None = None,
) -> dict | None:
    """Apply ``patch`` to a rule and rebuild its pending series from it.

    Settled occurrences keep their values. Pending ones are dropped, the
    watermark is rewound to the occurrence before the first dropped row and
    the forward series is written again from the patched rule.
    """
    with store.transaction() as tx:
        rows = tx.select(recurring_expenses, {"id": rule_id})
        if not rows:
            return None
        discarded = _discard_pending(tx, rule_id)
        patch = dict(patch)
        if discarded:
            patch["last_processed"] = _previous_occurrence(rule_from_row(rows[0]), min(discarded))
        row = tx.update(recurring_expenses, rule_id, patch)
        rule = rule_from_row(row)
        links = []
        if row["expense_id"] is not None:
            links = tx.select(expense_tags, {"expense_id": row["expense_id"]}, order_by="id")
        tag_ids = [link["tag_id"] for link in links]
    if not discarded:
        return row
    created = expand_forward_series(store, rule, tag_ids, today)
    log.info(
        "Rescheduled recurring expense %s: %d pending row(s) replaced by %d",
        rule_id,
        len(discarded),
        len(created),
    )
    return store.select(recurring_expenses, {"id": rule_id})[0]


def delete_recurring_rule(store: RecordStore, rule_id: int) -> bool:
    """Delete a rule together with its pending occurrences.

    Settled occurrences stay and lose their link to the rule.
    """
    with store.transaction() as tx:
        if not tx.select(recurring_expenses, {"id": rule_id}):
            return False
        discarded = _discard_pending(tx, rule_id)
        for row in tx.select(expenses, {"recurring_expense_id": rule_id}):
            tx.update(expenses, row["id"], {"recurring_expense_id": None})
        tx.delete(recurring_expenses, rule_id)
    log.info("Deleted recurring expense %s and %d pending row(s)", rule_id, len(discarded))
    return True


def rule_from_row(row: Mapping) -> RecurrenceRule:
    return RecurrenceRule(
        id=row["id"],
        created_by=row["created_by"],
        amount=_coerce_amount(row["amount"]),
        currency=row["currency"],
        frequency=_validate_frequency(row["frequency"]),
        interval=_validate_interval(row["interval"] or 1),
        start_date=_as_date(row["start_date"]),
        end_date=_as_date(row["end_date"]) if row["end_date"] else None,
        last_processed=_as_date(row["last_processed"]) if row["last_processed"] else None,
        description=row["description"] or "",
        category_id=row["category_id"],
        wallet_id=row["wallet_id"],
        group_id=row["group_id"],
    )


def _materialize(
    store: RecordStore,
    rule: RecurrenceRule,
    cursor: date,
    until: date,
    status: str,
    limit: int | None,
) -> List[dict]:
    # Each occurrence and its watermark commit together; a failed write
    # leaves the watermark on the previous occurrence.
    created: List[dict] = []
    while cursor <= until and (limit is None or len(created) < limit):
        if rule.end_date is not None and cursor > rule.end_date:
            break
        try:
            with store.transaction() as tx:
                [row] = tx.insert(expenses, [_occurrence_values(rule, cursor, status)])
                if tx.update(recurring_expenses, rule.id, {"last_processed": cursor}) is None:
                    raise RuleNotFound(f"Recurring expense {rule.id} no longer exists.")
        except (SQLAlchemyError, RuleNotFound):
            log.exception(
                "Failed to generate recurring expense %s for %s", rule.id, cursor
            )
            break
        created.append(row)
        cursor = next_occurrence(cursor, rule.frequency, rule.interval, rule.start_date.day)
    return created


def _discard_pending(tx: RecordStore, rule_id: int) -> List[date]:
    pending = tx.select(expenses, {"recurring_expense_id": rule_id, "status": STATUS_PENDING})
    for row in pending:
        for link in tx.select(expense_tags, {"expense_id": row["id"]}):
            tx.delete(expense_tags, link["id"])
        tx.delete(expenses, row["id"])
    return [_as_date(row["date"]) for row in pending]


def _previous_occurrence(rule: RecurrenceRule, before: date) -> date | None:
    previous = None
    cursor = rule.start_date
    while cursor < before:
        previous = cursor
        cursor = next_occurrence(cursor, rule.frequency, rule.interval, rule.start_date.day)
    return previous


def _occurrence_values(rule: RecurrenceRule, on_date: date, status: str) -> dict:
    return {
        "created_by": rule.created_by,
        "amount": rule.amount,
        "description": rule.description,
        "date": on_date,
        "currency": rule.currency,
        "category_id": rule.category_id,
        "wallet_id": rule.wallet_id,
        "group_id": rule.group_id,
        "status": status,
        "recurring_expense_id": rule.id,
    }


def _validate_frequency(frequency: str) -> str:
    normalized = _normalize_frequency(frequency)
    if normalized not in SUPPORTED_FREQUENCIES:
        raise ValueError("Only daily, weekly, monthly, or yearly schedules are supported.")
    return normalized


def _normalize_frequency(value: str) -> str:
    return value.strip().lower()


def _validate_interval(interval: int) -> int:
    if isinstance(interval, bool) or not isinstance(interval, int) or interval < 1:
        raise ValueError("Interval must be a positive integer.")
    return interval


def _add_months(start_date: date, months: int, anchor_day: int) -> date:
    total_month = start_date.month - 1 + months
    year = start_date.year + total_month // 12
    month = total_month % 12 + 1
    last_day = monthrange(year, month)[1]
    day = min(anchor_day, last_day)
    return date(year, month, day)


def _as_date(value: date | datetime | str) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return datetime.strptime(value[:10], "%Y-%m-%d").date()


def _coerce_amount(amount: Decimal) -> Decimal:
    if isinstance(amount, Decimal):
        return amount
    return Decimal(str(amount))
