import logging
from dataclasses import dataclass, replace
from datetime import date, datetime, time, timedelta
from typing import Callable, Iterable, Optional, Protocol, Sequence
from zoneinfo import ZoneInfo

from config import get_settings
from models import EventType, RecurrenceFrequency

logger = logging.getLogger(__name__)

StepFunction = Callable[[datetime], datetime]

MONTHS_PER_STEP = {
    RecurrenceFrequency.monthly: 1,
    RecurrenceFrequency.quarterly: 3,
    RecurrenceFrequency.yearly: 12,
}


class RecurringTemplate(Protocol):
    id: int
    title: str
    amount_cents: int
    due_date: datetime
    type: EventType
    recurring: Optional[RecurrenceFrequency]
    account_id: Optional[int]
    to_account_id: Optional[int]
    category_id: Optional[int]


class DatedTransaction(Protocol):
    description: Optional[str]
    account_id: int
    date: date


@dataclass(frozen=True)
class Occurrence:
    id: str
    template_id: int
    title: str
    amount_cents: int
    due_date: datetime
    type: EventType
    recurring: RecurrenceFrequency
    account_id: Optional[int]
    to_account_id: Optional[int]
    category_id: Optional[int]
    confirmed: bool = False

    @classmethod
    def from_template(cls, template: RecurringTemplate, due: datetime) -> "Occurrence":
        return cls(
            id=f"{template.id}-{due.isoformat()}",
            template_id=template.id,
            title=template.title,
            amount_cents=template.amount_cents,
            due_date=due,
            type=template.type,
            recurring=template.recurring,
            account_id=template.account_id,
            to_account_id=template.to_account_id,
            category_id=template.category_id,
        )


def local_now() -> datetime:
    settings = get_settings()
    tz = ZoneInfo(settings.timezone)
    return datetime.now(tz).replace(tzinfo=None)


def local_today() -> date:
    return local_now().date()


def days_in_month(year: int, month: int) -> int:
    if month == 12:
        next_month = date(year + 1, 1, 1)
    else:
        next_month = date(year, month + 1, 1)
    return (next_month - date(year, month, 1)).days


def add_months(base: datetime, months: int, *, desired_day: int) -> datetime:
    total_months = base.month - 1 + months
    year = base.year + total_months // 12
    month = total_months % 12 + 1
    day = min(desired_day, days_in_month(year, month))
    return base.replace(year=year, month=month, day=day)


def step_for(frequency: RecurrenceFrequency, anchor_day: int) -> StepFunction:
    """Return the cursor step for a frequency.

    Month-based steps clamp to the anchor day, so an event anchored on the
    31st lands on the last day of shorter months and returns to the 31st
    afterwards.
    """
    if frequency == RecurrenceFrequency.weekly:
        return lambda cursor: cursor + timedelta(weeks=1)
    months = MONTHS_PER_STEP[frequency]
    return lambda cursor: add_months(cursor, months, desired_day=anchor_day)


def as_window_start(value: date) -> datetime:
    if isinstance(value, datetime):
        return value
    return datetime.combine(value, time.min)


def as_window_end(value: date) -> datetime:
    if isinstance(value, datetime):
        return value
    return datetime.combine(value, time.max)


def expand_occurrences(
    template: RecurringTemplate,
    window_start: date,
    window_end: date,
    *,
    max_iterations: Optional[int] = None,
    step: Optional[StepFunction] = None,
) -> list[Occurrence]:
    """Generate the concrete occurrences of a recurring event in a window.

    Plain ``date`` bounds cover whole days. Emission is capped at
    ``max_iterations`` occurrences.
    """
    if template.recurring is None:
        return []
    if max_iterations is None:
        max_iterations = get_settings().recurrence_max_iterations
    start = as_window_start(window_start)
    end = as_window_end(window_end)
    anchor = template.due_date
    step = step or step_for(template.recurring, anchor.day)

    cursor = anchor
    while cursor < start:
        following = step(cursor)
        if following <= cursor:
            logger.warning(
                f"recurrence_stalled: template_id={template.id} cursor={cursor.isoformat()}"
            )
            return []
        cursor = following

    occurrences: list[Occurrence] = []
    iterations = 0
    while cursor <= end and iterations < max_iterations:
        occurrences.append(Occurrence.from_template(template, cursor))
        cursor = step(cursor)
        iterations += 1

    if iterations >= max_iterations and cursor <= end:
        logger.warning(
            f"recurrence_cap_reached: template_id={template.id} max_iterations={max_iterations}"
        )
    return occurrences


def confirmation_key(
    description: Optional[str], account_id: Optional[int], day: date
) -> tuple[str, Optional[int], date]:
    return (description or "", account_id, day)


def confirm_occurrences(
    occurrences: Sequence[Occurrence], transactions: Iterable[DatedTransaction]
) -> list[Occurrence]:
    """Flag occurrences that have a matching real transaction.

    A match is a transaction whose description equals the template title,
    booked on the template's account on the occurrence day. There is no
    stored link between a template and the transactions it produced.
    """
    booked = {
        confirmation_key(txn.description, txn.account_id, txn.date)
        for txn in transactions
    }
    confirmed: list[Occurrence] = []
    for occ in occurrences:
        key = confirmation_key(occ.title, occ.account_id, occ.due_date.date())
        if key in booked:
            occ = replace(occ, confirmed=True)
        confirmed.append(occ)
    return confirmed
