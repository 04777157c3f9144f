from dataclasses import dataclass
from datetime import date
from typing import Optional

from errors import ValidationError
from recurrence import local_today


@dataclass(frozen=True)
class Window:
    start: date
    end: date


def month_window(year: int, month: int) -> Window:
    if not 1 <= month <= 12:
        raise ValidationError("Month must be between 1 and 12")
    first = date(year, month, 1)
    if month == 12:
        next_month = date(year + 1, 1, 1)
    else:
        next_month = date(year, month + 1, 1)
    return Window(first, next_month - date.resolution)


def resolve_window(
    start: Optional[str],
    end: Optional[str],
    year: Optional[int],
    month: Optional[int],
    *,
    today: Optional[date] = None,
) -> Window:
    if start or end:
        if not start or not end:
            raise ValidationError("Custom window requires start and end dates")
        try:
            start_date = date.fromisoformat(start)
            end_date = date.fromisoformat(end)
        except ValueError as exc:
            raise ValidationError("Dates must be YYYY-MM-DD") from exc
        if start_date > end_date:
            raise ValidationError("Start date must be before end date")
        return Window(start_date, end_date)

    today = today or local_today()
    return month_window(year or today.year, month or today.month)
