from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Iterator, Optional

from models import ReportFrequency


@dataclass(frozen=True)
class AggregationWindow:
    """Half-open interval ``[start, end)`` of naive UTC datetimes."""

    start: datetime
    end: datetime

    def __post_init__(self) -> None:
        if self.start >= self.end:
            raise ValueError("Window start must be before window end")

    def contains(self, moment: datetime) -> bool:
        return self.start <= moment < self.end

    def label(self) -> str:
        last_day = (self.end - timedelta(microseconds=1)).date()
        first_day = self.start.date()
        if first_day == last_day:
            return _format_day(first_day, with_year=True)
        return (
            f"{_format_day(first_day, with_year=first_day.year != last_day.year)}"
            f" - {_format_day(last_day, with_year=True)}"
        )

    def as_key(self) -> str:
        return f"{self.start.isoformat()}_{self.end.isoformat()}"


def _format_day(d: date, *, with_year: bool) -> str:
    text = f"{d.strftime('%b')} {d.day}"
    return f"{text}, {d.year}" if with_year else text


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


@dataclass(frozen=True)
class ReportSchedule:
    """Report cadence for one user.

    Monthly windows keep the day-of-month of the window start. A start that
    sits on the last day of a short month because ``anchor`` falls later in
    the month snaps back to the anchor day, so an anchor on the 31st yields
    ``[Jan 31, Feb 29) [Feb 29, Mar 31) ...`` without drifting.
    """

    frequency: ReportFrequency
    anchor: datetime

    def month_day_for(self, boundary: datetime) -> int:
        snapped = boundary.day == days_in_month(boundary.year, boundary.month)
        if snapped and self.anchor.day > boundary.day:
            return self.anchor.day
        return boundary.day

    def next_boundary(self, start: datetime) -> datetime:
        if self.frequency == ReportFrequency.daily:
            return start + timedelta(days=1)
        if self.frequency == ReportFrequency.weekly:
            return start + timedelta(weeks=1)
        return add_months(start, 1, desired_day=self.month_day_for(start))

    def previous_boundary(self, end: datetime) -> datetime:
        if self.frequency == ReportFrequency.daily:
            return end - timedelta(days=1)
        if self.frequency == ReportFrequency.weekly:
            return end - timedelta(weeks=1)
        return add_months(end, -1, desired_day=self.month_day_for(end))

    def window_from(self, start: datetime) -> AggregationWindow:
        return AggregationWindow(start, self.next_boundary(start))

    def previous(self, window: AggregationWindow) -> AggregationWindow:
        return AggregationWindow(self.previous_boundary(window.start), window.start)

    def windows_due(
        self,
        start: datetime,
        as_of: datetime,
        *,
        limit: Optional[int] = None,
    ) -> Iterator[AggregationWindow]:
        """Yield consecutive closed windows beginning at ``start``.

        A window is due once its end is ``<= as_of``. Each yielded window
        starts where the previous one ended.
        """
        produced = 0
        window = self.window_from(start)
        while window.end <= as_of:
            if limit is not None and produced >= limit:
                return
            yield window
            produced += 1
            window = self.window_from(window.end)
