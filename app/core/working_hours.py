from datetime import date, datetime, time, timedelta
from typing import Iterable

import holidays

from .errors import ConfigurationMissing
from .time_windows import Interval

WEEKDAY_NAMES = ("monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday")

# Mon-Fri 09:00-17:00, weekend closed
DEFAULT_WEEK: dict[int, list[tuple[time, time]]] = {
    weekday: [(time(9, 0), time(17, 0))] for weekday in range(5)
}


def parse_hhmm(raw: str) -> time:
    hour, minute = str(raw).strip().split(":")[:2]
    return time(int(hour), int(minute))


class WorkingHours:
    """Weekly opening windows of one business, in its local wall time.

    A window whose close time is not after its open time runs past midnight
    and closes on the following day.
    """

    def __init__(
        self,
        weekly: dict[int, list[tuple[time, time]]],
        holiday_country: str | None = None,
        closed_days: Iterable[date] = (),
    ):
        self.weekly = {
            int(weekday): sorted(windows) for weekday, windows in weekly.items() if windows
        }
        self.closed_days = frozenset(closed_days)
        self.holidays = None
        if holiday_country:
            try:
                self.holidays = holidays.country_holidays(holiday_country.strip().upper())
            except NotImplementedError as exc:
                raise ConfigurationMissing(f"Unknown holiday calendar: {holiday_country}") from exc

    @classmethod
    def default_week(cls, holiday_country: str | None = None) -> "WorkingHours":
        return cls(DEFAULT_WEEK, holiday_country=holiday_country)

    @property
    def is_empty(self) -> bool:
        return not self.weekly

    def is_working_day(self, check_date: date) -> bool:
        if check_date in self.closed_days:
            return False
        if self.holidays is not None and check_date in self.holidays:
            return False
        return bool(self.weekly.get(check_date.weekday()))

    def get_working_hours(self, check_date: date) -> list[tuple[time, time]]:
        if not self.is_working_day(check_date):
            return []
        return list(self.weekly.get(check_date.weekday(), []))

    def windows_on(self, day: date) -> list[Interval]:
        out = []
        for open_at, close_at in self.get_working_hours(day):
            start = datetime.combine(day, open_at)
            end = datetime.combine(day, close_at)
            if end <= start:
                end += timedelta(days=1)
            out.append(Interval(start, end))
        return out

    def is_time_allowed(self, check_dt: datetime) -> bool:
        for day in (check_dt.date() - timedelta(days=1), check_dt.date()):
            for window in self.windows_on(day):
                if window.start <= check_dt < window.end:
                    return True
        return False
