"""
scorekeeper.engine.timewindow — Local Day / Week / Month Boundaries
====================================================================

Every "today", "this week" and "this month" in the engine is computed in
one fixed timezone (``Europe/Istanbul`` by default), never in UTC.  Weeks
run Monday through Sunday.

Period keys:

==========  ===============  ============
period      format           example
==========  ===============  ============
daily       ``YYYY-MM-DD``   2026-01-15
weekly      ``YYYY-Www``     2026-W03
monthly     ``YYYY-MM``      2026-01
==========  ===============  ============

The clock is injectable so tests can walk across day boundaries.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, date, datetime, time, timedelta
from zoneinfo import ZoneInfo

DEFAULT_TIMEZONE = "Europe/Istanbul"

PERIOD_TYPES = ("daily", "weekly", "monthly")


@dataclass(frozen=True, slots=True)
class Period:
    """A closed interval of local days with its canonical key."""

    period_type: str
    key: str
    start: date
    end: date  # inclusive

    def contains(self, day: date) -> bool:
        return self.start <= day <= self.end


def _utc_now() -> datetime:
    return datetime.now(UTC)


class TimeWindow:
    """Timezone-aware calendar helper.

    Parameters
    ----------
    tz_name:
        IANA zone used for all day boundaries.
    clock:
        Zero-arg callable returning an aware ``datetime``.  Defaults to
        ``datetime.now(UTC)``.
    """

    def __init__(
        self,
        tz_name: str = DEFAULT_TIMEZONE,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.tz = ZoneInfo(tz_name)
        self._clock = clock or _utc_now

    # -- now / today ------------------------------------------------------
    def now(self) -> datetime:
        """Current instant in the local zone."""
        return self._clock().astimezone(self.tz)

    def today(self) -> date:
        return self.now().date()

    def local_date(self, moment: datetime) -> date:
        """Local calendar date of an aware (or UTC-naive) instant."""
        if moment.tzinfo is None:
            moment = moment.replace(tzinfo=UTC)
        return moment.astimezone(self.tz).date()

    def start_of_day(self, day: date) -> datetime:
        """Local midnight of *day* as an aware UTC datetime."""
        return datetime.combine(day, time.min, tzinfo=self.tz).astimezone(UTC)

    # -- periods ----------------------------------------------------------
    def period(self, period_type: str, day: date | None = None) -> Period:
        """Return the period of *period_type* that contains *day* (default today)."""
        day = day or self.today()
        if period_type == "daily":
            return Period("daily", day.isoformat(), day, day)
        if period_type == "weekly":
            start = day - timedelta(days=day.weekday())
            year, week, _ = day.isocalendar()
            return Period("weekly", f"{year}-W{week:02d}", start, start + timedelta(days=6))
        if period_type == "monthly":
            start = day.replace(day=1)
            nxt = (start + timedelta(days=32)).replace(day=1)
            return Period("monthly", f"{day:%Y-%m}", start, nxt - timedelta(days=1))
        raise ValueError(f"Unknown period type: {period_type}")

    def period_key(self, period_type: str, day: date | None = None) -> str:
        return self.period(period_type, day).key

    def previous_period(self, period_type: str, day: date | None = None) -> Period:
        """The period immediately before the one containing *day*."""
        current = self.period(period_type, day)
        return self.period(period_type, current.start - timedelta(days=1))

    # -- comparisons ------------------------------------------------------
    def days_between(self, earlier: date, later: date) -> int:
        return (later - earlier).days

    def is_yesterday(self, day: date, today: date | None = None) -> bool:
        return self.days_between(day, today or self.today()) == 1
