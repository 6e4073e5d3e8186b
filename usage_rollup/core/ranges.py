"""
Time range resolution for usage queries.

Turns a caller range request into a bounded, ordered list of bucket periods.
All calendar arithmetic happens in one fixed UTC offset so day boundaries do
not depend on where the service runs.
"""

from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from enum import Enum
from typing import Optional, Tuple, Union

from .errors import InvalidRange, RangeTooLarge
from .keys import Granularity


DEFAULT_TIMEZONE_OFFSET_HOURS = 8.0
DEFAULT_MAX_RANGE_DAYS = 365
DAILY_SERIES_DAYS = 30

DateLike = Union[date, datetime]


class RangeKind(Enum):
    """Supported time range selectors."""
    TODAY = "today"
    SEVEN_DAYS = "7days"
    THIRTY_DAYS = "30days"
    MONTHLY = "monthly"
    ALL = "all"
    CUSTOM = "custom"


class RangeMode(Enum):
    """How month-sized ranges are read."""
    SINGLE_BUCKET = "single_bucket"  # one monthly bucket, for scalar totals
    DAILY_SERIES = "daily_series"  # consecutive daily buckets, for trends


@dataclass(frozen=True)
class TimeRangeSpec:
    """Caller time range request."""
    kind: RangeKind
    start: Optional[DateLike] = None
    end: Optional[DateLike] = None

    @classmethod
    def parse(
        cls,
        value: str,
        start: Optional[DateLike] = None,
        end: Optional[DateLike] = None,
    ) -> "TimeRangeSpec":
        """Build a spec from its string selector.

        Raises:
            InvalidRange: If the selector is unknown or a custom range lacks bounds
        """
        try:
            kind = RangeKind((value or "").strip().lower())
        except ValueError:
            valid = [k.value for k in RangeKind]
            raise InvalidRange(f"Unknown time range {value!r}, expected one of: {valid}")
        if kind == RangeKind.CUSTOM and (start is None or end is None):
            raise InvalidRange("Custom range requires both start and end dates")
        return cls(kind=kind, start=start, end=end)

    @classmethod
    def custom(cls, start: DateLike, end: DateLike) -> "TimeRangeSpec":
        return cls(kind=RangeKind.CUSTOM, start=start, end=end)


@dataclass(frozen=True)
class ResolvedRange:
    """Concrete buckets to read for one request.

    For lifetime requests ``granularity`` is None and ``period_keys`` is empty;
    readers address the running-total bucket instead.
    """
    granularity: Optional[Granularity]
    period_keys: Tuple[str, ...]
    display_granularity: str  # "hour" or "day"
    is_lifetime: bool = False


class RangeResolver:
    """Resolves range specs against an injected clock and fixed UTC offset."""

    def __init__(
        self,
        timezone_offset_hours: float = DEFAULT_TIMEZONE_OFFSET_HOURS,
        max_range_days: int = DEFAULT_MAX_RANGE_DAYS,
    ):
        if max_range_days <= 0:
            raise ValueError("max_range_days must be > 0")
        self.timezone_offset_hours = timezone_offset_hours
        self.max_range_days = max_range_days
        self.tz = timezone(timedelta(hours=timezone_offset_hours))

    def local(self, instant: datetime) -> datetime:
        """Convert an instant to the display timezone (naive input is UTC)."""
        if instant.tzinfo is None:
            instant = instant.replace(tzinfo=timezone.utc)
        return instant.astimezone(self.tz)

    def local_date(self, value: DateLike) -> date:
        if isinstance(value, datetime):
            return self.local(value).date()
        return value

    def today(self, now: Optional[datetime] = None) -> date:
        return self.local(now or datetime.now(timezone.utc)).date()

    @staticmethod
    def day_key(day: date) -> str:
        return day.strftime("%Y-%m-%d")

    @staticmethod
    def month_key(day: date) -> str:
        return day.strftime("%Y-%m")

    def hour_key(self, instant: datetime) -> str:
        return self.local(instant).strftime("%Y-%m-%d:%H")

    def resolve(
        self,
        spec: TimeRangeSpec,
        now: Optional[datetime] = None,
        mode: RangeMode = RangeMode.SINGLE_BUCKET,
    ) -> ResolvedRange:
        """Resolve a range spec into the buckets to read.

        Args:
            spec: Requested range
            now: Current instant (defaults to the wall clock)
            mode: Single monthly bucket or daily series for month-sized ranges

        Returns:
            ResolvedRange with period keys ordered oldest first

        Raises:
            InvalidRange: If a custom range starts after it ends
            RangeTooLarge: If a custom range spans more than max_range_days
        """
        today = self.today(now)

        if spec.kind == RangeKind.ALL:
            return ResolvedRange(granularity=None, period_keys=(), display_granularity="day",
                                 is_lifetime=True)

        if spec.kind == RangeKind.TODAY:
            return self._daily(today, today)

        if spec.kind == RangeKind.SEVEN_DAYS:
            return self._daily(today - timedelta(days=6), today)

        if spec.kind in (RangeKind.THIRTY_DAYS, RangeKind.MONTHLY):
            if mode == RangeMode.DAILY_SERIES:
                return self._daily(today - timedelta(days=DAILY_SERIES_DAYS - 1), today)
            return ResolvedRange(
                granularity=Granularity.MONTHLY,
                period_keys=(self.month_key(today),),
                display_granularity="day",
            )

        if spec.start is None or spec.end is None:
            raise InvalidRange("Custom range requires both start and end dates")
        start = self.local_date(spec.start)
        end = self.local_date(spec.end)
        if start > end:
            raise InvalidRange("Start date must be before or equal to end date")
        span = (end - start).days + 1
        if span > self.max_range_days:
            raise RangeTooLarge(f"Date range cannot exceed {self.max_range_days} days")
        return self._daily(start, end)

    def daily_series(self, days: int, now: Optional[datetime] = None) -> ResolvedRange:
        """Consecutive daily buckets ending today."""
        if days <= 0:
            raise InvalidRange("days must be > 0")
        if days > self.max_range_days:
            raise RangeTooLarge(f"Date range cannot exceed {self.max_range_days} days")
        today = self.today(now)
        return self._daily(today - timedelta(days=days - 1), today)

    def hourly_series(
        self,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        now: Optional[datetime] = None,
        max_hours: Optional[int] = None,
    ) -> ResolvedRange:
        """Hourly buckets covering [start, end], defaulting to the last 24 hours.

        Hours are cut in the display timezone, so fractional offsets start the
        first bucket at the local hour containing ``start``.

        Raises:
            InvalidRange: If start is after end
            RangeTooLarge: If the window exceeds ``max_hours`` or max_range_days
        """
        end = end or now or datetime.now(timezone.utc)
        start = start or end - timedelta(hours=24)
        if end.tzinfo is None:
            end = end.replace(tzinfo=timezone.utc)
        if start.tzinfo is None:
            start = start.replace(tzinfo=timezone.utc)
        if start > end:
            raise InvalidRange("Start time must be before or equal to end time")
        if max_hours is not None and end - start > timedelta(hours=max_hours):
            raise RangeTooLarge(f"Hourly range cannot exceed {max_hours} hours")
        if end - start > timedelta(days=self.max_range_days):
            raise RangeTooLarge(f"Date range cannot exceed {self.max_range_days} days")

        current = self.local(start).replace(minute=0, second=0, microsecond=0)
        keys = []
        while current <= end:
            keys.append(self.hour_key(current))
            current += timedelta(hours=1)
        return ResolvedRange(
            granularity=Granularity.HOURLY,
            period_keys=tuple(keys),
            display_granularity="hour",
        )

    def _daily(self, start: date, end: date) -> ResolvedRange:
        keys = []
        day = start
        while day <= end:
            keys.append(self.day_key(day))
            day += timedelta(days=1)
        return ResolvedRange(
            granularity=Granularity.DAILY,
            period_keys=tuple(keys),
            display_granularity="day",
        )
