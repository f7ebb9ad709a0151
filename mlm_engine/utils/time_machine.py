# mlm_engine/utils/time_machine.py
"""
Time machine - controls virtual time in the system.

Database columns hold naive UTC datetimes; use timeMachine.utcnow for
anything that is stored or compared with stored values.
"""
import calendar
from datetime import datetime, timezone, timedelta
from typing import Optional
import logging

logger = logging.getLogger(__name__)


def to_naive_utc(value: datetime) -> datetime:
    """Normalize an aware or naive datetime to naive UTC."""
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def add_months(value: datetime, months: int) -> datetime:
    """Calendar month arithmetic, clamping the day (Jan 31 + 1 -> Feb 28/29)."""
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def period_of(value: datetime) -> str:
    """YYYY-MM period key."""
    return value.strftime('%Y-%m')


class TimeMachine:
    """Singleton for managing system time."""

    _instance = None
    _virtualTime: Optional[datetime] = None
    _isTestMode: bool = False

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    @property
    def now(self) -> datetime:
        """Get current system time (real or virtual), timezone-aware UTC."""
        if self._isTestMode and self._virtualTime:
            return self._virtualTime.replace(tzinfo=timezone.utc)
        return datetime.now(timezone.utc)

    @property
    def utcnow(self) -> datetime:
        """Current system time as naive UTC (storage format)."""
        return to_naive_utc(self.now)

    @property
    def currentMonth(self) -> str:
        """Get current month in YYYY-MM format."""
        return period_of(self.now)

    @property
    def isTestMode(self) -> bool:
        return self._isTestMode

    def setTime(self, newTime: datetime, adminId: Optional[int] = None):
        """Set virtual time."""
        self._isTestMode = True
        self._virtualTime = to_naive_utc(newTime)
        logger.info(f"Virtual time set to {self._virtualTime} by admin {adminId}")

    def advanceTime(self, days: int = 0, hours: int = 0, months: int = 0):
        """Advance virtual time forward."""
        if not self._isTestMode:
            raise ValueError("Cannot advance time when not in test mode")

        if months:
            self._virtualTime = add_months(self._virtualTime, months)
        self._virtualTime += timedelta(days=days, hours=hours)
        logger.info(f"Time advanced to {self._virtualTime}")

    def resetToRealTime(self):
        """Return to real time."""
        self._isTestMode = False
        self._virtualTime = None
        logger.info("Returned to real time")


# Global instance
timeMachine = TimeMachine()
