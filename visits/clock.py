from datetime import date, datetime, time
from typing import Callable, Optional

from django.utils import timezone


class OperationalClock:
    """Source of the operational date and the current timestamp."""

    def __init__(
        self,
        today: Optional[Callable[[], date]] = None,
        now: Optional[Callable[[], datetime]] = None,
    ):
        self._today = today or timezone.localdate
        self._now = now or timezone.now

    @classmethod
    def fixed(cls, today: date, now: Optional[datetime] = None) -> "OperationalClock":
        moment = now or timezone.make_aware(datetime.combine(today, time(12, 0)))
        return cls(today=lambda: today, now=lambda: moment)

    def today(self) -> date:
        return self._today()

    def now(self) -> datetime:
        return self._now()


def end_of_day(value: date) -> datetime:
    """Closing timestamp used when a visit is signed out automatically."""
    return timezone.make_aware(datetime.combine(value, time(23, 59, 59)))
