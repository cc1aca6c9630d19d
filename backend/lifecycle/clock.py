"""
Time source for every date computation in the lifecycle code.

Decision functions take `now` explicitly; the workflows and the sweep ask a
Clock for it so tests can pin time with FixedClock.
"""

from datetime import datetime, timedelta

from django.utils import timezone


class SystemClock:

    def now(self) -> datetime:
        return timezone.now()


class FixedClock:
    """Always returns the same instant until advanced."""

    def __init__(self, at: datetime):
        self._at = at

    def now(self) -> datetime:
        return self._at

    def advance(self, delta: timedelta) -> None:
        self._at = self._at + delta


_default_clock = SystemClock()


def get_clock():
    return _default_clock
