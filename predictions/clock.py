from datetime import timedelta

from django.utils import timezone


class SystemClock:
    def now(self):
        return timezone.now()


class FrozenClock:
    """Clock that only moves when told to. Used by tests and replays."""

    def __init__(self, now=None):
        self._now = now or timezone.now()

    def now(self):
        return self._now

    def advance(self, **kwargs):
        self._now = self._now + timedelta(**kwargs)
        return self._now

    def set(self, now):
        self._now = now


default_clock = SystemClock()


def get_clock(clock=None):
    return clock if clock is not None else default_clock


def seconds_until(match_start, now):
    """Whole seconds left before ``match_start``; 0 once it has passed."""
    remaining = (match_start - now).total_seconds()
    return max(0, int(remaining))
