from datetime import date, datetime, timezone

from dateutil import tz


class Clock:
    """
    Source of "now" in the business timezone.

    Server and client locales differ, so every past/future decision about a
    slot must go through this instead of the host clock.
    """

    def __init__(self, tz_name: str):
        zone = tz.gettz(tz_name)
        if zone is None:
            raise ValueError(f"Unknown timezone: {tz_name}")
        self.tz_name = tz_name
        self.zone = zone

    def utcnow(self) -> datetime:
        return datetime.now(timezone.utc)

    def now(self) -> datetime:
        return self.utcnow().astimezone(self.zone)

    def today(self) -> date:
        return self.now().date()

    def localize(self, day: date, at) -> datetime:
        """Business-local wall time on `day` as an aware datetime."""
        return datetime.combine(day, at).replace(tzinfo=self.zone)


class FixedClock(Clock):
    """Clock frozen at a given business-local instant. Used by tests and scripts."""

    def __init__(self, tz_name: str, local_now: datetime):
        super().__init__(tz_name)
        if local_now.tzinfo is None:
            local_now = local_now.replace(tzinfo=self.zone)
        self._now = local_now

    def utcnow(self) -> datetime:
        return self._now.astimezone(timezone.utc)

    def set(self, local_now: datetime):
        if local_now.tzinfo is None:
            local_now = local_now.replace(tzinfo=self.zone)
        self._now = local_now
