from datetime import datetime, timedelta
from typing import Callable, Optional


def boundary_for(now: datetime, boundary_hour: int, boundary_minute: int = 0) -> datetime:
    return now.replace(hour=boundary_hour, minute=boundary_minute, second=0, microsecond=0)


def has_rolled_over(
    computed_at: datetime,
    now: datetime,
    boundary_hour: int,
    boundary_minute: int = 0,
) -> bool:
    """Return True when ``computed_at`` belongs to an earlier reporting cycle than ``now``."""
    boundary_today = boundary_for(now, boundary_hour, boundary_minute)
    if computed_at.date() != now.date():
        return now >= boundary_today
    return computed_at < boundary_today <= now


def next_boundary(now: datetime, boundary_hour: int, boundary_minute: int = 0) -> datetime:
    upcoming = boundary_for(now, boundary_hour, boundary_minute)
    if now >= upcoming:
        upcoming += timedelta(days=1)
    return upcoming


class BoundaryClock:
    """Daily reporting-cycle boundary with an injectable time source.

    A cached dashboard stays valid until the next boundary time (07:00 by
    default), so an entry computed yesterday afternoon is still served this
    morning until the boundary passes.
    """

    def __init__(
        self,
        boundary_hour: int,
        boundary_minute: int = 0,
        now_fn: Optional[Callable[[], datetime]] = None,
    ):
        self.boundary_hour = boundary_hour
        self.boundary_minute = boundary_minute
        self._now_fn = now_fn or datetime.now

    def now(self) -> datetime:
        return self._now_fn()

    def has_rolled_over(self, computed_at: datetime, now: Optional[datetime] = None) -> bool:
        return has_rolled_over(
            computed_at,
            now or self.now(),
            self.boundary_hour,
            self.boundary_minute,
        )

    def next_boundary(self, now: Optional[datetime] = None) -> datetime:
        return next_boundary(now or self.now(), self.boundary_hour, self.boundary_minute)
