from typing import Any, Dict, List, Optional, Union

from .aggregator import Aggregator
from .boundary import BoundaryClock
from .cache import CacheStore
from .errors import StaleEntryIgnored
from .logging_config import get_logger
from .models import CacheEntry, DashboardQuery, DashboardResult
from .singleflight import SingleFlight

logger = get_logger(__name__)


class DashboardService:
    """Serves dashboards from the cache, recomputing once per reporting cycle.

    Per key the lifecycle is Empty -> Computing -> Fresh -> Stale -> Computing.
    Staleness is detected lazily on read; a failed computation leaves the key
    Empty so the next request starts over.
    """

    def __init__(
        self,
        store: CacheStore,
        coordinator: SingleFlight,
        aggregator: Aggregator,
        clock: BoundaryClock,
    ):
        self.store = store
        self.coordinator = coordinator
        self.aggregator = aggregator
        self.clock = clock

    async def get_dashboard(self, query: Union[DashboardQuery, Dict[str, Any], None]) -> DashboardResult:
        query = DashboardQuery.parse(query)
        key = query.cache_key()

        entry = self._fresh_entry(key)
        if entry is not None:
            logger.debug("cache_hit", key=key)
        else:
            logger.info("cache_miss", key=key)
            entry = await self.coordinator.run_once(key, lambda: self._compute(key, query))
        # callers get their own copy; the cached entry is shared by every reader
        return entry.value.model_copy(deep=True)

    async def refresh(self, query: Union[DashboardQuery, Dict[str, Any], None]) -> DashboardResult:
        query = DashboardQuery.parse(query)
        self.store.invalidate(query.cache_key())
        return await self.get_dashboard(query)

    def invalidate(self, key: Optional[str] = None) -> int:
        """Drop one key, or every key when ``key`` is None. Returns entries removed."""
        if key is None:
            return self.store.invalidate_all()
        return int(self.store.invalidate(key))

    def invalidate_query(self, query: Union[DashboardQuery, Dict[str, Any], None]) -> int:
        return self.invalidate(DashboardQuery.parse(query).cache_key())

    def purge_stale(self) -> List[str]:
        now = self.clock.now()
        return self.store.purge(lambda entry: self.clock.has_rolled_over(entry.computed_at, now))

    def get_cache_status(self) -> Dict[str, Any]:
        now = self.clock.now()
        entries = {}
        for key, entry in sorted(self.store.snapshot().items()):
            entries[key] = {
                "report": entry.value.query.report,
                "computed_at": entry.computed_at.isoformat(),
                "invalidates_at": self.clock.next_boundary(entry.computed_at).isoformat(),
                "age_minutes": int((now - entry.computed_at).total_seconds() // 60),
                "is_valid": not self.clock.has_rolled_over(entry.computed_at, now),
                "source_status": {name: s.value for name, s in entry.source_status.items()},
            }
        return {
            "boundary": {
                "hour": self.clock.boundary_hour,
                "minute": self.clock.boundary_minute,
                "next_invalidation": self.clock.next_boundary(now).isoformat(),
            },
            "in_flight": self.coordinator.in_flight(),
            "entries": entries,
        }

    def source_report(self) -> Dict[str, Any]:
        """Per cached key, which sources answered and why the others did not."""
        return {
            key: {
                "computed_at": entry.computed_at.isoformat(),
                "source_status": {name: s.value for name, s in entry.source_status.items()},
                "source_errors": dict(entry.value.source_errors),
            }
            for key, entry in sorted(self.store.snapshot().items())
        }

    def _fresh_entry(self, key: str) -> Optional[CacheEntry]:
        entry = self.store.get(key)
        if entry is None:
            return None
        try:
            self._check_current(key, entry)
        except StaleEntryIgnored as exc:
            logger.info(
                "cache_stale_ignored",
                key=exc.key,
                computed_at=entry.computed_at.isoformat(),
            )
            self.store.invalidate_if(key, entry)
            return None
        return entry

    def _check_current(self, key: str, entry: CacheEntry) -> None:
        if self.clock.has_rolled_over(entry.computed_at):
            raise StaleEntryIgnored(key)

    async def _compute(self, key: str, query: DashboardQuery) -> CacheEntry:
        # a flight that finished between our miss and registration already stored it
        entry = self._fresh_entry(key)
        if entry is not None:
            return entry
        result = await self.aggregator.aggregate(query, key=key)
        entry = CacheEntry(
            key=key,
            value=result,
            computed_at=self.clock.now(),
            source_status=result.source_status,
        )
        self.store.put(entry)
        return entry
