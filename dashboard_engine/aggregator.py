import asyncio
import threading
import time
from datetime import datetime
from typing import Callable, Dict, FrozenSet, Iterable, List, Optional, Tuple

from .domains import AllowListValidator, filter_in_scope
from .errors import AllSourcesUnavailable, SourceError, SourceTimeout, SourceUnavailable
from .logging_config import get_logger
from .metrics import MetricDefinition, RecordsBySource, definitions_for
from .models import (
    DashboardQuery,
    DashboardResult,
    MetricValue,
    SourceOutcome,
    SourceRecord,
    SourceStatus,
)
from .sources import DIRECTORY, OPERATIONAL, SourceAdapter

logger = get_logger(__name__)

# people in the company; ERP customers are scoped by schema instead
IDENTITY_SOURCES = frozenset({DIRECTORY, OPERATIONAL})


class Aggregator:
    """Fans a dashboard query out to every source and merges what comes back."""

    def __init__(
        self,
        adapters: Iterable[SourceAdapter],
        metric_definitions: Iterable[MetricDefinition],
        allow_list: Optional[AllowListValidator] = None,
        timeout_seconds: float = 10.0,
        now_fn: Callable[[], datetime] = datetime.now,
        scoped_sources: FrozenSet[str] = IDENTITY_SOURCES,
    ):
        self.adapters: Dict[str, SourceAdapter] = {a.name: a for a in adapters}
        self.metric_definitions = list(metric_definitions)
        self.allow_list = allow_list
        self.timeout_seconds = timeout_seconds
        self.now_fn = now_fn
        self.scoped_sources = scoped_sources
        self._last_known: Dict[Tuple[str, str], Tuple[object, datetime]] = {}
        self._last_known_lock = threading.Lock()

    async def aggregate(self, query: DashboardQuery, key: Optional[str] = None) -> DashboardResult:
        key = key or query.cache_key()
        started = time.perf_counter()
        outcomes = await asyncio.gather(
            *(self._fetch(name, adapter, query) for name, adapter in self.adapters.items())
        )
        status = {outcome.source: outcome.status for outcome in outcomes}
        errors = {o.source: o.error for o in outcomes if o.error}

        if all(s == SourceStatus.UNAVAILABLE for s in status.values()):
            failures = {o.source: o.error or "unavailable" for o in outcomes}
            logger.error("all_sources_unavailable", key=key, failures=failures)
            raise AllSourcesUnavailable(failures)

        records: RecordsBySource = {
            o.source: self._in_scope(o, query)
            for o in outcomes
            if o.status != SourceStatus.UNAVAILABLE
        }

        computed_at = self.now_fn()
        metrics = {
            definition.name: self._merge_metric(definition, key, query, records, status, computed_at)
            for definition in definitions_for(query.report, self.metric_definitions)
        }
        logger.info(
            "aggregation_completed",
            key=key,
            source_status={name: s.value for name, s in status.items()},
            metrics=len(metrics),
            duration_ms=round((time.perf_counter() - started) * 1000, 1),
        )
        return DashboardResult(
            query=query,
            metrics=metrics,
            source_status=status,
            source_errors=errors,
            computed_at=computed_at,
        )

    def _in_scope(self, outcome: SourceOutcome, query: DashboardQuery) -> List[SourceRecord]:
        if outcome.source not in self.scoped_sources:
            return list(outcome.records)
        return filter_in_scope(outcome.records, self.allow_list, query.domain)

    async def _fetch(self, name: str, adapter: SourceAdapter, query: DashboardQuery) -> SourceOutcome:
        started = time.perf_counter()
        try:
            fetched = await asyncio.wait_for(adapter.fetch(query), timeout=self.timeout_seconds)
        except asyncio.TimeoutError:
            error: SourceError = SourceTimeout(name, f"no answer within {self.timeout_seconds}s")
        except SourceError as exc:
            error = exc
        except Exception as exc:
            error = SourceUnavailable(name, str(exc) or type(exc).__name__)
        else:
            elapsed = (time.perf_counter() - started) * 1000
            if fetched.warnings:
                logger.warning("source_degraded", source=name, warnings=fetched.warnings)
            return SourceOutcome(
                source=name,
                status=SourceStatus.DEGRADED if fetched.warnings else SourceStatus.OK,
                records=fetched.records,
                warnings=fetched.warnings,
                duration_ms=elapsed,
            )
        logger.warning(
            "source_fetch_failed",
            source=name,
            error_type=type(error).__name__,
            error=error.reason,
        )
        return SourceOutcome(
            source=name,
            status=SourceStatus.UNAVAILABLE,
            error=f"{type(error).__name__}: {error.reason}",
            duration_ms=(time.perf_counter() - started) * 1000,
        )

    def _merge_metric(
        self,
        definition: MetricDefinition,
        key: str,
        query: DashboardQuery,
        records: RecordsBySource,
        status: Dict[str, SourceStatus],
        computed_at: datetime,
    ) -> MetricValue:
        # joined metrics need every contributing source; no partial joins
        missing = sorted(
            s
            for s in definition.sources
            if status.get(s, SourceStatus.UNAVAILABLE) == SourceStatus.UNAVAILABLE
        )
        if missing:
            return self._unavailable(definition, key, f"source unavailable: {', '.join(missing)}")

        try:
            value = definition.compute(records, query)
        except Exception as exc:
            logger.exception("metric_compute_failed", metric=definition.name, key=key)
            return self._unavailable(definition, key, f"computation failed: {exc}")

        degraded = sorted(s for s in definition.sources if status[s] == SourceStatus.DEGRADED)
        with self._last_known_lock:
            self._last_known[(key, definition.name)] = (value, computed_at)
        return MetricValue(
            name=definition.name,
            status=SourceStatus.DEGRADED if degraded else SourceStatus.OK,
            value=value,
            sources=definition.sources,
            detail=f"source degraded: {', '.join(degraded)}" if degraded else None,
        )

    def _unavailable(self, definition: MetricDefinition, key: str, detail: str) -> MetricValue:
        with self._last_known_lock:
            fallback = self._last_known.get((key, definition.name))
        return MetricValue(
            name=definition.name,
            status=SourceStatus.UNAVAILABLE,
            value=None,
            sources=definition.sources,
            fallback_value=fallback[0] if fallback else None,
            fallback_computed_at=fallback[1] if fallback else None,
            detail=detail,
        )
