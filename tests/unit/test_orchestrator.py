import asyncio

import pytest

from dashboard_engine.errors import AllSourcesUnavailable, InvalidQuery, SourceUnavailable
from dashboard_engine.models import DashboardQuery, SourceStatus


def get(service, query=None):
    return asyncio.run(service.get_dashboard(query))


def fail_everything(adapters):
    for adapter in adapters:
        adapter.error = SourceUnavailable(adapter.name, "offline")


def calls(adapters):
    return [adapter.calls for adapter in adapters]


class TestCacheKey:
    def test_equal_inputs_give_equal_keys(self):
        a = DashboardQuery.parse({"report": "Aging", "domain": "WWW.Example.com"})
        b = DashboardQuery.parse({"report": "aging", "domain": "example.com"})
        assert a.cache_key() == b.cache_key()

    def test_distinct_filters_give_distinct_keys(self):
        keys = {
            DashboardQuery().cache_key(),
            DashboardQuery(domain="example.com").cache_key(),
            DashboardQuery(business_type="export").cache_key(),
            DashboardQuery(period="last_week").cache_key(),
            DashboardQuery(user_scope="a@example.com").cache_key(),
        }
        assert len(keys) == 5

    @pytest.mark.parametrize(
        "data",
        [
            {"report": "weekly"},
            {"period": "forever"},
            {"user_scope": "not-an-email"},
            {"unexpected": 1},
            "overview",
        ],
    )
    def test_invalid_query(self, data):
        with pytest.raises(InvalidQuery):
            DashboardQuery.parse(data)


class TestGetDashboard:
    def test_second_read_is_served_from_cache(self, service, adapters):
        first = get(service)
        second = get(service)

        assert second == first
        assert calls(adapters) == [1, 1, 1]

    def test_caller_mutations_do_not_leak_into_cache(self, service, adapters):
        first = get(service)
        first.metrics["unreplied_total"] = "tampered"
        first.metrics["aging_buckets"].value["above_168h"] = -1
        first.source_status["erp"] = "tampered"

        second = get(service)

        assert second.metrics["unreplied_total"].value == 7.0
        assert second.metrics["aging_buckets"].value["above_168h"] == 1.0
        assert second.source_status["erp"] == SourceStatus.OK
        assert calls(adapters) == [1, 1, 1]

    def test_invalid_query_never_reaches_sources(self, service, adapters):
        with pytest.raises(InvalidQuery):
            get(service, {"report": "nope"})
        assert calls(adapters) == [0, 0, 0]

    def test_concurrent_misses_compute_once(self, service, adapters):
        for adapter in adapters:
            adapter.delay = 0.05

        async def burst():
            return await asyncio.gather(*(service.get_dashboard({}) for _ in range(20)))

        results = asyncio.run(burst())

        assert calls(adapters) == [1, 1, 1]
        assert all(result == results[0] for result in results)

    def test_distinct_keys_do_not_share_state(self, service, adapters):
        overview = get(service)
        sales = get(service, {"report": "sales"})

        assert overview != sales
        assert calls(adapters) == [2, 2, 2]
        assert len(service.store) == 2

    def test_boundary_rollover_triggers_recompute(self, service, adapters, now):
        first = get(service)
        now.advance(hours=20)  # next day 05:30, still before 07:00
        assert get(service) == first

        now.advance(hours=2)  # 07:30, boundary crossed
        refreshed = get(service)

        assert refreshed.computed_at > first.computed_at
        assert calls(adapters) == [2, 2, 2]
        entry = service.store.get(DashboardQuery().cache_key())
        assert entry.computed_at == now.now

    def test_total_failure_is_not_cached(self, service, adapters):
        fail_everything(adapters)

        with pytest.raises(AllSourcesUnavailable):
            get(service)
        assert len(service.store) == 0

        for adapter in adapters:
            adapter.error = None
        result = get(service)

        assert result.source_status["erp"] == SourceStatus.OK
        assert calls(adapters) == [2, 2, 2]

    def test_concurrent_waiters_share_failure(self, service, adapters):
        fail_everything(adapters)
        for adapter in adapters:
            adapter.delay = 0.05

        async def burst():
            return await asyncio.gather(
                *(service.get_dashboard({}) for _ in range(10)), return_exceptions=True
            )

        outcomes = asyncio.run(burst())

        assert all(isinstance(o, AllSourcesUnavailable) for o in outcomes)
        assert all(o is outcomes[0] for o in outcomes)
        assert calls(adapters) == [1, 1, 1]

    def test_partial_failure_is_cached_with_status(self, service, directory_adapter):
        directory_adapter.error = SourceUnavailable("directory", "offline")

        result = get(service)
        status = service.get_cache_status()

        assert result.metrics["unreplied_by_user"].status == SourceStatus.UNAVAILABLE
        (entry,) = status["entries"].values()
        assert entry["source_status"]["directory"] == "unavailable"


class TestInvalidation:
    def test_invalidate_empty_key_is_noop(self, service):
        assert service.invalidate("dashboard:missing") == 0
        assert service.invalidate() == 0

    def test_invalidate_then_get_recomputes(self, service, adapters):
        get(service)
        assert service.invalidate_query({}) == 1

        get(service)

        assert calls(adapters) == [2, 2, 2]

    def test_invalidate_all_ignores_boundary_state(self, service, adapters):
        get(service)
        get(service, {"report": "aging"})

        assert service.invalidate() == 2
        assert len(service.store) == 0

    def test_refresh_forces_new_computation(self, service, adapters):
        get(service)
        key = DashboardQuery().cache_key()
        before = service.store.get(key)

        asyncio.run(service.refresh({}))

        assert service.store.get(key) is not before
        assert calls(adapters) == [2, 2, 2]


class TestCacheStatus:
    def test_reports_entries_and_boundary(self, service, now):
        get(service)

        status = service.get_cache_status()

        assert status["boundary"] == {
            "hour": 7,
            "minute": 0,
            "next_invalidation": "2024-05-15T07:00:00",
        }
        assert status["in_flight"] == []
        (entry,) = status["entries"].values()
        assert entry["is_valid"] is True
        assert entry["invalidates_at"] == "2024-05-15T07:00:00"
        assert entry["age_minutes"] == 0

    def test_purge_stale_drops_rolled_over_entries(self, service, now):
        get(service)
        now.advance(days=1)

        assert service.get_cache_status()["entries"][DashboardQuery().cache_key()]["is_valid"] is False
        assert service.purge_stale() == [DashboardQuery().cache_key()]
        assert len(service.store) == 0
