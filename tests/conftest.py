"""
Shared fixtures for the dashboard engine test suite.

Backends are replaced by in-memory fake adapters, and time is injected through
a mutable clock so boundary behaviour is deterministic.
"""

import asyncio
import os
from datetime import datetime, timedelta
from typing import Any, List, Optional

# Settings are read at import time; keep retries instant and the seed small.
os.environ.setdefault("DASHBOARD_DIRECTORY_RETRY_BACKOFF_SECONDS", "0")
os.environ.setdefault("DASHBOARD_DIRECTORY_RETRY_BACKOFF_MAX_SECONDS", "0")
os.environ.setdefault("DASHBOARD_SOURCE_TIMEOUT_SECONDS", "2")
os.environ.setdefault("DASHBOARD_DEFAULT_SEED_RECORDS", "3")

import pytest

from dashboard_engine.aggregator import Aggregator
from dashboard_engine.boundary import BoundaryClock
from dashboard_engine.cache import CacheStore
from dashboard_engine.domains import InMemoryAllowList
from dashboard_engine.metrics import default_metrics
from dashboard_engine.models import SourceFetch, SourceRecord
from dashboard_engine.orchestrator import DashboardService
from dashboard_engine.singleflight import SingleFlight
from dashboard_engine.sources import DIRECTORY, ERP, OPERATIONAL


class MutableNow:
    """Callable clock the tests can move forward."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: Any) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class FakeAdapter:
    """Source adapter double with scripted records, errors and latency."""

    def __init__(
        self,
        name: str,
        records: Optional[List[SourceRecord]] = None,
        warnings: Optional[List[str]] = None,
    ):
        self.name = name
        self.records = records or []
        self.warnings = warnings or []
        self.error: Optional[Exception] = None
        self.delay = 0.0
        self.calls = 0

    async def fetch(self, query):
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return SourceFetch(records=list(self.records), warnings=list(self.warnings))


def make_record(source: str, email: str, record_id: Optional[str] = None, **extra: Any) -> SourceRecord:
    return SourceRecord(
        id=record_id or f"{source}-{email}",
        source=source,
        email=email,
        display_name=email.split("@")[0].title(),
        is_active=extra.pop("is_active", True),
        extra=extra,
    )


@pytest.fixture
def now():
    return MutableNow(datetime(2024, 5, 14, 9, 30))


@pytest.fixture
def clock(now):
    return BoundaryClock(7, 0, now_fn=now)


@pytest.fixture
def allow_list():
    return InMemoryAllowList(["example.com", "partner.org"])


@pytest.fixture
def directory_adapter():
    return FakeAdapter(
        DIRECTORY,
        [
            make_record(DIRECTORY, "alice@example.com"),
            make_record(DIRECTORY, "bob@example.com"),
            make_record(DIRECTORY, "mallory@blocked.net"),
        ],
    )


@pytest.fixture
def erp_adapter():
    return FakeAdapter(
        ERP,
        [
            make_record(ERP, "alice@example.com", "C0D1001", market="domestic", total_value=1200.0, total_quantity=10.0),
            make_record(ERP, "carol@partner.org", "C0E2002", market="export", total_value=800.0, total_quantity=4.0),
        ],
    )


@pytest.fixture
def operational_adapter():
    return FakeAdapter(
        OPERATIONAL,
        [
            make_record(
                OPERATIONAL,
                "alice@example.com",
                unreplied_24h=5.0,
                intents={"Inquiry": 3.0, "Complaint": 2.0},
                aging_buckets={"24h_to_48h": 2.0, "above_168h": 1.0},
                sentiment_score=4.0,
                has_completed_onboarding=True,
            ),
            make_record(
                OPERATIONAL,
                "bob@example.com",
                unreplied_24h=2.0,
                intents={"Inquiry": 1.0},
                aging_buckets={"24h_to_48h": 1.0},
                sentiment_score=2.0,
                has_completed_onboarding=False,
                is_active=False,
            ),
        ],
    )


@pytest.fixture
def adapters(directory_adapter, erp_adapter, operational_adapter):
    return [directory_adapter, erp_adapter, operational_adapter]


@pytest.fixture
def aggregator(adapters, allow_list, now):
    return Aggregator(adapters, default_metrics(), allow_list=allow_list, timeout_seconds=1.0, now_fn=now)


@pytest.fixture
def service(aggregator, clock):
    return DashboardService(CacheStore(), SingleFlight(), aggregator, clock)
