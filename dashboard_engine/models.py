import hashlib
import json
from datetime import datetime
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .domains import normalize_domain
from .errors import InvalidQuery

ReportName = Literal["overview", "response", "aging", "sentiment", "sales"]
PeriodName = Literal[
    "last_week",
    "last_month",
    "past_3_months",
    "current_fiscal_year",
    "last_fiscal_year",
]


class SourceStatus(str, Enum):
    OK = "ok"
    DEGRADED = "degraded"
    UNAVAILABLE = "unavailable"


class DashboardQuery(BaseModel):
    """Report parameters a dashboard request is cached under."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    report: ReportName = "overview"
    domain: Optional[str] = None
    business_type: Optional[Literal["domestic", "export"]] = None
    period: PeriodName = "current_fiscal_year"
    user_scope: Optional[str] = None

    @field_validator("report", "period", "business_type", mode="before")
    @classmethod
    def _lower(cls, value: Any) -> Any:
        if isinstance(value, str):
            value = value.strip().lower()
            return value or None
        return value

    @field_validator("domain", mode="before")
    @classmethod
    def _normalize_domain(cls, value: Any) -> Any:
        if value is None:
            return None
        if not isinstance(value, str):
            raise ValueError("domain must be a string")
        return normalize_domain(value) or None

    @field_validator("user_scope", mode="before")
    @classmethod
    def _normalize_user(cls, value: Any) -> Any:
        if value is None:
            return None
        if not isinstance(value, str):
            raise ValueError("user_scope must be an email address")
        value = value.strip().lower()
        if not value:
            return None
        if "@" not in value:
            raise ValueError("user_scope must be an email address")
        return value

    @classmethod
    def parse(cls, data: Any) -> "DashboardQuery":
        if isinstance(data, cls):
            return data
        if data is None:
            data = {}
        if not isinstance(data, dict):
            raise InvalidQuery("Dashboard query must be a mapping of report parameters")
        try:
            return cls.model_validate(data)
        except ValidationError as exc:
            raise InvalidQuery(str(exc)) from exc

    def cache_key(self) -> str:
        canonical = json.dumps(self.model_dump(mode="json"), sort_keys=True)
        digest = hashlib.md5(canonical.encode("utf-8")).hexdigest()
        return f"dashboard:{self.report}:{digest}"


class SourceRecord(BaseModel):
    """Normalized record from one backend."""

    id: str
    source: str
    email: Optional[str] = None
    display_name: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    status: Optional[str] = None
    is_active: Optional[bool] = None
    extra: Dict[str, Any] = Field(default_factory=dict)


class SourceFetch(BaseModel):
    records: List[SourceRecord] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)


class SourceOutcome(BaseModel):
    source: str
    status: SourceStatus
    records: List[SourceRecord] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)
    error: Optional[str] = None
    duration_ms: float = 0.0


class MetricValue(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    status: SourceStatus
    value: Any = None
    sources: FrozenSet[str] = frozenset()
    fallback_value: Any = None
    fallback_computed_at: Optional[datetime] = None
    detail: Optional[str] = None


class DashboardResult(BaseModel):
    """Merged metric set handed back to callers."""

    model_config = ConfigDict(frozen=True)

    query: DashboardQuery
    metrics: Dict[str, MetricValue]
    source_status: Dict[str, SourceStatus]
    source_errors: Dict[str, str] = Field(default_factory=dict)
    computed_at: datetime


class CacheEntry(BaseModel):
    model_config = ConfigDict(frozen=True)

    key: str
    value: DashboardResult
    computed_at: datetime
    source_status: Dict[str, SourceStatus]
