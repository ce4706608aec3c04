import asyncio
import threading
from datetime import date, datetime, timedelta, timezone
from functools import partial
from typing import Any, Callable, Dict, Iterable, List, Optional, Protocol, Tuple

from pydantic import BaseModel
from tenacity import Retrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from .domains import domain_of
from .errors import SourceError, SourceTimeout, SourceUnavailable
from .logging_config import get_logger
from .models import DashboardQuery, SourceFetch, SourceRecord

logger = get_logger(__name__)

DIRECTORY = "directory"
ERP = "erp"
OPERATIONAL = "operational"


class SourceAdapter(Protocol):
    name: str

    async def fetch(self, query: DashboardQuery) -> SourceFetch:
        ...


def _scalar(value: Any) -> Any:
    if isinstance(value, (list, tuple)):
        return value[0] if value else None
    return value


def first_present(attrs: Dict[str, Any], *names: str) -> Any:
    """Return the first attribute among ``names`` that is set and non-empty."""
    for name in names:
        value = _scalar(attrs.get(name))
        if value is None:
            continue
        if isinstance(value, str) and not value.strip():
            continue
        return value
    return None


def normalize_email(value: Any) -> Optional[str]:
    if not isinstance(value, str):
        return None
    value = value.strip().lower()
    return value if "@" in value else None


def parse_timestamp(value: Any) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day)
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value, tz=timezone.utc)
    return datetime.fromisoformat(str(value).replace("Z", "+00:00"))


def to_number(value: Any) -> float:
    if isinstance(value, bool):
        raise ValueError(f"not a number: {value!r}")
    if isinstance(value, (int, float)):
        return float(value)
    return float(str(value).replace(",", "").strip())


def _truthy(value: Any) -> bool:
    value = _scalar(value)
    if isinstance(value, str):
        return value.strip().lower() in {"true", "1", "yes", "y"}
    return bool(value)


def fiscal_year_window(today: date, period: str) -> Tuple[date, date]:
    """Return the ``[start, end)`` date window for a reporting period.

    Fiscal years run April to March.
    """
    if period == "last_week":
        return today - timedelta(days=7), today + timedelta(days=1)
    if period == "last_month":
        return today - timedelta(days=30), today + timedelta(days=1)
    if period == "past_3_months":
        return today - timedelta(days=90), today + timedelta(days=1)
    start_year = today.year if today.month >= 4 else today.year - 1
    if period == "last_fiscal_year":
        start_year -= 1
    return date(start_year, 4, 1), date(start_year + 1, 4, 1)


class BaseSourceAdapter:
    """Runs a blocking backend call in a worker thread with bounded concurrency.

    ``max_concurrency=1`` serializes calls for clients that are not safe to
    share between threads. The slot is taken inside the worker thread, so it
    is held until the backend call returns even if the awaiting caller timed
    out, and it does not depend on which event loop the caller runs on.
    """

    name = "source"

    def __init__(self, max_concurrency: int = 1):
        self._slots = threading.BoundedSemaphore(max(1, max_concurrency))

    async def fetch(self, query: DashboardQuery) -> SourceFetch:
        abandoned = threading.Event()
        call = asyncio.get_running_loop().run_in_executor(
            None, partial(self._run_in_slot, query, abandoned)
        )
        try:
            return await call
        except asyncio.CancelledError:
            abandoned.set()
            raise
        except SourceError:
            raise
        except TimeoutError as exc:
            raise SourceTimeout(self.name, str(exc) or "backend timed out") from exc
        except Exception as exc:
            raise SourceUnavailable(self.name, str(exc) or type(exc).__name__) from exc

    def _run_in_slot(self, query: DashboardQuery, abandoned: threading.Event) -> SourceFetch:
        with self._slots:
            if abandoned.is_set():
                return SourceFetch()
            return self._fetch_blocking(query)

    def _fetch_blocking(self, query: DashboardQuery) -> SourceFetch:
        raise NotImplementedError


class DirectoryClient(Protocol):
    def bind(self) -> None:
        ...

    def search(self, base_dn: str, filter_expr: str) -> List[Dict[str, Any]]:
        ...

    def unbind(self) -> None:
        ...


def is_machine_account(attrs: Dict[str, Any]) -> bool:
    if _truthy(attrs.get("isComputerAccount")):
        return True
    for name in ("userPrincipalName", "sAMAccountName", "identity"):
        value = _scalar(attrs.get(name))
        if isinstance(value, str) and value.endswith("$"):
            return True
    return False


class DirectoryAdapter(BaseSourceAdapter):
    name = DIRECTORY

    def __init__(
        self,
        client: DirectoryClient,
        base_dn: str,
        filter_expr: str = "(objectClass=user)",
        retry_attempts: int = 3,
        retry_backoff_seconds: float = 1.0,
        retry_backoff_max_seconds: float = 10.0,
    ):
        # directory connections are bound per call and are not shared
        super().__init__(max_concurrency=1)
        self.client = client
        self.base_dn = base_dn
        self.filter_expr = filter_expr
        self.retry_attempts = max(1, retry_attempts)
        self.retry_backoff_seconds = retry_backoff_seconds
        self.retry_backoff_max_seconds = retry_backoff_max_seconds

    def _bind(self) -> None:
        retrying = Retrying(
            retry=retry_if_exception_type(Exception),
            stop=stop_after_attempt(self.retry_attempts),
            wait=wait_exponential(
                multiplier=self.retry_backoff_seconds,
                max=self.retry_backoff_max_seconds,
            ),
            reraise=True,
            before_sleep=_log_bind_retry,
        )
        for attempt in retrying:
            with attempt:
                self.client.bind()

    def _fetch_blocking(self, query: DashboardQuery) -> SourceFetch:
        self._bind()
        try:
            entries = self.client.search(self.base_dn, self.filter_expr)
        finally:
            try:
                self.client.unbind()
            except Exception as exc:
                logger.warning("directory_unbind_failed", error=str(exc))
        return normalize_directory_entries(entries)


def _log_bind_retry(retry_state: Any) -> None:
    logger.warning(
        "directory_bind_retry",
        attempt=retry_state.attempt_number,
        error=str(retry_state.outcome.exception()),
    )


def normalize_directory_entries(entries: Iterable[Dict[str, Any]]) -> SourceFetch:
    records: List[SourceRecord] = []
    warnings: List[str] = []
    skipped_machines = 0
    for attrs in entries:
        if is_machine_account(attrs):
            skipped_machines += 1
            continue
        identity = first_present(attrs, "identity", "sAMAccountName")
        if identity is None:
            warnings.append(
                f"directory entry without identity skipped: {attrs.get('distinguishedName', '?')}"
            )
            continue
        email = normalize_email(first_present(attrs, "primaryEmail", "mail", "userPrincipalName"))
        records.append(
            SourceRecord(
                id=str(identity),
                source=DIRECTORY,
                email=email,
                display_name=first_present(attrs, "displayName", "cn") or str(identity),
                extra={
                    "identity": str(identity),
                    "distinguished_name": first_present(attrs, "distinguishedName"),
                    "domain": domain_of(email),
                },
            )
        )
    if skipped_machines:
        logger.debug("directory_machine_accounts_skipped", count=skipped_machines)
    return SourceFetch(records=records, warnings=warnings)


class ErpReportSpec(BaseModel):
    schema_name: str
    report: str
    period_start: date
    period_end: date
    business_type: Optional[str] = None


class ErpClient(Protocol):
    def query(self, report_spec: ErpReportSpec) -> List[Dict[str, Any]]:
        ...


class ErpAdapter(BaseSourceAdapter):
    """Customer sales rows, one report query per configured ERP schema."""

    name = ERP

    def __init__(
        self,
        client: ErpClient,
        schema_lookup: Callable[[Optional[str]], List[str]],
        today_fn: Callable[[], date] = date.today,
        max_concurrency: int = 4,
    ):
        super().__init__(max_concurrency=max_concurrency)
        self.client = client
        self.schema_lookup = schema_lookup
        self.today_fn = today_fn

    def report_specs(self, query: DashboardQuery) -> List[ErpReportSpec]:
        start, end = fiscal_year_window(self.today_fn(), query.period)
        return [
            ErpReportSpec(
                schema_name=schema,
                report=query.report,
                period_start=start,
                period_end=end,
                business_type=query.business_type,
            )
            for schema in self.schema_lookup(query.domain)
        ]

    def _fetch_blocking(self, query: DashboardQuery) -> SourceFetch:
        specs = self.report_specs(query)
        if not specs:
            logger.info("erp_no_schema_configured", domain=query.domain)
            return SourceFetch()
        fetch = SourceFetch()
        for spec in specs:
            rows = self.client.query(spec)
            part = normalize_erp_rows(rows, spec.schema_name, query.business_type)
            fetch.records.extend(part.records)
            fetch.warnings.extend(part.warnings)
        return fetch


def _market(row: Dict[str, Any]) -> Optional[str]:
    market = first_present(row, "Domestic/Export", "market")
    if isinstance(market, str):
        return market.strip().lower()
    code = first_present(row, "CardCode")
    if isinstance(code, str) and len(code) > 2:
        return {"D": "domestic", "E": "export"}.get(code[2].upper())
    return None


def normalize_erp_rows(
    rows: Iterable[Dict[str, Any]],
    schema_name: str,
    business_type: Optional[str] = None,
) -> SourceFetch:
    records: List[SourceRecord] = []
    warnings: List[str] = []
    for row in rows:
        record_id = first_present(row, "recordId", "CardCode")
        if record_id is None:
            warnings.append(f"ERP row without record id skipped in {schema_name}")
            continue
        market = _market(row)
        if business_type and market != business_type:
            continue
        extra: Dict[str, Any] = {
            "schema": schema_name,
            "market": market,
            "role": first_present(row, "role"),
            "department": first_present(row, "department"),
        }
        for field, names in (
            ("total_quantity", ("Total Quantity", "totalQuantity")),
            ("total_value", ("Total Value", "totalValue")),
        ):
            raw = first_present(row, *names)
            if raw is None:
                continue
            try:
                extra[field] = to_number(raw)
            except ValueError:
                warnings.append(f"ERP record {record_id}: unparseable {field} {raw!r}")
        records.append(
            SourceRecord(
                id=str(record_id),
                source=ERP,
                email=normalize_email(first_present(row, "email", "Email")),
                display_name=first_present(row, "fullName", "CardName"),
                status=first_present(row, "status"),
                extra=extra,
            )
        )
    return SourceFetch(records=records, warnings=warnings)


class OperationalStore(Protocol):
    def find(self, filter: Dict[str, Any]) -> List[Dict[str, Any]]:
        ...


class OperationalStoreAdapter(BaseSourceAdapter):
    name = OPERATIONAL

    def __init__(self, store: OperationalStore, max_concurrency: int = 4):
        super().__init__(max_concurrency=max_concurrency)
        self.store = store

    @staticmethod
    def build_filter(query: DashboardQuery) -> Dict[str, Any]:
        filter: Dict[str, Any] = {}
        if query.domain:
            filter["domain"] = query.domain
        if query.user_scope:
            filter["email"] = query.user_scope
        return filter

    def _fetch_blocking(self, query: DashboardQuery) -> SourceFetch:
        return normalize_operational_rows(self.store.find(self.build_filter(query)))


def _counts(items: Any) -> Dict[str, float]:
    counts: Dict[str, float] = {}
    for item in items or []:
        category = item.get("category")
        if category is None:
            continue
        counts[str(category)] = counts.get(str(category), 0.0) + to_number(item.get("count") or 0)
    return counts


def normalize_operational_rows(rows: Iterable[Dict[str, Any]]) -> SourceFetch:
    records: List[SourceRecord] = []
    warnings: List[str] = []
    for row in rows:
        email = normalize_email(first_present(row, "email", "user_email"))
        record_id = first_present(row, "user_id", "_id") or email
        if record_id is None:
            warnings.append("operational row without id or email skipped")
            continue
        extra: Dict[str, Any] = {
            "role": first_present(row, "role"),
            "has_completed_onboarding": _truthy(row.get("hasCompletedOnboarding")),
        }
        for field, name in (
            ("unreplied_24h", "totalUnreplied24h"),
            ("total_unreplied", "total_unreplied"),
            ("sentiment_score", "average_sentiment_score"),
        ):
            raw = row.get(name)
            if raw is None:
                continue
            try:
                extra[field] = to_number(raw)
            except ValueError:
                warnings.append(f"operational record {record_id}: unparseable {name} {raw!r}")
        for field, name in (("intents", "Intent"), ("aging_buckets", "count_by_bucket")):
            if row.get(name) is None:
                continue
            try:
                extra[field] = _counts(row.get(name))
            except (AttributeError, ValueError):
                warnings.append(f"operational record {record_id}: malformed {name}")
        try:
            last_login = parse_timestamp(row.get("lastLogin"))
        except (TypeError, ValueError):
            last_login = None
            warnings.append(f"operational record {record_id}: unparseable lastLogin")
        records.append(
            SourceRecord(
                id=str(record_id),
                source=OPERATIONAL,
                email=email,
                display_name=first_present(row, "full_name", "displayName"),
                updated_at=last_login,
                is_active=_truthy(row["isActive"]) if "isActive" in row else None,
                status=first_present(row, "status"),
                extra=extra,
            )
        )
    return SourceFetch(records=records, warnings=warnings)
