from dataclasses import dataclass, field
from typing import Any, Callable, Dict, FrozenSet, Iterable, List, Optional

from .models import DashboardQuery, SourceRecord
from .sources import DIRECTORY, ERP, OPERATIONAL

RecordsBySource = Dict[str, List[SourceRecord]]


@dataclass(frozen=True)
class MetricDefinition:
    name: str
    sources: FrozenSet[str]
    compute: Callable[[RecordsBySource, DashboardQuery], Any]
    reports: FrozenSet[str] = field(default_factory=frozenset)


def definitions_for(report: str, definitions: Iterable[MetricDefinition]) -> List[MetricDefinition]:
    if report == "overview":
        return list(definitions)
    return [definition for definition in definitions if report in definition.reports]


def _sum_counts(records: Iterable[SourceRecord], field_name: str) -> Dict[str, float]:
    totals: Dict[str, float] = {}
    for record in records:
        for category, count in (record.extra.get(field_name) or {}).items():
            totals[category] = totals.get(category, 0.0) + count
    return totals


def _by_email(records: Iterable[SourceRecord]) -> Dict[str, SourceRecord]:
    return {record.email: record for record in records if record.email}


def unreplied_total(records: RecordsBySource, query: DashboardQuery) -> float:
    return sum(r.extra.get("unreplied_24h", 0.0) for r in records[OPERATIONAL])


def unreplied_by_intent(records: RecordsBySource, query: DashboardQuery) -> Dict[str, float]:
    return _sum_counts(records[OPERATIONAL], "intents")


def aging_buckets(records: RecordsBySource, query: DashboardQuery) -> Dict[str, float]:
    return _sum_counts(records[OPERATIONAL], "aging_buckets")


def sentiment_average(records: RecordsBySource, query: DashboardQuery) -> Optional[float]:
    scores = [
        r.extra["sentiment_score"]
        for r in records[OPERATIONAL]
        if r.extra.get("sentiment_score") is not None
    ]
    if not scores:
        return None
    return round(sum(scores) / len(scores), 2)


def active_users(records: RecordsBySource, query: DashboardQuery) -> int:
    return sum(1 for r in records[OPERATIONAL] if r.is_active)


def customer_sales_total(records: RecordsBySource, query: DashboardQuery) -> Dict[str, float]:
    customers = records[ERP]
    return {
        "customers": len(customers),
        "total_quantity": sum(r.extra.get("total_quantity", 0.0) for r in customers),
        "total_value": sum(r.extra.get("total_value", 0.0) for r in customers),
    }


def customers_by_market(records: RecordsBySource, query: DashboardQuery) -> Dict[str, int]:
    counts: Dict[str, int] = {}
    for record in records[ERP]:
        market = record.extra.get("market") or "unknown"
        counts[market] = counts.get(market, 0) + 1
    return counts


def directory_accounts(records: RecordsBySource, query: DashboardQuery) -> int:
    return len(records[DIRECTORY])


def unreplied_by_user(records: RecordsBySource, query: DashboardQuery) -> List[Dict[str, Any]]:
    """Directory users joined to their mailbox statistics by email."""
    operational = _by_email(records[OPERATIONAL])
    rows = []
    for person in records[DIRECTORY]:
        stats = operational.get(person.email)
        if stats is None:
            continue
        buckets = stats.extra.get("aging_buckets") or {}
        rows.append(
            {
                "email": person.email,
                "display_name": person.display_name,
                "unreplied_24h": stats.extra.get("unreplied_24h", 0.0),
                "total_unreplied": stats.extra.get("total_unreplied", sum(buckets.values())),
                "aging_buckets": buckets,
            }
        )
    rows.sort(key=lambda row: (-row["unreplied_24h"], row["email"]))
    return rows


def customer_sentiment(records: RecordsBySource, query: DashboardQuery) -> List[Dict[str, Any]]:
    operational = _by_email(records[OPERATIONAL])
    rows = []
    for customer in records[ERP]:
        match = operational.get(customer.email)
        if match is None or match.extra.get("sentiment_score") is None:
            continue
        rows.append(
            {
                "customer_id": customer.id,
                "customer_name": customer.display_name,
                "email": customer.email,
                "sentiment_score": match.extra["sentiment_score"],
                "total_value": customer.extra.get("total_value", 0.0),
            }
        )
    rows.sort(key=lambda row: (-row["total_value"], row["customer_id"]))
    return rows


def onboarding_coverage(records: RecordsBySource, query: DashboardQuery) -> Dict[str, Any]:
    operational = _by_email(records[OPERATIONAL])
    people = [p for p in records[DIRECTORY] if p.email]
    onboarded = sum(
        1
        for person in people
        if person.email in operational
        and operational[person.email].extra.get("has_completed_onboarding")
    )
    return {
        "directory_users": len(people),
        "onboarded": onboarded,
        "ratio": round(onboarded / len(people), 4) if people else None,
    }


def default_metrics() -> List[MetricDefinition]:
    def metric(name, sources, compute, *reports) -> MetricDefinition:
        return MetricDefinition(name, frozenset(sources), compute, frozenset(reports))

    return [
        metric("unreplied_total", [OPERATIONAL], unreplied_total, "response"),
        metric("unreplied_by_intent", [OPERATIONAL], unreplied_by_intent, "response"),
        metric("aging_buckets", [OPERATIONAL], aging_buckets, "aging"),
        metric("sentiment_average", [OPERATIONAL], sentiment_average, "sentiment"),
        metric("active_users", [OPERATIONAL], active_users, "response"),
        metric("customer_sales_total", [ERP], customer_sales_total, "sales"),
        metric("customers_by_market", [ERP], customers_by_market, "sales"),
        metric("directory_accounts", [DIRECTORY], directory_accounts),
        metric(
            "unreplied_by_user", [DIRECTORY, OPERATIONAL], unreplied_by_user, "response", "aging"
        ),
        metric("customer_sentiment", [ERP, OPERATIONAL], customer_sentiment, "sentiment", "sales"),
        metric("onboarding_coverage", [DIRECTORY, OPERATIONAL], onboarding_coverage),
    ]
