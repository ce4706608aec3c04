import random
import string
import threading
import time
import uuid
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional

from .sources import DIRECTORY, ERP, OPERATIONAL, ErpReportSpec

INTENTS = ["Inquiry", "Request", "Complaint", "Feedback", "Other"]
AGING_BUCKETS = ["24h_to_48h", "48h_to_72h", "72h_to_168h", "above_168h"]


def _random_word(length: int = 6) -> str:
    return "".join(random.choices(string.ascii_lowercase, k=length))


class MockBackend:
    """In-memory stand-in for an upstream system, with failure injection."""

    def __init__(self, name: str):
        self.name = name
        self.fail: Optional[Exception] = None
        self.latency: float = 0.0
        self.calls = 0
        self._lock = threading.Lock()
        self._rows: List[Dict[str, Any]] = []

    def add(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        row = dict(payload)
        with self._lock:
            self._rows.append(row)
        return row

    def rows(self) -> List[Dict[str, Any]]:
        with self._lock:
            return [dict(row) for row in self._rows]

    def _call(self) -> None:
        with self._lock:
            self.calls += 1
        if self.latency:
            time.sleep(self.latency)
        if self.fail is not None:
            raise self.fail

    def __len__(self) -> int:
        with self._lock:
            return len(self._rows)


class MockDirectory(MockBackend):
    def __init__(self) -> None:
        super().__init__(DIRECTORY)
        self.failing_binds = 0
        self.bound = False

    def bind(self) -> None:
        if self.failing_binds > 0:
            self.failing_binds -= 1
            raise ConnectionError("directory bind refused")
        self.bound = True

    def search(self, base_dn: str, filter_expr: str) -> List[Dict[str, Any]]:
        if not self.bound:
            raise ConnectionError("search before bind")
        self._call()
        return self.rows()

    def unbind(self) -> None:
        self.bound = False


class MockErp(MockBackend):
    def __init__(self) -> None:
        super().__init__(ERP)

    def query(self, report_spec: ErpReportSpec) -> List[Dict[str, Any]]:
        self._call()
        return [
            {k: v for k, v in row.items() if k != "schema"}
            for row in self.rows()
            if row.get("schema") == report_spec.schema_name
        ]


class MockOperationalStore(MockBackend):
    def __init__(self) -> None:
        super().__init__(OPERATIONAL)

    def find(self, filter: Dict[str, Any]) -> List[Dict[str, Any]]:
        self._call()
        rows = self.rows()
        if filter.get("domain"):
            suffix = "@" + filter["domain"]
            rows = [r for r in rows if str(r.get("email", "")).lower().endswith(suffix)]
        if filter.get("email"):
            rows = [r for r in rows if str(r.get("email", "")).lower() == filter["email"]]
        return rows


class SourceRegistry:
    """The three simulated backends the demo service reads from."""

    def __init__(self, domains: Iterable[str], seed_records: int, schema: str = "DEMO"):
        self.directory = MockDirectory()
        self.erp = MockErp()
        self.operational = MockOperationalStore()
        self.sources: Dict[str, MockBackend] = {
            DIRECTORY: self.directory,
            ERP: self.erp,
            OPERATIONAL: self.operational,
        }
        for domain in domains:
            for _ in range(seed_records):
                self.seed_person(domain, schema)
        self.directory.add(
            {"sAMAccountName": "BUILD01$", "userPrincipalName": "BUILD01$", "cn": "BUILD01"}
        )

    def seed_person(self, domain: str, schema: str) -> str:
        name = _random_word()
        email = f"{name}@{domain}"
        self.directory.add(
            {
                "sAMAccountName": name,
                "displayName": name.title(),
                "mail": email,
                "userPrincipalName": email,
                "distinguishedName": f"cn={name},ou=users,dc={domain.split('.')[0]},dc=com",
            }
        )
        self.operational.add(
            {
                "user_id": str(uuid.uuid4()),
                "email": email,
                "full_name": name.title(),
                "isActive": random.random() > 0.2,
                "role": random.choice(["user", "manager"]),
                "lastLogin": (datetime.now() - timedelta(hours=random.randint(0, 96))).isoformat(),
                "hasCompletedOnboarding": random.random() > 0.3,
                "totalUnreplied24h": random.randint(0, 20),
                "Intent": [{"category": c, "count": random.randint(0, 5)} for c in INTENTS],
                "count_by_bucket": [
                    {"category": b, "count": random.randint(0, 8)} for b in AGING_BUCKETS
                ],
                "average_sentiment_score": round(random.uniform(1, 5), 2),
            }
        )
        market = random.choice(["D", "E"])
        self.erp.add(
            {
                "schema": schema,
                "CardCode": f"C0{market}{random.randint(1000, 9999)}",
                "CardName": f"{name.title()} Trading",
                "Domestic/Export": "Domestic" if market == "D" else "Export",
                "Email": email,
                "Total Quantity": random.randint(1, 500),
                "Total Value": round(random.uniform(100, 50000), 2),
            }
        )
        return email

    def add_to_source(self, source: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        if source not in self.sources:
            raise KeyError(f"Unknown source '{source}'")
        return self.sources[source].add(payload)

    def set_available(self, source: str, available: bool) -> None:
        if source not in self.sources:
            raise KeyError(f"Unknown source '{source}'")
        self.sources[source].fail = None if available else ConnectionError(f"{source} offline")

    def stats(self) -> Dict[str, int]:
        return {name: len(src) for name, src in self.sources.items()}
