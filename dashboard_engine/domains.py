import re
import threading
from datetime import datetime
from typing import TYPE_CHECKING, Dict, Iterable, List, Optional, Protocol

from pydantic import BaseModel

if TYPE_CHECKING:
    from .models import SourceRecord

_DOMAIN_RE = re.compile(r"^([a-z0-9]+(-[a-z0-9]+)*\.)+[a-z]{2,}$", re.IGNORECASE)


def normalize_domain(value: str) -> str:
    value = value.strip().lower()
    if value.startswith("www."):
        value = value[len("www."):]
    return value


def domain_of(email: Optional[str]) -> Optional[str]:
    if not email or "@" not in email:
        return None
    domain = normalize_domain(email.rsplit("@", 1)[1])
    return domain or None


def is_valid_domain(value: str) -> bool:
    return bool(_DOMAIN_RE.match(normalize_domain(value)))


class AllowListValidator(Protocol):
    def is_allowed(self, domain: str) -> bool:
        ...


class AllowedDomain(BaseModel):
    domain: str
    database: Optional[str] = None
    created_by: Optional[str] = None
    created_at: datetime
    updated_at: datetime


class InMemoryAllowList:
    """Allow-listed email domains, each optionally mapped to an ERP schema."""

    def __init__(self, domains: Iterable[str] = ()):
        self._lock = threading.Lock()
        self._domains: Dict[str, AllowedDomain] = {}
        for domain in domains:
            self.add(domain)

    def add(
        self,
        domain: str,
        database: Optional[str] = None,
        created_by: Optional[str] = None,
    ) -> AllowedDomain:
        normalized = normalize_domain(domain)
        if not is_valid_domain(normalized):
            raise ValueError(f"Invalid domain format: '{domain}'")
        now = datetime.now()
        record = AllowedDomain(
            domain=normalized,
            database=(database or "").strip() or None,
            created_by=created_by,
            created_at=now,
            updated_at=now,
        )
        with self._lock:
            if normalized in self._domains:
                raise ValueError(f"Domain {normalized} already exists")
            self._domains[normalized] = record
        return record

    def update(self, domain: str, database: Optional[str]) -> Optional[AllowedDomain]:
        normalized = normalize_domain(domain)
        with self._lock:
            current = self._domains.get(normalized)
            if current is None:
                return None
            updated = current.model_copy(
                update={
                    "database": (database or "").strip() or None,
                    "updated_at": datetime.now(),
                }
            )
            self._domains[normalized] = updated
            return updated

    def remove(self, domain: str) -> bool:
        with self._lock:
            return self._domains.pop(normalize_domain(domain), None) is not None

    def list(self) -> List[AllowedDomain]:
        with self._lock:
            return sorted(self._domains.values(), key=lambda d: d.domain)

    def is_allowed(self, domain: str) -> bool:
        with self._lock:
            return normalize_domain(domain) in self._domains

    def is_email_allowed(self, email: str) -> bool:
        domain = domain_of(email)
        return domain is not None and self.is_allowed(domain)

    def schema_for(self, domain: Optional[str]) -> Optional[str]:
        if not domain:
            return None
        with self._lock:
            record = self._domains.get(normalize_domain(domain))
        return record.database if record else None

    def schemas_for(self, domain: Optional[str] = None) -> List[str]:
        """ERP schemas in scope: the domain's own schema, or every configured one."""
        if domain:
            schema = self.schema_for(domain)
            return [schema] if schema else []
        with self._lock:
            return sorted({d.database for d in self._domains.values() if d.database})


def filter_in_scope(
    records: Iterable["SourceRecord"],
    validator: Optional[AllowListValidator],
    domain: Optional[str] = None,
) -> List["SourceRecord"]:
    """Keep records whose email domain is allow-listed and, if given, matches ``domain``.

    Records without an email are kept only when there is nothing to check them against.
    """
    wanted = normalize_domain(domain) if domain else None
    kept = []
    for record in records:
        record_domain = domain_of(record.email)
        if record_domain is None:
            if wanted is None and validator is None:
                kept.append(record)
            continue
        if wanted is not None and record_domain != wanted:
            continue
        if validator is not None and not validator.is_allowed(record_domain):
            continue
        kept.append(record)
    return kept
