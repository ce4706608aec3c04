from typing import Dict


class DashboardError(Exception):
    """Base class for errors raised by the aggregation engine."""


class SourceError(DashboardError):
    def __init__(self, source: str, message: str):
        super().__init__(f"{source}: {message}")
        self.source = source
        self.reason = message


class SourceUnavailable(SourceError):
    """A backend could not be reached or returned an error."""


class SourceTimeout(SourceError):
    """A backend did not answer within its fetch deadline."""


class AllSourcesUnavailable(DashboardError):
    """Every backend failed, so there is nothing to merge."""

    def __init__(self, failures: Dict[str, str]):
        detail = ", ".join(f"{name}={reason}" for name, reason in sorted(failures.items()))
        super().__init__(f"All sources unavailable ({detail})")
        self.failures = dict(failures)


class InvalidQuery(DashboardError, ValueError):
    """The caller asked for a report that cannot be built."""


class StaleEntryIgnored(DashboardError):
    """A cached entry crossed the reporting boundary and was dropped."""

    def __init__(self, key: str):
        super().__init__(f"Stale cache entry ignored for '{key}'")
        self.key = key
