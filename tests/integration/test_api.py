"""
HTTP-level tests against the demo service wired to the simulated backends.
"""

import pytest
from fastapi.testclient import TestClient

from dashboard_engine import main
from dashboard_engine.main import app

client = TestClient(app)


@pytest.fixture(autouse=True)
def reset_state():
    main.service.invalidate()
    for name in main.sources.sources:
        main.sources.set_available(name, True)
    yield
    main.service.invalidate()
    for name in main.sources.sources:
        main.sources.set_available(name, True)


def test_health():
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


def test_dashboard_is_computed_once_then_cached():
    before = main.sources.erp.calls

    first = client.get("/dashboard", params={"report": "sales"})
    second = client.get("/dashboard", params={"report": "sales"})

    assert first.status_code == 200
    assert first.json() == second.json()
    assert main.sources.erp.calls == before + 1
    data = first.json()["data"]
    assert data["source_status"] == {"directory": "ok", "erp": "ok", "operational": "ok"}
    assert data["metrics"]["customer_sales_total"]["value"]["customers"] > 0
    assert "X-Request-ID" in first.headers


def test_directory_outage_returns_degraded_dashboard():
    client.post("/sources/directory/availability", json={"available": False})

    response = client.get("/dashboard")

    assert response.status_code == 200
    data = response.json()["data"]
    assert data["source_status"]["directory"] == "unavailable"
    assert data["metrics"]["unreplied_by_user"]["status"] == "unavailable"
    assert data["metrics"]["unreplied_total"]["status"] == "ok"


def test_total_outage_is_503_and_not_cached():
    for name in ("directory", "erp", "operational"):
        client.post(f"/sources/{name}/availability", json={"available": False})

    response = client.get("/dashboard")

    assert response.status_code == 503
    assert set(response.json()["sources"]) == {"directory", "erp", "operational"}
    assert client.get("/dashboard/cache").json()["entries"] == {}


def test_invalid_query_is_400():
    response = client.get("/dashboard", params={"period": "forever"})
    assert response.status_code == 400


def test_cache_status_and_refresh():
    client.get("/dashboard", params={"report": "aging"})
    status = client.get("/dashboard/cache").json()

    assert status["boundary"]["hour"] == main.settings.boundary_hour
    assert len(status["entries"]) == 1
    (entry,) = status["entries"].values()
    assert entry["report"] == "aging"
    assert entry["is_valid"] is True

    cleared = client.post("/dashboard/refresh")
    assert cleared.json() == {"status": "invalidated", "entries_cleared": 1}

    refreshed = client.post("/dashboard/refresh", json={"query": {"report": "aging"}})
    assert refreshed.json()["status"] == "refreshed"
    assert len(client.get("/dashboard/cache").json()["entries"]) == 1


def test_seed_unknown_source_is_404():
    response = client.post("/sources/crm/seed", json={"payload": {"email": "x@example.com"}})
    assert response.status_code == 404


def test_source_stats_reports_status_per_cached_key():
    client.post("/sources/erp/availability", json={"available": False})
    client.get("/dashboard")
    stats = client.get("/sources/stats").json()

    assert set(stats["sources"]) == {"directory", "erp", "operational"}
    (report,) = stats["cached"].values()
    assert report["source_status"] == {"directory": "ok", "erp": "unavailable", "operational": "ok"}
    assert report["source_errors"]["erp"].startswith("SourceUnavailable")


def test_domain_management_invalidates_cache():
    client.get("/dashboard")
    assert len(client.get("/dashboard/cache").json()["entries"]) == 1

    created = client.post("/domains", json={"domain": "WWW.Partner.org", "database": "PARTNER"})
    assert created.status_code == 201
    assert created.json()["domain"]["domain"] == "partner.org"
    assert client.get("/dashboard/cache").json()["entries"] == {}

    duplicate = client.post("/domains", json={"domain": "partner.org"})
    assert duplicate.status_code == 400
    invalid = client.post("/domains", json={"domain": "not a domain"})
    assert invalid.status_code == 400

    domains = [d["domain"] for d in client.get("/domains").json()["domains"]]
    assert "partner.org" in domains

    assert client.delete("/domains/partner.org").status_code == 200
    assert client.delete("/domains/partner.org").status_code == 404
