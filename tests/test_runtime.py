import json
import logging

from fastapi.testclient import TestClient

from clinicos.config import settings
from clinicos.logging_config import setup_logging
from clinicos.main import app



def test_health_endpoints():
    client = TestClient(app)

    assert client.get("/ping").json() == {"ok": True}
    assert client.get("/health").json() == {"status": "ok"}

    ready = client.get("/health/ready")
    assert ready.status_code == 200
    payload = ready.json()
    assert payload["status"] == "ready"
    assert payload["checks"]["db"] == "ok"


def test_request_id_is_echoed():
    client = TestClient(app)

    generated = client.get("/health")
    assert generated.headers.get("X-Request-ID")

    echoed = client.get("/health", headers={"X-Request-ID": "req-123"})
    assert echoed.headers.get("X-Request-ID") == "req-123"


def test_openapi_lists_scheduling_routes():
    client = TestClient(app)
    paths = client.get("/openapi.json").json()["paths"]

    assert "/api/clinics/{clinic_id}/bookings" in paths
    assert "/api/clinics/{clinic_id}/shifts/draft" in paths
    assert "/api/clinics/{clinic_id}/shift-requests/bulk-approve" in paths
    assert "/api/platform/clinics" in paths


def test_startup_log_reports_scheduling_settings(caplog, monkeypatch):
    monkeypatch.setattr(settings, "CLINIC_DEFAULT_TIMEZONE", "Europe/Warsaw")
    caplog.set_level(logging.INFO)

    setup_logging()

    events = [json.loads(r.getMessage()) for r in caplog.records if r.name == "clinicos"]
    started = [e for e in events if e["event"] == "logging_initialized"]
    assert started
    assert started[-1]["default_timezone"] == "Europe/Warsaw"
    assert started[-1]["slot_guard"] == settings.BOOKING_SLOT_GUARD
    assert started[-1]["auto_assign"] == settings.AUTO_ASSIGN_POLICY
