import pytest
from fastapi.testclient import TestClient

from grantkeeper.dependencies import assemble_services, set_services
from grantkeeper.main import app
from grantkeeper.settings import settings


@pytest.fixture(autouse=True)
def clear_overrides():
    """Automatically clear FastAPI dependency overrides before each test."""
    app.dependency_overrides = {}
    yield
    app.dependency_overrides = {}


@pytest.fixture
def services(store, audit, provisioner, clock, secret_hasher):
    """In-memory service graph with the fake provisioner and a manual clock."""
    services = assemble_services(
        store, audit, provisioner,
        validity_days=30,
        admin_validity_days=365,
        max_connections=3,
        clock=clock,
        secret_hasher=secret_hasher,
    )
    set_services(services)
    yield services
    set_services(None)


@pytest.fixture
def client(services, monkeypatch):
    monkeypatch.setattr(settings, "admin_requester_id", None)
    monkeypatch.setattr(settings, "status_log_path", None)
    monkeypatch.setattr(settings, "run_migrations", False)
    with TestClient(app) as client:
        yield client


@pytest.fixture
def admin_headers():
    return {"X-Admin-Token": settings.admin_api_token, "X-Admin-Actor": "ops"}
