from datetime import date

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

from inventrack.api import create_app
from inventrack.config import Settings
from inventrack.db_storage import DatabaseStorage
from inventrack.storage import MemStorage


def make_sqlite_storage():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    return DatabaseStorage.from_engine(engine, create_tables=True, owns_engine=True)


@pytest.fixture(params=["memory", "sqlite"])
def storage(request):
    store = MemStorage() if request.param == "memory" else make_sqlite_storage()
    yield store
    store.close()


@pytest.fixture
def asset_fields():
    def build(voucher_no="VCH-TEST-001", **overrides):
        fields = {
            "voucher_no": voucher_no,
            "date": date(2024, 5, 1),
            "donor": "Purchase - Lenovo",
            "current_location": "Head Office",
            "handover_person": "Alice",
        }
        fields.update(overrides)
        return fields
    return build


@pytest.fixture
def settings():
    return Settings(
        storage_backend="memory",
        secret_key="test-secret",
        seed_demo_data=True,
        log_level="WARNING",
    )


@pytest.fixture
def client(settings):
    app = create_app(settings)
    with TestClient(app) as test_client:
        yield test_client


def login(client, email, password):
    response = client.post("/api/auth/login", json={"email": email, "password": password})
    assert response.status_code == 200, response.text
    return {"Authorization": f"Bearer {response.json()['access_token']}"}


@pytest.fixture
def admin_headers(client):
    return login(client, "admin@inventory.com", "password123")


@pytest.fixture
def viewer_headers(client):
    return login(client, "viewer@inventory.com", "viewer123")


@pytest.fixture
def operator_headers(client):
    return login(client, "operator@inventory.com", "operator123")
