from datetime import date

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, event

from conftest import login
from inventrack.api import create_app
from inventrack.auth import hash_password
from inventrack.config import Settings
from inventrack.db_storage import DatabaseStorage

ASSET = {
    "voucher_no": "VCH-API-001",
    "date": "2024-02-10",
    "donor": "Purchase - HP",
    "current_location": "Store Room",
    "handover_person": "Dan",
}


def create_asset(client, headers, **overrides):
    response = client.post("/api/assets", json={**ASSET, **overrides}, headers=headers)
    assert response.status_code == 201, response.text
    return response.json()


# ---- auth ----

def test_login_me_logout(client):
    headers = login(client, "manager@inventory.com", "manager123")

    me = client.get("/api/auth/me", headers=headers)
    assert me.status_code == 200
    assert me.json()["user"]["role"] == "manager"
    assert "password" not in me.json()["user"]
    assert me.json()["user"]["last_login"] is not None

    assert client.post("/api/auth/logout", headers=headers).status_code == 200
    assert client.get("/api/auth/me", headers=headers).status_code == 401


def test_login_accepts_username(client):
    response = client.post("/api/auth/login", json={"email": "operator", "password": "operator123"})
    assert response.status_code == 200
    assert response.json()["token_type"] == "bearer"


def test_login_rejects_bad_password(client):
    response = client.post("/api/auth/login", json={"email": "admin@inventory.com", "password": "nope"})
    assert response.status_code == 401


def test_requests_without_token_are_rejected(client):
    assert client.get("/api/assets").status_code == 401
    bad = {"Authorization": "Bearer not-a-token"}
    assert client.get("/api/assets", headers=bad).status_code == 401


def test_register_without_code_creates_viewer(client):
    response = client.post("/api/auth/register", json={
        "username": "newbie",
        "email": "newbie@example.com",
        "password": "newbie123",
    })
    assert response.status_code == 201
    assert response.json()["user"]["role"] == "viewer"
    login(client, "newbie@example.com", "newbie123")


def test_register_with_invitation_code_assigns_role(client):
    response = client.post("/api/auth/register", json={
        "username": "boss",
        "email": "boss@example.com",
        "password": "boss1234",
        "invitation_code": "MANAGER-INVITE-2025",
    })
    assert response.status_code == 201
    assert response.json()["user"]["role"] == "manager"


def test_register_rejects_unknown_code_and_duplicates(client):
    bad_code = client.post("/api/auth/register", json={
        "username": "eve",
        "email": "eve@example.com",
        "password": "eve12345",
        "invitation_code": "FAKE",
    })
    assert bad_code.status_code == 400

    duplicate = client.post("/api/auth/register", json={
        "username": "admin",
        "email": "someone@example.com",
        "password": "whatever1",
    })
    assert duplicate.status_code == 409


def test_register_can_be_disabled():
    app = create_app(Settings(secret_key="t", registration_enabled=False, seed_demo_data=False, log_level="WARNING"))
    with TestClient(app) as client:
        response = client.post("/api/auth/register", json={
            "username": "late",
            "email": "late@example.com",
            "password": "late1234",
        })
    assert response.status_code == 403


# ---- assets ----

def test_asset_crud(client, operator_headers, admin_headers):
    asset = create_asset(client, operator_headers)
    assert asset["status"] == "active"

    listed = client.get("/api/assets", headers=operator_headers).json()
    assert listed[0]["id"] == asset["id"]

    updated = client.put(f"/api/assets/{asset['id']}", json={"project_name": "Refresh"}, headers=operator_headers)
    assert updated.status_code == 200
    assert updated.json()["project_name"] == "Refresh"
    assert updated.json()["donor"] == ASSET["donor"]

    assert client.delete(f"/api/assets/{asset['id']}", headers=operator_headers).status_code == 403
    assert client.delete(f"/api/assets/{asset['id']}", headers=admin_headers).status_code == 200
    assert client.get(f"/api/assets/{asset['id']}", headers=admin_headers).status_code == 404


def test_viewer_cannot_write_assets(client, viewer_headers):
    assert client.get("/api/assets", headers=viewer_headers).status_code == 200
    response = client.post("/api/assets", json=ASSET, headers=viewer_headers)
    assert response.status_code == 403


def test_duplicate_voucher_is_conflict(client, admin_headers):
    create_asset(client, admin_headers)
    response = client.post("/api/assets", json=ASSET, headers=admin_headers)
    assert response.status_code == 409
    assert response.json()["field"] == "voucher_no"


def test_asset_validation(client, admin_headers):
    response = client.post("/api/assets", json={**ASSET, "status": "lost"}, headers=admin_headers)
    assert response.status_code == 422


def test_missing_asset_is_not_found(client, admin_headers):
    assert client.get("/api/assets/9999", headers=admin_headers).status_code == 404
    assert client.put("/api/assets/9999", json={"donor": "x"}, headers=admin_headers).status_code == 404


# ---- transfers and repairs ----

def test_transfer_moves_asset(client, operator_headers):
    asset = create_asset(client, operator_headers)

    response = client.post("/api/transfers", json={
        "asset_id": asset["id"],
        "to_location": "Field Office",
        "to_custodian": "Erin",
        "to_organization": "Field Ops",
        "reason": "Reassignment",
        "transfer_date": "2024-03-01",
    }, headers=operator_headers)
    assert response.status_code == 201
    transfer = response.json()
    assert transfer["from_location"] == "Store Room"
    assert transfer["from_custodian"] == "Dan"

    moved = client.get(f"/api/assets/{asset['id']}", headers=operator_headers).json()
    assert moved["status"] == "transferred"
    assert moved["current_location"] == "Field Office"
    assert moved["handover_person"] == "Erin"
    assert moved["handover_organization"] == "Field Ops"

    history = client.get(f"/api/assets/{asset['id']}/transfers", headers=operator_headers).json()
    assert [t["id"] for t in history] == [transfer["id"]]
    assert client.get("/api/transfers", headers=operator_headers).json()[0]["id"] == transfer["id"]


def test_transfer_unknown_asset(client, operator_headers):
    response = client.post("/api/transfers", json={
        "asset_id": 4242,
        "to_location": "Nowhere",
        "to_custodian": "Nobody",
        "transfer_date": "2024-03-01",
    }, headers=operator_headers)
    assert response.status_code == 404


def test_repair_flow(client, operator_headers):
    asset = create_asset(client, operator_headers)

    response = client.post("/api/repairs", json={
        "asset_id": asset["id"],
        "issue": "Battery does not charge",
        "repair_center": "Service Hub",
        "expected_return_date": "2024-04-01",
    }, headers=operator_headers)
    assert response.status_code == 201
    repair = response.json()
    assert repair["status"] == "in_repair"
    assert client.get(f"/api/assets/{asset['id']}", headers=operator_headers).json()["status"] == "in_repair"
    assert [r["id"] for r in client.get("/api/repairs/active", headers=operator_headers).json()] == [repair["id"]]

    done = client.put(f"/api/repairs/{repair['id']}", json={"status": "completed", "cost": 80}, headers=operator_headers)
    assert done.status_code == 200
    assert done.json()["actual_return_date"] == date.today().isoformat()
    assert client.get(f"/api/assets/{asset['id']}", headers=operator_headers).json()["status"] == "active"
    assert client.get("/api/repairs/active", headers=operator_headers).json() == []
    assert len(client.get(f"/api/assets/{asset['id']}/repairs", headers=operator_headers).json()) == 1


def test_repair_unknown_ids(client, operator_headers):
    missing_asset = client.post("/api/repairs", json={"asset_id": 777, "issue": "x"}, headers=operator_headers)
    assert missing_asset.status_code == 404
    missing_repair = client.put("/api/repairs/777", json={"status": "diagnosed"}, headers=operator_headers)
    assert missing_repair.status_code == 404


# ---- users ----

def test_user_management(client, admin_headers):
    response = client.post("/api/users", json={
        "username": "tech",
        "email": "tech@example.com",
        "password": "tech1234",
        "role": "operator",
    }, headers=admin_headers)
    assert response.status_code == 201
    user = response.json()

    promoted = client.put(f"/api/users/{user['id']}", json={"role": "manager"}, headers=admin_headers)
    assert promoted.json()["role"] == "manager"

    assert len(client.get("/api/users", headers=admin_headers).json()) == 5
    assert client.delete(f"/api/users/{user['id']}", headers=admin_headers).status_code == 200
    assert client.get(f"/api/users/{user['id']}", headers=admin_headers).status_code == 404


def test_admin_cannot_delete_self(client, admin_headers):
    me = client.get("/api/auth/me", headers=admin_headers).json()["user"]
    assert client.delete(f"/api/users/{me['id']}", headers=admin_headers).status_code == 400


def test_only_admin_manages_users(client, viewer_headers):
    assert client.get("/api/users", headers=viewer_headers).status_code == 403
    response = client.post("/api/users", json={
        "username": "sneaky",
        "email": "sneaky@example.com",
        "password": "sneaky12",
    }, headers=viewer_headers)
    assert response.status_code == 403


def test_diagnostics_routes_hidden_by_default(client, admin_headers):
    assert client.get("/api/database/status", headers=admin_headers).status_code == 404


# ---- sql server mode ----

@pytest.fixture
def sqlserver_client(tmp_path):
    path = tmp_path / "inventory.db"
    store = DatabaseStorage.from_engine(create_engine(f"sqlite:///{path}"), create_tables=True, owns_engine=True)
    store.create_user({
        "username": "olivia",
        "email": "olivia@example.com",
        "password": hash_password("secret123"),
        "role": "admin",
        "role_password": "AdminPass123!",
    })
    store.close()

    opened = []

    def factory(url):
        opened.append(url.username)
        return create_engine(f"sqlite:///{path}", connect_args={"check_same_thread": False})

    settings = Settings(storage_backend="sqlserver", secret_key="t", enable_diagnostics=True, log_level="WARNING")
    app = create_app(settings, engine_factory=factory)
    with TestClient(app) as client:
        client.opened = opened
        yield client


def test_sqlserver_login_opens_role_pool(sqlserver_client):
    headers = login(sqlserver_client, "olivia", "secret123")

    assert sqlserver_client.opened == ["inventory_login_user", "admin"]
    asset = create_asset(sqlserver_client, headers)
    assert sqlserver_client.get(f"/api/assets/{asset['id']}", headers=headers).status_code == 200

    status = sqlserver_client.get("/api/database/status", headers=headers).json()
    assert status["auth_connection"] is True
    assert status["active_sessions"] == 1

    sqlserver_client.post("/api/auth/logout", headers=headers)
    assert sqlserver_client.get("/api/assets", headers=headers).status_code == 401


def test_sqlserver_registration_is_disabled(sqlserver_client):
    response = sqlserver_client.post("/api/auth/register", json={
        "username": "walkin",
        "email": "walkin@example.com",
        "password": "walkin12",
    })
    assert response.status_code == 403


def test_sqlserver_first_admin_can_register(tmp_path):
    path = tmp_path / "fresh.db"
    DatabaseStorage.from_engine(create_engine(f"sqlite:///{path}"), create_tables=True, owns_engine=True).close()

    logins, disposed = [], []

    def factory(url):
        engine = create_engine(f"sqlite:///{path}", connect_args={"check_same_thread": False})
        logins.append(url.username)
        event.listen(engine, "engine_disposed", lambda e: disposed.append(url.username))
        return engine

    app = create_app(Settings(storage_backend="sqlserver", secret_key="t", log_level="WARNING"), engine_factory=factory)
    with TestClient(app) as client:
        first = client.post("/api/auth/register", json={
            "username": "founder",
            "email": "founder@example.com",
            "password": "founder1",
            "invitation_code": "ADMIN-INVITE-2025",
        })
        second = client.post("/api/auth/register", json={
            "username": "follower",
            "email": "follower@example.com",
            "password": "follower1",
        })
        written_by = list(logins)
        disposed_before_login = list(disposed)
        headers = login(client, "founder", "founder1")
        me = client.get("/api/auth/me", headers=headers)

    assert first.status_code == 201
    assert first.json()["user"]["role"] == "admin"
    assert written_by == ["inventory_login_user", "admin"]
    assert disposed_before_login == ["admin"]
    assert second.status_code == 403
    assert me.json()["user"]["username"] == "founder"


# ---- null fields in updates ----

@pytest.fixture(params=["memory", "database"])
def backend_client(request):
    settings = Settings(
        storage_backend=request.param,
        database_url="sqlite://",
        secret_key="test-secret",
        log_level="WARNING",
    )
    with TestClient(create_app(settings)) as test_client:
        yield test_client


@pytest.mark.parametrize("field_name", ["voucher_no", "donor", "status"])
def test_null_asset_field_is_rejected(backend_client, field_name):
    headers = login(backend_client, "admin@inventory.com", "password123")
    asset = create_asset(backend_client, headers)

    response = backend_client.put(f"/api/assets/{asset['id']}", json={field_name: None}, headers=headers)

    assert response.status_code == 422
    stored = backend_client.get(f"/api/assets/{asset['id']}", headers=headers).json()
    assert stored[field_name] == asset[field_name]


def test_null_user_fields_are_rejected(backend_client):
    headers = login(backend_client, "admin@inventory.com", "password123")
    viewer = backend_client.get("/api/users", headers=headers).json()
    viewer_id = next(u["id"] for u in viewer if u["username"] == "viewer")

    response = backend_client.put(
        f"/api/users/{viewer_id}", json={"password": None, "is_active": None}, headers=headers
    )

    assert response.status_code == 422
    assert backend_client.get(f"/api/users/{viewer_id}", headers=headers).status_code == 200
    login(backend_client, "viewer@inventory.com", "viewer123")


def test_null_repair_status_is_rejected(backend_client):
    headers = login(backend_client, "admin@inventory.com", "password123")
    asset = create_asset(backend_client, headers)
    repair = backend_client.post("/api/repairs", json={"asset_id": asset["id"], "issue": "Fan"}, headers=headers).json()

    response = backend_client.put(f"/api/repairs/{repair['id']}", json={"status": None}, headers=headers)

    assert response.status_code == 422


def test_voucher_update_collision_is_conflict(backend_client):
    headers = login(backend_client, "admin@inventory.com", "password123")
    create_asset(backend_client, headers, voucher_no="VCH-ONE")
    second = create_asset(backend_client, headers, voucher_no="VCH-TWO")

    response = backend_client.put(f"/api/assets/{second['id']}", json={"voucher_no": "VCH-ONE"}, headers=headers)

    assert response.status_code == 409
    assert response.json()["field"] == "voucher_no"
