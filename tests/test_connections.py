import pytest
from sqlalchemy import create_engine, event

from inventrack.auth import hash_password
from inventrack.config import Settings
from inventrack.connections import ConnectionManager
from inventrack.db_storage import DatabaseStorage
from inventrack.errors import AuthResult, ConnectionFailure, NoActiveConnectionError


class SqliteFactory:
    """Stands in for the SQL Server engine factory; records which logins were opened."""

    def __init__(self, path):
        self.path = path
        self.logins = []
        self.disposed = []

    def __call__(self, url):
        self.logins.append(url.username)
        engine = create_engine(f"sqlite:///{self.path}", connect_args={"check_same_thread": False})
        event.listen(engine, "engine_disposed", self.disposed.append)
        return engine


@pytest.fixture
def db_path(tmp_path):
    path = tmp_path / "inventory.db"
    store = DatabaseStorage.from_engine(create_engine(f"sqlite:///{path}"), create_tables=True, owns_engine=True)
    store.create_user({
        "username": "olivia",
        "email": "olivia@example.com",
        "password": hash_password("secret123"),
        "role": "operator",
        "role_password": "OperatorPass123!",
    })
    store.create_user({
        "username": "ghost",
        "email": "ghost@example.com",
        "password": hash_password("secret123"),
        "role": "viewer",
        "is_active": False,
    })
    store.close()
    return path


@pytest.fixture
def factory(db_path):
    return SqliteFactory(db_path)


@pytest.fixture
def manager(factory):
    mgr = ConnectionManager(Settings(storage_backend="sqlserver"), engine_factory=factory)
    yield mgr
    mgr.close_all()


def test_auth_connection_is_opened_once(manager, factory):
    first = manager.initialize_auth_connection()
    second = manager.initialize_auth_connection()

    assert first is second
    assert factory.logins == ["inventory_login_user"]
    assert manager.get_auth_connection() is first


def test_authenticate_user_resolves_role_login(manager):
    result = manager.authenticate_user("olivia@example.com", "secret123")

    assert result.user.username == "olivia"
    assert result.role_login == "operator"
    assert result.role_secret.get_secret_value() == "OperatorPass123!"


def test_authenticate_user_accepts_username(manager):
    result = manager.authenticate_user("olivia", "secret123")

    assert result.user.email == "olivia@example.com"


@pytest.mark.parametrize("identifier,password", [
    ("olivia@example.com", "wrong-password"),
    ("nobody@example.com", "secret123"),
    ("ghost@example.com", "secret123"),
])
def test_authenticate_user_failures_return_sentinel(manager, identifier, password):
    assert manager.authenticate_user(identifier, password) is AuthResult.FAILED


def test_missing_role_password_falls_back_to_configured_secret(manager, db_path):
    store = DatabaseStorage.from_engine(create_engine(f"sqlite:///{db_path}"), owns_engine=True)
    store.create_user({"username": "nora", "email": "nora@example.com", "password": hash_password("secret123")})
    store.close()

    result = manager.authenticate_user("nora", "secret123")

    assert result.role_login == "viewer"
    assert result.role_secret.get_secret_value() == "ViewerPass123!"


def test_authenticate_updates_last_login(manager, db_path):
    manager.authenticate_user("olivia", "secret123")

    store = DatabaseStorage.from_engine(create_engine(f"sqlite:///{db_path}"), owns_engine=True)
    try:
        assert store.get_user_by_username("olivia").last_login is not None
    finally:
        store.close()


def test_create_user_connection_replaces_previous_pool(manager, factory):
    first = manager.create_user_connection("s1", "operator", "OperatorPass123!")
    second = manager.create_user_connection("s1", "operator", "OperatorPass123!")

    assert first is not second
    assert first in factory.disposed
    assert manager.get_session_connection("s1") is second
    assert manager.connection_status()["active_sessions"] == 1


def test_close_session_connection_is_idempotent(manager, factory):
    engine = manager.create_user_connection("s1", "viewer", "ViewerPass123!")

    manager.close_session_connection("s1")
    manager.close_session_connection("s1")
    manager.close_session_connection("never-opened")

    assert manager.get_session_connection("s1") is None
    assert factory.disposed.count(engine) == 1


def test_execute_user_query_requires_session(manager):
    with pytest.raises(NoActiveConnectionError):
        manager.execute_user_query("missing", "SELECT 1")

    manager.create_user_connection("s1", "viewer", "ViewerPass123!")
    result = manager.execute_user_query("s1", "SELECT username FROM users WHERE role = :role", {"role": "operator"})

    assert result.columns == ["username"]
    assert result.rows == [{"username": "olivia"}]


def test_close_all_disposes_everything(manager, factory):
    auth = manager.initialize_auth_connection()
    one = manager.create_user_connection("s1", "viewer", "ViewerPass123!")
    two = manager.create_user_connection("s2", "admin", "AdminPass123!")

    manager.close_all()

    assert {id(e) for e in factory.disposed} >= {id(auth), id(one), id(two)}
    assert manager.connection_status() == {"auth_connection": False, "active_sessions": 0, "session_list": []}


def test_unreachable_server_returns_failure(tmp_path):
    missing = SqliteFactory(tmp_path / "no" / "such" / "dir.db")
    mgr = ConnectionManager(Settings(storage_backend="sqlserver"), engine_factory=missing)

    result = mgr.initialize_auth_connection()

    assert isinstance(result, ConnectionFailure)
    assert not result
    assert mgr.get_auth_connection() is None
    assert isinstance(mgr.authenticate_user("olivia", "secret123"), ConnectionFailure)
    assert mgr.test_credentials("viewer", "x") is False


def test_session_locks_are_released(manager):
    for n in range(50):
        sid = f"s{n}"
        manager.create_user_connection(sid, "viewer", "ViewerPass123!")
        manager.close_session_connection(sid)
    manager.close_session_connection("never-opened")

    assert manager.pending_session_locks() == 0
    assert manager.connection_status()["active_sessions"] == 0
