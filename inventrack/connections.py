"""Two-tier SQL Server connection management.

A single low-privilege *auth* pool reads the ``users`` table to check
credentials and resolve the caller's role login.  After a successful login a
second pool is opened under that role's SQL login and registered for the
session; every data query for the session runs on that pool until logout or
shutdown.

Connection problems never escape as driver exceptions: the opening methods
return a :class:`~inventrack.errors.ConnectionFailure` instead of an engine.
"""
import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterator, List, Mapping, Optional, Union

from sqlalchemy import create_engine, event, or_, text
from sqlalchemy.engine import URL, Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from .auth import verify_password
from .config import Settings
from .errors import AuthResult, ConnectionFailure, NoActiveConnectionError, classify_error
from .models import User
from .schemas import AuthenticatedUser, UserRecord
from .storage import utc_now_naive

log = logging.getLogger(__name__)

EngineFactory = Callable[[URL], Engine]
OpenResult = Union[Engine, ConnectionFailure]


def build_url(settings: Settings, username: str, password: str, server: Optional[str] = None,
              database: Optional[str] = None, port: Optional[int] = None,
              encrypt: Optional[bool] = None, trust_server_certificate: Optional[bool] = None) -> URL:
    encrypt = settings.encrypt if encrypt is None else encrypt
    trust = settings.trust_server_certificate if trust_server_certificate is None else trust_server_certificate
    return URL.create(
        "mssql+pyodbc",
        username=username,
        password=password,
        host=server or settings.sql_server_host,
        port=port if port is not None else settings.sql_server_port,
        database=database or settings.sql_server_database,
        query={
            "driver": settings.odbc_driver,
            "Encrypt": "yes" if encrypt else "no",
            "TrustServerCertificate": "yes" if trust else "no",
        },
    )


def sqlserver_engine_factory(settings: Settings, pool_size: Optional[int] = None) -> EngineFactory:
    def factory(url: URL) -> Engine:
        engine = create_engine(
            url,
            pool_size=pool_size or settings.pool_size,
            max_overflow=0,
            pool_timeout=settings.connect_timeout,
            pool_recycle=1800,
            pool_pre_ping=True,
            connect_args={"timeout": settings.connect_timeout},
        )

        @event.listens_for(engine, "connect")
        def set_query_timeout(dbapi_connection, connection_record):
            dbapi_connection.timeout = settings.request_timeout

        return engine

    return factory


@dataclass
class QueryResult:
    columns: List[str] = field(default_factory=list)
    rows: List[Dict[str, Any]] = field(default_factory=list)
    rows_affected: int = 0


def run_query(engine: Engine, query: str, params: Optional[Mapping[str, Any]] = None) -> QueryResult:
    with engine.begin() as conn:
        result = conn.execute(text(query), dict(params or {}))
        if result.returns_rows:
            columns = list(result.keys())
            rows = [dict(row._mapping) for row in result]
            return QueryResult(columns, rows, len(rows))
        return QueryResult(rows_affected=max(result.rowcount, 0))


class ConnectionManager:
    def __init__(self, settings: Settings, engine_factory: Optional[EngineFactory] = None):
        self.settings = settings
        self.engine_factory = engine_factory or sqlserver_engine_factory(settings)
        self.auth_engine: Optional[Engine] = None
        self.session_engines: Dict[str, Engine] = {}
        self._auth_lock = threading.Lock()
        self._registry_lock = threading.Lock()
        # session id -> [lock, holders]; an entry is dropped when its last holder leaves.
        self._session_locks: Dict[str, list] = {}

    @contextmanager
    def _locked_session(self, session_id: str) -> Iterator[None]:
        with self._registry_lock:
            entry = self._session_locks.setdefault(session_id, [threading.Lock(), 0])
            entry[1] += 1
        try:
            with entry[0]:
                yield
        finally:
            with self._registry_lock:
                entry[1] -= 1
                if entry[1] == 0 and self._session_locks.get(session_id) is entry:
                    del self._session_locks[session_id]

    def pending_session_locks(self) -> int:
        with self._registry_lock:
            return len(self._session_locks)

    def role_password(self, role: str) -> str:
        return self.settings.role_password(role)

    def open_pool(self, username: str, password: str, **url_options) -> OpenResult:
        """Create a pool for the given login and prove it with ``SELECT 1``."""
        engine = None
        try:
            engine = self.engine_factory(build_url(self.settings, username, password, **url_options))
            with engine.connect() as conn:
                conn.execute(text("SELECT 1"))
            return engine
        except SQLAlchemyError as exc:
            if engine is not None:
                engine.dispose()
            failure = classify_error(exc)
            log.error("Could not connect as %s: %s (%s)", username, failure.category, failure.detail)
            return failure

    # auth tier

    def initialize_auth_connection(self) -> OpenResult:
        with self._auth_lock:
            if self.auth_engine is not None:
                return self.auth_engine
            log.info("Initializing authentication connection as %s", self.settings.auth_user)
            result = self.open_pool(self.settings.auth_user, self.settings.auth_password)
            if isinstance(result, ConnectionFailure):
                self.auth_engine = None
                return result
            self.auth_engine = result
            log.info("Authentication connection established")
            return result

    def get_auth_connection(self) -> Optional[Engine]:
        return self.auth_engine

    def authenticate_user(self, identifier: str, password: str) -> Union[AuthenticatedUser, AuthResult, ConnectionFailure]:
        engine = self.initialize_auth_connection()
        if isinstance(engine, ConnectionFailure):
            return engine

        try:
            with Session(engine) as db:
                candidates = (
                    db.query(User)
                    .filter(or_(User.email == identifier, User.username == identifier), User.is_active == True)
                    .all()
                )
                record = next(
                    (UserRecord.model_validate(u) for u in candidates if verify_password(password, u.password)),
                    None,
                )
        except SQLAlchemyError as exc:
            failure = classify_error(exc, prefix="Authentication query failed")
            log.error("Authentication query failed: %s", failure.detail)
            return failure

        if record is None:
            log.info("Authentication failed for %s: invalid credentials or inactive user", identifier)
            return AuthResult.FAILED

        self._touch_last_login(engine, record.id)
        log.info("User authenticated: %s (role: %s)", record.username, record.role)
        return AuthenticatedUser(
            user=record.public(),
            role_login=record.role,
            role_secret=record.role_password or self.role_password(record.role),
        )

    def _touch_last_login(self, engine: Engine, user_id: int) -> None:
        # Optional: the auth login may lack UPDATE rights on users.
        try:
            with Session(engine) as db:
                db.query(User).filter(User.id == user_id).update({"last_login": utc_now_naive()}, synchronize_session=False)
                db.commit()
        except SQLAlchemyError as exc:
            log.warning("Could not update last_login for user %s: %s", user_id, exc)

    def execute_auth_query(self, query: str, params: Optional[Mapping[str, Any]] = None) -> QueryResult:
        if self.auth_engine is None:
            raise NoActiveConnectionError(None)
        return run_query(self.auth_engine, query, params)

    # session tier

    def create_user_connection(self, session_id: str, role_login: str, role_secret: str) -> OpenResult:
        with self._locked_session(session_id):
            self._close_session(session_id)
            log.info("Creating connection for role %s (session %s)", role_login, session_id)
            result = self.open_pool(role_login, role_secret)
            if isinstance(result, ConnectionFailure):
                return result
            with self._registry_lock:
                self.session_engines[session_id] = result
            log.info("User connection established for role %s", role_login)
            return result

    def get_session_connection(self, session_id: str) -> Optional[Engine]:
        with self._registry_lock:
            return self.session_engines.get(session_id)

    def close_session_connection(self, session_id: str) -> None:
        with self._locked_session(session_id):
            self._close_session(session_id)

    def _close_session(self, session_id: str) -> None:
        with self._registry_lock:
            engine = self.session_engines.get(session_id)
        if engine is None:
            return
        try:
            engine.dispose()
            log.info("Closed connection for session %s", session_id)
        finally:
            with self._registry_lock:
                if self.session_engines.get(session_id) is engine:
                    del self.session_engines[session_id]

    def execute_user_query(self, session_id: str, query: str, params: Optional[Mapping[str, Any]] = None) -> QueryResult:
        engine = self.get_session_connection(session_id)
        if engine is None:
            raise NoActiveConnectionError(session_id)
        return run_query(engine, query, params)

    # diagnostics and lifecycle

    def test_credentials(self, username: str, password: str) -> bool:
        result = self.open_pool(username, password)
        if isinstance(result, ConnectionFailure):
            return False
        result.dispose()
        return True

    def connection_status(self) -> dict:
        with self._registry_lock:
            sessions = list(self.session_engines)
        return {
            "auth_connection": self.auth_engine is not None,
            "active_sessions": len(sessions),
            "session_list": sessions,
        }

    def close_all(self) -> None:
        log.info("Closing all database connections")
        with self._registry_lock:
            session_ids = list(self.session_engines)
        for session_id in session_ids:
            try:
                self.close_session_connection(session_id)
            except SQLAlchemyError as exc:
                log.error("Error closing session %s: %s", session_id, exc)
        with self._auth_lock:
            if self.auth_engine is not None:
                try:
                    self.auth_engine.dispose()
                    log.info("Closed authentication connection")
                except SQLAlchemyError as exc:
                    log.error("Error closing auth connection: %s", exc)
                self.auth_engine = None
