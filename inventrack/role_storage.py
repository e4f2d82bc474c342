import logging
from typing import Mapping, Optional, Union

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from .connections import ConnectionManager
from .db_storage import DatabaseStorage
from .errors import (
    AuthResult,
    ConnectionFailure,
    ConnectionUnavailable,
    NoActiveConnectionError,
    classify_error,
)
from .schemas import UserOut, UserRecord

log = logging.getLogger(__name__)


class RoleBasedStorage:
    """Hands out a DatabaseStorage bound to the calling session's role-scoped pool."""

    def __init__(self, manager: ConnectionManager, invitation_codes: Optional[Mapping[str, str]] = None):
        self.manager = manager
        self.invitation_codes = dict(invitation_codes or {})

    def authenticate_and_connect(self, identifier: str, password: str,
                                 session_id: str) -> Union[UserOut, AuthResult, ConnectionFailure]:
        result = self.manager.authenticate_user(identifier, password)
        if result is AuthResult.FAILED or isinstance(result, ConnectionFailure):
            return result

        engine = self.manager.create_user_connection(session_id, result.role_login, result.role_secret.get_secret_value())
        if isinstance(engine, ConnectionFailure):
            log.error("Failed to establish connection for role %s", result.role_login)
            return engine

        log.info("User %s connected with role %s", result.user.username, result.role_login)
        return result.user

    def disconnect_session(self, session_id: str) -> None:
        self.manager.close_session_connection(session_id)

    def for_session(self, session_id: Optional[str]) -> DatabaseStorage:
        engine = self.manager.get_session_connection(session_id) if session_id else None
        if engine is None:
            raise NoActiveConnectionError(session_id)
        return DatabaseStorage(
            sessionmaker(autocommit=False, autoflush=False, bind=engine),
            invitation_codes=self.invitation_codes,
            registration_enabled=False,
        )

    def _auth_engine(self):
        engine = self.manager.initialize_auth_connection()
        if isinstance(engine, ConnectionFailure):
            raise ConnectionUnavailable(engine)
        return engine

    def auth_storage(self) -> DatabaseStorage:
        """Read-side storage on the auth pool, used to resolve the session's user."""
        engine = self._auth_engine()
        return DatabaseStorage(
            sessionmaker(autocommit=False, autoflush=False, bind=engine),
            invitation_codes=self.invitation_codes,
            registration_enabled=False,
        )

    def is_valid_invitation_code(self, code: str) -> bool:
        return code in self.invitation_codes

    def invitation_role(self, code: str) -> Optional[str]:
        return self.invitation_codes.get(code)

    def create_user(self, fields: Mapping) -> UserRecord:
        """Insert a self-registered user through a pool opened under the new user's role login.

        The auth login stays read-only; the short-lived pool is disposed once the row is written.
        """
        role = fields.get("role") or "viewer"
        engine = self.manager.open_pool(role, self.manager.role_password(role))
        if isinstance(engine, ConnectionFailure):
            raise ConnectionUnavailable(engine)
        try:
            storage = DatabaseStorage(sessionmaker(autocommit=False, autoflush=False, bind=engine))
            try:
                return storage.create_user(fields)
            except SQLAlchemyError as exc:
                raise ConnectionUnavailable(classify_error(exc, prefix="Registration failed"))
        finally:
            engine.dispose()

    def is_registration_enabled(self) -> bool:
        # Open only until the first admin account exists.
        self._auth_engine()
        try:
            result = self.manager.execute_auth_query("SELECT COUNT(*) AS admins FROM users WHERE role = 'admin'")
        except SQLAlchemyError as exc:
            raise ConnectionUnavailable(classify_error(exc, prefix="Registration check failed"))
        return result.rows[0]["admins"] == 0
