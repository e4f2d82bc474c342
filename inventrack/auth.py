import logging
import threading
import uuid
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional, Tuple, Union

import bcrypt
from jose import JWTError, jwt

from .errors import AuthResult
from .schemas import UserRecord
from .storage import Storage

log = logging.getLogger(__name__)

ALGORITHM = "HS256"


def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(plain_password: str, hashed_password: str) -> bool:
    try:
        return bcrypt.checkpw(plain_password.encode("utf-8"), hashed_password.encode("utf-8"))
    except Exception:
        return False


def new_session_id() -> str:
    return uuid.uuid4().hex


def create_session_token(user_id: int, session_id: str, secret_key: str, expires_minutes: int) -> str:
    now = datetime.now(timezone.utc)
    payload = {
        "sub": str(user_id),
        "sid": session_id,
        "type": "access",
        "iat": int(now.timestamp()),
        "exp": int((now + timedelta(minutes=expires_minutes)).timestamp()),
    }
    return jwt.encode(payload, secret_key, algorithm=ALGORITHM)


def decode_token(token: str, secret_key: str) -> Optional[dict]:
    try:
        return jwt.decode(token, secret_key, algorithms=[ALGORITHM])
    except JWTError:
        return None


class SessionRegistry:
    """Live login sessions: session id -> user id.

    Logout removes the entry, which revokes the token.  Entries also lapse
    once they outlive the token lifetime; ``prune`` drops those and reports
    them so their connections can be closed.
    """

    def __init__(self, ttl_minutes: int = 720):
        self.ttl = timedelta(minutes=ttl_minutes)
        self._lock = threading.Lock()
        self._sessions: Dict[str, Tuple[int, datetime]] = {}

    def open(self, user_id: int, session_id: Optional[str] = None) -> str:
        session_id = session_id or new_session_id()
        with self._lock:
            self._sessions[session_id] = (user_id, datetime.now(timezone.utc) + self.ttl)
        return session_id

    def user_id(self, session_id: str) -> Optional[int]:
        with self._lock:
            entry = self._sessions.get(session_id)
            if entry is None:
                return None
            if entry[1] <= datetime.now(timezone.utc):
                del self._sessions[session_id]
                return None
            return entry[0]

    def close(self, session_id: str) -> bool:
        with self._lock:
            return self._sessions.pop(session_id, None) is not None

    def prune(self) -> List[str]:
        now = datetime.now(timezone.utc)
        with self._lock:
            expired = [sid for sid, (_, expires_at) in self._sessions.items() if expires_at <= now]
            for sid in expired:
                del self._sessions[sid]
        return expired

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)

def authenticate(storage: Storage, identifier: str, password: str) -> Union[UserRecord, AuthResult]:
    user = storage.get_user_by_email(identifier) or storage.get_user_by_username(identifier)
    if not user or not user.is_active or not verify_password(password, user.password):
        log.info("Authentication failed for %s", identifier)
        return AuthResult.FAILED
    return user
