import enum
from dataclasses import dataclass, field
from typing import Optional


class AuthResult(enum.Enum):
    FAILED = "authentication_failed"

    def __bool__(self) -> bool:
        return False


class StorageError(Exception):
    pass


class DuplicateRecordError(StorageError):
    def __init__(self, entity: str, field_name: str, value):
        self.entity = entity
        self.field_name = field_name
        self.value = value
        super().__init__(f"{entity} with {field_name} '{value}' already exists")


class ForeignKeyError(StorageError):
    def __init__(self, entity: str, entity_id: int):
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(f"{entity} {entity_id} not found")


class InvalidRecordError(StorageError):
    def __init__(self, entity: str, field_name: str):
        self.entity = entity
        self.field_name = field_name
        super().__init__(f"{entity} field '{field_name}' may not be null")


class NoActiveConnectionError(Exception):
    def __init__(self, session_id: Optional[str]):
        self.session_id = session_id
        super().__init__("No active connection for session. User may need to re-authenticate.")


@dataclass
class ConnectionFailure:
    """Connectivity problem reported by the connection layer instead of a driver exception."""

    category: str
    message: str
    troubleshooting: str = ""
    detail: Optional[str] = None
    extra: dict = field(default_factory=dict)

    def __bool__(self) -> bool:
        return False

    def as_dict(self) -> dict:
        return {
            "success": False,
            "message": self.message,
            "category": self.category,
            "troubleshooting": self.troubleshooting,
            "error": self.detail,
            **self.extra,
        }


class ConnectionUnavailable(Exception):
    def __init__(self, failure: ConnectionFailure):
        self.failure = failure
        super().__init__(failure.message)


_ERROR_CATEGORIES = [
    (("getaddrinfo", "enotfound", "name or service not known", "could not open a connection", "server not found"),
     "Server not found (DNS resolution failed)", "Check server name and network connectivity"),
    (("login failed",), "Authentication failed", "Check username and password"),
    (("cannot open database",), "Database access denied", "Check database name and user permissions"),
    (("timeout", "timed out", "hyt00"), "Connection timeout", "Check network connectivity and firewall settings"),
    (("econnrefused", "connection refused", "actively refused"),
     "Connection refused", "Check if SQL Server is running and accepting connections"),
]
DNS_FAILURE = _ERROR_CATEGORIES[0][1]
CONNECTION_REFUSED = _ERROR_CATEGORIES[4][1]


def classify_error(exc: BaseException, prefix: str = "Connection failed") -> ConnectionFailure:
    text = str(exc)
    lowered = text.lower()
    for needles, category, troubleshooting in _ERROR_CATEGORIES:
        if any(needle in lowered for needle in needles):
            return ConnectionFailure(category, f"{prefix}: {category}", troubleshooting, text)
    return ConnectionFailure("Unknown error", f"{prefix}: Unknown error", "", text)
