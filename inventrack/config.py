import logging
import os
from typing import Dict, Optional

from pydantic import BaseModel, Field

ROLE_PASSWORD_DEFAULTS = {
    "admin": "AdminPass123!",
    "manager": "ManagerPass123!",
    "operator": "OperatorPass123!",
    "viewer": "ViewerPass123!",
}
DEFAULT_INVITATION_CODES = "ADMIN-INVITE-2025:admin,MANAGER-INVITE-2025:manager"
LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


class Settings(BaseModel):
    storage_backend: str = Field("memory", pattern="^(memory|database|sqlserver)$")
    database_url: str = "sqlite:///./inventrack.db"

    sql_server_host: str = "localhost\\SQLEXPRESS"
    sql_server_port: Optional[int] = None
    sql_server_database: str = "InventoryDB"
    odbc_driver: str = "ODBC Driver 17 for SQL Server"
    auth_user: str = "inventory_login_user"
    auth_password: str = "StrongPassword1!"
    role_passwords: Dict[str, str] = Field(default_factory=lambda: dict(ROLE_PASSWORD_DEFAULTS))
    encrypt: bool = False
    trust_server_certificate: bool = True
    connect_timeout: int = 60
    request_timeout: int = 60
    pool_size: int = 10

    secret_key: str = "change-this-in-env"
    token_minutes: int = 720
    invitation_codes: Dict[str, str] = Field(default_factory=lambda: parse_invitation_codes(DEFAULT_INVITATION_CODES))
    registration_enabled: bool = True
    seed_demo_data: bool = True
    enable_diagnostics: bool = False
    log_level: str = "INFO"
    port: int = 5000

    def role_password(self, role: str) -> str:
        return self.role_passwords.get(role) or self.role_passwords["viewer"]


def parse_invitation_codes(raw: str) -> Dict[str, str]:
    codes = {}
    for item in raw.split(","):
        item = item.strip()
        if not item:
            continue
        code, _, role = item.partition(":")
        codes[code.strip()] = role.strip() or "viewer"
    return codes


def env_flag(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def load_settings() -> Settings:
    port = os.getenv("SQL_SERVER_PORT")
    role_passwords = {
        role: os.getenv(f"SQL_{role.upper()}_PASSWORD", default)
        for role, default in ROLE_PASSWORD_DEFAULTS.items()
    }
    return Settings(
        storage_backend=os.getenv("INVENTRACK_STORAGE", "memory"),
        database_url=os.getenv("INVENTRACK_DB_URL", "sqlite:///./inventrack.db"),
        sql_server_host=os.getenv("SQL_SERVER_HOST", "localhost\\SQLEXPRESS"),
        sql_server_port=int(port) if port else None,
        sql_server_database=os.getenv("SQL_SERVER_DATABASE", "InventoryDB"),
        odbc_driver=os.getenv("SQL_ODBC_DRIVER", "ODBC Driver 17 for SQL Server"),
        auth_user=os.getenv("SQL_AUTH_USER", "inventory_login_user"),
        auth_password=os.getenv("SQL_AUTH_PASSWORD", "StrongPassword1!"),
        role_passwords=role_passwords,
        encrypt=env_flag("SQL_ENCRYPT", False),
        trust_server_certificate=env_flag("SQL_TRUST_SERVER_CERTIFICATE", True),
        connect_timeout=int(os.getenv("SQL_CONNECT_TIMEOUT", "60")),
        request_timeout=int(os.getenv("SQL_REQUEST_TIMEOUT", "60")),
        pool_size=int(os.getenv("SQL_POOL_SIZE", "10")),
        secret_key=os.getenv("INVENTRACK_SECRET_KEY", "change-this-in-env"),
        token_minutes=int(os.getenv("INVENTRACK_TOKEN_MINUTES", "720")),
        invitation_codes=parse_invitation_codes(os.getenv("INVENTRACK_INVITATION_CODES", DEFAULT_INVITATION_CODES)),
        registration_enabled=env_flag("INVENTRACK_REGISTRATION_ENABLED", True),
        seed_demo_data=env_flag("INVENTRACK_SEED_DEMO_DATA", True),
        enable_diagnostics=env_flag("INVENTRACK_ENABLE_DIAGNOSTICS", False),
        log_level=os.getenv("INVENTRACK_LOG_LEVEL", "INFO"),
        port=int(os.getenv("PORT", "5000")),
    )


def configure_logging(level: str = "INFO") -> None:
    root = logging.getLogger()
    if not any(getattr(h, "_inventrack", False) for h in root.handlers):
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        handler._inventrack = True
        root.addHandler(handler)
    root.setLevel(level.upper())
