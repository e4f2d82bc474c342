import logging
from dataclasses import dataclass
from datetime import date
from typing import Optional

from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

from .auth import SessionRegistry, hash_password
from .config import Settings
from .connections import ConnectionManager, EngineFactory
from .db_storage import DatabaseStorage
from .errors import NoActiveConnectionError
from .role_storage import RoleBasedStorage
from .schemas import UserRecord
from .storage import MemStorage, Storage

log = logging.getLogger(__name__)

DEMO_USERS = [
    ("admin", "admin@inventory.com", "password123", "admin", "IT"),
    ("manager", "manager@inventory.com", "manager123", "manager", "Operations"),
    ("operator", "operator@inventory.com", "operator123", "operator", "Warehouse"),
    ("viewer", "viewer@inventory.com", "viewer123", "viewer", "Finance"),
]
DEMO_ASSETS = [
    {
        "voucher_no": "VCH-2023-001",
        "date": date(2023, 1, 15),
        "donor": "Purchase - Dell Technologies",
        "current_location": "Office Floor 1 - IT Department",
        "handover_person": "John Smith",
        "handover_organization": "IT Department",
        "project_name": "Laptop Modernization Project",
        "is_insured": True,
        "policy_number": "INS-2023-001",
        "warranty": "3 Years Manufacturer Warranty",
        "warranty_validity": date(2026, 1, 15),
        "grn": "GRN-2023-001",
    },
    {
        "voucher_no": "VCH-2023-002",
        "date": date(2023, 3, 20),
        "donor": "Purchase - Samsung Electronics",
        "current_location": "Office Floor 2 - Design Department",
        "handover_person": "Sarah Johnson",
        "handover_organization": "Design Department",
        "project_name": "Display Enhancement Project",
        "is_insured": True,
        "policy_number": "INS-2023-002",
        "warranty": "3 Years Manufacturer Warranty",
        "warranty_validity": date(2026, 3, 20),
        "grn": "GRN-2023-002",
    },
]


def create_storage(settings: Settings) -> Storage:
    if settings.storage_backend == "memory":
        return MemStorage(settings.invitation_codes, settings.registration_enabled)
    engine_kwargs = {}
    if settings.database_url.startswith("sqlite"):
        engine_kwargs["connect_args"] = {"check_same_thread": False}
        if ":memory:" in settings.database_url or settings.database_url == "sqlite://":
            engine_kwargs["poolclass"] = StaticPool
    engine = create_engine(settings.database_url, **engine_kwargs)
    return DatabaseStorage.from_engine(
        engine,
        create_tables=True,
        invitation_codes=settings.invitation_codes,
        registration_enabled=settings.registration_enabled,
        owns_engine=True,
    )


def seed_defaults(storage: Storage, settings: Settings) -> None:
    if storage.get_users():
        return
    for username, email, password, role, department in DEMO_USERS:
        storage.create_user({
            "username": username,
            "email": email,
            "password": hash_password(password),
            "role": role,
            "role_password": settings.role_password(role),
            "department": department,
        })
    for asset in DEMO_ASSETS:
        storage.create_asset(asset)
    log.info("Seeded %d demo users and %d demo assets", len(DEMO_USERS), len(DEMO_ASSETS))


@dataclass
class AppContext:
    """Process-wide state owned by the application object."""

    settings: Settings
    connections: ConnectionManager
    sessions: SessionRegistry
    storage: Optional[Storage] = None
    role_storage: Optional[RoleBasedStorage] = None
    engine_factory: Optional[EngineFactory] = None

    @classmethod
    def build(cls, settings: Settings, engine_factory: Optional[EngineFactory] = None) -> "AppContext":
        connections = ConnectionManager(settings, engine_factory)
        ctx = cls(settings=settings, connections=connections, sessions=SessionRegistry(settings.token_minutes), engine_factory=engine_factory)
        if settings.storage_backend == "sqlserver":
            ctx.role_storage = RoleBasedStorage(connections, settings.invitation_codes)
        else:
            ctx.storage = create_storage(settings)
        return ctx

    def startup(self) -> None:
        if self.role_storage is not None:
            self.connections.initialize_auth_connection()
        elif self.settings.seed_demo_data:
            seed_defaults(self.storage, self.settings)

    def storage_for(self, session_id: Optional[str]) -> Storage:
        if self.role_storage is not None:
            return self.role_storage.for_session(session_id)
        if self.storage is None:
            raise NoActiveConnectionError(session_id)
        return self.storage

    def lookup_user(self, user_id: int) -> Optional[UserRecord]:
        # Role logins may not be able to read the users table.
        if self.role_storage is not None:
            return self.role_storage.auth_storage().get_user(user_id)
        return self.storage.get_user(user_id)

    def registration_storage(self):
        """Where self-registration writes: the storage, or role-scoped pools on SQL Server."""
        if self.role_storage is not None:
            return self.role_storage
        return self.storage

    def start_session(self, user_id: int, session_id: str) -> str:
        for expired in self.sessions.prune():
            log.info("Session %s expired", expired)
            if self.role_storage is not None:
                self.role_storage.disconnect_session(expired)
        return self.sessions.open(user_id, session_id)

    def end_session(self, session_id: str) -> None:
        self.sessions.close(session_id)
        if self.role_storage is not None:
            self.role_storage.disconnect_session(session_id)

    def is_registration_enabled(self) -> bool:
        if self.role_storage is not None:
            return self.role_storage.is_registration_enabled()
        return self.storage.is_registration_enabled()

    def close(self) -> None:
        self.connections.close_all()
        if self.storage is not None:
            self.storage.close()
