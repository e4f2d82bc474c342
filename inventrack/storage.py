import abc
import logging
import threading
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Mapping, Optional

from .config import DEFAULT_INVITATION_CODES, parse_invitation_codes
from .errors import DuplicateRecordError, ForeignKeyError, InvalidRecordError
from .schemas import (
    ASSET_FIELDS,
    ASSET_REQUIRED,
    REPAIR_FIELDS,
    REPAIR_REQUIRED,
    TRANSFER_FIELDS,
    TRANSFER_REQUIRED,
    USER_FIELDS,
    USER_REQUIRED,
    AssetOut,
    RepairOut,
    TransferOut,
    UserRecord,
)

log = logging.getLogger(__name__)

def utc_now_naive() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def next_timestamp(previous: Optional[datetime]) -> datetime:
    now = utc_now_naive()
    if previous is not None and now <= previous:
        now = previous + timedelta(microseconds=1)
    return now


def pick(fields: Mapping, allowed) -> dict:
    return {key: fields[key] for key in allowed if key in fields}


def newest_first(records):
    return sorted(records, key=lambda r: (r.created_at, r.id), reverse=True)


def check_required(entity: str, data: Mapping, required, partial: bool = False) -> None:
    """Raise InvalidRecordError for a NOT NULL field that is null (or, unless partial, missing)."""
    for name in required:
        if (partial and name not in data) or data.get(name) is not None:
            continue
        raise InvalidRecordError(entity, name)


class Storage(abc.ABC):
    """Data access used by the API. Missing ids come back as None/False, never as exceptions."""

    def __init__(self, invitation_codes: Optional[Mapping[str, str]] = None, registration_enabled: bool = True):
        if invitation_codes is None:
            invitation_codes = parse_invitation_codes(DEFAULT_INVITATION_CODES)
        self.invitation_codes = dict(invitation_codes)
        self.registration_enabled = registration_enabled

    # users
    @abc.abstractmethod
    def get_users(self) -> List[UserRecord]: ...

    @abc.abstractmethod
    def get_user(self, user_id: int) -> Optional[UserRecord]: ...

    @abc.abstractmethod
    def get_user_by_email(self, email: str) -> Optional[UserRecord]: ...

    @abc.abstractmethod
    def get_user_by_username(self, username: str) -> Optional[UserRecord]: ...

    @abc.abstractmethod
    def create_user(self, fields: Mapping) -> UserRecord: ...

    @abc.abstractmethod
    def update_user(self, user_id: int, fields: Mapping) -> Optional[UserRecord]: ...

    @abc.abstractmethod
    def delete_user(self, user_id: int) -> bool: ...

    @abc.abstractmethod
    def update_user_last_login(self, user_id: int) -> None: ...

    # registration
    def is_valid_invitation_code(self, code: str) -> bool:
        return code in self.invitation_codes

    def invitation_role(self, code: str) -> Optional[str]:
        return self.invitation_codes.get(code)

    def is_registration_enabled(self) -> bool:
        return self.registration_enabled

    # assets
    @abc.abstractmethod
    def get_assets(self) -> List[AssetOut]: ...

    @abc.abstractmethod
    def get_asset(self, asset_id: int) -> Optional[AssetOut]: ...

    @abc.abstractmethod
    def create_asset(self, fields: Mapping) -> AssetOut: ...

    @abc.abstractmethod
    def update_asset(self, asset_id: int, fields: Mapping) -> Optional[AssetOut]: ...

    @abc.abstractmethod
    def delete_asset(self, asset_id: int) -> bool: ...

    # transfers
    @abc.abstractmethod
    def get_transfers(self) -> List[TransferOut]: ...

    @abc.abstractmethod
    def get_transfers_by_asset(self, asset_id: int) -> List[TransferOut]: ...

    @abc.abstractmethod
    def create_transfer(self, fields: Mapping) -> TransferOut: ...

    # repairs
    @abc.abstractmethod
    def get_repairs(self) -> List[RepairOut]: ...

    @abc.abstractmethod
    def get_active_repairs(self) -> List[RepairOut]: ...

    @abc.abstractmethod
    def get_repairs_by_asset(self, asset_id: int) -> List[RepairOut]: ...

    @abc.abstractmethod
    def create_repair(self, fields: Mapping) -> RepairOut: ...

    @abc.abstractmethod
    def update_repair(self, repair_id: int, fields: Mapping) -> Optional[RepairOut]: ...

    def close(self) -> None:
        pass


class MemStorage(Storage):
    """Process-memory storage: one dict per entity keyed by id, plus id counters."""

    def __init__(self, invitation_codes: Optional[Mapping[str, str]] = None, registration_enabled: bool = True):
        super().__init__(invitation_codes, registration_enabled)
        self._lock = threading.RLock()
        self.users: Dict[int, UserRecord] = {}
        self.assets: Dict[int, AssetOut] = {}
        self.transfers: Dict[int, TransferOut] = {}
        self.repairs: Dict[int, RepairOut] = {}
        self._counters = {"user": 1, "asset": 1, "transfer": 1, "repair": 1}

    def _next_id(self, entity: str) -> int:
        value = self._counters[entity]
        self._counters[entity] = value + 1
        return value

    def _check_user_unique(self, fields: Mapping, exclude_id: Optional[int] = None) -> None:
        for field_name in ("username", "email"):
            value = fields.get(field_name)
            if value is None:
                continue
            for user in self.users.values():
                if user.id != exclude_id and getattr(user, field_name) == value:
                    raise DuplicateRecordError("User", field_name, value)

    def _check_voucher_unique(self, fields: Mapping, exclude_id: Optional[int] = None) -> None:
        voucher_no = fields.get("voucher_no")
        if voucher_no is None:
            return
        for asset in self.assets.values():
            if asset.id != exclude_id and asset.voucher_no == voucher_no:
                raise DuplicateRecordError("Asset", "voucher_no", voucher_no)

    # users
    def get_users(self) -> List[UserRecord]:
        with self._lock:
            return newest_first(self.users.values())

    def get_user(self, user_id: int) -> Optional[UserRecord]:
        return self.users.get(user_id)

    def get_user_by_email(self, email: str) -> Optional[UserRecord]:
        with self._lock:
            return next((u for u in self.users.values() if u.email == email), None)

    def get_user_by_username(self, username: str) -> Optional[UserRecord]:
        with self._lock:
            return next((u for u in self.users.values() if u.username == username), None)

    def create_user(self, fields: Mapping) -> UserRecord:
        data = pick(fields, USER_FIELDS)
        data.setdefault("role", "viewer")
        data.setdefault("is_active", True)
        check_required("User", data, USER_REQUIRED)
        with self._lock:
            self._check_user_unique(data)
            now = utc_now_naive()
            user = UserRecord(id=self._next_id("user"), created_at=now, updated_at=now, **data)
            self.users[user.id] = user
        log.info("Created user %s (id=%s, role=%s)", user.username, user.id, user.role)
        return user

    def update_user(self, user_id: int, fields: Mapping) -> Optional[UserRecord]:
        data = pick(fields, USER_FIELDS)
        check_required("User", data, USER_REQUIRED, partial=True)
        with self._lock:
            user = self.users.get(user_id)
            if not user:
                return None
            self._check_user_unique(data, exclude_id=user_id)
            updated = UserRecord.model_validate({**user.model_dump(), **data, "updated_at": next_timestamp(user.updated_at)})
            self.users[user_id] = updated
            return updated

    def delete_user(self, user_id: int) -> bool:
        with self._lock:
            return self.users.pop(user_id, None) is not None

    def update_user_last_login(self, user_id: int) -> None:
        with self._lock:
            user = self.users.get(user_id)
            if user:
                now = next_timestamp(user.updated_at)
                self.users[user_id] = user.model_copy(update={"last_login": now, "updated_at": now})

    # assets
    def get_assets(self) -> List[AssetOut]:
        with self._lock:
            return newest_first(self.assets.values())

    def get_asset(self, asset_id: int) -> Optional[AssetOut]:
        return self.assets.get(asset_id)

    def create_asset(self, fields: Mapping) -> AssetOut:
        data = pick(fields, ASSET_FIELDS)
        if not data.get("status"):
            data["status"] = "active"
        check_required("Asset", data, ASSET_REQUIRED)
        with self._lock:
            self._check_voucher_unique(data)
            now = utc_now_naive()
            asset = AssetOut(id=self._next_id("asset"), created_at=now, updated_at=now, **data)
            self.assets[asset.id] = asset
        return asset

    def update_asset(self, asset_id: int, fields: Mapping) -> Optional[AssetOut]:
        data = pick(fields, ASSET_FIELDS)
        check_required("Asset", data, ASSET_REQUIRED, partial=True)
        with self._lock:
            asset = self.assets.get(asset_id)
            if not asset:
                return None
            self._check_voucher_unique(data, exclude_id=asset_id)
            updated = AssetOut.model_validate({**asset.model_dump(), **data, "updated_at": next_timestamp(asset.updated_at)})
            self.assets[asset_id] = updated
            return updated

    def delete_asset(self, asset_id: int) -> bool:
        with self._lock:
            return self.assets.pop(asset_id, None) is not None

    # transfers
    def get_transfers(self) -> List[TransferOut]:
        with self._lock:
            return newest_first(self.transfers.values())

    def get_transfers_by_asset(self, asset_id: int) -> List[TransferOut]:
        with self._lock:
            return newest_first(t for t in self.transfers.values() if t.asset_id == asset_id)

    def create_transfer(self, fields: Mapping) -> TransferOut:
        data = pick(fields, TRANSFER_FIELDS)
        check_required("Transfer", data, TRANSFER_REQUIRED)
        with self._lock:
            if data.get("asset_id") not in self.assets:
                raise ForeignKeyError("Asset", data.get("asset_id"))
            transfer = TransferOut(id=self._next_id("transfer"), created_at=utc_now_naive(), **data)
            self.transfers[transfer.id] = transfer
        return transfer

    # repairs
    def get_repairs(self) -> List[RepairOut]:
        with self._lock:
            return newest_first(self.repairs.values())

    def get_active_repairs(self) -> List[RepairOut]:
        with self._lock:
            return newest_first(r for r in self.repairs.values() if r.status != "completed")

    def get_repairs_by_asset(self, asset_id: int) -> List[RepairOut]:
        with self._lock:
            return newest_first(r for r in self.repairs.values() if r.asset_id == asset_id)

    def create_repair(self, fields: Mapping) -> RepairOut:
        data = pick(fields, REPAIR_FIELDS)
        data.pop("actual_return_date", None)
        if not data.get("status"):
            data["status"] = "in_repair"
        check_required("Repair", data, REPAIR_REQUIRED)
        with self._lock:
            if data.get("asset_id") not in self.assets:
                raise ForeignKeyError("Asset", data.get("asset_id"))
            now = utc_now_naive()
            repair = RepairOut(id=self._next_id("repair"), sent_date=now, created_at=now, **data)
            self.repairs[repair.id] = repair
        return repair

    def update_repair(self, repair_id: int, fields: Mapping) -> Optional[RepairOut]:
        data = pick(fields, REPAIR_FIELDS)
        data.pop("asset_id", None)
        check_required("Repair", data, REPAIR_REQUIRED, partial=True)
        with self._lock:
            repair = self.repairs.get(repair_id)
            if not repair:
                return None
            updated = RepairOut.model_validate({**repair.model_dump(), **data})
            self.repairs[repair_id] = updated
            return updated
