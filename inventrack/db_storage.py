import logging
from contextlib import contextmanager
from typing import Iterator, List, Mapping, Optional

from sqlalchemy import or_
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from .errors import DuplicateRecordError, ForeignKeyError
from .models import Asset, Base, Repair, Transfer, User
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
from .storage import Storage, check_required, next_timestamp, pick, utc_now_naive

log = logging.getLogger(__name__)


def init_schema(engine: Engine) -> None:
    Base.metadata.create_all(bind=engine)


class DatabaseStorage(Storage):
    """Relational storage over SQLAlchemy. One parameterized statement per operation."""

    def __init__(self, session_factory: sessionmaker, invitation_codes: Optional[Mapping[str, str]] = None,
                 registration_enabled: bool = True, owns_engine: bool = False):
        super().__init__(invitation_codes, registration_enabled)
        self.session_factory = session_factory
        self.owns_engine = owns_engine

    @classmethod
    def from_engine(cls, engine: Engine, create_tables: bool = False, **kwargs) -> "DatabaseStorage":
        if create_tables:
            init_schema(engine)
        return cls(sessionmaker(autocommit=False, autoflush=False, bind=engine), **kwargs)

    @contextmanager
    def session(self) -> Iterator[Session]:
        db = self.session_factory()
        try:
            yield db
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def close(self) -> None:
        if self.owns_engine:
            self.session_factory.kw["bind"].dispose()

    @contextmanager
    def _unique_write(self, db: Session, entity: str, data: Mapping, candidates) -> Iterator[None]:
        """Run the write and commit; a unique-index violation becomes DuplicateRecordError."""
        try:
            yield
            db.commit()
        except IntegrityError as exc:
            db.rollback()
            message = str(exc.orig).lower()
            field_name = next((name for name in candidates if name in message), candidates[0])
            raise DuplicateRecordError(entity, field_name, data.get(field_name))

    def _check_user_unique(self, db: Session, data: Mapping, exclude_id: Optional[int] = None) -> None:
        clauses = []
        if data.get("username") is not None:
            clauses.append(User.username == data["username"])
        if data.get("email") is not None:
            clauses.append(User.email == data["email"])
        if not clauses:
            return
        query = db.query(User).filter(or_(*clauses))
        if exclude_id is not None:
            query = query.filter(User.id != exclude_id)
        existing = query.first()
        if existing:
            field_name = "username" if existing.username == data.get("username") else "email"
            raise DuplicateRecordError("User", field_name, data[field_name])

    def _check_voucher_unique(self, db: Session, data: Mapping, exclude_id: Optional[int] = None) -> None:
        if data.get("voucher_no") is None:
            return
        query = db.query(Asset.id).filter(Asset.voucher_no == data["voucher_no"])
        if exclude_id is not None:
            query = query.filter(Asset.id != exclude_id)
        if query.first():
            raise DuplicateRecordError("Asset", "voucher_no", data["voucher_no"])

    def _require_asset(self, db: Session, asset_id) -> None:
        if asset_id is None or not db.query(Asset.id).filter(Asset.id == asset_id).first():
            raise ForeignKeyError("Asset", asset_id)

    # users
    def get_users(self) -> List[UserRecord]:
        with self.session() as db:
            return [UserRecord.model_validate(u) for u in db.query(User).order_by(User.id.asc()).all()]

    def get_user(self, user_id: int) -> Optional[UserRecord]:
        with self.session() as db:
            user = db.query(User).filter(User.id == user_id).first()
            return UserRecord.model_validate(user) if user else None

    def get_user_by_email(self, email: str) -> Optional[UserRecord]:
        with self.session() as db:
            user = db.query(User).filter(User.email == email).first()
            return UserRecord.model_validate(user) if user else None

    def get_user_by_username(self, username: str) -> Optional[UserRecord]:
        with self.session() as db:
            user = db.query(User).filter(User.username == username).first()
            return UserRecord.model_validate(user) if user else None

    def create_user(self, fields: Mapping) -> UserRecord:
        data = pick(fields, USER_FIELDS)
        data.setdefault("role", "viewer")
        data.setdefault("is_active", True)
        check_required("User", data, USER_REQUIRED)
        with self.session() as db:
            self._check_user_unique(db, data)
            now = utc_now_naive()
            user = User(**data, created_at=now, updated_at=now)
            with self._unique_write(db, "User", data, ("username", "email")):
                db.add(user)
            db.refresh(user)
            log.info("Created user %s (id=%s, role=%s)", user.username, user.id, user.role)
            return UserRecord.model_validate(user)

    def update_user(self, user_id: int, fields: Mapping) -> Optional[UserRecord]:
        data = pick(fields, USER_FIELDS)
        check_required("User", data, USER_REQUIRED, partial=True)
        with self.session() as db:
            current = db.query(User.updated_at).filter(User.id == user_id).first()
            if not current:
                return None
            self._check_user_unique(db, data, exclude_id=user_id)
            data["updated_at"] = next_timestamp(current.updated_at)
            with self._unique_write(db, "User", data, ("username", "email")):
                count = db.query(User).filter(User.id == user_id).update(data, synchronize_session=False)
            if not count:
                return None
            return UserRecord.model_validate(db.query(User).filter(User.id == user_id).first())

    def delete_user(self, user_id: int) -> bool:
        with self.session() as db:
            count = db.query(User).filter(User.id == user_id).delete(synchronize_session=False)
            db.commit()
            return count > 0

    def update_user_last_login(self, user_id: int) -> None:
        with self.session() as db:
            now = utc_now_naive()
            db.query(User).filter(User.id == user_id).update(
                {"last_login": now, "updated_at": now}, synchronize_session=False
            )
            db.commit()

    # assets
    def get_assets(self) -> List[AssetOut]:
        with self.session() as db:
            rows = db.query(Asset).order_by(Asset.created_at.desc(), Asset.id.desc()).all()
            return [AssetOut.model_validate(a) for a in rows]

    def get_asset(self, asset_id: int) -> Optional[AssetOut]:
        with self.session() as db:
            asset = db.query(Asset).filter(Asset.id == asset_id).first()
            return AssetOut.model_validate(asset) if asset else None

    def create_asset(self, fields: Mapping) -> AssetOut:
        data = pick(fields, ASSET_FIELDS)
        if not data.get("status"):
            data["status"] = "active"
        check_required("Asset", data, ASSET_REQUIRED)
        with self.session() as db:
            self._check_voucher_unique(db, data)
            now = utc_now_naive()
            asset = Asset(**data, created_at=now, updated_at=now)
            with self._unique_write(db, "Asset", data, ("voucher_no",)):
                db.add(asset)
            db.refresh(asset)
            return AssetOut.model_validate(asset)

    def update_asset(self, asset_id: int, fields: Mapping) -> Optional[AssetOut]:
        data = pick(fields, ASSET_FIELDS)
        check_required("Asset", data, ASSET_REQUIRED, partial=True)
        with self.session() as db:
            current = db.query(Asset.updated_at).filter(Asset.id == asset_id).first()
            if not current:
                return None
            self._check_voucher_unique(db, data, exclude_id=asset_id)
            data["updated_at"] = next_timestamp(current.updated_at)
            with self._unique_write(db, "Asset", data, ("voucher_no",)):
                count = db.query(Asset).filter(Asset.id == asset_id).update(data, synchronize_session=False)
            if not count:
                return None
            return AssetOut.model_validate(db.query(Asset).filter(Asset.id == asset_id).first())

    def delete_asset(self, asset_id: int) -> bool:
        with self.session() as db:
            count = db.query(Asset).filter(Asset.id == asset_id).delete(synchronize_session=False)
            db.commit()
            return count > 0

    # transfers
    def get_transfers(self) -> List[TransferOut]:
        with self.session() as db:
            rows = db.query(Transfer).order_by(Transfer.created_at.desc(), Transfer.id.desc()).all()
            return [TransferOut.model_validate(t) for t in rows]

    def get_transfers_by_asset(self, asset_id: int) -> List[TransferOut]:
        with self.session() as db:
            rows = (
                db.query(Transfer)
                .filter(Transfer.asset_id == asset_id)
                .order_by(Transfer.created_at.desc(), Transfer.id.desc())
                .all()
            )
            return [TransferOut.model_validate(t) for t in rows]

    def create_transfer(self, fields: Mapping) -> TransferOut:
        data = pick(fields, TRANSFER_FIELDS)
        check_required("Transfer", data, TRANSFER_REQUIRED)
        with self.session() as db:
            self._require_asset(db, data.get("asset_id"))
            transfer = Transfer(**data, created_at=utc_now_naive())
            db.add(transfer)
            db.commit()
            db.refresh(transfer)
            return TransferOut.model_validate(transfer)

    # repairs
    def get_repairs(self) -> List[RepairOut]:
        with self.session() as db:
            rows = db.query(Repair).order_by(Repair.created_at.desc(), Repair.id.desc()).all()
            return [RepairOut.model_validate(r) for r in rows]

    def get_active_repairs(self) -> List[RepairOut]:
        with self.session() as db:
            rows = (
                db.query(Repair)
                .filter(Repair.status != "completed")
                .order_by(Repair.created_at.desc(), Repair.id.desc())
                .all()
            )
            return [RepairOut.model_validate(r) for r in rows]

    def get_repairs_by_asset(self, asset_id: int) -> List[RepairOut]:
        with self.session() as db:
            rows = (
                db.query(Repair)
                .filter(Repair.asset_id == asset_id)
                .order_by(Repair.created_at.desc(), Repair.id.desc())
                .all()
            )
            return [RepairOut.model_validate(r) for r in rows]

    def create_repair(self, fields: Mapping) -> RepairOut:
        data = pick(fields, REPAIR_FIELDS)
        data.pop("actual_return_date", None)
        if not data.get("status"):
            data["status"] = "in_repair"
        check_required("Repair", data, REPAIR_REQUIRED)
        with self.session() as db:
            self._require_asset(db, data.get("asset_id"))
            now = utc_now_naive()
            repair = Repair(**data, sent_date=now, created_at=now)
            db.add(repair)
            db.commit()
            db.refresh(repair)
            return RepairOut.model_validate(repair)

    def update_repair(self, repair_id: int, fields: Mapping) -> Optional[RepairOut]:
        data = pick(fields, REPAIR_FIELDS)
        data.pop("asset_id", None)
        check_required("Repair", data, REPAIR_REQUIRED, partial=True)
        with self.session() as db:
            if data:
                count = db.query(Repair).filter(Repair.id == repair_id).update(data, synchronize_session=False)
                db.commit()
                if not count:
                    return None
            repair = db.query(Repair).filter(Repair.id == repair_id).first()
            return RepairOut.model_validate(repair) if repair else None
