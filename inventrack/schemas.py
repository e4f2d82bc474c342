import re
from datetime import date as Date, datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, SecretStr, field_validator

ROLES = ["admin", "manager", "operator", "viewer"]
ASSET_STATUSES = ["active", "transferred", "in_repair", "disposed"]
REPAIR_STATUSES = ["in_repair", "diagnosed", "completed"]

ROLE_PATTERN = "^(admin|manager|operator|viewer)$"
ASSET_STATUS_PATTERN = "^(active|transferred|in_repair|disposed)$"
REPAIR_STATUS_PATTERN = "^(in_repair|diagnosed|completed)$"
EMAIL_REGEX = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")

# Columns that are NOT NULL in storage; updates may omit them but never null them.
USER_REQUIRED = ("username", "email", "password", "role", "is_active")
ASSET_REQUIRED = ("voucher_no", "date", "donor", "current_location", "status")
REPAIR_REQUIRED = ("issue", "status")
TRANSFER_REQUIRED = ("from_location", "to_location", "to_custodian", "transfer_date")


def _check_email(value: Optional[str]) -> Optional[str]:
    if value is not None and not EMAIL_REGEX.match(value):
        raise ValueError("Invalid email format")
    return value


def _not_null(value):
    if value is None:
        raise ValueError("Field may not be null")
    return value


# ---- users ----

class UserCreate(BaseModel):
    username: str = Field(min_length=3, max_length=120)
    email: str
    password: str = Field(min_length=6, max_length=128)
    role: str = Field("viewer", pattern=ROLE_PATTERN)
    department: Optional[str] = None
    is_active: bool = True

    @field_validator("email")
    @classmethod
    def validate_email(cls, value: str) -> str:
        return _check_email(value)


class UserUpdate(BaseModel):
    username: Optional[str] = Field(None, min_length=3, max_length=120)
    email: Optional[str] = None
    password: Optional[str] = Field(None, min_length=6, max_length=128)
    role: Optional[str] = Field(None, pattern=ROLE_PATTERN)
    department: Optional[str] = None
    is_active: Optional[bool] = None

    @field_validator(*USER_REQUIRED)
    @classmethod
    def reject_null(cls, value):
        return _not_null(value)

    @field_validator("email")
    @classmethod
    def validate_email(cls, value: Optional[str]) -> Optional[str]:
        return _check_email(value)


class UserOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    id: int
    username: str
    email: str
    role: str
    department: Optional[str] = None
    is_active: bool = True
    last_login: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class UserRecord(BaseModel):
    """Stored user row, including credentials. Never returned from an endpoint."""

    model_config = ConfigDict(from_attributes=True)
    id: int
    username: str
    email: str
    password: str
    role: str = "viewer"
    role_password: Optional[str] = None
    department: Optional[str] = None
    is_active: bool = True
    last_login: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime

    def public(self) -> UserOut:
        return UserOut(
            id=self.id,
            username=self.username,
            email=self.email,
            role=self.role,
            department=self.department,
            is_active=self.is_active,
            last_login=self.last_login,
            created_at=self.created_at,
            updated_at=self.updated_at,
        )


class AuthenticatedUser(BaseModel):
    user: UserOut
    role_login: str
    role_secret: SecretStr


USER_FIELDS = ("username", "email", "password", "role", "role_password", "department", "is_active")


# ---- assets ----

class AssetCreate(BaseModel):
    voucher_no: str = Field(min_length=1, max_length=120)
    date: Date
    donor: str = Field(min_length=1, max_length=255)
    current_location: str = Field(min_length=1, max_length=255)
    lost_quantity: Optional[int] = Field(None, ge=0)
    lost_amount: Optional[float] = Field(None, ge=0)
    handover_person: Optional[str] = None
    handover_organization: Optional[str] = None
    transfer_recipient: Optional[str] = None
    transfer_location: Optional[str] = None
    is_donated: Optional[bool] = None
    project_name: Optional[str] = None
    is_insured: Optional[bool] = None
    policy_number: Optional[str] = None
    warranty: Optional[str] = None
    warranty_validity: Optional[Date] = None
    grn: Optional[str] = None
    status: str = Field("active", pattern=ASSET_STATUS_PATTERN)


class AssetUpdate(BaseModel):
    voucher_no: Optional[str] = Field(None, min_length=1, max_length=120)
    date: Optional[Date] = None
    donor: Optional[str] = None
    current_location: Optional[str] = None
    lost_quantity: Optional[int] = Field(None, ge=0)
    lost_amount: Optional[float] = Field(None, ge=0)
    handover_person: Optional[str] = None
    handover_organization: Optional[str] = None
    transfer_recipient: Optional[str] = None
    transfer_location: Optional[str] = None
    is_donated: Optional[bool] = None
    project_name: Optional[str] = None
    is_insured: Optional[bool] = None
    policy_number: Optional[str] = None
    warranty: Optional[str] = None
    warranty_validity: Optional[Date] = None
    grn: Optional[str] = None
    status: Optional[str] = Field(None, pattern=ASSET_STATUS_PATTERN)

    @field_validator(*ASSET_REQUIRED)
    @classmethod
    def reject_null(cls, value):
        return _not_null(value)


class AssetOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    id: int
    voucher_no: str
    date: Date
    donor: str
    current_location: str
    lost_quantity: Optional[int] = None
    lost_amount: Optional[float] = None
    handover_person: Optional[str] = None
    handover_organization: Optional[str] = None
    transfer_recipient: Optional[str] = None
    transfer_location: Optional[str] = None
    is_donated: Optional[bool] = None
    project_name: Optional[str] = None
    is_insured: Optional[bool] = None
    policy_number: Optional[str] = None
    warranty: Optional[str] = None
    warranty_validity: Optional[Date] = None
    grn: Optional[str] = None
    status: str = "active"
    created_at: datetime
    updated_at: datetime


ASSET_FIELDS = tuple(AssetCreate.model_fields)


# ---- transfers ----

class TransferCreate(BaseModel):
    asset_id: int
    to_location: str = Field(min_length=1, max_length=255)
    to_custodian: str = Field(min_length=1, max_length=255)
    from_location: Optional[str] = None
    from_custodian: Optional[str] = None
    to_organization: Optional[str] = None
    reason: Optional[str] = None
    transfer_date: Date


class TransferOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    id: int
    asset_id: int
    from_location: str
    to_location: str
    from_custodian: Optional[str] = None
    to_custodian: str
    to_organization: Optional[str] = None
    reason: Optional[str] = None
    transfer_date: Date
    created_at: datetime


TRANSFER_FIELDS = tuple(TransferCreate.model_fields)


# ---- repairs ----

class RepairCreate(BaseModel):
    asset_id: int
    issue: str = Field(min_length=1, max_length=1000)
    repair_center: Optional[str] = None
    expected_return_date: Optional[Date] = None
    status: str = Field("in_repair", pattern=REPAIR_STATUS_PATTERN)
    cost: Optional[float] = Field(None, ge=0)


class RepairUpdate(BaseModel):
    issue: Optional[str] = Field(None, min_length=1, max_length=1000)
    repair_center: Optional[str] = None
    expected_return_date: Optional[Date] = None
    actual_return_date: Optional[Date] = None
    status: Optional[str] = Field(None, pattern=REPAIR_STATUS_PATTERN)
    cost: Optional[float] = Field(None, ge=0)

    @field_validator(*REPAIR_REQUIRED)
    @classmethod
    def reject_null(cls, value):
        return _not_null(value)


class RepairOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    id: int
    asset_id: int
    issue: str
    repair_center: Optional[str] = None
    expected_return_date: Optional[Date] = None
    actual_return_date: Optional[Date] = None
    status: str = "in_repair"
    cost: Optional[float] = None
    sent_date: datetime
    created_at: datetime


REPAIR_FIELDS = tuple(RepairUpdate.model_fields) + ("asset_id",)


# ---- auth ----

class LoginIn(BaseModel):
    email: str = Field(min_length=1, description="Email address or username")
    password: str = Field(min_length=1)


class LoginOut(BaseModel):
    user: UserOut
    access_token: str
    token_type: str = "bearer"


class RegisterIn(BaseModel):
    username: str = Field(min_length=3, max_length=120)
    email: str
    password: str = Field(min_length=6, max_length=128)
    invitation_code: Optional[str] = None
    department: Optional[str] = None

    @field_validator("email")
    @classmethod
    def validate_email(cls, value: str) -> str:
        return _check_email(value)


class RegisterOut(BaseModel):
    message: str
    user: UserOut


class MeOut(BaseModel):
    user: UserOut


class MessageOut(BaseModel):
    message: str


class ConnectionStatusOut(BaseModel):
    auth_connection: bool
    active_sessions: int
    session_list: List[str]
