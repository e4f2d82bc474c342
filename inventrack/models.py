from sqlalchemy import Boolean, Column, Date, DateTime, Float, Integer, String, Text
from sqlalchemy.orm import declarative_base

Base = declarative_base()


class User(Base):
    __tablename__ = "users"
    id = Column(Integer, primary_key=True, index=True)
    username = Column(String(120), unique=True, index=True, nullable=False)
    email = Column(String(255), unique=True, index=True, nullable=False)
    password = Column(String(255), nullable=False)
    role = Column(String(50), nullable=False, default="viewer")
    # Database password of the SQL login named after the role.
    role_password = Column(String(255), nullable=True)
    department = Column(String(255), nullable=True)
    is_active = Column(Boolean, default=True, nullable=False)
    last_login = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False)
    updated_at = Column(DateTime, nullable=False)


class Asset(Base):
    __tablename__ = "assets"
    id = Column(Integer, primary_key=True, index=True)
    voucher_no = Column(String(120), unique=True, index=True, nullable=False)
    date = Column(Date, nullable=False)
    donor = Column(String(255), nullable=False)
    current_location = Column(String(255), nullable=False, index=True)
    lost_quantity = Column(Integer, nullable=True)
    lost_amount = Column(Float, nullable=True)
    handover_person = Column(String(255), nullable=True)
    handover_organization = Column(String(255), nullable=True)
    transfer_recipient = Column(String(255), nullable=True)
    transfer_location = Column(String(255), nullable=True)
    is_donated = Column(Boolean, nullable=True)
    project_name = Column(String(255), nullable=True)
    is_insured = Column(Boolean, nullable=True)
    policy_number = Column(String(255), nullable=True)
    warranty = Column(String(255), nullable=True)
    warranty_validity = Column(Date, nullable=True)
    grn = Column(String(255), nullable=True)
    status = Column(String(50), nullable=False, default="active", index=True)
    created_at = Column(DateTime, nullable=False)
    updated_at = Column(DateTime, nullable=False)


# transfers/repairs keep a plain asset_id column: deleting an asset leaves its history rows in place.
class Transfer(Base):
    __tablename__ = "transfers"
    id = Column(Integer, primary_key=True, index=True)
    asset_id = Column(Integer, nullable=False, index=True)
    from_location = Column(String(255), nullable=False)
    to_location = Column(String(255), nullable=False)
    from_custodian = Column(String(255), nullable=True)
    to_custodian = Column(String(255), nullable=False)
    to_organization = Column(String(255), nullable=True)
    reason = Column(String(500), nullable=True)
    transfer_date = Column(Date, nullable=False)
    created_at = Column(DateTime, nullable=False)


class Repair(Base):
    __tablename__ = "repairs"
    id = Column(Integer, primary_key=True, index=True)
    asset_id = Column(Integer, nullable=False, index=True)
    issue = Column(Text, nullable=False)
    repair_center = Column(String(255), nullable=True)
    expected_return_date = Column(Date, nullable=True)
    actual_return_date = Column(Date, nullable=True)
    status = Column(String(50), nullable=False, default="in_repair", index=True)
    cost = Column(Float, nullable=True)
    sent_date = Column(DateTime, nullable=False)
    created_at = Column(DateTime, nullable=False)
