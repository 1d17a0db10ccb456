# models.py
# SQLAlchemy models defining database tables (users, profiles, KYC submissions, audit logs).

import uuid
from datetime import datetime, timezone

from sqlalchemy import Boolean, Column, Date, DateTime, ForeignKey, Integer, JSON, String, Text, event

from .database import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_uuid() -> str:
    return str(uuid.uuid4())


class User(Base):
    """Auth identity. Owned by the auth service, never exposed directly."""
    __tablename__ = "users"

    id = Column(String(36), primary_key=True, default=new_uuid)
    email = Column(String(320), unique=True, index=True, nullable=False)
    hashed_password = Column(String, nullable=False)
    user_metadata = Column(JSON, default=dict)
    email_redirect_to = Column(String, nullable=True)
    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)


class Profile(Base):
    __tablename__ = "profiles"

    id = Column(String(36), ForeignKey("users.id"), primary_key=True)
    email = Column(String(320), nullable=True)
    role = Column(String(20), default="user", nullable=False)
    full_name = Column(String(200), default="")
    avatar_url = Column(String, default="")
    dob = Column(Date, nullable=True)
    address = Column(String(500), default="")
    phone = Column(String(30), default="")
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)


class KYCSubmission(Base):
    __tablename__ = "kyc_submissions"

    id = Column(String(36), primary_key=True, default=new_uuid)
    user_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    first_name = Column(String(100), default="")
    last_name = Column(String(100), default="")
    dob = Column(Date, nullable=True)
    address = Column(String(500), default="")
    document_type = Column(String(50), default="", index=True)
    document_number = Column(String(100), default="")
    status = Column(String(20), default="pending", nullable=False, index=True)
    # Append-only list of document metadata records (opaque storage references)
    documents = Column(JSON, default=list)
    created_at = Column(DateTime(timezone=True), default=utcnow, index=True)
    updated_at = Column(DateTime(timezone=True), default=utcnow)


class KYCAuditLog(Base):
    """
    Immutable trail of reviewer decisions.

    One row per decision event. submission_id is not a foreign key so the
    trail outlives a deleted submission.
    """
    __tablename__ = "kyc_audit_logs"

    id = Column(Integer, primary_key=True, index=True)
    submission_id = Column(String(36), nullable=False, index=True)
    actor_user_id = Column(String(36), nullable=True, index=True)
    action = Column(String(20), nullable=False)  # approved, rejected, request_info
    notes = Column(Text, default="")
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)


class TokenBlacklist(Base):
    __tablename__ = "token_blacklist"

    id = Column(Integer, primary_key=True, index=True)
    token = Column(String, unique=True, index=True, nullable=False)
    blacklisted_at = Column(DateTime(timezone=True), default=utcnow)


@event.listens_for(KYCAuditLog, "before_update")
def _refuse_audit_update(mapper, connection, target):
    raise ValueError(f"Audit log entry {target.id} is immutable")


@event.listens_for(KYCAuditLog, "before_delete")
def _refuse_audit_delete(mapper, connection, target):
    raise ValueError(f"Audit log entry {target.id} cannot be deleted")
