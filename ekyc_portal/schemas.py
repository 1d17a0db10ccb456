# schemas.py
# Pydantic models for request/response validation and serialization.

from datetime import date, datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, EmailStr, Field, field_validator

DEFAULT_ROLE = "user"
ADMIN_ROLE = "admin"


class SubmissionStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class AuditAction(str, Enum):
    APPROVED = "approved"
    REJECTED = "rejected"
    REQUEST_INFO = "request_info"


class ChangeType(str, Enum):
    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


# -----------------------
#  AUTH
# -----------------------
class AuthUser(BaseModel):
    id: str
    email: str
    user_metadata: Dict[str, Any] = Field(default_factory=dict)

    class Config:
        from_attributes = True

    @field_validator("user_metadata", mode="before")
    @classmethod
    def _metadata_default(cls, value):
        return value or {}


class AuthSession(BaseModel):
    access_token: str
    token_type: str = "bearer"
    expires_at: datetime
    user: AuthUser


class SignUpRequest(BaseModel):
    email: EmailStr
    password: str = Field(min_length=8)
    full_name: Optional[str] = None


class Token(BaseModel):
    access_token: str
    token_type: str
    user_id: str
    email: str
    role: str
    is_admin: bool


# -----------------------
#  PROFILES
# -----------------------
class Profile(BaseModel):
    id: str
    email: Optional[str] = None
    role: str = DEFAULT_ROLE
    full_name: Optional[str] = ""
    avatar_url: Optional[str] = ""
    dob: Optional[date] = None
    address: Optional[str] = ""
    phone: Optional[str] = ""

    class Config:
        from_attributes = True


class ProfileUpdate(BaseModel):
    full_name: Optional[str] = None
    dob: Optional[str] = None
    address: Optional[str] = None
    phone: Optional[str] = None


class SessionInfo(BaseModel):
    user: Optional[AuthUser] = None
    profile: Optional[Profile] = None
    role: Optional[str] = None
    is_authenticated: bool = False
    is_admin: bool = False


# -----------------------
#  KYC SUBMISSIONS
# -----------------------
class DocumentMetadata(BaseModel):
    path: str
    bucket: str
    content_type: Optional[str] = None
    size: int = 0
    original_name: str = ""
    doc_type: str = ""
    uploaded_at: datetime
    visibility: str = "private"


class SubmissionCreate(BaseModel):
    """Applicant-editable fields. status and user_id are never taken from the caller."""
    first_name: Optional[str] = ""
    last_name: Optional[str] = ""
    dob: Optional[str] = None
    address: Optional[str] = ""
    document_type: Optional[str] = ""
    document_number: Optional[str] = ""


class SubmissionUpdate(BaseModel):
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    dob: Optional[str] = None
    address: Optional[str] = None
    document_type: Optional[str] = None
    document_number: Optional[str] = None
    status: Optional[str] = None


class Submission(BaseModel):
    id: str
    user_id: str
    first_name: Optional[str] = ""
    last_name: Optional[str] = ""
    dob: Optional[date] = None
    address: Optional[str] = ""
    document_type: Optional[str] = ""
    document_number: Optional[str] = ""
    status: str = SubmissionStatus.PENDING.value
    documents: List[DocumentMetadata] = Field(default_factory=list)
    created_at: datetime
    updated_at: Optional[datetime] = None

    class Config:
        from_attributes = True

    @field_validator("documents", mode="before")
    @classmethod
    def _documents_default(cls, value):
        return value or []


class SubmissionFilters(BaseModel):
    status: str = "all"  # all | pending | approved | rejected
    document_type: str = "all"  # all | passport | driver_license | national_id | ...
    search: str = ""  # first name, last name or document number


class SubmissionPage(BaseModel):
    items: List[Submission]
    total: int
    page: int
    page_size: int


# -----------------------
#  REVIEW
# -----------------------
class ReviewRequest(BaseModel):
    notes: Optional[str] = None


class AuditLogEntry(BaseModel):
    id: int
    submission_id: str
    actor_user_id: Optional[str] = None
    action: str
    notes: Optional[str] = ""
    created_at: datetime

    class Config:
        from_attributes = True


class ReviewResponse(BaseModel):
    submission: Submission
    audit_entry: Optional[AuditLogEntry] = None
    audit_error: Optional[str] = None


# -----------------------
#  REALTIME
# -----------------------
class ChangeEvent(BaseModel):
    """Row-level change notification, shaped like the change-feed payloads."""
    event_type: ChangeType
    table: str
    new: Dict[str, Any] = Field(default_factory=dict)
    old: Dict[str, Any] = Field(default_factory=dict)
    commit_timestamp: Optional[datetime] = None
