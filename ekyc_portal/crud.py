# crud.py
# Database operations (Create, Read, Update, Delete) for the portal tables.
# Every committed write on a watched table is published to the change feed.

from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from . import models
from .models import utcnow
from .realtime import ChangeFeed
from .schemas import ChangeType, SubmissionFilters

SUBMISSIONS_TABLE = models.KYCSubmission.__tablename__
AUDIT_TABLE = models.KYCAuditLog.__tablename__
PROFILES_TABLE = models.Profile.__tablename__

# Columns the update path never writes; documents only grow through append_submission_document
IMMUTABLE_SUBMISSION_COLUMNS = {"id", "user_id", "created_at", "documents"}

DOCUMENT_APPEND_ATTEMPTS = 5


def row_to_dict(row) -> Dict[str, Any]:
    return {column.name: getattr(row, column.name) for column in row.__table__.columns}


def _publish(feed: Optional[ChangeFeed], table: str, event_type: ChangeType,
             new: Optional[dict] = None, old: Optional[dict] = None):
    if feed is not None:
        feed.publish(table, event_type, new=new, old=old)


# -----------------------
#  USERS (auth collaborator)
# -----------------------
async def get_user(db: AsyncSession, user_id: str):
    result = await db.execute(select(models.User).filter(models.User.id == user_id))
    return result.scalar_one_or_none()


async def get_user_by_email(db: AsyncSession, email: str):
    result = await db.execute(select(models.User).filter(models.User.email == email.strip().lower()))
    return result.scalar_one_or_none()


async def create_user(db: AsyncSession, email: str, hashed_password: str,
                      user_metadata: Optional[dict] = None, email_redirect_to: Optional[str] = None):
    db_user = models.User(
        email=email.strip().lower(),
        hashed_password=hashed_password,
        user_metadata=user_metadata or {},
        email_redirect_to=email_redirect_to,
    )
    db.add(db_user)
    await db.commit()
    await db.refresh(db_user)
    return db_user


async def blacklist_token(db: AsyncSession, token: str):
    entry = models.TokenBlacklist(token=token)
    db.add(entry)
    await db.commit()
    return entry


async def is_token_blacklisted(db: AsyncSession, token: str) -> bool:
    result = await db.execute(
        select(models.TokenBlacklist.id).where(models.TokenBlacklist.token == token).limit(1)
    )
    return result.scalar_one_or_none() is not None


# -----------------------
#  PROFILES
# -----------------------
async def get_profile(db: AsyncSession, user_id: str):
    result = await db.execute(select(models.Profile).filter(models.Profile.id == user_id))
    return result.scalar_one_or_none()


async def create_profile(db: AsyncSession, values: Dict[str, Any], feed: Optional[ChangeFeed] = None):
    db_profile = models.Profile(**values)
    db.add(db_profile)
    await db.commit()
    await db.refresh(db_profile)
    _publish(feed, PROFILES_TABLE, ChangeType.INSERT, new=row_to_dict(db_profile))
    return db_profile


async def update_profile(db: AsyncSession, user_id: str, values: Dict[str, Any],
                         feed: Optional[ChangeFeed] = None):
    db_profile = await get_profile(db, user_id)
    if db_profile is None:
        return None
    old = row_to_dict(db_profile)
    for key, value in values.items():
        if key in ("id", "role"):
            continue
        setattr(db_profile, key, value)
    await db.commit()
    await db.refresh(db_profile)
    _publish(feed, PROFILES_TABLE, ChangeType.UPDATE, new=row_to_dict(db_profile), old=old)
    return db_profile


async def set_profile_role(db: AsyncSession, user_id: str, role: str):
    db_profile = await get_profile(db, user_id)
    if db_profile is None:
        return None
    db_profile.role = role
    await db.commit()
    await db.refresh(db_profile)
    return db_profile


# -----------------------
#  KYC SUBMISSIONS
# -----------------------
def _escape_like(text: str) -> str:
    return text.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def apply_submission_filters(stmt, filters: Optional[SubmissionFilters]):
    if filters is None:
        return stmt
    if filters.status and filters.status != "all":
        stmt = stmt.where(models.KYCSubmission.status == filters.status)
    if filters.document_type and filters.document_type != "all":
        stmt = stmt.where(models.KYCSubmission.document_type == filters.document_type)
    search = (filters.search or "").strip()
    if search:
        pattern = f"%{_escape_like(search)}%"
        stmt = stmt.where(or_(
            models.KYCSubmission.first_name.ilike(pattern, escape="\\"),
            models.KYCSubmission.last_name.ilike(pattern, escape="\\"),
            models.KYCSubmission.document_number.ilike(pattern, escape="\\"),
        ))
    return stmt


async def list_submissions(db: AsyncSession, user_id: Optional[str] = None,
                           filters: Optional[SubmissionFilters] = None,
                           skip: int = 0, limit: Optional[int] = None) -> List[models.KYCSubmission]:
    stmt = select(models.KYCSubmission)
    if user_id is not None:
        stmt = stmt.where(models.KYCSubmission.user_id == user_id)
    stmt = apply_submission_filters(stmt, filters)
    stmt = stmt.order_by(models.KYCSubmission.created_at.desc()).offset(skip)
    if limit is not None:
        stmt = stmt.limit(limit)
    result = await db.execute(stmt)
    return list(result.scalars().all())


async def count_submissions(db: AsyncSession, user_id: Optional[str] = None,
                            filters: Optional[SubmissionFilters] = None) -> int:
    stmt = select(func.count(models.KYCSubmission.id))
    if user_id is not None:
        stmt = stmt.where(models.KYCSubmission.user_id == user_id)
    stmt = apply_submission_filters(stmt, filters)
    result = await db.execute(stmt)
    return result.scalar() or 0


async def get_submission(db: AsyncSession, submission_id: str, user_id: Optional[str] = None):
    stmt = select(models.KYCSubmission).where(models.KYCSubmission.id == submission_id)
    if user_id is not None:
        stmt = stmt.where(models.KYCSubmission.user_id == user_id)
    result = await db.execute(stmt)
    return result.scalar_one_or_none()


async def insert_submission(db: AsyncSession, values: Dict[str, Any], feed: Optional[ChangeFeed] = None):
    now = utcnow()
    db_submission = models.KYCSubmission(**values, created_at=now, updated_at=now)
    db.add(db_submission)
    await db.commit()
    await db.refresh(db_submission)
    _publish(feed, SUBMISSIONS_TABLE, ChangeType.INSERT, new=row_to_dict(db_submission))
    return db_submission


async def update_submission(db: AsyncSession, submission_id: str, values: Dict[str, Any],
                            user_id: Optional[str] = None,
                            expected_statuses: Optional[Iterable[str]] = None,
                            feed: Optional[ChangeFeed] = None):
    """
    Update one submission matched by id (and owner / current status when given).
    Returns None when no row matches the predicate.
    """
    stmt = select(models.KYCSubmission).where(models.KYCSubmission.id == submission_id)
    if user_id is not None:
        stmt = stmt.where(models.KYCSubmission.user_id == user_id)
    if expected_statuses is not None:
        stmt = stmt.where(models.KYCSubmission.status.in_(list(expected_statuses))).with_for_update()
    result = await db.execute(stmt)
    db_submission = result.scalar_one_or_none()
    if db_submission is None:
        return None

    old = row_to_dict(db_submission)
    for key, value in values.items():
        if key in IMMUTABLE_SUBMISSION_COLUMNS:
            continue
        setattr(db_submission, key, value)
    db_submission.updated_at = utcnow()
    await db.commit()
    await db.refresh(db_submission)
    _publish(feed, SUBMISSIONS_TABLE, ChangeType.UPDATE, new=row_to_dict(db_submission), old=old)
    return db_submission


async def append_submission_document(db: AsyncSession, submission_id: str, document: Dict[str, Any],
                                     user_id: Optional[str] = None, feed: Optional[ChangeFeed] = None):
    """
    Append one document record to a submission's documents list.

    The row is locked (FOR UPDATE where the backend supports it) and the write
    is conditional on updated_at still matching what was read, so concurrent
    appends never overwrite each other. Returns None when no row matches.
    """
    for _ in range(DOCUMENT_APPEND_ATTEMPTS):
        stmt = select(models.KYCSubmission).where(models.KYCSubmission.id == submission_id)
        if user_id is not None:
            stmt = stmt.where(models.KYCSubmission.user_id == user_id)
        result = await db.execute(stmt.with_for_update().execution_options(populate_existing=True))
        db_submission = result.scalar_one_or_none()
        if db_submission is None:
            return None

        old = row_to_dict(db_submission)
        documents = list(db_submission.documents or []) + [document]
        written = await db.execute(
            update(models.KYCSubmission)
            .where(models.KYCSubmission.id == submission_id)
            .where(models.KYCSubmission.updated_at == db_submission.updated_at)
            .values(documents=documents, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        if written.rowcount != 1:
            # Another writer got in between the read and the write
            await db.rollback()
            continue
        await db.commit()
        await db.refresh(db_submission)
        _publish(feed, SUBMISSIONS_TABLE, ChangeType.UPDATE, new=row_to_dict(db_submission), old=old)
        return db_submission
    raise StaleDataError(
        f"Submission {submission_id} kept changing; document not appended after {DOCUMENT_APPEND_ATTEMPTS} attempts"
    )


async def delete_submission(db: AsyncSession, submission_id: str, user_id: Optional[str] = None,
                            feed: Optional[ChangeFeed] = None) -> Optional[Dict[str, Any]]:
    db_submission = await get_submission(db, submission_id, user_id=user_id)
    if db_submission is None:
        return None
    old = row_to_dict(db_submission)
    await db.delete(db_submission)
    await db.commit()
    _publish(feed, SUBMISSIONS_TABLE, ChangeType.DELETE, old=old)
    return old


# -----------------------
#  AUDIT LOG (append-only)
# -----------------------
async def insert_audit_log(db: AsyncSession, values: Dict[str, Any], feed: Optional[ChangeFeed] = None):
    entry = models.KYCAuditLog(**values, created_at=utcnow())
    db.add(entry)
    await db.commit()
    await db.refresh(entry)
    _publish(feed, AUDIT_TABLE, ChangeType.INSERT, new=row_to_dict(entry))
    return entry


async def list_audit_logs(db: AsyncSession, submission_id: str) -> List[models.KYCAuditLog]:
    result = await db.execute(
        select(models.KYCAuditLog)
        .where(models.KYCAuditLog.submission_id == submission_id)
        .order_by(models.KYCAuditLog.created_at.asc(), models.KYCAuditLog.id.asc())
    )
    return list(result.scalars().all())
