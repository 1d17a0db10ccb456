"""
KYC Submission Store - local cache of submissions kept in step with the backend.

Owner view: all of the caller's submissions, newest first, merged with realtime
change events. Reviewer view: filtered, paginated pages of every submission.

Merge law: a change event always wins over the cached copy of the same record
(shallow per-field replacement), and the cache is kept sorted by created_at
descending after every merge.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional, Union

from pydantic import BaseModel
from sqlalchemy.exc import SQLAlchemyError

from . import crud
from .backend import Backend
from .errors import (AdminAccessRequiredError, NotAuthenticatedError, NotFoundError, OperationResult,
                     PortalError, StoreError)
from .realtime import Channel
from .schemas import (ChangeEvent, ChangeType, DocumentMetadata, Submission, SubmissionFilters,
                      SubmissionPage, SubmissionStatus)
from .session_manager import SessionManager
from .storage_service import ALLOWED_CONTENT_TYPES, build_document_path
from .validators import SUBMISSION_FIELD_LIMITS, clean_text, parse_dob, validate_document

log = logging.getLogger(__name__)

Fields = Union[Mapping[str, Any], BaseModel]


def _as_dict(fields: Optional[Fields]) -> Dict[str, Any]:
    if fields is None:
        return {}
    if isinstance(fields, BaseModel):
        return fields.model_dump(exclude_unset=True)
    return dict(fields)


def _created_at_key(submission: Submission) -> datetime:
    created_at = submission.created_at
    if created_at.tzinfo is None:
        created_at = created_at.replace(tzinfo=timezone.utc)
    return created_at


def clean_submission_fields(fields: Fields, partial: bool = False) -> Dict[str, Any]:
    """
    Trim and check the applicant-editable fields.

    Create (partial=False) fills every field; update only touches the keys it
    was given. Raises InvalidDateError / FieldTooLongError before any write.
    """
    raw = _as_dict(fields)
    clean: Dict[str, Any] = {}
    for field, limit in SUBMISSION_FIELD_LIMITS.items():
        if partial and field not in raw:
            continue
        clean[field] = clean_text(field, raw.get(field), limit)
    if not partial or "dob" in raw:
        clean["dob"] = parse_dob(raw.get("dob"))
    if partial and "status" in raw:
        clean["status"] = str(raw["status"] or "").strip().lower()
    return clean


class SubmissionStore:
    """Service for managing the caller's KYC submissions"""

    def __init__(self, session: SessionManager, backend: Backend):
        self._session = session
        self._backend = backend
        self._submissions: List[Submission] = []
        self._channel: Optional[Channel] = None
        self.loading = False
        self.error: Optional[PortalError] = None

    @property
    def submissions(self) -> List[Submission]:
        return list(self._submissions)

    @property
    def realtime_active(self) -> bool:
        return self._channel is not None

    def _fail(self, error: PortalError) -> OperationResult:
        self.error = error
        return OperationResult.failure(error)

    # -----------------------
    #  LOCAL CACHE
    # -----------------------
    def _resort(self):
        self._submissions.sort(key=_created_at_key, reverse=True)

    def _index_of(self, submission_id: str) -> int:
        for index, submission in enumerate(self._submissions):
            if submission.id == submission_id:
                return index
        return -1

    def _merge(self, record: Submission):
        """Replace the cached record with the same id, or put the new one in front."""
        index = self._index_of(record.id)
        if index >= 0:
            self._submissions[index] = record
        else:
            self._submissions.insert(0, record)
        self._resort()

    def apply_change(self, event: ChangeEvent):
        """Merge one realtime change event into the cache."""
        if event.event_type == ChangeType.INSERT:
            self._merge(Submission.model_validate(event.new))
        elif event.event_type == ChangeType.UPDATE:
            index = self._index_of(event.new.get("id"))
            if index < 0:
                return
            current = self._submissions[index].model_dump()
            self._submissions[index] = Submission.model_validate({**current, **event.new})
            self._resort()
        elif event.event_type == ChangeType.DELETE:
            self._submissions = [s for s in self._submissions if s.id != event.old.get("id")]

    def reset(self):
        self._submissions = []
        self.error = None

    # -----------------------
    #  REALTIME
    # -----------------------
    def subscribe_realtime(self, owner_id: Optional[str] = None) -> bool:
        """Open the change-feed channel for the owner. No-op while one is open."""
        owner_id = owner_id or self._session.user_id
        if not owner_id:
            return False
        if self._channel is not None:
            return False
        self._channel = self._backend.feed.channel(
            f"kyc_submissions_user_{owner_id}",
            crud.SUBMISSIONS_TABLE,
            self.apply_change,
            filter={"user_id": owner_id},
        )
        return True

    def unsubscribe_realtime(self) -> bool:
        """Close the change-feed channel if present. Safe to call repeatedly."""
        if self._channel is None:
            return False
        channel, self._channel = self._channel, None
        return self._backend.feed.remove_channel(channel)

    async def sync(self, realtime: bool = True):
        """Owner changed: drop the old channel and cache, then refetch and resubscribe."""
        self.unsubscribe_realtime()
        self.reset()
        if self._session.user_id:
            await self.fetch_my_submissions()
            if realtime:
                self.subscribe_realtime()

    # -----------------------
    #  OWNER OPERATIONS
    # -----------------------
    async def fetch_my_submissions(self) -> OperationResult[List[Submission]]:
        """Fetches all KYC submissions for the current user sorted by created_at desc."""
        user_id = self._session.user_id
        if not user_id:
            self._submissions = []
            return self._fail(NotAuthenticatedError())
        self.loading = True
        self.error = None
        try:
            async with self._backend.sessionmaker() as db:
                rows = await crud.list_submissions(db, user_id=user_id)
        except SQLAlchemyError as exc:
            self._submissions = []
            return self._fail(StoreError.from_exception(exc))
        finally:
            self.loading = False
        self._submissions = [Submission.model_validate(row) for row in rows]
        self._resort()
        return OperationResult.success(self.submissions)

    async def create(self, fields: Fields) -> OperationResult[Submission]:
        """Creates a new submission for the current user with status 'pending'."""
        user_id = self._session.user_id
        if not user_id:
            return self._fail(NotAuthenticatedError())
        values = clean_submission_fields(fields)
        values["user_id"] = user_id
        values["status"] = SubmissionStatus.PENDING.value

        self.loading = True
        self.error = None
        try:
            async with self._backend.sessionmaker() as db:
                row = await crud.insert_submission(db, values, feed=self._backend.feed)
        except SQLAlchemyError as exc:
            return self._fail(StoreError.from_exception(exc))
        finally:
            self.loading = False
        record = Submission.model_validate(row)
        self._merge(record)
        log.info(f"Submission {record.id} created by {user_id}")
        return OperationResult.success(record)

    async def update(self, submission_id: str, fields: Fields) -> OperationResult[Submission]:
        """Updates a submission that belongs to the current user."""
        user_id = self._session.user_id
        if not user_id:
            return self._fail(NotAuthenticatedError())
        if not submission_id:
            return self._fail(PortalError("Submission id is required", code="missing_id"))
        values = clean_submission_fields(fields, partial=True)

        self.loading = True
        self.error = None
        try:
            async with self._backend.sessionmaker() as db:
                row = await crud.update_submission(db, submission_id, values, user_id=user_id,
                                                   feed=self._backend.feed)
        except SQLAlchemyError as exc:
            return self._fail(StoreError.from_exception(exc))
        finally:
            self.loading = False
        if row is None:
            return self._fail(NotFoundError(f"Submission {submission_id} not found"))
        record = Submission.model_validate(row)
        self._merge(record)
        return OperationResult.success(record)

    async def delete(self, submission_id: str) -> OperationResult[str]:
        """Deletes a submission that belongs to the current user."""
        user_id = self._session.user_id
        if not user_id:
            return self._fail(NotAuthenticatedError())
        if not submission_id:
            return self._fail(PortalError("Submission id is required", code="missing_id"))

        self.loading = True
        self.error = None
        try:
            async with self._backend.sessionmaker() as db:
                deleted = await crud.delete_submission(db, submission_id, user_id=user_id,
                                                       feed=self._backend.feed)
        except SQLAlchemyError as exc:
            return self._fail(StoreError.from_exception(exc))
        finally:
            self.loading = False
        if deleted is None:
            return self._fail(NotFoundError(f"Submission {submission_id} not found"))
        self._submissions = [s for s in self._submissions if s.id != submission_id]
        log.info(f"Submission {submission_id} deleted by {user_id}")
        return OperationResult.success(submission_id)

    async def attach_document(self, submission_id: str, filename: str, content: bytes,
                              content_type: Optional[str], doc_type: str) -> OperationResult[Submission]:
        """
        Upload a document to the private bucket and append its metadata to the
        submission's documents list.
        """
        user_id = self._session.user_id
        if not user_id:
            return self._fail(NotAuthenticatedError())
        if not submission_id:
            return self._fail(PortalError("No submission found. Please create a KYC submission first.",
                                          code="missing_id"))
        settings = self._backend.settings
        validate_document(filename, len(content), content_type, ALLOWED_CONTENT_TYPES,
                          settings.MAX_DOCUMENT_SIZE)

        try:
            async with self._backend.sessionmaker() as db:
                current = await crud.get_submission(db, submission_id, user_id=user_id)
        except SQLAlchemyError as exc:
            return self._fail(StoreError.from_exception(exc))
        if current is None:
            return self._fail(NotFoundError("Submission not found to attach document."))

        storage = self._backend.storage
        path = build_document_path(user_id, submission_id, doc_type, filename)
        try:
            storage.upload(path, content, content_type=content_type, upsert=False)
        except StoreError as exc:
            return self._fail(exc)

        document = DocumentMetadata(
            path=path,
            bucket=storage.bucket,
            content_type=content_type,
            size=len(content),
            original_name=filename,
            doc_type=doc_type,
            uploaded_at=datetime.now(timezone.utc),
        )
        self.loading = True
        self.error = None
        try:
            async with self._backend.sessionmaker() as db:
                row = await crud.append_submission_document(db, submission_id, document.model_dump(mode="json"),
                                                            user_id=user_id, feed=self._backend.feed)
        except SQLAlchemyError as exc:
            self._discard_upload(path)
            return self._fail(StoreError.from_exception(exc))
        finally:
            self.loading = False
        if row is None:
            self._discard_upload(path)
            return self._fail(NotFoundError("Submission not found to attach document."))
        record = Submission.model_validate(row)
        self._merge(record)
        log.info(f"Document {path} attached to submission {submission_id}")
        return OperationResult.success(record)

    def _discard_upload(self, path: str):
        """Drop a blob whose metadata never made it onto the submission."""
        try:
            self._backend.storage.remove(path)
        except StoreError as exc:
            log.warning(f"Orphaned document {path} could not be removed: {exc}")
            return
        log.warning(f"Removed document {path} after its metadata write failed")

    # -----------------------
    #  REVIEWER VIEW
    # -----------------------
    async def list_for_review(self, filters: Optional[SubmissionFilters] = None, page: int = 1,
                              page_size: Optional[int] = None) -> OperationResult[SubmissionPage]:
        """
        Fetch submissions for reviewers with filters and pagination.
        The total is counted independently of the page slice.
        """
        if not self._session.is_authenticated or not self._session.is_admin:
            return self._fail(AdminAccessRequiredError())
        filters = filters or SubmissionFilters()
        page = max(int(page or 1), 1)
        page_size = page_size or self._backend.settings.ADMIN_PAGE_SIZE

        self.loading = True
        self.error = None
        try:
            async with self._backend.sessionmaker() as db:
                total = await crud.count_submissions(db, filters=filters)
                rows = await crud.list_submissions(db, filters=filters,
                                                   skip=(page - 1) * page_size, limit=page_size)
        except SQLAlchemyError as exc:
            return self._fail(StoreError.from_exception(exc))
        finally:
            self.loading = False
        return OperationResult.success(SubmissionPage(
            items=[Submission.model_validate(row) for row in rows],
            total=total,
            page=page,
            page_size=page_size,
        ))
