"""
KYC Review Workflow
Reviewer decisions on submissions, each followed by an append-only audit entry.

RULE: the status change is authoritative, the audit entry is best-effort.
- approve:           pending -> approved  (terminal)
- reject:            pending -> rejected  (terminal, notes required)
- request_more_info: pending -> pending   (repeatable, notes required)

A failed audit insert never reverts the status change; it is reported next to
the successful result as audit_error.
"""

import logging
from dataclasses import dataclass
from typing import List, Optional

from sqlalchemy.exc import SQLAlchemyError

from . import crud
from .backend import Backend
from .errors import (AdminAccessRequiredError, InvalidTransitionError, NotFoundError, OperationResult,
                     PortalError, StoreError)
from .kyc_service import SubmissionStore
from .schemas import AuditAction, AuditLogEntry, ChangeEvent, ChangeType, Submission, SubmissionStatus
from .session_manager import SessionManager
from .validators import validate_review_notes

log = logging.getLogger(__name__)

REVIEWABLE_STATUSES = [SubmissionStatus.PENDING.value]


@dataclass(frozen=True)
class ReviewOutcome(OperationResult[Submission]):
    """Result of a review decision plus the separately observed audit outcome."""
    audit_entry: Optional[AuditLogEntry] = None
    audit_error: Optional[PortalError] = None


class ReviewWorkflow:
    """Service for reviewer decisions and the submission audit trail"""

    def __init__(self, session: SessionManager, backend: Backend,
                 store: Optional[SubmissionStore] = None):
        self._session = session
        self._backend = backend
        self._store = store
        self.error: Optional[PortalError] = None

    def _require_admin(self) -> Optional[PortalError]:
        if not self._session.is_authenticated or not self._session.is_admin:
            return AdminAccessRequiredError()
        return None

    async def approve(self, submission_id: str, notes: Optional[str] = None) -> ReviewOutcome:
        return await self._transition(submission_id, SubmissionStatus.APPROVED, AuditAction.APPROVED,
                                      notes, notes_required=False)

    async def reject(self, submission_id: str, notes: Optional[str]) -> ReviewOutcome:
        return await self._transition(submission_id, SubmissionStatus.REJECTED, AuditAction.REJECTED,
                                      notes, notes_required=True)

    async def request_more_info(self, submission_id: str, notes: Optional[str]) -> ReviewOutcome:
        return await self._transition(submission_id, SubmissionStatus.PENDING, AuditAction.REQUEST_INFO,
                                      notes, notes_required=True)

    async def _transition(self, submission_id: str, target: SubmissionStatus, action: AuditAction,
                          notes: Optional[str], notes_required: bool) -> ReviewOutcome:
        """
        Apply a reviewer decision.

        Args:
            submission_id: Submission to decide on
            target: Status the submission moves to
            action: Audit action recorded for the decision
            notes: Reviewer justification
            notes_required: Whether notes must meet the minimum length

        Returns:
            ReviewOutcome with the updated submission, or the error that
            prevented the status change

        Raises:
            NotesRequiredError: notes missing or too short, before any write
        """
        self.error = None
        denied = self._require_admin()
        if denied is not None:
            return self._fail(denied)
        if not submission_id:
            return self._fail(PortalError("Submission id is required", code="missing_id"))
        if notes_required:
            notes = validate_review_notes(notes, self._backend.settings.REVIEW_NOTES_MIN_LENGTH)
        else:
            notes = (notes or "").strip()

        actor_id = self._session.user_id
        feed = self._backend.feed
        async with self._backend.sessionmaker() as db:
            try:
                row = await crud.update_submission(
                    db,
                    submission_id,
                    {"status": target.value},
                    expected_statuses=REVIEWABLE_STATUSES,
                    feed=feed,
                )
                if row is None:
                    current = await crud.get_submission(db, submission_id)
                    if current is None:
                        return self._fail(NotFoundError(f"Submission {submission_id} not found"))
                    return self._fail(InvalidTransitionError(
                        f"Submission {submission_id} is already {current.status}; "
                        f"cannot move to {target.value}"
                    ))
            except SQLAlchemyError as exc:
                return self._fail(StoreError.from_exception(exc))

            submission = Submission.model_validate(row)
            log.info(f"Submission {submission_id} -> {target.value} by reviewer {actor_id}")

            audit_entry = None
            audit_error = None
            try:
                entry = await crud.insert_audit_log(db, {
                    "submission_id": submission_id,
                    "actor_user_id": actor_id,
                    "action": action.value,
                    "notes": notes,
                }, feed=feed)
                audit_entry = AuditLogEntry.model_validate(entry)
            except SQLAlchemyError as exc:
                await db.rollback()
                audit_error = StoreError.from_exception(exc)
                log.warning(f"Audit log insert failed for submission {submission_id}: {audit_error.message}")

        if self._store is not None:
            self._store.apply_change(ChangeEvent(
                event_type=ChangeType.UPDATE,
                table=crud.SUBMISSIONS_TABLE,
                new=submission.model_dump(),
            ))
        return ReviewOutcome(data=submission, audit_entry=audit_entry, audit_error=audit_error)

    def _fail(self, error: PortalError) -> ReviewOutcome:
        self.error = error
        return ReviewOutcome(error=error)

    async def get_submission(self, submission_id: str) -> OperationResult[Submission]:
        denied = self._require_admin()
        if denied is not None:
            return self._fail(denied)
        try:
            async with self._backend.sessionmaker() as db:
                row = await crud.get_submission(db, submission_id)
        except SQLAlchemyError as exc:
            return self._fail(StoreError.from_exception(exc))
        if row is None:
            return self._fail(NotFoundError(f"Submission {submission_id} not found"))
        return OperationResult.success(Submission.model_validate(row))

    async def list_audit_log(self, submission_id: str) -> OperationResult[List[AuditLogEntry]]:
        """Audit entries of one submission, oldest first."""
        denied = self._require_admin()
        if denied is not None:
            return self._fail(denied)
        try:
            async with self._backend.sessionmaker() as db:
                rows = await crud.list_audit_logs(db, submission_id)
        except SQLAlchemyError as exc:
            return self._fail(StoreError.from_exception(exc))
        return OperationResult.success([AuditLogEntry.model_validate(row) for row in rows])
