from typing import List, Optional

from fastapi import APIRouter, Query

from ..deps import CurrentAdminPortalDep, unwrap
from ..review_service import ReviewOutcome
from ..schemas import AuditLogEntry, ReviewRequest, ReviewResponse, Submission, SubmissionFilters, SubmissionPage

admin_router = APIRouter(tags=["admin"])


def _review_response(outcome: ReviewOutcome) -> ReviewResponse:
    submission = unwrap(outcome)
    return ReviewResponse(
        submission=submission,
        audit_entry=outcome.audit_entry,
        audit_error=outcome.audit_error.message if outcome.audit_error else None,
    )


# -----------------------
#  KYC REVIEW QUEUE
# -----------------------
@admin_router.get("/kyc/submissions", response_model=SubmissionPage)
async def list_submissions(
    portal: CurrentAdminPortalDep,
    status: str = Query("all"),
    document_type: str = Query("all"),
    search: str = Query(""),
    page: int = Query(1, ge=1),
    page_size: Optional[int] = Query(None, ge=1, le=100),
):
    """Filtered, paginated review queue. total counts every match, not just this page."""
    filters = SubmissionFilters(status=status, document_type=document_type, search=search)
    return unwrap(await portal.submissions.list_for_review(filters, page=page, page_size=page_size))


@admin_router.get("/kyc/submissions/{submission_id}", response_model=Submission)
async def get_submission(submission_id: str, portal: CurrentAdminPortalDep):
    return unwrap(await portal.review.get_submission(submission_id))


@admin_router.get("/kyc/submissions/{submission_id}/audit", response_model=List[AuditLogEntry])
async def get_audit_log(submission_id: str, portal: CurrentAdminPortalDep):
    return unwrap(await portal.review.list_audit_log(submission_id))


# -----------------------
#  DECISIONS
# -----------------------
@admin_router.post("/kyc/submissions/{submission_id}/approve", response_model=ReviewResponse)
async def approve_submission(submission_id: str, payload: ReviewRequest, portal: CurrentAdminPortalDep):
    return _review_response(await portal.review.approve(submission_id, payload.notes))


@admin_router.post("/kyc/submissions/{submission_id}/reject", response_model=ReviewResponse)
async def reject_submission(submission_id: str, payload: ReviewRequest, portal: CurrentAdminPortalDep):
    return _review_response(await portal.review.reject(submission_id, payload.notes))


@admin_router.post("/kyc/submissions/{submission_id}/request-info", response_model=ReviewResponse)
async def request_more_info(submission_id: str, payload: ReviewRequest, portal: CurrentAdminPortalDep):
    return _review_response(await portal.review.request_more_info(submission_id, payload.notes))
