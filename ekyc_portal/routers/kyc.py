from typing import List

from fastapi import APIRouter, File, Form, UploadFile, status

from ..deps import CurrentPortalDep, unwrap
from ..schemas import Submission, SubmissionCreate, SubmissionUpdate

kyc_router = APIRouter(tags=["kyc"])

# Reviewer-only fields never taken from the owner's PATCH body
OWNER_READONLY_FIELDS = {"status"}


@kyc_router.get("/kyc/submissions", response_model=List[Submission])
async def list_my_submissions(portal: CurrentPortalDep):
    """The caller's submissions, newest first."""
    return unwrap(await portal.submissions.fetch_my_submissions())


@kyc_router.post("/kyc/submissions", response_model=Submission, status_code=status.HTTP_201_CREATED)
async def create_submission(payload: SubmissionCreate, portal: CurrentPortalDep):
    return unwrap(await portal.submissions.create(payload))


@kyc_router.patch("/kyc/submissions/{submission_id}", response_model=Submission)
async def update_submission(submission_id: str, payload: SubmissionUpdate, portal: CurrentPortalDep):
    fields = payload.model_dump(exclude_unset=True, exclude=OWNER_READONLY_FIELDS)
    return unwrap(await portal.submissions.update(submission_id, fields))


@kyc_router.delete("/kyc/submissions/{submission_id}")
async def delete_submission(submission_id: str, portal: CurrentPortalDep):
    deleted_id = unwrap(await portal.submissions.delete(submission_id))
    return {"success": True, "id": deleted_id}


@kyc_router.post("/kyc/submissions/{submission_id}/documents", response_model=Submission)
async def upload_document(
    submission_id: str,
    portal: CurrentPortalDep,
    doc_type: str = Form(...),
    file: UploadFile = File(...),
):
    """
    Upload a KYC document to the private bucket and record it on the submission.

    Supported files: JPG, PNG, WEBP, PDF up to the configured maximum size.
    """
    content = await file.read()
    result = await portal.submissions.attach_document(
        submission_id,
        file.filename or "document",
        content,
        file.content_type,
        doc_type,
    )
    return unwrap(result)
