"""Review Workflow: decisions, notes rules, the status state machine and the audit trail."""

import asyncio
from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy.exc import SQLAlchemyError

from ekyc_portal import crud
from ekyc_portal.errors import (AdminAccessRequiredError, InvalidTransitionError, NotesRequiredError,
                                NotFoundError)


async def _status_of(backend, submission_id):
    async with backend.sessionmaker() as db:
        return (await crud.get_submission(db, submission_id)).status


async def _audit_actions(backend, submission_id):
    async with backend.sessionmaker() as db:
        return [entry.action for entry in await crud.list_audit_logs(db, submission_id)]


@pytest.fixture
def pending_submission(open_portal, valid_fields):
    """Returns a coroutine function creating (owner, reviewer, submission)."""

    async def _create():
        owner = await open_portal("applicant@example.com")
        reviewer = await open_portal("reviewer@example.com", admin=True)
        submission = (await owner.submissions.create(valid_fields)).data
        return owner, reviewer, submission

    return _create


class TestDecisions:

    def test_approve_records_audit_entry(self, backend, pending_submission):
        async def scenario():
            owner, reviewer, submission = await pending_submission()
            outcome = await reviewer.review.approve(submission.id, "looks good")

            assert outcome.ok
            assert outcome.data.status == "approved"
            assert outcome.audit_error is None
            assert outcome.audit_entry.action == "approved"
            assert outcome.audit_entry.notes == "looks good"
            assert outcome.audit_entry.actor_user_id == reviewer.session.user_id
            assert await _status_of(backend, submission.id) == "approved"
            await owner.close()
            await reviewer.close()

        asyncio.run(scenario())

    def test_approve_notes_optional(self, pending_submission):
        async def scenario():
            owner, reviewer, submission = await pending_submission()
            outcome = await reviewer.review.approve(submission.id)
            assert outcome.ok
            assert outcome.audit_entry.notes == ""
            await owner.close()
            await reviewer.close()

        asyncio.run(scenario())

    def test_reject_with_blank_notes_writes_nothing(self, backend, pending_submission):
        async def scenario():
            owner, reviewer, submission = await pending_submission()
            with patch("ekyc_portal.crud.update_submission", new_callable=AsyncMock) as update:
                with pytest.raises(NotesRequiredError) as exc_info:
                    await reviewer.review.reject(submission.id, "")
                update.assert_not_called()

            assert "notes required" in exc_info.value.message
            assert await _status_of(backend, submission.id) == "pending"
            assert await _audit_actions(backend, submission.id) == []
            await owner.close()
            await reviewer.close()

        asyncio.run(scenario())

    def test_reject(self, backend, pending_submission):
        async def scenario():
            owner, reviewer, submission = await pending_submission()
            outcome = await reviewer.review.reject(submission.id, "document expired")
            assert outcome.data.status == "rejected"
            assert await _audit_actions(backend, submission.id) == ["rejected"]
            await owner.close()
            await reviewer.close()

        asyncio.run(scenario())

    def test_request_more_info_is_repeatable(self, backend, pending_submission):
        async def scenario():
            owner, reviewer, submission = await pending_submission()
            first = await reviewer.review.request_more_info(submission.id, "photo is blurry")
            second = await reviewer.review.request_more_info(submission.id, "address page missing")

            assert first.data.status == second.data.status == "pending"
            assert await _audit_actions(backend, submission.id) == ["request_info", "request_info"]

            trail = (await reviewer.review.list_audit_log(submission.id)).data
            assert [entry.notes for entry in trail] == ["photo is blurry", "address page missing"]
            await owner.close()
            await reviewer.close()

        asyncio.run(scenario())


class TestAuditFailure:

    def test_audit_failure_does_not_revert_status(self, backend, pending_submission):
        async def scenario():
            owner, reviewer, submission = await pending_submission()
            with patch("ekyc_portal.crud.insert_audit_log", new_callable=AsyncMock,
                       side_effect=SQLAlchemyError("audit table unavailable")):
                outcome = await reviewer.review.approve(submission.id, "looks good")

            assert outcome.ok
            assert outcome.data.status == "approved"
            assert outcome.audit_entry is None
            assert "audit table unavailable" in outcome.audit_error.message
            assert await _status_of(backend, submission.id) == "approved"
            assert await _audit_actions(backend, submission.id) == []
            await owner.close()
            await reviewer.close()

        asyncio.run(scenario())


class TestStateMachine:

    def test_terminal_submission_cannot_be_decided_again(self, backend, pending_submission):
        async def scenario():
            owner, reviewer, submission = await pending_submission()
            await reviewer.review.approve(submission.id, "ok")

            again = await reviewer.review.reject(submission.id, "changed my mind")
            reopen = await reviewer.review.request_more_info(submission.id, "one more thing")

            assert isinstance(again.error, InvalidTransitionError)
            assert isinstance(reopen.error, InvalidTransitionError)
            assert await _status_of(backend, submission.id) == "approved"
            assert await _audit_actions(backend, submission.id) == ["approved"]
            await owner.close()
            await reviewer.close()

        asyncio.run(scenario())

    def test_unknown_submission(self, open_portal):
        async def scenario():
            reviewer = await open_portal("lost@example.com", admin=True)
            outcome = await reviewer.review.approve("does-not-exist")
            assert isinstance(outcome.error, NotFoundError)
            lookup = await reviewer.review.get_submission("does-not-exist")
            assert isinstance(lookup.error, NotFoundError)
            await reviewer.close()

        asyncio.run(scenario())


class TestAccess:

    def test_non_reviewer_cannot_decide(self, backend, open_portal, valid_fields):
        async def scenario():
            owner = await open_portal("self-approver@example.com")
            submission = (await owner.submissions.create(valid_fields)).data

            with patch("ekyc_portal.crud.update_submission", new_callable=AsyncMock) as update:
                results = [
                    await owner.review.approve(submission.id, "mine"),
                    await owner.review.reject(submission.id, "mine"),
                    await owner.review.request_more_info(submission.id, "mine"),
                    await owner.review.list_audit_log(submission.id),
                    await owner.review.get_submission(submission.id),
                ]
                update.assert_not_called()

            for result in results:
                assert isinstance(result.error, AdminAccessRequiredError)
                assert result.error.message == "Admin access required"
            assert await _status_of(backend, submission.id) == "pending"
            await owner.close()

        asyncio.run(scenario())


def test_audit_entries_are_immutable(backend, pending_submission):
    async def scenario():
        owner, reviewer, submission = await pending_submission()
        await reviewer.review.approve(submission.id, "ok")

        async with backend.sessionmaker() as db:
            entry = (await crud.list_audit_logs(db, submission.id))[0]
            entry.notes = "rewritten"
            with pytest.raises(ValueError):
                await db.commit()
            await db.rollback()

        async with backend.sessionmaker() as db:
            entry = (await crud.list_audit_logs(db, submission.id))[0]
            await db.delete(entry)
            with pytest.raises(ValueError):
                await db.commit()
            await db.rollback()

        trail = (await reviewer.review.list_audit_log(submission.id)).data
        assert [(e.action, e.notes) for e in trail] == [("approved", "ok")]
        await owner.close()
        await reviewer.close()

    asyncio.run(scenario())
