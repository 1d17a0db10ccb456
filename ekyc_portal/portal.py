"""
Portal client context: one Session Manager, its Submission Store and Review
Workflow wired to a shared Backend.

    async with PortalContext(backend) as portal:
        await portal.session.sign_in_with_password(email, password)
        await portal.submissions.create({...})

Leaving the context closes the realtime channel and the auth subscription.
"""

import logging
from typing import Optional

from .backend import Backend
from .kyc_service import SubmissionStore
from .review_service import ReviewWorkflow
from .session_manager import SessionManager

log = logging.getLogger(__name__)


class PortalContext:

    def __init__(self, backend: Backend, origin: Optional[str] = None, auto_sync: bool = True):
        self.backend = backend
        self.session = SessionManager(backend.auth_client(), backend.sessionmaker, backend.settings,
                                      feed=backend.feed, origin=origin)
        self.submissions = SubmissionStore(self.session, backend)
        self.review = ReviewWorkflow(self.session, backend, store=self.submissions)
        self._auto_sync = auto_sync
        self._started = False

    async def _sync_submissions(self):
        await self.submissions.sync(realtime=True)

    async def start(self) -> "PortalContext":
        if self._started:
            return self
        if self._auto_sync:
            self.session.add_identity_listener(self._sync_submissions)
        await self.session.start()
        self._started = True
        return self

    async def close(self):
        self.submissions.unsubscribe_realtime()
        self.session.remove_identity_listener(self._sync_submissions)
        await self.session.close()
        self._started = False

    async def __aenter__(self) -> "PortalContext":
        return await self.start()

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()
