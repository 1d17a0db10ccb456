"""
Session Manager - owns the auth session and the resolved role.

The session, profile and role are swapped together only after the profile of
the new user has been resolved, so the exposed role always belongs to the
exposed user. Role checks made from here are UX gates; authorization is
enforced by the backend.
"""

import logging
from typing import Awaitable, Callable, List, Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import async_sessionmaker

from . import crud
from .auth_service import AuthService, AuthSubscription
from .config import Settings
from .errors import (ConfigurationError, NotAuthenticatedError, NotFoundError, OperationResult,
                     PortalError, StoreError, is_unique_violation)
from .realtime import ChangeFeed
from .schemas import ADMIN_ROLE, DEFAULT_ROLE, AuthSession, AuthUser, Profile
from .validators import PROFILE_FIELD_LIMITS, clean_phone, clean_text, parse_dob

log = logging.getLogger(__name__)

IdentityListener = Callable[[], Awaitable[None]]


class SessionManager:

    def __init__(self, auth: AuthService, sessionmaker: async_sessionmaker, settings: Settings,
                 feed: Optional[ChangeFeed] = None, origin: Optional[str] = None):
        self._auth = auth
        self._sessionmaker = sessionmaker
        self._settings = settings
        self._feed = feed
        self._origin = origin
        self._session: Optional[AuthSession] = None
        self._profile: Optional[Profile] = None
        self._role: Optional[str] = None
        self._subscription: Optional[AuthSubscription] = None
        self._identity_listeners: List[IdentityListener] = []
        self.loading = False
        self.error: Optional[PortalError] = None

    # -----------------------
    #  STATE
    # -----------------------
    @property
    def auth(self) -> AuthService:
        return self._auth

    @property
    def session(self) -> Optional[AuthSession]:
        return self._session

    @property
    def user(self) -> Optional[AuthUser]:
        return self._session.user if self._session else None

    @property
    def user_id(self) -> Optional[str]:
        return self.user.id if self.user else None

    @property
    def profile(self) -> Optional[Profile]:
        return self._profile

    @property
    def role(self) -> Optional[str]:
        return self._role

    @property
    def is_authenticated(self) -> bool:
        return self.user is not None

    @property
    def is_admin(self) -> bool:
        return str(self._role or "").lower() == ADMIN_ROLE

    # -----------------------
    #  LIFECYCLE
    # -----------------------
    async def start(self):
        """Load the active session, ensure its profile, and follow auth changes."""
        if self._subscription is None:
            self._subscription = self._auth.on_auth_state_change(self._handle_auth_change)
        self.loading = True
        try:
            result = await self._auth.get_session()
            if not result.ok:
                log.error(f"Auth initialization error: {result.error.message}")
                self.error = result.error
                return
            await self._apply_session(result.data)
        finally:
            self.loading = False

    async def close(self):
        if self._subscription is not None:
            self._subscription.unsubscribe()
            self._subscription = None

    def add_identity_listener(self, listener: IdentityListener):
        self._identity_listeners.append(listener)

    def remove_identity_listener(self, listener: IdentityListener):
        if listener in self._identity_listeners:
            self._identity_listeners.remove(listener)

    async def _handle_auth_change(self, event: str, session: Optional[AuthSession]):
        log.debug(f"Auth state change: {event}")
        self.loading = True
        try:
            await self._apply_session(session)
        finally:
            self.loading = False

    async def _apply_session(self, session: Optional[AuthSession]):
        user = session.user if session else None
        profile = None
        role = None
        if user is not None:
            profile = await self._resolve_profile(user)
            role = profile.role if profile and profile.role else DEFAULT_ROLE

        previous_user_id = self.user_id
        self._session, self._profile, self._role = session, profile, role

        if previous_user_id != (user.id if user else None):
            for listener in list(self._identity_listeners):
                await listener()

    async def _resolve_profile(self, user: AuthUser) -> Optional[Profile]:
        try:
            return await self.ensure_profile(user)
        except StoreError as exc:
            log.warning(f"Profile fetch error (non-fatal): {exc.message}")
            self.error = exc
            return None

    # -----------------------
    #  PROFILE
    # -----------------------
    async def ensure_profile(self, user: AuthUser) -> Profile:
        """Fetch the profile row, inserting a default one when absent."""
        try:
            async with self._sessionmaker() as db:
                db_profile = await crud.get_profile(db, user.id)
                if db_profile is None:
                    try:
                        db_profile = await crud.create_profile(db, {
                            "id": user.id,
                            "email": user.email,
                            "role": DEFAULT_ROLE,
                            "full_name": user.user_metadata.get("full_name") or "",
                            "avatar_url": user.user_metadata.get("avatar_url") or "",
                        }, feed=self._feed)
                        log.info(f"Created default profile for user {user.id}")
                    except IntegrityError as exc:
                        await db.rollback()
                        if not is_unique_violation(exc):
                            raise
                        # Another session created it first
                        log.info(f"Profile for user {user.id} already created, re-fetching")
                        db_profile = await crud.get_profile(db, user.id)
                        if db_profile is None:
                            raise StoreError.from_exception(exc)
                return Profile.model_validate(db_profile)
        except SQLAlchemyError as exc:
            raise StoreError.from_exception(exc) from exc

    async def refresh_profile(self) -> OperationResult[Profile]:
        if self.user is None:
            return OperationResult.failure(NotAuthenticatedError())
        try:
            profile = await self.ensure_profile(self.user)
        except StoreError as exc:
            self.error = exc
            return OperationResult.failure(exc)
        self._profile = profile
        self._role = profile.role or DEFAULT_ROLE
        return OperationResult.success(profile)

    async def update_profile(self, updates: dict) -> OperationResult[Profile]:
        """Saves full_name, dob, address and phone of the current user."""
        if self.user is None:
            return OperationResult.failure(NotAuthenticatedError())

        payload = {}
        if updates.get("full_name") is not None:
            payload["full_name"] = clean_text("full_name", updates["full_name"], PROFILE_FIELD_LIMITS["full_name"])
        if "dob" in updates:
            payload["dob"] = parse_dob(updates["dob"])
        if updates.get("address") is not None:
            payload["address"] = clean_text("address", updates["address"], PROFILE_FIELD_LIMITS["address"])
        if updates.get("phone") is not None:
            payload["phone"] = clean_phone(updates["phone"])

        try:
            async with self._sessionmaker() as db:
                db_profile = await crud.update_profile(db, self.user.id, payload, feed=self._feed)
        except SQLAlchemyError as exc:
            error = StoreError.from_exception(exc)
            self.error = error
            return OperationResult.failure(error)
        if db_profile is None:
            return OperationResult.failure(NotFoundError("Profile not found"))
        self._profile = Profile.model_validate(db_profile)
        return OperationResult.success(self._profile)

    # -----------------------
    #  SIGN UP / IN / OUT
    # -----------------------
    def email_redirect_url(self, origin: Optional[str] = None) -> Optional[str]:
        site = self._settings.FRONTEND_URL or self._settings.SITE_URL or origin or self._origin
        if not site:
            return None
        return f"{site.rstrip('/')}/auth/callback"

    async def sign_up(self, email: str, password: str, full_name: Optional[str] = None,
                      origin: Optional[str] = None) -> OperationResult[AuthUser]:
        self.error = None
        redirect_to = self.email_redirect_url(origin)
        if redirect_to is None:
            error = ConfigurationError("Set FRONTEND_URL or SITE_URL to build the email redirect target")
            self.error = error
            return OperationResult.failure(error)
        result = await self._auth.sign_up(email, password, email_redirect_to=redirect_to,
                                          data={"full_name": full_name or ""})
        if not result.ok:
            self.error = result.error
        return result

    async def sign_in_with_password(self, email: str, password: str) -> OperationResult[AuthSession]:
        self.error = None
        result = await self._auth.sign_in_with_password(email, password)
        if not result.ok:
            self.error = result.error
        return result

    async def restore_session(self, access_token: str) -> OperationResult[AuthSession]:
        self.error = None
        result = await self._auth.restore_session(access_token)
        if not result.ok:
            self.error = result.error
        return result

    async def sign_out(self) -> OperationResult[None]:
        self.error = None
        result = await self._auth.sign_out()
        if not result.ok:
            self.error = result.error
        return result
