"""
Auth Service - password sign-up/sign-in, sessions and auth state notifications.

One instance holds the session of one client. Listeners registered with
on_auth_state_change() are awaited in registration order on every change.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import async_sessionmaker

from . import auth_utils, crud
from .config import Settings
from .errors import OperationResult, PortalError, StoreError
from .schemas import AuthSession, AuthUser

log = logging.getLogger(__name__)

SIGNED_IN = "SIGNED_IN"
SIGNED_OUT = "SIGNED_OUT"
TOKEN_RESTORED = "TOKEN_RESTORED"

AuthListener = Callable[[str, Optional[AuthSession]], Awaitable[None]]


class AuthSubscription:
    def __init__(self, service: "AuthService", callback: AuthListener):
        self._service = service
        self.callback = callback

    def unsubscribe(self) -> bool:
        return self._service._remove_listener(self.callback)


class AuthService:
    """Client-side handle on the auth collaborator."""

    def __init__(self, sessionmaker: async_sessionmaker, settings: Settings):
        self._sessionmaker = sessionmaker
        self._settings = settings
        self._session: Optional[AuthSession] = None
        self._listeners: List[AuthListener] = []

    # ------------------------------------------------
    #  SESSION
    # ------------------------------------------------
    async def get_session(self) -> OperationResult[AuthSession]:
        """Current session, or an empty result when signed out or the token expired."""
        if self._session is None:
            return OperationResult.success(None)
        if self._session.expires_at <= datetime.now(timezone.utc):
            log.info(f"Session expired for user {self._session.user.id}")
            self._session = None
            return OperationResult.success(None)
        try:
            async with self._sessionmaker() as db:
                if await crud.is_token_blacklisted(db, self._session.access_token):
                    self._session = None
        except SQLAlchemyError as exc:
            return OperationResult.failure(StoreError.from_exception(exc))
        return OperationResult.success(self._session)

    async def restore_session(self, access_token: str) -> OperationResult[AuthSession]:
        """Adopt an existing access token (bearer header, cookie) as this client's session."""
        payload = auth_utils.decode_access_token_full(access_token, secret_key=self._settings.SECRET_KEY)
        if not payload or not payload.get("sub"):
            log.warning("Session restore failed: invalid or expired token")
            return OperationResult.failure(PortalError("Invalid or expired token", code="invalid_token"))
        try:
            async with self._sessionmaker() as db:
                if await crud.is_token_blacklisted(db, access_token):
                    log.warning("Session restore failed: token has been signed out")
                    return OperationResult.failure(PortalError("Token has been revoked", code="invalid_token"))
                user = await crud.get_user(db, payload["sub"])
        except SQLAlchemyError as exc:
            return OperationResult.failure(StoreError.from_exception(exc))
        if user is None or not user.is_active:
            return OperationResult.failure(PortalError("User not found", code="user_not_found"))

        self._session = AuthSession(
            access_token=access_token,
            expires_at=datetime.fromtimestamp(payload["exp"], tz=timezone.utc),
            user=AuthUser.model_validate(user),
        )
        await self._emit(TOKEN_RESTORED)
        return OperationResult.success(self._session)

    # ------------------------------------------------
    #  SIGN UP / IN / OUT
    # ------------------------------------------------
    async def sign_up(self, email: str, password: str, email_redirect_to: Optional[str] = None,
                      data: Optional[dict] = None) -> OperationResult[AuthUser]:
        email = (email or "").strip().lower()
        if not email or not password:
            return OperationResult.failure(PortalError("Email and password are required", code="validation_failed"))
        if len(password) < 8:
            return OperationResult.failure(PortalError("Password should be at least 8 characters", code="weak_password"))
        try:
            async with self._sessionmaker() as db:
                if await crud.get_user_by_email(db, email):
                    return OperationResult.failure(PortalError("User already registered", code="user_already_exists"))
                user = await crud.create_user(
                    db,
                    email=email,
                    hashed_password=auth_utils.get_password_hash(password),
                    user_metadata=data or {},
                    email_redirect_to=email_redirect_to,
                )
        except SQLAlchemyError as exc:
            return OperationResult.failure(StoreError.from_exception(exc))
        log.info(f"Registered user {user.id} (confirmation redirect: {email_redirect_to})")
        return OperationResult.success(AuthUser.model_validate(user))

    async def sign_in_with_password(self, email: str, password: str) -> OperationResult[AuthSession]:
        try:
            async with self._sessionmaker() as db:
                user = await crud.get_user_by_email(db, email or "")
        except SQLAlchemyError as exc:
            return OperationResult.failure(StoreError.from_exception(exc))
        if user is None or not user.is_active or not auth_utils.verify_password(password or "", user.hashed_password):
            log.warning(f"Sign-in failed for {email}")
            return OperationResult.failure(PortalError("Invalid login credentials", code="invalid_credentials"))

        expires_delta = timedelta(minutes=self._settings.ACCESS_TOKEN_EXPIRE_MINUTES)
        access_token = auth_utils.create_access_token(
            data={"sub": user.id, "email": user.email},
            expires_delta=expires_delta,
            secret_key=self._settings.SECRET_KEY,
        )
        self._session = AuthSession(
            access_token=access_token,
            expires_at=datetime.now(timezone.utc) + expires_delta,
            user=AuthUser.model_validate(user),
        )
        log.info(f"User {user.id} signed in")
        await self._emit(SIGNED_IN)
        return OperationResult.success(self._session)

    async def sign_out(self) -> OperationResult[None]:
        session = self._session
        if session is not None:
            try:
                async with self._sessionmaker() as db:
                    if not await crud.is_token_blacklisted(db, session.access_token):
                        await crud.blacklist_token(db, session.access_token)
            except SQLAlchemyError as exc:
                return OperationResult.failure(StoreError.from_exception(exc))
            log.info(f"User {session.user.id} signed out")
        self._session = None
        await self._emit(SIGNED_OUT)
        return OperationResult.success(None)

    # ------------------------------------------------
    #  STATE CHANGE NOTIFICATIONS
    # ------------------------------------------------
    def on_auth_state_change(self, callback: AuthListener) -> AuthSubscription:
        self._listeners.append(callback)
        return AuthSubscription(self, callback)

    def _remove_listener(self, callback: AuthListener) -> bool:
        if callback in self._listeners:
            self._listeners.remove(callback)
            return True
        return False

    async def _emit(self, event: str):
        for listener in list(self._listeners):
            await listener(event, self._session)
