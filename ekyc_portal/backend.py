"""
Backend handle shared by every portal client: database engine and sessions,
change feed, private storage and settings. Constructed explicitly and passed
down; nothing in the SDK reaches for a global client.
"""

import logging
from dataclasses import dataclass, field
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker

from . import auth_utils, crud
from .auth_service import AuthService
from .config import Settings, settings as default_settings
from .database import build_engine, build_sessionmaker, init_models
from .realtime import ChangeFeed
from .schemas import ADMIN_ROLE
from .storage_service import StorageService

log = logging.getLogger(__name__)


@dataclass
class Backend:
    engine: AsyncEngine
    sessionmaker: async_sessionmaker
    storage: StorageService
    settings: Settings
    feed: ChangeFeed = field(default_factory=ChangeFeed)

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None,
                      database_url: Optional[str] = None,
                      storage_dir: Optional[str] = None) -> "Backend":
        settings = settings or default_settings
        engine = build_engine(database_url or settings.DATABASE_URL)
        return cls(
            engine=engine,
            sessionmaker=build_sessionmaker(engine),
            storage=StorageService(storage_dir or settings.STORAGE_DIR, settings.KYC_BUCKET),
            settings=settings,
        )

    def auth_client(self) -> AuthService:
        """A fresh auth client; each portal client owns its own session."""
        return AuthService(self.sessionmaker, self.settings)

    async def init_models(self):
        await init_models(self.engine)

    async def ensure_admin_user(self, email: Optional[str] = None, password: Optional[str] = None):
        """Creates the configured reviewer account and admin profile if missing."""
        email = email or self.settings.ADMIN_EMAIL
        password = password or self.settings.ADMIN_PASSWORD
        if not email or not password:
            return None
        async with self.sessionmaker() as db:
            user = await crud.get_user_by_email(db, email)
            if user is None:
                user = await crud.create_user(
                    db,
                    email=email,
                    hashed_password=auth_utils.get_password_hash(password),
                    user_metadata={"full_name": "Admin User"},
                )
                log.info(f"Default admin user created: {user.email}")
            profile = await crud.get_profile(db, user.id)
            if profile is None:
                await crud.create_profile(db, {
                    "id": user.id,
                    "email": user.email,
                    "role": ADMIN_ROLE,
                    "full_name": "Admin User",
                })
            elif profile.role != ADMIN_ROLE:
                await crud.set_profile_role(db, user.id, ADMIN_ROLE)
            return user

    async def dispose(self):
        await self.engine.dispose()
