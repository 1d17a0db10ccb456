import logging
from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .backend import Backend
from .config import settings
from .errors import InputValidationError
from .routers import admin_router, auth_router, kyc_router, realtime_router

log = logging.getLogger(__name__)


def create_app(backend: Optional[Backend] = None) -> FastAPI:
    """Build the portal API. Pass a Backend to run against a specific database and storage root."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logging.basicConfig(
            level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
            format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        )
        owned = app.state.backend is None
        if owned:
            app.state.backend = Backend.from_settings(settings)
        active: Backend = app.state.backend
        await active.init_models()
        log.info("Database tables ensured")
        admin = await active.ensure_admin_user()
        if admin is not None:
            log.info(f"Reviewer account ready: {admin.email}")
        yield
        if owned:
            await active.dispose()
            app.state.backend = None
        log.info("Portal shut down")

    app = FastAPI(title="EKYC Portal", lifespan=lifespan)
    app.state.backend = backend

    app.add_middleware(
        CORSMiddleware,
        allow_origins=(backend.settings if backend else settings).CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(InputValidationError)
    async def input_validation_handler(request: Request, exc: InputValidationError):
        log.warning(f"Rejected input on {request.url.path}: {exc.message}")
        return JSONResponse(status_code=422, content=exc.to_dict())

    @app.get("/health")
    async def health():
        return {"status": "ok"}

    app.include_router(auth_router, prefix="/auth")
    app.include_router(kyc_router, prefix="/api/v1")
    app.include_router(admin_router, prefix="/api/admin")
    app.include_router(realtime_router)
    return app


app = create_app()


if __name__ == "__main__":
    uvicorn.run("ekyc_portal.main:app", host="0.0.0.0", port=8000, reload=False)
