from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import JSONResponse
from fastapi.security import OAuth2PasswordRequestForm

from ..deps import CurrentPortalDep, PortalDep, unwrap
from ..schemas import AuthUser, Profile, ProfileUpdate, SessionInfo, SignUpRequest, Token

auth_router = APIRouter(tags=["auth"])


def _session_info(portal) -> SessionInfo:
    session = portal.session
    return SessionInfo(
        user=session.user,
        profile=session.profile,
        role=session.role,
        is_authenticated=session.is_authenticated,
        is_admin=session.is_admin,
    )


@auth_router.post("/signup", response_model=AuthUser, status_code=status.HTTP_201_CREATED)
async def signup(payload: SignUpRequest, portal: PortalDep):
    result = await portal.session.sign_up(payload.email, payload.password, full_name=payload.full_name)
    return unwrap(result)


@auth_router.post("/token")
async def login_for_access_token(form_data: Annotated[OAuth2PasswordRequestForm, Depends()], portal: PortalDep):
    result = await portal.session.sign_in_with_password(form_data.username.strip(), form_data.password)
    if not result.ok:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=result.error.message,
            headers={"WWW-Authenticate": "Bearer"},
        )
    session = portal.session
    token = Token(
        access_token=result.data.access_token,
        token_type="bearer",
        user_id=session.user_id,
        email=session.user.email,
        role=session.role,
        is_admin=session.is_admin,
    )
    response = JSONResponse(content=token.model_dump())
    response.set_cookie(
        key="access_token",
        value=token.access_token,
        httponly=True,
        max_age=portal.backend.settings.ACCESS_TOKEN_EXPIRE_MINUTES * 60,
        samesite="Lax",
        path="/",
    )
    return response


@auth_router.post("/logout")
async def logout(portal: CurrentPortalDep):
    unwrap(await portal.session.sign_out())
    response = JSONResponse(content={"success": True, "message": "Signed out"})
    response.delete_cookie("access_token", path="/")
    return response


@auth_router.get("/session", response_model=SessionInfo)
async def read_session(portal: PortalDep):
    return _session_info(portal)


@auth_router.patch("/profile", response_model=Profile)
async def update_profile(payload: ProfileUpdate, portal: CurrentPortalDep):
    result = await portal.session.update_profile(payload.model_dump(exclude_unset=True))
    return unwrap(result)
