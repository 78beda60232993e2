from __future__ import annotations

from fastapi import APIRouter, Depends, status

from medauth.api.dependencies import (
    client_context,
    get_current_user,
    global_rate_limit,
    require_resource_owner,
    require_roles,
    strict_rate_limit,
)
from medauth.api.schemas import (
    AccountStatusRequest,
    AuthResponse,
    LoginRequest,
    MessageResponse,
    RefreshRequest,
    RefreshResponse,
    RegisterRequest,
    RevokeAllResponse,
    SessionListResponse,
    SessionResponse,
    TokensResponse,
    UserEnvelope,
    UserResponse,
)
from medauth.service.auth import AuthContext, AuthResult, ClientContext, RegistrationData
from medauth.service.runtime import get_runtime
from medauth.storage.models import Role

router = APIRouter(prefix="/v1", dependencies=[Depends(global_rate_limit)])


def _auth_response(message: str, result: AuthResult) -> AuthResponse:
    return AuthResponse(
        message=message,
        user=UserResponse.from_account(result.account),
        tokens=TokensResponse(
            access_token=result.tokens.access_token,
            refresh_token=result.tokens.refresh_token,
        ),
    )


# -- auth ---------------------------------------------------------------------


@router.post(
    "/auth/register",
    response_model=AuthResponse,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(strict_rate_limit("register"))],
)
async def register(
    body: RegisterRequest, client: ClientContext = Depends(client_context)
):
    runtime = get_runtime()
    result = await runtime.auth.register(
        RegistrationData(
            email=body.email,
            password=body.password,
            first_name=body.first_name,
            last_name=body.last_name,
            role=body.role or Role.PATIENT.value,
            phone=body.phone,
            address=body.address,
            date_of_birth=body.date_of_birth,
            gender=body.gender,
            blood_type=body.blood_type,
        ),
        client,
    )
    return _auth_response("User registered successfully", result)


@router.post(
    "/auth/login",
    response_model=AuthResponse,
    dependencies=[Depends(strict_rate_limit("login"))],
)
async def login(body: LoginRequest, client: ClientContext = Depends(client_context)):
    runtime = get_runtime()
    result = await runtime.auth.login(body.email, body.password, client)
    return _auth_response("Login successful", result)


@router.post("/auth/logout", response_model=MessageResponse)
async def logout(identity: AuthContext = Depends(get_current_user)):
    await get_runtime().auth.logout(identity)
    return MessageResponse(message="Logout successful")


@router.post(
    "/auth/refresh",
    response_model=RefreshResponse,
    response_model_exclude_none=True,
)
async def refresh(body: RefreshRequest, client: ClientContext = Depends(client_context)):
    pair = await get_runtime().auth.refresh(body.refresh_token, client)
    return RefreshResponse(access_token=pair.access_token, refresh_token=pair.refresh_token)


@router.get("/auth/me", response_model=UserEnvelope)
async def me(identity: AuthContext = Depends(get_current_user)):
    account = get_runtime().auth.get_profile(identity.user_id)
    return UserEnvelope(user=UserResponse.from_account(account))


# -- users --------------------------------------------------------------------


@router.get("/users/{user_id}/profile", response_model=UserEnvelope)
async def user_profile(
    user_id: str, identity: AuthContext = Depends(require_resource_owner("user_id"))
):
    account = get_runtime().auth.get_profile(user_id)
    return UserEnvelope(user=UserResponse.from_account(account))


# -- admin --------------------------------------------------------------------


@router.get("/admin/users/{user_id}/sessions", response_model=SessionListResponse)
async def list_user_sessions(
    user_id: str, identity: AuthContext = Depends(require_roles(Role.ADMIN))
):
    sessions = get_runtime().auth.list_sessions(user_id)
    return SessionListResponse(
        sessions=[SessionResponse.from_session(s) for s in sessions]
    )


@router.delete("/admin/users/{user_id}/sessions", response_model=RevokeAllResponse)
async def revoke_user_sessions(
    user_id: str, identity: AuthContext = Depends(require_roles(Role.ADMIN))
):
    revoked = await get_runtime().auth.revoke_all_sessions(user_id, actor=identity)
    return RevokeAllResponse(message="Sessions revoked", revoked=revoked)


@router.delete("/admin/sessions/{session_id}", response_model=MessageResponse)
async def revoke_session(
    session_id: str, identity: AuthContext = Depends(require_roles(Role.ADMIN))
):
    await get_runtime().auth.revoke_session(session_id, actor=identity)
    return MessageResponse(message="Session revoked")


@router.patch("/admin/users/{user_id}/status", response_model=UserEnvelope)
async def set_user_status(
    user_id: str,
    body: AccountStatusRequest,
    identity: AuthContext = Depends(require_roles(Role.ADMIN)),
):
    account = await get_runtime().auth.set_account_active(
        user_id, body.is_active, actor=identity
    )
    return UserEnvelope(user=UserResponse.from_account(account))
