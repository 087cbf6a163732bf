from __future__ import annotations

from typing import Optional

from fastapi import (
    APIRouter,
    BackgroundTasks,
    Depends,
    File,
    Header,
    Query,
    Request,
    Response,
    UploadFile,
)
from fastapi.exceptions import RequestValidationError
from pydantic import ValidationError as PydanticValidationError
from starlette.datastructures import UploadFile as StarletteUploadFile

from userhub.api.schemas import (
    ForgotPasswordRequest,
    LoginRequest,
    LoginResponse,
    LogoutRequest,
    MessageResponse,
    RefreshTokenRequest,
    RegisterRequest,
    ResetPasswordRequest,
    TokenPairResponse,
    UpdateProfileRequest,
    UserEnvelope,
    UserListResponse,
)
from userhub.logging import get_logger
from userhub.service.auth import AuthContext, AuthService
from userhub.service.errors import (
    AuthenticationError,
    PayloadTooLargeError,
    RateLimitedError,
    ValidationError,
)
from userhub.service.runtime import get_runtime

logger = get_logger(__name__)


async def enforce_rate_limit(request: Request, response: Response) -> None:
    """Per-IP fixed window over every /api route."""
    runtime = get_runtime()
    limit = runtime.settings.rate_limit_requests
    if limit <= 0:
        return
    client_ip = request.client.host if request.client else "unknown"
    try:
        allowed, remaining, reset_seconds = await runtime.cache.check_rate_limit(
            f"api:{client_ip}", limit, runtime.settings.rate_limit_window_seconds
        )
    except Exception as exc:
        logger.warning("rate_limit_check_failed", error=str(exc))
        return
    response.headers["X-RateLimit-Limit"] = str(limit)
    response.headers["X-RateLimit-Remaining"] = str(remaining)
    if not allowed:
        logger.warning("rate_limited", client_ip=client_ip, path=request.url.path)
        raise RateLimitedError(detail={"retry_after": reset_seconds})


router = APIRouter(prefix="/api", dependencies=[Depends(enforce_rate_limit)])

FORGOT_PASSWORD_MESSAGE = "If your email exists, you will receive a password reset link"


async def get_current_user(authorization: Optional[str] = Header(None)) -> AuthContext:
    return await get_runtime().auth.authenticate(authorization)


async def get_admin_user(
    principal: AuthContext = Depends(get_current_user),
) -> AuthContext:
    return AuthService.require_role(principal, "admin")


# -- auth -----------------------------------------------------------------


async def _read_upload(upload: StarletteUploadFile, max_bytes: int) -> bytes:
    max_bytes = max(1, max_bytes)
    contents = await upload.read(max_bytes + 1)
    if len(contents) > max_bytes:
        raise PayloadTooLargeError(detail={"max_bytes": max_bytes})
    return contents


async def _registration_input(
    request: Request,
) -> tuple[RegisterRequest, Optional[StarletteUploadFile]]:
    """Accept JSON or multipart form data; the form may carry ``profileImage``."""
    upload = None
    content_type = request.headers.get("content-type", "")
    if content_type.startswith("multipart/form-data"):
        form = await request.form()
        fields = {key: value for key, value in form.items() if isinstance(value, str)}
        candidate = form.get("profileImage")
        # browsers send an empty part when no file was picked
        if isinstance(candidate, StarletteUploadFile) and candidate.filename:
            upload = candidate
    else:
        try:
            fields = await request.json()
        except ValueError as exc:
            raise ValidationError("Request body must be JSON or multipart form data") from exc
    try:
        body = RegisterRequest.model_validate(fields)
    except PydanticValidationError as exc:
        raise RequestValidationError(exc.errors()) from exc
    return body, upload


@router.post("/auth/register", response_model=UserEnvelope, status_code=201, tags=["auth"])
async def register(request: Request, background_tasks: BackgroundTasks):
    runtime = get_runtime()
    body, upload = await _registration_input(request)
    stored_image = None
    if upload is not None:
        contents = await _read_upload(upload, runtime.settings.max_upload_bytes)
        stored_image = runtime.users.store_profile_image(upload.filename, contents)
    try:
        user, token = await runtime.auth.register(
            body.name,
            body.email,
            body.password,
            role=body.role,
            profile_image=stored_image,
        )
    except Exception:
        if stored_image:
            runtime.users.discard_profile_image(stored_image)
        raise
    # delivery happens after the response; a failed send never undoes the signup
    background_tasks.add_task(runtime.email.send_email_verification, user.email, token)
    return UserEnvelope(
        message="User registered successfully. Please check your email for verification.",
        user=user.public_profile(),
    )


@router.get("/auth/verify-email", response_model=MessageResponse, tags=["auth"])
async def verify_email(token: str = Query("", max_length=256)):
    runtime = get_runtime()
    await runtime.auth.verify_email(token)
    return MessageResponse(message="Email verified successfully")


@router.post("/auth/login", response_model=LoginResponse, tags=["auth"])
async def login(body: LoginRequest):
    runtime = get_runtime()
    result = await runtime.auth.login(body.email, body.password)
    return LoginResponse(
        message="Login successful",
        access_token=result.tokens.access_token,
        refresh_token=result.tokens.refresh_token,
        user=result.user,
    )


@router.post("/auth/refresh-token", response_model=TokenPairResponse, tags=["auth"])
async def refresh_token(body: Optional[RefreshTokenRequest] = None):
    token = body.refresh_token if body else None
    if not token:
        raise AuthenticationError("Refresh token required")
    runtime = get_runtime()
    pair = await runtime.auth.refresh(token)
    return TokenPairResponse(
        message="Tokens refreshed successfully",
        access_token=pair.access_token,
        refresh_token=pair.refresh_token,
    )


@router.post("/auth/forgot-password", response_model=MessageResponse, tags=["auth"])
async def forgot_password(body: ForgotPasswordRequest, background_tasks: BackgroundTasks):
    runtime = get_runtime()
    issued = await runtime.auth.forgot_password(body.email)
    if issued:
        user, token = issued
        background_tasks.add_task(runtime.email.send_password_reset, user.email, token)
    # same answer either way so the endpoint cannot reveal which accounts exist
    return MessageResponse(message=FORGOT_PASSWORD_MESSAGE)


@router.post("/auth/reset-password", response_model=MessageResponse, tags=["auth"])
async def reset_password(
    body: ResetPasswordRequest,
    token: str = Query("", max_length=256),
):
    runtime = get_runtime()
    await runtime.auth.reset_password(token, body.password)
    return MessageResponse(message="Password reset successful")


@router.post("/auth/logout", response_model=MessageResponse, tags=["auth"])
async def logout(
    body: Optional[LogoutRequest] = None,
    principal: AuthContext = Depends(get_current_user),
):
    runtime = get_runtime()
    await runtime.auth.logout(
        principal.user_id,
        refresh_token=body.refresh_token if body else None,
        access_token=principal.access_token,
    )
    return MessageResponse(message="Logout successful")


# -- users ----------------------------------------------------------------


@router.get("/users/profile", response_model=UserEnvelope, tags=["users"])
async def get_profile(principal: AuthContext = Depends(get_current_user)):
    runtime = get_runtime()
    profile = await runtime.users.get_profile(principal.user_id)
    return UserEnvelope(message="Profile retrieved successfully", user=profile)


@router.put("/users/profile", response_model=UserEnvelope, tags=["users"])
async def update_profile(
    body: UpdateProfileRequest,
    principal: AuthContext = Depends(get_current_user),
):
    runtime = get_runtime()
    profile = await runtime.users.update_profile(principal.user_id, name=body.name)
    return UserEnvelope(message="Profile updated successfully", user=profile)


@router.post("/users/profile/image", response_model=UserEnvelope, tags=["users"])
async def upload_profile_image(
    profile_image: UploadFile = File(..., alias="profileImage"),
    principal: AuthContext = Depends(get_current_user),
):
    runtime = get_runtime()
    contents = await _read_upload(profile_image, runtime.settings.max_upload_bytes)
    profile = await runtime.users.save_profile_image(
        principal.user_id, profile_image.filename, contents
    )
    return UserEnvelope(message="Profile image updated successfully", user=profile)


@router.get("/users", response_model=UserListResponse, tags=["users"])
async def list_users(
    page: int = Query(1, ge=1),
    limit: Optional[int] = Query(None, ge=1),
    search: str = Query("", max_length=100),
    principal: AuthContext = Depends(get_current_user),
):
    runtime = get_runtime()
    result = await runtime.users.list_users(page=page, limit=limit, search=search)
    return UserListResponse(message="Users retrieved successfully", **result)


@router.get("/users/{user_id}", response_model=UserEnvelope, tags=["users"])
async def get_user_by_id(
    user_id: str,
    principal: AuthContext = Depends(get_current_user),
):
    runtime = get_runtime()
    profile = await runtime.users.get_user(user_id)
    return UserEnvelope(message="User retrieved successfully", user=profile)


@router.delete("/users/{user_id}", response_model=MessageResponse, tags=["users"])
async def delete_user(
    user_id: str,
    principal: AuthContext = Depends(get_admin_user),
):
    runtime = get_runtime()
    await runtime.users.delete_user(principal, user_id)
    return MessageResponse(message="User deleted successfully")
