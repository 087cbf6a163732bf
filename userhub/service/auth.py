from __future__ import annotations

import secrets
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, Protocol

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from userhub.config import Settings
from userhub.logging import get_logger
from userhub.service.errors import (
    AuthenticationError,
    EmailTakenError,
    ForbiddenError,
    InvalidCredentialsError,
    InvalidOrExpiredTokenError,
    InvalidTokenError,
    NotVerifiedError,
)
from userhub.service.tokens import TokenIssuer, TokenPair
from userhub.storage.errors import ConstraintViolation
from userhub.storage.models import RefreshToken, User, UserRole
from userhub.storage.redis_cache import CacheOperations

logger = get_logger(__name__)


class AuthStore(Protocol):
    def create_user(self, user: User) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def set_password_hash(self, user_id: str, password_hash: str) -> None: ...

    def consume_verification_token(self, token: str) -> Optional[User]: ...

    def set_password_reset(
        self, user_id: str, token: str, expires_at: datetime
    ) -> Optional[User]: ...

    def consume_password_reset(
        self, token: str, password_hash: str, now: datetime | None = None
    ) -> Optional[User]: ...

    def create_refresh_token(
        self, user_id: str, token: str, expires_at: datetime
    ) -> RefreshToken: ...

    def get_refresh_token(self, token: str) -> Optional[RefreshToken]: ...

    def rotate_refresh_token(
        self,
        old_token: str,
        new_token: str,
        new_expires_at: datetime,
        now: datetime | None = None,
    ) -> Optional[RefreshToken]: ...

    def delete_refresh_token(self, token: str) -> bool: ...

    def delete_user_refresh_tokens(self, user_id: str) -> int: ...


class AuthState(str, Enum):
    UNVERIFIED = "unverified"
    VERIFIED = "verified"
    RESET_PENDING = "reset_pending"


def auth_state(user: User, now: datetime | None = None) -> AuthState:
    """Lifecycle state of a user record; reset expiry is checked live."""
    if not user.is_verified:
        return AuthState.UNVERIFIED
    now = now or datetime.now(timezone.utc)
    if (
        user.password_reset_token
        and user.password_reset_expires is not None
        and user.password_reset_expires > now
    ):
        return AuthState.RESET_PENDING
    return AuthState.VERIFIED


@dataclass
class AuthContext:
    user_id: str
    role: str
    access_token: str
    expires_in: int = 0


@dataclass
class LoginResult:
    tokens: TokenPair
    user: dict[str, Any]


@dataclass
class LogoutOutcome:
    refresh_revoked: bool = False
    access_blacklisted: bool = False
    cache_evicted: bool = False


class AuthService:
    """Registration, verification, login, refresh, logout and password reset.

    The store is the source of truth. The cache only holds profile
    snapshots and the access-token blacklist, and every write to it
    outside ``authenticate`` is best-effort.
    """

    def __init__(
        self,
        store: AuthStore,
        cache: CacheOperations,
        settings: Settings,
        *,
        tokens: Optional[TokenIssuer] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store: AuthStore = store
        self.cache = cache
        self.settings = settings
        self._clock = clock
        self.tokens = tokens or TokenIssuer.from_settings(settings, clock=clock)
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        self._dummy_hash: Optional[str] = None
        self.logger = logger

    def _now(self) -> datetime:
        return datetime.fromtimestamp(self._clock(), tz=timezone.utc)

    # -- password helpers ----------------------------------------------

    def hash_password(self, password: str) -> str:
        return self._pwd_hasher.hash(password)

    def _verify_hash(self, stored_hash: str, password: str) -> bool:
        try:
            return self._pwd_hasher.verify(stored_hash, password)
        except (InvalidHash, VerifyMismatchError, VerificationError):
            return False

    def _burn_verification(self, password: str) -> None:
        """Spend one argon2 verify so unknown emails cost the same as bad passwords."""
        if self._dummy_hash is None:
            self._dummy_hash = self._pwd_hasher.hash(secrets.token_urlsafe(16))
        self._verify_hash(self._dummy_hash, password)

    async def _best_effort(self, step: str, action: Awaitable[Any], **context: Any) -> bool:
        try:
            await action
        except Exception as exc:
            self.logger.warning(
                "cache_step_failed", step=step, error=str(exc), **context
            )
            return False
        return True

    # -- registration & verification -----------------------------------

    async def register(
        self,
        name: str,
        email: str,
        password: str,
        *,
        role: Optional[str] = None,
        profile_image: Optional[str] = None,
    ) -> tuple[User, str]:
        """Create an unverified user and return it with its verification token."""
        if role and role != UserRole.USER.value:
            raise ForbiddenError("Cannot self-register with an elevated role")
        normalized = email.strip().lower()
        if self.store.get_user_by_email(normalized):
            raise EmailTakenError()
        token = secrets.token_hex(self.settings.email_verification_token_bytes)
        user = User.new(
            name.strip(),
            normalized,
            self.hash_password(password),
            email_verification_token=token,
            profile_image=profile_image,
        )
        try:
            user = self.store.create_user(user)
        except ConstraintViolation as exc:
            if exc.field == "email":
                raise EmailTakenError() from exc
            raise
        await self._best_effort("invalidate_directory", self.cache.invalidate_directory())
        self.logger.info("user_registered", user_id=user.id)
        return user, token

    async def verify_email(self, token: str) -> User:
        user = self.store.consume_verification_token(token)
        if not user:
            self.logger.warning("email_verification_rejected")
            raise InvalidTokenError()
        await self._best_effort(
            "evict_profile", self.cache.evict_user_profile(user.id), user_id=user.id
        )
        await self._best_effort("invalidate_directory", self.cache.invalidate_directory())
        self.logger.info("email_verified", user_id=user.id)
        return user

    # -- login / refresh / logout --------------------------------------

    async def login(self, email: str, password: str) -> LoginResult:
        user = self.store.get_user_by_email(email)
        if not user:
            self._burn_verification(password)
            self.logger.info("login_failed", reason="invalid_credentials")
            raise InvalidCredentialsError()
        if not self._verify_hash(user.password_hash, password):
            self.logger.info("login_failed", reason="invalid_credentials", user_id=user.id)
            raise InvalidCredentialsError()
        # only after the password matched, so verification status never leaks
        if not user.is_verified:
            self.logger.info("login_failed", reason="not_verified", user_id=user.id)
            raise NotVerifiedError()

        if self._pwd_hasher.check_needs_rehash(user.password_hash):
            self.store.set_password_hash(user.id, self.hash_password(password))

        pair = self.tokens.issue_token_pair(user.id)
        self.store.create_refresh_token(user.id, pair.refresh_token, pair.refresh_expires_at)
        profile = user.public_profile()
        await self._best_effort(
            "cache_profile",
            self.cache.cache_user_profile(
                user.id, profile, self.settings.profile_cache_ttl_seconds
            ),
            user_id=user.id,
        )
        self.logger.info("login_succeeded", user_id=user.id)
        return LoginResult(tokens=pair, user=profile)

    async def refresh(self, refresh_token: str) -> TokenPair:
        """Exchange a live refresh token for a new pair, consuming the old one."""
        rejected = InvalidOrExpiredTokenError(
            "Invalid or expired refresh token", status_code=403
        )
        payload = self.tokens.decode_refresh(refresh_token)
        if not payload:
            self.logger.warning("refresh_rejected", reason="bad_signature_or_expired")
            raise rejected
        user_id = str(payload["sub"])
        pair = self.tokens.issue_token_pair(user_id)
        rotated = self.store.rotate_refresh_token(
            refresh_token, pair.refresh_token, pair.refresh_expires_at, self._now()
        )
        if not rotated or rotated.user_id != user_id:
            self.logger.warning("refresh_rejected", reason="not_in_ledger", user_id=user_id)
            raise rejected
        self.logger.info("refresh_rotated", user_id=user_id)
        return pair

    async def logout(
        self,
        user_id: str,
        *,
        refresh_token: Optional[str] = None,
        access_token: Optional[str] = None,
    ) -> LogoutOutcome:
        """Revoke what the caller holds; each step is independent and best-effort."""
        outcome = LogoutOutcome()

        if refresh_token:
            try:
                row = self.store.get_refresh_token(refresh_token)
                if row and row.user_id == user_id:
                    outcome.refresh_revoked = self.store.delete_refresh_token(refresh_token)
            except Exception as exc:
                self.logger.warning(
                    "logout_step_failed", step="refresh_token", user_id=user_id, error=str(exc)
                )

        if access_token:
            payload = self.tokens.decode_access(access_token)
            ttl = (
                self.tokens.remaining_lifetime(payload)
                if payload
                else self.tokens.access_ttl_seconds
            )
            outcome.access_blacklisted = await self._best_effort(
                "blacklist_access_token",
                self.cache.blacklist_access_token(access_token, ttl),
                user_id=user_id,
            )

        outcome.cache_evicted = await self._best_effort(
            "evict_profile", self.cache.evict_user_profile(user_id), user_id=user_id
        )
        self.logger.info(
            "logout_completed",
            user_id=user_id,
            refresh_revoked=outcome.refresh_revoked,
            access_blacklisted=outcome.access_blacklisted,
            cache_evicted=outcome.cache_evicted,
        )
        return outcome

    # -- password reset ------------------------------------------------

    async def forgot_password(self, email: str) -> Optional[tuple[User, str]]:
        """Issue a reset token for a known email; unknown emails return ``None``."""
        user = self.store.get_user_by_email(email)
        if not user:
            self.logger.info("password_reset_unknown_email")
            return None
        token = secrets.token_hex(32)
        expires_at = self._now() + timedelta(minutes=self.settings.password_reset_ttl_minutes)
        self.store.set_password_reset(user.id, token, expires_at)
        self.logger.info("password_reset_requested", user_id=user.id)
        return user, token

    async def reset_password(self, token: str, new_password: str) -> User:
        user = self.store.consume_password_reset(
            token, self.hash_password(new_password), self._now()
        )
        if not user:
            self.logger.warning("password_reset_rejected")
            raise InvalidOrExpiredTokenError(
                "Invalid or expired reset token", status_code=400
            )
        try:
            self.store.delete_user_refresh_tokens(user.id)
        except Exception as exc:
            self.logger.warning(
                "refresh_token_purge_failed", user_id=user.id, error=str(exc)
            )
        await self._best_effort(
            "evict_profile", self.cache.evict_user_profile(user.id), user_id=user.id
        )
        self.logger.info("password_reset_completed", user_id=user.id)
        return user

    # -- request authentication ----------------------------------------

    async def authenticate(self, authorization: Optional[str]) -> AuthContext:
        if not authorization:
            raise AuthenticationError("Access token required")
        scheme, _, token = authorization.partition(" ")
        token = token.strip()
        if scheme.lower() != "bearer" or not token:
            raise AuthenticationError("Access token required")
        payload = self.tokens.decode_access(token)
        if not payload:
            raise AuthenticationError("Invalid or expired token")
        try:
            blacklisted = await self.cache.is_access_token_blacklisted(token)
        except Exception as exc:
            self.logger.error("blacklist_check_failed", error=str(exc))
            raise AuthenticationError("Invalid or expired token") from exc
        if blacklisted:
            raise AuthenticationError("Token has been revoked")
        user = self.store.get_user(str(payload["sub"]))
        if not user:
            raise AuthenticationError("Invalid or expired token")
        return AuthContext(
            user_id=user.id,
            role=user.role,
            access_token=token,
            expires_in=self.tokens.remaining_lifetime(payload),
        )

    @staticmethod
    def require_role(ctx: AuthContext, role: str) -> AuthContext:
        if ctx.role != role:
            raise ForbiddenError("Insufficient permissions")
        return ctx
