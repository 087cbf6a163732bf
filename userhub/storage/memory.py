from __future__ import annotations

import threading
from dataclasses import replace
from datetime import datetime
from typing import Dict, List, Optional, Tuple

from userhub.logging import get_logger
from userhub.storage.errors import ConstraintViolation
from userhub.storage.models import RefreshToken, User, utcnow


class MemoryStore:
    """In-process credential store and refresh-token ledger.

    Used for tests and local development. Every operation runs under one
    re-entrant lock, so the conditional token consumes are atomic the same
    way the single-statement updates of ``PostgresStore`` are.
    """

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.refresh_tokens: Dict[str, RefreshToken] = {}
        self._data_lock = threading.RLock()

    def verify_connection(self) -> None:
        return None

    def close(self) -> None:
        return None

    # -- users ---------------------------------------------------------

    def create_user(self, user: User) -> User:
        with self._data_lock:
            if any(existing.email == user.email for existing in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            self.users[user.id] = replace(user)
            return replace(user)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return replace(user) if user else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        normalized = email.strip().lower()
        with self._data_lock:
            user = next((u for u in self.users.values() if u.email == normalized), None)
            return replace(user) if user else None

    def list_users(
        self, *, page: int = 1, limit: int = 10, search: str = ""
    ) -> Tuple[List[User], int]:
        needle = search.strip().lower()
        with self._data_lock:
            matches = [
                u
                for u in self.users.values()
                if not needle or needle in u.name.lower() or needle in u.email.lower()
            ]
            matches.sort(key=lambda u: u.created_at, reverse=True)
            offset = (page - 1) * limit
            return [replace(u) for u in matches[offset : offset + limit]], len(matches)

    def update_profile(
        self,
        user_id: str,
        *,
        name: str | None = None,
        profile_image: str | None = None,
    ) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            if name is not None:
                user.name = name
            if profile_image is not None:
                user.profile_image = profile_image
            user.updated_at = utcnow()
            return replace(user)

    def update_user_role(self, user_id: str, role: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.role = role
            user.updated_at = utcnow()
            return replace(user)

    def set_password_hash(self, user_id: str, password_hash: str) -> None:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                raise ConstraintViolation("user not found", {"user_id": user_id})
            user.password_hash = password_hash
            user.updated_at = utcnow()

    def mark_email_verified(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.is_verified = True
            user.email_verification_token = None
            user.updated_at = utcnow()
            return replace(user)

    def delete_user(self, user_id: str) -> bool:
        with self._data_lock:
            if user_id not in self.users:
                return False
            self.users.pop(user_id, None)
            for token, row in list(self.refresh_tokens.items()):
                if row.user_id == user_id:
                    self.refresh_tokens.pop(token, None)
            return True

    # -- single-use tokens ---------------------------------------------

    def consume_verification_token(self, token: str) -> Optional[User]:
        if not token:
            return None
        with self._data_lock:
            user = next(
                (u for u in self.users.values() if u.email_verification_token == token),
                None,
            )
            if not user:
                return None
            user.is_verified = True
            user.email_verification_token = None
            user.updated_at = utcnow()
            return replace(user)

    def set_password_reset(
        self, user_id: str, token: str, expires_at: datetime
    ) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.password_reset_token = token
            user.password_reset_expires = expires_at
            user.updated_at = utcnow()
            return replace(user)

    def consume_password_reset(
        self, token: str, password_hash: str, now: datetime | None = None
    ) -> Optional[User]:
        if not token:
            return None
        now = now or utcnow()
        with self._data_lock:
            user = next(
                (
                    u
                    for u in self.users.values()
                    if u.password_reset_token == token
                    and u.password_reset_expires is not None
                    and u.password_reset_expires > now
                ),
                None,
            )
            if not user:
                return None
            user.password_hash = password_hash
            user.password_reset_token = None
            user.password_reset_expires = None
            user.updated_at = utcnow()
            return replace(user)

    # -- refresh-token ledger ------------------------------------------

    def create_refresh_token(
        self, user_id: str, token: str, expires_at: datetime
    ) -> RefreshToken:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": user_id})
            if token in self.refresh_tokens:
                raise ConstraintViolation("refresh token already exists", {"field": "token"})
            row = RefreshToken.new(user_id, token, expires_at)
            self.refresh_tokens[token] = row
            return replace(row)

    def get_refresh_token(self, token: str) -> Optional[RefreshToken]:
        with self._data_lock:
            row = self.refresh_tokens.get(token)
            return replace(row) if row else None

    def rotate_refresh_token(
        self,
        old_token: str,
        new_token: str,
        new_expires_at: datetime,
        now: datetime | None = None,
    ) -> Optional[RefreshToken]:
        now = now or utcnow()
        with self._data_lock:
            row = self.refresh_tokens.get(old_token)
            if not row or not row.is_live(now):
                return None
            self.refresh_tokens.pop(old_token)
            row.token = new_token
            row.expires_at = new_expires_at
            self.refresh_tokens[new_token] = row
            return replace(row)

    def delete_refresh_token(self, token: str) -> bool:
        with self._data_lock:
            return self.refresh_tokens.pop(token, None) is not None

    def delete_user_refresh_tokens(self, user_id: str) -> int:
        with self._data_lock:
            stale = [t for t, row in self.refresh_tokens.items() if row.user_id == user_id]
            for token in stale:
                self.refresh_tokens.pop(token, None)
            return len(stale)
