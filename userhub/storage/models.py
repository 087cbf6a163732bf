from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UserRole(str, Enum):
    USER = "user"
    ADMIN = "admin"


@dataclass
class User:
    id: str
    name: str
    email: str
    password_hash: str
    role: str = UserRole.USER.value
    is_verified: bool = False
    email_verification_token: Optional[str] = None
    password_reset_token: Optional[str] = None
    password_reset_expires: Optional[datetime] = None
    profile_image: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(
        cls,
        name: str,
        email: str,
        password_hash: str,
        *,
        role: str = UserRole.USER.value,
        is_verified: bool = False,
        email_verification_token: str | None = None,
        profile_image: str | None = None,
    ) -> "User":
        now = utcnow()
        return cls(
            id=str(uuid.uuid4()),
            name=name,
            email=email.strip().lower(),
            password_hash=password_hash,
            role=role,
            is_verified=is_verified,
            email_verification_token=email_verification_token,
            profile_image=profile_image,
            created_at=now,
            updated_at=now,
        )

    def public_profile(self) -> Dict[str, Any]:
        """Profile view with the hash and every token field stripped."""
        return {
            "id": self.id,
            "name": self.name,
            "email": self.email,
            "role": self.role,
            "profileImage": self.profile_image,
            "isVerified": self.is_verified,
            "createdAt": self.created_at.isoformat(),
        }


@dataclass
class RefreshToken:
    id: str
    token: str
    user_id: str
    expires_at: datetime
    created_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(cls, user_id: str, token: str, expires_at: datetime) -> "RefreshToken":
        return cls(
            id=str(uuid.uuid4()),
            token=token,
            user_id=user_id,
            expires_at=expires_at,
        )

    def is_live(self, now: datetime | None = None) -> bool:
        return (now or utcnow()) < self.expires_at
