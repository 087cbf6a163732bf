from __future__ import annotations

import math
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol, Tuple

from userhub.config import Settings
from userhub.logging import get_logger
from userhub.service.auth import AuthContext
from userhub.service.errors import (
    ForbiddenError,
    NotFoundError,
    PayloadTooLargeError,
    ValidationError,
)
from userhub.service.fs import safe_join, upload_name
from userhub.storage.models import User, UserRole
from userhub.storage.redis_cache import CacheOperations

logger = get_logger(__name__)

ALLOWED_IMAGE_EXTENSIONS = frozenset({".jpg", ".jpeg", ".png", ".gif", ".webp"})
PROFILE_IMAGE_DIR = "profiles"


class DirectoryStore(Protocol):
    def get_user(self, user_id: str) -> Optional[User]: ...

    def list_users(
        self, *, page: int = 1, limit: int = 10, search: str = ""
    ) -> Tuple[List[User], int]: ...

    def update_profile(
        self,
        user_id: str,
        *,
        name: str | None = None,
        profile_image: str | None = None,
    ) -> Optional[User]: ...

    def delete_user(self, user_id: str) -> bool: ...


def build_pagination(page: int, limit: int, total: int) -> Dict[str, Any]:
    total_pages = math.ceil(total / limit) if limit else 0
    return {
        "currentPage": page,
        "totalPages": total_pages,
        "totalUsers": total,
        "hasNextPage": page < total_pages,
        "hasPrevPage": page > 1,
    }


class UserDirectory:
    """Profile reads and writes plus the paginated, cached user listing."""

    def __init__(
        self, store: DirectoryStore, cache: CacheOperations, settings: Settings
    ) -> None:
        self.store = store
        self.cache = cache
        self.settings = settings
        self.upload_root = Path(settings.upload_dir)

    async def _cached(self, step: str, action) -> Any:
        try:
            return await action
        except Exception as exc:
            logger.warning("cache_step_failed", step=step, error=str(exc))
            return None

    async def _profile(self, user_id: str) -> Dict[str, Any]:
        cached = await self._cached("read_profile", self.cache.get_user_profile(user_id))
        if cached:
            return cached
        user = self.store.get_user(user_id)
        if not user:
            raise NotFoundError("User not found")
        profile = user.public_profile()
        await self._cached(
            "cache_profile",
            self.cache.cache_user_profile(
                user_id, profile, self.settings.profile_cache_ttl_seconds
            ),
        )
        return profile

    async def get_profile(self, user_id: str) -> Dict[str, Any]:
        return await self._profile(user_id)

    async def get_user(self, user_id: str) -> Dict[str, Any]:
        return await self._profile(user_id)

    async def update_profile(
        self,
        user_id: str,
        *,
        name: Optional[str] = None,
        profile_image: Optional[str] = None,
    ) -> Dict[str, Any]:
        if name is not None:
            name = name.strip()
            if not name:
                raise ValidationError("Name cannot be empty", detail={"field": "name"})
        user = self.store.update_profile(user_id, name=name, profile_image=profile_image)
        if not user:
            raise NotFoundError("User not found")
        profile = user.public_profile()
        await self._cached(
            "cache_profile",
            self.cache.cache_user_profile(
                user_id, profile, self.settings.profile_cache_ttl_seconds
            ),
        )
        await self._cached("invalidate_directory", self.cache.invalidate_directory())
        logger.info("profile_updated", user_id=user_id)
        return profile

    def store_profile_image(self, filename: Optional[str], content: bytes) -> str:
        """Write an uploaded image under the upload root and return its file name."""
        extension = Path(filename or "").suffix.lower()
        if extension not in ALLOWED_IMAGE_EXTENSIONS:
            raise ValidationError(
                "Only image files are allowed",
                detail={"allowed": sorted(ALLOWED_IMAGE_EXTENSIONS)},
            )
        if len(content) > self.settings.max_upload_bytes:
            raise PayloadTooLargeError(
                detail={"max_bytes": self.settings.max_upload_bytes}
            )
        if not content:
            raise ValidationError("Empty upload")
        name = upload_name(filename, "profileImage")
        dest = safe_join(self.upload_root / PROFILE_IMAGE_DIR, name)
        dest.parent.mkdir(parents=True, exist_ok=True)
        dest.write_bytes(content)
        return f"{PROFILE_IMAGE_DIR}/{name}"

    async def save_profile_image(
        self, user_id: str, filename: Optional[str], content: bytes
    ) -> Dict[str, Any]:
        stored = self.store_profile_image(filename, content)
        try:
            return await self.update_profile(user_id, profile_image=stored)
        except NotFoundError:
            self.discard_profile_image(stored)
            raise

    def discard_profile_image(self, stored: str) -> None:
        safe_join(self.upload_root, stored).unlink(missing_ok=True)

    def _clamp(self, page: Optional[int], limit: Optional[int]) -> Tuple[int, int]:
        page = max(1, page or 1)
        limit = limit or self.settings.default_page_size
        limit = min(max(1, limit), self.settings.max_page_size)
        return page, limit

    async def list_users(
        self,
        page: Optional[int] = 1,
        limit: Optional[int] = None,
        search: str = "",
    ) -> Dict[str, Any]:
        page, limit = self._clamp(page, limit)
        search = (search or "").strip()
        cached = await self._cached(
            "read_directory", self.cache.get_directory_page(page, limit, search)
        )
        if cached:
            return cached
        users, total = self.store.list_users(page=page, limit=limit, search=search)
        result = {
            "users": [user.public_profile() for user in users],
            "pagination": build_pagination(page, limit, total),
        }
        await self._cached(
            "cache_directory",
            self.cache.cache_directory_page(
                page, limit, search, result, self.settings.directory_cache_ttl_seconds
            ),
        )
        return result

    async def delete_user(self, actor: AuthContext, user_id: str) -> None:
        if actor.role != UserRole.ADMIN.value:
            raise ForbiddenError("Insufficient permissions")
        if actor.user_id == user_id:
            raise ForbiddenError("Cannot delete your own account")
        if not self.store.delete_user(user_id):
            raise NotFoundError("User not found")
        await self._cached("evict_profile", self.cache.evict_user_profile(user_id))
        await self._cached("invalidate_directory", self.cache.invalidate_directory())
        logger.info("user_deleted", user_id=user_id, actor_id=actor.user_id)
