from __future__ import annotations

import re
import uuid
from pathlib import Path


class PathTraversalError(ValueError):
    """Raised when a path escapes the intended base directory."""


def safe_join(base: Path, relative: str) -> Path:
    """Join ``relative`` to ``base``; the result must resolve inside ``base``."""

    base_resolved = base.resolve()
    rel_path = Path(relative)
    if rel_path.is_absolute():
        raise PathTraversalError("absolute paths not allowed")

    candidate = (base_resolved / rel_path).resolve()
    if candidate == base_resolved or base_resolved in candidate.parents:
        return candidate

    raise PathTraversalError("path traversal detected")


def upload_name(original: str | None, prefix: str) -> str:
    """Generated file name keeping only a sanitized extension of ``original``."""
    suffix = Path(original or "").suffix.lower()
    suffix = re.sub(r"[^a-z0-9.]", "", suffix)[:10]
    return f"{prefix}-{uuid.uuid4().hex}{suffix}"
