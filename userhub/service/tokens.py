from __future__ import annotations

import base64
import hashlib
import hmac
import json
import math
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from userhub.config import Settings
from userhub.logging import get_logger

logger = get_logger(__name__)

ACCESS = "access"
REFRESH = "refresh"


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    access_expires_at: datetime
    refresh_expires_at: datetime


def _encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _decode_segment(segment: str) -> bytes:
    padding = "=" * ((4 - len(segment) % 4) % 4)
    return base64.urlsafe_b64decode(segment + padding)


def _sign(secret: str, signing_input: str) -> str:
    return _encode_segment(
        hmac.new(secret.encode(), signing_input.encode(), hashlib.sha256).digest()
    )


class TokenIssuer:
    """Mints and checks HS256 access/refresh tokens.

    Access and refresh tokens are signed with different secrets, so one can
    never be replayed as the other even if the ``token_type`` claim were
    forged. Each token carries a random ``jti``.
    """

    def __init__(
        self,
        access_secret: str,
        refresh_secret: str,
        *,
        issuer: str = "userhub",
        access_ttl_seconds: int = 15 * 60,
        refresh_ttl_seconds: int = 7 * 24 * 3600,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if access_secret == refresh_secret:
            raise ValueError("access and refresh secrets must differ")
        self._secrets = {ACCESS: access_secret, REFRESH: refresh_secret}
        self._ttls = {ACCESS: access_ttl_seconds, REFRESH: refresh_ttl_seconds}
        self.issuer = issuer
        self._clock = clock

    @classmethod
    def from_settings(
        cls, settings: Settings, *, clock: Callable[[], float] = time.time
    ) -> "TokenIssuer":
        return cls(
            settings.jwt_secret,
            settings.jwt_refresh_secret,
            issuer=settings.jwt_issuer,
            access_ttl_seconds=settings.access_token_ttl_minutes * 60,
            refresh_ttl_seconds=settings.refresh_token_ttl_days * 24 * 3600,
            clock=clock,
        )

    @property
    def access_ttl_seconds(self) -> int:
        return self._ttls[ACCESS]

    @property
    def refresh_ttl_seconds(self) -> int:
        return self._ttls[REFRESH]

    def _encode(self, user_id: str, token_type: str, now: int) -> tuple[str, int]:
        exp = now + self._ttls[token_type]
        payload = {
            "iss": self.issuer,
            "sub": user_id,
            "token_type": token_type,
            "jti": str(uuid.uuid4()),
            "iat": now,
            "exp": exp,
        }
        header_enc = _encode_segment(
            json.dumps({"alg": "HS256", "typ": "JWT"}, separators=(",", ":")).encode()
        )
        payload_enc = _encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{_sign(self._secrets[token_type], signing_input)}", exp

    def issue_token_pair(self, user_id: str) -> TokenPair:
        now = int(self._clock())
        access, access_exp = self._encode(user_id, ACCESS, now)
        refresh, refresh_exp = self._encode(user_id, REFRESH, now)
        return TokenPair(
            access_token=access,
            refresh_token=refresh,
            access_expires_at=datetime.fromtimestamp(access_exp, tz=timezone.utc),
            refresh_expires_at=datetime.fromtimestamp(refresh_exp, tz=timezone.utc),
        )

    def _decode(self, token: str, token_type: str) -> Optional[dict[str, Any]]:
        if not token:
            return None
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            return None
        try:
            header = json.loads(_decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("jwt_header_decode_failed")
            return None
        # reject "none" and any algorithm other than the one we sign with
        if not isinstance(header, dict):
            return None
        if header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm", alg=header.get("alg"))
            return None
        expected_sig = _sign(self._secrets[token_type], f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig, sig_b64):
            return None
        try:
            payload = json.loads(_decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(payload, dict):
            return None
        if payload.get("token_type") != token_type or payload.get("iss") != self.issuer:
            return None
        if not payload.get("sub"):
            return None
        try:
            exp_ts = float(payload.get("exp"))
        except (TypeError, ValueError):
            return None
        if exp_ts <= self._clock():
            return None
        return payload

    def decode_access(self, token: str) -> Optional[dict[str, Any]]:
        return self._decode(token, ACCESS)

    def decode_refresh(self, token: str) -> Optional[dict[str, Any]]:
        return self._decode(token, REFRESH)

    def remaining_lifetime(self, payload: dict[str, Any]) -> int:
        """Seconds until ``exp`` rounded up, never negative."""
        try:
            return max(0, math.ceil(float(payload["exp"]) - self._clock()))
        except (KeyError, TypeError, ValueError, OverflowError):
            return 0
