from __future__ import annotations

import base64
import hashlib
import hmac
import json
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from studybuddy.config import Settings
from studybuddy.logging import get_logger
from studybuddy.storage.models import Account

logger = get_logger(__name__)

ACCESS = "access"
REFRESH = "refresh"


@dataclass
class TokenClaims:
    account_id: str
    token_version: int
    token_type: str
    issued_at: int
    expires_at: int
    jti: str


@dataclass
class TokenPair:
    access_token: str
    refresh_token: str
    access_expires_at: datetime
    refresh_expires_at: datetime

    def public_view(self) -> dict[str, Any]:
        # the refresh token only ever travels in the cookie
        return {
            "access_token": self.access_token,
            "token_type": "bearer",
            "expires_at": self.access_expires_at.isoformat(),
        }


class TokenIssuer:
    """Mints and validates HS256 access/refresh tokens without touching storage.

    Access and refresh tokens are signed with separate secrets so one can never
    be replayed as the other even if the ``type`` claim were ignored.
    """

    def __init__(self, settings: Settings) -> None:
        self.settings = settings
        self._secrets = {
            ACCESS: settings.jwt_secret.encode(),
            REFRESH: (settings.jwt_refresh_secret or settings.jwt_secret).encode(),
        }
        self._ttls = {
            ACCESS: timedelta(minutes=settings.access_token_ttl_minutes),
            REFRESH: timedelta(minutes=settings.refresh_token_ttl_minutes),
        }

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    def issue_pair(self, account: Account) -> TokenPair:
        access_token, access_exp = self._issue(account, ACCESS)
        refresh_token, refresh_exp = self._issue(account, REFRESH)
        return TokenPair(
            access_token=access_token,
            refresh_token=refresh_token,
            access_expires_at=access_exp,
            refresh_expires_at=refresh_exp,
        )

    def _issue(self, account: Account, token_type: str) -> tuple[str, datetime]:
        now = self._now()
        expires_at = now + self._ttls[token_type]
        payload = {
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "sub": account.id,
            "ver": account.token_version,
            "type": token_type,
            "iat": int(now.timestamp()),
            "exp": int(expires_at.timestamp()),
            # unique per token so two pairs minted in the same second differ
            "jti": str(uuid.uuid4()),
        }
        return self._encode_jwt(payload, self._secrets[token_type]), expires_at

    def verify(self, token: Optional[str], expected_type: str) -> Optional[TokenClaims]:
        """Check signature, issuer, audience, type and expiry.

        Returns ``None`` on any failure; callers decide what that means.
        Account state (status, version, password change) is checked elsewhere.
        """

        if not token or expected_type not in self._secrets:
            return None
        payload = self._decode_jwt(token, self._secrets[expected_type])
        if not payload or payload.get("type") != expected_type:
            return None
        sub = payload.get("sub")
        ver = payload.get("ver")
        iat = payload.get("iat")
        exp = payload.get("exp")
        jti = payload.get("jti")
        if not isinstance(sub, str) or not sub:
            return None
        if not isinstance(ver, int) or isinstance(ver, bool) or ver < 0:
            return None
        if not isinstance(iat, (int, float)) or not isinstance(exp, (int, float)):
            return None
        if exp <= self._now().timestamp():
            return None
        return TokenClaims(
            account_id=sub,
            token_version=ver,
            token_type=expected_type,
            issued_at=int(iat),
            expires_at=int(exp),
            jti=str(jti or ""),
        )

    @staticmethod
    def _encode_segment(data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    @staticmethod
    def _decode_segment(segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str, secret: bytes) -> str:
        return self._encode_segment(
            hmac.new(secret, signing_input.encode(), hashlib.sha256).digest()
        )

    def _encode_jwt(self, payload: dict[str, Any], secret: bytes) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input, secret)}"

    def _decode_jwt(self, token: str, secret: bytes) -> Optional[dict[str, Any]]:
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            return None

        # only HS256 is accepted; rejects alg=none and algorithm confusion
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("jwt_header_decode_failed")
            return None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning(
                "jwt_invalid_algorithm",
                alg=header.get("alg") if isinstance(header, dict) else None,
            )
            return None

        expected_sig = self._sign(f"{header_b64}.{payload_b64}", secret)
        if not hmac.compare_digest(expected_sig.encode(), sig_b64.encode()):
            return None
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(payload, dict):
            return None
        if payload.get("iss") != self.settings.jwt_issuer:
            return None
        aud = payload.get("aud")
        if isinstance(aud, str):
            valid_aud = aud == self.settings.jwt_audience
        elif isinstance(aud, list):
            valid_aud = self.settings.jwt_audience in aud
        else:
            valid_aud = False
        if not valid_aud:
            return None
        return payload
