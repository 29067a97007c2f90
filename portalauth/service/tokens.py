from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
import uuid
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Callable, Dict, Optional

from portalauth.config import Settings
from portalauth.logging import get_logger
from portalauth.service.errors import (
    InvalidTokenError,
    TokenExpiredError,
    TokenMalformedError,
    TokenNotYetValidError,
    TokenSignatureInvalidError,
)

logger = get_logger(__name__)

ACCESS = "access"
REFRESH = "refresh"
PASSWORD_RESET = "password_reset"


@dataclass(frozen=True)
class TokenClass:
    name: str
    secret: str
    audience: str
    ttl: timedelta


@dataclass(frozen=True)
class IssuedToken:
    token: str
    jti: str
    issued_at: int
    expires_at: int

    @property
    def expires_in(self) -> int:
        return self.expires_at - self.issued_at


@dataclass(frozen=True)
class AccessClaims:
    user_id: str
    email: str
    role: str
    organizational_unit_id: Optional[int]
    session_id: str
    jti: str
    issued_at: int
    expires_at: int

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "AccessClaims":
        try:
            return cls(
                user_id=str(payload["sub"]),
                email=str(payload["email"]),
                role=str(payload["role"]),
                organizational_unit_id=payload.get("org_unit_id"),
                session_id=str(payload["sid"]),
                jti=str(payload["jti"]),
                issued_at=int(payload["iat"]),
                expires_at=int(payload["exp"]),
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise TokenMalformedError("access token is missing required claims") from exc


@dataclass(frozen=True)
class RefreshClaims:
    user_id: str
    session_id: str
    token_version: int
    jti: str
    issued_at: int
    expires_at: int

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "RefreshClaims":
        try:
            return cls(
                user_id=str(payload["sub"]),
                session_id=str(payload["sid"]),
                token_version=int(payload.get("ver", 1)),
                jti=str(payload["jti"]),
                issued_at=int(payload["iat"]),
                expires_at=int(payload["exp"]),
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise TokenMalformedError("refresh token is missing required claims") from exc


class TokenService:
    """Mints and verifies HS256 tokens for the access, refresh and
    password-reset token classes.

    Each class has its own signing key and audience, so a token minted for
    one purpose fails verification for any other. Expiry is strict; the
    clock-skew leeway only relaxes ``nbf``/``iat`` checks.
    """

    def __init__(self, settings: Settings, *, clock: Callable[[], float] = time.time) -> None:
        self.issuer = settings.token_issuer
        self._clock = clock
        self._leeway = settings.clock_skew_leeway.total_seconds()
        self._classes: Dict[str, TokenClass] = {
            ACCESS: TokenClass(
                ACCESS,
                settings.access_token_secret,
                settings.access_token_audience,
                settings.access_token_ttl,
            ),
            REFRESH: TokenClass(
                REFRESH,
                settings.refresh_token_secret,
                settings.refresh_token_audience,
                settings.refresh_token_ttl,
            ),
            PASSWORD_RESET: TokenClass(
                PASSWORD_RESET,
                settings.reset_token_secret,
                settings.reset_token_audience,
                settings.reset_token_ttl,
            ),
        }
        self._by_audience = {cls.audience: cls for cls in self._classes.values()}

    @property
    def access_audience(self) -> str:
        return self._classes[ACCESS].audience

    @property
    def refresh_audience(self) -> str:
        return self._classes[REFRESH].audience

    @property
    def reset_audience(self) -> str:
        return self._classes[PASSWORD_RESET].audience

    def ttl_seconds(self, token_class: str) -> int:
        return int(self._classes[token_class].ttl.total_seconds())

    # ------------------------------------------------------------------
    # encoding
    # ------------------------------------------------------------------

    @staticmethod
    def _encode_segment(data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    @staticmethod
    def _decode_segment(segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, secret: str, signing_input: str) -> str:
        digest = hmac.new(secret.encode(), signing_input.encode(), hashlib.sha256).digest()
        return self._encode_segment(digest)

    def _encode(self, token_class: TokenClass, payload: Dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = self._encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(token_class.secret, signing_input)}"

    def _mint(
        self, token_class: TokenClass, claims: Dict[str, Any], *, jti: Optional[str] = None
    ) -> IssuedToken:
        now = int(self._clock())
        exp = now + int(token_class.ttl.total_seconds())
        token_id = jti or uuid.uuid4().hex
        payload = {
            **claims,
            "iss": self.issuer,
            "aud": token_class.audience,
            "iat": now,
            "nbf": now,
            "exp": exp,
            "jti": token_id,
            "typ": token_class.name,
        }
        return IssuedToken(
            token=self._encode(token_class, payload),
            jti=token_id,
            issued_at=now,
            expires_at=exp,
        )

    # ------------------------------------------------------------------
    # issuing
    # ------------------------------------------------------------------

    def issue_access_token(
        self,
        *,
        user_id: str,
        email: str,
        role: str,
        organizational_unit_id: Optional[int],
        session_id: str,
    ) -> IssuedToken:
        return self._mint(
            self._classes[ACCESS],
            {
                "sub": user_id,
                "email": email,
                "role": role,
                "org_unit_id": organizational_unit_id,
                "sid": session_id,
            },
        )

    def issue_refresh_token(
        self, user_id: str, session_id: str, token_version: int = 1
    ) -> IssuedToken:
        return self._mint(
            self._classes[REFRESH],
            {"sub": user_id, "sid": session_id, "ver": token_version},
        )

    def issue_password_reset_token(
        self, user_id: str, email: str, *, token_value: Optional[str] = None
    ) -> IssuedToken:
        """Mint a reset token; ``token_value`` becomes its ``jti`` so the
        signed token can be matched to the persisted reset record."""
        return self._mint(
            self._classes[PASSWORD_RESET],
            {"sub": user_id, "email": email},
            jti=token_value,
        )

    # ------------------------------------------------------------------
    # verification
    # ------------------------------------------------------------------

    def verify(self, token: str, expected_audience: str) -> Dict[str, Any]:
        """Return the claims of ``token`` or raise a typed ``InvalidTokenError``."""
        token_class = self._by_audience.get(expected_audience)
        if token_class is None:
            raise ValueError(f"unknown audience: {expected_audience}")

        if not isinstance(token, str) or token.count(".") != 2:
            raise TokenMalformedError("token is not a signed token")
        header_b64, payload_b64, sig_b64 = token.split(".")

        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError) as exc:
            raise TokenMalformedError("token header is unreadable") from exc
        alg = header.get("alg") if isinstance(header, dict) else None
        if alg != "HS256":
            # Reject alg=none and algorithm confusion outright
            logger.warning("token_invalid_algorithm", alg=alg)
            raise TokenMalformedError("unsupported token algorithm")

        expected_sig = self._sign(token_class.secret, f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig, sig_b64):
            raise TokenSignatureInvalidError("token signature is invalid")

        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            raise TokenMalformedError("token payload is unreadable") from exc
        if not isinstance(payload, dict):
            raise TokenMalformedError("token payload is unreadable")

        if payload.get("iss") != self.issuer:
            raise InvalidTokenError("token issuer mismatch")
        aud = payload.get("aud")
        if isinstance(aud, list):
            audience_ok = token_class.audience in aud
        else:
            audience_ok = aud == token_class.audience
        if not audience_ok or payload.get("typ", token_class.name) != token_class.name:
            raise InvalidTokenError("token audience mismatch")

        try:
            exp = float(payload["exp"])
        except (KeyError, TypeError, ValueError) as exc:
            raise TokenMalformedError("token has no expiry") from exc
        now = self._clock()
        if now >= exp:
            logger.info("token_expired", token_class=token_class.name, jti=payload.get("jti"))
            raise TokenExpiredError("token has expired")

        for claim in ("nbf", "iat"):
            raw = payload.get(claim)
            if raw is None:
                continue
            try:
                not_before = float(raw)
            except (TypeError, ValueError) as exc:
                raise TokenMalformedError(f"token {claim} is invalid") from exc
            if not_before > now + self._leeway:
                raise TokenNotYetValidError("token is not valid yet")

        if not payload.get("jti"):
            raise TokenMalformedError("token has no identifier")
        return payload

    def verify_access(self, token: str) -> AccessClaims:
        return AccessClaims.from_payload(self.verify(token, self.access_audience))

    def verify_refresh(self, token: str) -> RefreshClaims:
        return RefreshClaims.from_payload(self.verify(token, self.refresh_audience))

    def verify_password_reset(self, token: str) -> Dict[str, Any]:
        return self.verify(token, self.reset_audience)
