"""
Stateless regrade tokens.

Each successfully graded label gets a compact HS256 JWS bound to the user,
the label, and the device fingerprint. It carries the number of free
regrades left, so no server-side counter table is needed. Presenting a
valid token with remaining > 0 regrades that label without consuming quota.
"""
import logging
import time
from dataclasses import asdict, dataclass
from typing import Optional

import jwt
from jwt.utils import base64url_decode

from handgrade.config import DEFAULT_MAX_FREE_REGRADES, DEFAULT_REGRADE_TOKEN_TTL_SECONDS

logger = logging.getLogger(__name__)

TOKEN_VERSION = 1
ALGORITHM = "HS256"

REASON_INVALID_FORMAT = "invalid_format"
REASON_BAD_SIGNATURE = "bad_signature"
REASON_EXPIRED = "expired"
REASON_INVALID_PAYLOAD = "invalid_payload"
REASON_DISABLED = "disabled"

# Expiry is checked against an injectable clock, not by PyJWT
_DECODE_OPTIONS = {
    "verify_signature": True,
    "verify_exp": False,
    "verify_iat": False,
    "verify_nbf": False,
    "verify_aud": False,
}


@dataclass
class RegradeTokenPayload:
    sub: str
    label: str
    fp: str
    remaining: int
    iat: int
    exp: int
    v: int = TOKEN_VERSION

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class VerifyResult:
    ok: bool
    payload: Optional[RegradeTokenPayload] = None
    reason: Optional[str] = None


def _is_int(value) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _payload_from_claims(claims) -> Optional[RegradeTokenPayload]:
    if not isinstance(claims, dict) or claims.get("v") != TOKEN_VERSION:
        return None
    if not all(isinstance(claims.get(k), str) for k in ("sub", "label", "fp")):
        return None
    if not all(_is_int(claims.get(k)) for k in ("remaining", "iat", "exp")):
        return None
    if claims["remaining"] < 0:
        return None
    return RegradeTokenPayload(
        sub=claims["sub"],
        label=claims["label"],
        fp=claims["fp"],
        remaining=claims["remaining"],
        iat=claims["iat"],
        exp=claims["exp"],
    )


def _has_valid_shape(token) -> bool:
    if not isinstance(token, str):
        return False
    segments = token.split(".")
    if len(segments) != 3 or not all(segments):
        return False
    try:
        for segment in segments:
            base64url_decode(segment)
        jwt.get_unverified_header(token)
    except (ValueError, TypeError, jwt.DecodeError):
        return False
    return True


class RegradeTokenService:
    """Issues and verifies regrade tokens. Disabled when no secret is set."""

    def __init__(self, secret: str, ttl_seconds: int = DEFAULT_REGRADE_TOKEN_TTL_SECONDS,
                 max_free_regrades: int = DEFAULT_MAX_FREE_REGRADES):
        self.secret = secret or ""
        self.ttl_seconds = ttl_seconds
        self.max_free_regrades = max_free_regrades
        if not self.secret:
            logger.warning("REGRADE_TOKEN_SECRET not set; free regrades are disabled")

    @classmethod
    def from_config(cls, settings):
        return cls(
            settings.regrade_token_secret,
            ttl_seconds=settings.regrade_token_ttl_seconds,
            max_free_regrades=settings.max_free_regrades,
        )

    @property
    def enabled(self) -> bool:
        return bool(self.secret)

    def issue(self, user_id: str, label: str, fingerprint: str, remaining: int,
              ttl: Optional[int] = None, now: Optional[float] = None) -> Optional[str]:
        """Sign a new token, or return None when tokens are disabled."""
        if not self.enabled:
            return None
        iat = int(now if now is not None else time.time())
        exp = iat + max(1, int(ttl if ttl is not None else self.ttl_seconds))
        payload = RegradeTokenPayload(
            sub=user_id,
            label=label,
            fp=fingerprint or "",
            remaining=max(0, int(remaining)),
            iat=iat,
            exp=exp,
        )
        return jwt.encode(payload.to_dict(), self.secret, algorithm=ALGORITHM)

    def verify(self, token: str, now: Optional[float] = None) -> VerifyResult:
        """
        Check format, signature, payload shape, and expiry, in that order.

        The payload is only read after the signature has been verified.
        """
        if not self.enabled:
            return VerifyResult(ok=False, reason=REASON_DISABLED)
        if not _has_valid_shape(token):
            return VerifyResult(ok=False, reason=REASON_INVALID_FORMAT)

        try:
            claims = jwt.decode(token, self.secret, algorithms=[ALGORITHM], options=_DECODE_OPTIONS)
        except (jwt.InvalidSignatureError, jwt.InvalidAlgorithmError):
            return VerifyResult(ok=False, reason=REASON_BAD_SIGNATURE)
        except jwt.InvalidTokenError:
            return VerifyResult(ok=False, reason=REASON_INVALID_PAYLOAD)

        payload = _payload_from_claims(claims)
        if payload is None:
            return VerifyResult(ok=False, reason=REASON_INVALID_PAYLOAD)

        current = int(now if now is not None else time.time())
        if current >= payload.exp:
            return VerifyResult(ok=False, reason=REASON_EXPIRED)
        return VerifyResult(ok=True, payload=payload)

    def redeem(self, token: str, user_id: str, label: str, fingerprint: str,
               now: Optional[float] = None) -> Optional[RegradeTokenPayload]:
        """Return the payload if the token grants a free regrade of this label."""
        if not token:
            return None
        result = self.verify(token, now=now)
        if not result.ok:
            logger.info("Regrade token for %s rejected: %s", label, result.reason)
            return None
        payload = result.payload
        if payload.sub != user_id or payload.label != label or payload.fp != (fingerprint or ""):
            logger.info("Regrade token for %s does not match user, label, or device", label)
            return None
        if payload.remaining <= 0:
            logger.info("Regrade token for %s has no free regrades left", label)
            return None
        return payload

    def next_remaining(self, redeemed: Optional[RegradeTokenPayload]) -> int:
        """Free regrades left after this grade: one fewer, or a full set after a paid grade."""
        if redeemed is not None:
            return max(0, redeemed.remaining - 1)
        return self.max_free_regrades
