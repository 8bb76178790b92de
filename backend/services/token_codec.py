"""Signing and verification of short-lived access tokens."""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional
from uuid import uuid4

from jose import JWTError, jwt
from jose.exceptions import ExpiredSignatureError

from config import Settings
from services.errors import TokenExpired, TokenInvalid

logger = logging.getLogger(__name__)

ACCESS_TOKEN_TYPE = "access"


@dataclass
class AccessClaims:
    """
    Identity claims carried by an access token.

    ``issued_at``, ``expires_at`` and ``jti`` are filled in by the codec when a
    token is issued or verified; they are ignored on input.
    """
    user_id: int
    role: str
    email_verified: bool
    email: Optional[str] = None
    issued_at: Optional[float] = None
    expires_at: Optional[datetime] = None
    jti: Optional[str] = None


class TokenCodec:
    """
    Stateless access token codec.

    Tokens are HS256-signed JWTs scoped by issuer and audience. Verification
    failures surface as ``TokenInvalid``; an otherwise valid token past its
    ``exp`` raises the ``TokenExpired`` subclass so clients can tell the user
    why they were signed out.
    """

    def __init__(
        self,
        secret_key: str,
        algorithm: str = "HS256",
        issuer: str = "session-service",
        audience: str = "session-service-users",
        default_ttl: timedelta = timedelta(minutes=15),
    ):
        if not secret_key:
            raise ValueError("A signing secret is required to issue access tokens")

        self.secret_key = secret_key
        self.algorithm = algorithm
        self.issuer = issuer
        self.audience = audience
        self.default_ttl = default_ttl

    @classmethod
    def from_settings(cls, settings: Settings) -> "TokenCodec":
        return cls(
            secret_key=settings.SECRET_KEY,
            algorithm=settings.ALGORITHM,
            issuer=settings.JWT_ISSUER,
            audience=settings.JWT_AUDIENCE,
            default_ttl=timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES),
        )

    def issue(self, claims: AccessClaims, ttl: Optional[timedelta] = None) -> str:
        """
        Sign an access token for the given claims.

        Args:
            claims: Identity claims to embed
            ttl: Token lifetime (defaults to the configured access token TTL)

        Returns:
            Encoded JWT string
        """
        now = datetime.now(timezone.utc)
        expire = now + (ttl if ttl is not None else self.default_ttl)

        to_encode = {
            "sub": str(claims.user_id),
            "role": claims.role,
            "email_verified": bool(claims.email_verified),
            "email": claims.email,
            # Sub-second precision so a password change within the same
            # second still invalidates earlier tokens
            "iat": now.timestamp(),
            "exp": expire,
            "iss": self.issuer,
            "aud": self.audience,
            "jti": str(uuid4()),
            "type": ACCESS_TOKEN_TYPE,
        }
        return jwt.encode(to_encode, self.secret_key, algorithm=self.algorithm)

    def verify(self, token: str) -> AccessClaims:
        """
        Verify signature, issuer, audience, expiry and token type.

        Raises:
            TokenExpired: Signature is valid but the token is past its expiry
            TokenInvalid: On any other verification failure
        """
        if not token:
            raise TokenInvalid()

        try:
            payload = jwt.decode(
                token,
                self.secret_key,
                algorithms=[self.algorithm],
                audience=self.audience,
                issuer=self.issuer,
            )
        except ExpiredSignatureError as e:
            raise TokenExpired() from e
        except JWTError as e:
            logger.debug(f"Access token rejected: {e}")
            raise TokenInvalid() from e

        if payload.get("type") != ACCESS_TOKEN_TYPE:
            raise TokenInvalid()

        try:
            return AccessClaims(
                user_id=int(payload["sub"]),
                role=payload["role"],
                email_verified=bool(payload.get("email_verified", False)),
                email=payload.get("email"),
                issued_at=float(payload["iat"]),
                expires_at=datetime.fromtimestamp(payload["exp"], tz=timezone.utc),
                jti=payload.get("jti"),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise TokenInvalid() from e

def decode_unverified(token: str) -> Optional[dict]:
    """Return the unverified claims of a JWT, or None if it cannot be parsed."""
    if not token:
        return None
    try:
        return jwt.get_unverified_claims(token)
    except JWTError:
        return None


def seconds_until_expiry(token: str, now: Optional[datetime] = None) -> Optional[float]:
    """Seconds left before the token's ``exp``; None when it cannot be read."""
    claims = decode_unverified(token)
    if not claims or claims.get("exp") is None:
        return None
    now = now or datetime.now(timezone.utc)
    try:
        return float(claims["exp"]) - now.timestamp()
    except (TypeError, ValueError):
        return None


def is_token_expired(token: str, margin_seconds: float = 0) -> bool:
    """
    Check whether a token is expired or expires within ``margin_seconds``.

    Unreadable tokens count as expired.
    """
    remaining = seconds_until_expiry(token)
    if remaining is None:
        return True
    return remaining <= margin_seconds
