"""
Trashcan Relay — Token Authenticator

Issues and verifies HS256 JWTs. Stateless apart from the signing secret, which
is fixed at construction.
"""
from datetime import datetime, timedelta, timezone
from typing import Optional

import jwt
from pydantic import ValidationError

from errors import Unauthorized
from models import TokenClaims

ALGORITHM = "HS256"


class TokenAuthenticator:
    def __init__(self, secret: str, expiry_hours: int = 12):
        if not secret:
            raise ValueError("signing secret must not be empty")
        self._secret = secret
        self._expiry = timedelta(hours=expiry_hours)

    def issue(self, subject: str, now: Optional[datetime] = None) -> str:
        """Sign a token for `subject` valid for the configured number of hours."""
        now = now or datetime.now(timezone.utc)
        claims = {"sub": subject, "iat": now, "exp": now + self._expiry}
        return jwt.encode(claims, self._secret, algorithm=ALGORITHM)

    def verify(self, token: Optional[str]) -> TokenClaims:
        """
        Return the verified claims.

        Every failure (missing, malformed, expired, bad signature, missing
        subject) surfaces as the same Unauthorized.
        """
        if not token or not isinstance(token, str):
            raise Unauthorized()
        try:
            decoded = jwt.decode(
                token,
                self._secret,
                algorithms=[ALGORITHM],
                options={"require": ["sub", "iat", "exp"]},
            )
            return TokenClaims.model_validate(decoded)
        except (jwt.PyJWTError, ValidationError):
            raise Unauthorized() from None
