import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

import jwt

from config import SecurityConfig
from errors import ConfigurationError, InvalidTokenError


class TokenService:
    """Signed JWTs for API access with fixed issuer/audience claims"""

    def __init__(self, config: SecurityConfig):
        self.config = config

    def _secret(self) -> str:
        secret = self.config.JWT_SECRET_KEY
        if not secret:
            raise ConfigurationError("JWT_SECRET_KEY is not configured")
        return secret

    def create_secure_jwt(self, payload: Dict[str, Any], ttl: Optional[timedelta] = None) -> str:
        now = datetime.now(timezone.utc)
        claims = dict(payload)
        claims.update({
            "iat": now,
            "exp": now + (ttl or self.config.JWT_DEFAULT_TTL),
            "jti": uuid.uuid4().hex,  # JWT ID for token tracking
            "iss": self.config.JWT_ISSUER,
            "aud": self.config.JWT_AUDIENCE,
        })
        return jwt.encode(claims, self._secret(), algorithm=self.config.JWT_ALGORITHM)

    def verify_secure_jwt(self, token: str) -> Dict[str, Any]:
        """
        Verify signature, issuer, audience and expiry.

        Every failure raises the same InvalidTokenError so callers cannot
        tell an expired token from a tampered one.
        """
        secret = self._secret()
        try:
            return jwt.decode(
                token,
                secret,
                algorithms=[self.config.JWT_ALGORITHM],
                issuer=self.config.JWT_ISSUER,
                audience=self.config.JWT_AUDIENCE,
                options={"require": ["exp", "iat", "jti"]},
            )
        except jwt.InvalidTokenError:
            raise InvalidTokenError()
