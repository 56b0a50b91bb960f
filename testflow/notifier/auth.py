"""Verification of subscriber credentials."""

import logging
from dataclasses import dataclass, field

import jwt
from pydantic import SecretStr

from testflow.errors import NotifierAuthError

log = logging.getLogger(__name__)


@dataclass(frozen=True, kw_only=True)
class Identity:
    """Decoded identity of a subscriber."""

    user_id: str
    organization: str


@dataclass(frozen=True, kw_only=True)
class TokenVerifier:
    """Verifies signed JSON web tokens and decodes the subscriber identity."""

    secret: SecretStr = field(repr=False)
    algorithm: str = "HS256"

    def verify(self, token: str | None) -> Identity:
        """Decode a bearer credential.

        Raises:
            NotifierAuthError: If the token is missing, invalid or lacks claims

        """
        if not token:
            raise NotifierAuthError("Authentication error: missing token")

        try:
            payload = jwt.decode(
                token,
                self.secret.get_secret_value(),
                algorithms=[self.algorithm],
                options={"require": ["organization"]},
            )
        except jwt.ExpiredSignatureError as e:
            log.warning("Token validation failed: expired")
            raise NotifierAuthError("Authentication error: token expired") from e
        except jwt.InvalidTokenError as e:
            log.warning("Token validation failed: %s", e)
            raise NotifierAuthError(f"Authentication error: {e}") from e

        user_id = payload.get("sub") or payload.get("userId")
        if not user_id:
            raise NotifierAuthError("Authentication error: token has no subject")

        return Identity(user_id=str(user_id), organization=str(payload["organization"]))
