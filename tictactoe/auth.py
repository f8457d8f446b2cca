"""
Identity verification for WebSocket logins.

Tokens are JWTs issued by an external identity provider and checked with a
shared secret. Whatever claims the provider puts in, the rest of the server
only ever sees an `Identity`.
"""
import re
from dataclasses import dataclass
from typing import Any, Dict, Optional, Sequence

import jwt

from .errors import AuthenticationError
from .logging_utils import get_logger

logger = get_logger("tictactoe.auth")

AUTH_JWT = "jwt"
AUTH_ANONYMOUS = "anonymous"

_NAME_STRIP_RE = re.compile(r"[^A-Za-z0-9 _-]")


@dataclass(frozen=True)
class Identity:
    user_id: Optional[str]
    display_name: Optional[str] = None
    email: Optional[str] = None
    auth_type: str = AUTH_JWT

    @property
    def is_anonymous(self) -> bool:
        return self.user_id is None


def sanitize_display_name(raw: Optional[str]) -> Optional[str]:
    """Squeeze a provider-supplied name into the username charset, or None."""
    if not raw:
        return None
    name = _NAME_STRIP_RE.sub("", str(raw)).strip()[:20].strip()
    return name if len(name) >= 2 else None


def identity_from_claims(claims: Dict[str, Any]) -> Identity:
    sub = claims.get("sub")
    if not sub:
        raise AuthenticationError("Token has no subject.")
    email = claims.get("email")
    display = None
    for key in ("nickname", "name", "preferred_username"):
        display = sanitize_display_name(claims.get(key))
        if display:
            break
    if not display and email:
        display = sanitize_display_name(str(email).split("@", 1)[0])
    return Identity(user_id=str(sub), display_name=display, email=email, auth_type=AUTH_JWT)


class IdentityVerifier:
    def __init__(self, secret: str = "", algorithms: Sequence[str] = ("HS256",), audience: str = "",
                 allow_anonymous: bool = True):
        self.secret = secret
        self.algorithms = list(algorithms)
        self.audience = audience or None
        self.allow_anonymous = allow_anonymous

    @classmethod
    def from_settings(cls, settings) -> "IdentityVerifier":
        return cls(
            secret=settings.identity_jwt_secret,
            algorithms=settings.identity_jwt_algorithms,
            audience=settings.identity_jwt_audience,
            allow_anonymous=settings.allow_anonymous,
        )

    def decode(self, token: str) -> Dict[str, Any]:
        if not self.secret:
            raise AuthenticationError("Token login is not configured on this server.")
        try:
            return jwt.decode(
                token,
                self.secret,
                algorithms=self.algorithms,
                audience=self.audience,
                options={"verify_aud": self.audience is not None},
            )
        except jwt.ExpiredSignatureError:
            raise AuthenticationError("Login token has expired.")
        except jwt.InvalidTokenError as exc:
            logger.info("token_rejected", extra={"error": str(exc)})
            raise AuthenticationError("Invalid login token.")

    def verify(self, token: Optional[str], custom_username: Optional[str] = None) -> Identity:
        """Resolve a login into an Identity or raise AuthenticationError.

        An empty token is an anonymous login, which needs a custom username
        and is only accepted when anonymous play is enabled.
        """
        if not token:
            if not self.allow_anonymous:
                raise AuthenticationError("A login token is required.")
            if not custom_username:
                raise AuthenticationError("Choose a username to play without an account.")
            return Identity(user_id=None, display_name=custom_username.strip(), auth_type=AUTH_ANONYMOUS)
        return identity_from_claims(self.decode(token))
