from os import environ
from typing import Any, cast
from uuid import UUID

import structlog
from jose import JWTError, jwt
from jose.exceptions import ExpiredSignatureError, JWTClaimsError
from pydantic import UUID4

logger = structlog.get_logger(__name__)


class AuthError(Exception):
    """Base exception for auth-related errors."""

    pass


class InvalidTokenError(AuthError):
    """Exception raised when a token is invalid."""

    pass


class TokenExpiredError(AuthError):
    """Exception raised when a token has expired."""

    pass


class AuthService:
    """Validates session tokens issued by the backend's auth provider.

    The provider signs session JWTs with a shared HS256 secret and puts the
    user id in the ``sub`` claim.

    Attributes:
        secret: Secret used to verify token signatures
        audience: Expected ``aud`` claim
        algorithms: List of supported JWT algorithms
    """

    def __init__(self, secret: str | None = None, audience: str | None = None) -> None:
        self.secret: str = secret or environ.get("AUTH_JWT_SECRET", "")
        self.audience: str = audience or environ.get("AUTH_JWT_AUDIENCE", "authenticated")
        self.algorithms: list[str] = ["HS256"]

    def validate_token(self, token: str) -> dict[str, Any]:
        """Validate a session JWT.

        Args:
            token: The JWT token to validate

        Returns:
            The decoded token payload

        Raises:
            InvalidTokenError: If token is invalid
            TokenExpiredError: If token has expired
        """
        if not self.secret:
            raise InvalidTokenError("No signing secret configured")
        try:
            payload = jwt.decode(
                token,
                self.secret,
                algorithms=self.algorithms,
                audience=self.audience,
            )
            return cast(dict[str, Any], payload)
        except ExpiredSignatureError:
            raise TokenExpiredError("Token has expired")
        except JWTClaimsError as e:
            raise InvalidTokenError(f"Invalid claims: {str(e)}")
        except JWTError as e:
            raise InvalidTokenError(f"Invalid token: {str(e)}")

    def get_user_id(self, token: str) -> UUID4:
        """Get the user id carried by a valid token.

        Raises:
            InvalidTokenError: If the token is invalid or has no usable subject
            TokenExpiredError: If token has expired
        """
        payload = self.validate_token(token)
        try:
            return UUID(str(payload["sub"]))
        except (KeyError, ValueError):
            raise InvalidTokenError("Token subject is not a user id")


class SessionIdentity:
    """Identity provider for one signed-in (or signed-out) session.

    ``current_user_id`` never raises: an absent, invalid or expired token
    means nobody is signed in.
    """

    def __init__(self, auth_service: AuthService, token: str | None = None) -> None:
        self.auth_service = auth_service
        self._token = token
        self.logger = logger.bind(service="session_identity")

    def sign_in(self, token: str) -> None:
        self._token = token

    def sign_out(self) -> None:
        self._token = None

    def current_user_id(self) -> UUID4 | None:
        if not self._token:
            return None
        try:
            return self.auth_service.get_user_id(self._token)
        except AuthError as e:
            self.logger.info("session_rejected", reason=str(e))
            return None
