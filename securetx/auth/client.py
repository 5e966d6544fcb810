"""
Client for the backend's authentication endpoints.
"""
import logging
from typing import Optional

import requests

from .._http import build_session, redact, validate_backend_url
from ..exceptions import SecureTxError, SessionExpiredError, UnknownError
from ..models import Session

logger = logging.getLogger(__name__)


class AuthenticationError(SecureTxError):
    """Raised when the backend rejects a login."""
    default_hint = "Check your email and password."


class AuthClient:
    """Obtains bearer-token sessions from the backend."""

    def __init__(
        self,
        base_url: str,
        retry_count: int = 3,
        timeout: int = 30,
        env_tier: Optional[str] = None,
        jwt_secret: Optional[str] = None
    ):
        self.base_url = validate_backend_url(base_url, "base_url")
        self.timeout = timeout
        self.env_tier = env_tier
        self.jwt_secret = jwt_secret
        self.http = build_session(retry_count)

    def login(self, email: str, password: str) -> Session:
        """
        Log in and return the resulting session.

        Raises:
            AuthenticationError: If the credentials are rejected
            UnknownError: If the backend cannot be reached or answers unexpectedly
        """
        try:
            response = self.http.post(
                f"{self.base_url}/auth/login",
                json={"email": email, "password": password},
                timeout=self.timeout
            )
        except requests.RequestException as e:
            raise UnknownError(f"Login request failed: {e}", original=e) from e

        if response.status_code in (400, 401):
            try:
                message = response.json().get("message", "Invalid credentials")
            except ValueError:
                message = "Invalid credentials"
            raise AuthenticationError(message)
        if response.status_code >= 400:
            raise UnknownError(f"Login failed with status {response.status_code}")

        body = response.json()
        token = body.get("token")
        if not token:
            raise UnknownError("Login response did not include a token")
        logger.debug(f"Received session token {redact(token)}")

        try:
            session = Session.from_token(token, env_tier=self.env_tier, jwt_secret=self.jwt_secret)
        except ValueError as e:
            raise SessionExpiredError(f"Backend issued an unusable token: {e}") from e

        user = body.get("user") or {}
        if user.get("id") and str(user["id"]) != session.user_id:
            logger.warning("Login response user id does not match the token's id claim")
        logger.info(f"Logged in as user {session.user_id}")
        return session

    def logout(self, session: Session) -> None:
        """
        End a session.

        Tokens are stateless on the backend, so this only forgets the session
        locally; callers must drop every reference to it.
        """
        logger.info(f"Logged out user {session.user_id}")
