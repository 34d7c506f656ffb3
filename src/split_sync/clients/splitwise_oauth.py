"""Splitwise OAuth2 authorization-code flow."""

import logging
from datetime import UTC, datetime, timedelta
from typing import Any
from urllib.parse import urlencode

import httpx
from pydantic import ValidationError

from ..config import Settings
from ..exceptions import ConfigurationError, InvalidResponse
from ..models import SplitwiseTokens, SplitwiseUser
from .splitwise import SPLITWISE_HOST, SplitwiseProvider, send

logger = logging.getLogger(__name__)


class SplitwiseOAuth:
    """Client for Splitwise's OAuth2 endpoints."""

    AUTHORIZE_URL = f"{SPLITWISE_HOST}/oauth/authorize"
    TOKEN_URL = f"{SPLITWISE_HOST}/oauth/token"
    USER_INFO_URL = f"{SplitwiseProvider.BASE_URL}/get_current_user"

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        redirect_uri: str,
        timeout: float = 30.0,
        transport: httpx.BaseTransport | None = None,
    ):
        """Initialize the OAuth client."""
        self.client_id = client_id
        self.client_secret = client_secret
        self.redirect_uri = redirect_uri
        self.client = httpx.Client(timeout=timeout, transport=transport)

    @classmethod
    def from_settings(
        cls, settings: Settings, transport: httpx.BaseTransport | None = None
    ) -> "SplitwiseOAuth":
        """
        Build the client from settings.

        Raises:
            ConfigurationError: If any of the OAuth application settings is missing
        """
        if not settings.splitwise_client_id:
            raise ConfigurationError("SPLITWISE_CLIENT_ID not set")
        if not settings.splitwise_client_secret:
            raise ConfigurationError("SPLITWISE_CLIENT_SECRET not set")
        if not settings.splitwise_redirect_uri:
            raise ConfigurationError("SPLITWISE_REDIRECT_URI not set")

        return cls(
            client_id=settings.splitwise_client_id,
            client_secret=settings.splitwise_client_secret,
            redirect_uri=settings.splitwise_redirect_uri,
            timeout=settings.provider_timeout_seconds,
            transport=transport,
        )

    def close(self):
        """Close the HTTP client."""
        self.client.close()

    def __enter__(self):
        """Context manager entry."""
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit."""
        self.close()

    def authorization_url(self, state: str) -> str:
        """Build the URL the user is sent to in order to grant access."""
        query = urlencode(
            {
                "client_id": self.client_id,
                "response_type": "code",
                "redirect_uri": self.redirect_uri,
                "state": state,
            }
        )
        return f"{self.AUTHORIZE_URL}?{query}"

    def exchange_code(self, code: str) -> SplitwiseTokens:
        """Exchange an authorization code for access and refresh tokens."""
        data = send(
            self.client,
            "POST",
            self.TOKEN_URL,
            data={
                "grant_type": "authorization_code",
                "code": code,
                "client_id": self.client_id,
                "client_secret": self.client_secret,
                "redirect_uri": self.redirect_uri,
            },
        )
        logger.debug("Exchanged Splitwise authorization code for tokens")
        return _parse(SplitwiseTokens, data)

    def get_current_user(self, access_token: str) -> SplitwiseUser:
        """Get the Splitwise user an access token belongs to."""
        data = send(
            self.client,
            "GET",
            self.USER_INFO_URL,
            headers={"Authorization": f"Bearer {access_token}"},
        )
        if not isinstance(data, dict) or "user" not in data:
            raise InvalidResponse("Missing 'user' field")
        return _parse(SplitwiseUser, data["user"])


def build_credentials(tokens: SplitwiseTokens, user_id: int) -> dict[str, Any]:
    """Build the credential blob stored (encrypted) on a Splitwise connection."""
    expires_at = datetime.now(UTC) + timedelta(seconds=tokens.expires_in)
    return {
        "access_token": tokens.access_token,
        "refresh_token": tokens.refresh_token,
        "token_expires_at": expires_at.isoformat(),
        "splitwise_user_id": user_id,
    }


def _parse(model, data):
    try:
        return model.model_validate(data)
    except ValidationError as e:
        raise InvalidResponse(str(e)) from e
