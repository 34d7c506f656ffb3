"""Splitwise split provider."""

import logging
from datetime import UTC, datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import Any

import httpx

from ..config import Settings
from ..exceptions import (
    AuthenticationFailed,
    InvalidResponse,
    NetworkError,
    NotFound,
    ProviderApiError,
    ProviderConfigurationError,
    ProviderError,
    RateLimited,
)
from ..models import ExpenseParticipant, ExternalExpenseResult, ProviderFriend
from .base import Credentials, SplitProvider

logger = logging.getLogger(__name__)

SPLITWISE_HOST = "https://secure.splitwise.com"


def format_amount(amount: Decimal) -> str:
    """Format an amount the way Splitwise expects it (two decimals)."""
    return str(amount.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP))


def build_users_params(participants: list[ExpenseParticipant]) -> dict[str, str]:
    """
    Flatten participants into Splitwise's ``users__N__field`` form fields.

    Args:
        participants: Expense participants, in order

    Returns:
        Form fields for the create/update endpoints
    """
    params: dict[str, str] = {}
    for i, participant in enumerate(participants):
        params[f"users__{i}__user_id"] = participant.external_id
        params[f"users__{i}__paid_share"] = format_amount(participant.paid_share)
        params[f"users__{i}__owed_share"] = format_amount(participant.owed_share)
    return params


def map_status_error(response: httpx.Response) -> ProviderError:
    """Map an unsuccessful Splitwise response to the provider error taxonomy."""
    status = response.status_code
    body = response.text
    if status == 401:
        return AuthenticationFailed(body)
    if status == 404:
        return NotFound(body)
    if status == 429:
        return RateLimited(_parse_retry_after(response.headers.get("Retry-After")))
    return ProviderApiError(f"HTTP {status}: {body}")


def _parse_retry_after(value: str | None) -> datetime | None:
    if value is None or not value.strip().isdigit():
        return None
    return datetime.now(UTC) + timedelta(seconds=int(value.strip()))


def send(client: httpx.Client, method: str, url: str, **kwargs: Any) -> Any:
    """
    Send a request and return the decoded JSON body.

    Raises:
        NetworkError: If the request never completed (including timeouts)
        ProviderError: Mapped from any non-2xx status
        InvalidResponse: If the body is not JSON
    """
    try:
        response = client.request(method, url, **kwargs)
    except httpx.TransportError as e:
        raise NetworkError(str(e) or type(e).__name__) from e

    if not response.is_success:
        raise map_status_error(response)

    try:
        return response.json()
    except ValueError as e:
        raise InvalidResponse(str(e)) from e


class SplitwiseProvider(SplitProvider):
    """Split provider backed by the Splitwise API v3."""

    provider_type = "splitwise"

    BASE_URL = f"{SPLITWISE_HOST}/api/v3.0"
    TOKEN_URL = f"{SPLITWISE_HOST}/oauth/token"
    EXPENSE_URL = f"{SPLITWISE_HOST}/expenses/{{}}"

    def __init__(
        self,
        client_id: str | None = None,
        client_secret: str | None = None,
        timeout: float = 30.0,
        transport: httpx.BaseTransport | None = None,
    ):
        """Initialize the Splitwise provider."""
        self.client_id = client_id
        self.client_secret = client_secret
        self.client = httpx.Client(
            base_url=self.BASE_URL, timeout=timeout, transport=transport
        )

    @classmethod
    def from_settings(
        cls, settings: Settings, transport: httpx.BaseTransport | None = None
    ) -> "SplitwiseProvider":
        """Build the provider from the configured OAuth application."""
        return cls(
            client_id=settings.splitwise_client_id,
            client_secret=settings.splitwise_client_secret,
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

    # ========================================================================
    # Expenses
    # ========================================================================

    def create_expense(
        self,
        credentials: Credentials,
        *,
        description: str,
        total_cost: Decimal,
        currency_code: str,
        date: datetime,
        participants: list[ExpenseParticipant],
        notes: str | None = None,
    ) -> ExternalExpenseResult:
        """Create an expense and return its Splitwise ID."""
        params: dict[str, str] = {
            "cost": format_amount(total_cost),
            "description": description,
            "currency_code": currency_code,
            "date": date.isoformat(),
        }
        if notes:
            params["details"] = notes
        params.update(build_users_params(participants))

        data = self._post(credentials, "/create_expense", params)

        try:
            expense_id = str(data["expenses"][0]["id"])
        except (KeyError, IndexError, TypeError) as e:
            raise InvalidResponse("No expense in response") from e

        logger.info(f"Created Splitwise expense {expense_id}")
        return ExternalExpenseResult(
            external_expense_id=expense_id, external_url=self.expense_url(expense_id)
        )

    def update_expense(
        self,
        credentials: Credentials,
        external_expense_id: str,
        *,
        description: str | None = None,
        total_cost: Decimal | None = None,
        date: datetime | None = None,
        notes: str | None = None,
        participants: list[ExpenseParticipant] | None = None,
    ) -> ExternalExpenseResult:
        """Update an expense; a participant list replaces all current users."""
        params: dict[str, str] = {}
        if description is not None:
            params["description"] = description
        if total_cost is not None:
            params["cost"] = format_amount(total_cost)
        if date is not None:
            params["date"] = date.isoformat()
        if notes is not None:
            params["details"] = notes
        if participants is not None:
            params.update(build_users_params(participants))

        self._post(credentials, f"/update_expense/{external_expense_id}", params)

        logger.info(f"Updated Splitwise expense {external_expense_id}")
        return ExternalExpenseResult(
            external_expense_id=external_expense_id,
            external_url=self.expense_url(external_expense_id),
        )

    def delete_expense(self, credentials: Credentials, external_expense_id: str):
        """Delete an expense."""
        data = self._post(credentials, f"/delete_expense/{external_expense_id}", None)
        if not isinstance(data, dict) or not data.get("success"):
            raise ProviderApiError("Delete operation failed")
        logger.info(f"Deleted Splitwise expense {external_expense_id}")

    def expense_url(self, external_expense_id: str) -> str:
        """Link to the expense on splitwise.com."""
        return self.EXPENSE_URL.format(external_expense_id)

    def list_friends(self, credentials: Credentials) -> list[ProviderFriend]:
        """List the Splitwise friends of the connected account."""
        data = send(
            self.client, "GET", "/get_friends", headers=_auth_headers(credentials)
        )
        if not isinstance(data, dict) or not isinstance(data.get("friends"), list):
            raise InvalidResponse("Missing 'friends' array")

        friends = []
        for friend in data["friends"]:
            if not isinstance(friend, dict) or friend.get("id") is None:
                continue
            friends.append(
                ProviderFriend(
                    external_id=str(friend["id"]),
                    first_name=friend.get("first_name") or "",
                    last_name=friend.get("last_name"),
                    email=friend.get("email"),
                )
            )
        logger.info(f"Found {len(friends)} Splitwise friends")
        return friends

    # ========================================================================
    # Credentials
    # ========================================================================

    def validate_credentials(self, credentials: Credentials) -> bool:
        """Check the access token against the current-user endpoint."""
        headers = _auth_headers(credentials)
        try:
            response = self.client.get("/get_current_user", headers=headers)
        except httpx.TransportError as e:
            raise NetworkError(str(e) or type(e).__name__) from e
        return response.is_success

    def refresh_credentials(self, credentials: Credentials) -> Credentials | None:
        """
        Refresh the access token once its stored expiry has passed.

        Returns:
            New credentials, or None while the current token is still valid
        """
        if not is_token_expired(credentials):
            return None

        refresh_token = _require(credentials, "refresh_token")
        if not self.client_id:
            raise ProviderConfigurationError("SPLITWISE_CLIENT_ID not set")
        if not self.client_secret:
            raise ProviderConfigurationError("SPLITWISE_CLIENT_SECRET not set")

        data = send(
            self.client,
            "POST",
            self.TOKEN_URL,
            data={
                "grant_type": "refresh_token",
                "refresh_token": refresh_token,
                "client_id": self.client_id,
                "client_secret": self.client_secret,
            },
        )

        try:
            access_token = data["access_token"]
            expires_in = int(data["expires_in"])
        except (KeyError, TypeError, ValueError) as e:
            raise InvalidResponse("Malformed token response") from e

        expires_at = datetime.now(UTC) + timedelta(seconds=expires_in)
        logger.info("Refreshed Splitwise access token")
        return {
            "access_token": access_token,
            "refresh_token": data.get("refresh_token") or refresh_token,
            "token_expires_at": expires_at.isoformat(),
            "splitwise_user_id": credentials.get("splitwise_user_id"),
        }

    # ========================================================================
    # Internals
    # ========================================================================

    def _post(
        self, credentials: Credentials, path: str, params: dict[str, str] | None
    ) -> Any:
        # Splitwise's users__N__* syntax requires form-encoded data
        data = send(
            self.client, "POST", path, data=params, headers=_auth_headers(credentials)
        )

        errors = data.get("errors") if isinstance(data, dict) else None
        if errors and (not isinstance(errors, dict) or any(errors.values())):
            raise ProviderApiError(f"Splitwise errors: {errors}")
        return data


def is_token_expired(credentials: Credentials) -> bool:
    """Whether the stored ``token_expires_at`` lies in the past."""
    _check_shape(credentials)
    expires_at = credentials.get("token_expires_at")
    if not isinstance(expires_at, str):
        return False
    try:
        expires = datetime.fromisoformat(expires_at.replace("Z", "+00:00"))
    except ValueError:
        return False
    if expires.tzinfo is None:
        expires = expires.replace(tzinfo=UTC)
    return datetime.now(UTC) >= expires


def _check_shape(credentials: Credentials):
    # Vault blobs hold any JSON value, not necessarily an object
    if not isinstance(credentials, dict):
        raise ProviderConfigurationError("Credentials are not a JSON object")


def _auth_headers(credentials: Credentials) -> dict[str, str]:
    access_token = _require(credentials, "access_token")
    return {"Authorization": f"Bearer {access_token}"}


def _require(credentials: Credentials, key: str) -> str:
    _check_shape(credentials)
    value = credentials.get(key)
    if not isinstance(value, str) or not value:
        raise ProviderConfigurationError(f"Missing {key} in credentials")
    return value
