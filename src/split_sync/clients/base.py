"""Split provider interface and registry."""

import logging
from abc import ABC, abstractmethod
from collections.abc import Iterable
from datetime import datetime
from decimal import Decimal
from typing import Any

from ..exceptions import UnknownProviderError
from ..models import ExpenseParticipant, ExternalExpenseResult, ProviderFriend

logger = logging.getLogger(__name__)

Credentials = dict[str, Any]


class SplitProvider(ABC):
    """
    Capability every split provider integration implements.

    Credentials are the decrypted, provider-specific JSON blob stored on a
    provider connection. Every failure is raised as a ProviderError subclass.
    """

    provider_type: str

    @abstractmethod
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
        """Create an expense shared between all participants."""

    @abstractmethod
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
        """Update the given fields of an expense.

        A participant list, when given, replaces the existing one entirely.
        """

    @abstractmethod
    def delete_expense(self, credentials: Credentials, external_expense_id: str):
        """Delete an expense. Raises a ProviderError on failure."""

    @abstractmethod
    def validate_credentials(self, credentials: Credentials) -> bool:
        """Check whether the credentials are still accepted."""

    @abstractmethod
    def refresh_credentials(self, credentials: Credentials) -> Credentials | None:
        """Return refreshed credentials, or None if no refresh is needed."""

    def expense_url(self, external_expense_id: str) -> str | None:
        """Link to the expense in the provider's UI, if it has one."""
        return None

    def list_friends(self, credentials: Credentials) -> list[ProviderFriend]:
        """Users the account can add to expenses, for building mappings."""
        raise NotImplementedError(f"{self.provider_type} cannot list friends")

    def close(self):
        """Release any network resources."""


class ProviderRegistry:
    """Provider implementations keyed by provider type.

    Built once at startup and handed to the services that need it.
    """

    def __init__(self, providers: Iterable[SplitProvider] = ()):
        """Initialize the registry with the given providers."""
        self._providers: dict[str, SplitProvider] = {}
        for provider in providers:
            self.register(provider)

    def register(self, provider: SplitProvider):
        """Register a provider under its provider type."""
        self._providers[provider.provider_type] = provider
        logger.debug(f"Registered split provider '{provider.provider_type}'")

    def get(self, provider_type: str) -> SplitProvider:
        """Get the provider for a type, raising UnknownProviderError if absent."""
        try:
            return self._providers[provider_type]
        except KeyError:
            raise UnknownProviderError(provider_type) from None

    def __contains__(self, provider_type: object) -> bool:
        return provider_type in self._providers

    def provider_types(self) -> list[str]:
        """Registered provider types."""
        return sorted(self._providers)

    def close(self):
        """Close every registered provider."""
        for provider in self._providers.values():
            provider.close()
