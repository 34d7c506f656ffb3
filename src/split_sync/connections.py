"""Provider connections and counterparty mappings."""

import logging
from uuid import UUID

from .clients.base import ProviderRegistry
from .clients.splitwise import SplitwiseProvider
from .clients.splitwise_oauth import SplitwiseOAuth, build_credentials
from .config import Settings
from .db import Database
from .exceptions import ConfigurationError, ConnectionNotFoundError
from .models import (
    AuthorizationRequest,
    CounterpartyProviderMapping,
    ProviderConnection,
    ProviderFriend,
)
from .vault import CredentialVault

logger = logging.getLogger(__name__)


class ConnectionService:
    """Connects users to split providers and maps counterparties onto them."""

    def __init__(
        self,
        settings: Settings,
        database: Database,
        vault: CredentialVault,
        providers: ProviderRegistry,
        oauth: SplitwiseOAuth | None = None,
    ):
        """
        Initialize the connection service.

        Args:
            settings: Application settings
            database: Database instance
            vault: Vault used for credentials and OAuth state tokens
            providers: Registered provider implementations
            oauth: Splitwise OAuth client; built from settings on first use
                   when omitted
        """
        self.settings = settings
        self.db = database
        self.vault = vault
        self.providers = providers
        self._oauth = oauth

    @property
    def oauth(self) -> SplitwiseOAuth:
        """Splitwise OAuth client (raises ConfigurationError if not configured)."""
        if self._oauth is None:
            self._oauth = SplitwiseOAuth.from_settings(self.settings)
        return self._oauth

    def close(self):
        """Close the OAuth client if one was opened."""
        if self._oauth is not None:
            self._oauth.close()

    # ========================================================================
    # Splitwise OAuth
    # ========================================================================

    def start_splitwise_connect(self, user_id: UUID) -> AuthorizationRequest:
        """Build the authorization URL for a user, with a signed state token."""
        state = self.vault.create_state_token(user_id)
        auth_url = self.oauth.authorization_url(state)
        return AuthorizationRequest(auth_url=auth_url, state=state)

    def complete_splitwise_connect(self, code: str, state: str) -> ProviderConnection:
        """
        Finish the OAuth flow and store the user's Splitwise connection.

        The user is recovered from the state token, so the redirect needs no
        session. An existing Splitwise connection of the user is replaced.

        Args:
            code: Authorization code from the redirect
            state: State token from the redirect

        Returns:
            The stored, active connection

        Raises:
            DecryptionError: If the state was not issued by this installation
            InvalidStateTokenError: If the state carries no user id
            ProviderError: If the code exchange or user lookup fails
        """
        user_id = self.vault.verify_state_token(state)

        tokens = self.oauth.exchange_code(code)
        user = self.oauth.get_current_user(tokens.access_token)

        credentials = self.vault.encrypt(build_credentials(tokens, user.id))
        connection = self.db.save_provider_connection(
            ProviderConnection(
                user_id=user_id,
                provider_type=SplitwiseProvider.provider_type,
                credentials=credentials,
                is_active=True,
            )
        )
        logger.info(
            f"Connected user {user_id} to Splitwise account {user.id} "
            f"(connection {connection.id})"
        )
        return connection

    # ========================================================================
    # Connections and mappings
    # ========================================================================

    def list_connections(self, user_id: UUID) -> list[ProviderConnection]:
        """All provider connections of a user."""
        return self.db.list_provider_connections(user_id)

    def disconnect(self, connection_id: UUID, user_id: UUID):
        """Remove a user's connection together with its mappings and sync records."""
        connection = self._get_owned_connection(connection_id, user_id)
        self.db.delete_provider_connection(connection_id)
        logger.info(f"Disconnected {connection.provider_type} connection {connection_id}")

    def list_friends(self, connection_id: UUID, user_id: UUID) -> list[ProviderFriend]:
        """
        List the people a connection can share expenses with.

        Their external ids are what ``map_counterparty`` expects.

        Raises:
            ConnectionNotFoundError: If the user has no such connection
            ConfigurationError: If the connection is inactive
            ProviderError: If the provider call fails
        """
        connection = self._get_owned_connection(connection_id, user_id)
        if not connection.is_active:
            raise ConfigurationError(
                f"Provider connection {connection_id} is inactive. Please reconnect."
            )

        provider = self.providers.get(connection.provider_type)
        credentials = self.vault.decrypt(connection.credentials)
        return provider.list_friends(credentials)

    def map_counterparty(
        self, counterparty_id: UUID, provider_id: UUID, external_user_id: str
    ) -> CounterpartyProviderMapping:
        """Map a counterparty onto a provider, replacing any previous mapping."""
        self._get_connection(provider_id)
        mapping = self.db.save_mapping(
            CounterpartyProviderMapping(
                counterparty_id=counterparty_id,
                provider_id=provider_id,
                external_user_id=external_user_id,
            )
        )
        logger.info(
            f"Mapped counterparty {counterparty_id} to provider {provider_id} "
            f"user {external_user_id}"
        )
        return mapping

    def get_mapping(self, counterparty_id: UUID) -> CounterpartyProviderMapping | None:
        """The provider mapping of a counterparty, if it has one."""
        return self.db.get_mapping(counterparty_id)

    def unmap_counterparty(self, counterparty_id: UUID) -> bool:
        """
        Remove a counterparty's mapping.

        Existing sync records stay; later syncs leave the counterparty's splits out.

        Returns:
            Whether a mapping was removed
        """
        removed = self.db.delete_mapping(counterparty_id) > 0
        if removed:
            logger.info(f"Unmapped counterparty {counterparty_id}")
        return removed

    def validate_connection(self, connection_id: UUID) -> bool:
        """Check whether the provider still accepts a connection's credentials."""
        connection = self._get_connection(connection_id)
        provider = self.providers.get(connection.provider_type)
        credentials = self.vault.decrypt(connection.credentials)
        valid = provider.validate_credentials(credentials)
        if not valid:
            logger.warning(f"Credentials of connection {connection_id} were rejected")
        return valid

    def _get_connection(self, connection_id: UUID) -> ProviderConnection:
        connection = self.db.get_provider_connection(connection_id)
        if connection is None:
            raise ConnectionNotFoundError(connection_id)
        return connection

    def _get_owned_connection(
        self, connection_id: UUID, user_id: UUID
    ) -> ProviderConnection:
        connection = self._get_connection(connection_id)
        if connection.user_id != user_id:
            raise ConnectionNotFoundError(connection_id)
        return connection
