"""Split sync orchestrator.

Reacts to split lifecycle events and mirrors them onto external split
providers. Splits of one transaction are grouped by the provider their
counterparty is mapped to, and each provider group becomes a single external
expense in which the transaction owner paid the full amount and every
counterparty owes their split.

All work runs synchronously on the caller's code path. A failing provider
group is recorded as ``failed`` and never stops the other groups. Nothing is
retried automatically; ``retry_sync`` is the only retry path.
"""

import logging
from collections.abc import Callable
from decimal import Decimal
from typing import TypeVar
from uuid import UUID

from .clients.base import Credentials, ProviderRegistry, SplitProvider
from .config import Settings
from .db import Database
from .exceptions import (
    ConfigurationError,
    ProviderError,
    RetryLimitExceededError,
    SplitNotFoundError,
    SyncRecordNotFoundError,
    TransactionNotFoundError,
    VaultError,
)
from .models import (
    CounterpartyProviderMapping,
    ExpenseParticipant,
    ExternalExpenseResult,
    Split,
    SyncRecord,
    SyncStatus,
    SyncStatusView,
    Transaction,
    utcnow,
)
from .vault import CredentialVault

logger = logging.getLogger(__name__)

# Expenses are always sent in this currency, whatever the owning account uses
EXPENSE_CURRENCY = "USD"

SplitGroup = list[tuple[Split, CounterpartyProviderMapping]]

T = TypeVar("T")

# Failures recorded on the sync records of a provider group
GROUP_FAILURES = (ProviderError, ConfigurationError, VaultError)


def group_splits_by_provider(
    splits_with_mappings: list[tuple[Split, CounterpartyProviderMapping | None]],
) -> dict[UUID, SplitGroup]:
    """
    Group splits by the provider their counterparty is mapped to.

    Splits without a mapping are dropped. Order within a group follows the
    input order.
    """
    grouped: dict[UUID, SplitGroup] = {}
    for split, mapping in splits_with_mappings:
        if mapping is None:
            continue
        grouped.setdefault(mapping.provider_id, []).append((split, mapping))
    return grouped


def build_participants(
    transaction: Transaction, group: SplitGroup
) -> list[ExpenseParticipant]:
    """
    Build the participant list of one provider group.

    The transaction owner paid the full amount and owes nothing; each split's
    counterparty owes its split amount and paid nothing.

    The owner has no mapping of their own on any provider, so the first
    split's external identity stands in for the payer.
    """
    if not group:
        raise ValueError("Cannot build participants for an empty split group")

    zero = Decimal("0.00")
    payer_external_id = group[0][1].external_user_id
    participants = [
        ExpenseParticipant(
            external_id=payer_external_id,
            paid_share=transaction.amount,
            owed_share=zero,
        )
    ]
    participants.extend(
        ExpenseParticipant(
            external_id=mapping.external_user_id,
            paid_share=zero,
            owed_share=split.amount,
        )
        for split, mapping in group
    )
    return participants


def describe_failure(error: Exception) -> str:
    """Error text stored on a failed sync record."""
    if isinstance(error, VaultError):
        return f"Internal error: {error}"
    return str(error)


class SplitSyncService:
    """Keeps sync records and provider-side expenses in step with splits.

    No lock guards a transaction's records: triggers touching the same
    transaction must not run concurrently.
    """

    def __init__(
        self,
        settings: Settings,
        database: Database,
        vault: CredentialVault,
        providers: ProviderRegistry,
    ):
        """Initialize the sync service."""
        self.settings = settings
        self.db = database
        self.vault = vault
        self.providers = providers

    # ========================================================================
    # Triggers
    # ========================================================================

    def on_splits_created(self, transaction_id: UUID, split_ids: list[UUID]):
        """
        Create one external expense per provider for newly created splits.

        Args:
            transaction_id: The transaction the splits belong to
            split_ids: IDs of the splits that were just created
        """
        if not split_ids:
            return

        transaction, splits = self._load_transaction(transaction_id)
        wanted = set(split_ids)
        new_splits = [(split, m) for split, m in splits if split.id in wanted]

        for provider_id, group in group_splits_by_provider(new_splits).items():
            self._create_group(transaction, provider_id, group)

    def on_split_updated(self, split_id: UUID):
        """Push the full current split set of the split's transaction."""
        split = self.db.get_split(split_id)
        if split is None:
            logger.info(f"Split {split_id} no longer exists, nothing to sync")
            return

        transaction, splits = self._load_transaction(split.transaction_id)
        for provider_id, group in group_splits_by_provider(splits).items():
            self._sync_group(transaction, provider_id, group)

    def on_split_deleted(self, transaction_id: UUID, deleted_split_id: UUID):
        """
        Shrink or delete the external expenses that included a removed split.

        A provider that still has splits on the transaction gets an update with
        the remaining participants; a provider left with none has its expense
        deleted. The removed split's own records are always deleted, even when
        the provider call fails.
        """
        deleted_records = self.db.find_sync_records_by_split(deleted_split_id)
        if not deleted_records:
            return

        transaction = self.db.get_transaction(transaction_id)
        remaining = []
        if transaction is not None:
            remaining = [
                (split, m)
                for split, m in self.db.list_splits_with_mappings(transaction_id)
                if split.id != deleted_split_id
            ]
        grouped = group_splits_by_provider(remaining)

        for record in deleted_records:
            try:
                group = grouped.get(record.provider_id)
                if group and transaction is not None:
                    self._sync_group(
                        transaction,
                        record.provider_id,
                        group,
                        fallback_expense_id=record.external_expense_id,
                    )
                elif record.external_expense_id:
                    self._delete_external_expense(
                        record.provider_id, record.external_expense_id
                    )
            finally:
                self.db.delete_sync_record(record.id)
                logger.debug(
                    f"Removed sync record {record.id} of deleted split {deleted_split_id}"
                )

    def retry_sync(self, record_id: UUID) -> SyncRecord:
        """
        Retry the provider group a sync record belongs to.

        Returns:
            The refreshed sync record

        Raises:
            SyncRecordNotFoundError: If the record does not exist
            RetryLimitExceededError: If the record reached the retry ceiling;
                                     the provider is not called
        """
        record = self.db.get_sync_record(record_id)
        if record is None:
            raise SyncRecordNotFoundError(record_id)

        if record.retry_count >= self.settings.max_sync_retries:
            raise RetryLimitExceededError(record_id, record.retry_count)

        split = self.db.get_split(record.split_id)
        if split is None:
            raise SplitNotFoundError(record.split_id)

        transaction, splits = self._load_transaction(split.transaction_id)
        group = group_splits_by_provider(splits).get(record.provider_id)
        if group is None:
            logger.warning(
                f"Split {split.id} is no longer mapped to provider "
                f"{record.provider_id}, nothing to retry"
            )
        else:
            logger.info(f"Retrying sync record {record_id}")
            self._sync_group(transaction, record.provider_id, group)

        refreshed = self.db.get_sync_record(record_id)
        if refreshed is None:
            raise SyncRecordNotFoundError(record_id)
        return refreshed

    # ========================================================================
    # Status
    # ========================================================================

    def get_sync_status(self, split_id: UUID) -> list[SyncStatusView]:
        """Project the stored sync records of a split. Never calls a provider."""
        views = []
        for record in self.db.find_sync_records_by_split(split_id):
            connection = self.db.get_provider_connection(record.provider_id)
            provider_type = connection.provider_type if connection else None

            external_url = None
            if record.external_expense_id and provider_type in self.providers:
                provider = self.providers.get(provider_type)
                external_url = provider.expense_url(record.external_expense_id)

            views.append(
                SyncStatusView(
                    id=record.id,
                    split_id=record.split_id,
                    provider_id=record.provider_id,
                    provider_type=provider_type,
                    external_expense_id=record.external_expense_id,
                    status=record.status,
                    last_sync_at=record.last_sync_at,
                    last_error=record.last_error,
                    retry_count=record.retry_count,
                    external_url=external_url,
                )
            )
        return views

    def list_failed_syncs(self) -> list[SyncRecord]:
        """Failed records still under the retry ceiling, for manual inspection."""
        return self.db.find_failed_sync_records(self.settings.max_sync_retries)

    # ========================================================================
    # Provider groups
    # ========================================================================

    def _load_transaction(
        self, transaction_id: UUID
    ) -> tuple[Transaction, list[tuple[Split, CounterpartyProviderMapping | None]]]:
        transaction = self.db.get_transaction(transaction_id)
        if transaction is None:
            raise TransactionNotFoundError(transaction_id)
        return transaction, self.db.list_splits_with_mappings(transaction_id)

    def _sync_group(
        self,
        transaction: Transaction,
        provider_id: UUID,
        group: SplitGroup,
        fallback_expense_id: str | None = None,
    ) -> bool:
        """
        Update the group's external expense, or create it if there is none yet.

        ``fallback_expense_id`` names an expense the group is already part of
        when none of its own records carries one, as when the only synced
        split of the group was just deleted.
        """
        external_expense_id = (
            self._find_external_expense_id(provider_id, group) or fallback_expense_id
        )
        if external_expense_id is None:
            return self._create_group(transaction, provider_id, group)
        return self._update_group(transaction, provider_id, group, external_expense_id)

    def _create_group(
        self, transaction: Transaction, provider_id: UUID, group: SplitGroup
    ) -> bool:
        participants = build_participants(transaction, group)

        def create(provider: SplitProvider, credentials: Credentials):
            return provider.create_expense(
                credentials,
                description=transaction.title,
                total_cost=transaction.amount,
                currency_code=EXPENSE_CURRENCY,
                date=transaction.date,
                participants=participants,
                notes=transaction.notes,
            )

        try:
            result = self._call_provider(provider_id, create)
        except GROUP_FAILURES as e:
            self._log_group_failure("create", transaction, provider_id, e)
            self._mark_failed(provider_id, group, e)
            return False

        self._mark_synced(provider_id, group, result, created=True)
        logger.info(
            f"Synced {len(group)} split(s) of transaction {transaction.id} to "
            f"provider {provider_id} as expense {result.external_expense_id}"
        )
        return True

    def _update_group(
        self,
        transaction: Transaction,
        provider_id: UUID,
        group: SplitGroup,
        external_expense_id: str,
    ) -> bool:
        participants = build_participants(transaction, group)

        def update(provider: SplitProvider, credentials: Credentials):
            return provider.update_expense(
                credentials,
                external_expense_id,
                description=transaction.title,
                total_cost=transaction.amount,
                date=transaction.date,
                notes=transaction.notes,
                participants=participants,
            )

        try:
            result = self._call_provider(provider_id, update)
        except GROUP_FAILURES as e:
            self._log_group_failure("update", transaction, provider_id, e)
            self._mark_failed(provider_id, group, e)
            return False

        self._mark_synced(provider_id, group, result, created=False)
        logger.info(
            f"Updated expense {external_expense_id} on provider {provider_id} "
            f"with {len(group)} split(s)"
        )
        return True

    def _delete_external_expense(self, provider_id: UUID, external_expense_id: str):
        def delete(provider: SplitProvider, credentials: Credentials):
            provider.delete_expense(credentials, external_expense_id)

        try:
            self._call_provider(provider_id, delete)
        except GROUP_FAILURES as e:
            logger.error(
                f"Failed to delete expense {external_expense_id} from provider "
                f"{provider_id}: {e}"
            )
            return
        logger.info(f"Deleted expense {external_expense_id} from provider {provider_id}")

    def _find_external_expense_id(
        self, provider_id: UUID, group: SplitGroup
    ) -> str | None:
        for split, _ in group:
            record = self.db.find_sync_record(split.id, provider_id)
            if record is not None and record.external_expense_id:
                return record.external_expense_id
        return None

    def _call_provider(
        self,
        provider_id: UUID,
        operation: Callable[[SplitProvider, Credentials], T],
    ) -> T:
        """
        Run one provider operation with the connection's decrypted credentials.

        If the provider asks for re-authentication, credentials are refreshed
        once and the operation repeated once with the new credentials.
        """
        connection = self.db.get_provider_connection(provider_id)
        if connection is None:
            raise ConfigurationError(f"Provider connection {provider_id} not found")
        if not connection.is_active:
            raise ConfigurationError(
                f"Provider connection {provider_id} is inactive. Please reconnect."
            )

        provider = self.providers.get(connection.provider_type)
        credentials = self.vault.decrypt(connection.credentials)

        try:
            return operation(provider, credentials)
        except ProviderError as e:
            if not e.requires_reauth:
                raise
            refreshed = provider.refresh_credentials(credentials)
            if refreshed is None:
                raise
            self.db.update_provider_credentials(
                connection.id, self.vault.encrypt(refreshed)
            )
            logger.info(
                f"Refreshed {connection.provider_type} credentials for "
                f"connection {connection.id}, retrying once"
            )
            return operation(provider, refreshed)

    def _log_group_failure(
        self, action: str, transaction: Transaction, provider_id: UUID, error: Exception
    ):
        if isinstance(error, VaultError):
            logger.error(
                f"Internal fault: credentials of provider {provider_id} could not "
                f"be decrypted: {error}"
            )
            return
        logger.error(
            f"Failed to {action} expense for transaction {transaction.id} on "
            f"provider {provider_id}: {error}"
        )

    # ========================================================================
    # Record bookkeeping
    # ========================================================================

    def _mark_synced(
        self,
        provider_id: UUID,
        group: SplitGroup,
        result: ExternalExpenseResult,
        *,
        created: bool,
    ):
        now = utcnow()
        for split, _ in group:
            record = self.db.find_sync_record(split.id, provider_id)
            if record is None:
                self.db.create_sync_record(
                    SyncRecord(
                        split_id=split.id,
                        provider_id=provider_id,
                        external_expense_id=result.external_expense_id,
                        status=SyncStatus.SYNCED,
                        last_sync_at=now,
                    )
                )
                continue

            record.external_expense_id = result.external_expense_id
            record.status = SyncStatus.SYNCED
            record.last_sync_at = now
            record.last_error = None
            if created:
                record.retry_count = 0
            self.db.update_sync_record(record)

    def _mark_failed(self, provider_id: UUID, group: SplitGroup, error: Exception):
        now = utcnow()
        message = describe_failure(error)
        for split, _ in group:
            record = self.db.find_sync_record(split.id, provider_id)
            if record is None:
                self.db.create_sync_record(
                    SyncRecord(
                        split_id=split.id,
                        provider_id=provider_id,
                        status=SyncStatus.FAILED,
                        last_sync_at=now,
                        last_error=message,
                    )
                )
                continue

            record.status = SyncStatus.FAILED
            record.last_sync_at = now
            record.last_error = message
            record.retry_count += 1
            self.db.update_sync_record(record)
