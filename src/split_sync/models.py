"""Pydantic domain models for split-sync."""

from datetime import UTC, datetime
from decimal import Decimal
from enum import StrEnum
from uuid import UUID, uuid4

from pydantic import BaseModel, Field


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(UTC)


# ============================================================================
# Ledger Models
# ============================================================================


class Transaction(BaseModel):
    """A transaction owned by the primary user."""

    id: UUID = Field(default_factory=uuid4)
    user_id: UUID
    title: str
    amount: Decimal
    date: datetime
    notes: str | None = None


class Split(BaseModel):
    """The portion of a transaction's amount attributed to one counterparty."""

    id: UUID = Field(default_factory=uuid4)
    transaction_id: UUID
    counterparty_id: UUID
    amount: Decimal  # signed


class CounterpartyProviderMapping(BaseModel):
    """A counterparty's identity on one provider.

    At most one mapping exists per counterparty, so a counterparty can only be
    synced to a single provider at a time.
    """

    id: UUID = Field(default_factory=uuid4)
    counterparty_id: UUID
    provider_id: UUID
    external_user_id: str


class ProviderConnection(BaseModel):
    """A user's connection to an external split provider."""

    id: UUID = Field(default_factory=uuid4)
    user_id: UUID
    provider_type: str
    credentials: str  # vault blob, never plaintext
    is_active: bool = True
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


# ============================================================================
# Sync Models
# ============================================================================


class SyncStatus(StrEnum):
    """State of one split mirrored on one provider."""

    PENDING = "pending"
    SYNCED = "synced"
    FAILED = "failed"
    DELETED = "deleted"


class SyncRecord(BaseModel):
    """Sync state of one (split, provider) pair.

    The external expense id is set once the record first reaches ``synced``
    and is kept through later failures. Several records share one external id
    when their splits were sent to the provider as a single expense.
    """

    id: UUID = Field(default_factory=uuid4)
    split_id: UUID
    provider_id: UUID
    external_expense_id: str | None = None
    status: SyncStatus = SyncStatus.PENDING
    last_sync_at: datetime | None = None
    last_error: str | None = None
    retry_count: int = 0
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class SyncStatusView(BaseModel):
    """Read-only projection of a sync record for callers and UIs."""

    id: UUID
    split_id: UUID
    provider_id: UUID
    provider_type: str | None = None
    external_expense_id: str | None = None
    status: SyncStatus
    last_sync_at: datetime | None = None
    last_error: str | None = None
    retry_count: int
    external_url: str | None = None


# ============================================================================
# Provider Models
# ============================================================================


class ExpenseParticipant(BaseModel):
    """One user on an external expense."""

    external_id: str
    paid_share: Decimal
    owed_share: Decimal


class ExternalExpenseResult(BaseModel):
    """Outcome of creating or updating an external expense."""

    external_expense_id: str
    external_url: str | None = None


class ProviderFriend(BaseModel):
    """Someone the connected account can share expenses with."""

    external_id: str
    first_name: str = ""
    last_name: str | None = None
    email: str | None = None

    @property
    def full_name(self) -> str:
        return " ".join(part for part in (self.first_name, self.last_name) if part)


class AuthorizationRequest(BaseModel):
    """Where to send the user to connect a provider, and the state to expect back."""

    auth_url: str
    state: str


class SplitwiseTokens(BaseModel):
    """Splitwise OAuth2 token response."""

    access_token: str
    refresh_token: str | None = None
    expires_in: int
    token_type: str = "bearer"


class SplitwiseUser(BaseModel):
    """The Splitwise account behind an access token."""

    id: int
    first_name: str = ""
    last_name: str | None = None
    email: str | None = None
