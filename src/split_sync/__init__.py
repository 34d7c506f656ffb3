"""split-sync - Mirror transaction splits onto Splitwise and other split providers."""

__version__ = "0.1.0"

from .config import Settings, load_settings
from .connections import ConnectionService
from .db import Database
from .models import (
    CounterpartyProviderMapping,
    ProviderConnection,
    Split,
    SyncRecord,
    SyncStatus,
    SyncStatusView,
    Transaction,
)
from .service import SplitSyncService
from .vault import CredentialVault

__all__ = [
    "Settings",
    "load_settings",
    "ConnectionService",
    "Database",
    "CounterpartyProviderMapping",
    "ProviderConnection",
    "Split",
    "SyncRecord",
    "SyncStatus",
    "SyncStatusView",
    "Transaction",
    "SplitSyncService",
    "CredentialVault",
]
