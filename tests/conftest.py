"""Shared fixtures."""

import base64
from datetime import UTC, datetime
from decimal import Decimal
from uuid import uuid4

import pytest

from split_sync.config import Settings
from split_sync.db import Database
from split_sync.models import ProviderConnection, Transaction
from split_sync.vault import CredentialVault

TEST_KEY = base64.b64encode(bytes(range(32))).decode("ascii")


@pytest.fixture
def settings(tmp_path):
    """Settings with a fixed key and a temporary database."""
    return Settings(
        _env_file=None,
        encryption_key=TEST_KEY,
        splitwise_client_id="client-id",
        splitwise_client_secret="client-secret",
        splitwise_redirect_uri="http://localhost/callback",
        database_path=tmp_path / "test.db",
    )


@pytest.fixture
def db(settings):
    """Create a temporary database."""
    database = Database(settings.database_path)
    yield database
    database.close()


@pytest.fixture
def vault():
    return CredentialVault(TEST_KEY)


@pytest.fixture
def user_id():
    return uuid4()


@pytest.fixture
def transaction(db, user_id):
    """A $90 dinner owned by the test user."""
    return db.save_transaction(
        Transaction(
            user_id=user_id,
            title="Dinner",
            amount=Decimal("90.00"),
            date=datetime(2024, 3, 1, 19, 30, tzinfo=UTC),
            notes="Friday",
        )
    )


@pytest.fixture
def make_connection(db, vault, user_id):
    """Factory storing an active connection with encrypted credentials."""

    def _make(provider_type="splitwise", credentials=None, is_active=True):
        return db.save_provider_connection(
            ProviderConnection(
                user_id=user_id,
                provider_type=provider_type,
                credentials=vault.encrypt(credentials or {"access_token": "tok"}),
                is_active=is_active,
            )
        )

    return _make
