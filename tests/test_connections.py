"""Tests for provider connections and counterparty mappings."""

from unittest.mock import MagicMock
from urllib.parse import parse_qs, urlparse
from uuid import uuid4

import httpx
import pytest

from split_sync.clients.base import ProviderRegistry
from split_sync.clients.splitwise_oauth import SplitwiseOAuth
from split_sync.config import Settings
from split_sync.connections import ConnectionService
from split_sync.exceptions import (
    AuthenticationFailed,
    ConfigurationError,
    ConnectionNotFoundError,
    DecryptionError,
)
from split_sync.models import ProviderFriend, SyncRecord

# Well-formed base64 that was never sealed by the vault
FORGED_STATE = "Zm9yZ2VkLXN0YXRlLXZhbHVlLWhlcmU"


def oauth_handler(requests):
    """Fake Splitwise OAuth endpoints, recording every request."""

    def handler(request):
        requests.append(request)
        if request.url.path == "/oauth/token":
            return httpx.Response(
                200,
                json={
                    "access_token": "access",
                    "refresh_token": "refresh",
                    "expires_in": 3600,
                    "token_type": "bearer",
                },
            )
        if request.url.path == "/api/v3.0/get_current_user":
            return httpx.Response(
                200, json={"user": {"id": 42, "first_name": "Ada", "email": "a@x.io"}}
            )
        return httpx.Response(404)

    return handler


@pytest.fixture
def requests():
    return []


@pytest.fixture
def provider():
    provider = MagicMock()
    provider.provider_type = "splitwise"
    provider.validate_credentials.return_value = True
    return provider


@pytest.fixture
def connections(settings, db, vault, provider, requests):
    oauth = SplitwiseOAuth(
        client_id="client-id",
        client_secret="client-secret",
        redirect_uri="http://localhost/callback",
        transport=httpx.MockTransport(oauth_handler(requests)),
    )
    service = ConnectionService(
        settings, db, vault, ProviderRegistry([provider]), oauth=oauth
    )
    yield service
    service.close()


def test_start_connect_builds_authorization_url(connections, vault, user_id):
    request = connections.start_splitwise_connect(user_id)

    url = urlparse(request.auth_url)
    query = parse_qs(url.query)
    assert url.netloc == "secure.splitwise.com"
    assert url.path == "/oauth/authorize"
    assert query["client_id"] == ["client-id"]
    assert query["response_type"] == ["code"]
    assert query["redirect_uri"] == ["http://localhost/callback"]
    assert query["state"] == [request.state]
    assert vault.verify_state_token(request.state) == user_id


def test_complete_connect_stores_encrypted_credentials(
    connections, db, vault, user_id, requests
):
    state = connections.start_splitwise_connect(user_id).state

    connection = connections.complete_splitwise_connect("the-code", state)

    token_request = requests[0]
    body = {k: v[0] for k, v in parse_qs(token_request.content.decode()).items()}
    assert body["grant_type"] == "authorization_code"
    assert body["code"] == "the-code"
    assert requests[1].headers["Authorization"] == "Bearer access"

    assert connection.user_id == user_id
    assert connection.provider_type == "splitwise"
    assert connection.is_active
    assert "access" not in connection.credentials

    credentials = vault.decrypt(db.get_provider_connection(connection.id).credentials)
    assert credentials["access_token"] == "access"
    assert credentials["refresh_token"] == "refresh"
    assert credentials["splitwise_user_id"] == 42
    assert "token_expires_at" in credentials


def test_reconnect_replaces_connection(connections, user_id):
    first = connections.complete_splitwise_connect(
        "code", connections.start_splitwise_connect(user_id).state
    )
    second = connections.complete_splitwise_connect(
        "code", connections.start_splitwise_connect(user_id).state
    )

    assert second.id == first.id


def test_complete_connect_rejects_forged_state(connections, requests):
    with pytest.raises(DecryptionError):
        connections.complete_splitwise_connect("code", FORGED_STATE)

    assert requests == []


def test_complete_connect_surfaces_provider_errors(settings, db, vault, user_id):
    oauth = SplitwiseOAuth(
        client_id="id",
        client_secret="secret",
        redirect_uri="http://localhost/callback",
        transport=httpx.MockTransport(
            lambda request: httpx.Response(401, text="bad code")
        ),
    )
    service = ConnectionService(settings, db, vault, ProviderRegistry(), oauth=oauth)

    with pytest.raises(AuthenticationFailed):
        service.complete_splitwise_connect(
            "code", service.start_splitwise_connect(user_id).state
        )


def test_oauth_requires_configuration(tmp_path, db, vault):
    settings = Settings(
        _env_file=None, splitwise_client_id=None, database_path=tmp_path / "x.db"
    )
    service = ConnectionService(settings, db, vault, ProviderRegistry())

    with pytest.raises(ConfigurationError, match="SPLITWISE_CLIENT_ID"):
        service.start_splitwise_connect(uuid4())


def test_map_counterparty(connections, db, make_connection):
    connection = make_connection()
    counterparty_id = uuid4()

    mapping = connections.map_counterparty(counterparty_id, connection.id, "111")

    assert mapping.provider_id == connection.id
    assert db.get_mapping(counterparty_id).external_user_id == "111"


def test_map_counterparty_to_unknown_connection(connections):
    with pytest.raises(ConnectionNotFoundError):
        connections.map_counterparty(uuid4(), uuid4(), "111")


def test_disconnect_removes_everything(connections, db, make_connection, user_id):
    connection = make_connection()
    counterparty_id = uuid4()
    connections.map_counterparty(counterparty_id, connection.id, "111")
    record = db.create_sync_record(
        SyncRecord(split_id=uuid4(), provider_id=connection.id)
    )

    connections.disconnect(connection.id, user_id)

    assert db.get_provider_connection(connection.id) is None
    assert db.get_mapping(counterparty_id) is None
    assert db.get_sync_record(record.id) is None


def test_disconnect_other_users_connection(connections, db, make_connection):
    connection = make_connection()

    with pytest.raises(ConnectionNotFoundError):
        connections.disconnect(connection.id, uuid4())

    assert db.get_provider_connection(connection.id) is not None


def test_validate_connection(connections, provider, make_connection):
    connection = make_connection(credentials={"access_token": "tok"})

    assert connections.validate_connection(connection.id) is True
    provider.validate_credentials.assert_called_once_with({"access_token": "tok"})

    provider.validate_credentials.return_value = False
    assert connections.validate_connection(connection.id) is False


def test_list_connections(connections, make_connection, user_id):
    splitwise = make_connection("splitwise")
    splitpro = make_connection("splitpro")

    listed = connections.list_connections(user_id)

    assert [c.id for c in listed] == [splitwise.id, splitpro.id]
    assert connections.list_connections(uuid4()) == []


def test_get_and_unmap_counterparty(connections, make_connection):
    connection = make_connection()
    counterparty_id = uuid4()
    connections.map_counterparty(counterparty_id, connection.id, "111")

    assert connections.get_mapping(counterparty_id).external_user_id == "111"
    assert connections.unmap_counterparty(counterparty_id) is True
    assert connections.get_mapping(counterparty_id) is None
    assert connections.unmap_counterparty(counterparty_id) is False


def test_list_friends(connections, provider, make_connection, user_id):
    friends = [ProviderFriend(external_id="111", first_name="Ada")]
    provider.list_friends.return_value = friends
    connection = make_connection(credentials={"access_token": "tok"})

    assert connections.list_friends(connection.id, user_id) == friends
    provider.list_friends.assert_called_once_with({"access_token": "tok"})


def test_list_friends_of_other_users_connection(
    connections, provider, make_connection
):
    connection = make_connection()

    with pytest.raises(ConnectionNotFoundError):
        connections.list_friends(connection.id, uuid4())

    provider.list_friends.assert_not_called()


def test_list_friends_of_inactive_connection(
    connections, provider, make_connection, user_id
):
    connection = make_connection(is_active=False)

    with pytest.raises(ConfigurationError, match="inactive"):
        connections.list_friends(connection.id, user_id)

    provider.list_friends.assert_not_called()
