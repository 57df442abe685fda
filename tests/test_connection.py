"""Tests for connecting and authenticating."""

from unittest.mock import MagicMock

import pytest
from pymongo.errors import OperationFailure, ServerSelectionTimeoutError

from mongosync.data_models.base import ConnectError
from mongosync.storage import connection
from mongosync.storage.connection import (
    LEGACY_AUTH_MECHANISM,
    MongoConnection,
    build_client_kwargs,
    connect_and_auth,
)


class TestClientKwargs:
    """Tests for build_client_kwargs."""

    def test_anonymous(self):
        kwargs = build_client_kwargs("admin", "", "", False)
        assert kwargs["directConnection"] is True
        assert "username" not in kwargs

    def test_credentials(self):
        kwargs = build_client_kwargs("users", "alice", "secret", False)
        assert kwargs["username"] == "alice"
        assert kwargs["password"] == "secret"
        assert kwargs["authSource"] == "users"
        assert "authMechanism" not in kwargs

    def test_legacy_mechanism(self):
        kwargs = build_client_kwargs("", "alice", "secret", True)
        assert kwargs["authMechanism"] == LEGACY_AUTH_MECHANISM
        assert kwargs["authSource"] == "admin"


class TestConnectAndAuth:
    """Tests for connect_and_auth with a mocked driver."""

    def test_success(self, monkeypatch):
        client = MagicMock()
        factory = MagicMock(return_value=client)
        monkeypatch.setattr(connection.pymongo, "MongoClient", factory)

        conn = connect_and_auth("db1:27017", user="alice", passwd="secret", timeout_ms=500)

        assert isinstance(conn, MongoConnection)
        assert conn.server == "db1:27017"
        _, kwargs = factory.call_args
        assert kwargs["host"] == "mongodb://db1:27017"
        assert kwargs["serverSelectionTimeoutMS"] == 500
        client.admin.command.assert_called_once_with("ping")

    @pytest.mark.parametrize("error", [
        ServerSelectionTimeoutError("no servers"),
        OperationFailure("Authentication failed.", code=18),
    ])
    def test_failure_closes_client(self, monkeypatch, error):
        client = MagicMock()
        client.admin.command.side_effect = error
        monkeypatch.setattr(connection.pymongo, "MongoClient", MagicMock(return_value=client))

        with pytest.raises(ConnectError) as exc_info:
            connect_and_auth("db1:27017")

        assert exc_info.value.server == "db1:27017"
        assert exc_info.value.__cause__ is error
        client.close.assert_called_once()


class TestMongoConnection:
    """Tests for the thin driver wrapper."""

    def test_namespace_routing(self):
        client = MagicMock()
        conn = MongoConnection(client, "db1:27017")
        conn.insert_one("foo.system.indexes", {"name": "a_1"})
        client.__getitem__.assert_called_with("foo")
        client.__getitem__.return_value.__getitem__.assert_called_with("system.indexes")

    def test_run_command_on_database(self):
        client = MagicMock()
        conn = MongoConnection(client)
        conn.run_command("admin", {"renameCollection": "foo.a", "to": "foo.b"})
        client.__getitem__.assert_called_with("admin")
        client.__getitem__.return_value.command.assert_called_once_with(
            {"renameCollection": "foo.a", "to": "foo.b"}
        )
