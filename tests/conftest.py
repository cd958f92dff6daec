"""
Shared pytest fixtures for the vaultsync test suite.

The autouse fixture below redirects the global audit logger to a temp
directory so tests never write into ./audit_logs/. The rest build a
reference server on a temp database and client devices wired to it
through httpx.ASGITransport (no sockets).
"""

import httpx
import pytest

from vaultsync.config import ClientSettings, ServerSettings
from vaultsync.server import SqliteServerStore, create_app
from vaultsync.sync import LocalCache, ReconciliationStateMachine, SyncClient

TEST_ITERATIONS = 1_000
BASE_URL = "http://vault.test"


@pytest.fixture(autouse=True)
def _isolate_audit_logs(tmp_path):
    """Point the audit logger singleton at a temp directory for every test."""
    import vaultsync.core.audit_log as audit_mod

    old_logger = audit_mod._audit_logger
    audit_mod._audit_logger = audit_mod.AuditLogger(log_dir=tmp_path / "audit_logs")

    yield

    audit_mod._audit_logger.close()
    audit_mod._audit_logger = old_logger


@pytest.fixture
def server_store(tmp_path):
    return SqliteServerStore(tmp_path / "server" / "vaults.db")


@pytest.fixture
def server_app(server_store):
    return create_app(
        server_store, ServerSettings(decoy_salt_secret="test-decoy-secret")
    )


def _client_settings(tmp_path, name="device", **overrides):
    """Fast settings: few KDF rounds, no backoff delays."""
    values = dict(
        server_url=BASE_URL,
        cache_path=tmp_path / name / "cache.db",
        kdf_iterations=TEST_ITERATIONS,
        network_retries=1,
        initial_backoff_sec=0.0,
        request_timeout_sec=2.0,
    )
    values.update(overrides)
    return ClientSettings(**values)


@pytest.fixture
def make_device(tmp_path, server_app):
    """Factory: a ReconciliationStateMachine with its own cache.

    Devices with the same name share a cache database (a restart).
    Pass ``transport`` to replace the in-process server, e.g. with an
    httpx.MockTransport that fails.
    """

    def _make(name="device", transport=None, **overrides):
        settings = _client_settings(tmp_path, name, **overrides)
        client = SyncClient.from_settings(
            settings, transport=transport or httpx.ASGITransport(app=server_app)
        )
        return ReconciliationStateMachine(client, LocalCache(settings.cache_path), settings)

    return _make


@pytest.fixture
def offline_transport():
    """Transport whose every request fails to connect."""

    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    return httpx.MockTransport(handler)
