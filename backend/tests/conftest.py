"""
Shared pytest fixtures for Shipgate tests.

Fixtures provided:
- test_db: DatabaseManager on a temporary SQLite file
- memory_audit_log: In-process audit log
- env_secret_store: Env-var store backed by a private dict (registry creds present)
- fake_gateway: Scriptable ImageBuilderGateway (no Docker daemon needed)
- clean_scanner / dirty_scanner: Scanner stubs reporting zero / two matches
- mock_docker_client: Mock Docker SDK client
- build_context: Temporary build context directory

Nothing here talks to a real Docker engine, registry or vendor API.
"""

import os
import sys
from unittest.mock import MagicMock

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from audit import MemoryAuditLog
from database import DatabaseManager
from deployment.types import ScanMatch, ScanResult
from secret_store import EnvSecretStore
from tests.fakes import REGISTRY_PASSWORD, REGISTRY_USERNAME, FakeGateway, StubScanner


@pytest.fixture(scope="function")
def test_db(tmp_path):
    """
    Create a DatabaseManager on a temporary SQLite file.

    Disposed after the test so the file can be removed.
    """
    db = DatabaseManager(str(tmp_path / "audit" / "shipgate.db"))
    yield db
    db.dispose()


@pytest.fixture
def memory_audit_log():
    return MemoryAuditLog()


@pytest.fixture
def secret_environ():
    """Private environment dict holding registry credentials."""
    return {
        "REGISTRY_USERNAME": REGISTRY_USERNAME,
        "REGISTRY_PASSWORD": REGISTRY_PASSWORD,
    }


@pytest.fixture
def env_secret_store(secret_environ):
    return EnvSecretStore(environ=secret_environ)


@pytest.fixture
def fake_gateway():
    return FakeGateway()


@pytest.fixture
def clean_scanner():
    return StubScanner(ScanResult())


@pytest.fixture
def dirty_scanner():
    return StubScanner(ScanResult.from_matches([
        ScanMatch(path="be/config.js", line=3, rule="generic-credential-assignment"),
        ScanMatch(path="be/.env.production", line=1, rule="aws-access-key-id"),
    ]))


@pytest.fixture
def mock_docker_client():
    """
    Mock Docker SDK client for testing without real Docker daemon.

    images.build returns a built image running as "app"; images.push yields
    a successful progress stream with a digest.
    """
    client = MagicMock()

    built = MagicMock()
    built.id = "sha256:0f1e2d3c4b5a"
    built.attrs = {'Config': {'User': 'app'}}
    client.images.build = MagicMock(return_value=(built, iter([{'stream': 'Step 1/2 : FROM alpine\n'}])))

    client.images.push = MagicMock(return_value=iter([
        {'status': 'Pushing', 'id': 'abc'},
        {'status': '1.0: digest: sha256:feed size: 528'},
        {'aux': {'Tag': '1.0', 'Digest': 'sha256:feed', 'Size': 528}},
    ]))
    client.images.remove = MagicMock()
    client.ping = MagicMock(return_value=True)

    return client


@pytest.fixture
def build_context(tmp_path):
    """A small build context with a Dockerfile and one source file."""
    context = tmp_path / "app"
    context.mkdir()
    (context / "Dockerfile").write_text("FROM node:20-alpine\nUSER node\nCOPY . /app\n")
    (context / "index.js").write_text("const port = process.env.PORT || 3000;\n")
    return context
