"""
Pytest configuration and fixtures for Postman OpenAPI Sync tests.
"""

import json
import os
import shutil
import tempfile

import pytest
from fastapi.testclient import TestClient

# Set test environment variables before importing the app
os.environ["SYNC_PATHS__DATA_DIR"] = tempfile.mkdtemp(prefix="sync_test_data_")
os.environ["SYNC_WATCHER__ENABLED"] = "false"

from postman_openapi_sync.configuration import load_config
from postman_openapi_sync.main import app, get_sync_manager
from postman_openapi_sync.sync_manager import SyncManager


@pytest.fixture(scope="session", autouse=True)
def default_data_dir():
    """Remove the data directory used by the module-level app instance."""
    data_dir = os.environ["SYNC_PATHS__DATA_DIR"]
    yield data_dir
    shutil.rmtree(data_dir, ignore_errors=True)


@pytest.fixture
def make_config(tmp_path):
    """Build an isolated configuration rooted at the test's tmp_path."""

    def _make(**overrides):
        base = {
            "paths": {"data_dir": str(tmp_path)},
            "watcher": {"enabled": False, "quiet_period": 0.2, "stability_window": 0.0},
            "lock": {"max_retries": 3, "retry_timeout": 0.5, "backoff": 0.01},
        }
        for key, value in overrides.items():
            base.setdefault(key, {}).update(value)
        return load_config(base, environ={})

    return _make


@pytest.fixture
def config(make_config):
    return make_config()


@pytest.fixture
def manager(config):
    """A SyncManager with the built-in transform and no watcher."""
    instance = SyncManager(config)
    yield instance
    instance.shutdown()


@pytest.fixture
def client(manager):
    """Create a test client whose routes use the isolated manager."""
    app.dependency_overrides[get_sync_manager] = lambda: manager
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


@pytest.fixture
def minimal_collection():
    return {"info": {"name": "X"}, "item": []}


@pytest.fixture
def sample_collection():
    """A small Postman v2.1 collection exercising folders, params and bodies."""
    return {
        "info": {
            "name": "Pet Store",
            "description": "Sample pets API",
            "schema": "https://schema.getpostman.com/json/collection/v2.1.0/collection.json",
        },
        "variable": [{"key": "baseUrl", "value": "https://api.example.com"}],
        "auth": {"type": "bearer", "bearer": [{"key": "token", "value": "{{token}}", "type": "string"}]},
        "item": [
            {
                "name": "Pets",
                "item": [
                    {
                        "name": "List pets",
                        "request": {
                            "method": "GET",
                            "header": [
                                {"key": "Accept", "value": "application/json"},
                                {"key": "X-Request-Id", "value": "abc"},
                            ],
                            "url": {
                                "raw": "{{baseUrl}}/pets?limit=10",
                                "host": ["{{baseUrl}}"],
                                "path": ["pets"],
                                "query": [
                                    {"key": "limit", "value": "10", "description": "Page size"},
                                    {"key": "debug", "value": "true", "disabled": True},
                                ],
                            },
                        },
                        "response": [
                            {"name": "OK", "code": 200, "body": "[{\"id\": 1, \"name\": \"Rex\"}]"},
                        ],
                    },
                    {
                        "name": "Get pet",
                        "request": {
                            "method": "GET",
                            "url": {
                                "raw": "{{baseUrl}}/pets/:petId",
                                "host": ["{{baseUrl}}"],
                                "path": ["pets", ":petId"],
                                "variable": [{"key": "petId", "value": "42", "description": "Pet id"}],
                            },
                        },
                    },
                    {
                        "name": "Create pet",
                        "request": {
                            "method": "POST",
                            "header": [{"key": "Content-Type", "value": "application/json"}],
                            "body": {
                                "mode": "raw",
                                "raw": "{\"name\": \"Rex\", \"age\": 3, \"vaccinated\": true}",
                                "options": {"raw": {"language": "json"}},
                            },
                            "url": "{{baseUrl}}/pets",
                        },
                    },
                ],
            },
            {
                "name": "Ping",
                "request": {"method": "GET", "url": "https://status.example.com/ping", "auth": {"type": "noauth"}},
            },
        ],
    }


@pytest.fixture
def write_collection(config):
    """Write a collection to the configured source path."""

    def _write(data):
        content = data if isinstance(data, bytes) else json.dumps(data).encode()
        config.paths.source.write_bytes(content)
        return content

    return _write
