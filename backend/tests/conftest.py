from __future__ import annotations

import pathlib
import sys
from collections.abc import Callable
from typing import Any

import pytest
from sqlalchemy.pool import StaticPool

ROOT = pathlib.Path(__file__).resolve().parents[2]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


def _load_dependencies():
    from app import Config, create_app
    from backend.app.extensions import db

    return Config, create_app, db


ConfigBase, create_app, db = _load_dependencies()


class TestConfig(ConfigBase):
    TESTING = True
    SQLALCHEMY_DATABASE_URI = "sqlite+pysqlite:///:memory:"
    SQLALCHEMY_ENGINE_OPTIONS = {
        "poolclass": StaticPool,
        "connect_args": {"check_same_thread": False},
    }
    CORS_ALLOWED_ORIGINS = "http://localhost"
    DB_INIT_MAX_RETRIES = 1
    RATELIMIT_ENABLED = False
    WORKFLOW_DISPATCH_MODE = "inline"
    WORKFLOW_ACTION_TIMEOUT = 0


@pytest.fixture(scope="module")
def app():
    app = create_app(TestConfig)
    ctx = app.app_context()
    ctx.push()
    yield app
    db.session.remove()
    ctx.pop()


@pytest.fixture()
def client(app):
    return app.test_client()


def _inventory_payload(name: str = "inventory") -> dict[str, Any]:
    return {
        "name": name,
        "displayName": name.title(),
        "fields": [
            {"name": "item_name", "dataType": "TEXT", "isRequired": True},
            {"name": "category", "dataType": "TEXT"},
            {"name": "price", "dataType": "INTEGER"},
            {"name": "stock", "dataType": "INTEGER"},
            {"name": "status", "dataType": "TEXT", "defaultValue": "instock"},
        ],
    }


def _notifications_payload(name: str = "notifications") -> dict[str, Any]:
    return {
        "name": name,
        "displayName": name.title(),
        "fields": [
            {"name": "message", "dataType": "TEXT", "isRequired": True},
            {"name": "priority", "dataType": "TEXT", "defaultValue": "INFO"},
            {"name": "is_read", "dataType": "BOOLEAN", "defaultValue": "false"},
        ],
    }


@pytest.fixture()
def inventory_payload() -> Callable[..., dict[str, Any]]:
    return _inventory_payload


@pytest.fixture()
def notifications_payload() -> Callable[..., dict[str, Any]]:
    return _notifications_payload


@pytest.fixture()
def create_table(client) -> Callable[[dict[str, Any]], dict[str, Any]]:
    def factory(payload: dict[str, Any]) -> dict[str, Any]:
        response = client.post("/api/custom-tables", json=payload)
        assert response.status_code == 201, response.get_json()
        return response.get_json()

    return factory
