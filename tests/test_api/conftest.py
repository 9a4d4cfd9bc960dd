"""Shared fixtures for API tests."""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi.testclient import TestClient

from src.alerts.engine import build_engine
from src.api.app import create_app
from src.api.auth import verify_api_key
from src.storage.database import Database


@pytest.fixture
def mock_db():
    """Mock Database: healthy, every source table empty."""
    db = AsyncMock(spec=Database)
    db.fetch.return_value = []
    db.execute.return_value = "UPDATE 1"
    db.health_check.return_value = True
    return db


@pytest.fixture
def engine(test_settings, monitor_config, mock_db):
    """Alert engine on the in-memory store with no notification channels."""
    return build_engine(
        settings=test_settings,
        monitor_config=monitor_config,
        database=mock_db,
        channels=[],
        metrics=MagicMock(),
    )


@pytest.fixture
def seed(engine):
    """Insert an alert directly into the engine's store."""

    def _seed(alert_key: str = "visit:V-100:late", **fields):
        base = {
            "source_type": "late_visit",
            "title": "Late Visit Alert - WARNING: Visit #V-100",
            "message": "Agent hasn't arrived",
            "source_entity_id": "V-100",
        }
        base.update(fields)
        result = asyncio.run(engine.store.upsert_alert(alert_key, base))
        return result.record

    return _seed


@pytest.fixture
def client(engine):
    """FastAPI TestClient with dependency overrides."""
    app = create_app(engine)
    app.dependency_overrides[verify_api_key] = lambda: "test-key"

    with TestClient(app) as c:
        yield c

    app.dependency_overrides.clear()
