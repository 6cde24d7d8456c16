from __future__ import annotations

from collections.abc import Iterator
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from ytpm.app.dependencies import reset_cached_dependencies
from ytpm.app.main import create_app
from ytpm.app.repositories.database import Database


@pytest.fixture
def db(tmp_path: Path) -> Database:
    database = Database(tmp_path / "state.db")
    database.initialize()
    return database


@pytest.fixture
def app_env(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    data_dir = tmp_path / "runtime-data"
    data_dir.mkdir(parents=True, exist_ok=True)
    monkeypatch.setenv("YTPM_DATA_DIR", str(data_dir))
    monkeypatch.setenv("YTPM_ENABLE_SCHEDULER", "0")
    monkeypatch.setenv("YTPM_TELEMETRY_SINK", "none")
    monkeypatch.setenv("YTPM_CRON_SECRET", "test-cron-secret")
    monkeypatch.delenv("YTPM_DB_PATH", raising=False)
    monkeypatch.delenv("YTPM_LOG_DIR", raising=False)
    reset_cached_dependencies()
    return data_dir


@pytest.fixture
def client(app_env: Path) -> Iterator[TestClient]:
    _ = app_env
    app = create_app()
    with TestClient(app) as test_client:
        yield test_client

    reset_cached_dependencies()
