"""Pytest configuration and fixtures."""

from __future__ import annotations

import os
from typing import List
from unittest.mock import patch

import pytest

from dbtransfer.models.transfer import TransferEvent
from tests.fakes import FakeServer


@pytest.fixture
def mock_env_vars():
    """Fixture to provide mock environment variables for testing."""
    env_vars = {
        "SOURCE_TYPE": "mariadb",
        "SOURCE_HOST": "db1.local",
        "SOURCE_PORT": "3307",
        "SOURCE_USER": "test_user",
        "SOURCE_PASSWORD": "test_password",
        "SOURCE_DB": "app",
        "TARGET_TYPE": "postgres",
        "TARGET_HOST": "db2.local",
        "TARGET_PORT": "5432",
        "TARGET_USER": "pg_user",
        "TARGET_PASSWORD": "pg_password",
        "TARGET_DB": "app_copy",
        "TARGET_SCHEMA": "app",
    }
    with patch.dict(os.environ, env_vars, clear=True):
        yield env_vars


@pytest.fixture
def mock_empty_env():
    """Fixture to provide empty environment variables for testing."""
    with patch.dict(os.environ, {}, clear=True):
        yield


@pytest.fixture
def mariadb_server() -> FakeServer:
    return FakeServer("mariadb")


@pytest.fixture
def postgres_server() -> FakeServer:
    return FakeServer("postgres")


@pytest.fixture
def events() -> List[TransferEvent]:
    """Event list usable as TransferOptions.progress via ``events.append``."""
    return []
