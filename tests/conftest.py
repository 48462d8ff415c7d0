"""Shared pytest configuration and fixtures."""

import sqlite3
from collections.abc import Generator
from typing import Any
from unittest.mock import patch

import pytest

from traceguard.config import Settings, get_settings
from traceguard.storage.store import get_connection, init_schema

# Every module that imports get_settings needs to be patched so the cached
# reference is overridden.
SETTINGS_PATCH_SITES = [
    "traceguard.config.get_settings",
    "traceguard.storage.store.get_settings",
    "traceguard.alerting.evaluator.get_settings",
    "traceguard.alerting.dispatcher.get_settings",
    "traceguard.alerting.loop.get_settings",
    "traceguard.alerting.scheduler.get_settings",
    "traceguard.rca.analyzer.get_settings",
    "traceguard.rca.scoring.get_settings",
    "traceguard.rca.search.get_settings",
    "traceguard.rca.correlation.get_settings",
    "traceguard.api.main.get_settings",
]


@pytest.fixture(autouse=True)
def _no_dotenv() -> Generator[None]:
    """Block .env loading so a developer's local .env never leaks into tests.

    Sets Settings.model_config["env_file"] = None before each test.
    Tests that use mock_settings bypass Settings() entirely, so this is transparent.
    """
    get_settings.cache_clear()
    original = Settings.model_config.get("env_file")
    Settings.model_config["env_file"] = None

    try:
        yield
    finally:
        Settings.model_config["env_file"] = original
        get_settings.cache_clear()


@pytest.fixture
def mock_settings() -> Generator[Any]:
    """Provide fake settings so tests don't need a .env file.

    Patches get_settings at every import site so cached references are overridden.
    Retries use no backoff so failure-path tests stay fast.
    """
    fake_settings = type(
        "FakeSettings",
        (),
        {
            "database_path": ":memory:",
            # Evaluation loop
            "evaluation_interval_seconds": 30,
            "scheduler_enabled": True,
            "activity_max_attempts": 3,
            "activity_backoff_seconds": 0.0,
            # Timeouts
            "metric_timeout_seconds": 1.0,
            "span_query_timeout_seconds": 1.0,
            "search_timeout_seconds": 1.0,
            "notification_timeout_seconds": 1.0,
            # Investigation
            "max_spans_to_analyze": 5000,
            "default_lookback_days": 7,
            "temporal_half_life_hours": 24.0,
            "correlation_weight_temporal": 0.3,
            "correlation_weight_semantic": 0.4,
            "correlation_weight_path": 0.3,
            # External services
            "code_search_url": "http://search.test:8080",
            "code_search_token": "search-test-token",
            "notification_url": "http://notify.test:3000",
            "internal_api_secret": "internal-test-secret",
        },
    )()
    patches = [patch(site, return_value=fake_settings) for site in SETTINGS_PATCH_SITES]
    for p in patches:
        p.start()
    try:
        yield fake_settings
    finally:
        for p in reversed(patches):
            p.stop()


@pytest.fixture
def conn() -> Generator[sqlite3.Connection]:
    """In-memory SQLite connection with schema initialized."""
    connection = get_connection(":memory:")
    init_schema(connection)
    try:
        yield connection
    finally:
        connection.close()
