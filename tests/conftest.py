# conftest.py - Shared pytest fixtures for all tests
"""Shared pytest fixtures for the nodeflow test suite.

This module provides foundational fixtures used across all test modules:
- Test databases (entity records and run history)
- Fake collaborators (HTTP transport, entity store)
- Sample workflows covering the documented scenarios

Usage:
    Import fixtures implicitly via pytest's fixture discovery.
    All fixtures in this file are automatically available in test modules.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

import pytest

from nodeflow.core.collaborators import HttpResponse, InMemoryEntityStore
from nodeflow.core.config import EngineSettings
from nodeflow.core.state import Database, ExecutionHistory


# =============================================================================
# Fake Collaborators
# =============================================================================


class FakeTransport:
    """HttpTransport that records calls and replays canned responses.

    responses maps a URL to an HttpResponse; unknown URLs answer 200 with
    an empty JSON object.
    """

    def __init__(self, responses: dict[str, HttpResponse] | None = None):
        self.responses = responses or {}
        self.calls: list[dict[str, Any]] = []

    async def call(
        self,
        method: str,
        url: str,
        headers: dict[str, str],
        body: str | None = None,
    ) -> HttpResponse:
        self.calls.append({"method": method, "url": url, "headers": headers, "body": body})
        return self.responses.get(url, HttpResponse(status=200, json_body={}))


@pytest.fixture
def fake_transport() -> FakeTransport:
    """Transport answering 200 {} unless a response is registered.

    Example:
        def test_call(fake_transport):
            fake_transport.responses["https://api.test/x"] = HttpResponse(404, {"e": 1})
    """
    return FakeTransport()


@pytest.fixture
def entity_store() -> InMemoryEntityStore:
    """In-memory store with a 'users' entity holding two records."""
    return InMemoryEntityStore(
        {
            "users": [
                {"id": "u1", "name": "Ada", "role": "admin"},
                {"id": "u2", "name": "Linus", "role": "member"},
            ]
        }
    )


@pytest.fixture
def settings() -> EngineSettings:
    """Default engine settings."""
    return EngineSettings()


# =============================================================================
# Database Fixtures
# =============================================================================


@pytest.fixture
def test_db(tmp_path: Path) -> Database:
    """Create a fresh SQLite database in a temp directory."""
    return Database(tmp_path / ".nodeflow" / "state.db")


@pytest.fixture
def history(test_db: Database) -> ExecutionHistory:
    return ExecutionHistory(test_db)


# =============================================================================
# Sample Workflows
# =============================================================================


@pytest.fixture
def score_workflow() -> list[dict[str, Any]]:
    """trigger -> condition(score > 50 ? high) with 'high' as an output node."""
    return [
        {"id": "trigger", "type": "trigger", "config": {}},
        {
            "id": "condition",
            "type": "condition",
            "config": {
                "conditions": [
                    {
                        "field": "score",
                        "operator": "greaterThan",
                        "value": 50,
                        "thenNodeId": "high",
                    }
                ]
            },
        },
        {"id": "high", "type": "output", "config": {}},
    ]


@pytest.fixture
def counter_loop_workflow() -> list[dict[str, Any]]:
    """Loop over items adding each item to counter, capped at two iterations."""
    return [
        {"id": "start", "type": "trigger", "config": {}},
        {
            "id": "loop",
            "type": "loop",
            "config": {
                "arrayField": "items",
                "itemVariableName": "item",
                "loopNodeId": "add",
                "maxIterations": 2,
            },
        },
        {
            "id": "add",
            "type": "data_transform",
            "config": {
                "transformations": [
                    {"type": "calculate", "params": {"expression": "{counter} + {item}"}}
                ],
                "outputVariable": "counter",
            },
        },
    ]


def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line(
        "markers", "slow: marks tests as slow (deselect with '-m \"not slow\"')"
    )
    config.addinivalue_line("markers", "integration: marks integration tests")
