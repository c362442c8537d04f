"""Shared pytest fixtures for the workflow engine test suite.

Provides:
- A small entity tree (application with one child)
- Fresh step registry, checkpoint manager and engine per test
- Checkpoint manager backed by in-memory async SQLite
- Trigger manager that is stopped after each test
"""

import asyncio
import os
import time

import pytest
import pytest_asyncio

# Override settings BEFORE any app imports
os.environ.setdefault("ENVIRONMENT", "testing")
os.environ.setdefault("LOG_FORMAT", "text")
os.environ.setdefault("PERSISTENCE_URL", "")

from db.session import close_checkpoint_manager, open_checkpoint_manager  # noqa: E402
from entities.basic import BasicEntity  # noqa: E402
from steps.registry import StepTypeRegistry  # noqa: E402
from triggers.manager import TriggerManager  # noqa: E402
from workflow.checkpoint import CheckpointManager  # noqa: E402
from workflow.engine import WorkflowEngine  # noqa: E402


# ---------------------------------------------------------------------------
# Entity fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def app_entity() -> BasicEntity:
    return BasicEntity("app", entity_id="app")


@pytest.fixture
def entity(app_entity) -> BasicEntity:
    return app_entity.add_child("entity", entity_id="entity")


# ---------------------------------------------------------------------------
# Engine fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def registry() -> StepTypeRegistry:
    return StepTypeRegistry()


@pytest.fixture
def checkpoints() -> CheckpointManager:
    return CheckpointManager()


@pytest.fixture
def engine(registry, checkpoints) -> WorkflowEngine:
    return WorkflowEngine(registry=registry, checkpoint_manager=checkpoints)


@pytest_asyncio.fixture
async def sqlite_checkpoints():
    """Checkpoint manager persisting to a throwaway SQLite database."""
    manager = await open_checkpoint_manager("sqlite+aiosqlite:///:memory:")
    yield manager
    await close_checkpoint_manager(manager)


@pytest_asyncio.fixture
async def triggers():
    manager = TriggerManager()
    yield manager
    await manager.stop_all()


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

async def wait_until(predicate, timeout: float = 2.0, interval: float = 0.005) -> None:
    """Poll ``predicate`` until it holds; fail the test after ``timeout``."""
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            pytest.fail(f"Condition not met within {timeout}s")
        await asyncio.sleep(interval)
