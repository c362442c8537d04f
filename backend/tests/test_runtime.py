"""Tests for the runtime bootstrap."""

import asyncio
import logging

import pytest
import structlog

from app.main import lifespan
from core.constants import WorkflowStatus
from core.logging_config import WORKFLOW_LOG, setup_logging
from workflow.checkpoint import CheckpointType, WorkflowSnapshot


@pytest.fixture(autouse=True)
def restore_logging():
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield
    structlog.reset_defaults()
    root.handlers[:] = handlers
    root.setLevel(level)
    logging.getLogger(WORKFLOW_LOG).setLevel(logging.NOTSET)


@pytest.mark.integration
class TestLifespan:
    @pytest.mark.asyncio
    async def test_resumes_interrupted_runs(self, checkpoints, entity):
        snapshot = WorkflowSnapshot("wf-before-restart", "interrupted", ["let a = 1", "return ${a} + 1"])
        snapshot.status = WorkflowStatus.RUNNING.value
        snapshot.entity_id = "entity"
        snapshot.scratch = {"a": 1}
        snapshot.current_index = 1
        await checkpoints.save_checkpoint(snapshot, CheckpointType.STEP_STARTING)

        async with lifespan(entity_resolver={"entity": entity}.get, checkpoint_manager=checkpoints) as runtime:
            assert [r.workflow_id for r in runtime.recovery] == ["wf-before-restart"]
            assert await runtime.recovery[0].task == 2

    @pytest.mark.asyncio
    async def test_persists_to_database(self, entity):
        async with lifespan(persistence_url="sqlite+aiosqlite:///:memory:") as runtime:
            assert runtime.checkpoints.db_session is not None
            ctx = runtime.engine.create_context(entity, ["return done"])
            assert await runtime.engine.execute(ctx) == "done"
            loaded = await runtime.checkpoints.load_snapshot(ctx.workflow_id)
            assert loaded.status == WorkflowStatus.SUCCEEDED.value

    @pytest.mark.asyncio
    async def test_cancels_running_workflows_on_shutdown(self, checkpoints, entity):
        async with lifespan(checkpoint_manager=checkpoints) as runtime:
            task = runtime.engine.start(entity, ["sleep 10s"])
            await asyncio.sleep(0.01)
            assert task.get_name() in runtime.engine.get_running_executions()

        assert task.done()
        assert runtime.engine.get_running_executions() == {}


# ─── Logging ───

@pytest.mark.unit
class TestLogging:
    def test_levels(self):
        setup_logging(level="debug", fmt="text", workflow_log_level="WARNING")
        assert logging.getLogger().level == logging.DEBUG
        assert logging.getLogger(WORKFLOW_LOG).level == logging.WARNING

    def test_workflow_log_follows_root_by_default(self):
        setup_logging(level="INFO")
        assert logging.getLogger(WORKFLOW_LOG).level == logging.NOTSET
        assert logging.getLogger("aiosqlite").level == logging.WARNING

    @pytest.mark.asyncio
    async def test_execution_id_bound_during_run(self, engine, entity):
        async def probe(target, params):
            return structlog.contextvars.get_contextvars().get("execution_id")

        entity.add_action("probe", probe)
        ctx = engine.create_context(entity, ["invoke-effector probe", "return ${output}"])
        assert await engine.execute(ctx) == ctx.workflow_id
        assert "execution_id" not in structlog.contextvars.get_contextvars()
