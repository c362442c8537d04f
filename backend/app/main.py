"""Entity Workflow Engine - runtime bootstrap.

Wires the shared services together for an embedding application:

    async with lifespan(entity_resolver=app_entities.get) as runtime:
        await runtime.engine.invoke(entity, steps)
"""

from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Optional

import structlog

from app.config import get_settings
from core.logging_config import setup_logging
from db.session import close_checkpoint_manager, open_checkpoint_manager
from steps.registry import StepTypeRegistry, get_step_registry
from triggers.manager import TriggerManager, get_trigger_manager
from workflow.checkpoint import CheckpointManager
from workflow.engine import WorkflowEngine
from workflow.recovery import EntityResolver, RecoveryResult, RecoveryService

logger = structlog.get_logger(__name__)


@dataclass
class EngineRuntime:
    """Services shared by every workflow run in the process."""

    registry: StepTypeRegistry
    checkpoints: CheckpointManager
    engine: WorkflowEngine
    triggers: TriggerManager
    recovery: list[RecoveryResult] = field(default_factory=list)


@asynccontextmanager
async def lifespan(
    entity_resolver: Optional[EntityResolver] = None,
    persistence_url: Optional[str] = None,
    checkpoint_manager: Optional[CheckpointManager] = None,
):
    """Start the engine, resume interrupted runs, and shut down cleanly.

    Args:
        entity_resolver: Maps entity ids of interrupted runs to live entities
        persistence_url: Checkpoint store URL (default: ``PERSISTENCE_URL``)
        checkpoint_manager: Use this store instead of opening one
    """
    # Startup
    settings = get_settings()
    setup_logging()

    owns_store = checkpoint_manager is None
    checkpoints = checkpoint_manager or await open_checkpoint_manager(persistence_url)
    registry = get_step_registry()
    engine = WorkflowEngine(registry=registry, checkpoint_manager=checkpoints)
    runtime = EngineRuntime(
        registry=registry,
        checkpoints=checkpoints,
        engine=engine,
        triggers=get_trigger_manager(),
    )
    logger.info(
        "Workflow engine ready",
        persistence="database" if checkpoints.db_session is not None else "memory",
        step_types=len(registry.available_types),
    )

    # Recover interrupted executions from previous run
    try:
        runtime.recovery = await RecoveryService(checkpoints, engine, entity_resolver).recover_all()
    except Exception as e:
        logger.warning("Recovery scan skipped", error=str(e))

    logger.info(
        "Application started",
        app=settings.APP_NAME,
        version=settings.APP_VERSION,
        environment=settings.ENVIRONMENT,
        recovered=sum(1 for r in runtime.recovery if r.recovered),
    )
    try:
        yield runtime
    finally:
        # Shutdown
        await runtime.triggers.stop_all()
        for workflow_id in list(engine.get_running_executions()):
            await engine.cancel(workflow_id)
        if owns_store:
            await close_checkpoint_manager(checkpoints)
        logger.info("Application shutting down")
