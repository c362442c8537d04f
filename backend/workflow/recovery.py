"""
Workflow Recovery Service.

Detects and resumes workflow runs interrupted by a crash, restart or
unexpected shutdown.

Recovery flow:
1. On startup, list top-level snapshots still marked "running"
2. Find the entity each run belongs to
3. Rebuild the execution context from its unresolved steps
4. Resume it in the background from the saved position

Nested runs are not resumed on their own: resuming the parent replays the
step that started them.
"""

from datetime import datetime, timezone
from typing import Callable, List, Optional

import structlog

from core.exceptions import DefinitionError
from entities.base import Entity
from workflow.checkpoint import CheckpointManager, WorkflowSnapshot
from workflow.engine import WorkflowEngine, WorkflowExecutionContext

logger = structlog.get_logger(__name__)

EntityResolver = Callable[[str], Optional[Entity]]


class RecoveryResult:
    """Result of a recovery attempt for a single run."""

    def __init__(self, workflow_id: str):
        self.workflow_id = workflow_id
        self.recovered: bool = False
        self.resume_from_step: int = 0
        self.total_steps: int = 0
        self.error: Optional[str] = None
        self.task = None
        self.timestamp = datetime.now(timezone.utc)

    def to_dict(self) -> dict:
        return {
            "workflow_id": self.workflow_id,
            "recovered": self.recovered,
            "resume_from_step": self.resume_from_step,
            "total_steps": self.total_steps,
            "error": self.error,
            "timestamp": self.timestamp.isoformat(),
        }


class RecoveryService:
    """
    Resumes interrupted runs on startup.

    Args:
        checkpoint_manager: Store holding the snapshots
        engine: Engine that runs the resumed workflows
        entity_resolver: Maps a snapshot's entity id to a live entity
    """

    def __init__(
        self,
        checkpoint_manager: CheckpointManager,
        engine: WorkflowEngine,
        entity_resolver: Optional[EntityResolver] = None,
    ):
        self.checkpoint_manager = checkpoint_manager
        self.engine = engine
        self.entity_resolver = entity_resolver
        self._recovery_log: List[RecoveryResult] = []

    async def recover_workflow(self, snapshot: WorkflowSnapshot) -> RecoveryResult:
        """Resume one interrupted run in the background."""
        result = RecoveryResult(snapshot.workflow_id)
        result.resume_from_step = snapshot.current_index
        result.total_steps = len(snapshot.steps)

        if not snapshot.can_resume:
            result.error = f"Workflow in non-resumable state: {snapshot.status}"
            logger.info("Workflow cannot be resumed", workflow_id=snapshot.workflow_id, status=snapshot.status)
            self._recovery_log.append(result)
            return result

        entity = None
        if snapshot.entity_id is not None:
            entity = self.entity_resolver(snapshot.entity_id) if self.entity_resolver else None
            if entity is None:
                result.error = f"Entity '{snapshot.entity_id}' not found"
                logger.warning(
                    "Entity for interrupted workflow not found",
                    workflow_id=snapshot.workflow_id,
                    entity_id=snapshot.entity_id,
                )
                self._recovery_log.append(result)
                return result

        try:
            context = WorkflowExecutionContext.from_snapshot(
                snapshot,
                entity,
                registry=self.engine.registry,
                checkpoint_manager=self.checkpoint_manager,
            )
        except DefinitionError as e:
            result.error = e.message
            logger.error("Interrupted workflow no longer parses", workflow_id=snapshot.workflow_id, error=e.message)
            self._recovery_log.append(result)
            return result

        result.task = self.engine.start_context(context)
        result.recovered = True
        logger.info(
            "Workflow recovered",
            workflow_id=snapshot.workflow_id,
            resume_from=snapshot.current_index,
            total=len(snapshot.steps),
            progress=f"{snapshot.progress_percent}%",
        )
        self._recovery_log.append(result)
        return result

    async def recover_all(self) -> List[RecoveryResult]:
        """
        Scan and recover all interrupted runs.

        Called on application startup.
        """
        logger.info("Starting workflow recovery scan")

        interrupted = await self.checkpoint_manager.list_interrupted()
        if not interrupted:
            logger.info("No interrupted workflows found")
            return []

        results = [await self.recover_workflow(snapshot) for snapshot in interrupted]

        logger.info(
            "Recovery scan complete",
            total=len(results),
            recovered=sum(1 for r in results if r.recovered),
            failed=sum(1 for r in results if not r.recovered),
        )
        return results

    def get_recovery_log(self) -> List[dict]:
        return [r.to_dict() for r in self._recovery_log]
