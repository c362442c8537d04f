"""
Workflow Checkpoint & Resume System.

Every step transition of a workflow produces a snapshot so that a run can
be resumed after a crash or restart.

Architecture:
- Before each step: save "step_starting" checkpoint
- After each step: save "step_completed" (or failed/skipped/retrying)
- Snapshots hold the authored, unresolved steps: expressions are resolved
  again on replay since scratch values may have changed
- On restart: the recovery service finds interrupted runs and resumes
  them from their saved position
- Full checkpoint journal preserved for audit trail
"""

import asyncio
import json
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

import structlog
from sqlalchemy import DateTime, bindparam, text

from core.constants import WorkflowStatus
from core.utils import to_json_safe

logger = structlog.get_logger(__name__)


class CheckpointType(str, Enum):
    """Types of workflow checkpoints."""
    WORKFLOW_STARTED = "workflow_started"
    STEP_STARTING = "step_starting"
    STEP_COMPLETED = "step_completed"
    STEP_FAILED = "step_failed"
    STEP_RETRYING = "step_retrying"
    STEP_SKIPPED = "step_skipped"
    WORKFLOW_RESUMED = "workflow_resumed"
    WORKFLOW_COMPLETED = "workflow_completed"
    WORKFLOW_FAILED = "workflow_failed"


class Checkpoint:
    """A single checkpoint record."""

    def __init__(
        self,
        workflow_id: str,
        checkpoint_type: CheckpointType,
        step_id: Optional[str] = None,
        step_index: Optional[int] = None,
        data: Optional[Dict[str, Any]] = None,
    ):
        self.id = str(uuid.uuid4())
        self.workflow_id = workflow_id
        self.checkpoint_type = checkpoint_type
        self.step_id = step_id
        self.step_index = step_index
        self.data = to_json_safe(data or {})
        self.created_at = datetime.now(timezone.utc)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "workflow_id": self.workflow_id,
            "checkpoint_type": self.checkpoint_type.value,
            "step_id": self.step_id,
            "step_index": self.step_index,
            "data": self.data,
            "created_at": self.created_at.isoformat(),
        }


class WorkflowSnapshot:
    """
    Serializable state of one workflow run.

    Holds everything needed to continue a run from where it stopped:
    the unresolved steps, the position, scratch variables and retry counts.
    """

    def __init__(self, workflow_id: str, name: str = "", steps: Optional[list] = None):
        self.workflow_id = workflow_id
        self.name = name
        self.steps: list = list(steps or [])
        self.status: str = WorkflowStatus.PENDING.value
        self.entity_id: Optional[str] = None
        self.parent_id: Optional[str] = None
        self.origin: Optional[str] = None
        self.input: Dict[str, Any] = {}
        self.scratch: Dict[str, Any] = {}
        self.current_index: int = 0
        self.previous_output: Any = None
        self.step_outputs: Dict[str, Any] = {}
        self.retry_counts: Dict[str, int] = {}
        self.output: Any = None
        self.error: Optional[str] = None
        self.timeout: Optional[float] = None
        self.started_at: Optional[datetime] = None
        self.updated_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        """Serialize full state for DB persistence."""
        return {
            "workflow_id": self.workflow_id,
            "name": self.name,
            "steps": to_json_safe(self.steps),
            "status": self.status,
            "entity_id": self.entity_id,
            "parent_id": self.parent_id,
            "origin": self.origin,
            "input": to_json_safe(self.input),
            "scratch": to_json_safe(self.scratch),
            "current_index": self.current_index,
            "previous_output": to_json_safe(self.previous_output),
            "step_outputs": to_json_safe(self.step_outputs),
            "retry_counts": dict(self.retry_counts),
            "output": to_json_safe(self.output),
            "error": self.error,
            "timeout": self.timeout,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "WorkflowSnapshot":
        """Restore a snapshot from DB data."""
        snapshot = cls(
            workflow_id=data["workflow_id"],
            name=data.get("name", ""),
            steps=data.get("steps", []),
        )
        snapshot.status = data.get("status", WorkflowStatus.PENDING.value)
        snapshot.entity_id = data.get("entity_id")
        snapshot.parent_id = data.get("parent_id")
        snapshot.origin = data.get("origin")
        snapshot.input = data.get("input") or {}
        snapshot.scratch = data.get("scratch") or {}
        snapshot.current_index = data.get("current_index", 0)
        snapshot.previous_output = data.get("previous_output")
        snapshot.step_outputs = data.get("step_outputs") or {}
        snapshot.retry_counts = data.get("retry_counts") or {}
        snapshot.output = data.get("output")
        snapshot.error = data.get("error")
        snapshot.timeout = data.get("timeout")

        if data.get("started_at"):
            snapshot.started_at = datetime.fromisoformat(data["started_at"])
        if data.get("updated_at"):
            snapshot.updated_at = datetime.fromisoformat(data["updated_at"])

        return snapshot

    @property
    def can_resume(self) -> bool:
        """Check if this run can be resumed."""
        return self.status in (WorkflowStatus.PENDING.value, WorkflowStatus.RUNNING.value)

    @property
    def progress_percent(self) -> float:
        """Position through the step list as a percentage."""
        if not self.steps:
            return 100.0 if self.status == WorkflowStatus.SUCCEEDED.value else 0.0
        return round(min(self.current_index, len(self.steps)) / len(self.steps) * 100, 1)


_CREATE_STATES = """
    CREATE TABLE IF NOT EXISTS workflow_states (
        workflow_id VARCHAR(64) PRIMARY KEY,
        parent_id VARCHAR(64),
        status VARCHAR(32) NOT NULL,
        state_data TEXT NOT NULL,
        updated_at TIMESTAMP NOT NULL
    )
"""

_CREATE_CHECKPOINTS = """
    CREATE TABLE IF NOT EXISTS workflow_checkpoints (
        id VARCHAR(64) PRIMARY KEY,
        workflow_id VARCHAR(64) NOT NULL,
        checkpoint_type VARCHAR(32) NOT NULL,
        step_id VARCHAR(255),
        step_index INTEGER,
        data TEXT,
        created_at TIMESTAMP NOT NULL
    )
"""


class CheckpointManager:
    """
    Manages checkpoint creation, persistence, and recovery.

    Keeps the latest snapshot of every run in memory and, when given an
    async SQLAlchemy session, persists snapshots and the checkpoint journal.
    """

    def __init__(self, db_session=None):
        self.db_session = db_session
        self._snapshots: Dict[str, WorkflowSnapshot] = {}  # In-memory cache
        self._journal: Dict[str, List[Checkpoint]] = {}
        # One session is shared by every run; concurrent writes on it are not allowed
        self._write_lock = asyncio.Lock()

    async def ensure_schema(self) -> None:
        """Create the checkpoint tables if they do not exist."""
        if not self.db_session:
            return
        await self.db_session.execute(text(_CREATE_STATES))
        await self.db_session.execute(text(_CREATE_CHECKPOINTS))
        await self.db_session.commit()

    def get_snapshot(self, workflow_id: str) -> Optional[WorkflowSnapshot]:
        """Get the latest snapshot from cache."""
        return self._snapshots.get(workflow_id)

    def get_checkpoints(self, workflow_id: str) -> List[Checkpoint]:
        """Checkpoints recorded for a run in this process, oldest first."""
        return list(self._journal.get(workflow_id, []))

    async def save_checkpoint(
        self,
        snapshot: WorkflowSnapshot,
        checkpoint_type: CheckpointType,
        step_id: Optional[str] = None,
        step_index: Optional[int] = None,
        data: Optional[Dict[str, Any]] = None,
    ) -> Checkpoint:
        """
        Record a step transition and store the snapshot taken after it.

        Called before and after every step so a run can resume from the
        last known good state.
        """
        checkpoint = Checkpoint(
            workflow_id=snapshot.workflow_id,
            checkpoint_type=checkpoint_type,
            step_id=step_id,
            step_index=step_index,
            data=data,
        )
        snapshot.updated_at = checkpoint.created_at

        self._snapshots[snapshot.workflow_id] = snapshot
        self._journal.setdefault(snapshot.workflow_id, []).append(checkpoint)

        async with self._write_lock:
            await self._persist_snapshot(snapshot)
            await self._persist_checkpoint(checkpoint)

        logger.debug(
            "Checkpoint saved",
            workflow_id=snapshot.workflow_id,
            type=checkpoint_type.value,
            step_id=step_id,
            progress=f"{snapshot.progress_percent}%",
        )

        return checkpoint

    async def _persist_snapshot(self, snapshot: WorkflowSnapshot):
        """Save the snapshot to database."""
        if not self.db_session:
            return

        try:
            await self.db_session.execute(
                text("""
                    INSERT INTO workflow_states (workflow_id, parent_id, status, state_data, updated_at)
                    VALUES (:workflow_id, :parent_id, :status, :state_data, :updated_at)
                    ON CONFLICT (workflow_id) DO UPDATE
                    SET status = :status, state_data = :state_data, updated_at = :updated_at
                """).bindparams(bindparam("updated_at", type_=DateTime(timezone=True))),
                {
                    "workflow_id": snapshot.workflow_id,
                    "parent_id": snapshot.parent_id,
                    "status": snapshot.status,
                    "state_data": json.dumps(snapshot.to_dict()),
                    "updated_at": snapshot.updated_at or datetime.now(timezone.utc),
                },
            )
            await self.db_session.commit()
        except Exception as e:
            logger.error("Failed to persist snapshot", error=str(e), workflow_id=snapshot.workflow_id)

    async def _persist_checkpoint(self, checkpoint: Checkpoint):
        """Save individual checkpoint to database."""
        if not self.db_session:
            return

        try:
            await self.db_session.execute(
                text("""
                    INSERT INTO workflow_checkpoints
                    (id, workflow_id, checkpoint_type, step_id, step_index, data, created_at)
                    VALUES (:id, :workflow_id, :checkpoint_type, :step_id, :step_index, :data, :created_at)
                """).bindparams(bindparam("created_at", type_=DateTime(timezone=True))),
                {
                    "id": checkpoint.id,
                    "workflow_id": checkpoint.workflow_id,
                    "checkpoint_type": checkpoint.checkpoint_type.value,
                    "step_id": checkpoint.step_id,
                    "step_index": checkpoint.step_index,
                    "data": json.dumps(checkpoint.data),
                    "created_at": checkpoint.created_at,
                },
            )
            await self.db_session.commit()
        except Exception as e:
            logger.error("Failed to persist checkpoint", error=str(e))

    async def load_snapshot(self, workflow_id: str) -> Optional[WorkflowSnapshot]:
        """Load a snapshot from database for recovery."""
        if not self.db_session:
            return self._snapshots.get(workflow_id)

        try:
            result = await self.db_session.execute(
                text("SELECT state_data FROM workflow_states WHERE workflow_id = :workflow_id"),
                {"workflow_id": workflow_id},
            )
            row = result.fetchone()
            if row:
                snapshot = WorkflowSnapshot.from_dict(json.loads(row[0]))
                self._snapshots[workflow_id] = snapshot
                logger.info(
                    "Workflow snapshot loaded",
                    workflow_id=workflow_id,
                    status=snapshot.status,
                    progress=f"{snapshot.progress_percent}%",
                    position=snapshot.current_index,
                )
                return snapshot
        except Exception as e:
            logger.error("Failed to load snapshot", error=str(e), workflow_id=workflow_id)

        return None

    async def list_interrupted(self) -> List[WorkflowSnapshot]:
        """Top-level runs that were still running when they were last saved."""
        if not self.db_session:
            return [
                s for s in self._snapshots.values()
                if s.status == WorkflowStatus.RUNNING.value and s.parent_id is None
            ]

        try:
            result = await self.db_session.execute(
                text("""
                    SELECT state_data FROM workflow_states
                    WHERE status = :status AND parent_id IS NULL
                    ORDER BY updated_at ASC
                """),
                {"status": WorkflowStatus.RUNNING.value},
            )
            return [WorkflowSnapshot.from_dict(json.loads(row[0])) for row in result.fetchall()]
        except Exception as e:
            logger.error("Failed to scan interrupted workflows", error=str(e))
            return []
