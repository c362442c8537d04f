"""Trigger Manager — central orchestrator for all trigger types.

The TriggerManager is a singleton that:
1. Registers trigger handlers for each trigger type
2. Starts and stops triggers on behalf of workflow initializers
3. Gates each firing with the trigger's optional condition
4. Skips a firing while the previous run of the same trigger group is active
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Optional

from core.exceptions import WorkflowError
from entities.base import Entity
from triggers.base import (
    BaseTriggerHandler,
    TriggerEvent,
    TriggerResult,
    TriggerTypeEnum,
)
from triggers.handlers.period import PeriodTriggerHandler
from triggers.handlers.sensor import SensorTriggerHandler
from workflow.conditions import ConditionEvaluator, validate_condition
from workflow.expressions import EntityLayer, ExpressionResolver, LazyMappingLayer, Scope

logger = logging.getLogger(__name__)

EventCallback = Callable[[TriggerEvent], Awaitable[Any]]


class TriggerManager:
    """Central manager for all workflow triggers.

    Singleton pattern — use get_trigger_manager() to access.
    """

    def __init__(self):
        self._handlers: dict[str, BaseTriggerHandler] = {}
        self._active_triggers: dict[str, dict] = {}  # trigger_id -> {type, config, callback, entity, condition, group}
        self._runs: dict[str, asyncio.Task] = {}  # group -> latest run

        # Register built-in handlers
        self._register_builtin_handlers()

    def _register_builtin_handlers(self):
        """Register all built-in trigger type handlers."""
        self.register_handler(PeriodTriggerHandler())
        self.register_handler(SensorTriggerHandler())

    def register_handler(self, handler: BaseTriggerHandler) -> None:
        """Register a trigger type handler."""
        handler.set_fire_callback(self.fire_trigger)
        self._handlers[handler.trigger_type.value] = handler
        logger.info("Registered trigger handler: %s", handler.trigger_type.value)

    async def start_trigger(
        self,
        trigger_id: str,
        trigger_type: str,
        config: dict,
        callback: EventCallback,
        entity: Optional[Entity] = None,
        condition: Any = None,
        group: Optional[str] = None,
    ) -> TriggerResult:
        """Start a trigger — begin listening for events.

        Args:
            trigger_id: Unique id of the trigger
            trigger_type: Type string (must match a registered handler)
            config: Type-specific configuration
            callback: Awaited with a TriggerEvent on each admitted firing
            entity: Entity the condition is evaluated against
            condition: Optional condition gating each firing
            group: Triggers sharing a group never run concurrently (default: the trigger id)

        Returns:
            TriggerResult
        """
        handler = self._handlers.get(str(trigger_type))
        if not handler:
            return TriggerResult(
                success=False,
                message=f"Unknown trigger type: {trigger_type}",
                trigger_id=trigger_id,
                error=f"No handler registered for type '{trigger_type}'",
            )

        if condition is not None:
            try:
                validate_condition(condition)
            except WorkflowError as e:
                return TriggerResult(
                    success=False,
                    message=f"Invalid condition: {e.message}",
                    trigger_id=trigger_id,
                    error=e.message,
                )

        # Registered before the handler starts so an immediate firing finds it
        self._active_triggers[trigger_id] = {
            "type": str(trigger_type),
            "config": config,
            "callback": callback,
            "entity": entity,
            "condition": condition,
            "group": group or trigger_id,
            "started_at": datetime.now(timezone.utc).isoformat(),
        }
        result = await handler.start(trigger_id, config)
        if not result.success:
            self._active_triggers.pop(trigger_id, None)
            return result

        logger.info("Trigger started: %s (%s)", trigger_id, trigger_type)
        return result

    async def stop_trigger(self, trigger_id: str) -> TriggerResult:
        """Stop a trigger — stop listening for events.

        A run already in progress is left to finish.
        """
        info = self._active_triggers.pop(trigger_id, None)
        if not info:
            return TriggerResult(
                success=False,
                message="Trigger not active",
                trigger_id=trigger_id,
            )

        handler = self._handlers.get(info["type"])
        result = await handler.stop(trigger_id)
        logger.info("Trigger stopped: %s", trigger_id)
        return result

    async def stop_all(self) -> None:
        for trigger_id in list(self._active_triggers):
            await self.stop_trigger(trigger_id)

    async def test_trigger(self, trigger_type: str, config: dict) -> TriggerResult:
        """Test a trigger configuration without starting it."""
        handler = self._handlers.get(str(trigger_type))
        if not handler:
            return TriggerResult(
                success=False,
                message=f"Unknown trigger type: {trigger_type}",
                trigger_id="test",
            )
        return await handler.test(config)

    async def fire_trigger(self, trigger_id: str, payload: Optional[dict] = None) -> TriggerResult:
        """Fire a trigger — check its condition and start its callback.

        The callback runs in the background; the result says whether the
        firing was admitted.
        """
        info = self._active_triggers.get(trigger_id)
        if not info:
            return TriggerResult(
                success=False,
                message="Trigger not active",
                trigger_id=trigger_id,
            )

        if info["condition"] is not None:
            try:
                holds = await self._condition_holds(info)
            except WorkflowError as e:
                logger.warning("Trigger condition failed: %s: %s", trigger_id, e.message)
                return TriggerResult(
                    success=False,
                    message=f"Condition failed: {e.message}",
                    trigger_id=trigger_id,
                    error=e.message,
                )
            if not holds:
                logger.debug("Trigger condition not met: %s", trigger_id)
                return TriggerResult(success=False, message="Condition not met", trigger_id=trigger_id)

        group = info["group"]
        running = self._runs.get(group)
        if running is not None and not running.done():
            logger.info("Trigger skipped, previous run still active: %s", trigger_id)
            return TriggerResult(success=False, message="Previous run still active", trigger_id=trigger_id)

        entity = info["entity"]
        event = TriggerEvent(
            trigger_id=trigger_id,
            trigger_type=info["type"],
            entity_id=entity.entity_id if entity is not None else None,
            payload=payload or {},
        )
        self._runs[group] = asyncio.create_task(
            self._dispatch(info["callback"], event), name=f"trigger-{trigger_id}"
        )
        logger.info("Trigger fired: %s", trigger_id)
        return TriggerResult(success=True, message="Trigger fired successfully", trigger_id=trigger_id)

    async def _dispatch(self, callback: EventCallback, event: TriggerEvent) -> Any:
        try:
            return await callback(event)
        except WorkflowError as e:
            logger.error("Triggered workflow failed: %s: %s", event.trigger_id, e.message)
        except Exception as e:
            logger.error("Trigger callback failed: %s: %s", event.trigger_id, e, exc_info=True)
        return None

    @staticmethod
    async def _condition_holds(info: dict) -> bool:
        entity = info["entity"]
        scope = Scope([
            LazyMappingLayer({"entity": lambda: entity}),
            EntityLayer(entity),
        ])
        evaluator = ConditionEvaluator(ExpressionResolver(scope), entity)
        return await evaluator.evaluate(info["condition"])

    def get_active_run(self, group: str) -> Optional[asyncio.Task]:
        """Latest run started for a trigger group, finished or not."""
        return self._runs.get(group)

    def get_status(self) -> dict[str, Any]:
        """Get trigger manager status."""
        return {
            "registered_handlers": list(self._handlers.keys()),
            "active_triggers": len(self._active_triggers),
            "triggers": {
                tid: {
                    "type": info["type"],
                    "group": info["group"],
                    "started_at": info["started_at"],
                }
                for tid, info in self._active_triggers.items()
            },
        }


# -- Singleton --

_trigger_manager: Optional[TriggerManager] = None


def get_trigger_manager() -> TriggerManager:
    """Get or create the singleton TriggerManager."""
    global _trigger_manager
    if _trigger_manager is None:
        _trigger_manager = TriggerManager()
    return _trigger_manager
