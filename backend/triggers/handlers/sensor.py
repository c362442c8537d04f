"""Sensor trigger handler.

Fires a trigger whenever one of the named attributes is published on an
entity.
"""

import logging
from typing import Any, Optional

from entities.base import Entity
from triggers.base import BaseTriggerHandler, TriggerResult, TriggerTypeEnum

logger = logging.getLogger(__name__)


def normalize_sensor_triggers(triggers: Any, entity: Optional[Entity] = None) -> list[tuple[Entity, str]]:
    """Accept ``theTrigger``, ``[a, b]`` or ``[{sensor: a, entity: e}]``."""
    if triggers is None:
        return []
    if not isinstance(triggers, list):
        triggers = [triggers]

    result = []
    for item in triggers:
        target = entity
        if isinstance(item, dict):
            target = item.get("entity") or entity
            item = item.get("sensor") or item.get("name")
        if not item:
            raise ValueError("Sensor trigger needs a sensor name")
        if not isinstance(target, Entity):
            raise ValueError(f"Sensor trigger '{item}' has no entity")
        result.append((target, str(item)))
    return result


class SensorTriggerHandler(BaseTriggerHandler):
    """Handler for attribute-change triggers.

    Config schema:
        {
            "entity": <Entity>,                # entity publishing the attributes
            "triggers": "theTrigger",          # one name, a list, or {sensor, entity} items
        }
    """

    trigger_type = TriggerTypeEnum.SENSOR

    def __init__(self):
        super().__init__()
        self._subscriptions: dict[str, list[tuple[Entity, Any]]] = {}

    async def start(self, trigger_id: str, config: dict) -> TriggerResult:
        """Subscribe to the named attributes."""
        is_valid, error = self.validate_config(config)
        if not is_valid:
            return TriggerResult(
                success=False,
                message=f"Invalid config: {error}",
                trigger_id=trigger_id,
                error=error,
            )

        await self.stop(trigger_id)
        sensors = normalize_sensor_triggers(config["triggers"], config.get("entity"))

        async def _on_publish(name: str, value: Any) -> None:
            await self.fire(trigger_id, {"reason": "sensor", "sensor": name, "value": value})

        handles = []
        for entity, name in sensors:
            handles.append((entity, entity.subscribe(name, _on_publish)))
        self._subscriptions[trigger_id] = handles

        logger.info(
            "Started sensor trigger %s on %s",
            trigger_id,
            ", ".join(f"{entity.entity_id}.{name}" for entity, name in sensors),
        )
        return TriggerResult(
            success=True,
            message=f"Subscribed to {len(sensors)} sensor(s)",
            trigger_id=trigger_id,
        )

    async def stop(self, trigger_id: str) -> TriggerResult:
        """Remove the subscriptions."""
        for entity, handle in self._subscriptions.pop(trigger_id, []):
            entity.unsubscribe(handle)
        return TriggerResult(success=True, message="Sensor trigger stopped", trigger_id=trigger_id)

    def validate_config(self, config: dict) -> tuple[bool, Optional[str]]:
        if not isinstance(config, dict):
            return False, "Config must be a dict"
        if not config.get("triggers"):
            return False, "Missing required field: triggers"
        try:
            normalize_sensor_triggers(config["triggers"], config.get("entity"))
        except ValueError as exc:
            return False, str(exc)
        return True, None
