"""Base trigger classes and trigger type registry."""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Optional


class TriggerTypeEnum(str, Enum):
    """All supported trigger types."""

    PERIOD = "period"
    SENSOR = "sensor"


@dataclass
class TriggerEvent:
    """Represents a single trigger firing event.

    This is the payload passed from a trigger to the workflow it starts.
    """

    trigger_id: str
    trigger_type: str
    entity_id: Optional[str] = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    payload: dict[str, Any] = field(default_factory=dict)


@dataclass
class TriggerResult:
    """Result of a trigger operation (start/stop/test/fire)."""

    success: bool
    message: str
    trigger_id: str
    error: Optional[str] = None


FireCallback = Callable[[str, dict], Awaitable[TriggerResult]]


class BaseTriggerHandler(ABC):
    """Abstract base class for all trigger type handlers.

    Each trigger type implements this interface. The TriggerManager uses
    these handlers to start/stop/test triggers, and hands each one the
    callback it calls when a trigger fires.
    """

    trigger_type: TriggerTypeEnum

    def __init__(self):
        self._fire: Optional[FireCallback] = None

    def set_fire_callback(self, callback: FireCallback) -> None:
        self._fire = callback

    async def fire(self, trigger_id: str, payload: Optional[dict] = None) -> Optional[TriggerResult]:
        if self._fire is None:
            return None
        return await self._fire(trigger_id, payload or {})

    @abstractmethod
    async def start(self, trigger_id: str, config: dict) -> TriggerResult:
        """Start listening for this trigger.

        Args:
            trigger_id: Unique id of the trigger
            config: Type-specific configuration

        Returns:
            TriggerResult indicating success/failure
        """
        ...

    @abstractmethod
    async def stop(self, trigger_id: str) -> TriggerResult:
        """Stop listening for this trigger."""
        ...

    async def test(self, config: dict) -> TriggerResult:
        """Test trigger configuration without starting it."""
        is_valid, error = self.validate_config(config)
        if not is_valid:
            return TriggerResult(
                success=False,
                message=f"Invalid config: {error}",
                trigger_id="test",
                error=error,
            )
        return TriggerResult(success=True, message="Configuration is valid", trigger_id="test")

    def validate_config(self, config: dict) -> tuple[bool, Optional[str]]:
        """Validate trigger configuration.

        Returns:
            Tuple of (is_valid, error_message)
        """
        return True, None
