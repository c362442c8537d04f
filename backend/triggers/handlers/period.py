"""Period trigger handler.

Fires a trigger repeatedly at a fixed interval from an asyncio loop.
"""

import asyncio
import logging
from typing import Optional

from core.utils import parse_duration
from triggers.base import BaseTriggerHandler, TriggerResult, TriggerTypeEnum

logger = logging.getLogger(__name__)


class PeriodTriggerHandler(BaseTriggerHandler):
    """Handler for fixed-interval triggers.

    Config schema:
        {
            "period": "2s",        # duration text or seconds
        }
    """

    trigger_type = TriggerTypeEnum.PERIOD

    def __init__(self):
        super().__init__()
        self._loops: dict[str, asyncio.Task] = {}

    async def start(self, trigger_id: str, config: dict) -> TriggerResult:
        """Start the interval loop."""
        is_valid, error = self.validate_config(config)
        if not is_valid:
            return TriggerResult(
                success=False,
                message=f"Invalid config: {error}",
                trigger_id=trigger_id,
                error=error,
            )

        period = parse_duration(config["period"])
        await self.stop(trigger_id)
        self._loops[trigger_id] = asyncio.create_task(
            self._run_loop(trigger_id, period), name=f"period-trigger-{trigger_id}"
        )
        logger.info("Started period trigger %s every %ss", trigger_id, period)
        return TriggerResult(
            success=True,
            message=f"Period trigger every {period}s",
            trigger_id=trigger_id,
        )

    async def _run_loop(self, trigger_id: str, period: float) -> None:
        while True:
            await asyncio.sleep(period)
            await self.fire(trigger_id, {"reason": "period"})

    async def stop(self, trigger_id: str) -> TriggerResult:
        """Cancel the interval loop."""
        task = self._loops.pop(trigger_id, None)
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
            logger.info("Stopped period trigger %s", trigger_id)
        return TriggerResult(success=True, message="Period trigger stopped", trigger_id=trigger_id)

    def validate_config(self, config: dict) -> tuple[bool, Optional[str]]:
        if not isinstance(config, dict):
            return False, "Config must be a dict"
        if config.get("period") is None:
            return False, "Missing required field: period"
        try:
            period = parse_duration(config["period"])
        except ValueError as exc:
            return False, f"Invalid period: {exc}"
        if period is None or period <= 0:
            return False, "Period must be positive"
        return True, None
