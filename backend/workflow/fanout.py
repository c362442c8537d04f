"""Target fan-out for nested workflow steps.

A step with a ``target`` runs its nested workflow once per target. Targets
are admitted in order onto a pool of ``width`` workers fed from a queue;
results come back in target order regardless of completion order.

Failure policy: after the first failure no further targets are admitted,
already-running targets finish, and the first failure is raised.
Cancelling the fan-out cancels every running target.
"""

import asyncio
import re
from typing import Any, Awaitable, Callable, Optional

import structlog

from core.constants import CHILDREN_TARGET
from core.exceptions import StepExecutionFailure
from entities.base import Entity
from workflow.concurrency import ConcurrencyExpression, parse_concurrency
from workflow.expressions import unwrap

logger = structlog.get_logger(__name__)

_RANGE_RE = re.compile(r"^\s*(-?\d+)\s*\.\.\s*(-?\d+)\s*$")

RunTarget = Callable[[Any, int], Awaitable[Any]]


def expand_targets(target: Any, entity: Optional[Entity]) -> list:
    """Turn a resolved ``target`` into the list of targets.

    Accepts ``children``, an inclusive integer range ``a..b``, a list, a
    single entity or a single value.
    """
    target = unwrap(target)
    if isinstance(target, str):
        text = target.strip()
        if text == CHILDREN_TARGET:
            if entity is None:
                raise StepExecutionFailure("Target 'children' requires an entity")
            return list(entity.get_children())
        match = _RANGE_RE.match(text)
        if match:
            start, end = int(match.group(1)), int(match.group(2))
            step = 1 if end >= start else -1
            return list(range(start, end + step, step))
        return [target]
    if isinstance(target, (list, tuple)):
        return [unwrap(item) for item in target]
    if isinstance(target, (set, frozenset)):
        return sorted(target, key=str)
    if target is None:
        return []
    return [target]


def resolve_width(concurrency: Any, total: int) -> int:
    """Worker count for ``total`` targets; no concurrency means all at once."""
    if total <= 0:
        return 0
    if concurrency is None:
        return total
    if not isinstance(concurrency, ConcurrencyExpression):
        concurrency = parse_concurrency(concurrency)
    return concurrency.width(total)


class TargetScheduler:
    """Runs one nested execution per target with bounded concurrency.

    Args:
        targets: Targets in the order they are admitted
        width: Maximum number of executions active at once
        run_target: Coroutine function ``(target, index) -> output``
        label: Name used in log events
    """

    def __init__(self, targets: list, width: int, run_target: RunTarget, label: str = "fan-out"):
        self.targets = list(targets)
        self.width = max(1, min(width, len(self.targets))) if self.targets else 0
        self.run_target = run_target
        self.label = label
        self.active = 0
        self.max_active = 0

    async def run(self) -> list:
        """Run every target and return outputs in target order."""
        if not self.targets:
            logger.debug("fanout_empty", step=self.label)
            return []

        queue: asyncio.Queue[int] = asyncio.Queue()
        for index in range(len(self.targets)):
            queue.put_nowait(index)

        results: list[Any] = [None] * len(self.targets)
        failures: list[BaseException] = []

        logger.debug("fanout_starting", step=self.label, targets=len(self.targets), width=self.width)

        async def _worker() -> None:
            while not failures:
                try:
                    index = queue.get_nowait()
                except asyncio.QueueEmpty:
                    return
                self.active += 1
                self.max_active = max(self.max_active, self.active)
                try:
                    results[index] = await self.run_target(self.targets[index], index)
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    if not failures:
                        logger.info("fanout_target_failed", step=self.label, index=index, error=str(e))
                    failures.append(e)
                finally:
                    self.active -= 1

        workers = [asyncio.ensure_future(_worker()) for _ in range(self.width)]
        try:
            await asyncio.gather(*workers)
        except BaseException:
            for worker in workers:
                worker.cancel()
            await asyncio.gather(*workers, return_exceptions=True)
            raise

        if failures:
            raise failures[0]

        logger.debug("fanout_completed", step=self.label, targets=len(self.targets))
        return results


async def run_fanout(
    target: Any,
    concurrency: Any,
    entity: Optional[Entity],
    run_target: RunTarget,
    label: str = "fan-out",
) -> list:
    """Expand ``target``, size the pool from ``concurrency`` and run it."""
    targets = expand_targets(target, entity)
    width = resolve_width(concurrency, len(targets))
    return await TargetScheduler(targets, width, run_target, label).run()
