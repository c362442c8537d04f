"""Retry policies for on-error handlers.

A ``retry`` handler re-runs a failed step after a backoff delay:
- Fixed delay: ``retry backoff 5ms``
- Exponential backoff: ``retry backoff 10ms increasing 2x up to 1s``
- Linear backoff (structured form only)
- Re-entry at the workflow start or the failed step: ``retry from start``
- Bounded attempts: ``retry limit 3``; no limit means retry forever

Usage:
    strategy = RetryStrategy.from_text("from start limit 20 backoff 5ms")
    if strategy.should_retry(attempts_so_far):
        await asyncio.sleep(strategy.compute_delay(attempts_so_far + 1))
"""

import random
import re
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Optional

from core.exceptions import DefinitionError
from core.utils import parse_duration


class RetryPolicy(str, Enum):
    """Available backoff policies."""
    FIXED = "fixed"
    EXPONENTIAL = "exponential"
    LINEAR = "linear"
    NONE = "none"


class ReplayFrom(str, Enum):
    """Where execution re-enters after a retry."""
    HERE = "here"
    START = "start"


_BACKOFF_RE = re.compile(
    r"^\s*(?P<initial>[\d.]+\s*[a-z]*)"
    r"(?:\s+increasing\s+(?P<factor>[\d.]+)\s*x)?"
    r"(?:\s+up\s+to\s+(?P<cap>[\d.]+\s*[a-z]*))?\s*$",
    re.IGNORECASE,
)

_RETRY_TEXT_RE = re.compile(
    r"^\s*(?:from\s+(?P<replay>\w+))?"
    r"\s*(?:limit\s+(?P<limit>\d+))?"
    r"\s*(?:backoff\s+(?P<backoff>.+?))?\s*$",
    re.IGNORECASE,
)


@dataclass
class RetryStrategy:
    """Retry policy attached to an on-error handler."""
    policy: RetryPolicy
    limit: Optional[int] = None
    base_delay: float = 0.0
    max_delay: Optional[float] = None
    factor: float = 2.0
    jitter: bool = False
    jitter_range: float = 0.5
    replay_from: ReplayFrom = ReplayFrom.HERE

    @classmethod
    def none(cls) -> 'RetryStrategy':
        """No retries; fail immediately."""
        return cls(policy=RetryPolicy.NONE, limit=0)

    @classmethod
    def fixed(cls, limit: Optional[int] = 3, delay: float = 5.0, **kwargs) -> 'RetryStrategy':
        """Fixed delay between retries."""
        return cls(policy=RetryPolicy.FIXED, limit=limit, base_delay=delay, **kwargs)

    @classmethod
    def exponential(
        cls,
        limit: Optional[int] = 5,
        base_delay: float = 1.0,
        max_delay: Optional[float] = 60.0,
        factor: float = 2.0,
        jitter: bool = False,
        **kwargs,
    ) -> 'RetryStrategy':
        """Exponential backoff with optional jitter."""
        return cls(
            policy=RetryPolicy.EXPONENTIAL,
            limit=limit,
            base_delay=base_delay,
            max_delay=max_delay,
            factor=factor,
            jitter=jitter,
            **kwargs,
        )

    @classmethod
    def linear(
        cls,
        limit: Optional[int] = 5,
        base_delay: float = 2.0,
        max_delay: Optional[float] = 30.0,
        **kwargs,
    ) -> 'RetryStrategy':
        """Linear backoff: delay = base_delay * attempt_number."""
        return cls(
            policy=RetryPolicy.LINEAR,
            limit=limit,
            base_delay=base_delay,
            max_delay=max_delay,
            **kwargs,
        )

    @classmethod
    def parse_backoff(cls, text: Any, **kwargs) -> 'RetryStrategy':
        """Build a strategy from backoff text such as ``10ms increasing 2x up to 1s``."""
        if isinstance(text, (int, float)) and not isinstance(text, bool):
            return cls.fixed(delay=float(text), **kwargs)
        match = _BACKOFF_RE.match(str(text))
        if not match:
            raise DefinitionError(f"Invalid retry backoff '{text}'")
        try:
            initial = parse_duration(match.group("initial")) or 0.0
            cap = parse_duration(match.group("cap")) if match.group("cap") else None
        except ValueError as e:
            raise DefinitionError(f"Invalid retry backoff '{text}': {e}")
        if match.group("factor"):
            return cls.exponential(
                base_delay=initial, max_delay=cap, factor=float(match.group("factor")), **kwargs
            )
        return cls.fixed(delay=initial, max_delay=cap, **kwargs)

    @classmethod
    def from_text(cls, text: str, default_backoff: float = 0.0) -> 'RetryStrategy':
        """Parse ``[from start|here] [limit N] [backoff ...]``."""
        match = _RETRY_TEXT_RE.match(text or "")
        if not match:
            raise DefinitionError(f"Invalid retry text '{text}'")
        return cls.from_dict({
            'from': match.group('replay'),
            'limit': match.group('limit'),
            'backoff': match.group('backoff'),
        }, default_backoff=default_backoff)

    @classmethod
    def from_dict(cls, config: dict, default_backoff: float = 0.0) -> 'RetryStrategy':
        """Create strategy from a retry step's input or a persisted dict."""
        replay = config.get('from') or config.get('replay_from') or ReplayFrom.HERE.value
        try:
            replay_from = ReplayFrom(str(replay).strip().lower())
        except ValueError:
            raise DefinitionError(f"Invalid retry re-entry point '{replay}'; expected 'start' or 'here'")

        limit = config.get('limit')
        if limit is not None:
            try:
                limit = int(limit)
            except (TypeError, ValueError):
                raise DefinitionError(f"Invalid retry limit '{limit}'")

        backoff = config.get('backoff')
        if backoff is not None:
            return cls.parse_backoff(backoff, limit=limit, replay_from=replay_from)

        if 'policy' in config:
            name = str(config['policy']).strip().lower()
            if name in RETRY_PRESETS:
                preset = RETRY_PRESETS[name]
                return replace(
                    preset,
                    limit=limit if limit is not None else preset.limit,
                    replay_from=replay_from,
                )
            try:
                policy = RetryPolicy(name)
            except ValueError:
                raise DefinitionError(f"Unknown retry policy '{config['policy']}'")
            return cls(
                policy=policy,
                limit=limit,
                base_delay=config.get('base_delay', 0.0),
                max_delay=config.get('max_delay'),
                factor=config.get('factor', 2.0),
                jitter=config.get('jitter', False),
                jitter_range=config.get('jitter_range', 0.5),
                replay_from=replay_from,
            )
        return cls.fixed(limit=limit, delay=default_backoff, replay_from=replay_from)

    def to_dict(self) -> dict:
        """Serialize to dict for snapshots."""
        return {
            'policy': self.policy.value,
            'limit': self.limit,
            'base_delay': self.base_delay,
            'max_delay': self.max_delay,
            'factor': self.factor,
            'jitter': self.jitter,
            'jitter_range': self.jitter_range,
            'from': self.replay_from.value,
        }

    def compute_delay(self, attempt: int) -> float:
        """Compute the delay for a given attempt number (1-based)."""
        if self.policy == RetryPolicy.NONE:
            return 0.0

        if self.policy == RetryPolicy.FIXED:
            delay = self.base_delay
        elif self.policy == RetryPolicy.EXPONENTIAL:
            delay = self.base_delay * (self.factor ** (attempt - 1))
        elif self.policy == RetryPolicy.LINEAR:
            delay = self.base_delay * attempt
        else:
            delay = self.base_delay

        if self.max_delay is not None:
            delay = min(delay, self.max_delay)

        if self.jitter and delay > 0:
            jitter_amount = delay * self.jitter_range
            delay = delay + random.uniform(-jitter_amount, jitter_amount)
            delay = max(0.0, delay)

        return round(delay, 3)

    def should_retry(self, retries_done: int) -> bool:
        """Check whether another retry is allowed after ``retries_done`` retries."""
        if self.policy == RetryPolicy.NONE:
            return False
        return self.limit is None or retries_done < self.limit


# ─── Preset strategies ───

RETRY_PRESETS: dict[str, RetryStrategy] = {
    'none': RetryStrategy.none(),
    'conservative': RetryStrategy.exponential(limit=3, base_delay=2.0, max_delay=30.0),
    'aggressive': RetryStrategy.exponential(limit=7, base_delay=0.5, max_delay=120.0),
    'conflict': RetryStrategy.exponential(limit=20, base_delay=0.01, max_delay=1.0, jitter=True),
    'forever': RetryStrategy.fixed(limit=None, delay=1.0),
}
