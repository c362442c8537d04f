"""In-memory entity used for embedding the engine and for tests."""

import asyncio
import inspect
from typing import Any, Awaitable, Callable, Optional

import structlog

from core.utils import generate_id
from entities.base import AttributeCallback, Entity

logger = structlog.get_logger(__name__)

ActionHandler = Callable[[Entity, dict], Awaitable[Any]]


def is_ready(value: Any) -> bool:
    """An attribute is ready once it holds a non-null, non-empty value."""
    if value is None or value is False:
        return False
    if isinstance(value, (str, list, dict)) and len(value) == 0:
        return False
    return True


class BasicEntity(Entity):
    """Entity keeping attributes, config and actions in dictionaries."""

    def __init__(
        self,
        display_name: Optional[str] = None,
        entity_id: Optional[str] = None,
        parent: Optional["BasicEntity"] = None,
        config: Optional[dict] = None,
        attributes: Optional[dict] = None,
    ):
        self.entity_id = entity_id or generate_id()
        self.display_name = display_name or self.entity_id
        self._parent = parent
        self._children: list[BasicEntity] = []
        self._attributes: dict[str, Any] = dict(attributes or {})
        self._config: dict[str, Any] = dict(config or {})
        self._actions: dict[str, ActionHandler] = {}
        self._waiters: dict[str, list[asyncio.Future]] = {}
        self._subscribers: dict[int, tuple[str, AttributeCallback]] = {}
        self._next_handle = 0
        self._background: set[asyncio.Task] = set()
        if parent is not None:
            parent._children.append(self)

    @property
    def parent(self) -> Optional["BasicEntity"]:
        return self._parent

    def get_children(self) -> list["BasicEntity"]:
        return list(self._children)

    def add_child(self, display_name: Optional[str] = None, **kwargs) -> "BasicEntity":
        """Create and attach a child entity."""
        return BasicEntity(display_name=display_name, parent=self, **kwargs)

    # ─── Attributes ────────────────────────────────────────────

    def has_attribute(self, name: str) -> bool:
        return name in self._attributes

    def get_attribute(self, name: str, default: Any = None) -> Any:
        return self._attributes.get(name, default)

    async def attribute_when_ready(self, name: str, timeout: Optional[float] = None) -> Any:
        current = self._attributes.get(name)
        if is_ready(current):
            return current

        future = asyncio.get_running_loop().create_future()
        self._waiters.setdefault(name, []).append(future)
        try:
            return await asyncio.wait_for(future, timeout=timeout)
        finally:
            waiters = self._waiters.get(name, [])
            if future in waiters:
                waiters.remove(future)
            if not waiters:
                self._waiters.pop(name, None)

    def set_attribute(self, name: str, value: Any) -> None:
        self._attributes[name] = value
        logger.debug("attribute_set", entity=self.entity_id, attribute=name)

        if is_ready(value):
            for future in self._waiters.pop(name, []):
                if not future.done():
                    future.set_result(value)

        for attribute, callback in list(self._subscribers.values()):
            if attribute != name:
                continue
            result = callback(name, value)
            if inspect.isawaitable(result):
                task = asyncio.ensure_future(result)
                self._background.add(task)
                task.add_done_callback(self._background.discard)

    def clear_attribute(self, name: str) -> None:
        self._attributes.pop(name, None)

    def subscribe(self, name: str, callback: AttributeCallback) -> int:
        self._next_handle += 1
        self._subscribers[self._next_handle] = (name, callback)
        return self._next_handle

    def unsubscribe(self, handle: int) -> None:
        self._subscribers.pop(handle, None)

    # ─── Config ────────────────────────────────────────────────

    def has_config(self, name: str) -> bool:
        node: Optional[BasicEntity] = self
        while node is not None:
            if name in node._config:
                return True
            node = node._parent
        return False

    def get_config(self, name: str, default: Any = None) -> Any:
        node: Optional[BasicEntity] = self
        while node is not None:
            if name in node._config:
                return node._config[name]
            node = node._parent
        return default

    def set_config(self, name: str, value: Any) -> None:
        self._config[name] = value

    # ─── Actions ───────────────────────────────────────────────

    def add_action(self, name: str, handler: ActionHandler) -> None:
        """Register an action; ``handler(entity, params)`` is awaited on invocation."""
        self._actions[name] = handler

    def has_action(self, name: str) -> bool:
        return name in self._actions

    def invoke_action(self, name: str, params: Optional[dict] = None) -> asyncio.Task:
        handler = self._actions.get(name)
        if handler is None:
            raise KeyError(f"No action '{name}' on entity {self.entity_id}")
        logger.info("action_invoked", entity=self.entity_id, action=name)
        return asyncio.ensure_future(handler(self, dict(params or {})))

    def as_named_fields(self) -> dict[str, Any]:
        fields = super().as_named_fields()
        fields["attributes"] = dict(self._attributes)
        return fields
