"""Entity (managed resource) interface consumed by the workflow engine.

Workflows read attributes (sensors) and config, walk the parent/child
hierarchy, publish attributes and invoke actions (effectors) through
this interface. Implementations decide how state is stored.
"""

import asyncio
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Optional, Union

AttributeCallback = Callable[[str, Any], Union[None, Awaitable[None]]]


class Entity(ABC):
    """A managed unit with attributes, config, actions and children."""

    entity_id: str
    display_name: str

    @property
    @abstractmethod
    def parent(self) -> Optional["Entity"]:
        """Parent entity, or None at the root."""

    @property
    def application(self) -> "Entity":
        """Root of this entity's hierarchy."""
        node = self
        while node.parent is not None:
            node = node.parent
        return node

    @abstractmethod
    def get_children(self) -> list["Entity"]:
        """Direct child entities, in creation order."""

    # ─── Attributes ────────────────────────────────────────────

    @abstractmethod
    def has_attribute(self, name: str) -> bool:
        """Check whether an attribute has been published."""

    @abstractmethod
    def get_attribute(self, name: str, default: Any = None) -> Any:
        """Current attribute value without waiting."""

    @abstractmethod
    async def attribute_when_ready(self, name: str, timeout: Optional[float] = None) -> Any:
        """Wait until the attribute holds a ready value and return it.

        Raises:
            asyncio.TimeoutError: If ``timeout`` elapses first
        """

    @abstractmethod
    def set_attribute(self, name: str, value: Any) -> None:
        """Publish an attribute value."""

    @abstractmethod
    def clear_attribute(self, name: str) -> None:
        """Remove an attribute."""

    @abstractmethod
    def subscribe(self, name: str, callback: AttributeCallback) -> Any:
        """Call ``callback(name, value)`` whenever the attribute is published.

        Returns:
            Handle accepted by ``unsubscribe``
        """

    @abstractmethod
    def unsubscribe(self, handle: Any) -> None:
        """Remove a subscription."""

    # ─── Config ────────────────────────────────────────────────

    @abstractmethod
    def has_config(self, name: str) -> bool:
        """Check whether config is set here or on an ancestor."""

    @abstractmethod
    def get_config(self, name: str, default: Any = None) -> Any:
        """Config value, inherited from ancestors when unset locally."""

    @abstractmethod
    def set_config(self, name: str, value: Any) -> None:
        """Set a config value on this entity."""

    # ─── Actions ───────────────────────────────────────────────

    @abstractmethod
    def has_action(self, name: str) -> bool:
        """Check whether an action is available."""

    @abstractmethod
    def invoke_action(self, name: str, params: Optional[dict] = None) -> asyncio.Task:
        """Start an action and return the task producing its result."""

    # ─── Templating capability ─────────────────────────────────

    def as_named_fields(self) -> dict[str, Any]:
        """Fields exposed to expressions beyond the built-in entity keys."""
        return {
            "id": self.entity_id,
            "name": self.display_name,
            "display_name": self.display_name,
        }

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.entity_id}>"
