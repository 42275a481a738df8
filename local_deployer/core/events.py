"""
Domain event system for loose coupling between the supervisor and its callers.

The supervisor publishes lifecycle events through an ``EventDispatcher``;
callers register handlers to consume a stream of status changes instead of
polling. Handlers may be sync or async.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Set, Type

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# =============================================================================
# Base Event Classes
# =============================================================================

@dataclass
class DomainEvent:
    """Base class for all domain events."""
    timestamp: datetime = field(default_factory=_utcnow)

    @property
    def event_type(self) -> str:
        """Return the event type name."""
        return self.__class__.__name__


# =============================================================================
# Deployment Events
# =============================================================================

@dataclass
class DeploymentStateChangedEvent(DomainEvent):
    """Emitted when a deployment moves to a new state."""
    instance_id: str = None
    app_name: str = None
    old_state: Optional[str] = None
    new_state: str = None
    reason: Optional[str] = None


@dataclass
class DeploymentHealthChangedEvent(DomainEvent):
    """Emitted when the health probe result of a running deployment flips."""
    instance_id: str = None
    healthy: bool = False
    status_code: Optional[int] = None


# =============================================================================
# Event Dispatcher
# =============================================================================

class EventDispatcher:
    """
    Simple in-process event dispatcher.

    Handlers are registered per event type and called in registration order
    when events are dispatched. A failing handler is logged and skipped.
    """

    def __init__(self):
        self._handlers: Dict[Type[DomainEvent], List[Callable]] = {}
        # Async handler runs scheduled by dispatch, kept until they finish
        self._pending: Set[asyncio.Task] = set()

    def register(
        self,
        event_type: Type[DomainEvent],
        handler: Callable[[DomainEvent], Any],
    ) -> None:
        """
        Register a handler for an event type.

        Args:
            event_type: The event class to handle
            handler: Callable that takes the event as argument
        """
        if event_type not in self._handlers:
            self._handlers[event_type] = []
        self._handlers[event_type].append(handler)
        logger.debug(f"Registered handler {_name(handler)} for {event_type.__name__}")

    def unregister(
        self,
        event_type: Type[DomainEvent],
        handler: Callable[[DomainEvent], Any],
    ) -> None:
        """Unregister a handler for an event type."""
        if event_type in self._handlers:
            self._handlers[event_type] = [
                h for h in self._handlers[event_type] if h != handler
            ]

    def dispatch(self, event: DomainEvent) -> None:
        """
        Dispatch an event to all registered handlers.

        Coroutines returned by async handlers are scheduled on the running
        loop when there is one.
        """
        event_type = type(event)
        handlers = self._handlers.get(event_type, [])

        logger.debug(f"Dispatching {event_type.__name__} to {len(handlers)} handlers")

        for handler in handlers:
            try:
                result = handler(event)
                if asyncio.iscoroutine(result):
                    task = asyncio.get_running_loop().create_task(result)
                    self._pending.add(task)
                    task.add_done_callback(
                        lambda t, h=handler: self._on_handler_done(t, h, event_type)
                    )
            except Exception as e:
                logger.error(
                    f"Handler {_name(handler)} failed for {event_type.__name__}: {e}"
                )

    def _on_handler_done(self, task: asyncio.Task, handler: Callable, event_type: Type[DomainEvent]) -> None:
        self._pending.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(f"Handler {_name(handler)} failed for {event_type.__name__}: {exc}")

    async def dispatch_async(self, event: DomainEvent) -> None:
        """
        Dispatch an event to all registered handlers, awaiting async ones.

        Args:
            event: The event to dispatch
        """
        event_type = type(event)
        handlers = self._handlers.get(event_type, [])

        logger.debug(f"Dispatching {event_type.__name__} to {len(handlers)} handlers (async)")

        for handler in handlers:
            try:
                result = handler(event)
                if asyncio.iscoroutine(result):
                    await result
            except Exception as e:
                logger.error(
                    f"Handler {_name(handler)} failed for {event_type.__name__}: {e}"
                )

    def clear(self) -> None:
        """Clear all registered handlers."""
        self._handlers.clear()


def _name(handler: Callable) -> str:
    return getattr(handler, "__name__", repr(handler))
