"""Typed deck events and a small publish/subscribe bus.

Each notification is its own frozen dataclass so handlers receive an
explicit payload instead of a name plus a loose dict.  Subscribing to a
base class (e.g. ``DeckEvent``) receives every subclass too.
"""
from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Tuple, Type, TypeVar

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class DeckEvent:
    """Base for all driver notifications."""


@dataclass(frozen=True)
class Opened(DeckEvent):
    """The deck handle was opened (initially or after a reconnect)."""


@dataclass(frozen=True)
class Closed(DeckEvent):
    """The deck was closed by the caller."""


@dataclass(frozen=True)
class Disconnected(DeckEvent):
    """The liveness poll lost the deck; a reconnect is under way."""


@dataclass(frozen=True)
class KeyStatesRefreshed(DeckEvent):
    """One input report was read and decoded."""
    states: Tuple[bool, ...]


@dataclass(frozen=True)
class KeyPressed(DeckEvent):
    key: int
    app: Optional[str] = None


@dataclass(frozen=True)
class KeyReleased(DeckEvent):
    key: int
    elapsed_ms: float = 0.0
    app: Optional[str] = None


E = TypeVar('E', bound=DeckEvent)
Handler = Callable[[E], None]


class EventBus:
    """Synchronous publish/subscribe keyed by event class.

    Handlers run on the publishing thread, in subscription order.  A
    handler that raises is logged and skipped; the rest still run.
    """

    def __init__(self) -> None:
        self._handlers: Dict[Type[DeckEvent], List[Callable]] = {}
        self._lock = threading.Lock()

    def subscribe(self, event_type: Type[E], handler: Handler) -> None:
        with self._lock:
            handlers = self._handlers.setdefault(event_type, [])
            if handler not in handlers:
                handlers.append(handler)

    def unsubscribe(self, event_type: Type[E], handler: Handler) -> None:
        with self._lock:
            handlers = self._handlers.get(event_type, [])
            if handler in handlers:
                handlers.remove(handler)

    def clear(self) -> None:
        with self._lock:
            self._handlers.clear()

    def publish(self, event: DeckEvent) -> None:
        # Snapshot so handlers may (un)subscribe while we dispatch
        with self._lock:
            targets = [
                h
                for cls in type(event).__mro__
                for h in self._handlers.get(cls, ())
            ]
        for handler in targets:
            try:
                handler(event)
            except Exception:
                log.exception("Handler %r failed on %s", handler, type(event).__name__)
