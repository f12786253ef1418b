"""Events pushed from the engine to the presentation layer."""

from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import Callable, Union

from sqlview.shared.logging import Logger, get_logger

from .types import TransactionState


@dataclass(frozen=True, slots=True)
class SchemaChanged:
    connection_id: str
    version: int | None = None


@dataclass(frozen=True, slots=True)
class CursorClosed:
    cursor_handle: str
    reason: str  # client, connection_closed, cancelled, idle_timeout, error


@dataclass(frozen=True, slots=True)
class TransactionStateChanged:
    connection_id: str
    new_state: TransactionState
    reason: str | None = None


Event = Union[SchemaChanged, CursorClosed, TransactionStateChanged]
Subscriber = Callable[[Event], None]


class EventBus:
    """Fan events out to subscribers; safe to publish from any thread."""

    def __init__(self, logger: Logger | None = None) -> None:
        self._subscribers: list[Subscriber] = []
        self._lock = threading.Lock()
        self._logger = logger or get_logger()

    def subscribe(self, subscriber: Subscriber) -> Callable[[], None]:
        """Register ``subscriber``; the returned callable removes it again."""
        with self._lock:
            self._subscribers.append(subscriber)

        def _unsubscribe() -> None:
            with self._lock:
                if subscriber in self._subscribers:
                    self._subscribers.remove(subscriber)

        return _unsubscribe

    def publish(self, event: Event) -> None:
        with self._lock:
            subscribers = list(self._subscribers)
        for subscriber in subscribers:
            try:
                subscriber(event)
            except Exception as exc:  # logged, never propagated
                self._logger.error(f"Event subscriber failed on {type(event).__name__}: {exc}")
