"""Typed publish/subscribe primitive used by every stateful component."""

from __future__ import annotations

import itertools
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Generic, List, Mapping, Optional, Tuple, TypeVar, Union

logger = logging.getLogger(__name__)

K = TypeVar("K", bound=Enum)

Handler = Callable[[Any], None]
PayloadType = Union[type, Tuple[type, ...]]

_subscription_ids = itertools.count(1)


@dataclass(frozen=True)
class Subscription:
    """Handle returned by subscribe(); pass it to unsubscribe()."""
    event: Enum
    handler: Handler
    id: int = field(default_factory=lambda: next(_subscription_ids))


class EventDispatcher(Generic[K]):
    """
    Dispatches payloads to subscribers keyed by a closed enum of events.

    The dispatcher is built with a table mapping each event key to the payload
    type it carries, so a payload can never cross event keys. Handlers run
    synchronously, in subscription order; a failing handler is logged and does
    not affect the others or the emitter.
    """

    def __init__(self, payload_types: Mapping[K, PayloadType], name: str = "events"):
        self._payload_types: Dict[K, PayloadType] = dict(payload_types)
        self._name = name
        self._listeners: Dict[K, List[Subscription]] = {}

    def subscribe(self, event: K, handler: Handler) -> Subscription:
        self._check_event(event)
        subscription = Subscription(event=event, handler=handler)
        self._listeners.setdefault(event, []).append(subscription)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        subscriptions = self._listeners.get(subscription.event)  # type: ignore[call-overload]
        if not subscriptions:
            return
        try:
            subscriptions.remove(subscription)
        except ValueError:
            return
        if not subscriptions:
            del self._listeners[subscription.event]  # type: ignore[arg-type]

    def once(self, event: K, handler: Handler) -> Subscription:
        """Subscribe a handler that removes itself before its first call."""
        subscription: Optional[Subscription] = None

        def _once(payload: Any) -> None:
            if subscription is not None:
                self.unsubscribe(subscription)
            handler(payload)

        subscription = self.subscribe(event, _once)
        return subscription

    def emit(self, event: K, payload: Any = None) -> None:
        self._check_event(event)
        expected = self._payload_types[event]
        if not isinstance(payload, expected):
            raise TypeError(
                f"{self._name}: payload for {event.name} must be {_type_name(expected)}, "
                f"got {type(payload).__name__}"
            )

        # Snapshot so handlers may (un)subscribe while we iterate
        for subscription in list(self._listeners.get(event, ())):
            try:
                subscription.handler(payload)
            except Exception:
                logger.exception(f"Error in {self._name} handler for {event.name}")

    def remove_all_listeners(self, event: Optional[K] = None) -> None:
        if event is None:
            self._listeners.clear()
        else:
            self._listeners.pop(event, None)

    def listener_count(self, event: Optional[K] = None) -> int:
        if event is None:
            return sum(len(subscriptions) for subscriptions in self._listeners.values())
        return len(self._listeners.get(event, ()))

    def _check_event(self, event: K) -> None:
        if event not in self._payload_types:
            raise TypeError(f"{self._name}: unknown event {event!r}")


def _type_name(expected: PayloadType) -> str:
    if isinstance(expected, tuple):
        return " | ".join(t.__name__ for t in expected)
    return expected.__name__
