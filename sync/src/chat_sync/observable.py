from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Generic, List, TypeVar

T = TypeVar("T")

Callback = Callable[[Any], None]


@dataclass(eq=False)
class Subscription:
    source: "Signal[Any]"
    callback: Callback

    def deliver(self, value: Any) -> None:
        self.callback(value)

    def cancel(self) -> None:
        self.source.unsubscribe(self)


class Signal(Generic[T]):
    """Registers listeners and broadcasts every emitted value to them."""

    def __init__(self) -> None:
        self._subscriptions: List[Subscription] = []

    def subscribe(self, callback: Callable[[T], None]) -> Subscription:
        subscription = Subscription(source=self, callback=callback)
        self._subscriptions.append(subscription)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        try:
            self._subscriptions.remove(subscription)
        except ValueError:
            return

    def emit(self, value: T) -> None:
        for subscription in list(self._subscriptions):
            subscription.deliver(value)

    def clear(self) -> None:
        self._subscriptions.clear()


class Observable(Signal[T]):
    """A current value that notifies listeners when it changes."""

    def __init__(self, initial: T) -> None:
        super().__init__()
        self._value = initial

    @property
    def value(self) -> T:
        return self._value

    def subscribe(self, callback: Callable[[T], None], *, replay: bool = True) -> Subscription:
        subscription = super().subscribe(callback)
        if replay:
            subscription.deliver(self._value)
        return subscription

    def set(self, value: T) -> bool:
        if value == self._value:
            return False
        self._value = value
        self.emit(value)
        return True
