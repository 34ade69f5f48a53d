"""Observable device state consumed by the view layer."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Generic, TypeVar

from drivesense.domains.driving.models import HealthSnapshot, RiskAssessment

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ObservableValue(Generic[T]):
    """A value holder that notifies subscribers on every assignment."""

    def __init__(self, initial: T) -> None:
        self._value = initial
        self._subscribers: list[Callable[[T], None]] = []

    @property
    def value(self) -> T:
        return self._value

    def set(self, value: T) -> None:
        self._value = value
        for callback in list(self._subscribers):
            try:
                callback(value)
            except Exception:
                logger.exception("State subscriber %r failed", callback)

    def subscribe(self, callback: Callable[[T], None]) -> Callable[[], None]:
        """Register ``callback``; returns a function that unsubscribes it."""
        self._subscribers.append(callback)

        def _unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return _unsubscribe


@dataclass
class DeviceState:
    """Latest snapshot, link connectivity and latest assessment on one device."""

    latest_snapshot: ObservableValue[HealthSnapshot | None] = field(
        default_factory=lambda: ObservableValue(None)
    )
    connectivity: ObservableValue[bool] = field(
        default_factory=lambda: ObservableValue(False)
    )
    latest_assessment: ObservableValue[RiskAssessment | None] = field(
        default_factory=lambda: ObservableValue(None)
    )
