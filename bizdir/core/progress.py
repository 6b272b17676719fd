"""In-process broadcaster for the state of the running ingestion batch."""

from __future__ import annotations

import logging
import threading
from dataclasses import replace
from typing import Callable, List, Optional

from bizdir.models import ProgressState

logger = logging.getLogger(__name__)

Subscriber = Callable[[ProgressState], None]


class _Subscription:
    """One registered callback plus the version of the last state it saw."""

    def __init__(self, callback: Subscriber) -> None:
        self.callback = callback
        self._lock = threading.RLock()
        self._last_version = -1

    def deliver(self, version: int, state: ProgressState) -> None:
        # A state older than one already delivered is dropped, never replayed.
        with self._lock:
            if version <= self._last_version:
                return
            self._last_version = version
            try:
                self.callback(state)
            except Exception:  # noqa: BLE001
                logger.exception("Progress subscriber %r failed", self.callback)


class ProgressTracker:
    """Single-writer, multi-reader holder of the current ProgressState.

    Subscribers are called synchronously, in subscription order, after every
    mutation. A subscriber registered mid-batch immediately receives the
    current state. Every state carries a version, and each subscriber only
    ever sees versions in increasing order, so a catch-up racing a mutation
    cannot arrive after the newer state. One batch is tracked at a time;
    ``start_batch`` overwrites whatever was in flight.
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._subscribers: List[_Subscription] = []
        self._state: Optional[ProgressState] = None
        self._version = 0

    @property
    def current(self) -> Optional[ProgressState]:
        with self._lock:
            return self._state

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        subscription = _Subscription(callback)
        with self._lock:
            self._subscribers.append(subscription)
            state, version = self._state, self._version
        if state is not None:
            subscription.deliver(version, state)

        def unsubscribe() -> None:
            with self._lock:
                if subscription in self._subscribers:
                    self._subscribers.remove(subscription)

        return unsubscribe

    def update(self, **changes) -> ProgressState:
        return self._mutate(lambda state: replace(state, **changes))

    def _mutate(self, change: Callable[[ProgressState], ProgressState]) -> ProgressState:
        # Delivery happens outside the lock so a slow subscriber never blocks readers.
        with self._lock:
            self._state = change(self._state or ProgressState())
            self._version += 1
            state, version = self._state, self._version
            subscribers = list(self._subscribers)
        for subscription in subscribers:
            subscription.deliver(version, state)
        return state

    def start_batch(self, batch_number: int, total_businesses: int = 0) -> ProgressState:
        with self._lock:
            self._state = None
        return self.update(
            batch_number=batch_number,
            total_businesses=total_businesses,
            current_business_index=0,
            current_business_name="",
            status="processing",
            logos_added=0,
            photos_added=0,
            errors=(),
            current_step=None,
        )

    def set_total(self, total_businesses: int) -> ProgressState:
        return self.update(total_businesses=total_businesses)

    def update_business(self, index: int, name: str, step: Optional[str] = None) -> ProgressState:
        return self.update(
            current_business_index=index,
            current_business_name=name,
            current_step=step,
            status="processing",
        )

    def mark(self, status: str, step: Optional[str] = None) -> ProgressState:
        changes = {"status": status}
        if step is not None:
            changes["current_step"] = step
        return self.update(**changes)

    def add_success(self, logo_added: bool, photos_added: int) -> ProgressState:
        return self._mutate(
            lambda state: replace(
                state,
                status="success",
                logos_added=state.logos_added + (1 if logo_added else 0),
                photos_added=state.photos_added + photos_added,
            )
        )

    def add_error(self, name: str, message: str) -> ProgressState:
        return self._mutate(
            lambda state: replace(state, status="failed", errors=state.errors + (f"{name}: {message}",))
        )

    def complete_batch(self) -> ProgressState:
        return self.update(status="completed", current_step=None)

    def reset(self) -> None:
        with self._lock:
            self._state = None
            self._subscribers = []
