# lambdas/ingest_issues/deadline.py
import threading
from typing import Optional

from .models import AppSettings, get_settings


class DeadlineGuard:
    """
    One-shot timer that flips a flag once the processing budget is spent.

    It never interrupts work in flight. Callers poll `expired` between units of
    work, so the overshoot is bounded by the cost of one unit.
    """
    def __init__(self, budget_seconds: float):
        self.budget_seconds = max(0.0, budget_seconds)
        self._expired = threading.Event()
        self._timer: Optional[threading.Timer] = None

    @classmethod
    def for_context(cls, context, settings: Optional[AppSettings] = None) -> "DeadlineGuard":
        """Budget capped so the response still goes out before Lambda's own timeout."""
        settings = settings or get_settings()
        budget = settings.batch_deadline_seconds
        remaining_ms = getattr(context, "get_remaining_time_in_millis", None)
        if callable(remaining_ms):
            budget = min(budget, remaining_ms() / 1000.0 - settings.deadline_headroom_seconds)
        return cls(budget)

    @property
    def expired(self) -> bool:
        return self._expired.is_set()

    def trip(self):
        self._expired.set()

    def start(self) -> "DeadlineGuard":
        if self._timer is not None:
            return self
        if self.budget_seconds <= 0:
            self.trip()
            return self
        self._timer = threading.Timer(self.budget_seconds, self.trip)
        self._timer.daemon = True
        self._timer.start()
        return self

    def cancel(self):
        if self._timer is not None:
            self._timer.cancel()

    def __enter__(self) -> "DeadlineGuard":
        return self.start()

    def __exit__(self, exc_type, exc, tb):
        self.cancel()
        return False
