import threading

from werkverdeling.engine.errors import PlanningCancelled


class CancellationToken:
    """Cooperative cancellation for an in-flight planning run."""

    def __init__(self):
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise PlanningCancelled("planning run cancelled")
