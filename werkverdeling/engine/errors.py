"""
Error taxonomy for planning runs.

Infeasibility, capacity shortfalls and exhausted search budgets are outcomes,
not failures: they are returned as records on the Assignment so callers can
decide to relax constraints or leave work unfilled. Only conditions that
require the caller to act before anything can proceed are raised.
"""

from dataclasses import dataclass
from typing import Optional, Tuple


@dataclass(frozen=True)
class InfeasibleTask:
    """No worker combination satisfies the hard constraints for this task."""

    task_id: str
    missing: int
    blocking: Tuple[str, ...]
    detail: str = ""

    @property
    def code(self) -> str:
        return "infeasible_task"


@dataclass(frozen=True)
class OverCapacity:
    """An aggregate hard limit cannot be met for any combination of workers."""

    task_id: Optional[str]
    demand: float
    capacity: float
    blocking: Tuple[str, ...] = ("max_load",)
    detail: str = ""

    @property
    def code(self) -> str:
        return "over_capacity"


@dataclass(frozen=True)
class BudgetExceeded:
    """Search stopped by its iteration or time limit; the result is best-effort."""

    phase: str
    limit: str
    detail: str = ""

    @property
    def code(self) -> str:
        return "budget_exceeded"


class WerkverdelingError(Exception):
    pass


class StaleSnapshotError(WerkverdelingError):
    """Commit rejected because the store moved past the snapshot version."""

    def __init__(self, expected_version: int, actual_version: Optional[int] = None):
        self.expected_version = expected_version
        self.actual_version = actual_version
        super().__init__(
            f"snapshot version {expected_version} is stale"
            + (f" (store is at {actual_version})" if actual_version is not None else "")
        )


class PlanningCancelled(WerkverdelingError):
    pass


class UnknownEntityError(WerkverdelingError, KeyError):
    def __init__(self, kind: str, entity_id: str):
        self.kind = kind
        self.entity_id = entity_id
        super().__init__(f"unknown {kind}: {entity_id}")

    def __str__(self) -> str:
        return self.args[0]
