import math
from abc import ABC, abstractmethod
from itertools import combinations
from typing import Dict, Iterable, List, Optional

from werkverdeling.config.settings import Settings, get_settings
from werkverdeling.engine.state import AssignmentState
from werkverdeling.models.constraints import ConstraintResult, Violation
from werkverdeling.models.entities import ConstraintKind, Task, Worker

_EPS = 1e-9


class Constraint(ABC):
    """
    Abstract base class for hard and soft constraints.
    Extend this to add domain-specific constraints.

    Constraints are pure functions of (task, worker, state). ``evaluate``
    treats the task as the candidate: if the state already holds the pair it
    is ignored, so the same call scores committed pairs and candidates.
    """

    name = "constraint"
    stateless = False  # True when only the (task, worker) pair matters

    def __init__(self, kind: ConstraintKind = ConstraintKind.HARD, weight: float = 1.0, name: Optional[str] = None):
        self.kind = ConstraintKind(kind)
        self.weight = weight
        if name:
            self.name = name

    @property
    def is_hard(self) -> bool:
        return self.kind == ConstraintKind.HARD

    @abstractmethod
    def evaluate(self, task: Task, worker: Worker, state: Optional[AssignmentState]) -> ConstraintResult:
        pass

    def worker_violations(self, worker: Worker, state: AssignmentState) -> List[Violation]:
        """Violations across every task the worker holds."""
        violations = []
        for task in state.tasks_of(worker.id):
            result = self.evaluate(task, worker, state)
            if not result.satisfied:
                violations.append(self._violation(worker, task, result.penalty))
        return violations

    def _result(self, satisfied: bool, penalty: float = 0.0) -> ConstraintResult:
        if satisfied or self.is_hard:
            penalty = 0.0
        return ConstraintResult(self.name, satisfied, self.kind, penalty)

    def _violation(self, worker: Worker, task: Optional[Task], penalty: float, detail: str = "") -> Violation:
        return Violation(
            constraint=self.name,
            kind=self.kind,
            worker_id=worker.id,
            task_id=task.id if task else None,
            penalty=0.0 if self.is_hard else penalty,
            detail=detail,
        )

    def __repr__(self) -> str:
        return f"{type(self).__name__}(name={self.name!r}, kind={self.kind.value}, weight={self.weight})"


class SkillMatch(Constraint):
    """Worker skill set must cover the task's required skills."""

    name = "skill_match"
    stateless = True

    def evaluate(self, task, worker, state=None):
        satisfied = task.required_skills <= worker.skills
        return self._result(satisfied, self.weight * len(task.required_skills - worker.skills))


class AvailabilityContainment(Constraint):
    """Task window must lie inside one of the worker's availability windows."""

    name = "availability"
    stateless = True

    def evaluate(self, task, worker, state=None):
        satisfied = worker.is_available(task.window)
        return self._result(satisfied, self.weight)


class NoOverlap(Constraint):
    """A worker cannot hold two tasks whose windows overlap."""

    name = "no_overlap"

    def _clashes(self, task: Task, worker: Worker, state: AssignmentState) -> List[Task]:
        return [
            other for other in state.tasks_of(worker.id)
            if other.id != task.id and other.window.overlaps(task.window)
        ]

    def evaluate(self, task, worker, state=None):
        if state is None:
            return self._result(True)
        clashes = self._clashes(task, worker, state)
        return self._result(not clashes, self.weight * len(clashes))

    def worker_violations(self, worker, state):
        held = state.tasks_of(worker.id)
        return [
            self._violation(worker, a, self.weight, detail=f"overlaps {b.id}")
            for a, b in combinations(held, 2)
            if a.window.overlaps(b.window)
        ]


class MaxLoad(Constraint):
    """
    Hours held within one load period may not exceed the worker's capacity.

    Periods are fixed buckets of ``period_minutes`` counted from minute 0; a
    task belongs to the bucket its start falls in. Ledger history is left
    out: it steers fairness, not capacity.
    """

    name = "max_load"

    def __init__(self, kind=ConstraintKind.HARD, weight: float = 1.0, hours_per_fte: float = 40.0,
                 period_minutes: int = 10080, name=None):
        super().__init__(kind, weight, name)
        self.hours_per_fte = hours_per_fte
        self.period_minutes = period_minutes

    def period_of(self, task: Task) -> int:
        return task.start // self.period_minutes

    def period_hours(self, worker_id: str, period: int, state: AssignmentState, exclude: Optional[str] = None) -> float:
        return math.fsum(
            t.hours for t in state.tasks_of(worker_id)
            if t.id != exclude and self.period_of(t) == period
        )

    def projected(self, task: Task, worker: Worker, state: Optional[AssignmentState]) -> float:
        if state is None:
            return task.hours
        return self.period_hours(worker.id, self.period_of(task), state, exclude=task.id) + task.hours

    def evaluate(self, task, worker, state=None):
        capacity = worker.capacity(self.hours_per_fte)
        excess = self.projected(task, worker, state) - capacity
        return self._result(excess <= _EPS, self.weight * max(0.0, excess))

    def worker_violations(self, worker, state):
        capacity = worker.capacity(self.hours_per_fte)
        periods = sorted({self.period_of(t) for t in state.tasks_of(worker.id)})
        violations = []
        for period in periods:
            excess = self.period_hours(worker.id, period, state) - capacity
            if excess > _EPS:
                violations.append(self._violation(
                    worker, None, self.weight * excess, detail=f"{excess:.2f}h over capacity in period {period}"
                ))
        return violations


class RestSpacing(Constraint):
    """Penalize assignments that leave less than ``min_gap`` minutes of rest."""

    name = "rest_spacing"

    def __init__(self, kind=ConstraintKind.SOFT, weight: float = 1.0, min_gap: int = 480, name=None):
        super().__init__(kind, weight, name)
        self.min_gap = min_gap

    def _short(self, a: Task, b: Task) -> bool:
        gap = a.window.gap_to(b.window)
        return 0 <= gap < self.min_gap

    def evaluate(self, task, worker, state=None):
        if state is None:
            return self._result(True)
        short = [o for o in state.tasks_of(worker.id) if o.id != task.id and self._short(task, o)]
        return self._result(not short, self.weight * len(short))

    def worker_violations(self, worker, state):
        held = state.tasks_of(worker.id)
        return [
            self._violation(worker, b, self.weight, detail=f"{a.window.gap_to(b.window)}min after {a.id}")
            for a, b in combinations(held, 2)
            if self._short(a, b)
        ]


class ConstraintModel:
    """
    Ordered registry of constraints with a uniform evaluation contract.
    New kinds are registered here; the allocator loop never changes.
    """

    def __init__(self, constraints: Iterable[Constraint] = ()):
        self.constraints: List[Constraint] = []
        for c in constraints:
            self.register(c)

    @classmethod
    def default(cls, settings: Optional[Settings] = None) -> "ConstraintModel":
        settings = settings or get_settings()
        return cls([
            SkillMatch(),
            AvailabilityContainment(),
            NoOverlap(),
            MaxLoad(
                ConstraintKind(settings.max_load_mode),
                settings.max_load_weight,
                settings.hours_per_fte,
                settings.load_period_minutes,
            ),
            RestSpacing(weight=settings.rest_gap_weight, min_gap=settings.rest_gap_minutes),
        ])

    def register(self, constraint: Constraint) -> None:
        if any(c.name == constraint.name for c in self.constraints):
            raise ValueError(f"constraint {constraint.name!r} already registered")
        self.constraints.append(constraint)

    def get(self, name: str) -> Optional[Constraint]:
        return next((c for c in self.constraints if c.name == name), None)

    def __iter__(self):
        return iter(self.constraints)

    def __len__(self):
        return len(self.constraints)

    @property
    def hard(self) -> List[Constraint]:
        # stateless first: they are cheap and reject most candidates
        return sorted((c for c in self.constraints if c.is_hard), key=lambda c: not c.stateless)

    @property
    def soft(self) -> List[Constraint]:
        return [c for c in self.constraints if not c.is_hard]

    def evaluate(self, task: Task, worker: Worker, state: Optional[AssignmentState]) -> List[ConstraintResult]:
        return [c.evaluate(task, worker, state) for c in self.constraints]

    def static_failures(self, task: Task, worker: Worker) -> List[str]:
        """Stateless hard constraints the pair fails, independent of any assignment."""
        return [c.name for c in self.hard if c.stateless and not c.evaluate(task, worker, None).satisfied]

    def hard_failures(self, task: Task, worker: Worker, state: Optional[AssignmentState]) -> List[str]:
        return [c.name for c in self.hard if not c.evaluate(task, worker, state).satisfied]

    def is_feasible(self, task: Task, worker: Worker, state: Optional[AssignmentState], skip_stateless: bool = False) -> bool:
        for c in self.hard:
            if skip_stateless and c.stateless:
                continue
            if not c.evaluate(task, worker, state).satisfied:
                return False
        return True

    def worker_violations(self, worker: Worker, state: AssignmentState, kind: Optional[ConstraintKind] = None) -> List[Violation]:
        found: List[Violation] = []
        for c in self.constraints:
            if kind is not None and c.kind != kind:
                continue
            found.extend(c.worker_violations(worker, state))
        return found

    def worker_penalty(self, worker: Worker, state: AssignmentState) -> float:
        return sum(v.penalty for v in self.worker_violations(worker, state, ConstraintKind.SOFT))

    def evaluate_assignment(self, state: AssignmentState, kind: Optional[ConstraintKind] = None) -> List[Violation]:
        found: List[Violation] = []
        for worker_id in sorted(state.workers):
            found.extend(self.worker_violations(state.workers[worker_id], state, kind))
        return found

    def summary(self) -> Dict[str, str]:
        return {c.name: c.kind.value for c in self.constraints}
