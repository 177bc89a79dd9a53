from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Dict, FrozenSet, Iterable, List, Mapping, Optional, Tuple


class ConstraintKind(str, Enum):
    HARD = "hard"
    SOFT = "soft"


@dataclass(frozen=True, order=True)
class TimeWindow:
    start: int  # minutes on the planning timeline
    end: int

    def __post_init__(self):
        if self.start >= self.end:
            raise ValueError(f"time window must have start < end, got ({self.start}, {self.end})")

    @property
    def duration(self) -> int:
        return self.end - self.start

    def overlaps(self, other: "TimeWindow") -> bool:
        return max(self.start, other.start) < min(self.end, other.end)

    def contains(self, other: "TimeWindow") -> bool:
        return self.start <= other.start and other.end <= self.end

    def gap_to(self, other: "TimeWindow") -> int:
        """Minutes between the two windows; negative when they overlap."""
        if self.end <= other.start:
            return other.start - self.end
        if other.end <= self.start:
            return self.start - other.end
        return -1

    @classmethod
    def of(cls, value) -> "TimeWindow":
        if isinstance(value, TimeWindow):
            return value
        start, end = value
        return cls(int(start), int(end))


@dataclass(frozen=True)
class Task:
    id: str
    window: TimeWindow
    required_skills: FrozenSet[str] = frozenset()
    required_count: int = 1
    priority: int = 0
    load: Optional[float] = None  # hours; defaults to the window length
    version: int = 1

    def __post_init__(self):
        object.__setattr__(self, "window", TimeWindow.of(self.window))
        object.__setattr__(self, "required_skills", frozenset(self.required_skills))
        if self.required_count < 1:
            raise ValueError(f"task {self.id} must require at least one worker")
        if self.load is not None and self.load < 0:
            raise ValueError(f"task {self.id} has negative load")

    @property
    def start(self) -> int:
        return self.window.start

    @property
    def end(self) -> int:
        return self.window.end

    @property
    def hours(self) -> float:
        if self.load is not None:
            return float(self.load)
        return self.window.duration / 60.0

    def revise(self, **changes) -> "Task":
        """Return the edited task as a new version."""
        changes.setdefault("version", self.version + 1)
        return replace(self, **changes)


@dataclass(frozen=True)
class Worker:
    id: str
    skills: FrozenSet[str] = frozenset()
    availability: Tuple[TimeWindow, ...] = ()
    max_load: Optional[float] = None  # hours per period
    fte: float = 1.0
    deduction: float = 0.0

    def __post_init__(self):
        object.__setattr__(self, "skills", frozenset(self.skills))
        windows = tuple(sorted(TimeWindow.of(w) for w in self.availability))
        for prev, nxt in zip(windows, windows[1:]):
            if prev.end > nxt.start:
                raise ValueError(f"worker {self.id} has overlapping availability windows")
        object.__setattr__(self, "availability", windows)

    def capacity(self, hours_per_fte: float) -> float:
        """Hours this worker may carry per period."""
        if self.max_load is not None:
            return float(self.max_load)
        return max(0.0, self.fte - self.deduction) * hours_per_fte

    def is_available(self, window: TimeWindow) -> bool:
        return any(avail.contains(window) for avail in self.availability)

    def without_window(self, revoked: Optional[TimeWindow]) -> "Worker":
        """Availability with ``revoked`` cut out; ``None`` revokes everything."""
        if revoked is None:
            return replace(self, availability=())
        remaining: List[TimeWindow] = []
        for avail in self.availability:
            if not avail.overlaps(revoked):
                remaining.append(avail)
                continue
            if avail.start < revoked.start:
                remaining.append(TimeWindow(avail.start, revoked.start))
            if revoked.end < avail.end:
                remaining.append(TimeWindow(revoked.end, avail.end))
        return replace(self, availability=tuple(remaining))


@dataclass(frozen=True)
class Assignment:
    """A committed (or committable) distribution of tasks over workers."""

    generation: int
    pairs: Mapping[str, Tuple[str, ...]] = field(default_factory=dict)
    score: float = 0.0
    soft_violations: Tuple = ()  # Violation records
    unsatisfiable: Tuple = ()
    budget: Optional[object] = None
    strategy: str = "heuristic"
    optimal: bool = False
    basis_version: int = 0

    def __post_init__(self):
        canonical = {tid: tuple(sorted(wids)) for tid, wids in sorted(self.pairs.items())}
        object.__setattr__(self, "pairs", canonical)

    def __hash__(self):
        # pairs is a dict; hash the identifying fields, which equal assignments share
        return hash((self.generation, self.basis_version, tuple(self.pairs.items())))

    @property
    def is_feasible(self) -> bool:
        return not self.unsatisfiable

    def workers_for(self, task_id: str) -> Tuple[str, ...]:
        return self.pairs.get(task_id, ())

    def tasks_for(self, worker_id: str) -> List[str]:
        return [tid for tid, wids in self.pairs.items() if worker_id in wids]

    def pair_set(self) -> FrozenSet[Tuple[str, str]]:
        return frozenset((tid, wid) for tid, wids in self.pairs.items() for wid in wids)

    def same_pairs(self, other: "Assignment") -> bool:
        return dict(self.pairs) == dict(other.pairs)

    def with_generation(self, generation: int) -> "Assignment":
        return replace(self, generation=generation)


@dataclass(frozen=True)
class Snapshot:
    """Immutable planning input: tasks, workers, ledger state and current assignment."""

    version: int
    tasks: Mapping[str, Task]
    workers: Mapping[str, Worker]
    ledger: "object"
    assignment: Optional[Assignment] = None
    team_id: str = "default-team"

    @property
    def generation(self) -> int:
        return self.assignment.generation if self.assignment else 0

    @classmethod
    def build(
        cls,
        tasks: Iterable[Task],
        workers: Iterable[Worker],
        ledger=None,
        assignment: Optional[Assignment] = None,
        version: int = 0,
        team_id: str = "default-team",
    ) -> "Snapshot":
        from werkverdeling.engine.ledger import LedgerSnapshot

        task_map: Dict[str, Task] = {t.id: t for t in tasks}
        worker_map: Dict[str, Worker] = {w.id: w for w in workers}
        if ledger is None:
            ledger = LedgerSnapshot.empty()
        elif isinstance(ledger, Mapping):
            ledger = LedgerSnapshot.from_loads(ledger)
        return cls(version, task_map, worker_map, ledger, assignment, team_id)
