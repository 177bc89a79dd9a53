"""
Repair / Rebalance

Applies one change event to a committed assignment and restores feasibility
with as few pair changes as possible:

1. Apply the event to the task and worker sets.
2. Drop the pairs that now fail a hard constraint, least important first
   (lowest priority, latest start), so a capacity cut sheds the least work.
3. Refill open slots with the allocator's greedy rule, affected tasks only.
4. Local search scoped to the tasks that share a time window or a skill with
   the change; unaffected pairs are never moved.

The result always carries the prior generation + 1. Tasks that cannot be
restaffed are reported exactly as the allocator reports them and the
rebalancer ends in DEGRADED; everything else is preserved.
"""

import logging
import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, FrozenSet, List, Mapping, Optional, Tuple

from werkverdeling.config.settings import Settings, get_settings
from werkverdeling.engine.allocator import Allocator, greedy_fill, planning_horizon_start, prefilter, task_order
from werkverdeling.engine.cancellation import CancellationToken
from werkverdeling.engine.constraints import ConstraintModel
from werkverdeling.engine.errors import UnknownEntityError
from werkverdeling.engine.local_search import improve
from werkverdeling.engine.state import AssignmentState
from werkverdeling.graph.conflict_graph import affected_tasks
from werkverdeling.models.entities import Assignment, Snapshot, Task, Worker
from werkverdeling.models.events import (
    ChangeEvent,
    TaskAdded,
    TaskCancelled,
    TaskUpdated,
    WorkerAdded,
    WorkerUnavailable,
    WorkerUpdated,
)

logger = logging.getLogger(__name__)


class RebalanceState(str, Enum):
    STABLE = "stable"
    REPAIRING = "repairing"
    DEGRADED = "degraded"


@dataclass(frozen=True)
class RecordChanges:
    """Task/worker record edits implied by an event, persisted with the commit."""

    upsert_tasks: Tuple[Task, ...] = ()
    delete_tasks: Tuple[str, ...] = ()
    upsert_workers: Tuple[Worker, ...] = ()
    delete_workers: Tuple[str, ...] = ()

    @property
    def is_empty(self) -> bool:
        return not (self.upsert_tasks or self.delete_tasks or self.upsert_workers or self.delete_workers)


@dataclass(frozen=True)
class AppliedEvent:
    tasks: Dict[str, Task]
    workers: Dict[str, Worker]
    seeds: Tuple[Task, ...]
    changes: RecordChanges
    effective: bool


@dataclass(frozen=True)
class RepairResult:
    assignment: Assignment
    state: RebalanceState
    tasks: Mapping[str, Task]
    workers: Mapping[str, Worker]
    changes: RecordChanges = field(default_factory=RecordChanges)
    added: FrozenSet[Tuple[str, str]] = frozenset()
    removed: FrozenSet[Tuple[str, str]] = frozenset()

    @property
    def degraded(self) -> bool:
        return self.state == RebalanceState.DEGRADED


def apply_event(snapshot: Snapshot, prior: Assignment, event: ChangeEvent) -> AppliedEvent:
    """New task/worker sets after ``event``, plus the tasks the change touches."""
    tasks = dict(snapshot.tasks)
    workers = dict(snapshot.workers)

    def unchanged():
        return AppliedEvent(tasks, workers, (), RecordChanges(), False)

    def held_by(worker_id: str) -> List[Task]:
        return [tasks[tid] for tid in prior.tasks_for(worker_id) if tid in tasks]

    if isinstance(event, (TaskAdded, TaskUpdated)):
        old = tasks.get(event.task.id)
        if isinstance(event, TaskUpdated) and old is None:
            raise UnknownEntityError("task", event.task.id)
        if old == event.task:
            return unchanged()
        tasks[event.task.id] = event.task
        seeds = (event.task,) if old is None else (old, event.task)
        return AppliedEvent(tasks, workers, seeds, RecordChanges(upsert_tasks=(event.task,)), True)

    if isinstance(event, TaskCancelled):
        old = tasks.pop(event.task_id, None)
        if old is None:
            return unchanged()
        return AppliedEvent(tasks, workers, (old,), RecordChanges(delete_tasks=(old.id,)), True)

    if isinstance(event, (WorkerAdded, WorkerUpdated)):
        old = workers.get(event.worker.id)
        if isinstance(event, WorkerUpdated) and old is None:
            raise UnknownEntityError("worker", event.worker.id)
        if old == event.worker:
            return unchanged()
        workers[event.worker.id] = event.worker
        seeds = tuple(held_by(event.worker.id))
        return AppliedEvent(tasks, workers, seeds, RecordChanges(upsert_workers=(event.worker,)), True)

    if isinstance(event, WorkerUnavailable):
        old = workers.get(event.worker_id)
        if old is None:
            raise UnknownEntityError("worker", event.worker_id)
        updated = old.without_window(event.window)
        if updated == old:
            return unchanged()
        workers[old.id] = updated
        seeds = tuple(
            t for t in held_by(old.id) if event.window is None or t.window.overlaps(event.window)
        )
        return AppliedEvent(tasks, workers, seeds, RecordChanges(upsert_workers=(updated,)), True)

    raise TypeError(f"unsupported change event: {event!r}")


class Rebalancer:
    """
    Stateless between runs apart from ``state``, the last outcome seen, which
    only feeds logging. Each RepairResult carries its own state.
    """

    def __init__(self, model: Optional[ConstraintModel] = None, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        self.model = model or ConstraintModel.default(self.settings)
        self.allocator = Allocator(self.model, self.settings)
        self.state = RebalanceState.STABLE
        self._lock = threading.Lock()

    def _transition(self, new_state: RebalanceState) -> RebalanceState:
        with self._lock:
            if new_state != self.state:
                logger.info(f"Rebalancer {self.state.value} -> {new_state.value}")
            self.state = new_state
        return new_state

    def rebalance(
        self,
        snapshot: Snapshot,
        event: ChangeEvent,
        prior: Optional[Assignment] = None,
        cancel: Optional[CancellationToken] = None,
    ) -> RepairResult:
        prior = prior or snapshot.assignment or Assignment(generation=snapshot.generation)
        cancel = cancel or CancellationToken()
        generation = prior.generation + 1
        applied = apply_event(snapshot, prior, event)
        logger.info(f"Rebalancing gen {prior.generation} for {event.kind} (effective={applied.effective})")

        if not applied.effective:
            assignment = Assignment(
                generation=generation,
                pairs=prior.pairs,
                score=prior.score,
                soft_violations=prior.soft_violations,
                unsatisfiable=prior.unsatisfiable,
                budget=prior.budget,
                strategy=prior.strategy,
                optimal=prior.optimal,
                basis_version=snapshot.version,
            )
            outcome = self._transition(RebalanceState.DEGRADED if assignment.unsatisfiable else RebalanceState.STABLE)
            return RepairResult(assignment, outcome, applied.tasks, applied.workers)

        self._transition(RebalanceState.REPAIRING)
        try:
            assignment = self._repair(snapshot, prior, applied, generation, cancel)
        except BaseException:
            # nothing was committed; the prior generation is still the live one
            self._transition(RebalanceState.DEGRADED if prior.unsatisfiable else RebalanceState.STABLE)
            raise

        outcome = self._transition(RebalanceState.DEGRADED if assignment.unsatisfiable else RebalanceState.STABLE)
        before, after = prior.pair_set(), assignment.pair_set()
        return RepairResult(
            assignment=assignment,
            state=outcome,
            tasks=applied.tasks,
            workers=applied.workers,
            changes=applied.changes,
            added=after - before,
            removed=before - after,
        )

    def _repair(self, snapshot, prior, applied: AppliedEvent, generation: int, cancel) -> Assignment:
        s = self.settings
        tasks, workers = applied.tasks, applied.workers
        baseline = snapshot.ledger.baseline(prior, planning_horizon_start(tasks))
        state = AssignmentState.from_assignment(tasks, workers, baseline, prior)
        cands = prefilter(tasks, workers, self.model)

        for tid in sorted(cands.blocked):
            state.release(tid)

        broken = self._drop_broken_pairs(state)
        if broken:
            logger.info(f"Dropped {len(broken)} pair(s) that became infeasible: {broken}")

        open_tasks = task_order(
            tasks, [tid for tid in tasks if tid not in cands.blocked and state.open_slots(tid) > 0]
        )
        failures = greedy_fill(state, open_tasks, cands.eligible, self.model, cancel)

        seeds = list(applied.seeds) + [tasks[tid] for tid in open_tasks]
        scope = affected_tasks(tasks, seeds)
        outcome = improve(
            state,
            self.model,
            cands.eligible,
            s.fairness_weight,
            scope=scope,
            max_iterations=s.local_search_max_iterations,
            time_limit_seconds=s.local_search_time_limit_seconds,
            cancel=cancel,
        )

        issues = list(cands.infeasible) + failures
        return self.allocator.finalize(state, generation, snapshot.version, issues, outcome.budget, "repair", False)

    def _drop_broken_pairs(self, state: AssignmentState) -> List[Tuple[str, str]]:
        tasks = state.tasks
        dropped = []
        for task_id in sorted(tasks):
            # an edit can lower the required count
            while state.open_slots(task_id) < 0:
                worker_id = max(state.workers_of(task_id), key=lambda wid: (state.load_of(wid), wid))
                state.unassign(task_id, worker_id)
                dropped.append((task_id, worker_id))
        pairs = sorted(state.pairs(), key=lambda p: (tasks[p[0]].priority, -tasks[p[0]].start, p[0], p[1]))
        for task_id, worker_id in pairs:
            if self.model.hard_failures(tasks[task_id], state.workers[worker_id], state):
                state.unassign(task_id, worker_id)
                dropped.append((task_id, worker_id))
        return dropped
