"""
Planning engine API.

Entry points used by embedding code: plan a snapshot from scratch, repair a
committed assignment after a change, explain a task's staffing, and commit
or undo against an AssignmentStore. Planning itself never touches the store;
the store is read once before a run and written once after it.
"""

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import List, Mapping, Optional, Sequence

from werkverdeling.config.settings import Settings, get_settings
from werkverdeling.engine.allocator import Allocator, planning_horizon_start
from werkverdeling.engine.cancellation import CancellationToken
from werkverdeling.engine.constraints import ConstraintModel
from werkverdeling.engine.errors import StaleSnapshotError, UnknownEntityError
from werkverdeling.engine.ledger import LedgerDelta
from werkverdeling.engine.rebalancer import Rebalancer, RecordChanges, RepairResult
from werkverdeling.engine.state import AssignmentState
from werkverdeling.models.entities import Assignment, ConstraintKind, Snapshot, Task
from werkverdeling.models.events import ChangeEvent
from werkverdeling.storage.interface import AssignmentStore, CommitResult

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Explanation:
    """Outcome of one constraint for one (task, worker) pair."""

    task_id: str
    worker_id: str
    constraint: str
    kind: ConstraintKind
    satisfied: bool
    penalty: float
    assigned: bool


class PlanningEngine:
    def __init__(self, model: Optional[ConstraintModel] = None, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        self.model = model or ConstraintModel.default(self.settings)
        self.allocator = Allocator(self.model, self.settings)
        self.rebalancer = Rebalancer(self.model, self.settings)

    def plan(self, snapshot: Snapshot, cancel: Optional[CancellationToken] = None) -> Assignment:
        return self.allocator.allocate(snapshot, cancel)

    def rebalance(
        self,
        snapshot: Snapshot,
        event: ChangeEvent,
        cancel: Optional[CancellationToken] = None,
    ) -> RepairResult:
        return self.rebalancer.rebalance(snapshot, event, cancel=cancel)

    def plan_many(self, snapshots: Sequence[Snapshot], max_workers: Optional[int] = None) -> List[Assignment]:
        """Plan independent snapshots concurrently; results keep the input order."""
        if not snapshots:
            return []
        with ThreadPoolExecutor(max_workers=max_workers) as pool:
            return list(pool.map(self.plan, snapshots))

    def explain(
        self,
        snapshot: Snapshot,
        assignment: Assignment,
        task_id: str,
        include_candidates: bool = False,
    ) -> List[Explanation]:
        """
        Constraint outcomes for the workers holding ``task_id``.

        With ``include_candidates`` every worker in the snapshot is evaluated,
        which shows why the others were not chosen.
        """
        task = snapshot.tasks.get(task_id)
        if task is None:
            raise UnknownEntityError("task", task_id)
        baseline = snapshot.ledger.baseline(assignment, planning_horizon_start(snapshot.tasks))
        state = AssignmentState.from_assignment(snapshot.tasks, snapshot.workers, baseline, assignment)
        holders = set(assignment.workers_for(task_id))
        worker_ids = sorted(snapshot.workers) if include_candidates else sorted(holders)

        found: List[Explanation] = []
        for worker_id in worker_ids:
            worker = snapshot.workers.get(worker_id)
            if worker is None:
                continue
            for result in self.model.evaluate(task, worker, state):
                found.append(Explanation(
                    task_id=task_id,
                    worker_id=worker_id,
                    constraint=result.name,
                    kind=result.kind,
                    satisfied=result.satisfied,
                    penalty=result.penalty,
                    assigned=worker_id in holders,
                ))
        return found

    @staticmethod
    def ledger_delta(
        snapshot: Snapshot,
        assignment: Assignment,
        tasks: Optional[Mapping[str, Task]] = None,
    ) -> LedgerDelta:
        return LedgerDelta.between(snapshot.ledger, snapshot.assignment, assignment, tasks or snapshot.tasks)

    def commit(
        self,
        store: AssignmentStore,
        snapshot: Snapshot,
        assignment: Assignment,
        changes: Optional[RecordChanges] = None,
        tasks: Optional[Mapping[str, Task]] = None,
    ) -> Assignment:
        """Write ``assignment`` and its ledger delta; raises StaleSnapshotError on conflict."""
        delta = self.ledger_delta(snapshot, assignment, tasks)
        result = store.commit_assignment(assignment, delta, changes)
        if result == CommitResult.CONFLICT:
            raise StaleSnapshotError(snapshot.version)
        return assignment

    def plan_and_commit(self, store: AssignmentStore, cancel: Optional[CancellationToken] = None) -> Assignment:
        """Plan from the store's current snapshot; reload and retry on conflict."""
        attempts = max(1, self.settings.commit_retries)
        for attempt in range(1, attempts + 1):
            snapshot = store.load_snapshot()
            assignment = self.plan(snapshot, cancel)
            try:
                return self.commit(store, snapshot, assignment)
            except StaleSnapshotError:
                if attempt == attempts:
                    raise
                logger.warning(f"Snapshot {snapshot.version} went stale; replanning (attempt {attempt + 1}/{attempts})")

    def rebalance_and_commit(
        self,
        store: AssignmentStore,
        event: ChangeEvent,
        cancel: Optional[CancellationToken] = None,
    ) -> RepairResult:
        attempts = max(1, self.settings.commit_retries)
        for attempt in range(1, attempts + 1):
            snapshot = store.load_snapshot()
            result = self.rebalance(snapshot, event, cancel)
            try:
                self.commit(store, snapshot, result.assignment, result.changes, result.tasks)
                return result
            except StaleSnapshotError:
                if attempt == attempts:
                    raise
                logger.warning(f"Snapshot {snapshot.version} went stale; repairing again (attempt {attempt + 1}/{attempts})")

    def undo(self, store: AssignmentStore) -> Optional[Assignment]:
        restored = store.undo_commit()
        if restored is None:
            logger.info("Nothing to undo")
        return restored
