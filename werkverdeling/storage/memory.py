import logging
import threading
from dataclasses import dataclass, replace
from typing import Dict, Iterable, List, Optional

from werkverdeling.engine.ledger import FairnessLedger, LedgerDelta
from werkverdeling.engine.rebalancer import RecordChanges
from werkverdeling.models.entities import Assignment, Snapshot, Task, Worker
from werkverdeling.storage.interface import AssignmentStore, CommitResult

logger = logging.getLogger(__name__)


@dataclass
class _Commit:
    previous: Optional[Assignment]
    delta: LedgerDelta
    previous_tasks: Dict[str, Optional[Task]]
    previous_workers: Dict[str, Optional[Worker]]


class InMemoryAssignmentStore(AssignmentStore):
    """Process-local store; one lock guards records, ledger and version together."""

    def __init__(
        self,
        tasks: Iterable[Task] = (),
        workers: Iterable[Worker] = (),
        ledger: Optional[FairnessLedger] = None,
        team_id: str = "default-team",
    ):
        self._lock = threading.RLock()
        self._tasks: Dict[str, Task] = {t.id: t for t in tasks}
        self._workers: Dict[str, Worker] = {w.id: w for w in workers}
        self.ledger = ledger or FairnessLedger()
        self.team_id = team_id
        self._assignment: Optional[Assignment] = None
        self._history: List[_Commit] = []
        self.version = 0

    @property
    def assignment(self) -> Optional[Assignment]:
        return self._assignment

    def load_snapshot(self) -> Snapshot:
        with self._lock:
            return Snapshot(
                version=self.version,
                tasks=dict(self._tasks),
                workers=dict(self._workers),
                ledger=self.ledger.snapshot(),
                assignment=self._assignment,
                team_id=self.team_id,
            )

    def commit_assignment(self, assignment, delta, changes=None) -> CommitResult:
        changes = changes or RecordChanges()
        with self._lock:
            if self._assignment is not None and self.ledger.is_applied(delta.id) and self._assignment.same_pairs(assignment):
                logger.info(f"Commit of gen {assignment.generation} already applied; acknowledging retry")
                return CommitResult.ACK
            if assignment.basis_version != self.version:
                logger.warning(f"Commit rejected: basis version {assignment.basis_version}, store at {self.version}")
                return CommitResult.CONFLICT
            if self._assignment is not None and assignment.generation <= self._assignment.generation:
                logger.warning(f"Commit rejected: gen {assignment.generation} is not newer than {self._assignment.generation}")
                return CommitResult.CONFLICT

            record = _Commit(
                previous=self._assignment,
                delta=delta,
                previous_tasks={t.id: self._tasks.get(t.id) for t in changes.upsert_tasks},
                previous_workers={w.id: self._workers.get(w.id) for w in changes.upsert_workers},
            )
            record.previous_tasks.update({tid: self._tasks.get(tid) for tid in changes.delete_tasks})
            record.previous_workers.update({wid: self._workers.get(wid) for wid in changes.delete_workers})

            self._apply_changes(changes)
            self.ledger.commit(delta)
            self._assignment = assignment
            self._history.append(record)
            self.version += 1
            logger.info(f"Committed gen {assignment.generation} (version {self.version})")
            return CommitResult.ACK

    def _apply_changes(self, changes: RecordChanges) -> None:
        for task in changes.upsert_tasks:
            self._tasks[task.id] = task
        for task_id in changes.delete_tasks:
            self._tasks.pop(task_id, None)
        for worker in changes.upsert_workers:
            self._workers[worker.id] = worker
        for worker_id in changes.delete_workers:
            self._workers.pop(worker_id, None)

    def undo_commit(self) -> Optional[Assignment]:
        with self._lock:
            if not self._history:
                return None
            record = self._history.pop()
            self.ledger.revert(record.delta)
            for task_id, task in record.previous_tasks.items():
                if task is None:
                    self._tasks.pop(task_id, None)
                else:
                    self._tasks[task_id] = task
            for worker_id, worker in record.previous_workers.items():
                if worker is None:
                    self._workers.pop(worker_id, None)
                else:
                    self._workers[worker_id] = worker
            undone = self._assignment
            # generations never repeat: the restored pairs get a fresh number
            previous = record.previous or Assignment(generation=0, strategy="empty")
            self._assignment = replace(previous, generation=undone.generation + 1, basis_version=self.version)
            self.version += 1
            logger.info(f"Undid gen {undone.generation} (version {self.version})")
            return self._assignment

    def _bump(self) -> int:
        self.version += 1
        return self.version

    def save_task(self, task: Task) -> int:
        with self._lock:
            self._tasks[task.id] = task
            return self._bump()

    def delete_task(self, task_id: str) -> int:
        with self._lock:
            self._tasks.pop(task_id, None)
            return self._bump()

    def save_worker(self, worker: Worker) -> int:
        with self._lock:
            self._workers[worker.id] = worker
            return self._bump()

    def delete_worker(self, worker_id: str) -> int:
        with self._lock:
            self._workers.pop(worker_id, None)
            return self._bump()
