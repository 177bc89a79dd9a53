from abc import ABC, abstractmethod
from enum import Enum
from typing import Optional

from werkverdeling.engine.ledger import LedgerDelta
from werkverdeling.engine.rebalancer import RecordChanges
from werkverdeling.models.entities import Assignment, Snapshot, Task, Worker


class CommitResult(str, Enum):
    ACK = "ack"
    CONFLICT = "conflict"


class AssignmentStore(ABC):
    """
    Persistence contract consumed by the planning engine.

    Planning never calls the store mid-computation: a run reads one snapshot
    before it starts and writes one commit after it ends. Every write bumps
    the snapshot version; a commit computed from an older version is
    rejected with CONFLICT instead of overwriting.
    """

    @abstractmethod
    def load_snapshot(self) -> Snapshot:
        pass

    @abstractmethod
    def commit_assignment(
        self,
        assignment: Assignment,
        delta: LedgerDelta,
        changes: Optional[RecordChanges] = None,
    ) -> CommitResult:
        """Atomically store ``assignment``, apply ``delta`` and persist ``changes``."""

    @abstractmethod
    def undo_commit(self) -> Optional[Assignment]:
        """
        Reverse the latest commit (assignment, ledger delta and record changes).

        The restored pairs are stored under a new generation so generation
        numbers never repeat. Returns None when there is nothing to undo.
        """

    @abstractmethod
    def save_task(self, task: Task) -> int:
        pass

    @abstractmethod
    def delete_task(self, task_id: str) -> int:
        pass

    @abstractmethod
    def save_worker(self, worker: Worker) -> int:
        pass

    @abstractmethod
    def delete_worker(self, worker_id: str) -> int:
        pass
