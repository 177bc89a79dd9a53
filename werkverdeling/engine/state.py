import math
from typing import Dict, Iterable, List, Mapping, Optional, Tuple

from werkverdeling.models.entities import Assignment, Task, Worker


class AssignmentState:
    """
    Assignment-so-far during one planning run.

    Owned by the allocator or rebalancer; constraints only read it. Loads are
    the ledger baseline (history without the pairs being planned) plus the
    hours of the tasks currently held.
    """

    def __init__(self, tasks: Mapping[str, Task], workers: Mapping[str, Worker], baseline: Optional[Mapping[str, float]] = None):
        self.tasks = tasks
        self.workers = workers
        self._baseline: Dict[str, float] = {wid: float((baseline or {}).get(wid, 0.0)) for wid in workers}
        self._by_task: Dict[str, List[str]] = {tid: [] for tid in tasks}
        self._by_worker: Dict[str, List[str]] = {wid: [] for wid in workers}

    @classmethod
    def from_assignment(
        cls,
        tasks: Mapping[str, Task],
        workers: Mapping[str, Worker],
        baseline: Mapping[str, float],
        assignment: Optional[Assignment],
    ) -> "AssignmentState":
        state = cls(tasks, workers, baseline)
        if assignment is not None:
            for task_id, worker_ids in assignment.pairs.items():
                if task_id not in tasks:
                    continue
                for worker_id in worker_ids:
                    if worker_id in workers:
                        state.assign(task_id, worker_id)
        return state

    def copy(self) -> "AssignmentState":
        clone = AssignmentState.__new__(AssignmentState)
        clone.tasks = self.tasks
        clone.workers = self.workers
        clone._baseline = dict(self._baseline)
        clone._by_task = {tid: list(wids) for tid, wids in self._by_task.items()}
        clone._by_worker = {wid: list(tids) for wid, tids in self._by_worker.items()}
        return clone

    def assign(self, task_id: str, worker_id: str) -> None:
        if worker_id in self._by_task[task_id]:
            raise ValueError(f"worker {worker_id} already holds task {task_id}")
        self._by_task[task_id].append(worker_id)
        held = self._by_worker[worker_id]
        held.append(task_id)
        held.sort(key=lambda tid: (self.tasks[tid].start, tid))

    def unassign(self, task_id: str, worker_id: str) -> None:
        self._by_task[task_id].remove(worker_id)
        self._by_worker[worker_id].remove(task_id)

    def release(self, task_id: str) -> Tuple[str, ...]:
        """Drop every worker from ``task_id``; returns who held it."""
        held = tuple(self._by_task[task_id])
        for worker_id in held:
            self.unassign(task_id, worker_id)
        return held

    def is_assigned(self, task_id: str, worker_id: str) -> bool:
        return worker_id in self._by_task.get(task_id, ())

    def workers_of(self, task_id: str) -> Tuple[str, ...]:
        return tuple(self._by_task.get(task_id, ()))

    def tasks_of(self, worker_id: str) -> List[Task]:
        return [self.tasks[tid] for tid in self._by_worker.get(worker_id, ())]

    def open_slots(self, task_id: str) -> int:
        return self.tasks[task_id].required_count - len(self._by_task[task_id])

    def baseline_of(self, worker_id: str) -> float:
        return self._baseline.get(worker_id, 0.0)

    def load_of(self, worker_id: str) -> float:
        return self.baseline_of(worker_id) + math.fsum(t.hours for t in self.tasks_of(worker_id))

    def loads(self, worker_ids: Optional[Iterable[str]] = None) -> Dict[str, float]:
        ids = self.workers if worker_ids is None else worker_ids
        return {wid: self.load_of(wid) for wid in ids}

    def pairs(self) -> List[Tuple[str, str]]:
        return [(tid, wid) for tid in sorted(self._by_task) for wid in sorted(self._by_task[tid])]

    def to_pairs(self) -> Dict[str, Tuple[str, ...]]:
        """Fully staffed tasks only."""
        return {
            tid: tuple(sorted(wids))
            for tid, wids in self._by_task.items()
            if wids and len(wids) == self.tasks[tid].required_count
        }
