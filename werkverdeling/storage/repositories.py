import logging
import math
from dataclasses import replace
from typing import Dict, List, Optional

from sqlalchemy.orm import Session

from werkverdeling.engine.errors import BudgetExceeded, InfeasibleTask, OverCapacity
from werkverdeling.engine.ledger import LedgerDelta, LedgerEntry, LedgerSnapshot
from werkverdeling.engine.rebalancer import RecordChanges
from werkverdeling.models.constraints import Violation
from werkverdeling.models.entities import Assignment, ConstraintKind, Snapshot, Task, TimeWindow, Worker
from werkverdeling.storage.database import (
    CommitModel,
    LedgerDeltaModel,
    LedgerEntryModel,
    PlanStateModel,
    TaskModel,
    WorkerModel,
)
from werkverdeling.storage.interface import AssignmentStore, CommitResult

logger = logging.getLogger(__name__)


def task_to_dict(task: Task) -> Dict:
    return {
        "id": task.id,
        "start": task.start,
        "end": task.end,
        "required_skills": sorted(task.required_skills),
        "required_count": task.required_count,
        "priority": task.priority,
        "load": task.load,
        "version": task.version,
    }


def task_from_dict(data: Dict) -> Task:
    return Task(
        id=data["id"],
        window=TimeWindow(data["start"], data["end"]),
        required_skills=frozenset(data.get("required_skills", ())),
        required_count=data.get("required_count", 1),
        priority=data.get("priority", 0),
        load=data.get("load"),
        version=data.get("version", 1),
    )


def worker_to_dict(worker: Worker) -> Dict:
    return {
        "id": worker.id,
        "skills": sorted(worker.skills),
        "availability": [[w.start, w.end] for w in worker.availability],
        "max_load": worker.max_load,
        "fte": worker.fte,
        "deduction": worker.deduction,
    }


def worker_from_dict(data: Dict) -> Worker:
    return Worker(
        id=data["id"],
        skills=frozenset(data.get("skills", ())),
        availability=tuple(TimeWindow(s, e) for s, e in data.get("availability", ())),
        max_load=data.get("max_load"),
        fte=data.get("fte", 1.0),
        deduction=data.get("deduction", 0.0),
    )


def issue_to_dict(issue) -> Dict:
    if isinstance(issue, InfeasibleTask):
        return {"code": issue.code, "task_id": issue.task_id, "missing": issue.missing,
                "blocking": list(issue.blocking), "detail": issue.detail}
    if isinstance(issue, OverCapacity):
        return {"code": issue.code, "task_id": issue.task_id, "demand": issue.demand, "capacity": issue.capacity,
                "blocking": list(issue.blocking), "detail": issue.detail}
    if isinstance(issue, BudgetExceeded):
        return {"code": issue.code, "phase": issue.phase, "limit": issue.limit, "detail": issue.detail}
    raise TypeError(f"not a planning issue: {issue!r}")


def issue_from_dict(data: Dict):
    code = data["code"]
    if code == "infeasible_task":
        return InfeasibleTask(data["task_id"], data["missing"], tuple(data["blocking"]), data.get("detail", ""))
    if code == "over_capacity":
        return OverCapacity(data["task_id"], data["demand"], data["capacity"], tuple(data["blocking"]), data.get("detail", ""))
    if code == "budget_exceeded":
        return BudgetExceeded(data["phase"], data["limit"], data.get("detail", ""))
    raise ValueError(f"unknown issue code {code!r}")


def violation_to_dict(v: Violation) -> Dict:
    return {"constraint": v.constraint, "kind": v.kind.value, "worker_id": v.worker_id,
            "task_id": v.task_id, "penalty": v.penalty, "detail": v.detail}


def violation_from_dict(data: Dict) -> Violation:
    return Violation(
        constraint=data["constraint"],
        kind=ConstraintKind(data["kind"]),
        worker_id=data["worker_id"],
        task_id=data.get("task_id"),
        penalty=data.get("penalty", 0.0),
        detail=data.get("detail", ""),
    )


def assignment_to_dict(a: Assignment) -> Dict:
    return {
        "generation": a.generation,
        "pairs": {tid: list(wids) for tid, wids in a.pairs.items()},
        "score": a.score,
        "soft_violations": [violation_to_dict(v) for v in a.soft_violations],
        "unsatisfiable": [issue_to_dict(i) for i in a.unsatisfiable],
        "budget": issue_to_dict(a.budget) if a.budget else None,
        "strategy": a.strategy,
        "optimal": a.optimal,
        "basis_version": a.basis_version,
    }


def assignment_from_dict(data: Dict) -> Assignment:
    return Assignment(
        generation=data["generation"],
        pairs={tid: tuple(wids) for tid, wids in data.get("pairs", {}).items()},
        score=data.get("score", 0.0),
        soft_violations=tuple(violation_from_dict(v) for v in data.get("soft_violations", ())),
        unsatisfiable=tuple(issue_from_dict(i) for i in data.get("unsatisfiable", ())),
        budget=issue_from_dict(data["budget"]) if data.get("budget") else None,
        strategy=data.get("strategy", "heuristic"),
        optimal=data.get("optimal", False),
        basis_version=data.get("basis_version", 0),
    )


def _entry_to_dict(e: LedgerEntry) -> Dict:
    return {"worker_id": e.worker_id, "task_id": e.task_id, "load": e.load, "start": e.start}


def delta_to_dict(delta: LedgerDelta) -> Dict:
    return {
        "id": delta.id,
        "added": [_entry_to_dict(e) for e in delta.added],
        "removed": [_entry_to_dict(e) for e in delta.removed],
    }


def delta_from_dict(data: Dict) -> LedgerDelta:
    return LedgerDelta(
        id=data["id"],
        added=tuple(LedgerEntry(**e) for e in data["added"]),
        removed=tuple(LedgerEntry(**e) for e in data["removed"]),
    )


class TaskRepository:
    """Task rows of one team. Writes are flushed; the caller owns the transaction."""

    def __init__(self, db: Session, team_id: str):
        self.db = db
        self.team_id = team_id

    def _query(self):
        return self.db.query(TaskModel).filter(TaskModel.team_id == self.team_id)

    def get_by_id(self, task_id: str) -> Optional[Task]:
        model = self._query().filter(TaskModel.id == task_id).first()
        if not model:
            return None
        return self._model_to_task(model)

    def list_all(self) -> List[Task]:
        return [self._model_to_task(m) for m in self._query().order_by(TaskModel.id).all()]

    def save(self, task: Task) -> None:
        existing = self._query().filter(TaskModel.id == task.id).first()
        if existing:
            existing.start = task.start
            existing.end = task.end
            existing.required_skills = sorted(task.required_skills)
            existing.required_count = task.required_count
            existing.priority = task.priority
            existing.load = task.load
            existing.version = task.version
        else:
            self.db.add(TaskModel(team_id=self.team_id, **task_to_dict(task)))
        self.db.flush()

    def delete(self, task_id: str) -> None:
        model = self._query().filter(TaskModel.id == task_id).first()
        if model:
            self.db.delete(model)
            self.db.flush()

    @staticmethod
    def _model_to_task(model: TaskModel) -> Task:
        return Task(
            id=model.id,
            window=TimeWindow(model.start, model.end),
            required_skills=frozenset(model.required_skills or ()),
            required_count=model.required_count,
            priority=model.priority,
            load=model.load,
            version=model.version,
        )


class WorkerRepository:
    def __init__(self, db: Session, team_id: str):
        self.db = db
        self.team_id = team_id

    def _query(self):
        return self.db.query(WorkerModel).filter(WorkerModel.team_id == self.team_id)

    def get_by_id(self, worker_id: str) -> Optional[Worker]:
        model = self._query().filter(WorkerModel.id == worker_id).first()
        if not model:
            return None
        return self._model_to_worker(model)

    def list_all(self) -> List[Worker]:
        return [self._model_to_worker(m) for m in self._query().order_by(WorkerModel.id).all()]

    def save(self, worker: Worker) -> None:
        existing = self._query().filter(WorkerModel.id == worker.id).first()
        data = worker_to_dict(worker)
        if existing:
            existing.skills = data["skills"]
            existing.availability = data["availability"]
            existing.max_load = worker.max_load
            existing.fte = worker.fte
            existing.deduction = worker.deduction
        else:
            self.db.add(WorkerModel(team_id=self.team_id, **data))
        self.db.flush()

    def delete(self, worker_id: str) -> None:
        model = self._query().filter(WorkerModel.id == worker_id).first()
        if model:
            self.db.delete(model)
            self.db.flush()

    @staticmethod
    def _model_to_worker(model: WorkerModel) -> Worker:
        return Worker(
            id=model.id,
            skills=frozenset(model.skills or ()),
            availability=tuple(TimeWindow(s, e) for s, e in (model.availability or ())),
            max_load=model.max_load,
            fte=model.fte,
            deduction=model.deduction,
        )


class LedgerRepository:
    def __init__(self, db: Session, team_id: str):
        self.db = db
        self.team_id = team_id

    def _query(self):
        return self.db.query(LedgerEntryModel).filter(LedgerEntryModel.team_id == self.team_id)

    def snapshot(self, version: int, window_minutes: Optional[int] = None) -> LedgerSnapshot:
        grouped: Dict = {}
        for row in self._query().order_by(LedgerEntryModel.id).all():
            entry = LedgerEntry(row.worker_id, row.task_id, row.load, row.start)
            grouped.setdefault(entry.key, []).append(entry)
        return LedgerSnapshot({k: tuple(v) for k, v in grouped.items()}, version, window_minutes)

    def add(self, entry: LedgerEntry) -> None:
        self.db.add(LedgerEntryModel(team_id=self.team_id, **_entry_to_dict(entry)))

    def remove(self, entry: LedgerEntry) -> None:
        rows = (
            self._query()
            .filter(LedgerEntryModel.worker_id == entry.worker_id, LedgerEntryModel.task_id == entry.task_id)
            .order_by(LedgerEntryModel.id)
            .all()
        )
        if not rows:
            logger.warning(f"Ledger has no entry for {entry.key}; removal skipped")
            return
        match = next((r for r in rows if math.isclose(r.load, entry.load) and r.start == entry.start), None)
        # committed under a different load; take the whole key out
        for row in [match] if match is not None else rows:
            self.db.delete(row)
        self.db.flush()

    def is_applied(self, delta_id: str) -> bool:
        return self.db.get(LedgerDeltaModel, (self.team_id, delta_id)) is not None

    def apply(self, delta: LedgerDelta) -> None:
        for entry in delta.removed:
            self.remove(entry)
        for entry in delta.added:
            self.add(entry)
        self.db.add(LedgerDeltaModel(team_id=self.team_id, id=delta.id))

    def revert(self, delta: LedgerDelta) -> None:
        for entry in delta.added:
            self.remove(entry)
        for entry in delta.removed:
            self.add(entry)
        applied = self.db.get(LedgerDeltaModel, (self.team_id, delta.id))
        if applied is not None:
            self.db.delete(applied)

    def seed(self, entries) -> None:
        for entry in entries:
            self.add(entry)


class SqlAssignmentStore(AssignmentStore):
    """
    AssignmentStore over SQLAlchemy, scoped to one team.

    The plan_state row carries the snapshot version. A commit updates it
    with ``WHERE version = basis_version``; zero updated rows means another
    writer got there first and the commit is rolled back as a CONFLICT.
    """

    def __init__(self, db: Session, team_id: str = "default-team", window_minutes: Optional[int] = None):
        self.db = db
        self.team_id = team_id
        self.window_minutes = window_minutes
        self.tasks = TaskRepository(db, team_id)
        self.workers = WorkerRepository(db, team_id)
        self.ledger = LedgerRepository(db, team_id)

    def _state(self) -> PlanStateModel:
        state = self.db.get(PlanStateModel, self.team_id)
        if state is None:
            state = PlanStateModel(team_id=self.team_id, version=0, generation=0, assignment=None)
            self.db.add(state)
            self.db.commit()
        return state

    def _bump(self) -> int:
        self.db.query(PlanStateModel).filter(PlanStateModel.team_id == self.team_id).update(
            {PlanStateModel.version: PlanStateModel.version + 1}, synchronize_session=False
        )
        self.db.commit()
        return self._state().version

    def load_snapshot(self) -> Snapshot:
        state = self._state()
        assignment = assignment_from_dict(state.assignment) if state.assignment else None
        return Snapshot(
            version=state.version,
            tasks={t.id: t for t in self.tasks.list_all()},
            workers={w.id: w for w in self.workers.list_all()},
            ledger=self.ledger.snapshot(state.version, self.window_minutes),
            assignment=assignment,
            team_id=self.team_id,
        )

    def current_assignment(self) -> Optional[Assignment]:
        state = self._state()
        return assignment_from_dict(state.assignment) if state.assignment else None

    def commit_assignment(self, assignment, delta, changes=None) -> CommitResult:
        changes = changes or RecordChanges()
        state = self._state()
        current = assignment_from_dict(state.assignment) if state.assignment else None
        if current is not None and self.ledger.is_applied(delta.id) and current.same_pairs(assignment):
            logger.info(f"Commit of gen {assignment.generation} already applied; acknowledging retry")
            return CommitResult.ACK
        if assignment.generation <= state.generation:
            logger.warning(f"Commit rejected: gen {assignment.generation} is not newer than {state.generation}")
            return CommitResult.CONFLICT

        previous_records = self._capture(changes)
        previous_assignment = state.assignment
        updated = (
            self.db.query(PlanStateModel)
            .filter(PlanStateModel.team_id == self.team_id, PlanStateModel.version == assignment.basis_version)
            .update(
                {
                    PlanStateModel.version: PlanStateModel.version + 1,
                    PlanStateModel.generation: assignment.generation,
                    PlanStateModel.assignment: assignment_to_dict(assignment),
                },
                synchronize_session=False,
            )
        )
        if updated != 1:
            self.db.rollback()
            logger.warning(f"Commit rejected: basis version {assignment.basis_version} is stale")
            return CommitResult.CONFLICT

        self._apply_changes(changes)
        self.ledger.apply(delta)
        self.db.add(CommitModel(
            team_id=self.team_id,
            generation=assignment.generation,
            delta=delta_to_dict(delta),
            previous_assignment=previous_assignment,
            previous_records=previous_records,
        ))
        self.db.commit()
        logger.info(f"Committed gen {assignment.generation} for team {self.team_id}")
        return CommitResult.ACK

    def _capture(self, changes: RecordChanges) -> Dict:
        tasks = {}
        for task_id in [t.id for t in changes.upsert_tasks] + list(changes.delete_tasks):
            found = self.tasks.get_by_id(task_id)
            tasks[task_id] = task_to_dict(found) if found else None
        workers = {}
        for worker_id in [w.id for w in changes.upsert_workers] + list(changes.delete_workers):
            found = self.workers.get_by_id(worker_id)
            workers[worker_id] = worker_to_dict(found) if found else None
        return {"tasks": tasks, "workers": workers}

    def _apply_changes(self, changes: RecordChanges) -> None:
        for task in changes.upsert_tasks:
            self.tasks.save(task)
        for task_id in changes.delete_tasks:
            self.tasks.delete(task_id)
        for worker in changes.upsert_workers:
            self.workers.save(worker)
        for worker_id in changes.delete_workers:
            self.workers.delete(worker_id)

    def undo_commit(self) -> Optional[Assignment]:
        commit = (
            self.db.query(CommitModel)
            .filter(CommitModel.team_id == self.team_id, CommitModel.undone.is_(False))
            .order_by(CommitModel.id.desc())
            .first()
        )
        if commit is None:
            return None

        self.ledger.revert(delta_from_dict(commit.delta))
        for task_id, data in commit.previous_records.get("tasks", {}).items():
            if data is None:
                self.tasks.delete(task_id)
            else:
                self.tasks.save(task_from_dict(data))
        for worker_id, data in commit.previous_records.get("workers", {}).items():
            if data is None:
                self.workers.delete(worker_id)
            else:
                self.workers.save(worker_from_dict(data))

        state = self._state()
        previous = (
            assignment_from_dict(commit.previous_assignment)
            if commit.previous_assignment
            else Assignment(generation=0, strategy="empty")
        )
        # generations never repeat: the restored pairs get a fresh number
        restored = replace(previous, generation=state.generation + 1, basis_version=state.version)
        state.version = state.version + 1
        state.generation = restored.generation
        state.assignment = assignment_to_dict(restored)
        commit.undone = True
        self.db.commit()
        logger.info(f"Undid gen {commit.generation} for team {self.team_id}")
        return restored

    def save_task(self, task: Task) -> int:
        self._state()
        self.tasks.save(task)
        return self._bump()

    def delete_task(self, task_id: str) -> int:
        self._state()
        self.tasks.delete(task_id)
        return self._bump()

    def save_worker(self, worker: Worker) -> int:
        self._state()
        self.workers.save(worker)
        return self._bump()

    def delete_worker(self, worker_id: str) -> int:
        self._state()
        self.workers.delete(worker_id)
        return self._bump()

    def seed_ledger(self, entries) -> None:
        """Load historical ledger entries without a commit."""
        self.ledger.seed(entries)
        self.db.commit()
