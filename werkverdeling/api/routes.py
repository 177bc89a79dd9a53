from functools import lru_cache
from typing import Any, Dict, List, Optional
import logging

from fastapi import APIRouter, HTTPException, Depends, Query
from pydantic import BaseModel, Field, field_validator, model_validator
from sqlalchemy.orm import Session

from werkverdeling.config.settings import get_settings
from werkverdeling.engine.errors import StaleSnapshotError, UnknownEntityError
from werkverdeling.engine.service import Explanation, PlanningEngine
from werkverdeling.models.entities import Assignment, Snapshot, Task, TimeWindow, Worker
from werkverdeling.models.events import (
    ChangeEvent,
    TaskAdded,
    TaskCancelled,
    TaskUpdated,
    WorkerAdded,
    WorkerUnavailable,
    WorkerUpdated,
)
from werkverdeling.storage.cache import PlanCache
from werkverdeling.storage.database import get_db
from werkverdeling.storage.repositories import (
    SqlAssignmentStore,
    assignment_from_dict,
    assignment_to_dict,
)
from werkverdeling.utils.benchmarking import benchmark_strategies

router = APIRouter()
settings = get_settings()
logger = logging.getLogger(__name__)

# settings that change the outcome of a plan, part of the cache key
_PLAN_KNOBS = {
    "fairness_weight", "max_load_mode", "max_load_weight", "rest_gap_minutes", "rest_gap_weight",
    "hours_per_fte", "load_period_minutes", "ledger_window_minutes", "local_search_max_iterations", "exact_enabled",
    "exact_solver", "exact_max_edges", "exact_node_limit",
}


def _check_window(win: List[int]) -> None:
    if len(win) != 2 or win[0] >= win[1]:
        raise ValueError("windows must be [start, end] with start < end")
    if win[0] < 0:
        raise ValueError("time values must be non-negative minutes")


class TaskDTO(BaseModel):
    id: str = Field(..., min_length=1)
    start: int
    end: int
    required_skills: List[str] = []
    required_count: int = Field(1, ge=1)
    priority: int = 0
    load: Optional[float] = Field(None, ge=0)
    version: int = 1

    @model_validator(mode="after")
    def validate_window(self):
        """Task window must be [start, end] with start < end."""
        _check_window([self.start, self.end])
        return self

    def to_domain(self) -> Task:
        return Task(
            id=self.id,
            window=TimeWindow(self.start, self.end),
            required_skills=frozenset(self.required_skills),
            required_count=self.required_count,
            priority=self.priority,
            load=self.load,
            version=self.version,
        )


class WorkerDTO(BaseModel):
    id: str = Field(..., min_length=1)
    skills: List[str] = []
    availability: List[List[int]] = []
    max_load: Optional[float] = Field(None, ge=0)
    fte: float = Field(1.0, ge=0)
    deduction: float = Field(0.0, ge=0)

    @field_validator("availability")
    @classmethod
    def validate_windows(cls, v: List[List[int]]):
        """Validate availability windows format and that they do not overlap."""
        for win in v:
            _check_window(win)
        ordered = sorted(v)
        for prev, nxt in zip(ordered, ordered[1:]):
            if prev[1] > nxt[0]:
                raise ValueError("availability windows must not overlap")
        return v

    def to_domain(self) -> Worker:
        return Worker(
            id=self.id,
            skills=frozenset(self.skills),
            availability=tuple(TimeWindow(w[0], w[1]) for w in self.availability),
            max_load=self.max_load,
            fte=self.fte,
            deduction=self.deduction,
        )


class AssignmentDTO(BaseModel):
    generation: int
    pairs: Dict[str, List[str]]
    score: float = 0.0
    strategy: str = "heuristic"
    optimal: bool = False
    basis_version: int = 0
    soft_violations: List[Dict[str, Any]] = []
    unsatisfiable: List[Dict[str, Any]] = []
    budget: Optional[Dict[str, Any]] = None

    @classmethod
    def from_domain(cls, a: Assignment) -> "AssignmentDTO":
        data = assignment_to_dict(a)
        return cls(**data)

    def to_domain(self) -> Assignment:
        return assignment_from_dict(self.model_dump())


class SnapshotRequest(BaseModel):
    tasks: List[TaskDTO]
    workers: List[WorkerDTO]
    ledger: Dict[str, float] = Field({}, description="Historical load in hours per worker id")

    @model_validator(mode="after")
    def validate_unique_ids(self):
        for label, items in (("task", self.tasks), ("worker", self.workers)):
            ids = [item.id for item in items]
            if len(ids) != len(set(ids)):
                raise ValueError(f"duplicate {label} ids")
        return self

    def to_snapshot(self, assignment: Optional[Assignment] = None) -> Snapshot:
        return Snapshot.build(
            [t.to_domain() for t in self.tasks],
            [w.to_domain() for w in self.workers],
            ledger=self.ledger,
            assignment=assignment,
        )


class PlanRequest(SnapshotRequest):
    pass


class PlanResponse(BaseModel):
    assignment: AssignmentDTO
    cached: bool = False


class EventDTO(BaseModel):
    kind: str = Field(..., pattern="^(task_added|task_cancelled|task_updated|worker_added|worker_unavailable|worker_updated)$")
    task: Optional[TaskDTO] = None
    task_id: Optional[str] = None
    worker: Optional[WorkerDTO] = None
    worker_id: Optional[str] = None
    window: Optional[List[int]] = None

    @model_validator(mode="after")
    def validate_payload(self):
        """Each event kind carries the record it is about."""
        needs = {
            "task_added": "task", "task_updated": "task", "task_cancelled": "task_id",
            "worker_added": "worker", "worker_updated": "worker", "worker_unavailable": "worker_id",
        }[self.kind]
        if getattr(self, needs) is None:
            raise ValueError(f"{self.kind} event requires '{needs}'")
        if self.window is not None:
            _check_window(self.window)
        return self

    def to_domain(self) -> ChangeEvent:
        if self.kind == "task_added":
            return TaskAdded(self.task.to_domain())
        if self.kind == "task_updated":
            return TaskUpdated(self.task.to_domain())
        if self.kind == "task_cancelled":
            return TaskCancelled(self.task_id)
        if self.kind == "worker_added":
            return WorkerAdded(self.worker.to_domain())
        if self.kind == "worker_updated":
            return WorkerUpdated(self.worker.to_domain())
        window = TimeWindow(self.window[0], self.window[1]) if self.window else None
        return WorkerUnavailable(self.worker_id, window)


class RebalanceRequest(SnapshotRequest):
    prior: AssignmentDTO
    event: EventDTO


class RebalanceResponse(BaseModel):
    assignment: AssignmentDTO
    state: str
    added: List[List[str]]
    removed: List[List[str]]


class ExplainRequest(SnapshotRequest):
    assignment: AssignmentDTO
    task_id: str
    include_candidates: bool = False


class ExplanationDTO(BaseModel):
    task_id: str
    worker_id: str
    constraint: str
    kind: str
    satisfied: bool
    penalty: float
    assigned: bool

    @classmethod
    def from_domain(cls, e: Explanation) -> "ExplanationDTO":
        return cls(
            task_id=e.task_id, worker_id=e.worker_id, constraint=e.constraint, kind=e.kind.value,
            satisfied=e.satisfied, penalty=e.penalty, assigned=e.assigned,
        )


class BenchmarkEntry(BaseModel):
    strategy: str
    time_seconds: float
    score: float
    optimal: bool
    unsatisfiable: int
    budget_exceeded: bool


class BenchmarkResponse(BaseModel):
    results: List[BenchmarkEntry]
    num_tasks: int


class VersionResponse(BaseModel):
    version: int


@lru_cache(maxsize=1)
def get_planner() -> PlanningEngine:
    return PlanningEngine(settings=settings)


@lru_cache(maxsize=1)
def _plan_cache() -> PlanCache:
    return PlanCache(settings.redis_url, settings.cache_ttl_seconds)


def get_cache() -> Optional[PlanCache]:
    return _plan_cache() if settings.cache_enabled else None


def get_store(team_id: str, db: Session = Depends(get_db)) -> SqlAssignmentStore:
    return SqlAssignmentStore(db, team_id, settings.ledger_window_minutes)


def _rebalance_response(result) -> RebalanceResponse:
    return RebalanceResponse(
        assignment=AssignmentDTO.from_domain(result.assignment),
        state=result.state.value,
        added=[list(p) for p in sorted(result.added)],
        removed=[list(p) for p in sorted(result.removed)],
    )


@router.post("/plan", response_model=PlanResponse, summary="Plan an assignment from scratch")
def plan(
    req: PlanRequest,
    planner: PlanningEngine = Depends(get_planner),
    cache: Optional[PlanCache] = Depends(get_cache),
):
    """
    Distribute every task over the workers without persisting anything.

    **Algorithm**:
    1. Validate input (DTOs with Pydantic validators)
    2. Check cache for an identical request
    3. Greedy seed by priority, start time and id
    4. Local search, or an exact solver on small instances
    5. Cache the result

    **Returns:**
    - `assignment.pairs`: task id to worker ids
    - `assignment.score`: soft penalty plus weighted load variance (lower is better)
    - `assignment.unsatisfiable`: tasks that could not be staffed, with the blocking constraints
    - `cached`: whether the result came from cache
    """
    logger.info(f"Plan request: {len(req.tasks)} tasks, {len(req.workers)} workers")

    request_hash = None
    if cache is not None:
        request_hash = PlanCache.hash_request({
            "request": req.model_dump(),
            "settings": settings.model_dump(include=_PLAN_KNOBS),
        })
        cached_result = cache.get(request_hash)
        if cached_result:
            logger.info("Cache hit")
            return {"assignment": cached_result, "cached": True}

    assignment = planner.plan(req.to_snapshot())
    dto = AssignmentDTO.from_domain(assignment)
    if cache is not None:
        cache.set(request_hash, dto.model_dump())
    return {"assignment": dto, "cached": False}


@router.post("/rebalance", response_model=RebalanceResponse, summary="Repair an assignment after a change")
def rebalance(req: RebalanceRequest, planner: PlanningEngine = Depends(get_planner)):
    """
    Apply one change event to `prior` and restore feasibility with minimal changes.

    Pairs of tasks that neither share a time window nor a skill with the
    change are kept as they are. The result carries `prior.generation + 1`.
    """
    logger.info(f"Rebalance request: {req.event.kind} on gen {req.prior.generation}")
    prior = req.prior.to_domain()
    try:
        result = planner.rebalance(req.to_snapshot(prior), req.event.to_domain())
    except UnknownEntityError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return _rebalance_response(result)


@router.post("/explain", response_model=List[ExplanationDTO], summary="Explain a task's staffing")
def explain(req: ExplainRequest, planner: PlanningEngine = Depends(get_planner)):
    assignment = req.assignment.to_domain()
    try:
        found = planner.explain(req.to_snapshot(assignment), assignment, req.task_id, req.include_candidates)
    except UnknownEntityError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return [ExplanationDTO.from_domain(e) for e in found]


@router.post("/plan/benchmark", response_model=BenchmarkResponse, summary="Benchmark planning strategies")
def benchmark(req: PlanRequest):
    """
    Compare local search, branch-and-bound and CP-SAT on the same instance.

    **Returns:**
    - Timing, objective, optimality and unfilled-task counts per strategy
    """
    logger.info(f"Benchmark request: {len(req.tasks)} tasks")
    results = benchmark_strategies(req.to_snapshot(), settings)
    logger.info(f"Benchmark complete: {len(results)} strategies compared")
    return {
        "results": [
            BenchmarkEntry(
                strategy=r.strategy,
                time_seconds=r.time_seconds,
                score=r.score,
                optimal=r.optimal,
                unsatisfiable=r.unsatisfiable,
                budget_exceeded=r.budget_exceeded,
            )
            for r in results
        ],
        "num_tasks": len(req.tasks),
    }


@router.put("/teams/{team_id}/tasks", response_model=VersionResponse, summary="Create or replace a task")
def put_task(task: TaskDTO, store: SqlAssignmentStore = Depends(get_store)):
    return {"version": store.save_task(task.to_domain())}


@router.delete("/teams/{team_id}/tasks/{task_id}", response_model=VersionResponse)
def delete_task(task_id: str, store: SqlAssignmentStore = Depends(get_store)):
    return {"version": store.delete_task(task_id)}


@router.put("/teams/{team_id}/workers", response_model=VersionResponse, summary="Create or replace a worker")
def put_worker(worker: WorkerDTO, store: SqlAssignmentStore = Depends(get_store)):
    return {"version": store.save_worker(worker.to_domain())}


@router.delete("/teams/{team_id}/workers/{worker_id}", response_model=VersionResponse)
def delete_worker(worker_id: str, store: SqlAssignmentStore = Depends(get_store)):
    return {"version": store.delete_worker(worker_id)}


@router.post("/teams/{team_id}/plan", response_model=AssignmentDTO, summary="Plan and commit for a team")
def plan_team(
    team_id: str,
    store: SqlAssignmentStore = Depends(get_store),
    planner: PlanningEngine = Depends(get_planner),
):
    """
    Plan the team's stored tasks and workers and commit the result.

    **Error Handling:**
    - 409: the team's records kept changing and every retry went stale
    """
    logger.info(f"Plan-and-commit for team {team_id}")
    try:
        assignment = planner.plan_and_commit(store)
    except StaleSnapshotError as e:
        raise HTTPException(status_code=409, detail=str(e))
    return AssignmentDTO.from_domain(assignment)


@router.post("/teams/{team_id}/rebalance", response_model=RebalanceResponse, summary="Repair and commit for a team")
def rebalance_team(
    team_id: str,
    event: EventDTO,
    store: SqlAssignmentStore = Depends(get_store),
    planner: PlanningEngine = Depends(get_planner),
):
    logger.info(f"Rebalance-and-commit for team {team_id}: {event.kind}")
    try:
        result = planner.rebalance_and_commit(store, event.to_domain())
    except StaleSnapshotError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except UnknownEntityError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return _rebalance_response(result)


@router.post("/teams/{team_id}/undo", response_model=AssignmentDTO, summary="Undo the latest commit")
def undo_team(
    team_id: str,
    store: SqlAssignmentStore = Depends(get_store),
    planner: PlanningEngine = Depends(get_planner),
):
    restored = planner.undo(store)
    if restored is None:
        raise HTTPException(status_code=404, detail=f"team {team_id} has no commit to undo")
    return AssignmentDTO.from_domain(restored)


@router.get("/teams/{team_id}/assignment", response_model=AssignmentDTO)
def get_assignment(team_id: str, store: SqlAssignmentStore = Depends(get_store)):
    assignment = store.current_assignment()
    if assignment is None:
        raise HTTPException(status_code=404, detail=f"team {team_id} has no assignment")
    return AssignmentDTO.from_domain(assignment)


@router.get("/teams/{team_id}/explain/{task_id}", response_model=List[ExplanationDTO])
def explain_team(
    team_id: str,
    task_id: str,
    include_candidates: bool = Query(False, description="Evaluate every worker, not only the assigned ones"),
    store: SqlAssignmentStore = Depends(get_store),
    planner: PlanningEngine = Depends(get_planner),
):
    snapshot = store.load_snapshot()
    if snapshot.assignment is None:
        raise HTTPException(status_code=404, detail=f"team {team_id} has no assignment")
    try:
        found = planner.explain(snapshot, snapshot.assignment, task_id, include_candidates)
    except UnknownEntityError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return [ExplanationDTO.from_domain(e) for e in found]
