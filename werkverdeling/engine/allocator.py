"""
Allocator

Produces one hard-feasible Assignment for a full Snapshot:

1. Validation: tasks with fewer statically eligible workers than they need
   are reported before search; a capacity check flags load periods whose
   demand exceeds what a hard max-load allows.
2. Greedy seed: tasks by priority (highest first), earliest start, id; each
   slot goes to the eligible worker with the lowest projected load, ties by
   historical load then worker id.
3. Improvement: local search, or on small instances an exact solver
   (branch-and-bound or CP-SAT) whose result is optimal when it finishes
   inside its budget. A budget overrun falls back to the heuristic result.

Tasks that cannot be filled are never dropped silently: they are returned on
the Assignment as InfeasibleTask / OverCapacity records.
"""

import logging
import math
from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional, Tuple

from werkverdeling.config.settings import Settings, get_settings
from werkverdeling.engine.cancellation import CancellationToken
from werkverdeling.engine.constraints import ConstraintModel, MaxLoad
from werkverdeling.engine.errors import BudgetExceeded, InfeasibleTask, OverCapacity
from werkverdeling.engine.local_search import improve
from werkverdeling.engine.ortools_solver import solve_with_ortools
from werkverdeling.engine.solver import branch_and_bound
from werkverdeling.engine.state import AssignmentState
from werkverdeling.models.entities import Assignment, Snapshot, Task
from werkverdeling.utils.scoring import score_state, soft_violations

logger = logging.getLogger(__name__)

_EPS = 1e-9


def task_order(tasks: Mapping[str, Task], task_ids=None) -> List[str]:
    ids = tasks.keys() if task_ids is None else task_ids
    return sorted(ids, key=lambda tid: (-tasks[tid].priority, tasks[tid].start, tid))


def planning_horizon_start(tasks: Mapping[str, Task]) -> Optional[int]:
    return min((t.start for t in tasks.values()), default=None)


@dataclass
class Candidates:
    """Statically eligible workers per task, plus the tasks that cannot be staffed at all."""

    eligible: Dict[str, List[str]] = field(default_factory=dict)
    infeasible: List[InfeasibleTask] = field(default_factory=list)

    @property
    def edges(self) -> int:
        return sum(len(wids) for tid, wids in self.eligible.items() if tid not in self.blocked)

    @property
    def blocked(self) -> set:
        return {issue.task_id for issue in self.infeasible}


def prefilter(tasks: Mapping[str, Task], workers, model: ConstraintModel) -> Candidates:
    """Reject (task, worker) pairs on stateless hard constraints before search."""
    result = Candidates()
    for tid in sorted(tasks):
        task = tasks[tid]
        eligible: List[str] = []
        blocking = set()
        for wid in sorted(workers):
            failed = model.static_failures(task, workers[wid])
            if failed:
                blocking.update(failed)
            else:
                eligible.append(wid)
        result.eligible[tid] = eligible
        if len(eligible) < task.required_count:
            detail = f"{len(eligible)} of {task.required_count} required workers qualify"
            if not workers:
                detail = "no workers in snapshot"
            result.infeasible.append(
                InfeasibleTask(tid, task.required_count - len(eligible), tuple(sorted(blocking)), detail)
            )
    return result


def capacity_check(state: AssignmentState, task_ids: List[str], model: ConstraintModel) -> List[OverCapacity]:
    """One OverCapacity per load period whose demand exceeds what every worker together may carry."""
    max_load = model.get(MaxLoad.name)
    if not isinstance(max_load, MaxLoad) or not max_load.is_hard:
        return []
    demand: Dict[int, List[float]] = {}
    for tid in task_ids:
        task = state.tasks[tid]
        demand.setdefault(max_load.period_of(task), []).append(task.hours * task.required_count)
    capacity = math.fsum(w.capacity(max_load.hours_per_fte) for w in state.workers.values())
    issues = []
    for period in sorted(demand):
        total = math.fsum(demand[period])
        if total > capacity + _EPS:
            issues.append(OverCapacity(None, total, capacity, (MaxLoad.name,),
                                       f"demand in load period {period} exceeds total capacity"))
    return issues


_AGGREGATE = {MaxLoad.name, "no_overlap"}


def greedy_fill(
    state: AssignmentState,
    task_ids: List[str],
    candidates: Mapping[str, List[str]],
    model: ConstraintModel,
    cancel: Optional[CancellationToken] = None,
) -> List:
    """
    Fill the open slots of ``task_ids`` in the given order.

    A task that cannot be completely staffed is released (an assignment never
    carries a partially staffed task) and reported. Returns the reports.
    """
    unsatisfiable = []
    for tid in task_ids:
        if cancel is not None:
            cancel.raise_if_cancelled()
        task = state.tasks[tid]
        while state.open_slots(tid) > 0:
            eligible = [
                wid for wid in candidates.get(tid, ())
                if not state.is_assigned(tid, wid)
                and model.is_feasible(task, state.workers[wid], state, skip_stateless=True)
            ]
            if not eligible:
                unsatisfiable.append(_unfillable(state, task, candidates.get(tid, ()), model))
                released = state.release(tid)
                if released:
                    logger.info(f"Released {released} from unfillable task {tid}")
                break
            chosen = min(
                eligible,
                key=lambda wid: (state.load_of(wid) + task.hours, state.baseline_of(wid), wid),
            )
            state.assign(tid, chosen)
    return unsatisfiable


def _unfillable(state: AssignmentState, task: Task, candidates, model: ConstraintModel):
    missing = state.open_slots(task.id)
    blocking = set()
    for wid in candidates:
        if not state.is_assigned(task.id, wid):
            blocking.update(model.hard_failures(task, state.workers[wid], state))
    max_load = model.get(MaxLoad.name)
    if blocking and blocking <= _AGGREGATE and MaxLoad.name in blocking and isinstance(max_load, MaxLoad):
        room = math.fsum(
            max(0.0, state.workers[wid].capacity(max_load.hours_per_fte)
                     - max_load.period_hours(wid, max_load.period_of(task), state))
            for wid in candidates
            if not state.is_assigned(task.id, wid)
        )
        return OverCapacity(task.id, task.hours * missing, room, tuple(sorted(blocking)),
                            f"{missing} slot(s) blocked by aggregate limits")
    return InfeasibleTask(task.id, missing, tuple(sorted(blocking)), f"{missing} slot(s) could not be filled")


class Allocator:
    def __init__(self, model: Optional[ConstraintModel] = None, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        self.model = model or ConstraintModel.default(self.settings)

    def baseline_state(self, snapshot: Snapshot, tasks: Optional[Mapping[str, Task]] = None) -> AssignmentState:
        tasks = snapshot.tasks if tasks is None else tasks
        baseline = snapshot.ledger.baseline(snapshot.assignment, planning_horizon_start(tasks))
        return AssignmentState(tasks, snapshot.workers, baseline)

    def allocate(
        self,
        snapshot: Snapshot,
        cancel: Optional[CancellationToken] = None,
        generation: Optional[int] = None,
    ) -> Assignment:
        """
        Plan every task of ``snapshot`` from scratch.

        The result carries ``snapshot.generation + 1`` unless ``generation``
        is given, and ``basis_version`` = ``snapshot.version`` for the
        optimistic commit.
        """
        s = self.settings
        cancel = cancel or CancellationToken()
        generation = snapshot.generation + 1 if generation is None else generation
        logger.info(f"Allocating {len(snapshot.tasks)} tasks over {len(snapshot.workers)} workers")

        state = self.baseline_state(snapshot)
        cands = prefilter(snapshot.tasks, snapshot.workers, self.model)
        issues: List = list(cands.infeasible)
        plannable = task_order(snapshot.tasks, [tid for tid in snapshot.tasks if tid not in cands.blocked])

        for over in capacity_check(state, plannable, self.model):
            logger.warning(f"Over capacity: demand {over.demand:.2f}h, capacity {over.capacity:.2f}h")
            issues.append(over)

        seed_failures = greedy_fill(state, plannable, cands.eligible, self.model, cancel)
        strategy, optimal, budget = "heuristic", False, None

        if s.exact_enabled and 0 < cands.edges <= s.exact_max_edges:
            exact_state, strategy, optimal, budget = self._exact(snapshot, plannable, cands, state, seed_failures, cancel)
            if exact_state is not None:
                state, seed_failures = exact_state, []

        if not optimal:
            outcome = improve(
                state,
                self.model,
                cands.eligible,
                s.fairness_weight,
                max_iterations=s.local_search_max_iterations,
                time_limit_seconds=s.local_search_time_limit_seconds,
                cancel=cancel,
            )
            budget = budget or outcome.budget

        issues.extend(seed_failures)
        assignment = self.finalize(state, generation, snapshot.version, issues, budget, strategy, optimal)
        logger.info(
            f"Allocation gen={generation}: {len(assignment.pairs)} tasks staffed, "
            f"{len(assignment.unsatisfiable)} issues, score={assignment.score:.4f}, strategy={strategy}"
        )
        return assignment

    def _exact(self, snapshot, plannable, cands, seed: AssignmentState, seed_failures, cancel):
        """
        Run the configured exact solver. Returns (state or None, strategy, optimal, budget);
        a None state means the heuristic path continues from the seed.
        """
        s = self.settings
        fresh = self.baseline_state(snapshot)
        incumbent = seed.copy() if not seed_failures else None

        if s.exact_solver == "ortools":
            result, status = solve_with_ortools(
                fresh, plannable, cands.eligible, self.model, s.fairness_weight, s.exact_time_limit_seconds
            )
            if status == "optimal":
                return result, "cpsat", True, None
            budget = None
            if status in ("feasible", "unknown"):
                budget = BudgetExceeded("exact", "time", f"CP-SAT status {status} after {s.exact_time_limit_seconds}s")
            if result is not None and (
                incumbent is None
                or score_state(result, self.model, s.fairness_weight) < score_state(incumbent, self.model, s.fairness_weight) - _EPS
            ):
                return result, "cpsat", False, budget
            return None, "heuristic", False, budget

        outcome = branch_and_bound(
            fresh,
            plannable,
            cands.eligible,
            self.model,
            s.fairness_weight,
            incumbent=incumbent,
            node_limit=s.exact_node_limit,
            time_limit_seconds=s.exact_time_limit_seconds,
            cancel=cancel,
        )
        if outcome.exhausted:
            if outcome.state is not None:
                return outcome.state, "exact", True, None
            # no complete assignment exists: keep the greedy partial result
            return None, "heuristic", False, None
        budget = BudgetExceeded("exact", outcome.limit or "nodes", f"branch-and-bound aborted after {outcome.nodes} nodes")
        if outcome.state is not None:
            # the best complete assignment seen never scores worse than the incumbent
            return outcome.state, "exact", False, budget
        return None, "heuristic", False, budget

    def finalize(
        self,
        state: AssignmentState,
        generation: int,
        basis_version: int,
        issues,
        budget: Optional[BudgetExceeded],
        strategy: str,
        optimal: bool,
    ) -> Assignment:
        return Assignment(
            generation=generation,
            pairs=state.to_pairs(),
            score=score_state(state, self.model, self.settings.fairness_weight),
            soft_violations=soft_violations(state, self.model),
            unsatisfiable=tuple(issues),
            budget=budget,
            strategy=strategy,
            optimal=optimal,
            basis_version=basis_version,
        )
