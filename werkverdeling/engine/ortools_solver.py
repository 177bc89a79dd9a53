import logging
from itertools import combinations
from typing import Dict, List, Mapping, Optional, Tuple

from ortools.sat.python import cp_model

from werkverdeling.engine.constraints import ConstraintModel, MaxLoad, NoOverlap, RestSpacing
from werkverdeling.engine.state import AssignmentState
from werkverdeling.graph.conflict_graph import build_conflict_graph

logger = logging.getLogger(__name__)

LOAD_SCALE = 100  # centi-hours
PENALTY_SCALE = 1000


def solve_with_ortools(
    state: AssignmentState,
    task_ids: List[str],
    candidates: Mapping[str, List[str]],
    model: ConstraintModel,
    fairness_weight: float = 1.0,
    time_limit_seconds: float = 10,
) -> Tuple[Optional[AssignmentState], str]:
    """
    Solve the assignment exactly with Google OR-Tools CP-SAT.

    Hard constraints: exact worker count per task, statically eligible pairs
    only, no overlap, hard max-load. Objective: stateless soft penalties,
    rest spacing, soft max-load excess and the sum of squared loads (equal to
    load variance up to a constant once every task is filled).

    Constraints the model cannot express are checked on the decoded result;
    a solution failing them is discarded.

    Returns (state or None, status) with status one of
    "optimal", "feasible", "infeasible", "unknown", "rejected".
    """
    tasks = state.tasks
    workers = state.workers
    cp = cp_model.CpModel()
    n_workers = max(1, len(workers))

    x: Dict[Tuple[str, str], cp_model.IntVar] = {}
    for tid in task_ids:
        for wid in candidates.get(tid, ()):
            x[tid, wid] = cp.NewBoolVar(f"x_{tid}_{wid}")

    for tid in task_ids:
        cp.Add(sum(x[tid, wid] for wid in candidates.get(tid, ())) == tasks[tid].required_count)

    by_worker: Dict[str, List[str]] = {wid: [] for wid in workers}
    for tid, wid in x:
        by_worker[wid].append(tid)

    no_overlap = next((c for c in model.hard if isinstance(c, NoOverlap)), None)
    max_load = next((c for c in model if isinstance(c, MaxLoad)), None)
    rest = next((c for c in model.soft if isinstance(c, RestSpacing)), None)

    # penalty terms are scaled by n * LOAD_SCALE^2 so they share units with the squared loads
    unit = PENALTY_SCALE * n_workers * LOAD_SCALE * LOAD_SCALE
    objective = []

    graph = build_conflict_graph(tasks[tid] for tid in task_ids)
    for wid, held in by_worker.items():
        worker = workers[wid]
        if no_overlap is not None:
            for t1, t2 in combinations(sorted(held), 2):
                if t2 in graph[t1]:
                    cp.Add(x[t1, wid] + x[t2, wid] <= 1)

        baseline = int(round(state.load_of(wid) * LOAD_SCALE))
        load_terms = [int(round(tasks[tid].hours * LOAD_SCALE)) * x[tid, wid] for tid in held]
        upper = baseline + sum(int(round(tasks[tid].hours * LOAD_SCALE)) for tid in held)
        load = cp.NewIntVar(0, max(upper, baseline), f"load_{wid}")
        cp.Add(load == baseline + sum(load_terms))

        if max_load is not None:
            capacity = int(round(worker.capacity(max_load.hours_per_fte) * LOAD_SCALE))
            periods: Dict[int, List[str]] = {}
            for tid in held:
                periods.setdefault(max_load.period_of(tasks[tid]), []).append(tid)
            for period, period_tids in sorted(periods.items()):
                # tasks outside the planned set that the worker already holds in this period
                fixed = int(round(sum(
                    t.hours for t in state.tasks_of(wid) if (t.id, wid) not in x and max_load.period_of(t) == period
                ) * LOAD_SCALE))
                period_load = fixed + sum(int(round(tasks[tid].hours * LOAD_SCALE)) * x[tid, wid] for tid in period_tids)
                if max_load.is_hard:
                    cp.Add(period_load <= capacity)
                else:
                    bound = fixed + sum(int(round(tasks[tid].hours * LOAD_SCALE)) for tid in period_tids)
                    excess = cp.NewIntVar(0, max(bound, 0), f"excess_{wid}_{period}")
                    cp.Add(excess >= period_load - capacity)
                    objective.append(int(round(max_load.weight * PENALTY_SCALE * n_workers * LOAD_SCALE)) * excess)

        if rest is not None:
            for t1, t2 in combinations(sorted(held), 2):
                gap = tasks[t1].window.gap_to(tasks[t2].window)
                if 0 <= gap < rest.min_gap:
                    both = cp.NewBoolVar(f"rest_{wid}_{t1}_{t2}")
                    cp.Add(both >= x[t1, wid] + x[t2, wid] - 1)
                    objective.append(int(round(rest.weight * unit)) * both)

        if fairness_weight > 0:
            square = cp.NewIntVar(0, max(upper, baseline) ** 2, f"sq_{wid}")
            cp.AddMultiplicationEquality(square, [load, load])
            objective.append(int(round(fairness_weight * PENALTY_SCALE)) * square)

    # stateless soft constraints only depend on the pair
    for (tid, wid), var in x.items():
        penalty = sum(
            c.evaluate(tasks[tid], workers[wid], None).penalty for c in model.soft if c.stateless
        )
        if penalty:
            objective.append(int(round(penalty * unit)) * var)

    if objective:
        cp.Minimize(sum(objective))

    solver = cp_model.CpSolver()
    solver.parameters.max_time_in_seconds = time_limit_seconds
    solver.parameters.num_workers = 1
    solver.parameters.random_seed = 0
    solver.parameters.log_search_progress = False

    status = solver.Solve(cp)
    status_name = {
        cp_model.OPTIMAL: "optimal",
        cp_model.FEASIBLE: "feasible",
        cp_model.INFEASIBLE: "infeasible",
    }.get(status, "unknown")
    logger.info(f"CP-SAT finished with status {status_name} in {solver.WallTime():.2f}s")

    if status not in (cp_model.OPTIMAL, cp_model.FEASIBLE):
        return None, status_name

    result = state.copy()
    for (tid, wid), var in sorted(x.items()):
        if solver.Value(var):
            result.assign(tid, wid)

    for tid in task_ids:
        for wid in result.workers_of(tid):
            failed = model.hard_failures(tasks[tid], workers[wid], result)
            if failed:
                logger.warning(f"CP-SAT pair ({tid}, {wid}) fails {failed}; solution discarded")
                return None, "rejected"

    return result, status_name
