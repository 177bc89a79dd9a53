"""
Exact Branch-and-Bound Solver

Depth-first search over worker slots for small instances, used to certify an
optimal assignment instead of improving the greedy seed heuristically.

Time Complexity: O(b^d) worst case where:
    b = branching factor (eligible workers per slot)
    d = depth (total number of worker slots)

The allocator only calls this below ``exact_max_edges`` candidate edges, and
node/time budgets bound it regardless.

Key Techniques:
- Minimum Remaining Values (MRV) ordering: tasks with the fewest eligible
  workers are branched on first, so dead ends surface early
- Least-loaded-first value ordering, which finds a good incumbent quickly
- Symmetry breaking: the workers of one task are chosen in ascending id order
- Bound: soft penalties only grow as pairs are added, so a partial
  assignment whose penalty already reaches the incumbent is pruned
"""

import logging
import time
from dataclasses import dataclass
from typing import List, Mapping, Optional, Tuple

from werkverdeling.engine.cancellation import CancellationToken
from werkverdeling.engine.constraints import ConstraintModel
from werkverdeling.engine.state import AssignmentState
from werkverdeling.utils.scoring import score_state, soft_penalty

logger = logging.getLogger(__name__)

_EPS = 1e-9


@dataclass
class ExactOutcome:
    state: Optional[AssignmentState]  # best complete assignment found, if any
    score: float
    exhausted: bool  # True when the whole tree was searched
    nodes: int
    limit: Optional[str] = None  # "nodes" or "time" when a budget stopped the search


class _Budget(Exception):
    def __init__(self, limit: str):
        self.limit = limit


def order_slots(task_ids: List[str], candidates: Mapping[str, List[str]], state: AssignmentState) -> List[str]:
    """
    One entry per worker slot, MRV first.

    Ties are broken by priority (highest first), start time, then task id.
    """
    tasks = state.tasks
    ordered = sorted(
        task_ids,
        key=lambda tid: (
            len(candidates.get(tid, ())) - tasks[tid].required_count,
            -tasks[tid].priority,
            tasks[tid].start,
            tid,
        ),
    )
    return [tid for tid in ordered for _ in range(state.open_slots(tid))]


def branch_and_bound(
    state: AssignmentState,
    task_ids: List[str],
    candidates: Mapping[str, List[str]],
    model: ConstraintModel,
    fairness_weight: float = 1.0,
    incumbent: Optional[AssignmentState] = None,
    node_limit: int = 200_000,
    time_limit_seconds: Optional[float] = None,
    cancel: Optional[CancellationToken] = None,
) -> ExactOutcome:
    """
    Search for the minimum-objective complete assignment of ``task_ids``.

    Args:
        state: Starting state (baseline loads, possibly fixed pairs); copied
        task_ids: Tasks whose open slots are searched
        candidates: task_id -> statically eligible worker ids
        model: Constraint model for feasibility and penalties
        fairness_weight: Weight of load variance in the objective
        incumbent: Known complete assignment used as the initial upper bound
        node_limit: Maximum number of search nodes
        time_limit_seconds: Wall-clock budget
        cancel: Token checked at every node

    Returns:
        ExactOutcome; ``exhausted`` is False when a budget cut the search short
    """
    work = state.copy()
    slots = order_slots(task_ids, candidates, work)
    deadline = time.monotonic() + time_limit_seconds if time_limit_seconds else None

    best: List = [float("inf"), None]
    if incumbent is not None:
        best = [score_state(incumbent, model, fairness_weight), incumbent.copy()]
    nodes = [0]

    def tick():
        nodes[0] += 1
        if cancel is not None:
            cancel.raise_if_cancelled()
        if nodes[0] > node_limit:
            raise _Budget("nodes")
        if deadline is not None and nodes[0] % 256 == 0 and time.monotonic() > deadline:
            raise _Budget("time")

    def values(task_id: str) -> List[str]:
        task = work.tasks[task_id]
        held = work.workers_of(task_id)
        floor = max(held) if held else ""
        options = [
            wid for wid in candidates.get(task_id, ())
            if wid > floor and model.is_feasible(task, work.workers[wid], work, skip_stateless=True)
        ]
        return sorted(options, key=lambda wid: (work.load_of(wid), wid))

    def dfs(depth: int):
        tick()
        if depth == len(slots):
            s = score_state(work, model, fairness_weight)
            if s < best[0] - _EPS:
                best[0] = s
                best[1] = work.copy()
            return
        if soft_penalty(work, model) >= best[0] - _EPS:
            return
        task_id = slots[depth]
        for worker_id in values(task_id):
            work.assign(task_id, worker_id)
            dfs(depth + 1)
            work.unassign(task_id, worker_id)

    limit = None
    try:
        dfs(0)
        exhausted = True
    except _Budget as stop:
        exhausted = False
        limit = stop.limit
        logger.info(f"Branch-and-bound stopped by {stop.limit} budget after {nodes[0]} nodes")

    logger.debug(f"Branch-and-bound: {nodes[0]} nodes, best objective {best[0]}")
    return ExactOutcome(state=best[1], score=best[0], exhausted=exhausted, nodes=nodes[0], limit=limit)
