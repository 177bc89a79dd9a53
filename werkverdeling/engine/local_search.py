"""
Local Search Improvement Module.

Refines a hard-feasible assignment in place by moving work between workers.

Move operators:
- Reassignment: hand one (task, worker) pair to another eligible worker
- Swap: exchange the workers of two (task, worker) pairs

Key Features:
- Works from an existing feasible assignment (greedy seed or prior generation)
- Only hard-feasible moves are tried; a move is kept only if it strictly
  lowers the objective (soft penalty + weighted load variance)
- First-improvement in a deterministic scan order, so identical inputs give
  identical results
- Iteration and wall-clock budgets; hitting either is reported as
  BudgetExceeded and the best assignment so far is kept
- Optional scope restricts moves to the tasks touched by a change event

Complexity:
- One pass scans O(P * W) reassignments and O(P^2) swaps, P = pairs, W = workers
- Each candidate move re-scores only the workers it touches
"""

import logging
import math
import time
from dataclasses import dataclass
from typing import Dict, Iterable, Iterator, List, Mapping, Optional, Set, Tuple

from werkverdeling.engine.cancellation import CancellationToken
from werkverdeling.engine.constraints import ConstraintModel
from werkverdeling.engine.errors import BudgetExceeded
from werkverdeling.engine.state import AssignmentState

logger = logging.getLogger(__name__)

_EPS = 1e-9


@dataclass
class SearchOutcome:
    state: AssignmentState
    score: float
    moves: int
    budget: Optional[BudgetExceeded] = None


class ObjectiveTracker:
    """
    Keeps per-worker loads and soft penalties so a move is scored by
    re-evaluating only the workers it touches.
    """

    def __init__(self, state: AssignmentState, model: ConstraintModel, fairness_weight: float):
        self.state = state
        self.model = model
        self.fairness_weight = fairness_weight
        self.loads: Dict[str, float] = state.loads()
        self.penalties: Dict[str, float] = {
            wid: model.worker_penalty(state.workers[wid], state) for wid in state.workers
        }
        self._refresh()

    def _refresh(self) -> None:
        self._n = len(self.loads)
        self._sum = math.fsum(self.loads.values())
        self._sumsq = math.fsum(v * v for v in self.loads.values())
        self._penalty = math.fsum(self.penalties.values())

    def _variance(self, total: float, sumsq: float) -> float:
        if not self._n:
            return 0.0
        return max(0.0, sumsq / self._n - (total / self._n) ** 2)

    @property
    def total(self) -> float:
        return self._penalty + self.fairness_weight * self._variance(self._sum, self._sumsq)

    def trial(self, worker_ids: Iterable[str]) -> Tuple[float, Dict[str, float], Dict[str, float]]:
        """Objective if the current state of ``worker_ids`` were accepted."""
        loads = {wid: self.state.load_of(wid) for wid in worker_ids}
        pens = {wid: self.model.worker_penalty(self.state.workers[wid], self.state) for wid in worker_ids}
        total = self._sum + sum(loads[w] - self.loads[w] for w in loads)
        sumsq = self._sumsq + sum(loads[w] ** 2 - self.loads[w] ** 2 for w in loads)
        penalty = self._penalty + sum(pens[w] - self.penalties[w] for w in pens)
        return penalty + self.fairness_weight * self._variance(total, sumsq), loads, pens

    def accept(self, loads: Mapping[str, float], penalties: Mapping[str, float]) -> None:
        self.loads.update(loads)
        self.penalties.update(penalties)
        self._refresh()


def _touched(state: AssignmentState, task_ids: Iterable[str], worker_ids: Iterable[str]) -> List[str]:
    touched: Set[str] = set(worker_ids)
    for tid in task_ids:
        touched.update(state.workers_of(tid))
    return sorted(touched)


def _moves(
    state: AssignmentState,
    candidates: Mapping[str, List[str]],
    scope: Optional[Set[str]],
) -> Iterator[Tuple]:
    pairs = [(t, w) for t, w in state.pairs() if scope is None or t in scope]
    for task_id, worker_id in pairs:
        holders = state.workers_of(task_id)
        for other in candidates.get(task_id, ()):
            if other != worker_id and other not in holders:
                yield ("reassign", task_id, worker_id, other)
    for i, (t1, w1) in enumerate(pairs):
        for t2, w2 in pairs[i + 1:]:
            if t1 == t2 or w1 == w2:
                continue
            if w2 not in candidates.get(t1, ()) or w1 not in candidates.get(t2, ()):
                continue
            if state.is_assigned(t1, w2) or state.is_assigned(t2, w1):
                continue
            yield ("swap", t1, w1, t2, w2)


def _try_reassign(state, model, tracker, task_id, old, new) -> bool:
    task = state.tasks[task_id]
    state.unassign(task_id, old)
    if model.is_feasible(task, state.workers[new], state, skip_stateless=True):
        state.assign(task_id, new)
        score, loads, pens = tracker.trial(_touched(state, [task_id], [old, new]))
        if score < tracker.total - _EPS:
            tracker.accept(loads, pens)
            return True
        state.unassign(task_id, new)
    state.assign(task_id, old)
    return False


def _try_swap(state, model, tracker, t1, w1, t2, w2) -> bool:
    task1, task2 = state.tasks[t1], state.tasks[t2]
    state.unassign(t1, w1)
    state.unassign(t2, w2)
    accepted = False
    if model.is_feasible(task1, state.workers[w2], state, skip_stateless=True):
        state.assign(t1, w2)
        if model.is_feasible(task2, state.workers[w1], state, skip_stateless=True):
            state.assign(t2, w1)
            score, loads, pens = tracker.trial(_touched(state, [t1, t2], [w1, w2]))
            if score < tracker.total - _EPS:
                tracker.accept(loads, pens)
                accepted = True
            else:
                state.unassign(t2, w1)
        if not accepted:
            state.unassign(t1, w2)
    if not accepted:
        state.assign(t1, w1)
        state.assign(t2, w2)
    return accepted


def _improvable(state, model, candidates, fairness_weight, scope) -> bool:
    """True if one more scan would find an improving move; ``state`` is left as is."""
    trial = state.copy()
    tracker = ObjectiveTracker(trial, model, fairness_weight)
    for move in _moves(trial, candidates, scope):
        attempt = _try_reassign if move[0] == "reassign" else _try_swap
        if attempt(trial, model, tracker, *move[1:]):
            return True
    return False


def improve(
    state: AssignmentState,
    model: ConstraintModel,
    candidates: Mapping[str, List[str]],
    fairness_weight: float = 1.0,
    scope: Optional[Iterable[str]] = None,
    max_iterations: int = 500,
    time_limit_seconds: Optional[float] = None,
    cancel: Optional[CancellationToken] = None,
) -> SearchOutcome:
    """
    Improve ``state`` in place until no improving move exists or a budget runs out.

    Args:
        state: Hard-feasible starting assignment (mutated)
        model: Constraint model used for feasibility and penalties
        candidates: task_id -> statically eligible worker ids (sorted)
        fairness_weight: Weight of load variance in the objective
        scope: Only pairs of these tasks are moved (None: all tasks)
        max_iterations: Maximum number of accepted moves
        time_limit_seconds: Wall-clock budget (None: unbounded)
        cancel: Token checked between candidate moves

    Returns:
        SearchOutcome with the final objective and, if a budget stopped the
        search early, a BudgetExceeded record
    """
    scope_set = set(scope) if scope is not None else None
    tracker = ObjectiveTracker(state, model, fairness_weight)
    deadline = time.monotonic() + time_limit_seconds if time_limit_seconds else None
    moves = 0
    budget = None
    start_score = tracker.total

    while True:
        if moves >= max_iterations:
            if _improvable(state, model, candidates, fairness_weight, scope_set):
                budget = BudgetExceeded("local_search", "iterations", f"stopped after {moves} moves")
            break
        improved = False
        for move in _moves(state, candidates, scope_set):
            if cancel is not None:
                cancel.raise_if_cancelled()
            if deadline is not None and time.monotonic() > deadline:
                budget = BudgetExceeded("local_search", "time", f"{time_limit_seconds}s elapsed after {moves} moves")
                break
            if move[0] == "reassign":
                improved = _try_reassign(state, model, tracker, *move[1:])
            else:
                improved = _try_swap(state, model, tracker, *move[1:])
            if improved:
                moves += 1
                logger.debug(f"Accepted {move} -> objective {tracker.total:.4f}")
                break
        if budget is not None or not improved:
            break

    logger.info(f"Local search: {moves} moves, objective {start_score:.4f} -> {tracker.total:.4f}")
    # re-score from scratch so incremental rounding never leaks into results
    final = ObjectiveTracker(state, model, fairness_weight).total
    return SearchOutcome(state=state, score=final, moves=moves, budget=budget)
