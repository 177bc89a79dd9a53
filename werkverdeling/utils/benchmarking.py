import time
from dataclasses import dataclass
from typing import List, Optional

from werkverdeling.config.settings import Settings, get_settings
from werkverdeling.engine.allocator import Allocator
from werkverdeling.engine.constraints import ConstraintModel
from werkverdeling.models.entities import Snapshot

STRATEGIES = ("heuristic", "branch_and_bound", "ortools")


@dataclass
class BenchmarkResult:
    strategy: str
    time_seconds: float
    score: float
    optimal: bool
    unsatisfiable: int
    budget_exceeded: bool
    num_tasks: int


def strategy_settings(settings: Settings, strategy: str) -> Settings:
    if strategy == "heuristic":
        return settings.model_copy(update={"exact_enabled": False})
    # benchmarking forces the exact path regardless of instance size
    return settings.model_copy(update={
        "exact_enabled": True,
        "exact_solver": strategy,
        "exact_max_edges": max(settings.exact_max_edges, 10 ** 9),
    })


def benchmark_strategies(
    snapshot: Snapshot,
    settings: Optional[Settings] = None,
    model: Optional[ConstraintModel] = None,
) -> List[BenchmarkResult]:
    """
    Plan the same snapshot with local search only, branch-and-bound and CP-SAT.
    Returns one BenchmarkResult per strategy.
    """
    settings = settings or get_settings()
    results = []
    for strategy in STRATEGIES:
        s = strategy_settings(settings, strategy)
        allocator = Allocator(model or ConstraintModel.default(s), s)
        start = time.time()
        assignment = allocator.allocate(snapshot)
        elapsed = time.time() - start
        results.append(BenchmarkResult(
            strategy=strategy,
            time_seconds=elapsed,
            score=assignment.score,
            optimal=assignment.optimal,
            unsatisfiable=len(assignment.unsatisfiable),
            budget_exceeded=assignment.budget is not None,
            num_tasks=len(snapshot.tasks),
        ))
    return results

