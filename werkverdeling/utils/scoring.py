import math
from typing import Iterable, Tuple

from werkverdeling.engine.constraints import ConstraintModel
from werkverdeling.engine.state import AssignmentState
from werkverdeling.models.constraints import Violation
from werkverdeling.models.entities import ConstraintKind


def fairness_variance(loads: Iterable[float]) -> float:
    values = list(loads)
    if not values:
        return 0.0
    mean = math.fsum(values) / len(values)
    return math.fsum((v - mean) ** 2 for v in values) / len(values)


def load_spread(loads: Iterable[float]) -> float:
    values = list(loads)
    return max(values) - min(values) if values else 0.0


def soft_violations(state: AssignmentState, model: ConstraintModel) -> Tuple[Violation, ...]:
    return tuple(model.evaluate_assignment(state, ConstraintKind.SOFT))


def soft_penalty(state: AssignmentState, model: ConstraintModel) -> float:
    return math.fsum(v.penalty for v in soft_violations(state, model))


def score_state(state: AssignmentState, model: ConstraintModel, fairness_weight: float = 1.0) -> float:
    """Objective: total soft-constraint penalty plus weighted load variance over the pool."""
    return soft_penalty(state, model) + fairness_weight * fairness_variance(state.loads().values())
