from dataclasses import dataclass
from typing import Optional

from werkverdeling.models.entities import ConstraintKind


@dataclass(frozen=True)
class ConstraintResult:
    name: str
    satisfied: bool
    kind: ConstraintKind
    penalty: float = 0.0  # only meaningful for soft constraints


@dataclass(frozen=True)
class Violation:
    constraint: str
    kind: ConstraintKind
    worker_id: str
    task_id: Optional[str] = None
    penalty: float = 0.0
    detail: str = ""
