"""Change events consumed by the rebalancer."""

from dataclasses import dataclass
from typing import Optional

from werkverdeling.models.entities import Task, TimeWindow, Worker


@dataclass(frozen=True)
class ChangeEvent:
    @property
    def kind(self) -> str:
        return type(self).__name__


@dataclass(frozen=True)
class TaskAdded(ChangeEvent):
    task: Task


@dataclass(frozen=True)
class TaskCancelled(ChangeEvent):
    task_id: str


@dataclass(frozen=True)
class TaskUpdated(ChangeEvent):
    task: Task


@dataclass(frozen=True)
class WorkerAdded(ChangeEvent):
    worker: Worker


@dataclass(frozen=True)
class WorkerUnavailable(ChangeEvent):
    worker_id: str
    window: Optional[TimeWindow] = None  # None: the worker drops out entirely


@dataclass(frozen=True)
class WorkerUpdated(ChangeEvent):
    worker: Worker
