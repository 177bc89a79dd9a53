"""
Fairness Ledger.

Tracks the load every worker has been committed to, so the allocator can
bias new work towards whoever carried the least. The ledger only changes
through LedgerDelta commits and reverts; trial assignments made during
search never touch it.

Entries are keyed by (worker_id, task_id). A delta removes the entries of
pairs that left the assignment and adds the entries of pairs that joined, so
the per-worker total always equals the sum of committed assignment loads.
"""

import hashlib
import logging
import math
import threading
from collections import defaultdict
from dataclasses import dataclass
from typing import Dict, Iterable, List, Mapping, Optional, Tuple

from werkverdeling.models.entities import Assignment, Task

logger = logging.getLogger(__name__)

HISTORY_TASK_ID = "__history__"

_Key = Tuple[str, str]


@dataclass(frozen=True)
class LedgerEntry:
    worker_id: str
    task_id: str
    load: float
    start: Optional[int] = None  # None: counted regardless of the rolling window

    @property
    def key(self) -> _Key:
        return (self.worker_id, self.task_id)


@dataclass(frozen=True)
class LedgerDelta:
    id: str
    added: Tuple[LedgerEntry, ...] = ()
    removed: Tuple[LedgerEntry, ...] = ()

    @property
    def is_empty(self) -> bool:
        return not self.added and not self.removed

    def net_loads(self) -> Dict[str, float]:
        net: Dict[str, float] = defaultdict(float)
        for e in self.added:
            net[e.worker_id] += e.load
        for e in self.removed:
            net[e.worker_id] -= e.load
        return dict(net)

    @classmethod
    def between(
        cls,
        ledger: "LedgerSnapshot",
        prior: Optional[Assignment],
        new: Assignment,
        tasks: Mapping[str, Task],
    ) -> "LedgerDelta":
        """
        Delta that moves the ledger from ``prior``'s pairs to ``new``'s pairs.

        Removals use the loads the ledger actually holds, so a task whose load
        was edited (or that was cancelled) is taken out at its committed value.
        """
        prior_pairs = prior.pair_set() if prior else frozenset()
        new_pairs = new.pair_set()

        removed: List[LedgerEntry] = []
        added: List[LedgerEntry] = []
        for task_id, worker_id in sorted(prior_pairs):
            committed = ledger.entry(worker_id, task_id)
            if committed is None:
                continue
            task = tasks.get(task_id)
            unchanged = (task_id, worker_id) in new_pairs and task is not None and math.isclose(committed.load, task.hours)
            if not unchanged:
                removed.append(committed)
        for task_id, worker_id in sorted(new_pairs):
            task = tasks[task_id]
            committed = ledger.entry(worker_id, task_id)
            if committed is not None and (task_id, worker_id) in prior_pairs and math.isclose(committed.load, task.hours):
                continue
            added.append(LedgerEntry(worker_id, task_id, task.hours, task.start))

        return cls(id=cls.make_id(new.generation, added, removed), added=tuple(added), removed=tuple(removed))

    @staticmethod
    def make_id(generation: int, added: Iterable[LedgerEntry], removed: Iterable[LedgerEntry]) -> str:
        digest = hashlib.sha256()
        digest.update(str(generation).encode())
        for sign, entries in (("+", added), ("-", removed)):
            for e in entries:
                digest.update(f"{sign}{e.worker_id}|{e.task_id}|{e.load!r}|{e.start}".encode())
        return f"gen{generation}-{digest.hexdigest()[:16]}"


class LedgerSnapshot:
    """Immutable view of the ledger used as input to one planning run."""

    def __init__(
        self,
        entries: Mapping[_Key, Tuple[LedgerEntry, ...]],
        version: int = 0,
        window_minutes: Optional[int] = None,
    ):
        self._entries: Dict[_Key, Tuple[LedgerEntry, ...]] = dict(entries)
        self.version = version
        self.window_minutes = window_minutes

    @classmethod
    def empty(cls) -> "LedgerSnapshot":
        return cls({})

    @classmethod
    def from_loads(cls, loads: Mapping[str, float], version: int = 0) -> "LedgerSnapshot":
        """Historical loads given as plain numbers per worker."""
        entries = {
            (wid, HISTORY_TASK_ID): (LedgerEntry(wid, HISTORY_TASK_ID, float(load)),)
            for wid, load in loads.items()
            if load
        }
        return cls(entries, version)

    def entry(self, worker_id: str, task_id: str) -> Optional[LedgerEntry]:
        found = self._entries.get((worker_id, task_id))
        if not found:
            return None
        if len(found) == 1:
            return found[0]
        return LedgerEntry(worker_id, task_id, math.fsum(e.load for e in found), found[0].start)

    def _counted(self, entry: LedgerEntry, as_of: Optional[int]) -> bool:
        if self.window_minutes is None or as_of is None or entry.start is None:
            return True
        return entry.start >= as_of - self.window_minutes

    def load(self, worker_id: str, as_of: Optional[int] = None, exclude_tasks: Iterable[str] = ()) -> float:
        skip = set(exclude_tasks)
        return math.fsum(
            e.load
            for (wid, tid), found in self._entries.items()
            if wid == worker_id and tid not in skip
            for e in found
            if self._counted(e, as_of)
        )

    def projected_load(self, worker_id: str, task: Task, as_of: Optional[int] = None) -> float:
        return self.load(worker_id, as_of) + task.hours

    def loads(self, as_of: Optional[int] = None) -> Dict[str, float]:
        per_worker: Dict[str, List[float]] = defaultdict(list)
        for found in self._entries.values():
            for e in found:
                if self._counted(e, as_of):
                    per_worker[e.worker_id].append(e.load)
        return {wid: math.fsum(vals) for wid, vals in sorted(per_worker.items())}

    def baseline(self, assignment: Optional[Assignment], as_of: Optional[int] = None) -> Dict[str, float]:
        """Per-worker load with the pairs of ``assignment`` taken out."""
        current = assignment.pair_set() if assignment else frozenset()
        per_worker: Dict[str, List[float]] = defaultdict(list)
        for (wid, tid), found in self._entries.items():
            if (tid, wid) in current:
                continue
            for e in found:
                if self._counted(e, as_of):
                    per_worker[wid].append(e.load)
        return {wid: math.fsum(vals) for wid, vals in per_worker.items()}


class FairnessLedger:
    """
    Mutable ledger owned by a store.

    Commits and reverts are serialized by a single lock (expected scale is a
    team, not a fleet) and are idempotent by delta id, so at-least-once
    delivery from callers cannot double-count load.
    """

    def __init__(self, window_minutes: Optional[int] = None):
        self._entries: Dict[_Key, List[LedgerEntry]] = {}
        self._applied: Dict[str, LedgerDelta] = {}
        self._lock = threading.RLock()
        self.window_minutes = window_minutes
        self.version = 0

    def _add(self, entry: LedgerEntry) -> None:
        self._entries.setdefault(entry.key, []).append(entry)

    def _remove(self, entry: LedgerEntry) -> None:
        found = self._entries.get(entry.key)
        if not found:
            logger.warning(f"Ledger has no entry for {entry.key}; removal skipped")
            return
        for i, existing in enumerate(found):
            if existing == entry:
                del found[i]
                break
        else:
            # committed under a different load; take the whole key out
            found.clear()
        if not found:
            del self._entries[entry.key]

    def load(self, worker_id: str, as_of: Optional[int] = None) -> float:
        return self.snapshot().load(worker_id, as_of)

    def projected_load(self, worker_id: str, task: Task, as_of: Optional[int] = None) -> float:
        return self.load(worker_id, as_of) + task.hours

    def is_applied(self, delta_id: str) -> bool:
        with self._lock:
            return delta_id in self._applied

    def commit(self, delta: LedgerDelta) -> bool:
        """Apply ``delta``. Returns False when it was already applied."""
        with self._lock:
            if delta.id in self._applied:
                logger.debug(f"Ledger delta {delta.id} already applied")
                return False
            for entry in delta.removed:
                self._remove(entry)
            for entry in delta.added:
                self._add(entry)
            self._applied[delta.id] = delta
            self.version += 1
            return True

    def compare_and_commit(self, delta: LedgerDelta, expected_version: int) -> bool:
        with self._lock:
            if self.version != expected_version:
                return False
            return self.commit(delta)

    def revert(self, delta: LedgerDelta) -> bool:
        """Undo ``delta``. Returns False when it is not currently applied."""
        with self._lock:
            if delta.id not in self._applied:
                logger.debug(f"Ledger delta {delta.id} not applied; nothing to revert")
                return False
            for entry in delta.added:
                self._remove(entry)
            for entry in delta.removed:
                self._add(entry)
            del self._applied[delta.id]
            self.version += 1
            return True

    def seed(self, entries: Iterable[LedgerEntry]) -> None:
        """Load historical entries (e.g. from persistence) without a delta."""
        with self._lock:
            for entry in entries:
                self._add(entry)
            self.version += 1

    def snapshot(self) -> LedgerSnapshot:
        with self._lock:
            frozen = {key: tuple(found) for key, found in self._entries.items()}
            return LedgerSnapshot(frozen, self.version, self.window_minutes)
