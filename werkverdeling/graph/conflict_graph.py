from typing import Dict, Iterable, List, Mapping, Set

from werkverdeling.models.entities import Task


def build_conflict_graph(tasks: Iterable[Task]) -> Dict[str, Set[str]]:
    """Edges join tasks whose time windows overlap (sweep over start times)."""
    ordered: List[Task] = sorted(tasks, key=lambda t: (t.start, t.id))
    graph: Dict[str, Set[str]] = {t.id: set() for t in ordered}
    for i, t1 in enumerate(ordered):
        for t2 in ordered[i + 1:]:
            if t2.start >= t1.end:
                break
            graph[t1.id].add(t2.id)
            graph[t2.id].add(t1.id)
    return graph


def affected_tasks(tasks: Mapping[str, Task], seeds: Iterable[Task]) -> Set[str]:
    """Tasks touching the same time window as, or sharing a skill with, any seed."""
    seeds = list(seeds)
    touched: Set[str] = set()
    for task in tasks.values():
        for seed in seeds:
            if task.id == seed.id or task.window.overlaps(seed.window) or task.required_skills & seed.required_skills:
                touched.add(task.id)
                break
    return touched
