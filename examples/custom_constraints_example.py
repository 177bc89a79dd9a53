"""
Example: Extending Werkverdeling with custom constraints

This example shows how to add a domain-specific constraint and plan with
it. The allocator, local search and rebalancer pick it up through the
ConstraintModel; none of them change.
"""

from werkverdeling.engine.constraints import Constraint, ConstraintModel
from werkverdeling.engine.service import PlanningEngine
from werkverdeling.models.entities import ConstraintKind, Snapshot, Task, TimeWindow, Worker


# 1. Define a custom constraint
class NoNightsForTrainees(Constraint):
    """
    Trainees may not work tasks starting before 07:00 or ending after 22:00.
    Hard by default; registered as soft it costs ``weight`` per night task.
    """

    name = "no_nights_for_trainees"
    stateless = True  # depends only on the (task, worker) pair

    def evaluate(self, task, worker, state=None):
        if "trainee" not in worker.skills:
            return self._result(True)
        minute_of_day = task.start % 1440
        night = minute_of_day < 7 * 60 or minute_of_day + task.window.duration > 22 * 60
        return self._result(not night, self.weight)


# 2. Start from the built-in model and register the custom constraint
model = ConstraintModel.default()
model.register(NoNightsForTrainees(kind=ConstraintKind.HARD))


# 3. Plan with it
def main():
    day = 1440
    tasks = [
        Task("early-shift", TimeWindow(day + 6 * 60, day + 14 * 60), required_count=1, priority=2),
        Task("day-shift", TimeWindow(2 * day + 9 * 60, 2 * day + 17 * 60), required_count=1),
    ]
    workers = [
        Worker("ann", skills={"trainee"}, availability=[(0, 7 * day)]),
        Worker("bob", availability=[(0, 7 * day)]),
    ]
    engine = PlanningEngine(model=model)
    assignment = engine.plan(Snapshot.build(tasks, workers))
    print(assignment.pairs)  # early-shift goes to bob: ann is a trainee
    for explanation in engine.explain(Snapshot.build(tasks, workers), assignment, "early-shift", include_candidates=True):
        print(explanation)


if __name__ == "__main__":
    main()
