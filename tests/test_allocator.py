import pytest

from werkverdeling.engine.allocator import Allocator, prefilter, task_order
from werkverdeling.engine.cancellation import CancellationToken
from werkverdeling.engine.constraints import ConstraintModel
from werkverdeling.engine.errors import InfeasibleTask, OverCapacity, PlanningCancelled
from werkverdeling.engine.local_search import improve
from werkverdeling.engine.ortools_solver import solve_with_ortools
from werkverdeling.engine.solver import branch_and_bound
from werkverdeling.engine.state import AssignmentState
from werkverdeling.models.entities import Snapshot, TimeWindow


def assert_hard_feasible(snapshot, assignment, model):
    """Every pair passes every hard constraint and no worker holds overlapping tasks."""
    baseline = snapshot.ledger.baseline(assignment)
    state = AssignmentState.from_assignment(snapshot.tasks, snapshot.workers, baseline, assignment)
    for task_id, worker_ids in assignment.pairs.items():
        task = snapshot.tasks[task_id]
        assert len(worker_ids) == task.required_count
        for worker_id in worker_ids:
            assert model.hard_failures(task, snapshot.workers[worker_id], state) == []
    for worker_id in snapshot.workers:
        held = sorted((snapshot.tasks[t] for t in assignment.tasks_for(worker_id)), key=lambda t: t.start)
        for first, second in zip(held, held[1:]):
            assert not first.window.overlaps(second.window)


class TestGreedySeed:
    """Greedy ordering and tie-breaking."""

    def test_task_order(self, shift):
        tasks = {t.id: t for t in [shift("late", 2), shift("urgent", 3, priority=5), shift("b", 1), shift("a", 1)]}
        assert task_order(tasks) == ["urgent", "a", "b", "late"]

    def test_three_shifts_two_workers(self, three_shifts, settings, model):
        """The less-loaded worker gets 2 of the 3 tasks, the other gets 1."""
        assignment = Allocator(model, settings.model_copy(update={"exact_enabled": False})).allocate(three_shifts)

        assert assignment.unsatisfiable == ()
        assert len(assignment.tasks_for("a")) == 2
        assert len(assignment.tasks_for("b")) == 1
        assert assignment.pairs == {"t1": ("a",), "t2": ("b",), "t3": ("a",)}

    def test_ties_broken_by_worker_id(self, shift, week_worker, settings, model):
        snapshot = Snapshot.build([shift("t1", 1)], [week_worker("zed"), week_worker("amy")])
        assignment = Allocator(model, settings).allocate(snapshot)
        assert assignment.pairs == {"t1": ("amy",)}

    def test_history_steers_new_work(self, shift, week_worker, settings, model):
        snapshot = Snapshot.build([shift("t1", 1)], [week_worker("a"), week_worker("b")], ledger={"a": 10.0})
        assert Allocator(model, settings).allocate(snapshot).pairs == {"t1": ("b",)}

    def test_priority_wins_contested_worker(self, shift, week_worker, settings, model):
        snapshot = Snapshot.build(
            [shift("routine", 1), shift("urgent", 1, start_hour=10, hours=2, priority=5)],
            [week_worker("solo")],
        )
        assignment = Allocator(model, settings).allocate(snapshot)

        assert assignment.pairs == {"urgent": ("solo",)}
        assert [i.task_id for i in assignment.unsatisfiable] == ["routine"]
        assert assignment.unsatisfiable[0].blocking == ("no_overlap",)


class TestAllocatorProperties:
    def test_determinism(self, skilled_scenario, settings, model):
        first = Allocator(model, settings).allocate(skilled_scenario)
        second = Allocator(model, settings).allocate(skilled_scenario)
        assert first == second

    @pytest.mark.parametrize("exact_solver", ["branch_and_bound", "ortools"])
    def test_hard_constraints_hold(self, skilled_scenario, settings, model, exact_solver):
        s = settings.model_copy(update={"exact_solver": exact_solver})
        assignment = Allocator(model, s).allocate(skilled_scenario)

        assert assignment.unsatisfiable == ()
        assert_hard_feasible(skilled_scenario, assignment, model)

    def test_heuristic_respects_hard_constraints(self, skilled_scenario, settings, model):
        assignment = Allocator(model, settings.model_copy(update={"exact_enabled": False})).allocate(skilled_scenario)
        assert assignment.strategy == "heuristic"
        assert_hard_feasible(skilled_scenario, assignment, model)

    def test_generation_and_basis_version(self, three_shifts, settings, model):
        assignment = Allocator(model, settings).allocate(three_shifts)
        assert assignment.generation == three_shifts.generation + 1
        assert assignment.basis_version == three_shifts.version

    def test_soft_max_load_allows_overtime(self, shift, week_worker, settings):
        s = settings.model_copy(update={"max_load_mode": "soft", "max_load_weight": 1.0})
        snapshot = Snapshot.build([shift("t1", 1), shift("t2", 2)], [week_worker("a", max_load=8)])
        assignment = Allocator(ConstraintModel.default(s), s).allocate(snapshot)

        assert assignment.pairs == {"t1": ("a",), "t2": ("a",)}
        assert [v.constraint for v in assignment.soft_violations] == ["max_load"]


class TestUnsatisfiable:
    def test_missing_skill_is_reported_not_dropped(self, shift, week_worker, settings, model):
        snapshot = Snapshot.build([shift("t1", 1, skills={"forklift"}), shift("t2", 2)], [week_worker("a")])
        assignment = Allocator(model, settings).allocate(snapshot)

        assert assignment.pairs == {"t2": ("a",)}
        issue = assignment.unsatisfiable[0]
        assert isinstance(issue, InfeasibleTask)
        assert issue.task_id == "t1"
        assert issue.missing == 1
        assert issue.blocking == ("skill_match",)
        assert not assignment.is_feasible

    def test_no_workers(self, shift, settings, model):
        assignment = Allocator(model, settings).allocate(Snapshot.build([shift("t1", 1)], []))
        assert assignment.pairs == {}
        assert assignment.unsatisfiable[0].detail == "no workers in snapshot"

    def test_partially_staffed_task_is_released(self, shift, week_worker, settings, model):
        """A two-person task with one free worker is not half-staffed."""
        snapshot = Snapshot.build(
            [shift("solo", 1, priority=1), shift("pair", 1, start_hour=10, hours=2, count=2)],
            [week_worker("a"), week_worker("b")],
        )
        assignment = Allocator(model, settings).allocate(snapshot)

        assert "pair" not in assignment.pairs
        assert len(assignment.pairs["solo"]) == 1
        assert [(i.task_id, i.missing) for i in assignment.unsatisfiable] == [("pair", 1)]

    def test_over_capacity(self, shift, week_worker, settings, model):
        snapshot = Snapshot.build([shift("t1", 1), shift("t2", 2)], [week_worker("a", max_load=8)])
        assignment = Allocator(model, settings).allocate(snapshot)

        assert assignment.pairs == {"t1": ("a",)}
        issues = [i for i in assignment.unsatisfiable if isinstance(i, OverCapacity)]
        assert [i.task_id for i in issues] == [None, "t2"]
        assert issues[0].demand == pytest.approx(16.0)
        assert issues[0].capacity == pytest.approx(8.0)

    def test_prefilter_names_blocking_constraints(self, shift, week_worker, model):
        tasks = {"t1": shift("t1", 1, skills={"x"})}
        workers = {"a": week_worker("a", skills={"x"}, availability=[]), "b": week_worker("b")}
        cands = prefilter(tasks, workers, model)
        assert cands.eligible == {"t1": []}
        assert cands.infeasible[0].blocking == ("availability", "skill_match")


class TestLoadPeriods:
    """Capacity is charged per load period; history only steers fairness."""

    @pytest.fixture
    def fortnight(self, shift, week_worker):
        days = [0, 1, 2, 3, 4, 7, 8, 9, 10, 11]
        worker = week_worker("a", availability=[TimeWindow(0, 14 * 1440)])
        return [shift(f"d{day}", day) for day in days], worker

    @pytest.mark.parametrize("exact_solver", ["branch_and_bound", "ortools"])
    def test_two_weeks_fully_staffed(self, fortnight, settings, model, exact_solver):
        tasks, worker = fortnight
        s = settings.model_copy(update={"exact_solver": exact_solver})
        assignment = Allocator(model, s).allocate(Snapshot.build(tasks, [worker]))

        assert assignment.unsatisfiable == ()
        assert len(assignment.tasks_for("a")) == 10

    def test_overfull_week_is_reported_per_period(self, fortnight, shift, settings, model):
        tasks, worker = fortnight
        snapshot = Snapshot.build(tasks + [shift("d5", 5)], [worker])
        assignment = Allocator(model, settings).allocate(snapshot)

        over = [i for i in assignment.unsatisfiable if isinstance(i, OverCapacity)]
        assert over[0].task_id is None
        assert over[0].demand == pytest.approx(48.0)
        assert over[0].capacity == pytest.approx(40.0)
        assert "load period 0" in over[0].detail
        assert len(assignment.tasks_for("a")) == 10
        assert "d5" not in assignment.pairs

    def test_history_does_not_block_new_work(self, shift, week_worker, settings, model):
        snapshot = Snapshot.build([shift("t1", 1)], [week_worker("a")], ledger={"a": 40.0})
        assignment = Allocator(model, settings).allocate(snapshot)

        assert assignment.pairs == {"t1": ("a",)}
        assert assignment.unsatisfiable == ()


class TestLocalSearch:
    """Reassign and swap moves on a hand-built starting state."""

    @pytest.fixture
    def lopsided(self, shift, week_worker):
        """a holds four shifts, b holds none."""
        tasks = {t.id: t for t in [shift(f"t{day}", day) for day in (1, 2, 3, 4)]}
        workers = {w.id: w for w in [week_worker("a"), week_worker("b")]}
        state = AssignmentState(tasks, workers)
        for tid in tasks:
            state.assign(tid, "a")
        return state, {tid: ["a", "b"] for tid in tasks}

    def test_moves_work_to_idle_worker(self, lopsided, model):
        state, cands = lopsided
        outcome = improve(state, model, cands, fairness_weight=1.0)

        assert outcome.moves == 2
        assert outcome.score == pytest.approx(0.0)
        assert outcome.budget is None
        assert state.to_pairs() == {"t1": ("b",), "t2": ("b",), "t3": ("a",), "t4": ("a",)}

    def test_local_optimum_makes_no_moves(self, lopsided, model):
        state, cands = lopsided
        improve(state, model, cands)
        before = state.to_pairs()

        outcome = improve(state, model, cands)
        assert outcome.moves == 0
        assert outcome.budget is None
        assert state.to_pairs() == before

    def test_iteration_budget_with_moves_left(self, lopsided, model):
        state, cands = lopsided
        outcome = improve(state, model, cands, max_iterations=1)

        assert outcome.moves == 1
        assert outcome.budget.phase == "local_search"
        assert outcome.budget.limit == "iterations"
        assert state.loads() == {"a": 24.0, "b": 8.0}

    def test_budget_reached_at_optimum_is_not_exceeded(self, lopsided, model):
        state, cands = lopsided
        outcome = improve(state, model, cands, max_iterations=2)

        assert outcome.moves == 2
        assert outcome.budget is None

    def test_scope_limits_moved_pairs(self, lopsided, model):
        state, cands = lopsided
        outcome = improve(state, model, cands, scope={"t3", "t4"})

        assert outcome.moves == 2
        assert sorted(t.id for t in state.tasks_of("b")) == ["t3", "t4"]
        assert state.workers_of("t1") == ("a",)
        assert state.workers_of("t2") == ("a",)


class TestBudgets:
    def test_local_search_budget_at_local_optimum(self, three_shifts, settings, model):
        """The greedy seed is already locally optimal, so a zero move budget costs nothing."""
        s = settings.model_copy(update={"exact_enabled": False, "local_search_max_iterations": 0})
        assignment = Allocator(model, s).allocate(three_shifts)

        assert assignment.budget is None
        assert len(assignment.pairs) == 3

    def test_exact_budget_falls_back(self, three_shifts, settings, model):
        s = settings.model_copy(update={"exact_node_limit": 1})
        assignment = Allocator(model, s).allocate(three_shifts)

        assert assignment.budget.phase == "exact"
        assert not assignment.optimal
        assert len(assignment.pairs) == 3

    def test_cancellation(self, three_shifts, settings, model):
        token = CancellationToken()
        token.cancel()
        with pytest.raises(PlanningCancelled):
            Allocator(model, settings).allocate(three_shifts, cancel=token)


class TestExactSolvers:
    def test_branch_and_bound_is_optimal(self, three_shifts, settings, model):
        assignment = Allocator(model, settings).allocate(three_shifts)
        assert assignment.strategy == "exact"
        assert assignment.optimal
        assert len(assignment.tasks_for("a")) == 2

    def test_exact_never_worse_than_heuristic(self, skilled_scenario, settings, model):
        exact = Allocator(model, settings).allocate(skilled_scenario)
        heuristic = Allocator(model, settings.model_copy(update={"exact_enabled": False})).allocate(skilled_scenario)
        assert exact.score <= heuristic.score + 1e-9

    def test_cpsat_matches_branch_and_bound(self, three_shifts, settings, model):
        cpsat = Allocator(model, settings.model_copy(update={"exact_solver": "ortools"})).allocate(three_shifts)
        bnb = Allocator(model, settings).allocate(three_shifts)

        assert cpsat.strategy == "cpsat"
        assert cpsat.optimal
        assert len(cpsat.tasks_for("a")) == 2
        assert cpsat.score == pytest.approx(bnb.score)

    def test_solvers_report_infeasible(self, shift, week_worker, settings, model):
        snapshot = Snapshot.build([shift("t1", 1), shift("t2", 1, start_hour=12)], [week_worker("a")])
        state = Allocator(model, settings).baseline_state(snapshot)
        cands = {"t1": ["a"], "t2": ["a"]}

        outcome = branch_and_bound(state, ["t1", "t2"], cands, model)
        assert outcome.exhausted
        assert outcome.state is None

        result, status = solve_with_ortools(state, ["t1", "t2"], cands, model, time_limit_seconds=5)
        assert result is None
        assert status == "infeasible"
