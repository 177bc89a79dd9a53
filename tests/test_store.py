import pytest

from werkverdeling.engine.errors import StaleSnapshotError
from werkverdeling.engine.ledger import HISTORY_TASK_ID, LedgerDelta, LedgerEntry
from werkverdeling.engine.service import PlanningEngine
from werkverdeling.models.entities import Assignment
from werkverdeling.models.events import TaskCancelled
from werkverdeling.storage.interface import CommitResult
from werkverdeling.storage.memory import InMemoryAssignmentStore
from werkverdeling.storage.repositories import SqlAssignmentStore


@pytest.fixture
def records(shift, week_worker):
    return [shift("t1", 1), shift("t2", 2), shift("t3", 3)], [week_worker("a"), week_worker("b")]


@pytest.fixture
def store(records):
    tasks, workers = records
    return InMemoryAssignmentStore(tasks, workers)


class FlakyStore(InMemoryAssignmentStore):
    """Loses the first ``interference`` commit races to a concurrent writer."""

    def __init__(self, *args, interference=1, **kwargs):
        super().__init__(*args, **kwargs)
        self.interference = interference

    def commit_assignment(self, assignment, delta, changes=None):
        if self.interference:
            self.interference -= 1
            self.version += 1
        return super().commit_assignment(assignment, delta, changes)


class TestInMemoryStore:
    def test_plan_and_commit(self, planner, store):
        assignment = planner.plan_and_commit(store)

        assert assignment.generation == 1
        assert assignment.basis_version == 0
        assert store.assignment == assignment
        assert store.version == 1
        assert sorted(store.ledger.snapshot().loads().values()) == [8.0, 16.0]

    def test_stale_commit_is_rejected(self, planner, store, shift):
        snapshot = store.load_snapshot()
        assignment = planner.plan(snapshot)
        store.save_task(shift("t4", 4))

        with pytest.raises(StaleSnapshotError):
            planner.commit(store, snapshot, assignment)
        assert store.assignment is None
        assert store.ledger.snapshot().loads() == {}

    def test_retry_after_conflict(self, planner, records):
        tasks, workers = records
        flaky = FlakyStore(tasks, workers)

        assignment = planner.plan_and_commit(flaky)

        assert assignment.basis_version == 1
        assert flaky.assignment == assignment

    def test_retries_run_out(self, settings, model, records):
        tasks, workers = records
        planner = PlanningEngine(model, settings.model_copy(update={"commit_retries": 2}))

        with pytest.raises(StaleSnapshotError):
            planner.plan_and_commit(FlakyStore(tasks, workers, interference=2))

    def test_duplicate_commit_is_acknowledged_once(self, planner, store):
        snapshot = store.load_snapshot()
        assignment = planner.plan(snapshot)
        delta = planner.ledger_delta(snapshot, assignment)

        assert store.commit_assignment(assignment, delta) == CommitResult.ACK
        assert store.commit_assignment(assignment, delta) == CommitResult.ACK

        assert store.version == 1
        assert sum(store.ledger.snapshot().loads().values()) == pytest.approx(24.0)

    def test_generation_must_advance(self, planner, store):
        planner.plan_and_commit(store)
        replay = Assignment(generation=1, pairs={"t1": ("b",)}, basis_version=store.version)

        assert store.commit_assignment(replay, LedgerDelta("replay")) == CommitResult.CONFLICT
        assert store.assignment.generation == 1

    def test_rebalance_persists_record_changes(self, planner, store):
        planner.plan_and_commit(store)
        result = planner.rebalance_and_commit(store, TaskCancelled("t3"))

        snapshot = store.load_snapshot()
        assert "t3" not in snapshot.tasks
        assert "t3" not in store.assignment.pairs
        assert store.assignment.generation == result.assignment.generation == 2
        assert sum(snapshot.ledger.loads().values()) == pytest.approx(16.0)

    def test_undo_walks_back_with_fresh_generations(self, planner, store):
        planned = planner.plan_and_commit(store)
        after_plan = store.ledger.snapshot().loads()
        planner.rebalance_and_commit(store, TaskCancelled("t3"))

        restored = planner.undo(store)
        assert restored.generation == 3
        assert restored.same_pairs(planned)
        assert "t3" in store.load_snapshot().tasks
        assert store.ledger.snapshot().loads() == after_plan

        emptied = planner.undo(store)
        assert emptied.generation == 4
        assert emptied.pairs == {}
        assert emptied.strategy == "empty"
        assert store.ledger.snapshot().loads() == {}

        assert planner.undo(store) is None

    def test_commit_after_undo(self, planner, store):
        planner.plan_and_commit(store)
        planner.undo(store)

        again = planner.plan_and_commit(store)
        assert again.generation == 3
        assert sorted(store.ledger.snapshot().loads().values()) == [8.0, 16.0]

    def test_record_writes_bump_version(self, store, shift, week_worker):
        assert store.save_task(shift("t4", 4)) == 1
        assert store.save_worker(week_worker("c")) == 2
        assert store.delete_task("t4") == 3
        assert store.delete_worker("c") == 4
        assert sorted(store.load_snapshot().workers) == ["a", "b"]


class TestSqlAssignmentStore:
    @pytest.fixture
    def sql_store(self, db_session, records):
        store = SqlAssignmentStore(db_session, team_id="ward-7")
        tasks, workers = records
        for task in tasks:
            store.save_task(task)
        for worker in workers:
            store.save_worker(worker)
        return store

    def test_snapshot_round_trip(self, sql_store, records):
        tasks, workers = records
        snapshot = sql_store.load_snapshot()

        assert snapshot.version == 5
        assert snapshot.team_id == "ward-7"
        assert snapshot.tasks == {t.id: t for t in tasks}
        assert snapshot.workers == {w.id: w for w in workers}
        assert snapshot.assignment is None

    def test_teams_are_isolated(self, sql_store, db_session):
        other = SqlAssignmentStore(db_session, team_id="ward-8").load_snapshot()
        assert other.tasks == {} and other.workers == {}
        assert other.version == 0

    def test_plan_and_commit(self, planner, sql_store):
        assignment = planner.plan_and_commit(sql_store)

        stored = sql_store.current_assignment()
        assert stored.pairs == assignment.pairs
        assert stored.generation == 1
        snapshot = sql_store.load_snapshot()
        assert snapshot.version == 6
        assert sorted(snapshot.ledger.loads().values()) == [8.0, 16.0]

    def test_stale_commit_is_rejected(self, planner, sql_store, week_worker):
        snapshot = sql_store.load_snapshot()
        assignment = planner.plan(snapshot)
        sql_store.save_worker(week_worker("c"))

        with pytest.raises(StaleSnapshotError):
            planner.commit(sql_store, snapshot, assignment)
        assert sql_store.current_assignment() is None
        assert sql_store.load_snapshot().ledger.loads() == {}

    def test_duplicate_commit_is_acknowledged_once(self, planner, sql_store):
        snapshot = sql_store.load_snapshot()
        assignment = planner.plan(snapshot)
        delta = planner.ledger_delta(snapshot, assignment)

        assert sql_store.commit_assignment(assignment, delta) == CommitResult.ACK
        assert sql_store.commit_assignment(assignment, delta) == CommitResult.ACK
        assert sum(sql_store.load_snapshot().ledger.loads().values()) == pytest.approx(24.0)

    def test_rebalance_then_undo(self, planner, sql_store):
        planned = planner.plan_and_commit(sql_store)
        planner.rebalance_and_commit(sql_store, TaskCancelled("t3"))
        assert "t3" not in sql_store.load_snapshot().tasks

        restored = planner.undo(sql_store)
        snapshot = sql_store.load_snapshot()
        assert restored.generation == 3
        assert restored.same_pairs(planned)
        assert "t3" in snapshot.tasks
        assert sum(snapshot.ledger.loads().values()) == pytest.approx(24.0)

    def test_undo_first_commit_empties_assignment(self, planner, sql_store):
        planner.plan_and_commit(sql_store)

        emptied = planner.undo(sql_store)
        assert emptied.generation == 2
        assert emptied.pairs == {}
        assert sql_store.load_snapshot().ledger.loads() == {}
        assert planner.undo(sql_store) is None

    def test_seeded_history_steers_the_plan(self, planner, sql_store):
        sql_store.seed_ledger([LedgerEntry("a", HISTORY_TASK_ID, 20.0)])

        assignment = planner.plan_and_commit(sql_store)

        assert assignment.tasks_for("b") == ["t1", "t2", "t3"]
        assert sql_store.load_snapshot().ledger.loads() == {"a": 20.0, "b": 24.0}
