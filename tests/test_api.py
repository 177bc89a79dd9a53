import uuid

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from werkverdeling.api.routes import get_cache
from werkverdeling.main import app
from werkverdeling.storage.database import get_db, init_db

DAY = 1440
WEEK = [[0, 7 * DAY]]

engine = create_engine("sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool)
init_db(engine)
TestingSession = sessionmaker(bind=engine, autoflush=False)


def override_get_db():
    db = TestingSession()
    try:
        yield db
    finally:
        db.close()


app.dependency_overrides[get_db] = override_get_db
app.dependency_overrides[get_cache] = lambda: None

client = TestClient(app)


def _task(task_id, day, **extra):
    start = day * DAY + 9 * 60
    return {"id": task_id, "start": start, "end": start + 8 * 60, **extra}


def _worker(worker_id, **extra):
    return {"id": worker_id, "availability": WEEK, **extra}


@pytest.fixture
def payload():
    return {
        "tasks": [_task("t1", 1), _task("t2", 2), _task("t3", 3)],
        "workers": [_worker("a"), _worker("b")],
        "ledger": {"b": 4.0},
    }


@pytest.fixture
def planned(payload):
    response = client.post("/api/v1/plan", json=payload)
    assert response.status_code == 200
    return response.json()["assignment"]


@pytest.fixture
def team():
    return f"team-{uuid.uuid4().hex[:8]}"


def _held_by(assignment, worker_id):
    return sorted(tid for tid, wids in assignment["pairs"].items() if worker_id in wids)


class TestPlanEndpoint:
    """Integration tests for /plan."""

    def test_plan_returns_fair_assignment(self, planned):
        assert planned["generation"] == 1
        assert planned["unsatisfiable"] == []
        assert len(_held_by(planned, "a")) == 2
        assert len(_held_by(planned, "b")) == 1
        assert isinstance(planned["score"], (int, float))

    def test_unstaffable_task_is_reported(self, payload):
        payload["tasks"].append(_task("crane", 4, required_skills=["crane"]))
        data = client.post("/api/v1/plan", json=payload).json()["assignment"]

        assert "crane" not in data["pairs"]
        issue = data["unsatisfiable"][0]
        assert issue["code"] == "infeasible_task"
        assert issue["task_id"] == "crane"
        assert issue["blocking"] == ["skill_match"]

    def test_cache_hit(self, payload):
        class DictCache:
            def __init__(self):
                self.entries = {}

            def get(self, key):
                return self.entries.get(key)

            def set(self, key, value):
                self.entries[key] = value

        cache = DictCache()
        app.dependency_overrides[get_cache] = lambda: cache
        try:
            first = client.post("/api/v1/plan", json=payload).json()
            second = client.post("/api/v1/plan", json=payload).json()
        finally:
            app.dependency_overrides[get_cache] = lambda: None

        assert not first["cached"]
        assert second["cached"]
        assert second["assignment"] == first["assignment"]


class TestValidation:
    def test_inverted_task_window(self, payload):
        payload["tasks"][0]["end"] = payload["tasks"][0]["start"]
        assert client.post("/api/v1/plan", json=payload).status_code == 422

    def test_overlapping_availability(self, payload):
        payload["workers"][0]["availability"] = [[0, 600], [300, 900]]
        assert client.post("/api/v1/plan", json=payload).status_code == 422

    def test_duplicate_ids(self, payload):
        payload["workers"].append(_worker("a"))
        assert client.post("/api/v1/plan", json=payload).status_code == 422

    def test_zero_headcount(self, payload):
        payload["tasks"][0]["required_count"] = 0
        assert client.post("/api/v1/plan", json=payload).status_code == 422

    @pytest.mark.parametrize("event", [
        {"kind": "task_added"},
        {"kind": "worker_unavailable"},
        {"kind": "shift_swapped", "task_id": "t1"},
        {"kind": "worker_unavailable", "worker_id": "a", "window": [500, 100]},
    ])
    def test_malformed_events(self, payload, planned, event):
        response = client.post("/api/v1/rebalance", json={**payload, "prior": planned, "event": event})
        assert response.status_code == 422


class TestRebalanceEndpoint:
    def test_noop_event(self, payload, planned):
        event = {"kind": "task_cancelled", "task_id": "nope"}
        data = client.post("/api/v1/rebalance", json={**payload, "prior": planned, "event": event}).json()

        assert data["state"] == "stable"
        assert data["assignment"]["pairs"] == planned["pairs"]
        assert data["assignment"]["generation"] == 2
        assert data["added"] == [] and data["removed"] == []

    def test_worker_unavailable(self, payload, planned):
        event = {"kind": "worker_unavailable", "worker_id": "a"}
        response = client.post("/api/v1/rebalance", json={**payload, "prior": planned, "event": event})

        assert response.status_code == 200
        data = response.json()
        assert data["state"] == "stable"
        assert _held_by(data["assignment"], "b") == ["t1", "t2", "t3"]
        assert data["removed"] == [[tid, "a"] for tid in _held_by(planned, "a")]

    def test_unknown_worker(self, payload, planned):
        event = {"kind": "worker_unavailable", "worker_id": "nobody"}
        response = client.post("/api/v1/rebalance", json={**payload, "prior": planned, "event": event})
        assert response.status_code == 404


class TestExplainEndpoint:
    def test_explain_holder(self, payload, planned):
        body = {**payload, "assignment": planned, "task_id": "t1"}
        data = client.post("/api/v1/explain", json=body).json()

        assert {e["worker_id"] for e in data} == set(planned["pairs"]["t1"])
        assert all(e["satisfied"] and e["assigned"] for e in data)
        assert {e["constraint"] for e in data} == {
            "skill_match", "availability", "no_overlap", "max_load", "rest_spacing",
        }

    def test_explain_candidates(self, payload, planned):
        body = {**payload, "assignment": planned, "task_id": "t1", "include_candidates": True}
        data = client.post("/api/v1/explain", json=body).json()
        assert {e["worker_id"] for e in data} == {"a", "b"}
        assert len(data) == 10

    def test_explain_unknown_task(self, payload, planned):
        body = {**payload, "assignment": planned, "task_id": "nope"}
        assert client.post("/api/v1/explain", json=body).status_code == 404


class TestBenchmarkEndpoint:
    def test_benchmark(self, payload):
        response = client.post("/api/v1/plan/benchmark", json=payload)

        assert response.status_code == 200
        data = response.json()
        assert data["num_tasks"] == 3
        assert [r["strategy"] for r in data["results"]] == ["heuristic", "branch_and_bound", "ortools"]
        assert all(r["unsatisfiable"] == 0 for r in data["results"])


class TestTeamEndpoints:
    """Stored records, plan-and-commit, repair and undo for one team."""

    def _seed(self, team):
        versions = [client.put(f"/api/v1/teams/{team}/workers", json=_worker(w)).json()["version"] for w in "ab"]
        for i in (1, 2, 3):
            versions.append(client.put(f"/api/v1/teams/{team}/tasks", json=_task(f"t{i}", i)).json()["version"])
        return versions

    def test_record_writes_bump_version(self, team):
        assert self._seed(team) == [1, 2, 3, 4, 5]
        assert client.delete(f"/api/v1/teams/{team}/tasks/t3").json() == {"version": 6}
        assert client.delete(f"/api/v1/teams/{team}/workers/b").json() == {"version": 7}

    def test_plan_commit_repair_undo(self, team):
        self._seed(team)
        assert client.get(f"/api/v1/teams/{team}/assignment").status_code == 404

        planned = client.post(f"/api/v1/teams/{team}/plan").json()
        assert planned["generation"] == 1
        assert planned["basis_version"] == 5
        assert client.get(f"/api/v1/teams/{team}/assignment").json()["pairs"] == planned["pairs"]

        event = {"kind": "worker_unavailable", "worker_id": "a"}
        repaired = client.post(f"/api/v1/teams/{team}/rebalance", json=event).json()
        assert repaired["assignment"]["generation"] == 2
        assert _held_by(repaired["assignment"], "b") == ["t1", "t2", "t3"]

        restored = client.post(f"/api/v1/teams/{team}/undo").json()
        assert restored["generation"] == 3
        assert restored["pairs"] == planned["pairs"]

        emptied = client.post(f"/api/v1/teams/{team}/undo").json()
        assert emptied["generation"] == 4
        assert emptied["pairs"] == {}

        assert client.post(f"/api/v1/teams/{team}/undo").status_code == 404

    def test_explain_committed_task(self, team):
        self._seed(team)
        client.post(f"/api/v1/teams/{team}/plan")

        data = client.get(f"/api/v1/teams/{team}/explain/t1", params={"include_candidates": True}).json()
        assert {e["worker_id"] for e in data} == {"a", "b"}
        assert client.get(f"/api/v1/teams/{team}/explain/nope").status_code == 404

    def test_rebalance_unknown_entity(self, team):
        self._seed(team)
        client.post(f"/api/v1/teams/{team}/plan")
        response = client.post(f"/api/v1/teams/{team}/rebalance", json={"kind": "task_cancelled", "task_id": "t1"})
        assert response.status_code == 200
        response = client.post(f"/api/v1/teams/{team}/rebalance", json={"kind": "worker_updated", "worker": _worker("zed")})
        assert response.status_code == 404


def test_health():
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "ok"
