import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from werkverdeling.config.settings import Settings
from werkverdeling.engine.constraints import ConstraintModel
from werkverdeling.engine.service import PlanningEngine
from werkverdeling.models.entities import Snapshot, Task, TimeWindow, Worker
from werkverdeling.storage.database import init_db

DAY = 1440


@pytest.fixture
def settings():
    """Default engine settings."""
    return Settings()


@pytest.fixture
def model(settings):
    return ConstraintModel.default(settings)


@pytest.fixture
def planner(settings, model):
    return PlanningEngine(model, settings)


@pytest.fixture
def shift():
    """Factory for a task on ``day`` (default 09:00-17:00)."""
    def make(task_id, day, skills=(), count=1, priority=0, hours=8, start_hour=9, load=None):
        start = day * DAY + start_hour * 60
        return Task(
            id=task_id,
            window=TimeWindow(start, start + hours * 60),
            required_skills=frozenset(skills),
            required_count=count,
            priority=priority,
            load=load,
        )
    return make


@pytest.fixture
def week_worker():
    """Factory for a worker available the whole week."""
    def make(worker_id, skills=(), max_load=None, fte=1.0, deduction=0.0, availability=None):
        return Worker(
            id=worker_id,
            skills=frozenset(skills),
            availability=tuple(availability) if availability is not None else (TimeWindow(0, 7 * DAY),),
            max_load=max_load,
            fte=fte,
            deduction=deduction,
        )
    return make


@pytest.fixture
def three_shifts(shift, week_worker):
    """3 one-worker shifts on different days, 2 qualified workers; b carries 4h of history."""
    tasks = [shift("t1", 1), shift("t2", 2), shift("t3", 3)]
    workers = [week_worker("a"), week_worker("b")]
    return Snapshot.build(tasks, workers, ledger={"b": 4.0})


@pytest.fixture
def skilled_scenario(shift, week_worker):
    """Mixed skills, overlapping shifts and a two-person task."""
    tasks = [
        shift("intake", 1, skills={"triage"}),
        shift("ward-am", 1, start_hour=7, hours=6, count=2),
        shift("ward-pm", 1, start_hour=13, hours=6),
        shift("night", 1, start_hour=22, hours=8, skills={"night"}, priority=1),
        shift("audit", 2, skills={"admin"}),
    ]
    workers = [
        week_worker("ann", skills={"triage", "admin"}),
        week_worker("bob", skills={"night"}),
        week_worker("cem"),
        week_worker("dia", skills={"triage", "night"}),
    ]
    return Snapshot.build(tasks, workers)


@pytest.fixture
def db_session():
    """Session on a fresh in-memory SQLite database."""
    engine = create_engine("sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool)
    init_db(engine)
    session = sessionmaker(bind=engine, autoflush=False)()
    try:
        yield session
    finally:
        session.close()
        engine.dispose()
