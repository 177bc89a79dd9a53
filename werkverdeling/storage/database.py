from datetime import datetime, timezone
from functools import lru_cache

from sqlalchemy import JSON, Boolean, Column, DateTime, Float, Integer, String, create_engine
from sqlalchemy.orm import declarative_base, sessionmaker

from werkverdeling.config.settings import get_settings

settings = get_settings()

SessionLocal = sessionmaker(autoflush=False)
Base = declarative_base()


def _utcnow():
    return datetime.now(timezone.utc)


class TaskModel(Base):
    __tablename__ = "tasks"

    team_id = Column(String, primary_key=True)
    id = Column(String, primary_key=True)
    start = Column(Integer, nullable=False)
    end = Column(Integer, nullable=False)
    required_skills = Column(JSON, nullable=False)  # List[str]
    required_count = Column(Integer, nullable=False, default=1)
    priority = Column(Integer, nullable=False, default=0)
    load = Column(Float, nullable=True)  # hours; NULL means window length
    version = Column(Integer, nullable=False, default=1)
    updated_at = Column(DateTime, default=_utcnow, onupdate=_utcnow)


class WorkerModel(Base):
    __tablename__ = "workers"

    team_id = Column(String, primary_key=True)
    id = Column(String, primary_key=True)
    skills = Column(JSON, nullable=False)  # List[str]
    availability = Column(JSON, nullable=False)  # List[List[int]]
    max_load = Column(Float, nullable=True)
    fte = Column(Float, nullable=False, default=1.0)
    deduction = Column(Float, nullable=False, default=0.0)
    updated_at = Column(DateTime, default=_utcnow, onupdate=_utcnow)


class PlanStateModel(Base):
    """One row per team: snapshot version and the live assignment."""

    __tablename__ = "plan_state"

    team_id = Column(String, primary_key=True)
    version = Column(Integer, nullable=False, default=0)
    generation = Column(Integer, nullable=False, default=0)
    assignment = Column(JSON, nullable=True)
    updated_at = Column(DateTime, default=_utcnow, onupdate=_utcnow)


class LedgerEntryModel(Base):
    __tablename__ = "ledger_entries"

    id = Column(Integer, primary_key=True, autoincrement=True)
    team_id = Column(String, nullable=False, index=True)
    worker_id = Column(String, nullable=False)
    task_id = Column(String, nullable=False)
    load = Column(Float, nullable=False)
    start = Column(Integer, nullable=True)


class LedgerDeltaModel(Base):
    """Ids of applied ledger deltas, for idempotent commits."""

    __tablename__ = "ledger_deltas"

    team_id = Column(String, primary_key=True)
    id = Column(String, primary_key=True)
    created_at = Column(DateTime, default=_utcnow)


class CommitModel(Base):
    __tablename__ = "commits"

    id = Column(Integer, primary_key=True, autoincrement=True)
    team_id = Column(String, nullable=False, index=True)
    generation = Column(Integer, nullable=False)
    delta = Column(JSON, nullable=False)
    previous_assignment = Column(JSON, nullable=True)
    previous_records = Column(JSON, nullable=False)
    undone = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, default=_utcnow)


@lru_cache(maxsize=1)
def get_engine():
    return create_engine(settings.postgres_dsn, pool_pre_ping=True, echo=False)


def init_db(engine=None):
    Base.metadata.create_all(bind=engine or get_engine())


def get_db():
    db = SessionLocal(bind=get_engine())
    try:
        yield db
    finally:
        db.close()
