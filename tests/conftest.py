"""Pytest configuration and shared fixtures."""

import os

# Keep imports of the application modules away from real services
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("PROGRESS_BACKEND", "memory")
os.environ.setdefault("SCHEDULER_BACKEND", "thread")

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from studio.core.database import init_db
from studio.services.batch_control import BatchControlService
from studio.services.generation import Artifact
from studio.services.job_store import BatchJobStore
from studio.services.progress import InMemoryProgressBroker
from studio.workers.base import RetryPolicy
from studio.workers.driver import BatchDriver
from studio.workers.queue import InlineStepScheduler


OWNER = "user_alice"
OTHER_OWNER = "user_bob"


class FakeExecutor:
    """
    Scripted stand-in for GenerationExecutor.

    failures maps an item index to the errors raised on its successive
    attempts; once the list is used up the item succeeds. on_execute runs
    while the item is "in flight", before the outcome is returned.
    """

    def __init__(self, failures=None, on_execute=None):
        self.failures = {index: list(errors) for index, errors in (failures or {}).items()}
        self.on_execute = on_execute
        self.calls = []

    @property
    def indexes(self):
        return [index for index, _ in self.calls]

    async def execute(self, item):
        self.calls.append((item.index, item.seed))
        if self.on_execute is not None:
            self.on_execute(item)
        pending = self.failures.get(item.index)
        if pending:
            raise pending.pop(0)
        return Artifact(
            storage_key=f"generated/test/{item.job_id}-{item.index}.jpg",
            url=f"http://testserver/files/generated/test/{item.job_id}-{item.index}.jpg",
            content_type="image/jpeg",
            size_bytes=3,
            model=item.params.get("model") or "flux",
            width=item.params.get("width") or 1024,
            height=item.params.get("height") or 1024,
            seed=item.seed,
            params=dict(item.params),
        )


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    init_db(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)


@pytest.fixture
def broker():
    return InMemoryProgressBroker()


@pytest.fixture
def store(session_factory, broker):
    return BatchJobStore(session_factory, broker=broker)


@pytest.fixture
def scheduler():
    return InlineStepScheduler()


@pytest.fixture
def control(store, scheduler):
    return BatchControlService(store, scheduler)


@pytest.fixture
def policy():
    return RetryPolicy(max_retries=2, base_delay=1.0, max_delay=4.0)


@pytest.fixture
def make_driver(store, scheduler, policy):
    """Driver factory with deterministic jitter (factor 1.0) and seeds."""

    def _make(executor, interval=0.0, retry_policy=None):
        return BatchDriver(
            store=store,
            executor=executor,
            scheduler=scheduler,
            policy=retry_policy or policy,
            interval=interval,
            rng=lambda: 0.5,
            seed_rng=lambda low, high: 42,
        )

    return _make


@pytest.fixture
def run_all(scheduler):
    """Drain the inline scheduler through a driver."""

    def _run(driver):
        return scheduler.run_until_idle(driver.step)

    return _run
