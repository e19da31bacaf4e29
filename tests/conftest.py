"""
Pytest configuration and fixtures for scrape orchestrator tests.

Provides:
- Async test database with SQLite (file-backed, so concurrent sessions work)
- Execution engine wired to a scripted fake runner
- Test client for API testing
- Factory fixtures for creating test data
"""

import asyncio
import itertools
import uuid
from collections.abc import AsyncGenerator
from typing import Any

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from scrape_orchestrator.config import PerformanceConfig, Settings, get_settings
from scrape_orchestrator.core.database import get_db
from scrape_orchestrator.core.scheduler import ScrapeScheduler
from scrape_orchestrator.core.retry import RetryPolicy
from scrape_orchestrator.main import app
from scrape_orchestrator.models import Base
from scrape_orchestrator.models.job import ScrapeSubType, ScrapeType
from scrape_orchestrator.models.schedule import JobDefinition
from scrape_orchestrator.models.target import Degree, TargetConfig
from scrape_orchestrator.services.execution_engine import AttemptContext, ExecutionEngine
from scrape_orchestrator.services.log_stream import LogStream
from scrape_orchestrator.services.performance_tracker import PerformanceTracker
from scrape_orchestrator.services.worker import ScriptResult


_target_codes = itertools.count(100)


# Override settings for testing
class TestSettings(Settings):
    database_url: str = "sqlite+aiosqlite:///:memory:"
    debug: bool = True
    scheduler_enabled: bool = False
    poller_enabled: bool = False
    kill_grace_seconds: float = 1.0


# ============================================================================
# Test Doubles
# ============================================================================


class FakeRunner:
    """Attempt runner driven by a per-target script of outcomes.

    ``outcomes`` maps a target label ("TRT3 1g") to a list consumed one item
    per attempt: an exception is raised, a ScriptResult is returned. When the
    list is empty the attempt succeeds with two records.
    """

    def __init__(
        self,
        outcomes: dict[str, list[Any]] | None = None,
        delay: float = 0.0,
        gate: asyncio.Event | None = None,
    ) -> None:
        self.outcomes = {k: list(v) for k, v in (outcomes or {}).items()}
        self.delay = delay
        self.gate = gate
        self.calls: list[tuple[str, int]] = []
        self.active = 0
        self.peak = 0
        self.entered = asyncio.Event()

    async def __call__(self, ctx: AttemptContext) -> ScriptResult:
        label = ctx.target.label
        self.calls.append((label, ctx.attempt))
        self.active += 1
        self.peak = max(self.peak, self.active)
        self.entered.set()
        try:
            if self.gate is not None:
                await self.gate.wait()
            if self.delay:
                await asyncio.sleep(self.delay)
            queue = self.outcomes.get(label)
            outcome = queue.pop(0) if queue else None
            if isinstance(outcome, BaseException):
                raise outcome
            if outcome is not None:
                return outcome
            return ScriptResult(
                success=True,
                count=2,
                records=[
                    {"id": f"{label}-1", "numeroProcesso": "0010001-11.2024.5.03.0001"},
                    {"id": f"{label}-2", "numeroProcesso": "0010002-22.2024.5.03.0001"},
                ],
            )
        finally:
            self.active -= 1

    def attempts_for(self, label: str) -> int:
        return sum(1 for called, _ in self.calls if called == label)


class RecordingSleep:
    """Stand-in for asyncio.sleep that records requested delays."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        await asyncio.sleep(0)


class FakeTimerBackend:
    """In-memory timer backend: records schedules, never fires on its own."""

    def __init__(self) -> None:
        self.started = False
        self.stopped = False
        self.schedules: dict[str, Any] = {}
        self.removed: list[str] = []

    async def start(self) -> None:
        self.started = True

    async def add(self, definition_id: str, trigger: Any) -> None:
        self.schedules[definition_id] = trigger

    async def remove(self, definition_id: str) -> None:
        self.schedules.pop(definition_id, None)
        self.removed.append(definition_id)

    async def stop(self) -> None:
        self.stopped = True


# ============================================================================
# Database Fixtures
# ============================================================================


@pytest.fixture
def test_settings() -> TestSettings:
    return TestSettings()


@pytest_asyncio.fixture
async def db_engine(tmp_path):
    """Create async test database engine."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}", echo=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest.fixture
def session_factory(db_engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        db_engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


@pytest_asyncio.fixture
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Create async database session for tests."""
    async with session_factory() as session:
        yield session
        await session.rollback()


# ============================================================================
# Engine Fixtures
# ============================================================================


@pytest.fixture
def recording_sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest_asyncio.fixture
async def make_engine(session_factory, test_settings, recording_sleep):
    """Factory for execution engines; every engine is shut down after the test."""
    engines: list[ExecutionEngine] = []

    def _make(
        runner: FakeRunner | None = None,
        tracker: PerformanceTracker | None = None,
        log_stream: LogStream | None = None,
        **overrides: Any,
    ) -> ExecutionEngine:
        settings = test_settings.model_copy(update=overrides)
        engine = ExecutionEngine(
            session_factory,
            settings,
            log_stream or LogStream(max_entries=settings.log_buffer_size),
            tracker=tracker,
            runner=runner or FakeRunner(),
            retry_policy=RetryPolicy.from_settings(settings),
            sleep=recording_sleep,
        )
        engines.append(engine)
        return engine

    yield _make

    for engine in engines:
        await engine.shutdown()


@pytest.fixture
def tracker(session_factory) -> PerformanceTracker:
    return PerformanceTracker(
        session_factory,
        PerformanceConfig(
            {
                "duration_threshold_minutes": 5,
                "failure_threshold": 3,
                "analysis_window_days": 7,
                "min_samples": 5,
            }
        ),
    )


# ============================================================================
# API Client
# ============================================================================


@pytest_asyncio.fixture
async def client(
    session_factory, test_settings, make_engine, timer_backend
) -> AsyncGenerator[AsyncClient, None]:
    """Create async test client with database and engine overrides."""

    async def override_get_db():
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    def override_get_settings():
        return test_settings

    engine = make_engine()
    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_settings] = override_get_settings
    app.state.engine = engine
    app.state.log_stream = engine.log_stream
    app.state.scheduler = ScrapeScheduler(
        session_factory, engine, timer_backend, test_settings
    )

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()
    app.state.engine = None
    app.state.log_stream = None
    app.state.scheduler = None


# ============================================================================
# Factory Fixtures
# ============================================================================


@pytest_asyncio.fixture
async def target_factory(session_factory):
    """Factory for creating committed target configs."""

    async def _create_target(
        code: str = "TRT3",
        degree: Degree = Degree.FIRST,
        name: str | None = None,
    ) -> TargetConfig:
        slug = f"{code.lower()}-{degree.value}"
        target = TargetConfig(
            code=code,
            degree=degree,
            name=name or f"{code} {degree.value}",
            base_url=f"https://pje.{slug}.jus.br",
            login_url=f"https://pje.{slug}.jus.br/login",
            api_url=f"https://pje.{slug}.jus.br/api",
        )
        async with session_factory() as db:
            db.add(target)
            await db.commit()
        return target

    return _create_target


@pytest_asyncio.fixture
async def definition_factory(session_factory, target_factory):
    """Factory for creating committed job definitions."""

    async def _create_definition(
        cron_expression: str = "0 9 * * *",
        timezone: str = "America/Sao_Paulo",
        active: bool = True,
        target_ids: list[str] | None = None,
        scrape_type: ScrapeType = ScrapeType.GENERAL_DOCKET,
        scrape_subtype: ScrapeSubType | None = None,
        credential_id: str = "cred-1",
    ) -> JobDefinition:
        if target_ids is None:
            target_ids = [(await target_factory(code=f"TRT{next(_target_codes)}")).id]
        definition = JobDefinition(
            name=f"schedule-{uuid.uuid4().hex[:8]}",
            cron_expression=cron_expression,
            timezone=timezone,
            target_config_ids=target_ids,
            scrape_type=scrape_type,
            scrape_subtype=scrape_subtype,
            credential_id=credential_id,
            active=active,
            run_count=0,
        )
        async with session_factory() as db:
            db.add(definition)
            await db.commit()
        return definition

    return _create_definition


# ============================================================================
# Test Double Fixtures
# ============================================================================


@pytest.fixture
def make_runner():
    """Factory for scripted fake attempt runners (see FakeRunner)."""

    def _make(
        outcomes: dict[str, list[Any]] | None = None,
        delay: float = 0.0,
        gate: asyncio.Event | None = None,
    ) -> FakeRunner:
        return FakeRunner(outcomes=outcomes, delay=delay, gate=gate)

    return _make


@pytest.fixture
def timer_backend() -> FakeTimerBackend:
    return FakeTimerBackend()


@pytest.fixture
def make_scheduler(session_factory, test_settings, timer_backend):
    """Factory for a ScrapeScheduler on the fake timer backend."""

    def _make(engine: Any, **overrides: Any) -> ScrapeScheduler:
        settings = test_settings.model_copy(update=overrides)
        return ScrapeScheduler(session_factory, engine, timer_backend, settings)

    return _make
