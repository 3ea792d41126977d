"""Pytest fixtures for testing"""

import os

# Must be set before settlement_engine.config is imported
os.environ.setdefault("DATABASE_URL", "sqlite:///./test.db")
os.environ.setdefault("RECONCILER_ENABLED", "false")
os.environ.setdefault("COALESCE_WINDOW_SECONDS", "0")

import pytest
from typing import Generator
from unittest.mock import AsyncMock
from fastapi.testclient import TestClient
from sqlalchemy.orm import sessionmaker, Session
from settlement_engine.api.main import create_app
from settlement_engine.api.dependencies import get_directory_client, get_processor_client
from settlement_engine.infrastructure.database.models import Base
from settlement_engine.infrastructure.database.session import build_engine, get_db
from settlement_engine.infrastructure.database.repositories import GroupRepository, LedgerRepository
from settlement_engine.infrastructure.clients.directory import MemberDirectoryClient
from settlement_engine.infrastructure.clients.processor import PaymentProcessorClient
from settlement_engine.infrastructure.realtime.notifier import RealtimeNotifier
from settlement_engine.services.coordinator import SettlementCoordinator
from settlement_engine.domain.models import ChargeResult, Debt, MemberProfile


# Test database
TEST_DATABASE_URL = "sqlite:///./test.db"
engine = build_engine(TEST_DATABASE_URL)
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db() -> Generator[Session, None, None]:
    """Create test database and session"""
    Base.metadata.create_all(bind=engine)
    db = TestingSessionLocal()
    try:
        yield db
    finally:
        db.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def other_session(db: Session) -> Generator[Session, None, None]:
    """A second, independent session on the same database, for race tests"""
    other = TestingSessionLocal()
    try:
        yield other
    finally:
        other.close()


@pytest.fixture
def session_factory(db: Session) -> sessionmaker:
    """Session factory bound to the test database, for background workers"""
    return TestingSessionLocal


@pytest.fixture
def processor() -> AsyncMock:
    """Payment processor that approves every charge unless reconfigured"""
    mock = AsyncMock(spec=PaymentProcessorClient)
    mock.charge.return_value = ChargeResult.succeeded("txn_test_1")
    return mock


@pytest.fixture
def directory() -> AsyncMock:
    mock = AsyncMock(spec=MemberDirectoryClient)

    async def get_member(member_id: str) -> MemberProfile:
        return MemberProfile(member_id=member_id, display_name=member_id.title())

    mock.get_member.side_effect = get_member
    return mock


@pytest.fixture
def notifier() -> RealtimeNotifier:
    """Notifier without coalescing so events arrive synchronously"""
    return RealtimeNotifier(coalesce_window_seconds=0)


@pytest.fixture
def coordinator(db: Session, processor: AsyncMock, notifier: RealtimeNotifier) -> SettlementCoordinator:
    return SettlementCoordinator(db, processor, notifier)


@pytest.fixture
def seed_group(db: Session):
    """Create a group roster and record debts; returns the group id"""

    def _seed(debts: list[tuple[str, str, int]], group_id: str = "trip", members: tuple = ()) -> str:
        groups = GroupRepository(db)
        for member_id in members:
            groups.add_member(group_id, member_id)
        LedgerRepository(db).record_debts(group_id, [Debt(f, t, a) for f, t, a in debts])
        db.commit()
        return group_id

    return _seed


@pytest.fixture
def client(db: Session, processor: AsyncMock, directory: AsyncMock) -> TestClient:
    """Create FastAPI test client with test database and fake collaborators"""
    app = create_app(reconciler_enabled=False)

    def override_get_db():
        try:
            yield db
        finally:
            pass

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_processor_client] = lambda: processor
    app.dependency_overrides[get_directory_client] = lambda: directory
    return TestClient(app)
