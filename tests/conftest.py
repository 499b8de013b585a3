"""
Pytest fixtures for the approval engine test suite.

Provides:
- A session-scoped database (SQLite file by default, PostgreSQL when
  APPROVAL_TEST_DATABASE_URL points at one)
- Per-test sessions isolated by transaction rollback
- Committing session factories for facade and concurrency tests
- A seeder for companies, users, workflows, rules and expenses
- Service fixtures wired to a DeterministicClock

Environment Variables:
- APPROVAL_TEST_DATABASE_URL: database URL for the suite.  Unset means a
  temporary SQLite file.  Tests marked ``postgres`` are skipped on SQLite.
"""

import json
import logging
import os
import threading
from decimal import Decimal
from io import StringIO
from typing import Any, Generator
from uuid import uuid4

import pytest
from sqlalchemy import delete, text
from sqlalchemy.orm import Session

from approval_kernel.db.base import Base
from approval_kernel.db.engine import (
    create_tables,
    drop_tables,
    get_session_factory,
    init_engine_from_url,
    reset_engine,
)
from approval_kernel.db.immutability import (
    register_immutability_listeners,
    unregister_immutability_listeners,
)
from approval_kernel.domain.clock import DeterministicClock
from approval_kernel.logging_config import (
    LogContext,
    StructuredFormatter,
    configure_logging,
    reset_logging,
)
from approval_kernel.models.directory import Company, User
from approval_kernel.models.expense import Expense
from approval_kernel.models.rule import ApprovalRule
from approval_kernel.models.workflow import ApprovalWorkflow, ApprovalWorkflowStep
from approval_kernel.selectors.approval_selector import ApprovalSelector
from approval_kernel.services.approval_workflow_service import ApprovalWorkflowService
from approval_kernel.services.currency_service import (
    CachedCurrencyConverter,
    RateCache,
    UsdPivotRateSource,
)
from approval_kernel.services.directory_service import SqlDirectoryService
from approval_kernel.services.escalation_service import EscalationService
from approval_kernel.services.notification_service import (
    NotificationDispatcher,
    NotificationService,
    SqlNotificationSink,
)
from approval_kernel.services.workflow_selector import WorkflowSelector

TEST_DATABASE_ENV = "APPROVAL_TEST_DATABASE_URL"

# Units per one USD.
TEST_RATES = {"EUR": Decimal("0.9"), "GBP": Decimal("0.8")}


# =============================================================================
# Logging fixtures
# =============================================================================


@pytest.fixture(autouse=True, scope="session")
def _configure_test_logging():
    """Configure structured logging for the test suite."""
    reset_logging()
    configure_logging(level=logging.DEBUG)
    yield
    reset_logging()


@pytest.fixture(autouse=True)
def _clear_log_context():
    """Clear LogContext between tests to prevent cross-test contamination."""
    LogContext.clear()
    yield
    LogContext.clear()


@pytest.fixture
def captured_logs():
    """
    Capture approval_engine logs as parsed JSON dicts.

    Usage::

        def test_something(captured_logs, workflow_service):
            workflow_service.submit(expense_id)
            logs = captured_logs()
            assert any(r["message"] == "expense_submitted" for r in logs)
    """
    stream = StringIO()
    handler = logging.StreamHandler(stream)
    handler.setFormatter(StructuredFormatter())
    root = logging.getLogger("approval_engine")
    root.addHandler(handler)

    def _get_records() -> list[dict]:
        lines = stream.getvalue().strip().split("\n")
        return [json.loads(line) for line in lines if line]

    yield _get_records

    root.removeHandler(handler)


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers", "postgres: mark test as requiring PostgreSQL"
    )


# =============================================================================
# Session-scoped DB infrastructure (create engine + tables ONCE per suite)
# =============================================================================


@pytest.fixture(scope="session")
def database_url(tmp_path_factory) -> str:
    """Database URL from the environment, or a temporary SQLite file."""
    url = os.environ.get(TEST_DATABASE_ENV)
    if url:
        return url
    path = tmp_path_factory.mktemp("db") / "approval_engine_test.db"
    return f"sqlite:///{path}"


@pytest.fixture(scope="session")
def db_engine(database_url):
    """Single engine for the entire test session."""
    eng = init_engine_from_url(
        database_url, echo=False,
        pool_size=30, max_overflow=20, pool_timeout=10,
    )
    yield eng
    reset_engine()


@pytest.fixture(scope="session")
def db_tables(db_engine):
    """Create all tables once per session, drop once at end.

    Immutability listeners are registered once and remain active.
    """
    drop_tables()
    create_tables()
    register_immutability_listeners()
    yield
    unregister_immutability_listeners()
    drop_tables()


def _clear_all_tables(engine):
    """Remove all rows after tests that really commit.

    PostgreSQL uses TRUNCATE; SQLite deletes child tables first.  Both
    bypass the ORM immutability listeners.
    """
    tables = list(reversed(Base.metadata.sorted_tables))
    with engine.connect() as conn:
        if engine.dialect.name == "postgresql":
            conn.execute(text(
                "TRUNCATE " + ", ".join(t.name for t in tables) + " CASCADE"
            ))
        else:
            for table in tables:
                conn.execute(delete(table))
        conn.commit()


@pytest.fixture
def requires_postgres(db_engine):
    if db_engine.dialect.name != "postgresql":
        pytest.skip(f"requires PostgreSQL ({TEST_DATABASE_ENV})")


# =============================================================================
# Per-test session with automatic rollback
# =============================================================================


@pytest.fixture(scope="function")
def session(db_tables, db_engine) -> Generator[Session, None, None]:
    """Provide a database session for testing.

    The session joins an outer transaction on a dedicated connection.
    ``session.commit()`` inside a test only releases a savepoint and the
    outer transaction is rolled back at teardown.
    """
    conn = db_engine.connect()
    trans = conn.begin()
    sess = Session(bind=conn, join_transaction_mode="create_savepoint", expire_on_commit=False)
    yield sess
    try:
        sess.close()
    finally:
        try:
            trans.rollback()
        finally:
            conn.close()


# =============================================================================
# Committing session factory (real commits + table cleanup)
# =============================================================================


@pytest.fixture(scope="function")
def committing_session_factory(db_engine, db_tables):
    """Tracked session factory whose sessions really commit.

    On teardown every tracked session is closed and all rows are removed.
    """
    factory = get_session_factory()
    created_sessions = []
    lock = threading.Lock()
    closed = False

    def tracked_factory():
        nonlocal closed
        with lock:
            if closed:
                raise RuntimeError("committing_session_factory closed (fixture teardown)")
            s = factory()
            created_sessions.append(s)
            return s

    yield tracked_factory

    with lock:
        closed = True

    for s in created_sessions:
        try:
            if s.is_active:
                s.rollback()
        finally:
            s.close()

    _clear_all_tables(db_engine)


# =============================================================================
# Clock and seed data
# =============================================================================


@pytest.fixture
def deterministic_clock() -> DeterministicClock:
    """Clock fixed at 2024-01-01 12:00 UTC until advanced."""
    return DeterministicClock()


class Seeder:
    """Creates directory, workflow and expense rows with flushes."""

    def __init__(self, session: Session, clock: DeterministicClock):
        self.session = session
        self.clock = clock

    def company(self, name: str = "Acme", currency: str = "USD") -> Company:
        company = Company(name=name, currency=currency)
        self.session.add(company)
        self.session.flush()
        return company

    def user(
        self,
        company: Company,
        name: str,
        *,
        role: str = "employee",
        department: str | None = None,
        manager: User | None = None,
        is_active: bool = True,
    ) -> User:
        user = User(
            company_id=company.id,
            name=name,
            email=f"{name.lower().replace(' ', '.')}.{uuid4().hex[:8]}@example.com",
            role=role,
            department=department,
            manager_id=manager.id if manager is not None else None,
            is_active=is_active,
        )
        self.session.add(user)
        self.session.flush()
        return user

    def workflow(
        self,
        company: Company,
        steps: list[dict[str, Any]],
        *,
        name: str = "Standard",
        is_default: bool = True,
        is_active: bool = True,
    ) -> ApprovalWorkflow:
        workflow = ApprovalWorkflow(
            company_id=company.id,
            name=name,
            is_default=is_default,
            is_active=is_active,
            created_at=self.clock.now(),
        )
        workflow.steps = [ApprovalWorkflowStep(**step) for step in steps]
        self.session.add(workflow)
        self.session.flush()
        return workflow

    def rule(
        self,
        company: Company,
        name: str,
        *,
        field: str,
        operator: str,
        value: Any,
        action: str,
        params: dict[str, Any] | None = None,
        priority: int = 0,
        workflow: ApprovalWorkflow | None = None,
        is_active: bool = True,
    ) -> ApprovalRule:
        rule = ApprovalRule(
            company_id=company.id,
            workflow_id=workflow.id if workflow is not None else None,
            name=name,
            condition_field=field,
            condition_operator=operator,
            condition_value=value,
            action_type=action,
            action_value=params,
            priority=priority,
            is_active=is_active,
            created_at=self.clock.now(),
        )
        self.session.add(rule)
        self.session.flush()
        return rule

    def expense(
        self,
        company: Company,
        user: User,
        amount: str | Decimal,
        *,
        currency: str | None = None,
        category: str | None = None,
        description: str | None = None,
    ) -> Expense:
        expense = Expense(
            company_id=company.id,
            user_id=user.id,
            amount=Decimal(str(amount)),
            currency=currency or company.currency,
            category=category,
            description=description,
            status="draft",
            created_at=self.clock.now(),
        )
        self.session.add(expense)
        self.session.flush()
        return expense


@pytest.fixture
def seed(session, deterministic_clock) -> Seeder:
    return Seeder(session, deterministic_clock)


class Org:
    """A small company: employee -> manager -> director, plus finance,
    CFO and admin users."""

    def __init__(self, seeder: Seeder, currency: str = "USD"):
        self.company = seeder.company(currency=currency)
        self.director = seeder.user(
            self.company, "Dana Director", role="manager", department="Operations",
        )
        self.manager = seeder.user(
            self.company, "Morgan Manager", role="manager",
            department="Engineering", manager=self.director,
        )
        self.employee = seeder.user(
            self.company, "Erin Employee", department="Engineering",
            manager=self.manager,
        )
        self.finance = seeder.user(self.company, "Frances Finance", role="finance")
        self.cfo = seeder.user(self.company, "Casey CFO", role="cfo")
        self.admin = seeder.user(self.company, "Alex Admin", role="admin")


@pytest.fixture
def org(seed) -> Org:
    return Org(seed)


@pytest.fixture
def committed_seed(committing_session_factory, deterministic_clock) -> Seeder:
    """Seeder on a really-committing session; call ``seed.session.commit()``
    after creating rows that other sessions must see."""
    return Seeder(committing_session_factory(), deterministic_clock)


@pytest.fixture
def committed_org(committed_seed) -> Org:
    org = Org(committed_seed)
    committed_seed.workflow(
        org.company,
        [
            {"step_number": 1, "step_name": "Manager", "approver_type": "manager"},
            {"step_number": 2, "step_name": "Finance", "approver_type": "finance"},
        ],
    )
    committed_seed.session.commit()
    return org


# =============================================================================
# Services
# =============================================================================


class RecordingSink:
    """NotificationSink that remembers calls and can be told to fail."""

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.sent: list[tuple] = []

    def notify(self, user_id, kind, expense_id, payload):
        if self.fail:
            raise ConnectionError("notification channel down")
        self.sent.append((user_id, kind, expense_id, payload))

    def kinds_for(self, user_id):
        return [kind for uid, kind, _, _ in self.sent if uid == user_id]


@pytest.fixture
def directory(session) -> SqlDirectoryService:
    return SqlDirectoryService(session)


@pytest.fixture
def notifier(session, deterministic_clock) -> NotificationDispatcher:
    """Dispatcher persisting Notification rows."""
    return NotificationDispatcher(session, SqlNotificationSink(session, deterministic_clock))


@pytest.fixture
def converter(directory, deterministic_clock) -> CachedCurrencyConverter:
    return CachedCurrencyConverter(
        directory,
        UsdPivotRateSource(TEST_RATES),
        RateCache(ttl_seconds=3600, clock=deterministic_clock),
    )


@pytest.fixture
def workflow_service(
    session, directory, notifier, converter, deterministic_clock,
) -> ApprovalWorkflowService:
    return ApprovalWorkflowService(
        session,
        directory,
        notifier,
        converter=converter,
        selector=WorkflowSelector(session),
        clock=deterministic_clock,
    )


@pytest.fixture
def escalation_service(session, directory, notifier, deterministic_clock) -> EscalationService:
    return EscalationService(session, directory, notifier, clock=deterministic_clock)


@pytest.fixture
def notification_service(session, deterministic_clock) -> NotificationService:
    return NotificationService(session, deterministic_clock)


@pytest.fixture
def approval_selector(session, deterministic_clock) -> ApprovalSelector:
    return ApprovalSelector(session, deterministic_clock)


@pytest.fixture
def recording_sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture
def failing_sink() -> RecordingSink:
    return RecordingSink(fail=True)


@pytest.fixture
def make_workflow_service(session, directory, converter, deterministic_clock):
    """Build an ApprovalWorkflowService with substituted collaborators."""

    def _make(*, sink=None, directory_service=None, currency_converter=converter):
        sink = sink if sink is not None else SqlNotificationSink(session, deterministic_clock)
        return ApprovalWorkflowService(
            session,
            directory_service or directory,
            NotificationDispatcher(session, sink),
            converter=currency_converter,
            selector=WorkflowSelector(session),
            clock=deterministic_clock,
        )

    return _make


@pytest.fixture
def make_escalation_service(session, directory, deterministic_clock):
    """Build an EscalationService with substituted collaborators."""

    def _make(*, sink=None, directory_service=None):
        sink = sink if sink is not None else SqlNotificationSink(session, deterministic_clock)
        return EscalationService(
            session,
            directory_service or directory,
            NotificationDispatcher(session, sink),
            clock=deterministic_clock,
        )

    return _make
