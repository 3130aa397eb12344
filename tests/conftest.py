import os
import sys
from dataclasses import dataclass
from datetime import date
from typing import Dict, Generator, Iterator, List

import pytest
import sqlalchemy as sa
from fastapi.testclient import TestClient
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

# Ensure the repository root is on sys.path so tests can import the periop package
ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), '..'))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

os.environ.setdefault('PERIOP_COOKIE_SECURE', 'false')
os.environ.setdefault('PERIOP_IDENTIFIER_SALT', 'test-salt')
os.environ.setdefault('OPENAI_API_KEY', 'sk-test-aaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaa')

from periop import main  # noqa: E402
from periop.auth import SESSION_COOKIE, get_session_store, hash_identifier  # noqa: E402
from periop.db import configure_engine, get_db, init_schema  # noqa: E402
from periop.db import models as db_models  # noqa: E402
from periop.sessions import InMemorySessionStore, SessionData  # noqa: E402


def _env_flag(name: str) -> bool:
    return os.getenv(name, '0').lower() in {'1', 'true', 'yes'}


def pytest_addoption(parser: pytest.Parser) -> None:
    parser.addoption(
        '--run-postgres',
        action='store_true',
        default=_env_flag('RUN_PG_TESTS'),
        dest='run_postgres',
        help='Execute tests marked with @pytest.mark.postgres that require PostgreSQL.',
    )


def pytest_collection_modifyitems(config: pytest.Config, items: List[pytest.Item]) -> None:
    if config.getoption('run_postgres'):
        return
    skip_marker = pytest.mark.skip(reason='Requires PostgreSQL. Set RUN_PG_TESTS=1 or pass --run-postgres to enable.')
    for item in items:
        if 'postgres' in item.keywords:
            item.add_marker(skip_marker)


DOCTOR = {'name': 'Grey', 'ssn': '111-11-1111', 'dob': date(1975, 4, 12)}
PATIENT = {'name': 'Pat Doe', 'ssn': '222-22-2222', 'dob': date(1988, 9, 30)}
OTHER_PATIENT = {'name': 'Sam Roe', 'ssn': '333-33-3333', 'dob': date(1990, 1, 2)}


@dataclass
class DatabaseContext:
    """Holds state for the ephemeral in-memory SQLite database."""

    engine: sa.engine.Engine
    session_factory: sessionmaker

    def make_session(self) -> Session:
        return self.session_factory()


@pytest.fixture(scope='function')
def in_memory_db() -> Iterator[DatabaseContext]:
    """Provide an isolated in-memory SQLite database for each test."""

    engine = sa.create_engine(
        'sqlite+pysqlite:///:memory:',
        future=True,
        connect_args={'check_same_thread': False},
        poolclass=StaticPool,
    )
    init_schema(engine)
    configure_engine(engine)
    session_factory = sessionmaker(bind=engine, autoflush=False, future=True)

    def _session_dependency() -> Generator[Session, None, None]:
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    main.app.dependency_overrides[get_db] = _session_dependency
    try:
        yield DatabaseContext(engine=engine, session_factory=session_factory)
    finally:
        main.app.dependency_overrides.pop(get_db, None)
        engine.dispose()


@pytest.fixture(scope='function')
def db_session(in_memory_db: DatabaseContext) -> Iterator[Session]:
    """Yield a SQLAlchemy session tied to the in-memory database."""

    session = in_memory_db.make_session()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture(scope='function')
def session_store() -> Iterator[InMemorySessionStore]:
    store = InMemorySessionStore()
    main.app.dependency_overrides[get_session_store] = lambda: store
    try:
        yield store
    finally:
        main.app.dependency_overrides.pop(get_session_store, None)


@pytest.fixture(scope='function')
def api_client(in_memory_db: DatabaseContext, session_store, monkeypatch) -> Iterator[TestClient]:
    """Yield a FastAPI test client bound to the in-memory database."""

    from periop.ws_guidelines import GuidelineWebSocketManager

    monkeypatch.setattr(main, 'guideline_ws_manager', GuidelineWebSocketManager())
    with TestClient(main.app) as client:
        yield client


def _make_user(session: Session, spec: Dict[str, object], role: str) -> db_models.User:
    user = db_models.User(
        name=spec['name'],
        role=role,
        ssn_hash=hash_identifier(str(spec['ssn'])),
        dob=spec['dob'],
    )
    session.add(user)
    session.commit()
    return user


@pytest.fixture(scope='function')
def users(db_session: Session) -> Dict[str, int]:
    """Seed a doctor and two patients; returns their ids keyed by role."""

    doctor = _make_user(db_session, DOCTOR, 'doctor')
    patient = _make_user(db_session, PATIENT, 'patient')
    other = _make_user(db_session, OTHER_PATIENT, 'patient')
    return {'doctor': doctor.id, 'patient': patient.id, 'other_patient': other.id}


@pytest.fixture(scope='function')
def login_as(api_client: TestClient, session_store: InMemorySessionStore, users):
    """Attach a session cookie for ``role`` (or an explicit user) to the client."""

    def _login(role: str = 'doctor', user_id: int | None = None) -> str:
        uid = user_id if user_id is not None else users[role]
        account_role = 'patient' if role == 'other_patient' else role
        sid = session_store.create(SessionData(user_id=uid, role=account_role))
        api_client.cookies.set(SESSION_COOKIE, sid)
        return sid

    return _login
