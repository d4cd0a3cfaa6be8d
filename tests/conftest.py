"""Test configuration and fixtures for the Library Circulation MCP Server.

Every test gets:
1. Its own SQLite file in a temporary directory, with the full schema
2. A configuration object pointing at that file
3. A circulation service driven by a fixed clock, so due dates and fines can
   be checked at exact boundaries
"""

import os
from collections.abc import Generator
from datetime import datetime
from pathlib import Path

import logfire
import pytest

from library_circulation_mcp import circulation
from library_circulation_mcp.circulation import CirculationService
from library_circulation_mcp.clock import FixedClock
from library_circulation_mcp.config import ServerConfig, reset_config
from library_circulation_mcp.database.book_repository import BookCreateSchema
from library_circulation_mcp.database.session import DatabaseManager, set_db_manager
from library_circulation_mcp.database.user_repository import UserCreateSchema

# Day 0 of every scenario
DAY0 = datetime(2024, 3, 1, 10, 0, 0)


@pytest.fixture(scope="session", autouse=True)
def _quiet_logfire():
    """Keep spans local during tests."""
    logfire.configure(send_to_logfire=False, console=False)


# === Configuration Fixtures ===


@pytest.fixture
def clean_env() -> Generator[None, None, None]:
    """Provide an environment without LIBRARY_CIRCULATION_* variables."""
    original_env = os.environ.copy()

    for key in list(os.environ.keys()):
        if key.startswith("LIBRARY_CIRCULATION_"):
            del os.environ[key]

    yield

    os.environ.clear()
    os.environ.update(original_env)


@pytest.fixture
def test_db_path(tmp_path: Path) -> Path:
    """Provide a temporary database path for each test."""
    return tmp_path / "test_circulation.db"


@pytest.fixture
def test_config(test_db_path: Path, clean_env) -> Generator[ServerConfig, None, None]:
    """Provide a test-specific configuration with the default policy."""
    reset_config()
    # Anything that falls back to get_config() lands in the temporary directory too
    os.environ["LIBRARY_CIRCULATION_DATABASE_PATH"] = str(test_db_path)

    config = ServerConfig(
        server_name="test-circulation",
        server_version="0.0.1-test",
        database_path=test_db_path,
        debug=True,
        log_level="DEBUG",
        loan_period_days=14,
        daily_fine_rate=5,
        lock_timeout_seconds=5.0,
    )

    yield config

    reset_config()


# === Database Fixtures ===


@pytest.fixture
def db_manager(test_db_path: Path, test_config: ServerConfig) -> Generator[DatabaseManager, None, None]:
    """A database manager bound to the temporary file, schema created."""
    manager = DatabaseManager(f"sqlite:///{test_db_path}", busy_timeout=5.0)
    manager.init_database()
    set_db_manager(manager)

    yield manager

    set_db_manager(None)
    manager.close()


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock(DAY0)


@pytest.fixture
def service(
    db_manager: DatabaseManager, clock: FixedClock, test_config: ServerConfig
) -> Generator[CirculationService, None, None]:
    """The circulation service, also installed as the global one for tools and resources."""
    svc = CirculationService(db_manager, clock=clock, config=test_config)
    circulation.set_circulation_service(svc)

    yield svc

    circulation.set_circulation_service(None)


# === Sample Data Fixtures ===


@pytest.fixture
def make_book(service: CirculationService):
    counter = {"n": 0}

    def _make(quantity: int = 1, title: str | None = None, category: str | None = "Fiction"):
        counter["n"] += 1
        n = counter["n"]
        return service.add_book(
            BookCreateSchema(
                title=title or f"Test Book {n}",
                author="Test Author",
                isbn=f"978000000{n:04d}",
                category=category,
                quantity=quantity,
            )
        )

    return _make


@pytest.fixture
def make_user(service: CirculationService):
    counter = {"n": 0}

    def _make(name: str | None = None):
        counter["n"] += 1
        n = counter["n"]
        return service.register_user(
            UserCreateSchema(name=name or f"Test User {n}", email=f"user{n}@example.com")
        )

    return _make


@pytest.fixture
def book(make_book):
    """A book with a single copy."""
    return make_book(quantity=1, title="The Pragmatic Programmer")


@pytest.fixture
def user(make_user):
    return make_user("Ada Lovelace")


@pytest.fixture
def assert_counters_consistent(service: CirculationService):
    """Check available == quantity - open loans for a book."""

    def _check(book_id: str) -> None:
        book = service.get_book(book_id)
        open_loans = [
            loan
            for loan in service.list_all_loans()
            if loan.book_id == book_id and loan.return_date is None
        ]
        assert 0 <= book.available <= book.quantity
        assert book.available == book.quantity - len(open_loans)

    return _check
