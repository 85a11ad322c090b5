"""Pytest configuration. Ensures backend root is on sys.path for imports like api.*, services.*, etc."""
import asyncio
import sys
from pathlib import Path
from typing import Any, Awaitable, Callable, Iterator

import pytest

_backend: Path = Path(__file__).resolve().parent
if str(_backend) not in sys.path:
    sys.path.insert(0, str(_backend))

TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"


@pytest.fixture
def db_run() -> Iterator[Callable[[Callable[[], Awaitable[Any]]], Any]]:
    """Run an async scenario against a fresh in-memory database.

    Tables are created and the engine disposed inside the same event loop as
    the scenario, so every test gets its own empty schema.
    """
    from config import settings
    from models.database import close_db, configure_database, init_db

    configure_database(TEST_DATABASE_URL)

    def _run(scenario: Callable[[], Awaitable[Any]]) -> Any:
        async def _wrapped() -> Any:
            await init_db()
            try:
                return await scenario()
            finally:
                await close_db()

        return asyncio.run(_wrapped())

    yield _run
    configure_database(settings.DATABASE_URL)
