"""
Pytest configuration and shared fixtures.
"""

from contextlib import asynccontextmanager

import pytest
from sqlalchemy import event
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import NullPool

from roster.db import make_session_factory
from roster.models import Base
from roster.parsers import VOTER_COLUMNS

HEADER = ",".join(column.header for column in VOTER_COLUMNS)


def make_sqlite_engine(db_path):
    """Async SQLite engine with foreign keys enforced."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{db_path}", poolclass=NullPool)

    @event.listens_for(engine.sync_engine, "connect")
    def _enable_foreign_keys(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    return engine


@pytest.fixture
def db_path(tmp_path):
    return tmp_path / "test.db"


@pytest.fixture
def store(db_path):
    """Async context manager yielding a session factory over a fresh schema."""

    @asynccontextmanager
    async def _open():
        engine = make_sqlite_engine(db_path)
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        try:
            yield make_session_factory(engine)
        finally:
            await engine.dispose()

    return _open


@pytest.fixture
def make_csv():
    """Build roll CSV text from dicts keyed by column header."""

    def _make(rows, header=HEADER):
        columns = header.split(",")
        lines = [header]
        for row in rows:
            lines.append(",".join(row.get(column, "") for column in columns))
        return "\n".join(lines) + "\n"

    return _make


@pytest.fixture
def sample_rows():
    """Three realistic roll rows."""
    return [
        {
            "NoSiri": "1",
            "NoKp": "970101-10-1234",
            "Nama": '"Doe, John"',
            "Jantina": "L",
            "TarikhLahir": "33000",
            "alamat": '"Lot 12, Jalan Damai"',
            "poskod": "88300",
            "daerah": "Kota Kinabalu",
            "NamaLokaliti": "Kampung Likas",
            "Saluran": "2",
        },
        {
            "NoSiri": "2",
            "NoKp": "800505125678",
            "Nama": "Siti Aminah",
            "Jantina": "P",
            "TarikhLahir": "15/05/1980",
            "alamat": "Blok B Taman Indah",
            "poskod": "88450",
            "Saluran": "1",
        },
        {
            "NoSiri": "3",
            "NoKp": "650712-12-5555",
            "Nama": "Ahmad Bin Ali",
            "TarikhLahir": "1965-07-12",
            "Saluran": "1",
        },
    ]


@pytest.fixture
def make_engine():
    """Factory for standalone SQLite engines (API tests own their engine)."""
    return make_sqlite_engine
