"""Shared fixtures."""

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from imx_bootstack.config import Settings
from imx_bootstack.db import create_all_tables


@pytest.fixture
def settings(tmp_path):
    """Settings rooted in a temporary work directory, ignoring any .env."""
    return Settings(_env_file=None, workdir=tmp_path, jobs=4)


@pytest.fixture
def engine():
    """Create an in-memory SQLite engine for testing."""
    engine = create_engine("sqlite:///:memory:", echo=False)
    create_all_tables(engine)
    return engine


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
