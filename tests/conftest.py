"""Import paths and shared fixtures for the test suite."""

from __future__ import annotations

import sys
from pathlib import Path

import pytest


def _ensure_src_on_path() -> None:
    root = Path(__file__).resolve().parents[1]
    for path in (root / "src", root / "tests"):
        value = str(path)
        if value not in sys.path:
            sys.path.insert(0, value)


_ensure_src_on_path()


@pytest.fixture
def engine():
    from core.db import create_db_engine

    db = create_db_engine("sqlite://")
    yield db
    db.dispose()


@pytest.fixture
def ledger(engine):
    from ledger.sql import SqlLedger

    return SqlLedger(engine)
