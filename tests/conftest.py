"""Shared fixtures for the QM engine test suite.

Provides a Flask test client wired to a temporary SQLite database,
plus small hand-built catalogs for the pure scoring tests.
"""

import atexit
import os
import tempfile

import pytest

# Point the DB at a temp file BEFORE importing app/models (they read QM_DB_PATH at import time)
_test_db_fd, _test_db_path = tempfile.mkstemp(suffix=".db")
os.close(_test_db_fd)  # close the fd immediately; sqlite3 opens its own handle
os.environ["QM_DB_PATH"] = _test_db_path
atexit.register(lambda: os.unlink(_test_db_path) if os.path.exists(_test_db_path) else None)

# Suppress the SECRET_KEY startup guard
os.environ.setdefault("SECRET_KEY", "test-secret-key")

from app import app, limiter  # noqa: E402
from models import init_db, _get_db  # noqa: E402
from qm_config import (  # noqa: E402
    LONG_STAY,
    SHORT_STAY,
    MeasureContent,
    MeasureSpec,
    MeasureThresholds,
    build_catalog,
)


@pytest.fixture(autouse=True)
def _fresh_db():
    """Reset the database before every test, keeping the schema intact."""
    init_db()
    conn = _get_db()
    for table in ("events", "scenarios"):
        conn.execute(f"DELETE FROM {table}")
    conn.commit()
    conn.close()
    yield


@pytest.fixture()
def client():
    """Flask test client with CSRF and rate limits disabled (we're testing logic)."""
    app.config["TESTING"] = True
    app.config["WTF_CSRF_ENABLED"] = False
    limiter.enabled = False
    with app.test_client() as c:
        yield c
    limiter.enabled = True


@pytest.fixture()
def csrf_client():
    """Test client with CSRF enforced, as in production."""
    app.config["TESTING"] = True
    app.config["WTF_CSRF_ENABLED"] = True
    limiter.enabled = False
    with app.test_client() as c:
        yield c
    app.config["WTF_CSRF_ENABLED"] = False
    limiter.enabled = True


def _make_spec(measure_id, thresholds, lower_is_better=True, weight=1.0, group=LONG_STAY):
    return MeasureSpec(
        id=measure_id,
        lower_is_better=lower_is_better,
        thresholds=MeasureThresholds(*thresholds),
        weight=weight,
        group=group,
    )


def _make_content(measure_id, national_average=0.0):
    return MeasureContent(
        id=measure_id,
        name=measure_id.replace("_", " ").title(),
        description=f"Test measure {measure_id}",
        national_average=national_average,
        action_plan=(f"Improve {measure_id}",),
    )


@pytest.fixture()
def two_measure_catalog():
    """falls (1.0x) + rehospitalization (1.5x), both lower-is-better."""
    specs = (
        _make_spec("falls", (1.5, 2.5, 4.0, 5.5)),
        _make_spec("rehospitalization", (15, 18, 24, 30), weight=1.5, group=SHORT_STAY),
    )
    contents = (_make_content("falls", 3.2), _make_content("rehospitalization", 21.8))
    return build_catalog("test", specs, contents)
