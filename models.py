"""
SQLite persistence for saved what-if scenarios and usage events.

Lightweight, append-mostly design. No ORM — just raw sqlite3.
Each scenario stores its two score sets as flat {measure_id: value}
JSON objects; ratings are always recomputed on read so a catalog
change never serves a stale number.
"""

import sqlite3
import os
import json
import uuid
import logging
from datetime import datetime, timezone

logger = logging.getLogger(__name__)

DB_PATH = os.environ.get("QM_DB_PATH", "qm_engine.db")


def _get_db():
    """Get a sqlite3 connection with WAL mode for concurrent reads."""
    conn = sqlite3.connect(DB_PATH, timeout=10)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL")
    return conn


def init_db():
    """Create tables if they don't exist. Safe to call on every startup."""
    conn = _get_db()
    conn.executescript("""
        CREATE TABLE IF NOT EXISTS scenarios (
            scenario_id      TEXT PRIMARY KEY,
            name             TEXT NOT NULL,
            catalog_version  TEXT NOT NULL,
            created_at       TEXT NOT NULL,
            current_json     TEXT NOT NULL,
            what_if_json     TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS events (
            id           INTEGER PRIMARY KEY AUTOINCREMENT,
            event_type   TEXT NOT NULL,
            scenario_id  TEXT,
            metadata     TEXT,
            created_at   TEXT NOT NULL
        );

        CREATE INDEX IF NOT EXISTS idx_scenarios_created ON scenarios(created_at);
        CREATE INDEX IF NOT EXISTS idx_events_type ON events(event_type);
    """)
    conn.commit()
    conn.close()


def generate_scenario_id():
    """Short, URL-safe scenario ID (8 chars)."""
    return uuid.uuid4().hex[:8]


def save_scenario(name, current, what_if, catalog_version):
    """Persist a scenario. Returns the scenario_id."""
    scenario_id = generate_scenario_id()
    now = datetime.now(timezone.utc).isoformat()

    conn = _get_db()
    conn.execute(
        """INSERT INTO scenarios
           (scenario_id, name, catalog_version, created_at, current_json, what_if_json)
           VALUES (?, ?, ?, ?, ?, ?)""",
        (
            scenario_id,
            name,
            catalog_version,
            now,
            json.dumps(dict(current), sort_keys=True),
            json.dumps(dict(what_if), sort_keys=True),
        ),
    )
    conn.commit()
    conn.close()
    return scenario_id


def get_scenario(scenario_id):
    """
    Load a scenario by ID. Returns dict with metadata plus parsed
    `current` / `what_if` score sets, or None if not found or corrupt.
    """
    conn = _get_db()
    row = conn.execute(
        "SELECT * FROM scenarios WHERE scenario_id = ?", (scenario_id,)
    ).fetchone()
    conn.close()

    if not row:
        return None

    data = dict(row)
    try:
        data["current"] = json.loads(data.pop("current_json"))
        data["what_if"] = json.loads(data.pop("what_if_json"))
    except (json.JSONDecodeError, TypeError) as e:
        logger.error("Corrupted score JSON for scenario %s: %s", scenario_id, e)
        return None
    return data


def get_recent_scenarios(limit=20):
    """Newest scenarios first, metadata only."""
    conn = _get_db()
    rows = conn.execute(
        """SELECT scenario_id, name, catalog_version, created_at
           FROM scenarios ORDER BY created_at DESC LIMIT ?""",
        (limit,),
    ).fetchall()
    conn.close()
    return [dict(r) for r in rows]


def delete_scenario(scenario_id):
    """Delete a scenario. Returns True if a row was removed."""
    conn = _get_db()
    cur = conn.execute("DELETE FROM scenarios WHERE scenario_id = ?", (scenario_id,))
    conn.commit()
    conn.close()
    return cur.rowcount > 0


# ---------------------------------------------------------------------------
# Usage events
# ---------------------------------------------------------------------------

def log_event(event_type, scenario_id=None, metadata=None):
    """
    Append a usage event.

    event_type: one of rating_computed, comparison_run, priorities_ranked,
                scenario_saved, scenario_viewed
    metadata:   optional dict of extra info
    """
    now = datetime.now(timezone.utc).isoformat()
    conn = _get_db()
    conn.execute(
        """INSERT INTO events (event_type, scenario_id, metadata, created_at)
           VALUES (?, ?, ?, ?)""",
        (
            event_type,
            scenario_id,
            json.dumps(metadata) if metadata else None,
            now,
        ),
    )
    conn.commit()
    conn.close()


def get_event_counts():
    """Return {event_type: count} across all events."""
    conn = _get_db()
    rows = conn.execute(
        "SELECT event_type, COUNT(*) as cnt FROM events GROUP BY event_type"
    ).fetchall()
    conn.close()
    return {r["event_type"]: r["cnt"] for r in rows}
