"""SQLite database connection management and schema initialization."""

import sqlite3
from contextlib import contextmanager
from pathlib import Path

SCHEMA = """
CREATE TABLE IF NOT EXISTS assignments (
    id TEXT PRIMARY KEY,
    issue_number INTEGER NOT NULL,
    issue_title TEXT NOT NULL,
    issue_body TEXT DEFAULT '',
    external_link_id TEXT,
    provider TEXT NOT NULL,
    instance_id TEXT,
    worktree_path TEXT,
    branch_name TEXT,
    process_id INTEGER,
    status TEXT DEFAULT 'assigned' CHECK (status IN (
        'assigned', 'in-progress', 'in-review', 'dev-complete',
        'merge-review', 'stage-ready', 'merged'
    )),
    is_phase_master INTEGER DEFAULT 0,
    pr_number INTEGER,
    stage_commit TEXT,
    main_commit TEXT,
    review_result TEXT,
    tracker_pending TEXT,
    assigned_at TEXT DEFAULT (datetime('now')),
    started_at TEXT,
    last_activity TEXT,
    completed_at TEXT,
    merged_at TEXT
);

CREATE UNIQUE INDEX IF NOT EXISTS idx_assignments_active_issue
    ON assignments(issue_number) WHERE status != 'merged';

CREATE UNIQUE INDEX IF NOT EXISTS idx_assignments_active_instance
    ON assignments(instance_id)
    WHERE status IN ('assigned', 'in-progress') AND instance_id IS NOT NULL;

CREATE INDEX IF NOT EXISTS idx_assignments_status ON assignments(status);

CREATE TABLE IF NOT EXISTS work_sessions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    assignment_id TEXT NOT NULL REFERENCES assignments(id) ON DELETE CASCADE,
    started_at TEXT DEFAULT (datetime('now')),
    ended_at TEXT,
    summary TEXT,
    prompt_used TEXT
);

CREATE TABLE IF NOT EXISTS assignment_events (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    assignment_id TEXT NOT NULL REFERENCES assignments(id) ON DELETE CASCADE,
    event_type TEXT NOT NULL,
    old_value TEXT,
    new_value TEXT,
    created_at TEXT DEFAULT (datetime('now'))
);
"""


def init_db(db_path: Path) -> sqlite3.Connection:
    """Initialize the database, creating tables if needed."""
    db_path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(str(db_path), check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA foreign_keys=ON")
    conn.executescript(SCHEMA)
    conn.commit()
    return conn


@contextmanager
def get_db(db_path: Path):
    """Context manager for database connections."""
    conn = init_db(db_path)
    try:
        yield conn
    finally:
        conn.close()
