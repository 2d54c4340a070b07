"""
Scheduler store migrations (SQLite).

Tables hold the queryable columns next to a JSON ``data`` document with the
full record, so model fields can grow without schema churn.
Timestamps are stored as fixed-width UTC ISO strings and compare as text.
"""

from __future__ import annotations

import sqlite3
from pathlib import Path
from typing import Union

from loguru import logger


SCHEDULER_SQLITE_DDL = """
CREATE TABLE IF NOT EXISTS scheduler_jobs (
  name TEXT PRIMARY KEY,
  queue TEXT NOT NULL,
  state TEXT NOT NULL CHECK (state IN ('active','paused','disabled')),
  enabled INTEGER NOT NULL DEFAULT 1,
  paused INTEGER NOT NULL DEFAULT 0,
  priority INTEGER NOT NULL DEFAULT 0 CHECK (priority >= 0 AND priority <= 9),
  next_run_at TEXT,
  tags TEXT,
  data TEXT NOT NULL,
  created_at TEXT,
  updated_at TEXT
);

CREATE INDEX IF NOT EXISTS idx_scheduler_jobs_due ON scheduler_jobs(state, enabled, paused, next_run_at, priority);
CREATE INDEX IF NOT EXISTS idx_scheduler_jobs_queue ON scheduler_jobs(queue);

CREATE TABLE IF NOT EXISTS scheduler_workflows (
  name TEXT PRIMARY KEY,
  trigger_type TEXT NOT NULL,
  tags TEXT,
  data TEXT NOT NULL,
  updated_at TEXT
);

CREATE TABLE IF NOT EXISTS scheduler_locks (
  key TEXT PRIMARY KEY,
  owner TEXT NOT NULL,
  expires_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_scheduler_locks_expiry ON scheduler_locks(expires_at);

CREATE TABLE IF NOT EXISTS scheduler_executions (
  id TEXT PRIMARY KEY,
  job_name TEXT NOT NULL,
  queue TEXT,
  node TEXT,
  attempt INTEGER NOT NULL DEFAULT 1,
  state TEXT NOT NULL CHECK (state IN ('pending','running','completed','failed','timeout','cancelled','rescued')),
  result TEXT,
  started_at TEXT,
  completed_at TEXT,
  duration_ms INTEGER,
  heartbeat_at TEXT,
  error TEXT,
  stacktrace TEXT,
  unique_key TEXT,
  meta TEXT
);

CREATE INDEX IF NOT EXISTS idx_scheduler_exec_job ON scheduler_executions(job_name, started_at);
CREATE INDEX IF NOT EXISTS idx_scheduler_exec_state ON scheduler_executions(state, heartbeat_at);
CREATE INDEX IF NOT EXISTS idx_scheduler_exec_unique ON scheduler_executions(unique_key, state);

CREATE TABLE IF NOT EXISTS scheduler_dead_letters (
  id TEXT PRIMARY KEY,
  job_name TEXT NOT NULL,
  queue TEXT,
  last_failed_at TEXT,
  data TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_scheduler_dlq_queue ON scheduler_dead_letters(queue, last_failed_at);

CREATE TABLE IF NOT EXISTS scheduler_workflow_executions (
  id TEXT PRIMARY KEY,
  workflow_name TEXT NOT NULL,
  state TEXT NOT NULL,
  created_at TEXT,
  updated_at TEXT,
  data TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_scheduler_wfx_name ON scheduler_workflow_executions(workflow_name, created_at);
"""


def ensure_scheduler_tables(db_path: Union[str, Path]) -> Path:
    """Ensure the scheduler tables exist in the given SQLite database.

    Returns:
        Path to the database used
    """
    db_path = Path(db_path)
    try:
        db_path.parent.mkdir(parents=True, exist_ok=True)
    except Exception:
        pass
    with sqlite3.connect(db_path) as conn:
        try:
            conn.execute("PRAGMA journal_mode=WAL;")
            conn.execute("PRAGMA synchronous=NORMAL;")
            conn.execute("PRAGMA busy_timeout=5000;")
        except Exception:
            pass
        conn.executescript(SCHEDULER_SQLITE_DDL)
        conn.commit()
    logger.info(f"Ensured scheduler schema at {db_path.resolve()}")
    return db_path
