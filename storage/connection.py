"""Database connection management and schema initialization."""

import sqlite3
from pathlib import Path

from config import DEFAULT_DB_PATH

DEFAULT_TIMEOUT_SECONDS = 5.0

SCHEMA_SQL = """
-- ==========================================================================
-- Reference data (content store)
-- ==========================================================================

CREATE TABLE IF NOT EXISTS students (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL DEFAULT '',
    grade INTEGER NOT NULL DEFAULT 6,
    enrolled_at TEXT NOT NULL,
    subscription_tier TEXT NOT NULL DEFAULT 'free'
        CHECK (subscription_tier IN ('free', 'basic', 'premium', 'family')),
    timezone TEXT NOT NULL DEFAULT 'UTC',
    active INTEGER NOT NULL DEFAULT 1
);

CREATE TABLE IF NOT EXISTS problems (
    id TEXT PRIMARY KEY,
    topic TEXT NOT NULL,
    subtopic TEXT NOT NULL DEFAULT '',
    difficulty INTEGER NOT NULL CHECK (difficulty BETWEEN 1 AND 10),
    problem_type TEXT NOT NULL,
    answer_format TEXT NOT NULL CHECK (answer_format IN ('numeric', 'choice', 'text')),
    correct_answer TEXT NOT NULL,
    alternative_answers TEXT NOT NULL DEFAULT '[]',  -- JSON array
    choices TEXT NOT NULL DEFAULT '[]',  -- JSON array
    points INTEGER NOT NULL DEFAULT 10,
    competition TEXT,
    hint_count INTEGER NOT NULL DEFAULT 3,
    estimated_time INTEGER NOT NULL DEFAULT 5
);

CREATE INDEX IF NOT EXISTS idx_problems_topic ON problems(topic, difficulty);

-- Achievement definitions; position keeps insertion order for evaluation
CREATE TABLE IF NOT EXISTS achievements (
    id TEXT PRIMARY KEY,
    position INTEGER NOT NULL,
    name TEXT NOT NULL,
    description TEXT NOT NULL DEFAULT '',
    category TEXT NOT NULL,
    rarity TEXT NOT NULL,
    points INTEGER NOT NULL DEFAULT 0,
    requirements TEXT NOT NULL DEFAULT '[]',  -- JSON array of requirements
    is_active INTEGER NOT NULL DEFAULT 1
);

-- ==========================================================================
-- Progression state (written only by the coordinator)
-- ==========================================================================

-- Applied attempts; the primary key is the idempotency guarantee
CREATE TABLE IF NOT EXISTS attempts (
    student_id TEXT NOT NULL,
    idempotency_key TEXT NOT NULL,
    problem_id TEXT NOT NULL,
    topic TEXT NOT NULL,
    difficulty INTEGER NOT NULL,
    competition TEXT,
    submitted_answer TEXT NOT NULL,
    is_correct INTEGER NOT NULL,
    points_earned INTEGER NOT NULL DEFAULT 0,
    time_spent REAL NOT NULL,
    hints_used INTEGER NOT NULL DEFAULT 0,
    submitted_at TEXT NOT NULL,
    attempt_number INTEGER NOT NULL DEFAULT 1,
    gave_up INTEGER NOT NULL DEFAULT 0,
    PRIMARY KEY (student_id, idempotency_key)
);

CREATE INDEX IF NOT EXISTS idx_attempts_student_time ON attempts(student_id, submitted_at);
CREATE INDEX IF NOT EXISTS idx_attempts_problem ON attempts(student_id, problem_id);

CREATE TABLE IF NOT EXISTS topic_progress (
    student_id TEXT NOT NULL,
    topic TEXT NOT NULL,
    mastery REAL NOT NULL CHECK (mastery BETWEEN 0 AND 100),
    attempts INTEGER NOT NULL DEFAULT 0,
    correct INTEGER NOT NULL DEFAULT 0,
    total_time_spent REAL NOT NULL DEFAULT 0,
    last_practiced TEXT,
    PRIMARY KEY (student_id, topic)
);

CREATE TABLE IF NOT EXISTS review_items (
    id TEXT PRIMARY KEY,
    student_id TEXT NOT NULL,
    topic TEXT NOT NULL,
    problem_id TEXT,
    status TEXT NOT NULL CHECK (status IN ('scheduled', 'reviewed')),
    created_at TEXT NOT NULL,
    due_at TEXT NOT NULL,
    interval_days REAL NOT NULL,
    lapse_count INTEGER NOT NULL DEFAULT 0,
    review_count INTEGER NOT NULL DEFAULT 0,
    reviewed_at TEXT,
    outcome TEXT CHECK (outcome IS NULL OR outcome IN ('success', 'lapse'))
);

-- At most one active item per (student, topic)
CREATE UNIQUE INDEX IF NOT EXISTS idx_review_items_active
    ON review_items(student_id, topic) WHERE status != 'reviewed';
CREATE INDEX IF NOT EXISTS idx_review_items_due ON review_items(student_id, due_at);

CREATE TABLE IF NOT EXISTS streaks (
    student_id TEXT PRIMARY KEY,
    current INTEGER NOT NULL DEFAULT 0 CHECK (current >= 0),
    longest INTEGER NOT NULL DEFAULT 0,
    last_credited TEXT,
    grace_tokens INTEGER NOT NULL DEFAULT 0,
    in_grace INTEGER NOT NULL DEFAULT 0
);

CREATE TABLE IF NOT EXISTS student_stats (
    student_id TEXT PRIMARY KEY,
    problems_attempted INTEGER NOT NULL DEFAULT 0,
    problems_solved INTEGER NOT NULL DEFAULT 0,
    total_points INTEGER NOT NULL DEFAULT 0,
    total_time_spent REAL NOT NULL DEFAULT 0,
    competition_attempts TEXT NOT NULL DEFAULT '{}'  -- JSON object
);

CREATE TABLE IF NOT EXISTS student_achievements (
    student_id TEXT NOT NULL,
    achievement_id TEXT NOT NULL,
    earned_at TEXT NOT NULL,
    PRIMARY KEY (student_id, achievement_id)
);
"""


def get_connection(
    db_path: Path = DEFAULT_DB_PATH, timeout: float = DEFAULT_TIMEOUT_SECONDS
) -> sqlite3.Connection:
    """Get a database connection with appropriate settings.

    Args:
        db_path: Path to the SQLite database file.
        timeout: Seconds to wait on a locked database before failing.

    Returns:
        A configured sqlite3 Connection object.
    """
    conn = sqlite3.connect(db_path, timeout=timeout)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    return conn


def init_schema(db_path: Path = DEFAULT_DB_PATH) -> None:
    """Initialize the database schema if it doesn't exist.

    Args:
        db_path: Path to the SQLite database file.
    """
    # Ensure the parent directory exists
    db_path.parent.mkdir(parents=True, exist_ok=True)

    conn = get_connection(db_path)
    try:
        conn.execute("PRAGMA journal_mode = WAL")
        conn.executescript(SCHEMA_SQL)
        conn.commit()
    finally:
        conn.close()
