"""SQLite result store.

Table: test_history
- id (text uuid, primary key)
- website (text)
- test_type, detected_type (text)
- score (integer), grade (text)
- categories, recommendations (json text)
- created_at (iso datetime)

Table: test_submissions
- one row per successful analysis, used for per-IP blog quota

Table: ai_interpretations
- optional interpretation of a homepage test, keyed by test_id
"""

import json
import sqlite3
from datetime import datetime, timezone
from pathlib import Path

from config import DB_PATH
from models import AIInterpretation, TestRecord


def to_timestamp(when: datetime) -> str:
    """
    Fixed-width UTC text for created_at columns.
    Window queries compare these strings, so every stored value and bound
    must carry the same offset and all six fractional digits.
    """
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    return when.astimezone(timezone.utc).isoformat(timespec="microseconds")


def get_connection() -> sqlite3.Connection:
    """Return a connection to the SQLite database."""
    conn = sqlite3.connect(DB_PATH)
    conn.row_factory = sqlite3.Row
    return conn


def init_db() -> None:
    """Create tables and indexes if they do not exist."""
    Path(DB_PATH).parent.mkdir(parents=True, exist_ok=True)
    conn = get_connection()
    try:
        conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS test_history (
                id TEXT PRIMARY KEY,
                website TEXT NOT NULL,
                test_type TEXT NOT NULL,
                detected_type TEXT NOT NULL,
                score INTEGER NOT NULL,
                grade TEXT NOT NULL,
                categories TEXT NOT NULL,
                recommendations TEXT NOT NULL,
                created_at TEXT NOT NULL
            );
            CREATE INDEX IF NOT EXISTS idx_test_history_website
                ON test_history (website, created_at);

            CREATE TABLE IF NOT EXISTS test_submissions (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                test_id TEXT NOT NULL,
                ip_address TEXT NOT NULL,
                test_type TEXT NOT NULL,
                created_at TEXT NOT NULL
            );
            CREATE INDEX IF NOT EXISTS idx_test_submissions_ip
                ON test_submissions (ip_address, test_type, created_at);

            CREATE TABLE IF NOT EXISTS ai_interpretations (
                test_id TEXT PRIMARY KEY,
                interpretation TEXT NOT NULL,
                industry TEXT,
                audience TEXT,
                problem TEXT,
                solution TEXT,
                confidence_score INTEGER NOT NULL,
                confidence_breakdown TEXT NOT NULL,
                user_feedback TEXT,
                created_at TEXT NOT NULL
            );
            """
        )
        conn.commit()
    finally:
        conn.close()


def _row_to_record(row: sqlite3.Row) -> TestRecord:
    return {
        "testId": row["id"],
        "website": row["website"],
        "testType": row["test_type"],
        "detectedType": row["detected_type"],
        "score": row["score"],
        "grade": row["grade"],
        "categories": json.loads(row["categories"]),
        "recommendations": json.loads(row["recommendations"]),
        "createdAt": row["created_at"],
    }


def insert_test(record: TestRecord, ip_address: str) -> None:
    """Store a scored test and its submission row in one transaction."""
    created_at = to_timestamp(datetime.fromisoformat(record["createdAt"]))
    conn = get_connection()
    try:
        with conn:
            conn.execute(
                """
                INSERT INTO test_history (
                    id, website, test_type, detected_type, score, grade,
                    categories, recommendations, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    record["testId"],
                    record["website"],
                    record["testType"],
                    record["detectedType"],
                    record["score"],
                    record["grade"],
                    json.dumps(record["categories"]),
                    json.dumps(record["recommendations"]),
                    created_at,
                ),
            )
            conn.execute(
                "INSERT INTO test_submissions (test_id, ip_address, test_type, created_at) VALUES (?, ?, ?, ?)",
                (record["testId"], ip_address, record["testType"], created_at),
            )
    finally:
        conn.close()


def get_test(test_id: str) -> TestRecord | None:
    conn = get_connection()
    try:
        row = conn.execute("SELECT * FROM test_history WHERE id = ?", (test_id,)).fetchone()
        return _row_to_record(row) if row is not None else None
    finally:
        conn.close()


def latest_test_for_website(website: str) -> TestRecord | None:
    """Most recent test of ``website`` (normalized form), if any."""
    conn = get_connection()
    try:
        row = conn.execute(
            "SELECT * FROM test_history WHERE website = ? ORDER BY created_at DESC LIMIT 1",
            (website,),
        ).fetchone()
        return _row_to_record(row) if row is not None else None
    finally:
        conn.close()


def blog_test_times_since(ip_address: str, since: datetime) -> list[datetime]:
    """Timestamps of blog submissions from ``ip_address`` after ``since``, oldest first."""
    conn = get_connection()
    try:
        rows = conn.execute(
            """
            SELECT created_at FROM test_submissions
            WHERE ip_address = ? AND test_type = 'blog' AND created_at >= ?
            ORDER BY created_at ASC
            """,
            (ip_address, to_timestamp(since)),
        ).fetchall()
        return [datetime.fromisoformat(row["created_at"]) for row in rows]
    finally:
        conn.close()


def recent_scores(test_type: str, since: datetime) -> list[int]:
    conn = get_connection()
    try:
        rows = conn.execute(
            "SELECT score FROM test_history WHERE detected_type = ? AND created_at >= ?",
            (test_type, to_timestamp(since)),
        ).fetchall()
        return [int(row["score"]) for row in rows]
    finally:
        conn.close()


def insert_interpretation(test_id: str, interpretation: AIInterpretation) -> None:
    conn = get_connection()
    try:
        with conn:
            conn.execute(
                """
                INSERT INTO ai_interpretations (
                    test_id, interpretation, industry, audience, problem, solution,
                    confidence_score, confidence_breakdown, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    test_id,
                    interpretation["interpretation"],
                    interpretation["industry"],
                    interpretation["audience"],
                    interpretation["problem"],
                    interpretation["solution"],
                    interpretation["confidenceScore"],
                    json.dumps(interpretation["confidenceBreakdown"]),
                    to_timestamp(datetime.now(timezone.utc)),
                ),
            )
    finally:
        conn.close()


def get_interpretation(test_id: str) -> AIInterpretation | None:
    conn = get_connection()
    try:
        row = conn.execute("SELECT * FROM ai_interpretations WHERE test_id = ?", (test_id,)).fetchone()
        if row is None:
            return None
        return {
            "interpretation": row["interpretation"],
            "industry": row["industry"] or "",
            "audience": row["audience"] or "",
            "problem": row["problem"] or "",
            "solution": row["solution"] or "",
            "confidenceScore": row["confidence_score"],
            "confidenceBreakdown": json.loads(row["confidence_breakdown"]),
            "userFeedback": row["user_feedback"],
        }
    finally:
        conn.close()


def update_interpretation_feedback(test_id: str, feedback: str) -> bool:
    """Record user feedback. Returns False when the test has no interpretation."""
    conn = get_connection()
    try:
        with conn:
            cursor = conn.execute(
                "UPDATE ai_interpretations SET user_feedback = ? WHERE test_id = ?",
                (feedback, test_id),
            )
        return cursor.rowcount > 0
    finally:
        conn.close()


def ping() -> bool:
    """True when the database answers a trivial query."""
    try:
        conn = get_connection()
    except sqlite3.Error:
        return False
    try:
        conn.execute("SELECT 1 FROM test_history LIMIT 1").fetchall()
        return True
    except sqlite3.Error:
        return False
    finally:
        conn.close()
