"""
SQLite database module for the match analytics backend.
Holds admin override rules and the summaries audit log.
"""

import os
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

DEFAULT_DB_PATH = Path(__file__).parent.parent / "db.sqlite3"
SCHEMA_PATH = Path(__file__).parent / "schema.sql"

SUMMARY_STATUSES = ("ok", "rate_limited", "missing_key", "timeout", "failed")


def resolve_db_path(db_path: Optional[str] = None) -> Path:
    """Explicit path wins, then DATABASE_PATH, then the default file next to the backend."""
    return Path(db_path or os.environ.get("DATABASE_PATH") or DEFAULT_DB_PATH)


def init_db(reset: bool = False, db_path: Optional[str] = None) -> Path:
    """
    Initialize the database with schema.

    Args:
        reset: If True, drops existing tables and recreates them (fresh start).
               If False, only creates tables if they don't exist (preserves data).
        db_path: Optional database file path

    Returns:
        Path of the initialized database file
    """
    path = resolve_db_path(db_path)
    with sqlite3.connect(path) as conn:
        if reset:
            conn.execute("DROP TABLE IF EXISTS account_overrides")
            conn.execute("DROP TABLE IF EXISTS summary_requests")

        conn.executescript(SCHEMA_PATH.read_text())
        conn.commit()
    return path


@contextmanager
def get_db(db_path: Optional[str] = None):
    """Context manager for database connections."""
    conn = sqlite3.connect(resolve_db_path(db_path))
    conn.row_factory = sqlite3.Row  # Enable dict-like access
    try:
        yield conn
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()


def _iso(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


class Database:
    """Simple database interface for override rules and the summaries audit log."""

    def __init__(self, db_path: Optional[str] = None):
        self.db_path = str(resolve_db_path(db_path))

    # Override rules
    def create_override(
        self,
        platform: str,
        kind: str,
        identifier: str,
        identifier_type: str,
        handle: Optional[str] = None,
        scope: str = "global",
        match_id: Optional[str] = None,
        bypass_eligibility: bool = False,
        expires_at: Optional[datetime] = None,
    ) -> int:
        """Create an include or exclude rule."""
        with get_db(self.db_path) as db:
            cursor = db.execute(
                """INSERT INTO account_overrides
                   (platform, kind, identifier, identifier_type, handle, scope, match_id,
                    bypass_eligibility, expires_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    platform,
                    kind,
                    identifier,
                    identifier_type,
                    handle,
                    scope,
                    match_id if scope == "match" else None,
                    bool(bypass_eligibility) and kind == "include",
                    _iso(expires_at),
                ),
            )
            return cursor.lastrowid

    def delete_override(self, override_id: int) -> bool:
        with get_db(self.db_path) as db:
            cursor = db.execute("DELETE FROM account_overrides WHERE id = ?", (override_id,))
            return cursor.rowcount > 0

    def list_overrides(self, platform: str, match_id: Optional[str] = None) -> List[Dict[str, Any]]:
        """Global rules for a platform plus, when match_id is given, that match's rules."""
        with get_db(self.db_path) as db:
            if match_id:
                cursor = db.execute(
                    """SELECT * FROM account_overrides
                       WHERE platform = ?
                         AND (scope = 'global' OR (scope = 'match' AND match_id = ?))
                       ORDER BY id""",
                    (platform, match_id),
                )
            else:
                cursor = db.execute(
                    """SELECT * FROM account_overrides
                       WHERE platform = ? AND scope = 'global'
                       ORDER BY id""",
                    (platform,),
                )
            return [dict(row) for row in cursor.fetchall()]

    # Summaries audit log
    def record_summary_request(
        self,
        match_id: str,
        platform: str,
        phase: str,
        window_minutes: int,
        posts_count: int,
        chars_count: int,
        status: str,
        model: Optional[str] = None,
        prompt_tokens: Optional[int] = None,
        completion_tokens: Optional[int] = None,
        total_tokens: Optional[int] = None,
        error_message: Optional[str] = None,
        duration_ms: Optional[int] = None,
        created_at: Optional[datetime] = None,
    ) -> int:
        """Insert one audit row for a summaries request."""
        with get_db(self.db_path) as db:
            cursor = db.execute(
                """INSERT INTO summary_requests
                   (match_id, platform, phase, window_minutes, posts_count, chars_count, model,
                    prompt_tokens, completion_tokens, total_tokens, status, error_message,
                    duration_ms, created_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    match_id,
                    platform,
                    phase,
                    window_minutes,
                    posts_count,
                    chars_count,
                    model,
                    prompt_tokens,
                    completion_tokens,
                    total_tokens,
                    status,
                    error_message,
                    duration_ms,
                    _iso(created_at or datetime.now(timezone.utc)),
                ),
            )
            return cursor.lastrowid

    def get_recent_summary_requests(
        self,
        since: datetime,
        limit: int = 50,
        status: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        """Audit rows created at or after `since`, newest first."""
        query = "SELECT * FROM summary_requests WHERE created_at >= ?"
        params: List[Any] = [_iso(since)]
        if status in SUMMARY_STATUSES:
            query += " AND status = ?"
            params.append(status)
        query += " ORDER BY created_at DESC, id DESC LIMIT ?"
        params.append(limit)

        with get_db(self.db_path) as db:
            cursor = db.execute(query, params)
            return [dict(row) for row in cursor.fetchall()]

    def get_summary_status_counts(self, since: datetime, limit: int = 1000) -> Dict[str, int]:
        """Count statuses over the newest `limit` rows since `since`."""
        counts = {status: 0 for status in SUMMARY_STATUSES}
        for row in self.get_recent_summary_requests(since, limit=limit):
            if row["status"] in counts:
                counts[row["status"]] += 1
        return counts


def reset_db(db_path: Optional[str] = None) -> None:
    """Completely reset the database (delete all data and recreate schema)."""
    init_db(reset=True, db_path=db_path)


__all__ = ["init_db", "reset_db", "get_db", "resolve_db_path", "Database", "SUMMARY_STATUSES"]
