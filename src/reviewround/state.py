from __future__ import annotations

from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
import sqlite3
import threading
from typing import Final, cast

from reviewround.models import (
    FeedbackDraft,
    FeedbackItem,
    ItemCategory,
    ItemSeverity,
    ItemSource,
    ReviewRound,
    RoundKey,
    RoundStatus,
    Workspace,
)


_TIMESTAMP_FORMAT: Final[str] = "%Y-%m-%dT%H:%M:%S.%fZ"
_ROUND_COLUMNS: Final[str] = """
    round_id,
    repo_id,
    pr_number,
    head_sha,
    check_started_at,
    workspace_id,
    check_state,
    status,
    attempt_count,
    actionable_count,
    next_fetch_at,
    completed_at,
    created_at,
    updated_at
"""
_ITEM_COLUMNS: Final[str] = """
    round_id,
    comment_id,
    source,
    category,
    severity,
    file_path,
    line,
    original_line,
    diff_hunk,
    html_url,
    body,
    instruction,
    created_at,
    updated_at
"""


def format_timestamp(value: datetime) -> str:
    """Fixed-width UTC text, so SQL string comparison matches time order."""
    return value.astimezone(timezone.utc).strftime(_TIMESTAMP_FORMAT)


def format_optional_timestamp(value: datetime | None) -> str | None:
    if value is None:
        return None
    return format_timestamp(value)


def parse_stored_timestamp(value: str) -> datetime:
    return datetime.strptime(value, _TIMESTAMP_FORMAT).replace(tzinfo=timezone.utc)


class StateStore:
    def __init__(self, db_path: Path) -> None:
        db_path.parent.mkdir(parents=True, exist_ok=True)
        self._db_path = db_path
        self._lock = threading.Lock()
        self._init_schema()

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(self._db_path)
        conn.execute("PRAGMA journal_mode=WAL;")
        conn.execute("PRAGMA synchronous=NORMAL;")
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _init_schema(self) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS review_rounds (
                    round_id INTEGER PRIMARY KEY AUTOINCREMENT,
                    repo_id TEXT NOT NULL,
                    pr_number INTEGER NOT NULL,
                    head_sha TEXT NOT NULL,
                    check_started_at TEXT NOT NULL,
                    workspace_id TEXT NULL,
                    check_state TEXT NOT NULL,
                    status TEXT NOT NULL DEFAULT 'pending',
                    attempt_count INTEGER NOT NULL DEFAULT 0,
                    actionable_count INTEGER NOT NULL DEFAULT 0,
                    next_fetch_at TEXT NULL,
                    completed_at TEXT NULL,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    UNIQUE (repo_id, pr_number, head_sha, check_started_at)
                )
                """
            )
            conn.execute(
                """
                CREATE INDEX IF NOT EXISTS review_rounds_due
                ON review_rounds(status, next_fetch_at)
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS review_items (
                    round_id INTEGER NOT NULL,
                    comment_id INTEGER NOT NULL,
                    source TEXT NOT NULL,
                    category TEXT NOT NULL,
                    severity TEXT NULL,
                    file_path TEXT NULL,
                    line INTEGER NULL,
                    original_line INTEGER NULL,
                    diff_hunk TEXT NULL,
                    html_url TEXT NOT NULL,
                    body TEXT NOT NULL,
                    instruction TEXT NULL,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    PRIMARY KEY (round_id, source, comment_id)
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS workspaces (
                    workspace_id TEXT PRIMARY KEY,
                    repo_id TEXT NOT NULL,
                    path TEXT NOT NULL,
                    created_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ', 'now'))
                )
                """
            )

    def get_round(self, round_id: int) -> ReviewRound | None:
        with self._lock, self._connect() as conn:
            row = conn.execute(
                f"SELECT {_ROUND_COLUMNS} FROM review_rounds WHERE round_id = ?",
                (round_id,),
            ).fetchone()
        return None if row is None else _parse_round_row(row)

    def get_round_by_key(self, key: RoundKey) -> ReviewRound | None:
        with self._lock, self._connect() as conn:
            row = _select_round_by_key(conn, key)
        return None if row is None else _parse_round_row(row)

    def get_latest_round_for_head(
        self, repo_id: str, pr_number: int, head_sha: str
    ) -> ReviewRound | None:
        with self._lock, self._connect() as conn:
            row = conn.execute(
                f"""
                SELECT {_ROUND_COLUMNS}
                FROM review_rounds
                WHERE repo_id = ? AND pr_number = ? AND lower(head_sha) = lower(?)
                ORDER BY check_started_at DESC, round_id DESC
                LIMIT 1
                """,
                (repo_id, pr_number, head_sha),
            ).fetchone()
        return None if row is None else _parse_round_row(row)

    def create_round(
        self,
        key: RoundKey,
        *,
        workspace_id: str | None,
        check_state: str,
        now: datetime,
    ) -> ReviewRound:
        """Insert a pending round, or return the one already stored under ``key``."""
        stamp = format_timestamp(now)
        with self._lock, self._connect() as conn:
            conn.execute(
                """
                INSERT INTO review_rounds(
                    repo_id,
                    pr_number,
                    head_sha,
                    check_started_at,
                    workspace_id,
                    check_state,
                    status,
                    created_at,
                    updated_at
                )
                VALUES(?, ?, ?, ?, ?, ?, 'pending', ?, ?)
                ON CONFLICT(repo_id, pr_number, head_sha, check_started_at) DO NOTHING
                """,
                (
                    key.repo_id,
                    key.pr_number,
                    key.head_sha,
                    key.check_started_at,
                    workspace_id,
                    check_state,
                    stamp,
                    stamp,
                ),
            )
            row = _select_round_by_key(conn, key)
        if row is None:
            raise RuntimeError(f"Round vanished after insert: {key}")
        return _parse_round_row(row)

    def update_round(self, round_: ReviewRound) -> bool:
        """Write ``round_`` back; a pending write never reopens a completed round.

        Returns False when the stored round is already complete and ``round_`` is
        still pending, leaving the stored row untouched.
        """
        with self._lock, self._connect() as conn:
            cursor = conn.execute(
                """
                UPDATE review_rounds SET
                    workspace_id = ?,
                    check_state = ?,
                    status = ?,
                    attempt_count = ?,
                    actionable_count = ?,
                    next_fetch_at = ?,
                    completed_at = ?,
                    updated_at = ?
                WHERE round_id = ?
                  AND (status = 'pending' OR ? = 'complete')
                """,
                (
                    round_.workspace_id,
                    round_.check_state,
                    round_.status,
                    round_.attempt_count,
                    round_.actionable_count,
                    format_optional_timestamp(round_.next_fetch_at),
                    format_optional_timestamp(round_.completed_at),
                    format_timestamp(round_.updated_at),
                    round_.round_id,
                    round_.status,
                ),
            )
            if cursor.rowcount > 0:
                return True
            row = conn.execute(
                "SELECT 1 FROM review_rounds WHERE round_id = ?",
                (round_.round_id,),
            ).fetchone()
        if row is None:
            raise RuntimeError(f"Round not found for update: {round_.round_id}")
        return False

    def list_pending_due(self, now: datetime) -> tuple[ReviewRound, ...]:
        with self._lock, self._connect() as conn:
            rows = conn.execute(
                f"""
                SELECT {_ROUND_COLUMNS}
                FROM review_rounds
                WHERE status = 'pending'
                  AND next_fetch_at IS NOT NULL
                  AND next_fetch_at <= ?
                ORDER BY next_fetch_at ASC, round_id ASC
                """,
                (format_timestamp(now),),
            ).fetchall()
        return tuple(_parse_round_row(row) for row in rows)

    def list_rounds(self, *, repo_id: str | None = None) -> tuple[ReviewRound, ...]:
        with self._lock, self._connect() as conn:
            if repo_id is None:
                rows = conn.execute(
                    f"SELECT {_ROUND_COLUMNS} FROM review_rounds ORDER BY round_id ASC"
                ).fetchall()
            else:
                rows = conn.execute(
                    f"""
                    SELECT {_ROUND_COLUMNS}
                    FROM review_rounds
                    WHERE repo_id = ?
                    ORDER BY round_id ASC
                    """,
                    (repo_id,),
                ).fetchall()
        return tuple(_parse_round_row(row) for row in rows)

    def delete_rounds_for_pr(self, repo_id: str, pr_number: int) -> int:
        with self._lock, self._connect() as conn:
            conn.execute(
                """
                DELETE FROM review_items
                WHERE round_id IN (
                    SELECT round_id FROM review_rounds WHERE repo_id = ? AND pr_number = ?
                )
                """,
                (repo_id, pr_number),
            )
            cursor = conn.execute(
                "DELETE FROM review_rounds WHERE repo_id = ? AND pr_number = ?",
                (repo_id, pr_number),
            )
            return cursor.rowcount

    def insert_items(self, round_id: int, drafts: Iterable[FeedbackDraft]) -> int:
        """Insert drafts under ``round_id``; known (source, comment id) pairs are skipped."""
        inserted = 0
        with self._lock, self._connect() as conn:
            for draft in drafts:
                cursor = conn.execute(
                    f"""
                    INSERT OR IGNORE INTO review_items({_ITEM_COLUMNS})
                    VALUES(?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        round_id,
                        draft.comment_id,
                        draft.source,
                        draft.category,
                        draft.severity,
                        draft.file_path,
                        draft.line,
                        draft.original_line,
                        draft.diff_hunk,
                        draft.html_url,
                        draft.body,
                        draft.instruction,
                        format_timestamp(draft.created_at),
                        format_timestamp(draft.updated_at),
                    ),
                )
                inserted += cursor.rowcount
        return inserted

    def count_items_for_round(self, round_id: int) -> int:
        with self._lock, self._connect() as conn:
            row = conn.execute(
                "SELECT COUNT(*) FROM review_items WHERE round_id = ?",
                (round_id,),
            ).fetchone()
        count = row[0] if row is not None else 0
        if not isinstance(count, int):
            raise RuntimeError("Invalid item count returned for review_items")
        return count

    def list_items_for_round(self, round_id: int) -> tuple[FeedbackItem, ...]:
        with self._lock, self._connect() as conn:
            rows = conn.execute(
                f"""
                SELECT {_ITEM_COLUMNS}
                FROM review_items
                WHERE round_id = ?
                ORDER BY created_at ASC, source ASC, comment_id ASC
                """,
                (round_id,),
            ).fetchall()
        return tuple(_parse_item_row(row) for row in rows)

    def register_workspace(self, *, workspace_id: str, repo_id: str, path: Path) -> Workspace:
        with self._lock, self._connect() as conn:
            conn.execute(
                """
                INSERT INTO workspaces(workspace_id, repo_id, path)
                VALUES(?, ?, ?)
                ON CONFLICT(workspace_id) DO UPDATE SET
                    repo_id=excluded.repo_id,
                    path=excluded.path
                """,
                (workspace_id, repo_id, str(path)),
            )
        return Workspace(workspace_id=workspace_id, repo_id=repo_id, path=path)

    def get_workspace(self, workspace_id: str) -> Workspace | None:
        with self._lock, self._connect() as conn:
            row = conn.execute(
                "SELECT workspace_id, repo_id, path FROM workspaces WHERE workspace_id = ?",
                (workspace_id,),
            ).fetchone()
        return None if row is None else _parse_workspace_row(row)

    def list_workspaces(self) -> tuple[Workspace, ...]:
        with self._lock, self._connect() as conn:
            rows = conn.execute(
                "SELECT workspace_id, repo_id, path FROM workspaces ORDER BY workspace_id ASC"
            ).fetchall()
        return tuple(_parse_workspace_row(row) for row in rows)

    def remove_workspace(self, workspace_id: str) -> bool:
        with self._lock, self._connect() as conn:
            cursor = conn.execute(
                "DELETE FROM workspaces WHERE workspace_id = ?",
                (workspace_id,),
            )
            return cursor.rowcount > 0


def _select_round_by_key(conn: sqlite3.Connection, key: RoundKey) -> tuple[object, ...] | None:
    row = conn.execute(
        f"""
        SELECT {_ROUND_COLUMNS}
        FROM review_rounds
        WHERE repo_id = ? AND pr_number = ? AND head_sha = ? AND check_started_at = ?
        """,
        (key.repo_id, key.pr_number, key.head_sha, key.check_started_at),
    ).fetchone()
    return cast(tuple[object, ...] | None, row)


def _parse_round_row(row: tuple[object, ...]) -> ReviewRound:
    if len(row) != 14:
        raise RuntimeError("Invalid review_rounds row width")
    (
        round_id,
        repo_id,
        pr_number,
        head_sha,
        check_started_at,
        workspace_id,
        check_state,
        status,
        attempt_count,
        actionable_count,
        next_fetch_at,
        completed_at,
        created_at,
        updated_at,
    ) = row

    if not isinstance(round_id, int):
        raise RuntimeError("Invalid round_id value stored in review_rounds")
    if not isinstance(repo_id, str):
        raise RuntimeError("Invalid repo_id value stored in review_rounds")
    if not isinstance(pr_number, int):
        raise RuntimeError("Invalid pr_number value stored in review_rounds")
    if not isinstance(head_sha, str):
        raise RuntimeError("Invalid head_sha value stored in review_rounds")
    if not isinstance(check_started_at, str):
        raise RuntimeError("Invalid check_started_at value stored in review_rounds")
    if workspace_id is not None and not isinstance(workspace_id, str):
        raise RuntimeError("Invalid workspace_id value stored in review_rounds")
    if not isinstance(check_state, str):
        raise RuntimeError("Invalid check_state value stored in review_rounds")
    if not isinstance(attempt_count, int):
        raise RuntimeError("Invalid attempt_count value stored in review_rounds")
    if not isinstance(actionable_count, int):
        raise RuntimeError("Invalid actionable_count value stored in review_rounds")

    return ReviewRound(
        round_id=round_id,
        repo_id=repo_id,
        pr_number=pr_number,
        head_sha=head_sha,
        check_started_at=check_started_at,
        workspace_id=workspace_id,
        check_state=check_state,
        status=_parse_round_status(status),
        attempt_count=attempt_count,
        actionable_count=actionable_count,
        next_fetch_at=_parse_optional_column(next_fetch_at, column="next_fetch_at"),
        completed_at=_parse_optional_column(completed_at, column="completed_at"),
        created_at=_parse_required_column(created_at, column="created_at"),
        updated_at=_parse_required_column(updated_at, column="updated_at"),
    )


def _parse_item_row(row: tuple[object, ...]) -> FeedbackItem:
    if len(row) != 14:
        raise RuntimeError("Invalid review_items row width")
    (
        round_id,
        comment_id,
        source,
        category,
        severity,
        file_path,
        line,
        original_line,
        diff_hunk,
        html_url,
        body,
        instruction,
        created_at,
        updated_at,
    ) = row

    if not isinstance(round_id, int):
        raise RuntimeError("Invalid round_id value stored in review_items")
    if not isinstance(comment_id, int):
        raise RuntimeError("Invalid comment_id value stored in review_items")
    if file_path is not None and not isinstance(file_path, str):
        raise RuntimeError("Invalid file_path value stored in review_items")
    if line is not None and not isinstance(line, int):
        raise RuntimeError("Invalid line value stored in review_items")
    if original_line is not None and not isinstance(original_line, int):
        raise RuntimeError("Invalid original_line value stored in review_items")
    if diff_hunk is not None and not isinstance(diff_hunk, str):
        raise RuntimeError("Invalid diff_hunk value stored in review_items")
    if not isinstance(html_url, str):
        raise RuntimeError("Invalid html_url value stored in review_items")
    if not isinstance(body, str):
        raise RuntimeError("Invalid body value stored in review_items")
    if instruction is not None and not isinstance(instruction, str):
        raise RuntimeError("Invalid instruction value stored in review_items")

    return FeedbackItem(
        round_id=round_id,
        comment_id=comment_id,
        source=_parse_item_source(source),
        category=_parse_item_category(category),
        severity=_parse_item_severity(severity),
        file_path=file_path,
        line=line,
        original_line=original_line,
        diff_hunk=diff_hunk,
        html_url=html_url,
        body=body,
        instruction=instruction,
        created_at=_parse_required_column(created_at, column="created_at"),
        updated_at=_parse_required_column(updated_at, column="updated_at"),
    )


def _parse_workspace_row(row: tuple[object, ...]) -> Workspace:
    workspace_id, repo_id, path = row
    if not isinstance(workspace_id, str):
        raise RuntimeError("Invalid workspace_id value stored in workspaces")
    if not isinstance(repo_id, str):
        raise RuntimeError("Invalid repo_id value stored in workspaces")
    if not isinstance(path, str):
        raise RuntimeError("Invalid path value stored in workspaces")
    return Workspace(workspace_id=workspace_id, repo_id=repo_id, path=Path(path))


def _parse_required_column(value: object, *, column: str) -> datetime:
    if not isinstance(value, str):
        raise RuntimeError(f"Invalid {column} value stored in review state")
    try:
        return parse_stored_timestamp(value)
    except ValueError as exc:
        raise RuntimeError(f"Invalid {column} timestamp stored in review state: {value}") from exc


def _parse_optional_column(value: object, *, column: str) -> datetime | None:
    if value is None:
        return None
    return _parse_required_column(value, column=column)


def _parse_round_status(value: object) -> RoundStatus:
    if not isinstance(value, str):
        raise RuntimeError("Invalid status value stored in review_rounds")
    if value not in {"pending", "complete"}:
        raise RuntimeError(f"Unknown status value stored in review_rounds: {value}")
    return cast(RoundStatus, value)


def _parse_item_source(value: object) -> ItemSource:
    if not isinstance(value, str):
        raise RuntimeError("Invalid source value stored in review_items")
    if value not in {"review_comment", "issue_comment", "review"}:
        raise RuntimeError(f"Unknown source value stored in review_items: {value}")
    return cast(ItemSource, value)


def _parse_item_category(value: object) -> ItemCategory:
    if not isinstance(value, str):
        raise RuntimeError("Invalid category value stored in review_items")
    if value not in {"potential_issue", "refactor_suggestion"}:
        raise RuntimeError(f"Unknown category value stored in review_items: {value}")
    return cast(ItemCategory, value)


def _parse_item_severity(value: object) -> ItemSeverity | None:
    if value is None:
        return None
    if not isinstance(value, str):
        raise RuntimeError("Invalid severity value stored in review_items")
    if value not in {"critical", "major", "minor", "trivial", "info"}:
        raise RuntimeError(f"Unknown severity value stored in review_items: {value}")
    return cast(ItemSeverity, value)
