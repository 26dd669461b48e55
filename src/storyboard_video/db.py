import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from storyboard_video.config import settings

JOB_KINDS = {
    "variant": ("storyboard_variants", "storyboard_id"),
    "character": ("characters", "script_id"),
}
ACTIVE_STATUSES = ("queued", "generating")
TERMINAL_STATUSES = ("completed", "failed")


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _conn() -> sqlite3.Connection:
    Path(settings.database_path).parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(settings.database_path, timeout=settings.db_busy_timeout_sec)
    conn.row_factory = sqlite3.Row
    return conn


def _table(kind: str) -> tuple[str, str]:
    try:
        return JOB_KINDS[kind]
    except KeyError:
        raise ValueError(f"unknown job kind: {kind}") from None


@contextmanager
def locked_transaction() -> Iterator[sqlite3.Connection]:
    """Open a write transaction that holds the database write lock until exit.

    BEGIN IMMEDIATE takes the lock before the first read, so a read-check-write
    sequence inside the block cannot interleave with another writer.
    """
    conn = _conn()
    conn.isolation_level = None
    try:
        conn.execute("BEGIN IMMEDIATE")
        try:
            yield conn
        except BaseException:
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            raise
        conn.execute("COMMIT")
    finally:
        conn.close()


def init_db() -> None:
    with _conn() as conn:
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS users (
              id TEXT PRIMARY KEY,
              balance INTEGER NOT NULL DEFAULT 0 CHECK (balance >= 0),
              created_at TEXT NOT NULL,
              updated_at TEXT NOT NULL
            )
            """
        )

        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS balance_records (
              id INTEGER PRIMARY KEY AUTOINCREMENT,
              user_id TEXT NOT NULL,
              type TEXT NOT NULL,
              amount INTEGER NOT NULL,
              balance INTEGER NOT NULL,
              description TEXT NOT NULL,
              related_id TEXT,
              created_at TEXT NOT NULL
            )
            """
        )
        conn.execute("CREATE INDEX IF NOT EXISTS idx_balance_records_user ON balance_records (user_id, id)")

        for table, parent_col in JOB_KINDS.values():
            conn.execute(
                f"""
                CREATE TABLE IF NOT EXISTS {table} (
                  id TEXT PRIMARY KEY,
                  {parent_col} TEXT,
                  user_id TEXT NOT NULL,
                  prompt TEXT NOT NULL DEFAULT '',
                  token_cost INTEGER NOT NULL DEFAULT 0,
                  task_id TEXT,
                  status TEXT NOT NULL,
                  progress TEXT,
                  video_url TEXT,
                  thumbnail_url TEXT,
                  fail_reason TEXT,
                  started_at TEXT,
                  finished_at TEXT,
                  created_at TEXT NOT NULL,
                  updated_at TEXT NOT NULL
                )
                """
            )
            conn.execute(f"CREATE INDEX IF NOT EXISTS idx_{table}_status ON {table} (status)")

        conn.commit()


def ensure_user(user_id: str) -> None:
    ts = _now()
    with _conn() as conn:
        conn.execute(
            """
            INSERT INTO users (id, created_at, updated_at)
            VALUES (?, ?, ?)
            ON CONFLICT(id) DO NOTHING
            """,
            (user_id, ts, ts),
        )
        conn.commit()


def get_user(user_id: str) -> dict | None:
    with _conn() as conn:
        row = conn.execute("SELECT * FROM users WHERE id=?", (user_id,)).fetchone()
    return dict(row) if row else None


def list_balance_records(user_id: str, page: int = 1, page_size: int = 20) -> tuple[list[dict], int]:
    page = max(page, 1)
    with _conn() as conn:
        rows = conn.execute(
            "SELECT * FROM balance_records WHERE user_id=? ORDER BY id DESC LIMIT ? OFFSET ?",
            (user_id, page_size, (page - 1) * page_size),
        ).fetchall()
        total = conn.execute("SELECT COUNT(*) c FROM balance_records WHERE user_id=?", (user_id,)).fetchone()["c"]
    return [dict(r) for r in rows], int(total)


def create_job_record(
    kind: str,
    record_id: str,
    parent_id: str | None,
    user_id: str,
    prompt: str,
    token_cost: int,
) -> None:
    table, parent_col = _table(kind)
    ts = _now()
    with _conn() as conn:
        conn.execute(
            f"""
            INSERT INTO {table} (id, {parent_col}, user_id, prompt, token_cost, status, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, 'pending', ?, ?)
            """,
            (record_id, parent_id, user_id, prompt, token_cost, ts, ts),
        )
        conn.commit()


def get_job_record(kind: str, record_id: str) -> dict | None:
    table, _ = _table(kind)
    with _conn() as conn:
        row = conn.execute(f"SELECT * FROM {table} WHERE id=?", (record_id,)).fetchone()
    if not row:
        return None
    record = dict(row)
    record["kind"] = kind
    return record


def set_job_submitted(kind: str, record_id: str, task_id: str) -> None:
    table, _ = _table(kind)
    ts = _now()
    with _conn() as conn:
        conn.execute(
            f"UPDATE {table} SET task_id=?, status='generating', started_at=?, updated_at=? WHERE id=?",
            (task_id, ts, ts, record_id),
        )
        conn.commit()


def update_job_record(
    kind: str,
    record_id: str,
    status: str,
    progress: str | None = None,
    video_url: str | None = None,
    thumbnail_url: str | None = None,
    fail_reason: str | None = None,
    finished: bool = False,
) -> None:
    table, _ = _table(kind)
    ts = _now()
    fields = ["status = ?", "updated_at = ?"]
    values: list[Any] = [status, ts]

    if progress is not None:
        fields.append("progress = ?")
        values.append(progress)
    if video_url:
        fields.append("video_url = ?")
        values.append(video_url)
    if thumbnail_url:
        fields.append("thumbnail_url = ?")
        values.append(thumbnail_url)
    if fail_reason:
        fields.append("fail_reason = ?")
        values.append(fail_reason)
    if finished:
        fields.append("finished_at = ?")
        values.append(ts)

    values.append(record_id)
    sql = f"UPDATE {table} SET {', '.join(fields)} WHERE id = ?"
    with _conn() as conn:
        conn.execute(sql, tuple(values))
        conn.commit()


def list_resumable_jobs() -> list[dict]:
    placeholders = ", ".join("?" for _ in ACTIVE_STATUSES)
    out: list[dict] = []
    with _conn() as conn:
        for kind, (table, _) in JOB_KINDS.items():
            rows = conn.execute(
                f"SELECT * FROM {table} WHERE status IN ({placeholders}) AND task_id IS NOT NULL ORDER BY created_at",
                ACTIVE_STATUSES,
            ).fetchall()
            for r in rows:
                record = dict(r)
                record["kind"] = kind
                out.append(record)
    return out


def delete_job_record(kind: str, record_id: str) -> None:
    table, _ = _table(kind)
    with _conn() as conn:
        conn.execute(f"DELETE FROM {table} WHERE id=?", (record_id,))
        conn.commit()


def ledger_discrepancies() -> list[dict]:
    """Users whose stored balance differs from the sum of their balance records."""
    with _conn() as conn:
        rows = conn.execute(
            """
            SELECT u.id AS user_id, u.balance AS balance, COALESCE(SUM(r.amount), 0) AS ledger_sum
            FROM users u
            LEFT JOIN balance_records r ON r.user_id = u.id
            GROUP BY u.id, u.balance
            HAVING u.balance != COALESCE(SUM(r.amount), 0)
            """
        ).fetchall()
    return [dict(r) for r in rows]
