"""SQLite schema, migrations, and data access helpers.

Insert/update helpers for generations, flashcards and usage do not commit;
the caller groups them into one transaction (``with conn:``). Error logs and
deletes commit on their own.
"""

from __future__ import annotations

import sqlite3
from pathlib import Path
from typing import Any, Dict, Iterable, List

from .utils import json_dumps, utc_now_iso

MIGRATIONS: list[tuple[int, str]] = [
    (
        1,
        """
        CREATE TABLE IF NOT EXISTS schema_migrations (
            version INTEGER PRIMARY KEY,
            applied_at TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS generations (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id TEXT NOT NULL,
            model TEXT NOT NULL,
            generated_count INTEGER NOT NULL,
            accepted_unedited_count INTEGER,
            accepted_edited_count INTEGER,
            source_text_hash TEXT NOT NULL,
            source_text_length INTEGER NOT NULL,
            generation_duration INTEGER NOT NULL,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS flashcards (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id TEXT NOT NULL,
            front TEXT NOT NULL,
            back TEXT NOT NULL,
            source TEXT NOT NULL CHECK (source IN ('ai-full', 'ai-edited', 'manual')),
            generation_id INTEGER,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            FOREIGN KEY(generation_id) REFERENCES generations(id) ON DELETE SET NULL
        );

        CREATE TABLE IF NOT EXISTS generation_error_logs (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id TEXT NOT NULL,
            model TEXT NOT NULL,
            source_text_hash TEXT NOT NULL,
            source_text_length INTEGER NOT NULL,
            error_code TEXT NOT NULL,
            error_message TEXT NOT NULL,
            created_at TEXT NOT NULL
        );

        CREATE INDEX IF NOT EXISTS idx_generations_user_id ON generations(user_id);
        CREATE INDEX IF NOT EXISTS idx_flashcards_user_id ON flashcards(user_id);
        CREATE INDEX IF NOT EXISTS idx_flashcards_generation_id ON flashcards(generation_id);
        CREATE INDEX IF NOT EXISTS idx_generation_error_logs_user_id ON generation_error_logs(user_id);
        """,
    ),
    (
        2,
        """
        CREATE TABLE IF NOT EXISTS llm_usage (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id TEXT NOT NULL,
            generation_id INTEGER,
            model TEXT NOT NULL,
            prompt_tokens INTEGER,
            completion_tokens INTEGER,
            total_tokens INTEGER,
            latency_ms INTEGER NOT NULL DEFAULT 0,
            created_at TEXT NOT NULL,
            meta_json TEXT NOT NULL DEFAULT '{}'
        );

        CREATE INDEX IF NOT EXISTS idx_llm_usage_user_created ON llm_usage(user_id, created_at);
        """,
    ),
]


def get_connection(db_path: str) -> sqlite3.Connection:
    Path(db_path).parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(db_path)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    return conn


def apply_migrations(db_path: str) -> None:
    with get_connection(db_path) as conn:
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS schema_migrations (
                version INTEGER PRIMARY KEY,
                applied_at TEXT NOT NULL
            )
            """
        )
        applied = {
            row["version"]
            for row in conn.execute("SELECT version FROM schema_migrations").fetchall()
        }
        for version, sql in MIGRATIONS:
            if version in applied:
                continue
            conn.executescript(sql)
            conn.execute(
                "INSERT INTO schema_migrations(version, applied_at) VALUES (?, ?)",
                (version, utc_now_iso()),
            )
        conn.commit()


def _row_to_dict(row: sqlite3.Row | None) -> Dict[str, Any] | None:
    if row is None:
        return None
    return dict(row)


def create_generation(
    conn: sqlite3.Connection,
    user_id: str,
    model: str,
    generated_count: int,
    source_text_hash: str,
    source_text_length: int,
    generation_duration: int,
) -> Dict[str, Any]:
    now = utc_now_iso()
    cur = conn.execute(
        """
        INSERT INTO generations(
            user_id, model, generated_count, source_text_hash, source_text_length,
            generation_duration, created_at, updated_at
        )
        VALUES (?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (user_id, model, generated_count, source_text_hash, source_text_length, generation_duration, now, now),
    )
    row = conn.execute("SELECT * FROM generations WHERE id = ?", (cur.lastrowid,)).fetchone()
    return dict(row)


def get_generation(conn: sqlite3.Connection, user_id: str, generation_id: int) -> Dict[str, Any] | None:
    row = conn.execute(
        "SELECT * FROM generations WHERE id = ? AND user_id = ?",
        (generation_id, user_id),
    ).fetchone()
    return _row_to_dict(row)


def update_generation_acceptance(
    conn: sqlite3.Connection,
    generation_id: int,
    accepted_unedited: int,
    accepted_edited: int,
) -> None:
    conn.execute(
        """
        UPDATE generations
        SET accepted_unedited_count = COALESCE(accepted_unedited_count, 0) + ?,
            accepted_edited_count = COALESCE(accepted_edited_count, 0) + ?,
            updated_at = ?
        WHERE id = ?
        """,
        (accepted_unedited, accepted_edited, utc_now_iso(), generation_id),
    )


def create_flashcards(
    conn: sqlite3.Connection,
    user_id: str,
    flashcards: Iterable[Dict[str, Any]],
) -> List[Dict[str, Any]]:
    now = utc_now_iso()
    ids: List[int] = []
    for card in flashcards:
        cur = conn.execute(
            """
            INSERT INTO flashcards(user_id, front, back, source, generation_id, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (user_id, card["front"], card["back"], card["source"], card.get("generation_id"), now, now),
        )
        ids.append(int(cur.lastrowid))
    if not ids:
        return []
    placeholders = ", ".join("?" for _ in ids)
    rows = conn.execute(
        f"SELECT id, front, back, source, generation_id FROM flashcards WHERE id IN ({placeholders}) ORDER BY id",
        ids,
    ).fetchall()
    return [dict(r) for r in rows]


def get_flashcard(conn: sqlite3.Connection, user_id: str, flashcard_id: int) -> Dict[str, Any] | None:
    row = conn.execute(
        "SELECT * FROM flashcards WHERE id = ? AND user_id = ?",
        (flashcard_id, user_id),
    ).fetchone()
    return _row_to_dict(row)


def list_flashcards(
    conn: sqlite3.Connection,
    user_id: str,
    limit: int = 20,
    offset: int = 0,
) -> Dict[str, Any]:
    rows = conn.execute(
        """
        SELECT id, front, back, source, created_at, updated_at
        FROM flashcards
        WHERE user_id = ?
        ORDER BY id DESC
        LIMIT ? OFFSET ?
        """,
        (user_id, limit, offset),
    ).fetchall()
    total = conn.execute(
        "SELECT COUNT(*) AS n FROM flashcards WHERE user_id = ?",
        (user_id,),
    ).fetchone()["n"]
    return {"data": [dict(r) for r in rows], "total": int(total)}


def delete_flashcard(conn: sqlite3.Connection, user_id: str, flashcard_id: int) -> bool:
    cur = conn.execute(
        "DELETE FROM flashcards WHERE id = ? AND user_id = ?",
        (flashcard_id, user_id),
    )
    conn.commit()
    return cur.rowcount > 0


def log_generation_error(
    conn: sqlite3.Connection,
    user_id: str,
    model: str,
    source_text_hash: str,
    source_text_length: int,
    error_code: str,
    error_message: str,
) -> Dict[str, Any]:
    cur = conn.execute(
        """
        INSERT INTO generation_error_logs(
            user_id, model, source_text_hash, source_text_length, error_code, error_message, created_at
        )
        VALUES (?, ?, ?, ?, ?, ?, ?)
        """,
        (user_id, model, source_text_hash, source_text_length, error_code, error_message, utc_now_iso()),
    )
    conn.commit()
    row = conn.execute("SELECT * FROM generation_error_logs WHERE id = ?", (cur.lastrowid,)).fetchone()
    return dict(row)


def list_generation_errors(conn: sqlite3.Connection, user_id: str, limit: int = 20) -> List[Dict[str, Any]]:
    rows = conn.execute(
        "SELECT * FROM generation_error_logs WHERE user_id = ? ORDER BY id DESC LIMIT ?",
        (user_id, limit),
    ).fetchall()
    return [dict(r) for r in rows]


def log_llm_usage(
    conn: sqlite3.Connection,
    user_id: str,
    model: str,
    prompt_tokens: int | None,
    completion_tokens: int | None,
    total_tokens: int | None,
    latency_ms: int,
    generation_id: int | None = None,
    meta: Dict[str, Any] | None = None,
) -> Dict[str, Any]:
    cur = conn.execute(
        """
        INSERT INTO llm_usage(
            user_id, generation_id, model, prompt_tokens, completion_tokens, total_tokens,
            latency_ms, created_at, meta_json
        )
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            user_id,
            generation_id,
            model,
            prompt_tokens,
            completion_tokens,
            total_tokens,
            latency_ms,
            utc_now_iso(),
            json_dumps(meta),
        ),
    )
    row = conn.execute("SELECT * FROM llm_usage WHERE id = ?", (cur.lastrowid,)).fetchone()
    return dict(row)


def get_usage_summary(conn: sqlite3.Connection, user_id: str | None = None) -> Dict[str, Any]:
    query = """
        SELECT
          COUNT(*) AS calls,
          COALESCE(SUM(prompt_tokens), 0) AS prompt_tokens,
          COALESCE(SUM(completion_tokens), 0) AS completion_tokens,
          COALESCE(SUM(total_tokens), 0) AS total_tokens
        FROM llm_usage
    """
    if user_id:
        row = conn.execute(query + " WHERE user_id = ?", (user_id,)).fetchone()
    else:
        row = conn.execute(query).fetchone()
    return dict(row)
