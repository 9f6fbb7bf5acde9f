"""SQLite persistence layer."""

from __future__ import annotations

import json
import sqlite3
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable, Iterator

from advisor.models import EmbeddingRecord, Instruction, SourceKind, Task, TaskStatus, TaskType

SCHEMA_VERSION = 1


class Database:
    """Small SQLite wrapper with explicit schema management."""

    def __init__(self, path: Path) -> None:
        self._path = path

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(self._path)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        finally:
            conn.close()

    def initialize(self) -> None:
        """Create or migrate schema."""

        with self._connect() as conn:
            conn.execute("CREATE TABLE IF NOT EXISTS schema_version (version INTEGER NOT NULL)")
            row = conn.execute("SELECT version FROM schema_version LIMIT 1").fetchone()
            if row is None:
                self._create_schema(conn)
                conn.execute("INSERT INTO schema_version (version) VALUES (?)", (SCHEMA_VERSION,))
            elif row["version"] != SCHEMA_VERSION:
                raise RuntimeError(
                    f"Unsupported schema version {row['version']} (expected {SCHEMA_VERSION})"
                )

    def _create_schema(self, conn: sqlite3.Connection) -> None:
        conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS tool_executions (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id TEXT NOT NULL,
                tool_name TEXT NOT NULL,
                input_json TEXT NOT NULL,
                output_json TEXT NOT NULL,
                succeeded INTEGER NOT NULL,
                created_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS tasks (
                id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL,
                type TEXT NOT NULL,
                status TEXT NOT NULL,
                description TEXT NOT NULL,
                context_json TEXT NOT NULL,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                completed_at TEXT
            );
            CREATE INDEX IF NOT EXISTS idx_tasks_user_status ON tasks(user_id, status);

            CREATE TABLE IF NOT EXISTS instructions (
                id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL,
                content TEXT NOT NULL,
                active INTEGER NOT NULL,
                created_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS embeddings (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id TEXT NOT NULL,
                source TEXT NOT NULL,
                source_id TEXT NOT NULL,
                chunk_index INTEGER NOT NULL,
                content TEXT NOT NULL,
                metadata_json TEXT NOT NULL,
                embedding_json TEXT NOT NULL,
                created_at TEXT NOT NULL,
                UNIQUE(user_id, source, source_id, chunk_index)
            );
            """
        )

    # -- tool execution log -------------------------------------------------

    def log_tool_execution(
        self,
        user_id: str,
        tool_name: str,
        tool_input: dict[str, Any],
        tool_output: Any,
        succeeded: bool,
    ) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO tool_executions(user_id, tool_name, input_json, output_json, succeeded, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    user_id,
                    tool_name,
                    json.dumps(tool_input, default=str),
                    json.dumps(tool_output, default=str),
                    int(succeeded),
                    _utc_now_iso(),
                ),
            )

    def list_tool_executions(self, user_id: str, limit: int = 50) -> list[dict[str, Any]]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT tool_name, input_json, output_json, succeeded, created_at
                FROM tool_executions
                WHERE user_id = ?
                ORDER BY id DESC
                LIMIT ?
                """,
                (user_id, limit),
            ).fetchall()
        return [dict(row) for row in rows]

    # -- tasks --------------------------------------------------------------

    def create_task(
        self,
        user_id: str,
        task_type: TaskType,
        description: str,
        context: dict[str, Any],
    ) -> Task:
        task_id = uuid.uuid4().hex
        now = _utc_now_iso()
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO tasks(id, user_id, type, status, description, context_json, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    task_id,
                    user_id,
                    task_type.value,
                    TaskStatus.PENDING.value,
                    description,
                    json.dumps(context, default=str),
                    now,
                    now,
                ),
            )
        task = self.get_task(task_id)
        if task is None:
            raise RuntimeError(f"Task {task_id} vanished after insert")
        return task

    def get_task(self, task_id: str) -> Task | None:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM tasks WHERE id = ?", (task_id,)).fetchone()
        return _row_to_task(row) if row else None

    def update_task(
        self,
        task_id: str,
        status: TaskStatus | None = None,
        context: dict[str, Any] | None = None,
    ) -> Task | None:
        """Overwrite status and/or context. Merging is the caller's job."""

        assignments = ["updated_at = ?"]
        now = _utc_now_iso()
        params: list[Any] = [now]
        if status is not None:
            assignments.append("status = ?")
            params.append(status.value)
            if status is TaskStatus.COMPLETED:
                assignments.append("completed_at = ?")
                params.append(now)
        if context is not None:
            assignments.append("context_json = ?")
            params.append(json.dumps(context, default=str))
        params.append(task_id)
        with self._connect() as conn:
            conn.execute(f"UPDATE tasks SET {', '.join(assignments)} WHERE id = ?", params)
        return self.get_task(task_id)

    def transition_task_status(
        self,
        task_id: str,
        from_statuses: Iterable[TaskStatus],
        to_status: TaskStatus,
    ) -> bool:
        """Atomically move a task to ``to_status`` if it is currently in one of ``from_statuses``."""

        allowed = [s.value for s in from_statuses]
        placeholders = ", ".join("?" for _ in allowed)
        with self._connect() as conn:
            cur = conn.execute(
                f"UPDATE tasks SET status = ?, updated_at = ? WHERE id = ? AND status IN ({placeholders})",
                (to_status.value, _utc_now_iso(), task_id, *allowed),
            )
            return cur.rowcount == 1

    def list_tasks(self, user_id: str, statuses: Iterable[TaskStatus] | None = None) -> list[Task]:
        """Return a user's tasks in creation order."""

        query = "SELECT * FROM tasks WHERE user_id = ?"
        params: list[Any] = [user_id]
        if statuses is not None:
            values = [s.value for s in statuses]
            query += f" AND status IN ({', '.join('?' for _ in values)})"
            params.extend(values)
        query += " ORDER BY created_at ASC, rowid ASC"
        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [_row_to_task(row) for row in rows]

    def count_tasks_by_status(self, user_id: str) -> dict[str, int]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT status, COUNT(*) AS n FROM tasks WHERE user_id = ? GROUP BY status",
                (user_id,),
            ).fetchall()
        return {row["status"]: int(row["n"]) for row in rows}

    # -- instructions -------------------------------------------------------

    def add_instruction(self, user_id: str, content: str) -> Instruction:
        instruction_id = uuid.uuid4().hex
        with self._connect() as conn:
            conn.execute(
                "INSERT INTO instructions(id, user_id, content, active, created_at) VALUES (?, ?, ?, 1, ?)",
                (instruction_id, user_id, content, _utc_now_iso()),
            )
        instruction = self.get_instruction(user_id, instruction_id)
        if instruction is None:
            raise RuntimeError(f"Instruction {instruction_id} vanished after insert")
        return instruction

    def get_instruction(self, user_id: str, instruction_id: str) -> Instruction | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM instructions WHERE id = ? AND user_id = ?",
                (instruction_id, user_id),
            ).fetchone()
        return _row_to_instruction(row) if row else None

    def list_instructions(self, user_id: str, active_only: bool = True) -> list[Instruction]:
        """Active instructions oldest first; the full list newest first."""

        if active_only:
            query = "SELECT * FROM instructions WHERE user_id = ? AND active = 1 ORDER BY created_at ASC, rowid ASC"
        else:
            query = "SELECT * FROM instructions WHERE user_id = ? ORDER BY created_at DESC, rowid DESC"
        with self._connect() as conn:
            rows = conn.execute(query, (user_id,)).fetchall()
        return [_row_to_instruction(row) for row in rows]

    def set_instruction_active(self, user_id: str, instruction_id: str, active: bool) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE instructions SET active = ? WHERE id = ? AND user_id = ?",
                (int(active), instruction_id, user_id),
            )
            return cur.rowcount == 1

    def delete_instruction(self, user_id: str, instruction_id: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM instructions WHERE id = ? AND user_id = ?",
                (instruction_id, user_id),
            )
            return cur.rowcount == 1

    # -- embeddings ---------------------------------------------------------

    def replace_source_embeddings(
        self,
        user_id: str,
        source: SourceKind,
        source_id: str,
        records: list[EmbeddingRecord],
    ) -> None:
        """Swap every chunk of one source document in a single transaction."""

        now = _utc_now_iso()
        with self._connect() as conn:
            conn.execute(
                "DELETE FROM embeddings WHERE user_id = ? AND source = ? AND source_id = ?",
                (user_id, source.value, source_id),
            )
            conn.executemany(
                """
                INSERT INTO embeddings(user_id, source, source_id, chunk_index, content,
                                       metadata_json, embedding_json, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                [
                    (
                        user_id,
                        source.value,
                        source_id,
                        record.chunk_index,
                        record.content,
                        json.dumps(record.metadata, default=str),
                        json.dumps(record.embedding),
                        now,
                    )
                    for record in records
                ],
            )

    def list_embeddings(
        self,
        user_id: str,
        sources: Iterable[SourceKind] | None = None,
    ) -> list[EmbeddingRecord]:
        query, params = _embedding_scope(user_id, sources)
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT * FROM embeddings WHERE {query} ORDER BY id ASC",
                params,
            ).fetchall()
        return [_row_to_embedding(row) for row in rows]

    def search_embedding_text(
        self,
        user_id: str,
        text: str,
        sources: Iterable[SourceKind] | None = None,
        limit: int = 5,
    ) -> list[EmbeddingRecord]:
        """Case-insensitive substring match over stored chunk contents."""

        query, params = _embedding_scope(user_id, sources)
        escaped = text.lower().replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
        with self._connect() as conn:
            rows = conn.execute(
                f"""
                SELECT * FROM embeddings
                WHERE {query} AND lower(content) LIKE ? ESCAPE '\\'
                ORDER BY id DESC
                LIMIT ?
                """,
                (*params, f"%{escaped}%", limit),
            ).fetchall()
        return [_row_to_embedding(row) for row in rows]

    def count_embeddings(self, user_id: str) -> dict[str, int]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT source, COUNT(*) AS n FROM embeddings WHERE user_id = ? GROUP BY source",
                (user_id,),
            ).fetchall()
        return {row["source"]: int(row["n"]) for row in rows}

    def delete_user_embeddings(self, user_id: str) -> int:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM embeddings WHERE user_id = ?", (user_id,))
            return cur.rowcount


def _embedding_scope(user_id: str, sources: Iterable[SourceKind] | None) -> tuple[str, list[Any]]:
    clause = "user_id = ?"
    params: list[Any] = [user_id]
    if sources is not None:
        values = [s.value for s in sources]
        if values:
            clause += f" AND source IN ({', '.join('?' for _ in values)})"
            params.extend(values)
    return clause, params


def _row_to_task(row: sqlite3.Row) -> Task:
    return Task(
        id=row["id"],
        user_id=row["user_id"],
        type=TaskType(row["type"]),
        status=TaskStatus(row["status"]),
        description=row["description"],
        context=json.loads(row["context_json"]),
        created_at=datetime.fromisoformat(row["created_at"]),
        updated_at=datetime.fromisoformat(row["updated_at"]),
        completed_at=datetime.fromisoformat(row["completed_at"]) if row["completed_at"] else None,
    )


def _row_to_instruction(row: sqlite3.Row) -> Instruction:
    return Instruction(
        id=row["id"],
        user_id=row["user_id"],
        content=row["content"],
        active=bool(row["active"]),
        created_at=datetime.fromisoformat(row["created_at"]),
    )


def _row_to_embedding(row: sqlite3.Row) -> EmbeddingRecord:
    return EmbeddingRecord(
        user_id=row["user_id"],
        source=SourceKind(row["source"]),
        source_id=row["source_id"],
        chunk_index=int(row["chunk_index"]),
        content=row["content"],
        embedding=json.loads(row["embedding_json"]),
        metadata=json.loads(row["metadata_json"]),
    )


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()
