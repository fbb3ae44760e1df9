"""SQLite persistence for reasoning steps.

The orchestrator consumes storage through two operations only:

    save_step(step, session_id) -> row id      (atomic, one transaction)
    load_steps(session_id)      -> list[Step]  (ascending step number)

Schema Design:
- ``steps``: one row per accepted step, keyed by session
- ``step_recommendations``: the step's current recommendation
  (is_current = 1) and its previous ones, in insertion order
- ``tool_recommendations``: tools of each recommendation

Blocking sqlite calls run on a single-worker executor so the event loop
is never blocked and writes from one store are serialized. Transient
"database is locked" errors are retried with backoff.
"""

from __future__ import annotations

import asyncio
import os
import sqlite3
import threading
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Protocol, TypeVar, runtime_checkable

import orjson
from loguru import logger

from src.tools.step_types import Step, StepRecommendation, ToolRecommendation
from src.utils.errors import ConfigurationError, PersistenceError
from src.utils.retry import retry_with_backoff

T = TypeVar("T")

# Allowed base directories for database files (prevents path traversal)
# Override via STEPWISE_ALLOWED_DB_DIRS (colon-separated)
_DEFAULT_ALLOWED_DIRS = [
    Path.home() / ".stepwise",
    Path("/tmp"),  # nosec B108 - intentionally allowed for dev/testing
    Path.cwd(),
]


def _get_allowed_db_dirs() -> list[Path]:
    env_dirs = os.getenv("STEPWISE_ALLOWED_DB_DIRS")
    if env_dirs:
        return [Path(d).resolve() for d in env_dirs.split(":") if d]
    return [d.resolve() for d in _DEFAULT_ALLOWED_DIRS]


def validate_db_path(db_path: Path | str) -> Path:
    """Resolve ``db_path`` and check it lies inside an allowed directory.

    Raises:
        ConfigurationError: On traversal patterns or a path outside the allow-list.

    """
    if str(db_path) == ":memory:":
        return Path(":memory:")

    if ".." in Path(db_path).parts:
        raise ConfigurationError(f"Invalid database path: traversal detected in '{db_path}'")

    path = Path(db_path).resolve()
    allowed_dirs = _get_allowed_db_dirs()
    if not any(path == d or d in path.parents for d in allowed_dirs):
        allowed_list = ", ".join(str(d) for d in allowed_dirs)
        raise ConfigurationError(
            f"Database path '{path}' is outside allowed directories. "
            f"Allowed: {allowed_list}. Set STEPWISE_ALLOWED_DB_DIRS to add directories."
        )
    return path


@runtime_checkable
class StepStore(Protocol):
    """What the orchestrator needs from a persistence backend."""

    async def save_step(self, step: Step, session_id: str) -> int: ...

    async def load_steps(self, session_id: str) -> list[Step]: ...

    async def clear_history(self, session_id: str | None = None) -> None: ...

    def close(self) -> None: ...


_SCHEMA = """
CREATE TABLE IF NOT EXISTS steps (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    session_id TEXT NOT NULL,
    step_number INTEGER NOT NULL,
    total_steps INTEGER NOT NULL,
    content TEXT NOT NULL,
    is_revision INTEGER DEFAULT 0,
    revises_step INTEGER,
    branch_from_step INTEGER,
    branch_id TEXT,
    needs_more_steps INTEGER DEFAULT 0,
    next_step_needed INTEGER NOT NULL,
    available_tools TEXT,
    remaining_steps TEXT,
    confidence REAL,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS step_recommendations (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    step_id INTEGER NOT NULL,
    step_description TEXT NOT NULL,
    expected_outcome TEXT NOT NULL,
    next_step_conditions TEXT,
    is_current INTEGER DEFAULT 0,
    created_at TEXT NOT NULL,
    FOREIGN KEY (step_id) REFERENCES steps(id) ON DELETE CASCADE
);

CREATE TABLE IF NOT EXISTS tool_recommendations (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    recommendation_id INTEGER NOT NULL,
    tool_name TEXT NOT NULL,
    confidence REAL NOT NULL,
    rationale TEXT NOT NULL,
    priority INTEGER NOT NULL,
    suggested_inputs TEXT,
    alternatives TEXT,
    FOREIGN KEY (recommendation_id) REFERENCES step_recommendations(id) ON DELETE CASCADE
);

CREATE INDEX IF NOT EXISTS idx_steps_session ON steps(session_id, step_number);
CREATE INDEX IF NOT EXISTS idx_recommendations_step ON step_recommendations(step_id);
CREATE INDEX IF NOT EXISTS idx_tools_recommendation ON tool_recommendations(recommendation_id);
"""


def _dump(value: Any) -> str | None:
    return None if value is None else orjson.dumps(value).decode("utf-8")


def _parse_json(raw: str | None, default: Any, field_name: str) -> Any:
    """Decode a JSON column, degrading to ``default`` on malformed data."""
    if raw is None:
        return default
    try:
        return orjson.loads(raw)
    except orjson.JSONDecodeError:
        logger.warning(f"Failed to parse JSON field during rehydration: {field_name}")
        return default


def _list_or_none(value: Any) -> list[Any] | None:
    return value if isinstance(value, list) else None


def _dict_or_none(value: Any) -> dict[str, Any] | None:
    return value if isinstance(value, dict) else None


class SqliteStepStore:
    """Thread-safe SQLite step store.

    Usage:
        store = SqliteStepStore("/tmp/steps.db")
        await store.save_step(step, "session-1")
        steps = await store.load_steps("session-1")
        store.close()

    """

    def __init__(self, db_path: Path | str = ":memory:") -> None:
        """Open (or create) the database.

        Args:
            db_path: SQLite file path, validated against the allow-list.
                Use ":memory:" for an in-memory database (testing).

        Raises:
            ConfigurationError: If the path is not allowed.
            PersistenceError: If the database cannot be opened.

        """
        self.db_path = validate_db_path(db_path)
        self._lock = threading.RLock()
        self._connection: sqlite3.Connection | None = None
        self._executor: ThreadPoolExecutor | None = ThreadPoolExecutor(
            max_workers=1, thread_name_prefix="stepwise-sqlite"
        )
        try:
            self._init_db()
        except sqlite3.Error as e:
            raise PersistenceError(f"Failed to initialize database at {self.db_path}: {e}") from e
        logger.info(f"Step store initialized at {self.db_path}")

    def _get_connection(self) -> sqlite3.Connection:
        if self._connection is None:
            if str(self.db_path) != ":memory:":
                self.db_path.parent.mkdir(parents=True, exist_ok=True)
            self._connection = sqlite3.connect(
                str(self.db_path),
                check_same_thread=False,  # access is serialized by self._lock
                timeout=30.0,
            )
            self._connection.row_factory = sqlite3.Row
            self._connection.execute("PRAGMA foreign_keys = ON")
        return self._connection

    def _init_db(self) -> None:
        with self._lock:
            conn = self._get_connection()
            conn.executescript(_SCHEMA)
            conn.commit()

    async def _run(self, fn: Callable[[], T]) -> T:
        if self._executor is None:
            raise PersistenceError("Step store is closed")
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._executor, fn)

    # =========================================================================
    # Writes
    # =========================================================================

    async def save_step(self, step: Step, session_id: str) -> int:
        """Durably store a step with all its recommendations.

        Raises:
            PersistenceError: If the write fails after retries.

        """
        return await self._run(lambda: self._save_step_sync(step, session_id))

    def _save_step_sync(self, step: Step, session_id: str) -> int:
        try:
            return self._write_step(step, session_id)
        except sqlite3.Error as e:
            raise PersistenceError(f"Failed to persist step {step.step_number}: {e}") from e

    @retry_with_backoff(max_attempts=3, base_delay=0.05, retry_on=(sqlite3.OperationalError,))
    def _write_step(self, step: Step, session_id: str) -> int:
        now = datetime.now(UTC).isoformat()
        with self._lock:
            conn = self._get_connection()
            with conn:  # one transaction: commit on success, rollback on error
                cursor = conn.execute(
                    """
                    INSERT INTO steps (
                        session_id, step_number, total_steps, content, is_revision,
                        revises_step, branch_from_step, branch_id, needs_more_steps,
                        next_step_needed, available_tools, remaining_steps, confidence,
                        created_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        session_id,
                        step.step_number,
                        step.total_steps,
                        step.content,
                        int(step.is_revision),
                        step.revises_step,
                        step.branch_from_step,
                        step.branch_id,
                        int(step.needs_more_steps),
                        int(step.next_step_needed),
                        _dump(step.available_tools),
                        _dump(step.remaining_steps),
                        step.confidence,
                        now,
                    ),
                )
                step_id = int(cursor.lastrowid or 0)

                if step.current_step is not None:
                    self._write_recommendation(conn, step_id, step.current_step, True, now)
                for previous in step.previous_recommendations:
                    self._write_recommendation(conn, step_id, previous, False, now)

        logger.debug(f"Step {step.step_number} saved (row {step_id})")
        return step_id

    @staticmethod
    def _write_recommendation(
        conn: sqlite3.Connection,
        step_id: int,
        recommendation: StepRecommendation,
        is_current: bool,
        now: str,
    ) -> None:
        cursor = conn.execute(
            """
            INSERT INTO step_recommendations (
                step_id, step_description, expected_outcome, next_step_conditions,
                is_current, created_at
            ) VALUES (?, ?, ?, ?, ?, ?)
            """,
            (
                step_id,
                recommendation.step_description,
                recommendation.expected_outcome,
                _dump(recommendation.next_step_conditions),
                int(is_current),
                now,
            ),
        )
        recommendation_id = cursor.lastrowid
        conn.executemany(
            """
            INSERT INTO tool_recommendations (
                recommendation_id, tool_name, confidence, rationale, priority,
                suggested_inputs, alternatives
            ) VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            [
                (
                    recommendation_id,
                    tool.tool_name,
                    tool.confidence,
                    tool.rationale,
                    tool.priority,
                    _dump(tool.suggested_inputs),
                    _dump(tool.alternatives),
                )
                for tool in recommendation.recommended_tools
            ],
        )

    async def clear_history(self, session_id: str | None = None) -> None:
        """Delete one session's steps, or everything when ``session_id`` is None."""
        await self._run(lambda: self._clear_sync(session_id))

    def _clear_sync(self, session_id: str | None) -> None:
        try:
            with self._lock:
                conn = self._get_connection()
                with conn:
                    if session_id is None:
                        conn.execute("DELETE FROM tool_recommendations")
                        conn.execute("DELETE FROM step_recommendations")
                        conn.execute("DELETE FROM steps")
                    else:
                        conn.execute("DELETE FROM steps WHERE session_id = ?", (session_id,))
        except sqlite3.Error as e:
            raise PersistenceError(f"Failed to clear history: {e}") from e
        if session_id is None:
            logger.info("All step history cleared")
        else:
            logger.info(f"Step history cleared for session {session_id}")

    # =========================================================================
    # Reads
    # =========================================================================

    async def load_steps(self, session_id: str) -> list[Step]:
        """All stored steps of a session, ascending by step number.

        Raises:
            PersistenceError: If the database cannot be read.

        """
        return await self._run(lambda: self._load_steps_sync(session_id))

    def _load_steps_sync(self, session_id: str) -> list[Step]:
        try:
            with self._lock:
                conn = self._get_connection()
                rows = conn.execute(
                    "SELECT * FROM steps WHERE session_id = ? ORDER BY step_number ASC, id ASC",
                    (session_id,),
                ).fetchall()
                return [self._row_to_step(conn, row) for row in rows]
        except sqlite3.Error as e:
            raise PersistenceError(f"Failed to load steps for session {session_id}: {e}") from e

    def _row_to_step(self, conn: sqlite3.Connection, row: sqlite3.Row) -> Step:
        current: StepRecommendation | None = None
        previous: list[StepRecommendation] = []
        rec_rows = conn.execute(
            "SELECT * FROM step_recommendations WHERE step_id = ? ORDER BY id ASC",
            (row["id"],),
        ).fetchall()
        for rec_row in rec_rows:
            recommendation = self._row_to_recommendation(conn, rec_row)
            if rec_row["is_current"] and current is None:
                current = recommendation
            else:
                previous.append(recommendation)

        return Step(
            step_number=row["step_number"],
            total_steps=row["total_steps"],
            content=row["content"],
            next_step_needed=bool(row["next_step_needed"]),
            is_revision=bool(row["is_revision"]),
            revises_step=row["revises_step"],
            branch_from_step=row["branch_from_step"],
            branch_id=row["branch_id"],
            needs_more_steps=bool(row["needs_more_steps"]),
            current_step=current,
            previous_recommendations=previous,
            remaining_steps=_list_or_none(
                _parse_json(row["remaining_steps"], None, "remaining_steps")
            ),
            available_tools=_list_or_none(
                _parse_json(row["available_tools"], None, "available_tools")
            ),
            confidence=row["confidence"],
        )

    @staticmethod
    def _row_to_recommendation(conn: sqlite3.Connection, rec_row: sqlite3.Row) -> StepRecommendation:
        tools = [
            ToolRecommendation(
                tool_name=tool_row["tool_name"],
                confidence=tool_row["confidence"],
                rationale=tool_row["rationale"],
                priority=tool_row["priority"],
                suggested_inputs=_dict_or_none(
                    _parse_json(tool_row["suggested_inputs"], None, "suggested_inputs")
                ),
                alternatives=_list_or_none(
                    _parse_json(tool_row["alternatives"], None, "alternatives")
                ),
            )
            for tool_row in conn.execute(
                "SELECT * FROM tool_recommendations WHERE recommendation_id = ? ORDER BY id ASC",
                (rec_row["id"],),
            ).fetchall()
        ]
        return StepRecommendation(
            step_description=rec_row["step_description"],
            recommended_tools=tools,
            expected_outcome=rec_row["expected_outcome"],
            next_step_conditions=_list_or_none(
                _parse_json(rec_row["next_step_conditions"], None, "next_step_conditions")
            ),
        )

    def count_steps(self, session_id: str | None = None) -> int:
        """Number of stored step rows (for status and tests)."""
        with self._lock:
            conn = self._get_connection()
            if session_id is None:
                row = conn.execute("SELECT COUNT(*) AS n FROM steps").fetchone()
            else:
                row = conn.execute(
                    "SELECT COUNT(*) AS n FROM steps WHERE session_id = ?", (session_id,)
                ).fetchone()
            return int(row["n"])

    def close(self) -> None:
        """Close the database connection and stop the worker thread."""
        with self._lock:
            if self._connection is not None:
                self._connection.close()
                self._connection = None
        if self._executor is not None:
            self._executor.shutdown(wait=False)
            self._executor = None
        logger.debug("Step store closed")
