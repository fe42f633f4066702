"""SQLite-backed ledger storage for users, tasks, applications, payments and anomalies."""

from __future__ import annotations

import contextlib
import json
import sqlite3
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path
from threading import RLock
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable, Iterator


class DuplicateApplicationError(Exception):
    """Raised when a student applies twice to the same task."""


class DuplicateActivePaymentError(Exception):
    """Raised when a second non-refunded task payment is inserted for a task."""


def format_timestamp(moment: datetime) -> str:
    """Render a datetime as a UTC ISO 8601 string with Z suffix."""
    return moment.astimezone(UTC).isoformat(timespec="microseconds").replace("+00:00", "Z")


def now_iso() -> str:
    """Return current UTC time as ISO 8601 string with Z suffix."""
    return format_timestamp(datetime.now(UTC))


def parse_timestamp(value: str) -> datetime:
    """Parse a stored timestamp back into an aware datetime."""
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


_USER_COLUMNS: tuple[str, ...] = (
    "user_id",
    "role",
    "gold",
    "total_tasks_completed",
    "average_completion_time",
    "star_rating",
    "xp",
    "company_name",
    "company_name_changes",
    "restriction_until",
    "low_priority_only",
    "created_at",
)

_TASK_COLUMNS: tuple[str, ...] = (
    "task_id",
    "employer_id",
    "title",
    "location",
    "duration",
    "description",
    "skills",
    "tags",
    "banner_url",
    "is_featured",
    "gold",
    "priority_level",
    "deadline",
    "status",
    "submission_status",
    "accepted_student_id",
    "accepted_at",
    "completed_at",
    "cancelled_at",
    "submission_proof_url",
    "time_taken_hours",
    "completion_notes",
    "submitted_at",
    "rejection_reason",
    "dispute_escrow_amount",
    "disputed_at",
    "dispute_chat_id",
    "created_at",
    "updated_at",
)

_APPLICATION_COLUMNS: tuple[str, ...] = (
    "application_id",
    "task_id",
    "student_id",
    "employer_id",
    "status",
    "message",
    "created_at",
    "updated_at",
)

_PAYMENT_COLUMNS: tuple[str, ...] = (
    "payment_id",
    "task_id",
    "employer_id",
    "student_id",
    "amount",
    "status",
    "type",
    "escrowed_at",
    "released_at",
    "released_by",
    "refunded_at",
    "refunded_by",
    "credited_amount",
    "notes",
    "created_at",
)

_ANOMALY_COLUMNS: tuple[str, ...] = (
    "anomaly_id",
    "type",
    "severity",
    "status",
    "task_id",
    "user_id",
    "employer_id",
    "student_id",
    "description",
    "changed_fields",
    "detected_at",
    "resolved_at",
    "resolved_by",
    "notes",
)

_CHAT_COLUMNS: tuple[str, ...] = ("message_id", "task_id", "sender_id", "text", "created_at")

_NOTIFICATION_COLUMNS: tuple[str, ...] = (
    "notification_id",
    "user_id",
    "type",
    "title",
    "message",
    "related_task_id",
    "related_user_id",
    "metadata",
    "created_at",
)

_JSON_LIST_COLUMNS = frozenset({"skills", "tags", "changed_fields"})
_BOOL_COLUMNS = frozenset({"is_featured", "low_priority_only"})


def _encode(column: str, value: Any) -> Any:
    if column in _JSON_LIST_COLUMNS or column == "metadata":
        return None if value is None else json.dumps(value)
    if column in _BOOL_COLUMNS:
        return 1 if value else 0
    return value


def _decode(column: str, value: Any) -> Any:
    if column in _JSON_LIST_COLUMNS:
        return [] if value is None else json.loads(value)
    if column == "metadata":
        return None if value is None else json.loads(value)
    if column in _BOOL_COLUMNS:
        return bool(value)
    return value


class LedgerStore:
    """
    SQLite-backed storage for the marketplace ledger.

    A single connection is shared across threads and guarded by an RLock.
    Multi-statement changes run inside ``transaction()``, which opens a
    ``BEGIN IMMEDIATE`` transaction and nests through savepoints, so a
    service method may call other write methods and still commit or roll
    back as one unit.
    """

    def __init__(self, db_path: str) -> None:
        self._lock = RLock()
        self._depth = 0
        self._after_commit: list[Callable[[], None]] = []
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._db = sqlite3.connect(db_path, check_same_thread=False, isolation_level=None)
        self._db.row_factory = sqlite3.Row
        self._db.execute("PRAGMA journal_mode=WAL")
        self._db.execute("PRAGMA foreign_keys=ON")
        self._db.execute("PRAGMA busy_timeout=5000")
        self._init_schema()

    def _init_schema(self) -> None:
        with self._lock:
            self._db.executescript(
                """
                CREATE TABLE IF NOT EXISTS users (
                    user_id TEXT PRIMARY KEY,
                    role TEXT NOT NULL,
                    gold INTEGER NOT NULL DEFAULT 0,
                    total_tasks_completed INTEGER NOT NULL DEFAULT 0,
                    average_completion_time REAL NOT NULL DEFAULT 0,
                    star_rating INTEGER NOT NULL DEFAULT 1,
                    xp INTEGER NOT NULL DEFAULT 0,
                    company_name TEXT,
                    company_name_changes INTEGER NOT NULL DEFAULT 0,
                    restriction_until TEXT,
                    low_priority_only INTEGER NOT NULL DEFAULT 0,
                    created_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS tasks (
                    task_id TEXT PRIMARY KEY,
                    employer_id TEXT NOT NULL,
                    title TEXT NOT NULL,
                    location TEXT,
                    duration TEXT,
                    description TEXT,
                    skills TEXT,
                    tags TEXT,
                    banner_url TEXT,
                    is_featured INTEGER NOT NULL DEFAULT 0,
                    gold INTEGER NOT NULL CHECK (gold >= 0),
                    priority_level TEXT NOT NULL DEFAULT 'medium',
                    deadline TEXT,
                    status TEXT NOT NULL DEFAULT 'posted',
                    submission_status TEXT NOT NULL DEFAULT 'pending',
                    accepted_student_id TEXT,
                    accepted_at TEXT,
                    completed_at TEXT,
                    cancelled_at TEXT,
                    submission_proof_url TEXT,
                    time_taken_hours REAL,
                    completion_notes TEXT,
                    submitted_at TEXT,
                    rejection_reason TEXT,
                    dispute_escrow_amount INTEGER,
                    disputed_at TEXT,
                    dispute_chat_id TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS applications (
                    application_id TEXT PRIMARY KEY,
                    task_id TEXT NOT NULL,
                    student_id TEXT NOT NULL,
                    employer_id TEXT NOT NULL,
                    status TEXT NOT NULL DEFAULT 'applied',
                    message TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    UNIQUE(task_id, student_id)
                );

                CREATE TABLE IF NOT EXISTS payments (
                    payment_id TEXT PRIMARY KEY,
                    task_id TEXT NOT NULL,
                    employer_id TEXT NOT NULL,
                    student_id TEXT,
                    amount INTEGER NOT NULL,
                    status TEXT NOT NULL,
                    type TEXT NOT NULL DEFAULT 'task_payment',
                    escrowed_at TEXT,
                    released_at TEXT,
                    released_by TEXT,
                    refunded_at TEXT,
                    refunded_by TEXT,
                    credited_amount INTEGER,
                    notes TEXT,
                    created_at TEXT NOT NULL
                );

                CREATE UNIQUE INDEX IF NOT EXISTS idx_payments_active_task
                    ON payments(task_id)
                    WHERE type = 'task_payment' AND status != 'refunded';

                CREATE TABLE IF NOT EXISTS anomalies (
                    anomaly_id TEXT PRIMARY KEY,
                    type TEXT NOT NULL,
                    severity TEXT NOT NULL,
                    status TEXT NOT NULL DEFAULT 'open',
                    task_id TEXT,
                    user_id TEXT,
                    employer_id TEXT,
                    student_id TEXT,
                    description TEXT NOT NULL,
                    changed_fields TEXT,
                    detected_at TEXT NOT NULL,
                    resolved_at TEXT,
                    resolved_by TEXT,
                    notes TEXT
                );

                CREATE TABLE IF NOT EXISTS chat_messages (
                    message_id TEXT PRIMARY KEY,
                    task_id TEXT NOT NULL,
                    sender_id TEXT NOT NULL,
                    text TEXT NOT NULL,
                    created_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS notifications (
                    notification_id TEXT PRIMARY KEY,
                    user_id TEXT NOT NULL,
                    type TEXT NOT NULL,
                    title TEXT NOT NULL,
                    message TEXT NOT NULL,
                    related_task_id TEXT,
                    related_user_id TEXT,
                    metadata TEXT,
                    created_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS audit_runs (
                    run_id TEXT NOT NULL,
                    student_id TEXT NOT NULL,
                    gold_recovered INTEGER NOT NULL,
                    tasks_recovered INTEGER NOT NULL,
                    created_at TEXT NOT NULL,
                    PRIMARY KEY (run_id, student_id)
                );

                CREATE INDEX IF NOT EXISTS idx_tasks_student ON tasks(accepted_student_id);
                CREATE INDEX IF NOT EXISTS idx_applications_task ON applications(task_id);
                CREATE INDEX IF NOT EXISTS idx_anomalies_task ON anomalies(task_id);
                """
            )

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------

    @contextmanager
    def transaction(self) -> Iterator[None]:
        """
        Run the enclosed block as one atomic unit.

        The outermost call issues ``BEGIN IMMEDIATE`` and commits on exit;
        nested calls open a savepoint so an inner failure only rolls back
        the inner block. Callbacks registered with ``after_commit`` run once
        the outermost transaction commits, outside the store lock.
        """
        callbacks: list[Callable[[], None]] = []
        with self._lock:
            if self._depth > 0:
                savepoint = f"sp_{self._depth}"
                pending_mark = len(self._after_commit)
                self._db.execute(f"SAVEPOINT {savepoint}")
                self._depth += 1
                try:
                    yield
                except BaseException:
                    self._db.execute(f"ROLLBACK TO {savepoint}")
                    self._db.execute(f"RELEASE {savepoint}")
                    del self._after_commit[pending_mark:]
                    raise
                else:
                    self._db.execute(f"RELEASE {savepoint}")
                finally:
                    self._depth -= 1
                return

            self._db.execute("BEGIN IMMEDIATE")
            self._depth = 1
            self._after_commit = []
            try:
                yield
                self._db.execute("COMMIT")
            except BaseException:
                with contextlib.suppress(sqlite3.Error):
                    self._db.execute("ROLLBACK")
                self._after_commit = []
                raise
            finally:
                self._depth = 0
            callbacks, self._after_commit = self._after_commit, []

        for callback in callbacks:
            callback()

    def after_commit(self, callback: Callable[[], None]) -> None:
        """Defer a callback until the current transaction commits, or run it now."""
        with self._lock:
            if self._depth > 0:
                self._after_commit.append(callback)
                return
        callback()

    @property
    def in_transaction(self) -> bool:
        """Whether the calling thread currently holds an open transaction."""
        with self._lock:
            return self._depth > 0

    def _execute(self, query: str, params: Iterable[Any] = ()) -> int:
        with self._lock:
            cursor = self._db.execute(query, tuple(params))
        return int(cursor.rowcount)

    def _fetch_one(self, query: str, params: Iterable[Any] = ()) -> sqlite3.Row | None:
        with self._lock:
            row: sqlite3.Row | None = self._db.execute(query, tuple(params)).fetchone()
        return row

    def _fetch_all(self, query: str, params: Iterable[Any] = ()) -> list[sqlite3.Row]:
        with self._lock:
            return list(self._db.execute(query, tuple(params)).fetchall())

    @staticmethod
    def _row_to_dict(row: sqlite3.Row, columns: tuple[str, ...]) -> dict[str, Any]:
        return {column: _decode(column, row[column]) for column in columns}

    def _insert(self, table: str, columns: tuple[str, ...], data: dict[str, Any]) -> None:
        placeholders = ", ".join("?" for _ in columns)
        query = f"INSERT INTO {table} ({', '.join(columns)}) VALUES ({placeholders})"  # nosec B608
        self._execute(query, (_encode(column, data.get(column)) for column in columns))

    def _update(
        self,
        table: str,
        columns: tuple[str, ...],
        key_column: str,
        key: str,
        updates: dict[str, Any],
        *,
        expected: dict[str, Any] | None = None,
    ) -> int:
        """
        Update columns on one row and return the number of affected rows.

        ``expected`` adds ``column = ?`` guards (or ``column IN (...)`` for
        tuple values) so a transition only applies when the row is still in
        the state the caller read.
        """
        if len(updates) == 0:
            return 0
        if any(column not in columns for column in updates):
            msg = f"Attempted to update unknown {table} column"
            raise ValueError(msg)

        set_clause = ", ".join(f"{column} = ?" for column in updates)
        params: list[Any] = [_encode(column, value) for column, value in updates.items()]
        query = f"UPDATE {table} SET {set_clause} WHERE {key_column} = ?"  # nosec B608
        params.append(key)

        for column, value in (expected or {}).items():
            if column not in columns:
                msg = f"Attempted to guard on unknown {table} column"
                raise ValueError(msg)
            if isinstance(value, tuple):
                query += f" AND {column} IN ({', '.join('?' for _ in value)})"
                params.extend(value)
            elif value is None:
                query += f" AND {column} IS NULL"
            else:
                query += f" AND {column} = ?"
                params.append(value)

        return self._execute(query, params)

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    def ensure_user(self, user_id: str, role: str) -> dict[str, Any]:
        """Create the user on first sight and return the stored row."""
        with self.transaction():
            self._execute(
                "INSERT OR IGNORE INTO users (user_id, role, created_at) VALUES (?, ?, ?)",
                (user_id, role, now_iso()),
            )
            user = self.get_user(user_id)
        if user is None:
            msg = f"User {user_id} vanished after insert"
            raise RuntimeError(msg)
        return user

    def get_user(self, user_id: str) -> dict[str, Any] | None:
        """Fetch a user by ID."""
        row = self._fetch_one(
            f"SELECT {', '.join(_USER_COLUMNS)} FROM users WHERE user_id = ?",  # nosec B608
            (user_id,),
        )
        return None if row is None else self._row_to_dict(row, _USER_COLUMNS)

    def list_users(self, role: str | None = None) -> list[dict[str, Any]]:
        """List users, optionally filtered by role."""
        query = f"SELECT {', '.join(_USER_COLUMNS)} FROM users"  # nosec B608
        params: list[Any] = []
        if role is not None:
            query += " WHERE role = ?"
            params.append(role)
        query += " ORDER BY created_at, user_id"
        return [self._row_to_dict(row, _USER_COLUMNS) for row in self._fetch_all(query, params)]

    def update_user(self, user_id: str, updates: dict[str, Any]) -> int:
        """Update plain user columns. Balance changes go through the gold methods."""
        if "gold" in updates:
            msg = "Gold must be changed with credit_gold/debit_gold"
            raise ValueError(msg)
        return self._update("users", _USER_COLUMNS, "user_id", user_id, updates)

    def credit_gold(
        self,
        user_id: str,
        amount: int,
        *,
        tasks_completed: int = 0,
        xp: int = 0,
    ) -> int:
        """Atomically add gold (and optionally completed tasks and XP) to a user."""
        return self._execute(
            "UPDATE users SET gold = gold + ?, "
            "total_tasks_completed = total_tasks_completed + ?, xp = xp + ? "
            "WHERE user_id = ?",
            (amount, tasks_completed, xp, user_id),
        )

    def debit_gold(self, user_id: str, amount: int, *, require_funds: bool) -> int:
        """
        Atomically subtract gold from a user.

        With ``require_funds`` the debit only applies when the balance
        covers it, and zero affected rows means insufficient funds.
        """
        query = "UPDATE users SET gold = gold - ? WHERE user_id = ?"
        params: list[Any] = [amount, user_id]
        if require_funds:
            query += " AND gold >= ?"
            params.append(amount)
        return self._execute(query, params)

    def delete_user(self, user_id: str) -> int:
        """Delete a user row."""
        return self._execute("DELETE FROM users WHERE user_id = ?", (user_id,))

    # ------------------------------------------------------------------
    # Tasks
    # ------------------------------------------------------------------

    def insert_task(self, task_data: dict[str, Any]) -> None:
        """Insert a new task row."""
        self._insert("tasks", _TASK_COLUMNS, task_data)

    def get_task(self, task_id: str) -> dict[str, Any] | None:
        """Fetch a task by ID."""
        row = self._fetch_one(
            f"SELECT {', '.join(_TASK_COLUMNS)} FROM tasks WHERE task_id = ?",  # nosec B608
            (task_id,),
        )
        return None if row is None else self._row_to_dict(row, _TASK_COLUMNS)

    def update_task(
        self,
        task_id: str,
        updates: dict[str, Any],
        *,
        expected_status: str | tuple[str, ...] | None = None,
        expected_submission_status: str | tuple[str, ...] | None = None,
    ) -> int:
        """Update task columns and return the number of affected rows."""
        expected: dict[str, Any] = {}
        if expected_status is not None:
            expected["status"] = expected_status
        if expected_submission_status is not None:
            expected["submission_status"] = expected_submission_status
        return self._update("tasks", _TASK_COLUMNS, "task_id", task_id, updates, expected=expected)

    def list_tasks(
        self,
        *,
        status: str | None = None,
        submission_status: str | None = None,
        employer_id: str | None = None,
        student_id: str | None = None,
        limit: int | None = None,
        offset: int | None = None,
    ) -> list[dict[str, Any]]:
        """List tasks with optional filters, newest first."""
        query = f"SELECT {', '.join(_TASK_COLUMNS)} FROM tasks"  # nosec B608
        clauses: list[str] = []
        params: list[Any] = []

        if status is not None:
            clauses.append("status = ?")
            params.append(status)
        if submission_status is not None:
            clauses.append("submission_status = ?")
            params.append(submission_status)
        if employer_id is not None:
            clauses.append("employer_id = ?")
            params.append(employer_id)
        if student_id is not None:
            clauses.append("accepted_student_id = ?")
            params.append(student_id)

        if len(clauses) > 0:
            query += " WHERE " + " AND ".join(clauses)

        query += " ORDER BY created_at DESC"

        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)
        if offset is not None:
            query += " OFFSET ?"
            params.append(offset)

        return [self._row_to_dict(row, _TASK_COLUMNS) for row in self._fetch_all(query, params)]

    def count_in_progress_by_student(self) -> dict[str, int]:
        """Count in-progress tasks grouped by accepted student."""
        rows = self._fetch_all(
            "SELECT accepted_student_id, COUNT(*) FROM tasks "
            "WHERE status = 'in_progress' AND accepted_student_id IS NOT NULL "
            "GROUP BY accepted_student_id"
        )
        return {str(row[0]): int(row[1]) for row in rows}

    def count_tasks_by_status(self) -> dict[str, int]:
        """Count tasks grouped by lifecycle status."""
        rows = self._fetch_all("SELECT status, COUNT(*) FROM tasks GROUP BY status")
        return {str(row[0]): int(row[1]) for row in rows}

    def list_student_ids_with_tasks(self) -> list[str]:
        """Return every user that has ever held a task or received a payment."""
        rows = self._fetch_all(
            "SELECT accepted_student_id FROM tasks WHERE accepted_student_id IS NOT NULL "
            "UNION SELECT student_id FROM payments WHERE student_id IS NOT NULL "
            "UNION SELECT user_id FROM users WHERE role = 'student' "
            "ORDER BY 1"
        )
        return [str(row[0]) for row in rows]

    def delete_task(self, task_id: str) -> int:
        """Delete a task row."""
        return self._execute("DELETE FROM tasks WHERE task_id = ?", (task_id,))

    # ------------------------------------------------------------------
    # Applications
    # ------------------------------------------------------------------

    def insert_application(self, application_data: dict[str, Any]) -> None:
        """Insert an application, rejecting a second one for the same task and student."""
        try:
            self._insert("applications", _APPLICATION_COLUMNS, application_data)
        except sqlite3.IntegrityError as exc:
            if "unique" in str(exc).lower():
                raise DuplicateApplicationError(
                    "This student already applied to this task"
                ) from exc
            raise

    def get_application(self, application_id: str) -> dict[str, Any] | None:
        """Fetch an application by ID."""
        row = self._fetch_one(
            f"SELECT {', '.join(_APPLICATION_COLUMNS)} FROM applications "  # nosec B608
            "WHERE application_id = ?",
            (application_id,),
        )
        return None if row is None else self._row_to_dict(row, _APPLICATION_COLUMNS)

    def list_applications(
        self,
        *,
        task_id: str | None = None,
        student_id: str | None = None,
        status: str | None = None,
    ) -> list[dict[str, Any]]:
        """List applications with optional filters, oldest first."""
        query = f"SELECT {', '.join(_APPLICATION_COLUMNS)} FROM applications"  # nosec B608
        clauses: list[str] = []
        params: list[Any] = []
        if task_id is not None:
            clauses.append("task_id = ?")
            params.append(task_id)
        if student_id is not None:
            clauses.append("student_id = ?")
            params.append(student_id)
        if status is not None:
            clauses.append("status = ?")
            params.append(status)
        if len(clauses) > 0:
            query += " WHERE " + " AND ".join(clauses)
        query += " ORDER BY created_at, application_id"
        return [
            self._row_to_dict(row, _APPLICATION_COLUMNS) for row in self._fetch_all(query, params)
        ]

    def update_application(
        self,
        application_id: str,
        updates: dict[str, Any],
        *,
        expected_status: str | tuple[str, ...] | None = None,
    ) -> int:
        """Update application columns and return the number of affected rows."""
        expected = {} if expected_status is None else {"status": expected_status}
        return self._update(
            "applications",
            _APPLICATION_COLUMNS,
            "application_id",
            application_id,
            updates,
            expected=expected,
        )

    def reject_sibling_applications(self, task_id: str, accepted_id: str, timestamp: str) -> int:
        """Reject every still-open application on a task except the accepted one."""
        return self._execute(
            "UPDATE applications SET status = 'rejected', updated_at = ? "
            "WHERE task_id = ? AND application_id != ? AND status IN ('applied', 'evaluating')",
            (timestamp, task_id, accepted_id),
        )

    def delete_applications(
        self,
        *,
        task_id: str | None = None,
        student_id: str | None = None,
    ) -> int:
        """Delete applications for a task or a student."""
        if task_id is not None:
            return self._execute("DELETE FROM applications WHERE task_id = ?", (task_id,))
        if student_id is not None:
            return self._execute("DELETE FROM applications WHERE student_id = ?", (student_id,))
        msg = "delete_applications needs task_id or student_id"
        raise ValueError(msg)

    # ------------------------------------------------------------------
    # Payments
    # ------------------------------------------------------------------

    def insert_payment(self, payment_data: dict[str, Any]) -> None:
        """Insert a payment, enforcing one active task payment per task."""
        try:
            self._insert("payments", _PAYMENT_COLUMNS, payment_data)
        except sqlite3.IntegrityError as exc:
            if "unique" in str(exc).lower():
                raise DuplicateActivePaymentError(
                    f"Task {payment_data['task_id']} already has an active payment"
                ) from exc
            raise

    def get_payment(self, payment_id: str) -> dict[str, Any] | None:
        """Fetch a payment by ID."""
        row = self._fetch_one(
            f"SELECT {', '.join(_PAYMENT_COLUMNS)} FROM payments "  # nosec B608
            "WHERE payment_id = ?",
            (payment_id,),
        )
        return None if row is None else self._row_to_dict(row, _PAYMENT_COLUMNS)

    def get_active_task_payment(self, task_id: str) -> dict[str, Any] | None:
        """Fetch the task's non-refunded task payment, if any."""
        row = self._fetch_one(
            f"SELECT {', '.join(_PAYMENT_COLUMNS)} FROM payments "  # nosec B608
            "WHERE task_id = ? AND type = 'task_payment' AND status != 'refunded'",
            (task_id,),
        )
        return None if row is None else self._row_to_dict(row, _PAYMENT_COLUMNS)

    def list_payments(
        self,
        *,
        task_id: str | None = None,
        student_id: str | None = None,
        employer_id: str | None = None,
        status: str | tuple[str, ...] | None = None,
        payment_type: str | None = None,
    ) -> list[dict[str, Any]]:
        """List payments with optional filters, newest first."""
        query = f"SELECT {', '.join(_PAYMENT_COLUMNS)} FROM payments"  # nosec B608
        clauses: list[str] = []
        params: list[Any] = []
        if task_id is not None:
            clauses.append("task_id = ?")
            params.append(task_id)
        if student_id is not None:
            clauses.append("student_id = ?")
            params.append(student_id)
        if employer_id is not None:
            clauses.append("employer_id = ?")
            params.append(employer_id)
        if payment_type is not None:
            clauses.append("type = ?")
            params.append(payment_type)
        if isinstance(status, tuple):
            clauses.append(f"status IN ({', '.join('?' for _ in status)})")
            params.extend(status)
        elif status is not None:
            clauses.append("status = ?")
            params.append(status)
        if len(clauses) > 0:
            query += " WHERE " + " AND ".join(clauses)
        query += " ORDER BY created_at DESC"
        return [self._row_to_dict(row, _PAYMENT_COLUMNS) for row in self._fetch_all(query, params)]

    def update_payment(
        self,
        payment_id: str,
        updates: dict[str, Any],
        *,
        expected_status: str | tuple[str, ...] | None = None,
    ) -> int:
        """Update payment columns and return the number of affected rows."""
        expected = {} if expected_status is None else {"status": expected_status}
        return self._update(
            "payments", _PAYMENT_COLUMNS, "payment_id", payment_id, updates, expected=expected
        )

    def delete_payments(self, task_id: str) -> int:
        """Delete every payment of a task."""
        return self._execute("DELETE FROM payments WHERE task_id = ?", (task_id,))

    # ------------------------------------------------------------------
    # Anomalies
    # ------------------------------------------------------------------

    def insert_anomaly(self, anomaly_data: dict[str, Any]) -> None:
        """Insert an anomaly record."""
        self._insert("anomalies", _ANOMALY_COLUMNS, anomaly_data)

    def get_anomaly(self, anomaly_id: str) -> dict[str, Any] | None:
        """Fetch an anomaly by ID."""
        row = self._fetch_one(
            f"SELECT {', '.join(_ANOMALY_COLUMNS)} FROM anomalies "  # nosec B608
            "WHERE anomaly_id = ?",
            (anomaly_id,),
        )
        return None if row is None else self._row_to_dict(row, _ANOMALY_COLUMNS)

    def find_active_anomaly(
        self,
        anomaly_type: str,
        *,
        task_id: str | None = None,
        user_id: str | None = None,
    ) -> dict[str, Any] | None:
        """Find an open or investigating anomaly of a type for the same subject."""
        query = (
            f"SELECT {', '.join(_ANOMALY_COLUMNS)} FROM anomalies "  # nosec B608
            "WHERE type = ? AND status IN ('open', 'investigating')"
        )
        params: list[Any] = [anomaly_type]
        if task_id is not None:
            query += " AND task_id = ?"
            params.append(task_id)
        if user_id is not None:
            query += " AND user_id = ?"
            params.append(user_id)
        query += " LIMIT 1"
        row = self._fetch_one(query, params)
        return None if row is None else self._row_to_dict(row, _ANOMALY_COLUMNS)

    def list_anomalies(
        self,
        *,
        status: str | None = None,
        anomaly_type: str | None = None,
        severity: str | None = None,
        task_id: str | None = None,
        involving_user: str | None = None,
    ) -> list[dict[str, Any]]:
        """List anomalies with optional filters, newest first."""
        query = f"SELECT {', '.join(_ANOMALY_COLUMNS)} FROM anomalies"  # nosec B608
        clauses: list[str] = []
        params: list[Any] = []
        if status is not None:
            clauses.append("status = ?")
            params.append(status)
        if anomaly_type is not None:
            clauses.append("type = ?")
            params.append(anomaly_type)
        if severity is not None:
            clauses.append("severity = ?")
            params.append(severity)
        if task_id is not None:
            clauses.append("task_id = ?")
            params.append(task_id)
        if involving_user is not None:
            clauses.append("(user_id = ? OR employer_id = ? OR student_id = ?)")
            params.extend([involving_user, involving_user, involving_user])
        if len(clauses) > 0:
            query += " WHERE " + " AND ".join(clauses)
        query += " ORDER BY detected_at DESC"
        return [self._row_to_dict(row, _ANOMALY_COLUMNS) for row in self._fetch_all(query, params)]

    def update_anomaly(
        self,
        anomaly_id: str,
        updates: dict[str, Any],
        *,
        expected_status: str | tuple[str, ...] | None = None,
    ) -> int:
        """Update anomaly columns and return the number of affected rows."""
        expected = {} if expected_status is None else {"status": expected_status}
        return self._update(
            "anomalies", _ANOMALY_COLUMNS, "anomaly_id", anomaly_id, updates, expected=expected
        )

    def close_task_anomalies(
        self,
        task_id: str,
        *,
        resolved_by: str,
        notes: str,
        timestamp: str,
    ) -> int:
        """Resolve every open or investigating anomaly on a task."""
        return self._execute(
            "UPDATE anomalies SET status = 'resolved', resolved_at = ?, resolved_by = ?, "
            "notes = ? WHERE task_id = ? AND status IN ('open', 'investigating')",
            (timestamp, resolved_by, notes, task_id),
        )

    def delete_anomalies(
        self,
        *,
        task_id: str | None = None,
        user_id: str | None = None,
    ) -> int:
        """Delete anomalies attached to a task or naming a user."""
        if task_id is not None:
            return self._execute("DELETE FROM anomalies WHERE task_id = ?", (task_id,))
        if user_id is not None:
            return self._execute(
                "DELETE FROM anomalies WHERE user_id = ? OR employer_id = ? OR student_id = ?",
                (user_id, user_id, user_id),
            )
        msg = "delete_anomalies needs task_id or user_id"
        raise ValueError(msg)

    # ------------------------------------------------------------------
    # Chat messages
    # ------------------------------------------------------------------

    def insert_chat_message(self, message_data: dict[str, Any]) -> None:
        """Insert a chat message."""
        self._insert("chat_messages", _CHAT_COLUMNS, message_data)

    def list_chat_messages(self, task_id: str) -> list[dict[str, Any]]:
        """List a task's chat messages, oldest first."""
        rows = self._fetch_all(
            f"SELECT {', '.join(_CHAT_COLUMNS)} FROM chat_messages "  # nosec B608
            "WHERE task_id = ? ORDER BY created_at",
            (task_id,),
        )
        return [self._row_to_dict(row, _CHAT_COLUMNS) for row in rows]

    def delete_chat_messages(
        self,
        *,
        task_id: str | None = None,
        sender_id: str | None = None,
    ) -> int:
        """Delete chat messages of a task or sent by a user."""
        if task_id is not None:
            return self._execute("DELETE FROM chat_messages WHERE task_id = ?", (task_id,))
        if sender_id is not None:
            return self._execute("DELETE FROM chat_messages WHERE sender_id = ?", (sender_id,))
        msg = "delete_chat_messages needs task_id or sender_id"
        raise ValueError(msg)

    # ------------------------------------------------------------------
    # Notifications outbox
    # ------------------------------------------------------------------

    def insert_notification(self, notification_data: dict[str, Any]) -> None:
        """Insert a notification into the outbox."""
        self._insert("notifications", _NOTIFICATION_COLUMNS, notification_data)

    def list_notifications(self, user_id: str) -> list[dict[str, Any]]:
        """List a user's notifications, newest first."""
        rows = self._fetch_all(
            f"SELECT {', '.join(_NOTIFICATION_COLUMNS)} FROM notifications "  # nosec B608
            "WHERE user_id = ? ORDER BY created_at DESC",
            (user_id,),
        )
        return [self._row_to_dict(row, _NOTIFICATION_COLUMNS) for row in rows]

    # ------------------------------------------------------------------
    # Audit runs
    # ------------------------------------------------------------------

    def record_audit_run(
        self,
        run_id: str,
        student_id: str,
        gold_recovered: int,
        tasks_recovered: int,
    ) -> bool:
        """Record a repair for (run_id, student_id); False if already recorded."""
        inserted = self._execute(
            "INSERT OR IGNORE INTO audit_runs "
            "(run_id, student_id, gold_recovered, tasks_recovered, created_at) "
            "VALUES (?, ?, ?, ?, ?)",
            (run_id, student_id, gold_recovered, tasks_recovered, now_iso()),
        )
        return inserted == 1

    def close(self) -> None:
        """Close the database connection."""
        with self._lock:
            self._db.close()
