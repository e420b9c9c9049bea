"""
Thakirni — Domain Store.

SQLite-backed storage for users, reminders, tasks, meetings, grocery lists
and the WhatsApp message audit log. Each table family has its own class;
`Store` bundles them over one database file.

Every mutation the bot performs on behalf of a user is scoped by record id
AND owner, so one phone number can never touch another user's rows.
Timestamps are stored as fixed-width ISO-8601 UTC strings so that string
comparison in SQL matches chronological order.
"""

from __future__ import annotations

import logging
import sqlite3
from datetime import datetime, timedelta, timezone
from pathlib import Path

from thakirni.data.models import (
    MEETING_CONFIRMED,
    MEETING_SCHEDULED,
    ONE_TIME,
    TASK_COMPLETED,
    TASK_OVERDUE,
    TASK_PENDING,
    DueMeetingNotice,
    DueTaskNotice,
    GroceryItem,
    GroceryList,
    Meeting,
    MessageLog,
    Reminder,
    Task,
    User,
    WhatsAppConnection,
)

logger = logging.getLogger(__name__)


class RecordNotFound(ValueError):
    """Raised when a record that must exist is missing."""


# ---------------------------------------------------------------------------
# Timestamp conversion
# ---------------------------------------------------------------------------


def to_db_time(value: datetime | None) -> str | None:
    """Aware datetime → fixed-width UTC string. Naive values are taken as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def from_db_time(value: str | None) -> datetime | None:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class _SQLiteDB:
    """Connection handling shared by every table class."""

    def __init__(self, db_path: str | None = None) -> None:
        if db_path is None:
            from thakirni.config import settings
            db_path = settings.DATABASE_PATH

        self._db_path = db_path
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._db_path)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_db(self) -> None:
        raise NotImplementedError

    @staticmethod
    def _add_missing_columns(
        conn: sqlite3.Connection, table: str, columns: dict[str, str],
    ) -> None:
        """Migrate existing DBs: add new columns if missing."""
        existing_cols = {
            row[1] for row in conn.execute(f"PRAGMA table_info({table})").fetchall()
        }
        for name, ddl in columns.items():
            if name not in existing_cols:
                conn.execute(f"ALTER TABLE {table} ADD COLUMN {name} {ddl}")


class PhoneAlreadyLinked(ValueError):
    """Raised when a pending link would take a number verified by someone else."""


# ---------------------------------------------------------------------------
# Users and WhatsApp connections
# ---------------------------------------------------------------------------


class UserDB(_SQLiteDB):
    """Account owners and their phone-number mappings.

    An account has at most one connection. A connection resolves inbound
    messages to its owner only once it is verified.
    """

    def _init_db(self) -> None:
        with self._connect() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS users (
                    id                      INTEGER PRIMARY KEY AUTOINCREMENT,
                    display_name            TEXT NOT NULL,
                    default_grocery_list_id INTEGER,
                    created_at              TEXT NOT NULL
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS whatsapp_connections (
                    phone_number TEXT PRIMARY KEY,
                    user_id      INTEGER NOT NULL,
                    is_verified  INTEGER NOT NULL DEFAULT 0,
                    created_at   TEXT NOT NULL
                )
            """)
            self._add_missing_columns(
                conn, "users", {"default_grocery_list_id": "INTEGER"},
            )
            self._add_missing_columns(conn, "whatsapp_connections", {
                "verification_code": "TEXT",
                "verification_expires_at": "TEXT",
            })
        logger.debug("Users tables initialized at %s", self._db_path)

    @staticmethod
    def _row_to_user(row: sqlite3.Row) -> User:
        return User(
            id=row["id"],
            display_name=row["display_name"],
            default_grocery_list_id=row["default_grocery_list_id"],
            created_at=from_db_time(row["created_at"]),
        )

    @staticmethod
    def _row_to_connection(row: sqlite3.Row) -> WhatsAppConnection:
        return WhatsAppConnection(
            phone_number=row["phone_number"],
            user_id=row["user_id"],
            is_verified=bool(row["is_verified"]),
            verification_code=row["verification_code"],
            verification_expires_at=from_db_time(row["verification_expires_at"]),
        )

    def add_user(self, display_name: str) -> User:
        """Register a new account owner."""
        now = _utcnow()
        with self._connect() as conn:
            cursor = conn.execute(
                "INSERT INTO users (display_name, created_at) VALUES (?, ?)",
                (display_name, to_db_time(now)),
            )
            user_id = cursor.lastrowid
        logger.info("User registered: #%d '%s'", user_id, display_name)
        return User(id=user_id, display_name=display_name, created_at=now)

    def get_user(self, user_id: int) -> User | None:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM users WHERE id = ?", (user_id,)).fetchone()
        if row is None:
            return None
        return self._row_to_user(row)

    def connect_phone(
        self,
        user_id: int,
        phone_number: str,
        is_verified: bool = False,
        verification_code: str | None = None,
        expires_at: datetime | None = None,
    ) -> WhatsAppConnection:
        """Make `phone_number` the user's only connection.

        A pending (unverified) link never displaces a number that another
        user has already verified; that raises PhoneAlreadyLinked.
        """
        from thakirni.adapters.whatsapp_gateway import normalize_phone

        if self.get_user(user_id) is None:
            raise RecordNotFound(f"User {user_id} not found")

        phone = normalize_phone(phone_number)
        with self._connect() as conn:
            cursor = conn.execute(
                """
                INSERT INTO whatsapp_connections
                    (phone_number, user_id, is_verified, verification_code,
                     verification_expires_at, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(phone_number) DO UPDATE SET
                    user_id = excluded.user_id,
                    is_verified = excluded.is_verified,
                    verification_code = excluded.verification_code,
                    verification_expires_at = excluded.verification_expires_at
                WHERE excluded.is_verified = 1
                   OR whatsapp_connections.is_verified = 0
                   OR whatsapp_connections.user_id = excluded.user_id
                """,
                (
                    phone, user_id, int(is_verified), verification_code,
                    to_db_time(expires_at), to_db_time(_utcnow()),
                ),
            )
            if cursor.rowcount == 0:
                raise PhoneAlreadyLinked(f"Phone {phone} is linked to another account")
            conn.execute(
                "DELETE FROM whatsapp_connections WHERE user_id = ? AND phone_number != ?",
                (user_id, phone),
            )
        logger.info("Phone %s linked to user #%d (verified=%s)", phone, user_id, is_verified)
        return WhatsAppConnection(
            phone_number=phone,
            user_id=user_id,
            is_verified=is_verified,
            verification_code=verification_code,
            verification_expires_at=expires_at,
        )

    def get_connection(self, user_id: int) -> WhatsAppConnection | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM whatsapp_connections WHERE user_id = ? "
                "ORDER BY created_at DESC LIMIT 1",
                (user_id,),
            ).fetchone()
        if row is None:
            return None
        return self._row_to_connection(row)

    def verify_connection(self, user_id: int, phone_number: str) -> bool:
        """Mark the user's pending number verified and clear its code."""
        with self._connect() as conn:
            cursor = conn.execute(
                """
                UPDATE whatsapp_connections
                SET is_verified = 1, verification_code = NULL, verification_expires_at = NULL
                WHERE user_id = ? AND phone_number = ?
                """,
                (user_id, phone_number),
            )
        return cursor.rowcount > 0

    def disconnect(self, user_id: int) -> bool:
        with self._connect() as conn:
            cursor = conn.execute(
                "DELETE FROM whatsapp_connections WHERE user_id = ?", (user_id,),
            )
        if cursor.rowcount:
            logger.info("WhatsApp disconnected for user #%d", user_id)
        return cursor.rowcount > 0

    def resolve_user_by_phone(self, phone_number: str) -> int | None:
        """Return the owning user id for a verified phone number, else None."""
        from thakirni.adapters.whatsapp_gateway import normalize_phone

        with self._connect() as conn:
            row = conn.execute(
                "SELECT user_id FROM whatsapp_connections "
                "WHERE phone_number = ? AND is_verified = 1",
                (normalize_phone(phone_number),),
            ).fetchone()
        return row["user_id"] if row else None

    def get_verified_phone(self, user_id: int) -> str | None:
        """Most recently linked verified number for a user."""
        with self._connect() as conn:
            row = conn.execute(
                "SELECT phone_number FROM whatsapp_connections "
                "WHERE user_id = ? AND is_verified = 1 "
                "ORDER BY created_at DESC LIMIT 1",
                (user_id,),
            ).fetchone()
        return row["phone_number"] if row else None

    def set_default_grocery_list(self, user_id: int, list_id: int) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE users SET default_grocery_list_id = ? WHERE id = ?",
                (list_id, user_id),
            )


# ---------------------------------------------------------------------------
# Reminders
# ---------------------------------------------------------------------------


class ReminderDB(_SQLiteDB):
    """One-shot and recurring reminders, advanced by the reminder sweep."""

    def _init_db(self) -> None:
        with self._connect() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS reminders (
                    id                  INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id             INTEGER NOT NULL,
                    title               TEXT    NOT NULL,
                    description         TEXT,
                    reminder_type       TEXT    NOT NULL DEFAULT 'one_time',
                    reminder_time       TEXT    NOT NULL,
                    next_reminder_at    TEXT    NOT NULL,
                    whatsapp_number     TEXT,
                    is_active           INTEGER NOT NULL DEFAULT 1,
                    recurrence_end_date TEXT,
                    last_sent_at        TEXT,
                    created_at          TEXT    NOT NULL
                )
            """)
            self._add_missing_columns(conn, "reminders", {
                "failure_count": "INTEGER NOT NULL DEFAULT 0",
                "needs_review": "INTEGER NOT NULL DEFAULT 0",
            })
        logger.debug("Reminders table initialized at %s", self._db_path)

    @staticmethod
    def _row_to_reminder(row: sqlite3.Row) -> Reminder:
        return Reminder(
            id=row["id"],
            user_id=row["user_id"],
            title=row["title"],
            description=row["description"],
            reminder_type=row["reminder_type"],
            reminder_time=from_db_time(row["reminder_time"]),
            next_reminder_at=from_db_time(row["next_reminder_at"]),
            whatsapp_number=row["whatsapp_number"],
            is_active=bool(row["is_active"]),
            recurrence_end_date=from_db_time(row["recurrence_end_date"]),
            last_sent_at=from_db_time(row["last_sent_at"]),
            failure_count=row["failure_count"],
            needs_review=bool(row["needs_review"]),
        )

    def add_reminder(
        self,
        user_id: int,
        title: str,
        reminder_time: datetime,
        whatsapp_number: str | None = None,
        description: str | None = None,
        reminder_type: str = ONE_TIME,
        recurrence_end_date: datetime | None = None,
    ) -> Reminder:
        """Insert a new active reminder. next_reminder_at starts at the anchor."""
        with self._connect() as conn:
            cursor = conn.execute(
                """
                INSERT INTO reminders
                    (user_id, title, description, reminder_type, reminder_time,
                     next_reminder_at, whatsapp_number, is_active,
                     recurrence_end_date, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, 1, ?, ?)
                """,
                (
                    user_id, title, description, reminder_type,
                    to_db_time(reminder_time), to_db_time(reminder_time),
                    whatsapp_number, to_db_time(recurrence_end_date),
                    to_db_time(_utcnow()),
                ),
            )
            reminder_id = cursor.lastrowid

        logger.info(
            "Reminder added: #%d '%s' (%s) at %s",
            reminder_id, title, reminder_type, reminder_time.isoformat(),
        )
        return Reminder(
            id=reminder_id,
            user_id=user_id,
            title=title,
            description=description,
            reminder_type=reminder_type,
            reminder_time=reminder_time,
            next_reminder_at=reminder_time,
            whatsapp_number=whatsapp_number,
            recurrence_end_date=recurrence_end_date,
        )

    def get_reminder(self, reminder_id: int) -> Reminder | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM reminders WHERE id = ?", (reminder_id,)
            ).fetchone()
        if row is None:
            return None
        return self._row_to_reminder(row)

    def list_active(self, user_id: int, limit: int = 10) -> list[Reminder]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM reminders WHERE user_id = ? AND is_active = 1 "
                "ORDER BY next_reminder_at LIMIT ?",
                (user_id, limit),
            ).fetchall()
        return [self._row_to_reminder(r) for r in rows]

    def get_due(self, now: datetime) -> list[Reminder]:
        """Active, sweepable reminders whose next fire time has arrived."""
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM reminders
                WHERE is_active = 1
                  AND needs_review = 0
                  AND next_reminder_at <= ?
                  AND whatsapp_number IS NOT NULL
                  AND whatsapp_number != ''
                ORDER BY next_reminder_at
                """,
                (to_db_time(now),),
            ).fetchall()
        return [self._row_to_reminder(r) for r in rows]

    def claim_occurrence(
        self,
        reminder: Reminder,
        next_reminder_at: datetime | None,
    ) -> bool:
        """Advance (or deactivate) a due reminder before it is sent.

        The update only applies if the row still holds the next_reminder_at
        that was read, so two overlapping sweeps cannot both claim the same
        occurrence. Passing None deactivates the reminder.
        """
        if next_reminder_at is None:
            new_next, active = reminder.next_reminder_at, 0
        else:
            new_next, active = next_reminder_at, 1

        with self._connect() as conn:
            cursor = conn.execute(
                """
                UPDATE reminders SET next_reminder_at = ?, is_active = ?
                WHERE id = ? AND is_active = 1 AND next_reminder_at = ?
                """,
                (
                    to_db_time(new_next), active,
                    reminder.id, to_db_time(reminder.next_reminder_at),
                ),
            )
        return cursor.rowcount == 1

    def mark_sent(self, reminder_id: int, sent_at: datetime) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE reminders SET last_sent_at = ?, failure_count = 0 WHERE id = ?",
                (to_db_time(sent_at), reminder_id),
            )

    def record_send_failure(
        self, reminder_id: int, retry_at: datetime, max_attempts: int,
    ) -> Reminder | None:
        """Restore a claimed reminder after a failed send.

        The reminder is re-armed for retry_at; once failure_count reaches
        max_attempts it is flagged needs_review and the sweep skips it.
        """
        with self._connect() as conn:
            conn.execute(
                """
                UPDATE reminders SET
                    is_active = 1,
                    next_reminder_at = ?,
                    failure_count = failure_count + 1,
                    needs_review = CASE WHEN failure_count + 1 >= ? THEN 1 ELSE 0 END
                WHERE id = ?
                """,
                (to_db_time(retry_at), max_attempts, reminder_id),
            )
        reminder = self.get_reminder(reminder_id)
        if reminder is not None and reminder.needs_review:
            logger.warning(
                "Reminder #%d failed %d sends, flagged for review",
                reminder_id, reminder.failure_count,
            )
        return reminder

    def complete(self, reminder_id: int, user_id: int) -> bool:
        """Deactivate a reminder owned by user_id."""
        with self._connect() as conn:
            cursor = conn.execute(
                "UPDATE reminders SET is_active = 0 WHERE id = ? AND user_id = ?",
                (reminder_id, user_id),
            )
        return cursor.rowcount > 0

    def snooze(self, reminder_id: int, user_id: int, until: datetime) -> bool:
        """Re-arm a reminder to fire at `until` (also revives a fired one-shot)."""
        with self._connect() as conn:
            cursor = conn.execute(
                """
                UPDATE reminders SET
                    next_reminder_at = ?, is_active = 1,
                    failure_count = 0, needs_review = 0
                WHERE id = ? AND user_id = ?
                """,
                (to_db_time(until), reminder_id, user_id),
            )
        return cursor.rowcount > 0


# ---------------------------------------------------------------------------
# Tasks
# ---------------------------------------------------------------------------


class TaskDB(_SQLiteDB):
    """To-do items with a one-shot WhatsApp due-soon notification."""

    def _init_db(self) -> None:
        with self._connect() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS tasks (
                    id                INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id           INTEGER NOT NULL,
                    title             TEXT    NOT NULL,
                    description       TEXT,
                    due_date          TEXT,
                    priority          TEXT    NOT NULL DEFAULT 'medium',
                    status            TEXT    NOT NULL DEFAULT 'pending',
                    whatsapp_reminder INTEGER NOT NULL DEFAULT 1,
                    created_at        TEXT    NOT NULL
                )
            """)
        logger.debug("Tasks table initialized at %s", self._db_path)

    @staticmethod
    def _row_to_task(row: sqlite3.Row) -> Task:
        return Task(
            id=row["id"],
            user_id=row["user_id"],
            title=row["title"],
            description=row["description"],
            due_date=from_db_time(row["due_date"]),
            priority=row["priority"],
            status=row["status"],
            whatsapp_reminder=bool(row["whatsapp_reminder"]),
            created_at=from_db_time(row["created_at"]),
        )

    def add_task(
        self,
        user_id: int,
        title: str,
        due_date: datetime | None = None,
        description: str | None = None,
        priority: str = "medium",
        whatsapp_reminder: bool = True,
    ) -> Task:
        now = _utcnow()
        with self._connect() as conn:
            cursor = conn.execute(
                """
                INSERT INTO tasks
                    (user_id, title, description, due_date, priority,
                     status, whatsapp_reminder, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    user_id, title, description, to_db_time(due_date), priority,
                    TASK_PENDING, int(whatsapp_reminder), to_db_time(now),
                ),
            )
            task_id = cursor.lastrowid
        logger.info("Task added: #%d '%s' due %s", task_id, title, due_date)
        return Task(
            id=task_id,
            user_id=user_id,
            title=title,
            description=description,
            due_date=due_date,
            priority=priority,
            whatsapp_reminder=whatsapp_reminder,
            created_at=now,
        )

    def get_task(self, task_id: int) -> Task | None:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM tasks WHERE id = ?", (task_id,)).fetchone()
        if row is None:
            return None
        return self._row_to_task(row)

    def list_open(self, user_id: int, limit: int = 10) -> list[Task]:
        """Pending and overdue tasks, dated ones first."""
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM tasks
                WHERE user_id = ? AND status IN (?, ?)
                ORDER BY due_date IS NULL, due_date, id
                LIMIT ?
                """,
                (user_id, TASK_PENDING, TASK_OVERDUE, limit),
            ).fetchall()
        return [self._row_to_task(r) for r in rows]

    def get_due_for_notification(
        self, now: datetime, lookahead: timedelta,
    ) -> list[DueTaskNotice]:
        """Pending, still-armed tasks due within [now, now + lookahead].

        Tasks whose owner has no verified WhatsApp number are left out.
        """
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT t.*,
                       (SELECT c.phone_number FROM whatsapp_connections c
                        WHERE c.user_id = t.user_id AND c.is_verified = 1
                        ORDER BY c.created_at DESC LIMIT 1) AS destination
                FROM tasks t
                WHERE t.status = ?
                  AND t.whatsapp_reminder = 1
                  AND t.due_date IS NOT NULL
                  AND t.due_date >= ?
                  AND t.due_date <= ?
                ORDER BY t.due_date
                """,
                (TASK_PENDING, to_db_time(now), to_db_time(now + lookahead)),
            ).fetchall()
        return [
            DueTaskNotice(task=self._row_to_task(r), phone_number=r["destination"])
            for r in rows
            if r["destination"]
        ]

    def claim_notification(self, task_id: int) -> bool:
        """Flip whatsapp_reminder off; False if another sweep already did."""
        with self._connect() as conn:
            cursor = conn.execute(
                "UPDATE tasks SET whatsapp_reminder = 0 WHERE id = ? AND whatsapp_reminder = 1",
                (task_id,),
            )
        return cursor.rowcount == 1

    def release_notification(self, task_id: int) -> None:
        """Re-arm the notification after a failed send."""
        with self._connect() as conn:
            conn.execute("UPDATE tasks SET whatsapp_reminder = 1 WHERE id = ?", (task_id,))

    def complete(self, task_id: int, user_id: int) -> bool:
        with self._connect() as conn:
            cursor = conn.execute(
                "UPDATE tasks SET status = ?, whatsapp_reminder = 0 WHERE id = ? AND user_id = ?",
                (TASK_COMPLETED, task_id, user_id),
            )
        return cursor.rowcount > 0

    def snooze(self, task_id: int, user_id: int, until: datetime) -> bool:
        """Push the due date to `until` and re-arm the due-soon notification.

        Completed tasks stay completed; a stale snooze button is a no-op.
        """
        with self._connect() as conn:
            cursor = conn.execute(
                """
                UPDATE tasks SET due_date = ?, status = ?, whatsapp_reminder = 1
                WHERE id = ? AND user_id = ? AND status != ?
                """,
                (to_db_time(until), TASK_PENDING, task_id, user_id, TASK_COMPLETED),
            )
        return cursor.rowcount > 0

    def mark_overdue(self, now: datetime) -> int:
        """Move pending tasks whose due date has passed to 'overdue'."""
        with self._connect() as conn:
            cursor = conn.execute(
                """
                UPDATE tasks SET status = ?
                WHERE status = ? AND due_date IS NOT NULL AND due_date < ?
                """,
                (TASK_OVERDUE, TASK_PENDING, to_db_time(now)),
            )
        if cursor.rowcount:
            logger.info("Marked %d task(s) overdue", cursor.rowcount)
        return cursor.rowcount


# ---------------------------------------------------------------------------
# Meetings
# ---------------------------------------------------------------------------


class MeetingDB(_SQLiteDB):
    """Meetings with a one-shot WhatsApp starting-soon notification."""

    def _init_db(self) -> None:
        with self._connect() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS meetings (
                    id                INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id           INTEGER NOT NULL,
                    title             TEXT    NOT NULL,
                    description       TEXT,
                    location          TEXT,
                    meeting_url       TEXT,
                    start_time        TEXT    NOT NULL,
                    status            TEXT    NOT NULL DEFAULT 'scheduled',
                    whatsapp_reminder INTEGER NOT NULL DEFAULT 1,
                    created_at        TEXT    NOT NULL
                )
            """)
        logger.debug("Meetings table initialized at %s", self._db_path)

    @staticmethod
    def _row_to_meeting(row: sqlite3.Row) -> Meeting:
        return Meeting(
            id=row["id"],
            user_id=row["user_id"],
            title=row["title"],
            description=row["description"],
            location=row["location"],
            meeting_url=row["meeting_url"],
            start_time=from_db_time(row["start_time"]),
            status=row["status"],
            whatsapp_reminder=bool(row["whatsapp_reminder"]),
        )

    def add_meeting(
        self,
        user_id: int,
        title: str,
        start_time: datetime,
        description: str | None = None,
        location: str | None = None,
        meeting_url: str | None = None,
        whatsapp_reminder: bool = True,
    ) -> Meeting:
        with self._connect() as conn:
            cursor = conn.execute(
                """
                INSERT INTO meetings
                    (user_id, title, description, location, meeting_url,
                     start_time, status, whatsapp_reminder, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    user_id, title, description, location, meeting_url,
                    to_db_time(start_time), MEETING_SCHEDULED,
                    int(whatsapp_reminder), to_db_time(_utcnow()),
                ),
            )
            meeting_id = cursor.lastrowid
        logger.info("Meeting added: #%d '%s' at %s", meeting_id, title, start_time.isoformat())
        return Meeting(
            id=meeting_id,
            user_id=user_id,
            title=title,
            description=description,
            location=location,
            meeting_url=meeting_url,
            start_time=start_time,
            whatsapp_reminder=whatsapp_reminder,
        )

    def get_meeting(self, meeting_id: int) -> Meeting | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM meetings WHERE id = ?", (meeting_id,)
            ).fetchone()
        if row is None:
            return None
        return self._row_to_meeting(row)

    def get_due_for_notification(
        self, now: datetime, lookahead: timedelta,
    ) -> list[DueMeetingNotice]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT m.*,
                       (SELECT c.phone_number FROM whatsapp_connections c
                        WHERE c.user_id = m.user_id AND c.is_verified = 1
                        ORDER BY c.created_at DESC LIMIT 1) AS destination
                FROM meetings m
                WHERE m.whatsapp_reminder = 1
                  AND m.start_time >= ?
                  AND m.start_time <= ?
                ORDER BY m.start_time
                """,
                (to_db_time(now), to_db_time(now + lookahead)),
            ).fetchall()
        return [
            DueMeetingNotice(meeting=self._row_to_meeting(r), phone_number=r["destination"])
            for r in rows
            if r["destination"]
        ]

    def claim_notification(self, meeting_id: int) -> bool:
        with self._connect() as conn:
            cursor = conn.execute(
                "UPDATE meetings SET whatsapp_reminder = 0 WHERE id = ? AND whatsapp_reminder = 1",
                (meeting_id,),
            )
        return cursor.rowcount == 1

    def release_notification(self, meeting_id: int) -> None:
        with self._connect() as conn:
            conn.execute("UPDATE meetings SET whatsapp_reminder = 1 WHERE id = ?", (meeting_id,))

    def confirm(self, meeting_id: int, user_id: int) -> bool:
        with self._connect() as conn:
            cursor = conn.execute(
                "UPDATE meetings SET status = ? WHERE id = ? AND user_id = ?",
                (MEETING_CONFIRMED, meeting_id, user_id),
            )
        return cursor.rowcount > 0

    def delete(self, meeting_id: int, user_id: int) -> bool:
        """Permanently delete a meeting owned by user_id."""
        with self._connect() as conn:
            cursor = conn.execute(
                "DELETE FROM meetings WHERE id = ? AND user_id = ?",
                (meeting_id, user_id),
            )
        deleted = cursor.rowcount > 0
        if deleted:
            logger.info("Meeting #%d deleted", meeting_id)
        return deleted


# ---------------------------------------------------------------------------
# Grocery lists
# ---------------------------------------------------------------------------


class GroceryDB(_SQLiteDB):
    """Grocery lists and their items."""

    def _init_db(self) -> None:
        with self._connect() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS grocery_lists (
                    id         INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id    INTEGER NOT NULL,
                    name       TEXT    NOT NULL,
                    created_at TEXT    NOT NULL
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS grocery_items (
                    id         INTEGER PRIMARY KEY AUTOINCREMENT,
                    list_id    INTEGER NOT NULL,
                    name       TEXT    NOT NULL,
                    quantity   REAL    NOT NULL DEFAULT 1,
                    unit       TEXT,
                    is_checked INTEGER NOT NULL DEFAULT 0,
                    added_via  TEXT    NOT NULL DEFAULT 'whatsapp',
                    created_at TEXT    NOT NULL
                )
            """)
        logger.debug("Grocery tables initialized at %s", self._db_path)

    @staticmethod
    def _row_to_list(row: sqlite3.Row) -> GroceryList:
        return GroceryList(
            id=row["id"],
            user_id=row["user_id"],
            name=row["name"],
            created_at=from_db_time(row["created_at"]),
        )

    @staticmethod
    def _row_to_item(row: sqlite3.Row) -> GroceryItem:
        return GroceryItem(
            id=row["id"],
            list_id=row["list_id"],
            name=row["name"],
            quantity=row["quantity"],
            unit=row["unit"],
            is_checked=bool(row["is_checked"]),
            added_via=row["added_via"],
        )

    def create_list(self, user_id: int, name: str) -> GroceryList:
        now = _utcnow()
        with self._connect() as conn:
            cursor = conn.execute(
                "INSERT INTO grocery_lists (user_id, name, created_at) VALUES (?, ?, ?)",
                (user_id, name, to_db_time(now)),
            )
            list_id = cursor.lastrowid
        logger.info("Grocery list created: #%d '%s' for user #%d", list_id, name, user_id)
        return GroceryList(id=list_id, user_id=user_id, name=name, created_at=now)

    def get_list(self, list_id: int, user_id: int) -> GroceryList | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM grocery_lists WHERE id = ? AND user_id = ?",
                (list_id, user_id),
            ).fetchone()
        if row is None:
            return None
        return self._row_to_list(row)

    def latest_list(self, user_id: int) -> GroceryList | None:
        """Most recently created list for a user."""
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM grocery_lists WHERE user_id = ? "
                "ORDER BY created_at DESC, id DESC LIMIT 1",
                (user_id,),
            ).fetchone()
        if row is None:
            return None
        return self._row_to_list(row)

    def add_item(
        self,
        list_id: int,
        name: str,
        quantity: float = 1,
        unit: str | None = None,
        added_via: str = "whatsapp",
    ) -> GroceryItem:
        with self._connect() as conn:
            cursor = conn.execute(
                """
                INSERT INTO grocery_items
                    (list_id, name, quantity, unit, is_checked, added_via, created_at)
                VALUES (?, ?, ?, ?, 0, ?, ?)
                """,
                (list_id, name, quantity, unit, added_via, to_db_time(_utcnow())),
            )
            item_id = cursor.lastrowid
        logger.info("Grocery item added: #%d '%s' x%s to list #%d", item_id, name, quantity, list_id)
        return GroceryItem(
            id=item_id, list_id=list_id, name=name,
            quantity=quantity, unit=unit, added_via=added_via,
        )

    def check_items(self, list_id: int, name_fragment: str) -> int:
        """Check every item whose name contains name_fragment (case-insensitive).

        All matches are checked, not just the first. Returns the match count.
        """
        needle = name_fragment.strip().casefold()
        if not needle:
            return 0

        with self._connect() as conn:
            rows = conn.execute(
                "SELECT id, name FROM grocery_items WHERE list_id = ?", (list_id,)
            ).fetchall()
            matched = [r["id"] for r in rows if needle in r["name"].casefold()]
            conn.executemany(
                "UPDATE grocery_items SET is_checked = 1 WHERE id = ?",
                [(item_id,) for item_id in matched],
            )
        logger.info("Checked %d item(s) matching '%s' on list #%d", len(matched), name_fragment, list_id)
        return len(matched)

    def list_items(self, list_id: int) -> list[GroceryItem]:
        """Items of a list, unchecked first."""
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM grocery_items WHERE list_id = ? ORDER BY is_checked, id",
                (list_id,),
            ).fetchall()
        return [self._row_to_item(r) for r in rows]


# ---------------------------------------------------------------------------
# WhatsApp message audit log
# ---------------------------------------------------------------------------


class MessageLogDB(_SQLiteDB):
    """Append-only audit log of bot traffic."""

    def _init_db(self) -> None:
        with self._connect() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS whatsapp_messages (
                    id                  INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id             INTEGER,
                    phone_number        TEXT NOT NULL,
                    direction           TEXT NOT NULL,
                    message_type        TEXT NOT NULL,
                    content             TEXT NOT NULL,
                    whatsapp_message_id TEXT,
                    parsed_intent       TEXT,
                    created_at          TEXT NOT NULL
                )
            """)
        logger.debug("Message log table initialized at %s", self._db_path)

    @staticmethod
    def _row_to_log(row: sqlite3.Row) -> MessageLog:
        return MessageLog(
            id=row["id"],
            user_id=row["user_id"],
            phone_number=row["phone_number"],
            direction=row["direction"],
            message_type=row["message_type"],
            content=row["content"],
            whatsapp_message_id=row["whatsapp_message_id"],
            parsed_intent=row["parsed_intent"],
            created_at=from_db_time(row["created_at"]),
        )

    def _insert(self, **values: object) -> None:
        values["created_at"] = to_db_time(_utcnow())
        columns = ", ".join(values)
        placeholders = ", ".join("?" for _ in values)
        with self._connect() as conn:
            conn.execute(
                f"INSERT INTO whatsapp_messages ({columns}) VALUES ({placeholders})",
                tuple(values.values()),
            )

    def log_incoming(
        self,
        phone_number: str,
        message_type: str,
        content: str,
        whatsapp_message_id: str | None = None,
        user_id: int | None = None,
    ) -> None:
        self._insert(
            user_id=user_id,
            phone_number=phone_number,
            direction="incoming",
            message_type=message_type,
            content=content,
            whatsapp_message_id=whatsapp_message_id,
        )

    def log_outgoing(
        self,
        phone_number: str,
        parsed_intent: str,
        user_id: int | None = None,
        message_type: str = "text",
    ) -> None:
        self._insert(
            user_id=user_id,
            phone_number=phone_number,
            direction="outgoing",
            message_type=message_type,
            content=f"[Response to: {parsed_intent}]",
            parsed_intent=parsed_intent,
        )

    def list_for_phone(self, phone_number: str) -> list[MessageLog]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM whatsapp_messages WHERE phone_number = ? ORDER BY id",
                (phone_number,),
            ).fetchall()
        return [self._row_to_log(r) for r in rows]


# ---------------------------------------------------------------------------
# Store bundle
# ---------------------------------------------------------------------------


class Store:
    """All table classes over a single database file."""

    def __init__(self, db_path: str | None = None) -> None:
        self.users = UserDB(db_path)
        self.reminders = ReminderDB(db_path)
        self.tasks = TaskDB(db_path)
        self.meetings = MeetingDB(db_path)
        self.groceries = GroceryDB(db_path)
        self.messages = MessageLogDB(db_path)

    def resolve_default_list(
        self, user_id: int, default_name: str, create: bool = True,
    ) -> GroceryList | None:
        """Return the user's default grocery list.

        Uses the explicit users.default_grocery_list_id pointer. Accounts
        that predate the pointer fall back to their most recent list, and
        users with no list get a new one when `create` is set. The pointer
        is recorded in every case so the lookup is not re-derived.
        """
        user = self.users.get_user(user_id)
        if user is None:
            raise RecordNotFound(f"User {user_id} not found")

        if user.default_grocery_list_id is not None:
            current = self.groceries.get_list(user.default_grocery_list_id, user_id)
            if current is not None:
                return current

        grocery_list = self.groceries.latest_list(user_id)
        if grocery_list is None:
            if not create:
                return None
            grocery_list = self.groceries.create_list(user_id, default_name)

        self.users.set_default_grocery_list(user_id, grocery_list.id)
        return grocery_list
