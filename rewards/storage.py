"""
Persistence collaborators for users, surveys and ledger entries.

Both backends expose the same operations. The ledger relation is
append-only and ``commit_entry`` applies the entry and the cached user
balance as a single unit.
"""

import logging
import sqlite3
import threading
from contextlib import contextmanager
from decimal import Decimal
from typing import Iterator, Optional
from uuid import UUID

from .models import LedgerEntry, Survey, User

logger = logging.getLogger(__name__)


class StorageError(Exception):
    pass


class DuplicateKeyError(StorageError):
    pass


class InMemoryStorage:
    def __init__(self):
        self.users: dict[UUID, dict] = {}
        self.surveys: dict[UUID, dict] = {}
        self.ledger_entries: dict[UUID, dict] = {}
        self.email_index: dict[str, UUID] = {}
        self._lock = threading.RLock()

    def insert_user(self, user: User) -> None:
        with self._lock:
            if user.email in self.email_index:
                raise DuplicateKeyError(f"Email {user.email} already stored")
            self.users[user.id] = user.model_dump()
            self.email_index[user.email] = user.id

    def get_user(self, user_id: UUID) -> Optional[User]:
        data = self.users.get(user_id)
        return User(**data) if data else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        user_id = self.email_index.get(email)
        return self.get_user(user_id) if user_id else None

    def count_surveys(self) -> int:
        return len(self.surveys)

    def insert_survey(self, survey: Survey) -> None:
        with self._lock:
            self.surveys[survey.id] = survey.model_dump()

    def get_survey(self, survey_id: UUID) -> Optional[Survey]:
        data = self.surveys.get(survey_id)
        return Survey(**data) if data else None

    def list_surveys(self, active_only: bool = True) -> list[Survey]:
        return [
            Survey(**s) for s in self.surveys.values()
            if s["active"] or not active_only
        ]

    def commit_entry(self, entry: LedgerEntry, new_balance: Decimal) -> None:
        with self._lock:
            user_data = self.users.get(entry.user_id)
            if user_data is None:
                raise StorageError(f"User {entry.user_id} not found")
            if entry.id in self.ledger_entries:
                raise DuplicateKeyError(f"Ledger entry {entry.id} already stored")
            self.ledger_entries[entry.id] = entry.model_dump()
            user_data["balance"] = new_balance

    def list_entries(self, user_id: UUID) -> list[LedgerEntry]:
        return [
            LedgerEntry(**e) for e in self.ledger_entries.values()
            if e["user_id"] == user_id
        ]

    def close(self) -> None:
        pass


_SQL_SCHEMA = """
CREATE TABLE IF NOT EXISTS users(
  id TEXT PRIMARY KEY,
  name TEXT NOT NULL,
  email TEXT UNIQUE NOT NULL,
  password_hash TEXT NOT NULL,
  balance TEXT NOT NULL DEFAULT '0.00',
  created_at TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS surveys(
  id TEXT PRIMARY KEY,
  title TEXT NOT NULL,
  length INTEGER NOT NULL,
  reward TEXT NOT NULL,
  country TEXT,
  category TEXT,
  active INTEGER NOT NULL DEFAULT 1
);
CREATE TABLE IF NOT EXISTS attempts(
  id TEXT PRIMARY KEY,
  user_id TEXT NOT NULL,
  survey_id TEXT,
  status TEXT NOT NULL,
  amount TEXT NOT NULL DEFAULT '0.00',
  at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_attempts_user ON attempts(user_id);
"""


class SQLiteStorage:
    """
    sqlite3-backed storage.

    A single shared connection guarded by a re-entrant lock. Writes run in
    IMMEDIATE transactions and roll back on any exception. Money columns
    hold decimal text so values round-trip without float drift.
    """

    def __init__(self, path: str = "data.db"):
        self._path = path
        self._g = threading.RLock()
        self._conn = sqlite3.connect(
            self._path,
            check_same_thread=False,
            isolation_level=None,
        )
        self._conn.row_factory = sqlite3.Row
        if path != ":memory:":
            self._conn.execute("PRAGMA journal_mode=WAL;")
        self._conn.executescript(_SQL_SCHEMA)
        logger.debug("SQLite storage ready at %s", path)

    @contextmanager
    def tx(self) -> Iterator[sqlite3.Connection]:
        with self._g:
            self._conn.execute("BEGIN IMMEDIATE;")
            try:
                yield self._conn
            except BaseException:
                self._conn.execute("ROLLBACK;")
                raise
            else:
                self._conn.execute("COMMIT;")

    def _query_one(self, sql: str, params: tuple) -> Optional[dict]:
        with self._g:
            row = self._conn.execute(sql, params).fetchone()
        return dict(row) if row else None

    def _query_all(self, sql: str, params: tuple = ()) -> list[dict]:
        with self._g:
            rows = self._conn.execute(sql, params).fetchall()
        return [dict(r) for r in rows]

    def insert_user(self, user: User) -> None:
        try:
            with self.tx() as conn:
                conn.execute(
                    "INSERT INTO users (id,name,email,password_hash,balance,created_at) "
                    "VALUES (?,?,?,?,?,?)",
                    (str(user.id), user.name, user.email, user.password_hash,
                     str(user.balance), user.created_at.isoformat()),
                )
        except sqlite3.IntegrityError as e:
            raise DuplicateKeyError(f"Email {user.email} already stored") from e

    def get_user(self, user_id: UUID) -> Optional[User]:
        row = self._query_one("SELECT * FROM users WHERE id = ?", (str(user_id),))
        return User(**row) if row else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        row = self._query_one("SELECT * FROM users WHERE email = ?", (email,))
        return User(**row) if row else None

    def count_surveys(self) -> int:
        row = self._query_one("SELECT COUNT(*) AS c FROM surveys", ())
        return row["c"]

    def insert_survey(self, survey: Survey) -> None:
        with self.tx() as conn:
            conn.execute(
                "INSERT INTO surveys (id,title,length,reward,country,category,active) "
                "VALUES (?,?,?,?,?,?,?)",
                (str(survey.id), survey.title, survey.length, str(survey.reward),
                 survey.country, survey.category, int(survey.active)),
            )

    def get_survey(self, survey_id: UUID) -> Optional[Survey]:
        row = self._query_one("SELECT * FROM surveys WHERE id = ?", (str(survey_id),))
        return Survey(**row) if row else None

    def list_surveys(self, active_only: bool = True) -> list[Survey]:
        sql = "SELECT * FROM surveys"
        if active_only:
            sql += " WHERE active = 1"
        return [Survey(**row) for row in self._query_all(sql + " ORDER BY rowid")]

    def commit_entry(self, entry: LedgerEntry, new_balance: Decimal) -> None:
        try:
            with self.tx() as conn:
                conn.execute(
                    "INSERT INTO attempts (id,user_id,survey_id,status,amount,at) "
                    "VALUES (?,?,?,?,?,?)",
                    (str(entry.id), str(entry.user_id),
                     str(entry.survey_id) if entry.survey_id else None,
                     entry.kind.value, str(entry.amount), entry.at.isoformat()),
                )
                cur = conn.execute(
                    "UPDATE users SET balance = ? WHERE id = ?",
                    (str(new_balance), str(entry.user_id)),
                )
                if cur.rowcount != 1:
                    raise StorageError(f"User {entry.user_id} not found")
        except sqlite3.IntegrityError as e:
            raise DuplicateKeyError(f"Ledger entry {entry.id} already stored") from e

    def list_entries(self, user_id: UUID) -> list[LedgerEntry]:
        rows = self._query_all(
            "SELECT * FROM attempts WHERE user_id = ? ORDER BY rowid", (str(user_id),)
        )
        return [
            LedgerEntry(
                id=r["id"], user_id=r["user_id"], kind=r["status"],
                amount=r["amount"], survey_id=r["survey_id"], at=r["at"],
            )
            for r in rows
        ]

    def close(self) -> None:
        with self._g:
            self._conn.close()


def create_storage(database_url: str):
    if database_url == ":memory:":
        return InMemoryStorage()
    return SQLiteStorage(database_url)
