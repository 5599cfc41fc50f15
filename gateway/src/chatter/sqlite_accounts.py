from __future__ import annotations

import sqlite3

from .accounts import AccountRecord, _validate_registration, hash_password, verify_password
from .errors import AccountExists, InvalidRequest, UnknownAccount
from .sqlite_backend import SQLiteBackend

_COLUMNS = "user_id, username, password_hash, profile_pic, is_admin"


def _row_to_record(row: sqlite3.Row, contacts: list[str] | None = None) -> AccountRecord:
    return AccountRecord(
        user_id=row[0],
        username=row[1],
        password_hash=row[2],
        profile_pic=row[3],
        is_admin=bool(row[4]),
        contacts=contacts or [],
    )


class SQLiteAccountStore:
    """Durable account records and contact lists backed by SQLite."""

    def __init__(self, backend: SQLiteBackend) -> None:
        self._backend = backend

    def _fetch(self, user_id: str) -> AccountRecord | None:
        conn = self._backend.connection
        row = conn.execute(f"SELECT {_COLUMNS} FROM accounts WHERE user_id=?", (user_id,)).fetchone()
        if row is None:
            return None
        contacts = [
            r[0]
            for r in conn.execute(
                "SELECT contact_id FROM contacts WHERE owner_id=? ORDER BY contact_id ASC", (user_id,)
            ).fetchall()
        ]
        return _row_to_record(row, contacts)

    def _require(self, user_id: str) -> AccountRecord:
        record = self._fetch(user_id)
        if record is None:
            raise UnknownAccount(user_id)
        return record

    def get_user(self, user_id: str) -> AccountRecord | None:
        with self._backend.lock:
            return self._fetch(user_id)

    def list_users(self) -> list[AccountRecord]:
        with self._backend.lock:
            user_ids = [
                row[0]
                for row in self._backend.connection.execute(
                    "SELECT user_id FROM accounts ORDER BY user_id ASC"
                ).fetchall()
            ]
            return [self._require(user_id) for user_id in user_ids]

    def identity_exists(self, user_id: str) -> bool:
        with self._backend.lock:
            row = self._backend.connection.execute(
                "SELECT 1 FROM accounts WHERE user_id=?", (user_id,)
            ).fetchone()
        return row is not None

    def register(self, user_id: str, username: str, password: str) -> AccountRecord:
        _validate_registration(user_id, username, password)
        password_hash = hash_password(password)
        with self._backend.lock:
            try:
                self._backend.connection.execute(
                    "INSERT INTO accounts (user_id, username, password_hash) VALUES (?, ?, ?)",
                    (user_id, username, password_hash),
                )
            except sqlite3.IntegrityError as exc:
                raise AccountExists(user_id) from exc
        return AccountRecord(user_id=user_id, username=username, password_hash=password_hash)

    def authenticate(self, user_id: str, password: str) -> AccountRecord | None:
        record = self.get_user(user_id)
        if record is None or not verify_password(record.password_hash, password):
            return None
        return record

    def add_contact(self, owner_id: str, contact_id: str) -> AccountRecord:
        with self._backend.lock:
            self._require(owner_id)
            contact = self._require(contact_id)
            self._backend.connection.execute(
                "INSERT OR IGNORE INTO contacts (owner_id, contact_id) VALUES (?, ?)",
                (owner_id, contact_id),
            )
        return contact

    def list_contacts(self, owner_id: str) -> list[AccountRecord]:
        with self._backend.lock:
            rows = self._backend.connection.execute(
                """
                SELECT a.user_id, a.username, a.password_hash, a.profile_pic, a.is_admin
                FROM contacts c JOIN accounts a ON a.user_id = c.contact_id
                WHERE c.owner_id=?
                ORDER BY a.user_id ASC
                """,
                (owner_id,),
            ).fetchall()
        return [_row_to_record(row) for row in rows]

    def delete_user(self, user_id: str) -> AccountRecord:
        """Remove an account; ``ON DELETE CASCADE`` drops it from every contact list."""

        with self._backend.lock:
            record = self._require(user_id)
            self._backend.connection.execute("DELETE FROM accounts WHERE user_id=?", (user_id,))
        return record

    def set_admin(self, user_id: str, is_admin: bool = True) -> AccountRecord:
        with self._backend.lock:
            self._require(user_id)
            self._backend.connection.execute(
                "UPDATE accounts SET is_admin=? WHERE user_id=?", (int(is_admin), user_id)
            )
            return self._require(user_id)

    def update_profile(
        self, user_id: str, *, username: str | None = None, profile_pic: str | None = None
    ) -> AccountRecord:
        if username is not None and not username:
            raise InvalidRequest("username must not be empty")
        with self._backend.lock:
            conn = self._backend.connection
            self._require(user_id)
            if username is not None:
                conn.execute("UPDATE accounts SET username=? WHERE user_id=?", (username, user_id))
            if profile_pic is not None:
                conn.execute("UPDATE accounts SET profile_pic=? WHERE user_id=?", (profile_pic, user_id))
            return self._require(user_id)
