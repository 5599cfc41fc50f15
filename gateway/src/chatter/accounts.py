from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Dict, List, Protocol, Set

from argon2 import PasswordHasher
from argon2.exceptions import InvalidHashError, VerificationError

from .errors import AccountExists, InvalidRequest, UnknownAccount

PASSWORD_HASHER = PasswordHasher()


def hash_password(password: str) -> str:
    return PASSWORD_HASHER.hash(password)


def verify_password(password_hash: str, password: str) -> bool:
    try:
        return PASSWORD_HASHER.verify(password_hash, password)
    except (VerificationError, InvalidHashError):
        return False


@dataclass
class AccountRecord:
    user_id: str
    username: str
    password_hash: str
    profile_pic: str = ""
    is_admin: bool = False
    contacts: List[str] = field(default_factory=list)

    def public(self) -> dict:
        return {"user_id": self.user_id, "username": self.username, "profile_pic": self.profile_pic}


class AccountStore(Protocol):
    def get_user(self, user_id: str) -> AccountRecord | None:
        ...

    def list_users(self) -> List[AccountRecord]:
        ...

    def identity_exists(self, user_id: str) -> bool:
        ...

    def register(self, user_id: str, username: str, password: str) -> AccountRecord:
        ...

    def authenticate(self, user_id: str, password: str) -> AccountRecord | None:
        ...

    def add_contact(self, owner_id: str, contact_id: str) -> AccountRecord:
        ...

    def list_contacts(self, owner_id: str) -> List[AccountRecord]:
        ...

    def delete_user(self, user_id: str) -> AccountRecord:
        ...

    def set_admin(self, user_id: str, is_admin: bool = True) -> AccountRecord:
        ...

    def update_profile(
        self, user_id: str, *, username: str | None = None, profile_pic: str | None = None
    ) -> AccountRecord:
        ...


def _validate_registration(user_id: str, username: str, password: str) -> None:
    if not user_id or not username or not password:
        raise InvalidRequest("user_id, username and password required")


class InMemoryAccountStore:
    """Account records and contact lists kept in process memory.

    Records handed out are copies; the stored records change only through
    the store's own methods.
    """

    def __init__(self) -> None:
        self._accounts: Dict[str, AccountRecord] = {}
        self._contacts: Dict[str, Set[str]] = {}

    def _with_contacts(self, record: AccountRecord) -> AccountRecord:
        return replace(record, contacts=sorted(self._contacts.get(record.user_id, set())))

    def _require(self, user_id: str) -> AccountRecord:
        record = self._accounts.get(user_id)
        if record is None:
            raise UnknownAccount(user_id)
        return record

    def get_user(self, user_id: str) -> AccountRecord | None:
        record = self._accounts.get(user_id)
        if record is None:
            return None
        return self._with_contacts(record)

    def list_users(self) -> List[AccountRecord]:
        return [self._with_contacts(self._accounts[user_id]) for user_id in sorted(self._accounts)]

    def identity_exists(self, user_id: str) -> bool:
        return user_id in self._accounts

    def register(self, user_id: str, username: str, password: str) -> AccountRecord:
        _validate_registration(user_id, username, password)
        if user_id in self._accounts:
            raise AccountExists(user_id)
        record = AccountRecord(user_id=user_id, username=username, password_hash=hash_password(password))
        self._accounts[user_id] = record
        self._contacts[user_id] = set()
        return self._with_contacts(record)

    def authenticate(self, user_id: str, password: str) -> AccountRecord | None:
        record = self._accounts.get(user_id)
        if record is None or not verify_password(record.password_hash, password):
            return None
        return self._with_contacts(record)

    def add_contact(self, owner_id: str, contact_id: str) -> AccountRecord:
        self._require(owner_id)
        contact = self._require(contact_id)
        self._contacts.setdefault(owner_id, set()).add(contact_id)
        return self._with_contacts(contact)

    def list_contacts(self, owner_id: str) -> List[AccountRecord]:
        return [
            self._with_contacts(self._accounts[contact_id])
            for contact_id in sorted(self._contacts.get(owner_id, set()))
            if contact_id in self._accounts
        ]

    def delete_user(self, user_id: str) -> AccountRecord:
        """Remove an account and drop it from every other account's contacts."""

        record = self._with_contacts(self._require(user_id))
        del self._accounts[user_id]
        self._contacts.pop(user_id, None)
        for contacts in self._contacts.values():
            contacts.discard(user_id)
        return record

    def set_admin(self, user_id: str, is_admin: bool = True) -> AccountRecord:
        record = self._require(user_id)
        record.is_admin = is_admin
        return self._with_contacts(record)

    def update_profile(
        self, user_id: str, *, username: str | None = None, profile_pic: str | None = None
    ) -> AccountRecord:
        record = self._require(user_id)
        if username is not None:
            if not username:
                raise InvalidRequest("username must not be empty")
            record.username = username
        if profile_pic is not None:
            record.profile_pic = profile_pic
        return self._with_contacts(record)


def ensure_admin(accounts: AccountStore, user_id: str, password: str) -> AccountRecord:
    """Make sure ``user_id`` exists and carries the admin flag.

    A missing account is registered with ``password`` under the username
    ``admin``; an existing one keeps its password and profile.
    """

    if not accounts.identity_exists(user_id):
        accounts.register(user_id, "admin", password)
    return accounts.set_admin(user_id, True)
