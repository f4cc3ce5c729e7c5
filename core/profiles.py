import logging
import re
import sqlite3
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional

from .errors import NotFoundError, ValidationError

log = logging.getLogger(__name__)

CHAT_SUFFIX = "@c.us"
_PHONE_NOISE = re.compile(r"[\s\-\(\)\.+]")
_PROFILE_FIELDS = ("display_name", "email", "wallet", "wallet_funded")


class Mode(str, Enum):
    ONBOARDING = "onboarding"
    OPERATIONAL = "operational"


@dataclass(frozen=True)
class WalletRef:
    address: str
    secret: str = field(repr=False)


@dataclass
class UserProfile:
    handle: str
    display_name: str = ""
    email: str = ""
    wallet: Optional[WalletRef] = None
    wallet_funded: bool = False
    created_at: float = 0.0
    updated_at: float = 0.0


def is_onboarded(profile: Optional[UserProfile]) -> bool:
    if profile is None:
        return False
    name = (profile.display_name or "").strip()
    email = (profile.email or "").strip()
    return bool(name and email)


def next_mode(profile: Optional[UserProfile]) -> Mode:
    return Mode.OPERATIONAL if is_onboarded(profile) else Mode.ONBOARDING


def normalize_handle(raw: Any) -> str:
    """Map a phone number or chat id to the transport handle format."""
    value = str(raw or "").strip()
    if not value:
        return ""
    if "@" in value:
        return value.lower()
    digits = _PHONE_NOISE.sub("", value)
    if not digits.isdigit():
        raise ValidationError(f"not a phone number: {value!r}")
    return f"{digits}{CHAT_SUFFIX}"


class ProfileStore:
    """sqlite-backed persistence for chat participants and their wallets."""

    def __init__(self, db_path: str = "wapa.db"):
        self.conn = sqlite3.connect(db_path, check_same_thread=False)
        self.conn.row_factory = sqlite3.Row
        self._lock = threading.Lock()
        self._init_db()

    def _init_db(self) -> None:
        with self.conn:
            self.conn.execute(
                """
                CREATE TABLE IF NOT EXISTS user_profiles (
                  handle TEXT PRIMARY KEY,
                  display_name TEXT NOT NULL DEFAULT '',
                  email TEXT NOT NULL DEFAULT '',
                  wallet_address TEXT,
                  wallet_secret TEXT,
                  wallet_funded INTEGER NOT NULL DEFAULT 0,
                  created_at REAL NOT NULL,
                  updated_at REAL NOT NULL
                )
                """
            )
            try:
                self.conn.execute(
                    "ALTER TABLE user_profiles ADD COLUMN wallet_funded INTEGER NOT NULL DEFAULT 0"
                )
            except sqlite3.OperationalError:
                pass

    @staticmethod
    def _from_row(row: sqlite3.Row) -> UserProfile:
        wallet = None
        if row["wallet_address"]:
            wallet = WalletRef(address=row["wallet_address"], secret=row["wallet_secret"] or "")
        return UserProfile(
            handle=row["handle"],
            display_name=row["display_name"] or "",
            email=row["email"] or "",
            wallet=wallet,
            wallet_funded=bool(row["wallet_funded"]),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    @staticmethod
    def _columns(fields: Dict[str, Any]) -> Dict[str, Any]:
        unknown = set(fields) - set(_PROFILE_FIELDS)
        if unknown:
            raise ValueError(f"unknown profile fields: {sorted(unknown)}")
        columns: Dict[str, Any] = {}
        for key, value in fields.items():
            if key == "wallet":
                columns["wallet_address"] = value.address if value else None
                columns["wallet_secret"] = value.secret if value else None
            elif key == "wallet_funded":
                columns[key] = 1 if value else 0
            else:
                columns[key] = str(value or "").strip()
        return columns

    def find_profile(self, handle: str) -> Optional[UserProfile]:
        cur = self.conn.execute("SELECT * FROM user_profiles WHERE handle=?", (handle,))
        row = cur.fetchone()
        return self._from_row(row) if row else None

    def create_profile(self, handle: str, **fields: Any) -> UserProfile:
        if not handle:
            raise ValidationError("profile handle is required")
        columns = self._columns(fields)
        now = time.time()
        columns.update(handle=handle, created_at=now, updated_at=now)
        names = ", ".join(columns)
        marks = ", ".join("?" for _ in columns)
        with self._lock, self.conn:
            self.conn.execute(
                f"INSERT OR IGNORE INTO user_profiles({names}) VALUES({marks})",
                tuple(columns.values()),
            )
        log.info("Profile created for %s", handle)
        return self._require(handle)

    def update_profile(self, handle: str, **fields: Any) -> UserProfile:
        columns = self._columns(fields)
        if not columns:
            return self._require(handle)
        columns["updated_at"] = time.time()
        assignments = ", ".join(f"{name}=?" for name in columns)
        with self._lock, self.conn:
            cur = self.conn.execute(
                f"UPDATE user_profiles SET {assignments} WHERE handle=?",
                (*columns.values(), handle),
            )
        if cur.rowcount == 0:
            raise NotFoundError(f"no profile for {handle}")
        return self._require(handle)

    def _require(self, handle: str) -> UserProfile:
        profile = self.find_profile(handle)
        if profile is None:
            raise NotFoundError(f"no profile for {handle}")
        return profile

    def find_or_create(self, handle: str) -> UserProfile:
        return self.find_profile(handle) or self.create_profile(handle)

    def close(self) -> None:
        self.conn.close()
