"""
tollgate_users.py: user lookup for the Tollgate login step.

The authorization server only needs one capability from the user store:
find a user by identifier (email) and check a password. Users are read
from a YAML file (see users.example.yaml) with argon2 password hashes.
"""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

import yaml
from argon2 import PasswordHasher
from argon2.exceptions import InvalidHashError, VerificationError

logger = logging.getLogger("tollgate-users")

_hasher = PasswordHasher()

# Spent on unknown users so lookups take the same time either way.
_DUMMY_HASH = _hasher.hash("tollgate-dummy-password")


@dataclass(frozen=True)
class UserRecord:
    identifier: str
    password_hash: str
    display_name: str = ""


class UserDirectory(Protocol):
    def lookup(self, identifier: str) -> UserRecord | None: ...


def hash_password(password: str) -> str:
    return _hasher.hash(password)


def verify_credentials(directory: UserDirectory, identifier: str, password: str) -> UserRecord | None:
    """Return the user when ``password`` matches, else None."""
    user = directory.lookup(identifier)
    try:
        _hasher.verify(user.password_hash if user else _DUMMY_HASH, password)
    except (VerificationError, InvalidHashError):
        return None
    return user


class InMemoryUserDirectory:
    def __init__(self, users: dict[str, UserRecord] | None = None):
        self._users = dict(users or {})

    def add(self, identifier: str, password: str, display_name: str = "") -> UserRecord:
        user = UserRecord(identifier.lower(), hash_password(password), display_name)
        self._users[user.identifier] = user
        return user

    def lookup(self, identifier: str) -> UserRecord | None:
        return self._users.get(identifier.strip().lower())

    def __len__(self) -> int:
        return len(self._users)


def load_users(config_path: Path) -> InMemoryUserDirectory:
    """Load the user directory from users.yaml."""
    if not config_path.exists():
        example = Path(__file__).parent / "users.example.yaml"
        msg = f"User file not found: {config_path}"
        if example.exists():
            msg += f"\n  Copy the example:  cp {example} {config_path}"
        raise SystemExit(msg)

    with open(config_path) as f:
        raw = yaml.safe_load(f)

    if not isinstance(raw, dict) or not isinstance(raw.get("users"), dict):
        raise SystemExit(f"Invalid users file: expected top-level 'users' mapping in {config_path}")

    users: dict[str, UserRecord] = {}
    for identifier, cfg in raw["users"].items():
        if not isinstance(cfg, dict) or not cfg.get("password_hash"):
            raise SystemExit(f"Invalid user '{identifier}' in {config_path}: 'password_hash' is required")
        key = str(identifier).strip().lower()
        users[key] = UserRecord(
            identifier=key,
            password_hash=cfg["password_hash"],
            display_name=cfg.get("display_name", ""),
        )

    if not users:
        raise SystemExit(f"No users defined in {config_path}")

    logger.info("loaded %d users from %s", len(users), config_path)
    return InMemoryUserDirectory(users)
