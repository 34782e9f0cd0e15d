"""
credentials.py: minimal resource-owner authentication.

Stands in for a real identity provider. Users come from a YAML file:

    users:
      alice:
        password_sha256: "<hex digest>"
        subject: "alice"
      bob:
        password: "builder"

Without a file the two demo accounts alice/wonderland and bob/builder
are available.
"""

import hashlib
import hmac
import logging
from dataclasses import dataclass
from pathlib import Path

import yaml

logger = logging.getLogger("ticketgate-credentials")

# Compared against when the username is unknown so both paths do the same work.
_DUMMY_DIGEST = hashlib.sha256(b"ticketgate-unknown-user").hexdigest()


def _digest(password: str) -> str:
    return hashlib.sha256(password.encode()).hexdigest()


@dataclass(frozen=True)
class UserRecord:
    username: str
    password_sha256: str
    subject: str


class CredentialCheck:
    def __init__(self, users: dict[str, UserRecord]):
        self.users = users

    @classmethod
    def demo(cls) -> "CredentialCheck":
        return cls({
            "alice": UserRecord("alice", _digest("wonderland"), "alice"),
            "bob": UserRecord("bob", _digest("builder"), "bob"),
        })

    def verify(self, username: str, password: str) -> bool:
        record = self.users.get(username)
        expected = record.password_sha256 if record else _DUMMY_DIGEST
        matches = hmac.compare_digest(_digest(password), expected)
        return matches and record is not None

    def subject_for(self, username: str) -> str:
        record = self.users.get(username)
        return record.subject if record else username


def load_credentials(path: Path | None = None) -> CredentialCheck:
    """Load users from ``path``, or the demo accounts if ``path`` is None."""
    if path is None:
        logger.warning("no users file configured; using demo accounts alice and bob")
        return CredentialCheck.demo()
    if not path.exists():
        raise SystemExit(f"Users file not found: {path}")

    with open(path) as f:
        raw = yaml.safe_load(f)

    if not isinstance(raw, dict) or not isinstance(raw.get("users"), dict):
        raise SystemExit(f"Invalid users file: expected top-level 'users' mapping in {path}")

    users: dict[str, UserRecord] = {}
    for name, cfg in raw["users"].items():
        name = str(name)
        if not isinstance(cfg, dict):
            raise SystemExit(f"Invalid user '{name}' in {path}: expected a mapping")
        if "password_sha256" in cfg:
            digest = str(cfg["password_sha256"]).lower()
        elif "password" in cfg:
            digest = _digest(str(cfg["password"]))
        else:
            raise SystemExit(
                f"Invalid user '{name}' in {path}: 'password' or 'password_sha256' is required"
            )
        users[name] = UserRecord(name, digest, str(cfg.get("subject", name)))

    if not users:
        raise SystemExit(f"No users defined in {path}")

    logger.info("loaded %d users from %s", len(users), path)
    return CredentialCheck(users)
