"""
ticket_store.py: per-session state bridging /authorize and /auth/decision.

A browser session holds at most one pending AuthorizationTicket plus the
subject that logged in. Lookups for unknown or expired sessions return
None; they never raise.
"""

import abc
import time
from dataclasses import dataclass, field, replace

SESSION_TTL = 3600  # seconds; matches the session cookie max age


@dataclass(frozen=True)
class AuthorizationTicket:
    ticket_id: str
    client_display_name: str
    scopes: tuple[str, ...] = ()
    proposed_subject: str | None = None  # supplied by the engine, not the browser
    requested_subject: str | None = None  # set once login succeeds
    created_at: float = field(default_factory=time.time)


@dataclass
class SessionRecord:
    ticket: AuthorizationTicket | None = None
    authenticated_subject: str | None = None
    touched_at: float = field(default_factory=time.time)


class TicketStore(abc.ABC):
    @abc.abstractmethod
    def bind(self, session_id: str, ticket: AuthorizationTicket) -> None: ...

    @abc.abstractmethod
    def get(self, session_id: str) -> AuthorizationTicket | None: ...

    @abc.abstractmethod
    def clear(self, session_id: str) -> None: ...

    @abc.abstractmethod
    def consume(self, session_id: str) -> AuthorizationTicket | None:
        """Remove and return the session's ticket in one step."""

    @abc.abstractmethod
    def authenticate(self, session_id: str, subject: str) -> None: ...

    @abc.abstractmethod
    def authenticated_subject(self, session_id: str) -> str | None: ...


class InMemoryTicketStore(TicketStore):
    """Process-local store. Fine for a single worker; swap for a shared
    store when running several."""

    def __init__(self, ttl: float = SESSION_TTL):
        self.ttl = ttl
        self._records: dict[str, SessionRecord] = {}

    def __len__(self) -> int:
        return len(self._records)

    def _live(self, session_id: str) -> SessionRecord | None:
        record = self._records.get(session_id)
        if record is None:
            return None
        if time.time() - record.touched_at > self.ttl:
            del self._records[session_id]
            return None
        return record

    def _purge(self) -> None:
        now = time.time()
        expired = [s for s, r in self._records.items() if now - r.touched_at > self.ttl]
        for s in expired:
            del self._records[s]

    def bind(self, session_id: str, ticket: AuthorizationTicket) -> None:
        self._purge()
        record = self._records.setdefault(session_id, SessionRecord())
        record.ticket = ticket
        record.touched_at = time.time()

    def get(self, session_id: str) -> AuthorizationTicket | None:
        record = self._live(session_id)
        return record.ticket if record else None

    def clear(self, session_id: str) -> None:
        record = self._live(session_id)
        if record:
            record.ticket = None

    def consume(self, session_id: str) -> AuthorizationTicket | None:
        record = self._live(session_id)
        if record is None:
            return None
        ticket, record.ticket = record.ticket, None
        return ticket

    def authenticate(self, session_id: str, subject: str) -> None:
        record = self._live(session_id)
        if record is None:
            record = self._records[session_id] = SessionRecord()
        record.authenticated_subject = subject
        record.touched_at = time.time()
        if record.ticket is not None:
            record.ticket = replace(record.ticket, requested_subject=subject)

    def authenticated_subject(self, session_id: str) -> str | None:
        record = self._live(session_id)
        return record.authenticated_subject if record else None
