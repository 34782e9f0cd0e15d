"""Shared fixtures: a scripted decision engine that records every call."""
import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from credentials import CredentialCheck
from decision_engine import DecisionEngine
from ticket_store import InMemoryTicketStore


class ScriptedEngine(DecisionEngine):
    """Returns canned Actions per operation and records the calls.

    A reply may be an Action, an exception instance (raised), or a
    callable taking the call arguments and returning either.
    """

    def __init__(self, **replies):
        super().__init__()
        self.replies = replies
        self.calls: list[tuple[str, tuple]] = []

    def count(self, operation: str | None = None) -> int:
        if operation is None:
            return len(self.calls)
        return sum(1 for name, _ in self.calls if name == operation)

    def args(self, operation: str) -> tuple:
        return next(args for name, args in self.calls if name == operation)

    async def _reply(self, operation: str, *args):
        self.calls.append((operation, args))
        if operation not in self.replies:
            raise AssertionError(f"unexpected engine call: {operation}")
        reply = self.replies[operation]
        if callable(reply) and not isinstance(reply, type):
            reply = reply(*args)
        if isinstance(reply, BaseException):
            raise reply
        return reply

    async def process_authorization(self, parameters):
        return await self._reply("process_authorization", parameters)

    async def _issue_authorization(self, ticket, subject):
        return await self._reply("issue_authorization", ticket, subject)

    async def _fail_authorization(self, ticket, reason):
        return await self._reply("fail_authorization", ticket, reason)

    async def process_token(self, parameters, client_id=None, client_secret=None):
        return await self._reply("process_token", parameters, client_id, client_secret)

    async def _issue_token(self, ticket, subject):
        return await self._reply("issue_token", ticket, subject)

    async def _fail_token(self, ticket, reason):
        return await self._reply("fail_token", ticket, reason)

    async def check(self):
        return {"serviceId": "scripted"}


@pytest.fixture
def store():
    return InMemoryTicketStore()


@pytest.fixture
def credentials():
    return CredentialCheck.demo()
