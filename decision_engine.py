"""
decision_engine.py: client side of the Authorization Decision Engine.

The engine owns OAuth semantics (client checks, scopes, PKCE matching,
code and token minting). The gateway only forwards requests to it and acts
on the Action it returns.

Two implementations share the DecisionEngine interface:
  - AuthleteEngine: remote engine speaking the Authlete JSON API over httpx.
  - LocalEngine:    deterministic in-process substitute for development
                    and tests (fixed ``mock-code`` / ``mock-access-token``).

Tickets handed to issue/fail calls are tracked here: resolving the same
ticket twice raises TicketAlreadyConsumed no matter which engine is behind
the interface.
"""

import abc
import json
import logging
import secrets
import time
import urllib.parse
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationError

import pkce
from audit import audit, mask
from errors import EngineUnavailable, TicketAlreadyConsumed

logger = logging.getLogger("ticketgate-engine")

TICKET_TTL = 3600  # seconds a resolved ticket is remembered

MOCK_CODE = "mock-code"
MOCK_ACCESS_TOKEN = "mock-access-token"
MOCK_TOKEN_EXPIRY = 3600
DEFAULT_LOCAL_REDIRECT_URI = "http://localhost:9000/cb"


# ---------------------------------------------------------------------------
# Actions
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Location:
    url: str


@dataclass(frozen=True)
class Form:
    html: str


@dataclass(frozen=True)
class Interaction:
    ticket: str
    client_name: str
    subject: str | None = None
    scopes: tuple[str, ...] = ()


@dataclass(frozen=True)
class NoInteraction:
    ticket: str
    subject: str | None = None


@dataclass(frozen=True)
class Ok:
    payload: str


@dataclass(frozen=True)
class Password:
    ticket: str
    username: str | None = None


@dataclass(frozen=True)
class BadRequest:
    payload: str


@dataclass(frozen=True)
class InternalError:
    payload: str


@dataclass(frozen=True)
class Unsupported:
    action: str
    payload: str | None = None


Action = (
    Location | Form | Interaction | NoInteraction | Ok | Password
    | BadRequest | InternalError | Unsupported
)


class FailReason(Enum):
    UNKNOWN = "UNKNOWN"
    NOT_LOGGED_IN = "NOT_LOGGED_IN"
    MAX_AGE_NOT_SUPPORTED = "MAX_AGE_NOT_SUPPORTED"
    EXCEEDS_MAX_AGE = "EXCEEDS_MAX_AGE"
    DIFFERENT_SUBJECT = "DIFFERENT_SUBJECT"
    ACR_NOT_SATISFIED = "ACR_NOT_SATISFIED"
    DENIED = "DENIED"
    SERVER_ERROR = "SERVER_ERROR"
    NOT_AUTHENTICATED = "NOT_AUTHENTICATED"
    ACCOUNT_SELECTION_REQUIRED = "ACCOUNT_SELECTION_REQUIRED"
    CONSENT_REQUIRED = "CONSENT_REQUIRED"
    INTERACTION_REQUIRED = "INTERACTION_REQUIRED"
    INVALID_TARGET = "INVALID_TARGET"


class TokenFailReason(Enum):
    UNKNOWN = "UNKNOWN"
    INVALID_RESOURCE_OWNER_CREDENTIALS = "INVALID_RESOURCE_OWNER_CREDENTIALS"
    INVALID_TARGET = "INVALID_TARGET"


# ---------------------------------------------------------------------------
# Wire format
# ---------------------------------------------------------------------------

class _ClientInfo(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    client_name: str | None = Field(default=None, alias="clientName")


class _Scope(BaseModel):
    model_config = ConfigDict(extra="ignore")

    name: str


class EngineReply(BaseModel):
    """Subset of an Authlete API response the gateway acts on."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    action: str
    response_content: str | None = Field(default=None, alias="responseContent")
    ticket: str | None = None
    subject: str | None = None
    username: str | None = None
    client: _ClientInfo | None = None
    scopes: list[_Scope] | None = None

    def to_action(self) -> Action:
        """Map the reply onto an Action.

        A known action missing a field it cannot work without degrades to
        Unsupported, so callers deal with one fallback path.
        """
        content = self.response_content
        if self.action == "LOCATION" and content:
            return Location(content)
        if self.action == "FORM" and content:
            return Form(content)
        if self.action == "OK" and content is not None:
            return Ok(content)
        if self.action == "BAD_REQUEST" and content is not None:
            return BadRequest(content)
        if self.action == "INTERNAL_SERVER_ERROR" and content is not None:
            return InternalError(content)
        if self.action == "INTERACTION" and self.ticket:
            client_name = (self.client.client_name if self.client else None) or "Client"
            scopes = tuple(s.name for s in self.scopes or [])
            return Interaction(self.ticket, client_name, self.subject, scopes)
        if self.action == "NO_INTERACTION" and self.ticket:
            return NoInteraction(self.ticket, self.subject)
        if self.action == "PASSWORD" and self.ticket:
            return Password(self.ticket, self.username)
        return Unsupported(self.action, content)


def _error_json(error: str, description: str | None = None) -> str:
    body = {"error": error}
    if description:
        body["error_description"] = description
    return json.dumps(body)


def _parse_qs(query: str) -> dict[str, str]:
    """Parse query string, returning first value for each key."""
    parsed = urllib.parse.parse_qs(query, keep_blank_values=True)
    return {k: v[0] for k, v in parsed.items()}


def _with_query(uri: str, **params: str | None) -> str:
    query = urllib.parse.urlencode({k: v for k, v in params.items() if v is not None})
    sep = "&" if "?" in uri else "?"
    return f"{uri}{sep}{query}"


# ---------------------------------------------------------------------------
# Interface
# ---------------------------------------------------------------------------

class DecisionEngine(abc.ABC):
    """Capability interface over the engine's operations.

    Subclasses implement the underscored hooks; the public ticket-resolving
    methods wrap them with single-use ticket accounting.
    """

    def __init__(self, ticket_ttl: float = TICKET_TTL):
        self.ticket_ttl = ticket_ttl
        self._resolved: dict[str, float] = {}

    # --- operations ---

    @abc.abstractmethod
    async def process_authorization(self, parameters: str) -> Action: ...

    async def issue_authorization(self, ticket: str, subject: str) -> Action:
        return await self._resolving(
            "issue_authorization", ticket,
            lambda: self._issue_authorization(ticket, subject),
        )

    async def fail_authorization(self, ticket: str, reason: FailReason) -> Action:
        return await self._resolving(
            "fail_authorization", ticket,
            lambda: self._fail_authorization(ticket, reason),
        )

    @abc.abstractmethod
    async def process_token(
        self,
        parameters: str,
        client_id: str | None = None,
        client_secret: str | None = None,
    ) -> Action: ...

    async def issue_token(self, ticket: str, subject: str) -> Action:
        return await self._resolving(
            "issue_token", ticket,
            lambda: self._issue_token(ticket, subject),
        )

    async def fail_token(self, ticket: str, reason: TokenFailReason) -> Action:
        return await self._resolving(
            "fail_token", ticket,
            lambda: self._fail_token(ticket, reason),
        )

    @abc.abstractmethod
    async def check(self) -> dict[str, Any]:
        """Confirm the engine is reachable and the credentials are accepted."""

    async def aclose(self) -> None:
        return None

    # --- hooks ---

    @abc.abstractmethod
    async def _issue_authorization(self, ticket: str, subject: str) -> Action: ...

    @abc.abstractmethod
    async def _fail_authorization(self, ticket: str, reason: FailReason) -> Action: ...

    @abc.abstractmethod
    async def _issue_token(self, ticket: str, subject: str) -> Action: ...

    @abc.abstractmethod
    async def _fail_token(self, ticket: str, reason: TokenFailReason) -> Action: ...

    # --- ticket accounting ---

    def is_resolved(self, ticket: str) -> bool:
        return ticket in self._resolved

    def _claim(self, operation: str, ticket: str) -> None:
        now = time.time()
        expired = [t for t, ts in self._resolved.items() if now - ts > self.ticket_ttl]
        for t in expired:
            del self._resolved[t]
        if ticket in self._resolved:
            audit("ticket_reuse_rejected", operation=operation, ticket=mask(ticket))
            raise TicketAlreadyConsumed(ticket)
        self._resolved[ticket] = now

    async def _resolving(
        self,
        operation: str,
        ticket: str,
        call: Callable[[], Awaitable[Action]],
    ) -> Action:
        # Claimed before the await so a racing second call is refused.
        self._claim(operation, ticket)
        try:
            return await call()
        except EngineUnavailable:
            # Nothing reached the engine; the caller may retry.
            self._resolved.pop(ticket, None)
            raise


# ---------------------------------------------------------------------------
# Remote engine
# ---------------------------------------------------------------------------

class AuthleteEngine(DecisionEngine):
    """Decision engine reached over the Authlete v3 REST API."""

    def __init__(
        self,
        base_url: str,
        service_id: str,
        bearer: str,
        *,
        timeout: float = 10.0,
        retries: int = 2,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        super().__init__()
        self.service_id = service_id
        self._prefix = f"/api/{urllib.parse.quote(service_id, safe='')}"
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            headers={
                "Authorization": f"Bearer {bearer}",
                "Accept": "application/json",
            },
            timeout=timeout,
            transport=transport or httpx.AsyncHTTPTransport(retries=retries),
        )

    async def _call(self, operation: str, path: str,
                    payload: dict[str, Any] | None = None) -> dict[str, Any]:
        url = f"{self._prefix}{path}"
        try:
            if payload is None:
                resp = await self._client.get(url)
            else:
                body = {k: v for k, v in payload.items() if v is not None}
                resp = await self._client.post(url, json=body)
        except httpx.HTTPError as e:
            logger.error("engine %s: transport error: %s", operation, e)
            raise EngineUnavailable(f"{operation}: {type(e).__name__}: {e}") from e

        if not resp.is_success:
            logger.error("engine %s: HTTP %d: %s", operation, resp.status_code,
                         resp.text[:200])
            raise EngineUnavailable(f"{operation}: engine API returned HTTP {resp.status_code}")

        try:
            data = resp.json()
        except ValueError as e:
            raise EngineUnavailable(f"{operation}: engine reply is not JSON") from e
        if not isinstance(data, dict):
            raise EngineUnavailable(f"{operation}: engine reply is not an object")
        logger.debug("engine %s: action=%s", operation, data.get("action"))
        return data

    async def _action(self, operation: str, path: str, payload: dict[str, Any]) -> Action:
        data = await self._call(operation, path, payload)
        try:
            reply = EngineReply.model_validate(data)
        except ValidationError as e:
            raise EngineUnavailable(f"{operation}: malformed engine reply: {e}") from e
        return reply.to_action()

    async def process_authorization(self, parameters: str) -> Action:
        return await self._action(
            "process_authorization", "/auth/authorization",
            {"parameters": parameters},
        )

    async def _issue_authorization(self, ticket: str, subject: str) -> Action:
        return await self._action(
            "issue_authorization", "/auth/authorization/issue",
            {"ticket": ticket, "subject": subject},
        )

    async def _fail_authorization(self, ticket: str, reason: FailReason) -> Action:
        return await self._action(
            "fail_authorization", "/auth/authorization/fail",
            {"ticket": ticket, "reason": reason.value},
        )

    async def process_token(
        self,
        parameters: str,
        client_id: str | None = None,
        client_secret: str | None = None,
    ) -> Action:
        return await self._action(
            "process_token", "/auth/token",
            {"parameters": parameters, "clientId": client_id, "clientSecret": client_secret},
        )

    async def _issue_token(self, ticket: str, subject: str) -> Action:
        return await self._action(
            "issue_token", "/auth/token/issue",
            {"ticket": ticket, "subject": subject},
        )

    async def _fail_token(self, ticket: str, reason: TokenFailReason) -> Action:
        return await self._action(
            "fail_token", "/auth/token/fail",
            {"ticket": ticket, "reason": reason.value},
        )

    async def check(self) -> dict[str, Any]:
        return await self._call("service_get", "/service/get")

    async def aclose(self) -> None:
        await self._client.aclose()


# ---------------------------------------------------------------------------
# Local substitute
# ---------------------------------------------------------------------------

@dataclass
class _PendingAuthorization:
    redirect_uri: str
    state: str | None
    code_challenge: str | None
    scopes: tuple[str, ...] = ()
    created_at: float = field(default_factory=time.time)


@dataclass(eq=False)
class _IssuedCode:
    code_challenge: str | None
    created_at: float = field(default_factory=time.time)


_FAIL_ERRORS = {
    FailReason.DENIED: "access_denied",
    FailReason.NOT_LOGGED_IN: "login_required",
    FailReason.NOT_AUTHENTICATED: "login_required",
    FailReason.CONSENT_REQUIRED: "consent_required",
    FailReason.INTERACTION_REQUIRED: "interaction_required",
    FailReason.ACCOUNT_SELECTION_REQUIRED: "account_selection_required",
    FailReason.INVALID_TARGET: "invalid_target",
}


class LocalEngine(DecisionEngine):
    """Deterministic in-process engine.

    Every authorization request needs interaction; every issued code is
    ``mock-code`` and every access token ``mock-access-token``. Since all
    codes look alike, an exchange is matched to an outstanding issuance by
    its verifier; one that brings a verifier matching no outstanding S256
    challenge is refused.
    """

    def __init__(
        self,
        redirect_uri: str = DEFAULT_LOCAL_REDIRECT_URI,
        client_name: str = "Mock Client",
        service_id: str = "mock-service",
        ticket_ttl: float = TICKET_TTL,
    ):
        super().__init__(ticket_ttl=ticket_ttl)
        self.default_redirect_uri = redirect_uri
        self.client_name = client_name
        self.service_id = service_id
        self._pending: dict[str, _PendingAuthorization] = {}
        self._password_tickets: dict[str, float] = {}
        self._issued: list[_IssuedCode] = []

    def _purge(self) -> None:
        now = time.time()
        expired = [t for t, p in self._pending.items() if now - p.created_at > self.ticket_ttl]
        for t in expired:
            del self._pending[t]
        expired = [t for t, ts in self._password_tickets.items() if now - ts > self.ticket_ttl]
        for t in expired:
            del self._password_tickets[t]
        self._issued = [c for c in self._issued if now - c.created_at <= self.ticket_ttl]

    def _redeem(self, verifier: str) -> bool:
        self._purge()
        challenged = [c for c in self._issued if c.code_challenge]
        if verifier:
            for issued in challenged:
                if pkce.verify(verifier, issued.code_challenge):
                    self._issued.remove(issued)
                    return True
            if challenged:
                return False
        plain = next((c for c in self._issued if c.code_challenge is None), None)
        if plain is not None:
            self._issued.remove(plain)
            return True
        # Nothing plain is outstanding; a PKCE-bound code needs its verifier.
        return not challenged

    @staticmethod
    def _token_payload() -> str:
        return json.dumps({
            "access_token": MOCK_ACCESS_TOKEN,
            "token_type": "Bearer",
            "expires_in": MOCK_TOKEN_EXPIRY,
        })

    async def process_authorization(self, parameters: str) -> Action:
        params = _parse_qs(parameters)
        if not params.get("client_id"):
            return BadRequest(_error_json("invalid_request", "client_id is required."))

        code_challenge = params.get("code_challenge") or None
        if code_challenge and params.get("code_challenge_method") != "S256":
            return BadRequest(_error_json(
                "invalid_request", "Only S256 code_challenge_method is supported.",
            ))

        self._purge()
        ticket = secrets.token_urlsafe(16)
        scopes = tuple(params.get("scope", "").split())
        self._pending[ticket] = _PendingAuthorization(
            redirect_uri=params.get("redirect_uri") or self.default_redirect_uri,
            state=params.get("state") or None,
            code_challenge=code_challenge,
            scopes=scopes,
        )
        return Interaction(ticket, self.client_name, None, scopes)

    async def _issue_authorization(self, ticket: str, subject: str) -> Action:
        pending = self._pending.pop(ticket, None)
        if pending is None:
            return BadRequest(_error_json("invalid_request", "Unknown or expired ticket."))
        self._issued.append(_IssuedCode(pending.code_challenge))
        return Location(_with_query(pending.redirect_uri, code=MOCK_CODE, state=pending.state))

    async def _fail_authorization(self, ticket: str, reason: FailReason) -> Action:
        pending = self._pending.pop(ticket, None)
        if pending is None:
            return BadRequest(_error_json("invalid_request", "Unknown or expired ticket."))
        error = _FAIL_ERRORS.get(reason, "server_error")
        return Location(_with_query(pending.redirect_uri, error=error, state=pending.state))

    async def process_token(
        self,
        parameters: str,
        client_id: str | None = None,
        client_secret: str | None = None,
    ) -> Action:
        params = _parse_qs(parameters)
        grant_type = params.get("grant_type", "")
        if not grant_type:
            return BadRequest(_error_json("invalid_request", "grant_type is required."))

        if grant_type == "password":
            self._purge()
            ticket = secrets.token_urlsafe(16)
            self._password_tickets[ticket] = time.time()
            return Password(ticket, params.get("username") or None)

        if grant_type == "authorization_code" and params.get("code") == MOCK_CODE:
            if not self._redeem(params.get("code_verifier", "")):
                return BadRequest(_error_json("invalid_grant", "PKCE verification failed."))

        return Ok(self._token_payload())

    async def _issue_token(self, ticket: str, subject: str) -> Action:
        if self._password_tickets.pop(ticket, None) is None:
            return BadRequest(_error_json("invalid_request", "Unknown or expired ticket."))
        return Ok(self._token_payload())

    async def _fail_token(self, ticket: str, reason: TokenFailReason) -> Action:
        self._password_tickets.pop(ticket, None)
        return BadRequest(_error_json("invalid_grant"))

    async def check(self) -> dict[str, Any]:
        return {"serviceId": self.service_id, "serviceName": "Mock Service"}
