"""
authorization_flow.py: the /authorize -> login -> /auth/decision state machine.

An authorization request starts at /authorize. When the engine asks for
interaction, the ticket is bound to the browser session and the request is
suspended; a later, independent POST to /auth/decision resumes it:

    START --engine--> REDIRECTING             (LOCATION)
                      RENDER_FORM             (FORM)
                      AWAITING_INTERACTION    (INTERACTION, ticket bound)
                      NO_INTERACTION_PENDING  (NO_INTERACTION, issued at once)
                      REJECTED                (errors, unknown actions)

    AWAITING_INTERACTION --/login--> consent page
                         --/auth/decision--> REDIRECTING | RENDER_FORM | REJECTED
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable

from starlette.responses import HTMLResponse, RedirectResponse, Response

from audit import audit, mask
from credentials import CredentialCheck
from decision_engine import (
    Action,
    BadRequest,
    DecisionEngine,
    FailReason,
    Form,
    Interaction,
    InternalError,
    Location,
    NoInteraction,
    Unsupported,
)
from errors import (
    AuthenticationFailed,
    EngineRejected,
    EngineUnavailable,
    GateError,
    InvalidRequest,
    ProtocolViolation,
)
from pages import consent_page, login_page
from ticket_store import AuthorizationTicket, TicketStore

logger = logging.getLogger("ticketgate-authorize")

DECISIONS = ("allow", "deny")


class FlowState(Enum):
    START = "start"
    REDIRECTING = "redirecting"
    RENDER_FORM = "render_form"
    AWAITING_INTERACTION = "awaiting_interaction"
    NO_INTERACTION_PENDING = "no_interaction_pending"
    REJECTED = "rejected"
    TOKEN_ISSUED = "token_issued"


@dataclass
class FlowResult:
    state: FlowState
    response: Response


def action_name(action: Action) -> str:
    if isinstance(action, Unsupported):
        return action.action
    return type(action).__name__


async def guarded(endpoint: str, call: Callable[[], Awaitable[FlowResult]]) -> FlowResult:
    """Run one orchestrator entry point, converting failures to responses.

    Nothing about the engine connection or a stack trace reaches the client.
    """
    try:
        return await call()
    except EngineUnavailable as e:
        logger.error("%s: decision engine unavailable: %s", endpoint, e.detail)
        audit("engine_unavailable", endpoint=endpoint)
        return FlowResult(FlowState.REJECTED, e.to_response())
    except GateError as e:
        logger.warning("%s: rejected with %d %s", endpoint, e.status, e.error)
        return FlowResult(FlowState.REJECTED, e.to_response())
    except Exception:
        logger.exception("%s: unexpected error", endpoint)
        return FlowResult(FlowState.REJECTED, GateError().to_response())


def _redirect(url: str) -> FlowResult:
    return FlowResult(FlowState.REDIRECTING, RedirectResponse(url, status_code=302))


def _resolve(action: Action) -> FlowResult:
    """Terminal dispatch shared by /authorize and the decision endpoint."""
    if isinstance(action, Location):
        return _redirect(action.url)
    if isinstance(action, Form):
        return FlowResult(FlowState.RENDER_FORM, HTMLResponse(action.html))
    if isinstance(action, BadRequest):
        raise EngineRejected(action.payload, status=400)
    if isinstance(action, InternalError):
        raise EngineRejected(action.payload, status=500)
    raise ProtocolViolation(f"Engine returned unexpected action {action_name(action)}.")


class AuthorizationOrchestrator:
    def __init__(self, engine: DecisionEngine, store: TicketStore,
                 credentials: CredentialCheck):
        self.engine = engine
        self.store = store
        self.credentials = credentials

    # --- /authorize ---

    async def authorize(self, session_id: str, query: str) -> FlowResult:
        return await guarded("/authorize", lambda: self._authorize(session_id, query))

    async def _authorize(self, session_id: str, query: str) -> FlowResult:
        if not query.strip():
            logger.warning("/authorize called without query parameters")
            raise InvalidRequest("Missing authorization request parameters.")

        action = await self.engine.process_authorization(query)
        audit("authorization_processed", action=action_name(action), session=mask(session_id))

        if isinstance(action, Interaction):
            self.store.bind(session_id, AuthorizationTicket(
                ticket_id=action.ticket,
                client_display_name=action.client_name,
                scopes=action.scopes,
                proposed_subject=action.subject,
            ))
            return FlowResult(
                FlowState.AWAITING_INTERACTION,
                HTMLResponse(login_page(action.client_name)),
            )

        if isinstance(action, NoInteraction):
            return await self._issue_without_interaction(session_id, action)

        return _resolve(action)

    async def _issue_without_interaction(self, session_id: str,
                                         action: NoInteraction) -> FlowResult:
        logger.info("authorization needs no interaction (session=%s)", mask(session_id))
        subject = action.subject or self.store.authenticated_subject(session_id)
        if not subject:
            # prompt=none with nobody logged in here.
            failed = await self.engine.fail_authorization(action.ticket, FailReason.NOT_LOGGED_IN)
            return _resolve(failed)

        issued = await self.engine.issue_authorization(action.ticket, subject)
        if isinstance(issued, Location):
            audit("authorization_issued", subject=subject, interaction=False)
            return FlowResult(FlowState.NO_INTERACTION_PENDING,
                              RedirectResponse(issued.url, status_code=302))
        raise ProtocolViolation(
            f"Issue returned {action_name(issued)} instead of LOCATION.",
            error="unexpected-issue-action",
        )

    # --- /login ---

    async def login(self, session_id: str, username: str, password: str) -> FlowResult:
        return await guarded("/login", lambda: self._login(session_id, username, password))

    async def _login(self, session_id: str, username: str, password: str) -> FlowResult:
        ticket = self.store.get(session_id)
        client_name = ticket.client_display_name if ticket else "Client"

        def reprompt(prompt: str) -> FlowResult:
            return FlowResult(
                FlowState.AWAITING_INTERACTION,
                HTMLResponse(login_page(client_name, prompt)),
            )

        if not username or not password:
            logger.warning("/login called with missing credentials")
            return reprompt("Missing credentials.")

        try:
            subject = self._authenticate(username, password)
        except AuthenticationFailed:
            return reprompt("Invalid credentials, try again.")

        self.store.authenticate(session_id, subject)
        audit("login_succeeded", subject=subject, session=mask(session_id))
        if ticket is None:
            return reprompt("No pending authorization request.")

        return FlowResult(
            FlowState.AWAITING_INTERACTION,
            HTMLResponse(consent_page(username, client_name, ticket.scopes)),
        )

    def _authenticate(self, username: str, password: str) -> str:
        if not self.credentials.verify(username, password):
            audit("login_failed", username=username)
            raise AuthenticationFailed("invalid username or password")
        return self.credentials.subject_for(username)

    # --- /auth/decision ---

    async def decide(self, session_id: str, decision: str) -> FlowResult:
        return await guarded("/auth/decision", lambda: self._decide(session_id, decision))

    async def _decide(self, session_id: str, decision: str) -> FlowResult:
        pending = self.store.get(session_id)
        if pending is None:
            logger.warning("/auth/decision called with no ticket in session")
            raise ProtocolViolation(
                "No authorization request is pending for this session.",
                status=400, error="invalid_request",
            )
        if decision not in DECISIONS:
            raise InvalidRequest("decision must be 'allow' or 'deny'.")

        if decision == "deny":
            ticket = self.store.consume(session_id)
            audit("authorization_denied", session=mask(session_id))
            action = await self._settle(session_id, ticket, lambda: self.engine.fail_authorization(
                ticket.ticket_id, FailReason.DENIED))
            return _resolve(action)

        # Only subjects that logged in here or that the engine itself
        # attached to the request are accepted.
        subject = (pending.requested_subject
                   or self.store.authenticated_subject(session_id)
                   or pending.proposed_subject)
        if not subject:
            raise ProtocolViolation(
                "Log in before approving the request.",
                status=400, error="login_required",
            )

        ticket = self.store.consume(session_id)
        action = await self._settle(session_id, ticket, lambda: self.engine.issue_authorization(
            ticket.ticket_id, subject))
        audit("authorization_issued", subject=subject, action=action_name(action))
        return _resolve(action)

    async def _settle(self, session_id: str, ticket: AuthorizationTicket,
                      call: Callable[[], Awaitable[Action]]) -> Action:
        try:
            return await call()
        except EngineUnavailable:
            # The engine never resolved the ticket; put it back so the
            # browser can submit the decision again.
            self.store.bind(session_id, ticket)
            raise
