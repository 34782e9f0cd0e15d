"""
token_flow.py: /token, including the resource owner password sub-flow.

Engine payloads are relayed byte for byte; the engine owns the OAuth
error vocabulary (invalid_grant, invalid_client, ...).
"""

import base64
import binascii
import logging
import urllib.parse
from typing import Mapping

from starlette.responses import Response

from audit import audit, mask
from authorization_flow import FlowResult, FlowState, action_name, guarded
from credentials import CredentialCheck
from decision_engine import (
    Action,
    BadRequest,
    DecisionEngine,
    InternalError,
    Ok,
    Password,
    TokenFailReason,
    Unsupported,
)
from errors import NO_STORE, EngineRejected, InvalidRequest, ProtocolViolation

logger = logging.getLogger("ticketgate-token")


def _parse_basic(encoded: str) -> tuple[str, str] | None:
    try:
        decoded = base64.b64decode(encoded, validate=True).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError):
        return None
    client_id, sep, client_secret = decoded.partition(":")
    if not sep or not client_id:
        return None
    # RFC 6749 2.3.1: both halves are form-urlencoded before base64.
    return urllib.parse.unquote_plus(client_id), urllib.parse.unquote_plus(client_secret)


def extract_client_credentials(
    authorization: str | None,
    form: Mapping[str, str],
) -> tuple[str | None, str | None]:
    """Basic header first, then client_id/client_secret in the body.

    A malformed Basic header counts as no header; the engine decides
    whether an unauthenticated client is acceptable.
    """
    if authorization and authorization[:6].lower() == "basic ":
        parsed = _parse_basic(authorization[6:].strip())
        if parsed:
            return parsed
        logger.debug("ignoring malformed Basic authorization header")
    return form.get("client_id") or None, form.get("client_secret") or None


def _token_response(payload: str) -> FlowResult:
    return FlowResult(
        FlowState.TOKEN_ISSUED,
        Response(payload, status_code=200, media_type="application/json", headers=NO_STORE),
    )


def _relay_error(action: Action) -> FlowResult:
    payload = None
    if isinstance(action, (BadRequest, InternalError, Unsupported)):
        payload = action.payload
    if not payload:
        raise ProtocolViolation(
            f"Engine returned {action_name(action)} without a payload.",
            error="unsupported_token_action",
        )
    raise EngineRejected(payload, status=400)


class TokenOrchestrator:
    def __init__(self, engine: DecisionEngine, credentials: CredentialCheck):
        self.engine = engine
        self.credentials = credentials

    async def token(self, form: Mapping[str, str],
                    authorization: str | None = None) -> FlowResult:
        return await guarded("/token", lambda: self._token(form, authorization))

    async def _token(self, form: Mapping[str, str], authorization: str | None) -> FlowResult:
        if not form:
            logger.warning("/token called with empty body")
            raise InvalidRequest("Missing token request parameters.")

        client_id, client_secret = extract_client_credentials(authorization, form)
        parameters = urllib.parse.urlencode(dict(form))
        logger.debug("/token request: grant_type=%s client_id=%s has_secret=%s",
                     form.get("grant_type", ""), mask(client_id), bool(client_secret))

        action = await self.engine.process_token(parameters, client_id, client_secret)
        audit("token_processed", action=action_name(action), client_id=mask(client_id))

        if isinstance(action, Ok):
            return _token_response(action.payload)
        if isinstance(action, Password):
            return await self._password_grant(form, action)
        return _relay_error(action)

    async def _password_grant(self, form: Mapping[str, str], action: Password) -> FlowResult:
        username = form.get("username", "")
        password = form.get("password", "")

        if username and password and self.credentials.verify(username, password):
            subject = self.credentials.subject_for(username)
            issued = await self.engine.issue_token(action.ticket, subject)
            if isinstance(issued, Ok):
                audit("token_issued", grant="password", subject=subject)
                return _token_response(issued.payload)
            return _relay_error(issued)

        audit("token_password_rejected", username=username)
        failed = await self.engine.fail_token(
            action.ticket, TokenFailReason.INVALID_RESOURCE_OWNER_CREDENTIALS,
        )
        return _relay_error(failed)
