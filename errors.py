"""
errors.py: failure taxonomy shared by the engine client and the flows.

Every GateError knows the HTTP status and OAuth-style error body it maps
to, so the orchestrators can convert them at a single boundary.
"""

from starlette.responses import JSONResponse, Response

NO_STORE = {"Cache-Control": "no-store", "Pragma": "no-cache"}


class GateError(Exception):
    status = 500
    error = "server_error"

    def __init__(self, description: str = "", *, status: int | None = None,
                 error: str | None = None):
        super().__init__(description or self.error)
        self.description = description
        if status is not None:
            self.status = status
        if error is not None:
            self.error = error

    def body(self) -> dict:
        body = {"error": self.error}
        if self.description:
            body["error_description"] = self.description
        return body

    def to_response(self) -> Response:
        return JSONResponse(self.body(), status_code=self.status, headers=NO_STORE)


class InvalidRequest(GateError):
    """Caller input is missing or malformed; the engine is never consulted."""

    status = 400
    error = "invalid_request"


class ProtocolViolation(GateError):
    """A required step was skipped, or the engine answered outside the contract."""

    status = 500
    error = "unsupported_action"


class EngineRejected(GateError):
    """The engine produced its own error payload; it is relayed untouched."""

    def __init__(self, payload: str, *, status: int = 400):
        super().__init__("engine rejected the request", status=status, error="engine_rejected")
        self.payload = payload

    def to_response(self) -> Response:
        return Response(self.payload, status_code=self.status,
                        media_type="application/json", headers=NO_STORE)


class EngineUnavailable(GateError):
    """Transport-level failure talking to the engine.

    ``detail`` is for the log only; clients get a bare ``server_error``.
    """

    def __init__(self, detail: str):
        super().__init__()
        self.detail = detail

    def __str__(self) -> str:
        return self.detail


class TicketAlreadyConsumed(GateError):
    status = 400
    error = "invalid_request"

    def __init__(self, ticket: str):
        super().__init__("Authorization request has already been resolved.")
        self.ticket = ticket


class AuthenticationFailed(GateError):
    """Username/password mismatch. Leads to a re-prompt, not an error page."""

    status = 200
    error = "access_denied"
