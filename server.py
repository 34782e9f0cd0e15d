#!/usr/bin/env python3
"""
ticketgate: OAuth 2.0 / OIDC authorization gateway in front of a decision engine.

Serves the browser-facing half of the Authorization Code flow (login and
consent) and the token endpoint, while an external decision engine
(Authlete, or the local substitute) performs every OAuth check and mints
codes and tokens.

    GET  /health         liveness
    GET  /authorize      start an authorization request
    POST /login          credential submission -> consent page
    POST /auth/decision  allow / deny -> redirect to the client
    POST /token          token exchange (incl. password grant)
"""

import argparse
import asyncio
import logging
import os
import secrets
import urllib.parse
from pathlib import Path

import uvicorn
from starlette.applications import Starlette
from starlette.middleware import Middleware
from starlette.middleware.sessions import SessionMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse, Response
from starlette.routing import Route
from starlette.types import ASGIApp, Receive, Scope, Send

from audit import configure_logging
from authorization_flow import AuthorizationOrchestrator
from config import EngineKind, GateConfig, load_config
from credentials import CredentialCheck, load_credentials
from decision_engine import AuthleteEngine, DecisionEngine, LocalEngine
from errors import EngineUnavailable
from ticket_store import InMemoryTicketStore, TicketStore
from token_flow import TokenOrchestrator

logger = logging.getLogger("ticketgate")

SESSION_COOKIE = "ticketgate_session"
DEFAULT_AUDIT_LOG = Path.home() / ".ticketgate" / "audit.log"


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _parse_form(body: bytes) -> dict[str, str]:
    """Parse application/x-www-form-urlencoded body, first value per key."""
    parsed = urllib.parse.parse_qs(body.decode("utf-8", errors="replace"),
                                   keep_blank_values=True)
    return {k: v[0] for k, v in parsed.items()}


def _session_id(request: Request) -> str:
    """Opaque per-browser id; ticket state itself stays server-side."""
    sid = request.session.get("sid")
    if not sid:
        sid = secrets.token_urlsafe(24)
        request.session["sid"] = sid
    return sid


class RequestLogMiddleware:
    def __init__(self, app: ASGIApp):
        self.app = app

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] == "http":
            hdrs = dict(scope.get("headers", []))
            ua = hdrs.get(b"user-agent", b"").decode(errors="replace")
            logger.info("recv: %s %s ua=%s", scope.get("method", "?"),
                        scope.get("path", "?"), ua[:60])
        await self.app(scope, receive, send)


# ---------------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------------

async def health(request: Request) -> Response:
    return JSONResponse({"status": "ok"})


async def authorize(request: Request) -> Response:
    flow: AuthorizationOrchestrator = request.app.state.authorization
    result = await flow.authorize(_session_id(request), request.url.query)
    return result.response


async def login(request: Request) -> Response:
    flow: AuthorizationOrchestrator = request.app.state.authorization
    form = _parse_form(await request.body())
    result = await flow.login(_session_id(request), form.get("username", ""), form.get("password", ""))
    return result.response


async def decision(request: Request) -> Response:
    flow: AuthorizationOrchestrator = request.app.state.authorization
    form = _parse_form(await request.body())
    result = await flow.decide(_session_id(request), form.get("decision", ""))
    return result.response


async def token(request: Request) -> Response:
    flow: TokenOrchestrator = request.app.state.token
    form = _parse_form(await request.body())
    result = await flow.token(form, request.headers.get("authorization"))
    return result.response


# ---------------------------------------------------------------------------
# Composition
# ---------------------------------------------------------------------------

def create_engine(config: GateConfig) -> DecisionEngine:
    if config.engine is EngineKind.AUTHLETE:
        logger.info("ticketgate: using Authlete engine at %s", config.authlete_base_url)
        return AuthleteEngine(
            config.authlete_base_url,
            config.authlete_service_id,
            config.authlete_bearer,
            timeout=config.engine_timeout,
            retries=config.engine_retries,
        )
    logger.warning("ticketgate: using the LOCAL engine; codes and tokens are fixed mock values")
    return LocalEngine(redirect_uri=config.local_redirect_uri)


def create_app(
    config: GateConfig | None = None,
    *,
    engine: DecisionEngine | None = None,
    store: TicketStore | None = None,
    credentials: CredentialCheck | None = None,
) -> Starlette:
    config = config or GateConfig()
    engine = engine or create_engine(config)
    store = store or InMemoryTicketStore(ttl=config.session_max_age)
    credentials = credentials or load_credentials(config.users_file)

    app = Starlette(
        debug=False,
        routes=[
            Route("/health", health, methods=["GET"]),
            Route("/authorize", authorize, methods=["GET"]),
            Route("/login", login, methods=["POST"]),
            Route("/auth/decision", decision, methods=["POST"]),
            Route("/token", token, methods=["POST"]),
        ],
        middleware=[
            Middleware(RequestLogMiddleware),
            Middleware(
                SessionMiddleware,
                secret_key=config.session_secret,
                session_cookie=SESSION_COOKIE,
                max_age=config.session_max_age,
                same_site="lax",
                https_only=config.secure_cookies,
            ),
        ],
    )
    app.state.config = config
    app.state.engine = engine
    app.state.store = store
    app.state.authorization = AuthorizationOrchestrator(engine, store, credentials)
    app.state.token = TokenOrchestrator(engine, credentials)
    return app


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(description="ticketgate authorization gateway")
    parser.add_argument("--host", default="127.0.0.1")
    parser.add_argument("--port", type=int, default=int(os.environ.get("PORT", "3000")))
    parser.add_argument("--engine", choices=[k.value for k in EngineKind],
                        help="overrides TICKETGATE_ENGINE")
    args = parser.parse_args(argv)

    config = load_config(engine=args.engine)
    configure_logging(config.debug, config.audit_log or DEFAULT_AUDIT_LOG)

    engine = create_engine(config)
    app = create_app(config, engine=engine)

    uv_config = uvicorn.Config(
        app, host=args.host, port=args.port,
        log_level="debug" if config.debug else "info",
        proxy_headers=True,
    )
    server = uvicorn.Server(uv_config)

    async def _serve_with_engine_lifecycle() -> None:
        try:
            try:
                service = await engine.check()
            except EngineUnavailable as e:
                logger.error("ticketgate: failed to validate engine credentials: %s", e)
                raise SystemExit(1)
            logger.info("ticketgate: engine ready (service=%s)",
                        service.get("serviceName") or service.get("serviceId"))
            logger.info("ticketgate: listening on http://%s:%d", args.host, args.port)
            await server.serve()
        finally:
            try:
                await engine.aclose()
            except Exception:
                logger.exception("ticketgate: error closing engine client")

    asyncio.run(_serve_with_engine_lifecycle())


if __name__ == "__main__":
    main()
