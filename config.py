"""
config.py: environment-driven settings for ticketgate.
"""

import logging
import os
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Mapping

from decision_engine import DEFAULT_LOCAL_REDIRECT_URI

logger = logging.getLogger("ticketgate-config")

DEV_SESSION_SECRET = "dev-secret"


class EngineKind(Enum):
    LOCAL = "local"
    AUTHLETE = "authlete"


@dataclass
class GateConfig:
    engine: EngineKind = EngineKind.LOCAL
    authlete_base_url: str = "https://us.authlete.com"
    authlete_service_id: str = ""
    authlete_bearer: str = ""
    engine_timeout: float = 10.0
    engine_retries: int = 2
    local_redirect_uri: str = DEFAULT_LOCAL_REDIRECT_URI
    session_secret: str = DEV_SESSION_SECRET
    session_max_age: int = 3600
    secure_cookies: bool = False
    users_file: Path | None = None
    debug: bool = False
    audit_log: Path | None = None


def _flag(value: str | None) -> bool:
    return (value or "").strip().lower() in ("1", "true", "yes", "on")


def _number(environ: Mapping[str, str], name: str, default: float, cast=float):
    raw = environ.get(name)
    if raw is None or raw == "":
        return cast(default)
    try:
        value = cast(raw)
    except ValueError:
        raise SystemExit(f"Invalid {name}={raw!r}: expected a number")
    if value < 0:
        raise SystemExit(f"Invalid {name}={raw!r}: must not be negative")
    return value


def load_config(environ: Mapping[str, str] | None = None,
                engine: str | None = None) -> GateConfig:
    """Build a GateConfig from environment variables.

    ``engine`` (from --engine) overrides TICKETGATE_ENGINE.
    """
    if environ is None:
        environ = os.environ

    engine_str = (engine or environ.get("TICKETGATE_ENGINE") or "local").lower()
    try:
        kind = EngineKind(engine_str)
    except ValueError:
        raise SystemExit(
            f"Invalid engine '{engine_str}'. "
            f"Valid options: {', '.join(k.value for k in EngineKind)}"
        )

    config = GateConfig(
        engine=kind,
        authlete_base_url=environ.get("AUTHLETE_BASE_URL") or GateConfig.authlete_base_url,
        authlete_service_id=environ.get("AUTHLETE_SERVICE_ID", ""),
        authlete_bearer=environ.get("AUTHLETE_BEARER", ""),
        engine_timeout=_number(environ, "TICKETGATE_ENGINE_TIMEOUT", 10.0),
        engine_retries=_number(environ, "TICKETGATE_ENGINE_RETRIES", 2, int),
        local_redirect_uri=(environ.get("TICKETGATE_LOCAL_REDIRECT_URI")
                            or DEFAULT_LOCAL_REDIRECT_URI),
        session_secret=environ.get("TICKETGATE_SESSION_SECRET") or DEV_SESSION_SECRET,
        session_max_age=_number(environ, "TICKETGATE_SESSION_MAX_AGE", 3600, int),
        secure_cookies=_flag(environ.get("TICKETGATE_SECURE_COOKIES")),
        users_file=Path(environ["TICKETGATE_USERS_FILE"]) if environ.get("TICKETGATE_USERS_FILE") else None,
        debug=_flag(environ.get("TICKETGATE_DEBUG")),
        audit_log=Path(environ["TICKETGATE_AUDIT_LOG"]) if environ.get("TICKETGATE_AUDIT_LOG") else None,
    )

    if kind is EngineKind.AUTHLETE:
        missing = [name for name, value in (
            ("AUTHLETE_SERVICE_ID", config.authlete_service_id),
            ("AUTHLETE_BEARER", config.authlete_bearer),
        ) if not value]
        if missing:
            raise SystemExit(f"Engine 'authlete' requires {', '.join(missing)} to be set")

    if config.session_secret == DEV_SESSION_SECRET:
        logger.warning("TICKETGATE_SESSION_SECRET is not set; using the development secret")

    return config
