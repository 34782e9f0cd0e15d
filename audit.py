"""
audit.py: JSON-lines audit trail and logging setup for ticketgate.
"""

import json
import logging
import time
from pathlib import Path
from typing import Any

audit_logger = logging.getLogger("ticketgate-audit")

LOG_FORMAT = "%(asctime)s [%(name)s] %(levelname)s: %(message)s"


def audit(event: str, **kwargs: Any) -> None:
    """Emit a structured JSON audit log entry."""
    entry = {"ts": time.time(), "event": event, **kwargs}
    audit_logger.info(json.dumps(entry, default=str))


def mask(value: str | None) -> str:
    """Shorten an identifier or secret for log output."""
    if not value:
        return ""
    if len(value) <= 8:
        return "****"
    return f"{value[:4]}...{value[-4:]}"


def configure_logging(debug: bool = False, audit_log_path: Path | None = None) -> None:
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.INFO,
        format=LOG_FORMAT,
    )

    if audit_log_path is None:
        return
    audit_log_path.parent.mkdir(parents=True, exist_ok=True)
    handler = logging.FileHandler(audit_log_path)
    handler.setFormatter(logging.Formatter("%(message)s"))
    audit_logger.addHandler(handler)
    audit_logger.setLevel(logging.INFO)
    audit_logger.propagate = False
