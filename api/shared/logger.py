"""
Centralized logging for the survey studio backend.

Structured, level-based logging on top of Python's built-in logging
module. Every module asks for its own logger; ``main.py`` configures the
root handler once.

Projects carry credentials (response storage keys, bucket keys, dataset
tokens) that can surface in error text from remote services, so the root
handler masks anything that looks like one before it is written.

Usage:
    from api.shared.logger import get_logger

    logger = get_logger(__name__)
    logger.info("Saved project %s", project_id)
    logger.warning("Persist failed for %s: %s", project_id, err)
"""

import logging
import re
import sys

_configured = False

# These log every request URL at INFO.
THIRD_PARTY_LOGGERS = ("httpx", "httpcore")

REDACTED = "***"
_SECRET_PATTERNS = (
    re.compile(r"(Bearer\s+)[^\s\"',}]+", re.IGNORECASE),
    re.compile(
        r"((?:apikey|api_key|token|secret_?key)[\"']?\s*[=:]\s*[\"']?)[^\s\"'&,}]+",
        re.IGNORECASE,
    ),
)


def redact_secrets(text: str) -> str:
    """Mask bearer tokens and ``key=value`` style credentials in ``text``."""
    for pattern in _SECRET_PATTERNS:
        text = pattern.sub(lambda m: m.group(1) + REDACTED, text)
    return text


class SecretRedactingFilter(logging.Filter):
    """Rewrites a record's message with credentials masked."""

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        redacted = redact_secrets(message)
        if redacted != message:
            record.msg = redacted
            record.args = None
        return True


def quiet_third_party_loggers(level: int = logging.WARNING) -> None:
    for name in THIRD_PARTY_LOGGERS:
        logging.getLogger(name).setLevel(level)


def setup_logging(level: str = "INFO") -> None:
    """Configure root logging for the backend.

    Call once at startup (main.py). Subsequent calls are no-ops.
    """
    global _configured
    if _configured:
        return

    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
        stream=sys.stdout,
        force=True,
    )
    for handler in logging.getLogger().handlers:
        handler.addFilter(SecretRedactingFilter())
    quiet_third_party_loggers()
    _configured = True


def get_logger(name: str) -> logging.Logger:
    """Return a logger scoped to the backend namespace."""
    return logging.getLogger(name)
