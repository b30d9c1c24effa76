"""Loguru sink setup and redaction of logged request/response bodies."""

from __future__ import annotations

import sys
from typing import Any

from loguru import logger

from tether.core.config.schema import LoggingConfig

SENSITIVE_KEYS = frozenset({
    "authorization",
    "api_key",
    "api-key",
    "apikey",
    "x-api-key",
    "token",
    "access_token",
    "secret",
    "password",
})

_FORMAT = (
    "<green>{time:HH:mm:ss}</green> | <level>{level: <8}</level> | "
    "<cyan>{name}</cyan> - <level>{message}</level>"
)


def setup_logging(config: LoggingConfig | None = None) -> None:
    """Replace loguru's default sink with the configured ones. Call once at startup."""
    config = config or LoggingConfig()
    logger.remove()
    logger.add(sys.stderr, level=config.level, format=_FORMAT, serialize=config.serialize)
    if config.file:
        logger.add(
            config.file,
            level=config.level,
            rotation="10 MB",
            retention=5,
            serialize=config.serialize,
        )


def redact(payload: Any, redact_content: bool = True) -> Any:
    """
    Return a copy of ``payload`` that is safe to log.

    Parameters
    ----------
    payload
        Request/response body or headers (dicts and lists are walked recursively).
    redact_content
        Replace every ``content`` string with a ``<N chars>`` marker.

    Returns
    -------
    Any
        The redacted copy. The input is never mutated.
    """
    if isinstance(payload, dict):
        out: dict[Any, Any] = {}
        for key, value in payload.items():
            lowered = str(key).lower()
            if lowered in SENSITIVE_KEYS:
                out[key] = "***"
            elif redact_content and lowered in ("content", "arguments") and isinstance(value, str):
                out[key] = f"<{len(value)} chars>"
            else:
                out[key] = redact(value, redact_content)
        return out
    if isinstance(payload, (list, tuple)):
        return [redact(item, redact_content) for item in payload]
    return payload
