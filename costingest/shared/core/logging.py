import logging
import re
import sys
from typing import Any, cast

import structlog

from costingest.shared.core.config import get_settings


_SENSITIVE_FIELDS = {
    "password",
    "token",
    "secret",
    "authorization",
    "api_key",
    "apikey",
    "access_token",
    "client_secret",
    "private_key",
    "secret_access_key",
    "session_token",
    "external_id",
    "service_account_json",
}
_SENSITIVE_SUFFIXES = ("_token", "_secret", "_password", "_key")
# AWS access key ids (long-term and temporary)
_ACCESS_KEY_PATTERN = re.compile(r"\b(?:AKIA|ASIA)[A-Z0-9]{16}\b")


def _is_sensitive_key(key: Any) -> bool:
    key_norm = str(key).lower().strip().replace("-", "_")
    if key_norm in _SENSITIVE_FIELDS:
        return True
    return key_norm.endswith(_SENSITIVE_SUFFIXES)


def secret_redactor(
    _logger: Any, _method_name: str, event_dict: dict[str, Any]
) -> dict[str, Any]:
    """
    Recursively redact credential material from log events.

    Provider credentials flow through the adapters and the delegation helper;
    none of them may reach rendered logs.
    """

    def redact(data: Any) -> Any:
        if isinstance(data, dict):
            return {
                k: ("[REDACTED]" if _is_sensitive_key(k) else redact(v))
                for k, v in data.items()
            }
        if isinstance(data, list):
            return [redact(item) for item in data]
        if isinstance(data, str):
            return _ACCESS_KEY_PATTERN.sub("[ACCESS_KEY_REDACTED]", data)
        return data

    redacted = redact(event_dict)
    if isinstance(redacted, dict):
        return cast(dict[str, Any], redacted)
    return {}


def setup_logging() -> None:
    settings = get_settings()

    base_processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        secret_redactor,
    ]

    if settings.DEBUG:
        renderer: Any = structlog.dev.ConsoleRenderer()
        processors = base_processors + [renderer]
        min_level = logging.DEBUG
    else:
        renderer = structlog.processors.JSONRenderer()
        processors = base_processors + [structlog.processors.dict_tracebacks, renderer]
        min_level = logging.INFO

    structlog.configure(
        processors=cast(Any, processors),
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=True,
    )

    # Route library logs (botocore, azure, httpx) through the same stream.
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stderr,
        level=min_level,
    )
    for noisy in ("botocore", "aiobotocore", "azure.core.pipeline", "httpx"):
        logging.getLogger(noisy).setLevel(logging.WARNING)
