"""
Sanitization of error messages and log contexts.

Errors surfaced to users must not leak API keys, bearer tokens, file paths or
internal identifiers. The full error is always logged before sanitizing.
"""

import json
import logging
import os
import re
from typing import Any

logger = logging.getLogger(__name__)

REDACTED = "********"

DEFAULT_SENSITIVE_FIELDS = (
    "password",
    "pwd",
    "pass",
    "secret",
    "token",
    "apikey",
    "api_key",
    "accesstoken",
    "access_token",
    "refreshtoken",
    "refresh_token",
    "clientsecret",
    "client_secret",
    "privatekey",
    "private_key",
    "secretkey",
    "secret_key",
    "auth",
    "authorization",
    "credential",
    "credentials",
    "x-api-key",
    "x-auth-token",
    "cookie",
)

_SECRET_PATTERNS = [
    # Bearer/Basic authorization values
    re.compile(r"\b(Bearer|Basic)\s+[A-Za-z0-9._~+/=-]+", re.IGNORECASE),
    # Provider style keys: sk-..., pk-..., rk-...
    re.compile(r"\b(?:sk|pk|rk)-[A-Za-z0-9_-]{8,}"),
    # key=value / key: value secrets
    re.compile(
        r"\b(api[_-]?key|apikey|token|secret|password|passwd|pwd|access[_-]?token)"
        r"(\s*[=:]\s*)(\"[^\"]*\"|'[^']*'|[^\s,;&]+)",
        re.IGNORECASE,
    ),
]
_EMAIL_PATTERN = re.compile(r"[^@\s'\"<>()]+@[^@\s'\"<>()]+\.[A-Za-z]{2,}")
_URL_PATTERN = re.compile(r"\bhttps?://[^\s'\"<>]+", re.IGNORECASE)
_PATH_PATTERN = re.compile(r"(?:[A-Za-z]:\\[^\s'\":]+|(?<![\w.])/(?:[\w.-]+/)+[\w.-]*)")
_UUID_PATTERN = re.compile(
    r"\b[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12}\b"
)
_HEX_ID_PATTERN = re.compile(r"\b[0-9a-fA-F]{24,}\b")

_QUOTA_WORDS = ("quota", "rate limit", "exceeded")
_KEY_WORDS = ("api key", "apikey", "api_key", "invalid key", "expired")
_AUTH_WORDS = ("authentication", "unauthorized", "forbidden")
_SENSITIVE_WORDS = (
    *_QUOTA_WORDS,
    *_KEY_WORDS,
    *_AUTH_WORDS,
    "credential",
    "billing",
    "token",
)
_SENSITIVE_STATUS = {401, 403, 429}


def get_error_message(error: Any) -> str:
    """Best-effort message extraction; engine errors yield their public message."""
    if isinstance(error, BaseException):
        message = getattr(error, "public_message", None) or getattr(error, "message", None)
        return message if isinstance(message, str) else str(error)
    if isinstance(error, str):
        return error
    try:
        return json.dumps(error)
    except (TypeError, ValueError):
        return str(error)


def scrub_text(text: str) -> str:
    """Replace secrets, URLs, paths, emails and internal ids in free text."""
    for pattern in _SECRET_PATTERNS:
        if pattern.groups >= 3:
            text = pattern.sub(lambda m: f"{m.group(1)}{m.group(2)}{REDACTED}", text)
        elif pattern.groups == 1:
            text = pattern.sub(lambda m: f"{m.group(1)} {REDACTED}", text)
        else:
            text = pattern.sub(REDACTED, text)
    text = _URL_PATTERN.sub("[url]", text)
    text = _EMAIL_PATTERN.sub(REDACTED, text)
    text = _PATH_PATTERN.sub("[path]", text)
    text = _UUID_PATTERN.sub("[id]", text)
    text = _HEX_ID_PATTERN.sub("[id]", text)
    return text


def _status_code(error: Any) -> int | None:
    status = getattr(error, "status_code", None)
    if isinstance(status, int):
        return status
    details = getattr(error, "details", None)
    if isinstance(details, dict) and isinstance(details.get("status_code"), int):
        return details["status_code"]
    response = getattr(error, "response", None)
    status = getattr(response, "status_code", None)
    return status if isinstance(status, int) else None


def sanitize_error_message(error: Any) -> str:
    """
    Turn an error into a message that is safe to show to end users.

    Credential, quota and authentication failures are mapped to fixed
    messages; everything else is scrubbed of secrets and internal details.
    """
    message = get_error_message(error)
    lower = message.lower()

    is_sensitive = any(word in lower for word in _SENSITIVE_WORDS)
    if not is_sensitive and _status_code(error) in _SENSITIVE_STATUS:
        is_sensitive = True

    if is_sensitive:
        logger.debug("Sensitive error detected, returning generic message")
        if any(word in lower for word in _QUOTA_WORDS) or _status_code(error) == 429:
            return (
                "API quota or rate limit exceeded. Please check your API plan and "
                "billing details, or try again later."
            )
        if any(word in lower for word in _KEY_WORDS):
            return (
                "API key issue detected. Please verify your API key configuration "
                "in the credentials settings."
            )
        if any(word in lower for word in _AUTH_WORDS) or _status_code(error) in {401, 403}:
            return "Authentication failed. Please check your API credentials configuration."
        if "billing" in lower:
            return (
                "Billing or subscription issue detected. Please check your account "
                "billing details."
            )
        return (
            "An authentication or configuration error occurred. Please check your "
            "API credentials and settings."
        )

    return scrub_text(message)


def _sensitive_fields() -> tuple[str, ...]:
    raw = os.getenv("LOG_SANITIZE_FIELDS")
    if not raw:
        return DEFAULT_SENSITIVE_FIELDS
    return tuple(f.strip().lower() for f in raw.split(",") if f.strip())


def _sanitize(value: Any, fields: tuple[str, ...], depth: int) -> Any:
    if depth > 10:
        return value
    if isinstance(value, dict):
        out = {}
        for key, item in value.items():
            if str(key).lower() in fields:
                out[key] = REDACTED
            else:
                out[key] = _sanitize(item, fields, depth + 1)
        return out
    if isinstance(value, list | tuple):
        return [_sanitize(item, fields, depth + 1) for item in value]
    if isinstance(value, bytes | bytearray):
        return "[bytes]"
    if isinstance(value, str):
        return _EMAIL_PATTERN.sub(REDACTED, value)
    return value


def sanitize_log_context(context: Any) -> Any:
    """
    Recursively redact sensitive keys (headers, credentials) in a log context.

    Field names can be overridden with LOG_SANITIZE_FIELDS (comma separated).
    """
    if not isinstance(context, dict | list | tuple):
        return context
    return _sanitize(context, _sensitive_fields(), 0)
