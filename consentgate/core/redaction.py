"""Secret redaction for provision log lines and process logs.

Every message persisted to ``provision_logs`` and every record emitted through the
root logger passes through :func:`redact_secrets`. Pattern matching covers the
credential shapes this service handles (cloud access keys, billing API keys,
bearer tokens); configured secret values are also replaced verbatim.
"""
from __future__ import annotations

import re

from consentgate.core.config import get_settings


REDACTED = "[REDACTED]"

# Ignore very short configured values so ordinary words are never masked.
MIN_SECRET_LENGTH = 8

SECRET_PATTERNS: tuple[re.Pattern[str], ...] = (
    # Cloud access key ids (20 characters).
    re.compile(r"\b(?:AKIA|ASIA|AIDA|AROA)[A-Z0-9]{16}\b"),
    # Cloud secret access keys (40 characters of base64 alphabet).
    re.compile(r"(?<![A-Za-z0-9/+=])[A-Za-z0-9/+]{40}(?![A-Za-z0-9/+=])"),
    # Billing provider keys and webhook secrets.
    re.compile(r"\b(?:sk|rk|pk)_(?:live|test)_[A-Za-z0-9]{8,}\b"),
    re.compile(r"\bwhsec_[A-Za-z0-9]{8,}\b"),
    # Bearer tokens.
    re.compile(r"Bearer\s+[A-Za-z0-9._~+/=-]{16,}"),
    # key=value style credentials in error strings.
    re.compile(
        r"(?i)\b(?:api[_-]?key|secret[_-]?access[_-]?key|session[_-]?token|password|token)"
        r"(\s*[=:]\s*)[^\s,;\"']+"
    ),
)


def _configured_secrets() -> list[str]:
    settings = get_settings()
    values = [
        settings.aws_secret_access_key,
        settings.aws_session_token,
        settings.billing_webhook_secret,
    ]
    secrets = [value for value in values if value and len(value) >= MIN_SECRET_LENGTH]
    # Replace longer secrets first so overlapping values are fully masked.
    return sorted(secrets, key=len, reverse=True)


def _mask_match(match: re.Match[str]) -> str:
    # Keep the key name for key=value matches so the message stays readable.
    if match.lastindex:
        prefix = match.group(0)[: match.start(1) - match.start(0)]
        return f"{prefix}{match.group(1)}{REDACTED}"
    return REDACTED


def redact_secrets(text: str) -> str:
    if not text:
        return text
    result = text
    for secret in _configured_secrets():
        if secret in result:
            result = result.replace(secret, REDACTED)
    for pattern in SECRET_PATTERNS:
        result = pattern.sub(_mask_match, result)
    return result


def is_clean(text: str) -> bool:
    return redact_secrets(text) == text
