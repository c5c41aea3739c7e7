"""Security utilities for log sanitization and secret masking."""

import re
from typing import Any, Dict, Iterable, Optional, Union


def sanitize_log_message(msg: Union[str, bytes, int, float, None]) -> str:
    """Remove newlines and control characters from log messages.

    Engine events and script output are logged verbatim, so they are
    sanitized first to keep one log record per line.

    Examples:
        >>> sanitize_log_message("Container\\nmalicious\\nlog")
        'Containermaliciouslog'
    """
    if msg is None:
        return ""
    if isinstance(msg, bytes):
        msg = msg.decode("utf-8", errors="replace")
    return re.sub(r'[\n\r\t\x00-\x1f\x7f-\x9f]', '', str(msg))


def mask_secret(value: Optional[str], mask_char: str = "*") -> Optional[str]:
    """Mask a secret keeping its first and last characters.

    Examples:
        >>> mask_secret("secret_token")
        's**********n'
        >>> mask_secret("ab")
        '**'
        >>> mask_secret(None) is None
        True
    """
    if value is None:
        return None
    value = str(value)
    if len(value) <= 2:
        return mask_char * len(value)
    return f"{value[0]}{mask_char * (len(value) - 2)}{value[-1]}"


def mask_fields(configuration: Dict[str, Any], secret_fields: Iterable[str]) -> Dict[str, Any]:
    """Return a copy of a configuration dict with the given fields masked.

    Nested dicts are masked recursively with the same field names.
    """
    secrets = set(secret_fields)
    masked: Dict[str, Any] = {}
    for key, value in configuration.items():
        if isinstance(value, dict):
            masked[key] = mask_fields(value, secrets)
        elif key in secrets and value is not None:
            masked[key] = mask_secret(value)
        else:
            masked[key] = value
    return masked
