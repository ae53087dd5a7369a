"""
keel.redact — Secret redaction for reports and error messages.

Resolved inputs are written to deployment reports and failure messages
so that a failing call can be reproduced against the backend. Values
under secret-looking keys, and PEM blocks anywhere, are masked first.
"""

from __future__ import annotations

import re
from typing import Any

REDACTED = "[REDACTED]"

_SECRET_KEY = re.compile(
    r"(password|passwd|secret|api[_-]?key|access[_-]?key|private[_-]?key|"
    r"credential|auth[_-]?token|bearer)",
    re.IGNORECASE,
)
_PEM = re.compile(r"-----BEGIN [A-Z ]*PRIVATE KEY-----")


def is_secret_key(key: Any) -> bool:
    return isinstance(key, str) and bool(_SECRET_KEY.search(key))


def redact(value: Any) -> Any:
    """Return a copy of value with secrets masked.

    >>> redact({"user": "admin", "db_password": "hunter2"})
    {'user': 'admin', 'db_password': '[REDACTED]'}
    """
    if isinstance(value, dict):
        return {
            k: REDACTED if is_secret_key(k) else redact(v)
            for k, v in value.items()
        }
    if isinstance(value, list):
        return [redact(item) for item in value]
    if isinstance(value, tuple):
        return tuple(redact(item) for item in value)
    if isinstance(value, str) and _PEM.search(value):
        return REDACTED
    return value
