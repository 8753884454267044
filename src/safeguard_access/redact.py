"""
Redaction helpers for diagnostic logging.

Bearer tokens and checked-out secrets must never reach a log line in full.
"""

import json
from typing import Mapping, Optional, Union

BodyType = Union[bytes, str]


def mask_bearer(value: str) -> str:
    """Mask an Authorization header value."""
    if value.lower().startswith("bearer ") and len(value) > 7:
        token = value[7:]
        if len(token) > 10:
            return f"Bearer {token[:6]}***{token[-4:]}"
        return "Bearer ***"
    return "***"


def safe_headers(headers: Mapping[str, str]) -> dict[str, str]:
    """Return a copy of *headers* that is safe to log."""
    safe = {}
    for key, value in headers.items():
        if key.lower() == "authorization":
            safe[key] = mask_bearer(value)
        else:
            safe[key] = value
    return safe


def _json_string(text: str) -> Optional[str]:
    """Decode *text* if it is a bare JSON string, else None."""
    if len(text) < 2 or not (text.startswith('"') and text.endswith('"')):
        return None
    try:
        value = json.loads(text)
    except ValueError:
        return None
    return value if isinstance(value, str) else None


def is_checkout_path(path: str) -> bool:
    return path.split("?", 1)[0].rstrip("/").endswith("CheckOutPassword")


def safe_response_body(body: BodyType, path: str = "") -> str:
    """
    Return a response body that is safe to log.

    A bare JSON string is masked to its first and last two characters (or
    "***" when short) if it has no embedded whitespace, or if it came from a
    checkout path, where any string is a secret. JSON objects and arrays pass
    through unchanged.
    """
    text = body.decode("utf-8", errors="replace") if isinstance(body, bytes) else body
    secret = _json_string(text.strip())
    if not secret:
        return text
    if any(c.isspace() for c in secret) and not is_checkout_path(path):
        return text

    if len(secret) > 8:
        return f'"{secret[:2]}***{secret[-2:]}"'
    return '"***"'
