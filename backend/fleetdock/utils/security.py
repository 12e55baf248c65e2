"""Security utilities for log hygiene.

- Log injection: sanitize remote output and user input before logging
- Sensitive data exposure: mask secrets embedded in command lines
"""

import re
from typing import Iterable, Union


def sanitize_log_message(msg: Union[str, bytes, int, float, None]) -> str:
    """Remove newlines and control characters from log messages.

    Examples:
        >>> sanitize_log_message("Container\\nmalicious\\nlog")
        'Containermaliciouslog'
    """
    if msg is None:
        return ""

    if isinstance(msg, bytes):
        msg = msg.decode("utf-8", errors="replace")

    return re.sub(r'[\n\r\t\x00-\x1f\x7f-\x9f]', '', str(msg))


def mask_sensitive(value: Union[str, None], visible_chars: int = 4, mask_char: str = "*") -> str:
    """Mask sensitive values, showing only the last N characters.

    Examples:
        >>> mask_sensitive("sk_live_1234567890abcdef")
        '***cdef'
        >>> mask_sensitive("abc", visible_chars=4)
        '***'
    """
    if not value or len(value) <= visible_chars:
        return mask_char * 3
    return f"{mask_char * 3}{value[-visible_chars:]}"


def redact_secrets(text: str, secrets: Iterable[Union[str, None]]) -> str:
    """Replace every occurrence of the given secrets in text with a mask.

    Used before echoing command lines (which may carry sshpass passwords or
    registry tokens) into logs and operation streams.
    """
    redacted = text
    for secret in secrets:
        if secret and len(secret) >= 3:
            redacted = redacted.replace(secret, "***")
    return redacted
