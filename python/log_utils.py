"""
Shared logging helpers for the registry.

Keeps user-supplied values (filter inputs, user agents, paths) from
injecting fake entries into log files.
"""

import re
from typing import Any


def sanitize_for_logging(text: Any) -> str:
    """Sanitize user input for safe logging, preventing log injection

    Removes newlines, carriage returns, and other control characters
    that could be used to inject fake log entries.

    Args:
        text: User input text

    Returns:
        Sanitized text safe for logging
    """
    if text is None or text == '':
        return ''
    # Remove newlines, carriage returns, and other control characters
    sanitized = re.sub(r'[\r\n\x00-\x1f\x7f-\x9f]', ' ', str(text))
    # Collapse multiple spaces
    sanitized = re.sub(r'\s+', ' ', sanitized).strip()
    return sanitized[:500] if len(sanitized) > 500 else sanitized


def truncate(text: str, max_length: int) -> str:
    """Truncate already-sanitized text, marking the cut."""
    if len(text) > max_length:
        return text[:max_length] + "...(truncated)"
    return text
