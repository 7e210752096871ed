"""
Sanitization Utility Module
Provides functions to sanitize untrusted mail content for logging and storage.
"""

import re
import unicodedata
from typing import Optional

import nh3

# ANSI escape sequences (terminal colors / cursor movement)
ANSI_ESCAPE_PATTERN = re.compile(r'\x1B(?:[@-Z\\-_]|\[[0-?]*[ -/]*[@-~])')


def sanitize_for_logging(text: Optional[str], max_length: int = 255) -> str:
    """
    Sanitize text for safe logging to prevent Log Injection (CRLF) and terminal manipulation.

    SECURITY STORY: Subjects, file names and header fragments come straight
    from the sender. Logging them raw lets an attacker forge log lines with an
    embedded CRLF or repaint an operator's terminal with ANSI codes.

    Args:
        text: The input string to sanitize.
        max_length: Maximum allowed length for the log entry (truncates if longer).

    Returns:
        Sanitized string safe for logging.
    """
    if not text:
        return ""

    # Bound the work done on hostile input before normalizing
    text = str(text)[:max_length * 4]

    text = unicodedata.normalize('NFKC', text)
    text = text.replace('\n', '\\n').replace('\r', '\\r')
    text = ANSI_ESCAPE_PATTERN.sub('', text)

    # Remove other non-printable control characters (ASCII 0-31 except tab)
    text = "".join(ch for ch in text if ch == '\t' or ord(ch) >= 32)

    if len(text) > max_length:
        text = text[:max_length] + "..."

    return text


def sanitize_html(html: Optional[str]) -> str:
    """
    Strip script-bearing markup from an HTML body.

    SECURITY STORY: Stored HTML is later served to webmail clients. nh3
    (ammonia) removes <script>, event-handler attributes and javascript: URLs
    while keeping ordinary formatting markup.

    Args:
        html: HTML string; None and "" are tolerated.

    Returns:
        Safe HTML ("" for empty input).
    """
    if not html:
        return ""
    return nh3.clean(html)
