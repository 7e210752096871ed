"""
Security Validators Module
Centralizes security limits and filename handling for attachment storage

SECURITY STORY: These validators protect against various attacks:
- MAX_MIME_PARTS: Prevents MIME bomb attacks (deeply nested MIME structures)
- sanitize_filename: Keeps attacker-chosen attachment names from carrying
  path components into storage or back out in rebuilt messages
- is_safe_storage_name: Refuses storage names that would resolve outside
  the attachments directory
"""

import re
import logging

MAX_MIME_PARTS = 100  # Limits MIME bomb attacks (CWE-674: Uncontrolled Recursion)

# Filename sanitization patterns to prevent path traversal (CWE-22)
FILENAME_SANITIZE_PATTERN = re.compile(r"[^\w\s\-_\.]")
FILENAME_COLLAPSE_DOTS_PATTERN = re.compile(r"\.{2,}")

# Storage names are produced by AttachmentSpooler: <hex checksum>-<disambiguator>
STORAGE_NAME_PATTERN = re.compile(r"^[0-9a-f]{32}-[0-9A-Za-z.]+$")

# Windows reserved filenames that cannot be used regardless of extension
WINDOWS_RESERVED_NAMES = {
    "CON", "PRN", "AUX", "NUL",
    "COM1", "COM2", "COM3", "COM4", "COM5", "COM6", "COM7", "COM8", "COM9",
    "LPT1", "LPT2", "LPT3", "LPT4", "LPT5", "LPT6", "LPT7", "LPT8", "LPT9"
}

DEFAULT_ATTACHMENT_NAME = "attachment.bin"

logger = logging.getLogger(__name__)


def sanitize_filename(filename: str, default: str = DEFAULT_ATTACHMENT_NAME) -> str:
    """
    Sanitize an attachment filename (CWE-22)

    Uses a whitelist approach - only alphanumeric, spaces, hyphens,
    underscores, and single dots survive.

    Args:
        filename: Original filename from the MIME part
        default: Name to use when nothing safe is left

    Returns:
        Sanitized filename

    Example:
        >>> sanitize_filename("../../etc/passwd")
        "passwd"
        >>> sanitize_filename("report.pdf")
        "report.pdf"
    """
    if not filename:
        return default

    # Remove path components before character filtering
    filename = filename.split("/")[-1].split("\\")[-1]

    sanitized = FILENAME_SANITIZE_PATTERN.sub("", filename)
    sanitized = FILENAME_COLLAPSE_DOTS_PATTERN.sub(".", sanitized)
    sanitized = sanitized.strip(". ")

    if not sanitized:
        return default

    base_name = sanitized.split('.')[0].strip().upper()
    if base_name in WINDOWS_RESERVED_NAMES:
        sanitized = "_" + sanitized

    return sanitized[:255]


def is_safe_storage_name(name: str) -> bool:
    """
    Check that a storage name is one the spooler could have produced.

    Records come back from the database, so a tampered ``path`` field must
    not be able to point the builder at arbitrary files.
    """
    if not name or not STORAGE_NAME_PATTERN.match(name):
        logger.warning("Rejected attachment storage name %r", name[:80] if name else name)
        return False
    return True
