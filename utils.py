#!/usr/bin/env python3
"""
Utility functions for the feed commentary service.

Shared helpers used by the ingest stage, the summarize stage, the pipeline
runner and the HTTP API: URL/domain handling, timestamp formatting and
string trimming for diagnostics.
"""

from datetime import datetime, timezone
from time import time
from typing import Optional
from urllib.parse import urlparse

from bs4 import BeautifulSoup

from config import get_logger

# Module-specific logger
logger = get_logger("utils")


def validate_url(url: str) -> bool:
    """Validate if a string is a properly formatted http(s) URL.

    Args:
        url: The URL string to validate

    Returns:
        True if the URL appears to be valid, False otherwise
    """
    if not url or not isinstance(url, str):
        return False

    url = url.strip()
    if not url:
        return False

    try:
        parsed = urlparse(url)
    except ValueError:
        return False
    return parsed.scheme in ('http', 'https') and '.' in (parsed.hostname or '')


def extract_domain(url: Optional[str]) -> str:
    """Return the lowercase host of a URL without a leading ``www.``.

    Returns an empty string when the URL has no parseable host.
    """
    if not url or not isinstance(url, str):
        return ""
    try:
        host = urlparse(url.strip()).hostname or ""
    except ValueError:
        return ""
    host = host.lower()
    if host.startswith("www."):
        host = host[4:]
    return host


def html_to_text(value: Optional[str]) -> str:
    """Reduce an HTML fragment (feed titles sometimes carry markup) to plain text."""
    if not value:
        return ""
    if '<' not in value and '&' not in value:
        return " ".join(value.split())
    text = BeautifulSoup(value, 'html.parser').get_text(" ")
    return " ".join(text.split())


def now_ts() -> int:
    """Current time as an integer Unix timestamp."""
    return int(time())


def iso_timestamp(timestamp: Optional[int]) -> Optional[str]:
    """Format a Unix timestamp as an ISO-8601 UTC string (None passes through)."""
    if timestamp in (None, ""):
        return None
    try:
        return datetime.fromtimestamp(int(timestamp), tz=timezone.utc).isoformat().replace("+00:00", "Z")
    except (OSError, OverflowError, ValueError, TypeError):
        return None


def format_duration(seconds: float) -> str:
    """Format a duration in seconds to a human-readable string.

    Args:
        seconds: Duration in seconds

    Returns:
        Formatted duration string (e.g., "1h 23m 45s")
    """
    if seconds < 0:
        return "0s"

    hours = int(seconds // 3600)
    minutes = int((seconds % 3600) // 60)
    secs = int(seconds % 60)

    parts = []
    if hours > 0:
        parts.append(f"{hours}h")
    if minutes > 0:
        parts.append(f"{minutes}m")
    if secs > 0 or not parts:  # Always show seconds if nothing else
        parts.append(f"{secs}s")

    return " ".join(parts)


def tail_text(text: str, max_length: int, prefix: str = "...") -> str:
    """Keep the last ``max_length`` characters of a string (diagnostic output tails)."""
    if not text or len(text) <= max_length:
        return text
    if len(prefix) >= max_length:
        return text[-max_length:]
    return prefix + text[-(max_length - len(prefix)):]
