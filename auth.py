"""
Agent Error Detection
=====================

Shared text patterns for recognising authentication, rate-limit and quota
failures in agent output or exception messages. Used by the stream handler
in job_executor.py and by the error classifier in errors.py.
"""

import re

# Patterns that indicate authentication errors from Claude CLI / API
AUTH_ERROR_PATTERNS = [
    r"not\s+logged\s+in",
    r"not\s+authenticated",
    r"authentication\s*(_|\s)?(failed|required|error)",
    r"login\s+required",
    r"please\s+(run\s+)?['\"]?claude\s+login",
    r"unauthorized",
    r"invalid\s+(token|credential|api.?key)",
    r"expired\s+(token|session|credential)",
    r"could\s+not\s+authenticate",
    r"fix\s+external\s+api\s+key",
]

# Markers the agent emits inline (as assistant text) when its key is rejected
STREAM_AUTH_MARKERS = (
    "Invalid API key",
    "authentication_failed",
    "Fix external API key",
)

RATE_LIMIT_PATTERNS = [
    r"rate\s*limit",
    r"too\s+many\s+requests",
    r"\b429\b",
    r"overloaded",
]

QUOTA_PATTERNS = [
    r"quota",
    r"usage\s+limit",
    r"credit\s+balance",
    r"insufficient\s+(credits|funds|balance)",
    r"billing",
    r"resource_exhausted",
]

AUTH_FAILED_MESSAGE = (
    "Authentication failed: Invalid or expired API key. "
    "Please check your ANTHROPIC_API_KEY, or run 'claude login' to re-authenticate."
)


def _matches_any(patterns: list[str], text: str) -> bool:
    if not text:
        return False
    text_lower = text.lower()
    for pattern in patterns:
        if re.search(pattern, text_lower):
            return True
    return False


def is_auth_error(text: str) -> bool:
    """
    Check if text contains Claude CLI authentication error messages.

    Uses case-insensitive pattern matching against known error messages.

    Args:
        text: Output text to check

    Returns:
        True if any auth error pattern matches, False otherwise
    """
    return _matches_any(AUTH_ERROR_PATTERNS, text)


def contains_stream_auth_marker(text: str) -> bool:
    """True if a streamed assistant text block reports a rejected API key."""
    if not text:
        return False
    return any(marker in text for marker in STREAM_AUTH_MARKERS)


def is_rate_limit_error(text: str) -> bool:
    """Check if text looks like an API rate-limit response."""
    return _matches_any(RATE_LIMIT_PATTERNS, text)


def is_quota_error(text: str) -> bool:
    """Check if text looks like an exhausted usage quota or billing failure."""
    return _matches_any(QUOTA_PATTERNS, text)
