"""
Helpers for writing untrusted values into logs.
"""

import logging
import re
from typing import Any

logger = logging.getLogger(__name__)

_CONTROL_CHARS_RE = re.compile(r'[\x00-\x1f\x7f-\x9f]')
# Matches Unicode line separators (LINE SEPARATOR and PARAGRAPH SEPARATOR)
_UNICODE_NEWLINES_RE = re.compile(r'[\u2028\u2029]')
# Matches explicit CR, LF, and CRLF for maximal coverage
_STANDARD_NEWLINES_RE = re.compile(r'(\r\n|\r|\n)')

_MAX_LOGGED_LENGTH = 500


def sanitize_for_logging(value: Any) -> str:
    """
    Sanitize a value for safe logging by removing ALL newlines (including Unicode and CRLF)
    and control characters, to defend against log injection.

    Tool servers are untrusted subprocesses, so everything they send back
    (error text, tool names, stderr lines) goes through here before it is logged.

    Args:
        value: Any value to sanitize. If not a string, it will be converted
               to string representation first.

    Returns:
        str: Sanitized string with all control and newline characters removed.

    Examples:
        >>> sanitize_for_logging("Hello\\nWorld")
        'HelloWorld'
        >>> sanitize_for_logging("Test\\x1b[31mRed\\x1b[0m")
        'TestRed'
        >>> sanitize_for_logging("Fake\u2028Log")
        'FakeLog'
        >>> sanitize_for_logging(123)
        '123'
    """
    if value is None:
        return ''
    if not isinstance(value, str):
        value = str(value)
    value = _CONTROL_CHARS_RE.sub('', value)
    value = _UNICODE_NEWLINES_RE.sub('', value)
    value = _STANDARD_NEWLINES_RE.sub('', value)
    return value


def truncate_for_logging(value: Any, limit: int = _MAX_LOGGED_LENGTH) -> str:
    """Sanitize and cut a value to ``limit`` characters."""
    text = sanitize_for_logging(value)
    if len(text) <= limit:
        return text
    return f"{text[:limit]}... ({len(text) - limit} more chars)"


def summarize_tool_arguments_for_logging(arguments: Any) -> str:
    """Return a non-sensitive summary of tool call arguments.

    Argument values can contain user content, so only the shape is logged:
    the number of arguments and their (sanitized) key names.
    """
    if not isinstance(arguments, dict):
        return f"arguments_type={sanitize_for_logging(type(arguments).__name__)}"
    keys = ",".join(sanitize_for_logging(k) for k in sorted(arguments.keys(), key=str))
    return f"arguments_count={len(arguments)} argument_keys=[{keys}]"
