"""
Metrics logging utility for tracking tool activity without capturing sensitive data.

This module provides a centralized way to log metrics that:
- Use the [METRIC] prefix for easy filtering
- Include the chat session id for tracking
- Only log metadata (counts, durations, stages)
- NEVER log sensitive data like tool arguments, results or error details

Usage:
    from mcpchat.core.metrics_logger import log_metric

    log_metric("tool_call", session_id, server="fs", tool="read_file", stage="completed")
    log_metric("server_connect", None, server="fs", duration_ms=812)
"""

import logging
from typing import Any, Optional

from mcpchat.core.log_sanitizer import sanitize_for_logging

logger = logging.getLogger(__name__)

_metrics_enabled = False


def configure_metrics(enabled: bool) -> None:
    """Turn [METRIC] lines on or off (FEATURE_METRICS_LOGGING_ENABLED)."""
    global _metrics_enabled
    _metrics_enabled = bool(enabled)


def metrics_enabled() -> bool:
    return _metrics_enabled


def log_metric(
    event_type: str,
    session_id: Optional[str] = None,
    **kwargs: Any
) -> None:
    """
    Log a metric event.

    Does nothing unless metrics were enabled with ``configure_metrics``.

    Args:
        event_type: Type of event (e.g., "tool_call", "server_connect", "health_check")
        session_id: Chat session id (will be sanitized)
        **kwargs: Additional metadata to log (only non-sensitive data)
    """
    if not _metrics_enabled:
        return

    sanitized_session = sanitize_for_logging(session_id) if session_id else "-"

    parts = [f"[METRIC] [{sanitized_session}] {event_type}"]

    if kwargs:
        metadata_parts = [
            f"{key}={sanitize_for_logging(value)}"
            for key, value in kwargs.items()
        ]
        parts.append(" ".join(metadata_parts))

    logger.info(" ".join(parts))
