"""Unified logging & OpenTelemetry setup.

Provides:
- Structured JSON logging with optional trace/span identifiers
- Config-derived log level
- Standard file output (project_root/logs/app.jsonl) with APP_LOG_DIR override
- FastAPI instrumentation hook and a tracer for tool-call spans
"""

from __future__ import annotations

import json
import logging
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict

from opentelemetry import trace
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.logging import LoggingInstrumentor
from opentelemetry.sdk.resources import SERVICE_NAME, SERVICE_VERSION, Resource
from opentelemetry.sdk.trace import TracerProvider

from mcpchat.version import VERSION

SERVICE = "mcpchat-core"


class JSONFormatter(logging.Formatter):
    """Format log records as JSON lines."""

    def format(self, record: logging.LogRecord) -> str:  # noqa: D401
        span = trace.get_current_span()
        trace_id = span_id = None
        if span and span.is_recording():
            sc = span.get_span_context()
            if sc.is_valid:
                trace_id = f"{sc.trace_id:032x}"
                span_id = f"{sc.span_id:016x}"

        entry: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
            "process_id": os.getpid(),
            "task_name": getattr(record, "taskName", None),
        }
        if trace_id:
            entry["trace_id"] = trace_id
        if span_id:
            entry["span_id"] = span_id
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)

        excluded = {
            "name", "msg", "args", "levelname", "levelno", "pathname", "filename", "module", "lineno",
            "funcName", "created", "msecs", "relativeCreated", "thread", "threadName", "processName",
            "process", "exc_info", "exc_text", "stack_info", "getMessage", "taskName",
            "otelSpanID", "otelTraceID", "otelTraceSampled", "otelServiceName",
        }
        for k, v in record.__dict__.items():
            if k not in excluded:
                entry[f"extra_{k}"] = v
        return json.dumps(entry, default=str)


class LoggingConfig:
    """Configure OpenTelemetry + structured logging."""

    def __init__(
        self,
        log_level: str = "INFO",
        debug_mode: bool = False,
        service_name: str = SERVICE,
        service_version: str = VERSION,
    ) -> None:
        self.service_name = service_name
        self.service_version = service_version
        self.is_development = debug_mode or os.getenv("ENVIRONMENT", "production").lower() in {"dev", "development"}
        self.log_level = self._resolve_level(log_level)
        if os.getenv("APP_LOG_DIR"):
            self.logs_dir = Path(os.getenv("APP_LOG_DIR"))
        else:
            # mcpchat/core/logging_config.py -> project root is 2 levels up
            project_root = Path(__file__).resolve().parents[2]
            self.logs_dir = project_root / "logs"
        self.log_file = self.logs_dir / "app.jsonl"
        self.logs_dir.mkdir(parents=True, exist_ok=True)
        self._setup_telemetry()
        self._setup_logging()

    @staticmethod
    def _resolve_level(level_name: str) -> int:
        level = getattr(logging, (level_name or "INFO").upper(), None)
        return level if isinstance(level, int) else logging.INFO

    def _setup_telemetry(self) -> None:
        resource = Resource.create(
            {
                SERVICE_NAME: self.service_name,
                SERVICE_VERSION: self.service_version,
                "environment": "development" if self.is_development else "production",
            }
        )
        trace.set_tracer_provider(TracerProvider(resource=resource))

    def _setup_logging(self) -> None:
        root = logging.getLogger()
        for h in root.handlers[:]:
            root.removeHandler(h)

        file_handler = logging.FileHandler(self.log_file, encoding="utf-8")
        file_handler.setFormatter(JSONFormatter())
        file_handler.setLevel(self.log_level)
        root.addHandler(file_handler)
        root.setLevel(self.log_level)

        if self.is_development:
            console = logging.StreamHandler()
            console.setFormatter(logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s"))
            console.setLevel(logging.INFO)
            root.addHandler(console)

        # The MCP SDK logs every JSON-RPC frame at DEBUG
        for noisy in ("mcp.client", "mcp.shared", "fastmcp", "httpx"):
            logging.getLogger(noisy).setLevel(max(self.log_level, logging.INFO))

        LoggingInstrumentor().instrument(set_logging_format=False)

    def instrument_fastapi(self, app) -> None:  # noqa: ANN001
        FastAPIInstrumentor.instrument_app(app)


def setup_logging(log_level: str = "INFO", debug_mode: bool = False) -> LoggingConfig:
    return LoggingConfig(log_level=log_level, debug_mode=debug_mode)


def get_tracer(name: str) -> trace.Tracer:
    """Tracer for manual spans (falls back to the no-op provider before setup)."""
    return trace.get_tracer(name, VERSION)
