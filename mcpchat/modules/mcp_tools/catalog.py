"""Immutable per-generation tool catalogs."""

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterator, List, Mapping, Optional, Sequence, Tuple

from mcpchat.core.log_sanitizer import sanitize_for_logging
from mcpchat.domain.errors import ProtocolError
from mcpchat.domain.executions.models import utc_now
from mcpchat.domain.tools.models import ToolDescriptor

logger = logging.getLogger(__name__)

_CATEGORY_KEYWORDS: Tuple[Tuple[str, Tuple[str, ...]], ...] = (
    ("filesystem", ("file", "read", "write")),
    ("web", ("web", "http", "url")),
    ("search", ("search", "query")),
    ("version-control", ("git", "repo")),
)

DANGEROUS_KEYWORDS = (
    "delete", "remove", "destroy", "kill", "terminate",
    "format", "wipe", "clear", "reset", "drop",
    "execute", "run", "shell", "command", "script",
)


def categorize_tool(tool_name: str) -> str:
    """Guess a display category from the tool name; first match wins."""
    name = tool_name.lower()
    for category, keywords in _CATEGORY_KEYWORDS:
        if any(keyword in name for keyword in keywords):
            return category
    return "general"


def is_dangerous_tool(tool_name: str, description: Optional[str] = None) -> bool:
    text = f"{tool_name} {description or ''}".lower()
    return any(keyword in text for keyword in DANGEROUS_KEYWORDS)


def descriptor_from_raw(server_id: str, raw: Mapping[str, Any]) -> ToolDescriptor:
    """Build a ToolDescriptor from a tools/list entry.

    Raises:
        ProtocolError: If the entry has no usable name or a non-object schema.
    """
    name = raw.get("name") if isinstance(raw, Mapping) else None
    if not name or not isinstance(name, str):
        raise ProtocolError(
            f"Server '{sanitize_for_logging(server_id)}' returned a tool without a name",
            code="malformed_response",
        )
    schema = raw.get("inputSchema") or raw.get("input_schema") or {}
    if not isinstance(schema, Mapping):
        raise ProtocolError(
            f"Tool '{sanitize_for_logging(name)}' on '{sanitize_for_logging(server_id)}' has a non-object input schema",
            code="malformed_response",
        )
    description = raw.get("description") or ""
    return ToolDescriptor(
        server_id=server_id,
        name=name,
        description=description,
        input_schema=dict(schema),
        category=categorize_tool(name),
        dangerous=is_dangerous_tool(name, description),
        requires_confirmation=True,
    )


@dataclass(frozen=True)
class ToolCatalog:
    """The tools one connection generation exposes.

    Replaced wholesale on reconnect or TTL refresh; never mutated.
    """
    server_id: str
    generation: int
    tools: Tuple[ToolDescriptor, ...] = ()
    created_at: datetime = field(default_factory=utc_now)
    created_monotonic: float = field(default_factory=time.monotonic)

    @classmethod
    def empty(cls, server_id: str, generation: int = 0) -> "ToolCatalog":
        return cls(server_id=server_id, generation=generation)

    @classmethod
    def from_raw(cls, server_id: str, generation: int, raw_tools: Sequence[Mapping[str, Any]]) -> "ToolCatalog":
        descriptors: List[ToolDescriptor] = []
        seen = set()
        for raw in raw_tools:
            descriptor = descriptor_from_raw(server_id, raw)
            if descriptor.name in seen:
                logger.warning(
                    "Server %s listed tool %s twice; keeping the first definition",
                    sanitize_for_logging(server_id),
                    sanitize_for_logging(descriptor.name),
                )
                continue
            seen.add(descriptor.name)
            descriptors.append(descriptor)
        return cls(server_id=server_id, generation=generation, tools=tuple(descriptors))

    def __len__(self) -> int:
        return len(self.tools)

    def __iter__(self) -> Iterator[ToolDescriptor]:
        return iter(self.tools)

    def get(self, tool_name: str) -> Optional[ToolDescriptor]:
        for tool in self.tools:
            if tool.name == tool_name:
                return tool
        return None

    @property
    def tool_names(self) -> List[str]:
        return [tool.name for tool in self.tools]

    def age_seconds(self, now: Optional[float] = None) -> float:
        return (now if now is not None else time.monotonic()) - self.created_monotonic

    def is_stale(self, ttl_seconds: float, now: Optional[float] = None) -> bool:
        if ttl_seconds <= 0:
            return False
        return self.age_seconds(now) >= ttl_seconds

    def to_function_schemas(self) -> List[Dict[str, Any]]:
        return [tool.to_function_schema() for tool in self.tools]
