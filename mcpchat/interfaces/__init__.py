"""Interfaces layer - protocols and contracts."""

from .config import ServerConfigProvider
from .tools import ChannelFactory, ProgressHandler, ServerChannel

__all__ = [
    "ChannelFactory",
    "ProgressHandler",
    "ServerChannel",
    "ServerConfigProvider",
]
