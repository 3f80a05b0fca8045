"""
mcpchat - MCP tool-execution core for a chat application.

This package manages the subprocess connections to MCP tool servers and
arbitrates concurrent tool invocations against them.

Example usage:
    from mcpchat.infrastructure.app_factory import AppFactory

    factory = AppFactory()
    await factory.initialize()
    tools = factory.connection_manager.get_function_tools()

CLI tools (after pip install):
    mcpchat-server --port 8000
"""

from mcpchat.version import VERSION

__version__ = VERSION
__all__ = [
    "VERSION",
    "__version__",
]
