"""
MCP Chat Core server CLI - start the tool-execution backend.

Usage:
    mcpchat-server                              # Start with defaults
    mcpchat-server --port 8000                  # Custom port
    mcpchat-server --env /path/to/.env          # Custom env file
    mcpchat-server --config-folder /path/to/config  # Folder holding mcp.config.json
"""

import argparse
import os
import sys
from pathlib import Path


def _apply_env_file(env_path: Path) -> None:
    """Load environment variables from a .env file."""
    from dotenv import load_dotenv

    if not env_path.exists():
        print(f"Error: env file not found: {env_path}", file=sys.stderr)
        sys.exit(2)

    load_dotenv(dotenv_path=str(env_path))


def _apply_config_folder(config_folder: Path) -> None:
    """Point APP_CONFIG_DIR at the given folder."""
    if not config_folder.exists():
        print(f"Error: config folder not found: {config_folder}", file=sys.stderr)
        sys.exit(2)

    os.environ["APP_CONFIG_DIR"] = str(config_folder.resolve())


def build_parser() -> argparse.ArgumentParser:
    """Build argument parser for the mcpchat-server CLI."""
    parser = argparse.ArgumentParser(
        prog="mcpchat-server",
        description="Start the MCP tool-execution backend.",
    )
    parser.add_argument(
        "--port",
        type=int,
        default=None,
        help="Port to run the server on (default: 8000 or PORT env var).",
    )
    parser.add_argument(
        "--host",
        default=None,
        help="Host to bind to (default: 127.0.0.1 or MCPCHAT_HOST env var).",
    )
    parser.add_argument(
        "--env",
        dest="env_file",
        default=None,
        help="Path to .env file (default: .env in current directory).",
    )
    parser.add_argument(
        "--config-folder",
        dest="config_folder",
        default=None,
        help="Folder containing mcp.config.json (sets APP_CONFIG_DIR).",
    )
    parser.add_argument(
        "--mcp-config",
        dest="mcp_config",
        default=None,
        help="MCP config file name inside the config folder (sets MCP_CONFIG_FILE).",
    )
    parser.add_argument(
        "--reload",
        action="store_true",
        help="Enable auto-reload for development (not recommended for production).",
    )
    parser.add_argument(
        "--version",
        action="store_true",
        help="Print version and exit.",
    )
    return parser


def run_server(args: argparse.Namespace) -> int:
    """Run the server with the given arguments.

    Always a single worker: connection and execution state live in process memory.
    """
    import uvicorn

    host = args.host or os.getenv("MCPCHAT_HOST", "127.0.0.1")
    port = args.port or int(os.getenv("PORT", "8000"))

    print(f"Starting MCP Chat Core server on {host}:{port}")

    if args.reload:
        print("Warning: --reload is enabled. This is not recommended for production.")
    uvicorn.run(
        "mcpchat.main:create_app",
        factory=True,
        host=host,
        port=port,
        reload=args.reload,
        workers=1,
    )
    return 0


def main() -> None:
    """Main entry point for the mcpchat-server CLI."""
    parser = build_parser()
    args = parser.parse_args()

    if args.version:
        from mcpchat.version import VERSION
        print(f"mcpchat-server version {VERSION}")
        sys.exit(0)

    # Apply env file first (before any other imports that might use env vars)
    if args.env_file:
        _apply_env_file(Path(args.env_file).expanduser())
    else:
        cwd_env = Path.cwd() / ".env"
        if cwd_env.exists():
            _apply_env_file(cwd_env)

    if args.config_folder:
        _apply_config_folder(Path(args.config_folder).expanduser())

    if args.mcp_config:
        os.environ["MCP_CONFIG_FILE"] = args.mcp_config

    sys.exit(run_server(args))


if __name__ == "__main__":
    main()
