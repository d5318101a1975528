"""Command line entry point.

Usage:
    mcp-reload-proxy [proxy] [options] -- <command> [args...]
    mcp-reload-proxy inspect <operation> [options] -- <command> [args...]
"""

import argparse
import asyncio
import json
import logging
import sys
import time
from typing import Any

from . import __version__
from .config import configure_logging, load_config
from .errors import ConfigError, SpawnError
from .inspector import format_result, run_inspection
from .models import ProxyConfig
from .supervisor import build_server_command, parse_server_command, validate_command_available

logger = logging.getLogger(__name__)

SUBCOMMANDS = ("proxy", "inspect")


def split_child_command(argv: list[str]) -> tuple[list[str], list[str]]:
    """Split argv at the first ``--`` into proxy options and child command."""
    if "--" in argv:
        index = argv.index("--")
        return argv[:index], argv[index + 1 :]
    return argv, []


def _add_child_options(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--working-dir",
        "-w",
        dest="working_directory",
        help="Working directory for the child process",
    )
    parser.add_argument(
        "--log-level",
        help="Log level: debug, info, notice, warning, error, critical",
    )
    parser.add_argument("--log-file", help="Write logs to this file instead of stderr")
    parser.add_argument(
        "--operation-timeout",
        "-t",
        type=float,
        help="Timeout for each forwarded request in seconds (default: 30)",
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        help="Shortcut for --log-level debug",
    )


def _json_argument(value: str) -> dict[str, Any]:
    try:
        parsed = json.loads(value)
    except json.JSONDecodeError as e:
        raise argparse.ArgumentTypeError(f"invalid JSON: {e}") from e
    if not isinstance(parsed, dict):
        raise argparse.ArgumentTypeError("expected a JSON object")
    return parsed


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="mcp-reload-proxy",
        description="Development proxy for MCP servers with hot restart",
        epilog="The child server command follows '--'.",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    subparsers = parser.add_subparsers(dest="subcommand")

    proxy = subparsers.add_parser("proxy", help="Run the proxy (default)")
    _add_child_options(proxy)
    proxy.add_argument(
        "--max-restarts",
        "-m",
        dest="restart_limit",
        type=int,
        help="Consecutive restart attempts before giving up (0-10, default: 3)",
    )
    proxy.add_argument(
        "--restart-delay",
        "-d",
        type=float,
        help="Base delay before an automatic restart in seconds (default: 1)",
    )
    proxy.add_argument(
        "--graceful-timeout",
        type=float,
        help="Seconds to wait after SIGTERM before killing the child (default: 5)",
    )
    proxy.add_argument(
        "--no-auto-restart",
        dest="auto_restart",
        action="store_false",
        default=None,
        help="Do not restart the child after a crash",
    )
    proxy.add_argument(
        "--dry-run",
        action="store_true",
        help="Validate configuration and child command, then exit",
    )

    inspect = subparsers.add_parser("inspect", help="Run one operation against the child")
    operations = inspect.add_subparsers(dest="operation", required=True)

    for name, help_text in (
        ("server-info", "Show server info and capabilities"),
        ("list-tools", "List tools"),
        ("list-resources", "List resources"),
        ("list-prompts", "List prompts"),
        ("ping", "Check the server responds"),
        ("mcp", "Serve the inspection tools as an MCP server over stdio"),
    ):
        _add_child_options(operations.add_parser(name, help=help_text))

    call_tool = operations.add_parser("call-tool", help="Call a tool")
    call_tool.add_argument("name", help="Tool name")
    call_tool.add_argument(
        "--params", "-p", type=_json_argument, default={}, help="Tool arguments as JSON"
    )
    _add_child_options(call_tool)

    read_resource = operations.add_parser("read-resource", help="Read a resource")
    read_resource.add_argument("uri", help="Resource URI")
    _add_child_options(read_resource)

    get_prompt = operations.add_parser("get-prompt", help="Render a prompt")
    get_prompt.add_argument("name", help="Prompt name")
    get_prompt.add_argument(
        "--args", "-a", dest="prompt_args", type=_json_argument, default={},
        help="Prompt arguments as JSON",
    )
    _add_child_options(get_prompt)

    return parser


def parse_args(argv: list[str]) -> tuple[argparse.Namespace, list[str]]:
    """Parse proxy options; returns the namespace and the child command."""
    own, child = split_child_command(argv)
    if not own or (own[0] not in SUBCOMMANDS and own[0] not in ("-h", "--help", "--version")):
        own = ["proxy"] + own
    args = build_parser().parse_args(own)
    return args, child


def build_config(args: argparse.Namespace, child: list[str]) -> ProxyConfig:
    """Merge CLI options over environment settings.

    Raises:
        ConfigError: If the configuration is invalid
    """
    overrides: dict[str, Any] = {
        "working_directory": args.working_directory,
        "log_level": "debug" if args.debug else args.log_level,
        "log_file": args.log_file,
        "operation_timeout": args.operation_timeout,
        "restart_limit": getattr(args, "restart_limit", None),
        "restart_delay": getattr(args, "restart_delay", None),
        "graceful_timeout": getattr(args, "graceful_timeout", None),
        "auto_restart": getattr(args, "auto_restart", None),
    }
    if child:
        overrides["command"] = child[0]
        overrides["args"] = child[1:]
    return load_config(overrides)


async def _dry_run(config: ProxyConfig) -> int:
    command, extra = parse_server_command(config.command)
    available, message = await validate_command_available(command)
    summary = {
        "command": build_server_command(command, extra + config.args),
        "workingDirectory": config.working_directory,
        "restartLimit": config.restart_limit,
        "restartDelay": config.restart_delay,
        "autoRestart": config.auto_restart,
        "operationTimeout": config.operation_timeout,
        "commandAvailable": available,
        "message": message,
    }
    print(json.dumps(summary, indent=2))
    return 0 if available else 1


async def _run_proxy(config: ProxyConfig) -> int:
    from .proxy import MCPReloadProxy

    proxy = MCPReloadProxy(config)
    try:
        await proxy.run()
    except SpawnError as e:
        logger.error(f"Failed to start child server: {e}")
        return 1
    return 0


INSPECT_OPERATIONS = {
    "server-info": lambda args: lambda i: i.get_server_info(),
    "list-tools": lambda args: lambda i: i.list_tools(),
    "call-tool": lambda args: lambda i: i.call_tool(args.name, args.params),
    "list-resources": lambda args: lambda i: i.list_resources(),
    "read-resource": lambda args: lambda i: i.read_resource(args.uri),
    "list-prompts": lambda args: lambda i: i.list_prompts(),
    "get-prompt": lambda args: lambda i: i.get_prompt(args.name, args.prompt_args),
    "ping": lambda args: lambda i: i.ping(),
}


async def run_inspect_operation(config: ProxyConfig, args: argparse.Namespace) -> dict[str, Any]:
    """Run one inspection operation and build its JSON envelope."""
    started = time.perf_counter()
    operation = INSPECT_OPERATIONS[args.operation](args)
    try:
        data = await run_inspection(config, operation)
    except Exception as e:
        logger.debug(f"Inspection failed: {e}", exc_info=True)
        return format_result(args.operation, started, error=e)
    return format_result(args.operation, started, data=data)


def main(argv: list[str] | None = None) -> int:
    argv = sys.argv[1:] if argv is None else argv
    args, child = parse_args(argv)

    try:
        config = build_config(args, child)
    except ConfigError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 2

    configure_logging(config.log_level, config.log_file)

    if args.subcommand == "inspect":
        if args.operation == "mcp":
            from .debug_server import run as run_debug_server

            run_debug_server(config)
            return 0
        envelope = asyncio.run(run_inspect_operation(config, args))
        print(json.dumps(envelope, indent=2, default=str))
        return 0 if envelope["success"] else 1

    if args.dry_run:
        return asyncio.run(_dry_run(config))

    try:
        return asyncio.run(_run_proxy(config))
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":
    sys.exit(main())
