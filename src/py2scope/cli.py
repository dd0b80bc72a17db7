"""
Command-Line Interface - Argument Parsing and Entry Point

This module provides a small command-line interface to the microscope
acquisition server. It handles:
- Command-line argument parsing
- Loading connection settings from YAML and the command line
- Running one server operation and printing the result
- Formatting errors for the terminal

Usage:
    python -m py2scope --host 127.0.0.1 --port 5000 position
    python -m py2scope --config scope_client.yml move-xy 100.5 200.7
    python -m py2scope --help
"""

import sys
import argparse
import logging
from typing import List, Optional

from py2scope.core.error_formatting import ErrorFormatter
from py2scope.core.errors import ScopeError
from py2scope.services.configuration_service import load_connection_config
from py2scope.services.microscope_client import MicroscopeClient, probe_server

DEFAULT_PORT = 5000


def parse_args(args: Optional[List[str]] = None) -> argparse.Namespace:
    """Parse command-line arguments.

    Args:
        args: List of arguments to parse. If None, uses sys.argv[1:]

    Returns:
        Parsed arguments namespace
    """
    parser = argparse.ArgumentParser(
        prog="py2scope",
        description="Microscope acquisition server client",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s --host 192.168.1.50 probe
  %(prog)s --host 192.168.1.50 position
  %(prog)s --config scope_client.yml move-z 1250.0
        """
    )

    parser.add_argument("--host", type=str, default=None,
                        help="Server host (default: from --config, else 127.0.0.1)")
    parser.add_argument("--port", type=int, default=None,
                        help=f"Server port (default: from --config, else {DEFAULT_PORT})")
    parser.add_argument("--config", type=str, default=None,
                        help="YAML file with a 'connection' section")
    parser.add_argument("--timeout", type=float, default=None,
                        help="Reply timeout in seconds")
    parser.add_argument("--no-reconnect", action="store_true",
                        help="Fail immediately instead of reconnecting")
    parser.add_argument(
        "--log-level",
        type=str,
        default="WARNING",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Set logging level (default: WARNING)"
    )

    sub = parser.add_subparsers(dest="command", metavar="COMMAND")
    sub.required = True

    sub.add_parser("probe", help="Check that the server is reachable and answering")
    sub.add_parser("position", help="Print the stage position (x, y, z, r)")
    sub.add_parser("fov", help="Print the camera field of view")
    sub.add_parser("status", help="Print the acquisition status")
    sub.add_parser("cancel", help="Cancel the running acquisition")
    sub.add_parser("shutdown", help="Stop the server process")

    move_xy = sub.add_parser("move-xy", help="Move the XY stage")
    move_xy.add_argument("x", type=float)
    move_xy.add_argument("y", type=float)

    move_z = sub.add_parser("move-z", help="Move the focus axis")
    move_z.add_argument("z", type=float)

    move_r = sub.add_parser("move-r", help="Rotate the stage")
    move_r.add_argument("angle", type=float)

    return parser.parse_args(args)


def validate_args(args: argparse.Namespace) -> bool:
    """Validate parsed command-line arguments.

    Returns:
        True if arguments are valid, False otherwise
    """
    if args.port is not None and not (1 <= args.port <= 65535):
        print(f"Error: Port must be between 1 and 65535, got {args.port}")
        return False

    if args.host is not None and not args.host.strip():
        print("Error: Host cannot be empty if specified")
        return False

    if args.timeout is not None and args.timeout <= 0:
        print(f"Error: Timeout must be positive, got {args.timeout}")
        return False

    return True


def setup_logging(level: str):
    """Configure application logging.

    Args:
        level: Logging level as string (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """
    numeric_level = getattr(logging, level.upper(), None)

    logging.basicConfig(
        level=numeric_level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )


def run_command(client: MicroscopeClient, args: argparse.Namespace) -> None:
    """Run one subcommand against a connected client and print the result."""
    if args.command == "position":
        position = client.get_position()
        print(f"x={position.x} y={position.y} z={position.z} r={position.r}")
    elif args.command == "fov":
        print(client.get_camera_fov())
    elif args.command == "status":
        report = client.get_acquisition_status()
        line = report.status.value
        if report.progress is not None:
            line += f" {report.progress}"
        if report.message:
            line += f" ({report.message})"
        print(line)
    elif args.command == "cancel":
        client.cancel_acquisition()
        print("Cancellation requested")
    elif args.command == "shutdown":
        client.shutdown_server()
        print("Shutdown command sent")
    elif args.command == "move-xy":
        client.move_stage_xy(args.x, args.y)
        print(f"Moved to x={args.x} y={args.y}")
    elif args.command == "move-z":
        client.move_stage_z(args.z)
        print(f"Moved to z={args.z}")
    elif args.command == "move-r":
        client.move_stage_r(args.angle)
        print(f"Rotated to {args.angle}")
    else:
        raise ValueError(f"Unknown command: {args.command}")


def main(args: Optional[List[str]] = None) -> int:
    """Main entry point for the command-line interface.

    Args:
        args: Command-line arguments (if None, uses sys.argv)

    Returns:
        Exit code (0 for success, non-zero for error)
    """
    parsed_args = parse_args(args)

    if not validate_args(parsed_args):
        return 1

    setup_logging(parsed_args.log_level)
    logger = logging.getLogger(__name__)
    formatter = ErrorFormatter(use_colors=sys.stdout.isatty())

    try:
        overrides = {
            'host': parsed_args.host,
            'port': parsed_args.port,
            'read_timeout': parsed_args.timeout,
            # One-shot commands have no use for the background probe
            'health_check_interval': 0.0,
        }
        if parsed_args.no_reconnect:
            overrides['auto_reconnect'] = False
        if parsed_args.config is None:
            overrides['host'] = parsed_args.host or '127.0.0.1'
            overrides['port'] = parsed_args.port or DEFAULT_PORT
        config = load_connection_config(parsed_args.config, **overrides)

        if parsed_args.command == "probe":
            result = probe_server(config.host, config.port, timeout=config.connect_timeout)
            print(result.message)
            return 0 if result.is_responding else 1

        client = MicroscopeClient(config)
        try:
            client.connect()
            run_command(client, parsed_args)
        finally:
            client.close()
        return 0

    except ScopeError as e:
        logger.debug(formatter.format_for_log(e))
        print(formatter.format_for_user(e), file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        print("\nInterrupted", file=sys.stderr)
        return 130


if __name__ == "__main__":
    sys.exit(main())
