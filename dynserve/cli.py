"""
Command-line interface for dynserve.

Provides:
- Port probing
- Free port discovery
- Running a set of instances from an instance file
"""

import sys
import argparse
import asyncio
import logging
import json
from dataclasses import replace
from enum import Enum
from pathlib import Path
from typing import List, Optional

from pydantic import ValidationError

from .config import DEFAULT_CONFIG, DynServeConfig, LOG_FORMAT
from .controller import LifecycleController, ReturnMode
from .errors import AllocationFailure, DynServeError
from .ports import PortAllocator, probe_port
from .registry import InstanceConfig
from .types import InstancesFile


logger = logging.getLogger(__name__)


class ExitCode(int, Enum):
    """CLI exit codes"""
    SUCCESS = 0
    ERROR = 1
    INVALID_ARGS = 2
    PORT_UNAVAILABLE = 3


class OutputFormat(str, Enum):
    """Output format options"""
    TEXT = "text"
    JSON = "json"


def setup_logging(verbose: int) -> None:
    """
    Setup logging based on verbosity level.

    Args:
        verbose: Verbosity count (0=WARNING, 1=INFO, 2+=DEBUG)
    """
    if verbose == 0:
        level = logging.WARNING
    elif verbose == 1:
        level = logging.INFO
    else:
        level = logging.DEBUG

    logging.basicConfig(level=level, format=LOG_FORMAT)


def build_config(args) -> DynServeConfig:
    """Apply command-line overrides to the default configuration"""
    overrides = {}
    if getattr(args, "host", None):
        overrides["host"] = args.host
    if getattr(args, "attempts", None) is not None:
        overrides["max_attempts"] = args.attempts
    return replace(DEFAULT_CONFIG, **overrides)


def cmd_probe(args) -> int:
    """
    Report whether a port is free.

    Args:
        args: Parsed command arguments

    Returns:
        Exit code (PORT_UNAVAILABLE when taken)
    """
    config = build_config(args)
    available = asyncio.run(probe_port(args.port, config.host))

    if args.format == OutputFormat.JSON.value:
        print(json.dumps({"port": args.port, "host": config.host, "available": available}))
    else:
        status = "available" if available else "in use"
        print(f"Port {args.port} on {config.host}: {status}")

    return ExitCode.SUCCESS.value if available else ExitCode.PORT_UNAVAILABLE.value


def cmd_find_port(args) -> int:
    """
    Print the first free port at or above a starting port.

    Args:
        args: Parsed command arguments

    Returns:
        Exit code
    """
    config = build_config(args)
    allocator = PortAllocator(host=config.host, max_attempts=config.max_attempts)

    try:
        port = asyncio.run(allocator.allocate(args.start_port))
    except AllocationFailure as e:
        print(f"Error: {e}", file=sys.stderr)
        return ExitCode.PORT_UNAVAILABLE.value
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        return ExitCode.INVALID_ARGS.value

    if args.format == OutputFormat.JSON.value:
        print(json.dumps({"port": port, "host": config.host}))
    else:
        print(port)

    return ExitCode.SUCCESS.value


async def run_instances(
    configs: List[InstanceConfig],
    config: DynServeConfig,
    output_format: str = OutputFormat.TEXT.value,
    stop_event: Optional[asyncio.Event] = None
) -> int:
    """
    Create every instance, then serve until stop_event is set.

    All instances are stopped on the way out, including on failure.

    Returns:
        Exit code
    """
    if stop_event is None:
        stop_event = asyncio.Event()

    async with LifecycleController(config) as controller:
        started = {}
        for instance_config in configs:
            url = await controller.create(instance_config, return_url=ReturnMode.URL.value)
            if not url:
                print(f"Error: could not start {instance_config.name}", file=sys.stderr)
                return ExitCode.ERROR.value
            started[instance_config.name] = url

        if output_format == OutputFormat.JSON.value:
            print(json.dumps({"instances": started}, indent=2))
        else:
            print("=== Running Instances ===\n")
            for name, url in started.items():
                print(f"{name}: {url}")
        sys.stdout.flush()

        await stop_event.wait()

    return ExitCode.SUCCESS.value


def cmd_run(args) -> int:
    """
    Run instances described in an instance file until interrupted.

    Args:
        args: Parsed command arguments

    Returns:
        Exit code
    """
    path = Path(args.instance_file)
    try:
        instances = InstancesFile.load(path)
    except (OSError, ValueError, ValidationError) as e:
        print(f"Error: invalid instance file {path}: {e}", file=sys.stderr)
        return ExitCode.INVALID_ARGS.value

    config = build_config(args)
    configs = instances.to_configs(base_dir=path.resolve().parent)

    try:
        return asyncio.run(run_instances(configs, config, args.format))
    except KeyboardInterrupt:
        logger.info("Interrupted, all instances stopped")
        return ExitCode.SUCCESS.value
    except DynServeError as e:
        print(f"Error: {e}", file=sys.stderr)
        return ExitCode.ERROR.value


def build_parser() -> argparse.ArgumentParser:
    """Build the argument parser"""
    parser = argparse.ArgumentParser(
        prog="dynserve",
        description="Run and inspect named in-process HTTP servers",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s probe 3000                  # Is port 3000 free?
  %(prog)s find-port 3000 --attempts 20
  %(prog)s run instances.json          # Serve every instance in the file
        """
    )

    # Global options
    parser.add_argument(
        '-v', '--verbose',
        action='count',
        default=0,
        help='Increase verbosity (can be repeated: -v, -vv)'
    )
    parser.add_argument(
        '--format',
        choices=[f.value for f in OutputFormat],
        default=OutputFormat.TEXT.value,
        help='Output format'
    )
    parser.add_argument(
        '--host',
        help=f'Interface to probe and listen on (default: {DEFAULT_CONFIG.host})'
    )

    # Subcommands
    subparsers = parser.add_subparsers(dest='command', help='Command to run')

    probe_parser = subparsers.add_parser(
        'probe',
        help='Check whether a port is free'
    )
    probe_parser.add_argument('port', type=int, help='Port number')

    find_parser = subparsers.add_parser(
        'find-port',
        help='Find the first free port from a starting port'
    )
    find_parser.add_argument('start_port', type=int, help='First port to probe')
    find_parser.add_argument(
        '--attempts',
        type=int,
        help=f'Ports to probe (default: {DEFAULT_CONFIG.max_attempts})'
    )

    run_parser = subparsers.add_parser(
        'run',
        help='Run instances from a JSON instance file'
    )
    run_parser.add_argument('instance_file', help='Path to the instance file')
    run_parser.add_argument(
        '--attempts',
        type=int,
        help=f'Ports to probe per instance (default: {DEFAULT_CONFIG.max_attempts})'
    )

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """
    Main CLI entry point.

    Returns:
        Exit code
    """
    parser = build_parser()
    args = parser.parse_args(argv)

    setup_logging(args.verbose)

    if not args.command:
        parser.print_help()
        return ExitCode.SUCCESS.value

    if args.command == 'probe':
        return cmd_probe(args)
    elif args.command == 'find-port':
        return cmd_find_port(args)
    elif args.command == 'run':
        return cmd_run(args)

    return ExitCode.INVALID_ARGS.value


if __name__ == "__main__":
    sys.exit(main())
