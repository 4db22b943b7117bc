#!/usr/bin/env python3
"""Main entry point for the process supervisor."""

import argparse
import logging
import os
import sys
from typing import List, Optional

from procsupervisor.config import SupervisorConfig, SupervisorOptions
from procsupervisor.errors import ConfigError, SetupError
from procsupervisor.metrics import SupervisorMetrics
from procsupervisor.supervisor import ProcessSupervisor

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'

logger = logging.getLogger(__name__)


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    """Parse command line arguments.

    Returns:
        Parsed arguments
    """
    parser = argparse.ArgumentParser(
        description='Start dependent services, then run and supervise a '
        'foreground command.',
        usage='%(prog)s [options] [-- command ...]'
    )
    parser.add_argument(
        '--config',
        required=False,
        help='Path to configuration file (default: $SUPERVISOR_CONFIG)'
    )
    parser.add_argument(
        '--policy',
        choices=['fail_fast', 'proceed_anyway', 'failFast', 'proceedAnyway'],
        help='What to do when a dependency is not ready in time'
    )
    parser.add_argument(
        '--fail-together',
        action='store_true',
        help='Terminate the foreground if a dependency exits'
    )
    parser.add_argument(
        '--grace-period',
        type=float,
        help='Seconds to wait after SIGTERM before killing a process'
    )
    parser.add_argument(
        '--poll-interval',
        type=float,
        help='Seconds between checks of the foreground and dependencies'
    )
    parser.add_argument(
        '--metrics-port',
        type=int,
        help='Serve Prometheus metrics on this port'
    )
    parser.add_argument(
        '--log-level',
        choices=['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL'],
        default=os.environ.get('SUPERVISOR_LOG_LEVEL', 'INFO').upper(),
        help='Set the logging level'
    )
    parser.add_argument(
        'foreground',
        nargs=argparse.REMAINDER,
        help='Foreground command (overrides config file)'
    )
    args = parser.parse_args(argv)
    if args.foreground and args.foreground[0] == '--':
        args.foreground = args.foreground[1:]
    return args


def validate_config_file(config_path: Optional[str]) -> None:
    """Validate config file exists.

    Args:
        config_path: Path to config file, if any

    Raises:
        FileNotFoundError: If config file does not exist
    """
    if config_path and not os.path.isfile(config_path):
        raise FileNotFoundError(f"Configuration file not found: {config_path}")


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point.

    Returns:
        Exit code: the foreground's exit code, 97 if setup failed before
        the foreground launched, 1 for configuration errors
    """
    args = parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level), format=LOG_FORMAT
    )

    try:
        validate_config_file(args.config)
        config = SupervisorConfig.load(args.config)
        options = SupervisorOptions.from_args_and_config(args, config)
    except (ConfigError, FileNotFoundError) as e:
        logger.error(str(e))
        return 1
    except Exception as e:  # pylint: disable=broad-except
        logger.error("Error loading configuration: %s", e)
        return 1

    metrics = None
    if options.metrics_port is not None:
        metrics = SupervisorMetrics()
        metrics.serve(options.metrics_port)

    supervisor = ProcessSupervisor(options.config, metrics=metrics)
    try:
        result = supervisor.run()
    except SetupError as e:
        logger.error("Supervisor setup failed: %s", e)
        return e.exit_code
    return result.exit_code


if __name__ == '__main__':
    sys.exit(main())
