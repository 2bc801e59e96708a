"""ConvoBridge CLI entry point.

Usage:
    convobridge run --config convobridge.yaml
    convobridge init [--output convobridge.yaml]
"""

from __future__ import annotations

import argparse
import sys
from pathlib import Path

from loguru import logger

from convobridge.config import LoggingConfig


def configure_logging(config: LoggingConfig) -> None:
    """Route loguru output to stderr at the configured level."""
    logger.remove()
    if config.json_logs:
        logger.add(sys.stderr, level=config.level, serialize=True)
    else:
        logger.add(
            sys.stderr,
            level=config.level,
            format=(
                "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | "
                "<level>{level: <8}</level> | "
                "<cyan>{extra[session_id]}</cyan> {extra[caller]} | "
                "<level>{message}</level>"
            ),
        )
    logger.configure(extra={"session_id": "-", "caller": ""})


def cmd_run(args: argparse.Namespace) -> None:
    """Run the ConvoBridge server."""
    config_path = args.config

    if not Path(config_path).exists():
        logger.error(f"Config file not found: {config_path}")
        sys.exit(1)

    from convobridge.config import load_config
    from convobridge.core.errors import ConvoBridgeError

    config = load_config(config_path)
    configure_logging(config.logging)

    try:
        config.validate_required()
    except ConvoBridgeError as e:
        logger.error(str(e))
        sys.exit(1)

    logger.info(f"ConvoBridge starting with config: {config_path}")
    logger.info(f"Listening on: {config.server.listen_host}:{config.server.listen_port}")
    logger.info(f"Agent: {config.agent.agent_id}")

    if args.plain:
        from convobridge.bridge import CallBridge

        CallBridge(config).run()
    else:
        from convobridge.server import run_server

        run_server(config, host=args.host, port=args.port)


def cmd_init(args: argparse.Namespace) -> None:
    """Generate a starter configuration file."""
    output = Path(args.output)

    if output.exists() and not args.force:
        logger.error(f"File already exists: {output}. Use --force to overwrite.")
        sys.exit(1)

    from convobridge.config import DEFAULT_CONFIG_YAML

    output.write_text(DEFAULT_CONFIG_YAML)
    print(f"Configuration written to: {output}")
    print(f"\nEdit the file and run: convobridge run --config {output}")


def main(argv: list[str] | None = None) -> None:
    """CLI entry point."""
    parser = argparse.ArgumentParser(
        prog="convobridge",
        description="ConvoBridge - Twilio phone calls to a conversational AI agent",
    )
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # `convobridge run`
    run_parser = subparsers.add_parser("run", help="Run the ConvoBridge server")
    run_parser.add_argument(
        "--config", "-c",
        default="convobridge.yaml",
        help="Path to the YAML config file (default: convobridge.yaml)",
    )
    run_parser.add_argument("--host", default=None, help="Override the listen host")
    run_parser.add_argument("--port", type=int, default=None, help="Override the listen port")
    run_parser.add_argument(
        "--plain",
        action="store_true",
        help="Serve only the media stream WebSocket (no HTTP webhook)",
    )

    # `convobridge init`
    init_parser = subparsers.add_parser("init", help="Generate a starter config file")
    init_parser.add_argument(
        "--output", "-o",
        default="convobridge.yaml",
        help="Output file path (default: convobridge.yaml)",
    )
    init_parser.add_argument(
        "--force", "-f",
        action="store_true",
        help="Overwrite existing file",
    )

    args = parser.parse_args(argv)

    if args.command == "run":
        cmd_run(args)
    elif args.command == "init":
        cmd_init(args)
    else:
        parser.print_help()


if __name__ == "__main__":
    main()
