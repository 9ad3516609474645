#!/usr/bin/env python3
"""
Sandbox entrypoint - runs the local sandbox until interrupted.

1. Optionally check the sandbox CLI version
2. Start the sandbox (or attach to one already listening)
3. Wait for SIGTERM/SIGINT
4. Stop the sandbox and exit
"""

import argparse
import asyncio
import sys

from ..log_config import configure_logging, get_logger
from .config import SandboxConfig
from .errors import SandboxError
from .signals import SignalRegistrar
from .supervisor import SandboxSupervisor
from .version_check import check_cli_version

configure_logging()

log = get_logger("entrypoint")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Run the local sandbox until interrupted")
    parser.add_argument("--verbose", action="store_true", default=None, help="Log sandbox output")
    parser.add_argument("--node-url", help="Readiness endpoint of the sandbox node")
    parser.add_argument("--startup-timeout", type=float, help="Seconds to wait for readiness")
    parser.add_argument(
        "--force-kill-timeout", type=float, help="Seconds between SIGTERM and SIGKILL on stop"
    )
    parser.add_argument(
        "--check-version",
        metavar="VERSION",
        nargs="?",
        const="",
        help="Check the CLI version first (optionally against VERSION)",
    )
    return parser


async def run(args: argparse.Namespace) -> int:
    """Start the sandbox, hold it until a signal arrives, then stop it."""
    config = SandboxConfig.from_env(
        verbose=args.verbose,
        node_url=args.node_url,
        startup_timeout=args.startup_timeout,
        force_kill_timeout=args.force_kill_timeout,
    )

    if args.check_version is not None:
        try:
            await check_cli_version(config.binary, args.check_version or None)
        except SandboxError as e:
            log.error("entrypoint.version_check_failed", error=str(e))
            return 1

    stop_requested = asyncio.Event()
    registrar = SignalRegistrar(exit_func=lambda _status: stop_requested.set())
    supervisor = SandboxSupervisor(config, registrar=registrar)

    try:
        await supervisor.start()
    except SandboxError as e:
        log.error("entrypoint.start_failed", error=str(e))
        registrar.uninstall()
        return 1
    except asyncio.CancelledError:
        # A signal during startup cancels start(); the supervisor already cleaned up
        log.info("entrypoint.start_interrupted")
        registrar.uninstall()
        return 1

    log.info("entrypoint.running", owned=supervisor.owns_process)
    try:
        await stop_requested.wait()
    finally:
        await supervisor.stop()
        registrar.uninstall()

    log.info("entrypoint.exit")
    return 0


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    return asyncio.run(run(args))


def cli() -> None:
    sys.exit(main())


if __name__ == "__main__":
    cli()
