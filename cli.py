#!/usr/bin/env python3
"""Command line entry point for the bundle engine"""

import argparse
import asyncio
import json
import signal
import sys
from typing import List, Optional

from bundlekit.config import Settings
from bundlekit.core.recovery.errors import BundlerError, ConfigurationError
from bundlekit.logging_config import setup_logging
from bundlekit.runner import run_bundle

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_CONFIG = 2
EXIT_INTERRUPTED = 130


def print_config(settings: Settings) -> None:
    """Print the redacted configuration"""
    print(json.dumps(settings.export_config(), indent=2, default=str))


async def cli_run(settings: Settings, steps_factory: Optional[str] = None) -> int:
    """Run one bundle and map the outcome to an exit code"""
    if steps_factory:
        settings = settings.model_copy(update={"steps_factory": steps_factory})

    try:
        execution = await run_bundle(settings)
    except ConfigurationError as e:
        print(f"❌ Configuration error: {e}", file=sys.stderr)
        return EXIT_CONFIG
    except BundlerError as e:
        print(f"❌ Bundle failed: {e}", file=sys.stderr)
        return EXIT_FAILED
    except Exception as e:
        print(f"❌ Unexpected error: {e}", file=sys.stderr)
        return EXIT_FAILED

    bundle = execution.bundle
    print(f"✅ Bundle {bundle.bundle_id} submitted for block {bundle.target_block}")
    print(f"   Transactions: {len(bundle.steps)}  Nonces: {bundle.nonces}")
    print(f"   Gas price: {execution.gas_quote.price} wei")
    return EXIT_OK


def install_signal_handlers(task: "asyncio.Task") -> None:
    """Cancel the running command on SIGINT/SIGTERM."""
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, task.cancel)
        except (NotImplementedError, RuntimeError):
            # add_signal_handler is unavailable on some platforms (Windows)
            pass


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Resilient bundle execution engine")
    parser.add_argument("--log-level", help="Override LOG_LEVEL")
    subparsers = parser.add_subparsers(dest="command")

    run_parser = subparsers.add_parser("run", help="Assemble, simulate and submit one bundle")
    run_parser.add_argument(
        "--steps",
        help="Steps factory import path ('package.module:callable'), overrides STEPS_FACTORY",
    )

    subparsers.add_parser("config", help="Print the active configuration (secrets redacted)")

    return parser


async def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return EXIT_OK

    settings = Settings()
    setup_logging(args.log_level, settings)

    if args.command == "config":
        print_config(settings)
        return EXIT_OK

    task = asyncio.create_task(cli_run(settings, args.steps))
    install_signal_handlers(task)
    try:
        return await task
    except asyncio.CancelledError:
        print("\n🛑 Interrupted, shutting down", file=sys.stderr)
        return EXIT_INTERRUPTED


def run() -> None:
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    run()
