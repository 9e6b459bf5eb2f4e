"""Command line entry point: keep a bearer token fresh and report its state."""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys
import time
from collections.abc import Callable

import aiohttp

from .auth_token.claims import extract_expiry
from .auth_token.client import OAuthTokenClient
from .auth_token.coordinator import TokenCoordinator
from .auth_token.types import TokenState
from .config import ProviderConfig
from .errors.handling import log_error
from .errors.internal import ConfigError, MalformedTokenError
from .logging_config import LoggerConfigurator, error_aggregator
from .utils import format_duration, mask_token


def report_state(state: TokenState, clock: Callable[[], float] = time.time) -> None:
    """Listener logging every published token state with its remaining validity."""
    if state.error is not None:
        logging.error(
            f"❌ Token unavailable error={type(state.error).__name__}: {str(state.error)}"
        )
    elif state.token is not None:
        try:
            valid_for = format_duration(max(0.0, extract_expiry(state.token) - clock()))
        except MalformedTokenError:
            # static tokens need not be JWTs
            valid_for = "unknown"
        logging.info(
            f"🎟️ Token published user_id={state.user_id} valid_for={valid_for} token={mask_token(state.token)}"
        )
    else:
        logging.warning("🔓 No authenticated user; run with --login to authorize")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="tokenkeeper",
        description="Acquire an access token and refresh it before it expires.",
    )
    mode = parser.add_mutually_exclusive_group()
    mode.add_argument(
        "--health-check",
        action="store_true",
        help="validate configuration and exit",
    )
    mode.add_argument(
        "--login",
        action="store_true",
        help="run the interactive device login before refreshing",
    )
    mode.add_argument(
        "--logout",
        action="store_true",
        help="clear the cached tokens and exit",
    )
    return parser


async def run(config: ProviderConfig, *, login: bool = False, logout: bool = False) -> int:
    """Drive a coordinator until interrupted; returns the process exit code."""
    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except (NotImplementedError, RuntimeError):
            # Platforms without signal support fall back to KeyboardInterrupt.
            pass

    async with aiohttp.ClientSession() as session:
        client = OAuthTokenClient(config, session)
        if logout:
            await client.logout()
            return 0

        coordinator = TokenCoordinator(client, static_token=config.static_token)
        coordinator.subscribe(report_state)
        try:
            if login:
                # Interactive round first; the coordinator hooks readiness afterwards
                # so no silent round races the login for the same session.
                await client.load()
                state = await coordinator.login_interactively()
                await coordinator.start()
            else:
                await coordinator.start()
                await client.load()
                state = await coordinator.get_token()
            if state.error is not None or not state.authenticated:
                return 1

            logging.info("🔁 Keeping token fresh; press Ctrl+C to stop")
            await stop_event.wait()
        finally:
            await coordinator.stop()
            error_aggregator.log_summary_report()
    return 0


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    LoggerConfigurator().configure()
    logging.info("🚀 Starting tokenkeeper")

    try:
        config = ProviderConfig.from_env()
    except ConfigError as e:
        log_error("Configuration invalid", e)
        return 1

    if args.health_check:
        logging.info(f"✅ Health check passed - provider={config.base_url} audience={config.audience}")
        return 0

    try:
        return asyncio.run(run(config, login=args.login, logout=args.logout))
    except KeyboardInterrupt:
        logging.warning("⌨️ Interrupted by user")
        return 0
    except Exception as e:
        log_error("Top-level error", e)
        logging.critical(f"Critical error occurred: {e}", exc_info=True)
        return 1
    finally:
        logging.info("🏁 Application shutdown complete")


if __name__ == "__main__":
    sys.exit(main())
