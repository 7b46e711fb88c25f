"""
O-Ring CLI
==========
Command-line front end for the authorization flow and the score
aggregator. Stands in for the panel extension: it is the "external caller"
that triggers authorization, asks for scores on demand, and (``watch``)
polls on the configured update interval.

Usage:
    oring configure --client-id ID --client-secret SECRET [--update-interval N]
    oring authorize
    oring scores
    oring watch
    oring status
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from datetime import datetime
from typing import Optional, Sequence

from oring.config import Settings, get_settings
from oring.errors import OuraError
from oring.models.scores import ScoreSummary
from oring.services.display import (
    AUTHORIZE_PROMPT,
    error_notice,
    format_panel_text,
    last_updated_label,
    staleness_notice,
)
from oring.services.oauth import AuthManager
from oring.services.oura import ScoreAggregator
from oring.store.settings_store import (
    CLIENT_ID_KEY,
    CLIENT_SECRET_KEY,
    UPDATE_INTERVAL_KEY,
    SettingsStore,
    get_settings_store,
)

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="oring", description="Oura ring scores in your terminal")
    parser.add_argument("--log-level", default=None, help="Override ORING_LOG_LEVEL")
    commands = parser.add_subparsers(dest="command", required=True)

    configure = commands.add_parser("configure", help="Store Oura API client credentials")
    configure.add_argument("--client-id")
    configure.add_argument("--client-secret")
    configure.add_argument(
        "--update-interval", type=int, help="Seconds between updates in watch mode (60-86400)"
    )

    commands.add_parser("authorize", help="Authorize access to your Oura account")
    commands.add_parser("scores", help="Show the latest available scores")
    commands.add_parser("watch", help="Show scores and refresh them periodically")
    commands.add_parser("status", help="Show authorization status")
    return parser


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


def run_configure(store: SettingsStore, args: argparse.Namespace) -> int:
    values: dict[str, object] = {}
    if args.client_id is not None:
        values[CLIENT_ID_KEY] = args.client_id.strip()
    if args.client_secret is not None:
        values[CLIENT_SECRET_KEY] = args.client_secret.strip()
    if args.update_interval is not None:
        values[UPDATE_INTERVAL_KEY] = args.update_interval
    if not values:
        print("Nothing to configure.")
        return 1
    store.update(values)
    print(f"Saved: {', '.join(sorted(values))}")
    return 0


def run_status(store: SettingsStore, settings: Settings) -> int:
    credentials = store.load_credentials()
    if credentials is None or not credentials.access_token:
        print("Status: Not Authorized")
        return 0
    auth = AuthManager(store=store, settings=settings)
    expiry = datetime.fromtimestamp(credentials.expires_at).strftime("%Y-%m-%d %H:%M")
    state = "refresh due" if auth.is_token_expired() else "valid"
    print("Status: Authorized ✓")
    print(f"Token expires: {expiry} ({state})")
    return 0


async def _authorize(store: SettingsStore, settings: Settings) -> None:
    auth = AuthManager(store=store, settings=settings)
    try:
        await auth.authorize()
    finally:
        auth.shutdown()


def run_authorize(store: SettingsStore, settings: Settings) -> int:
    print("Opening the Oura authorization page in your browser...")
    try:
        asyncio.run(_authorize(store, settings))
    except OuraError as exc:
        logger.error("Authorization failed: %s", exc)
        print("Authorization failed. Check logs for details.")
        return 1
    print("Authorization successful!")
    return 0


def _print_summary(summary: ScoreSummary, lookback_days: int) -> None:
    print(format_panel_text(summary))
    print(last_updated_label(summary))
    notice = staleness_notice(summary, lookback_days)
    if notice:
        print(notice)


def run_scores(store: SettingsStore, settings: Settings) -> int:
    if not store.has_access_token():
        print(AUTHORIZE_PROMPT)
        return 1
    aggregator = ScoreAggregator(AuthManager(store=store, settings=settings), store, settings)
    try:
        summary = asyncio.run(aggregator.get_latest_scores())
    except OuraError as exc:
        logger.error("Failed to fetch scores: %s", exc)
        print(error_notice(exc))
        return 1
    _print_summary(summary, settings.lookback_days)
    return 0


async def _watch(store: SettingsStore, settings: Settings, iterations: Optional[int] = None) -> None:
    aggregator = ScoreAggregator(AuthManager(store=store, settings=settings), store, settings)
    count = 0
    while iterations is None or count < iterations:
        count += 1
        if not store.has_access_token():
            print(AUTHORIZE_PROMPT)
        else:
            try:
                summary = await aggregator.get_latest_scores()
            except OuraError as exc:
                logger.error("Failed to fetch scores: %s", exc)
                print(error_notice(exc))
            else:
                _print_summary(summary, settings.lookback_days)
        if iterations is None or count < iterations:
            await asyncio.sleep(store.update_interval())


def run_watch(store: SettingsStore, settings: Settings) -> int:
    print(f"Updating every {store.update_interval()} seconds. Press Ctrl+C to stop.")
    try:
        asyncio.run(_watch(store, settings))
    except KeyboardInterrupt:
        print("Stopped.")
    return 0


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    settings = get_settings()
    configure_logging(args.log_level or settings.log_level)
    store = get_settings_store()

    if args.command == "configure":
        return run_configure(store, args)
    if args.command == "status":
        return run_status(store, settings)
    if args.command == "authorize":
        return run_authorize(store, settings)
    if args.command == "scores":
        return run_scores(store, settings)
    return run_watch(store, settings)


if __name__ == "__main__":
    sys.exit(main())
