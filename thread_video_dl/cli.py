"""Command line entry point for the thread video downloader."""
from __future__ import annotations

import argparse
import logging
import os
import signal
from pathlib import Path
from typing import Any, Callable, Sequence

from dotenv import find_dotenv, load_dotenv

from .core import (
    RunContext,
    StatusClient,
    TraversalOptions,
    TraversalResult,
    build_session,
    report_exit,
    walk_thread,
)
from .supervisor import DEFAULT_CHECKPOINT_INTERVAL, DEFAULT_TIMEOUT, DownloadOptions, DownloadSupervisor

ENV_PREFIX = "TWITTER_"
INTERRUPTED_EXIT_CODE = 130

logger = logging.getLogger("thread_video_dl")


def _env(name: str) -> str | None:
    value = os.environ.get(f"{ENV_PREFIX}{name}")
    if value is None or not value.strip():
        return None
    return value.strip()


def _env_number(parser: argparse.ArgumentParser, name: str, cast: Callable[[str], Any], default: Any) -> Any:
    raw = _env(name)
    if raw is None:
        return default
    try:
        return cast(raw)
    except ValueError:
        parser.error(f"Invalid value for {ENV_PREFIX}{name}: {raw!r}")


def _default_destination() -> Path:
    return Path.home() / "Downloads"


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description=(
            "Fetch all videos from a Twitter thread, walking backward from the most recent tweet. "
            f"Every option can also be set through an environment variable prefixed with {ENV_PREFIX} "
            "(or a .env file)."
        )
    )
    parser.add_argument(
        "tweet_id",
        help="The ID of the most recent tweet to begin working backward from.",
    )
    parser.add_argument(
        "-k",
        "--api-key",
        default=_env("API_KEY"),
        help="Your Twitter API bearer token (overrides TWITTER_API_KEY).",
    )
    parser.add_argument(
        "-d",
        "--destination",
        type=Path,
        default=Path(_env("DESTINATION")) if _env("DESTINATION") else _default_destination(),
        help="Download destination folder for videos (default: ~/Downloads).",
    )
    parser.add_argument(
        "-l",
        "--limit",
        type=int,
        default=_env_number(parser, "LIMIT", int, 0),
        help="Limit the total number of tweets to process (default: 0, no limit).",
    )
    parser.add_argument(
        "-s",
        "--stop-at",
        default=_env("STOP_AT"),
        help=(
            "A tweet ID at which point to stop recursively downloading. "
            "Helpful if you've already downloaded this thread before."
        ),
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="count",
        default=_env_number(parser, "VERBOSE", int, 0),
        help='Chatty logs. More "v"s for more logging.',
    )
    parser.add_argument(
        "--ffmpeg",
        default=_env("FFMPEG") or "ffmpeg",
        help="ffmpeg executable to run (default: ffmpeg).",
    )
    parser.add_argument(
        "--timeout",
        type=float,
        default=_env_number(parser, "TIMEOUT", float, DEFAULT_TIMEOUT),
        help=f"Seconds before a single download is killed (default: {DEFAULT_TIMEOUT:g}).",
    )
    parser.add_argument(
        "--checkpoint-interval",
        type=float,
        default=_env_number(parser, "CHECKPOINT_INTERVAL", float, DEFAULT_CHECKPOINT_INTERVAL),
        help=(
            "Seconds between progress reports while ffmpeg runs "
            f"(default: {DEFAULT_CHECKPOINT_INTERVAL:g})."
        ),
    )
    return parser.parse_args(argv)


def configure_logging(verbose: int) -> None:
    level = logging.DEBUG if verbose >= 1 else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        force=True,
    )
    logging.getLogger("urllib3").setLevel(logging.WARNING)
    # Raw ffmpeg output is only interesting at -vv.
    logging.getLogger("thread_video_dl.supervisor.ffmpeg").setLevel(
        logging.DEBUG if verbose >= 2 else logging.INFO
    )


def _raise_interrupt(signum: int, frame: Any) -> None:
    raise KeyboardInterrupt


def main(argv: Sequence[str] | None = None) -> int:
    load_dotenv(find_dotenv(usecwd=True))
    args = parse_args(argv)
    configure_logging(args.verbose)

    if not args.api_key:
        logger.error("Twitter API key is required (--api-key or TWITTER_API_KEY).")
        return 1

    tweet_id = str(args.tweet_id).strip()
    if not tweet_id.isdecimal():
        logger.error("Tweet ID must be numeric: %r", args.tweet_id)
        return 1

    try:
        traversal = TraversalOptions(limit=args.limit, stop_at=args.stop_at)
        download_options = DownloadOptions(
            destination=Path(args.destination).expanduser(),
            ffmpeg=args.ffmpeg,
            checkpoint_interval=args.checkpoint_interval,
            timeout=args.timeout,
        )
    except ValueError as exc:
        logger.error("%s", exc)
        return 1

    try:
        download_options.destination.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        logger.error("Encountered an error attempting to create destination directory: %s", exc)
        return 1

    context = RunContext()
    session = build_session(args.api_key)
    client = StatusClient(session, context.ledger)
    supervisor = DownloadSupervisor(download_options, context.ledger)

    previous_sigterm = signal.signal(signal.SIGTERM, _raise_interrupt)
    logger.info("Started twitter thread downloads!")
    try:
        result = walk_thread(
            tweet_id,
            client=client,
            downloader=supervisor,
            options=traversal,
            context=context,
        )
    except KeyboardInterrupt:
        result = TraversalResult("Interrupted.", exit_code=INTERRUPTED_EXIT_CODE, detail="…stopping early")
    finally:
        signal.signal(signal.SIGTERM, previous_sigterm)
        session.close()

    report_exit(result, context)
    return result.exit_code


if __name__ == "__main__":
    raise SystemExit(main())
