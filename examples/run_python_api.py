from __future__ import annotations

import logging
import os
from pathlib import Path

from thread_video_dl import (
    DownloadOptions,
    DownloadSupervisor,
    RunContext,
    StatusClient,
    TraversalOptions,
    build_session,
    report_exit,
    walk_thread,
)


def main() -> None:
    """Demonstrate the Python API by downloading the last few videos of a thread."""
    logging.basicConfig(level=logging.INFO, format="%(asctime)s [%(levelname)s] %(name)s: %(message)s")

    context = RunContext()
    session = build_session(os.environ["TWITTER_API_KEY"])
    destination = Path("./example_runs")
    destination.mkdir(parents=True, exist_ok=True)

    result = walk_thread(
        "1600000000000000000",
        client=StatusClient(session, context.ledger),
        downloader=DownloadSupervisor(DownloadOptions(destination=destination, timeout=120), context.ledger),
        options=TraversalOptions(limit=3),
        context=context,
    )

    report_exit(result, context)


if __name__ == "__main__":
    main()
