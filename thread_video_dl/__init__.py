"""Public package surface for the thread video downloader."""
from .core import (
    MANIFEST_CONTENT_TYPE,
    STATUS_URL,
    FailureLedger,
    FetchError,
    MediaVariant,
    Post,
    RunContext,
    StatusClient,
    TransportError,
    TraversalOptions,
    TraversalResult,
    build_session,
    compare_ids,
    report_exit,
    select_video_variant,
    walk_thread,
)
from .supervisor import DownloadOptions, DownloadOutcome, DownloadStatus, DownloadSupervisor

__version__ = "0.1.0"

__all__ = [
    "MANIFEST_CONTENT_TYPE",
    "STATUS_URL",
    "DownloadOptions",
    "DownloadOutcome",
    "DownloadStatus",
    "DownloadSupervisor",
    "FailureLedger",
    "FetchError",
    "MediaVariant",
    "Post",
    "RunContext",
    "StatusClient",
    "TransportError",
    "TraversalOptions",
    "TraversalResult",
    "build_session",
    "compare_ids",
    "report_exit",
    "select_video_variant",
    "walk_thread",
    "__version__",
]
