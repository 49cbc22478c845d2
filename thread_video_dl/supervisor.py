"""Supervision of the ffmpeg process that copies one video to disk."""
from __future__ import annotations

import enum
import logging
import queue
import subprocess
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable

from .core import FailureLedger, MediaVariant, Post

logger = logging.getLogger(__name__)
output_logger = logging.getLogger(f"{__name__}.ffmpeg")

OVERWRITE_PROMPT = b"already exists. Overwrite? [y/N]"
DEFAULT_CHECKPOINT_INTERVAL = 30.0
DEFAULT_TIMEOUT = 300.0
READ_CHUNK_SIZE = 4096
KILL_GRACE_SECONDS = 5.0


@dataclass(slots=True)
class DownloadOptions:
    """Configuration for every download of a run."""

    destination: Path
    ffmpeg: str = "ffmpeg"
    checkpoint_interval: float = DEFAULT_CHECKPOINT_INTERVAL
    timeout: float = DEFAULT_TIMEOUT

    def __post_init__(self) -> None:
        self.destination = Path(self.destination)
        if self.checkpoint_interval <= 0:
            raise ValueError(f"Checkpoint interval must be positive: {self.checkpoint_interval}")
        if self.timeout <= 0:
            raise ValueError(f"Timeout must be positive: {self.timeout}")

    def output_path(self, post_id: str) -> Path:
        return self.destination / f"{post_id}.mp4"


class DownloadStatus(enum.Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"


@dataclass(slots=True)
class DownloadOutcome:
    post_id: str
    status: DownloadStatus
    reason: str | None = None
    returncode: int | None = None

    @property
    def ok(self) -> bool:
        return self.status is DownloadStatus.SUCCEEDED


@dataclass(slots=True, frozen=True)
class Output:
    data: bytes


@dataclass(slots=True, frozen=True)
class Tick:
    pass


@dataclass(slots=True, frozen=True)
class TimedOut:
    pass


@dataclass(slots=True, frozen=True)
class PromptDetected:
    pass


@dataclass(slots=True, frozen=True)
class ProcessClosed:
    returncode: int


def build_metadata_args(post: Post) -> list[str]:
    """Descriptive tags for the output file, empty for partial user objects."""
    author = post.author
    if not author.is_full_profile:
        return []
    tags = [
        "media_type=0",
        f"description={post.text}",
        f"comment={author.name or ''} @{author.screen_name}",
        f"synopsis={post.permalink}",
    ]
    args: list[str] = []
    for tag in tags:
        args.extend(["-metadata", tag])
    return args


def build_command(post: Post, variant: MediaVariant, options: DownloadOptions) -> list[str]:
    return [
        options.ffmpeg,
        "-i",
        variant.url,
        *build_metadata_args(post),
        "-c",
        "copy",
        str(options.output_path(post.id)),
    ]


class _Ticker(threading.Thread):
    """Posts a ``Tick`` every ``interval`` seconds until stopped."""

    def __init__(self, interval: float, post: Callable[[Any], None]) -> None:
        super().__init__(name="ffmpeg-checkpoint", daemon=True)
        self.interval = interval
        self._post = post
        self._stopped = threading.Event()

    def run(self) -> None:
        while not self._stopped.wait(self.interval):
            self._post(Tick())

    def cancel(self) -> None:
        self._stopped.set()


class _Session:
    """State of one ffmpeg invocation, from spawn to settlement."""

    def __init__(self, post: Post, process: Any, options: DownloadOptions) -> None:
        self.post = post
        self.process = process
        self.options = options
        self.events: queue.Queue[Any] = queue.Queue()
        self.pending: list[bytes] = []
        self.settled = threading.Event()
        self.ticker = _Ticker(options.checkpoint_interval, self.post_event)
        self.timeout_timer = threading.Timer(options.timeout, self.post_event, args=(TimedOut(),))
        self.timeout_timer.daemon = True
        self.reader = threading.Thread(target=self._read_output, name="ffmpeg-stderr-reader", daemon=True)

    def post_event(self, event: Any) -> None:
        if self.settled.is_set():
            return
        self.events.put(event)

    def start(self) -> None:
        self.reader.start()
        self.ticker.start()
        self.timeout_timer.start()

    def _read_output(self) -> None:
        stream = self.process.stderr
        window = b""
        try:
            if stream is not None:
                # The overwrite prompt is not newline terminated, so read raw chunks.
                read = getattr(stream, "read1", None) or stream.read
                while True:
                    chunk = read(READ_CHUNK_SIZE)
                    if not chunk:
                        break
                    self.post_event(Output(chunk))
                    window = (window + chunk)[-(len(OVERWRITE_PROMPT) + READ_CHUNK_SIZE):]
                    if OVERWRITE_PROMPT in window:
                        self.post_event(PromptDetected())
                        window = b""
        except (OSError, ValueError) as exc:
            logger.warning("Lost ffmpeg output for %s: %s", self.post.id, exc)
        finally:
            self.post_event(ProcessClosed(self.process.wait()))

    def flush(self, label: str) -> None:
        if self.pending and output_logger.isEnabledFor(logging.DEBUG):
            text = b"".join(self.pending).decode("utf-8", errors="replace")
            output_logger.debug("%s for %s:\n%s", label, self.post.id, text)
        self.pending.clear()

    def cancel_timers(self) -> None:
        self.settled.set()
        self.ticker.cancel()
        self.timeout_timer.cancel()

    def kill(self) -> None:
        if self.process.poll() is not None:
            return
        self.process.kill()
        try:
            self.process.wait(timeout=KILL_GRACE_SECONDS)
        except subprocess.TimeoutExpired:
            logger.warning("ffmpeg for %s did not exit after being killed", self.post.id)

    def close(self) -> None:
        self.ticker.join(timeout=1)
        self.reader.join(timeout=1)
        stdin = getattr(self.process, "stdin", None)
        if stdin is not None:
            stdin.close()
        stream = self.process.stderr
        if stream is not None and not self.reader.is_alive():
            stream.close()


class DownloadSupervisor:
    """Runs ffmpeg for one selected video at a time and records failures."""

    def __init__(
        self,
        options: DownloadOptions,
        ledger: FailureLedger,
        *,
        popen: Callable[..., Any] = subprocess.Popen,
    ) -> None:
        self.options = options
        self.ledger = ledger
        self._popen = popen

    def download(self, post: Post, variant: MediaVariant) -> DownloadOutcome:
        command = build_command(post, variant, self.options)
        logger.debug("Running %s", command)
        try:
            process = self._popen(
                command,
                stdin=subprocess.PIPE,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.PIPE,
            )
        except OSError as exc:
            logger.error("Could not start ffmpeg for %s: %s", post.id, exc)
            return self._fail(post.id, "spawn failed")

        session = _Session(post, process, self.options)
        session.start()
        try:
            return self._supervise(session)
        except BaseException:
            session.cancel_timers()
            session.kill()
            raise
        finally:
            session.close()

    def _supervise(self, session: _Session) -> DownloadOutcome:
        post_id = session.post.id
        while True:
            event = session.events.get()
            if isinstance(event, Output):
                session.pending.append(event.data)
                output_logger.debug("%s", event.data.decode("utf-8", errors="replace"))
            elif isinstance(event, Tick):
                logger.debug("ffmpeg still running on %s", post_id)
                session.flush("stderr so far")
            elif isinstance(event, PromptDetected):
                session.cancel_timers()
                session.kill()
                session.flush("stderr remaining")
                logger.warning("%s video already exists, moving on.", post_id)
                return self._fail(post_id, "already exists")
            elif isinstance(event, TimedOut):
                session.cancel_timers()
                logger.debug("%s took too long, killing process.", post_id)
                session.kill()
                session.flush("stderr remaining")
                logger.warning("Failed to download %s (timeout)", post_id)
                return self._fail(post_id, "timeout")
            elif isinstance(event, ProcessClosed):
                session.cancel_timers()
                session.flush("stderr remaining")
                if event.returncode == 0:
                    logger.info("ffmpeg finished %s exiting with code 0.", post_id)
                    return DownloadOutcome(post_id, DownloadStatus.SUCCEEDED, returncode=0)
                logger.error("ffmpeg failed %s exiting with code %s.", post_id, event.returncode)
                return self._fail(post_id, f"exit code {event.returncode}", returncode=event.returncode)

    def _fail(self, post_id: str, reason: str, *, returncode: int | None = None) -> DownloadOutcome:
        self.ledger.record(post_id, reason)
        return DownloadOutcome(post_id, DownloadStatus.FAILED, reason=reason, returncode=returncode)


__all__ = [
    "DEFAULT_CHECKPOINT_INTERVAL",
    "DEFAULT_TIMEOUT",
    "OVERWRITE_PROMPT",
    "DownloadOptions",
    "DownloadOutcome",
    "DownloadStatus",
    "DownloadSupervisor",
    "ProcessClosed",
    "PromptDetected",
    "TimedOut",
    "Tick",
    "build_command",
    "build_metadata_args",
]
