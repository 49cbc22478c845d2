"""Core traversal utilities for the thread video downloader."""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Iterable, Protocol

import requests

logger = logging.getLogger(__name__)

STATUS_URL = "https://api.twitter.com/1.1/statuses/show.json"
STATUS_PERMALINK = "https://twitter.com/{screen_name}/status/{post_id}/"
MANIFEST_CONTENT_TYPE = "application/x-mpegURL"
REQUEST_TIMEOUT = 30


class ThreadDownloadError(Exception):
    """Base class for failures that abort a thread walk."""


class FetchError(ThreadDownloadError):
    """The status endpoint answered with a non-success HTTP status."""

    def __init__(self, status_code: int, post_id: str, *, reason: str = "", body: str = "") -> None:
        super().__init__(f"HTTP Error Response: {status_code} {reason}".rstrip())
        self.status_code = status_code
        self.post_id = post_id
        self.body = body


class TransportError(ThreadDownloadError):
    """The request for a post could not complete or returned unreadable data."""

    def __init__(self, post_id: str, cause: Exception) -> None:
        super().__init__(f"Failed to fetch {post_id}: {cause}")
        self.post_id = post_id
        self.cause = cause


def compare_ids(a: str, b: str) -> int:
    """Order two post identifiers as unbounded integers (-1, 0 or 1)."""
    left = int(a)
    right = int(b)
    return (left > right) - (left < right)


def id_at_or_before(post_id: str, boundary: str) -> bool:
    return compare_ids(post_id, boundary) <= 0


@dataclass(slots=True, frozen=True)
class Author:
    name: str | None = None
    screen_name: str | None = None
    is_full_profile: bool = False

    @classmethod
    def from_json(cls, user: Any) -> "Author":
        if not isinstance(user, dict):
            return cls()
        # Partial user objects only carry an id.
        return cls(
            name=user.get("name"),
            screen_name=user.get("screen_name"),
            is_full_profile="screen_name" in user,
        )


@dataclass(slots=True, frozen=True)
class MediaVariant:
    content_type: str
    url: str
    bitrate: int | None = None


@dataclass(slots=True, frozen=True)
class Post:
    """A fetched status, reduced to the fields the thread walk relies on."""

    id: str
    reply_parent_id: str | None = None
    quoted_id: str | None = None
    media: tuple[Any, ...] = ()
    author: Author = field(default_factory=Author)
    text: str = ""
    raw: dict[str, Any] = field(default_factory=dict, compare=False, repr=False)

    @classmethod
    def from_json(cls, data: dict[str, Any]) -> "Post":
        entities = data.get("extended_entities")
        media: Iterable[Any] = ()
        if isinstance(entities, dict):
            media = entities.get("media") or ()
        post_id = data.get("id_str") or data.get("id")
        return cls(
            id=str(post_id),
            reply_parent_id=data.get("in_reply_to_status_id_str") or None,
            quoted_id=data.get("quoted_status_id_str") or None,
            media=tuple(media),
            author=Author.from_json(data.get("user")),
            text=data.get("full_text") or data.get("text") or "",
            raw=data,
        )

    @property
    def permalink(self) -> str | None:
        if not self.author.screen_name:
            return None
        return STATUS_PERMALINK.format(screen_name=self.author.screen_name, post_id=self.id)


def select_video_variant(media: Iterable[Any] | None) -> MediaVariant | None:
    """Pick the streaming manifest of the first attached media item.

    Only the first item is considered; posts carrying several videos are
    treated as carrying the first one. Returns ``None`` when nothing usable
    is attached, including when variants exist but none is a manifest.
    """
    if not media:
        return None
    first = next(iter(media), None)
    if not isinstance(first, dict):
        return None
    video_info = first.get("video_info")
    if not isinstance(video_info, dict):
        return None
    for variant in video_info.get("variants") or []:
        if not isinstance(variant, dict):
            continue
        if variant.get("content_type") != MANIFEST_CONTENT_TYPE:
            continue
        url = variant.get("url")
        if not url:
            continue
        return MediaVariant(
            content_type=MANIFEST_CONTENT_TYPE,
            url=str(url),
            bitrate=variant.get("bitrate"),
        )
    return None


class FailureLedger:
    """Per-post failure reasons accumulated over one run."""

    def __init__(self) -> None:
        self._entries: dict[str, str] = {}

    def record(self, post_id: str, reason: str) -> None:
        self._entries[post_id] = reason

    def get(self, post_id: str) -> str | None:
        return self._entries.get(post_id)

    def items(self) -> list[tuple[str, str]]:
        return list(self._entries.items())

    def lines(self) -> list[str]:
        return [f"{post_id} ({reason})" for post_id, reason in self._entries.items()]

    def __contains__(self, post_id: object) -> bool:
        return post_id in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def __bool__(self) -> bool:
        return bool(self._entries)


@dataclass(slots=True)
class RunContext:
    """State shared by the components of a single run."""

    ledger: FailureLedger = field(default_factory=FailureLedger)
    processed: int = 0


@dataclass(slots=True)
class TraversalOptions:
    limit: int | None = None
    stop_at: str | None = None

    def __post_init__(self) -> None:
        if self.limit is not None and self.limit <= 0:
            self.limit = None
        if self.stop_at is not None:
            self.stop_at = str(self.stop_at).strip() or None
        if self.stop_at is not None and not self.stop_at.isdecimal():
            raise ValueError(f"Stop boundary must be a numeric post id: {self.stop_at!r}")


@dataclass(slots=True)
class TraversalResult:
    message: str
    exit_code: int = 0
    detail: str = ""


def build_session(api_key: str) -> requests.Session:
    session = requests.Session()
    session.headers.update(
        {
            "Authorization": f"Bearer {api_key}",
            "Accept": "application/json",
        }
    )
    return session


class StatusClient:
    """Fetches single posts from the status lookup endpoint."""

    def __init__(self, session: requests.Session, ledger: FailureLedger, *, url: str = STATUS_URL) -> None:
        self.session = session
        self.ledger = ledger
        self.url = url

    def fetch(self, post_id: str) -> Post:
        params = {"id": post_id, "tweet_mode": "extended"}
        try:
            response = self.session.get(self.url, params=params, timeout=REQUEST_TIMEOUT)
        except requests.exceptions.RequestException as exc:
            raise TransportError(post_id, exc) from exc

        if not 200 <= response.status_code < 300:
            self.ledger.record(post_id, f"{response.status_code} HTTP error")
            body = getattr(response, "text", "") or ""
            logger.error("Failure downloading tweet %s: %s", post_id, body)
            raise FetchError(
                response.status_code,
                post_id,
                reason=getattr(response, "reason", "") or "",
                body=body,
            )

        try:
            data = response.json()
        except ValueError as exc:
            raise TransportError(post_id, exc) from exc
        if not isinstance(data, dict):
            raise TransportError(post_id, ValueError("status payload is not an object"))

        post = Post.from_json(data)
        logger.info("Fetched Tweet %s", post.id)
        if logger.isEnabledFor(logging.DEBUG):
            logger.debug("Status payload for %s: %s", post.id, json.dumps(data, indent=2, ensure_ascii=False))
        return post


class PostFetcher(Protocol):
    def fetch(self, post_id: str) -> Post: ...


class VideoDownloader(Protocol):
    def download(self, post: Post, variant: MediaVariant) -> Any: ...


def resolve_video(post: Post, client: PostFetcher) -> tuple[Post, MediaVariant] | None:
    """Find the video for ``post``, looking one level into a quoted post."""
    variant = select_video_variant(post.media)
    if variant is not None:
        return post, variant

    if not post.media:
        logger.debug("Fetched tweet %s does not have any media associated with it", post.id)
    else:
        logger.debug("Video info on %s was not usable, moving on", post.id)

    if not post.quoted_id:
        return None

    logger.debug("Checking quoted tweet %s", post.quoted_id)
    quoted = client.fetch(post.quoted_id)
    variant = select_video_variant(quoted.media)
    if variant is None:
        logger.debug("Quoted tweet %s has no usable video either", quoted.id)
        return None
    return quoted, variant


def walk_thread(
    start_id: str,
    *,
    client: PostFetcher,
    downloader: VideoDownloader,
    options: TraversalOptions,
    context: RunContext,
) -> TraversalResult:
    """Walk a reply chain backward from ``start_id`` downloading each video.

    Every post that is fetched and checked for media counts towards
    ``context.processed``, whether or not a download happened. Fetch
    failures end the walk with exit code 1; download failures are left in
    the ledger and the walk moves on to the reply parent.
    """
    post_id = str(start_id)
    while True:
        if options.stop_at is not None and id_at_or_before(post_id, options.stop_at):
            return TraversalResult("Reached or passed the requested id.", detail="…exiting cleanly")

        logger.debug("Fetching %s.", post_id)
        try:
            post = client.fetch(post_id)
            resolved = resolve_video(post, client)
        except ThreadDownloadError as exc:
            logger.error("%s", exc)
            return TraversalResult(
                "Nothing left to download.",
                exit_code=1,
                detail=f"Couldn't fetch {exc.post_id}",
            )

        if resolved is not None:
            source, variant = resolved
            logger.debug("Spawning ffmpeg to download video from %s.", source.id)
            downloader.download(source, variant)

        context.processed += 1
        if options.limit is not None and context.processed >= options.limit:
            return TraversalResult("Reached the limit of tweets to process.", detail="…exiting cleanly")

        if not post.reply_parent_id:
            return TraversalResult("Reached the beginning of the thread.")
        post_id = post.reply_parent_id


def report_exit(result: TraversalResult, context: RunContext) -> None:
    summary = f"{result.message} {result.detail}".strip()
    if result.exit_code == 0:
        logger.info("%s", summary)
    else:
        logger.error("%s", summary)

    failures = context.ledger.lines()
    if failures:
        logger.warning(
            "The following tweets failed to download:\n%s",
            "\n".join(f"  {line}" for line in failures),
        )

    logger.info(
        "Exiting after %d tweets processed and %d failures.",
        context.processed,
        len(failures),
    )


__all__ = [
    "MANIFEST_CONTENT_TYPE",
    "STATUS_URL",
    "Author",
    "FailureLedger",
    "FetchError",
    "MediaVariant",
    "Post",
    "RunContext",
    "StatusClient",
    "ThreadDownloadError",
    "TransportError",
    "TraversalOptions",
    "TraversalResult",
    "build_session",
    "compare_ids",
    "id_at_or_before",
    "report_exit",
    "resolve_video",
    "select_video_variant",
    "walk_thread",
]
