from __future__ import annotations

import os
from pathlib import Path

import pytest

import thread_video_dl.cli as cli
from thread_video_dl.core import RunContext, TraversalOptions, TraversalResult


@pytest.fixture(autouse=True)
def isolated_environment(monkeypatch, tmp_path: Path):
    for name in ("API_KEY", "DESTINATION", "LIMIT", "STOP_AT", "VERBOSE", "FFMPEG", "TIMEOUT", "CHECKPOINT_INTERVAL"):
        monkeypatch.delenv(f"TWITTER_{name}", raising=False)
    monkeypatch.chdir(tmp_path)
    monkeypatch.setattr(cli, "configure_logging", lambda verbose: None)


def test_parse_args_reads_environment(monkeypatch, tmp_path: Path):
    monkeypatch.setenv("TWITTER_API_KEY", "env-key")
    monkeypatch.setenv("TWITTER_DESTINATION", str(tmp_path / "videos"))
    monkeypatch.setenv("TWITTER_LIMIT", "5")
    monkeypatch.setenv("TWITTER_STOP_AT", "100")

    args = cli.parse_args(["12345"])

    assert args.tweet_id == "12345"
    assert args.api_key == "env-key"
    assert args.destination == tmp_path / "videos"
    assert args.limit == 5
    assert args.stop_at == "100"
    assert args.verbose == 0


def test_parse_args_flags_override_environment(monkeypatch):
    monkeypatch.setenv("TWITTER_API_KEY", "env-key")

    args = cli.parse_args(["12345", "-k", "flag-key", "-vv", "--timeout", "60"])

    assert args.api_key == "flag-key"
    assert args.verbose == 2
    assert args.timeout == 60.0
    assert args.destination == Path.home() / "Downloads"


def test_parse_args_rejects_bad_environment_number(monkeypatch):
    monkeypatch.setenv("TWITTER_LIMIT", "lots")

    with pytest.raises(SystemExit):
        cli.parse_args(["12345"])


def test_main_requires_api_key():
    assert cli.main(["12345"]) == 1


def test_main_rejects_non_numeric_tweet_id():
    assert cli.main(["not-an-id", "-k", "key"]) == 1
    assert cli.main(["12²", "-k", "key"]) == 1


def test_main_rejects_superscript_stop_boundary(tmp_path: Path):
    assert cli.main(["12345", "-k", "key", "-d", str(tmp_path), "-s", "²"]) == 1


def test_main_fails_when_destination_cannot_be_created(tmp_path: Path):
    blocker = tmp_path / "file"
    blocker.write_text("x", encoding="utf-8")

    assert cli.main(["12345", "-k", "key", "-d", str(blocker / "videos")]) == 1


def test_main_runs_walk_and_reports(monkeypatch, tmp_path: Path):
    seen: dict = {}

    def fake_walk(start_id, *, client, downloader, options, context):
        seen["start_id"] = start_id
        seen["options"] = options
        seen["destination"] = downloader.options.destination
        seen["auth"] = client.session.headers["Authorization"]
        context.processed = 2
        return TraversalResult("Reached the beginning of the thread.")

    reports: list[tuple[TraversalResult, RunContext]] = []
    monkeypatch.setattr(cli, "walk_thread", fake_walk)
    monkeypatch.setattr(cli, "report_exit", lambda result, context: reports.append((result, context)))

    destination = tmp_path / "out"
    code = cli.main(["12345", "-k", "key", "-d", str(destination), "-l", "3", "-s", "100"])

    assert code == 0
    assert destination.is_dir()
    assert seen["start_id"] == "12345"
    assert seen["options"] == TraversalOptions(limit=3, stop_at="100")
    assert seen["destination"] == destination
    assert seen["auth"] == "Bearer key"
    assert len(reports) == 1
    assert reports[0][1].processed == 2


def test_main_reports_on_interrupt(monkeypatch, tmp_path: Path):
    def interrupted_walk(start_id, *, client, downloader, options, context):
        context.processed = 1
        context.ledger.record("12345", "timeout")
        raise KeyboardInterrupt

    reports: list[tuple[TraversalResult, RunContext]] = []
    monkeypatch.setattr(cli, "walk_thread", interrupted_walk)
    monkeypatch.setattr(cli, "report_exit", lambda result, context: reports.append((result, context)))

    code = cli.main(["12345", "-k", "key", "-d", str(tmp_path)])

    assert code == cli.INTERRUPTED_EXIT_CODE
    result, context = reports[0]
    assert result.exit_code == cli.INTERRUPTED_EXIT_CODE
    assert context.processed == 1
    assert context.ledger.items() == [("12345", "timeout")]


def test_main_loads_dotenv(monkeypatch, tmp_path: Path):
    (tmp_path / ".env").write_text("TWITTER_API_KEY=dotenv-key\n", encoding="utf-8")
    seen: dict = {}

    def fake_walk(start_id, *, client, downloader, options, context):
        seen["auth"] = client.session.headers["Authorization"]
        return TraversalResult("Reached the beginning of the thread.")

    monkeypatch.setattr(cli, "walk_thread", fake_walk)
    monkeypatch.setattr(cli, "report_exit", lambda result, context: None)

    try:
        assert cli.main(["12345", "-d", str(tmp_path / "out")]) == 0
    finally:
        os.environ.pop("TWITTER_API_KEY", None)
    assert seen["auth"] == "Bearer dotenv-key"
