"""Tests for CLI commands - enqueue, status, requeue-errors, run-once, download."""

import json
import re
from pathlib import Path

import pytest
from click.testing import CliRunner

from fieldsync.client.cli import cli, get_config_dir, get_config_file
from fieldsync.client.sync.queue import QueueStore
from fieldsync.core.types import ErrorKind

API = "https://graph.test/v1.0"


@pytest.fixture
def runner() -> CliRunner:
    """Create a CLI test runner."""
    return CliRunner()


@pytest.fixture
def home(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Point FIELDSYNC_HOME at a temporary directory with a config file."""
    config_home = tmp_path / ".fieldsync"
    config_home.mkdir()
    monkeypatch.setenv("FIELDSYNC_HOME", str(config_home))
    monkeypatch.delenv("FIELDSYNC_TOKEN", raising=False)
    write_config(config_home, tmp_path / "queue")
    return config_home


def write_config(config_home: Path, queue_dir: Path, token: str | None = None) -> None:
    data: dict = {
        "remote": {"api_url": API},
        "upload": {"queue_dir": str(queue_dir), "container": {"drive_id": "d1"}},
        "download": {"container": {"drive_id": "d1"}},
    }
    if token:
        data["auth_token"] = token
    (config_home / "config.json").write_text(json.dumps(data))


@pytest.fixture
def sources(tmp_path: Path) -> list[Path]:
    """Create two files in a client folder."""
    folder = tmp_path / "visits" / "client-042"
    folder.mkdir(parents=True)
    paths = []
    for name in ("report.pdf", "photo.jpg"):
        path = folder / name
        path.write_bytes(b"data")
        paths.append(path)
    return paths


class TestConfigLocation:
    """Tests for config directory resolution."""

    def test_home_override(self, home: Path) -> None:
        """FIELDSYNC_HOME replaces ~/.fieldsync."""
        assert get_config_dir() == home
        assert get_config_file() == home / "config.json"


class TestEnqueueCommand:
    """Tests for 'fieldsync enqueue'."""

    def test_enqueue_files(self, runner: CliRunner, home: Path, sources: list[Path], tmp_path: Path) -> None:
        """Files are copied to the pending area."""
        result = runner.invoke(cli, ["enqueue", *map(str, sources)])

        assert result.exit_code == 0, result.output
        assert "2 file(s) queued" in result.output
        assert QueueStore(tmp_path / "queue").pending_count() == 2

    def test_enqueue_twice(self, runner: CliRunner, home: Path, sources: list[Path]) -> None:
        """A second enqueue of the same files is skipped."""
        runner.invoke(cli, ["enqueue", str(sources[0])])
        result = runner.invoke(cli, ["enqueue", str(sources[0])])

        assert result.exit_code == 0
        assert "0 file(s) queued" in result.output
        assert "skipped" in result.output

    def test_enqueue_missing_file(self, runner: CliRunner, home: Path, tmp_path: Path) -> None:
        """A missing file is a usage error."""
        result = runner.invoke(cli, ["enqueue", str(tmp_path / "nope.pdf")])
        assert result.exit_code != 0


class TestStatusCommand:
    """Tests for 'fieldsync status'."""

    def test_status_counts(self, runner: CliRunner, home: Path, sources: list[Path]) -> None:
        """Status shows the count of each area."""
        runner.invoke(cli, ["enqueue", *map(str, sources)])
        result = runner.invoke(cli, ["status"])

        assert result.exit_code == 0
        assert "Pending: 2" in result.output
        assert "Errors:  0" in result.output

    def test_status_lists_errors(
        self, runner: CliRunner, home: Path, sources: list[Path], tmp_path: Path
    ) -> None:
        """--errors shows each failed item with its recorded reason."""
        store = QueueStore(tmp_path / "queue")
        store.enqueue(sources[0])
        store.mark_error(store.list_pending()[0], "name rejected", ErrorKind.FATAL)

        result = runner.invoke(cli, ["status", "--errors"])

        assert result.exit_code == 0
        assert "client-042/report.pdf: name rejected [fatal]" in result.output

    def test_invalid_config(self, runner: CliRunner, home: Path) -> None:
        """A malformed config file is reported."""
        (home / "config.json").write_text("{oops")
        result = runner.invoke(cli, ["status"])

        assert result.exit_code == 1
        assert "Error" in result.output

    def test_explicit_config_path(self, runner: CliRunner, home: Path, tmp_path: Path) -> None:
        """--config selects another file."""
        other = tmp_path / "other.json"
        other.write_text(json.dumps({"upload": {"queue_dir": str(tmp_path / "other-queue")}}))

        result = runner.invoke(cli, ["--config", str(other), "status"])

        assert result.exit_code == 0
        assert str(tmp_path / "other-queue") in result.output


class TestRequeueErrorsCommand:
    """Tests for 'fieldsync requeue-errors'."""

    def test_requeue(self, runner: CliRunner, home: Path, sources: list[Path], tmp_path: Path) -> None:
        """Errored items go back to pending."""
        store = QueueStore(tmp_path / "queue")
        store.enqueue(sources[0])
        store.mark_error(store.list_pending()[0], "timeout")

        result = runner.invoke(cli, ["requeue-errors"])

        assert result.exit_code == 0
        assert "1 item(s) requeued" in result.output
        assert store.pending_count() == 1


class TestRunOnceCommand:
    """Tests for 'fieldsync run-once'."""

    def test_nothing_to_upload(self, runner: CliRunner, home: Path) -> None:
        """An empty queue needs no token and no network."""
        result = runner.invoke(cli, ["run-once"])

        assert result.exit_code == 0
        assert "Nothing to upload" in result.output

    def test_missing_token_aborts(self, runner: CliRunner, home: Path, sources: list[Path]) -> None:
        """Without a token the cycle is aborted and files stay pending."""
        runner.invoke(cli, ["enqueue", str(sources[0])])
        result = runner.invoke(cli, ["run-once"])

        assert result.exit_code == 1
        assert "aborted" in result.output

    def test_uploads_pending(  # type: ignore[no-untyped-def]
        self, runner: CliRunner, home: Path, sources: list[Path], tmp_path: Path, httpx_mock
    ) -> None:
        """Pending files are uploaded with the configured token."""
        write_config(home, tmp_path / "queue", token="secret")
        httpx_mock.add_response(url=f"{API}/drives/d1/root:/FieldSync", json={"id": "r"})
        httpx_mock.add_response(url=f"{API}/drives/d1/root:/FieldSync/client-042", json={"id": "c"})
        httpx_mock.add_response(
            method="PUT",
            url=re.compile(r".*/FieldSync/client-042/report\.pdf:/content.*"),
            status_code=201,
            json={"id": "1", "name": "report.pdf", "eTag": "v1"},
        )
        runner.invoke(cli, ["enqueue", str(sources[0])])

        result = runner.invoke(cli, ["run-once"])

        assert result.exit_code == 0, result.output
        assert "Uploaded 1, failed 0" in result.output
        assert "/FieldSync/client-042/report.pdf" in result.output
        assert httpx_mock.get_requests(method="PUT")[0].headers["Authorization"] == "Bearer secret"
        assert json.loads((home / "stats.json").read_text())["uploaded"] == 1


class TestDownloadCommand:
    """Tests for 'fieldsync download'."""

    def test_download_without_prefixes(self, runner: CliRunner, home: Path, tmp_path: Path) -> None:
        """Nothing is downloaded when no prefix is configured or given."""
        result = runner.invoke(cli, ["download", str(tmp_path / "target")])

        assert result.exit_code == 0
        assert "Downloaded 0" in result.output

    def test_download_without_token(self, runner: CliRunner, home: Path, tmp_path: Path) -> None:
        """A prefix without a token reports the missing credentials."""
        result = runner.invoke(cli, ["download", str(tmp_path / "target"), "--prefix", "ACME-"])

        assert result.exit_code == 1
        assert "FIELDSYNC_TOKEN" in result.output
