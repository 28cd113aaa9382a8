from __future__ import annotations

import csv
import json
from datetime import date
from pathlib import Path
from typing import List

import pytest

from gihftp import cli
from gihftp.catalog import LogFileDescriptor, RemoteSource
from gihftp.errors import CatalogFetchError, DeliveryError
from gihftp.orchestrator import RUN_FETCH_FAILED, RUN_MERGE_FAILED, RUN_PARTIAL, RUN_SUCCESS, RUN_UPLOAD_FAILED


class FakeClient:
    payloads = {"10.0.0.1": b"x.com|10\ny.com|3\n", "10.0.0.2": b"x.com|7\nz.com|1\n"}
    down: List[str] = []

    def __init__(self, **kwargs: object) -> None:
        self.kwargs = kwargs

    def __enter__(self) -> "FakeClient":
        return self

    def __exit__(self, *exc_info: object) -> None:
        return None

    def fetch_log_files(self, source: RemoteSource, start: date, end: date) -> List[LogFileDescriptor]:
        if source.host in self.down:
            raise CatalogFetchError(source.host, "API request failed: refused")
        return [LogFileDescriptor(start.strftime("%Y%m%d"), "q.log", "/dl/q.log")]

    def download_file(self, source: RemoteSource, descriptor: LogFileDescriptor) -> bytes:
        return self.payloads[source.host]


@pytest.fixture
def fake_client(monkeypatch: pytest.MonkeyPatch):
    FakeClient.down = []
    monkeypatch.setattr(cli, "GihApiClient", FakeClient)
    return FakeClient


def _base_args(tmp_path: Path) -> List[str]:
    return [
        "--gih-servers",
        "10.0.0.1,10.0.0.2",
        "--days",
        "1",
        "--end-date",
        "2024-01-01",
        "--work-dir",
        str(tmp_path / "work"),
        "--logs-dir",
        str(tmp_path / "logs"),
        "--no-progress",
    ]


def _run_dir(tmp_path: Path) -> Path:
    (run_dir,) = list((tmp_path / "logs").iterdir())
    return run_dir


def test_exit_code_mapping() -> None:
    assert cli.exit_code_for(RUN_SUCCESS) == 0
    assert cli.exit_code_for(RUN_FETCH_FAILED) == 2
    assert cli.exit_code_for(RUN_MERGE_FAILED) == 3
    assert cli.exit_code_for(RUN_UPLOAD_FAILED) == 4
    assert cli.exit_code_for(RUN_PARTIAL) == 5


def test_configuration_errors_exit_1(capsys: pytest.CaptureFixture) -> None:
    assert cli.main([]) == 1
    assert "configuration error" in capsys.readouterr().err
    assert cli.main(["--gih-servers", "a", "--ftp-host", "f", "--mode", "weekly"]) == 1


def test_dry_run_writes_artifact_and_run_files(tmp_path: Path, fake_client) -> None:
    code = cli.main(_base_args(tmp_path) + ["--dry-run"])

    assert code == 0
    artifact = tmp_path / "work" / "NETINTERNET-GIH-DNS_250k-20240101.txt"
    assert artifact.read_text(encoding="utf-8") == "x.com|17\ny.com|3\nz.com|1\n"
    run_dir = _run_dir(tmp_path)
    summary = json.loads((run_dir / "summary.json").read_text(encoding="utf-8"))
    assert summary["status"] == "completed"
    assert summary["run"]["classification"] == RUN_SUCCESS
    assert summary["config"]["end_date"] == "2024-01-01"
    assert "GIHFTP_DONE" in (run_dir / "run.log").read_text(encoding="utf-8")


def test_all_sources_down_exits_2(tmp_path: Path, fake_client) -> None:
    fake_client.down = ["10.0.0.1", "10.0.0.2"]

    assert cli.main(_base_args(tmp_path) + ["--dry-run"]) == 2
    with open(_run_dir(tmp_path) / "failures.csv", encoding="utf-8", newline="") as handle:
        rows = list(csv.DictReader(handle))
    assert [row["stage"] for row in rows] == ["catalog", "catalog", "fetch"]


def test_upload_failure_exits_4(tmp_path: Path, fake_client, monkeypatch: pytest.MonkeyPatch) -> None:
    class BrokenFtp:
        transport = "ftp"

        def __init__(self, *args: object, **kwargs: object) -> None:
            pass

        def upload(self, local_path, remote_path, trust=None):
            raise DeliveryError("FTP login failed: 530")

    monkeypatch.setattr(cli, "FtpUploader", BrokenFtp)

    assert cli.main(_base_args(tmp_path) + ["--ftp-host", "ftp.example", "--ftp-password", "pw"]) == 4


def test_one_source_down_exits_5(tmp_path: Path, fake_client) -> None:
    fake_client.down = ["10.0.0.2"]

    assert cli.main(_base_args(tmp_path) + ["--dry-run"]) == 5


def test_sftp_builds_negotiator() -> None:
    config = cli.load_config(
        ["--gih-servers", "a", "--ftp-host", "h", "--transport", "sftp", "--host-key-policy", "tofu"],
        environ={"FTP_PASSWORD": "pw"},
    )

    uploader, negotiator = cli.build_uploader(config)

    assert uploader.transport == "sftp"
    assert negotiator.policy == "tofu"
    assert negotiator.password == "pw"


def test_verify_connection(monkeypatch: pytest.MonkeyPatch) -> None:
    calls = []

    class CheckingFtp:
        transport = "ftp"

        def __init__(self, *args: object, **kwargs: object) -> None:
            pass

        def verify_connection(self, trust=None) -> None:
            calls.append(trust)

    monkeypatch.setattr(cli, "FtpUploader", CheckingFtp)

    assert cli.main(["--gih-servers", "a", "--ftp-host", "h", "--verify-connection"]) == 0
    assert calls == [None]
