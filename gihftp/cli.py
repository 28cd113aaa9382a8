"""``gihftp`` command line entry point."""

from __future__ import annotations

import csv
import json
import logging
import sys
import time
from datetime import date, datetime
from pathlib import Path
from typing import Any, Dict, Optional, Sequence, Tuple

from . import __version__
from .catalog import GihApiClient
from .config import Config, load_config
from .delivery import FtpUploader, SftpUploader
from .errors import ConfigError, GihFtpError
from .logs import configure_logging, format_exception_message, log_event, utc_now_iso
from .orchestrator import (
    RUN_FETCH_FAILED,
    RUN_MERGE_FAILED,
    RUN_PARTIAL,
    RUN_SUCCESS,
    RUN_UPLOAD_FAILED,
    RetrievalOrchestrator,
    RunOutcome,
)
from .partition import build_partition
from .trust import TrustNegotiator

EXIT_SUCCESS = 0
EXIT_CONFIG = 1
EXIT_FETCH = 2
EXIT_MERGE = 3
EXIT_UPLOAD = 4
EXIT_PARTIAL = 5

EXIT_CODES = {
    RUN_SUCCESS: EXIT_SUCCESS,
    RUN_FETCH_FAILED: EXIT_FETCH,
    RUN_MERGE_FAILED: EXIT_MERGE,
    RUN_UPLOAD_FAILED: EXIT_UPLOAD,
    RUN_PARTIAL: EXIT_PARTIAL,
}

FAILURE_FIELDS = ("timestamp", "bucket", "stage", "source", "filename", "error")
SECRET_FIELDS = {"dest_password", "ssh_key_passphrase"}


def exit_code_for(classification: str) -> int:
    return EXIT_CODES.get(classification, EXIT_PARTIAL)


def build_uploader(config: Config) -> Tuple[Any, Optional[TrustNegotiator]]:
    if config.transport == "sftp":
        uploader = SftpUploader(
            config.dest_host,
            config.dest_user,
            connect_timeout_seconds=config.connect_timeout_seconds,
        )
        negotiator = TrustNegotiator(
            password=config.dest_password or None,
            key_path=config.ssh_key or None,
            key_passphrase=config.ssh_key_passphrase or None,
            policy=config.host_key_policy,
            known_hosts_path=config.known_hosts,
            tofu_fallback=config.tofu_fallback,
        )
        return uploader, negotiator
    log_event(
        "FTP_PLAINTEXT",
        logging.WARNING,
        host=config.dest_host,
        message="FTP sends credentials and data unencrypted, host identity is not verified",
    )
    uploader = FtpUploader(
        config.dest_host,
        config.dest_user,
        config.dest_password,
        connect_timeout_seconds=config.connect_timeout_seconds,
    )
    return uploader, None


def safe_config(config: Config) -> Dict[str, Any]:
    payload: Dict[str, Any] = {}
    for key, value in vars(config).items():
        if key in SECRET_FIELDS:
            payload[key] = "***" if value else ""
        elif isinstance(value, date):
            payload[key] = value.isoformat()
        else:
            payload[key] = value
    return payload


def write_failures(path: Path, outcome: RunOutcome) -> None:
    timestamp = datetime.now().astimezone().isoformat(timespec="seconds")
    with open(path, "w", encoding="utf-8", newline="") as handle:
        writer = csv.DictWriter(handle, fieldnames=FAILURE_FIELDS, extrasaction="ignore")
        writer.writeheader()
        for failure in outcome.failures:
            writer.writerow(
                {
                    "timestamp": timestamp,
                    "bucket": failure.bucket,
                    "stage": failure.stage,
                    "source": failure.source,
                    "filename": failure.filename,
                    "error": failure.error,
                }
            )


def verify_connection(config: Config) -> int:
    uploader, negotiator = build_uploader(config)
    try:
        trust = negotiator.negotiate() if negotiator is not None else None
        uploader.verify_connection(trust)
    except GihFtpError as exc:
        log_event("CONNECTION_CHECK_FAILED", logging.ERROR, host=config.dest_host, error=str(exc))
        return EXIT_UPLOAD
    log_event("CONNECTION_CHECK_OK", host=config.dest_host, transport=config.transport)
    return EXIT_SUCCESS


def run(config: Config) -> RunOutcome:
    partition = build_partition(config.mode, config.days, config.end_date)
    uploader, negotiator = (None, None) if config.dry_run else build_uploader(config)
    work_dir = Path(config.work_dir)
    work_dir.mkdir(parents=True, exist_ok=True)
    with GihApiClient(
        verify_tls=config.verify_tls,
        timeout_seconds=config.timeout_seconds,
        scheme=config.api_scheme,
    ) as client:
        orchestrator = RetrievalOrchestrator(
            client,
            config.remote_sources(),
            uploader=uploader,
            negotiator=negotiator,
            work_dir=work_dir,
            remote_dir=config.remote_dir,
            artifact_prefix=config.artifact_prefix,
            cleanup=config.cleanup,
            dry_run=config.dry_run,
            progress=config.progress,
        )
        return orchestrator.run(partition)


def _load(argv: Optional[Sequence[str]]) -> Config:
    try:
        return load_config(argv)
    except SystemExit as exc:
        # argparse usage errors exit with 2, which is reserved for fetch failures.
        if exc.code in (0, None):
            raise
        raise ConfigError("invalid command line arguments") from exc


def main(argv: Optional[Sequence[str]] = None) -> int:
    try:
        config = _load(argv)
    except ConfigError as exc:
        print(f"gihftp: configuration error: {exc}", file=sys.stderr)
        return EXIT_CONFIG

    run_dir: Optional[Path] = None
    run_log_path: Optional[Path] = None
    if config.logs_dir:
        run_dir = Path(config.logs_dir) / datetime.now().strftime("%Y%m%d_%H%M%S")
        run_dir.mkdir(parents=True, exist_ok=True)
        run_log_path = run_dir / "run.log"
    configure_logging(config.log_level, run_log_path)

    log_event(
        "GIHFTP_START",
        version=__version__,
        sources=",".join(config.sources),
        dest=config.dest_host or None,
        transport=config.transport,
        mode=config.mode,
        days=config.days,
    )
    if config.config_path:
        log_event("RUN_CONFIG", config=config.config_path)
    if run_dir is not None:
        log_event("RUN_PATHS", run_dir=run_dir, run_log=run_log_path)

    if config.verify_connection:
        return verify_connection(config)

    started_at = utc_now_iso()
    started = time.monotonic()
    outcome: Optional[RunOutcome] = None
    status = "completed"
    fatal_error: Optional[str] = None
    try:
        outcome = run(config)
    except Exception as exc:  # noqa: BLE001
        status = "failed"
        fatal_error = f"{type(exc).__name__}: {format_exception_message(exc)}"
        raise
    finally:
        if run_dir is not None:
            summary: Dict[str, Any] = {
                "version": __version__,
                "started_at": started_at,
                "finished_at": utc_now_iso(),
                "status": status,
                "fatal_error": fatal_error,
                "elapsed_seconds": round(time.monotonic() - started, 3),
                "run_dir": str(run_dir),
                "config": safe_config(config),
            }
            if outcome is not None:
                summary["run"] = outcome.as_dict()
                write_failures(run_dir / "failures.csv", outcome)
            summary_path = run_dir / "summary.json"
            try:
                summary_path.write_text(json.dumps(summary, indent=2), encoding="utf-8")
                log_event("SUMMARY_WRITTEN", path=summary_path)
            except OSError as exc:
                log_event("SUMMARY_WRITE_WARN", logging.WARNING, error=format_exception_message(exc))

    code = exit_code_for(outcome.classification)
    log_event(
        "GIHFTP_DONE",
        classification=outcome.classification,
        exit_code=code,
        buckets_succeeded=outcome.buckets_succeeded,
        buckets_failed=outcome.buckets_failed,
    )
    return code


if __name__ == "__main__":
    sys.exit(main())
