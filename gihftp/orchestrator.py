"""Fetch, merge and deliver one aggregate per date bucket."""

from __future__ import annotations

import logging
import time
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol, Sequence

from tqdm import tqdm

from .catalog import GihApiClient, RemoteSource
from .delivery import UploadReport, remote_path_for
from .errors import (
    CatalogFetchError,
    DownloadError,
    EmptyAggregateError,
    GihFtpError,
)
from .logs import format_exception_message, log_event
from .merger import DomainMerger
from .partition import DEFAULT_ARTIFACT_PREFIX, DateBucket
from .trust import TrustDecision, TrustNegotiator

BUCKET_RUNNING = "running"
BUCKET_DELIVERED = "delivered"
BUCKET_DRY_RUN = "dry_run"
BUCKET_FETCH_FAILED = "fetch_failed"
BUCKET_MERGE_FAILED = "merge_failed"
BUCKET_DELIVERY_FAILED = "delivery_failed"
COMPLETED_BUCKET_STATUSES = {BUCKET_DELIVERED, BUCKET_DRY_RUN}

RUN_SUCCESS = "success"
RUN_FETCH_FAILED = "fetch_failed"
RUN_MERGE_FAILED = "merge_failed"
RUN_UPLOAD_FAILED = "upload_failed"
RUN_PARTIAL = "partial"


class Uploader(Protocol):
    transport: str

    def upload(self, local_path: Path, remote_path: str, trust: Optional[TrustDecision]) -> UploadReport:
        ...


@dataclass(frozen=True)
class FailureRecord:
    bucket: str
    stage: str
    error: str
    source: str = ""
    filename: str = ""


@dataclass
class BucketOutcome:
    bucket: DateBucket
    status: str = BUCKET_RUNNING
    sources_attempted: int = 0
    sources_succeeded: int = 0
    sources_failed: int = 0
    files_listed: int = 0
    files_downloaded: int = 0
    files_failed: int = 0
    lines_accepted: int = 0
    lines_rejected: int = 0
    unique_domains: int = 0
    total_requests: int = 0
    top_domain: str = ""
    artifact: Optional[Path] = None
    applied_policy: Optional[str] = None
    upload: Optional[UploadReport] = None
    error: Optional[str] = None

    @property
    def fully_succeeded(self) -> bool:
        return self.status in COMPLETED_BUCKET_STATUSES and self.sources_failed == 0

    def as_dict(self) -> Dict[str, Any]:
        payload = asdict(self)
        payload["bucket"] = self.bucket.label
        payload["artifact"] = str(self.artifact) if self.artifact else None
        return payload


def classify_run(buckets: Sequence[BucketOutcome]) -> str:
    if not any(bucket.sources_succeeded for bucket in buckets):
        return RUN_FETCH_FAILED
    if all(bucket.fully_succeeded for bucket in buckets):
        return RUN_SUCCESS
    completed = [bucket for bucket in buckets if bucket.status in COMPLETED_BUCKET_STATUSES]
    if not completed and all(
        bucket.status in (BUCKET_MERGE_FAILED, BUCKET_DELIVERY_FAILED) for bucket in buckets
    ):
        if all(bucket.status == BUCKET_MERGE_FAILED for bucket in buckets):
            return RUN_MERGE_FAILED
        return RUN_UPLOAD_FAILED
    return RUN_PARTIAL


@dataclass
class RunOutcome:
    buckets: List[BucketOutcome] = field(default_factory=list)
    failures: List[FailureRecord] = field(default_factory=list)
    elapsed_seconds: float = 0.0

    @property
    def classification(self) -> str:
        return classify_run(self.buckets)

    @property
    def buckets_succeeded(self) -> int:
        return sum(1 for bucket in self.buckets if bucket.fully_succeeded)

    @property
    def buckets_failed(self) -> int:
        return sum(1 for bucket in self.buckets if bucket.status not in COMPLETED_BUCKET_STATUSES)

    def totals(self) -> Dict[str, int]:
        return {
            "buckets": len(self.buckets),
            "buckets_succeeded": self.buckets_succeeded,
            "buckets_failed": self.buckets_failed,
            "sources_attempted": sum(bucket.sources_attempted for bucket in self.buckets),
            "sources_succeeded": sum(bucket.sources_succeeded for bucket in self.buckets),
            "sources_failed": sum(bucket.sources_failed for bucket in self.buckets),
            "files_downloaded": sum(bucket.files_downloaded for bucket in self.buckets),
            "files_failed": sum(bucket.files_failed for bucket in self.buckets),
        }

    def as_dict(self) -> Dict[str, Any]:
        return {
            "classification": self.classification,
            "elapsed_seconds": round(self.elapsed_seconds, 3),
            "totals": self.totals(),
            "buckets": [bucket.as_dict() for bucket in self.buckets],
            "failures": [asdict(failure) for failure in self.failures],
        }


class RetrievalOrchestrator:
    """Runs a date partition bucket by bucket, source by source, file by file.

    Failures are contained at the level they happen: a file download, a
    source catalog, or a bucket's merge or delivery. They are logged,
    recorded in the ``RunOutcome`` and never abort the remaining work.
    """

    def __init__(
        self,
        client: GihApiClient,
        sources: Sequence[RemoteSource],
        uploader: Optional[Uploader] = None,
        negotiator: Optional[TrustNegotiator] = None,
        work_dir: Path | str = ".",
        remote_dir: str = "/var/log/gih/",
        artifact_prefix: str = DEFAULT_ARTIFACT_PREFIX,
        cleanup: bool = True,
        dry_run: bool = False,
        progress: bool = True,
    ) -> None:
        if uploader is None and not dry_run:
            raise ValueError("an uploader is required unless dry_run is set")
        self.client = client
        self.sources = list(sources)
        self.uploader = uploader
        self.negotiator = negotiator
        self.work_dir = Path(work_dir)
        self.remote_dir = remote_dir
        self.artifact_prefix = artifact_prefix
        self.cleanup = cleanup
        self.dry_run = dry_run
        self.progress = progress
        self._failures: List[FailureRecord] = []

    def _record_failure(
        self,
        bucket: DateBucket,
        stage: str,
        error: str,
        source: str = "",
        filename: str = "",
    ) -> None:
        self._failures.append(
            FailureRecord(bucket=bucket.label, stage=stage, error=error, source=source, filename=filename)
        )

    def run(self, partition: Sequence[DateBucket]) -> RunOutcome:
        started = time.monotonic()
        self._failures = []
        outcome = RunOutcome(failures=self._failures)
        log_event("RUN_START", buckets=len(partition), sources=",".join(str(s) for s in self.sources))
        for bucket in tqdm(partition, desc="Buckets", unit="bucket", leave=False, disable=not self.progress):
            outcome.buckets.append(self.process_bucket(bucket))
        outcome.elapsed_seconds = time.monotonic() - started
        log_event(
            "RUN_DONE",
            classification=outcome.classification,
            duration_seconds=f"{outcome.elapsed_seconds:.2f}",
            **outcome.totals(),
        )
        return outcome

    def process_bucket(self, bucket: DateBucket) -> BucketOutcome:
        outcome = BucketOutcome(bucket=bucket)
        merger = DomainMerger(self.work_dir)
        log_event("BUCKET_START", bucket=bucket.label, start=bucket.start.isoformat(), end=bucket.end.isoformat())

        for source in tqdm(self.sources, desc=f"Sources {bucket.label}", unit="source", leave=False, disable=not self.progress):
            outcome.sources_attempted += 1
            try:
                self.fetch_source(source, bucket, merger, outcome)
            except CatalogFetchError as exc:
                outcome.sources_failed += 1
                self._record_failure(bucket, "catalog", str(exc), source=str(source))
                log_event("SOURCE_FAILED", logging.ERROR, bucket=bucket.label, host=source.host, error=exc.reason)
                continue
            outcome.sources_succeeded += 1

        try:
            self._finalize(bucket, merger, outcome)
        except EmptyAggregateError as exc:
            outcome.status = BUCKET_FETCH_FAILED
            outcome.error = str(exc)
            self._record_failure(bucket, "fetch", str(exc))
            log_event("BUCKET_SKIPPED", logging.WARNING, bucket=bucket.label, reason="no_successful_source")
            return outcome
        except OSError as exc:
            outcome.status = BUCKET_MERGE_FAILED
            outcome.error = format_exception_message(exc)
            self._record_failure(bucket, "merge", outcome.error)
            log_event("MERGE_FAILED", logging.ERROR, bucket=bucket.label, error=outcome.error)
            return outcome

        if self.dry_run:
            outcome.status = BUCKET_DRY_RUN
            log_event("DRY_RUN", bucket=bucket.label, action="skip_delivery", file=outcome.artifact)
            return outcome

        self._deliver(bucket, outcome, outcome.artifact)
        return outcome

    def fetch_source(
        self,
        source: RemoteSource,
        bucket: DateBucket,
        merger: DomainMerger,
        outcome: BucketOutcome,
    ) -> None:
        log_event("SOURCE_FETCH", bucket=bucket.label, host=source.host)
        files = self.client.fetch_log_files(source, bucket.start, bucket.end)
        outcome.files_listed += len(files)
        if not files:
            log_event("SOURCE_EMPTY", logging.WARNING, bucket=bucket.label, host=source.host)
            return

        for descriptor in files:
            log_event("FILE_DOWNLOAD", logging.DEBUG, host=source.host, bucket=bucket.label, filename=descriptor.filename)
            try:
                content = self.client.download_file(source, descriptor)
            except DownloadError as exc:
                outcome.files_failed += 1
                self._record_failure(bucket, "download", exc.reason, source=str(source), filename=descriptor.filename)
                log_event(
                    "DOWNLOAD_ERROR",
                    logging.ERROR,
                    host=source.host,
                    bucket=bucket.label,
                    filename=descriptor.filename,
                    error=exc.reason,
                )
                continue
            outcome.files_downloaded += 1
            result = merger.ingest(content)
            outcome.lines_accepted += result.accepted
            outcome.lines_rejected += result.rejected
            if result.rejected:
                log_event(
                    "PAYLOAD_LINES_REJECTED",
                    logging.WARNING,
                    host=source.host,
                    filename=descriptor.filename,
                    rejected=result.rejected,
                )

    def _finalize(self, bucket: DateBucket, merger: DomainMerger, outcome: BucketOutcome) -> None:
        if outcome.sources_succeeded == 0:
            raise EmptyAggregateError(f"no successful source for {bucket.label}")
        stats = merger.stats()
        outcome.unique_domains = int(stats["unique_domains"])  # type: ignore[arg-type]
        outcome.total_requests = int(stats["total_requests"])  # type: ignore[arg-type]
        outcome.top_domain = str(stats["top_domain"])
        log_event("BUCKET_STATS", bucket=bucket.label, **stats)
        outcome.artifact = merger.save_to_file(bucket.artifact_name(self.artifact_prefix))

    def _deliver(self, bucket: DateBucket, outcome: BucketOutcome, artifact: Path) -> None:
        remote_path = remote_path_for(self.remote_dir, artifact)
        try:
            trust = self.negotiator.negotiate() if self.negotiator is not None else None
            if trust is not None:
                outcome.applied_policy = trust.applied_policy
            outcome.upload = self.uploader.upload(artifact, remote_path, trust)
        except GihFtpError as exc:
            outcome.status = BUCKET_DELIVERY_FAILED
            outcome.error = str(exc)
            self._record_failure(bucket, "delivery", str(exc))
            log_event(
                "UPLOAD_FAILED",
                logging.ERROR,
                bucket=bucket.label,
                transport=self.uploader.transport,
                file=artifact,
                error=str(exc),
            )
            return

        outcome.status = BUCKET_DELIVERED
        log_event(
            "UPLOAD_DONE",
            bucket=bucket.label,
            transport=self.uploader.transport,
            local_path=artifact,
            remote_path=remote_path,
            bytes=outcome.upload.bytes_transferred,
        )
        if self.cleanup:
            self._remove_artifact(bucket, artifact)

    def _remove_artifact(self, bucket: DateBucket, path: Path) -> None:
        try:
            path.unlink()
        except OSError as exc:
            log_event("CLEANUP_WARN", logging.WARNING, file=path, error=format_exception_message(exc))
            return
        log_event("CLEANUP_DONE", bucket=bucket.label, file=path)
