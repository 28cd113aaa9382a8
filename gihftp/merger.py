"""Merge ``domain|count`` payloads into one ranked per-domain aggregate."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional, Sequence

from .errors import IngestError
from .logs import log_event

FIELD_DELIMITER = "|"
COUNT_PATTERN = re.compile(r"\+?[0-9]+")


@dataclass(frozen=True)
class DomainStat:
    domain: str
    count: int


NO_DATA = DomainStat("N/A", 0)


@dataclass(frozen=True)
class IngestResult:
    accepted: int = 0
    rejected: int = 0


def read_text_fallback(raw: bytes) -> str:
    try:
        return raw.decode("utf-8-sig")
    except UnicodeDecodeError:
        return raw.decode("latin-1")


def parse_line(line: str) -> DomainStat:
    parts = line.split(FIELD_DELIMITER)
    if len(parts) != 2:
        raise IngestError(line, f"expected 2 fields, got {len(parts)}")
    domain = parts[0].strip()
    count_text = parts[1].strip()
    if not domain:
        raise IngestError(line, "empty domain")
    # int() alone would also take "-3", "1_000" and non-ASCII digits.
    if not COUNT_PATTERN.fullmatch(count_text):
        raise IngestError(line, "count is not a non-negative integer")
    return DomainStat(domain, int(count_text))


def serialize(stats: Sequence[DomainStat]) -> bytes:
    return "".join(f"{stat.domain}{FIELD_DELIMITER}{stat.count}\n" for stat in stats).encode("utf-8")


def total_count(stats: Sequence[DomainStat]) -> int:
    return sum(stat.count for stat in stats)


def top_domain(stats: Sequence[DomainStat]) -> DomainStat:
    return stats[0] if stats else NO_DATA


class DomainMerger:
    """Per-bucket aggregation state.

    Counts are kept in an insertion-ordered dict so that ``snapshot`` can
    rank by count while leaving equal counts in first-seen order.
    """

    def __init__(self, work_dir: Path | str = ".") -> None:
        self.work_dir = Path(work_dir)
        self._counts: Dict[str, int] = {}

    def ingest(self, payload: bytes) -> IngestResult:
        accepted = 0
        rejected = 0
        for raw_line in read_text_fallback(payload).split("\n"):
            line = raw_line.rstrip("\r")
            if not line:
                continue
            try:
                stat = parse_line(line)
            except IngestError as exc:
                rejected += 1
                log_event("LINE_SKIPPED", logging.DEBUG, reason=exc.reason, line=line)
                continue
            self._counts[stat.domain] = self._counts.get(stat.domain, 0) + stat.count
            accepted += 1

        log_event(
            "PAYLOAD_MERGED",
            logging.DEBUG,
            lines_processed=accepted,
            lines_skipped=rejected,
            unique_domains=len(self._counts),
        )
        return IngestResult(accepted=accepted, rejected=rejected)

    def snapshot(self) -> List[DomainStat]:
        stats = [DomainStat(domain, count) for domain, count in self._counts.items()]
        # list.sort is stable, so ties keep insertion order.
        stats.sort(key=lambda stat: stat.count, reverse=True)
        return stats

    def total_count(self, stats: Optional[Sequence[DomainStat]] = None) -> int:
        return total_count(self.snapshot() if stats is None else stats)

    def top_domain(self, stats: Optional[Sequence[DomainStat]] = None) -> DomainStat:
        return top_domain(self.snapshot() if stats is None else stats)

    def stats(self) -> Dict[str, object]:
        snapshot = self.snapshot()
        top = top_domain(snapshot)
        return {
            "unique_domains": len(snapshot),
            "total_requests": total_count(snapshot),
            "top_domain": top.domain,
            "top_domain_hits": top.count,
        }

    def domain_count(self) -> int:
        return len(self._counts)

    def clear(self) -> None:
        self._counts = {}

    def save_to_file(self, filename: str = "") -> Path:
        self.work_dir.mkdir(parents=True, exist_ok=True)
        if not filename:
            filename = f"MERGED_WEEK_{datetime.now().strftime('%Y%m%d_%H%M%S')}.log"
        full_path = self.work_dir / filename
        snapshot = self.snapshot()
        tmp_path = full_path.with_suffix(full_path.suffix + ".tmp")
        tmp_path.write_bytes(serialize(snapshot))
        tmp_path.replace(full_path)

        log_event(
            "MERGE_COMPLETED",
            file=full_path,
            unique_domains=len(snapshot),
            total_requests=total_count(snapshot),
        )
        return full_path
