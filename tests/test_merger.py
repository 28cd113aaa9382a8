from __future__ import annotations

from pathlib import Path

import pytest

from gihftp.errors import IngestError
from gihftp.merger import NO_DATA, DomainMerger, DomainStat, parse_line, read_text_fallback, serialize


def test_ties_keep_first_seen_order() -> None:
    merger = DomainMerger()
    merger.ingest(b"a|5\nb|5\n")

    assert merger.snapshot() == [DomainStat("a", 5), DomainStat("b", 5)]


def test_counts_are_added_across_payloads() -> None:
    merger = DomainMerger()
    merger.ingest(b"x|3\n")
    merger.ingest(b"x|4\n")

    assert merger.snapshot() == [DomainStat("x", 7)]


def test_malformed_lines_are_counted_and_skipped() -> None:
    merger = DomainMerger()
    result = merger.ingest(b"good|2\nbad\nneg|-3\na|b|c\n|4\nnum|abc\n\n   \n")

    assert result.accepted == 1
    assert result.rejected == 6
    assert merger.snapshot() == [DomainStat("good", 2)]


def test_fields_are_trimmed() -> None:
    assert parse_line("  example.com  |  12 ") == DomainStat("example.com", 12)


def test_leading_plus_is_accepted() -> None:
    assert parse_line("example.com|+7") == DomainStat("example.com", 7)


@pytest.mark.parametrize("line", ["only-one-field", "d|", "d|1.5", "d|1_000", "d|-1"])
def test_parse_line_rejects(line: str) -> None:
    with pytest.raises(IngestError):
        parse_line(line)


def test_serialized_snapshot_merges_back_to_double_counts() -> None:
    merger = DomainMerger()
    merger.ingest(b"a|1\nb|9\nc|4\n")
    payload = serialize(merger.snapshot())

    merger.ingest(payload)

    assert merger.snapshot() == [DomainStat("b", 18), DomainStat("c", 8), DomainStat("a", 2)]


def test_two_sources_end_to_end(tmp_path: Path) -> None:
    merger = DomainMerger(tmp_path)
    merger.ingest(b"google.com|10\nexample.org|3\n")
    merger.ingest(b"example.org|9\nnew.net|1\n")

    assert merger.total_count() == 23
    assert merger.top_domain() == DomainStat("example.org", 12)
    assert merger.stats() == {
        "unique_domains": 3,
        "total_requests": 23,
        "top_domain": "example.org",
        "top_domain_hits": 12,
    }

    path = merger.save_to_file("out.txt")
    assert path == tmp_path / "out.txt"
    assert path.read_text(encoding="utf-8") == "example.org|12\ngoogle.com|10\nnew.net|1\n"
    assert not (tmp_path / "out.txt.tmp").exists()


def test_empty_merger_reports_no_data(tmp_path: Path) -> None:
    merger = DomainMerger(tmp_path)

    assert merger.top_domain() == NO_DATA
    assert merger.total_count() == 0
    path = merger.save_to_file()
    assert path.name.startswith("MERGED_WEEK_")
    assert path.read_bytes() == b""


def test_clear_resets_counts() -> None:
    merger = DomainMerger()
    merger.ingest(b"a|1\n")
    merger.clear()

    assert merger.domain_count() == 0
    assert merger.snapshot() == []


def test_crlf_and_bom_payloads() -> None:
    merger = DomainMerger()
    merger.ingest("\ufeffa.com|2\r\nb.com|1\r\n".encode("utf-8"))

    assert merger.snapshot() == [DomainStat("a.com", 2), DomainStat("b.com", 1)]


def test_latin1_fallback() -> None:
    assert read_text_fallback("café.fr|1".encode("latin-1")) == "café.fr|1"


def test_whitespace_only_lines_are_rejected() -> None:
    merger = DomainMerger()
    result = merger.ingest(b"a.com|1\n   \n\t\n\na.com|2\n")

    assert result.accepted == 2
    assert result.rejected == 2
    assert merger.snapshot() == [DomainStat("a.com", 3)]


def test_only_newline_separates_lines() -> None:
    merger = DomainMerger()
    result = merger.ingest(b"caf\x85e.com|3\nb.com|1\r\n")

    assert result.accepted == 2
    assert result.rejected == 0
    assert merger.snapshot() == [DomainStat("caf\x85e.com", 3), DomainStat("b.com", 1)]

    text_merger = DomainMerger()
    text_merger.ingest("x\u2028y.com|2\n".encode("utf-8"))
    assert text_merger.snapshot() == [DomainStat("x\u2028y.com", 2)]


def test_totals_do_not_depend_on_order_or_split() -> None:
    lines = [b"a.com|5", b"b.com|2", b"a.com|1", b"c.com|9", b"b.com|4", b"bad line", b"c.com|+1"]

    whole = DomainMerger()
    whole.ingest(b"\n".join(lines) + b"\n")

    permuted = DomainMerger()
    reordered = [lines[index] for index in (6, 3, 0, 5, 4, 2, 1)]
    permuted.ingest(b"\n".join(reordered[:2]))
    permuted.ingest(b"\n".join(reordered[2:5]) + b"\n")
    permuted.ingest(b"\n".join(reordered[5:]))

    def totals(merger: DomainMerger) -> dict:
        return {stat.domain: stat.count for stat in merger.snapshot()}

    assert totals(whole) == totals(permuted) == {"a.com": 6, "b.com": 6, "c.com": 10}
    assert whole.total_count() == permuted.total_count() == 22
