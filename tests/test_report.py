"""Unit tests for progress lines and the run summary."""

from __future__ import annotations

from pathlib import Path

import pytest

import webp_crunch
from webp_crunch import ConversionResult, RunStats, format_bytes, format_duration


@pytest.fixture(autouse=True)
def plain_colors(monkeypatch: pytest.MonkeyPatch) -> None:
    """Compare against uncolored text whatever the terminal is."""
    for name in ("BOLD", "DIM", "GREEN", "RED", "YELLOW", "CYAN", "RESET"):
        monkeypatch.setattr(webp_crunch.Color, name, "")


@pytest.mark.parametrize(
    ("seconds", "expected"),
    [
        (0.25, "250ms"),
        (0.0, "0ms"),
        (1.0, "1.0s"),
        (45.3, "45.3s"),
        (125.0, "2m 5.0s"),
        (3600.0, "60m 0.0s"),
    ],
)
def test_format_duration(seconds: float, expected: str) -> None:
    """ms under a second, seconds under a minute, then minutes and seconds."""
    assert format_duration(seconds) == expected


@pytest.mark.parametrize(
    ("size", "expected"),
    [
        (0, "0.00 B"),
        (500, "500.00 B"),
        (1024, "1.00 KB"),
        (1536, "1.50 KB"),
        (5 * 1024 * 1024, "5.00 MB"),
        (3 * 1024 ** 3, "3.00 GB"),
        (2048 * 1024 ** 3, "2048.00 GB"),
    ],
)
def test_format_bytes(size: int, expected: str) -> None:
    """Binary units with two decimals, capped at GB."""
    assert format_bytes(size) == expected


def test_progress_line_success() -> None:
    """Success lines carry the sequence, name, sizes and savings."""
    result = ConversionResult.ok(Path("/in/sub/photo.jpg"), Path("/out/sub/photo.webp"), 2048, 1024)
    line = webp_crunch.format_progress_line(3, 10, result)
    assert line == "[3/10] ✓ photo.jpg: 2.00 KB → 1.00 KB (50.00% saved)"


def test_progress_line_failure() -> None:
    """Failure lines carry the message instead of sizes."""
    result = ConversionResult.failed(Path("/in/bad.png"), Path("/out/bad.webp"),
                                     "failed to load image: nope", 12)
    line = webp_crunch.format_progress_line(1, 2, result)
    assert line == "[1/2] ✗ bad.png: failed to load image: nope"


def test_summary_with_successes() -> None:
    """Counts, byte totals and overall savings come from the stats alone."""
    stats = RunStats(total_files=3, skipped_count=2)
    stats.record(ConversionResult.ok(Path("a"), Path("a.webp"), 1000, 250))
    stats.record(ConversionResult.ok(Path("b"), Path("b.webp"), 1000, 750))
    stats.record(ConversionResult.failed(Path("c"), Path("c.webp"), "x", 999))

    text = "\n".join(webp_crunch.format_summary(stats, 125.0, "start", "end"))

    assert "Total files:       3" in text
    assert "Successful:        2" in text
    assert "Failed:            1" in text
    assert "Skipped:           2" in text
    assert "Original size:     1.95 KB" in text
    assert "New size:          1000.00 B" in text
    assert "Total savings:     50.00%" in text
    assert "Start time:        start" in text
    assert "End time:          end" in text
    assert "Time elapsed:      2m 5.0s" in text


def test_summary_without_successes_omits_sizes() -> None:
    """Byte totals are only shown when something converted."""
    stats = RunStats(total_files=1)
    stats.record(ConversionResult.failed(Path("c"), Path("c.webp"), "x"))

    text = "\n".join(webp_crunch.format_summary(stats, 0.5))

    assert "Failed:            1" in text
    assert "Total savings" not in text
    assert "Start time" not in text
    assert "Time elapsed:      500ms" in text


def test_print_summary_warns_about_failures(capsys: pytest.CaptureFixture[str]) -> None:
    """Failures get a closing hint."""
    stats = RunStats(total_files=1)
    stats.record(ConversionResult.failed(Path("c"), Path("c.webp"), "x"))

    webp_crunch.print_summary(stats, 1.5)

    out = capsys.readouterr().out
    assert "Conversion Summary" in out
    assert "1 file(s) failed" in out
