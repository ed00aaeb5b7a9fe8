from __future__ import annotations

import csv
import io
import math
import re
import statistics
from pathlib import Path
from typing import Any


# Metrics the tester cannot measure yet are reported with these placeholders.
DEFAULT_RESULTS: dict[str, Any] = {
    "responseLatencyMedian": 0,
    "responseLatencySd": 0,
    "interruptLatencyMedian": 0,
    "interruptLatencySd": 0,
    "networkResilience": 85,
    "naturalness": 3.5,
    "noiseReduction": 90,
}

_ELAPSED_RE = re.compile(r"elapsed[_\s]?time[:\s]+(\d+)", re.IGNORECASE)
_AVERAGE_RE = re.compile(r"Average:\s*(\d+)")


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def _median_and_sd(values: list[float]) -> tuple[int, int]:
    median = _round_half_up(statistics.median(values))
    sd = _round_half_up(statistics.pstdev(values)) if len(values) > 1 else 0
    return median, sd


def _elapsed_times_per_run(text: str) -> list[list[float]]:
    """One list per CSV row: the numeric values of every `elapsed_time` column, in order."""
    rows = list(csv.reader(io.StringIO(text.strip()), skipinitialspace=True))
    if len(rows) < 2:
        return []
    header = [h.strip() for h in rows[0]]
    columns = [idx for idx, name in enumerate(header) if "elapsed_time" in name]

    runs: list[list[float]] = []
    for row in rows[1:]:
        values: list[float] = []
        for idx in columns:
            if idx >= len(row):
                continue
            try:
                v = float(row[idx].strip())
            except ValueError:
                continue
            if math.isnan(v):
                continue
            values.append(v)
        if values:
            runs.append(values)
    return runs


def parse_report_csv(text: str, *, stdout: str = "") -> dict[str, Any]:
    """Turn a tester CSV report into result metrics.

    Each row is one run. The first `elapsed_time` column of a run is its
    response latency, the second its interrupt latency. Medians are rounded to
    whole milliseconds; standard deviations are population deviations and stay
    0 for a single run.

    When the CSV yields no response latency, the tester's stdout is scanned for
    an `elapsed_time: N` line or an `Average: N` summary instead.
    """
    results = dict(DEFAULT_RESULTS)
    runs = _elapsed_times_per_run(text or "")

    response = [run[0] for run in runs]
    if response:
        results["responseLatencyMedian"], results["responseLatencySd"] = _median_and_sd(response)

    interrupt = [run[1] for run in runs if len(run) > 1]
    if interrupt:
        results["interruptLatencyMedian"], results["interruptLatencySd"] = _median_and_sd(interrupt)

    if results["responseLatencyMedian"] == 0 and stdout:
        m = _ELAPSED_RE.search(stdout)
        if m:
            results["responseLatencyMedian"] = int(m.group(1))
        # A summary line wins over a single sample.
        m = _AVERAGE_RE.search(stdout)
        if m:
            results["responseLatencyMedian"] = int(m.group(1))

    return results


def parse_report_file(path: str | Path, *, stdout: str = "") -> dict[str, Any]:
    p = Path(path)
    text = p.read_text(encoding="utf-8") if p.exists() else ""
    return parse_report_csv(text, stdout=stdout)
