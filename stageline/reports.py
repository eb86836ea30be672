"""Summaries of the report files test and coverage tools leave behind."""

from __future__ import annotations

import re
import xml.etree.ElementTree as ET
from pathlib import Path
from typing import Dict


_PYTEST_SUMMARY = re.compile(r"^=*\s*(?P<stats>\d+ \w+(?:, \d+ \w+)*) in [\d.]+s")
_PYTEST_LABELS = {
    "passed": "passed",
    "xpassed": "passed",
    "failed": "failures",
    "error": "errors",
    "errors": "errors",
    "skipped": "skipped",
    "xfailed": "skipped",
}


def parse_pytest_summary(output: str) -> Dict[str, int]:
    """Totals from the last summary line of pytest console output.

    The keys match :func:`parse_junit_summary` so a stage may publish either
    report. ``xfailed`` counts as skipped and ``xpassed`` as passed; warnings
    and deselected tests are not counted.
    """

    totals = {"tests": 0, "failures": 0, "errors": 0, "skipped": 0, "passed": 0}
    for line in reversed(output.splitlines()):
        match = _PYTEST_SUMMARY.match(line.strip())
        if match:
            break
    else:
        return totals

    for chunk in match.group("stats").split(", "):
        count, label = chunk.split(" ", 1)
        key = _PYTEST_LABELS.get(label)
        if key is not None:
            totals[key] += int(count)
    totals["tests"] = sum(totals[key] for key in ("passed", "failures", "errors", "skipped"))
    return totals


def parse_junit_summary(path: str | Path) -> Dict[str, int]:
    """Totals across every ``testsuite`` element of a JUnit XML file.

    Raises ``ET.ParseError`` for malformed files and ``OSError`` when the file
    cannot be read.
    """

    root = ET.parse(path).getroot()
    suites = [root] if root.tag == "testsuite" else list(root.iter("testsuite"))
    totals = {"tests": 0, "failures": 0, "errors": 0, "skipped": 0}
    for suite in suites:
        for key in totals:
            totals[key] += int(suite.get(key, "0") or 0)
    totals["passed"] = totals["tests"] - totals["failures"] - totals["errors"] - totals["skipped"]
    return totals


def parse_coverage_rate(path: str | Path) -> float:
    """Line coverage percentage from a Cobertura-style ``coverage.xml``."""

    root = ET.parse(path).getroot()
    if root is None or root.get("line-rate") is None:
        return 0.0
    return round(float(root.get("line-rate", "0")) * 100, 2)


def summarize_report(kind: str, path: str | Path) -> Dict[str, object]:
    path = Path(path)
    if kind == "junit":
        return dict(parse_junit_summary(path))
    if kind == "coverage":
        return {"line_pct": parse_coverage_rate(path)}
    if kind == "pytest":
        return dict(parse_pytest_summary(path.read_text(encoding="utf-8", errors="replace")))
    return {"path": str(path), "size": path.stat().st_size}
