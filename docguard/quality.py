from __future__ import annotations

import re
from collections import defaultdict
from dataclasses import asdict, dataclass, field
from typing import Iterable

from docguard.models import VISION_PDF, FileRecord, TableRecord

CRITICAL_KEYWORDS = ("po", "order", "status", "customer", "eta", "tracking", "invoice", "reference", "shipment")
ID_KEYWORDS = ("po", "order", "id", "number")
DATE_KEYWORDS = ("date", "eta", "time")
FORMULA_ERROR_PATTERN = re.compile(r"^#(N/A|REF!|VALUE!|DIV/0!|NUM!|NAME\?|NULL!)")
PLACEHOLDER_VALUES = {"tbd", "pending", "???"}
DATE_FORMATS = (
    (re.compile(r"^\d{4}-\d{2}-\d{2}$"), "YYYY-MM-DD"),
    (re.compile(r"^\d{2}/\d{2}/\d{4}$"), "MM/DD/YYYY"),
    (re.compile(r"^\d{2}-\d{2}-\d{4}$"), "DD-MM-YYYY"),
)
MAX_ISSUES_PER_TABLE = 50


@dataclass(frozen=True)
class TableIssue:
    file: str
    table: str | None
    kind: str
    severity: str
    message: str
    column: str | None = None
    rows: list[int] = field(default_factory=list)


@dataclass(frozen=True)
class FileQuality:
    storage_ref: str
    original_name: str
    route: str
    succeeded: bool
    vision_required: bool
    vision_coverage_met: bool
    error: str | None = None


@dataclass(frozen=True)
class QualityReport:
    total_files: int
    succeeded_files: int
    failed_files: int
    vision_required_files: int
    vision_covered_files: int
    score: float
    files: list[FileQuality]
    issues: list[TableIssue]

    def to_dict(self) -> dict:
        return asdict(self)

    def summary_text(self) -> str:
        if self.total_files == 0:
            return "No documents have been uploaded yet."
        lines = [
            f"{self.succeeded_files} of {self.total_files} files extracted successfully "
            f"(score {self.score:.2f}).",
        ]
        if self.vision_required_files:
            lines.append(
                f"Vision extraction covered {self.vision_covered_files} of {self.vision_required_files} PDF files."
            )
        failed = [item.original_name for item in self.files if not item.succeeded]
        if failed:
            lines.append(f"Content unavailable for: {', '.join(failed)}.")
        if self.issues:
            lines.append(f"{len(self.issues)} data quality issues detected in tables.")
        return " ".join(lines)


def _matches_keyword(column: str, keywords: Iterable[str]) -> bool:
    lowered = column.lower()
    return any(re.search(rf"(?<![a-z]){re.escape(keyword)}", lowered) for keyword in keywords)


def critical_columns(headers: list[str]) -> list[str]:
    critical = [column for column in headers if _matches_keyword(column, CRITICAL_KEYWORDS)]
    return critical or headers[:5]


def _cell(row: list[str], index: int) -> str:
    return row[index].strip() if index < len(row) else ""


def _date_format(value: str) -> str:
    for pattern, label in DATE_FORMATS:
        if pattern.match(value):
            return label
    return "unknown"


def analyze_table(file_name: str, table: TableRecord) -> list[TableIssue]:
    """Advisory spreadsheet checks; never affects the manifest score."""

    issues: list[TableIssue] = []
    headers = table.headers
    critical = {headers.index(column) for column in critical_columns(headers)}

    for row_offset, row in enumerate(table.rows):
        row_number = row_offset + 2
        for index, column in enumerate(headers):
            value = _cell(row, index)
            if index in critical and not value:
                issues.append(TableIssue(file_name, table.title, "missing_value", "critical",
                                         f"Missing value in '{column}'.", column, [row_number]))
            elif FORMULA_ERROR_PATTERN.match(value):
                issues.append(TableIssue(file_name, table.title, "formula_error", "critical",
                                         f"Formula error {value} in '{column}'.", column, [row_number]))
            elif value.lower() in PLACEHOLDER_VALUES:
                issues.append(TableIssue(file_name, table.title, "placeholder", "warning",
                                         f"Placeholder value '{value}' in '{column}'.", column, [row_number]))

    for index, column in enumerate(headers):
        if _matches_keyword(column, ID_KEYWORDS):
            seen: dict[str, list[int]] = defaultdict(list)
            for row_offset, row in enumerate(table.rows):
                value = _cell(row, index)
                if value:
                    seen[value].append(row_offset + 2)
            for value, rows in seen.items():
                if len(rows) > 1:
                    issues.append(TableIssue(file_name, table.title, "duplicate", "warning",
                                             f"Duplicate value '{value}' in '{column}'.", column, rows))

        if _matches_keyword(column, DATE_KEYWORDS):
            formats = {_date_format(_cell(row, index)) for row in table.rows if _cell(row, index)}
            if len(formats) > 1:
                issues.append(TableIssue(file_name, table.title, "date_format", "warning",
                                         f"Inconsistent date formats in '{column}': {', '.join(sorted(formats))}.",
                                         column))

    return issues[:MAX_ISSUES_PER_TABLE]


def score_manifest(files: Iterable[FileRecord]) -> QualityReport:
    """Pure function over a manifest snapshot."""

    file_reports: list[FileQuality] = []
    issues: list[TableIssue] = []
    for record in files:
        extraction = record.extraction
        succeeded = extraction is not None and bool(extraction.full_text.strip())
        vision_required = record.triage.route == VISION_PDF
        vision_met = vision_required and extraction is not None and extraction.provenance.route == VISION_PDF
        error = None
        if record.failure is not None:
            error = f"{record.failure.error_type}: {record.failure.message}"
        elif not succeeded:
            error = "Extraction produced no text."
        file_reports.append(FileQuality(
            storage_ref=record.storage_ref,
            original_name=record.original_name,
            route=record.triage.route,
            succeeded=succeeded,
            vision_required=vision_required,
            vision_coverage_met=vision_met,
            error=error,
        ))
        if extraction is not None:
            for table in extraction.tables:
                issues.extend(analyze_table(record.original_name, table))

    total = len(file_reports)
    succeeded_count = sum(1 for item in file_reports if item.succeeded)
    return QualityReport(
        total_files=total,
        succeeded_files=succeeded_count,
        failed_files=total - succeeded_count,
        vision_required_files=sum(1 for item in file_reports if item.vision_required),
        vision_covered_files=sum(1 for item in file_reports if item.vision_coverage_met),
        score=(succeeded_count / total) if total else 0.0,
        files=file_reports,
        issues=issues,
    )
