from __future__ import annotations

import csv
import io
import logging
import re
import xml.etree.ElementTree as ET
import zipfile
from pathlib import Path

from docguard.errors import ParseError
from docguard.models import TEXT_ROUTE, ExtractionProvenance, ExtractionResult, TableRecord, TriageDecision

logger = logging.getLogger(__name__)

SHEET_NS = "{http://schemas.openxmlformats.org/spreadsheetml/2006/main}"
REL_NS = "{http://schemas.openxmlformats.org/officeDocument/2006/relationships}"
PACKAGE_REL_NS = "{http://schemas.openxmlformats.org/package/2006/relationships}"


def _decode_text(filename: str, content_bytes: bytes) -> str:
    try:
        return content_bytes.decode("utf-8-sig")
    except UnicodeDecodeError as exc:
        raise ParseError(filename, f"content is not valid UTF-8 ({exc.reason} at byte {exc.start})") from exc


def _table_text(table: TableRecord) -> str:
    lines = []
    if table.title:
        lines.append(f"## {table.title}")
    lines.append(" | ".join(table.headers))
    width = len(table.headers)
    lines.extend(" | ".join(row + [""] * (width - len(row))) for row in table.rows)
    return "\n".join(lines).strip()


def _table_from_records(title: str | None, records: list[list[str]]) -> TableRecord | None:
    records = [row for row in records if any(cell.strip() for cell in row)]
    if not records:
        return None
    headers = [column.strip() or f"column_{index + 1}" for index, column in enumerate(records[0])]
    rows = [[cell.strip() for cell in row] for row in records[1:]]
    return TableRecord(title=title, headers=headers, rows=rows)


def parse_delimited(filename: str, content_bytes: bytes) -> tuple[str, list[TableRecord], list[str]]:
    warnings: list[str] = []
    text = _decode_text(filename, content_bytes)
    if not text.strip():
        raise ParseError(filename, "file contains no rows")

    extension = Path(filename).suffix.lower()
    delimiter = "\t" if extension == ".tsv" else ","
    if extension != ".tsv":
        try:
            dialect = csv.Sniffer().sniff(text[:4096], delimiters=",;\t|")
            delimiter = dialect.delimiter
        except csv.Error:
            warnings.append("CSV delimiter detection fallback used ',' due to ambiguous source data.")

    try:
        records = list(csv.reader(io.StringIO(text), delimiter=delimiter, strict=True))
    except csv.Error as exc:
        raise ParseError(filename, f"malformed delimited data: {exc}") from exc

    table = _table_from_records(Path(filename).stem, records)
    if table is None:
        raise ParseError(filename, "file contains no rows")
    return _table_text(table), [table], warnings


def _column_index(cell_ref: str) -> int:
    letters = re.match(r"[A-Z]+", cell_ref or "")
    if not letters:
        return -1
    index = 0
    for char in letters.group(0):
        index = index * 26 + (ord(char) - ord("A") + 1)
    return index - 1


def _shared_strings(archive: zipfile.ZipFile) -> list[str]:
    if "xl/sharedStrings.xml" not in archive.namelist():
        return []
    root = ET.fromstring(archive.read("xl/sharedStrings.xml"))
    strings: list[str] = []
    for item in root.iter(f"{SHEET_NS}si"):
        strings.append("".join(node.text or "" for node in item.iter(f"{SHEET_NS}t")))
    return strings


def _sheet_paths(archive: zipfile.ZipFile) -> list[tuple[str, str]]:
    workbook = ET.fromstring(archive.read("xl/workbook.xml"))
    targets: dict[str, str] = {}
    if "xl/_rels/workbook.xml.rels" in archive.namelist():
        rels = ET.fromstring(archive.read("xl/_rels/workbook.xml.rels"))
        for rel in rels.iter(f"{PACKAGE_REL_NS}Relationship"):
            target = rel.get("Target") or ""
            target = target.lstrip("/")
            if not target.startswith("xl/"):
                target = f"xl/{target}"
            targets[rel.get("Id") or ""] = target

    sheets: list[tuple[str, str]] = []
    for index, sheet in enumerate(workbook.iter(f"{SHEET_NS}sheet"), start=1):
        name = sheet.get("name") or f"Sheet{index}"
        path = targets.get(sheet.get(f"{REL_NS}id") or "", f"xl/worksheets/sheet{index}.xml")
        sheets.append((name, path))
    return sheets


def _cell_value(cell: ET.Element, shared: list[str]) -> str:
    cell_type = cell.get("t")
    if cell_type == "inlineStr":
        return "".join(node.text or "" for node in cell.iter(f"{SHEET_NS}t"))
    value_node = cell.find(f"{SHEET_NS}v")
    value = value_node.text if value_node is not None and value_node.text else ""
    if cell_type == "s" and value:
        return shared[int(value)]
    if cell_type == "e":
        return value or "#ERROR"
    return value


def parse_xlsx(filename: str, content_bytes: bytes) -> tuple[str, list[TableRecord], list[str]]:
    warnings: list[str] = []
    tables: list[TableRecord] = []
    try:
        with zipfile.ZipFile(io.BytesIO(content_bytes)) as archive:
            shared = _shared_strings(archive)
            for sheet_name, sheet_path in _sheet_paths(archive):
                if sheet_path not in archive.namelist():
                    warnings.append(f"Worksheet '{sheet_name}' is missing from the workbook archive.")
                    continue
                root = ET.fromstring(archive.read(sheet_path))
                records: list[list[str]] = []
                for row in root.iter(f"{SHEET_NS}row"):
                    values: dict[int, str] = {}
                    for position, cell in enumerate(row.iter(f"{SHEET_NS}c")):
                        column = _column_index(cell.get("r") or "")
                        values[column if column >= 0 else position] = _cell_value(cell, shared)
                    if values:
                        width = max(values) + 1
                        records.append([values.get(index, "") for index in range(width)])
                table = _table_from_records(sheet_name, records)
                if table is None:
                    warnings.append(f"Worksheet '{sheet_name}' is empty.")
                    continue
                tables.append(table)
    except zipfile.BadZipFile as exc:
        raise ParseError(filename, "workbook is not a valid XLSX archive") from exc
    except KeyError as exc:
        raise ParseError(filename, f"workbook is missing required part {exc}") from exc
    except (ET.ParseError, IndexError, ValueError) as exc:
        raise ParseError(filename, f"workbook XML is malformed: {exc}") from exc

    if not tables:
        raise ParseError(filename, "workbook contains no data")
    return "\n\n".join(_table_text(table) for table in tables), tables, warnings


def parse_plain_text(filename: str, content_bytes: bytes) -> tuple[str, list[TableRecord], list[str]]:
    text = _decode_text(filename, content_bytes)
    normalized = re.sub(r"[\x00-\x08\x0b\x0c\x0e-\x1f]", " ", text).strip()
    if not normalized:
        raise ParseError(filename, "file is empty")
    return normalized, [], []


PARSERS = {
    "delimited": parse_delimited,
    "spreadsheet": parse_xlsx,
    "plain_text": parse_plain_text,
}


def extract_text(filename: str, content_bytes: bytes, decision: TriageDecision) -> ExtractionResult:
    """Parse a text-routed file locally; never touches the network."""

    parser = PARSERS.get(decision.extractor)
    if parser is None or decision.route != TEXT_ROUTE:
        raise ParseError(filename, f"no text extractor for route '{decision.route}/{decision.extractor}'")

    full_text, tables, warnings = parser(filename, content_bytes)
    logger.info("Extracted %s: %d chars, %d tables", filename, len(full_text), len(tables))
    return ExtractionResult(
        full_text=full_text,
        tables=tables,
        provenance=ExtractionProvenance(route=decision.route, extractor=decision.extractor),
        warnings=warnings,
    )
