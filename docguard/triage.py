from __future__ import annotations

import importlib.util
import io
import logging
import mimetypes
import zipfile
from dataclasses import dataclass
from pathlib import Path

from docguard.errors import UnsupportedFormat
from docguard.models import TEXT_ROUTE, VISION_PDF, TriageDecision

logger = logging.getLogger(__name__)

PDF_MIME = "application/pdf"
XLSX_MIME = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"
DOCX_MIME = "application/vnd.openxmlformats-officedocument.wordprocessingml.document"
PPTX_MIME = "application/vnd.openxmlformats-officedocument.presentationml.presentation"

# Declared types browsers send when they do not know better; ignored when the extension is recognized.
GENERIC_MIME_TYPES = {"", "application/octet-stream", "text/plain", "application/vnd.ms-excel", "binary/octet-stream"}


@dataclass(frozen=True)
class ProcessorRoute:
    name: str
    route: str
    priority: int
    mime_types: frozenset[str]
    extensions: frozenset[str]
    magic_types: frozenset[str]
    reason: str

    def capability_score(self, mime: str, ext: str, magic_type: str | None) -> int:
        normalized_mime = (mime or "").lower()
        normalized_ext = (ext or "").lower()
        normalized_magic = (magic_type or "").lower()

        score = 0
        if normalized_magic and normalized_magic in self.magic_types:
            score += 8
        if normalized_mime in self.mime_types:
            score += 4
        if normalized_ext in self.extensions:
            score += 2
        return score


DEFAULT_ROUTES: tuple[ProcessorRoute, ...] = (
    ProcessorRoute(
        name="pdf",
        route=VISION_PDF,
        priority=100,
        mime_types=frozenset({PDF_MIME, "application/x-pdf"}),
        extensions=frozenset({".pdf"}),
        magic_types=frozenset({PDF_MIME}),
        reason="PDF layout (tables, columns) carries meaning; needs vision-assisted extraction.",
    ),
    ProcessorRoute(
        name="spreadsheet",
        route=TEXT_ROUTE,
        priority=80,
        mime_types=frozenset({XLSX_MIME}),
        extensions=frozenset({".xlsx"}),
        magic_types=frozenset({XLSX_MIME}),
        reason="Spreadsheet workbook is machine-parseable without layout analysis.",
    ),
    ProcessorRoute(
        name="delimited",
        route=TEXT_ROUTE,
        priority=70,
        mime_types=frozenset({"text/csv", "application/csv", "text/tab-separated-values"}),
        extensions=frozenset({".csv", ".tsv"}),
        magic_types=frozenset(),
        reason="Delimited text is losslessly machine-parseable.",
    ),
    ProcessorRoute(
        name="plain_text",
        route=TEXT_ROUTE,
        priority=50,
        mime_types=frozenset({"text/plain", "text/markdown", "text/x-markdown"}),
        extensions=frozenset({".txt", ".md", ".markdown"}),
        magic_types=frozenset(),
        reason="Plain text needs no structural reconstruction.",
    ),
)


def _detect_magic_type(content_bytes: bytes | None) -> str | None:
    if not content_bytes:
        return None
    signatures: list[tuple[bytes, str]] = [
        (b"%PDF", PDF_MIME),
        (b"\x89PNG\r\n\x1a\n", "image/png"),
        (b"\xff\xd8\xff", "image/jpeg"),
        (b"GIF8", "image/gif"),
        (b"\xd0\xcf\x11\xe0", "application/x-ole-storage"),
        (b"PK\x03\x04", "application/zip"),
    ]
    for signature, mime in signatures:
        if content_bytes.startswith(signature):
            if mime == "application/zip":
                return _detect_ooxml_type(content_bytes)
            return mime
    return None


def _detect_ooxml_type(content_bytes: bytes) -> str:
    try:
        with zipfile.ZipFile(io.BytesIO(content_bytes)) as archive:
            names = archive.namelist()
    except zipfile.BadZipFile:
        return "application/zip"

    if any(name.startswith("xl/") for name in names):
        return XLSX_MIME
    if any(name.startswith("word/") for name in names):
        return DOCX_MIME
    if any(name.startswith("ppt/") for name in names):
        return PPTX_MIME
    return "application/zip"


def _pdf_page_count(content_bytes: bytes | None) -> int | None:
    if not content_bytes or importlib.util.find_spec("pypdf") is None:
        return None
    from pypdf import PdfReader

    try:
        return len(PdfReader(io.BytesIO(content_bytes)).pages)
    except Exception as exc:  # noqa: BLE001
        logger.debug("Could not count PDF pages: %s", exc)
        return None


class TriageRouter:
    def __init__(self, routes: tuple[ProcessorRoute, ...] = DEFAULT_ROUTES):
        self.routes = routes
        self._claimed_magic_types = frozenset(
            magic for route in routes for magic in route.magic_types
        )

    def select_route(self, mime: str, ext: str, magic_type: str | None) -> ProcessorRoute | None:
        scored: list[tuple[int, int, ProcessorRoute]] = []
        for route in self.routes:
            capability = route.capability_score(mime, ext, magic_type)
            if capability <= 0:
                continue
            scored.append((capability, route.priority, route))

        if not scored:
            return None

        scored.sort(key=lambda item: (item[0], item[1]), reverse=True)
        return scored[0][2]

    def triage(self, filename: str, content_type: str | None, content: bytes | None = None) -> TriageDecision:
        """Pick exactly one extraction route for a file; same input always yields the same decision."""

        ext = Path(filename or "").suffix.lower()
        declared = (content_type or "").split(";", maxsplit=1)[0].strip().lower()
        magic_type = _detect_magic_type(content)

        if magic_type and magic_type not in self._claimed_magic_types:
            raise UnsupportedFormat(filename, magic_type)

        known_ext = any(ext in route.extensions for route in self.routes)
        mime = "" if declared in GENERIC_MIME_TYPES and known_ext else declared

        route = self.select_route(mime, ext, magic_type)
        if route is None:
            raise UnsupportedFormat(filename, declared or None)

        detected_mime = (
            magic_type
            or (mime if mime in route.mime_types else None)
            or mimetypes.guess_type(filename or "")[0]
            or next(iter(sorted(route.mime_types)))
        )
        page_count = _pdf_page_count(content) if route.route == VISION_PDF else None
        decision = TriageDecision(
            route=route.route,
            extractor=route.name,
            detected_mime=detected_mime,
            reason=route.reason,
            page_count=page_count,
        )
        logger.info("Triage %s -> %s (%s)", filename, decision.route, decision.extractor)
        return decision
