import io
import zipfile
from pathlib import Path

import pytest

from docguard.config import Settings
from docguard.models import (
    TEXT_ROUTE,
    VISION_PDF,
    ExtractionFailure,
    ExtractionProvenance,
    ExtractionResult,
    FileRecord,
    TriageDecision,
)


def build_settings(data_dir: Path, **overrides) -> Settings:
    values = dict(
        data_dir=Path(data_dir),
        persist_manifests=True,
        vision_provider="none",
        vision_model=None,
        vision_timeout_seconds=5.0,
        vision_max_attempts=2,
        chat_provider="none",
        chat_model=None,
        anthropic_api_key=None,
        openai_api_key=None,
        gemini_api_key=None,
        max_context_chars=12000,
        max_history_turns=10,
        bulk_file_threshold=5,
        max_upload_files=10,
        cors_allowed_origins=["http://localhost:3000"],
        log_level="INFO",
    )
    values.update(overrides)
    return Settings(**values)


def build_sample_xlsx_bytes() -> bytes:
    workbook_xml = """<?xml version="1.0" encoding="UTF-8"?>
    <workbook xmlns="http://schemas.openxmlformats.org/spreadsheetml/2006/main"
              xmlns:r="http://schemas.openxmlformats.org/officeDocument/2006/relationships">
      <sheets><sheet name="Orders" sheetId="1" r:id="rId1"/></sheets>
    </workbook>
    """
    rels_xml = """<?xml version="1.0" encoding="UTF-8"?>
    <Relationships xmlns="http://schemas.openxmlformats.org/package/2006/relationships">
      <Relationship Id="rId1" Type="http://schemas.openxmlformats.org/officeDocument/2006/relationships/worksheet" Target="worksheets/sheet1.xml"/>
    </Relationships>
    """
    shared_strings_xml = """<?xml version="1.0" encoding="UTF-8"?>
    <sst xmlns="http://schemas.openxmlformats.org/spreadsheetml/2006/main" count="5" uniqueCount="5">
      <si><t>PO Number</t></si><si><t>Status</t></si><si><t>SG-001</t></si><si><t>Delivered</t></si><si><t>SG-002</t></si>
    </sst>
    """
    sheet_xml = """<?xml version="1.0" encoding="UTF-8"?>
    <worksheet xmlns="http://schemas.openxmlformats.org/spreadsheetml/2006/main">
      <sheetData>
        <row r="1"><c r="A1" t="s"><v>0</v></c><c r="B1" t="s"><v>1</v></c></row>
        <row r="2"><c r="A2" t="s"><v>2</v></c><c r="B2" t="s"><v>3</v></c></row>
        <row r="3"><c r="A3" t="s"><v>4</v></c><c r="B3" t="inlineStr"><is><t>In Transit</t></is></c></row>
      </sheetData>
    </worksheet>
    """

    payload = io.BytesIO()
    with zipfile.ZipFile(payload, mode="w", compression=zipfile.ZIP_DEFLATED) as archive:
        archive.writestr("xl/workbook.xml", workbook_xml)
        archive.writestr("xl/_rels/workbook.xml.rels", rels_xml)
        archive.writestr("xl/sharedStrings.xml", shared_strings_xml)
        archive.writestr("xl/worksheets/sheet1.xml", sheet_xml)
    return payload.getvalue()


@pytest.fixture
def sample_xlsx_bytes() -> bytes:
    return build_sample_xlsx_bytes()


@pytest.fixture
def settings(tmp_path) -> Settings:
    return build_settings(tmp_path / "data")


@pytest.fixture
def make_settings(tmp_path):
    def _make(**overrides) -> Settings:
        return build_settings(tmp_path / "data", **overrides)

    return _make


def build_record(
    scope,
    name: str,
    *,
    text: str = "",
    tables=None,
    route: str = TEXT_ROUTE,
    failure: ExtractionFailure | None = None,
    uploaded_at: str = "2024-05-01T10:00:00+00:00",
) -> FileRecord:
    extractor = "pdf" if route == VISION_PDF else "delimited"
    triage = TriageDecision(route=route, extractor=extractor, detected_mime="text/plain", reason="test")
    extraction = None
    if failure is None:
        extraction = ExtractionResult(
            full_text=text,
            tables=list(tables or []),
            provenance=ExtractionProvenance(route=route, extractor=extractor),
        )
    return FileRecord(
        original_name=name,
        storage_ref=f"{scope.prefix}/{name}",
        content_type="text/plain",
        size_bytes=len(text),
        uploaded_at=uploaded_at,
        triage=triage,
        extraction=extraction,
        failure=failure,
    )


@pytest.fixture
def make_record():
    return build_record
