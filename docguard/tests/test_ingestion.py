import threading

import pytest

from docguard.errors import EmptyVisionResponse, InvalidVisionJSON
from docguard.ingestion import FAILED_EXTRACTION, REJECTED, SUCCESS, IngestionGateway, UploadItem
from docguard.manifest_store import ManifestStore
from docguard.models import VISION_PDF, ExtractionProvenance, ExtractionResult
from docguard.storage import UploadStorage
from docguard.tenant_context import Scope

SCOPE = Scope("acme", "sales")
PDF_BYTES = b"%PDF-1.4\n%fake\n%%EOF"


class ScriptedVisionExtractor:
    """Replays a list of results or exceptions, one per call."""

    def __init__(self, *steps):
        self.steps = list(steps)
        self.calls = 0

    def extract(self, filename, pdf_bytes):
        self.calls += 1
        step = self.steps.pop(0)
        if isinstance(step, Exception):
            raise step
        return step


def _vision_result(text: str) -> ExtractionResult:
    return ExtractionResult(
        full_text=text,
        tables=[],
        provenance=ExtractionProvenance(route=VISION_PDF, extractor="vision:test", model="test-model", latency_ms=5),
    )


@pytest.fixture
def storage(tmp_path):
    return UploadStorage(tmp_path / "uploads")


def _gateway(storage, extractor=None, attempts=2):
    return IngestionGateway(ManifestStore(), storage, vision_extractor=extractor, max_vision_attempts=attempts)


def test_mixed_batch_keeps_going_past_bad_files(storage):
    gateway = _gateway(storage, ScriptedVisionExtractor(_vision_result("Invoice INV-9")))

    result = gateway.ingest_batch(SCOPE, [
        UploadItem("orders.csv", "text/csv", b"PO,Status\nSG-001,Delivered\n"),
        UploadItem("broken.csv", "text/csv", b"PO,Status\n\xff\xfe,Delivered\n"),
        UploadItem("data.json", "application/json", b'{"a": 1}'),
        UploadItem("invoice.pdf", "application/pdf", PDF_BYTES),
    ])

    assert [outcome.status for outcome in result.outcomes] == [SUCCESS, REJECTED, REJECTED, SUCCESS]
    assert result.processed_count == 2
    assert result.rejected_count == 2
    assert result.outcomes[1].error["type"] == "ParseError"
    assert result.outcomes[2].error["type"] == "UnsupportedFormat"
    names = [record.original_name for record in gateway.manifest_store.snapshot(SCOPE)]
    assert names == ["orders.csv", "invoice.pdf"]


def test_rejected_files_leave_no_bytes_behind(storage):
    gateway = _gateway(storage)

    outcome = gateway.ingest_file(SCOPE, "data.json", "application/json", b'{"a": 1}')

    assert outcome.status == REJECTED
    assert outcome.storage_ref is None
    assert not (storage.root / "acme" / "sales").exists()


def test_vision_failure_is_retried_then_succeeds(storage):
    extractor = ScriptedVisionExtractor(EmptyVisionResponse("invoice.pdf"), _vision_result("Invoice INV-9"))
    gateway = _gateway(storage, extractor, attempts=2)

    outcome = gateway.ingest_file(SCOPE, "invoice.pdf", "application/pdf", PDF_BYTES)

    record = gateway.manifest_store.snapshot(SCOPE)[0]
    assert outcome.status == SUCCESS
    assert extractor.calls == 2
    assert record.extraction.provenance.attempts == 2
    assert record.extraction.provenance.model == "test-model"


def test_exhausted_vision_retries_leave_a_failure_marker(storage):
    extractor = ScriptedVisionExtractor(
        EmptyVisionResponse("invoice.pdf"),
        InvalidVisionJSON("invoice.pdf", "Expecting value: line 1 column 1 (char 0)"),
    )
    gateway = _gateway(storage, extractor, attempts=2)

    outcome = gateway.ingest_file(SCOPE, "invoice.pdf", "application/pdf", PDF_BYTES)

    record = gateway.manifest_store.snapshot(SCOPE)[0]
    assert outcome.status == FAILED_EXTRACTION
    assert outcome.error["type"] == "InvalidVisionJSON"
    assert record.extraction is None
    assert record.failure.attempts == 2
    assert record.extraction_status == "failed_extraction"
    assert storage.read(SCOPE, record.storage_ref) == PDF_BYTES


def test_missing_vision_extractor_marks_pdf_failed_without_attempts(storage):
    gateway = _gateway(storage, extractor=None)

    outcome = gateway.ingest_file(SCOPE, "invoice.pdf", "application/pdf", PDF_BYTES)

    record = gateway.manifest_store.snapshot(SCOPE)[0]
    assert outcome.status == FAILED_EXTRACTION
    assert record.failure.error_type == "VisionUnavailable"
    assert record.failure.attempts == 0
    assert record.triage.route == VISION_PDF


def test_reuploading_a_file_replaces_its_extraction(storage):
    gateway = _gateway(storage)
    gateway.ingest_file(SCOPE, "orders.csv", "text/csv", b"PO,Status\nSG-001,Pending\n")
    gateway.ingest_file(SCOPE, "notes.txt", "text/plain", b"hello")

    gateway.ingest_file(SCOPE, "orders.csv", "text/csv", b"PO,Status\nSG-001,Delivered\n")

    files = gateway.manifest_store.snapshot(SCOPE)
    assert [record.original_name for record in files] == ["orders.csv", "notes.txt"]
    assert "Delivered" in files[0].extraction.full_text


def test_empty_or_unnamed_uploads_are_rejected(storage):
    gateway = _gateway(storage)

    empty = gateway.ingest_file(SCOPE, "orders.csv", "text/csv", b"")
    unnamed = gateway.ingest_file(SCOPE, "  ", "text/csv", b"a,b\n")

    assert empty.status == REJECTED
    assert unnamed.status == REJECTED
    assert gateway.manifest_store.file_count(SCOPE) == 0


def test_aborted_batch_keeps_files_already_ingested(storage):
    gateway = _gateway(storage)

    def items():
        yield UploadItem("orders.csv", "text/csv", b"PO,Status\nSG-001,Delivered\n")
        raise RuntimeError("client disconnected")

    with pytest.raises(RuntimeError):
        gateway.ingest_batch(SCOPE, items())

    assert [record.original_name for record in gateway.manifest_store.snapshot(SCOPE)] == ["orders.csv"]


def test_concurrent_uploads_with_similar_names_all_survive(storage):
    gateway = _gateway(storage)
    names = ["Q1 report.csv", "Q1_report.csv", "Q1 report!.csv", "q1 report.CSV"]
    contents = {name: f"PO,Status\nSG-00{index},Delivered\n".encode() for index, name in enumerate(names)}
    barrier = threading.Barrier(len(names))

    def upload(name):
        barrier.wait()
        gateway.ingest_file(SCOPE, name, "text/csv", contents[name])

    threads = [threading.Thread(target=upload, args=(name,)) for name in names]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    files = gateway.manifest_store.snapshot(SCOPE)
    assert gateway.manifest_store.file_count(SCOPE) == len(names)
    assert sorted(record.original_name for record in files) == sorted(names)
    for record in files:
        assert storage.read(SCOPE, record.storage_ref) == contents[record.original_name]
        assert f"SG-00{names.index(record.original_name)}" in record.extraction.full_text


def test_bytes_are_written_while_the_scope_is_locked(storage):
    gateway = _gateway(storage)
    store = gateway.manifest_store
    held = []
    write = storage.write

    def recording_write(scope, storage_ref, content):
        held.append(store._lock_for(scope).locked())
        write(scope, storage_ref, content)

    storage.write = recording_write

    gateway.ingest_file(SCOPE, "orders.csv", "text/csv", b"PO,Status\nSG-001,Delivered\n")

    assert held == [True]
    assert storage.read(SCOPE, "acme/sales/orders.csv").startswith(b"PO,Status")
