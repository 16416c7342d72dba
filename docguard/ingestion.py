from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field, replace
from datetime import datetime, timezone
from typing import Iterable

from docguard.errors import ParseError, UnsupportedFormat, VisionExtractionError, VisionUnavailable
from docguard.manifest_store import ManifestStore
from docguard.models import (
    TEXT_ROUTE,
    ExtractionFailure,
    ExtractionResult,
    FileRecord,
    TriageDecision,
)
from docguard.storage import UploadStorage
from docguard.tenant_context import Scope
from docguard.text_extraction import extract_text
from docguard.triage import TriageRouter
from docguard.vision_extraction import VisionExtractor

logger = logging.getLogger(__name__)

SUCCESS = "success"
FAILED_EXTRACTION = "failed_extraction"
REJECTED = "rejected"


@dataclass(frozen=True)
class UploadItem:
    filename: str
    content_type: str | None
    content: bytes


@dataclass(frozen=True)
class FileOutcome:
    original_name: str
    status: str
    storage_ref: str | None = None
    route: str | None = None
    error: dict | None = None
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass(frozen=True)
class BatchResult:
    outcomes: list[FileOutcome]

    @property
    def processed_count(self) -> int:
        return sum(1 for outcome in self.outcomes if outcome.status != REJECTED)

    @property
    def rejected_count(self) -> int:
        return len(self.outcomes) - self.processed_count

    def to_dict(self) -> dict:
        return {
            "processed": self.processed_count,
            "rejected": self.rejected_count,
            "files": [outcome.to_dict() for outcome in self.outcomes],
        }


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


class IngestionGateway:
    """Runs each uploaded file through triage, extraction and the manifest as its own unit."""

    def __init__(
        self,
        manifest_store: ManifestStore,
        storage: UploadStorage,
        router: TriageRouter | None = None,
        vision_extractor: VisionExtractor | None = None,
        max_vision_attempts: int = 2,
    ):
        self.manifest_store = manifest_store
        self.storage = storage
        self.router = router or TriageRouter()
        self.vision_extractor = vision_extractor
        self.max_vision_attempts = max(1, max_vision_attempts)

    def _extract_with_vision(
        self, filename: str, content: bytes
    ) -> tuple[ExtractionResult | None, ExtractionFailure | None]:
        if self.vision_extractor is None:
            error = VisionUnavailable()
            return None, ExtractionFailure(error_type=error.error_type, message=str(error), attempts=0)

        last_error: VisionExtractionError | None = None
        for attempt in range(1, self.max_vision_attempts + 1):
            try:
                result = self.vision_extractor.extract(filename, content)
            except VisionExtractionError as exc:
                last_error = exc
                logger.warning(
                    "Vision attempt %d/%d failed for %s: %s", attempt, self.max_vision_attempts, filename, exc
                )
                continue
            if attempt > 1:
                result = replace(result, provenance=replace(result.provenance, attempts=attempt))
            return result, None

        logger.error("Vision extraction failed for %s after %d attempts", filename, self.max_vision_attempts)
        return None, ExtractionFailure(
            error_type=last_error.error_type if last_error else "VisionExtractionError",
            message=str(last_error) if last_error else "Vision extraction failed.",
            attempts=self.max_vision_attempts,
        )

    def ingest_file(self, scope: Scope, filename: str, content_type: str | None, content: bytes) -> FileOutcome:
        name = (filename or "").strip()
        try:
            if not name:
                raise ParseError("<unnamed>", "file name is missing")
            if not content:
                raise ParseError(name, "file is empty")
            decision: TriageDecision = self.router.triage(name, content_type, content)
            extraction: ExtractionResult | None = None
            failure: ExtractionFailure | None = None
            if decision.route == TEXT_ROUTE:
                extraction = extract_text(name, content, decision)
            else:
                extraction, failure = self._extract_with_vision(name, content)
        except (UnsupportedFormat, ParseError) as exc:
            logger.warning("Rejected %s for %s: %s", name or "<unnamed>", scope.prefix, exc)
            return FileOutcome(original_name=name, status=REJECTED, error=exc.to_dict())

        storage_ref = self.storage.storage_ref_for(scope, name)
        record = FileRecord(
            original_name=name,
            storage_ref=storage_ref,
            content_type=decision.detected_mime,
            size_bytes=len(content),
            uploaded_at=_utc_now(),
            triage=decision,
            extraction=extraction,
            failure=failure,
        )
        self.manifest_store.upsert(
            scope, record, write=lambda: self.storage.write(scope, storage_ref, content)
        )

        if failure is not None:
            logger.warning("Marked %s as failed extraction: %s", storage_ref, failure.message)
            return FileOutcome(
                original_name=name,
                status=FAILED_EXTRACTION,
                storage_ref=storage_ref,
                route=decision.route,
                error={"type": failure.error_type, "message": failure.message},
            )

        logger.info("Ingested %s via %s", storage_ref, decision.extractor)
        return FileOutcome(
            original_name=name,
            status=SUCCESS,
            storage_ref=storage_ref,
            route=decision.route,
            warnings=list(extraction.warnings) if extraction else [],
        )

    def ingest_batch(self, scope: Scope, items: Iterable[UploadItem]) -> BatchResult:
        outcomes = [
            self.ingest_file(scope, item.filename, item.content_type, item.content)
            for item in items
        ]
        return BatchResult(outcomes=outcomes)
