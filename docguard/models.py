from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

TEXT_ROUTE = "text_route"
VISION_PDF = "vision_pdf"


@dataclass(frozen=True)
class TriageDecision:
    route: str
    extractor: str
    detected_mime: str
    reason: str
    page_count: int | None = None

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass(frozen=True)
class TableRecord:
    title: str | None
    headers: list[str]
    rows: list[list[str]]

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass(frozen=True)
class ExtractionProvenance:
    route: str
    extractor: str
    model: str | None = None
    latency_ms: int | None = None
    attempts: int = 1

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass(frozen=True)
class ExtractionResult:
    full_text: str
    tables: list[TableRecord]
    provenance: ExtractionProvenance
    summary: str | None = None
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "ExtractionResult":
        return cls(
            full_text=payload.get("full_text") or "",
            tables=[TableRecord(**table) for table in payload.get("tables") or []],
            provenance=ExtractionProvenance(**payload["provenance"]),
            summary=payload.get("summary"),
            warnings=list(payload.get("warnings") or []),
        )


@dataclass(frozen=True)
class ExtractionFailure:
    """Marker left on a File whose extraction failed; the File stays in its Manifest."""

    error_type: str
    message: str
    attempts: int

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass(frozen=True)
class FileRecord:
    original_name: str
    storage_ref: str
    content_type: str
    size_bytes: int
    uploaded_at: str
    triage: TriageDecision
    extraction: ExtractionResult | None = None
    failure: ExtractionFailure | None = None

    @property
    def extraction_status(self) -> str:
        return "success" if self.extraction is not None else "failed_extraction"

    def to_dict(self, include_content: bool = True) -> dict:
        payload = asdict(self)
        payload["extraction_status"] = self.extraction_status
        if not include_content and payload["extraction"] is not None:
            extraction = payload["extraction"]
            payload["extraction"] = {
                "provenance": extraction["provenance"],
                "table_count": len(extraction["tables"]),
                "text_chars": len(extraction["full_text"]),
                "warnings": extraction["warnings"],
            }
        return payload

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "FileRecord":
        extraction = payload.get("extraction")
        failure = payload.get("failure")
        return cls(
            original_name=payload["original_name"],
            storage_ref=payload["storage_ref"],
            content_type=payload["content_type"],
            size_bytes=int(payload["size_bytes"]),
            uploaded_at=payload["uploaded_at"],
            triage=TriageDecision(**payload["triage"]),
            extraction=ExtractionResult.from_dict(extraction) if extraction else None,
            failure=ExtractionFailure(**failure) if failure else None,
        )


class VisionTableModel(BaseModel):
    model_config = ConfigDict(extra="ignore")

    title: str | None = None
    headers: list[str] = Field(default_factory=list)
    rows: list[list[str]] = Field(default_factory=list)

    @field_validator("headers", mode="before")
    @classmethod
    def _stringify_headers(cls, value: Any) -> Any:
        if isinstance(value, list):
            return ["" if item is None else str(item) for item in value]
        return value

    @field_validator("rows", mode="before")
    @classmethod
    def _stringify_rows(cls, value: Any) -> Any:
        if isinstance(value, list):
            return [
                ["" if cell is None else str(cell) for cell in row] if isinstance(row, list) else row
                for row in value
            ]
        return value


class VisionPayloadModel(BaseModel):
    """JSON document the vision model is instructed to return."""

    model_config = ConfigDict(extra="ignore")

    summary: str | None = None
    full_text: str | None = None
    tables: list[VisionTableModel] | None = None
