from __future__ import annotations

import json
import logging
import re
import time

from pydantic import ValidationError

from docguard.config import Settings, resolve_provider
from docguard.errors import EmptyVisionResponse, InvalidVisionJSON, VisionRequestFailed
from docguard.llm_provider import (
    LlmJsonResult,
    extract_pdf_with_anthropic,
    extract_pdf_with_gemini,
    extract_pdf_with_openai,
)
from docguard.models import VISION_PDF, ExtractionProvenance, ExtractionResult, TableRecord, VisionPayloadModel

logger = logging.getLogger(__name__)

DEFAULT_VISION_MODELS = {
    "anthropic": "claude-3-5-sonnet-20241022",
    "openai": "gpt-4.1-mini",
    "gemini": "gemini-1.5-flash",
}

VISION_SYSTEM_PROMPT = (
    "You are a document intelligence assistant. Analyze the attached PDF and return valid JSON only, "
    "with exactly this schema:\n"
    "{\n"
    '  "summary": string,\n'
    '  "full_text": string,\n'
    '  "tables": [{"title": string | null, "headers": string[], "rows": string[][]}]\n'
    "}\n"
    'Put the document text as plain UTF-8 in "full_text". Always include "tables" (use [] if there are none). '
    "Do not wrap the JSON in Markdown and do not add any prose."
)


def _user_prompt(filename: str) -> str:
    return (
        f'You are given a PDF file named "{filename or "document.pdf"}". '
        "Extract its essential content and tables and return the JSON object only."
    )


def _strip_code_fence(text: str) -> str:
    match = re.match(r"^```(?:json)?\s*(.*?)\s*```$", text.strip(), flags=re.DOTALL)
    return match.group(1) if match else text.strip()


def parse_vision_payload(filename: str, raw_text: str) -> tuple[str, str | None, list[TableRecord]]:
    """Validate a vision response into (full_text, summary, tables); raises InvalidVisionJSON."""

    candidate = _strip_code_fence(raw_text)
    try:
        parsed = json.loads(candidate)
    except json.JSONDecodeError as exc:
        raise InvalidVisionJSON(filename, str(exc), raw_text) from exc

    if not isinstance(parsed, dict):
        raise InvalidVisionJSON(filename, f"expected a JSON object, got {type(parsed).__name__}", raw_text)

    try:
        payload = VisionPayloadModel.model_validate(parsed)
    except ValidationError as exc:
        raise InvalidVisionJSON(filename, f"schema mismatch: {exc.errors()[0].get('msg')}", raw_text) from exc

    full_text = (payload.full_text or "").strip() or (payload.summary or "").strip()
    tables = [
        TableRecord(title=table.title, headers=list(table.headers), rows=[list(row) for row in table.rows])
        for table in payload.tables or []
    ]
    return full_text, payload.summary, tables


class VisionExtractor:
    """Single-attempt PDF extraction through an external vision-capable model."""

    def __init__(self, provider: str, api_key: str, model: str, timeout_seconds: float = 60.0):
        self.provider = provider
        self.api_key = api_key
        self.model = model
        self.timeout_seconds = timeout_seconds

    def _request(self, filename: str, pdf_bytes: bytes) -> LlmJsonResult:
        user_prompt = _user_prompt(filename)
        if self.provider == "anthropic":
            return extract_pdf_with_anthropic(
                self.api_key, self.model, pdf_bytes, VISION_SYSTEM_PROMPT, user_prompt, timeout=self.timeout_seconds
            )
        if self.provider == "openai":
            return extract_pdf_with_openai(
                self.api_key,
                self.model,
                pdf_bytes,
                VISION_SYSTEM_PROMPT,
                user_prompt,
                timeout=self.timeout_seconds,
                filename=filename or "document.pdf",
            )
        if self.provider == "gemini":
            return extract_pdf_with_gemini(
                self.api_key, self.model, pdf_bytes, VISION_SYSTEM_PROMPT, user_prompt, timeout=self.timeout_seconds
            )
        raise ValueError(f"Unsupported vision provider '{self.provider}'.")

    def extract(self, filename: str, pdf_bytes: bytes) -> ExtractionResult:
        start = time.monotonic()
        response = self._request(filename, pdf_bytes)
        latency_ms = int((time.monotonic() - start) * 1000)

        if response.status != "success":
            if response.error_kind == "empty":
                raise EmptyVisionResponse(filename, response.warnings)
            raise VisionRequestFailed(filename, response.warnings)

        raw_text = (response.raw_response or "").strip()
        if not raw_text:
            raise EmptyVisionResponse(filename, response.warnings)

        full_text, summary, tables = parse_vision_payload(filename, raw_text)
        return ExtractionResult(
            full_text=full_text,
            tables=tables,
            summary=summary,
            provenance=ExtractionProvenance(
                route=VISION_PDF,
                extractor=f"vision:{self.provider}",
                model=response.model or self.model,
                latency_ms=latency_ms,
            ),
        )


def build_vision_extractor(settings: Settings) -> VisionExtractor | None:
    """Construct the extractor once at startup; None means vision-routed files fail immediately."""

    provider = resolve_provider(settings.vision_provider, settings)
    if provider is None:
        logger.warning(
            "Vision extraction unavailable (provider=%r): no usable provider or API key configured; "
            "PDF uploads will be marked as failed extraction.",
            settings.vision_provider or "auto",
        )
        return None

    model = settings.vision_model or DEFAULT_VISION_MODELS[provider]
    logger.info("Vision extraction configured with provider=%s model=%s", provider, model)
    return VisionExtractor(
        provider=provider,
        api_key=settings.api_key_for(provider) or "",
        model=model,
        timeout_seconds=settings.vision_timeout_seconds,
    )
