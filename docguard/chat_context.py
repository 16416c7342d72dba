from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from typing import Iterable

from docguard.config import Settings, resolve_provider
from docguard.guardrails import (
    GROUNDING_RULES,
    GuardrailClassifier,
    GuardrailContext,
    GuardrailDecision,
    SanitizedOutput,
    log_blocked_request,
    sanitize_output,
)
from docguard.llm_provider import (
    LlmJsonResult,
    generate_text_with_anthropic,
    generate_text_with_gemini,
    generate_text_with_openai,
)
from docguard.manifest_store import ManifestStore
from docguard.models import TEXT_ROUTE, FileRecord, TableRecord
from docguard.quality import QualityReport, score_manifest
from docguard.tenant_context import Scope, assert_within_scope

logger = logging.getLogger(__name__)

DEFAULT_CHAT_MODELS = {
    "anthropic": "claude-3-5-sonnet-20241022",
    "openai": "gpt-4.1-mini",
    "gemini": "gemini-1.5-flash",
}
MIN_FILE_BUDGET = 400
MAX_TURN_CHARS = 2000
MAX_TABLE_ROWS = 50
TRUNCATION_MARKER = "[...truncated]"


@dataclass(frozen=True)
class ChatTurn:
    role: str
    content: str


@dataclass(frozen=True)
class AssembledContext:
    tenant_id: str
    persona_id: str
    system_prompt: str
    document_context: str
    quality_summary: str
    quality_score: float
    file_count: int
    storage_refs: list[str]
    history: list[ChatTurn] = field(default_factory=list)
    truncated: bool = False

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass(frozen=True)
class ChatOutcome:
    decision: GuardrailDecision
    response: str | None = None
    context: AssembledContext | None = None

    @property
    def blocked(self) -> bool:
        return not self.decision.allowed


def _escape_cell(value: str) -> str:
    return value.replace("|", "\\|").replace("\n", " ")


def render_markdown_table(table: TableRecord, max_rows: int = MAX_TABLE_ROWS) -> str:
    if not table.headers:
        return ""
    width = len(table.headers)
    lines = []
    if table.title:
        lines.append(f"Table: {table.title}")
    lines.append("| " + " | ".join(_escape_cell(header) for header in table.headers) + " |")
    lines.append("| " + " | ".join("---" for _ in table.headers) + " |")
    for row in table.rows[:max_rows]:
        cells = (list(row) + [""] * width)[:width]
        lines.append("| " + " | ".join(_escape_cell(cell) for cell in cells) + " |")
    if len(table.rows) > max_rows:
        lines.append(f"({len(table.rows) - max_rows} more rows not shown)")
    return "\n".join(lines)


def _file_block(record: FileRecord, budget: int) -> tuple[str, bool]:
    header = f"### File: {record.original_name} (route: {record.triage.route})"
    if record.extraction is None:
        detail = record.failure.message if record.failure else "extraction failed"
        return f"{header}\n[Content unavailable: {detail}]", False

    parts = []
    text = record.extraction.full_text.strip()
    if text:
        parts.append(text)
    tables = [render_markdown_table(table) for table in record.extraction.tables]
    # Text routes already render tables into full_text.
    if record.extraction.provenance.route != TEXT_ROUTE:
        parts.extend(table for table in tables if table)
    body = "\n\n".join(parts) or "[No text content extracted]"

    block = f"{header}\n{body}"
    if len(block) > budget:
        keep = max(budget - len(header) - len(TRUNCATION_MARKER) - 2, 0)
        return f"{header}\n{body[:keep].rstrip()}\n{TRUNCATION_MARKER}", True
    return block, False


class ChatContextAssembler:
    def __init__(
        self,
        manifest_store: ManifestStore,
        classifier: GuardrailClassifier | None = None,
        max_context_chars: int = 12000,
        max_history_turns: int = 10,
        bulk_file_threshold: int = 5,
    ):
        self.manifest_store = manifest_store
        self.classifier = classifier or GuardrailClassifier()
        self.max_context_chars = max_context_chars
        self.max_history_turns = max_history_turns
        self.bulk_file_threshold = bulk_file_threshold

    def prepare(self, scope: Scope, message: str, history: Iterable[ChatTurn] = ()) -> ChatOutcome:
        """Gate a message, then assemble the bounded context for the downstream model."""

        guard_context = GuardrailContext(
            file_count=self.manifest_store.file_count(scope),
            bulk_file_threshold=self.bulk_file_threshold,
        )
        decision = self.classifier.classify(message, guard_context)
        if not decision.allowed:
            log_blocked_request(scope.tenant_id, scope.persona_id, message, decision)
            return ChatOutcome(decision=decision, response=decision.reason)

        files = self.manifest_store.snapshot(scope)
        for record in files:
            assert_within_scope(scope, record.storage_ref)
        report = score_manifest(files)
        context = self._assemble(scope, files, report, list(history))
        return ChatOutcome(decision=decision, context=context)

    def _assemble(
        self,
        scope: Scope,
        files: tuple[FileRecord, ...],
        report: QualityReport,
        history: list[ChatTurn],
    ) -> AssembledContext:
        truncated = False
        blocks: list[str] = []
        if files:
            budget = max(MIN_FILE_BUDGET, self.max_context_chars // len(files))
            used = 0
            for record in files:
                block, cut = _file_block(record, budget)
                if used + len(block) > self.max_context_chars:
                    truncated = True
                    blocks.append(f"### File: {record.original_name}\n[Omitted: context limit reached]")
                    continue
                truncated = truncated or cut
                blocks.append(block)
                used += len(block)
        document_context = "\n\n".join(blocks) if blocks else "No documents have been uploaded yet."

        kept_history = [
            ChatTurn(role=turn.role, content=turn.content[:MAX_TURN_CHARS])
            for turn in history[-self.max_history_turns:]
            if turn.role in {"user", "assistant"} and turn.content.strip()
        ] if self.max_history_turns > 0 else []

        system_prompt = "\n\n".join([
            "You are a business document assistant. Answer questions using the tenant's uploaded files only.",
            f"Uploaded files ({len(files)}):\n{document_context}",
            f"Data quality: {report.summary_text()}",
            GROUNDING_RULES,
        ])
        return AssembledContext(
            tenant_id=scope.tenant_id,
            persona_id=scope.persona_id,
            system_prompt=system_prompt,
            document_context=document_context,
            quality_summary=report.summary_text(),
            quality_score=report.score,
            file_count=len(files),
            storage_refs=[record.storage_ref for record in files],
            history=kept_history,
            truncated=truncated,
        )


def render_conversation(context: AssembledContext, message: str) -> str:
    lines = [f"{turn.role.capitalize()}: {turn.content}" for turn in context.history]
    lines.append(f"User: {message}")
    lines.append("Assistant:")
    return "\n".join(lines)


class ChatResponder:
    """Optional downstream model call; output is sanitized before it leaves the service."""

    def __init__(self, provider: str, api_key: str, model: str, timeout_seconds: float = 60.0):
        self.provider = provider
        self.api_key = api_key
        self.model = model
        self.timeout_seconds = timeout_seconds

    def _request(self, system_prompt: str, prompt: str) -> LlmJsonResult:
        if self.provider == "anthropic":
            return generate_text_with_anthropic(
                self.api_key, self.model, prompt, system_prompt=system_prompt, timeout=self.timeout_seconds
            )
        if self.provider == "openai":
            return generate_text_with_openai(
                self.api_key, self.model, prompt, system_prompt=system_prompt, timeout=self.timeout_seconds
            )
        if self.provider == "gemini":
            return generate_text_with_gemini(
                self.api_key, self.model, prompt, system_prompt=system_prompt, timeout=self.timeout_seconds
            )
        raise ValueError(f"Unsupported chat provider '{self.provider}'.")

    def reply(self, context: AssembledContext, message: str) -> tuple[SanitizedOutput | None, list[str]]:
        result = self._request(context.system_prompt, render_conversation(context, message))
        if result.status != "success" or not result.raw_response:
            logger.warning("Chat model call failed: %s", "; ".join(result.warnings))
            return None, list(result.warnings)
        return sanitize_output(result.raw_response), list(result.warnings)


def build_chat_responder(settings: Settings) -> ChatResponder | None:
    provider = resolve_provider(settings.chat_provider, settings)
    if provider is None:
        logger.info("No chat model configured; chat returns assembled context only.")
        return None
    return ChatResponder(
        provider=provider,
        api_key=settings.api_key_for(provider) or "",
        model=settings.chat_model or DEFAULT_CHAT_MODELS[provider],
        timeout_seconds=settings.vision_timeout_seconds,
    )
