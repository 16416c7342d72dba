from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any
from uuid import uuid4

from fastapi import FastAPI, File, Request, UploadFile
from fastapi.concurrency import run_in_threadpool
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from docguard.analytics import DEFAULT_LIST_LIMIT, AnalyticsStore
from docguard.chat_context import ChatContextAssembler, ChatResponder, ChatTurn, build_chat_responder
from docguard.config import Settings, configure_logging, load_settings
from docguard.errors import DuplicatePersona, TenantIsolationViolation, UnknownPersona
from docguard.guardrails import GuardrailClassifier
from docguard.ingestion import IngestionGateway, UploadItem
from docguard.manifest_store import ManifestStore
from docguard.personas import JsonFileKeyValueStore, PersonaEventBus, PersonaRegistry, PersonaSelection
from docguard.quality import score_manifest
from docguard.storage import UploadStorage
from docguard.tenant_context import Scope, resolve_scope, resolve_tenant_id, sanitize_identifier
from docguard.transcripts import TranscriptStore
from docguard.triage import TriageRouter
from docguard.vision_extraction import VisionExtractor, build_vision_extractor

logger = logging.getLogger(__name__)


@dataclass
class AppServices:
    settings: Settings
    manifest_store: ManifestStore
    upload_storage: UploadStorage
    vision_extractor: VisionExtractor | None
    gateway: IngestionGateway
    assembler: ChatContextAssembler
    chat_responder: ChatResponder | None
    persona_registry: PersonaRegistry
    persona_selection: PersonaSelection
    persona_events: PersonaEventBus
    analytics: AnalyticsStore
    transcripts: TranscriptStore


def build_services(settings: Settings) -> AppServices:
    manifest_store = ManifestStore(settings.manifest_dir if settings.persist_manifests else None)
    upload_storage = UploadStorage(settings.upload_dir)
    vision_extractor = build_vision_extractor(settings)
    key_value_store = JsonFileKeyValueStore(settings.personas_path)
    persona_registry = PersonaRegistry(key_value_store)
    persona_events = PersonaEventBus()
    return AppServices(
        settings=settings,
        manifest_store=manifest_store,
        upload_storage=upload_storage,
        vision_extractor=vision_extractor,
        gateway=IngestionGateway(
            manifest_store,
            upload_storage,
            router=TriageRouter(),
            vision_extractor=vision_extractor,
            max_vision_attempts=settings.vision_max_attempts,
        ),
        assembler=ChatContextAssembler(
            manifest_store,
            GuardrailClassifier(),
            max_context_chars=settings.max_context_chars,
            max_history_turns=settings.max_history_turns,
            bulk_file_threshold=settings.bulk_file_threshold,
        ),
        chat_responder=build_chat_responder(settings),
        persona_registry=persona_registry,
        persona_selection=PersonaSelection(key_value_store, persona_registry, persona_events),
        persona_events=persona_events,
        analytics=AnalyticsStore(settings.analytics_path),
        transcripts=TranscriptStore(settings.transcripts_dir),
    )


settings = load_settings()
configure_logging(settings.log_level)
services = build_services(settings)

app = FastAPI(title="DocGuard Ingestion API")


@app.middleware("http")
async def api_prefix_alias(request, call_next):
    """Accept both `/path` and `/api/path` for frontend compatibility."""
    if request.scope.get("path", "").startswith("/api/"):
        request.scope["path"] = request.scope["path"][4:]
    return await call_next(request)


@app.middleware("http")
async def request_context(request, call_next):
    request_id = request.headers.get("x-request-id") or str(uuid4())
    request.state.request_id = request_id
    response = await call_next(request)
    response.headers["x-request-id"] = request_id
    return response


app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(TenantIsolationViolation)
async def tenant_isolation_handler(request: Request, exc: TenantIsolationViolation):
    logger.error("Tenant isolation violation on %s: %s", request.url.path, exc)
    return JSONResponse(
        status_code=500,
        content={"status": "error", "message": "Internal error: request scope violation.", "warnings": []},
    )


def _error(status_code: int, message: str, warnings: list[str] | None = None, **extra: Any) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"status": "error", "message": message, "warnings": list(warnings or []), **extra},
    )


def _scope(request: Request, body_persona: str | None = None) -> Scope:
    return resolve_scope(request.headers, request.query_params, body_persona)


def _manifest_payload(scope: Scope) -> dict:
    files = services.manifest_store.snapshot(scope)
    return {
        "tenant_id": scope.tenant_id,
        "persona_id": scope.persona_id,
        "file_count": len(files),
        "files": [record.to_dict(include_content=False) for record in files],
    }


class DeleteFileRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    file_name: str | None = Field(default=None, alias="fileName")
    persona: str | None = None


class ChatTurnModel(BaseModel):
    role: str
    content: str


class ChatRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    message: str | None = None
    history: list[ChatTurnModel] = Field(default_factory=list)
    persona: str | None = None
    conversation_id: str | None = Field(default=None, alias="conversationId")


class CreatePersonaRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    persona_id: str = Field(alias="personaId")
    name: str
    description: str = ""
    type: str | None = None
    config: dict[str, Any] = Field(default_factory=dict)
    metadata: dict[str, Any] = Field(default_factory=dict)


class SelectPersonaRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    persona_id: str = Field(alias="personaId")


class AnalyticsEventRequest(BaseModel):
    ai_type: str | None = None
    session_duration: float = 0.0
    success: bool = True
    usage_date: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    persona: str | None = None


@app.get("/health")
def health_check():
    return {"status": "ok"}


@app.post("/upload")
async def upload_files(request: Request, files: list[UploadFile] | None = File(None)):
    scope = _scope(request)
    if not files:
        return _error(400, "No files uploaded.")
    if len(files) > services.settings.max_upload_files:
        return _error(400, f"Too many files; at most {services.settings.max_upload_files} per upload.")

    items = [
        UploadItem(filename=upload.filename or "", content_type=upload.content_type, content=await upload.read())
        for upload in files
    ]
    batch = await run_in_threadpool(services.gateway.ingest_batch, scope, items)
    batch_payload = batch.to_dict()

    if batch.processed_count == 0:
        return _error(
            400,
            "None of the uploaded files could be processed.",
            [outcome.error["message"] for outcome in batch.outcomes if outcome.error],
            files=batch_payload["files"],
        )

    manifest = _manifest_payload(scope)
    report = score_manifest(services.manifest_store.snapshot(scope))
    warnings = [
        f"{outcome.original_name}: {outcome.error['message']}" for outcome in batch.outcomes if outcome.error
    ]
    return {
        "status": "success" if not warnings else "warning",
        "message": f"Processed {batch.processed_count} of {len(batch.outcomes)} files.",
        "warnings": warnings,
        **batch_payload,
        "manifest": manifest,
        "quality": report.to_dict(),
    }


@app.get("/status")
def status(request: Request):
    scope = _scope(request)
    payload = _manifest_payload(scope)
    return {
        "status": "success",
        "has_data": payload["file_count"] > 0,
        "vision_available": services.vision_extractor is not None,
        **payload,
    }


@app.get("/quality-report")
def quality_report(request: Request):
    scope = _scope(request)
    files = services.manifest_store.snapshot(scope)
    if not files:
        return JSONResponse(
            status_code=404,
            content={"status": "warning", "message": "No data uploaded for this persona yet.", "warnings": []},
        )
    return {"status": "success", **scope.to_dict(), "report": score_manifest(files).to_dict()}


@app.delete("/delete-file")
def delete_file(request: Request, body: DeleteFileRequest):
    scope = _scope(request, body.persona)
    file_name = (body.file_name or "").strip()
    if not file_name:
        return _error(400, "file_name is required.")

    removed = services.manifest_store.remove_by_name(scope, file_name)
    if removed is None:
        return JSONResponse(
            status_code=404,
            content={"status": "warning", "message": f"File '{file_name}' not found.", "warnings": []},
        )
    services.upload_storage.delete(scope, removed.storage_ref)
    return {"status": "success", "message": f"Deleted '{removed.original_name}'.", **_manifest_payload(scope)}


@app.delete("/clear")
def clear_files(request: Request):
    scope = _scope(request)
    removed = services.manifest_store.clear(scope)
    services.upload_storage.clear(scope)
    return {"status": "success", "removed": removed, **_manifest_payload(scope)}


@app.post("/chat")
def chat(request: Request, body: ChatRequest):
    scope = _scope(request, body.persona)
    message = (body.message or "").strip()
    if not message:
        return _error(400, "message is required.")
    if body.conversation_id is not None and not sanitize_identifier(body.conversation_id):
        return _error(400, "conversationId must contain at least one letter or digit.")

    history = [ChatTurn(role=turn.role, content=turn.content) for turn in body.history]
    outcome = services.assembler.prepare(scope, message, history)
    if outcome.blocked:
        return {
            "status": "blocked",
            "response": outcome.response,
            "guardrail": outcome.decision.to_dict(),
        }

    context = outcome.context
    payload: dict[str, Any] = {
        "status": "success",
        "response": None,
        "contact_intent": None,
        "guardrail": outcome.decision.to_dict(),
        "context": context.to_dict() if context else None,
        "warnings": [],
    }
    if services.chat_responder is not None and context is not None:
        reply, warnings = services.chat_responder.reply(context, message)
        payload["warnings"] = warnings
        if reply is not None:
            payload["response"] = reply.text
            payload["contact_intent"] = reply.contact_intent

    transcript = services.transcripts.log_interaction(
        scope,
        message,
        assistant_response=payload["response"],
        conversation_id=body.conversation_id,
        contact_intent=payload["contact_intent"],
    )
    payload["conversation_id"] = transcript.conversation_id
    return payload


@app.get("/personas")
def list_personas(request: Request):
    tenant_id = resolve_tenant_id(request.headers, request.query_params)
    personas = services.persona_registry.list_personas(tenant_id)
    return {"status": "success", "tenant_id": tenant_id, "personas": [persona.to_dict() for persona in personas]}


@app.post("/personas")
def create_persona(request: Request, body: CreatePersonaRequest):
    tenant_id = resolve_tenant_id(request.headers, request.query_params)
    try:
        persona = services.persona_registry.create(
            tenant_id,
            body.persona_id,
            body.name,
            description=body.description,
            persona_type=body.type,
            config=body.config,
            metadata=body.metadata,
        )
    except DuplicatePersona as exc:
        return _error(409, str(exc))
    except ValueError as exc:
        return _error(400, str(exc))
    return JSONResponse(status_code=201, content={"status": "success", "persona": persona.to_dict()})


@app.get("/personas/selected")
def selected_persona(request: Request):
    tenant_id = resolve_tenant_id(request.headers, request.query_params)
    persona = services.persona_selection.selected(tenant_id)
    return {"status": "success", "tenant_id": tenant_id, "persona": persona.to_dict() if persona else None}


@app.post("/personas/selected")
def select_persona(request: Request, body: SelectPersonaRequest):
    tenant_id = resolve_tenant_id(request.headers, request.query_params)
    try:
        persona = services.persona_selection.select(tenant_id, body.persona_id)
    except UnknownPersona as exc:
        return JSONResponse(status_code=404, content={"status": "warning", "message": str(exc), "warnings": []})
    return {"status": "success", "tenant_id": tenant_id, "persona": persona.to_dict()}


def _persona_not_found(persona_id: str) -> JSONResponse:
    return JSONResponse(
        status_code=404,
        content={"status": "warning", "message": f"Persona '{persona_id}' not found.", "warnings": []},
    )


# Declared after /personas/selected so that path keeps its own handlers.
@app.get("/personas/{persona_id}")
def get_persona(request: Request, persona_id: str):
    tenant_id = resolve_tenant_id(request.headers, request.query_params)
    persona = services.persona_registry.get(tenant_id, sanitize_identifier(persona_id))
    if persona is None:
        return _persona_not_found(persona_id)
    return {"status": "success", "tenant_id": tenant_id, "persona": persona.to_dict()}


@app.delete("/personas/{persona_id}")
def delete_persona(request: Request, persona_id: str):
    tenant_id = resolve_tenant_id(request.headers, request.query_params)
    try:
        removed = services.persona_registry.delete(tenant_id, persona_id)
    except UnknownPersona:
        return _persona_not_found(persona_id)
    restored = services.persona_registry.get(tenant_id, removed.persona_id)
    return {
        "status": "success",
        "tenant_id": tenant_id,
        "deleted": removed.to_dict(),
        "restored": restored.to_dict() if restored else None,
    }


@app.post("/analytics")
def record_analytics(request: Request, body: AnalyticsEventRequest):
    scope = _scope(request, body.persona)
    if not (body.ai_type or "").strip():
        return _error(400, "ai_type is required.")
    entry = services.analytics.record(
        scope.tenant_id,
        scope.persona_id,
        body.ai_type or "",
        session_duration=body.session_duration,
        success=body.success,
        usage_date=body.usage_date,
        metadata=body.metadata,
    )
    return JSONResponse(status_code=201, content={"status": "success", "record": entry.to_dict()})


@app.get("/analytics")
def list_analytics(request: Request, type: str | None = None, limit: int = DEFAULT_LIST_LIMIT):
    tenant_id = resolve_tenant_id(request.headers, request.query_params)
    persona = request.query_params.get("persona") or request.query_params.get("personaId")
    records = services.analytics.list_records(
        tenant_id,
        ai_type=type,
        persona_id=sanitize_identifier(persona) if persona else None,
        limit=limit,
    )
    return {"status": "success", "tenant_id": tenant_id, "records": [record.to_dict() for record in records]}


@app.get("/analytics/summary")
def analytics_summary(request: Request):
    tenant_id = resolve_tenant_id(request.headers, request.query_params)
    persona = request.query_params.get("persona") or request.query_params.get("personaId")
    summary = services.analytics.summary(tenant_id, persona_id=sanitize_identifier(persona) if persona else None)
    return {"status": "success", "tenant_id": tenant_id, "summary": summary}


@app.get("/transcripts")
def list_transcripts(request: Request):
    scope = _scope(request)
    transcripts = services.transcripts.list_transcripts(scope)
    return {
        "status": "success",
        **scope.to_dict(),
        "transcripts": [transcript.to_dict(include_messages=False) for transcript in transcripts],
    }


def _transcript_not_found(conversation_id: str) -> JSONResponse:
    return JSONResponse(
        status_code=404,
        content={"status": "warning", "message": f"Conversation '{conversation_id}' not found.", "warnings": []},
    )


@app.get("/transcripts/{conversation_id}")
def get_transcript(request: Request, conversation_id: str):
    scope = _scope(request)
    transcript = services.transcripts.get(scope, conversation_id)
    if transcript is None:
        return _transcript_not_found(conversation_id)
    return {"status": "success", "transcript": transcript.to_dict()}


@app.delete("/transcripts/{conversation_id}")
def delete_transcript(request: Request, conversation_id: str):
    scope = _scope(request)
    if not services.transcripts.delete(scope, conversation_id):
        return _transcript_not_found(conversation_id)
    return {"status": "success", "deleted": conversation_id}
