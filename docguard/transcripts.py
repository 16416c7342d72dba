from __future__ import annotations

import json
import logging
import threading
from dataclasses import asdict, dataclass, field, replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Any
from uuid import uuid4

from docguard.storage import atomic_write_json
from docguard.tenant_context import Scope, sanitize_identifier

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TranscriptMessage:
    role: str
    content: str
    timestamp: str


@dataclass(frozen=True)
class Transcript:
    """All turns of one conversation, owned by exactly one (tenant, persona) scope."""

    conversation_id: str
    tenant_id: str
    persona_id: str
    started_at: str
    last_message_at: str
    messages: tuple[TranscriptMessage, ...] = ()
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self, include_messages: bool = True) -> dict:
        payload = asdict(self)
        payload["messages"] = [asdict(message) for message in self.messages]
        payload["message_count"] = len(self.messages)
        if not include_messages:
            payload.pop("messages")
        return payload

    @classmethod
    def from_dict(cls, payload: dict) -> Transcript:
        return cls(
            conversation_id=payload["conversation_id"],
            tenant_id=payload["tenant_id"],
            persona_id=payload["persona_id"],
            started_at=payload["started_at"],
            last_message_at=payload["last_message_at"],
            messages=tuple(TranscriptMessage(**item) for item in payload.get("messages") or []),
            metadata=dict(payload.get("metadata") or {}),
        )


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


class TranscriptStore:
    """Per-conversation chat transcripts, one JSON file each under `<root>/<tenant>/<persona>/`."""

    def __init__(self, persist_dir: Path | None = None):
        self.persist_dir = Path(persist_dir) if persist_dir is not None else None
        self._transcripts: dict[Scope, dict[str, Transcript]] = {}
        self._lock = threading.Lock()

    def _scope_dir(self, scope: Scope) -> Path | None:
        if self.persist_dir is None:
            return None
        return self.persist_dir / scope.tenant_id / scope.persona_id

    def _load(self, scope: Scope) -> dict[str, Transcript]:
        current = self._transcripts.get(scope)
        if current is not None:
            return current

        loaded: dict[str, Transcript] = {}
        directory = self._scope_dir(scope)
        if directory is not None and directory.is_dir():
            for path in sorted(directory.glob("*.json")):
                transcript = Transcript.from_dict(json.loads(path.read_text(encoding="utf-8")))
                if (transcript.tenant_id, transcript.persona_id) == (scope.tenant_id, scope.persona_id):
                    loaded[transcript.conversation_id] = transcript
                else:
                    logger.warning("Skipping transcript %s stored outside its scope", path)
        self._transcripts[scope] = loaded
        return loaded

    def _publish(self, scope: Scope, transcript: Transcript) -> None:
        directory = self._scope_dir(scope)
        if directory is not None:
            atomic_write_json(directory / f"{transcript.conversation_id}.json", transcript.to_dict())
        self._load(scope)[transcript.conversation_id] = transcript

    def log_interaction(
        self,
        scope: Scope,
        user_message: str,
        assistant_response: str | None = None,
        conversation_id: str | None = None,
        contact_intent: dict | None = None,
    ) -> Transcript:
        """Append one user turn, and the reply when there is one, to a conversation."""

        if not (user_message or "").strip():
            raise ValueError("user_message is required.")
        if conversation_id is None:
            conversation = uuid4().hex
        else:
            conversation = sanitize_identifier(conversation_id)
            if not conversation:
                raise ValueError("conversation_id must contain at least one letter or digit.")

        timestamp = _utc_now()
        added = [TranscriptMessage("user", user_message.strip(), timestamp)]
        if assistant_response:
            added.append(TranscriptMessage("assistant", assistant_response, timestamp))

        with self._lock:
            existing = self._load(scope).get(conversation)
            if existing is None:
                transcript = Transcript(
                    conversation_id=conversation,
                    tenant_id=scope.tenant_id,
                    persona_id=scope.persona_id,
                    started_at=timestamp,
                    last_message_at=timestamp,
                    messages=tuple(added),
                    metadata={"last_user_message": added[0].content, "contact_intent": contact_intent},
                )
            else:
                transcript = replace(
                    existing,
                    last_message_at=timestamp,
                    messages=existing.messages + tuple(added),
                    metadata={
                        **existing.metadata,
                        "last_user_message": added[0].content,
                        "contact_intent": contact_intent or existing.metadata.get("contact_intent"),
                    },
                )
            self._publish(scope, transcript)
        logger.debug("Transcript %s/%s: %d messages", scope.prefix, conversation, len(transcript.messages))
        return transcript

    def get(self, scope: Scope, conversation_id: str) -> Transcript | None:
        with self._lock:
            return self._load(scope).get(sanitize_identifier(conversation_id))

    def list_transcripts(self, scope: Scope) -> list[Transcript]:
        """Most recently active conversations first."""

        with self._lock:
            transcripts = list(self._load(scope).values())
        return sorted(transcripts, key=lambda item: item.last_message_at, reverse=True)

    def delete(self, scope: Scope, conversation_id: str) -> bool:
        conversation = sanitize_identifier(conversation_id)
        with self._lock:
            removed = self._load(scope).pop(conversation, None)
            directory = self._scope_dir(scope)
            if removed is not None and directory is not None:
                (directory / f"{conversation}.json").unlink(missing_ok=True)
        return removed is not None
