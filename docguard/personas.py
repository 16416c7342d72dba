from __future__ import annotations

import json
import logging
import threading
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Protocol, Union

from docguard.errors import DuplicatePersona, UnknownPersona
from docguard.storage import atomic_write_json
from docguard.tenant_context import sanitize_identifier

logger = logging.getLogger(__name__)

PERSONAS_KEY_PREFIX = "personas:"
SELECTION_KEY_PREFIX = "persona:selected:"


class KeyValueStore(Protocol):
    def get(self, key: str) -> str | None:
        ...

    def set(self, key: str, value: str) -> None:
        ...

    def delete(self, key: str) -> None:
        ...


class InMemoryKeyValueStore:
    def __init__(self) -> None:
        self._values: dict[str, str] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> str | None:
        return self._values.get(key)

    def set(self, key: str, value: str) -> None:
        with self._lock:
            self._values[key] = value

    def delete(self, key: str) -> None:
        with self._lock:
            self._values.pop(key, None)


class JsonFileKeyValueStore:
    """Key-value store persisted as a single JSON object file."""

    def __init__(self, path: Path):
        self.path = Path(path)
        self._lock = threading.Lock()
        self._values: dict[str, str] | None = None

    def _load(self) -> dict[str, str]:
        if self._values is None:
            if self.path.exists():
                payload = json.loads(self.path.read_text(encoding="utf-8"))
                self._values = {str(key): str(value) for key, value in payload.items()}
            else:
                self._values = {}
        return self._values

    def get(self, key: str) -> str | None:
        with self._lock:
            return self._load().get(key)

    def set(self, key: str, value: str) -> None:
        with self._lock:
            values = self._load()
            values[key] = value
            atomic_write_json(self.path, values)

    def delete(self, key: str) -> None:
        with self._lock:
            values = self._load()
            if values.pop(key, None) is not None:
                atomic_write_json(self.path, values)


@dataclass(frozen=True)
class PersistedPersona:
    persona_id: str
    name: str
    description: str
    type: str
    created_at: str
    config: dict[str, Any] = field(default_factory=dict)
    metadata: dict[str, Any] = field(default_factory=dict)
    kind: str = "persisted"

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass(frozen=True)
class SyntheticDefaultPersona:
    """Default persona every tenant sees until it customizes one with the same id."""

    persona_id: str
    name: str
    description: str
    type: str
    config: dict[str, Any] = field(default_factory=dict)
    metadata: dict[str, Any] = field(default_factory=dict)
    kind: str = "synthetic_default"

    def to_dict(self) -> dict:
        return asdict(self)


Persona = Union[PersistedPersona, SyntheticDefaultPersona]

DEFAULT_PERSONA_TEMPLATES: tuple[SyntheticDefaultPersona, ...] = (
    SyntheticDefaultPersona(
        persona_id="sales",
        name="Sales Assistant",
        description="Handles prospect outreach and provides product context for sales conversations.",
        type="sales",
        config={"category": "sales"},
        metadata={"role": "sales"},
    ),
    SyntheticDefaultPersona(
        persona_id="support",
        name="Support Specialist",
        description="Guides customers through troubleshooting steps and support workflows.",
        type="support",
        config={"category": "support"},
        metadata={"role": "support"},
    ),
    SyntheticDefaultPersona(
        persona_id="interview",
        name="Interview Coach",
        description="Prepares candidates with behavioral and role-specific interview practice.",
        type="interview",
        config={"category": "interview"},
        metadata={"role": "interview"},
    ),
)


class PersonaRegistry:
    def __init__(self, store: KeyValueStore, defaults: tuple[SyntheticDefaultPersona, ...] = DEFAULT_PERSONA_TEMPLATES):
        self.store = store
        self.defaults = defaults
        self._lock = threading.Lock()

    def _persisted(self, tenant_id: str) -> list[PersistedPersona]:
        raw = self.store.get(f"{PERSONAS_KEY_PREFIX}{tenant_id}")
        if not raw:
            return []
        return [PersistedPersona(**item) for item in json.loads(raw)]

    def list_personas(self, tenant_id: str) -> list[Persona]:
        persisted = self._persisted(tenant_id)
        persisted_ids = {persona.persona_id for persona in persisted}
        synthetic = [template for template in self.defaults if template.persona_id not in persisted_ids]
        return [*persisted, *synthetic]

    def get(self, tenant_id: str, persona_id: str) -> Persona | None:
        for persona in self.list_personas(tenant_id):
            if persona.persona_id == persona_id:
                return persona
        return None

    def create(
        self,
        tenant_id: str,
        persona_id: str,
        name: str,
        description: str = "",
        persona_type: str | None = None,
        config: dict[str, Any] | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> PersistedPersona:
        normalized_id = sanitize_identifier(persona_id)
        if not normalized_id:
            raise ValueError("Persona id must contain at least one letter or digit.")

        with self._lock:
            persisted = self._persisted(tenant_id)
            if any(persona.persona_id == normalized_id for persona in persisted):
                raise DuplicatePersona(tenant_id, normalized_id)

            persona = PersistedPersona(
                persona_id=normalized_id,
                name=name.strip() or normalized_id,
                description=description,
                type=persona_type or normalized_id,
                created_at=datetime.now(timezone.utc).isoformat(),
                config=dict(config or {}),
                metadata=dict(metadata or {}),
            )
            persisted.append(persona)
            self.store.set(
                f"{PERSONAS_KEY_PREFIX}{tenant_id}",
                json.dumps([item.to_dict() for item in persisted]),
            )
        logger.info("Created persona %s for tenant %s", normalized_id, tenant_id)
        return persona

    def delete(self, tenant_id: str, persona_id: str) -> PersistedPersona:
        """Remove a stored persona; a customized default falls back to its placeholder."""

        normalized_id = sanitize_identifier(persona_id)
        with self._lock:
            persisted = self._persisted(tenant_id)
            removed = next((persona for persona in persisted if persona.persona_id == normalized_id), None)
            if removed is None:
                raise UnknownPersona(tenant_id, normalized_id or persona_id)
            remaining = [persona for persona in persisted if persona is not removed]
            key = f"{PERSONAS_KEY_PREFIX}{tenant_id}"
            if remaining:
                self.store.set(key, json.dumps([item.to_dict() for item in remaining]))
            else:
                self.store.delete(key)
        logger.info("Deleted persona %s for tenant %s", normalized_id, tenant_id)
        return removed


@dataclass(frozen=True)
class PersonaSelectionChanged:
    tenant_id: str
    persona_id: str
    previous_persona_id: str | None


class PersonaEventBus:
    """Observer registry owned by whoever publishes persona selection changes."""

    def __init__(self) -> None:
        self._listeners: dict[int, Callable[[PersonaSelectionChanged], None]] = {}
        self._next_token = 0
        self._lock = threading.Lock()

    def subscribe(self, listener: Callable[[PersonaSelectionChanged], None]) -> Callable[[], None]:
        with self._lock:
            token = self._next_token
            self._next_token += 1
            self._listeners[token] = listener

        def unsubscribe() -> None:
            with self._lock:
                self._listeners.pop(token, None)

        return unsubscribe

    @property
    def listener_count(self) -> int:
        return len(self._listeners)

    def publish(self, event: PersonaSelectionChanged) -> None:
        with self._lock:
            listeners = list(self._listeners.values())
        for listener in listeners:
            try:
                listener(event)
            except Exception:  # noqa: BLE001
                logger.exception("Persona selection listener failed")


class PersonaSelection:
    def __init__(self, store: KeyValueStore, registry: PersonaRegistry, events: PersonaEventBus | None = None):
        self.store = store
        self.registry = registry
        self.events = events or PersonaEventBus()

    def _key(self, tenant_id: str) -> str:
        return f"{SELECTION_KEY_PREFIX}{tenant_id}"

    def selected(self, tenant_id: str) -> Persona | None:
        personas = self.registry.list_personas(tenant_id)
        stored_id = self.store.get(self._key(tenant_id))
        for persona in personas:
            if persona.persona_id == stored_id:
                return persona
        return personas[0] if personas else None

    def select(self, tenant_id: str, persona_id: str) -> Persona:
        normalized_id = sanitize_identifier(persona_id)
        persona = self.registry.get(tenant_id, normalized_id)
        if persona is None:
            raise UnknownPersona(tenant_id, normalized_id or persona_id)

        previous = self.store.get(self._key(tenant_id))
        self.store.set(self._key(tenant_id), persona.persona_id)
        if previous != persona.persona_id:
            self.events.publish(PersonaSelectionChanged(tenant_id, persona.persona_id, previous))
        return persona

    def clear(self, tenant_id: str) -> None:
        self.store.delete(self._key(tenant_id))
