from __future__ import annotations

import re
from dataclasses import dataclass
from functools import lru_cache
from typing import Mapping

from docguard.errors import TenantIsolationViolation

DEFAULT_TENANT_ID = "default"
DEFAULT_PERSONA_ID = "default"
MAX_IDENTIFIER_LENGTH = 40

TENANT_HEADERS = ("x-tenant-id", "x-tenant")
TENANT_QUERY_KEYS = ("tenantId", "tenant")
PERSONA_HEADERS = ("x-persona-id", "x-persona")
PERSONA_QUERY_KEYS = ("persona", "personaId")


@dataclass(frozen=True)
class Scope:
    tenant_id: str
    persona_id: str

    @property
    def prefix(self) -> str:
        return f"{self.tenant_id}/{self.persona_id}"

    def owns(self, storage_ref: str) -> bool:
        return storage_ref.startswith(f"{self.prefix}/")

    def to_dict(self) -> dict:
        return {"tenant_id": self.tenant_id, "persona_id": self.persona_id}


@lru_cache(maxsize=1024)
def sanitize_identifier(value: str | None) -> str:
    """Normalize a tenant or persona identifier into a path-safe slug (may return "")."""

    normalized = (value or "").strip().lower()
    normalized = re.sub(r"[^a-z0-9_-]+", "-", normalized)
    normalized = re.sub(r"-+", "-", normalized).strip("-")
    return normalized[:MAX_IDENTIFIER_LENGTH]


def _first_value(source: Mapping[str, str] | None, keys: tuple[str, ...]) -> str | None:
    if not source:
        return None
    for key in keys:
        value = source.get(key)
        if isinstance(value, str) and value.strip():
            return value
    return None


def resolve_tenant_id(
    headers: Mapping[str, str] | None = None,
    query: Mapping[str, str] | None = None,
) -> str:
    raw = _first_value(headers, TENANT_HEADERS) or _first_value(query, TENANT_QUERY_KEYS)
    return sanitize_identifier(raw) or DEFAULT_TENANT_ID


def resolve_persona_id(
    headers: Mapping[str, str] | None = None,
    query: Mapping[str, str] | None = None,
    body_persona: str | None = None,
) -> str:
    raw = (
        _first_value(headers, PERSONA_HEADERS)
        or _first_value(query, PERSONA_QUERY_KEYS)
        or (body_persona if isinstance(body_persona, str) and body_persona.strip() else None)
    )
    return sanitize_identifier(raw) or DEFAULT_PERSONA_ID


def resolve_scope(
    headers: Mapping[str, str] | None = None,
    query: Mapping[str, str] | None = None,
    body_persona: str | None = None,
) -> Scope:
    return Scope(
        tenant_id=resolve_tenant_id(headers, query),
        persona_id=resolve_persona_id(headers, query, body_persona),
    )


def assert_within_scope(scope: Scope, storage_ref: str) -> None:
    if not scope.owns(storage_ref):
        raise TenantIsolationViolation(
            f"Storage reference '{storage_ref}' is outside scope '{scope.prefix}'."
        )
