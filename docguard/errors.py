from __future__ import annotations


class DocGuardError(Exception):
    """Base class for domain errors raised by the ingestion and chat pipeline."""

    @property
    def error_type(self) -> str:
        return type(self).__name__

    def to_dict(self) -> dict:
        return {"type": self.error_type, "message": str(self)}


class UnsupportedFormat(DocGuardError):
    def __init__(self, filename: str, content_type: str | None = None):
        self.filename = filename
        self.content_type = content_type
        super().__init__(
            f"Unsupported file type for '{filename}' "
            f"(content type: {content_type or 'unknown'})."
        )


class ParseError(DocGuardError):
    def __init__(self, filename: str, detail: str):
        self.filename = filename
        self.detail = detail
        super().__init__(f"Failed to parse '{filename}': {detail}")


class VisionExtractionError(DocGuardError):
    pass


class EmptyVisionResponse(VisionExtractionError):
    def __init__(self, filename: str, warnings: list[str] | None = None):
        self.filename = filename
        self.warnings = list(warnings or [])
        super().__init__(f"Vision response for '{filename}' did not include text content.")


class InvalidVisionJSON(VisionExtractionError):
    def __init__(self, filename: str, parse_error: str, raw_text: str | None = None):
        self.filename = filename
        self.parse_error = parse_error
        self.raw_text = raw_text
        super().__init__(f"Vision response for '{filename}' was not valid JSON: {parse_error}")


class VisionRequestFailed(VisionExtractionError):
    def __init__(self, filename: str, warnings: list[str] | None = None):
        self.filename = filename
        self.warnings = list(warnings or [])
        detail = "; ".join(self.warnings) or "request failed before receiving a response"
        super().__init__(f"Vision request for '{filename}' failed: {detail}")


class VisionUnavailable(VisionExtractionError):
    def __init__(self, reason: str = "Vision extraction is not configured."):
        super().__init__(reason)


class TenantIsolationViolation(DocGuardError):
    pass


class DuplicatePersona(DocGuardError):
    def __init__(self, tenant_id: str, persona_id: str):
        self.tenant_id = tenant_id
        self.persona_id = persona_id
        super().__init__(f"Persona '{persona_id}' already exists for tenant '{tenant_id}'.")


class UnknownPersona(DocGuardError):
    def __init__(self, tenant_id: str, persona_id: str):
        self.tenant_id = tenant_id
        self.persona_id = persona_id
        super().__init__(f"Persona '{persona_id}' does not exist for tenant '{tenant_id}'.")
