from __future__ import annotations

import hashlib
import json
import logging
import re
import tempfile
from pathlib import Path

from docguard.tenant_context import Scope, assert_within_scope

logger = logging.getLogger(__name__)


def atomic_write_json(path: Path, payload: dict | list) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with tempfile.NamedTemporaryFile(
        mode="w",
        encoding="utf-8",
        dir=path.parent,
        prefix=f".{path.name}.",
        suffix=".tmp",
        delete=False,
    ) as handle:
        json.dump(payload, handle, indent=2)
        handle.flush()
        temp_path = Path(handle.name)
    temp_path.replace(path)


def sanitize_filename(filename: str) -> str:
    """Keep the extension, slugify the stem."""

    name = Path(filename or "").name
    stem, dot, suffix = name.rpartition(".")
    if not dot:
        stem, suffix = name, ""
    safe_stem = re.sub(r"[^a-zA-Z0-9_-]+", "_", stem).strip("_")[:50] or "upload"
    safe_suffix = re.sub(r"[^a-zA-Z0-9]+", "", suffix).lower()[:10]
    return f"{safe_stem}.{safe_suffix}" if safe_suffix else safe_stem


def storage_name_for(filename: str) -> str:
    """Safe on-disk name that stays distinct for distinct upload names.

    Names that are already safe are kept as is. Anything sanitizing had to
    change gets a short digest of the original name before the extension,
    so "Q1 report.csv" and "Q1_report.csv" never share a file.
    """

    safe = sanitize_filename(filename)
    if safe == filename:
        return safe
    digest = hashlib.sha256((filename or "").encode("utf-8")).hexdigest()[:8]
    stem, dot, suffix = safe.rpartition(".")
    if not dot:
        return f"{safe}-{digest}"
    return f"{stem}-{digest}.{suffix}"


class UploadStorage:
    """Raw upload bytes, laid out as `<root>/<tenant>/<persona>/<safe-name>`."""

    def __init__(self, root: Path):
        self.root = Path(root)

    def storage_ref_for(self, scope: Scope, filename: str) -> str:
        return f"{scope.prefix}/{storage_name_for(filename)}"

    def _path_for(self, scope: Scope, storage_ref: str) -> Path:
        assert_within_scope(scope, storage_ref)
        return self.root / storage_ref

    def write(self, scope: Scope, storage_ref: str, content: bytes) -> None:
        path = self._path_for(scope, storage_ref)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(content)
        logger.debug("Stored %d bytes at %s", len(content), storage_ref)

    def read(self, scope: Scope, storage_ref: str) -> bytes:
        return self._path_for(scope, storage_ref).read_bytes()

    def delete(self, scope: Scope, storage_ref: str) -> bool:
        path = self._path_for(scope, storage_ref)
        if not path.exists():
            return False
        path.unlink()
        return True

    def clear(self, scope: Scope) -> int:
        directory = self.root / scope.tenant_id / scope.persona_id
        if not directory.is_dir():
            return 0
        removed = 0
        for path in directory.iterdir():
            if path.is_file():
                path.unlink()
                removed += 1
        return removed
