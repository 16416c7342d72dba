from __future__ import annotations

import json
import logging
import threading
from dataclasses import replace
from pathlib import Path
from typing import Callable

from docguard.models import FileRecord
from docguard.storage import atomic_write_json
from docguard.tenant_context import Scope, assert_within_scope

logger = logging.getLogger(__name__)


class ManifestStore:
    """Per-(tenant, persona) ordered file registry.

    Writers within one scope are serialized by a per-scope lock. Each write
    publishes a fresh tuple, so readers always get a consistent snapshot
    without taking the lock. Scopes never share state.
    """

    def __init__(self, persist_dir: Path | None = None):
        self.persist_dir = Path(persist_dir) if persist_dir is not None else None
        self._manifests: dict[Scope, tuple[FileRecord, ...]] = {}
        self._locks: dict[Scope, threading.Lock] = {}
        self._registry_lock = threading.Lock()

    def _lock_for(self, scope: Scope) -> threading.Lock:
        with self._registry_lock:
            lock = self._locks.get(scope)
            if lock is None:
                lock = threading.Lock()
                self._locks[scope] = lock
            return lock

    def _manifest_path(self, scope: Scope) -> Path | None:
        if self.persist_dir is None:
            return None
        return self.persist_dir / scope.tenant_id / f"{scope.persona_id}.json"

    def _load(self, scope: Scope) -> tuple[FileRecord, ...]:
        current = self._manifests.get(scope)
        if current is not None:
            return current

        loaded: tuple[FileRecord, ...] = ()
        path = self._manifest_path(scope)
        if path is not None and path.exists():
            payload = json.loads(path.read_text(encoding="utf-8"))
            records = tuple(FileRecord.from_dict(item) for item in payload.get("files") or [])
            for record in records:
                assert_within_scope(scope, record.storage_ref)
            loaded = records
        self._manifests[scope] = loaded
        return loaded

    def _publish(self, scope: Scope, files: tuple[FileRecord, ...]) -> None:
        path = self._manifest_path(scope)
        if path is not None:
            atomic_write_json(
                path,
                {
                    "tenant_id": scope.tenant_id,
                    "persona_id": scope.persona_id,
                    "files": [record.to_dict() for record in files],
                },
            )
        self._manifests[scope] = files

    def upsert(
        self, scope: Scope, record: FileRecord, write: Callable[[], None] | None = None
    ) -> FileRecord:
        """Insert a file, or replace the entry with the same storage reference in place.

        ``write`` runs under the scope lock right before the entry is
        published, so the stored bytes and the manifest entry for a
        reference always come from the same upload.
        """

        assert_within_scope(scope, record.storage_ref)
        with self._lock_for(scope):
            if write is not None:
                write()
            files = list(self._load(scope))
            for index, existing in enumerate(files):
                if existing.storage_ref == record.storage_ref:
                    record = replace(record, uploaded_at=existing.uploaded_at)
                    files[index] = record
                    logger.debug("Manifest %s: replaced %s", scope.prefix, record.storage_ref)
                    break
            else:
                files.append(record)
                logger.debug("Manifest %s: inserted %s", scope.prefix, record.storage_ref)
            self._publish(scope, tuple(files))
        return record

    def remove(self, scope: Scope, storage_ref: str) -> FileRecord | None:
        assert_within_scope(scope, storage_ref)
        with self._lock_for(scope):
            files = self._load(scope)
            remaining = tuple(record for record in files if record.storage_ref != storage_ref)
            if len(remaining) == len(files):
                return None
            removed = next(record for record in files if record.storage_ref == storage_ref)
            self._publish(scope, remaining)
        logger.debug("Manifest %s: removed %s", scope.prefix, storage_ref)
        return removed

    def find_by_name(self, scope: Scope, name: str) -> FileRecord | None:
        for record in self.snapshot(scope):
            if record.original_name == name or record.storage_ref == name:
                return record
        return None

    def remove_by_name(self, scope: Scope, name: str) -> FileRecord | None:
        record = self.find_by_name(scope, name)
        if record is None:
            return None
        return self.remove(scope, record.storage_ref)

    def clear(self, scope: Scope) -> int:
        with self._lock_for(scope):
            removed = len(self._load(scope))
            self._publish(scope, ())
        logger.debug("Manifest %s: cleared %d files", scope.prefix, removed)
        return removed

    def snapshot(self, scope: Scope) -> tuple[FileRecord, ...]:
        current = self._manifests.get(scope)
        if current is not None:
            return current
        with self._lock_for(scope):
            return self._load(scope)

    def list_files(self, scope: Scope) -> list[FileRecord]:
        return list(self.snapshot(scope))

    def file_count(self, scope: Scope) -> int:
        # Count only; does not hand out file contents.
        current = self._manifests.get(scope)
        if current is None:
            with self._lock_for(scope):
                current = self._load(scope)
        return len(current)
