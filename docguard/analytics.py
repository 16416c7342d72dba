from __future__ import annotations

import json
import logging
import threading
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any
from uuid import uuid4

logger = logging.getLogger(__name__)

DEFAULT_LIST_LIMIT = 500


@dataclass(frozen=True)
class UsageRecord:
    record_id: str
    tenant_id: str
    persona_id: str
    ai_type: str
    usage_date: str
    session_duration: float
    success: bool
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return asdict(self)


class AnalyticsStore:
    """Append-only usage log, one JSON object per line."""

    def __init__(self, path: Path | None = None):
        self.path = Path(path) if path is not None else None
        self._records: list[UsageRecord] | None = None if self.path is not None else []
        self._lock = threading.Lock()

    def _load(self) -> list[UsageRecord]:
        if self._records is None:
            records: list[UsageRecord] = []
            if self.path is not None and self.path.exists():
                for line in self.path.read_text(encoding="utf-8").splitlines():
                    if line.strip():
                        records.append(UsageRecord(**json.loads(line)))
            self._records = records
        return self._records

    def record(
        self,
        tenant_id: str,
        persona_id: str,
        ai_type: str,
        session_duration: float = 0.0,
        success: bool = True,
        usage_date: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> UsageRecord:
        if not (ai_type or "").strip():
            raise ValueError("ai_type is required.")

        entry = UsageRecord(
            record_id=uuid4().hex,
            tenant_id=tenant_id,
            persona_id=persona_id,
            ai_type=ai_type.strip(),
            usage_date=usage_date or datetime.now(timezone.utc).isoformat(),
            session_duration=max(0.0, float(session_duration)),
            success=bool(success),
            metadata=dict(metadata or {}),
        )
        with self._lock:
            records = self._load()
            if self.path is not None:
                self.path.parent.mkdir(parents=True, exist_ok=True)
                with self.path.open("a", encoding="utf-8") as handle:
                    handle.write(json.dumps(entry.to_dict()) + "\n")
            records.append(entry)
        logger.debug("Analytics event %s recorded for %s/%s", entry.ai_type, tenant_id, persona_id)
        return entry

    def list_records(
        self,
        tenant_id: str,
        ai_type: str | None = None,
        persona_id: str | None = None,
        limit: int | None = DEFAULT_LIST_LIMIT,
    ) -> list[UsageRecord]:
        with self._lock:
            records = list(self._load())

        matching = [
            record
            for record in reversed(records)
            if record.tenant_id == tenant_id
            and (ai_type is None or record.ai_type == ai_type)
            and (persona_id is None or record.persona_id == persona_id)
        ]
        matching.sort(key=lambda record: record.usage_date, reverse=True)
        return matching if limit is None else matching[: max(0, limit)]

    def summary(self, tenant_id: str, persona_id: str | None = None) -> dict[str, Any]:
        """Per-type counts, success rate and average session duration for one tenant."""

        records = self.list_records(tenant_id, persona_id=persona_id, limit=None)
        by_type: dict[str, dict[str, Any]] = {}
        for record in records:
            bucket = by_type.setdefault(record.ai_type, {"count": 0, "successes": 0, "total_duration": 0.0})
            bucket["count"] += 1
            bucket["successes"] += int(record.success)
            bucket["total_duration"] += record.session_duration

        return {
            "total_events": len(records),
            "success_rate": _ratio(sum(int(record.success) for record in records), len(records)),
            "average_duration": _ratio(sum(record.session_duration for record in records), len(records)),
            "last_event_at": records[0].usage_date if records else None,
            "by_type": {
                ai_type: {
                    "count": bucket["count"],
                    "success_rate": _ratio(bucket["successes"], bucket["count"]),
                    "average_duration": _ratio(bucket["total_duration"], bucket["count"]),
                }
                for ai_type, bucket in sorted(by_type.items())
            },
        }


def _ratio(numerator: float, denominator: int) -> float:
    return round(numerator / denominator, 4) if denominator else 0.0
