"""In-process defaults for the services' external collaborators.

Persistence, auth and the food database live outside this project. These keep the
HTTP flows complete and testable; replace ``presence_service.STATE`` and
``meal_service.FOOD_LOOKUP`` to plug in real backends.
"""

from __future__ import annotations

import logging
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Deque, Dict, List, Optional, Sequence
from uuid import uuid4

from gymcheck.shared.contract import ClassificationResult, DecisionResult, GeofenceResult

LOGGER = logging.getLogger(__name__)


class RateLimiter:
    """Sliding-window limiter: at most ``limit`` hits per ``window_s`` per key."""

    def __init__(
        self,
        limit: int = 10,
        window_s: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.limit = limit
        self.window_s = window_s
        self._clock = clock
        self._hits: Dict[str, Deque[float]] = {}
        self._lock = threading.Lock()

    def allow(self, key: str) -> bool:
        now = self._clock()
        with self._lock:
            self._evict(now)
            hits = self._hits.setdefault(key, deque())
            if len(hits) >= self.limit:
                return False
            hits.append(now)
            return True

    def _evict(self, now: float) -> None:
        for key in list(self._hits):
            hits = self._hits[key]
            while hits and now - hits[0] >= self.window_s:
                hits.popleft()
            if not hits:
                del self._hits[key]

    def tracked_keys(self) -> int:
        with self._lock:
            return len(self._hits)


class AttemptCounter:
    """Failed check-in attempts per (user, day). Cleared on success."""

    def __init__(self) -> None:
        self._counts: Dict[str, int] = {}
        self._lock = threading.Lock()

    @staticmethod
    def _key(user_id: str, date_key: str) -> str:
        return f"{user_id}_{date_key}"

    def get(self, user_id: str, date_key: str) -> int:
        with self._lock:
            return self._counts.get(self._key(user_id, date_key), 0)

    def increment(self, user_id: str, date_key: str) -> int:
        key = self._key(user_id, date_key)
        with self._lock:
            self._counts[key] = self._counts.get(key, 0) + 1
            return self._counts[key]

    def clear(self, user_id: str, date_key: str) -> None:
        with self._lock:
            self._counts.pop(self._key(user_id, date_key), None)


class InMemoryAuditSink:
    """Keeps the most recent ``max_records`` payloads; older ones only reach the log."""

    def __init__(self, max_records: int = 1000) -> None:
        self.records: Deque[Dict[str, Any]] = deque(maxlen=max_records)

    def record(self, payload: Dict[str, Any]) -> None:
        self.records.append(payload)
        LOGGER.info(
            "[audit] user=%s verified=%s confidence=%.2f model=%s trust=%s",
            payload.get("user_id"),
            payload.get("verified"),
            float(payload.get("confidence") or 0.0),
            payload.get("classification_model"),
            payload.get("trust_level"),
        )


@dataclass
class CheckinRecord:
    checkin_id: str
    user_id: str
    date_key: str
    verified_at: str
    method: str = "photo"
    session_id: Optional[str] = None
    device_info: Optional[str] = None
    ai_score: Optional[float] = None
    gps_distance: Optional[float] = None
    relaxed: bool = False
    extra: Dict[str, Any] = field(default_factory=dict)


class InMemoryCheckinStore:
    """One check-in per (user, day); a later success overwrites the earlier one."""

    def __init__(self) -> None:
        self._rows: Dict[str, CheckinRecord] = {}

    def upsert(self, user_id: str, date_key: str, **fields: Any) -> CheckinRecord:
        key = f"{user_id}_{date_key}"
        existing = self._rows.get(key)
        record = CheckinRecord(
            checkin_id=existing.checkin_id if existing else str(uuid4()),
            user_id=user_id,
            date_key=date_key,
            verified_at=utc_now_iso(),
            **fields,
        )
        self._rows[key] = record
        return record

    def find(self, user_id: str, date_key: str) -> Optional[CheckinRecord]:
        return self._rows.get(f"{user_id}_{date_key}")


class StaticFoodLookup:
    """Case-insensitive substring search over a fixed food list."""

    def __init__(self, foods: Optional[Sequence[Dict[str, Any]]] = None) -> None:
        self.foods = list(foods or [])

    def search(self, label: str, limit: int = 3) -> List[Dict[str, Any]]:
        needle = str(label or "").strip().lower()
        if not needle:
            return []
        hits = [
            f for f in self.foods
            if needle in str(f.get("name", "")).lower() or str(f.get("name", "")).lower() in needle
        ]
        return [
            {
                "food_id": str(f.get("food_id", "")),
                "name": str(f.get("name", "")),
                "macros_per_100g": f.get("macros_per_100g"),
            }
            for f in hits[:limit]
        ]


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def build_audit_record(
    *,
    user_id: str,
    classification: ClassificationResult,
    geofence: GeofenceResult,
    decision: DecisionResult,
    reason: str,
    provenance: str,
    server_timestamp: str,
    client_timestamp: Optional[str] = None,
    latitude: Optional[float] = None,
    longitude: Optional[float] = None,
    accuracy: Optional[float] = None,
) -> Dict[str, Any]:
    """Flat audit payload; producible from any terminal state of the pipeline."""

    confidence = float(classification.get("confidence", 0.0) or 0.0)
    return {
        "user_id": user_id,
        "verified": bool(decision["verified"]),
        "confidence": confidence,
        "top_prediction": classification.get("top_prediction", "unknown"),
        "reason": reason,
        "checks": {
            "ai_scene": confidence > 0,
            "gps_provided": geofence["gps_provided"],
            "geofence_match": geofence["geofence_match"],
            "nearest_distance_meters": geofence["nearest_distance_meters"],
            "upload_source": provenance,
        },
        "classification_model": classification.get("model", "none"),
        "top_predictions": list(classification.get("ranked", [])),
        "thresholds": dict(decision["thresholds"]),
        "upload_source": provenance,
        "trust_level": decision["trust_level"],
        "manual_review_flag": bool(decision["manual_review_flag"]),
        "server_timestamp": server_timestamp,
        "client_timestamp": client_timestamp,
        "latitude": latitude,
        "longitude": longitude,
        "accuracy": accuracy,
    }
