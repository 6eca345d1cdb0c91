"""Gym presence verification and gym check-in endpoints.

Routes:
  POST /api/verification/gym-presence   photo + optional GPS -> verdict (always 200)
  POST /api/checkin/gym/start           photo check-in gate before a workout
  GET  /api/checkin/gym/status          whether the user checked in for a day

Run (from repo root):
  uvicorn gymcheck.services.presence_service:app --host 0.0.0.0 --port 8000

Quick curl:
  curl -X POST http://127.0.0.1:8000/api/verification/gym-presence \
    -H "X-User-Id: u1" -F "image=@gym.jpg" -F "upload_source=camera"
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime
from functools import lru_cache
from typing import Any, Dict, Optional, Tuple
from uuid import uuid4

from fastapi import APIRouter, FastAPI, File, Form, Header, UploadFile
from fastapi.responses import JSONResponse

from gymcheck.classifiers.cascade import ClassifierCascade, build_cascade
from gymcheck.services.collaborators import (
    AttemptCounter,
    InMemoryAuditSink,
    InMemoryCheckinStore,
    RateLimiter,
    build_audit_record,
    utc_now_iso,
)
from gymcheck.services.envelope import DATE_KEY_RE
from gymcheck.services.envelope import error_response as _error
from gymcheck.shared.contract import (
    REASON_AI_UNAVAILABLE,
    ClassificationResult,
    GeofenceResult,
    message_for,
    tips_for,
)
from gymcheck.shared.decision import decide_verification
from gymcheck.shared.geofence import GymLocation, check_geofence, geofence_from_distance, load_locations
from gymcheck.shared.preprocess import Rejection, prepare_gym_image
from gymcheck.shared.settings import get_settings

LOGGER = logging.getLogger(__name__)

# Preconditioner codes that mean the request itself is malformed (HTTP 400).
REQUEST_SHAPE_CODES = {"unsupported_format", "invalid_file", "too_large"}

router = APIRouter()


@dataclass
class ServiceState:
    rate_limiter: RateLimiter = field(default_factory=lambda: RateLimiter(get_settings().rate_limit_per_minute))
    attempts: AttemptCounter = field(default_factory=AttemptCounter)
    audit: InMemoryAuditSink = field(default_factory=InMemoryAuditSink)
    checkins: InMemoryCheckinStore = field(default_factory=InMemoryCheckinStore)


STATE = ServiceState()


def get_profile_cascade() -> ClassifierCascade:
    return build_cascade(get_settings(), include_remote=False)


def get_checkin_cascade() -> ClassifierCascade:
    return build_cascade(get_settings(), include_remote=True)


@lru_cache(maxsize=4)
def _locations(raw: str) -> Tuple[GymLocation, ...]:
    return tuple(load_locations(raw))


def _parse_float(
    name: str,
    raw: Optional[str],
    low: Optional[float] = None,
    high: Optional[float] = None,
) -> Tuple[Optional[float], Optional[str]]:
    """Returns (value, error_message)."""

    if raw is None or str(raw).strip() == "":
        return None, None
    try:
        value = float(raw)
    except ValueError:
        return None, f"{name} must be a number"
    if value != value:
        return None, f"{name} must be a number"
    if (low is not None and value < low) or (high is not None and value > high):
        if high is None:
            return None, f"{name} must be >= {low:g}"
        return None, f"{name} must be between {low:g} and {high:g}"
    return value, None


def _parse_iso8601(raw: Optional[str]) -> bool:
    if not raw:
        return True
    try:
        datetime.fromisoformat(raw.strip().replace("Z", "+00:00"))
    except ValueError:
        return False
    return True


def _declared_mime(upload: UploadFile) -> Optional[str]:
    ctype = (upload.content_type or "").split(";")[0].strip().lower()
    return ctype if ctype.startswith("image/") else None


async def _read_upload(upload: UploadFile, max_bytes: int) -> bytes:
    # One byte past the ceiling is enough for the preconditioner to say too_large.
    return await upload.read(max_bytes + 1)


def _presence_checks(classification: ClassificationResult, geofence: GeofenceResult, provenance: str) -> Dict[str, Any]:
    return {
        "ai_scene": float(classification.get("confidence", 0.0) or 0.0) > 0,
        "gps_provided": geofence["gps_provided"],
        "geofence_match": geofence["geofence_match"],
        "nearest_distance_meters": geofence["nearest_distance_meters"],
        "upload_source": provenance,
    }


@router.post("/api/verification/gym-presence")
async def verify_gym_presence(
    image: Optional[UploadFile] = File(default=None),
    latitude: Optional[str] = Form(default=None),
    longitude: Optional[str] = Form(default=None),
    accuracy: Optional[str] = Form(default=None),
    timestamp: Optional[str] = Form(default=None),
    upload_source: Optional[str] = Form(default=None),
    x_user_id: Optional[str] = Header(default=None),
) -> JSONResponse:
    settings = get_settings()
    request_id = str(uuid4())
    try:
        user_id = (x_user_id or "").strip()
        if not user_id:
            return _error("unauthorized", "Authentication required.", status_code=401)

        lat, err = _parse_float("latitude", latitude, -90.0, 90.0)
        lon, err2 = _parse_float("longitude", longitude, -180.0, 180.0)
        acc, err3 = _parse_float("accuracy", accuracy, 0.0)
        field_error = err or err2 or err3
        if field_error is None and not _parse_iso8601(timestamp):
            field_error = "timestamp must be ISO8601"
        if field_error is None and upload_source and upload_source not in ("camera", "gallery"):
            field_error = "upload_source must be camera or gallery"
        if field_error is not None:
            return _error("invalid_input", field_error, status_code=400)
        if image is None:
            return _error("invalid_input", "Image is required.", status_code=400)

        if not STATE.rate_limiter.allow(user_id):
            LOGGER.info("[gym-presence] rate limited user=%s", user_id)
            return _error(
                "rate_limited",
                "Too many verification attempts. Try again in a minute.",
                status_code=429,
            )

        provenance = upload_source if upload_source in ("camera", "gallery") else "unknown"
        data = await _read_upload(image, settings.max_upload_bytes)
        prepared = prepare_gym_image(data, _declared_mime(image), max_bytes=settings.max_upload_bytes)
        if isinstance(prepared, Rejection) and prepared.code in REQUEST_SHAPE_CODES:
            return _error(prepared.code, prepared.message, status_code=400)

        geofence = check_geofence(
            lat, lon, _locations(settings.locations_json), settings.geofence_radius_m
        )
        server_timestamp = utc_now_iso()

        if isinstance(prepared, Rejection):
            return JSONResponse(
                status_code=200,
                content={
                    "status": "success",
                    "request_id": request_id,
                    "verified": False,
                    "confidence": 0.0,
                    "top_prediction": "unknown",
                    "reason": prepared.message,
                    "manual_review_flag": False,
                    "trust_level": "low",
                    "top_predictions": [],
                    "model": "none",
                    "thresholds": {"threshold": settings.threshold, "margin": settings.margin},
                    "checks": _presence_checks({"confidence": 0.0}, geofence, provenance),
                    "server_timestamp": server_timestamp,
                    "rejection": prepared.as_dict(),
                },
            )

        classification = await get_profile_cascade().classify(prepared)
        decision = decide_verification(classification, geofence, provenance, settings.thresholds())
        reason = REASON_AI_UNAVAILABLE if classification.get("model") == "none" else decision["reason"]

        STATE.audit.record(
            build_audit_record(
                user_id=user_id,
                classification=classification,
                geofence=geofence,
                decision=decision,
                reason=reason,
                provenance=provenance,
                server_timestamp=server_timestamp,
                client_timestamp=timestamp,
                latitude=lat,
                longitude=lon,
                accuracy=acc,
            )
        )
        LOGGER.info(
            "[gym-presence] user=%s verified=%s label=%s confidence=%.2f trust=%s",
            user_id,
            decision["verified"],
            classification.get("top_prediction"),
            float(classification.get("confidence", 0.0) or 0.0),
            decision["trust_level"],
        )

        return JSONResponse(
            status_code=200,
            content={
                "status": "success",
                "request_id": request_id,
                "verified": decision["verified"],
                "confidence": classification.get("confidence", 0.0),
                "top_prediction": classification.get("top_prediction", "unknown"),
                "reason": reason,
                "manual_review_flag": decision["manual_review_flag"],
                "trust_level": decision["trust_level"],
                "top_predictions": classification.get("ranked", []),
                "model": classification.get("model", "none"),
                "thresholds": decision["thresholds"],
                "checks": _presence_checks(classification, geofence, provenance),
                "server_timestamp": server_timestamp,
            },
        )
    finally:
        if image is not None:
            await image.close()


def _checkin_rejection(
    code: str,
    message: str,
    attempt_count: int,
    *,
    status_code: int = 400,
    score: Optional[float] = None,
) -> JSONResponse:
    data: Dict[str, Any] = {
        "verified": False,
        "reason": code,
        "tips": tips_for(code),
        "attempt_count": attempt_count,
    }
    if status_code == 400:
        data["next_allowed_method"] = "photo" if attempt_count >= 2 else None
    if score is not None:
        data["score"] = score
    return _error(code, message, status_code=status_code, data=data)


@router.post("/api/checkin/gym/start")
async def checkin_gym_start(
    photo: Optional[UploadFile] = File(default=None),
    date_key: Optional[str] = Form(default=None),
    session_id: Optional[str] = Form(default=None),
    captured_at: Optional[str] = Form(default=None),
    device_info: Optional[str] = Form(default=None),
    gps_distance_meters: Optional[str] = Form(default=None),
    latitude: Optional[str] = Form(default=None),
    longitude: Optional[str] = Form(default=None),
    x_user_id: Optional[str] = Header(default=None),
) -> JSONResponse:
    settings = get_settings()
    try:
        user_id = (x_user_id or "").strip()
        if not user_id:
            return _error("unauthorized", "Authentication required.", status_code=401)
        if date_key and not DATE_KEY_RE.match(date_key):
            return _error("invalid_input", "date_key must be YYYY-MM-DD", status_code=400)
        if not _parse_iso8601(captured_at):
            return _error("invalid_input", "captured_at must be ISO8601", status_code=400)
        distance, err = _parse_float("gps_distance_meters", gps_distance_meters, 0.0)
        lat, err2 = _parse_float("latitude", latitude, -90.0, 90.0)
        lon, err3 = _parse_float("longitude", longitude, -180.0, 180.0)
        if err or err2 or err3:
            return _error("invalid_input", err or err2 or err3, status_code=400)
        if photo is None:
            return _error("invalid_input", "Photo required for verification.", status_code=400)

        day = date_key or date.today().isoformat()
        attempt_count = STATE.attempts.get(user_id, day)
        relaxed = attempt_count >= settings.relaxed_after_attempts

        data = await _read_upload(photo, settings.max_upload_bytes)
        prepared = prepare_gym_image(data, _declared_mime(photo), max_bytes=settings.max_upload_bytes)
        if isinstance(prepared, Rejection):
            count = STATE.attempts.increment(user_id, day)
            LOGGER.info("[checkin] rejected user=%s code=%s attempts=%d", user_id, prepared.code, count)
            return _checkin_rejection(prepared.code, prepared.message, count)

        classification = await get_checkin_cascade().classify(prepared)
        if classification.get("model") == "none":
            LOGGER.warning(
                "[checkin] provider_error user=%s failures=%s", user_id, classification.get("failures")
            )
            return _checkin_rejection(
                "provider_error", message_for("provider_error"), attempt_count, status_code=503
            )

        if distance is not None:
            geofence = geofence_from_distance(distance, settings.checkin_geofence_radius_m)
        else:
            geofence = check_geofence(
                lat, lon, _locations(settings.locations_json), settings.checkin_geofence_radius_m
            )

        decision = decide_verification(
            classification, geofence, "camera", settings.thresholds(), relaxed=relaxed
        )
        score = float(classification.get("confidence", 0.0) or 0.0)
        if not decision["verified"]:
            count = STATE.attempts.increment(user_id, day)
            LOGGER.info(
                "[checkin] rejected user=%s label=%s confidence=%.2f attempts=%d",
                user_id,
                classification.get("top_prediction"),
                score,
                count,
            )
            return _checkin_rejection("no_equipment", decision["reason"], count, score=score)

        STATE.attempts.clear(user_id, day)
        record = STATE.checkins.upsert(
            user_id,
            day,
            session_id=session_id,
            device_info=device_info,
            ai_score=score,
            gps_distance=geofence["nearest_distance_meters"],
            relaxed=decision["relaxed_applied"],
        )
        LOGGER.info(
            "[checkin] accepted user=%s day=%s confidence=%.2f relaxed=%s",
            user_id,
            day,
            score,
            decision["relaxed_applied"],
        )
        return JSONResponse(
            status_code=201,
            content={
                "verified": True,
                "checkin_id": record.checkin_id,
                "verified_at": record.verified_at,
                "trust_level": decision["trust_level"],
                "relaxed_applied": decision["relaxed_applied"],
            },
        )
    finally:
        if photo is not None:
            await photo.close()


@router.get("/api/checkin/gym/status")
def checkin_gym_status(
    date_key: Optional[str] = None,
    x_user_id: Optional[str] = Header(default=None),
) -> JSONResponse:
    user_id = (x_user_id or "").strip()
    if not user_id:
        return _error("unauthorized", "Authentication required.", status_code=401)
    if date_key and not DATE_KEY_RE.match(date_key):
        return _error("invalid_input", "date_key must be YYYY-MM-DD", status_code=400)
    record = STATE.checkins.find(user_id, date_key or date.today().isoformat())
    return JSONResponse(
        status_code=200,
        content={
            "verified": record is not None,
            "verified_at": record.verified_at if record else None,
            "checkin_id": record.checkin_id if record else None,
        },
    )


app = FastAPI(title="gymcheck presence service", version="0.1")
app.include_router(router)


@app.get("/health")
def health() -> Dict[str, str]:
    return {"status": "ok"}


if __name__ == "__main__":
    import uvicorn

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    uvicorn.run(app, host="0.0.0.0", port=8000)
