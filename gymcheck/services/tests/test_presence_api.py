from __future__ import annotations

import asyncio
import io
from typing import Any, Dict, List

import httpx
import pytest
from PIL import Image

from gymcheck.services import presence_service as svc
from gymcheck.shared.contract import REASON_AI_UNAVAILABLE, canonical_uncertain

USER = {"X-User-Id": "user-1"}

GYM = {
    "top_prediction": "gym interior",
    "confidence": 0.82,
    "ranked": [
        {"label": "gym interior", "score": 0.82},
        {"label": "office", "score": 0.08},
        {"label": "bedroom", "score": 0.04},
    ],
    "model": "ViT-B-32/openai",
    "tier": "clip",
}

BORDERLINE_GYM = {
    "top_prediction": "gym interior",
    "confidence": 0.37,
    "ranked": [
        {"label": "gym interior", "score": 0.37},
        {"label": "home interior", "score": 0.35},
    ],
    "model": "ViT-B-32/openai",
    "tier": "clip",
}


class FakeCascade:
    def __init__(self, result: Dict[str, Any]) -> None:
        self.result = result
        self.calls = 0

    async def classify(self, _prepared) -> Dict[str, Any]:
        self.calls += 1
        return dict(self.result)


def _jpeg(size=(700, 700), color=(120, 110, 100), fmt="JPEG") -> bytes:
    img = Image.new("RGB", size, color=color)
    buf = io.BytesIO()
    img.save(buf, format=fmt)
    return buf.getvalue()


@pytest.fixture()
def state(monkeypatch):
    fresh = svc.ServiceState()
    monkeypatch.setattr(svc, "STATE", fresh)
    return fresh


def _use_cascade(monkeypatch, result: Dict[str, Any]) -> FakeCascade:
    cascade = FakeCascade(result)
    monkeypatch.setattr(svc, "get_profile_cascade", lambda: cascade)
    monkeypatch.setattr(svc, "get_checkin_cascade", lambda: cascade)
    return cascade


def _request(method: str, path: str, **kwargs):
    async def _run_request():
        transport = httpx.ASGITransport(app=svc.app)
        async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as client:
            return await client.request(method, path, **kwargs)

    return asyncio.run(_run_request())


def _verify(image: bytes | None = None, mime: str = "image/jpeg", headers=USER, **form: str):
    files = {"image": ("photo.jpg", image, mime)} if image is not None else None
    return _request(
        "POST", "/api/verification/gym-presence", files=files, data=form or None, headers=headers
    )


def _checkin(image: bytes | None = None, headers=USER, **form: str):
    files = {"photo": ("photo.jpg", image, "image/jpeg")} if image is not None else None
    form.setdefault("date_key", "2026-03-01")
    return _request("POST", "/api/checkin/gym/start", files=files, data=form, headers=headers)


# Gym presence


def test_presence_verified_with_camera_and_distance_fields(monkeypatch, state) -> None:
    _use_cascade(monkeypatch, GYM)

    resp = _verify(_jpeg(), upload_source="camera", timestamp="2026-03-01T10:00:00Z")

    assert resp.status_code == 200
    payload = resp.json()
    assert payload["status"] == "success"
    assert payload["verified"] is True
    assert payload["top_prediction"] == "gym interior"
    assert payload["model"] == "ViT-B-32/openai"
    assert payload["trust_level"] == "medium"
    assert payload["checks"]["upload_source"] == "camera"
    assert payload["checks"]["gps_provided"] is False
    assert payload["thresholds"] == {"threshold": 0.40, "margin": 0.05}
    assert len(state.audit.records) == 1
    assert state.audit.records[0]["user_id"] == "user-1"


def test_presence_all_tiers_down_is_still_200(monkeypatch, state) -> None:
    _use_cascade(monkeypatch, canonical_uncertain(["clip:disabled", "legacy:disabled"]))

    resp = _verify(_jpeg())

    assert resp.status_code == 200
    payload = resp.json()
    assert payload["verified"] is False
    assert payload["model"] == "none"
    assert payload["top_prediction"] == "uncertain"
    assert payload["reason"] == REASON_AI_UNAVAILABLE
    assert payload["manual_review_flag"] is True
    assert payload["checks"]["upload_source"] == "unknown"


def test_presence_requires_user(monkeypatch, state) -> None:
    cascade = _use_cascade(monkeypatch, GYM)

    resp = _verify(_jpeg(), headers={})

    assert resp.status_code == 401
    assert resp.json()["code"] == "unauthorized"
    assert cascade.calls == 0


def test_presence_missing_image_is_invalid_input(monkeypatch, state) -> None:
    _use_cascade(monkeypatch, GYM)

    resp = _verify(None, upload_source="camera")

    assert resp.status_code == 400
    assert resp.json()["code"] == "invalid_input"


@pytest.mark.parametrize(
    "form",
    [
        {"latitude": "95"},
        {"longitude": "east"},
        {"accuracy": "-1"},
        {"timestamp": "yesterday"},
        {"upload_source": "scanner"},
    ],
)
def test_presence_bad_fields_are_invalid_input(monkeypatch, state, form) -> None:
    cascade = _use_cascade(monkeypatch, GYM)

    resp = _verify(_jpeg(), **form)

    assert resp.status_code == 400
    assert resp.json()["code"] == "invalid_input"
    assert cascade.calls == 0


def test_presence_gif_is_unsupported_format(monkeypatch, state) -> None:
    _use_cascade(monkeypatch, GYM)

    resp = _verify(_jpeg(fmt="GIF"), mime="image/gif")

    assert resp.status_code == 400
    payload = resp.json()
    assert payload["status"] == "error"
    assert payload["code"] == "unsupported_format"


def test_presence_screenshot_is_rejected_with_200(monkeypatch, state) -> None:
    cascade = _use_cascade(monkeypatch, GYM)

    resp = _verify(_jpeg(size=(600, 1400)))

    assert resp.status_code == 200
    payload = resp.json()
    assert payload["verified"] is False
    assert payload["model"] == "none"
    assert payload["rejection"]["code"] == "screenshot_suspected"
    assert payload["rejection"]["tips"]
    assert cascade.calls == 0
    assert len(state.audit.records) == 0


def test_presence_thin_png_is_screenshot_not_server_error(monkeypatch, state) -> None:
    cascade = _use_cascade(monkeypatch, GYM)

    resp = _verify(_jpeg(size=(4, 1200), fmt="PNG"), mime="image/png")

    assert resp.status_code == 200
    assert resp.json()["rejection"]["code"] == "screenshot_suspected"
    assert cascade.calls == 0


def test_presence_rate_limited_after_ten(monkeypatch, state) -> None:
    _use_cascade(monkeypatch, GYM)
    image = _jpeg()

    statuses: List[int] = [_verify(image).status_code for _ in range(11)]

    assert statuses[:10] == [200] * 10
    assert statuses[10] == 429
    assert _verify(image, headers={"X-User-Id": "user-2"}).status_code == 200


# Gym check-in


def test_checkin_accepted(monkeypatch, state) -> None:
    _use_cascade(monkeypatch, GYM)

    resp = _checkin(_jpeg(), gps_distance_meters="42", session_id="s1")

    assert resp.status_code == 201
    payload = resp.json()
    assert payload["verified"] is True
    assert payload["trust_level"] == "high"
    assert payload["relaxed_applied"] is False
    record = state.checkins.find("user-1", "2026-03-01")
    assert record.checkin_id == payload["checkin_id"]
    assert record.gps_distance == 42.0


def test_checkin_not_gym_counts_attempts(monkeypatch, state) -> None:
    _use_cascade(
        monkeypatch,
        {
            "top_prediction": "bedroom",
            "confidence": 0.7,
            "ranked": [{"label": "bedroom", "score": 0.7}, {"label": "office", "score": 0.1}],
            "model": "mobilenet-v2-fallback",
            "tier": "legacy",
        },
    )

    first = _checkin(_jpeg())
    second = _checkin(_jpeg())

    assert first.status_code == 400
    body = first.json()
    assert body["code"] == "no_equipment"
    assert body["data"]["attempt_count"] == 1
    assert body["data"]["next_allowed_method"] is None
    assert body["data"]["score"] == 0.7
    assert body["data"]["tips"]
    assert second.json()["data"]["attempt_count"] == 2
    assert second.json()["data"]["next_allowed_method"] == "photo"


def test_checkin_dark_photo_counts_attempt(monkeypatch, state) -> None:
    cascade = _use_cascade(monkeypatch, GYM)

    resp = _checkin(_jpeg(color=(10, 10, 10)))

    assert resp.status_code == 400
    assert resp.json()["code"] == "too_dark"
    assert resp.json()["data"]["attempt_count"] == 1
    assert cascade.calls == 0


def test_checkin_provider_error_not_counted(monkeypatch, state) -> None:
    _use_cascade(monkeypatch, canonical_uncertain(["clip:error", "legacy:disabled", "remote:missing_api_key"]))

    resp = _checkin(_jpeg())

    assert resp.status_code == 503
    body = resp.json()
    assert body["code"] == "provider_error"
    assert body["data"]["attempt_count"] == 0
    assert "next_allowed_method" not in body["data"]
    assert state.attempts.get("user-1", "2026-03-01") == 0


def test_checkin_relaxed_after_two_failures(monkeypatch, state) -> None:
    _use_cascade(monkeypatch, BORDERLINE_GYM)

    assert _checkin(_jpeg()).status_code == 400
    assert _checkin(_jpeg()).status_code == 400
    third = _checkin(_jpeg())

    assert third.status_code == 201
    assert third.json()["relaxed_applied"] is True
    assert third.json()["trust_level"] == "low"
    assert state.attempts.get("user-1", "2026-03-01") == 0


def test_checkin_validation(monkeypatch, state) -> None:
    _use_cascade(monkeypatch, GYM)

    assert _checkin(_jpeg(), headers={}).status_code == 401
    assert _checkin(_jpeg(), date_key="03/01/2026").status_code == 400
    assert _checkin(_jpeg(), gps_distance_meters="-5").status_code == 400
    missing = _checkin(None)
    assert missing.status_code == 400
    assert missing.json()["code"] == "invalid_input"


def test_checkin_status(monkeypatch, state) -> None:
    _use_cascade(monkeypatch, GYM)

    before = _request("GET", "/api/checkin/gym/status", params={"date_key": "2026-03-01"}, headers=USER)
    _checkin(_jpeg())
    after = _request("GET", "/api/checkin/gym/status", params={"date_key": "2026-03-01"}, headers=USER)
    bad = _request("GET", "/api/checkin/gym/status", params={"date_key": "March"}, headers=USER)

    assert before.json() == {"verified": False, "verified_at": None, "checkin_id": None}
    assert after.json()["verified"] is True
    assert after.json()["checkin_id"]
    assert bad.status_code == 400
