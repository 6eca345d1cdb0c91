from __future__ import annotations

import json

from gymcheck.services import meal_service, presence_service
from gymcheck.services.envelope import DATE_KEY_RE, error_response


def test_error_envelope_shape() -> None:
    resp = error_response("too_dark", "Photo is too dark.", status_code=400, data={"attempt_count": 1})

    assert resp.status_code == 400
    body = json.loads(resp.body)
    assert body["status"] == "error"
    assert body["code"] == "too_dark"
    assert body["message"] == "Photo is too dark."
    assert body["data"] == {"attempt_count": 1}
    assert body["request_id"]


def test_services_share_one_envelope_builder() -> None:
    assert presence_service._error is error_response
    assert meal_service._error is error_response
    assert presence_service.DATE_KEY_RE is DATE_KEY_RE
    assert meal_service.DATE_KEY_RE is DATE_KEY_RE


def test_date_key_pattern() -> None:
    assert DATE_KEY_RE.match("2026-03-01")
    assert not DATE_KEY_RE.match("2026-3-1")
    assert not DATE_KEY_RE.match("01-03-2026")
