from __future__ import annotations

import asyncio
import json
from typing import Any

from gymcheck.services import meal_scan
from gymcheck.services.meal_scan import MealDetection, MealFailure
from gymcheck.shared import resilience


MODELS = ["vendor/primary:free", "vendor/fallback:free"]


class _FakeResponse:
    def __init__(self, status_code: int, payload: dict[str, Any] | None = None, text: str = "") -> None:
        self.status_code = status_code
        self._payload = payload
        self.text = text

    def json(self) -> dict[str, Any]:
        if self._payload is None:
            raise ValueError("not json")
        return self._payload


def _chat(content: str) -> dict[str, Any]:
    return {"choices": [{"message": {"content": content}}]}


def _install(monkeypatch, responses: list, posted: list) -> None:
    class FakeClient:
        def __init__(self, *args, **kwargs) -> None:
            pass

        async def __aenter__(self):
            return self

        async def __aexit__(self, exc_type, exc, tb):
            return False

        async def post(self, _url: str, *, headers: dict[str, str], json: dict[str, Any]):
            posted.append(json["model"])
            return responses.pop(0)

    async def _no_sleep(_delay: float) -> None:
        return None

    monkeypatch.setattr(resilience.httpx, "AsyncClient", FakeClient)
    monkeypatch.setattr(resilience, "_sleep", _no_sleep)


def _analyze(api_key: str | None = "test-key", max_retries: int = 0):
    return asyncio.run(
        meal_scan.analyze_meal(
            b"\xff\xd8fake",
            "image/jpeg",
            api_key=api_key,
            models=MODELS,
            max_retries=max_retries,
        )
    )


def test_missing_key_is_provider_error_without_call(monkeypatch) -> None:
    posted: list = []
    _install(monkeypatch, [], posted)

    result = _analyze(api_key=None)

    assert isinstance(result, MealFailure)
    assert result.code == "provider_error"
    assert posted == []


def test_items_are_normalized_and_clamped(monkeypatch) -> None:
    reply = {
        "items": [
            {
                "label": "grilled CHICKEN",
                "confidence": 1.7,
                "category": "Protein",
                "defaultGrams": 2500,
                "macrosPer100g": {"kcal": 1200, "protein": 31, "carbs": -3, "fat": 3.6},
            },
            {"label": "rice", "confidence": "n/a", "category": "grain", "defaultGrams": 0},
            {"label": "sauce", "confidence": 0.4, "category": "sauce", "defaultGrams": 5,
             "macrosPer100g": {"kcal": 0, "protein": 0, "carbs": 0, "fat": 0}},
            {"label": "   "},
            "junk",
        ]
        + [{"label": f"item{i}", "confidence": 0.5} for i in range(10)],
        "notes": "  Looks like lunch.  ",
    }
    posted: list = []
    _install(monkeypatch, [_FakeResponse(200, _chat(json.dumps(reply)))], posted)

    result = _analyze()

    assert isinstance(result, MealDetection)
    chicken, rice, sauce = result.items[:3]
    assert chicken.label == "Grilled chicken"
    assert chicken.confidence == 1.0
    assert chicken.category == "protein"
    assert chicken.default_grams == 1000
    assert chicken.macros_per_100g == {"kcal": 900.0, "protein": 31.0, "carbs": 0.0, "fat": 3.6}
    assert rice.confidence == 0.0
    assert rice.category == "other"
    assert rice.default_grams == 100
    assert rice.macros_per_100g is None
    assert sauce.default_grams == 20
    assert sauce.macros_per_100g is None
    # First 8 raw entries only; blanks and non-objects among them are dropped.
    assert len(result.items) == 6
    assert result.notes == "Looks like lunch."
    assert posted == [MODELS[0]]


def test_empty_items_get_nothing_detected_note(monkeypatch) -> None:
    posted: list = []
    _install(monkeypatch, [_FakeResponse(200, _chat('{"items": [], "notes": "a wall"}'))], posted)

    result = _analyze()

    assert isinstance(result, MealDetection)
    assert result.items == []
    assert result.notes == meal_scan.EMPTY_NOTE


def test_missing_notes_get_default(monkeypatch) -> None:
    posted: list = []
    _install(monkeypatch, [_FakeResponse(200, _chat('{"items": [{"label": "egg"}]}'))], posted)

    result = _analyze()

    assert result.notes == meal_scan.DEFAULT_NOTE


def test_primary_rate_limited_falls_back_to_second_model(monkeypatch) -> None:
    posted: list = []
    _install(
        monkeypatch,
        [
            _FakeResponse(429, text="rate limited"),
            _FakeResponse(200, _chat('{"items": [{"label": "apple", "category": "fruit"}]}')),
        ],
        posted,
    )

    result = _analyze()

    assert isinstance(result, MealDetection)
    assert result.model == MODELS[1]
    assert posted == MODELS


def test_empty_content_moves_to_next_model(monkeypatch) -> None:
    posted: list = []
    _install(
        monkeypatch,
        [_FakeResponse(200, _chat("")), _FakeResponse(200, _chat('{"items": []}'))],
        posted,
    )

    result = _analyze()

    assert isinstance(result, MealDetection)
    assert posted == MODELS


def test_all_models_rate_limited_says_so(monkeypatch) -> None:
    posted: list = []
    _install(monkeypatch, [_FakeResponse(429), _FakeResponse(429)], posted)

    result = _analyze()

    assert isinstance(result, MealFailure)
    assert result.code == "provider_error"
    assert result.message == meal_scan.MSG_RATE_LIMITED


def test_parse_error_stops_without_trying_other_models(monkeypatch) -> None:
    posted: list = []
    _install(monkeypatch, [_FakeResponse(200, _chat("Sorry, I cannot help with that."))], posted)

    result = _analyze()

    assert isinstance(result, MealFailure)
    assert result.code == "parse_error"
    assert posted == [MODELS[0]]


def test_item_as_dict_omits_missing_macros() -> None:
    item = meal_scan.MealItem(label="Egg", category="protein", confidence=0.9, default_grams=60)

    assert "macros_per_100g" not in item.as_dict()
    assert item.as_dict()["default_grams"] == 60
