"""Meal photo analysis through a remote vision LLM (primary model, then fallbacks)."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

from gymcheck.shared.json_extract import extract_json_object
from gymcheck.shared.resilience import (
    OPENROUTER_URL,
    CallResult,
    RetryPolicy,
    message_content,
    post_json_with_retry,
)
from gymcheck.shared.preprocess import bytes_to_data_url

LOGGER = logging.getLogger(__name__)

MAX_ITEMS = 8
CATEGORIES = ("protein", "carb", "fat", "vegetable", "fruit", "sauce", "drink", "other")
MACRO_BOUNDS = {"kcal": 900.0, "protein": 100.0, "carbs": 100.0, "fat": 100.0}

DEFAULT_NOTE = "AI detection. Check the foods and quantities before saving."
EMPTY_NOTE = "No food clearly detected. Try a sharper photo or add the foods manually."

MSG_UNAVAILABLE = "Analysis unavailable right now. You can add the foods manually."
MSG_RATE_LIMITED = "The analysis service is temporarily overloaded. Retry in a minute or add the foods manually."
MSG_TIMEOUT = "The request took too long. Retry or add the foods manually."

MEAL_PROMPT = (
    "Analyse this meal photo. List the visible foods and for EACH food estimate the "
    "nutritional macros per 100 g.\n\n"
    "Reply ONLY with a valid JSON object, no text before or after, no markdown.\n"
    "Exact structure:\n"
    "{\n"
    '  "items": [\n'
    "    {\n"
    '      "label": "food name",\n'
    '      "confidence": 0.0 to 1.0,\n'
    '      "category": "protein" | "carb" | "fat" | "vegetable" | "fruit" | "sauce" | "drink" | "other",\n'
    '      "defaultGrams": estimated grams (20-500),\n'
    '      "macrosPer100g": {"kcal": number, "protein": number, "carbs": number, "fat": number}\n'
    "    }\n"
    "  ],\n"
    '  "notes": "one short sentence"\n'
    "}\n\n"
    "Rules:\n"
    "- Between 1 and 8 items.\n"
    "- Include macrosPer100g for EVERY item, using typical values for that food.\n"
    "- Do not invent foods: if unsure, use a low confidence (< 0.6) or leave the item out.\n"
    "- If the image does not clearly show a meal, return items: [] and an explanatory note."
)


@dataclass
class MealItem:
    label: str
    category: str
    confidence: float
    default_grams: int
    macros_per_100g: Optional[Dict[str, float]] = None
    suggested_foods: List[Dict[str, Any]] = field(default_factory=list)

    def as_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "label": self.label,
            "confidence": self.confidence,
            "category": self.category,
            "default_grams": self.default_grams,
            "suggested_foods": list(self.suggested_foods),
        }
        if self.macros_per_100g is not None:
            out["macros_per_100g"] = dict(self.macros_per_100g)
        return out


@dataclass
class MealDetection:
    items: List[MealItem]
    notes: str
    model: str = ""
    ok: bool = True
    source: str = "openrouter"


@dataclass
class MealFailure:
    code: str
    message: str
    ok: bool = False


def _number(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value.strip())
        except ValueError:
            return None
    return None


def clamp_confidence(value: Any) -> float:
    n = _number(value)
    if n is None or n != n:
        return 0.0
    return max(0.0, min(1.0, n))


def clamp_grams(value: Any) -> int:
    n = _number(value)
    grams = int(round(n)) if n is not None and n == n else 0
    return max(20, min(1000, grams or 100))


def parse_macros(raw: Any) -> Optional[Dict[str, float]]:
    if not isinstance(raw, dict):
        return None
    macros = {}
    for key, upper in MACRO_BOUNDS.items():
        n = _number(raw.get(key))
        macros[key] = max(0.0, min(upper, n if n is not None and n == n else 0.0))
    if not any(macros.values()):
        return None
    return macros


def normalize_category(value: Any) -> str:
    s = str(value or "other").strip().lower()
    return s if s in CATEGORIES else "other"


def normalize_items(raw: Any) -> List[MealItem]:
    if not isinstance(raw, list):
        return []
    items: List[MealItem] = []
    for entry in raw[:MAX_ITEMS]:
        if not isinstance(entry, dict):
            continue
        label = str(entry.get("label") or "").strip()
        if not label:
            continue
        items.append(
            MealItem(
                label=label[0].upper() + label[1:].lower(),
                category=normalize_category(entry.get("category")),
                confidence=clamp_confidence(entry.get("confidence")),
                default_grams=clamp_grams(entry.get("defaultGrams", entry.get("default_grams"))),
                macros_per_100g=parse_macros(entry.get("macrosPer100g", entry.get("macros_per_100g"))),
            )
        )
    return items


def parse_meal_reply(content: str, model: str = "") -> Optional[MealDetection]:
    obj = extract_json_object(content)
    if obj is None:
        return None
    items = normalize_items(obj.get("items"))
    notes = obj.get("notes")
    notes = notes.strip() if isinstance(notes, str) else ""
    if not items:
        notes = EMPTY_NOTE
    return MealDetection(items=items, notes=notes or DEFAULT_NOTE, model=model)


def _failure_message(last: Optional[CallResult]) -> str:
    if last is None:
        return MSG_UNAVAILABLE
    if last.status_code == 429:
        return MSG_RATE_LIMITED
    if last.error == "timeout":
        return MSG_TIMEOUT
    return MSG_UNAVAILABLE


def _request_body(model: str, image_url: str) -> Dict[str, Any]:
    return {
        "model": model,
        "max_tokens": 512,
        "temperature": 0,
        "messages": [
            {
                "role": "user",
                "content": [
                    {"type": "text", "text": MEAL_PROMPT},
                    {"type": "image_url", "image_url": {"url": image_url}},
                ],
            }
        ],
    }


async def analyze_meal(
    image_bytes: bytes,
    mime: str,
    *,
    api_key: Optional[str],
    models: Sequence[str],
    timeout_s: float = 14.0,
    max_retries: int = 2,
    url: str = OPENROUTER_URL,
) -> MealDetection | MealFailure:
    if not api_key:
        LOGGER.warning("[meal-scan] OPENROUTER_API_KEY missing")
        return MealFailure(code="provider_error", message=MSG_UNAVAILABLE)

    image_url = bytes_to_data_url(image_bytes, mime)
    headers = {
        "Authorization": f"Bearer {api_key}",
        "Content-Type": "application/json",
        "X-Title": "gymcheck",
    }
    policy = RetryPolicy(max_retries=max_retries)
    last: Optional[CallResult] = None

    for model in models:
        call = await post_json_with_retry(
            url,
            _request_body(model, image_url),
            headers,
            timeout_s=timeout_s,
            policy=policy,
            label=f"meal-scan:{model}",
        )
        if not call.ok:
            last = call
            LOGGER.warning("[meal-scan] model=%s failed (%s); trying next", model, call.describe())
            continue

        content = message_content(call.data)
        if not content:
            last = call
            LOGGER.warning("[meal-scan] model=%s returned empty content", model)
            continue

        parsed = parse_meal_reply(content, model)
        if parsed is None:
            LOGGER.warning("[meal-scan] parse_error model=%s content_len=%d", model, len(content))
            return MealFailure(code="parse_error", message=MSG_UNAVAILABLE)

        LOGGER.info("[meal-scan] model=%s items=%d", model, len(parsed.items))
        return parsed

    return MealFailure(code="provider_error", message=_failure_message(last))
