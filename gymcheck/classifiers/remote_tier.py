"""Tier 3: remote vision LLM (OpenRouter chat completions) as a scene classifier."""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from gymcheck.classifiers.base import SceneTier, TierOutcome
from gymcheck.shared.contract import ClassificationResult, RankedLabel
from gymcheck.shared.json_extract import extract_json_object
from gymcheck.shared.preprocess import PreparedImage, image_to_data_url
from gymcheck.shared.resilience import (
    OPENROUTER_URL,
    RetryPolicy,
    message_content,
    post_json_with_retry,
)

LOGGER = logging.getLogger(__name__)

REMOTE_LABELS = {"gym", "not_gym", "uncertain"}

INDICATOR_KEYS = (
    "fitness_equipment_visible",
    "multiple_machines_or_weights",
    "locker_room_or_gym_layout",
    "looks_like_home_setting",
    "looks_like_office_or_shop",
    "photo_of_screen_or_printed_image",
)

GYM_SCENE_PROMPT = (
    "You are a strict scene classifier for a fitness app. Look at ONE photo and decide "
    "whether it was taken inside a gym or fitness center.\n\n"
    "Return ONLY a JSON object, no markdown, no extra text:\n"
    "{\n"
    '  "label": "gym" | "not_gym" | "uncertain",\n'
    '  "confidence": number between 0 and 1,\n'
    '  "secondary_label": string,\n'
    '  "secondary_confidence": number between 0 and 1,\n'
    '  "indicators": {\n'
    '    "fitness_equipment_visible": boolean,\n'
    '    "multiple_machines_or_weights": boolean,\n'
    '    "locker_room_or_gym_layout": boolean,\n'
    '    "looks_like_home_setting": boolean,\n'
    '    "looks_like_office_or_shop": boolean,\n'
    '    "photo_of_screen_or_printed_image": boolean\n'
    "  },\n"
    '  "reason": short string\n'
    "}\n\n"
    "Rules:\n"
    "1) label=gym only when gym equipment or a gym layout is clearly visible.\n"
    "2) A single dumbbell at home is not_gym (looks_like_home_setting=true).\n"
    "3) A photo of a screen or a printed picture is not_gym.\n"
    "4) If the photo is blurry, dark or ambiguous, use uncertain with confidence <= 0.5."
)


def build_request_body(image_url: str, model: str) -> Dict[str, Any]:
    return {
        "model": model,
        "max_tokens": 512,
        "temperature": 0,
        "messages": [
            {
                "role": "user",
                "content": [
                    {"type": "text", "text": GYM_SCENE_PROMPT},
                    {"type": "image_url", "image_url": {"url": image_url}},
                ],
            }
        ],
    }


def build_headers(api_key: str, referer: Optional[str] = None) -> Dict[str, str]:
    headers = {
        "Authorization": f"Bearer {api_key}",
        "Content-Type": "application/json",
        "X-Title": "gymcheck",
    }
    if referer:
        headers["HTTP-Referer"] = referer
    return headers


def _clamp_unit(value: Any, default: float) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return default
    return max(0.0, min(1.0, float(value)))


def parse_scene_reply(content: str) -> Optional[Dict[str, Any]]:
    """Validate the model's JSON reply; ``None`` when it is unusable."""

    obj = extract_json_object(content)
    if obj is None:
        return None
    label = obj.get("label")
    if not isinstance(label, str) or label.strip().lower() not in REMOTE_LABELS:
        return None

    secondary = obj.get("secondary_label")
    indicators = obj.get("indicators") if isinstance(obj.get("indicators"), dict) else {}
    return {
        "label": label.strip().lower(),
        "confidence": _clamp_unit(obj.get("confidence"), 0.5),
        "secondary_label": secondary.strip() if isinstance(secondary, str) and secondary.strip() else None,
        "secondary_confidence": _clamp_unit(obj.get("secondary_confidence"), 0.0),
        "indicators": {k: bool(indicators.get(k, False)) for k in INDICATOR_KEYS},
        "reason": str(obj.get("reason") or "")[:200],
    }


def scene_result_from_reply(parsed: Dict[str, Any], model: str) -> ClassificationResult:
    """Map gym/not_gym/uncertain onto the ranked-label shape used by the decision layer.

    Runner-up scores never exceed the primary one.
    """

    label = parsed["label"]
    conf = round(parsed["confidence"], 2)
    secondary = parsed.get("secondary_label")
    sec_conf = round(min(parsed.get("secondary_confidence", 0.0), conf), 2)

    ranked: List[RankedLabel]
    if label == "gym":
        top = "gym interior"
        if secondary:
            ranked = [{"label": top, "score": conf}, {"label": secondary, "score": sec_conf}]
        else:
            ranked = [{"label": top, "score": conf}, {"label": "not_gym", "score": round(min(1.0 - conf, conf), 2)}]
    elif label == "not_gym":
        top = secondary if secondary and secondary.lower() != "gym" else "unknown"
        gym_score = sec_conf if secondary else 0.2
        ranked = [{"label": top, "score": conf}, {"label": "gym interior", "score": round(min(gym_score, conf), 2)}]
    else:
        top = "uncertain"
        ranked = [{"label": top, "score": conf}]
        if secondary:
            ranked.append({"label": secondary, "score": sec_conf})

    return {
        "top_prediction": top,
        "confidence": conf,
        "ranked": ranked,
        "model": model,
        "tier": "remote",
    }


class RemoteLLMTier(SceneTier):
    name = "remote"

    def __init__(
        self,
        api_key: Optional[str],
        model: str = "google/gemma-3-12b-it:free",
        *,
        timeout_s: float = 15.0,
        max_retries: int = 2,
        url: str = OPENROUTER_URL,
        referer: Optional[str] = None,
    ) -> None:
        self.api_key = api_key
        self.model = model
        self.timeout_s = timeout_s
        self.policy = RetryPolicy(max_retries=max_retries)
        self.url = url
        self.referer = referer

    @property
    def budget_s(self) -> float:
        # Per-attempt timeouts plus worst-case backoff between attempts.
        attempts = self.policy.max_retries + 1
        delays = self.policy.delays_s or (0.0,)
        backoff = sum(delays[min(i, len(delays) - 1)] for i in range(attempts - 1))
        backoff *= 1.0 + self.policy.jitter
        return self.timeout_s * attempts + backoff + 1.0

    async def classify(self, prepared: PreparedImage) -> TierOutcome:
        if not self.api_key:
            return TierOutcome.failure(self.name, "missing_api_key", "OPENROUTER_API_KEY not set")

        body = build_request_body(image_to_data_url(prepared.image), self.model)
        call = await post_json_with_retry(
            self.url,
            body,
            build_headers(self.api_key, self.referer),
            timeout_s=self.timeout_s,
            policy=self.policy,
            label=f"openrouter:{self.model}",
        )
        if not call.ok:
            return TierOutcome.failure(self.name, "provider_error", call.describe())

        content = message_content(call.data)
        if not content:
            return TierOutcome.failure(self.name, "provider_error", "empty content")
        parsed = parse_scene_reply(content)
        if parsed is None:
            LOGGER.warning("[remote] unparseable reply (len=%d)", len(content))
            return TierOutcome.failure(self.name, "parse_error", f"content_len={len(content)}")

        LOGGER.info("[remote] label=%s confidence=%.2f", parsed["label"], parsed["confidence"])
        return TierOutcome.success(self.name, scene_result_from_reply(parsed, self.model))
