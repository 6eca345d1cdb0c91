"""Tier 2: ImageNet MobileNet (ONNX) mapped to gym/not-gym through keywords."""

from __future__ import annotations

import asyncio
import logging
from functools import partial
from pathlib import Path
from typing import Any, Dict, List, Sequence, Tuple

import numpy as np
from PIL import Image

from gymcheck.classifiers.base import LazyModel, SceneTier, TierDisabled, TierOutcome, is_native_load_error
from gymcheck.shared import onnx_infer
from gymcheck.shared.contract import ClassificationResult, RankedLabel
from gymcheck.shared.decision import softmax
from gymcheck.shared.preprocess import PreparedImage, preprocess_image

LOGGER = logging.getLogger(__name__)

MODEL_ID = "mobilenet-v2-fallback"

LEGACY_GYM_KEYWORDS = (
    "dumbbell",
    "barbell",
    "gymnastic",
    "gym",
    "weight",
    "balance beam",
    "punching bag",
    "sports",
    "exercise",
    "fitness",
)
LEGACY_MIN_CONFIDENCE = 0.15


def is_legacy_gym_label(label: str) -> bool:
    lower = str(label or "").lower()
    return any(k in lower for k in LEGACY_GYM_KEYWORDS)


def load_legacy_runtime(onnx_path: str, labels_path: str) -> Dict[str, Any]:
    return {
        "onnx": onnx_infer.OnnxInfer(Path(onnx_path)),
        "labels": onnx_infer.load_labels(Path(labels_path)),
    }


def predict_top5(rt: Dict[str, Any], img: Image.Image) -> List[Tuple[str, float]]:
    labels: Sequence[str] = rt["labels"]
    logits = rt["onnx"].run(preprocess_image(img))
    probs = softmax(logits)
    top = np.argsort(probs)[::-1][:5]
    return [(labels[i] if i < len(labels) else str(i), float(probs[i])) for i in top]


def adapt_predictions(
    top5: Sequence[Tuple[str, float]],
    threshold: float = 0.40,
    margin: float = 0.05,
) -> ClassificationResult:
    """Fold raw ImageNet top-5 into the scene-result shape the decision layer expects.

    When a gym keyword shows up with enough confidence, the result is rewritten
    as "gym interior" scored at least at the decision threshold, with the runner-up
    capped one margin below it.
    """

    raw_top: List[RankedLabel] = [
        {"label": label, "score": round(float(p), 2)} for label, p in list(top5)[:3]
    ]
    top1 = float(top5[0][1]) if top5 else 0.0
    gym_scores = [float(p) for label, p in top5 if is_legacy_gym_label(label)]
    confidence = max([top1] + gym_scores)

    if gym_scores and confidence >= LEGACY_MIN_CONFIDENCE:
        score = round(max(confidence, threshold), 2)
        runner_up = round(max(0.0, min(raw_top[0]["score"], score - margin)), 2)
        ranked: List[RankedLabel] = [
            {"label": "gym interior", "score": score},
            {"label": raw_top[0]["label"], "score": runner_up},
        ]
        if len(raw_top) > 1:
            ranked.append({"label": raw_top[1]["label"], "score": min(raw_top[1]["score"], runner_up)})
        return {
            "top_prediction": "gym interior",
            "confidence": score,
            "ranked": ranked,
            "model": MODEL_ID,
            "tier": "legacy",
        }

    return {
        "top_prediction": raw_top[0]["label"] if raw_top else "unknown",
        "confidence": round(top1, 2),
        "ranked": raw_top,
        "model": MODEL_ID,
        "tier": "legacy",
    }


class LegacyKeywordTier(SceneTier):
    name = "legacy"

    def __init__(
        self,
        onnx_path: str,
        labels_path: str,
        threshold: float = 0.40,
        margin: float = 0.05,
        timeout_s: float = 60.0,
    ) -> None:
        self.threshold = threshold
        self.margin = margin
        self.timeout_s = timeout_s
        self.model = LazyModel("legacy", partial(load_legacy_runtime, onnx_path, labels_path))

    @property
    def budget_s(self) -> float:
        return self.timeout_s

    async def classify(self, prepared: PreparedImage) -> TierOutcome:
        if self.model.disabled:
            return TierOutcome.failure(self.name, "disabled", self.model.disabled_reason)
        try:
            rt = await self.model.get()
            top5 = await asyncio.to_thread(predict_top5, rt, prepared.image)
        except TierDisabled as exc:
            return TierOutcome.failure(self.name, "disabled", str(exc))
        except Exception as exc:  # noqa: BLE001 - tier failures become outcomes
            if is_native_load_error(exc):
                self.model.disable(f"{exc.__class__.__name__}: {exc}")
                return TierOutcome.failure(self.name, "disabled", str(exc))
            return TierOutcome.failure(self.name, "error", f"{exc.__class__.__name__}: {exc}")

        if not top5:
            return TierOutcome.failure(self.name, "empty", "no predictions")
        return TierOutcome.success(self.name, adapt_predictions(top5, self.threshold, self.margin))
