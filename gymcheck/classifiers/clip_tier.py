"""Tier 1: zero-shot scene classification with OpenCLIP."""

from __future__ import annotations

import asyncio
import logging
from functools import partial
from typing import Any, Dict, List, Sequence

from PIL import Image

from gymcheck.classifiers.base import LazyModel, SceneTier, TierDisabled, TierOutcome, is_native_load_error
from gymcheck.shared.contract import ClassificationResult
from gymcheck.shared.decision import rank_scores
from gymcheck.shared.preprocess import PreparedImage, ensure_rgb

LOGGER = logging.getLogger(__name__)

PROMPT_TEMPLATE = "a photo of a {}"


def load_clip_runtime(model_name: str, pretrained: str) -> Dict[str, Any]:
    import open_clip  # heavy import, deferred to first use
    import torch

    device = "cuda" if torch.cuda.is_available() else "cpu"
    model, _, preprocess = open_clip.create_model_and_transforms(model_name, pretrained=pretrained)
    model.to(device)
    model.eval()
    return {
        "torch": torch,
        "model": model,
        "preprocess": preprocess,
        "tokenizer": open_clip.get_tokenizer(model_name),
        "device": device,
        "text_cache": {},
    }


def _text_features(rt: Dict[str, Any], labels: Sequence[str]):
    key = tuple(labels)
    cached = rt["text_cache"].get(key)
    if cached is not None:
        return cached
    torch = rt["torch"]
    tokens = rt["tokenizer"]([PROMPT_TEMPLATE.format(label) for label in labels]).to(rt["device"])
    with torch.no_grad():
        feats = rt["model"].encode_text(tokens)
        feats /= feats.norm(dim=-1, keepdim=True)
    rt["text_cache"][key] = feats
    return feats


def score_labels(rt: Dict[str, Any], img: Image.Image, labels: Sequence[str]) -> Dict[str, float]:
    """Softmax scores over ``labels`` for one image (blocking)."""

    if not labels:
        return {}
    torch = rt["torch"]
    image_input = rt["preprocess"](ensure_rgb(img)).unsqueeze(0).to(rt["device"])
    text_features = _text_features(rt, labels)
    with torch.no_grad():
        image_features = rt["model"].encode_image(image_input)
        image_features /= image_features.norm(dim=-1, keepdim=True)
        similarity = (100.0 * image_features @ text_features.T).softmax(dim=-1)
        scores = similarity[0].cpu().tolist()
    return dict(zip(labels, scores))


class ClipSceneTier(SceneTier):
    name = "clip"

    def __init__(
        self,
        labels: Sequence[str],
        model_name: str = "ViT-B-32",
        pretrained: str = "openai",
        timeout_s: float = 60.0,
    ) -> None:
        self.labels: List[str] = list(labels)
        self.model_id = f"{model_name}/{pretrained}"
        self.timeout_s = timeout_s
        self.model = LazyModel("clip", partial(load_clip_runtime, model_name, pretrained))

    @property
    def budget_s(self) -> float:
        return self.timeout_s

    @property
    def disabled(self) -> bool:
        return self.model.disabled

    async def classify(self, prepared: PreparedImage) -> TierOutcome:
        if self.model.disabled:
            return TierOutcome.failure(self.name, "disabled", self.model.disabled_reason)
        try:
            rt = await self.model.get()
            scores = await asyncio.to_thread(score_labels, rt, prepared.image, self.labels)
        except TierDisabled as exc:
            return TierOutcome.failure(self.name, "disabled", str(exc))
        except Exception as exc:  # noqa: BLE001 - tier failures become outcomes
            if is_native_load_error(exc):
                self.model.disable(f"{exc.__class__.__name__}: {exc}")
                return TierOutcome.failure(self.name, "disabled", str(exc))
            return TierOutcome.failure(self.name, "error", f"{exc.__class__.__name__}: {exc}")

        if not scores:
            return TierOutcome.failure(self.name, "empty", "no scores returned")

        ranked = rank_scores(scores, k=3)
        result: ClassificationResult = {
            "top_prediction": ranked[0]["label"],
            "confidence": ranked[0]["score"],
            "ranked": ranked,
            "model": self.model_id,
            "tier": "clip",
        }
        return TierOutcome.success(self.name, result)
