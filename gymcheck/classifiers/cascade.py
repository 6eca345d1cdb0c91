"""Ordered tier fallback: first usable result wins, total failure becomes "uncertain"."""

from __future__ import annotations

import asyncio
import logging
import time
from functools import lru_cache
from typing import List, Sequence, Tuple

from gymcheck.classifiers.base import SceneTier, TierOutcome
from gymcheck.classifiers.clip_tier import ClipSceneTier
from gymcheck.classifiers.legacy_tier import LegacyKeywordTier
from gymcheck.classifiers.remote_tier import RemoteLLMTier
from gymcheck.shared.contract import ClassificationResult, canonical_uncertain
from gymcheck.shared.preprocess import PreparedImage
from gymcheck.shared.settings import Settings, get_settings

LOGGER = logging.getLogger(__name__)


class ClassifierCascade:
    def __init__(self, tiers: Sequence[SceneTier]) -> None:
        self.tiers: List[SceneTier] = list(tiers)

    @property
    def tier_names(self) -> List[str]:
        return [t.name for t in self.tiers]

    async def _run_tier(self, tier: SceneTier, prepared: PreparedImage) -> TierOutcome:
        try:
            return await asyncio.wait_for(tier.classify(prepared), timeout=tier.budget_s)
        except asyncio.TimeoutError:
            return TierOutcome.failure(tier.name, "timeout", f"exceeded {tier.budget_s:.1f}s")
        except Exception as exc:  # noqa: BLE001 - a broken tier must not unwind the cascade
            return TierOutcome.failure(tier.name, "error", f"{exc.__class__.__name__}: {exc}")

    async def classify(self, prepared: PreparedImage) -> ClassificationResult:
        """Never raises. Failures of skipped tiers ride along in ``failures``."""

        failures: List[str] = []
        for tier in self.tiers:
            t0 = time.perf_counter()
            outcome = await self._run_tier(tier, prepared)
            elapsed_ms = int(round((time.perf_counter() - t0) * 1000.0))
            if outcome.ok and outcome.result is not None:
                LOGGER.info(
                    "[cascade] tier=%s label=%s confidence=%.2f latency_ms=%d",
                    tier.name,
                    outcome.result.get("top_prediction"),
                    float(outcome.result.get("confidence", 0.0)),
                    elapsed_ms,
                )
                result = dict(outcome.result)
                if failures:
                    result["failures"] = list(failures)
                return result  # type: ignore[return-value]

            failures.append(f"{tier.name}:{outcome.code}")
            LOGGER.warning(
                "[cascade] tier=%s failed code=%s detail=%s latency_ms=%d",
                tier.name,
                outcome.code,
                outcome.detail,
                elapsed_ms,
            )

        LOGGER.warning("[cascade] all tiers failed: %s", ",".join(failures) or "no tiers")
        return canonical_uncertain(failures)


@lru_cache(maxsize=4)
def _clip_tier(labels: Tuple[str, ...], model: str, pretrained: str, timeout_s: float) -> ClipSceneTier:
    return ClipSceneTier(labels, model_name=model, pretrained=pretrained, timeout_s=timeout_s)


@lru_cache(maxsize=4)
def _legacy_tier(
    onnx_path: str, labels_path: str, threshold: float, margin: float, timeout_s: float
) -> LegacyKeywordTier:
    return LegacyKeywordTier(
        onnx_path, labels_path, threshold=threshold, margin=margin, timeout_s=timeout_s
    )


def local_tiers(settings: Settings) -> List[SceneTier]:
    """Process-wide local tiers, so each model loads once however many cascades use it."""

    return [
        _clip_tier(
            tuple(settings.scene_labels),
            settings.clip_model,
            settings.clip_pretrained,
            settings.inference_timeout_s,
        ),
        _legacy_tier(
            settings.legacy_onnx_path,
            settings.legacy_labels_path,
            settings.threshold,
            settings.margin,
            settings.inference_timeout_s,
        ),
    ]


def build_cascade(settings: Settings | None = None, *, include_remote: bool = False) -> ClassifierCascade:
    settings = settings or get_settings()
    tiers = local_tiers(settings)
    if include_remote:
        tiers.append(
            RemoteLLMTier(
                settings.openrouter_api_key,
                settings.openrouter_gym_model,
                timeout_s=settings.remote_timeout_s,
                max_retries=settings.max_retries,
            )
        )
    return ClassifierCascade(tiers)
