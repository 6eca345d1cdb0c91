"""Decision fusion: classification + geofence + capture provenance -> verdict.

Everything here is pure. Thresholds are passed in by the caller so identical
inputs always yield identical results.
"""

from __future__ import annotations

from typing import Any, Dict, List, Mapping, Optional, Sequence

import numpy as np

from gymcheck.shared.contract import (
    REASON_FALLBACK,
    REASON_LOW_CONFIDENCE,
    REASON_NOT_GYM,
    REASON_RELAXED,
    REASON_SMALL_MARGIN,
    REASON_UNCERTAIN,
    REASON_VERIFIED,
    UNCERTAIN_LABEL,
    ClassificationResult,
    DecisionResult,
    GeofenceResult,
    RankedLabel,
    is_gym_label,
)

DEFAULT_THRESHOLDS: Dict[str, float] = {
    "threshold": 0.40,
    "margin": 0.05,
    "manual_review_min": 0.35,
    "manual_review_max": 0.50,
    "relaxed_min": 0.35,
}


def _as_float(value: Any, default: float) -> float:
    if value is None:
        return default
    return float(value)


def softmax(logits: np.ndarray) -> np.ndarray:
    logits = np.asarray(logits, dtype=np.float64).squeeze()
    logits = logits - np.max(logits)
    exp = np.exp(logits)
    return exp / np.sum(exp)


def rank_scores(scores: Mapping[str, float], k: int = 3) -> List[RankedLabel]:
    """Top-k labels sorted by score (descending), scores rounded to 2 decimals."""

    ordered = sorted(scores.items(), key=lambda kv: float(kv[1]), reverse=True)
    return [{"label": str(label), "score": round(float(score), 2)} for label, score in ordered[: max(0, k)]]


def compute_margin(ranked: Sequence[Mapping[str, Any]], confidence: float) -> float:
    top1 = float(ranked[0].get("score", confidence)) if ranked else float(confidence)
    top2 = float(ranked[1].get("score", 0.0)) if len(ranked) > 1 else 0.0
    # Scores carry 2 decimals; keep float noise out of the >= comparison.
    return round(top1 - top2, 4)


def _trust_level(verified: bool, geofence: GeofenceResult, provenance: str) -> str:
    if not verified:
        return "low"
    if geofence.get("geofence_match") and provenance == "camera":
        return "high"
    # Verified but one of: GPS outside the fence, gallery upload, no GPS at all.
    return "medium"


def _reason(
    verified: bool,
    is_uncertain: bool,
    gym_related: bool,
    above_threshold: bool,
    margin_ok: bool,
) -> str:
    if verified:
        return REASON_VERIFIED
    if is_uncertain:
        return REASON_UNCERTAIN
    if not gym_related:
        return REASON_NOT_GYM
    if not above_threshold:
        return REASON_LOW_CONFIDENCE
    if not margin_ok:
        return REASON_SMALL_MARGIN
    return REASON_FALLBACK


def decide_verification(
    classification: ClassificationResult,
    geofence: GeofenceResult,
    provenance: str = "unknown",
    thresholds: Optional[Mapping[str, Any]] = None,
    *,
    relaxed: bool = False,
) -> DecisionResult:
    """Fuse one classification with geofence and provenance into a verdict.

    ``relaxed`` enables the check-in safety net: a gym-related label at or above
    the relaxed floor is accepted even when threshold/margin fail.
    """

    th = dict(DEFAULT_THRESHOLDS)
    th.update(thresholds or {})
    threshold = _as_float(th.get("threshold"), 0.40)
    margin_th = _as_float(th.get("margin"), 0.05)
    review_min = _as_float(th.get("manual_review_min"), 0.35)
    review_max = _as_float(th.get("manual_review_max"), 0.50)
    relaxed_min = _as_float(th.get("relaxed_min"), 0.35)

    top_label = str(classification.get("top_prediction", "") or "")
    confidence = float(classification.get("confidence", 0.0) or 0.0)
    ranked = list(classification.get("ranked", []) or [])

    gym_related = is_gym_label(top_label)
    above_threshold = confidence >= threshold
    margin_ok = compute_margin(ranked, confidence) >= margin_th
    verified = gym_related and above_threshold and margin_ok
    is_uncertain = top_label.strip().lower() == UNCERTAIN_LABEL

    manual_review = is_uncertain or (review_min <= confidence <= review_max)

    relaxed_applied = False
    if not verified and relaxed and gym_related and confidence >= relaxed_min:
        relaxed_applied = True

    if relaxed_applied:
        reason = REASON_RELAXED
        trust = "low"
    else:
        reason = _reason(verified, is_uncertain, gym_related, above_threshold, margin_ok)
        trust = _trust_level(verified, geofence, provenance)

    result: DecisionResult = {
        "verified": verified or relaxed_applied,
        "reason": reason,
        "manual_review_flag": manual_review,
        "trust_level": trust,  # type: ignore[typeddict-item]
        "thresholds": {"threshold": threshold, "margin": margin_th},
        "relaxed_applied": relaxed_applied,
    }
    return result
