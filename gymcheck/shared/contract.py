"""Response and payload shapes shared by the verification and meal-scan services.

Kept stdlib-only so it can be imported anywhere (tiers, decision layer, tests)
without pulling in model runtimes.
"""

from __future__ import annotations

from typing import Any, Dict, List, Literal, Optional, TypedDict


UploadSource = Literal["camera", "gallery", "unknown"]
TrustLevel = Literal["high", "medium", "low"]
TierName = Literal["clip", "legacy", "remote", "none"]

RejectionCode = Literal[
    "invalid_file",
    "unsupported_format",
    "too_small",
    "too_large",
    "screenshot_suspected",
    "too_dark",
    "no_equipment",
    "provider_error",
    "parse_error",
    "invalid_input",
]

UNCERTAIN_LABEL = "uncertain"
UNCERTAIN_CONFIDENCE = 0.2

GYM_SCENE_LABELS = ("gym interior", "fitness center", "workout room", "weight room")


class RankedLabel(TypedDict):
    label: str
    score: float


class ClassificationResult(TypedDict, total=False):
    top_prediction: str
    confidence: float
    ranked: List[RankedLabel]
    model: str
    tier: TierName
    failures: List[str]


class GeofenceResult(TypedDict):
    gps_provided: bool
    geofence_match: bool
    nearest_distance_meters: Optional[float]
    nearest_location_id: Optional[str]


class DecisionResult(TypedDict):
    verified: bool
    reason: str
    manual_review_flag: bool
    trust_level: TrustLevel
    thresholds: Dict[str, float]
    relaxed_applied: bool


class VerificationResponse(TypedDict, total=False):
    status: Literal["success", "error"]
    request_id: str
    code: str
    message: str
    data: Optional[Dict[str, Any]]


REASON_VERIFIED = "Scene classified as gym with sufficient confidence."
REASON_UNCERTAIN = "Classification uncertain; manual review may be required."
REASON_NOT_GYM = "Image does not appear to be a gym (e.g. fitness center, workout room)."
REASON_LOW_CONFIDENCE = "Low confidence: please capture a clearer view of the gym."
REASON_SMALL_MARGIN = "Classification uncertain; try a clearer photo of the gym."
REASON_FALLBACK = "Verification could not confirm gym scene."
REASON_RELAXED = "Gym scene accepted after repeated attempts (relaxed confidence floor)."
REASON_AI_UNAVAILABLE = "AI service unavailable or inconclusive."


MESSAGES: Dict[str, str] = {
    "invalid_file": "Invalid image file.",
    "unsupported_format": "Unsupported image format. Use JPEG, PNG or WebP.",
    "too_small": "Image is too small. Take a sharper photo.",
    "too_large": "Image is too large. Try again with a lighter image.",
    "screenshot_suspected": "This image looks like a screenshot. Take a real photo at the gym.",
    "too_dark": "Photo is too dark. Light up the scene or move closer to a light source.",
    "no_equipment": "Not enough gym equipment visible. Frame a machine, dumbbells or the mirror.",
    "provider_error": "The verification service is temporarily unavailable. Try again.",
    "parse_error": "Analysis unavailable right now. You can add the foods manually.",
    "invalid_input": "Image required. Take a photo or pick one from the gallery.",
}

TIPS: Dict[str, List[str]] = {
    "provider_error": [
        "The verification service is temporarily unavailable.",
        "Try again in a few moments or check your connection.",
    ],
    "too_dark": [
        "Light up the scene or move closer to a light source.",
        "Avoid taking photos in the dark.",
    ],
    "no_equipment": [
        "Frame a machine, dumbbells, a rack or the gym mirror.",
        "Step back so the equipment fits in the picture.",
    ],
    "screenshot_suspected": [
        "Use the in-app camera to take a real photo.",
        "Screenshots are not accepted.",
    ],
    "invalid_file": [
        "Make sure the photo is sharp and well framed.",
        "Take the photo again with the camera.",
    ],
    "unsupported_format": [
        "Use a JPEG, PNG or WebP photo.",
    ],
    "too_large": [
        "Use a lighter image or lower the camera resolution.",
    ],
    "too_small": [
        "Take the photo closer and make sure it is in focus.",
    ],
}

DEFAULT_TIPS = [
    "Take a photo with a machine or dumbbells clearly visible.",
    "Frame gym equipment (cable machine, bench, rack).",
]


def tips_for(code: str) -> List[str]:
    return list(TIPS.get(code, DEFAULT_TIPS))


def message_for(code: str) -> str:
    return MESSAGES.get(code, MESSAGES["invalid_file"])


def canonical_uncertain(failures: Optional[List[str]] = None) -> ClassificationResult:
    """Stand-in result when no tier produced a usable classification."""

    result: ClassificationResult = {
        "top_prediction": UNCERTAIN_LABEL,
        "confidence": UNCERTAIN_CONFIDENCE,
        "ranked": [{"label": UNCERTAIN_LABEL, "score": UNCERTAIN_CONFIDENCE}],
        "model": "none",
        "tier": "none",
        "failures": list(failures or []),
    }
    return result


def is_gym_label(label: str) -> bool:
    lower = str(label or "").strip().lower()
    return any(g in lower for g in GYM_SCENE_LABELS)
