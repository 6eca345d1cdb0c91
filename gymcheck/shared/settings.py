"""Environment-driven configuration for the verification and meal-scan services."""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Optional

LOGGER = logging.getLogger(__name__)

DEFAULT_SCENE_LABELS = [
    "gym interior",
    "fitness center",
    "workout room",
    "weight room",
    "home interior",
    "office",
    "restaurant",
    "outdoor street",
    "bedroom",
    "shop interior",
]

DEFAULT_MEAL_MODELS = [
    "google/gemma-3-12b-it:free",
    "google/gemma-3-4b-it:free",
]


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError:
        LOGGER.warning("Ignoring malformed %s=%r, using %s", name, raw, default)
        return default


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(float(raw))
    except ValueError:
        LOGGER.warning("Ignoring malformed %s=%r, using %s", name, raw, default)
        return default


def _env_labels(name: str, default: list[str]) -> list[str]:
    raw = os.getenv(name)
    if not raw:
        return list(default)
    try:
        parsed = json.loads(raw)
    except ValueError:
        return list(default)
    if not isinstance(parsed, list):
        return list(default)
    labels = [x for x in parsed if isinstance(x, str) and x.strip()]
    return labels or list(default)


def _env_csv(name: str, default: list[str]) -> list[str]:
    raw = os.getenv(name)
    if not raw:
        return list(default)
    items = [x.strip() for x in raw.split(",") if x.strip()]
    return items or list(default)


@dataclass(frozen=True)
class Settings:
    # Decision fusion
    threshold: float = 0.40
    margin: float = 0.05
    manual_review_min: float = 0.35
    manual_review_max: float = 0.50
    relaxed_min_confidence: float = 0.35
    relaxed_after_attempts: int = 2

    # Geofence
    geofence_radius_m: float = 100.0
    checkin_geofence_radius_m: float = 300.0
    locations_json: str = ""

    # Tier 1 / tier 2 (local)
    scene_labels: list[str] = field(default_factory=lambda: list(DEFAULT_SCENE_LABELS))
    clip_model: str = "ViT-B-32"
    clip_pretrained: str = "openai"
    legacy_onnx_path: str = "models/mobilenetv2_imagenet.onnx"
    legacy_labels_path: str = "models/imagenet_labels.json"
    inference_timeout_s: float = 60.0

    # Tier 3 / meal scan (remote)
    openrouter_api_key: Optional[str] = None
    openrouter_gym_model: str = "google/gemma-3-12b-it:free"
    openrouter_meal_models: list[str] = field(default_factory=lambda: list(DEFAULT_MEAL_MODELS))
    remote_timeout_s: float = 15.0
    meal_timeout_s: float = 14.0
    max_retries: int = 2

    # Upload bounds
    max_upload_bytes: int = 5 * 1024 * 1024
    meal_max_upload_bytes: int = 8 * 1024 * 1024

    rate_limit_per_minute: int = 10

    def thresholds(self) -> dict[str, float]:
        return {
            "threshold": self.threshold,
            "margin": self.margin,
            "manual_review_min": self.manual_review_min,
            "manual_review_max": self.manual_review_max,
            "relaxed_min": self.relaxed_min_confidence,
        }


def load_settings() -> Settings:
    api_key = os.getenv("OPENROUTER_API_KEY") or None
    return Settings(
        threshold=_env_float("GYM_VERIFY_THRESHOLD", 0.40),
        margin=_env_float("GYM_VERIFY_MARGIN", 0.05),
        manual_review_min=_env_float("GYM_VERIFY_MANUAL_REVIEW_MIN", 0.35),
        manual_review_max=_env_float("GYM_VERIFY_MANUAL_REVIEW_MAX", 0.50),
        relaxed_min_confidence=_env_float("GYM_VERIFY_RELAXED_MIN", 0.35),
        geofence_radius_m=_env_float("GYM_GEOFENCE_RADIUS_METERS", 100.0),
        checkin_geofence_radius_m=_env_float("GYM_CHECKIN_GEOFENCE_METERS", 300.0),
        locations_json=os.getenv("GYM_LOCATIONS_JSON", ""),
        scene_labels=_env_labels("GYM_VERIFY_LABELS_JSON", DEFAULT_SCENE_LABELS),
        clip_model=os.getenv("GYM_VERIFY_CLIP_MODEL", "ViT-B-32"),
        clip_pretrained=os.getenv("GYM_VERIFY_CLIP_PRETRAINED", "openai"),
        legacy_onnx_path=os.getenv("GYM_VERIFY_LEGACY_ONNX", "models/mobilenetv2_imagenet.onnx"),
        legacy_labels_path=os.getenv("GYM_VERIFY_LEGACY_LABELS", "models/imagenet_labels.json"),
        inference_timeout_s=_env_int("GYM_VERIFY_INFERENCE_TIMEOUT_MS", 60_000) / 1000.0,
        openrouter_api_key=api_key,
        openrouter_gym_model=os.getenv("OPENROUTER_GYM_MODEL", "google/gemma-3-12b-it:free"),
        openrouter_meal_models=_env_csv("OPENROUTER_MEAL_MODELS", DEFAULT_MEAL_MODELS),
        remote_timeout_s=_env_int("GYM_VERIFY_REMOTE_TIMEOUT_MS", 15_000) / 1000.0,
        meal_timeout_s=_env_int("MEAL_SCAN_TIMEOUT_MS", 14_000) / 1000.0,
        max_retries=max(0, _env_int("OPENROUTER_MAX_RETRIES", 2)),
        max_upload_bytes=_env_int("MAX_UPLOAD_SIZE_MB", 5) * 1024 * 1024,
        meal_max_upload_bytes=_env_int("MEAL_MAX_UPLOAD_MB", 8) * 1024 * 1024,
        rate_limit_per_minute=_env_int("RATE_LIMIT_PER_MINUTE", 10),
    )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return load_settings()
