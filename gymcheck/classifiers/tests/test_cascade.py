from __future__ import annotations

import asyncio

from PIL import Image

from gymcheck.classifiers import cascade as cascade_mod
from gymcheck.classifiers.base import SceneTier, TierOutcome
from gymcheck.classifiers.cascade import ClassifierCascade
from gymcheck.shared.preprocess import PreparedImage
from gymcheck.shared.settings import Settings


def _prepared() -> PreparedImage:
    img = Image.new("RGB", (640, 640), (120, 110, 100))
    return PreparedImage(data=b"", image=img, width=640, height=640, size_bytes=0, mime="image/jpeg")


def _result(label: str, conf: float, tier: str):
    return {
        "top_prediction": label,
        "confidence": conf,
        "ranked": [{"label": label, "score": conf}],
        "model": f"{tier}-model",
        "tier": tier,
    }


class _Tier(SceneTier):
    def __init__(self, name: str, outcome=None, exc: Exception | None = None, delay: float = 0.0, budget: float = 5.0):
        self.name = name
        self._outcome = outcome
        self._exc = exc
        self._delay = delay
        self._budget = budget
        self.calls = 0

    @property
    def budget_s(self) -> float:
        return self._budget

    async def classify(self, prepared: PreparedImage) -> TierOutcome:
        self.calls += 1
        if self._delay:
            await asyncio.sleep(self._delay)
        if self._exc is not None:
            raise self._exc
        return self._outcome


def test_first_success_wins_and_later_tiers_are_skipped() -> None:
    first = _Tier("clip", TierOutcome.success("clip", _result("gym interior", 0.8, "clip")))
    second = _Tier("legacy", TierOutcome.success("legacy", _result("sofa", 0.9, "legacy")))

    result = asyncio.run(ClassifierCascade([first, second]).classify(_prepared()))

    assert result["tier"] == "clip"
    assert "failures" not in result
    assert second.calls == 0


def test_falls_through_to_next_tier_and_keeps_failures() -> None:
    first = _Tier("clip", TierOutcome.failure("clip", "disabled", "no torch"))
    second = _Tier("legacy", TierOutcome.success("legacy", _result("gym interior", 0.5, "legacy")))

    result = asyncio.run(ClassifierCascade([first, second]).classify(_prepared()))

    assert result["tier"] == "legacy"
    assert result["failures"] == ["clip:disabled"]


def test_all_tiers_failing_yields_canonical_uncertain() -> None:
    tiers = [
        _Tier("clip", exc=RuntimeError("boom")),
        _Tier("legacy", delay=0.5, budget=0.01),
        _Tier("remote", TierOutcome.failure("remote", "provider_error", "http_429")),
    ]

    result = asyncio.run(ClassifierCascade(tiers).classify(_prepared()))

    assert result["top_prediction"] == "uncertain"
    assert result["confidence"] == 0.2
    assert result["ranked"] == [{"label": "uncertain", "score": 0.2}]
    assert result["model"] == "none"
    assert result["tier"] == "none"
    assert result["failures"] == ["clip:error", "legacy:timeout", "remote:provider_error"]


def test_empty_cascade_is_uncertain() -> None:
    result = asyncio.run(ClassifierCascade([]).classify(_prepared()))

    assert result["model"] == "none"


def test_build_cascade_shares_local_tiers() -> None:
    settings = Settings()

    profile = cascade_mod.build_cascade(settings, include_remote=False)
    checkin = cascade_mod.build_cascade(settings, include_remote=True)

    assert profile.tier_names == ["clip", "legacy"]
    assert checkin.tier_names == ["clip", "legacy", "remote"]
    assert profile.tiers[0] is checkin.tiers[0]
    assert profile.tiers[1] is checkin.tiers[1]
