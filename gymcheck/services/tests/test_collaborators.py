from __future__ import annotations

from gymcheck.services.collaborators import (
    AttemptCounter,
    InMemoryAuditSink,
    InMemoryCheckinStore,
    RateLimiter,
    StaticFoodLookup,
    build_audit_record,
)
from gymcheck.shared.contract import REASON_AI_UNAVAILABLE, canonical_uncertain
from gymcheck.shared.decision import decide_verification


NO_GPS = {
    "gps_provided": False,
    "geofence_match": False,
    "nearest_distance_meters": None,
    "nearest_location_id": None,
}


class _Clock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


def test_rate_limiter_window_slides() -> None:
    clock = _Clock()
    limiter = RateLimiter(limit=3, window_s=60.0, clock=clock)

    assert [limiter.allow("u1") for _ in range(4)] == [True, True, True, False]
    assert limiter.allow("u2") is True

    clock.now += 59.0
    assert limiter.allow("u1") is False
    clock.now += 1.0
    assert limiter.allow("u1") is True


def test_rate_limiter_forgets_idle_users() -> None:
    clock = _Clock()
    limiter = RateLimiter(limit=3, window_s=60.0, clock=clock)
    for i in range(50):
        limiter.allow(f"user-{i}")
    assert limiter.tracked_keys() == 50

    clock.now += 61.0
    limiter.allow("fresh")

    assert limiter.tracked_keys() == 1


def test_audit_sink_keeps_only_recent_records() -> None:
    sink = InMemoryAuditSink(max_records=3)

    for i in range(5):
        sink.record({"user_id": f"u{i}", "verified": False, "confidence": 0.0})

    assert [r["user_id"] for r in sink.records] == ["u2", "u3", "u4"]


def test_attempt_counter_is_per_user_and_day() -> None:
    counter = AttemptCounter()

    assert counter.increment("u1", "2026-03-01") == 1
    assert counter.increment("u1", "2026-03-01") == 2
    assert counter.get("u1", "2026-03-02") == 0
    assert counter.get("u2", "2026-03-01") == 0

    counter.clear("u1", "2026-03-01")
    assert counter.get("u1", "2026-03-01") == 0


def test_audit_record_from_unavailable_classification() -> None:
    classification = canonical_uncertain(["clip:disabled", "legacy:disabled"])
    decision = decide_verification(classification, NO_GPS, "gallery")
    sink = InMemoryAuditSink()

    record = build_audit_record(
        user_id="u1",
        classification=classification,
        geofence=NO_GPS,
        decision=decision,
        reason=REASON_AI_UNAVAILABLE,
        provenance="gallery",
        server_timestamp="2026-03-01T10:00:00Z",
    )
    sink.record(record)

    assert record["verified"] is False
    assert record["classification_model"] == "none"
    assert record["top_prediction"] == "uncertain"
    assert record["manual_review_flag"] is True
    assert record["trust_level"] == "low"
    assert record["checks"]["gps_provided"] is False
    assert record["checks"]["upload_source"] == "gallery"
    assert record["thresholds"] == {"threshold": 0.40, "margin": 0.05}
    assert record["latitude"] is None
    assert list(sink.records) == [record]


def test_checkin_upsert_keeps_id() -> None:
    store = InMemoryCheckinStore()

    first = store.upsert("u1", "2026-03-01", ai_score=0.6)
    second = store.upsert("u1", "2026-03-01", ai_score=0.9, relaxed=True)

    assert second.checkin_id == first.checkin_id
    assert store.find("u1", "2026-03-01").ai_score == 0.9
    assert store.find("u1", "2026-03-02") is None


def test_food_lookup_matches_both_ways() -> None:
    lookup = StaticFoodLookup(
        [
            {"food_id": "f1", "name": "Chicken breast", "macros_per_100g": {"kcal": 165}},
            {"food_id": "f2", "name": "Rice", "macros_per_100g": {"kcal": 130}},
        ]
    )

    assert [f["food_id"] for f in lookup.search("chicken")] == ["f1"]
    assert [f["food_id"] for f in lookup.search("Fried rice")] == ["f2"]
    assert lookup.search("  ") == []
    assert StaticFoodLookup().search("rice") == []
