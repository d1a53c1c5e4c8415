import pytest

from src.shared.batch.quota import QuotaConfig, QuotaTracker, parse_reset_hint


def _tracker(clock, **overrides) -> QuotaTracker:
    config = QuotaConfig(**{"safety_buffer": 0, "calibrate_from_usage": False, **overrides})
    return QuotaTracker(config, clock=clock)


@pytest.mark.parametrize(
    "hint, expected",
    [
        (20, 20.0),
        ("1.5", 1.5),
        ("45s", 45.0),
        ("1m30s", 90.0),
        ("6m0s", 360.0),
        ("120ms", 0.12),
        ("", None),
        ("soon", None),
        (None, None),
        (-3, None),
    ],
)
def test_parse_reset_hint(hint, expected):
    assert parse_reset_hint(hint) == expected


def test_no_feedback_proceeds_with_default_batch_size(clock):
    tracker = _tracker(clock)

    status = tracker.check_budget(50_000)

    assert status.can_proceed is True
    assert status.suggested_delay == 0
    assert status.recommended_batch_size == 10
    assert tracker.should_throttle() is False
    assert tracker.remaining_budget().amount == 200_000


def test_insufficient_budget_shrinks_batch_and_waits_for_reset(clock):
    tracker = _tracker(clock)
    tracker.record_feedback(5000, 20)

    status = tracker.check_budget(10 * 1900)

    assert status.can_proceed is True
    assert status.recommended_batch_size == 2
    assert status.suggested_delay == 21
    assert "Insufficient tokens" in status.reason


def test_exhausted_budget_cannot_proceed(clock):
    tracker = _tracker(clock, safety_buffer=10_000)
    tracker.record_feedback(5000, "30s")

    status = tracker.check_budget(1900)

    assert status.can_proceed is False
    assert status.recommended_batch_size == 1
    assert status.suggested_delay == 31


def test_burst_detection_suggests_spreading_requests(clock):
    tracker = _tracker(clock, tokens_per_minute_limit=10_000)
    tracker.record_feedback(9000, 60, tokens_used=8000)

    status = tracker.check_budget(3800)

    assert status.can_proceed is True
    assert status.suggested_delay == 29
    assert status.recommended_batch_size == 2
    assert "High usage" in status.reason


def test_usage_window_forgets_old_requests(clock):
    tracker = _tracker(clock, tokens_per_minute_limit=10_000)
    tracker.record_feedback(9000, tokens_used=8000)

    clock.advance(61)
    tracker.record_feedback(9000)

    assert tracker.snapshot().observed_rate_per_minute == 0
    assert tracker.check_budget(3800).suggested_delay == 0


def test_usage_is_inferred_from_remaining_delta(clock):
    tracker = _tracker(clock)
    tracker.record_feedback(100_000)
    tracker.record_feedback(98_000)

    assert tracker.snapshot().observed_rate_per_minute == 2000
    assert tracker.get_stats()["tokens_per_request"] == 2000


def test_budget_refills_after_reset_time(clock):
    tracker = _tracker(clock)
    tracker.record_feedback(1000, "10s")
    assert tracker.remaining_budget().time_to_reset == 10

    clock.advance(11)

    assert tracker.remaining_budget().amount == 200_000
    assert tracker.check_budget(19_000).suggested_delay == 0


def test_record_headers_is_case_insensitive(clock):
    tracker = _tracker(clock)

    tracker.record_headers({"X-RateLimit-Remaining-Tokens": "150000", "X-RateLimit-Reset-Tokens": "1m"})

    snapshot = tracker.snapshot()
    assert snapshot.remaining == 150_000
    assert snapshot.reset_at == 60


def test_estimate_cost_for_full_and_cheaper_items(clock):
    tracker = _tracker(clock)

    full = tracker.estimate_cost(2)
    cheaper = tracker.estimate_cost(3, cheaper=True)

    assert (full.analysis_tokens, full.prompt_tokens, full.total_tokens) == (3000, 800, 3800)
    assert cheaper.analysis_tokens == 0
    assert cheaper.total_tokens == 600
    assert full.estimated_cost == pytest.approx(3.8 * 0.00015)


def test_calibration_scales_estimates_to_observed_usage(clock):
    tracker = _tracker(clock, calibrate_from_usage=True)
    tracker.record_feedback(100_000, tokens_used=950)

    assert tracker.estimate_cost(2).total_tokens == 1900


def test_should_throttle_requires_minimum_interval(clock):
    tracker = _tracker(clock)
    tracker.record_feedback(150_000)

    clock.advance(0.5)
    assert tracker.should_throttle() is True

    clock.advance(1.0)
    assert tracker.should_throttle() is False


def test_optimal_batch_size_is_a_quarter_of_affordable_items(clock):
    tracker = _tracker(clock)
    tracker.record_feedback(19_000)

    assert tracker.optimal_batch_size(100) == 2
    assert tracker.optimal_batch_size(1) == 1
