"""Tests for campaign opportunity detection."""

from datetime import timedelta

import pytest

from autopilot.errors import NotFoundError
from autopilot.models import ActionType, MetricSnapshot, Priority
from autopilot.opportunities import (
    OpportunityDetector,
    detect_engagement_decline,
    detect_missing_experiment,
    detect_suboptimal_timing,
)
from tests.mocks.campaigns import make_snapshots, seed_campaign


def _types(opportunities):
    return {o.type for o in opportunities}


def _snapshots(docs):
    return [MetricSnapshot.from_dict(d) for d in docs]


# =============================================================================
# ENGAGEMENT DECLINE
# =============================================================================

def test_decline_detected_below_eighty_percent(t0):
    snapshots = _snapshots(make_snapshots("camp_1", [0.28] * 3 + [0.40] * 3, t0))

    opportunity = detect_engagement_decline("camp_1", snapshots)

    assert opportunity.type == ActionType.CONTENT_VARIATION
    assert opportunity.priority == Priority.HIGH
    assert opportunity.metrics["recent_engagement"] == pytest.approx(0.28)
    assert opportunity.metrics["previous_engagement"] == pytest.approx(0.40)
    assert opportunity.metrics["percent_change"] == pytest.approx(-30.0)


def test_small_decline_is_ignored(t0):
    snapshots = _snapshots(make_snapshots("camp_1", [0.33] * 3 + [0.40] * 3, t0))
    assert detect_engagement_decline("camp_1", snapshots) is None


def test_decline_needs_six_snapshots(t0):
    snapshots = _snapshots(make_snapshots("camp_1", [0.10] * 3 + [0.40] * 2, t0))
    assert detect_engagement_decline("camp_1", snapshots) is None


def test_zero_opens_counts_as_zero_engagement(t0):
    docs = make_snapshots("camp_1", [0.40] * 6, t0)
    for doc in docs[:3]:
        doc["opens"] = 0
        doc["clicks"] = 0

    opportunity = detect_engagement_decline("camp_1", _snapshots(docs))

    assert opportunity is not None
    assert opportunity.metrics["recent_engagement"] == 0


# =============================================================================
# TIMING
# =============================================================================

def _mixed_schedule_snapshots(t0, scheduled_ratio, other_ratio):
    monday = make_snapshots("camp_1", [scheduled_ratio] * 3, t0)
    tuesday_afternoon = t0 + timedelta(days=1, hours=5) - timedelta(days=21)
    tuesday = make_snapshots("camp_1", [other_ratio] * 3, tuesday_afternoon)
    return monday + tuesday


def test_better_send_slot_detected(t0):
    snapshots = _snapshots(_mixed_schedule_snapshots(t0, 0.10, 0.30))
    campaign = {"channel_type": "email", "schedule": {"day": 0, "hour": 9}}

    opportunity = detect_suboptimal_timing("camp_1", snapshots, campaign)

    assert opportunity.type == ActionType.SCHEDULE_ADJUSTMENT
    assert opportunity.priority == Priority.MEDIUM
    assert opportunity.metrics["recommended_day"] == 1
    assert opportunity.metrics["recommended_hour"] == 14
    assert opportunity.metrics["current_rate"] == pytest.approx(0.10)
    assert opportunity.metrics["improvement_potential"] == pytest.approx(200.0)


def test_marginal_slot_improvement_ignored(t0):
    snapshots = _snapshots(_mixed_schedule_snapshots(t0, 0.30, 0.33))
    campaign = {"channel_type": "email", "schedule": {"day": 0, "hour": 9}}
    assert detect_suboptimal_timing("camp_1", snapshots, campaign) is None


def test_timing_needs_scheduled_baseline(t0):
    snapshots = _snapshots(_mixed_schedule_snapshots(t0, 0.10, 0.30))
    campaign = {"channel_type": "email", "schedule": {"day": 4, "hour": 16}}
    assert detect_suboptimal_timing("camp_1", snapshots, campaign) is None


def test_timing_only_for_email_and_social(t0):
    snapshots = _snapshots(_mixed_schedule_snapshots(t0, 0.10, 0.30))
    campaign = {"channel_type": "display", "schedule": {"day": 0, "hour": 9}}
    assert detect_suboptimal_timing("camp_1", snapshots, campaign) is None


# =============================================================================
# EXPERIMENTS
# =============================================================================

def test_missing_experiment_suggests_subject_line_for_email(t0):
    snapshots = _snapshots(make_snapshots("camp_1", [0.3] * 5, t0))

    opportunity = detect_missing_experiment("camp_1", snapshots, {"channel_type": "email"})

    assert opportunity.type == ActionType.AB_TEST_CREATION
    assert opportunity.metrics["suggested_test_type"] == "subject_line"


def test_missing_experiment_suggests_headline_otherwise(t0):
    snapshots = _snapshots(make_snapshots("camp_1", [0.3] * 5, t0))
    opportunity = detect_missing_experiment("camp_1", snapshots, {"channel_type": "social"})
    assert opportunity.metrics["suggested_test_type"] == "headline"


def test_active_experiment_suppresses_detection(t0):
    snapshots = _snapshots(make_snapshots("camp_1", [0.3] * 8, t0))
    campaign = {"channel_type": "email", "has_active_test": True}
    assert detect_missing_experiment("camp_1", snapshots, campaign) is None


# =============================================================================
# DETECTOR
# =============================================================================

@pytest.mark.asyncio
async def test_detect_reads_newest_snapshots(store, t0):
    await seed_campaign(store, "camp_1", "owner_1",
                        make_snapshots("camp_1", [0.28] * 3 + [0.40] * 3, t0))

    found = await OpportunityDetector(store, worker_pool_size=2).detect("camp_1")

    assert _types(found) == {ActionType.CONTENT_VARIATION, ActionType.AB_TEST_CREATION}


@pytest.mark.asyncio
async def test_detect_is_repeatable(store, t0):
    await seed_campaign(store, "camp_1", "owner_1",
                        make_snapshots("camp_1", [0.28] * 3 + [0.40] * 3, t0))
    detector = OpportunityDetector(store, worker_pool_size=2)

    first = await detector.detect("camp_1")
    second = await detector.detect("camp_1")

    assert [o.metrics for o in first] == [o.metrics for o in second]


@pytest.mark.asyncio
async def test_detect_missing_campaign(store):
    with pytest.raises(NotFoundError):
        await OpportunityDetector(store, worker_pool_size=2).detect("ghost")


@pytest.mark.asyncio
async def test_sweep_skips_failing_campaign(store, t0):
    await seed_campaign(store, "camp_ok", "owner_1",
                        make_snapshots("camp_ok", [0.28] * 3 + [0.40] * 3, t0))
    await seed_campaign(store, "camp_bad", "owner_1",
                        make_snapshots("camp_bad", [0.3] * 6, t0),
                        schedule={"day": "not-a-day", "hour": 9})
    await seed_campaign(store, "camp_paused", "owner_1",
                        make_snapshots("camp_paused", [0.3] * 6, t0), status="paused")
    await seed_campaign(store, "camp_other", "owner_2",
                        make_snapshots("camp_other", [0.3] * 6, t0))

    found = await OpportunityDetector(store, worker_pool_size=2).sweep("owner_1")

    assert set(found) == {"camp_ok"}
    assert ActionType.CONTENT_VARIATION in _types(found["camp_ok"])
