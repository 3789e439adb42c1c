"""Tests for the detect -> gate -> decide -> act loop."""

import pytest

from autopilot.autonomous import AB_TESTS, CONTENT_VARIATIONS, AutonomousOptimizer
from autopilot.decision_engine import EXPECTED_VALUES, DecisionEngine, context_bucket
from autopilot.errors import NotFoundError
from autopilot.models import ActionType, AutonomyTier, Opportunity, Outcome, Priority
from autopilot.opportunities import CAMPAIGNS, OpportunityDetector
from autopilot.permissions import SUGGESTIONS, PermissionGate
from tests.mocks.campaigns import make_snapshots, seed_campaign


DECLINING = [0.28] * 3 + [0.40] * 3


@pytest.fixture
def gate(store, audit):
    return PermissionGate(store, audit)


@pytest.fixture
def optimizer(store, gate, audit, provider):
    return AutonomousOptimizer(
        store, gate,
        OpportunityDetector(store, worker_pool_size=2),
        DecisionEngine(store),
        audit,
        provider=provider,
    )


def _by_type(summary):
    return {r["action_type"]: r for r in summary["results"]}


@pytest.mark.asyncio
async def test_low_tier_implements_content_and_suggests_experiment(optimizer, gate, store, provider, t0):
    await gate.set_profile("owner_1", AutonomyTier.LOW)
    await seed_campaign(store, "camp_1", "owner_1", make_snapshots("camp_1", DECLINING, t0))
    provider.responses = ["Fresh hook, same offer", "Bolder hook, same offer",
                          '{"choice": 2, "confidence": 0.85}']

    summary = await optimizer.run("owner_1")

    assert summary["opportunities"] == 2
    assert summary["implemented"] == 1
    assert summary["suggested"] == 1
    results = _by_type(summary)
    assert results["content_variation"]["status"] == "implemented"
    assert results["content_variation"]["selected_index"] == 1
    assert results["ab_test_creation"]["status"] == "suggested"

    campaign = await store.get(CAMPAIGNS, "camp_1")
    assert campaign["content"] == "Bolder hook, same offer"
    assert campaign["previous_content"] == "Original campaign copy"
    assert campaign["optimization_attempts"] == {"content_variation": 1}
    assert not campaign["has_active_test"]

    [suggestion] = await store.query(SUGGESTIONS)
    assert suggestion["action_type"] == "ab_test_creation"


@pytest.mark.asyncio
async def test_medium_tier_creates_experiment(optimizer, gate, store, provider, t0):
    await gate.set_profile("owner_1", AutonomyTier.MEDIUM)
    await seed_campaign(store, "camp_1", "owner_1", make_snapshots("camp_1", DECLINING, t0))
    provider.responses = ["v1", "v2", '{"choice": 1, "confidence": 0.9}']

    summary = await optimizer.run("owner_1")

    assert summary["implemented"] == 2
    result = _by_type(summary)["ab_test_creation"]
    test = await store.get(AB_TESTS, result["test_id"])
    assert test["test_type"] == "subject_line"
    assert test["variants"][0]["content"] == "Original subject"

    campaign = await store.get(CAMPAIGNS, "camp_1")
    assert campaign["has_active_test"] is True
    assert campaign["active_test_id"] == result["test_id"]


@pytest.mark.asyncio
async def test_no_autonomy_only_suggests(optimizer, gate, store, provider, t0):
    await gate.set_profile("owner_1", AutonomyTier.NONE)
    await seed_campaign(store, "camp_1", "owner_1", make_snapshots("camp_1", DECLINING, t0))

    summary = await optimizer.run("owner_1")

    assert summary["suggested"] == 2
    assert summary["implemented"] == 0
    assert provider.prompts == []
    assert len(await store.query(SUGGESTIONS)) == 2
    assert (await store.get(CAMPAIGNS, "camp_1"))["content"] == "Original campaign copy"


@pytest.mark.asyncio
async def test_monitoring_pass_is_audited_as_simulation(optimizer, gate, audit, store, t0):
    await gate.set_profile("owner_1", AutonomyTier.NONE)
    await seed_campaign(store, "camp_1", "owner_1", make_snapshots("camp_1", DECLINING, t0))

    await optimizer.run("owner_1")

    [record] = await audit.get_records(owner_id="owner_1", action_type="monitor_campaigns")
    assert record["is_simulation"] is True
    assert record["approved"] is False


@pytest.mark.asyncio
@pytest.mark.parametrize("selection", [
    "Both variations look promising.",
    '{"choice": 1, "confidence": 0.2}',
])
async def test_inconclusive_selection_keeps_content(optimizer, gate, store, provider, t0, selection):
    await gate.set_profile("owner_1", AutonomyTier.LOW)
    await seed_campaign(store, "camp_1", "owner_1", make_snapshots("camp_1", DECLINING, t0))
    provider.responses = ["v1", "v2", selection]

    summary = await optimizer.run("owner_1")

    result = _by_type(summary)["content_variation"]
    assert result["status"] == "deferred"
    assert summary["deferred"] == 1

    campaign = await store.get(CAMPAIGNS, "camp_1")
    assert campaign["content"] == "Original campaign copy"
    assert "optimization_attempts" not in campaign

    variation = await store.get(CONTENT_VARIATIONS, result["variation_id"])
    assert variation["variations"] == ["v1", "v2"]
    suggestion = await store.get(SUGGESTIONS, result["suggestion_id"])
    assert suggestion["reason"].startswith("Variation selection inconclusive")


@pytest.mark.asyncio
async def test_attempt_budget_defers(optimizer, gate, store, provider, t0):
    await gate.set_profile("owner_1", AutonomyTier.LOW)
    await seed_campaign(store, "camp_1", "owner_1", make_snapshots("camp_1", DECLINING, t0),
                        optimization_attempts={"content_variation": 3})

    summary = await optimizer.run("owner_1")

    result = _by_type(summary)["content_variation"]
    assert result["status"] == "deferred"
    assert "attempt budget" in result["reason"]
    assert provider.prompts == []


@pytest.mark.asyncio
async def test_handler_failure_leaves_campaign_untouched(store, gate, audit, t0):
    optimizer = AutonomousOptimizer(store, gate, OpportunityDetector(store, worker_pool_size=2),
                                    DecisionEngine(store), audit, provider=None)
    await gate.set_profile("owner_1", AutonomyTier.LOW)
    await seed_campaign(store, "camp_1", "owner_1", make_snapshots("camp_1", DECLINING, t0))

    summary = await optimizer.run("owner_1")

    result = _by_type(summary)["content_variation"]
    assert result["status"] == "failed"
    assert summary["failed"] == 1
    assert (await store.get(CAMPAIGNS, "camp_1"))["content"] == "Original campaign copy"
    assert len(await audit.get_records(owner_id="owner_1", action_type="optimization_failed")) == 1


@pytest.mark.asyncio
async def test_schedule_adjustment(optimizer, gate, store, audit, t0):
    await gate.set_profile("owner_1", AutonomyTier.MEDIUM)
    await seed_campaign(store, "camp_1", "owner_1", [])
    opportunity = Opportunity(
        type=ActionType.SCHEDULE_ADJUSTMENT,
        priority=Priority.MEDIUM,
        description="Tuesday afternoons perform better",
        target_entity_id="camp_1",
        metrics={"recommended_day": 1, "recommended_hour": 14},
    )

    result = await optimizer.handle_opportunity("owner_1", opportunity)

    assert result["status"] == "implemented"
    campaign = await store.get(CAMPAIGNS, "camp_1")
    assert campaign["schedule"] == {"day": 1, "hour": 14}
    assert campaign["previous_schedule"] == {"day": 0, "hour": 9}
    assert len(await audit.get_records(owner_id="owner_1", action_type="schedule_adjustment")) == 1


@pytest.mark.asyncio
async def test_unsupported_action_becomes_suggestion(optimizer, gate, store):
    await gate.set_profile("owner_1", AutonomyTier.HIGH)
    await seed_campaign(store, "camp_1", "owner_1", [])
    opportunity = Opportunity(
        type=ActionType.BUDGET_REALLOCATION,
        priority=Priority.HIGH,
        description="Shift budget",
        target_entity_id="camp_1",
    )

    result = await optimizer.handle_opportunity("owner_1", opportunity)

    assert result["status"] == "suggested"
    suggestion = await store.get(SUGGESTIONS, result["suggestion_id"])
    assert suggestion["reason"] == "Unsupported optimization type"


@pytest.mark.asyncio
async def test_outcome_feeds_learning(optimizer, gate, store, provider, t0):
    await gate.set_profile("owner_1", AutonomyTier.LOW)
    await seed_campaign(store, "camp_1", "owner_1", make_snapshots("camp_1", DECLINING, t0))
    provider.responses = ["v1", "v2", '{"choice": 1, "confidence": 0.9}']
    summary = await optimizer.run("owner_1")
    decision_id = _by_type(summary)["content_variation"]["decision_id"]

    value = await optimizer.record_outcome(decision_id, Outcome(decision_id, success=True))

    assert value == pytest.approx(0.6)
    campaign = await store.get(CAMPAIGNS, "camp_1")
    assert await optimizer.engine.expected_value("implement:content_variation", campaign) == pytest.approx(0.6)


@pytest.mark.asyncio
async def test_outcome_for_unknown_decision(optimizer):
    with pytest.raises(NotFoundError):
        await optimizer.record_outcome("dec_missing", Outcome("dec_missing", success=True))


def _schedule_opportunity():
    return Opportunity(
        type=ActionType.SCHEDULE_ADJUSTMENT,
        priority=Priority.MEDIUM,
        description="Tuesday afternoons perform better",
        target_entity_id="camp_1",
        metrics={"recommended_day": 1, "recommended_hour": 14},
    )


@pytest.mark.asyncio
async def test_one_failed_outcome_does_not_switch_action_off(optimizer, gate, store):
    await gate.set_profile("owner_1", AutonomyTier.MEDIUM)
    await seed_campaign(store, "camp_1", "owner_1", [])

    first = await optimizer.handle_opportunity("owner_1", _schedule_opportunity())
    value = await optimizer.record_outcome(first["decision_id"], Outcome(first["decision_id"], success=False))
    assert value == pytest.approx(0.4)

    second = await optimizer.handle_opportunity("owner_1", _schedule_opportunity())

    assert second["status"] == "implemented"


@pytest.mark.asyncio
async def test_low_value_defers_then_action_is_tried_again(optimizer, gate, store):
    await gate.set_profile("owner_1", AutonomyTier.MEDIUM)
    await seed_campaign(store, "camp_1", "owner_1", [])
    campaign = await store.get(CAMPAIGNS, "camp_1")
    await store.set(EXPECTED_VALUES, f"implement:schedule_adjustment|{context_bucket(campaign)}",
                    {"value": 0.1, "samples": 4})

    statuses = [(await optimizer.handle_opportunity("owner_1", _schedule_opportunity()))["status"]
                for _ in range(3)]
    assert statuses == ["deferred"] * 3
    assert (await store.get(CAMPAIGNS, "camp_1"))["optimization_deferrals"] == {"schedule_adjustment": 3}

    retried = await optimizer.handle_opportunity("owner_1", _schedule_opportunity())

    assert retried["status"] == "implemented"
    assert retried["exploration"] is True
    campaign = await store.get(CAMPAIGNS, "camp_1")
    assert campaign["optimization_deferrals"] == {}
    assert campaign["optimization_attempts"] == {"schedule_adjustment": 1}

    # a success from the retry lifts the learned value back towards acting
    value = await optimizer.record_outcome(retried["decision_id"], Outcome(retried["decision_id"], success=True))
    assert value == pytest.approx(0.28)
    assert (await optimizer.handle_opportunity("owner_1", _schedule_opportunity()))["status"] == "implemented"
