"""
Autonomous optimizer - runs the detect -> gate -> decide -> act -> audit
loop for one owner.

Every opportunity ends in exactly one of:
    implemented  the action ran and the campaign was updated
    suggested    the owner's tier did not cover it, or no handler exists
    deferred     the DecisionEngine preferred to wait, or the result was inconclusive
    failed       the handler raised; the campaign is left as it was
"""

import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional

from autopilot.audit import AuditRecorder
from autopilot.config import get_optimizer_settings
from autopilot.decision_engine import DecisionEngine
from autopilot.errors import AutopilotError, NotFoundError, ProcessingError
from autopilot.models import (
    ActionRequest,
    ActionType,
    Actor,
    Decision,
    DecisionOption,
    Opportunity,
    Outcome,
    to_iso,
    utc_now,
)
from autopilot.opportunities import CAMPAIGNS, OpportunityDetector
from autopilot.permissions import PermissionGate
from autopilot.providers import ProviderError, TextGenerationProvider, choose_variation
from autopilot.store import PersistentStore, update_with_retry


logger = logging.getLogger("autonomous")

AB_TESTS = "ab_tests"
CONTENT_VARIATIONS = "content_variations"

DEFER = "defer"
MIN_SELECTION_CONFIDENCE = 0.5
VARIATION_COUNT = 2

Handler = Callable[[str, Dict[str, Any], Opportunity, Decision], Awaitable[Dict[str, Any]]]


def implement_action(action_type: ActionType) -> str:
    return f"implement:{action_type.value}"


class AutonomousOptimizer:

    def __init__(
        self,
        store: PersistentStore,
        gate: PermissionGate,
        detector: OpportunityDetector,
        engine: DecisionEngine,
        audit: AuditRecorder,
        provider: Optional[TextGenerationProvider] = None,
    ):
        self.store = store
        self.gate = gate
        self.detector = detector
        self.engine = engine
        self.audit = audit
        self.provider = provider
        self.settings = get_optimizer_settings()
        self._handlers: Dict[ActionType, Handler] = {
            ActionType.CONTENT_VARIATION: self._implement_content_variation,
            ActionType.SCHEDULE_ADJUSTMENT: self._implement_schedule_adjustment,
            ActionType.AB_TEST_CREATION: self._implement_ab_test,
        }

    async def run(self, owner_id: str) -> Dict[str, Any]:
        """One monitoring pass over all of an owner's active campaigns."""
        found = await self.detector.sweep(owner_id)
        total = sum(len(opps) for opps in found.values())
        await self.audit.record(
            owner_id, "monitor_campaigns",
            f"Monitored {len(found)} campaigns, found {total} opportunities",
            details={"campaigns": {cid: [o.type.value for o in opps] for cid, opps in found.items()}},
            actor=Actor.AUTONOMOUS,
            is_simulation=True,
        )

        results: List[Dict[str, Any]] = []
        for opportunities in found.values():
            for opportunity in opportunities:
                results.append(await self.handle_opportunity(owner_id, opportunity))

        summary = {"owner_id": owner_id, "campaigns": len(found), "opportunities": total, "results": results}
        for status in ("implemented", "suggested", "deferred", "failed"):
            summary[status] = sum(1 for r in results if r["status"] == status)
        logger.info("Autopilot run for %s: %d implemented, %d suggested, %d deferred, %d failed",
                    owner_id, summary["implemented"], summary["suggested"],
                    summary["deferred"], summary["failed"])
        return summary

    async def handle_opportunity(self, owner_id: str, opportunity: Opportunity) -> Dict[str, Any]:
        request = ActionRequest(
            action_type=opportunity.type,
            target_entity_id=opportunity.target_entity_id,
            payload=opportunity.metrics,
        )
        base = {"campaign_id": opportunity.target_entity_id, "action_type": opportunity.type.value,
                "request_id": request.request_id}

        allowed, suggestion = await self.gate.authorize_or_suggest(owner_id, request, opportunity)
        if not allowed:
            return {**base, "status": "suggested", "suggestion_id": suggestion.suggestion_id}

        handler = self._handlers.get(opportunity.type)
        if handler is None:
            suggestion = await self.gate.create_suggestion(
                owner_id, request, "Unsupported optimization type", opportunity
            )
            return {**base, "status": "suggested", "suggestion_id": suggestion.suggestion_id}

        campaign = await self.store.get(CAMPAIGNS, opportunity.target_entity_id)
        if campaign is None:
            raise NotFoundError(CAMPAIGNS, opportunity.target_entity_id)

        implement = implement_action(opportunity.type)
        options = await self.engine.options_for([implement], campaign)
        # defer is not learned; acting must beat a fixed bar, and after
        # exploration_interval consecutive deferrals the action is tried again
        deferrals = (campaign.get("optimization_deferrals") or {}).get(opportunity.type.value, 0)
        exploring = deferrals >= self.settings["exploration_interval"]
        if exploring:
            logger.info("Re-trying %s on %s after %d deferrals",
                        opportunity.type.value, opportunity.target_entity_id, deferrals)
        else:
            options.append(DecisionOption(action=DEFER, expected_value=self.settings["defer_threshold"]))
        attempts = (campaign.get("optimization_attempts") or {}).get(opportunity.type.value, 0)
        decision = self.engine.decide(
            campaign, options,
            {"max_attempts": self.settings["max_attempts_per_action"], "current_attempts": attempts},
        )
        await self.engine.record_decision(decision)
        base["decision_id"] = decision.decision_id
        if exploring:
            base["exploration"] = True

        if decision.action != implement:
            await self._count_deferral(opportunity)
            await self.audit.record(
                owner_id, "optimization_deferred",
                f"Deferred {opportunity.type.value} on {opportunity.target_entity_id}: {decision.rationale}",
                details={"decision": decision.to_dict()},
            )
            return {**base, "status": "deferred", "reason": decision.rationale}

        try:
            outcome = await handler(owner_id, campaign, opportunity, decision)
        except (AutopilotError, ProviderError) as exc:
            logger.error("Optimization %s on %s failed: %s",
                         opportunity.type.value, opportunity.target_entity_id, exc)
            await self.audit.record(
                owner_id, "optimization_failed",
                f"{opportunity.type.value} on {opportunity.target_entity_id} failed",
                details={"error": str(exc), "decision_id": decision.decision_id},
            )
            return {**base, "status": "failed", "error": str(exc)}

        status = outcome.pop("status", "implemented")
        if status == "implemented":
            await self._count_attempt(opportunity)
            await self.audit.record(
                owner_id, opportunity.type.value,
                f"Implemented {opportunity.type.value} on {opportunity.target_entity_id}",
                details={"opportunity": opportunity.to_dict(), "decision_id": decision.decision_id, **outcome},
            )
        return {**base, "status": status, **outcome}

    async def record_outcome(self, decision_id: str, outcome: Outcome) -> Optional[float]:
        """Feed an observed result back into the learning loop."""
        decision = await self.engine.get_decision(decision_id)
        if decision is None:
            raise NotFoundError("decisions", decision_id)
        return await self.engine.update_learning(decision, outcome)

    async def _count_attempt(self, opportunity: Opportunity) -> None:
        def mutate(doc: Dict[str, Any]) -> Dict[str, Any]:
            attempts = doc.setdefault("optimization_attempts", {})
            attempts[opportunity.type.value] = attempts.get(opportunity.type.value, 0) + 1
            deferrals = doc.get("optimization_deferrals") or {}
            if deferrals.pop(opportunity.type.value, None) is not None:
                doc["optimization_deferrals"] = deferrals
            return doc

        await update_with_retry(self.store, CAMPAIGNS, opportunity.target_entity_id, mutate)

    async def _count_deferral(self, opportunity: Opportunity) -> None:
        def mutate(doc: Dict[str, Any]) -> Dict[str, Any]:
            deferrals = doc.setdefault("optimization_deferrals", {})
            deferrals[opportunity.type.value] = deferrals.get(opportunity.type.value, 0) + 1
            return doc

        await update_with_retry(self.store, CAMPAIGNS, opportunity.target_entity_id, mutate)

    # ------------------------------------------------------------------
    # Action handlers
    # ------------------------------------------------------------------

    async def _implement_content_variation(self, owner_id: str, campaign: Dict[str, Any],
                                           opportunity: Opportunity, decision: Decision) -> Dict[str, Any]:
        if self.provider is None:
            raise ProcessingError("Content variation requires a text generation provider", retryable=False)
        original = campaign.get("content") or ""
        if not original:
            raise ProcessingError(f"Campaign {campaign['_id']} has no content to vary", retryable=False)

        variations = []
        token_usage = {"input_tokens": 0, "output_tokens": 0}
        for i in range(1, VARIATION_COUNT + 1):
            result = await self.provider.generate(
                f"Write variation {i} of this {campaign.get('channel_type', 'marketing')} content. "
                f"Keep the offer and tone, change the hook.\n\n{original}",
                system_prompt="You are a marketing copywriter.",
                max_tokens=600,
            )
            variations.append(result.text.strip())
            for key in token_usage:
                token_usage[key] += result.token_usage.get(key, 0)

        choice = await choose_variation(self.provider, original, variations)
        variation_id = await self.store.add(CONTENT_VARIATIONS, {
            "campaign_id": campaign["_id"],
            "owner_id": owner_id,
            "original": original,
            "variations": variations,
            "selected_index": choice.index,
            "confidence": choice.confidence,
            "structured": choice.structured,
            "decision_id": decision.decision_id,
            "created_at": to_iso(utc_now()),
        })

        if choice.index is None or choice.confidence < MIN_SELECTION_CONFIDENCE:
            request = ActionRequest(ActionType.CONTENT_VARIATION, campaign["_id"],
                                    {"variation_id": variation_id})
            suggestion = await self.gate.create_suggestion(
                owner_id, request, "Variation selection inconclusive; original content kept", opportunity
            )
            return {"status": "deferred", "reason": "selection inconclusive",
                    "variation_id": variation_id, "suggestion_id": suggestion.suggestion_id}

        selected = variations[choice.index]

        def mutate(doc: Dict[str, Any]) -> Dict[str, Any]:
            doc["previous_content"] = doc.get("content")
            doc["content"] = selected
            doc["content_updated_at"] = to_iso(utc_now())
            return doc

        await update_with_retry(self.store, CAMPAIGNS, campaign["_id"], mutate)
        return {"variation_id": variation_id, "selected_index": choice.index,
                "confidence": choice.confidence, "token_usage": token_usage}

    async def _implement_schedule_adjustment(self, owner_id: str, campaign: Dict[str, Any],
                                             opportunity: Opportunity, decision: Decision) -> Dict[str, Any]:
        new_schedule = {
            "day": opportunity.metrics["recommended_day"],
            "hour": opportunity.metrics["recommended_hour"],
        }

        def mutate(doc: Dict[str, Any]) -> Dict[str, Any]:
            doc["previous_schedule"] = doc.get("schedule")
            doc["schedule"] = new_schedule
            doc["schedule_updated_at"] = to_iso(utc_now())
            return doc

        updated = await update_with_retry(self.store, CAMPAIGNS, campaign["_id"], mutate)
        return {"previous_schedule": updated.get("previous_schedule"), "new_schedule": new_schedule}

    async def _implement_ab_test(self, owner_id: str, campaign: Dict[str, Any],
                                 opportunity: Opportunity, decision: Decision) -> Dict[str, Any]:
        test_type = opportunity.metrics.get("suggested_test_type", "headline")
        test_id = await self.store.add(AB_TESTS, {
            "campaign_id": campaign["_id"],
            "owner_id": owner_id,
            "test_type": test_type,
            "status": "active",
            "variants": [
                {"name": "A", "content": campaign.get("subject") if test_type == "subject_line" else campaign.get("content")},
                {"name": "B", "content": None},
            ],
            "decision_id": decision.decision_id,
            "created_at": to_iso(utc_now()),
        })

        def mutate(doc: Dict[str, Any]) -> Optional[Dict[str, Any]]:
            doc["has_active_test"] = True
            doc["active_test_id"] = test_id
            return doc

        await update_with_retry(self.store, CAMPAIGNS, campaign["_id"], mutate)
        return {"test_id": test_id, "test_type": test_type}
