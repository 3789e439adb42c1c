"""
Permission Gate - autonomy tiers for autonomous actions.

Each action type carries a risk tier. An owner's autonomy tier must be at
least that risk tier for the action to run without a human. Anything else
becomes a Suggestion the owner can accept or dismiss.
"""

import logging
from typing import Dict, Optional, Tuple, Union

from autopilot.audit import AuditRecorder
from autopilot.errors import PermissionDeniedError, ValidationError
from autopilot.models import (
    ActionRequest,
    ActionType,
    Actor,
    AutonomyTier,
    Opportunity,
    PermissionProfile,
    Suggestion,
    to_iso,
    utc_now,
)
from autopilot.store import PersistentStore


logger = logging.getLogger("permissions")

PROFILES = "permission_profiles"
SUGGESTIONS = "optimization_suggestions"

# none < suggest_only < low < medium < high
TIER_ORDER: Dict[AutonomyTier, int] = {
    AutonomyTier.NONE: 0,
    AutonomyTier.SUGGEST_ONLY: 1,
    AutonomyTier.LOW: 2,
    AutonomyTier.MEDIUM: 3,
    AutonomyTier.HIGH: 4,
}

ACTION_RISK_TIERS: Dict[ActionType, AutonomyTier] = {
    ActionType.CONTENT_VARIATION: AutonomyTier.LOW,
    ActionType.SCHEDULE_ADJUSTMENT: AutonomyTier.MEDIUM,
    ActionType.AB_TEST_CREATION: AutonomyTier.MEDIUM,
    ActionType.BUDGET_REALLOCATION: AutonomyTier.HIGH,
    ActionType.CAMPAIGN_OPTIMIZATION: AutonomyTier.HIGH,
    ActionType.TREND_IMPLEMENTATION: AutonomyTier.HIGH,
}


def tier_allows(tier: AutonomyTier, action_type: ActionType) -> bool:
    """Pure tier comparison. suggest_only and none never authorize."""
    if TIER_ORDER[tier] < TIER_ORDER[AutonomyTier.LOW]:
        return False
    return TIER_ORDER[tier] >= TIER_ORDER[ACTION_RISK_TIERS[action_type]]


class PermissionGate:
    """Reads PermissionProfiles from the store and fails closed."""

    def __init__(self, store: PersistentStore, audit: Optional[AuditRecorder] = None):
        self.store = store
        self.audit = audit

    async def set_profile(self, owner_id: str, tier: Union[AutonomyTier, str]) -> PermissionProfile:
        if not owner_id:
            raise ValidationError("owner_id is required")
        try:
            tier = tier if isinstance(tier, AutonomyTier) else AutonomyTier(str(tier))
        except ValueError as exc:
            raise ValidationError(f"Unknown autonomy tier: {tier}", cause=exc) from exc

        profile = PermissionProfile(owner_id=owner_id, tier=tier)
        await self.store.set(PROFILES, owner_id, profile.to_dict())
        logger.info("Autonomy tier for %s set to %s", owner_id, tier.value)

        if self.audit:
            await self.audit.record(
                owner_id, "permission_change",
                f"Autonomy tier set to {tier.value}",
                details={"tier": tier.value},
                actor=Actor.USER,
            )
        return profile

    async def get_profile(self, owner_id: str) -> Optional[PermissionProfile]:
        doc = await self.store.get(PROFILES, owner_id)
        return PermissionProfile.from_dict(doc) if doc else None

    async def is_authorized(self, owner_id: str, action_type: Union[ActionType, str]) -> bool:
        """
        True iff the owner's tier covers the action's risk tier.

        Unknown action types, missing profiles and lookup failures all deny.
        """
        try:
            action = action_type if isinstance(action_type, ActionType) else ActionType(str(action_type))
        except ValueError:
            logger.warning("Denying unknown action type %r for %s", action_type, owner_id)
            return False

        try:
            profile = await self.get_profile(owner_id)
        except Exception as exc:
            logger.error("Permission lookup failed for %s, denying %s: %s", owner_id, action.value, exc)
            return False

        if profile is None:
            logger.info("No permission profile for %s, denying %s", owner_id, action.value)
            return False

        allowed = tier_allows(profile.tier, action)
        logger.debug("Permission %s for %s (tier=%s, risk=%s)",
                     "granted" if allowed else "denied", owner_id,
                     profile.tier.value, ACTION_RISK_TIERS[action].value)
        return allowed

    async def require(self, owner_id: str, action_type: Union[ActionType, str]) -> None:
        """Raise PermissionDeniedError unless is_authorized()."""
        if not await self.is_authorized(owner_id, action_type):
            value = action_type.value if isinstance(action_type, ActionType) else str(action_type)
            raise PermissionDeniedError(owner_id, value)

    async def create_suggestion(
        self,
        owner_id: str,
        request: ActionRequest,
        reason: str,
        opportunity: Optional[Opportunity] = None,
    ) -> Suggestion:
        suggestion = Suggestion(
            owner_id=owner_id,
            target_entity_id=request.target_entity_id,
            action_type=request.action_type.value,
            reason=reason,
            opportunity=opportunity.to_dict() if opportunity else {},
            request_id=request.request_id,
        )
        await self.store.add(SUGGESTIONS, suggestion.to_dict(), doc_id=suggestion.suggestion_id)

        if self.audit:
            await self.audit.record(
                owner_id, "suggestion_created",
                f"Suggested {request.action_type.value} for {request.target_entity_id}: {reason}",
                details={"suggestion_id": suggestion.suggestion_id, "request": request.to_dict()},
                actor=Actor.SYSTEM,
            )
        return suggestion

    async def authorize_or_suggest(
        self,
        owner_id: str,
        request: ActionRequest,
        opportunity: Optional[Opportunity] = None,
    ) -> Tuple[bool, Optional[Suggestion]]:
        """
        Gate a request. Returns (True, None) when it may run autonomously,
        otherwise (False, suggestion). The request itself is never modified.
        """
        if await self.is_authorized(owner_id, request.action_type):
            return True, None
        suggestion = await self.create_suggestion(
            owner_id, request, "Autonomy tier does not cover this action", opportunity
        )
        return False, suggestion

    async def resolve_suggestion(self, suggestion_id: str, accepted: bool) -> Suggestion:
        status = "accepted" if accepted else "dismissed"
        doc = await self.store.update(SUGGESTIONS, suggestion_id, {
            "status": status,
            "resolved_at": to_iso(utc_now()),
        })
        return Suggestion.from_dict(doc)
