"""
Opportunity detection over recent campaign metrics.

Three detectors run against the newest snapshots of a campaign:
- engagement decline  -> content_variation (high)
- suboptimal timing   -> schedule_adjustment (medium)
- no experimentation  -> ab_test_creation (medium)

Detection only reads; running it twice on the same data yields the same
opportunities.
"""

import asyncio
import logging
from collections import OrderedDict
from typing import Any, Dict, List, Optional, Tuple

from autopilot.config import get_scheduler_settings
from autopilot.errors import NotFoundError
from autopilot.models import ActionType, MetricSnapshot, Opportunity, Priority, parse_ts
from autopilot.store import PersistentStore


logger = logging.getLogger("opportunities")

CAMPAIGNS = "campaigns"
CAMPAIGN_METRICS = "campaign_metrics"

SNAPSHOT_WINDOW = 10
DECLINE_WINDOW = 3
DECLINE_THRESHOLD = 0.8
TIMING_IMPROVEMENT = 1.2
AB_TEST_MIN_SNAPSHOTS = 5
TIMING_CHANNELS = ("email", "social")

WEEKDAYS = ["monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday"]


def _mean(values: List[float]) -> float:
    return sum(values) / len(values) if values else 0.0


def detect_engagement_decline(entity_id: str, snapshots: List[MetricSnapshot]) -> Optional[Opportunity]:
    """Compare click-to-open of the 3 newest snapshots with the 3 before them."""
    if len(snapshots) < DECLINE_WINDOW * 2:
        return None

    recent = _mean([s.click_to_open for s in snapshots[:DECLINE_WINDOW]])
    older = _mean([s.click_to_open for s in snapshots[DECLINE_WINDOW:DECLINE_WINDOW * 2]])

    if not recent < DECLINE_THRESHOLD * older:
        return None

    change = ((recent - older) / older) * 100 if older else 0.0
    return Opportunity(
        type=ActionType.CONTENT_VARIATION,
        priority=Priority.HIGH,
        description=f"Engagement declined {abs(change):.1f}% over the last {DECLINE_WINDOW} sends",
        target_entity_id=entity_id,
        metrics={
            "recent_engagement": round(recent, 4),
            "previous_engagement": round(older, 4),
            "percent_change": round(change, 2),
        },
    )


def _bucket(snapshot: MetricSnapshot) -> Optional[Tuple[int, int]]:
    sent = parse_ts(snapshot.send_timestamp)
    if sent is None:
        return None
    return sent.weekday(), sent.hour


def detect_suboptimal_timing(entity_id: str, snapshots: List[MetricSnapshot],
                             campaign: Dict[str, Any]) -> Optional[Opportunity]:
    """
    Bucket sends by (weekday, hour) and compare the best bucket with the
    scheduled one. No baseline (scheduled bucket unseen or at zero) means
    no opportunity.
    """
    if campaign.get("channel_type") not in TIMING_CHANNELS:
        return None
    schedule = campaign.get("schedule") or {}
    if "day" not in schedule or "hour" not in schedule:
        return None
    scheduled = (int(schedule["day"]), int(schedule["hour"]))

    # insertion order = newest first, so ties keep the newest bucket
    totals: "OrderedDict[Tuple[int, int], List[int]]" = OrderedDict()
    for snapshot in snapshots:
        key = _bucket(snapshot)
        if key is None:
            continue
        bucket = totals.setdefault(key, [0, 0])
        bucket[0] += snapshot.clicks
        bucket[1] += snapshot.opens

    rates = {key: (clicks / opens if opens else 0.0) for key, (clicks, opens) in totals.items()}
    scheduled_rate = rates.get(scheduled)
    if not scheduled_rate:
        return None

    best_key, best_rate = None, -1.0
    for key, rate in rates.items():
        if rate > best_rate:
            best_key, best_rate = key, rate

    if best_key == scheduled or best_rate < TIMING_IMPROVEMENT * scheduled_rate:
        return None

    improvement = (best_rate - scheduled_rate) / scheduled_rate * 100
    return Opportunity(
        type=ActionType.SCHEDULE_ADJUSTMENT,
        priority=Priority.MEDIUM,
        description=(
            f"Sending on {WEEKDAYS[best_key[0]].title()} at {best_key[1]:02d}:00 "
            f"could improve engagement by {improvement:.1f}%"
        ),
        target_entity_id=entity_id,
        metrics={
            "current_day": scheduled[0],
            "current_hour": scheduled[1],
            "recommended_day": best_key[0],
            "recommended_hour": best_key[1],
            "current_rate": round(scheduled_rate, 4),
            "recommended_rate": round(best_rate, 4),
            "improvement_potential": round(improvement, 2),
        },
    )


def detect_missing_experiment(entity_id: str, snapshots: List[MetricSnapshot],
                              campaign: Dict[str, Any]) -> Optional[Opportunity]:
    if campaign.get("has_active_test") or len(snapshots) < AB_TEST_MIN_SNAPSHOTS:
        return None
    test_type = "subject_line" if campaign.get("channel_type") == "email" else "headline"
    return Opportunity(
        type=ActionType.AB_TEST_CREATION,
        priority=Priority.MEDIUM,
        description=f"No active experiment; a {test_type.replace('_', ' ')} A/B test could lift engagement",
        target_entity_id=entity_id,
        metrics={"suggested_test_type": test_type, "snapshot_count": len(snapshots)},
    )


class OpportunityDetector:

    def __init__(self, store: PersistentStore, worker_pool_size: Optional[int] = None):
        self.store = store
        self.worker_pool_size = worker_pool_size or get_scheduler_settings()["worker_pool_size"]

    async def load_snapshots(self, entity_id: str) -> List[MetricSnapshot]:
        docs = await self.store.query(
            CAMPAIGN_METRICS, {"entity_id": entity_id},
            order_by="timestamp", descending=True, limit=SNAPSHOT_WINDOW,
        )
        return [MetricSnapshot.from_dict(d) for d in docs]

    async def detect(self, entity_id: str) -> List[Opportunity]:
        """Return the opportunities for one campaign, highest priority first."""
        campaign = await self.store.get(CAMPAIGNS, entity_id)
        if campaign is None:
            raise NotFoundError(CAMPAIGNS, entity_id)

        snapshots = await self.load_snapshots(entity_id)
        found = [
            detect_engagement_decline(entity_id, snapshots),
            detect_suboptimal_timing(entity_id, snapshots, campaign),
            detect_missing_experiment(entity_id, snapshots, campaign),
        ]
        opportunities = [o for o in found if o is not None]
        logger.info("Campaign %s: %d opportunities from %d snapshots",
                    entity_id, len(opportunities), len(snapshots))
        return opportunities

    async def sweep(self, owner_id: str) -> Dict[str, List[Opportunity]]:
        """Run detect() over every active campaign of an owner, bounded by the worker pool."""
        campaigns = await self.store.query(CAMPAIGNS, {"owner_id": owner_id, "status": "active"})
        semaphore = asyncio.Semaphore(self.worker_pool_size)

        async def run_one(campaign_id: str) -> Tuple[str, List[Opportunity]]:
            async with semaphore:
                return campaign_id, await self.detect(campaign_id)

        results = await asyncio.gather(
            *(run_one(c["_id"]) for c in campaigns), return_exceptions=True
        )

        found: Dict[str, List[Opportunity]] = {}
        for campaign, result in zip(campaigns, results):
            if isinstance(result, Exception):
                logger.error("Opportunity detection failed for campaign %s: %s", campaign["_id"], result)
                continue
            campaign_id, opportunities = result
            found[campaign_id] = opportunities
        return found
