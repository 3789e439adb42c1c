"""
Periodic driver for the autopilot engine.

Two cadences, both from config/autopilot_rules.yaml:
- delivery tick: due nurturing steps and expired escalation windows
- opportunity sweep: the autonomous optimizer for every owner with a profile

One failing instance or owner is logged and skipped; the tick carries on.
"""

import asyncio
import logging
import time
from datetime import datetime
from typing import Any, Dict, Optional

from autopilot.autonomous import AutonomousOptimizer
from autopilot.config import get_scheduler_settings
from autopilot.escalation import ChannelEscalationStateMachine
from autopilot.models import AutonomyTier, SequenceStatus, utc_now
from autopilot.nurturing import NurturingSequenceEngine
from autopilot.permissions import PROFILES
from autopilot.store import PersistentStore


logger = logging.getLogger("scheduler")


class Scheduler:

    def __init__(
        self,
        store: PersistentStore,
        nurturing: NurturingSequenceEngine,
        escalation: ChannelEscalationStateMachine,
        optimizer: AutonomousOptimizer,
        settings: Optional[Dict[str, int]] = None,
    ):
        self.store = store
        self.nurturing = nurturing
        self.escalation = escalation
        self.optimizer = optimizer
        self.settings = settings or get_scheduler_settings()
        self._stop = asyncio.Event()

    async def tick(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        """Execute every due sequence step once and escalate expired workflows."""
        now = now or utc_now()
        due = await self.nurturing.due_instances(now)
        semaphore = asyncio.Semaphore(self.settings["worker_pool_size"])

        async def run_one(instance):
            async with semaphore:
                try:
                    return await self.nurturing.execute_step(instance, now=now)
                except Exception as exc:
                    logger.error("Sequence %s tick failed: %s", instance.sequence_id, exc)
                    return None

        executed = await asyncio.gather(*(run_one(i) for i in due))
        escalated = await self.escalation.process_timeouts(now)

        report = {
            "due": len(due),
            "executed": sum(1 for r in executed if r is not None),
            "completed": sum(1 for r in executed if r is not None and r.status == SequenceStatus.COMPLETED),
            "failed": sum(1 for r in executed if r is not None and r.status == SequenceStatus.FAILED),
            "errors": sum(1 for r in executed if r is None),
            "escalated": len(escalated),
        }
        logger.info("Tick: %d due, %d executed, %d escalations", report["due"], report["executed"], report["escalated"])
        return report

    async def run_opportunity_sweep(self) -> Dict[str, Any]:
        """Run the optimizer for every owner whose tier is above none."""
        profiles = await self.store.query(PROFILES)
        owners = [p["owner_id"] for p in profiles if p.get("tier") != AutonomyTier.NONE.value]

        summaries: Dict[str, Any] = {}
        for owner_id in owners:
            try:
                summaries[owner_id] = await self.optimizer.run(owner_id)
            except Exception as exc:
                logger.error("Opportunity sweep failed for %s: %s", owner_id, exc)
                summaries[owner_id] = {"error": str(exc)}
        return summaries

    def stop(self) -> None:
        self._stop.set()

    async def run_forever(self) -> None:
        delivery_interval = self.settings["delivery_interval_seconds"]
        sweep_interval = self.settings["sweep_interval_seconds"]
        logger.info("Scheduler started: delivery every %ss, sweep every %ss", delivery_interval, sweep_interval)

        last_delivery = 0.0
        last_sweep = 0.0
        while not self._stop.is_set():
            current = time.monotonic()

            if current - last_delivery >= delivery_interval or last_delivery == 0.0:
                try:
                    await self.tick()
                except Exception as exc:
                    logger.error("Delivery tick error: %s", exc)
                last_delivery = current

            if current - last_sweep >= sweep_interval or last_sweep == 0.0:
                try:
                    await self.run_opportunity_sweep()
                except Exception as exc:
                    logger.error("Opportunity sweep error: %s", exc)
                last_sweep = current

            try:
                await asyncio.wait_for(self._stop.wait(), timeout=min(delivery_interval, 60))
            except asyncio.TimeoutError:
                pass

        logger.info("Scheduler stopped")
