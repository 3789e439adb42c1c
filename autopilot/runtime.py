"""
Process-wide wiring of the autopilot engine.

AutopilotRuntime owns the shared collaborators (store, audit log, channel
executor, text provider) and builds every engine component from them. It
is created once per process, started explicitly, passed by reference, and
closed on shutdown.
"""

import logging
from pathlib import Path
from typing import Optional

from autopilot.audit import AuditRecorder
from autopilot.autonomous import AutonomousOptimizer
from autopilot.channels import ChannelExecutor, ShadowChannelExecutor
from autopilot.decision_engine import DecisionEngine
from autopilot.escalation import ChannelEscalationStateMachine
from autopilot.nurturing import NurturingSequenceEngine
from autopilot.opportunities import OpportunityDetector
from autopilot.permissions import PermissionGate
from autopilot.providers import TextGenerationProvider, get_provider
from autopilot.scheduler import Scheduler
from autopilot.store import PersistentStore, create_store


logger = logging.getLogger("runtime")


class AutopilotRuntime:

    def __init__(
        self,
        store: Optional[PersistentStore] = None,
        audit: Optional[AuditRecorder] = None,
        executor: Optional[ChannelExecutor] = None,
        provider: Optional[TextGenerationProvider] = None,
        provider_tag: Optional[str] = None,
        audit_db_path: Optional[Path] = None,
    ):
        self.store = store
        self.audit = audit
        self.executor = executor
        self.provider = provider
        self.provider_tag = provider_tag
        self.audit_db_path = audit_db_path
        self.started = False

    async def start(self) -> "AutopilotRuntime":
        if self.started:
            return self

        self.store = self.store or create_store()
        self.audit = self.audit or AuditRecorder(db_path=self.audit_db_path)
        await self.audit.initialize()
        self.executor = self.executor or ShadowChannelExecutor(self.store)
        self.provider = self.provider or get_provider(self.provider_tag)

        self.gate = PermissionGate(self.store, self.audit)
        self.detector = OpportunityDetector(self.store)
        self.decision_engine = DecisionEngine(self.store)
        self.escalation = ChannelEscalationStateMachine(self.store, self.executor, self.audit)
        self.nurturing = NurturingSequenceEngine(
            self.store, self.executor,
            decision_engine=self.decision_engine,
            provider=self.provider,
            audit=self.audit,
        )
        self.optimizer = AutonomousOptimizer(
            self.store, self.gate, self.detector, self.decision_engine, self.audit, provider=self.provider,
        )
        self.scheduler = Scheduler(self.store, self.nurturing, self.escalation, self.optimizer)

        self.started = True
        logger.info("Autopilot runtime started (store=%s, executor=%s, provider=%s)",
                    type(self.store).__name__, type(self.executor).__name__,
                    getattr(self.provider, "name", type(self.provider).__name__))
        return self

    async def close(self) -> None:
        if not self.started:
            return
        self.scheduler.stop()
        await self.provider.close()
        await self.audit.close()
        await self.store.close()
        self.started = False
        logger.info("Autopilot runtime closed")

    async def __aenter__(self) -> "AutopilotRuntime":
        return await self.start()

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()
