"""
Multi-channel escalation for a single lead.

    pending -> contacted -> responded -> converted | failed
                   |
                   +-> escalated -> contacted (next channel) ... -> failed

A channel is attempted at most once per workflow. Timeouts are driven by
the scheduler through process_timeouts(); there are no in-process timers.
"""

import asyncio
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple, Union

from autopilot.audit import AuditRecorder
from autopilot.channels import ChannelExecutor, SendResult, build_message
from autopilot.config import get_response_window, get_scheduler_settings
from autopilot.errors import NotFoundError, ValidationError
from autopilot.models import (
    Actor,
    LeadResponse,
    Objective,
    WorkflowInstance,
    WorkflowStatus,
    add_seconds,
    parse_ts,
    to_iso,
    utc_now,
)
from autopilot.store import VERSION_FIELD, PersistentStore


logger = logging.getLogger("escalation")

WORKFLOWS = "workflows"


# =============================================================================
# CHANNEL AVAILABILITY & SCORING
# =============================================================================

def available_channels(lead_profile: Dict[str, Any]) -> Dict[str, str]:
    """Map each reachable channel to its contact point, in discovery order."""
    explicit = lead_profile.get("contact_points")
    if isinstance(explicit, dict):
        return {channel: point for channel, point in explicit.items() if point}

    channels: Dict[str, str] = {}
    if lead_profile.get("email"):
        channels["email"] = lead_profile["email"]
    if lead_profile.get("phone"):
        channels["phone"] = lead_profile["phone"]
        if lead_profile.get("sms_consent"):
            channels["sms"] = lead_profile["phone"]
    if lead_profile.get("linkedin_url"):
        channels["linkedin"] = lead_profile["linkedin_url"]
    if lead_profile.get("twitter_handle"):
        channels["twitter"] = lead_profile["twitter_handle"]
    if lead_profile.get("facebook_profile"):
        channels["facebook"] = lead_profile["facebook_profile"]
    if (lead_profile.get("website_visits") or 0) > 0:
        channels["website_chat"] = lead_profile.get("visitor_id") or lead_profile.get("lead_id", "")
    if lead_profile.get("address"):
        channels["direct_mail"] = lead_profile["address"]
    if lead_profile.get("app_installed"):
        user = lead_profile.get("app_user_id") or lead_profile.get("lead_id", "")
        channels["in_app"] = user
        channels["push_notification"] = user
    return {channel: point for channel, point in channels.items() if point}


def score_channel(channel: str, lead_profile: Dict[str, Any], goal: Optional[str] = None) -> float:
    score = 0.5
    if channel == "email":
        score += 0.3
        if (lead_profile.get("email_open_rate") or 0) > 0.2:
            score += 0.2
    elif channel == "phone":
        score += 0.2
        if goal in ("schedule_demo", "close_deal"):
            score += 0.3
    elif channel == "sms":
        score += 0.1
        if goal in ("event_reminder", "appointment_confirmation"):
            score += 0.4
    elif channel == "linkedin":
        score += 0.2
        if lead_profile.get("industry") in ("Technology", "Finance"):
            score += 0.2
    elif channel == "website_chat":
        score += 0.1
        if (lead_profile.get("website_visits") or 0) > 3:
            score += 0.3

    if lead_profile.get("preferred_channel") == channel:
        score += 0.3

    engagement = lead_profile.get("engagement_score")
    if engagement is not None:
        if engagement > 0.5:
            score += 0.2
        elif engagement < 0.2:
            score -= 0.2

    return min(score, 1.0)


def rank_channels(lead_profile: Dict[str, Any], goal: Optional[str] = None) -> List[Tuple[str, float]]:
    """Available channels sorted by score; equal scores keep discovery order."""
    scored = [(channel, score_channel(channel, lead_profile, goal)) for channel in available_channels(lead_profile)]
    return sorted(scored, key=lambda pair: -pair[1])


# =============================================================================
# STATE MACHINE
# =============================================================================

class ChannelEscalationStateMachine:

    def __init__(
        self,
        store: PersistentStore,
        executor: ChannelExecutor,
        audit: Optional[AuditRecorder] = None,
        worker_pool_size: Optional[int] = None,
    ):
        self.store = store
        self.executor = executor
        self.audit = audit
        self.worker_pool_size = worker_pool_size or get_scheduler_settings()["worker_pool_size"]

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    async def get_workflow(self, workflow_id: str) -> Tuple[WorkflowInstance, int]:
        doc = await self.store.get(WORKFLOWS, workflow_id)
        if doc is None:
            raise NotFoundError(WORKFLOWS, workflow_id)
        return WorkflowInstance.from_dict(doc), doc.get(VERSION_FIELD, 0)

    async def _save(self, workflow: WorkflowInstance, version: int) -> WorkflowInstance:
        """Conditional write. A lost race keeps the stored state and drops ours."""
        workflow.updated_at = to_iso(utc_now())
        if await self.store.compare_and_set(WORKFLOWS, workflow.workflow_id, version, workflow.to_dict()):
            return workflow
        logger.warning("Workflow %s changed concurrently; discarding %s transition",
                       workflow.workflow_id, workflow.status.value)
        stored, _ = await self.get_workflow(workflow.workflow_id)
        return stored

    @staticmethod
    def _transition(workflow: WorkflowInstance, status: WorkflowStatus, **details) -> None:
        workflow.history.append({
            "from": workflow.status.value,
            "to": status.value,
            "at": to_iso(utc_now()),
            **details,
        })
        workflow.status = status

    async def _audit(self, workflow: WorkflowInstance, action_type: str, description: str, **details) -> None:
        if self.audit:
            await self.audit.record(
                workflow.owner_id, action_type, description,
                details={"workflow_id": workflow.workflow_id, "lead_id": workflow.lead_id, **details},
                actor=Actor.AUTONOMOUS,
            )

    @staticmethod
    def _resolve_id(workflow: Union[WorkflowInstance, str]) -> str:
        return workflow.workflow_id if isinstance(workflow, WorkflowInstance) else workflow

    # ------------------------------------------------------------------
    # Contact
    # ------------------------------------------------------------------

    def _next_channel(self, workflow: WorkflowInstance) -> Optional[str]:
        for channel in workflow.channel_priorities:
            if channel in workflow.attempted_channels:
                continue
            if not workflow.contact_points.get(channel):
                continue
            return channel
        return None

    async def _send(self, workflow: WorkflowInstance, channel: str) -> SendResult:
        if workflow.attempted_channels:
            message = build_message("escalation", workflow.lead_profile, channel=channel,
                                    previous_channel=workflow.attempted_channels[-1])
        else:
            message = build_message("introduction", workflow.lead_profile, channel=channel)
        message.metadata.update({"workflow_id": workflow.workflow_id, "lead_id": workflow.lead_id})
        return await self.executor.send(channel, workflow.contact_points[channel], message)

    async def _contact_next(self, workflow: WorkflowInstance, now: datetime) -> WorkflowInstance:
        """Send on the next untried channel; bounced, rejected or raising sends move straight on."""
        while True:
            channel = self._next_channel(workflow)
            if channel is None:
                workflow.current_channel = None
                workflow.timeout_at = None
                workflow.failure_reason = "channels_exhausted"
                self._transition(workflow, WorkflowStatus.FAILED, reason="no usable channel left")
                logger.info("Workflow %s failed: channels exhausted", workflow.workflow_id)
                return workflow

            try:
                result = await self._send(workflow, channel)
            except Exception as exc:
                # a raising executor counts as an undelivered send
                logger.error("Send on %s for workflow %s raised: %s", channel, workflow.workflow_id, exc)
                workflow.attempted_channels.append(channel)
                if workflow.status != WorkflowStatus.ESCALATED:
                    self._transition(workflow, WorkflowStatus.ESCALATED, channel=channel,
                                     reason="send_error", send_error=str(exc))
                else:
                    workflow.history.append({"channel": channel, "send_error": str(exc),
                                             "at": to_iso(utc_now())})
                continue
            workflow.attempted_channels.append(channel)

            if result.delivered:
                window = get_response_window(channel)
                workflow.current_channel = channel
                workflow.contacted_at = to_iso(now)
                workflow.response_window_seconds = window
                workflow.timeout_at = add_seconds(now, window)
                self._transition(workflow, WorkflowStatus.CONTACTED, channel=channel,
                                 external_id=result.external_id)
                logger.info("Workflow %s contacted via %s", workflow.workflow_id, channel)
                return workflow

            logger.info("Send on %s for workflow %s %s; escalating",
                        channel, workflow.workflow_id, result.status.value)
            if workflow.status != WorkflowStatus.ESCALATED:
                self._transition(workflow, WorkflowStatus.ESCALATED, channel=channel,
                                 reason=f"send_{result.status.value}")
            else:
                workflow.history.append({"channel": channel, "send_status": result.status.value,
                                         "at": to_iso(utc_now())})

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    async def select_initial_channel(
        self,
        lead_profile: Dict[str, Any],
        preferences: Optional[Dict[str, Any]] = None,
        now: Optional[datetime] = None,
    ) -> WorkflowInstance:
        """
        Create a workflow for the lead and contact it on the first usable
        channel in priority order.

        preferences:
            channel_priorities: ordered channel list (default: rank_channels())
            objective: "awareness" | "conversion"
            goal: scoring hint used when ranking channels
        """
        preferences = preferences or {}
        lead_id = lead_profile.get("lead_id")
        owner_id = lead_profile.get("owner_id") or preferences.get("owner_id")
        if not lead_id or not owner_id:
            raise ValidationError("lead_profile requires lead_id and owner_id")

        priorities = preferences.get("channel_priorities")
        if priorities is None:
            priorities = [channel for channel, _ in rank_channels(lead_profile, preferences.get("goal"))]
        try:
            objective = Objective(preferences.get("objective", Objective.CONVERSION.value))
        except ValueError as exc:
            raise ValidationError(f"Unknown objective: {preferences.get('objective')}", cause=exc) from exc

        workflow = WorkflowInstance(
            lead_id=lead_id,
            owner_id=owner_id,
            channel_priorities=list(dict.fromkeys(priorities)),
            contact_points=available_channels(lead_profile),
            lead_profile=dict(lead_profile),
            objective=objective,
        )
        await self.store.add(WORKFLOWS, workflow.to_dict(), doc_id=workflow.workflow_id)

        workflow = await self._contact_next(workflow, now or utc_now())
        saved = await self._save(workflow, 1)
        await self._audit(saved, "workflow_started",
                          f"Lead {lead_id} workflow {saved.status.value} via {saved.current_channel}",
                          channel=saved.current_channel, status=saved.status.value)
        return saved

    async def evaluate_response(
        self,
        workflow: Union[WorkflowInstance, str],
        response: LeadResponse,
    ) -> WorkflowInstance:
        """
        contacted -> responded when the reply lands inside the response
        window. A reply outside the window is recorded without a transition.
        Conversion evidence (or a positive reply for awareness workflows)
        then moves responded -> converted.
        """
        current, version = await self.get_workflow(self._resolve_id(workflow))
        received = parse_ts(response.received_at) or utc_now()
        event = {"channel": response.channel, "sentiment": response.sentiment,
                 "converted": response.converted, "received_at": to_iso(received)}

        if current.status != WorkflowStatus.CONTACTED:
            current.history.append({**event, "ignored": f"status {current.status.value}"})
            return await self._save(current, version)

        deadline = parse_ts(current.timeout_at)
        if deadline is not None and received > deadline:
            current.history.append({**event, "late": True})
            logger.info("Late response on workflow %s ignored", current.workflow_id)
            return await self._save(current, version)

        current.timeout_at = None
        self._transition(current, WorkflowStatus.RESPONDED, **event)

        positive = response.sentiment == "positive"
        if positive and (response.converted or current.objective == Objective.AWARENESS):
            self._transition(current, WorkflowStatus.CONVERTED, reason="conversion evidence")

        saved = await self._save(current, version)
        await self._audit(saved, "lead_responded",
                          f"Lead {saved.lead_id} responded on {response.channel}",
                          status=saved.status.value)
        return saved

    async def check_conversion(self, workflow: Union[WorkflowInstance, str], converted: bool) -> WorkflowInstance:
        """responded -> converted | failed."""
        current, version = await self.get_workflow(self._resolve_id(workflow))
        if current.status != WorkflowStatus.RESPONDED:
            raise ValidationError(
                f"Workflow {current.workflow_id} is {current.status.value}, expected responded"
            )
        if converted:
            self._transition(current, WorkflowStatus.CONVERTED, reason="conversion confirmed")
        else:
            current.failure_reason = "not_converted"
            self._transition(current, WorkflowStatus.FAILED, reason="no conversion")
        return await self._save(current, version)

    async def escalate(
        self,
        workflow: Union[WorkflowInstance, str],
        reason: str,
        now: Optional[datetime] = None,
    ) -> WorkflowInstance:
        """contacted -> escalated -> contacted on the next untried channel, or failed."""
        current, version = await self.get_workflow(self._resolve_id(workflow))
        if current.status != WorkflowStatus.CONTACTED:
            raise ValidationError(
                f"Workflow {current.workflow_id} is {current.status.value}, only contacted workflows escalate"
            )

        previous = current.current_channel
        self._transition(current, WorkflowStatus.ESCALATED, channel=previous, reason=reason)
        current = await self._contact_next(current, now or utc_now())
        saved = await self._save(current, version)
        await self._audit(saved, "workflow_escalated",
                          f"Escalated from {previous} to {saved.current_channel or 'none'} ({reason})",
                          reason=reason, status=saved.status.value)
        return saved

    async def cancel(self, workflow: Union[WorkflowInstance, str]) -> WorkflowInstance:
        current, version = await self.get_workflow(self._resolve_id(workflow))
        if current.is_terminal:
            return current
        current.timeout_at = None
        self._transition(current, WorkflowStatus.CANCELLED, reason="cancelled")
        return await self._save(current, version)

    async def process_timeouts(self, now: Optional[datetime] = None) -> List[WorkflowInstance]:
        """Escalate every contacted workflow whose response window has passed."""
        now = now or utc_now()
        docs = await self.store.query(WORKFLOWS, {"status": WorkflowStatus.CONTACTED.value})
        expired = [d["_id"] for d in docs if d.get("timeout_at") and parse_ts(d["timeout_at"]) <= now]
        if not expired:
            return []

        semaphore = asyncio.Semaphore(self.worker_pool_size)

        async def run_one(workflow_id: str) -> Optional[WorkflowInstance]:
            async with semaphore:
                try:
                    return await self.escalate(workflow_id, "timeout", now=now)
                except ValidationError:
                    # already moved on since the query
                    return None
                except Exception as exc:
                    logger.error("Timeout escalation failed for workflow %s: %s", workflow_id, exc)
                    return None

        results = await asyncio.gather(*(run_one(wid) for wid in expired))
        updated = [wf for wf in results if wf is not None]
        logger.info("Processed %d expired workflows (%d escalated)", len(expired), len(updated))
        return updated
