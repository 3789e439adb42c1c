"""
Nurturing sequences - declarative step lists executed one step per tick.

Step types:
    message   render a template and send it on a channel
    wait      push the due-at marker forward and suspend
    decision  ask the DecisionEngine what to do next
    task      create a manual follow-up for a human

The cursor only moves forward. A failing step is retried on later ticks up
to the retry ceiling, then the sequence fails; a failing message step is
never skipped.
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional, Tuple, Union

from autopilot.audit import AuditRecorder
from autopilot.channels import ChannelExecutor, build_message
from autopilot.config import get_retry_ceiling, get_task_due_hours
from autopilot.decision_engine import DecisionEngine
from autopilot.errors import AutopilotError, NotFoundError, ProcessingError, ValidationError, wrap_unknown
from autopilot.escalation import available_channels
from autopilot.models import (
    Actor,
    LeadResponse,
    SequenceInstance,
    SequenceStatus,
    SequenceStep,
    StepType,
    add_seconds,
    to_iso,
    utc_now,
)
from autopilot.providers import ProviderError, TextGenerationProvider
from autopilot.store import PersistentStore, update_with_retry


logger = logging.getLogger("nurturing")

SEQUENCES = "nurturing_sequences"
SEQUENCE_TEMPLATES = "sequence_templates"
MANUAL_TASKS = "manual_tasks"


# =============================================================================
# BUILT-IN TEMPLATES
# =============================================================================

NO_RESPONSE = {"previous_step_response": False}

SEQUENCE_LIBRARY: Dict[str, List[Dict[str, Any]]] = {
    "high_touch": [
        {"id": "step_1", "type": "message", "channel": "email", "template": "personalized_introduction"},
        {"id": "step_2", "type": "wait", "delay": "24h"},
        {"id": "step_3", "type": "task", "template": "phone_call"},
        {"id": "step_4", "type": "wait", "delay": "48h"},
        {"id": "step_5", "type": "message", "channel": "email", "template": "follow_up", "condition": NO_RESPONSE},
    ],
    "low_touch": [
        {"id": "step_1", "type": "message", "channel": "email", "template": "automated_introduction"},
        {"id": "step_2", "type": "wait", "delay": "72h"},
        {"id": "step_3", "type": "message", "channel": "email", "template": "follow_up", "condition": NO_RESPONSE},
        {"id": "step_4", "type": "wait", "delay": "96h"},
        {"id": "step_5", "type": "message", "channel": "email", "template": "final_outreach", "condition": NO_RESPONSE},
    ],
    "default": [
        {"id": "step_1", "type": "message", "channel": "email", "template": "default_introduction"},
        {"id": "step_2", "type": "wait", "delay": "48h"},
        {"id": "step_3", "type": "message", "channel": "email", "template": "default_follow_up", "condition": NO_RESPONSE},
    ],
}

TASK_TYPES = {"phone_call": "call"}


def condition_met(condition: Optional[Dict[str, Any]], context: Dict[str, Any]) -> bool:
    """Evaluate a step condition against the sequence's accumulated context."""
    if not condition:
        return True
    responded = bool(context.get("response_received"))
    for key, expected in condition.items():
        if key == "previous_step_response":
            if responded != bool(expected):
                return False
        elif key == "no_response":
            if responded == bool(expected):
                return False
        elif key == "response_received":
            if responded != bool(expected):
                return False
        elif context.get(key) != expected:
            return False
    return True


class NurturingSequenceEngine:

    def __init__(
        self,
        store: PersistentStore,
        executor: ChannelExecutor,
        decision_engine: Optional[DecisionEngine] = None,
        provider: Optional[TextGenerationProvider] = None,
        audit: Optional[AuditRecorder] = None,
        retry_ceiling: Optional[int] = None,
    ):
        self.store = store
        self.executor = executor
        self.decision_engine = decision_engine
        self.provider = provider
        self.audit = audit
        self.retry_ceiling = retry_ceiling or get_retry_ceiling()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def _template_steps(self, template_name: str) -> List[Dict[str, Any]]:
        stored = await self.store.get(SEQUENCE_TEMPLATES, template_name)
        if stored and stored.get("steps"):
            return stored["steps"]
        if template_name not in SEQUENCE_LIBRARY:
            raise ValidationError(f"Unknown sequence template: {template_name}")
        return SEQUENCE_LIBRARY[template_name]

    async def create_sequence(
        self,
        lead_profile: Dict[str, Any],
        template_name: str = "default",
        steps: Optional[Iterable[Union[SequenceStep, Dict[str, Any]]]] = None,
        start_at: Optional[datetime] = None,
    ) -> SequenceInstance:
        lead_id = lead_profile.get("lead_id")
        owner_id = lead_profile.get("owner_id")
        if not lead_id or not owner_id:
            raise ValidationError("lead_profile requires lead_id and owner_id")

        raw_steps = list(steps) if steps is not None else await self._template_steps(template_name)
        try:
            parsed = [s if isinstance(s, SequenceStep) else SequenceStep.from_dict(s) for s in raw_steps]
        except (KeyError, ValueError) as exc:
            raise ValidationError(f"Malformed sequence step: {exc}", cause=exc) from exc
        if not parsed:
            raise ValidationError("A sequence needs at least one step")
        for i, step in enumerate(parsed):
            step.step_id = step.step_id or f"step_{i + 1}"
            if step.type == StepType.MESSAGE and not (step.channel and step.template):
                raise ValidationError(f"Message step {step.step_id} needs a channel and a template")

        instance = SequenceInstance(
            lead_id=lead_id,
            owner_id=owner_id,
            steps=parsed,
            lead_profile=dict(lead_profile),
            due_at=to_iso(start_at or utc_now()),
            context={"template": template_name if steps is None else "custom", "response_received": False},
        )
        await self.store.add(SEQUENCES, instance.to_dict(), doc_id=instance.sequence_id)
        logger.info("Created %s sequence %s for lead %s (%d steps)",
                    instance.context["template"], instance.sequence_id, lead_id, len(parsed))
        return instance

    async def get_sequence(self, sequence_id: str) -> SequenceInstance:
        doc = await self.store.get(SEQUENCES, sequence_id)
        if doc is None:
            raise NotFoundError(SEQUENCES, sequence_id)
        return SequenceInstance.from_dict(doc)

    async def _set_status(self, sequence_id: str, allowed_from: Iterable[SequenceStatus],
                          status: SequenceStatus) -> SequenceInstance:
        allowed = {s.value for s in allowed_from}

        def mutate(doc: Dict[str, Any]) -> Optional[Dict[str, Any]]:
            if doc.get("status") not in allowed:
                return None
            doc["status"] = status.value
            doc["updated_at"] = to_iso(utc_now())
            return doc

        doc = await update_with_retry(self.store, SEQUENCES, sequence_id, mutate)
        return SequenceInstance.from_dict(doc)

    async def pause(self, sequence_id: str) -> SequenceInstance:
        return await self._set_status(sequence_id, [SequenceStatus.ACTIVE], SequenceStatus.PAUSED)

    async def resume(self, sequence_id: str) -> SequenceInstance:
        return await self._set_status(sequence_id, [SequenceStatus.PAUSED], SequenceStatus.ACTIVE)

    async def cancel(self, sequence_id: str) -> SequenceInstance:
        return await self._set_status(
            sequence_id, [SequenceStatus.ACTIVE, SequenceStatus.PAUSED], SequenceStatus.CANCELLED
        )

    async def record_response(self, sequence_id: str, response: LeadResponse) -> SequenceInstance:
        """Note a lead reply so later conditional steps can see it."""
        def mutate(doc: Dict[str, Any]) -> Dict[str, Any]:
            context = doc.setdefault("context", {})
            context["response_received"] = True
            context["last_response_at"] = response.received_at
            context["last_response_channel"] = response.channel
            context["last_response_sentiment"] = response.sentiment
            doc["updated_at"] = to_iso(utc_now())
            return doc

        doc = await update_with_retry(self.store, SEQUENCES, sequence_id, mutate)
        return SequenceInstance.from_dict(doc)

    async def due_instances(self, now: Optional[datetime] = None) -> List[SequenceInstance]:
        now = now or utc_now()
        docs = await self.store.query(SEQUENCES, {"status": SequenceStatus.ACTIVE.value})
        instances = [SequenceInstance.from_dict(d) for d in docs]
        return [i for i in instances if i.is_due(now)]

    # ------------------------------------------------------------------
    # Step execution
    # ------------------------------------------------------------------

    async def execute_step(
        self,
        instance: Union[SequenceInstance, str],
        now: Optional[datetime] = None,
    ) -> SequenceInstance:
        """
        Run the step under the cursor if the sequence is active and due.

        Failures are recorded on the instance and never raised, so one bad
        sequence cannot halt a sweep.
        """
        now = now or utc_now()
        sequence_id = instance.sequence_id if isinstance(instance, SequenceInstance) else instance
        current = await self.get_sequence(sequence_id)

        if current.status != SequenceStatus.ACTIVE or not current.is_due(now):
            return current

        cursor = current.cursor
        step = current.current_step
        if step is None:
            return await self._apply(current, cursor, lambda doc: self._complete(doc, now))

        if not condition_met(step.condition, current.context):
            logger.info("Sequence %s skipping %s: condition %s not met",
                        sequence_id, step.step_id, step.condition)
            outcome = {"step_id": step.step_id, "type": step.type.value, "skipped": True}
            return await self._apply(current, cursor, lambda doc: self._advance(doc, outcome, now))

        try:
            outcome = await self._dispatch(current, step, now)
        except ProviderError as exc:
            # every provider failure counts against the retry ceiling
            error = ProcessingError(str(exc), retryable=exc.retryable, cause=exc)
            logger.warning("Sequence %s step %s provider failure: %s", sequence_id, step.step_id, exc)
            return await self._apply(current, cursor, lambda doc: self._fail_attempt(doc, error, True))
        except AutopilotError as exc:
            logger.warning("Sequence %s step %s failed: %s", sequence_id, step.step_id, exc.message)
            return await self._apply(current, cursor, lambda doc: self._fail_attempt(doc, exc, exc.retryable))
        except Exception as exc:
            error = wrap_unknown(exc, f"Step {step.step_id} failed: {exc}", sequence_id=sequence_id)
            logger.exception("Sequence %s step %s raised unexpectedly", sequence_id, step.step_id)
            return await self._apply(current, cursor, lambda doc: self._fail_attempt(doc, error, True))

        return await self._apply(current, cursor, lambda doc: self._advance(doc, outcome, now),
                                 event=self._step_event(outcome))

    @staticmethod
    def _step_event(outcome: Dict[str, Any]) -> Optional[Tuple[str, str, Dict[str, Any]]]:
        """Audit entry for a step that sent a message or made a decision."""
        if outcome.get("type") == StepType.MESSAGE.value:
            return ("nurture_message_sent",
                    f"Sent {outcome['template']} via {outcome['channel']}",
                    {key: outcome.get(key) for key in ("step_id", "channel", "template", "external_id")})
        if outcome.get("type") == StepType.DECISION.value:
            return ("nurture_decision",
                    f"Decision step {outcome['step_id']} chose {outcome['action']}",
                    {key: outcome.get(key) for key in ("step_id", "decision_id", "action", "rationale")})
        return None

    async def _apply(self, instance: SequenceInstance, cursor: int, change,
                     event: Optional[Tuple[str, str, Dict[str, Any]]] = None) -> SequenceInstance:
        """
        Conditionally write a step result. If the sequence was paused,
        cancelled or already advanced while the step ran, the result is
        discarded. event is audited only once the result is written.
        """
        applied = False

        def mutate(doc: Dict[str, Any]) -> Optional[Dict[str, Any]]:
            nonlocal applied
            applied = False
            if doc.get("status") != SequenceStatus.ACTIVE.value or doc.get("cursor") != cursor:
                return None
            change(doc)
            doc["updated_at"] = to_iso(utc_now())
            applied = True
            return doc

        doc = await update_with_retry(self.store, SEQUENCES, instance.sequence_id, mutate)
        updated = SequenceInstance.from_dict(doc)

        if not applied:
            logger.info("Sequence %s changed while step %d ran; result discarded",
                        instance.sequence_id, cursor)
            return updated

        if event is not None:
            action_type, description, details = event
            await self._audit(updated, action_type, description, **details)
        if updated.status in (SequenceStatus.COMPLETED, SequenceStatus.FAILED):
            await self._audit(updated, f"sequence_{updated.status.value}",
                              f"Sequence {updated.sequence_id} {updated.status.value}",
                              last_error=updated.last_error)
        return updated

    def _advance(self, doc: Dict[str, Any], outcome: Dict[str, Any], now: datetime) -> None:
        doc.setdefault("results", []).append({**outcome, "at": to_iso(now)})
        doc["retry_count"] = 0
        doc["last_error"] = None
        if outcome.get("type") == StepType.DECISION.value:
            doc["context"]["decision_attempts"] = doc["context"].get("decision_attempts", 0) + 1
        if outcome.get("stop"):
            self._complete(doc, now)
            return

        doc["cursor"] = doc["cursor"] + 1
        if doc["cursor"] >= len(doc["steps"]):
            self._complete(doc, now)
            return

        if outcome.get("due_at"):
            doc["due_at"] = outcome["due_at"]
        else:
            upcoming = doc["steps"][doc["cursor"]]
            delay = upcoming.get("delay_seconds") or 0
            if upcoming.get("type") != StepType.WAIT.value and delay:
                doc["due_at"] = add_seconds(now, delay)
            else:
                doc["due_at"] = to_iso(now)

    @staticmethod
    def _complete(doc: Dict[str, Any], now: datetime) -> None:
        doc["cursor"] = min(doc["cursor"], len(doc["steps"]))
        doc["status"] = SequenceStatus.COMPLETED.value
        doc["due_at"] = None
        doc["context"]["completed_at"] = to_iso(now)

    def _fail_attempt(self, doc: Dict[str, Any], error: AutopilotError, retryable: bool) -> None:
        doc["retry_count"] = doc.get("retry_count", 0) + 1
        doc["last_error"] = error.message
        if not retryable or doc["retry_count"] >= self.retry_ceiling:
            doc["status"] = SequenceStatus.FAILED.value
            doc["due_at"] = None

    async def _audit(self, instance: SequenceInstance, action_type: str, description: str, **details) -> None:
        if self.audit:
            await self.audit.record(
                instance.owner_id, action_type, description,
                details={"sequence_id": instance.sequence_id, "lead_id": instance.lead_id, **details},
                actor=Actor.AUTONOMOUS,
            )

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    async def _dispatch(self, instance: SequenceInstance, step: SequenceStep, now: datetime) -> Dict[str, Any]:
        handlers = {
            StepType.MESSAGE: self._run_message,
            StepType.WAIT: self._run_wait,
            StepType.DECISION: self._run_decision,
            StepType.TASK: self._run_task,
        }
        outcome = await handlers[step.type](instance, step, now)
        return {"step_id": step.step_id, "type": step.type.value, **outcome}

    async def _run_message(self, instance: SequenceInstance, step: SequenceStep, now: datetime) -> Dict[str, Any]:
        recipient = available_channels(instance.lead_profile).get(step.channel)
        if not recipient:
            raise ProcessingError(f"Lead {instance.lead_id} has no {step.channel} contact point", retryable=False)

        message = build_message(step.template, instance.lead_profile)
        message.metadata.update({"sequence_id": instance.sequence_id, "step_id": step.step_id})

        token_usage = {}
        if step.metadata.get("generate_copy") and self.provider is not None:
            generated = await self.provider.generate(
                f"Rewrite this {step.channel} message for {instance.lead_profile.get('company', 'the lead')}:\n\n"
                f"{message.body}",
                system_prompt="You write concise, honest B2B outreach.",
                max_tokens=400,
            )
            if generated.text.strip():
                message.body = generated.text.strip()
            token_usage = generated.token_usage

        result = await self.executor.send(step.channel, recipient, message)
        if not result.delivered:
            raise ProcessingError(
                f"{step.channel} send {result.status.value} for lead {instance.lead_id}", retryable=False
            )
        return {"channel": step.channel, "template": step.template,
                "external_id": result.external_id, "token_usage": token_usage}

    async def _run_wait(self, instance: SequenceInstance, step: SequenceStep, now: datetime) -> Dict[str, Any]:
        return {"delay_seconds": step.delay_seconds, "due_at": add_seconds(now, step.delay_seconds)}

    async def _run_decision(self, instance: SequenceInstance, step: SequenceStep, now: datetime) -> Dict[str, Any]:
        if self.decision_engine is None:
            raise ProcessingError("Decision step requires a DecisionEngine", retryable=False)

        actions = step.metadata.get("options") or ["continue", "stop_sequence"]
        options = await self.decision_engine.options_for(actions, instance.lead_profile)
        decision = self.decision_engine.decide(
            instance.lead_profile,
            options,
            {
                "max_attempts": int(step.metadata.get("max_attempts", 3)),
                "current_attempts": int(instance.context.get("decision_attempts", 0)),
            },
            lead_profile=instance.lead_profile,
        )
        await self.decision_engine.record_decision(decision)
        return {
            "decision_id": decision.decision_id,
            "action": decision.action,
            "rationale": decision.rationale,
            "stop": decision.is_stop or decision.action == "stop_sequence",
        }

    async def _run_task(self, instance: SequenceInstance, step: SequenceStep, now: datetime) -> Dict[str, Any]:
        task_id = f"{instance.sequence_id}_{step.step_id}"
        task = {
            "sequence_id": instance.sequence_id,
            "lead_id": instance.lead_id,
            "owner_id": instance.owner_id,
            "task_type": TASK_TYPES.get(step.template or "", step.template or "follow_up"),
            "template": step.template,
            "assignee": step.metadata.get("assignee", "sales_rep"),
            "due_at": to_iso(now + timedelta(hours=get_task_due_hours())),
            "status": "open",
            "created_at": to_iso(now),
        }
        # retries after a lost write reuse the same task id
        existing = await self.store.get(MANUAL_TASKS, task_id)
        if existing is None:
            await self.store.set(MANUAL_TASKS, task_id, task)
        return {"task_id": task_id, "task_type": task["task_type"]}
