"""
Decision Engine - choose one action under constraints and learn from outcomes.

Selection:
    stop if the attempt budget or time budget is spent, otherwise the
    eligible option with the highest expected value (ties: first listed).
    Options that contact a lead must clear check_ethical_boundaries().

Learning:
    expected values are kept per (action, context bucket) and moved
    towards each observed reward with an exponential moving average:
        new = old + alpha * (reward - old)
"""

import logging
from typing import Any, Dict, Iterable, List, Optional, Tuple, Union

from autopilot.config import (
    get_company_size_ranges,
    get_conflict_retry_policy,
    get_default_expected_value,
    get_ethical_boundaries,
    get_learning_rate,
    get_response_rewards,
)
from autopilot.errors import ConflictError, ValidationError
from autopilot.models import (
    STOP,
    Decision,
    DecisionConstraints,
    DecisionOption,
    Outcome,
)
from autopilot.retry import retry_async
from autopilot.store import VERSION_FIELD, PersistentStore


logger = logging.getLogger("decision_engine")

EXPECTED_VALUES = "expected_values"
LEARNING_OUTCOMES = "learning_outcomes"
DECISIONS = "decisions"


def company_size_range(size: Any, ranges: Optional[List[int]] = None) -> str:
    ranges = ranges or get_company_size_ranges()
    try:
        size = int(size)
    except (TypeError, ValueError):
        return "unknown"
    lower = 1
    for upper in ranges:
        if size <= upper:
            return f"{lower}-{upper}"
        lower = upper + 1
    return f"{ranges[-1] + 1}+"


def context_bucket(context: Optional[Dict[str, Any]]) -> str:
    """Learning key for a context: industry plus company-size range."""
    context = context or {}
    industry = str(context.get("industry") or "unknown").strip().lower() or "unknown"
    return f"{industry}|{company_size_range(context.get('company_size'))}"


def reward_from_outcome(outcome: Outcome) -> float:
    """Explicit reward wins, then the response-type table, then success."""
    if outcome.reward is not None:
        reward = float(outcome.reward)
    elif outcome.response_type and outcome.response_type in get_response_rewards():
        reward = get_response_rewards()[outcome.response_type]
    else:
        reward = 1.0 if outcome.success else 0.0
    return max(0.0, min(1.0, reward))


def _expected_value_id(action: str, bucket: str) -> str:
    return f"{action}|{bucket}"


class DecisionEngine:

    def __init__(self, store: PersistentStore, learning_rate: Optional[float] = None,
                 boundaries: Optional[Dict[str, List[str]]] = None):
        self.store = store
        self.learning_rate = learning_rate if learning_rate is not None else get_learning_rate()
        self.boundaries = boundaries or get_ethical_boundaries()
        self.default_value = get_default_expected_value()

    # ------------------------------------------------------------------
    # Selection
    # ------------------------------------------------------------------

    @staticmethod
    def _coerce_constraints(constraints: Union[DecisionConstraints, Dict[str, Any]]) -> DecisionConstraints:
        if isinstance(constraints, dict):
            if "max_attempts" not in constraints:
                raise ValidationError("constraints.max_attempts is required")
            constraints = DecisionConstraints.from_dict(constraints)
        if not isinstance(constraints, DecisionConstraints):
            raise ValidationError(f"Unsupported constraints type: {type(constraints).__name__}")
        if not isinstance(constraints.max_attempts, int) or constraints.max_attempts <= 0:
            raise ValidationError(f"max_attempts must be a positive integer, got {constraints.max_attempts!r}")
        if not isinstance(constraints.current_attempts, int) or constraints.current_attempts < 0:
            raise ValidationError(f"current_attempts must be >= 0, got {constraints.current_attempts!r}")
        return constraints

    @staticmethod
    def _coerce_options(options: Iterable[Any]) -> List[DecisionOption]:
        coerced = []
        for option in options or []:
            if isinstance(option, DecisionOption):
                coerced.append(option)
            elif isinstance(option, dict) and "action" in option:
                coerced.append(DecisionOption(
                    action=option["action"],
                    expected_value=float(option.get("expected_value", 0.0)),
                    risk=float(option.get("risk", 0.0)),
                    channel=option.get("channel"),
                    tactic=option.get("tactic"),
                    content=option.get("content"),
                    metadata=option.get("metadata", {}),
                ))
            else:
                raise ValidationError(f"Malformed decision option: {option!r}")
        return coerced

    def decide(
        self,
        context: Optional[Dict[str, Any]],
        options: Iterable[Any],
        constraints: Union[DecisionConstraints, Dict[str, Any]],
        lead_profile: Optional[Dict[str, Any]] = None,
    ) -> Decision:
        """
        Pick one option or stop.

        Raises:
            ValidationError: malformed constraints or options
        """
        constraints = self._coerce_constraints(constraints)
        options = self._coerce_options(options)

        try:
            return self._select(context, options, constraints, lead_profile)
        except Exception as exc:
            logger.warning("Decision failed, stopping instead: %s", exc)
            return Decision(
                action=STOP,
                rationale=f"error during selection: {exc}",
                constraints=constraints.to_dict(),
            )

    def _select(self, context, options, constraints, lead_profile) -> Decision:
        bucket = context_bucket(context)
        table = tuple((o.action, o.expected_value) for o in options)

        def stop(reason: str, rejected: Tuple = ()) -> Decision:
            logger.info("Decision: stop (%s)", reason)
            return Decision(action=STOP, rationale=reason, expected_values=table,
                            constraints=constraints.to_dict(), context_bucket=bucket,
                            rejected=rejected)

        if constraints.current_attempts >= constraints.max_attempts:
            return stop(f"attempt budget exhausted ({constraints.current_attempts}/{constraints.max_attempts})")
        if constraints.time_constraint is not None and constraints.time_constraint <= 0:
            return stop("time budget exhausted")
        if not options:
            return stop("no options")

        rejected: List[Dict[str, Any]] = []
        eligible = []
        for option in options:
            if option.risk > constraints.risk_tolerance:
                rejected.append({"action": option.action, "reason": f"risk {option.risk} above tolerance"})
            else:
                eligible.append(option)

        # sorted() is stable, so equal values keep their listed order
        for option in sorted(eligible, key=lambda o: -o.expected_value):
            if option.channel is not None:
                allowed, reason = self.check_ethical_boundaries(option, option.content, lead_profile)
                if not allowed:
                    logger.info("Option %s rejected by ethical boundaries: %s", option.action, reason)
                    rejected.append({"action": option.action, "reason": reason})
                    continue

            logger.info("Decision: %s (ev=%.3f, bucket=%s)", option.action, option.expected_value, bucket)
            return Decision(
                action=option.action,
                rationale=f"highest expected value {option.expected_value:.3f} among {len(eligible)} eligible options",
                expected_values=table,
                constraints=constraints.to_dict(),
                context_bucket=bucket,
                rejected=tuple(rejected),
            )

        return stop("no option passed risk and ethical checks", tuple(rejected))

    # ------------------------------------------------------------------
    # Ethics
    # ------------------------------------------------------------------

    def check_ethical_boundaries(
        self,
        action: Union[DecisionOption, str],
        content: Optional[str],
        lead_profile: Optional[Dict[str, Any]],
    ) -> Tuple[bool, str]:
        """
        Returns (allowed, reason).

        Denies when the lead has not opted in on the action's channel, when
        the action uses a prohibited tactic, when the content contains
        prohibited material, or when the lead is in a prohibited industry.
        """
        if isinstance(action, DecisionOption):
            name, channel, tactic = action.action, action.channel, action.tactic
        else:
            name, channel, tactic = str(action), None, None

        lead_profile = lead_profile or {}
        opted_in = lead_profile.get("has_opted_in", False)
        if isinstance(opted_in, dict):
            opted_in = bool(opted_in.get(channel, False)) if channel else any(opted_in.values())
        if not opted_in:
            return False, f"no opt-in for channel {channel or 'any'}"

        searchable = " ".join(filter(None, [name, tactic])).lower().replace("_", " ")
        for prohibited in self.boundaries.get("prohibited_tactics", []):
            if prohibited in searchable:
                return False, f"prohibited tactic: {prohibited}"

        text = (content or "").lower()
        for prohibited in self.boundaries.get("prohibited_content", []):
            if prohibited in text:
                return False, f"prohibited content: {prohibited}"

        industry = str(lead_profile.get("industry") or "").lower()
        if industry and industry in self.boundaries.get("prohibited_industries", []):
            return False, f"prohibited industry: {industry}"

        return True, "ok"

    # ------------------------------------------------------------------
    # Expected values
    # ------------------------------------------------------------------

    async def expected_value(self, action: str, context: Optional[Dict[str, Any]]) -> float:
        doc = await self.store.get(EXPECTED_VALUES, _expected_value_id(action, context_bucket(context)))
        return float(doc["value"]) if doc else self.default_value

    async def options_for(self, actions: Iterable[Any], context: Optional[Dict[str, Any]]) -> List[DecisionOption]:
        """Build options carrying the currently learned expected value for this context."""
        options = []
        for action in actions:
            entry = {"action": action} if isinstance(action, str) else dict(action)
            options.append(DecisionOption(
                action=entry["action"],
                expected_value=await self.expected_value(entry["action"], context),
                risk=float(entry.get("risk", 0.0)),
                channel=entry.get("channel"),
                tactic=entry.get("tactic"),
                content=entry.get("content"),
                metadata=entry.get("metadata", {}),
            ))
        return options

    async def record_decision(self, decision: Decision) -> None:
        await self.store.set(DECISIONS, decision.decision_id, decision.to_dict())

    async def get_decision(self, decision_id: str) -> Optional[Decision]:
        doc = await self.store.get(DECISIONS, decision_id)
        return Decision.from_dict(doc) if doc else None

    # ------------------------------------------------------------------
    # Learning
    # ------------------------------------------------------------------

    async def update_learning(
        self,
        decision: Decision,
        outcome: Outcome,
        context: Optional[Dict[str, Any]] = None,
    ) -> Optional[float]:
        """
        Fold one outcome into the expected value of the decided action.

        Each decision id is consumed once; replays return None and change
        nothing. Stop decisions carry no action to learn about.
        """
        if outcome.decision_id != decision.decision_id:
            raise ValidationError(
                f"Outcome for {outcome.decision_id} does not match decision {decision.decision_id}"
            )
        if decision.is_stop:
            return None

        bucket = decision.context_bucket or context_bucket(context)
        reward = reward_from_outcome(outcome)

        claimed = await self.store.compare_and_set(LEARNING_OUTCOMES, decision.decision_id, 0, {
            **outcome.to_dict(),
            "action": decision.action,
            "context_bucket": bucket,
            "reward": reward,
        })
        if not claimed:
            logger.info("Outcome for decision %s already consumed", decision.decision_id)
            return None

        doc_id = _expected_value_id(decision.action, bucket)
        alpha = self.learning_rate

        async def attempt() -> float:
            current = await self.store.get(EXPECTED_VALUES, doc_id)
            version = current.get(VERSION_FIELD, 0) if current else 0
            old = float(current["value"]) if current else self.default_value
            new = old + alpha * (reward - old)
            written = await self.store.compare_and_set(EXPECTED_VALUES, doc_id, version, {
                "action": decision.action,
                "context_bucket": bucket,
                "value": new,
                "samples": (current.get("samples", 0) if current else 0) + 1,
            })
            if not written:
                raise ConflictError(f"Concurrent learning update on {doc_id}")
            return new

        try:
            new_value = await retry_async(attempt, get_conflict_retry_policy(), (ConflictError,),
                                          operation_name=f"learn {doc_id}")
        except Exception:
            # release the claim so a replay of this outcome can still be learned
            await self.store.delete(LEARNING_OUTCOMES, decision.decision_id)
            raise
        logger.info("Learned %s: reward=%.2f -> ev=%.4f", doc_id, reward, new_value)
        return new_value
