"""
Data model for the autopilot engine.

Every persisted entity is a dataclass with to_dict()/from_dict() so it can
round-trip through the PersistentStore unchanged. Timestamps are stored as
ISO-8601 UTC strings.
"""

import re
import uuid
from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone, timedelta
from enum import Enum
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional


def utc_now() -> datetime:
    """Return timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


def to_iso(value: datetime) -> str:
    return value.astimezone(timezone.utc).isoformat()


def parse_ts(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


_DELAY_PATTERN = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*([smhdw])\s*$")
_DELAY_UNITS = {"s": 1, "m": 60, "h": 3600, "d": 86400, "w": 604800}


def parse_delay(delay: Any) -> int:
    """Convert '48h', '30m', '2d' or a number of seconds into seconds."""
    if delay is None or delay == "":
        return 0
    if isinstance(delay, (int, float)):
        return int(delay)
    match = _DELAY_PATTERN.match(str(delay).lower())
    if not match:
        raise ValueError(f"Unrecognized delay: {delay!r}")
    return int(float(match.group(1)) * _DELAY_UNITS[match.group(2)])


def _new_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex[:12]}"


# =============================================================================
# ENUMS
# =============================================================================

class AutonomyTier(Enum):
    """User-granted autonomy level, ordered least to most permissive."""
    NONE = "none"
    SUGGEST_ONLY = "suggest_only"
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class ActionType(Enum):
    CONTENT_VARIATION = "content_variation"
    SCHEDULE_ADJUSTMENT = "schedule_adjustment"
    BUDGET_REALLOCATION = "budget_reallocation"
    AB_TEST_CREATION = "ab_test_creation"
    CAMPAIGN_OPTIMIZATION = "campaign_optimization"
    TREND_IMPLEMENTATION = "trend_implementation"


class Priority(Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class ChannelType(Enum):
    EMAIL = "email"
    LINKEDIN = "linkedin"
    PHONE = "phone"
    SMS = "sms"
    TWITTER = "twitter"
    FACEBOOK = "facebook"
    WEBSITE_CHAT = "website_chat"
    DIRECT_MAIL = "direct_mail"
    IN_APP = "in_app"
    PUSH_NOTIFICATION = "push_notification"


class WorkflowStatus(Enum):
    PENDING = "pending"
    CONTACTED = "contacted"
    RESPONDED = "responded"
    ESCALATED = "escalated"
    CONVERTED = "converted"
    FAILED = "failed"
    CANCELLED = "cancelled"


class Objective(Enum):
    AWARENESS = "awareness"
    CONVERSION = "conversion"


class StepType(Enum):
    MESSAGE = "message"
    WAIT = "wait"
    DECISION = "decision"
    TASK = "task"


class SequenceStatus(Enum):
    ACTIVE = "active"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class SendStatus(Enum):
    SENT = "sent"
    BOUNCED = "bounced"
    REJECTED = "rejected"


class Actor(Enum):
    AUTONOMOUS = "autonomous"
    SYSTEM = "system"
    USER = "user"


class SuggestionStatus(Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    DISMISSED = "dismissed"


# =============================================================================
# PERMISSIONS & ACTIONS
# =============================================================================

@dataclass
class PermissionProfile:
    owner_id: str
    tier: AutonomyTier = AutonomyTier.NONE
    updated_at: str = field(default_factory=lambda: to_iso(utc_now()))

    def to_dict(self) -> Dict[str, Any]:
        return {**asdict(self), "tier": self.tier.value}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PermissionProfile":
        return cls(
            owner_id=data["owner_id"],
            tier=AutonomyTier(data.get("tier", AutonomyTier.NONE.value)),
            updated_at=data.get("updated_at") or to_iso(utc_now()),
        )


@dataclass(frozen=True)
class ActionRequest:
    """A requested autonomous action. Never mutated after creation."""
    action_type: ActionType
    target_entity_id: str
    payload: Mapping[str, Any] = field(default_factory=dict)
    request_id: str = field(default_factory=lambda: _new_id("req"))
    created_at: str = field(default_factory=lambda: to_iso(utc_now()))

    def __post_init__(self):
        object.__setattr__(self, "payload", MappingProxyType(dict(self.payload)))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "request_id": self.request_id,
            "action_type": self.action_type.value,
            "target_entity_id": self.target_entity_id,
            "payload": dict(self.payload),
            "created_at": self.created_at,
        }


@dataclass
class Suggestion:
    """Recommendation created when an action is detected but not authorized."""
    owner_id: str
    target_entity_id: str
    action_type: str
    reason: str
    opportunity: Dict[str, Any] = field(default_factory=dict)
    request_id: Optional[str] = None
    status: str = SuggestionStatus.PENDING.value
    suggestion_id: str = field(default_factory=lambda: _new_id("sug"))
    created_at: str = field(default_factory=lambda: to_iso(utc_now()))
    resolved_at: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Suggestion":
        known = {k: v for k, v in data.items() if k in cls.__dataclass_fields__}
        return cls(**known)


# =============================================================================
# METRICS & OPPORTUNITIES
# =============================================================================

@dataclass
class MetricSnapshot:
    entity_id: str
    timestamp: str
    send_timestamp: str
    opens: int = 0
    clicks: int = 0
    conversions: int = 0

    @property
    def click_to_open(self) -> float:
        return self.clicks / self.opens if self.opens else 0.0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MetricSnapshot":
        return cls(
            entity_id=data["entity_id"],
            timestamp=data["timestamp"],
            send_timestamp=data.get("send_timestamp") or data["timestamp"],
            opens=int(data.get("opens", 0) or 0),
            clicks=int(data.get("clicks", 0) or 0),
            conversions=int(data.get("conversions", 0) or 0),
        )


@dataclass
class Opportunity:
    type: ActionType
    priority: Priority
    description: str
    target_entity_id: str
    metrics: Dict[str, Any] = field(default_factory=dict)
    detected_at: str = field(default_factory=lambda: to_iso(utc_now()))

    def to_dict(self) -> Dict[str, Any]:
        return {
            **asdict(self),
            "type": self.type.value,
            "priority": self.priority.value,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Opportunity":
        return cls(
            type=ActionType(data["type"]),
            priority=Priority(data["priority"]),
            description=data.get("description", ""),
            target_entity_id=data["target_entity_id"],
            metrics=data.get("metrics", {}),
            detected_at=data.get("detected_at") or to_iso(utc_now()),
        )


# =============================================================================
# DECISIONS
# =============================================================================

STOP = "stop"
DEFERRED = "deferred"


@dataclass
class DecisionOption:
    """A candidate action with the engine's current expected value."""
    action: str
    expected_value: float
    risk: float = 0.0                 # 0 (harmless) .. 1 (dangerous)
    channel: Optional[str] = None     # channel the action contacts a lead on
    tactic: Optional[str] = None
    content: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class DecisionConstraints:
    max_attempts: int
    current_attempts: int = 0
    time_constraint: Optional[float] = None   # seconds remaining, None = unbounded
    risk_tolerance: float = 1.0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DecisionConstraints":
        return cls(
            max_attempts=data["max_attempts"],
            current_attempts=data.get("current_attempts", 0),
            time_constraint=data.get("time_constraint"),
            risk_tolerance=data.get("risk_tolerance", 1.0),
        )


@dataclass(frozen=True)
class Decision:
    """Immutable record of one selection."""
    action: str
    rationale: str
    expected_values: tuple = ()
    constraints: Dict[str, Any] = field(default_factory=dict)
    context_bucket: str = ""
    rejected: tuple = ()
    decision_id: str = field(default_factory=lambda: _new_id("dec"))
    timestamp: str = field(default_factory=lambda: to_iso(utc_now()))

    @property
    def is_stop(self) -> bool:
        return self.action == STOP

    def to_dict(self) -> Dict[str, Any]:
        return {
            "decision_id": self.decision_id,
            "action": self.action,
            "rationale": self.rationale,
            "expected_values": [list(pair) for pair in self.expected_values],
            "constraints": dict(self.constraints),
            "context_bucket": self.context_bucket,
            "rejected": [dict(r) for r in self.rejected],
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Decision":
        return cls(
            action=data["action"],
            rationale=data.get("rationale", ""),
            expected_values=tuple(tuple(pair) for pair in data.get("expected_values", [])),
            constraints=data.get("constraints", {}),
            context_bucket=data.get("context_bucket", ""),
            rejected=tuple(data.get("rejected", [])),
            decision_id=data["decision_id"],
            timestamp=data["timestamp"],
        )


@dataclass
class Outcome:
    decision_id: str
    success: bool
    response_type: Optional[str] = None
    time_to_response_seconds: Optional[float] = None
    reward: Optional[float] = None
    observed_at: str = field(default_factory=lambda: to_iso(utc_now()))

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


# =============================================================================
# MULTI-CHANNEL ESCALATION
# =============================================================================

@dataclass
class LeadResponse:
    channel: str
    received_at: str
    sentiment: str = "neutral"        # positive / neutral / negative
    converted: bool = False
    content: str = ""


@dataclass
class WorkflowInstance:
    lead_id: str
    owner_id: str
    channel_priorities: List[str]
    contact_points: Dict[str, str] = field(default_factory=dict)
    lead_profile: Dict[str, Any] = field(default_factory=dict)
    objective: Objective = Objective.CONVERSION
    status: WorkflowStatus = WorkflowStatus.PENDING
    attempted_channels: List[str] = field(default_factory=list)
    current_channel: Optional[str] = None
    contacted_at: Optional[str] = None
    response_window_seconds: Optional[int] = None
    timeout_at: Optional[str] = None
    failure_reason: Optional[str] = None
    history: List[Dict[str, Any]] = field(default_factory=list)
    workflow_id: str = field(default_factory=lambda: _new_id("wf"))
    created_at: str = field(default_factory=lambda: to_iso(utc_now()))
    updated_at: str = field(default_factory=lambda: to_iso(utc_now()))

    @property
    def is_terminal(self) -> bool:
        return self.status in (WorkflowStatus.CONVERTED, WorkflowStatus.FAILED, WorkflowStatus.CANCELLED)

    def to_dict(self) -> Dict[str, Any]:
        return {
            **asdict(self),
            "objective": self.objective.value,
            "status": self.status.value,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "WorkflowInstance":
        data = {k: v for k, v in data.items() if k in cls.__dataclass_fields__}
        data["objective"] = Objective(data.get("objective", Objective.CONVERSION.value))
        data["status"] = WorkflowStatus(data.get("status", WorkflowStatus.PENDING.value))
        data["channel_priorities"] = list(data.get("channel_priorities", []))
        data["attempted_channels"] = list(data.get("attempted_channels", []))
        data["history"] = [dict(h) for h in data.get("history", [])]
        data["contact_points"] = dict(data.get("contact_points", {}))
        data["lead_profile"] = dict(data.get("lead_profile", {}))
        return cls(**data)


# =============================================================================
# NURTURING SEQUENCES
# =============================================================================

@dataclass
class SequenceStep:
    type: StepType
    channel: Optional[str] = None
    template: Optional[str] = None
    delay_seconds: int = 0
    condition: Optional[Dict[str, Any]] = None
    step_id: str = ""
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {**asdict(self), "type": self.type.value}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SequenceStep":
        return cls(
            type=StepType(data["type"]),
            channel=data.get("channel"),
            template=data.get("template"),
            delay_seconds=parse_delay(data.get("delay_seconds", data.get("delay"))),
            condition=data.get("condition"),
            step_id=data.get("step_id") or data.get("id") or "",
            metadata=data.get("metadata", {}),
        )


@dataclass
class SequenceInstance:
    lead_id: str
    owner_id: str
    steps: List[SequenceStep]
    lead_profile: Dict[str, Any] = field(default_factory=dict)
    cursor: int = 0
    status: SequenceStatus = SequenceStatus.ACTIVE
    due_at: Optional[str] = None
    retry_count: int = 0
    last_error: Optional[str] = None
    context: Dict[str, Any] = field(default_factory=dict)
    results: List[Dict[str, Any]] = field(default_factory=list)
    sequence_id: str = field(default_factory=lambda: _new_id("seq"))
    created_at: str = field(default_factory=lambda: to_iso(utc_now()))
    updated_at: str = field(default_factory=lambda: to_iso(utc_now()))

    @property
    def current_step(self) -> Optional[SequenceStep]:
        if 0 <= self.cursor < len(self.steps):
            return self.steps[self.cursor]
        return None

    def is_due(self, now: datetime) -> bool:
        due = parse_ts(self.due_at)
        return due is None or due <= now

    def to_dict(self) -> Dict[str, Any]:
        return {
            **asdict(self),
            "steps": [s.to_dict() for s in self.steps],
            "status": self.status.value,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SequenceInstance":
        data = {k: v for k, v in data.items() if k in cls.__dataclass_fields__}
        data["steps"] = [SequenceStep.from_dict(s) for s in data.get("steps", [])]
        data["status"] = SequenceStatus(data.get("status", SequenceStatus.ACTIVE.value))
        data["context"] = dict(data.get("context", {}))
        data["results"] = [dict(r) for r in data.get("results", [])]
        return cls(**data)


# =============================================================================
# AUDIT
# =============================================================================

@dataclass
class AuditRecord:
    actor: str
    owner_id: str
    action_type: str
    description: str
    details: Dict[str, Any] = field(default_factory=dict)
    is_simulation: bool = False
    approved: bool = True
    reviewed: bool = False
    timestamp: str = field(default_factory=lambda: to_iso(utc_now()))
    record_id: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def add_seconds(ts: datetime, seconds: float) -> str:
    return to_iso(ts + timedelta(seconds=seconds))
