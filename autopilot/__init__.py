"""
Autonomous decision and workflow orchestration for marketing campaigns.
"""

from autopilot.errors import (
    AutopilotError,
    ErrorType,
    Severity,
    ValidationError,
    PermissionDeniedError,
    NotFoundError,
    ProcessingError,
    ConflictError,
)
from autopilot.models import (
    AutonomyTier,
    ActionType,
    ActionRequest,
    Decision,
    DecisionConstraints,
    DecisionOption,
    LeadResponse,
    Opportunity,
    Outcome,
    SequenceInstance,
    WorkflowInstance,
)
from autopilot.store import PersistentStore, InMemoryStore, RedisStore, update_with_retry
from autopilot.audit import AuditRecorder
from autopilot.permissions import PermissionGate
from autopilot.opportunities import OpportunityDetector
from autopilot.decision_engine import DecisionEngine
from autopilot.escalation import ChannelEscalationStateMachine
from autopilot.nurturing import NurturingSequenceEngine
from autopilot.autonomous import AutonomousOptimizer
from autopilot.runtime import AutopilotRuntime

__all__ = [
    # Errors
    "AutopilotError",
    "ErrorType",
    "Severity",
    "ValidationError",
    "PermissionDeniedError",
    "NotFoundError",
    "ProcessingError",
    "ConflictError",
    # Models
    "AutonomyTier",
    "ActionType",
    "ActionRequest",
    "Decision",
    "DecisionConstraints",
    "DecisionOption",
    "LeadResponse",
    "Opportunity",
    "Outcome",
    "SequenceInstance",
    "WorkflowInstance",
    # Persistence
    "PersistentStore",
    "InMemoryStore",
    "RedisStore",
    "update_with_retry",
    "AuditRecorder",
    # Components
    "PermissionGate",
    "OpportunityDetector",
    "DecisionEngine",
    "ChannelEscalationStateMachine",
    "NurturingSequenceEngine",
    "AutonomousOptimizer",
    "AutopilotRuntime",
]
