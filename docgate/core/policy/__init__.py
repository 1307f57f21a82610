"""Action policy evaluation for docgate.

Gates document actions behind configurable, prioritized policies.
"""

from .engine import (
    ActionPolicyEngine,
    PolicyResult,
    PolicyReason,
    ActionPolicyError,
    ReasonRequiredError,
    ActionPolicyDeniedError,
    evaluate_action_policy,
    evaluate_action_policy_with_fallback,
)
from .guards import GuardType, GuardFailure, GuardFailureReason
from .rules import Actor

__all__ = [
    "ActionPolicyEngine",
    "PolicyResult",
    "PolicyReason",
    "ActionPolicyError",
    "ReasonRequiredError",
    "ActionPolicyDeniedError",
    "evaluate_action_policy",
    "evaluate_action_policy_with_fallback",
    "GuardType",
    "GuardFailure",
    "GuardFailureReason",
    "Actor",
]
