"""Policy model, loading and publication."""

from .loader import load_policy, parse_duration, policy_from_mapping, validate_policy
from .store import PolicyStore
from .types import (
    AdmissionRequest,
    Container,
    Decision,
    ImageDecision,
    Mode,
    Policy,
    Rule,
    RuleOutcome,
    ScanRequirement,
    Selector,
    Settings,
    Verdict,
)

__all__ = [
    "AdmissionRequest",
    "Container",
    "Decision",
    "ImageDecision",
    "Mode",
    "Policy",
    "PolicyStore",
    "Rule",
    "RuleOutcome",
    "ScanRequirement",
    "Selector",
    "Settings",
    "Verdict",
    "load_policy",
    "parse_duration",
    "policy_from_mapping",
    "validate_policy",
]
