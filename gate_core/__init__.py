"""Signed-image admission decision engine."""

from .cache import DecisionCache
from .errors import ConfigError, FetchError, GateError, ValidationError
from .evaluator import PolicyEvaluator
from .gate import AdmissionGate
from .policy import (
    AdmissionRequest,
    Container,
    Decision,
    ImageDecision,
    Policy,
    PolicyStore,
    Verdict,
    load_policy,
    policy_from_mapping,
)
from .refs import ImageReference, parse_image_reference
from .scan import ScanReport, Severity

__version__ = "0.1.0"

__all__ = [
    "AdmissionGate",
    "AdmissionRequest",
    "ConfigError",
    "Container",
    "Decision",
    "DecisionCache",
    "FetchError",
    "GateError",
    "ImageDecision",
    "ImageReference",
    "Policy",
    "PolicyEvaluator",
    "PolicyStore",
    "ScanReport",
    "Severity",
    "ValidationError",
    "Verdict",
    "load_policy",
    "parse_image_reference",
    "policy_from_mapping",
]
