"""Error taxonomy for the admission gate."""

from __future__ import annotations


class GateError(Exception):
    """Base class for admission gate failures."""


class ConfigError(GateError):
    """Raised when a policy or its settings cannot be loaded; fatal at startup."""


class FetchError(GateError):
    """Raised when an attestation, scan report or digest lookup fails or times out."""


class ValidationError(GateError):
    """Raised for malformed image references or attestations."""
