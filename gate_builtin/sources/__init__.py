"""Attestation, scan report and digest collaborators."""

from .directory import DirectoryAttestationSource, DirectoryScanReportSource
from .http import HttpAttestationSource, HttpScanReportSource, RegistryDigestResolver
from .static import StaticAttestationSource, StaticDigestResolver, StaticScanReportSource

__all__ = [
    "DirectoryAttestationSource",
    "DirectoryScanReportSource",
    "HttpAttestationSource",
    "HttpScanReportSource",
    "RegistryDigestResolver",
    "StaticAttestationSource",
    "StaticDigestResolver",
    "StaticScanReportSource",
]
