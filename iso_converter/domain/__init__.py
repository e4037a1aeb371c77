"""Domain models for ISO conversion runs.

This package contains the value objects that flow between the conversion
stages: source image, compression plan, and the artifact manifest.
"""

from __future__ import annotations

from .models import (
    ArtifactEntry,
    ArtifactKind,
    ArtifactManifest,
    CompressionPlan,
    CompressionTier,
    ConversionRequest,
    DistributionIdentity,
    SourceImage,
    StageOutcome,
    StageStatus,
)


__all__ = [
    "ArtifactEntry",
    "ArtifactKind",
    "ArtifactManifest",
    "CompressionPlan",
    "CompressionTier",
    "ConversionRequest",
    "DistributionIdentity",
    "SourceImage",
    "StageOutcome",
    "StageStatus",
]
