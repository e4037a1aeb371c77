"""Compression strategy selection.

Maps a requested tier and a detected distribution onto a concrete
CompressionPlan. Only the standard tier is distribution-aware; fast and
maximum sit at the two ends of the speed/ratio trade-off for every
distribution.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from iso_converter.domain import CompressionPlan, CompressionTier, DistributionIdentity
from iso_converter.logging import LoggerFactory

log = LoggerFactory.for_stage("compression")

SMALL_BLOCK = 128 * 1024
LARGE_BLOCK = 1024 * 1024

# Architecture name -> xz branch/call/jump filter understood by mksquashfs
BCJ_FILTERS = {
    "x86_64": "x86",
    "amd64": "x86",
    "i386": "x86",
    "i686": "x86",
    "aarch64": "arm64",
    "arm64": "arm64",
    "armv7l": "arm",
    "armhf": "arm",
    "ppc64le": "powerpc",
    "ppc64": "powerpc",
    "sparc64": "sparc",
    "ia64": "ia64",
}


@dataclass(frozen=True)
class _PlanTemplate:
    algorithm: str
    level: Optional[int] = None
    block_size: int = SMALL_BLOCK
    use_bcj: bool = False
    options: tuple[tuple[str, str], ...] = ()


_GENERIC = None

# Keyed by (tier, distribution); a None distribution is the generic fallback row.
STATIC_TABLE: dict[tuple[CompressionTier, Optional[DistributionIdentity]], _PlanTemplate] = {
    (CompressionTier.FAST, _GENERIC): _PlanTemplate("zstd", level=1),
    (CompressionTier.STANDARD, DistributionIdentity.DEBIAN): _PlanTemplate("zstd", level=10),
    (CompressionTier.STANDARD, DistributionIdentity.ARCH): _PlanTemplate("xz", use_bcj=True),
    (CompressionTier.STANDARD, _GENERIC): _PlanTemplate("zstd", level=7),
    (CompressionTier.MAXIMUM, _GENERIC): _PlanTemplate(
        "xz",
        block_size=LARGE_BLOCK,
        use_bcj=True,
        options=(("dict-size", "100%"),),
    ),
}

# Distribution-specific tuning for the standard tier when analysis mode is on.
ANALYSIS_TABLE: dict[Optional[DistributionIdentity], _PlanTemplate] = {
    DistributionIdentity.DEBIAN: _PlanTemplate("zstd", level=15, block_size=LARGE_BLOCK),
    DistributionIdentity.ARCH: _PlanTemplate(
        "xz",
        block_size=LARGE_BLOCK,
        use_bcj=True,
        options=(("dict-size", "100%"),),
    ),
    _GENERIC: _PlanTemplate("zstd", level=10),
}


def bcj_filter_for(architecture: str) -> Optional[str]:
    return BCJ_FILTERS.get(architecture.strip().lower())


def _lookup(
    tier: CompressionTier, distribution: Optional[DistributionIdentity]
) -> _PlanTemplate:
    template = STATIC_TABLE.get((tier, distribution))
    if template is None:
        template = STATIC_TABLE[(tier, _GENERIC)]
    return template


def _render(template: _PlanTemplate, architecture: str) -> CompressionPlan:
    filters: tuple[str, ...] = ()
    if template.use_bcj:
        bcj = bcj_filter_for(architecture)
        if bcj:
            filters = (bcj,)
        else:
            log.warning(f"No BCJ filter known for architecture {architecture}")
    return CompressionPlan(
        algorithm=template.algorithm,
        level=template.level,
        block_size=template.block_size,
        filters=filters,
        options=template.options,
    )


def select(
    tier: CompressionTier | str,
    distribution: Optional[DistributionIdentity],
    *,
    architecture: str = "x86_64",
    analysis: bool = False,
) -> CompressionPlan:
    """Select compressor parameters for a tier and distribution.

    Never fails for a valid tier: unlisted distributions, including
    UNRECOGNIZED, use the generic row.

    Raises:
        ValueError: If ``tier`` is not a known tier name
    """
    tier = CompressionTier.parse(tier)
    if distribution is DistributionIdentity.UNRECOGNIZED:
        distribution = None

    if analysis and tier is CompressionTier.STANDARD:
        template = ANALYSIS_TABLE.get(distribution, ANALYSIS_TABLE[_GENERIC])
        source = "analysis"
    else:
        template = _lookup(tier, distribution)
        source = "table"

    plan = _render(template, architecture)
    distribution_name = distribution.value if distribution else "generic"
    log.info(
        f"Compression plan for {tier.value}/{distribution_name} ({source}): {plan.describe()}"
    )
    return plan
