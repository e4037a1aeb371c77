"""Domain model for ISO conversion runs.

Type-safe value objects passed between the conversion stages. Everything here
is pure data: no subprocesses, no filesystem writes.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Iterator, Optional


# ==============================================================================
# Source Image Domain
# ==============================================================================


class DistributionIdentity(Enum):
    """Distribution family detected in a source image."""

    DEBIAN = "debian"
    ARCH = "arch"
    FEDORA = "fedora"
    UNRECOGNIZED = "unrecognized"

    @property
    def is_supported(self) -> bool:
        return self is not DistributionIdentity.UNRECOGNIZED


@dataclass(frozen=True)
class SourceImage:
    """An input disk image file.

    The coordinator owns this for the duration of one run. Classification
    produces a new instance via ``with_distribution`` rather than mutating.
    """

    path: Path
    size_bytes: int
    distribution: Optional[DistributionIdentity] = None

    @classmethod
    def from_path(cls, path: Path) -> SourceImage:
        path = Path(path)
        return cls(path=path, size_bytes=path.stat().st_size)

    def with_distribution(self, distribution: DistributionIdentity) -> SourceImage:
        return SourceImage(
            path=self.path, size_bytes=self.size_bytes, distribution=distribution
        )


# ==============================================================================
# Compression Domain
# ==============================================================================


class CompressionTier(Enum):
    """Requested compression aggressiveness, ordered fast < standard < maximum."""

    FAST = "fast"
    STANDARD = "standard"
    MAXIMUM = "maximum"

    @property
    def rank(self) -> int:
        return list(CompressionTier).index(self)

    @classmethod
    def parse(cls, value: str | CompressionTier) -> CompressionTier:
        """Parse a tier name (case-insensitive).

        Raises:
            ValueError: If the name is not a known tier
        """
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            valid = ", ".join(tier.value for tier in cls)
            raise ValueError(
                f"Invalid compression tier {value!r} (expected one of: {valid})"
            ) from None


@dataclass(frozen=True)
class CompressionPlan:
    """Concrete compressor configuration.

    ``filters`` holds architecture-specific filter flags (e.g. xz BCJ), and
    ``options`` any further compressor-specific settings such as dictionary size.
    """

    algorithm: str
    level: Optional[int]
    block_size: int
    filters: tuple[str, ...] = ()
    options: tuple[tuple[str, str], ...] = ()

    def to_mksquashfs_args(self) -> list[str]:
        """Render the plan as mksquashfs command-line arguments."""
        args = ["-comp", self.algorithm, "-b", str(self.block_size)]
        if self.level is not None:
            args.extend(["-Xcompression-level", str(self.level)])
        if self.filters:
            args.extend(["-Xbcj", ",".join(self.filters)])
        for name, value in self.options:
            args.extend([f"-X{name}", value])
        return args

    def describe(self) -> str:
        parts = [self.algorithm]
        if self.level is not None:
            parts.append(f"level {self.level}")
        if self.filters:
            parts.append(f"bcj {','.join(self.filters)}")
        for name, value in self.options:
            parts.append(f"{name} {value}")
        parts.append(f"block {self.block_size}")
        return ", ".join(parts)


# ==============================================================================
# Artifact Manifest Domain
# ==============================================================================


class ArtifactKind(Enum):
    """Type of file produced by a conversion run."""

    FILESYSTEM = "filesystem"
    DISK_IMAGE = "disk_image"
    NETBOOT_CONFIG = "netboot_config"
    SIGNING_KEY = "signing_key"
    CERTIFICATE = "certificate"


class StageStatus(Enum):
    """Outcome of a fan-out stage."""

    PENDING = "pending"
    DONE = "done"
    WARNED = "warned"  # Produced output, with an advisory warning
    SKIPPED = "skipped"  # Disabled or advisory failure, no output
    FAILED = "failed"  # Non-fatal failure, no output


@dataclass(frozen=True)
class ArtifactEntry:
    """A fully written output file."""

    kind: ArtifactKind
    path: Path
    size_bytes: int
    checksum: str  # sha256 hex digest

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind.value,
            "path": str(self.path),
            "size": self.size_bytes,
            "checksum": f"sha256:{self.checksum}",
        }


@dataclass(frozen=True)
class StageOutcome:
    """Final status of one pipeline stage, recorded alongside artifacts."""

    stage: str
    status: StageStatus
    message: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {"stage": self.stage, "status": self.status.value, "message": self.message}


@dataclass
class ArtifactManifest:
    """Append-only, ordered record of everything a run produced.

    Entries are only appended once the producing stage has reported success,
    so the manifest never references a partially written file.
    """

    distribution: Optional[DistributionIdentity] = None
    _entries: list[ArtifactEntry] = field(default_factory=list)
    _outcomes: list[StageOutcome] = field(default_factory=list)

    def record(self, entry: ArtifactEntry) -> None:
        self._entries.append(entry)

    def record_outcome(self, outcome: StageOutcome) -> None:
        self._outcomes.append(outcome)

    @property
    def entries(self) -> tuple[ArtifactEntry, ...]:
        return tuple(self._entries)

    @property
    def outcomes(self) -> tuple[StageOutcome, ...]:
        return tuple(self._outcomes)

    def __iter__(self) -> Iterator[ArtifactEntry]:
        return iter(tuple(self._entries))

    def __len__(self) -> int:
        return len(self._entries)

    def of_kind(self, kind: ArtifactKind) -> list[ArtifactEntry]:
        return [entry for entry in self._entries if entry.kind == kind]

    def outcome_for(self, stage: str) -> Optional[StageOutcome]:
        for outcome in self._outcomes:
            if outcome.stage == stage:
                return outcome
        return None

    @property
    def has_failures(self) -> bool:
        """True if any stage failed non-fatally."""
        return any(outcome.status == StageStatus.FAILED for outcome in self._outcomes)

    def to_records(self) -> list[tuple[str, str, int, str]]:
        """Flatten to ordered (kind, path, size, checksum) records."""
        return [
            (entry.kind.value, str(entry.path), entry.size_bytes, entry.checksum)
            for entry in self._entries
        ]

    def to_dict(self) -> dict[str, Any]:
        return {
            "distribution": self.distribution.value if self.distribution else None,
            "artifacts": [entry.to_dict() for entry in self._entries],
            "stages": [outcome.to_dict() for outcome in self._outcomes],
        }


# ==============================================================================
# Conversion Request Domain
# ==============================================================================


@dataclass(frozen=True)
class ConversionRequest:
    """Per-run inputs for ``convert``.

    ``target_platform`` of None means no virtualization conversion.
    """

    source_image_path: Path
    output_dir: Path
    tier: CompressionTier = CompressionTier.STANDARD
    target_platform: Optional[str] = "vmware"
    enable_network_boot: bool = False
    enable_secure_boot: bool = False
