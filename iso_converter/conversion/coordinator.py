"""Conversion pipeline coordinator.

Sequences one run over a source image:

    Idle -> Classifying -> Extracting -> Packaging -> Converting -> Finalizing -> Done

Converting fans out to the virtualization, network boot and secure boot
stages, which run concurrently and can each be done, warned, skipped or
failed without aborting the run. Any error raised while classifying,
extracting or packaging moves the run to Failed; the workspace is torn down
on every exit path before the error reaches the caller.
"""

from __future__ import annotations

import json
import os
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, Optional, Union

from iso_converter.config.settings import ConversionOptions
from iso_converter.domain import (
    ArtifactEntry,
    ArtifactManifest,
    CompressionTier,
    ConversionRequest,
    DistributionIdentity,
    SourceImage,
    StageOutcome,
    StageStatus,
)
from iso_converter.logging import EventLogger, LoggerFactory, operation_context

from . import classifier, compression, extraction, netboot, packaging, virtualization
from .cancellation import CancelToken
from .commands import ProgressCallback
from .exceptions import (
    ConversionError,
    FatalInputError,
    KeyGenError,
    PipelineCancelled,
    PipelineError,
    UnsupportedPlatform,
)
from .files import write_text_atomic
from .plugins import PluginRegistry, default_registry
from .secureboot import SecureBootStage
from .workspace import Workspace

MANIFEST_FILENAME = "manifest.json"

STAGE_VIRTUALIZATION = "virtualization"
STAGE_NETBOOT = "netboot"
STAGE_SECUREBOOT = "secureboot"
FAN_OUT_STAGES = (STAGE_VIRTUALIZATION, STAGE_NETBOOT, STAGE_SECUREBOOT)


class PipelineState(Enum):
    IDLE = "idle"
    CLASSIFYING = "classifying"
    EXTRACTING = "extracting"
    PACKAGING = "packaging"
    CONVERTING = "converting"
    FINALIZING = "finalizing"
    DONE = "done"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (PipelineState.DONE, PipelineState.FAILED)


ALLOWED_TRANSITIONS: dict[PipelineState, tuple[PipelineState, ...]] = {
    PipelineState.IDLE: (PipelineState.CLASSIFYING,),
    PipelineState.CLASSIFYING: (PipelineState.EXTRACTING,),
    PipelineState.EXTRACTING: (PipelineState.PACKAGING,),
    PipelineState.PACKAGING: (PipelineState.CONVERTING,),
    PipelineState.CONVERTING: (PipelineState.FINALIZING,),
    PipelineState.FINALIZING: (PipelineState.DONE,),
    PipelineState.DONE: (),
    PipelineState.FAILED: (),
}


@dataclass
class FanOutResult:
    stage: str
    status: StageStatus
    entries: list[ArtifactEntry] = field(default_factory=list)
    message: str = ""


class PipelineCoordinator:
    """Runs one conversion. Create a new coordinator per run."""

    def __init__(
        self,
        options: Optional[ConversionOptions] = None,
        *,
        plugins: Optional[PluginRegistry] = None,
        cancel_token: Optional[CancelToken] = None,
        progress_callback: Optional[ProgressCallback] = None,
    ):
        self.options = options or ConversionOptions()
        self.cancel_token = cancel_token or CancelToken()
        self.plugins = plugins or default_registry(
            self.options.plugin_dir,
            timeout=self.options.tool_timeout_seconds,
            cancel_token=self.cancel_token,
        )
        self.progress_callback = progress_callback
        self.state = PipelineState.IDLE
        self.history: list[PipelineState] = [PipelineState.IDLE]
        self.failed_state: Optional[PipelineState] = None
        self.stage_statuses: dict[str, StageStatus] = {}
        self.log = LoggerFactory.for_pipeline()
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # State machine
    # ------------------------------------------------------------------

    def _transition(self, new_state: PipelineState) -> None:
        with self._lock:
            previous = self.state
            if new_state is PipelineState.FAILED:
                if previous.is_terminal:
                    raise RuntimeError(f"Cannot fail from terminal state {previous.value}")
                self.failed_state = previous
            elif new_state not in ALLOWED_TRANSITIONS[previous]:
                raise RuntimeError(
                    f"Illegal pipeline transition {previous.value} -> {new_state.value}"
                )
            self.state = new_state
            self.history.append(new_state)
        EventLogger.log_state_transition(self.log, previous.value, new_state.value)

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    def run(self, request: ConversionRequest) -> ArtifactManifest:
        """Convert ``request.source_image_path`` into the requested artifacts.

        Raises:
            FatalInputError: Unusable input image, output directory or options
            ClassificationFailure: No known distribution marker in the image
            StageFailure: Extraction, customization or packaging failed
            PipelineCancelled: Cancelled or the run timeout elapsed
        """
        if self.state is not PipelineState.IDLE:
            raise RuntimeError("PipelineCoordinator instances run exactly once")
        if self.options.run_timeout_seconds:
            self.cancel_token.cancel_after(self.options.run_timeout_seconds)
        try:
            with operation_context(
                "convert",
                image=str(request.source_image_path),
                tier=request.tier.value,
            ) as log:
                self.log = log
                try:
                    image = self._validate_inputs(request)
                    return self._run_stages(request, image)
                except BaseException:
                    if not self.state.is_terminal:
                        self._transition(PipelineState.FAILED)
                    raise
        finally:
            self.cancel_token.disarm()

    def _validate_inputs(self, request: ConversionRequest) -> SourceImage:
        self.options.validate()
        path = Path(request.source_image_path)
        if not path.is_file():
            raise FatalInputError(f"Input ISO file does not exist: {path}", path)
        if not os.access(path, os.R_OK):
            raise FatalInputError(f"Input ISO file is not readable: {path}", path)
        output_dir = Path(request.output_dir)
        try:
            output_dir.mkdir(parents=True, exist_ok=True)
        except OSError as error:
            raise FatalInputError(
                f"Cannot create output directory {output_dir}: {error}", output_dir
            ) from error
        if not os.access(output_dir, os.W_OK | os.X_OK):
            raise FatalInputError(f"Output directory is not writable: {output_dir}", output_dir)
        return SourceImage.from_path(path)

    # ------------------------------------------------------------------
    # Sequential stages
    # ------------------------------------------------------------------

    def _run_stages(self, request: ConversionRequest, image: SourceImage) -> ArtifactManifest:
        options = self.options
        token = self.cancel_token

        self._transition(PipelineState.CLASSIFYING)
        distribution = classifier.classify(image)
        image = image.with_distribution(distribution)
        manifest = ArtifactManifest(distribution=distribution)
        plan = compression.select(
            request.tier,
            distribution,
            architecture=options.architecture,
            analysis=options.analysis_mode,
        )
        token.check()

        output_dir = Path(request.output_dir)
        with Workspace.create(image, options.scratch_dir) as workspace:
            self._transition(PipelineState.EXTRACTING)
            tree = extraction.extract(
                image,
                workspace,
                method=options.extraction_method,
                timeout=options.tool_timeout_seconds,
                cancel_token=token,
            )
            plugin = self.plugins.get(distribution)
            if plugin.customize(workspace):
                self.log.info(f"Applied {plugin.name} customization")
            token.check()

            self._transition(PipelineState.PACKAGING)
            filesystem = packaging.package(
                tree,
                plan,
                output_dir / packaging.output_name(distribution),
                timeout=options.tool_timeout_seconds,
                cancel_token=token,
                progress_callback=self.progress_callback,
                source_epoch=image.path.stat().st_mtime,
            )
        self._record(manifest, filesystem)
        manifest.record_outcome(StageOutcome("packaging", StageStatus.DONE))
        token.check()

        self._transition(PipelineState.CONVERTING)
        for result in self._fan_out(request, distribution, filesystem):
            for entry in result.entries:
                self._record(manifest, entry)
            self.stage_statuses[result.stage] = result.status
            manifest.record_outcome(StageOutcome(result.stage, result.status, result.message))
            EventLogger.log_stage_outcome(
                self.log, result.stage, result.status.value, result.message
            )
        token.check()

        self._transition(PipelineState.FINALIZING)
        if options.write_manifest:
            write_manifest(manifest, output_dir / MANIFEST_FILENAME)
        self._transition(PipelineState.DONE)
        return manifest

    def _record(self, manifest: ArtifactManifest, entry: ArtifactEntry) -> None:
        manifest.record(entry)
        EventLogger.log_artifact_recorded(
            self.log, entry.kind.value, str(entry.path), entry.size_bytes, entry.checksum
        )

    # ------------------------------------------------------------------
    # Fan-out stages
    # ------------------------------------------------------------------

    def _fan_out(
        self,
        request: ConversionRequest,
        distribution: DistributionIdentity,
        filesystem: ArtifactEntry,
    ) -> list[FanOutResult]:
        """Run the enabled fan-out stages concurrently.

        Results come back in FAN_OUT_STAGES order regardless of completion order.
        """
        tasks: dict[str, Callable[[], FanOutResult]] = {}
        if request.target_platform:
            tasks[STAGE_VIRTUALIZATION] = lambda: self._run_virtualization(
                request, distribution, filesystem
            )
        if request.enable_network_boot:
            tasks[STAGE_NETBOOT] = lambda: self._run_netboot(request, distribution)
        if request.enable_secure_boot:
            tasks[STAGE_SECUREBOOT] = lambda: self._run_secureboot(request)

        for stage in tasks:
            self.stage_statuses[stage] = StageStatus.PENDING

        results: list[FanOutResult] = []
        with ThreadPoolExecutor(
            max_workers=max(1, len(tasks)), thread_name_prefix="fan-out"
        ) as pool:
            futures = {stage: pool.submit(task) for stage, task in tasks.items()}
            for stage in FAN_OUT_STAGES:
                if stage not in futures:
                    results.append(FanOutResult(stage, StageStatus.SKIPPED, message="disabled"))
                    continue
                results.append(self._collect(stage, futures[stage]))
        return results

    def _collect(self, stage: str, future: Future) -> FanOutResult:
        """Fold an unexpected worker error into a failed outcome for that stage."""
        try:
            return future.result()
        except PipelineCancelled:
            raise
        except Exception as error:
            self.log.opt(exception=error).error(f"Stage {stage} crashed: {error}")
            message = f"{type(error).__name__}: {error}"
            return FanOutResult(stage, StageStatus.FAILED, message=message)

    def _run_virtualization(
        self,
        request: ConversionRequest,
        distribution: DistributionIdentity,
        filesystem: ArtifactEntry,
    ) -> FanOutResult:
        try:
            entry = virtualization.convert_disk(
                filesystem,
                request.target_platform,
                Path(request.output_dir),
                distribution,
                timeout=self.options.tool_timeout_seconds,
                cancel_token=self.cancel_token,
            )
        except UnsupportedPlatform as error:
            return FanOutResult(STAGE_VIRTUALIZATION, StageStatus.SKIPPED, message=str(error))
        except ConversionError as error:
            return FanOutResult(STAGE_VIRTUALIZATION, StageStatus.FAILED, message=str(error))
        return FanOutResult(STAGE_VIRTUALIZATION, StageStatus.DONE, [entry])

    def _run_netboot(
        self, request: ConversionRequest, distribution: DistributionIdentity
    ) -> FanOutResult:
        self.cancel_token.check()
        try:
            entries = netboot.emit_network_boot_config(
                distribution,
                Path(request.output_dir),
                base_url=self.options.netboot_base_url,
            )
        except OSError as error:
            return FanOutResult(STAGE_NETBOOT, StageStatus.FAILED, message=str(error))
        if not netboot.has_template(distribution):
            return FanOutResult(
                STAGE_NETBOOT,
                StageStatus.WARNED,
                entries,
                message=f"no template for {distribution.value}, generic template used",
            )
        return FanOutResult(STAGE_NETBOOT, StageStatus.DONE, entries)

    def _run_secureboot(self, request: ConversionRequest) -> FanOutResult:
        stage = SecureBootStage(
            Path(request.output_dir),
            key_size=self.options.secure_boot_key_size,
            subject=self.options.secure_boot_subject,
            valid_days=self.options.secure_boot_valid_days,
            overwrite=self.options.overwrite_signing_material,
            timeout=self.options.tool_timeout_seconds,
        )
        try:
            entries = stage.generate(self.cancel_token)
        except KeyGenError as error:
            return FanOutResult(STAGE_SECUREBOOT, StageStatus.FAILED, message=str(error))
        return FanOutResult(STAGE_SECUREBOOT, StageStatus.DONE, entries)


def write_manifest(manifest: ArtifactManifest, path: Path) -> None:
    write_text_atomic(path, json.dumps(manifest.to_dict(), indent=2) + "\n")


def convert(
    source_image_path: Union[str, Path],
    output_dir: Union[str, Path],
    tier: Union[str, CompressionTier] = CompressionTier.STANDARD,
    target_platform: Optional[str] = "vmware",
    enable_network_boot: bool = False,
    enable_secure_boot: bool = False,
    *,
    options: Optional[ConversionOptions] = None,
    plugins: Optional[PluginRegistry] = None,
    cancel_event: Optional[threading.Event] = None,
    progress_callback: Optional[ProgressCallback] = None,
) -> ArtifactManifest:
    """Convert a distribution ISO into a repackaged artifact set.

    Args:
        source_image_path: Input ISO image
        output_dir: Directory receiving all artifacts (created if missing)
        tier: Compression tier name or CompressionTier
        target_platform: Hypervisor name (vmware, hyperv, ...) or None to skip
        enable_network_boot: Emit PXE/iPXE/GRUB network boot documents
        enable_secure_boot: Generate a signing key and certificate
        options: Ambient settings (timeouts, URLs, key parameters)
        plugins: Per-distribution customization registry
        cancel_event: Set from another thread to cancel the run
        progress_callback: Receives packaging progress ratios

    Returns:
        The manifest of produced artifacts

    Raises:
        PipelineError: See PipelineCoordinator.run
    """
    try:
        parsed_tier = CompressionTier.parse(tier)
    except ValueError as error:
        raise FatalInputError(str(error)) from error
    request = ConversionRequest(
        source_image_path=Path(source_image_path),
        output_dir=Path(output_dir),
        tier=parsed_tier,
        target_platform=target_platform or None,
        enable_network_boot=enable_network_boot,
        enable_secure_boot=enable_secure_boot,
    )
    coordinator = PipelineCoordinator(
        options,
        plugins=plugins,
        cancel_token=CancelToken(cancel_event),
        progress_callback=progress_callback,
    )
    return coordinator.run(request)


__all__ = [
    "PipelineCoordinator",
    "PipelineError",
    "PipelineState",
    "convert",
    "write_manifest",
]
