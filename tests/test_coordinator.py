"""
Tests for the conversion pipeline coordinator.

This test suite covers:
- End-to-end runs with simulated external tools
- State machine transitions and the failed state
- Workspace cleanup on every exit path
- Independence of the fan-out stages
- Cancellation and input validation
"""

import json
import threading

import pytest

from iso_converter.config.settings import ConversionOptions
from iso_converter.conversion.coordinator import (
    MANIFEST_FILENAME,
    PipelineCoordinator,
    PipelineState,
    convert,
)
from iso_converter.conversion.exceptions import (
    ClassificationFailure,
    CompressionError,
    FatalInputError,
    MountError,
    PipelineCancelled,
    PluginError,
)
from iso_converter.conversion.plugins import DistributionPlugin, PluginRegistry
from iso_converter.domain import (
    ArtifactKind,
    CompressionTier,
    ConversionRequest,
    DistributionIdentity,
    StageStatus,
)


@pytest.fixture
def scratch(tmp_path):
    return tmp_path / "scratch"


@pytest.fixture
def options(tmp_path, scratch):
    return ConversionOptions(plugin_dir=tmp_path / "plugins", scratch_dir=scratch)


def leftover_workspaces(scratch):
    return list(scratch.iterdir()) if scratch.exists() else []


class FailingPlugin(DistributionPlugin):
    name = "failing"

    def customize(self, workspace):
        raise PluginError("hook exploded")


class TestEndToEnd:
    """Full runs against simulated tools."""

    def test_arch_maximum_vmware(self, arch_iso, output_dir, options, scratch, fake_tools):
        """Test the arch/maximum/vmware scenario produces two artifacts."""
        manifest = convert(arch_iso, output_dir, "maximum", "vmware", options=options)

        assert manifest.distribution is DistributionIdentity.ARCH
        assert [entry.kind for entry in manifest] == [
            ArtifactKind.FILESYSTEM,
            ArtifactKind.DISK_IMAGE,
        ]
        assert [entry.path.name for entry in manifest] == [
            "arch-compressed.squashfs",
            "arch-vmware.vmdk",
        ]
        squashfs = (output_dir / "arch-compressed.squashfs").read_text()
        assert "-comp xz" in squashfs
        assert "-Xbcj x86" in squashfs
        assert manifest.outcome_for("virtualization").status is StageStatus.DONE
        assert manifest.outcome_for("netboot").status is StageStatus.SKIPPED
        assert manifest.outcome_for("secureboot").status is StageStatus.SKIPPED
        assert not manifest.has_failures
        assert leftover_workspaces(scratch) == []

    def test_arch_maximum_vmware_with_netboot_and_secure_boot(
        self, arch_iso, output_dir, options, scratch, fake_tools
    ):
        manifest = convert(
            arch_iso,
            output_dir,
            "maximum",
            "vmware",
            enable_network_boot=True,
            enable_secure_boot=True,
            options=options,
        )

        assert len(manifest.of_kind(ArtifactKind.FILESYSTEM)) == 1
        assert len(manifest.of_kind(ArtifactKind.DISK_IMAGE)) == 1
        assert manifest.of_kind(ArtifactKind.DISK_IMAGE)[0].path.suffix == ".vmdk"
        assert len(manifest.of_kind(ArtifactKind.NETBOOT_CONFIG)) >= 1
        assert len(manifest.of_kind(ArtifactKind.SIGNING_KEY)) == 1
        assert len(manifest.of_kind(ArtifactKind.CERTIFICATE)) == 1
        assert not manifest.has_failures
        assert leftover_workspaces(scratch) == []

    def test_all_stages(self, debian_iso, output_dir, options, fake_tools):
        """Test every fan-out stage contributes in a fixed order."""
        manifest = convert(
            debian_iso,
            output_dir,
            "standard",
            "hyperv",
            enable_network_boot=True,
            enable_secure_boot=True,
            options=options,
        )

        assert [entry.kind for entry in manifest] == [
            ArtifactKind.FILESYSTEM,
            ArtifactKind.DISK_IMAGE,
            ArtifactKind.NETBOOT_CONFIG,
            ArtifactKind.NETBOOT_CONFIG,
            ArtifactKind.NETBOOT_CONFIG,
            ArtifactKind.SIGNING_KEY,
            ArtifactKind.CERTIFICATE,
        ]
        assert len(manifest.of_kind(ArtifactKind.CERTIFICATE)) == 1
        assert (output_dir / "debian-hyperv.vhdx").is_file()
        assert (output_dir / "netboot" / "ipxe-boot.cfg").is_file()

    def test_manifest_file(self, arch_iso, output_dir, options, fake_tools):
        """Test manifest.json mirrors the manifest and is not itself listed."""
        manifest = convert(arch_iso, output_dir, options=options)

        data = json.loads((output_dir / MANIFEST_FILENAME).read_text())
        assert data == manifest.to_dict()
        assert all(entry.path.name != MANIFEST_FILENAME for entry in manifest)

    def test_manifest_file_disabled(self, arch_iso, output_dir, tmp_path, fake_tools):
        options = ConversionOptions(plugin_dir=tmp_path / "plugins", write_manifest=False)
        convert(arch_iso, output_dir, options=options)
        assert not (output_dir / MANIFEST_FILENAME).exists()

    def test_every_entry_is_complete(self, debian_iso, output_dir, options, fake_tools):
        manifest = convert(debian_iso, output_dir, enable_network_boot=True, options=options)
        for entry in manifest:
            assert entry.path.is_file()
            assert entry.path.stat().st_size == entry.size_bytes
        assert not list(output_dir.rglob("*.partial"))

    def test_repeat_runs_are_reproducible(self, arch_iso, tmp_path, options, fake_tools):
        """Test identical inputs give identical checksums."""
        first = convert(arch_iso, tmp_path / "a", enable_network_boot=True, options=options)
        second = convert(arch_iso, tmp_path / "b", enable_network_boot=True, options=options)
        assert [entry.checksum for entry in first] == [entry.checksum for entry in second]

    def test_no_platform(self, arch_iso, output_dir, options, fake_tools):
        manifest = convert(arch_iso, output_dir, target_platform=None, options=options)
        assert [entry.kind for entry in manifest] == [ArtifactKind.FILESYSTEM]
        assert "qemu-img" not in fake_tools.tools_called()

    def test_progress_callback(self, arch_iso, output_dir, options, fake_tools):
        ratios = []
        convert(arch_iso, output_dir, options=options, progress_callback=ratios.append)
        assert ratios[-1] == 1.0

    def test_plugin_runs_before_packaging(self, arch_iso, output_dir, options, fake_tools):
        """Test a registered plugin can change what gets packaged."""

        class AddMarker(DistributionPlugin):
            name = "marker"

            def customize(self, workspace):
                (workspace.tree / "customized").write_text("yes")
                return True

        registry = PluginRegistry()
        registry.register(DistributionIdentity.ARCH, AddMarker())
        convert(arch_iso, output_dir, options=options, plugins=registry)
        assert "customized" in (output_dir / "arch-compressed.squashfs").read_text()


class TestStateMachine:
    """Tests for coordinator state transitions."""

    def test_successful_history(self, arch_iso, output_dir, options, fake_tools):
        coordinator = PipelineCoordinator(options)
        coordinator.run(ConversionRequest(arch_iso, output_dir))
        assert coordinator.history == [
            PipelineState.IDLE,
            PipelineState.CLASSIFYING,
            PipelineState.EXTRACTING,
            PipelineState.PACKAGING,
            PipelineState.CONVERTING,
            PipelineState.FINALIZING,
            PipelineState.DONE,
        ]

    def test_single_use(self, arch_iso, output_dir, options, fake_tools):
        coordinator = PipelineCoordinator(options)
        coordinator.run(ConversionRequest(arch_iso, output_dir))
        with pytest.raises(RuntimeError, match="exactly once"):
            coordinator.run(ConversionRequest(arch_iso, output_dir))

    def test_fan_out_stages_start_pending(
        self, arch_iso, output_dir, options, fake_tools, mocker
    ):
        """Test enabled fan-out stages are pending until their outcome is folded in."""
        coordinator = PipelineCoordinator(options)
        seen = {}
        run_netboot = coordinator._run_netboot

        def capture(request, distribution):
            seen.update(coordinator.stage_statuses)
            return run_netboot(request, distribution)

        mocker.patch.object(coordinator, "_run_netboot", side_effect=capture)
        coordinator.run(
            ConversionRequest(arch_iso, output_dir, target_platform=None, enable_network_boot=True)
        )

        assert seen["netboot"] is StageStatus.PENDING
        assert coordinator.stage_statuses == {
            "virtualization": StageStatus.SKIPPED,
            "netboot": StageStatus.DONE,
            "secureboot": StageStatus.SKIPPED,
        }

    def test_failure_records_failed_state(self, unknown_iso, output_dir, options, fake_tools):
        coordinator = PipelineCoordinator(options)
        with pytest.raises(ClassificationFailure):
            coordinator.run(ConversionRequest(unknown_iso, output_dir))
        assert coordinator.state is PipelineState.FAILED
        assert coordinator.failed_state is PipelineState.CLASSIFYING


class TestFatalFailures:
    """Fatal errors abort the run and leave no workspace behind."""

    def test_unrecognized_distribution(self, unknown_iso, output_dir, options, scratch, fake_tools):
        """Test classification failure happens before any output file exists."""
        with pytest.raises(ClassificationFailure):
            convert(unknown_iso, output_dir, options=options)
        assert list(output_dir.iterdir()) == []
        assert leftover_workspaces(scratch) == []
        assert fake_tools.calls == []

    def test_extraction_failure(self, arch_iso, output_dir, options, scratch, fake_tools):
        fake_tools.fail["xorriso"] = "not an ISO9660 image"
        with pytest.raises(MountError):
            convert(arch_iso, output_dir, options=options)
        assert leftover_workspaces(scratch) == []
        assert list(output_dir.iterdir()) == []

    def test_plugin_failure(self, arch_iso, output_dir, options, scratch, fake_tools):
        registry = PluginRegistry()
        registry.register(DistributionIdentity.ARCH, FailingPlugin())
        with pytest.raises(PluginError):
            convert(arch_iso, output_dir, options=options, plugins=registry)
        assert leftover_workspaces(scratch) == []
        assert "mksquashfs" not in fake_tools.tools_called()

    def test_packaging_failure(self, arch_iso, output_dir, options, scratch, fake_tools):
        """Test a compressor failure leaves no image and no workspace."""
        fake_tools.fail["mksquashfs"] = "No space left on device"
        with pytest.raises(CompressionError) as excinfo:
            convert(arch_iso, output_dir, options=options)
        assert excinfo.value.stage == "packaging"
        assert leftover_workspaces(scratch) == []
        assert list(output_dir.iterdir()) == []
        assert "qemu-img" not in fake_tools.tools_called()

    def test_missing_input(self, tmp_path, output_dir, options, fake_tools):
        with pytest.raises(FatalInputError, match="does not exist"):
            convert(tmp_path / "missing.iso", output_dir, options=options)

    def test_output_path_is_a_file(self, arch_iso, tmp_path, options, fake_tools):
        blocker = tmp_path / "blocker"
        blocker.write_text("x")
        with pytest.raises(FatalInputError):
            convert(arch_iso, blocker / "out", options=options)

    def test_invalid_tier(self, arch_iso, output_dir, options):
        with pytest.raises(FatalInputError, match="Invalid compression tier"):
            convert(arch_iso, output_dir, "ultra", options=options)

    def test_invalid_options(self, arch_iso, output_dir, tmp_path, fake_tools):
        options = ConversionOptions(plugin_dir=tmp_path, tool_timeout_seconds=-1)
        with pytest.raises(FatalInputError):
            convert(arch_iso, output_dir, options=options)


class TestFanOutIndependence:
    """A failing fan-out stage does not affect its siblings."""

    def test_virtualization_failure(self, arch_iso, output_dir, options, fake_tools):
        fake_tools.fail["qemu-img"] = "Unknown file format"
        manifest = convert(
            arch_iso,
            output_dir,
            enable_network_boot=True,
            enable_secure_boot=True,
            options=options,
        )
        assert manifest.outcome_for("virtualization").status is StageStatus.FAILED
        assert manifest.outcome_for("netboot").status is StageStatus.DONE
        assert manifest.outcome_for("secureboot").status is StageStatus.DONE
        assert manifest.has_failures
        assert manifest.of_kind(ArtifactKind.DISK_IMAGE) == []
        assert len(manifest.of_kind(ArtifactKind.NETBOOT_CONFIG)) == 3

    def test_secure_boot_failure(self, arch_iso, output_dir, options, fake_tools):
        """Test existing signing material fails only the secure boot stage."""
        output_dir.mkdir()
        (output_dir / "secureboot-key.pem").write_text("existing")
        manifest = convert(arch_iso, output_dir, enable_secure_boot=True, options=options)
        assert manifest.outcome_for("secureboot").status is StageStatus.FAILED
        assert manifest.outcome_for("virtualization").status is StageStatus.DONE
        assert (output_dir / "secureboot-key.pem").read_text() == "existing"

    def test_publish_error_is_folded_into_manifest(
        self, arch_iso, output_dir, options, fake_tools
    ):
        """Test a filesystem error in one stage still returns the full manifest."""
        output_dir.mkdir()
        (output_dir / "arch-vmware.vmdk").mkdir()

        manifest = convert(
            arch_iso,
            output_dir,
            enable_network_boot=True,
            enable_secure_boot=True,
            options=options,
        )

        assert manifest.outcome_for("virtualization").status is StageStatus.FAILED
        assert manifest.outcome_for("netboot").status is StageStatus.DONE
        assert manifest.outcome_for("secureboot").status is StageStatus.DONE
        assert len(manifest.of_kind(ArtifactKind.SIGNING_KEY)) == 1
        assert not (output_dir / "arch-vmware.vmdk.partial").exists()
        assert (output_dir / MANIFEST_FILENAME).is_file()

    def test_unexpected_stage_error_is_folded_into_manifest(
        self, arch_iso, output_dir, options, fake_tools, mocker
    ):
        """Test an unexpected exception fails only the stage that raised it."""
        mocker.patch(
            "iso_converter.conversion.netboot.emit_network_boot_config",
            side_effect=RuntimeError("template engine crashed"),
        )
        coordinator = PipelineCoordinator(options)

        manifest = coordinator.run(
            ConversionRequest(arch_iso, output_dir, enable_network_boot=True)
        )

        outcome = manifest.outcome_for("netboot")
        assert outcome.status is StageStatus.FAILED
        assert "template engine crashed" in outcome.message
        assert manifest.outcome_for("virtualization").status is StageStatus.DONE
        assert coordinator.state is PipelineState.DONE

    def test_unsupported_platform_is_advisory(self, arch_iso, output_dir, options, fake_tools):
        """Test an unknown platform leaves the other fan-out stages intact."""
        manifest = convert(
            arch_iso,
            output_dir,
            target_platform="xen",
            enable_network_boot=True,
            enable_secure_boot=True,
            options=options,
        )
        outcome = manifest.outcome_for("virtualization")
        assert outcome.status is StageStatus.SKIPPED
        assert "xen" in outcome.message
        assert manifest.outcome_for("netboot").status is StageStatus.DONE
        assert manifest.outcome_for("secureboot").status is StageStatus.DONE
        assert not manifest.has_failures
        assert manifest.of_kind(ArtifactKind.DISK_IMAGE) == []


class TestCancellation:
    """Tests for cooperative cancellation."""

    def test_cancelled_before_start(self, arch_iso, output_dir, options, scratch, fake_tools):
        event = threading.Event()
        event.set()
        with pytest.raises(PipelineCancelled):
            convert(arch_iso, output_dir, options=options, cancel_event=event)
        assert leftover_workspaces(scratch) == []

    def test_cancelled_during_packaging(self, arch_iso, output_dir, options, scratch, fake_tools):
        """Test cancellation stops the run before the fan-out stages."""
        event = threading.Event()

        def cancel_on_progress(ratio):
            event.set()

        with pytest.raises(PipelineCancelled):
            convert(
                arch_iso,
                output_dir,
                options=options,
                cancel_event=event,
                progress_callback=cancel_on_progress,
            )
        assert leftover_workspaces(scratch) == []
        assert "qemu-img" not in fake_tools.tools_called()

    def test_tier_enum_accepted(self, arch_iso, output_dir, options, fake_tools):
        manifest = convert(arch_iso, output_dir, CompressionTier.FAST, options=options)
        assert "-Xcompression-level 1" in manifest.entries[0].path.read_text()
