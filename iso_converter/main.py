import argparse
import dataclasses
import sys
import threading
from pathlib import Path

from iso_converter import __version__
from iso_converter.config import settings
from iso_converter.conversion import dependencies
from iso_converter.conversion.coordinator import convert
from iso_converter.conversion.exceptions import (
    ClassificationFailure,
    FatalInputError,
    PipelineCancelled,
    PipelineError,
    StageFailure,
)
from iso_converter.domain import CompressionTier, ConversionRequest
from iso_converter.logging import LoggerFactory, setup_logging

EXIT_OK = 0
EXIT_UNEXPECTED = 1
EXIT_BAD_INPUT = 2
EXIT_UNSUPPORTED_DISTRIBUTION = 3
EXIT_STAGE_FAILURE = 4
EXIT_PARTIAL_FAILURE = 5
EXIT_CANCELLED = 130


def exit_code_for(error: BaseException) -> int:
    """Map a pipeline error to the process exit status."""
    if isinstance(error, (PipelineCancelled, KeyboardInterrupt)):
        return EXIT_CANCELLED
    if isinstance(error, FatalInputError):
        return EXIT_BAD_INPUT
    if isinstance(error, ClassificationFailure):
        return EXIT_UNSUPPORTED_DISTRIBUTION
    if isinstance(error, StageFailure):
        return EXIT_STAGE_FAILURE
    return EXIT_UNEXPECTED


def _platform_arg(value: str):
    value = value.strip().lower()
    return None if value in ("", "none") else value


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="iso-converter",
        description="Convert a Linux distribution ISO into squashfs, VM disk, "
        "network boot and Secure Boot artifacts",
    )
    parser.add_argument("input", type=Path, help="Source ISO image")
    parser.add_argument("output", type=Path, help="Output directory")
    parser.add_argument(
        "-c",
        "--compression",
        default=CompressionTier.STANDARD.value,
        choices=[tier.value for tier in CompressionTier],
        help="Compression tier (default: standard)",
    )
    parser.add_argument(
        "-p",
        "--platform",
        default="vmware",
        type=_platform_arg,
        help="Virtualization platform (vmware, hyperv, qemu, kvm, virtualbox) or 'none'",
    )
    parser.add_argument("--network-boot", action="store_true", help="Emit network boot configs")
    parser.add_argument("--secure-boot", action="store_true", help="Generate signing key and certificate")
    parser.add_argument("--analysis", action="store_true", help="Use distribution-tuned compression")
    parser.add_argument("--config", type=Path, help="Settings JSON file")
    parser.add_argument("-d", "--debug", action="store_true", help="Enable verbose debug output")
    parser.add_argument("--trace", action="store_true", help="Enable trace output (very verbose)")
    parser.add_argument("--log-dir", type=Path, help="Directory for log files")
    parser.add_argument("--timeout", type=float, help="Abort the whole run after SECS seconds")
    parser.add_argument(
        "--skip-dependency-check",
        action="store_true",
        help="Do not check for external tools before starting",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)

    setup_logging(debug=args.debug, trace=args.trace, log_dir=args.log_dir)
    log = LoggerFactory.for_system()

    cancel_event = threading.Event()
    try:
        options = settings.load_options(args.config)
        overrides = {}
        if args.analysis:
            overrides["analysis_mode"] = True
        if args.timeout is not None:
            overrides["run_timeout_seconds"] = args.timeout
        if overrides:
            options = dataclasses.replace(options, **overrides)
            options.validate()

        request = ConversionRequest(
            source_image_path=args.input,
            output_dir=args.output,
            tier=CompressionTier.parse(args.compression),
            target_platform=args.platform,
            enable_network_boot=args.network_boot,
            enable_secure_boot=args.secure_boot,
        )
        if not args.skip_dependency_check:
            dependencies.validate_dependencies(request, options)

        manifest = convert(
            request.source_image_path,
            request.output_dir,
            request.tier,
            request.target_platform,
            request.enable_network_boot,
            request.enable_secure_boot,
            options=options,
            cancel_event=cancel_event,
        )
    except KeyboardInterrupt:
        cancel_event.set()
        log.warning("Conversion interrupted")
        return EXIT_CANCELLED
    except PipelineError as error:
        log.error(f"{type(error).__name__}: {error}")
        return exit_code_for(error)
    except Exception as error:
        log.exception(f"Unexpected error: {type(error).__name__}")
        return EXIT_UNEXPECTED

    print(f"Distribution: {manifest.distribution.value}")
    for entry in manifest:
        print(f"{entry.kind.value:<15} {entry.path} ({entry.size_bytes} bytes)")
    for outcome in manifest.outcomes:
        suffix = f": {outcome.message}" if outcome.message else ""
        print(f"{outcome.stage:<15} {outcome.status.value}{suffix}")

    if manifest.has_failures:
        log.warning("Conversion completed with failed stages")
        return EXIT_PARTIAL_FAILURE
    log.success("Conversion completed")
    return EXIT_OK


if __name__ == "__main__":
    sys.exit(main())
