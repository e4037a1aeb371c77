"""Network boot configuration documents (iPXE, GRUB over HTTP, PXELINUX).

Document content depends only on the distribution and the base URL, so
emitting twice into the same directory produces byte-identical files.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Optional
from urllib.parse import urlsplit

from iso_converter.domain import ArtifactEntry, ArtifactKind, DistributionIdentity
from iso_converter.logging import LoggerFactory

from .checksums import describe_artifact
from .files import write_text_atomic

log = LoggerFactory.for_stage("netboot")

DEFAULT_BASE_URL = "http://netboot.example.com"
NETBOOT_DIR = "netboot"


@dataclass(frozen=True)
class KernelLayout:
    """Where the installer kernel and initrd live under the distribution URL."""

    kernel: str
    initrd: str
    cmdline: str = "ip=dhcp"


GENERIC_LAYOUT = KernelLayout(kernel="linux", initrd="initrd")

KERNEL_LAYOUTS: dict[DistributionIdentity, KernelLayout] = {
    DistributionIdentity.DEBIAN: KernelLayout(
        kernel="linux", initrd="initrd.gz", cmdline="ip=dhcp priority=low"
    ),
    DistributionIdentity.ARCH: KernelLayout(
        kernel="arch/boot/x86_64/vmlinuz-linux",
        initrd="arch/boot/x86_64/initramfs-linux.img",
        cmdline="ip=dhcp archiso_http_srv={url}/ archisobasedir=arch",
    ),
    DistributionIdentity.FEDORA: KernelLayout(
        kernel="images/pxeboot/vmlinuz",
        initrd="images/pxeboot/initrd.img",
        cmdline="ip=dhcp inst.repo={url}",
    ),
}

IPXE_TEMPLATE = """\
#!ipxe
set base-url {url}
kernel ${{base-url}}/{kernel} {cmdline}
initrd ${{base-url}}/{initrd}
boot
"""

GRUB_TEMPLATE = """\
insmod http
set timeout=5
menuentry 'Network Boot - {distribution}' {{
    linux (http,{host}){path}/{kernel} {cmdline}
    initrd (http,{host}){path}/{initrd}
}}
"""

PXELINUX_TEMPLATE = """\
DEFAULT {distribution}
PROMPT 0
TIMEOUT 50
LABEL {distribution}
    MENU LABEL Network Boot - {distribution}
    KERNEL {url}/{kernel}
    INITRD {url}/{initrd}
    APPEND {cmdline}
"""

# Relative output path -> template
DOCUMENTS: tuple[tuple[str, str], ...] = (
    ("ipxe-boot.cfg", IPXE_TEMPLATE),
    ("grub-network.cfg", GRUB_TEMPLATE),
    ("pxelinux.cfg/default", PXELINUX_TEMPLATE),
)


def has_template(distribution: DistributionIdentity) -> bool:
    return distribution in KERNEL_LAYOUTS


def distribution_url(distribution: DistributionIdentity, base_url: str) -> str:
    return f"{base_url.rstrip('/')}/{distribution.value}"


def render_documents(
    distribution: DistributionIdentity, base_url: str = DEFAULT_BASE_URL
) -> dict[str, str]:
    """Render every boot document for a distribution, keyed by relative path."""
    layout = KERNEL_LAYOUTS.get(distribution, GENERIC_LAYOUT)
    url = distribution_url(distribution, base_url)
    parts = urlsplit(url)
    values = {
        "distribution": distribution.value,
        "url": url,
        "host": parts.netloc,
        "path": parts.path.rstrip("/"),
        "kernel": layout.kernel,
        "initrd": layout.initrd,
        "cmdline": layout.cmdline.format(url=url),
    }
    return {name: template.format(**values) for name, template in DOCUMENTS}


def emit_network_boot_config(
    distribution: DistributionIdentity,
    output_dir: Path,
    *,
    base_url: Optional[str] = None,
) -> list[ArtifactEntry]:
    """Write network boot documents under ``<output_dir>/netboot``.

    Distributions without a kernel layout get the generic template.

    Raises:
        OSError: If the output location is not writable
    """
    base_url = base_url or DEFAULT_BASE_URL
    if not has_template(distribution):
        log.warning(f"No network boot template for {distribution.value}, using generic")
    log.info(f"Generating Network Boot Configuration for {distribution.value}")

    netboot_dir = Path(output_dir) / NETBOOT_DIR
    entries: list[ArtifactEntry] = []
    for name, content in render_documents(distribution, base_url).items():
        path = netboot_dir / name
        write_text_atomic(path, content)
        entries.append(describe_artifact(ArtifactKind.NETBOOT_CONFIG, path))
    log.success("Network boot configurations generated")
    return entries
