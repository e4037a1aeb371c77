"""Secure Boot signing material generation.

Creates an RSA private key and a long-lived self-signed X.509 certificate
with openssl. Existing material is never replaced unless overwrite is
requested, and a single stage instance refuses to generate twice.
"""

from __future__ import annotations

import datetime
import os
from pathlib import Path
from typing import Optional

from iso_converter.domain import ArtifactEntry, ArtifactKind
from iso_converter.logging import LoggerFactory

from . import commands
from .cancellation import CancelToken
from .checksums import describe_artifact
from .exceptions import CommandError, KeyGenError

log = LoggerFactory.for_stage("secureboot")

KEY_FILENAME = "secureboot-key.pem"
CERT_FILENAME = "secureboot-cert.pem"
DEFAULT_KEY_SIZE = 4096
DEFAULT_SUBJECT = "/CN=Custom Linux Secure Boot/"
DEFAULT_VALID_DAYS = 3650


class SecureBootStage:
    def __init__(
        self,
        output_dir: Path,
        *,
        key_size: int = DEFAULT_KEY_SIZE,
        subject: str = DEFAULT_SUBJECT,
        valid_days: int = DEFAULT_VALID_DAYS,
        overwrite: bool = False,
        timeout: float = 600,
    ):
        self.output_dir = Path(output_dir)
        self.key_size = key_size
        self.subject = subject
        self.valid_days = valid_days
        self.overwrite = overwrite
        self.timeout = timeout
        self._generated = False

    @property
    def key_path(self) -> Path:
        return self.output_dir / KEY_FILENAME

    @property
    def cert_path(self) -> Path:
        return self.output_dir / CERT_FILENAME

    def _check_existing(self) -> None:
        if self.overwrite:
            return
        for path in (self.key_path, self.cert_path):
            if path.exists():
                raise KeyGenError(
                    f"{path} already exists; remove it or enable overwrite to regenerate"
                )

    def build_command(self, openssl: str, key_out: Path, cert_out: Path) -> list[str]:
        return [
            openssl,
            "req",
            "-new",
            "-x509",
            "-newkey", f"rsa:{self.key_size}",
            "-keyout", str(key_out),
            "-out", str(cert_out),
            "-days", str(self.valid_days),
            "-subj", self.subject,
            "-sha256",
            "-nodes",
        ]  # fmt: skip

    def generate(self, cancel_token: Optional[CancelToken] = None) -> list[ArtifactEntry]:
        """Generate the key pair and certificate.

        Returns:
            Manifest entries for the key and the certificate, in that order

        Raises:
            KeyGenError: If called twice, if material already exists, or if
                openssl fails
        """
        if self._generated:
            raise KeyGenError("Signing material was already generated for this run")
        self._generated = True
        self._check_existing()
        try:
            openssl = commands.require_tool("openssl")
        except CommandError as error:
            raise KeyGenError(str(error)) from error

        expiration = datetime.date.today() + datetime.timedelta(days=self.valid_days)
        log.info(
            f"Generating keys rsa:{self.key_size} for {self.subject!r}, "
            f"valid until {expiration:%Y-%m-%d}"
        )
        self.output_dir.mkdir(parents=True, exist_ok=True)
        key_partial = self.key_path.with_name(KEY_FILENAME + ".partial")
        cert_partial = self.cert_path.with_name(CERT_FILENAME + ".partial")
        try:
            commands.run_checked_command(
                self.build_command(openssl, key_partial, cert_partial),
                timeout=self.timeout,
                env={**os.environ, "OPENSSL_CONF": "/dev/null"},
                cancel_token=cancel_token,
            )
            if not key_partial.is_file() or not cert_partial.is_file():
                raise KeyGenError("openssl reported success but wrote no key or certificate")
            os.chmod(key_partial, 0o600)
            key_partial.replace(self.key_path)
            cert_partial.replace(self.cert_path)
        except CommandError as error:
            raise KeyGenError(f"Key generation failed: {error}") from error
        except OSError as error:
            raise KeyGenError(f"Cannot write signing material: {error}") from error
        finally:
            key_partial.unlink(missing_ok=True)
            cert_partial.unlink(missing_ok=True)

        try:
            entries = [
                describe_artifact(ArtifactKind.SIGNING_KEY, self.key_path),
                describe_artifact(ArtifactKind.CERTIFICATE, self.cert_path),
            ]
        except OSError as error:
            raise KeyGenError(f"Cannot read back signing material: {error}") from error
        log.success("Secure Boot preparation completed")
        return entries


def generate_signing_material(
    output_dir: Path,
    *,
    key_size: int = DEFAULT_KEY_SIZE,
    subject: str = DEFAULT_SUBJECT,
    valid_days: int = DEFAULT_VALID_DAYS,
    overwrite: bool = False,
    timeout: float = 600,
    cancel_token: Optional[CancelToken] = None,
) -> list[ArtifactEntry]:
    """One-shot wrapper around SecureBootStage.generate."""
    stage = SecureBootStage(
        output_dir,
        key_size=key_size,
        subject=subject,
        valid_days=valid_days,
        overwrite=overwrite,
        timeout=timeout,
    )
    return stage.generate(cancel_token)
