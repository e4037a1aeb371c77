"""Settings for conversion runs.

Options are an explicit, immutable value handed to the coordinator; nothing
here is process-global. Defaults can be overridden from a JSON settings file.
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Any, Optional

from iso_converter.conversion.exceptions import ConfigError
from iso_converter.logging import LoggerFactory

log = LoggerFactory.for_system()

SETTINGS_PATH = Path(
    os.environ.get(
        "ISO_CONVERTER_SETTINGS_PATH",
        Path.home() / ".config" / "iso-converter" / "settings.json",
    )
)

DEFAULT_TOOL_TIMEOUT_SECONDS = 3600.0
DEFAULT_NETBOOT_BASE_URL = "http://netboot.example.com"
DEFAULT_PLUGIN_DIR = "/usr/share/iso-converter/plugins"


@dataclass(frozen=True)
class ConversionOptions:
    tool_timeout_seconds: float = DEFAULT_TOOL_TIMEOUT_SECONDS
    run_timeout_seconds: Optional[float] = None
    scratch_dir: Optional[Path] = None
    extraction_method: str = "auto"
    architecture: str = "x86_64"
    analysis_mode: bool = False
    netboot_base_url: str = DEFAULT_NETBOOT_BASE_URL
    secure_boot_key_size: int = 4096
    secure_boot_subject: str = "/CN=Custom Linux Secure Boot/"
    secure_boot_valid_days: int = 3650
    overwrite_signing_material: bool = False
    plugin_dir: Path = Path(DEFAULT_PLUGIN_DIR)
    write_manifest: bool = True

    def validate(self) -> None:
        """Check value ranges.

        Raises:
            ConfigError: If a value is out of range
        """
        if self.tool_timeout_seconds <= 0:
            raise ConfigError("tool_timeout_seconds", "must be positive")
        if self.run_timeout_seconds is not None and self.run_timeout_seconds <= 0:
            raise ConfigError("run_timeout_seconds", "must be positive")
        if self.extraction_method not in ("auto", "xorriso", "loop"):
            raise ConfigError(
                "extraction_method", f"{self.extraction_method!r} is not auto, xorriso or loop"
            )
        if self.secure_boot_key_size < 2048:
            raise ConfigError("secure_boot_key_size", "must be at least 2048")
        if self.secure_boot_valid_days <= 0:
            raise ConfigError("secure_boot_valid_days", "must be positive")


_PATH_FIELDS = {"scratch_dir", "plugin_dir"}
_FLOAT_FIELDS = {"tool_timeout_seconds", "run_timeout_seconds"}
_INT_FIELDS = {"secure_boot_key_size", "secure_boot_valid_days"}
_BOOL_FIELDS = {"analysis_mode", "overwrite_signing_material", "write_manifest"}


def _coerce(key: str, value: Any) -> Any:
    if value is None:
        if key in ("run_timeout_seconds", "scratch_dir"):
            return None
        raise ConfigError(key, "must not be null")
    if key in _BOOL_FIELDS:
        if not isinstance(value, bool):
            raise ConfigError(key, f"expected a boolean, got {value!r}")
        return value
    if key in _PATH_FIELDS:
        if not isinstance(value, str):
            raise ConfigError(key, f"expected a path string, got {value!r}")
        return Path(value).expanduser()
    if key in _FLOAT_FIELDS:
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise ConfigError(key, f"expected a number, got {value!r}")
        return float(value)
    if key in _INT_FIELDS:
        if isinstance(value, bool) or not isinstance(value, int):
            raise ConfigError(key, f"expected an integer, got {value!r}")
        return value
    if not isinstance(value, str):
        raise ConfigError(key, f"expected a string, got {value!r}")
    return value


def options_from_dict(data: dict[str, Any], base: Optional[ConversionOptions] = None) -> ConversionOptions:
    """Build options from a mapping, ignoring unknown keys.

    Raises:
        ConfigError: If a known key has a value of the wrong type
    """
    base = base or ConversionOptions()
    known = {field.name for field in fields(ConversionOptions)}
    updates: dict[str, Any] = {}
    for key, value in data.items():
        if key not in known:
            log.warning(f"Ignoring unknown setting: {key}")
            continue
        updates[key] = _coerce(key, value)
    options = replace(base, **updates)
    options.validate()
    return options


def load_options(path: Optional[Path] = None) -> ConversionOptions:
    """Load options from the settings file, falling back to defaults.

    A missing or unparseable file yields the defaults.
    """
    path = Path(path) if path is not None else SETTINGS_PATH
    if not path.exists():
        return ConversionOptions()
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as error:
        log.warning(f"Could not read settings from {path}: {error}")
        return ConversionOptions()
    if not isinstance(data, dict):
        log.warning(f"Settings file {path} does not contain an object")
        return ConversionOptions()
    return options_from_dict(data)


def save_options(options: ConversionOptions, path: Optional[Path] = None) -> None:
    path = Path(path) if path is not None else SETTINGS_PATH
    data = {}
    for field in fields(ConversionOptions):
        value = getattr(options, field.name)
        data[field.name] = str(value) if isinstance(value, Path) else value
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(data, indent=2, sort_keys=True), encoding="utf-8")
