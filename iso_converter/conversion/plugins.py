"""Per-distribution customization hooks.

A plugin receives the extracted workspace before packaging and may modify
the tree in place. Distributions register an implementation instead of the
coordinator branching on distribution names.

Example:
    class StripDocs(DistributionPlugin):
        name = "strip-docs"

        def customize(self, workspace):
            shutil.rmtree(workspace.tree / "doc", ignore_errors=True)
            return True

    registry.register(DistributionIdentity.DEBIAN, StripDocs())
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional

from iso_converter.domain import DistributionIdentity
from iso_converter.logging import LoggerFactory

from . import commands
from .cancellation import CancelToken
from .exceptions import CommandError, PluginError
from .workspace import Workspace

log = LoggerFactory.for_stage("customize")

DEFAULT_PLUGIN_DIR = Path("/usr/share/iso-converter/plugins")


class DistributionPlugin(ABC):
    name = "plugin"

    @abstractmethod
    def customize(self, workspace: Workspace) -> bool:
        """Modify the workspace tree in place.

        Returns:
            True if the tree was customized, False if there was nothing to do
        """


class NullPlugin(DistributionPlugin):
    name = "none"

    def customize(self, workspace: Workspace) -> bool:
        return False


class ScriptHookPlugin(DistributionPlugin):
    """Runs ``<plugin_dir>/<distribution>.sh <tree>`` when the script exists."""

    def __init__(
        self,
        distribution: DistributionIdentity,
        plugin_dir: Path = DEFAULT_PLUGIN_DIR,
        *,
        timeout: float = 600,
        cancel_token: Optional[CancelToken] = None,
    ):
        self.distribution = distribution
        self.plugin_dir = Path(plugin_dir)
        self.timeout = timeout
        self.cancel_token = cancel_token
        self.name = f"{distribution.value}-script"

    @property
    def script_path(self) -> Path:
        return self.plugin_dir / f"{self.distribution.value}.sh"

    def customize(self, workspace: Workspace) -> bool:
        script = self.script_path
        if not script.is_file():
            log.warning(f"No plugin found for {self.distribution.value}")
            return False
        command = [commands.require_tool("sh"), str(script), str(workspace.tree)]
        try:
            commands.run_checked_command(
                command, timeout=self.timeout, cancel_token=self.cancel_token
            )
        except CommandError as error:
            raise PluginError(f"Plugin {script} failed: {error}") from error
        log.info(f"Loaded plugin for {self.distribution.value}")
        return True


class PluginRegistry:
    def __init__(self) -> None:
        self._plugins: dict[DistributionIdentity, DistributionPlugin] = {}

    def register(self, distribution: DistributionIdentity, plugin: DistributionPlugin) -> None:
        if not distribution.is_supported:
            raise ValueError("Cannot register a plugin for an unrecognized distribution")
        self._plugins[distribution] = plugin

    def get(self, distribution: DistributionIdentity) -> DistributionPlugin:
        return self._plugins.get(distribution, NullPlugin())

    def __contains__(self, distribution: DistributionIdentity) -> bool:
        return distribution in self._plugins


def default_registry(
    plugin_dir: Path = DEFAULT_PLUGIN_DIR,
    *,
    timeout: float = 600,
    cancel_token: Optional[CancelToken] = None,
) -> PluginRegistry:
    """Registry with a script hook for every supported distribution."""
    registry = PluginRegistry()
    for distribution in DistributionIdentity:
        if distribution.is_supported:
            registry.register(
                distribution,
                ScriptHookPlugin(
                    distribution, plugin_dir, timeout=timeout, cancel_token=cancel_token
                ),
            )
    return registry
