"""Boundary to the container/process launcher.

The orchestrator never issues container commands itself. It maps the resolved
:class:`~solrboot.topology.ClusterTopology` to :class:`LaunchParameters`
(environment variables and volume mounts) and hands them, together with the
security policy document and restart requests, to a :class:`Launcher`.
:class:`CommandLauncher` is the shipped implementation: it writes the files
and runs operator-configured commands.
"""
from __future__ import annotations

import json
import os
import subprocess
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol

from ..errors import SolrbootError
from ..exit_codes import ExitCode
from ..topology import ClusterTopology

COORDINATION_MOUNT = "/opt/solr/zookeeper"
VOLUMES_ENV = "SOLRBOOT_VOLUMES"
SECURITY_FILE_ENV = "SOLRBOOT_SECURITY_FILE"


class LauncherError(SolrbootError):
    """Raised when the launcher cannot perform a requested action."""

    category = "launcher"
    exit_code = ExitCode.PROVIDER


@dataclass(frozen=True)
class LaunchParameters:
    """Environment and mounts the engine process must be started with."""

    env: Mapping[str, str] = field(default_factory=dict)
    volumes: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"env": dict(self.env), "volumes": list(self.volumes)}


def build_launch_parameters(
    topology: ClusterTopology,
    *,
    mount_point: str = COORDINATION_MOUNT,
) -> LaunchParameters:
    """Map *topology* to launch parameters.

    Standalone topologies need nothing. Distributed ones point the engine at
    the coordination ensemble and, when a certificate directory is known,
    mount it read-only (only when it is an existing directory) and reference the TLS files by basename under the
    mount point.
    """
    if not topology.is_distributed:
        return LaunchParameters()
    env: dict[str, str] = {
        "ZK_HOST": topology.connect_string or "",
        "SOLR_ZK_TIMEOUT": str(topology.timeout_ms),
    }
    volumes: list[str] = []
    mounted = topology.cert_dir is not None and Path(topology.cert_dir).is_dir()
    if mounted:
        volumes.append(f"{topology.cert_dir}:{mount_point}:ro")
    tls = topology.tls_material
    if tls is not None:
        for key, path in (
            ("ZK_SSL_CA_PATH", tls.ca_path),
            ("ZK_SSL_CERT_PATH", tls.cert_path),
            ("ZK_SSL_KEY_PATH", tls.key_path),
        ):
            if path is None:
                continue
            if mounted:
                env[key] = f"{mount_point}/{Path(path).name}"
            else:
                env[key] = str(path)
    return LaunchParameters(env=env, volumes=tuple(volumes))


class Launcher(Protocol):
    """Operations the orchestrator needs from a launcher."""

    def prepare(self, parameters: LaunchParameters) -> None:
        """Apply launch parameters before the engine is (re)started."""

    def install_security(self, document: Mapping[str, object]) -> None:
        """Place the security policy document where the engine reads it."""

    def restart(self) -> None:
        """Restart or reload the engine so configuration takes effect."""


@dataclass(slots=True)
class CommandLauncher:
    """Launcher backed by files and operator-supplied shell commands."""

    env_file: Path | None = None
    start_command: Sequence[str] = ()
    restart_command: Sequence[str] = ()
    security_path: Path | None = None
    security_command: Sequence[str] = ()
    dry_run: bool = False
    _parameters: LaunchParameters = field(default_factory=LaunchParameters)

    def prepare(self, parameters: LaunchParameters) -> None:
        """Write the env file and run the start command, when configured."""
        self._parameters = parameters
        if self.env_file is not None and not self.dry_run:
            lines = [f"{key}={value}" for key, value in sorted(parameters.env.items())]
            if parameters.volumes:
                lines.append(f"{VOLUMES_ENV}={' '.join(parameters.volumes)}")
            try:
                self.env_file.parent.mkdir(parents=True, exist_ok=True)
                self.env_file.write_text(
                    "\n".join(lines) + ("\n" if lines else ""), encoding="utf-8"
                )
            except OSError as exc:
                raise LauncherError(f"Failed to write {self.env_file}: {exc}") from exc
        if self.start_command:
            self._run_command(self.start_command, error_prefix="start")

    def install_security(self, document: Mapping[str, object]) -> None:
        """Write ``security.json`` and run the install command."""
        if self.security_path is None and not self.security_command:
            raise LauncherError(
                "No security_path or security_command configured; cannot install "
                "the security policy."
            )
        extra_env: dict[str, str] = {}
        if self.security_path is not None:
            extra_env[SECURITY_FILE_ENV] = str(self.security_path)
            if not self.dry_run:
                try:
                    self.security_path.parent.mkdir(parents=True, exist_ok=True)
                    self.security_path.write_text(
                        json.dumps(document, indent=2, sort_keys=True) + "\n",
                        encoding="utf-8",
                    )
                    self.security_path.chmod(0o600)
                except OSError as exc:
                    raise LauncherError(f"Failed to write {self.security_path}: {exc}") from exc
        if self.security_command:
            self._run_command(self.security_command, error_prefix="security", extra_env=extra_env)

    def restart(self) -> None:
        """Run the restart command."""
        if not self.restart_command:
            raise LauncherError("No restart_command configured; cannot reload the engine.")
        self._run_command(self.restart_command, error_prefix="restart")

    # ------------------------------------------------------------------
    def _run_command(
        self,
        args: Sequence[str],
        *,
        error_prefix: str,
        extra_env: Mapping[str, str] | None = None,
    ) -> subprocess.CompletedProcess[str]:
        if self.dry_run:
            return subprocess.CompletedProcess(list(args), returncode=0, stdout="", stderr="")
        env = dict(os.environ)
        env.update(self._parameters.env)
        if self._parameters.volumes:
            env[VOLUMES_ENV] = " ".join(self._parameters.volumes)
        if extra_env:
            env.update(extra_env)
        try:
            result = subprocess.run(  # noqa: S603
                list(args),
                capture_output=True,
                text=True,
                check=False,
                env=env,
            )
        except FileNotFoundError as exc:
            raise LauncherError(f"{args[0]} not found: {exc}") from exc
        except OSError as exc:
            raise LauncherError(f"{error_prefix} command could not be executed: {exc}") from exc
        if result.returncode != 0:
            stdout = getattr(result, "stdout", "") or ""
            stderr = getattr(result, "stderr", "") or ""
            message = stderr.strip() or stdout.strip() or "no output"
            raise LauncherError(f"{error_prefix} command failed (exit {result.returncode}): {message}")
        return result


__all__ = [
    "COORDINATION_MOUNT",
    "CommandLauncher",
    "LaunchParameters",
    "Launcher",
    "LauncherError",
    "build_launch_parameters",
]
