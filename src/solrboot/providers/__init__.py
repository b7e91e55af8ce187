"""Providers that wrap external collaborators."""
from __future__ import annotations

from .launcher import (
    CommandLauncher,
    LaunchParameters,
    Launcher,
    LauncherError,
    build_launch_parameters,
)

__all__ = [
    "CommandLauncher",
    "LaunchParameters",
    "Launcher",
    "LauncherError",
    "build_launch_parameters",
]
