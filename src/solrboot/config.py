"""Configuration loader for solrboot.

This module centralises the logic for reading configuration values from
multiple sources, in increasing precedence:

1. Built-in defaults.
2. ``/etc/solrboot/config.yml`` (or an override path).
3. The coordination env file (``coordination.env_file``) written by the
   installers, using ``ZK_*`` keys.
4. Environment variables prefixed with ``SOLRBOOT_``.
5. Explicit overrides supplied programmatically (reserved for CLI flags).

Environment keys use double underscores to express nesting, e.g.::

    export SOLRBOOT_COORDINATION__ENABLED=true
    export SOLRBOOT_SECURITY__CALLER_USERNAME=ops

Values are coerced via PyYAML's ``safe_load`` so that booleans and numbers are
parsed naturally. The resulting configuration is exposed as immutable
``dataclasses`` for convenient access and type safety.
"""
from __future__ import annotations

import os
import shlex
from collections.abc import Mapping, MutableMapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import cast

import yaml

from .errors import ConfigError
from .logging import REDACTED
from .security import (
    DEFAULT_BOOTSTRAP_SECRET,
    DEFAULT_BOOTSTRAP_USERNAME,
    DEFAULT_REALM,
    Credential,
    SecurityPolicy,
)
from .topology import DEFAULT_TIMEOUT_MS, CoordinationConfig

ENV_PREFIX = "SOLRBOOT_"
CONFIG_ENV_VAR = f"{ENV_PREFIX}CONFIG_FILE"
RESERVED_ENV_KEYS = {CONFIG_ENV_VAR}

# Keys understood in the installers' zookeeper.env file.
COORDINATION_ENV_KEYS = {
    "ZK_ENABLED": "enabled",
    "ZK_CONNECT_STRING": "connect_string",
    "ZK_TIMEOUT_MS": "timeout_ms",
    "ZK_SECURE": "secure",
    "ZK_CLIENT_CHROOT": "chroot",
    "ZK_SSL_CA_PATH": "ca_path",
    "ZK_SSL_CERT_PATH": "cert_path",
    "ZK_SSL_KEY_PATH": "key_path",
}


@dataclass(frozen=True)
class TimeoutsConfig:
    """Timeouts, in seconds, applied to readiness polling and requests."""

    ready: float = 120.0
    poll_interval: float = 2.0
    request: float = 10.0
    connect: float = 3.0

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "ready": self.ready,
            "poll_interval": self.poll_interval,
            "request": self.request,
            "connect": self.connect,
        }


@dataclass(frozen=True)
class RetriesConfig:
    """Bounded retry budget for each administrative request."""

    max_attempts: int = 3
    base_delay: float = 0.5
    max_delay: float = 5.0

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "max_attempts": self.max_attempts,
            "base_delay": self.base_delay,
            "max_delay": self.max_delay,
        }


@dataclass(frozen=True)
class SecurityConfig:
    """Realm and credentials; the caller credential may be absent."""

    realm: str = DEFAULT_REALM
    bootstrap_username: str = DEFAULT_BOOTSTRAP_USERNAME
    bootstrap_secret: str = DEFAULT_BOOTSTRAP_SECRET
    caller_username: str | None = None
    caller_secret: str | None = None

    def to_policy(self) -> SecurityPolicy:
        """Return the :class:`SecurityPolicy` for a run.

        Raises :class:`ConfigError` when the caller credential is missing or
        violates the password policy.
        """
        if not self.caller_username or not self.caller_secret:
            raise ConfigError(
                "security.caller_username and security.caller_secret are required "
                "(set SOLRBOOT_SECURITY__CALLER_USERNAME / SOLRBOOT_SECURITY__CALLER_SECRET)."
            )
        return SecurityPolicy(
            realm=self.realm,
            bootstrap=Credential(self.bootstrap_username, self.bootstrap_secret),
            caller=Credential(self.caller_username, self.caller_secret),
        )

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation with secrets redacted."""
        return {
            "realm": self.realm,
            "bootstrap_username": self.bootstrap_username,
            "bootstrap_secret": REDACTED,
            "caller_username": self.caller_username,
            "caller_secret": REDACTED if self.caller_secret else None,
        }


@dataclass(frozen=True)
class LauncherConfig:
    """Commands and paths used by the external launcher collaborator."""

    env_file: Path | None = None
    start_command: tuple[str, ...] = ()
    restart_command: tuple[str, ...] = ()
    security_path: Path | None = None
    security_command: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "env_file": str(self.env_file) if self.env_file else None,
            "start_command": list(self.start_command),
            "restart_command": list(self.restart_command),
            "security_path": str(self.security_path) if self.security_path else None,
            "security_command": list(self.security_command),
        }


@dataclass(frozen=True)
class AppConfig:
    """Resolved configuration values for solrboot."""

    config_file: Path
    endpoint: str
    logs_dir: Path
    catalog_file: Path | None
    schema_concurrency: int
    timeouts: TimeoutsConfig
    retries: RetriesConfig
    coordination: CoordinationConfig
    coordination_env_file: Path | None
    security: SecurityConfig
    launcher: LauncherConfig

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation of the config."""
        coordination = self.coordination.to_dict()
        coordination["env_file"] = (
            str(self.coordination_env_file) if self.coordination_env_file else None
        )
        return {
            "config_file": str(self.config_file),
            "endpoint": self.endpoint,
            "logs_dir": str(self.logs_dir),
            "catalog_file": str(self.catalog_file) if self.catalog_file else None,
            "schema_concurrency": self.schema_concurrency,
            "timeouts": self.timeouts.to_dict(),
            "retries": self.retries.to_dict(),
            "coordination": coordination,
            "security": self.security.to_dict(),
            "launcher": self.launcher.to_dict(),
        }


DEFAULTS: dict[str, object] = {
    "config_file": "/etc/solrboot/config.yml",
    "endpoint": "http://localhost:8983",
    "logs_dir": "/var/log/solrboot",
    "catalog_file": None,
    "schema_concurrency": 1,
    "timeouts": {
        "ready": 120.0,
        "poll_interval": 2.0,
        "request": 10.0,
        "connect": 3.0,
    },
    "retries": {
        "max_attempts": 3,
        "base_delay": 0.5,
        "max_delay": 5.0,
    },
    "coordination": {
        "enabled": False,
        "connect_string": "",
        "chroot": None,
        "timeout_ms": DEFAULT_TIMEOUT_MS,
        "secure": False,
        "ca_path": None,
        "cert_path": None,
        "key_path": None,
        "cert_dir": None,
        "env_file": None,
    },
    "security": {
        "realm": DEFAULT_REALM,
        "bootstrap_username": DEFAULT_BOOTSTRAP_USERNAME,
        "bootstrap_secret": DEFAULT_BOOTSTRAP_SECRET,
        "caller_username": None,
        "caller_secret": None,
    },
    "launcher": {
        "env_file": None,
        "start_command": [],
        "restart_command": [],
        "security_path": None,
        "security_command": [],
    },
}

ALLOWED_TOP_LEVEL_KEYS = set(DEFAULTS.keys())
ALLOWED_SECTION_KEYS: dict[str, set[str]] = {
    section: set(cast(Mapping[str, object], value).keys())
    for section, value in DEFAULTS.items()
    if isinstance(value, Mapping)
}


def load_config(
    config_file: str | os.PathLike[str] | None = None,
    *,
    env: Mapping[str, str] | None = None,
    overrides: Mapping[str, object] | None = None,
) -> AppConfig:
    """Load and merge configuration sources into an :class:`AppConfig`."""
    merged: dict[str, object] = _deep_copy(DEFAULTS)
    resolved_env = dict(os.environ if env is None else env)

    config_default = _expect_str(merged["config_file"], "config_file")
    config_path = _determine_config_path(config_default, config_file, resolved_env)

    file_values = _load_yaml_file(config_path)
    if file_values:
        _deep_merge(merged, file_values)

    env_values = _build_env_overrides(resolved_env)
    if overrides:
        _deep_merge(env_values, dict(overrides))

    # The env file location itself may come from any layer.
    probe = _deep_copy(merged)
    _deep_merge(probe, env_values)
    coordination_probe = _as_dict(probe.get("coordination"), "coordination")
    env_file_value = coordination_probe.get("env_file")
    if env_file_value:
        zk_values = load_coordination_env_file(_to_path(env_file_value))
        if zk_values:
            _deep_merge(merged, {"coordination": zk_values})

    if env_values:
        _deep_merge(merged, env_values)

    merged["config_file"] = str(config_path)

    _validate_structure(merged)

    return _build_app_config(merged)


def load_coordination_env_file(path: Path) -> dict[str, object]:
    """Parse a ``KEY=VALUE`` coordination env file into config keys.

    A missing file yields an empty mapping (standalone). Unknown keys are
    ignored so the file can carry settings for other tools.
    """
    if not path.exists():
        return {}
    values: dict[str, object] = {}
    for number, raw_line in enumerate(path.read_text(encoding="utf-8").splitlines(), start=1):
        line = raw_line.strip()
        if not line or line.startswith("#"):
            continue
        if line.startswith("export "):
            line = line[len("export ") :].strip()
        key, sep, value = line.partition("=")
        if not sep:
            raise ConfigError(f"{path}:{number}: expected KEY=VALUE, got {raw_line!r}.")
        target = COORDINATION_ENV_KEYS.get(key.strip())
        if target is None:
            continue
        text = value.strip()
        if len(text) >= 2 and text[0] == text[-1] and text[0] in {"'", '"'}:
            text = text[1:-1]
        if target in {"enabled", "secure", "timeout_ms"}:
            values[target] = _coerce_value(text.lower() if target != "timeout_ms" else text)
        else:
            values[target] = text or None
    return values


def _determine_config_path(
    default_path: str,
    cli_override: str | os.PathLike[str] | None,
    env: Mapping[str, str],
) -> Path:
    if cli_override:
        return Path(cli_override)
    if CONFIG_ENV_VAR in env:
        return Path(env[CONFIG_ENV_VAR])
    return Path(default_path)


def _load_yaml_file(path: Path) -> dict[str, object]:
    if not path.exists():
        return {}
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:  # pragma: no cover - PyYAML owns detailed error
        raise ConfigError(f"Failed to parse config file {path}: {exc}") from exc
    if not isinstance(data, Mapping):
        raise ConfigError(f"Config file {path} must contain a mapping at the top level.")
    return _as_dict(data, f"file:{path}")


def _validate_structure(raw: Mapping[str, object]) -> None:
    unknown_keys = set(raw.keys()) - ALLOWED_TOP_LEVEL_KEYS
    if unknown_keys:
        joined = ", ".join(sorted(unknown_keys))
        raise ConfigError(f"Unknown configuration keys: {joined}.")

    for section, allowed in ALLOWED_SECTION_KEYS.items():
        mapping = _as_dict(raw.get(section), section)
        unknown = set(mapping.keys()) - allowed
        if unknown:
            joined = ", ".join(sorted(unknown))
            raise ConfigError(f"Unknown {section} configuration keys: {joined}.")

    endpoint = raw.get("endpoint")
    if not isinstance(endpoint, str) or not endpoint.startswith(("http://", "https://")):
        raise ConfigError(f"endpoint must be an http(s) URL. Got {endpoint!r}.")


def _build_app_config(raw: Mapping[str, object]) -> AppConfig:
    timeouts_mapping = _as_dict(raw.get("timeouts"), "timeouts")
    timeouts = TimeoutsConfig(
        ready=_expect_positive_float(timeouts_mapping.get("ready"), "timeouts.ready", default=120.0),
        poll_interval=_expect_positive_float(
            timeouts_mapping.get("poll_interval"), "timeouts.poll_interval", default=2.0
        ),
        request=_expect_positive_float(
            timeouts_mapping.get("request"), "timeouts.request", default=10.0
        ),
        connect=_expect_positive_float(
            timeouts_mapping.get("connect"), "timeouts.connect", default=3.0
        ),
    )

    retries_mapping = _as_dict(raw.get("retries"), "retries")
    max_attempts = _expect_int(retries_mapping.get("max_attempts"), "retries.max_attempts", default=3)
    if max_attempts < 1:
        raise ConfigError("retries.max_attempts must be at least 1.")
    retries = RetriesConfig(
        max_attempts=max_attempts,
        base_delay=_expect_non_negative_float(
            retries_mapping.get("base_delay"), "retries.base_delay", default=0.5
        ),
        max_delay=_expect_non_negative_float(
            retries_mapping.get("max_delay"), "retries.max_delay", default=5.0
        ),
    )

    coordination_mapping = _as_dict(raw.get("coordination"), "coordination")
    coordination = CoordinationConfig(
        enabled=_expect_bool(coordination_mapping.get("enabled"), "coordination.enabled"),
        connect_string=str(coordination_mapping.get("connect_string") or "").strip(),
        chroot=_optional_str(coordination_mapping.get("chroot")),
        timeout_ms=_expect_int(
            coordination_mapping.get("timeout_ms"),
            "coordination.timeout_ms",
            default=DEFAULT_TIMEOUT_MS,
        ),
        secure=_expect_bool(coordination_mapping.get("secure"), "coordination.secure"),
        ca_path=_optional_path(coordination_mapping.get("ca_path")),
        cert_path=_optional_path(coordination_mapping.get("cert_path")),
        key_path=_optional_path(coordination_mapping.get("key_path")),
        cert_dir=_optional_path(coordination_mapping.get("cert_dir")),
    )

    security_mapping = _as_dict(raw.get("security"), "security")
    security = SecurityConfig(
        realm=str(security_mapping.get("realm") or DEFAULT_REALM),
        bootstrap_username=str(
            security_mapping.get("bootstrap_username") or DEFAULT_BOOTSTRAP_USERNAME
        ),
        bootstrap_secret=str(security_mapping.get("bootstrap_secret") or DEFAULT_BOOTSTRAP_SECRET),
        caller_username=_optional_str(security_mapping.get("caller_username")),
        caller_secret=_optional_secret(security_mapping.get("caller_secret")),
    )

    launcher_mapping = _as_dict(raw.get("launcher"), "launcher")
    launcher = LauncherConfig(
        env_file=_optional_path(launcher_mapping.get("env_file")),
        start_command=_expect_command(launcher_mapping.get("start_command"), "launcher.start_command"),
        restart_command=_expect_command(
            launcher_mapping.get("restart_command"), "launcher.restart_command"
        ),
        security_path=_optional_path(launcher_mapping.get("security_path")),
        security_command=_expect_command(
            launcher_mapping.get("security_command"), "launcher.security_command"
        ),
    )

    schema_concurrency = _expect_int(
        raw.get("schema_concurrency"), "schema_concurrency", default=1
    )
    if schema_concurrency < 1:
        raise ConfigError("schema_concurrency must be at least 1.")

    return AppConfig(
        config_file=_to_path(raw.get("config_file")),
        endpoint=str(raw.get("endpoint")).rstrip("/"),
        logs_dir=_to_path(raw.get("logs_dir")),
        catalog_file=_optional_path(raw.get("catalog_file")),
        schema_concurrency=schema_concurrency,
        timeouts=timeouts,
        retries=retries,
        coordination=coordination,
        coordination_env_file=_optional_path(coordination_mapping.get("env_file")),
        security=security,
        launcher=launcher,
    )


def _build_env_overrides(env: Mapping[str, str]) -> dict[str, object]:
    overrides: dict[str, object] = {}
    for key, value in env.items():
        if key in RESERVED_ENV_KEYS:
            continue
        if not key.startswith(ENV_PREFIX):
            continue
        suffix = key[len(ENV_PREFIX) :]
        path_segments = [segment.lower() for segment in suffix.split("__") if segment]
        if not path_segments:
            continue
        if path_segments[-1].endswith("secret"):
            # Secrets are taken verbatim; YAML coercion would mangle e.g. "0123".
            _assign_nested(overrides, path_segments, value)
            continue
        _assign_nested(overrides, path_segments, _coerce_value(value))
    return overrides


def _assign_nested(tree: MutableMapping[str, object], path: list[str], value: object) -> None:
    current: MutableMapping[str, object] = tree
    for segment in path[:-1]:
        existing = current.get(segment)
        if existing is None:
            new_child: MutableMapping[str, object] = {}
            current[segment] = new_child
            current = new_child
            continue
        if isinstance(existing, MutableMapping):
            current = cast(MutableMapping[str, object], existing)
            continue
        raise ConfigError(
            "Environment overrides conflict with existing scalar value at "
            f"{'.'.join(path)}"
        )
    current[path[-1]] = value


def _deep_merge(target: MutableMapping[str, object], overrides: Mapping[str, object]) -> None:
    for key, value in overrides.items():
        existing = target.get(key)
        if isinstance(existing, MutableMapping) and isinstance(value, Mapping):
            _deep_merge(existing, _as_dict(value, f"merge.{key}"))
            continue
        target[key] = value


def _deep_copy(source: Mapping[str, object]) -> dict[str, object]:
    result: dict[str, object] = {}
    for key, value in source.items():
        if isinstance(value, Mapping):
            result[key] = _deep_copy(_as_dict(value, f"copy.{key}"))
        elif isinstance(value, list):
            result[key] = list(value)
        else:
            result[key] = value
    return result


def _coerce_value(raw: str) -> object:
    raw = raw.strip()
    try:
        parsed = yaml.safe_load(raw)
    except yaml.YAMLError:  # pragma: no cover - treat as string if parsing fails
        return raw
    return parsed


def _to_path(value: object) -> Path:
    if value is None:
        raise ConfigError("Expected a filesystem path, received None.")
    if isinstance(value, Path):
        return value.expanduser()
    if isinstance(value, str):
        return Path(value).expanduser()
    raise ConfigError(f"Cannot convert value {value!r} to Path.")


def _optional_path(value: object) -> Path | None:
    if value is None or (isinstance(value, str) and not value.strip()):
        return None
    return _to_path(value)


def _optional_str(value: object) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _optional_secret(value: object) -> str | None:
    if value is None:
        return None
    text = str(value)
    return text or None


def _expect_bool(value: object | None, label: str, *, default: bool = False) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, str) and value.strip().lower() in {"true", "false"}:
        return value.strip().lower() == "true"
    raise ConfigError(f"Expected {label} to be a boolean. Got {value!r}.")


def _expect_command(value: object | None, label: str) -> tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, str):
        try:
            return tuple(shlex.split(value))
        except ValueError as exc:
            raise ConfigError(f"Could not parse {label}: {exc}") from exc
    if isinstance(value, Sequence) and all(isinstance(item, str) for item in value):
        return tuple(value)
    raise ConfigError(f"Expected {label} to be a list of strings.")


def _expect_int(value: object | None, label: str, *, default: int) -> int:
    if value is None:
        return default
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be an integer. Got boolean {value!r}.")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value, 0)
        except ValueError as exc:
            raise ConfigError(f"Invalid integer for {label}: {value!r}.") from exc
    raise ConfigError(f"Expected {label} to be an integer. Got {type(value).__name__}.")


def _expect_str(value: object, key: str) -> str:
    if isinstance(value, str):
        return value
    raise ConfigError(f"Expected {key} to resolve to a string. Got {value!r}.")


def _expect_number(value: object, label: str) -> float:
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be a number. Got boolean {value!r}.")
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value)
        except ValueError as exc:
            raise ConfigError(f"Invalid number for {label}: {value!r}.") from exc
    raise ConfigError(f"Expected {label} to be numeric. Got {type(value).__name__}.")


def _expect_positive_float(value: object | None, label: str, *, default: float) -> float:
    if value is None:
        return float(default)
    numeric = _expect_number(value, label)
    if numeric <= 0:
        raise ConfigError(f"{label} must be greater than zero. Got {numeric}.")
    return numeric


def _expect_non_negative_float(value: object | None, label: str, *, default: float) -> float:
    if value is None:
        return float(default)
    numeric = _expect_number(value, label)
    if numeric < 0:
        raise ConfigError(f"{label} must not be negative. Got {numeric}.")
    return numeric


def _as_dict(value: object | None, label: str) -> dict[str, object]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ConfigError(f"Expected {label} to be a mapping. Got {type(value).__name__}.")
    result: dict[str, object] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            raise ConfigError(f"Mapping {label} must use string keys. Got {key!r}.")
        result[key] = item
    return result


__all__ = [
    "AppConfig",
    "ConfigError",
    "LauncherConfig",
    "RetriesConfig",
    "SecurityConfig",
    "TimeoutsConfig",
    "load_config",
    "load_coordination_env_file",
]
