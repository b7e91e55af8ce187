"""Structured operation logging for solrboot commands.

Every CLI command runs inside :meth:`StructuredLogger.operation`. The scope
collects the steps taken and a single result, then appends one JSON record
per operation to ``<logs_dir>/operations.jsonl``. Logging must never break a
command: when the directory cannot be created or a write fails the logger
disables itself and subsequent operations become no-ops.
"""
from __future__ import annotations

import json
import secrets
import time
from collections.abc import Iterator, Mapping, Sequence
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path

REDACTED = "***"
_SECRET_MARKERS = ("secret", "password", "passwd", "token")


def is_secret_key(key: str) -> bool:
    """Return ``True`` when a mapping key names sensitive material."""
    lowered = key.lower()
    return any(marker in lowered for marker in _SECRET_MARKERS)


def sanitize(value: object) -> object:
    """Return a JSON-safe copy of *value* with secrets redacted."""
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    if isinstance(value, Path):
        return str(value)
    if isinstance(value, Mapping):
        cleaned: dict[str, object] = {}
        for key, item in value.items():
            name = str(key)
            cleaned[name] = REDACTED if is_secret_key(name) and item else sanitize(item)
        return cleaned
    if isinstance(value, (list, tuple)):
        return [sanitize(item) for item in value]
    return str(value)


class OperationScope:
    """Collects steps and the final result for a single operation."""

    def __init__(
        self,
        command: str,
        *,
        args: Mapping[str, object] | None = None,
        target: Mapping[str, object] | None = None,
    ) -> None:
        """Initialise an empty scope for *command*."""
        self.command = command
        self.operation_id = secrets.token_hex(8)
        self.args = dict(args or {})
        self.target = dict(target or {})
        self.steps: list[dict[str, object]] = []
        self.result: dict[str, object] | None = None
        self._started = time.perf_counter()
        self._timestamp = datetime.now(tz=UTC).isoformat(timespec="seconds")

    def add_step(self, name: str, *, status: str = "success", detail: object = None) -> None:
        """Record an intermediate step."""
        step: dict[str, object] = {"name": name, "status": status}
        if detail is not None:
            step["detail"] = detail
        self.steps.append(step)

    def success(
        self,
        message: str,
        *,
        changed: int | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Record a successful outcome."""
        self._record("success", message, changed=changed, context=context)

    def warning(
        self,
        message: str,
        *,
        warnings: Sequence[str] | None = None,
        errors: Sequence[str] | None = None,
        changed: int | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Record a completed-with-warnings outcome."""
        self._record(
            "warning",
            message,
            warnings=warnings,
            errors=errors,
            changed=changed,
            context=context,
        )

    def error(
        self,
        message: str,
        *,
        errors: Sequence[str] | None = None,
        warnings: Sequence[str] | None = None,
        rc: int | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Record a failed outcome; *errors* defaults to ``[message]``."""
        self._record(
            "error",
            message,
            errors=list(errors) if errors else [message],
            warnings=warnings,
            rc=rc,
            context=context,
        )

    def _record(
        self,
        status: str,
        message: str,
        *,
        warnings: Sequence[str] | None = None,
        errors: Sequence[str] | None = None,
        changed: int | None = None,
        rc: int | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        result: dict[str, object] = {"status": status, "message": message}
        if warnings:
            result["warnings"] = list(warnings)
        if errors:
            result["errors"] = list(errors)
        if changed is not None:
            result["changed"] = changed
        if rc is not None:
            result["rc"] = rc
        if context:
            result["context"] = sanitize(context)
        self.result = result

    def to_record(self) -> dict[str, object]:
        """Return the JSON record describing this operation."""
        return {
            "timestamp": self._timestamp,
            "operation_id": self.operation_id,
            "command": self.command,
            "args": sanitize(self.args),
            "target": sanitize(self.target),
            "steps": sanitize(self.steps),
            "result": self.result or {"status": "unknown"},
            "duration_ms": int((time.perf_counter() - self._started) * 1000),
        }


class StructuredLogger:
    """Append-only JSONL logger for CLI operations."""

    def __init__(self, log_dir: Path, *, filename: str = "operations.jsonl") -> None:
        """Prepare *log_dir*; disable logging when it is not writable."""
        self._log_dir = Path(log_dir).expanduser()
        self._operations_log_path = self._log_dir / filename
        self._enabled = True
        try:
            self._log_dir.mkdir(parents=True, exist_ok=True)
        except OSError:
            self._enabled = False

    @property
    def path(self) -> Path:
        """Return the operations log path."""
        return self._operations_log_path

    @contextmanager
    def operation(
        self,
        command: str,
        *,
        args: Mapping[str, object] | None = None,
        target: Mapping[str, object] | None = None,
    ) -> Iterator[OperationScope]:
        """Yield an :class:`OperationScope` and persist it on exit."""
        scope = OperationScope(command, args=args, target=target)
        try:
            yield scope
        except Exception as exc:
            if scope.result is None:
                scope.error(f"Unhandled error: {exc}", errors=[repr(exc)])
            raise
        finally:
            self._write(scope.to_record())

    def _write(self, record: Mapping[str, object]) -> None:
        if not self._enabled:
            return
        try:
            with self._operations_log_path.open("a", encoding="utf-8") as handle:
                handle.write(json.dumps(record, sort_keys=True) + "\n")
        except OSError:
            self._enabled = False


__all__ = ["OperationScope", "StructuredLogger", "is_secret_key", "sanitize"]
