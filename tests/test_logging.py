"""Tests for the structured operation logger."""
from __future__ import annotations

import json
from pathlib import Path

import pytest

from solrboot.logging import REDACTED, StructuredLogger, is_secret_key, sanitize


def _records(logger: StructuredLogger) -> list[dict[str, object]]:
    lines = logger.path.read_text(encoding="utf-8").splitlines()
    return [json.loads(line) for line in lines]


def test_operation_appends_one_record(tmp_path: Path) -> None:
    """Each operation writes a single JSON line with its steps and result."""
    logger = StructuredLogger(tmp_path / "logs")

    with logger.operation("bootstrap", args={"json": False}) as op:
        op.add_step("state.WaitingForReady")
        op.add_step("field.jobs.job_title", detail={"outcome": "created"})
        op.success("done", changed=1)

    (record,) = _records(logger)
    assert record["command"] == "bootstrap"
    assert [step["name"] for step in record["steps"]] == [
        "state.WaitingForReady",
        "field.jobs.job_title",
    ]
    assert record["result"] == {"status": "success", "message": "done", "changed": 1}


def test_secrets_are_redacted(tmp_path: Path) -> None:
    """Keys naming secrets never reach the log file verbatim."""
    logger = StructuredLogger(tmp_path / "logs")

    with logger.operation(
        "rotate",
        args={"caller_secret": "Str0ngPass!2345"},
        target={"endpoint": "http://solr:8983"},
    ) as op:
        op.error("failed", rc=6, context={"password": "SolrRocks", "user": "ops"})

    text = logger.path.read_text(encoding="utf-8")
    assert "Str0ngPass!2345" not in text
    assert "SolrRocks" not in text
    (record,) = _records(logger)
    assert record["args"] == {"caller_secret": REDACTED}
    assert record["result"]["context"] == {"password": REDACTED, "user": "ops"}
    assert record["result"]["rc"] == 6


def test_unhandled_exception_is_recorded(tmp_path: Path) -> None:
    """Exceptions escaping the scope are logged as errors and re-raised."""
    logger = StructuredLogger(tmp_path / "logs")

    with pytest.raises(ValueError):
        with logger.operation("bootstrap"):
            raise ValueError("boom")

    (record,) = _records(logger)
    assert record["result"]["status"] == "error"
    assert "boom" in record["result"]["message"]


def test_logger_disables_when_directory_unavailable(tmp_path: Path) -> None:
    """A log path that cannot be a directory turns logging into a no-op."""
    blocker = tmp_path / "blocker"
    blocker.write_text("not a directory", encoding="utf-8")
    logger = StructuredLogger(blocker / "logs")

    assert logger._enabled is False  # type: ignore[attr-defined]
    with logger.operation("topology") as op:
        op.success("done")


def test_logger_disables_after_write_failure(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """Write failures disable the logger instead of failing the command."""
    logger = StructuredLogger(tmp_path / "logs")
    operations_path = logger.path
    original_open = Path.open

    def fail_open(self: Path, *args: object, **kwargs: object) -> object:
        if self == operations_path:
            raise OSError("disk full")
        return original_open(self, *args, **kwargs)

    monkeypatch.setattr(Path, "open", fail_open)

    with logger.operation("bootstrap") as op:
        op.success("done")

    assert logger._enabled is False  # type: ignore[attr-defined]


def test_sanitize_handles_paths_and_objects() -> None:
    """Non-JSON values are stringified; empty secrets stay empty."""

    class Custom:
        def __str__(self) -> str:
            return "<custom>"

    assert sanitize({"path": Path("/var/log"), "obj": Custom(), "token": ""}) == {
        "path": "/var/log",
        "obj": "<custom>",
        "token": "",
    }
    assert is_secret_key("bootstrap_secret")
    assert not is_secret_key("username")
