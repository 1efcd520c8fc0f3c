"""
recovery-planner: unit tests for observability logging

Purpose
- Validate structured JSON logging with redaction, correlation metadata,
  and queue-backed reliability.

What this test file should cover
- JSON line validity and redaction guarantees.
- Correlation field propagation for plan, run, and node ids.
- structlog decision logs routed through the same sinks.
- Queue drain/shutdown behavior.
"""

from __future__ import annotations

import json
import logging
import logging.handlers
import threading
from typing import TYPE_CHECKING
from uuid import uuid4

import pytest
import structlog

from recovery_planner.observability.logging import (
    LoggingConfig,
    correlation_scope,
    default_log_redactor,
    get_active_logging_handle,
    get_correlation_context,
    setup_logging,
    setup_structured_logging,
    shutdown_logging,
)

if TYPE_CHECKING:
    from collections.abc import Iterator
    from pathlib import Path


@pytest.fixture(autouse=True)
def _cleanup_logging() -> Iterator[None]:
    yield
    shutdown_logging()
    structlog.reset_defaults()


def _logger_name() -> str:
    return f"recovery_planner.tests.logging.{uuid4().hex}"


def _read_json_lines(path: Path) -> list[dict[str, object]]:
    lines = path.read_text(encoding="utf-8").splitlines()
    return [json.loads(line) for line in lines]


def test_json_logging_redacts_secrets_and_preserves_correlation_fields(tmp_path: Path) -> None:
    logger_name = _logger_name()
    handle = setup_structured_logging(
        LoggingConfig(
            run_id="run-logging-redaction", base_log_dir=tmp_path, logger_name=logger_name
        )
    )
    logger = logging.getLogger(logger_name)

    with correlation_scope(plan_id="plan-123", node_id="plan-123:0:triage"):
        logger.info(
            "effector call token=tok-FAKE and api_key=sk-FAKE123456789012345",
            extra={"nested": {"password": "hunter2", "safe": "ok"}},
        )

    shutdown_logging(handle)

    assert handle.log_path == tmp_path / "run-logging-redaction" / "planner.jsonl"
    parsed = _read_json_lines(handle.log_path)
    assert len(parsed) == 1
    first = parsed[0]
    assert first["run_id"] == "run-logging-redaction"
    assert first["plan_id"] == "plan-123"
    assert first["node_id"] == "plan-123:0:triage"
    assert first["level"] == "INFO"
    assert first["fields"] == {"nested": {"password": "***REDACTED***", "safe": "ok"}}

    line = handle.log_path.read_text(encoding="utf-8")
    assert "tok-FAKE" not in line
    assert "sk-FAKE" not in line
    assert "hunter2" not in line


def test_correlation_scope_nests_and_restores() -> None:
    assert get_correlation_context() == {}

    with correlation_scope(plan_id="plan-1", run_id="run-1"):
        with correlation_scope(run_id=None, node_id="n1"):
            assert get_correlation_context() == {"plan_id": "plan-1", "node_id": "n1"}
        assert get_correlation_context() == {"plan_id": "plan-1", "run_id": "run-1"}

    assert get_correlation_context() == {}
    with pytest.raises(ValueError, match="correlation value must not be empty"):
        with correlation_scope(plan_id="  "):
            pass


def test_setup_logging_routes_structlog_through_json_sink(tmp_path: Path) -> None:
    logger_name = _logger_name()
    handle = setup_logging(
        {"log_level": "INFO", "log_dir": str(tmp_path), "redact_secrets": True},
        run_id="run-structlog",
        logger_name=logger_name,
    )
    log = structlog.get_logger(f"{logger_name}.admission")

    log.info("admission_decision", plan_id="plan-9", approved=True, api_token="t-123")
    log.debug("not written at info level")
    shutdown_logging()

    parsed = _read_json_lines(tmp_path / "run-structlog" / "planner.jsonl")
    assert handle.is_shutdown
    assert len(parsed) == 1
    record = parsed[0]
    assert record["message"] == "admission_decision"
    assert record["plan_id"] == "plan-9"
    assert record["fields"] == {"approved": True, "api_token": "***REDACTED***"}


def test_redaction_can_be_disabled(tmp_path: Path) -> None:
    logger_name = _logger_name()
    handle = setup_logging(
        {"log_dir": str(tmp_path), "redact_secrets": False},
        run_id="run-plain",
        logger_name=logger_name,
    )

    logging.getLogger(logger_name).info("hello", extra={"token": "t-123"})
    shutdown_logging(handle)

    assert "t-123" in handle.log_path.read_text(encoding="utf-8")


def test_multithreaded_logging_produces_valid_json_lines(tmp_path: Path) -> None:
    logger_name = _logger_name()
    handle = setup_structured_logging(
        LoggingConfig(
            run_id="run-threaded",
            base_log_dir=tmp_path,
            logger_name=logger_name,
            queue_size=4096,
        )
    )
    logger = logging.getLogger(logger_name)

    total_threads = 8
    per_thread = 40

    def worker(thread_idx: int) -> None:
        for i in range(per_thread):
            logger.info(
                f"thread={thread_idx} index={i} token=tok-secret-{thread_idx}-{i}",
                extra={"api_key": f"sk-FAKE-{thread_idx}-{i}"},
            )

    threads = [threading.Thread(target=worker, args=(idx,)) for idx in range(total_threads)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    shutdown_logging(handle)

    lines = handle.log_path.read_text(encoding="utf-8").splitlines()
    assert len(lines) == total_threads * per_thread
    for line in lines:
        parsed = json.loads(line)
        assert isinstance(parsed, dict)
        assert "message" in parsed
        assert "tok-secret" not in line
        assert "sk-FAKE" not in line


def test_queue_handler_non_blocking_and_shutdown_flushes(tmp_path: Path) -> None:
    logger_name = _logger_name()
    handle = setup_structured_logging(
        LoggingConfig(
            run_id="run-flush",
            base_log_dir=tmp_path,
            logger_name=logger_name,
            queue_size=10_000,
        )
    )
    logger = logging.getLogger(logger_name)

    queue_handlers = [h for h in logger.handlers if isinstance(h, logging.handlers.QueueHandler)]
    assert queue_handlers, "expected queue-backed non-blocking logging"

    expected = 300
    for i in range(expected):
        logger.info("message %s", i)

    shutdown_logging(handle)

    lines = handle.log_path.read_text(encoding="utf-8").splitlines()
    assert handle.dropped_records == 0
    assert len(lines) == expected
    assert get_active_logging_handle() is None


def test_new_setup_replaces_previous_handle(tmp_path: Path) -> None:
    first = setup_structured_logging(
        LoggingConfig(run_id="run-a", base_log_dir=tmp_path, logger_name=_logger_name())
    )
    second = setup_structured_logging(
        LoggingConfig(run_id="run-b", base_log_dir=tmp_path, logger_name=_logger_name())
    )

    assert first.is_shutdown
    assert get_active_logging_handle() is second


@pytest.mark.parametrize(
    ("overrides", "message"),
    [
        ({"run_id": " "}, "run_id must not be empty"),
        ({"log_filename": "nested/planner.jsonl"}, "must not include path separators"),
        ({"queue_size": 0}, "queue_size must be > 0"),
        ({"level": "CHATTY"}, "unsupported logging level"),
    ],
)
def test_invalid_logging_config_is_rejected(
    tmp_path: Path, overrides: dict[str, object], message: str
) -> None:
    params: dict[str, object] = {"run_id": "run-bad", "base_log_dir": tmp_path}
    params.update(overrides)

    with pytest.raises(ValueError, match=message):
        setup_structured_logging(LoggingConfig(**params))  # type: ignore[arg-type]


def test_default_redactor_handles_bearer_tokens_and_lists() -> None:
    redacted = default_log_redactor(
        {"headers": ["Authorization: Bearer abc.def", "sent Bearer xyz"], "client_secret": "x"}
    )

    assert redacted == {
        "headers": ["Authorization:***REDACTED***", "sent Bearer ***REDACTED***"],
        "client_secret": "***REDACTED***",
    }
