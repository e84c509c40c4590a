"""Structured operation log for stackctl commands.

Each CLI operation produces exactly one JSON line in
``<logs_dir>/operations.jsonl``. Logging problems never fail a command: if the
directory cannot be created or a write fails, the logger disables itself and
the operation carries on.
"""
from __future__ import annotations

import json
import logging
import time
import uuid
from collections.abc import Iterable, Iterator, Mapping
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path

LOGGER = logging.getLogger(__name__)

OPERATIONS_LOG_NAME = "operations.jsonl"


def _json_safe(value: object) -> object:
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    if isinstance(value, Mapping):
        return {str(key): _json_safe(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_json_safe(item) for item in value]
    return str(value)


class OperationScope:
    """Collects steps and the final result of one operation."""

    def __init__(
        self,
        logger: StructuredLogger,
        command: str,
        *,
        args: Mapping[str, object] | None,
        target: Mapping[str, object] | None,
    ) -> None:
        """Initialise the scope; the record is written when the scope exits."""
        self._logger = logger
        self.operation_id = uuid.uuid4().hex
        self.command = command
        self.args = dict(args or {})
        self.target = dict(target or {})
        self.steps: list[dict[str, object]] = []
        self.result: dict[str, object] | None = None
        self._started = datetime.now(UTC)
        self._monotonic = time.monotonic()

    def add_step(self, name: str, *, status: str = "info", detail: object = None) -> None:
        """Record an intermediate step."""
        step: dict[str, object] = {"name": name, "status": status}
        if detail is not None:
            step["detail"] = _json_safe(detail)
        self.steps.append(step)

    def success(
        self,
        message: str,
        *,
        changed: int | None = None,
        backups: Iterable[str] | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as successful."""
        self._set_result(
            "success",
            message,
            changed=changed,
            backups=backups,
            context=context,
        )

    def warning(
        self,
        message: str,
        *,
        warnings: Iterable[str] | None = None,
        errors: Iterable[str] | None = None,
        changed: int | None = None,
        backups: Iterable[str] | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as finished with warnings."""
        self._set_result(
            "warning",
            message,
            warnings=list(warnings) if warnings is not None else [message],
            errors=errors,
            changed=changed,
            backups=backups,
            context=context,
        )

    def error(
        self,
        message: str,
        *,
        errors: Iterable[str] | None = None,
        rc: int | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as failed."""
        self._set_result(
            "error",
            message,
            errors=list(errors) if errors is not None else [message],
            rc=rc,
            context=context,
        )

    def _set_result(
        self,
        status: str,
        message: str,
        *,
        warnings: Iterable[str] | None = None,
        errors: Iterable[str] | None = None,
        changed: int | None = None,
        backups: Iterable[str] | None = None,
        rc: int | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        result: dict[str, object] = {"status": status, "message": message}
        if warnings is not None:
            result["warnings"] = [str(item) for item in warnings]
        if errors is not None:
            result["errors"] = [str(item) for item in errors]
        if changed is not None:
            result["changed"] = changed
        if backups is not None:
            result["backups"] = [str(item) for item in backups]
        if rc is not None:
            result["rc"] = rc
        if context:
            result["context"] = _json_safe(context)
        self.result = result

    def to_record(self) -> dict[str, object]:
        """Return the JSON record for this operation."""
        duration_ms = int((time.monotonic() - self._monotonic) * 1000)
        return {
            "ts": self._started.isoformat(),
            "operation_id": self.operation_id,
            "command": self.command,
            "args": _json_safe(self.args),
            "target": _json_safe(self.target),
            "steps": self.steps,
            "duration_ms": duration_ms,
            "result": self.result or {"status": "unknown", "message": ""},
        }


class StructuredLogger:
    """Append-only JSON-lines writer for operation records."""

    def __init__(self, logs_dir: Path) -> None:
        """Prepare *logs_dir*; disable logging when it is unusable."""
        self.logs_dir = logs_dir
        self._operations_log_path = logs_dir / OPERATIONS_LOG_NAME
        self._enabled = True
        try:
            logs_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            LOGGER.debug("Disabling operation log, cannot create %s: %s", logs_dir, exc)
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
        """Yield an :class:`OperationScope` and write its record on exit.

        An exception escaping the block is recorded as an error unless the
        scope already holds a result; the exception is re-raised.
        """
        scope = OperationScope(self, command, args=args, target=target)
        try:
            yield scope
        except BaseException as exc:
            if scope.result is None:
                scope.error(str(exc) or type(exc).__name__)
            raise
        finally:
            self._write(scope.to_record())

    def _write(self, record: Mapping[str, object]) -> None:
        if not self._enabled:
            return
        try:
            with self._operations_log_path.open("a", encoding="utf-8") as handle:
                handle.write(json.dumps(record, sort_keys=True) + "\n")
        except OSError as exc:
            LOGGER.debug("Disabling operation log after write failure: %s", exc)
            self._enabled = False


__all__ = ["OperationScope", "StructuredLogger"]
