"""Typed access to an instance's ``config.yml``.

Values resolve through a fixed fallback chain: the instance document first,
then the configured template document, then a hard-coded default. Writes only
ever touch the instance document and are applied atomically.
"""
from __future__ import annotations

import os
import tempfile
from collections.abc import Mapping, MutableMapping
from copy import deepcopy
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

try:  # PyYAML is a runtime dependency declared in pyproject.toml
    import yaml
except Exception as exc:  # pragma: no cover - import failure handled in tests
    raise RuntimeError(
        "PyYAML is required to manage stackctl instances. Install with `pip install stackctl`."
    ) from exc

FOLLOW_LATEST = "-"

_MISSING = object()


class InstanceConfigError(RuntimeError):
    """Raised when an instance configuration document cannot be used."""


def _load_mapping(path: Path) -> dict[str, Any]:
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8"))
    except yaml.YAMLError as exc:
        raise InstanceConfigError(f"Failed to parse {path}: {exc}") from exc
    if data is None:
        return {}
    if not isinstance(data, Mapping):
        raise InstanceConfigError(f"{path} must contain a mapping at the top level.")
    return dict(data)


def _lookup(tree: Mapping[str, Any], dotted: str) -> object:
    current: object = tree
    for segment in dotted.split("."):
        if not isinstance(current, Mapping) or segment not in current:
            return _MISSING
        current = current[segment]
    return current


@dataclass(slots=True)
class InstanceConfigDocument:
    """One instance's configuration document plus its template fallback."""

    path: Path
    template: Path | None = None
    _data: dict[str, Any] = field(default_factory=dict, init=False, repr=False)
    _template_data: dict[str, Any] | None = field(default=None, init=False, repr=False)

    @classmethod
    def load(cls, path: Path, template: Path | None = None) -> InstanceConfigDocument:
        """Read *path*; a missing file is an error, an empty one is not."""
        if not path.is_file():
            raise InstanceConfigError(f"Configuration file {path} does not exist.")
        document = cls(path=path, template=template)
        document._data = _load_mapping(path)
        return document

    @classmethod
    def create(cls, path: Path, template: Path | None = None) -> InstanceConfigDocument:
        """Return a document for *path*, starting empty when the file is absent."""
        if path.exists():
            return cls.load(path, template)
        return cls(path=path, template=template)

    # ------------------------------------------------------------------
    def get(self, key: str, default: object = None) -> object:
        """Resolve dotted *key* through instance, template, then *default*."""
        value = _lookup(self._data, key)
        if value is not _MISSING and value is not None:
            return deepcopy(value)
        template_value = _lookup(self._template(), key)
        if template_value is not _MISSING and template_value is not None:
            return deepcopy(template_value)
        return default

    def set(self, key: str, value: object) -> None:
        """Assign dotted *key* in the instance document (in memory)."""
        segments = key.split(".")
        current: MutableMapping[str, Any] = self._data
        for segment in segments[:-1]:
            child = current.get(segment)
            if not isinstance(child, MutableMapping):
                child = {}
                current[segment] = child
            current = child
        current[segments[-1]] = value

    def save(self) -> None:
        """Atomically write the instance document back to disk."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_fd, tmp_name = tempfile.mkstemp(dir=str(self.path.parent), prefix=f".{self.path.name}.")
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(tmp_fd, "w", encoding="utf-8") as handle:
                yaml.safe_dump(self._data, handle, sort_keys=False)
            os.replace(tmp_path, self.path)
        finally:
            tmp_path.unlink(missing_ok=True)

    def as_dict(self) -> dict[str, Any]:
        """Return a copy of the instance document without template values."""
        return deepcopy(self._data)

    # Typed accessors ---------------------------------------------------
    @property
    def port(self) -> int | None:
        """Return the persisted port, or ``None`` when absent or unparsable."""
        value = self.get("port")
        if isinstance(value, bool):
            return None
        if isinstance(value, int):
            return value
        if isinstance(value, str) and value.strip().isdigit():
            return int(value.strip())
        return None

    @property
    def stack_name(self) -> str | None:
        """Return the orchestrator stack name recorded for the instance."""
        value = self.get("stackName")
        return str(value) if value not in (None, "") else None

    @property
    def default_tag(self) -> str | None:
        """Return the default image tag for all services."""
        value = self.get("defaults.tag")
        return str(value) if value not in (None, "") else None

    @property
    def management_tool_hash(self) -> str | None:
        """Return the pinned management tool hash or ``FOLLOW_LATEST``."""
        value = self.get("managementToolHash")
        return str(value) if value not in (None, "") else None

    @property
    def postgres_disabled(self) -> bool:
        """Return ``True`` when the stack runs without its own database."""
        return self.get("disablePostgres") is True

    # ------------------------------------------------------------------
    def _template(self) -> dict[str, Any]:
        if self._template_data is None:
            if self.template is not None and self.template.is_file():
                self._template_data = _load_mapping(self.template)
            else:
                self._template_data = {}
        return self._template_data


__all__ = ["FOLLOW_LATEST", "InstanceConfigDocument", "InstanceConfigError"]
