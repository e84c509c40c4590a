"""Instance model and on-disk layout helpers.

Every instance lives in its own directory below ``instances_dir``. A
directory only counts as an instance when it holds both ``config.yml`` and the
orchestrator stack file; anything else is ignored by fleet-wide operations
and rejected by targeted ones.
"""
from __future__ import annotations

import logging
import os
import re
import tempfile
from collections.abc import Iterator, Mapping
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

from .instance_config import InstanceConfigDocument, InstanceConfigError

LOGGER = logging.getLogger(__name__)

CONFIG_FILENAME = "config.yml"
STACK_FILENAME = "docker-stack.yml"
METADATA_FILENAME = "metadata.txt"
ENV_FILENAME = ".env"
MARKER_FILENAME = ".stackctl-marker"
SECRETS_DIRNAME = "secrets"

ACCOUNTS_KEY = "ACCOUNTS:"

_NAME_PATTERN = re.compile(r"^[a-z0-9][a-z0-9.-]*$")


class InstanceError(RuntimeError):
    """Raised when an instance is missing, invalid, or malformed."""


def normalize_name(name: str) -> str:
    """Return the canonical (lower-case) instance name for *name*."""
    normalized = name.strip().lower()
    if not normalized:
        raise InstanceError("Instance name must be a non-empty string.")
    if not _NAME_PATTERN.match(normalized) or ".." in normalized:
        raise InstanceError(
            f"Invalid instance name '{name}'. Use a domain-like name such as example.org."
        )
    return normalized


def stack_name_for(name: str) -> str:
    """Return the orchestrator-safe stack name (all dots removed)."""
    return name.replace(".", "")


def metadata_timestamp(now: datetime | None = None) -> str:
    """Return the timestamp prefix used in metadata lines."""
    return (now or datetime.now()).strftime("%Y-%m-%d %H:%M")


@dataclass(frozen=True, slots=True)
class Instance:
    """A managed application stack identified by its directory."""

    name: str
    directory: Path

    @classmethod
    def from_directory(cls, directory: Path) -> Instance:
        """Derive the instance from its directory; the basename is the name."""
        return cls(name=directory.name, directory=directory)

    @property
    def stack_name(self) -> str:
        """Return the orchestrator stack name derived from the instance name."""
        return stack_name_for(self.name)

    @property
    def config_file(self) -> Path:
        """Return the path of the instance configuration document."""
        return self.directory / CONFIG_FILENAME

    @property
    def stack_file(self) -> Path:
        """Return the path of the rendered orchestrator stack file."""
        return self.directory / STACK_FILENAME

    @property
    def marker_file(self) -> Path:
        """Return the path of the marker proving stackctl created the instance."""
        return self.directory / MARKER_FILENAME

    @property
    def secrets_dir(self) -> Path:
        """Return the secrets directory."""
        return self.directory / SECRETS_DIRNAME

    @property
    def metadata(self) -> MetadataLog:
        """Return the instance metadata log."""
        return MetadataLog(self.directory / METADATA_FILENAME)

    @property
    def env(self) -> EnvFile:
        """Return the env-override file."""
        return EnvFile(self.directory / ENV_FILENAME)

    def exists(self) -> bool:
        """Return ``True`` when the instance directory exists."""
        return self.directory.is_dir()

    def is_valid(self) -> bool:
        """Return ``True`` when both configuration files are present."""
        return self.config_file.is_file() and self.stack_file.is_file()

    def has_marker(self) -> bool:
        """Return ``True`` when the stackctl marker file is present."""
        return self.marker_file.is_file()


class MetadataLog:
    """Append-only, human-editable metadata log (one entry per line)."""

    def __init__(self, path: Path) -> None:
        """Bind the log to *path*."""
        self.path = path

    def exists(self) -> bool:
        """Return ``True`` when the log file exists."""
        return self.path.is_file()

    def lines(self, *, include_comments: bool = True) -> list[str]:
        """Return the log lines, optionally hiding ``#`` comment lines."""
        if not self.path.is_file():
            return []
        lines = self.path.read_text(encoding="utf-8", errors="replace").splitlines()
        if include_comments:
            return lines
        return [line for line in lines if not line.lstrip().startswith("#")]

    def text(self) -> str:
        """Return the whole log as text."""
        if not self.path.is_file():
            return ""
        return self.path.read_text(encoding="utf-8", errors="replace")

    def first_line(self) -> str:
        """Return the first non-blank line, or an empty string."""
        return next((line for line in self.lines() if line.strip()), "")

    def append(self, *lines: str) -> None:
        """Append *lines* to the log, creating it when missing."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with self.path.open("a", encoding="utf-8") as handle:
            for line in lines:
                handle.write(f"{line}\n")

    def accounts(self) -> int | None:
        """Return the value of the first ``ACCOUNTS: <n>`` line, if any."""
        for line in self.lines():
            fields = line.split()
            if len(fields) >= 2 and fields[0] == ACCOUNTS_KEY:
                try:
                    value = int(fields[1])
                except ValueError as exc:
                    raise InstanceError(
                        f"Invalid ACCOUNTS metadatum in {self.path}: {fields[1]!r}."
                    ) from exc
                if value < 0:
                    raise InstanceError(f"ACCOUNTS metadatum in {self.path} must be non-negative.")
                return value
        return None


class EnvFile:
    """``KEY=VALUE`` override file; an absent key means the default."""

    def __init__(self, path: Path) -> None:
        """Bind the env file to *path*."""
        self.path = path

    def exists(self) -> bool:
        """Return ``True`` when the env file exists."""
        return self.path.is_file()

    def read(self) -> dict[str, str]:
        """Return the parsed key/value pairs (comments and blanks ignored)."""
        values: dict[str, str] = {}
        if not self.path.is_file():
            return values
        for line in self.path.read_text(encoding="utf-8").splitlines():
            key, value = _split_env_line(line)
            if key is not None:
                values[key] = value
        return values

    def get(self, key: str) -> str | None:
        """Return the value for *key*, or ``None`` when unset or empty."""
        value = self.read().get(key)
        return value if value else None

    def get_int(self, key: str, default: int = 1) -> int:
        """Return *key* as an integer, falling back to *default* when unset."""
        value = self.get(key)
        if value is None:
            return default
        try:
            return int(value)
        except ValueError as exc:
            raise InstanceError(f"Invalid integer for {key} in {self.path}: {value!r}.") from exc

    def update(self, values: Mapping[str, object]) -> None:
        """Set *values*, keeping unrelated lines and their order intact."""
        pending = {key: str(value) for key, value in values.items()}
        lines = (
            self.path.read_text(encoding="utf-8").splitlines() if self.path.is_file() else []
        )
        output: list[str] = []
        for line in lines:
            key, _ = _split_env_line(line)
            if key is not None and key in pending:
                output.append(f"{key}={pending.pop(key)}")
            else:
                output.append(line)
        output.extend(f"{key}={value}" for key, value in pending.items())

        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_fd, tmp_name = tempfile.mkstemp(dir=str(self.path.parent), prefix=f".{self.path.name}.")
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(tmp_fd, "w", encoding="utf-8") as handle:
                handle.write("\n".join(output) + "\n")
            os.replace(tmp_path, self.path)
        finally:
            tmp_path.unlink(missing_ok=True)


def _split_env_line(line: str) -> tuple[str | None, str]:
    stripped = line.strip()
    if not stripped or stripped.startswith("#") or "=" not in stripped:
        return None, ""
    key, value = stripped.split("=", 1)
    value = value.strip()
    if len(value) >= 2 and value[0] == value[-1] and value[0] in {'"', "'"}:
        value = value[1:-1]
    return key.strip(), value


@dataclass(frozen=True, slots=True)
class InstanceStore:
    """Directory-backed view of the fleet."""

    root: Path
    config_template: Path | None = None

    def directory_for(self, name: str) -> Path:
        """Return the directory that holds the instance *name*."""
        return self.root / normalize_name(name)

    def get(self, name: str) -> Instance:
        """Return the instance handle for *name* without validating it."""
        return Instance.from_directory(self.directory_for(name))

    def require(self, name: str) -> Instance:
        """Return a valid instance or raise :class:`InstanceError`."""
        instance = self.get(name)
        if not instance.exists():
            raise InstanceError(f"Instance '{instance.name}' not found.")
        if not instance.is_valid():
            raise InstanceError(f"'{instance.name}' is not a valid stack instance.")
        return instance

    def document(self, instance: Instance) -> InstanceConfigDocument:
        """Load the configuration document of *instance*."""
        return InstanceConfigDocument.load(instance.config_file, self.config_template)

    def iter_instances(self) -> Iterator[Instance]:
        """Yield valid instances sorted by name, skipping anything else."""
        if not self.root.is_dir():
            return
        for path in sorted(self.root.iterdir(), key=lambda item: item.name):
            if not path.is_dir():
                continue
            instance = Instance.from_directory(path)
            if not instance.is_valid():
                LOGGER.debug("Skipping %s: not a stack instance.", path)
                continue
            yield instance

    def known_ports(self) -> list[int]:
        """Return the port persisted in every ``<root>/*/config.yml``.

        Directories without a stack file count too: a half-created instance
        already owns the port written to its configuration.
        """
        ports: list[int] = []
        if not self.root.is_dir():
            return ports
        for config_file in sorted(self.root.glob(f"*/{CONFIG_FILENAME}")):
            try:
                port = InstanceConfigDocument.load(config_file, self.config_template).port
            except InstanceConfigError as exc:
                LOGGER.debug("Ignoring %s while collecting ports: %s", config_file, exc)
                continue
            if port is not None:
                ports.append(port)
        return ports


__all__ = [
    "ACCOUNTS_KEY",
    "CONFIG_FILENAME",
    "ENV_FILENAME",
    "EnvFile",
    "Instance",
    "InstanceError",
    "InstanceStore",
    "MARKER_FILENAME",
    "METADATA_FILENAME",
    "MetadataLog",
    "SECRETS_DIRNAME",
    "STACK_FILENAME",
    "metadata_timestamp",
    "normalize_name",
    "stack_name_for",
]
