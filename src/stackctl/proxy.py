"""Reverse-proxy (HAProxy) routing file reconciliation.

Only the region between the begin and end marker lines belongs to stackctl.
Every edit copies the live file to the backup path first, builds the new
content from that backup, writes it to a temporary file next to the live file
and atomically replaces it, and only then asks the proxy to reload.
"""
from __future__ import annotations

import logging
import os
import shutil
import subprocess
import tempfile
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from pathlib import Path

LOGGER = logging.getLogger(__name__)

USE_SERVER_TEMPLATE = "\tuse-server {name} if {{ hdr_reg(Host) -i ^{name}$ }}"
USE_SERVER_WWW_TEMPLATE = "\tuse-server {name} if {{ hdr_reg(Host) -i ^(www\\.)?{name}$ }}"
SERVER_TEMPLATE = "\tserver     {name} 127.0.0.1:{port}  weight 0 check"


class ProxyError(RuntimeError):
    """Raised when the proxy configuration cannot be updated or reloaded."""


class ProxyConfigError(ProxyError):
    """Raised when the proxy configuration file is malformed."""


@dataclass(frozen=True, slots=True)
class ProxyRule:
    """Routing rule sending requests for *name* to a local port."""

    name: str
    port: int
    www: bool = False

    def lines(self) -> list[str]:
        """Return the rule's managed lines (without line terminators)."""
        template = USE_SERVER_WWW_TEMPLATE if self.www else USE_SERVER_TEMPLATE
        return [
            template.format(name=self.name),
            SERVER_TEMPLATE.format(name=self.name, port=self.port),
        ]


@dataclass(slots=True)
class ProxyConfigSections:
    """A proxy file split around its managed region.

    ``preamble`` ends with the begin marker line and ``postamble`` starts with
    the end marker line; ``managed`` holds everything in between. All lines
    keep their terminators so that joining the sections reproduces the file.
    """

    preamble: list[str]
    managed: list[str]
    postamble: list[str]

    @classmethod
    def parse(cls, text: str, begin_marker: str, end_marker: str) -> ProxyConfigSections:
        """Split *text*; missing or misordered markers raise :class:`ProxyConfigError`."""
        lines = text.splitlines(keepends=True)
        begin = _find_marker(lines, begin_marker, start=0)
        if begin is None:
            raise ProxyConfigError(f"Begin marker '{begin_marker}' not found.")
        end = _find_marker(lines, end_marker, start=begin + 1)
        if end is None:
            if _find_marker(lines, end_marker, start=0) is not None:
                raise ProxyConfigError(f"End marker '{end_marker}' precedes the begin marker.")
            raise ProxyConfigError(f"End marker '{end_marker}' not found.")
        return cls(
            preamble=lines[: begin + 1],
            managed=lines[begin + 1 : end],
            postamble=lines[end:],
        )

    def render(self) -> str:
        """Return the file content for the current sections."""
        return "".join([*self.preamble, *self.managed, *self.postamble])

    def lines_for(self, name: str) -> list[str]:
        """Return managed lines (without terminators) that belong to *name*."""
        return [line.rstrip("\r\n") for line in self.managed if _belongs_to(line, name)]

    def without(self, name: str) -> list[str]:
        """Return the managed lines that do not belong to *name*."""
        return [line for line in self.managed if not _belongs_to(line, name)]


@dataclass(slots=True)
class ProxyEditResult:
    """Outcome of a proxy edit."""

    changed: bool
    backup: Path | None = None
    reload: subprocess.CompletedProcess[str] | None = None


@dataclass(slots=True)
class ProxyReconciler:
    """Add and remove per-instance rules inside the managed region."""

    config_file: Path
    backup_file: Path
    begin_marker: str
    end_marker: str
    reload_command: Sequence[str] = field(
        default_factory=lambda: ("systemctl", "reload", "haproxy")
    )

    def read_sections(self) -> ProxyConfigSections:
        """Parse the live configuration file."""
        return ProxyConfigSections.parse(
            self._read(self.config_file), self.begin_marker, self.end_marker
        )

    def add_rule(self, rule: ProxyRule, *, local_only: bool = False) -> ProxyEditResult:
        """Ensure *rule* is present; identical existing lines mean no change."""
        if local_only:
            return ProxyEditResult(changed=False)
        sections = self.read_sections()
        wanted = rule.lines()
        if sections.lines_for(rule.name) == wanted:
            LOGGER.debug("Proxy rule for %s already present.", rule.name)
            return ProxyEditResult(changed=False)

        def transform(current: ProxyConfigSections) -> None:
            managed = current.without(rule.name)
            managed.extend(f"{line}\n" for line in wanted)
            current.managed = managed

        return self._apply(transform)

    def remove_rule(self, name: str, *, local_only: bool = False) -> ProxyEditResult:
        """Drop every managed line that belongs to *name*."""
        if local_only:
            return ProxyEditResult(changed=False)
        sections = self.read_sections()
        if not sections.lines_for(name):
            LOGGER.debug("No proxy rule for %s to remove.", name)
            return ProxyEditResult(changed=False)

        def transform(current: ProxyConfigSections) -> None:
            current.managed = current.without(name)

        return self._apply(transform)

    def reload(self) -> subprocess.CompletedProcess[str]:
        """Ask the proxy to reload its configuration."""
        command = list(self.reload_command)
        try:
            result = subprocess.run(  # noqa: S603, S607
                command,
                capture_output=True,
                text=True,
                check=False,
            )
        except FileNotFoundError as exc:
            raise ProxyError(f"{command[0]} not found: {exc}") from exc
        if result.returncode != 0:
            message = (result.stderr or result.stdout or "no output").strip()
            raise ProxyError(
                f"{' '.join(command)} failed (exit {result.returncode}): {message}"
            )
        return result

    # ------------------------------------------------------------------
    def _apply(self, transform: Callable[[ProxyConfigSections], None]) -> ProxyEditResult:
        self.backup_file.parent.mkdir(parents=True, exist_ok=True)
        shutil.copyfile(self.config_file, self.backup_file)
        sections = ProxyConfigSections.parse(
            self._read(self.backup_file), self.begin_marker, self.end_marker
        )
        transform(sections)
        self._write_atomic(sections.render())
        return ProxyEditResult(changed=True, backup=self.backup_file, reload=self.reload())

    def _write_atomic(self, content: str) -> None:
        directory = self.config_file.parent
        tmp_fd, tmp_name = tempfile.mkstemp(dir=str(directory), prefix=f".{self.config_file.name}.")
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(tmp_fd, "w", encoding="utf-8", newline="") as handle:
                handle.write(content)
            shutil.copymode(self.config_file, tmp_path)
            os.replace(tmp_path, self.config_file)
        finally:
            tmp_path.unlink(missing_ok=True)

    @staticmethod
    def _read(path: Path) -> str:
        try:
            with path.open("r", encoding="utf-8", newline="") as handle:
                return handle.read()
        except FileNotFoundError as exc:
            raise ProxyConfigError(f"Proxy configuration {path} does not exist.") from exc


def _find_marker(lines: Sequence[str], marker: str, *, start: int) -> int | None:
    for index in range(start, len(lines)):
        if marker in lines[index]:
            return index
    return None


def _belongs_to(line: str, name: str) -> bool:
    fields = line.split()
    return len(fields) >= 2 and fields[1] == name


__all__ = [
    "ProxyConfigError",
    "ProxyConfigSections",
    "ProxyEditResult",
    "ProxyError",
    "ProxyReconciler",
    "ProxyRule",
]
