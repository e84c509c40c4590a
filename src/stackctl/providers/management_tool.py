"""Provider for the instance management tool (instance materializer).

The management tool writes an instance directory (``setup``), re-renders the
orchestrator stack file from ``config.yml`` (``config``) and loads initial data
into a running instance (``initial-data``). Several builds may be installed
side by side in ``bin_dir``; each instance pins the build it was created with
by recording the binary's sha256 digest, or follows ``latest``.
"""
from __future__ import annotations

import hashlib
import subprocess
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path

from ..instance_config import FOLLOW_LATEST

LATEST_NAME = "latest"
MANAGE_PASSWORD_FILE = "manage_auth_password"


class ManagementToolError(RuntimeError):
    """Raised when the management tool is missing or fails."""


def select_management_tool(
    bin_dir: Path,
    *,
    option: str | None = None,
    instance_hash: str | None = None,
    default: str = LATEST_NAME,
) -> Path:
    """Return the tool binary to use.

    An explicit *option* wins: ``-`` follows ``latest``, anything containing a
    ``/`` is a path, and a bare name is looked up in *bin_dir*. Without an
    option the instance's recorded hash selects the build; otherwise
    *default* applies.
    """
    if option:
        if option == FOLLOW_LATEST:
            return bin_dir / LATEST_NAME
        if "/" in option:
            return Path(option).resolve()
        return bin_dir / option
    if instance_hash:
        if instance_hash == FOLLOW_LATEST:
            return bin_dir / LATEST_NAME
        return bin_dir / instance_hash
    default_path = Path(default)
    return default_path if default_path.is_absolute() else bin_dir / default


@dataclass(slots=True)
class ManagementTool:
    """Invoke one management tool binary."""

    path: Path

    def ensure_available(self) -> None:
        """Raise :class:`ManagementToolError` when the binary is unusable."""
        if not self.path.is_file():
            raise ManagementToolError(f"{self.path} not found.")

    def hash(self) -> str:
        """Return the sha256 hex digest of the tool binary."""
        digest = hashlib.sha256()
        try:
            with self.path.open("rb") as handle:
                for chunk in iter(lambda: handle.read(65536), b""):
                    digest.update(chunk)
        except OSError as exc:
            raise ManagementToolError(f"{self.path} not found.") from exc
        return digest.hexdigest()

    def setup(
        self,
        target_dir: Path,
        *,
        compose_template: Path | None = None,
        config_template: Path | None = None,
    ) -> subprocess.CompletedProcess[str]:
        """Materialize a fresh instance directory at *target_dir*."""
        args = ["setup", *self._template_args(compose_template, config_template), str(target_dir)]
        return self._run(args)

    def render_config(
        self,
        target_dir: Path,
        instance_config: Path,
        *,
        compose_template: Path | None = None,
        config_template: Path | None = None,
    ) -> subprocess.CompletedProcess[str]:
        """Re-render the stack file in *target_dir* from *instance_config*."""
        args = [
            "config",
            *self._template_args(compose_template, config_template),
            f"--config={instance_config}",
            str(target_dir),
        ]
        return self._run(args)

    def initial_data(self, port: int, secrets_dir: Path) -> bool:
        """Load initial data into the instance on *port*; return ``True`` on success."""
        args = [
            "initial-data",
            "-a",
            f"127.0.0.1:{port}",
            "--password-file",
            str(secrets_dir / MANAGE_PASSWORD_FILE),
            "--no-ssl",
        ]
        result = self._run(args, check=False)
        return result.returncode == 0

    # ------------------------------------------------------------------
    @staticmethod
    def _template_args(compose_template: Path | None, config_template: Path | None) -> list[str]:
        args: list[str] = []
        if compose_template is not None:
            args.append(f"--template={compose_template}")
        if config_template is not None:
            args.append(f"--config={config_template}")
        return args

    def _run(self, args: Sequence[str], *, check: bool = True) -> subprocess.CompletedProcess[str]:
        command = [str(self.path), *args]
        try:
            result = subprocess.run(  # noqa: S603
                command,
                capture_output=True,
                text=True,
                check=False,
            )
        except (FileNotFoundError, PermissionError) as exc:
            raise ManagementToolError(f"{self.path} not found: {exc}") from exc
        if check and result.returncode != 0:
            message = (result.stderr or result.stdout or "no output").strip()
            raise ManagementToolError(
                f"{self.path.name} {args[0]} failed (exit {result.returncode}): {message}"
            )
        return result


__all__ = [
    "LATEST_NAME",
    "ManagementTool",
    "ManagementToolError",
    "select_management_tool",
]
