"""Docker stack provider for deploying and inspecting instance stacks."""
from __future__ import annotations

import subprocess
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path


class OrchestratorError(RuntimeError):
    """Raised when orchestrator operations fail."""


@dataclass(slots=True)
class DockerStackOrchestrator:
    """Thin wrapper around ``docker stack`` and ``docker service``."""

    docker_bin: str = "docker"

    def list_deployed_names(self) -> list[str]:
        """Return the names of all deployed stacks."""
        result = self._docker(["stack", "ls", "--format", "{{.Name}}"])
        return [line.strip() for line in result.stdout.splitlines() if line.strip()]

    def is_deployed(self, stack: str) -> bool:
        """Return ``True`` when *stack* is currently deployed."""
        return stack in self.list_deployed_names()

    def reported_images(self, stack: str) -> list[str]:
        """Return the image reference of every service in *stack*."""
        result = self._docker(["stack", "services", "--format", "{{.Image}}", stack])
        return [line.strip() for line in result.stdout.splitlines() if line.strip()]

    def current_replicas(self, stack: str) -> dict[str, tuple[int, int]]:
        """Return ``service -> (running, desired)`` for every service in *stack*.

        Service names are reported without the ``<stack>_`` prefix. Rows whose
        replica column is not of the ``running/desired`` form (global services)
        are skipped.
        """
        result = self._docker(
            ["stack", "services", "--format", "{{.Name}} {{.Replicas}}", stack]
        )
        prefix = f"{stack}_"
        replicas: dict[str, tuple[int, int]] = {}
        for line in result.stdout.splitlines():
            fields = line.split()
            if len(fields) < 2:
                continue
            name, counts = fields[0], fields[1]
            if name.startswith(prefix):
                name = name[len(prefix) :]
            running, sep, desired = counts.partition("/")
            if not sep:
                continue
            try:
                replicas[name] = (int(running), int(desired))
            except ValueError:
                continue
        return replicas

    def deploy(self, stack_file: Path, stack: str) -> subprocess.CompletedProcess[str]:
        """Deploy (or update) *stack* from *stack_file*."""
        return self._docker(["stack", "deploy", "-c", str(stack_file), stack])

    def remove(self, stack: str) -> subprocess.CompletedProcess[str]:
        """Remove the deployed *stack*."""
        return self._docker(["stack", "rm", stack])

    def scale_command(self, stack: str, service: str, replicas: int) -> list[str]:
        """Return the argv that scales *service* of *stack* to *replicas*."""
        return [self.docker_bin, "service", "scale", f"{stack}_{service}={replicas}"]

    def set_replicas(
        self, stack: str, service: str, replicas: int
    ) -> subprocess.CompletedProcess[str]:
        """Scale *service* of *stack* to *replicas*."""
        return self.run(self.scale_command(stack, service, replicas))

    def run(self, args: Sequence[str]) -> subprocess.CompletedProcess[str]:
        """Execute a prepared orchestrator command."""
        return self._run_command(args, error_prefix=" ".join(args[:3]))

    # ------------------------------------------------------------------
    def _docker(self, args: Sequence[str]) -> subprocess.CompletedProcess[str]:
        command = [self.docker_bin, *args]
        return self._run_command(command, error_prefix=f"{self.docker_bin} {' '.join(args[:2])}")

    def _run_command(
        self,
        args: Sequence[str],
        *,
        error_prefix: str,
    ) -> subprocess.CompletedProcess[str]:
        try:
            result = subprocess.run(  # noqa: S603, S607
                list(args),
                capture_output=True,
                text=True,
                check=False,
            )
        except FileNotFoundError as exc:
            raise OrchestratorError(f"{args[0]} not found: {exc}") from exc
        if result.returncode != 0:
            stdout = getattr(result, "stdout", "") or ""
            stderr = getattr(result, "stderr", "") or ""
            message = stderr.strip() or stdout.strip() or "no output"
            raise OrchestratorError(f"{error_prefix} failed (exit {result.returncode}): {message}")
        return result


__all__ = ["DockerStackOrchestrator", "OrchestratorError"]
