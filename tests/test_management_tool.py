"""Tests for management tool selection and invocation."""
from __future__ import annotations

import hashlib
import subprocess
from collections.abc import Sequence
from pathlib import Path

import pytest

from stackctl.providers.management_tool import (
    ManagementTool,
    ManagementToolError,
    select_management_tool,
)


class DummyResult:
    """Stand-in for ``subprocess.CompletedProcess``."""

    def __init__(self, returncode: int = 0, stdout: str = "", stderr: str = "") -> None:
        """Initialise the dummy result."""
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr


@pytest.fixture
def tool(tmp_path: Path) -> ManagementTool:
    """Return a tool pointing at a fake binary."""
    binary = tmp_path / "versions" / "latest"
    binary.parent.mkdir()
    binary.write_bytes(b"#!/bin/sh\nexit 0\n")
    return ManagementTool(binary)


def test_select_management_tool_precedence(tmp_path: Path) -> None:
    """Explicit options beat the recorded hash, which beats the default."""
    bin_dir = tmp_path / "versions"

    assert select_management_tool(bin_dir, option="-") == bin_dir / "latest"
    assert select_management_tool(bin_dir, option="v4.0.15", instance_hash="abc") == (
        bin_dir / "v4.0.15"
    )
    assert select_management_tool(bin_dir, option=str(tmp_path / "tool")) == (
        (tmp_path / "tool").resolve()
    )
    assert select_management_tool(bin_dir, instance_hash="abc") == bin_dir / "abc"
    assert select_management_tool(bin_dir, instance_hash="-") == bin_dir / "latest"
    assert select_management_tool(bin_dir) == bin_dir / "latest"
    assert select_management_tool(bin_dir, default="/opt/manage") == Path("/opt/manage")


def test_hash_is_sha256_of_binary(tool: ManagementTool) -> None:
    """Builds are identified by the sha256 of the binary."""
    expected = hashlib.sha256(b"#!/bin/sh\nexit 0\n").hexdigest()

    tool.ensure_available()
    assert tool.hash() == expected


def test_missing_binary(tmp_path: Path) -> None:
    """A missing binary is reported before it is run."""
    tool = ManagementTool(tmp_path / "absent")

    with pytest.raises(ManagementToolError, match="not found"):
        tool.ensure_available()
    with pytest.raises(ManagementToolError, match="not found"):
        tool.hash()


def test_setup_and_config_arguments(
    tool: ManagementTool, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    """Template options are passed before the target directory."""
    calls: list[list[str]] = []

    def fake_run(cmd: Sequence[str], **kwargs: object) -> DummyResult:
        calls.append(list(cmd))
        return DummyResult()

    monkeypatch.setattr(subprocess, "run", fake_run)
    target = tmp_path / "example.org"
    compose = tmp_path / "compose.tmpl"
    config_tmpl = tmp_path / "config.tmpl"

    tool.setup(target, compose_template=compose, config_template=config_tmpl)
    tool.render_config(target, target / "config.yml")

    assert calls == [
        [str(tool.path), "setup", f"--template={compose}", f"--config={config_tmpl}", str(target)],
        [str(tool.path), "config", f"--config={target / 'config.yml'}", str(target)],
    ]


def test_failure_raises(
    tool: ManagementTool, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    """A failing setup raises with the tool's message."""

    def fake_run(cmd: Sequence[str], **kwargs: object) -> DummyResult:
        return DummyResult(returncode=2, stderr="directory exists")

    monkeypatch.setattr(subprocess, "run", fake_run)

    expected = r"latest setup failed \(exit 2\): directory exists"
    with pytest.raises(ManagementToolError, match=expected):
        tool.setup(tmp_path / "example.org")


def test_initial_data_reports_success(
    tool: ManagementTool, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    """``initial-data`` returns a boolean instead of raising."""
    results = [DummyResult(returncode=1, stderr="not ready"), DummyResult()]
    calls: list[list[str]] = []

    def fake_run(cmd: Sequence[str], **kwargs: object) -> DummyResult:
        calls.append(list(cmd))
        return results.pop(0)

    monkeypatch.setattr(subprocess, "run", fake_run)
    secrets = tmp_path / "secrets"

    assert tool.initial_data(61001, secrets) is False
    assert tool.initial_data(61001, secrets) is True
    assert calls[0][1:] == [
        "initial-data",
        "-a",
        "127.0.0.1:61001",
        "--password-file",
        str(secrets / "manage_auth_password"),
        "--no-ssl",
    ]
