"""Tests for typed access to an instance's config.yml."""
from __future__ import annotations

from pathlib import Path

import pytest
import yaml

from stackctl.instance_config import FOLLOW_LATEST, InstanceConfigDocument, InstanceConfigError


def test_get_falls_back_to_template_then_default(tmp_path: Path) -> None:
    """Instance values win, then the template, then the supplied default."""
    template = tmp_path / "template.yml"
    template.write_text("defaults:\n  tag: '4.0.0'\ndisablePostgres: true\n", encoding="utf-8")
    config = tmp_path / "config.yml"
    config.write_text("port: 61001\nstackName: exampleorg\n", encoding="utf-8")

    document = InstanceConfigDocument.load(config, template)

    assert document.port == 61001
    assert document.stack_name == "exampleorg"
    assert document.default_tag == "4.0.0"
    assert document.postgres_disabled is True
    assert document.get("missing.key", "fallback") == "fallback"
    assert document.management_tool_hash is None


def test_load_rejects_missing_and_malformed(tmp_path: Path) -> None:
    """A missing file or a non-mapping document is an error."""
    with pytest.raises(InstanceConfigError, match="does not exist"):
        InstanceConfigDocument.load(tmp_path / "config.yml")

    bad = tmp_path / "bad.yml"
    bad.write_text("- 1\n- 2\n", encoding="utf-8")
    with pytest.raises(InstanceConfigError, match="mapping"):
        InstanceConfigDocument.load(bad)


def test_set_and_save_round_trip_nested_keys(tmp_path: Path) -> None:
    """Dotted keys create nested mappings and are written atomically."""
    config = tmp_path / "config.yml"
    config.write_text("defaults:\n  tag: old\n", encoding="utf-8")
    document = InstanceConfigDocument.load(config)

    document.set("defaults.tag", "4.1.0")
    document.set("defaultEnvironment.VOTE_DATABASE_NAME", "example.org")
    document.set("managementToolHash", FOLLOW_LATEST)
    document.save()

    data = yaml.safe_load(config.read_text(encoding="utf-8"))
    assert data == {
        "defaults": {"tag": "4.1.0"},
        "defaultEnvironment": {"VOTE_DATABASE_NAME": "example.org"},
        "managementToolHash": "-",
    }
    assert [path.name for path in tmp_path.iterdir()] == ["config.yml"]


def test_create_starts_empty(tmp_path: Path) -> None:
    """``create`` works on a not-yet-existing file."""
    document = InstanceConfigDocument.create(tmp_path / "new" / "config.yml")

    assert document.as_dict() == {}
    document.set("port", 61005)
    document.save()
    assert InstanceConfigDocument.load(tmp_path / "new" / "config.yml").port == 61005


def test_port_accessor_ignores_garbage(tmp_path: Path) -> None:
    """Non-integer ports read as absent."""
    config = tmp_path / "config.yml"
    config.write_text("port: not-a-port\n", encoding="utf-8")

    assert InstanceConfigDocument.load(config).port is None

    config.write_text("port: '61010'\n", encoding="utf-8")
    assert InstanceConfigDocument.load(config).port == 61010
