"""Configuration loader tests."""
from __future__ import annotations

from pathlib import Path

import pytest

from stackctl.config import DEFAULT_BEGIN_MARKER, AppConfig, ConfigError, load_config


def test_load_config_defaults_when_file_missing(tmp_path: Path) -> None:
    """Defaults apply when no config file is present."""
    config = load_config(config_file=tmp_path / "missing.yml", env={})

    assert isinstance(config, AppConfig)
    assert config.instances_dir == Path("/srv/openslides/os4-instances")
    assert config.docker_bin == "docker"
    assert config.ports.base == 61000
    assert config.ports.max == 65535
    assert config.proxy.config_file == Path("/etc/haproxy/haproxy.cfg")
    assert config.proxy.backup_file == Path("/etc/haproxy/haproxy.cfg.stackctl-bak")
    assert config.proxy.begin_marker == DEFAULT_BEGIN_MARKER
    assert config.proxy.reload_command == ("systemctl", "reload", "haproxy")
    assert config.probe.fast.skip_health is True
    assert config.probe.patient.skip_health is False
    assert config.probe.patient.request_timeout == 60.0
    assert config.listing.parallel is True
    assert config.autoscale.accounts_over is None
    assert config.autoscale.service_env_vars is not None
    assert config.autoscale.service_env_vars["media"] == "MEDIA_SERVICE_REPLICAS"
    assert config.readiness.initial_delay == 20.0


def test_load_config_reads_yaml_file(tmp_path: Path) -> None:
    """Values are loaded from the YAML config file."""
    cfg = tmp_path / "stackctl.yml"
    cfg.write_text(
        f"instances_dir: {tmp_path / 'instances'}\n"
        "ports:\n"
        "  base: 62000\n"
        "proxy:\n"
        f"  config_file: {tmp_path / 'haproxy.cfg'}\n"
        "  reload_command: /bin/true\n"
        "autoscale:\n"
        "  accounts_over:\n"
        "    0: media=1\n"
        "    100: media=4\n",
        encoding="utf-8",
    )

    config = load_config(config_file=cfg, env={})

    assert config.config_file == cfg
    assert config.instances_dir == tmp_path / "instances"
    assert config.ports.base == 62000
    assert config.proxy.backup_file == tmp_path / "haproxy.cfg.stackctl-bak"
    assert config.proxy.reload_command == ("/bin/true",)
    assert config.autoscale.accounts_over == {0: "media=1", 100: "media=4"}


def test_env_overrides_take_precedence(tmp_path: Path) -> None:
    """Environment variables override defaults and file settings."""
    cfg = tmp_path / "stackctl.yml"
    cfg.write_text("ports:\n  base: 62000\n", encoding="utf-8")
    env = {
        "STACKCTL_CONFIG_FILE": str(cfg),
        "STACKCTL_PORTS__BASE": "63000",
        "STACKCTL_LISTING__PARALLEL": "false",
        "STACKCTL_ORCHESTRATOR__DOCKER_BIN": "/usr/bin/docker",
    }

    config = load_config(env=env)

    assert config.config_file == cfg
    assert config.ports.base == 63000
    assert config.listing.parallel is False
    assert config.docker_bin == "/usr/bin/docker"


def test_overrides_beat_environment(tmp_path: Path) -> None:
    """Programmatic overrides (CLI flags) win over the environment."""
    env = {"STACKCTL_INSTANCES_DIR": str(tmp_path / "from-env")}

    config = load_config(
        config_file=tmp_path / "missing.yml",
        env=env,
        overrides={"instances_dir": str(tmp_path / "from-cli")},
    )

    assert config.instances_dir == tmp_path / "from-cli"


def test_unknown_keys_are_rejected(tmp_path: Path) -> None:
    """Typos in the config file surface as errors."""
    cfg = tmp_path / "stackctl.yml"
    cfg.write_text("instance_dir: /tmp\n", encoding="utf-8")

    with pytest.raises(ConfigError, match="Unknown configuration keys"):
        load_config(config_file=cfg, env={})


def test_unknown_profile_keys_are_rejected(tmp_path: Path) -> None:
    """Probe profiles only accept timeout and retry settings."""
    cfg = tmp_path / "stackctl.yml"
    cfg.write_text("probe:\n  fast:\n    timeout: 3\n", encoding="utf-8")

    with pytest.raises(ConfigError, match="probe.fast"):
        load_config(config_file=cfg, env={})


def test_invalid_port_range_is_rejected(tmp_path: Path) -> None:
    """The base port must lie below the maximum port."""
    with pytest.raises(ConfigError, match="ports.base"):
        load_config(
            config_file=tmp_path / "missing.yml",
            env={},
            overrides={"ports": {"base": 65535, "max": 65535}},
        )


def test_markers_must_be_distinct(tmp_path: Path) -> None:
    """Identical begin and end markers cannot delimit a region."""
    with pytest.raises(ConfigError, match="marker"):
        load_config(
            config_file=tmp_path / "missing.yml",
            env={},
            overrides={"proxy": {"begin_marker": "X", "end_marker": "X"}},
        )


def test_threshold_table_must_be_mapping(tmp_path: Path) -> None:
    """Scaling tables are keyed by account thresholds."""
    cfg = tmp_path / "stackctl.yml"
    cfg.write_text("autoscale:\n  accounts_over:\n    - media=1\n", encoding="utf-8")

    with pytest.raises(ConfigError, match="autoscale.accounts_over"):
        load_config(config_file=cfg, env={})


def test_config_must_be_mapping(tmp_path: Path) -> None:
    """A YAML list at the top level is rejected."""
    cfg = tmp_path / "stackctl.yml"
    cfg.write_text("- a\n- b\n", encoding="utf-8")

    with pytest.raises(ConfigError, match="mapping"):
        load_config(config_file=cfg, env={})
