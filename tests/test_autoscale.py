"""Tests for threshold-based autoscaling."""
from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path

import pytest

from stackctl.autoscale import (
    AutoscaleEngine,
    AutoscaleError,
    ScalePolicy,
    ScalingTableError,
    ThresholdTable,
    parse_scalings,
)
from stackctl.instances import Instance, InstanceStore

TABLE = {0: "media=1 server=1 client=1", 100: "server=2"}


@dataclass
class FakeOrchestrator:
    """Orchestrator keeping replicas in memory."""

    replicas: dict[str, tuple[int, int]] = field(default_factory=dict)
    executed: list[list[str]] = field(default_factory=list)

    def current_replicas(self, stack: str) -> dict[str, tuple[int, int]]:
        """Return the scripted live replicas."""
        return dict(self.replicas)

    def scale_command(self, stack: str, service: str, replicas: int) -> list[str]:
        """Return the docker argv for a scale."""
        return ["docker", "service", "scale", f"{stack}_{service}={replicas}"]

    def run(self, args: list[str]) -> None:
        """Record an executed command."""
        self.executed.append(list(args))


@dataclass
class FakeDeployment:
    """Deployment check with a fixed answer."""

    deployed: bool = False

    def is_deployed(self, instance: Instance) -> bool:
        """Return the scripted answer."""
        return self.deployed


def _instance(root: Path, metadata: str | None = None) -> Instance:
    directory = root / "example.org"
    directory.mkdir(parents=True)
    (directory / "config.yml").write_text("port: 61001\n", encoding="utf-8")
    (directory / "docker-stack.yml").write_text("services: {}\n", encoding="utf-8")
    if metadata is not None:
        (directory / "metadata.txt").write_text(metadata, encoding="utf-8")
    return Instance.from_directory(directory)


def _engine(
    root: Path,
    orchestrator: FakeOrchestrator,
    *,
    deployed: bool,
    table: dict[int, str] | None = None,
) -> AutoscaleEngine:
    return AutoscaleEngine(
        InstanceStore(root),
        orchestrator,
        FakeDeployment(deployed),
        thresholds=ThresholdTable.parse(table or TABLE),
        reset_thresholds=ThresholdTable.parse({0: "media=1 server=1 client=1"}),
    )


def test_parse_scalings() -> None:
    """Scaling strings map services to replica counts."""
    assert parse_scalings(" media=1  redis-slave=2 ") == {"media": 1, "redis-slave": 2}
    with pytest.raises(ScalingTableError, match="could not be parsed"):
        parse_scalings("media=1 server=two")


def test_threshold_targets_merge_in_ascending_order() -> None:
    """Later thresholds override the services they mention."""
    table = ThresholdTable.parse({"100": {"server": 2}, 0: "media=1 server=1 client=1"})

    assert table.targets(150) == {"media": 1, "server": 2, "client": 1}
    assert table.targets(99) == {"media": 1, "server": 1, "client": 1}


def test_default_table_when_unconfigured() -> None:
    """A missing table falls back to one replica for every default service."""
    assert ThresholdTable.parse(None).targets(0) == {
        "media": 1,
        "redis-slave": 1,
        "server": 1,
        "client": 1,
        "autoupdate": 1,
    }


@pytest.mark.parametrize(
    "raw", [{-1: "media=1"}, {"many": "media=1"}, {0: ["media"]}, {0: {"media": "x"}}]
)
def test_invalid_tables_are_rejected(raw: dict[object, object]) -> None:
    """Bad thresholds or values raise a table error."""
    with pytest.raises(ScalingTableError):
        ThresholdTable.parse(raw)


def test_upscale_only_keeps_larger_live_scale(tmp_path: Path) -> None:
    """Under the normal policy a service above its target is left alone."""
    instance = _instance(tmp_path)
    orchestrator = FakeOrchestrator(replicas={"media": (1, 1), "server": (3, 3), "client": (1, 1)})
    engine = _engine(tmp_path, orchestrator, deployed=True)

    report = engine.plan(instance, 150)

    targets = {spec.service: spec.target for spec in report.services}
    assert targets == {"media": 1, "server": 2, "client": 1}
    assert report.action_required is False
    assert engine.apply(report).changed == []
    assert orchestrator.executed == []


def test_reset_brings_service_back_down(tmp_path: Path) -> None:
    """The reset policy uses the reset table and acts on any difference."""
    instance = _instance(tmp_path)
    orchestrator = FakeOrchestrator(replicas={"media": (1, 1), "server": (3, 3), "client": (1, 1)})
    engine = _engine(tmp_path, orchestrator, deployed=True)

    report, outcome = engine.autoscale(instance, 150, ScalePolicy.RESET)

    assert report.commands == [["docker", "service", "scale", "exampleorg_server=1"]]
    assert report.env_updates == {"OPENSLIDES_BACKEND_SERVICE_REPLICAS": 1}
    assert orchestrator.executed == report.commands
    assert outcome.changed == ["server"]
    assert instance.env.get_int("OPENSLIDES_BACKEND_SERVICE_REPLICAS") == 1
    assert instance.metadata.lines()[-1].endswith(": Autoscaled server from 3 to 1")


def test_allow_downscale_scales_live_service(tmp_path: Path) -> None:
    """Allowing downscale moves a larger live scale to the target."""
    instance = _instance(tmp_path)
    orchestrator = FakeOrchestrator(replicas={"media": (1, 1), "server": (2, 3), "client": (1, 1)})
    engine = _engine(tmp_path, orchestrator, deployed=True)

    report = engine.plan(instance, 150, ScalePolicy.ALLOW_DOWNSCALE)

    server = next(spec for spec in report.services if spec.service == "server")
    assert server.running == "2/3"
    assert server.current == 3
    assert report.commands == [["docker", "service", "scale", "exampleorg_server=2"]]


def test_offline_instance_updates_env_file_only(tmp_path: Path) -> None:
    """A stopped instance is scaled through its env file."""
    instance = _instance(tmp_path, metadata="Instance created\nACCOUNTS: 150\n")
    instance.env.path.write_text("OTHER=1\n", encoding="utf-8")
    orchestrator = FakeOrchestrator()
    engine = _engine(tmp_path, orchestrator, deployed=False)

    report, outcome = engine.autoscale(instance)

    assert report.accounts == 150
    assert report.live is False
    assert report.commands == []
    assert outcome.env_updates == {"OPENSLIDES_BACKEND_SERVICE_REPLICAS": 2}
    assert instance.env.read() == {"OTHER": "1", "OPENSLIDES_BACKEND_SERVICE_REPLICAS": "2"}
    assert orchestrator.executed == []
    assert len(outcome.metadata_lines) == 1


def test_dry_run_changes_nothing(tmp_path: Path) -> None:
    """Dry runs report the staged work without executing it."""
    instance = _instance(tmp_path)
    orchestrator = FakeOrchestrator(replicas={"media": (1, 1), "server": (1, 1), "client": (1, 1)})
    engine = _engine(tmp_path, orchestrator, deployed=True)

    report, outcome = engine.autoscale(instance, 150, dry_run=True)

    assert outcome.dry_run is True
    assert outcome.executed == [["docker", "service", "scale", "exampleorg_server=2"]]
    assert orchestrator.executed == []
    assert not instance.env.exists()
    assert not instance.metadata.exists()
    assert report.action_required is True


def test_unmapped_service_warns_only_when_acting(tmp_path: Path) -> None:
    """Services without an env var cannot persist their scale."""
    instance = _instance(tmp_path)
    engine = _engine(
        tmp_path, FakeOrchestrator(), deployed=False, table={0: "worker=2 media=1"}
    )

    report = engine.plan(instance, 10)

    assert report.warnings == ["worker is not configurable in env file, scale will not persist"]
    assert report.env_updates == {}


def test_missing_accounts_is_error(tmp_path: Path) -> None:
    """Without an argument or metadatum the account count is unknown."""
    instance = _instance(tmp_path, metadata="Instance created\n")
    engine = _engine(tmp_path, FakeOrchestrator(), deployed=False)

    with pytest.raises(AutoscaleError, match="ACCOUNTS metadatum not specified"):
        engine.plan(instance)
