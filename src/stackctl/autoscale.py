"""Threshold-based autoscaling of instance services.

An instance's desired scale lives in two places: the live orchestrator (while
the stack is deployed) and the instance ``.env`` file, which is what the stack
is deployed from on its next start. A run computes one
:class:`ServiceScaleSpec` per service mentioned by the threshold table, decides
which services need action under the chosen :class:`ScalePolicy` and then
updates both representations, appending an audit line to the instance
metadata for every service it changed.
"""
from __future__ import annotations

import logging
import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Protocol, cast

from .config import DEFAULT_SERVICE_ENV_VARS
from .instance_config import InstanceConfigError
from .instances import Instance, InstanceStore, metadata_timestamp

LOGGER = logging.getLogger(__name__)

DEFAULT_TABLE: dict[int, str] = {0: "media=1 redis-slave=1 server=1 client=1 autoupdate=1"}

_SCALING_TOKEN = re.compile(r"^\s*([a-zA-Z0-9-]+)=([0-9]+)\s*")


class AutoscaleError(RuntimeError):
    """Raised when an autoscale run cannot be planned or applied."""


class ScalingTableError(AutoscaleError):
    """Raised when a threshold table entry cannot be parsed."""


class ScalePolicy(str, Enum):
    """When a service whose target differs from its current scale is touched."""

    NORMAL = "normal"
    RESET = "reset"
    ALLOW_DOWNSCALE = "allow-downscale"

    def requires_action(self, current: int, target: int) -> bool:
        """Return ``True`` when *current* must be moved to *target*."""
        if self is ScalePolicy.NORMAL:
            return target > current
        return target != current


def parse_scalings(text: str) -> dict[str, int]:
    """Parse ``"svc=N svc=N"`` into a mapping."""
    remaining = text
    result: dict[str, int] = {}
    while True:
        match = _SCALING_TOKEN.match(remaining)
        if match is None:
            break
        result[match.group(1)] = int(match.group(2))
        remaining = remaining[match.end() :]
    if remaining.strip():
        raise ScalingTableError(f"scaling values could not be parsed, see: {remaining.strip()}")
    return result


@dataclass(frozen=True, slots=True)
class ThresholdTable:
    """Account thresholds mapped to per-service replica targets."""

    entries: tuple[tuple[int, Mapping[str, int]], ...]

    @classmethod
    def parse(cls, raw: Mapping[object, object] | None) -> ThresholdTable:
        """Build a table from configuration; empty or missing means the default."""
        source = raw if raw else cast(Mapping[object, object], DEFAULT_TABLE)
        entries: list[tuple[int, Mapping[str, int]]] = []
        for key, value in source.items():
            threshold = _parse_threshold(key)
            if isinstance(value, str):
                targets = parse_scalings(value)
            elif isinstance(value, Mapping):
                targets = {
                    str(service): _parse_replicas(service, count)
                    for service, count in value.items()
                }
            else:
                raise ScalingTableError(
                    f"Scaling entry for threshold {threshold} must be a string or mapping."
                )
            entries.append((threshold, targets))
        entries.sort(key=lambda item: item[0])
        return cls(entries=tuple(entries))

    def targets(self, accounts: int) -> dict[str, int]:
        """Return the merged targets of every threshold at or below *accounts*."""
        result: dict[str, int] = {}
        for threshold, targets in self.entries:
            if accounts >= threshold:
                result.update(targets)
        return result


def _parse_threshold(key: object) -> int:
    if isinstance(key, bool):
        raise ScalingTableError(f"Invalid threshold {key!r}.")
    if isinstance(key, int):
        value = key
    elif isinstance(key, str) and key.strip().isdigit():
        value = int(key.strip())
    else:
        raise ScalingTableError(f"Invalid threshold {key!r}; expected a non-negative integer.")
    if value < 0:
        raise ScalingTableError(f"Invalid threshold {key!r}; expected a non-negative integer.")
    return value


def _parse_replicas(service: object, value: object) -> int:
    if isinstance(value, int) and not isinstance(value, bool) and value >= 0:
        return value
    if isinstance(value, str) and value.strip().isdigit():
        return int(value.strip())
    raise ScalingTableError(f"scaling values could not be parsed, see: {service}={value}")


class ScalingOrchestrator(Protocol):
    """Orchestrator calls needed by the engine."""

    def current_replicas(self, stack: str) -> dict[str, tuple[int, int]]: ...

    def scale_command(self, stack: str, service: str, replicas: int) -> list[str]: ...

    def run(self, args: list[str]) -> object: ...


class DeploymentCheck(Protocol):
    """Answers whether an instance's stack is deployed."""

    def is_deployed(self, instance: Instance) -> bool: ...


@dataclass(slots=True)
class ServiceScaleSpec:
    """Scaling decision for one service."""

    service: str
    current: int
    target: int
    running: str
    env_var: str | None = None
    scale_command: list[str] | None = None
    act: bool = False


@dataclass(slots=True)
class ScaleReport:
    """Planned autoscale run for one instance."""

    instance: Instance
    accounts: int
    policy: ScalePolicy
    live: bool
    services: list[ServiceScaleSpec] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def actions(self) -> list[ServiceScaleSpec]:
        """Return the services that need action."""
        return [spec for spec in self.services if spec.act]

    @property
    def commands(self) -> list[list[str]]:
        """Return the staged orchestrator commands."""
        return [spec.scale_command for spec in self.actions if spec.scale_command]

    @property
    def env_updates(self) -> dict[str, int]:
        """Return the staged env-file writes."""
        return {spec.env_var: spec.target for spec in self.actions if spec.env_var}

    @property
    def action_required(self) -> bool:
        """Return ``True`` when there is anything to execute."""
        return bool(self.commands or self.env_updates)


@dataclass(slots=True)
class ScaleOutcome:
    """Result of applying a :class:`ScaleReport`."""

    dry_run: bool
    executed: list[list[str]] = field(default_factory=list)
    env_updates: dict[str, int] = field(default_factory=dict)
    changed: list[str] = field(default_factory=list)
    metadata_lines: list[str] = field(default_factory=list)


class AutoscaleEngine:
    """Plan and apply autoscale runs."""

    def __init__(
        self,
        store: InstanceStore,
        orchestrator: ScalingOrchestrator,
        resolver: DeploymentCheck,
        *,
        thresholds: ThresholdTable | None = None,
        reset_thresholds: ThresholdTable | None = None,
        service_env_vars: Mapping[str, str] | None = None,
    ) -> None:
        """Bind the engine to its collaborators and tables."""
        self.store = store
        self.orchestrator = orchestrator
        self.resolver = resolver
        self.thresholds = thresholds or ThresholdTable.parse(None)
        self.reset_thresholds = reset_thresholds or ThresholdTable.parse(None)
        self.service_env_vars = dict(
            DEFAULT_SERVICE_ENV_VARS if service_env_vars is None else service_env_vars
        )

    def resolve_accounts(self, instance: Instance, accounts: int | None = None) -> int:
        """Return *accounts*, falling back to the instance's ``ACCOUNTS:`` metadatum."""
        if accounts is None:
            accounts = instance.metadata.accounts()
            if accounts is None:
                raise AutoscaleError(f"ACCOUNTS metadatum not specified for {instance.name}.")
        if accounts < 0:
            raise AutoscaleError("Number of accounts must be non-negative.")
        return accounts

    def plan(
        self,
        instance: Instance,
        accounts: int | None = None,
        policy: ScalePolicy = ScalePolicy.NORMAL,
    ) -> ScaleReport:
        """Compute the scaling decision for every configured service."""
        accounts = self.resolve_accounts(instance, accounts)
        table = self.reset_thresholds if policy is ScalePolicy.RESET else self.thresholds
        targets = table.targets(accounts)

        stack = self._stack_name(instance)
        live = self.resolver.is_deployed(instance)
        live_replicas = self.orchestrator.current_replicas(stack) if live else {}
        env_values = instance.env

        report = ScaleReport(instance=instance, accounts=accounts, policy=policy, live=live)
        for service, target in targets.items():
            env_var = self.service_env_vars.get(service)
            if service in live_replicas:
                running, desired = live_replicas[service]
                current = desired
                display = f"{running}/{desired}"
            else:
                current = env_values.get_int(env_var) if env_var else 1
                display = str(current)

            spec = ServiceScaleSpec(
                service=service,
                current=current,
                target=target,
                running=display,
                env_var=env_var,
            )
            if policy.requires_action(current, target):
                spec.act = True
                if live:
                    spec.scale_command = self.orchestrator.scale_command(stack, service, target)
                if env_var is None:
                    report.warnings.append(
                        f"{service} is not configurable in env file, scale will not persist"
                    )
            report.services.append(spec)
        return report

    def apply(self, report: ScaleReport, *, dry_run: bool = False) -> ScaleOutcome:
        """Execute the staged commands and env writes of *report*."""
        outcome = ScaleOutcome(dry_run=dry_run)
        if not report.action_required:
            return outcome
        if dry_run:
            outcome.executed = report.commands
            outcome.env_updates = report.env_updates
            return outcome

        for spec in report.actions:
            if spec.scale_command:
                LOGGER.debug("Scaling %s: %s", spec.service, " ".join(spec.scale_command))
                self.orchestrator.run(spec.scale_command)
                outcome.executed.append(spec.scale_command)
        env_updates = report.env_updates
        if env_updates:
            report.instance.env.update(env_updates)
            outcome.env_updates = env_updates

        timestamp = metadata_timestamp()
        for spec in report.actions:
            if spec.scale_command or spec.env_var:
                outcome.changed.append(spec.service)
                outcome.metadata_lines.append(
                    f"{timestamp}: Autoscaled {spec.service} from {spec.current} to {spec.target}"
                )
        if outcome.metadata_lines:
            report.instance.metadata.append(*outcome.metadata_lines)
        return outcome

    def autoscale(
        self,
        instance: Instance,
        accounts: int | None = None,
        policy: ScalePolicy = ScalePolicy.NORMAL,
        *,
        dry_run: bool = False,
    ) -> tuple[ScaleReport, ScaleOutcome]:
        """Plan and apply in one step."""
        report = self.plan(instance, accounts, policy)
        return report, self.apply(report, dry_run=dry_run)

    # ------------------------------------------------------------------
    def _stack_name(self, instance: Instance) -> str:
        try:
            return self.store.document(instance).stack_name or instance.stack_name
        except InstanceConfigError:
            return instance.stack_name


__all__ = [
    "AutoscaleEngine",
    "AutoscaleError",
    "DEFAULT_TABLE",
    "ScaleOutcome",
    "ScalePolicy",
    "ScaleReport",
    "ScalingTableError",
    "ServiceScaleSpec",
    "ThresholdTable",
    "parse_scalings",
]
