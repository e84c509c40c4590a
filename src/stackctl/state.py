"""Health-state derivation for a single instance.

The state is computed from two cheap signals (is the instance's port
reachable, does the health endpoint report ``running``) and one orchestrator
fact (is the stack still declared). Nothing here is cached; every call
re-probes.
"""
from __future__ import annotations

import logging
from collections import Counter
from collections.abc import Iterable
from dataclasses import dataclass
from enum import Enum
from typing import Protocol

from .instance_config import InstanceConfigDocument, InstanceConfigError
from .instances import Instance, InstanceStore
from .probe import Probe, ProbeProfile

LOGGER = logging.getLogger(__name__)

SKIPPED_VERSION = "[skipped]"
IGNORED_IMAGES = frozenset({"redis:latest"})


class HealthState(str, Enum):
    """Classification of an instance at query time."""

    NORMAL = "normal"
    ERROR = "error"
    UNKNOWN = "unknown"
    STOPPED = "stopped"

    @property
    def symbol(self) -> str:
        """Return the two-character listing symbol."""
        return _SYMBOLS[self]


_SYMBOLS = {
    HealthState.NORMAL: "OK",
    HealthState.ERROR: "XX",
    HealthState.UNKNOWN: "??",
    HealthState.STOPPED: "__",
}


class DeploymentFacts(Protocol):
    """Orchestrator queries the resolver depends on."""

    def list_deployed_names(self) -> list[str]: ...

    def reported_images(self, stack: str) -> list[str]: ...


@dataclass(frozen=True, slots=True)
class InstanceState:
    """Resolved state of one instance."""

    state: HealthState
    version: str = ""
    port: int | None = None
    stack_name: str | None = None


def summarize_versions(images: Iterable[str]) -> str:
    """Condense reported image references into a version summary.

    A single tag is returned as-is. Several tags produce
    ``tagA(3)/tagB(1) [<registries>:<tags>]`` ordered by descending count.
    """
    counts: Counter[str] = Counter()
    registries: set[str] = set()
    for image in images:
        image = image.strip()
        if not image or image in IGNORED_IMAGES:
            continue
        repository, tag = _split_image(image)
        counts[tag] += 1
        if "/" in repository:
            registries.add(repository.rsplit("/", 1)[0])
    if not counts:
        return ""
    ordered = sorted(counts.items(), key=lambda item: (-item[1], item[0]))
    if len(ordered) == 1:
        return ordered[0][0]
    summary = "/".join(f"{tag}({count})" for tag, count in ordered)
    tags = ",".join(tag for tag, _ in ordered)
    return f"{summary} [{','.join(sorted(registries))}:{tags}]"


def _split_image(image: str) -> tuple[str, str]:
    reference = image.split("@", 1)[0]
    repository, sep, tag = reference.rpartition(":")
    if not sep or "/" in tag:
        return reference, "latest"
    return repository, tag


class StateResolver:
    """Classify instances into :class:`HealthState` values."""

    def __init__(
        self,
        orchestrator: DeploymentFacts,
        probe: Probe | None = None,
        *,
        store: InstanceStore | None = None,
    ) -> None:
        """Bind the resolver to its orchestrator and probe."""
        self.orchestrator = orchestrator
        self.probe = probe or Probe()
        self.store = store

    def is_deployed(self, instance: Instance | str) -> bool:
        """Return ``True`` when the orchestrator lists the instance's stack."""
        if isinstance(instance, str):
            stack = instance
        else:
            stack = self._stack_name(instance, self._document(instance))
        return stack in self.orchestrator.list_deployed_names()

    def resolve(self, instance: Instance, profile: ProbeProfile) -> InstanceState:
        """Return the current state of *instance* probed with *profile*."""
        document = self._document(instance)
        port = document.port if document is not None else None
        stack = self._stack_name(instance, document)
        if port is None:
            return InstanceState(HealthState.UNKNOWN, port=None, stack_name=stack)

        if not self.probe.reachable(port, profile):
            if not profile.skip_health and self.is_deployed(stack):
                return InstanceState(HealthState.ERROR, port=port, stack_name=stack)
            return InstanceState(HealthState.STOPPED, port=port, stack_name=stack)

        if profile.skip_health:
            return InstanceState(
                HealthState.NORMAL, version=SKIPPED_VERSION, port=port, stack_name=stack
            )

        state = HealthState.NORMAL
        if not self.probe.healthy(port, profile):
            state = HealthState.ERROR
        version = summarize_versions(self.orchestrator.reported_images(stack))
        return InstanceState(state, version=version, port=port, stack_name=stack)

    # ------------------------------------------------------------------
    def _document(self, instance: Instance) -> InstanceConfigDocument | None:
        try:
            if self.store is not None:
                return self.store.document(instance)
            return InstanceConfigDocument.load(instance.config_file)
        except InstanceConfigError as exc:
            LOGGER.debug("Cannot read configuration of %s: %s", instance.name, exc)
            return None

    @staticmethod
    def _stack_name(instance: Instance, document: InstanceConfigDocument | None) -> str:
        if document is None:
            return instance.stack_name
        return document.stack_name or instance.stack_name


__all__ = [
    "HealthState",
    "InstanceState",
    "SKIPPED_VERSION",
    "StateResolver",
    "summarize_versions",
]
