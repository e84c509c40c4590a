"""Fleet listing: selection, parallel state resolution and rendering."""
from __future__ import annotations

import concurrent.futures
import logging
import re
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

import yaml

from .instance_config import InstanceConfigError
from .instances import Instance, InstanceStore
from .probe import ProbeProfile
from .state import HealthState, InstanceState, StateResolver
from .tree import BranchAction, TreeRenderer

LOGGER = logging.getLogger(__name__)

ADMIN_SECRETS_FILE = "superadmin"
USER_SECRETS_FILE = "user.yml"
MISSING_SECRET = "—"
FIRST_LINE_WIDTH = 30
MANAGEMENT_TOOL_KEY = "management-tool"


class ListingPatternError(ValueError):
    """Raised when the search pattern is not a valid regular expression."""


class StateFilter(str, Enum):
    """State filters offered by the listing."""

    ONLINE = "online"
    STOPPED = "stopped"
    ERROR = "error"

    def matches(self, state: HealthState) -> bool:
        """Return ``True`` when *state* passes the filter."""
        if self is StateFilter.ONLINE:
            return state is HealthState.NORMAL
        if self is StateFilter.STOPPED:
            return state is HealthState.STOPPED
        return state in (HealthState.ERROR, HealthState.UNKNOWN)


@dataclass(slots=True)
class UserAccount:
    """Secondary account stored in ``secrets/user.yml``."""

    user_name: str = ""
    user_password: str = ""
    user_email: str = ""


@dataclass(slots=True)
class ListingRecord:
    """Self-contained result for one listed instance."""

    name: str
    directory: Path
    state: HealthState
    version: str = ""
    stack_name: str = ""
    port: int | None = None
    first_metadata: str = ""
    metadata: list[str] = field(default_factory=list)
    versions: dict[str, str] = field(default_factory=dict)
    superadmin: str = MISSING_SECRET
    user: UserAccount = field(default_factory=UserAccount)
    error: str | None = None

    @property
    def symbol(self) -> str:
        """Return the listing symbol of the record's state."""
        return self.state.symbol

    def to_dict(self) -> dict[str, Any]:
        """Return the JSON representation of the record."""
        return {
            "name": self.name,
            "stackname": self.stack_name,
            "directory": str(self.directory),
            "version": self.version,
            "status": self.symbol,
            "port": self.port,
            "superadmin": self.superadmin,
            "user": {
                "user_name": self.user.user_name,
                "user_password": self.user.user_password,
                "user_email": self.user.user_email,
            },
            "metadata": "\n".join(self.metadata),
            "versions": {
                key.replace("-", "_"): value for key, value in sorted(self.versions.items())
            },
        }


def shorten(text: str, width: int = FIRST_LINE_WIDTH) -> str:
    """Cut *text* to *width* characters, marking the cut with an ellipsis."""
    if len(text) <= width:
        return text
    return f"{text[:width]}…"


class FleetLister:
    """Enumerate instances and resolve their states."""

    def __init__(
        self,
        store: InstanceStore,
        resolver: StateResolver,
        profile: ProbeProfile,
        *,
        parallel: bool = True,
        max_workers: int = 8,
    ) -> None:
        """Bind the lister to the fleet and the probe profile."""
        self.store = store
        self.resolver = resolver
        self.profile = profile
        self.parallel = parallel
        self.max_workers = max(1, max_workers)

    def select(
        self, pattern: str | None = None, *, search_metadata: bool = False
    ) -> list[Instance]:
        """Return valid instances whose name (or metadata) matches *pattern*."""
        if not pattern:
            return list(self.store.iter_instances())
        try:
            regex = re.compile(pattern, re.IGNORECASE)
        except re.error as exc:
            raise ListingPatternError(f"Invalid search pattern '{pattern}': {exc}") from exc
        selected: list[Instance] = []
        for instance in self.store.iter_instances():
            if regex.search(instance.name):
                selected.append(instance)
            elif search_metadata and regex.search(instance.metadata.text()):
                selected.append(instance)
        return selected

    def collect(
        self,
        instances: Sequence[Instance],
        *,
        state_filter: StateFilter | None = None,
        version: str | None = None,
        details: bool = False,
    ) -> list[ListingRecord]:
        """Resolve *instances* and return their records in input order.

        Filtering on a running *version* implies the online state filter.
        """
        if not instances:
            return []
        workers = min(self.max_workers, len(instances))
        if not self.parallel or workers == 1:
            records = [self._safe_record(instance, details) for instance in instances]
        else:
            slots: list[ListingRecord | None] = [None] * len(instances)
            with concurrent.futures.ThreadPoolExecutor(max_workers=workers) as executor:
                future_to_index: dict[concurrent.futures.Future[ListingRecord], int] = {}
                for index, instance in enumerate(instances):
                    future = executor.submit(self._safe_record, instance, details)
                    future_to_index[future] = index
                for future in concurrent.futures.as_completed(future_to_index):
                    slots[future_to_index[future]] = future.result()
            records = [record for record in slots if record is not None]

        if version:
            state_filter = StateFilter.ONLINE
            records = [record for record in records if record.version == version]
        if state_filter is not None:
            records = [record for record in records if state_filter.matches(record.state)]
        return records

    # ------------------------------------------------------------------
    def _safe_record(self, instance: Instance, details: bool) -> ListingRecord:
        try:
            return self._record(instance, details)
        except Exception as exc:  # noqa: BLE001 - one instance must not abort the listing
            LOGGER.warning("Failed to resolve %s: %s", instance.name, exc)
            return ListingRecord(
                name=instance.name,
                directory=instance.directory,
                state=HealthState.UNKNOWN,
                stack_name=instance.stack_name,
                error=str(exc),
            )

    def _record(self, instance: Instance, details: bool) -> ListingRecord:
        resolved: InstanceState = self.resolver.resolve(instance, self.profile)
        record = ListingRecord(
            name=instance.name,
            directory=instance.directory,
            state=resolved.state,
            version=resolved.version,
            stack_name=resolved.stack_name or instance.stack_name,
            port=resolved.port,
            first_metadata=shorten(instance.metadata.first_line()),
        )
        if details:
            record.metadata = instance.metadata.lines(include_comments=False)
            record.versions = self._service_versions(instance)
            record.superadmin = _read_admin_secret(instance)
            record.user = _read_user_account(instance)
        return record

    def _service_versions(self, instance: Instance) -> dict[str, str]:
        versions: dict[str, str] = {}
        try:
            data = yaml.safe_load(instance.stack_file.read_text(encoding="utf-8")) or {}
        except (OSError, yaml.YAMLError) as exc:
            LOGGER.debug("Cannot read stack file of %s: %s", instance.name, exc)
            data = {}
        services = data.get("services") if isinstance(data, dict) else None
        if isinstance(services, dict):
            for service, definition in services.items():
                if isinstance(definition, dict) and definition.get("image"):
                    versions[str(service)] = str(definition["image"])
        try:
            tool_hash = self.store.document(instance).management_tool_hash
        except InstanceConfigError:
            tool_hash = None
        if tool_hash:
            versions[MANAGEMENT_TOOL_KEY] = tool_hash
        return versions


def _read_admin_secret(instance: Instance) -> str:
    path = instance.secrets_dir / ADMIN_SECRETS_FILE
    try:
        lines = path.read_text(encoding="utf-8").splitlines()
    except OSError:
        return MISSING_SECRET
    return lines[0].strip() if lines and lines[0].strip() else MISSING_SECRET


def _read_user_account(instance: Instance) -> UserAccount:
    path = instance.secrets_dir / USER_SECRETS_FILE
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8"))
    except (OSError, yaml.YAMLError):
        return UserAccount()
    if not isinstance(data, dict):
        return UserAccount()
    first = str(data.get("first_name") or "")
    last = str(data.get("last_name") or "")
    return UserAccount(
        user_name=f"{first} {last}" if first and last else "",
        user_password=str(data.get("default_password") or ""),
        user_email=str(data.get("email") or ""),
    )


# Renderers ---------------------------------------------------------------
def render_flat(records: Iterable[ListingRecord]) -> list[str]:
    """Return one ``symbol name version first-metadata-line`` row per record."""
    rows = list(records)
    if not rows:
        return []
    name_width = max(30, *(len(record.name) for record in rows))
    version_width = max(10, *(len(record.version) for record in rows))
    return [
        f"{record.symbol} {record.name:<{name_width}} {record.version:<{version_width}} "
        f"{record.first_metadata}".rstrip()
        for record in rows
    ]


def render_long(
    record: ListingRecord,
    *,
    long: bool = True,
    secrets: bool = False,
    metadata: bool = False,
    indent: str = "   ",
) -> list[str]:
    """Return the detailed tree view of *record*."""
    tree = TreeRenderer(indent=indent)
    if long:
        tree.node("Directory:", record.directory)
        if record.stack_name:
            tree.node("Stack name:", record.stack_name)
        tree.node("Local port:", "" if record.port is None else record.port)
        tree.node("Versions:")
        if record.versions:
            tree.branch(BranchAction.CREATE)
            for service, image in sorted(record.versions.items()):
                tree.node(f"{service}:", image)
            tree.branch(BranchAction.CLOSE)
    if secrets:
        tree.node("Login:", f"superadmin : {record.superadmin}")
        if record.user.user_name:
            tree.node("Login:", f'"{record.user.user_name}" : {record.user.user_password}')
        if record.user.user_email:
            tree.node("Contact:", record.user.user_email)
    if metadata and record.metadata:
        tree.node("Metadata:")
        tree.branch(BranchAction.CREATE)
        for line in record.metadata:
            tree.body(line)
        tree.branch(BranchAction.CLOSE)
    return [f"{record.symbol} {record.name}", *tree.render()]


def render_json(records: Iterable[ListingRecord]) -> dict[str, Any]:
    """Return the JSON document for *records*."""
    return {"instances": [record.to_dict() for record in records]}


__all__ = [
    "FleetLister",
    "ListingPatternError",
    "ListingRecord",
    "StateFilter",
    "UserAccount",
    "render_flat",
    "render_json",
    "render_long",
    "shorten",
]
