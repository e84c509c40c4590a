"""Tests for fleet selection, collection and rendering."""
from __future__ import annotations

from pathlib import Path

import pytest

from stackctl.instances import Instance, InstanceStore
from stackctl.lister import (
    FleetLister,
    ListingPatternError,
    ListingRecord,
    StateFilter,
    render_flat,
    render_json,
    render_long,
    shorten,
)
from stackctl.probe import FAST_PROFILE, ProbeProfile
from stackctl.state import HealthState, InstanceState

STACK_FILE = """services:
  backend:
    image: reg.example/os/backend:4.0.15
  client:
    image: reg.example/os/client:4.0.15
"""


class ScriptedResolver:
    """Resolver returning canned states per instance name."""

    def __init__(self, states: dict[str, InstanceState], failing: set[str] | None = None) -> None:
        """Store the canned states."""
        self.states = states
        self.failing = failing or set()

    def resolve(self, instance: Instance, profile: ProbeProfile) -> InstanceState:
        """Return the canned state or fail for *failing* names."""
        if instance.name in self.failing:
            raise RuntimeError("probe exploded")
        return self.states[instance.name]


def _make_instance(root: Path, name: str, *, port: int, metadata: str = "") -> Instance:
    directory = root / name
    (directory / "secrets").mkdir(parents=True)
    (directory / "config.yml").write_text(
        f"port: {port}\nmanagementToolHash: abc123\n", encoding="utf-8"
    )
    (directory / "docker-stack.yml").write_text(STACK_FILE, encoding="utf-8")
    if metadata:
        (directory / "metadata.txt").write_text(metadata, encoding="utf-8")
    return Instance.from_directory(directory)


@pytest.fixture
def fleet(tmp_path: Path) -> InstanceStore:
    """Create three instances below *tmp_path*."""
    _make_instance(
        tmp_path,
        "alpha.org",
        port=61001,
        metadata="2024-01-01 10:00: Instance created (stack)\n# hidden\nACCOUNTS: 100\n",
    )
    _make_instance(tmp_path, "beta.org", port=61002, metadata="customer: ACME Corporation\n")
    _make_instance(tmp_path, "gamma.net", port=61003)
    (tmp_path / "alpha.org" / "secrets" / "superadmin").write_text("s3cret\n", encoding="utf-8")
    (tmp_path / "alpha.org" / "secrets" / "user.yml").write_text(
        "first_name: Ada\nlast_name: Lovelace\ndefault_password: pw\nemail: ada@example.org\n",
        encoding="utf-8",
    )
    return InstanceStore(tmp_path)


def _states() -> dict[str, InstanceState]:
    return {
        "alpha.org": InstanceState(HealthState.NORMAL, "4.0.15", 61001, "alphaorg"),
        "beta.org": InstanceState(HealthState.STOPPED, "", 61002, "betaorg"),
        "gamma.net": InstanceState(HealthState.ERROR, "4.0.14", 61003, "gammanet"),
    }


def test_select_by_name_pattern(fleet: InstanceStore) -> None:
    """Patterns match names case-insensitively."""
    lister = FleetLister(fleet, ScriptedResolver(_states()), FAST_PROFILE)  # type: ignore[arg-type]

    assert [i.name for i in lister.select()] == ["alpha.org", "beta.org", "gamma.net"]
    assert [i.name for i in lister.select("ORG$")] == ["alpha.org", "beta.org"]
    assert [i.name for i in lister.select("acme")] == []
    assert [i.name for i in lister.select("acme", search_metadata=True)] == ["beta.org"]


def test_select_rejects_invalid_regex(fleet: InstanceStore) -> None:
    """An invalid regular expression is a usage error."""
    lister = FleetLister(fleet, ScriptedResolver(_states()), FAST_PROFILE)  # type: ignore[arg-type]

    with pytest.raises(ListingPatternError, match="Invalid search pattern"):
        lister.select("([")


@pytest.mark.parametrize("parallel", [True, False])
def test_collect_preserves_order_and_isolates_failures(
    fleet: InstanceStore, parallel: bool
) -> None:
    """A failing instance becomes an unknown record; order follows names."""
    resolver = ScriptedResolver(_states(), failing={"beta.org"})
    lister = FleetLister(
        fleet, resolver, FAST_PROFILE, parallel=parallel, max_workers=3  # type: ignore[arg-type]
    )

    records = lister.collect(lister.select())

    assert [record.name for record in records] == ["alpha.org", "beta.org", "gamma.net"]
    assert records[1].state is HealthState.UNKNOWN
    assert records[1].error == "probe exploded"
    assert records[0].first_metadata == "2024-01-01 10:00: Instance cre…"


def test_collect_filters_state_and_version(fleet: InstanceStore) -> None:
    """State and version filters narrow the result."""
    lister = FleetLister(fleet, ScriptedResolver(_states()), FAST_PROFILE)  # type: ignore[arg-type]
    instances = lister.select()

    assert [r.name for r in lister.collect(instances, state_filter=StateFilter.ONLINE)] == [
        "alpha.org"
    ]
    assert [r.name for r in lister.collect(instances, state_filter=StateFilter.STOPPED)] == [
        "beta.org"
    ]
    assert [r.name for r in lister.collect(instances, state_filter=StateFilter.ERROR)] == [
        "gamma.net"
    ]
    assert [r.name for r in lister.collect(instances, version="4.0.15")] == ["alpha.org"]


def test_version_filter_only_matches_online_instances(fleet: InstanceStore) -> None:
    """An erroring instance reporting the version is not listed as running it."""
    lister = FleetLister(fleet, ScriptedResolver(_states()), FAST_PROFILE)  # type: ignore[arg-type]
    instances = lister.select()

    assert lister.collect(instances, version="4.0.14") == []
    assert lister.collect(instances, state_filter=StateFilter.ERROR, version="4.0.14") == []


def test_collect_details(fleet: InstanceStore) -> None:
    """Detailed records carry versions, secrets and metadata."""
    lister = FleetLister(fleet, ScriptedResolver(_states()), FAST_PROFILE)  # type: ignore[arg-type]

    record = lister.collect(lister.select("alpha"), details=True)[0]

    assert record.versions == {
        "backend": "reg.example/os/backend:4.0.15",
        "client": "reg.example/os/client:4.0.15",
        "management-tool": "abc123",
    }
    assert record.superadmin == "s3cret"
    assert record.user.user_name == "Ada Lovelace"
    assert record.user.user_email == "ada@example.org"
    assert record.metadata == ["2024-01-01 10:00: Instance created (stack)", "ACCOUNTS: 100"]


def test_shorten() -> None:
    """Long text is cut and marked."""
    assert shorten("short") == "short"
    assert shorten("x" * 31) == "x" * 30 + "…"


def test_render_flat_aligns_columns(tmp_path: Path) -> None:
    """Flat rows carry symbol, padded name, version and first metadata line."""
    records = [
        ListingRecord("a.org", tmp_path, HealthState.NORMAL, "4.0.15", first_metadata="note"),
        ListingRecord("b.org", tmp_path, HealthState.STOPPED),
    ]

    rows = render_flat(records)

    assert rows[0] == f"OK {'a.org':<30} {'4.0.15':<10} note"
    assert rows[1] == "__ b.org"
    assert render_flat([]) == []


def test_render_long_sections(tmp_path: Path) -> None:
    """The long view starts with the header and nests versions and metadata."""
    record = ListingRecord(
        "a.org",
        tmp_path / "a.org",
        HealthState.ERROR,
        stack_name="aorg",
        port=61001,
        versions={"backend": "img:1"},
        metadata=["first", "second"],
    )

    rows = render_long(record, long=True, metadata=True, indent="")

    assert rows[0] == "XX a.org"
    assert any(row.startswith("├ Local port:") and row.endswith("61001") for row in rows)
    assert any("└ backend:" in row for row in rows)
    assert rows[-2:] == ["  ┆ first", "  ┆ second"]


def test_render_json_document(tmp_path: Path) -> None:
    """JSON output uses symbols as status and underscores in version keys."""
    record = ListingRecord(
        "a.org",
        tmp_path,
        HealthState.NORMAL,
        "4.0.15",
        stack_name="aorg",
        port=61001,
        metadata=["one", "two"],
        versions={"redis-slave": "redis:7"},
    )

    document = render_json([record])

    entry = document["instances"][0]
    assert entry["status"] == "OK"
    assert entry["port"] == 61001
    assert entry["metadata"] == "one\ntwo"
    assert entry["versions"] == {"redis_slave": "redis:7"}
    assert entry["superadmin"] == "—"
