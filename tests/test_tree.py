"""Tests for the tree formatter used by long listings."""
from __future__ import annotations

import pytest
from rich.console import Console

from stackctl.tree import BranchAction, TreeRenderer


def test_flat_nodes_use_last_glyph_for_final_node() -> None:
    """Siblings use the branch glyph except for the last one."""
    tree = TreeRenderer(indent="")
    tree.node("Directory:", "/srv/a")
    tree.node("Local port:", 61001)

    assert tree.render() == [
        "├ Directory:        /srv/a",
        "└ Local port:       61001",
    ]


def test_nested_branch_continues_parent_column() -> None:
    """Children of a non-final node show the continuation column."""
    tree = TreeRenderer(indent="  ")
    tree.node("Versions:")
    tree.branch(BranchAction.CREATE)
    tree.node("backend:", "4.0.15")
    tree.node("client:", "4.0.15")
    tree.branch(BranchAction.CLOSE)
    tree.node("Login:", "superadmin : secret")

    assert tree.render() == [
        "  ├ Versions:",
        "  │  ├ backend:          4.0.15",
        "  │  └ client:           4.0.15",
        "  └ Login:            superadmin : secret",
    ]


def test_body_rows_under_final_node() -> None:
    """Body rows below the last node are indented without a continuation bar."""
    tree = TreeRenderer(indent="")
    tree.node("Metadata:")
    tree.branch("create")
    tree.body("2024-01-01 10:00: Instance created (stack)")
    tree.body("ACCOUNTS: 100")
    tree.branch("close")

    assert tree.render() == [
        "└ Metadata:",
        "  ┆ 2024-01-01 10:00: Instance created (stack)",
        "  ┆ ACCOUNTS: 100",
    ]


def test_body_rows_align_under_parent_header() -> None:
    """With the default indent, metadata text starts two columns after the parent glyph."""
    tree = TreeRenderer()
    tree.node("Metadata:")
    tree.branch(BranchAction.CREATE)
    tree.body("text")
    tree.branch(BranchAction.CLOSE)

    assert tree.render() == ["   └ Metadata:", "     ┆ text"]


def test_closing_root_branch_is_error() -> None:
    """Closing more branches than were opened is a programming error."""
    with pytest.raises(ValueError, match="No open branch"):
        TreeRenderer().branch(BranchAction.CLOSE)


def test_print_flushes_buffer() -> None:
    """Printing emits every row and resets the renderer."""
    console = Console(record=True, width=120)
    tree = TreeRenderer(indent="")
    tree.node("Stack name:", "[exampleorg]")

    tree.print(console)

    assert console.export_text() == "└ Stack name:       [exampleorg]\n"
    assert tree.render() == []


def test_sample_renders_identically_after_reset() -> None:
    """A nested sample renders three rows regardless of prior resets."""

    def sample(tree: TreeRenderer) -> list[str]:
        tree.node("A", "1")
        tree.branch(BranchAction.CREATE)
        tree.node("B", "2")
        tree.branch(BranchAction.CLOSE)
        tree.node("C", "3")
        return tree.render()

    fresh = sample(TreeRenderer(indent=""))
    reused = TreeRenderer(indent="")
    reused.node("stale", "row")
    reused.branch(BranchAction.CREATE)
    reused.reset()
    reused.reset()

    assert fresh == [
        "├ A                 1",
        "│  └ B                 2",
        "└ C                 3",
    ]
    assert sample(reused) == fresh
