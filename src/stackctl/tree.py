"""Indented tree formatter used by the long instance listing."""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from rich.console import Console

HEADER_WIDTH = 17
GLYPH_BRANCH = "├"
GLYPH_LAST = "└"
GLYPH_BODY = "┆"
GLYPH_CONTINUE = "│  "
GLYPH_EMPTY = "   "


class BranchAction(str, Enum):
    """Open or close a nesting level."""

    CREATE = "create"
    CLOSE = "close"


@dataclass(frozen=True, slots=True)
class _Entry:
    depth: int
    is_node: bool
    header: str
    value: str


class TreeRenderer:
    """Accumulate nodes and body lines, then render them as a tree.

    A node's connector is ``└`` when no later node shares its depth before
    the enclosing branch closes, ``├`` otherwise. Columns of enclosing nodes
    show ``│`` while that node still has later siblings.
    """

    def __init__(self, indent: str = "   ") -> None:
        """Start an empty tree with *indent* prefixed to every row."""
        self.indent = indent
        self._entries: list[_Entry] = []
        self._depth = 0

    def node(self, header: str, value: object = "") -> None:
        """Add a ``header value`` row at the current depth."""
        self._entries.append(_Entry(self._depth, True, header, str(value)))

    def body(self, text: str) -> None:
        """Add a free-text row at the current depth."""
        self._entries.append(_Entry(self._depth, False, "", text))

    def branch(self, action: BranchAction | str) -> None:
        """Open (``create``) or close (``close``) a nesting level."""
        action = BranchAction(action)
        if action is BranchAction.CREATE:
            self._depth += 1
            return
        if self._depth == 0:
            raise ValueError("No open branch to close.")
        self._depth -= 1

    def reset(self) -> None:
        """Discard every buffered entry."""
        self._entries.clear()
        self._depth = 0

    def render(self) -> list[str]:
        """Return the rendered rows."""
        rows: list[str] = []
        # open[k] is True while the latest node at depth k has later siblings.
        open_columns: list[bool] = []
        for index, entry in enumerate(self._entries):
            del open_columns[entry.depth :]
            while len(open_columns) < entry.depth:
                open_columns.append(False)
            ancestors = "".join(GLYPH_CONTINUE if flag else GLYPH_EMPTY for flag in open_columns)
            if entry.is_node:
                last = self._is_last(index)
                glyph = GLYPH_LAST if last else GLYPH_BRANCH
                header = f"{entry.header:<{HEADER_WIDTH}}"
                row = f"{self.indent}{ancestors}{glyph} {header} {entry.value}"
                open_columns.append(not last)
            else:
                # body text sits one column left of where a child node would
                row = f"{self.indent}{ancestors[:-1]}{GLYPH_BODY} {entry.value}"
            rows.append(row.rstrip())
        return rows

    def print(self, console: Console) -> None:
        """Print the rendered rows to *console* and reset the buffer."""
        for row in self.render():
            console.print(row, markup=False, highlight=False, soft_wrap=True)
        self.reset()

    # ------------------------------------------------------------------
    def _is_last(self, index: int) -> bool:
        depth = self._entries[index].depth
        for entry in self._entries[index + 1 :]:
            if not entry.is_node:
                continue
            if entry.depth < depth:
                return True
            if entry.depth == depth:
                return False
        return True


__all__ = ["BranchAction", "TreeRenderer"]
