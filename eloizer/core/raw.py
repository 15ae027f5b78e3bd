"""Raw syntax tree consumed from the external Rust parser.

The parser collaborator emits one ``RawNode`` tree per source file. Nodes
are immutable and JSON round-trippable so trees can be handed over as
files (``*.ast.json``) or built in memory.

Node vocabulary (``kind``)::

    file mod impl use struct field type fn param block let expr_stmt
    attribute meta_path meta_name_value meta_list doc
    call method_call path field_access lit binary assign unary ref deref
    array tuple macro if match arm return try struct_lit field_value
    closure index cast paren unsafe loop

``text`` carries the identifying token of a node: the name of a struct,
field, fn or param, the operator of ``binary``/``assign``/``unary``, the
method of ``method_call``, the member of ``field_access``, the macro name,
the literal source of ``lit``, the rendered type of ``type`` and the target
type of ``cast``. Unknown kinds are walked through their children.
"""

from __future__ import annotations

from typing import Any, Iterator

from pydantic import BaseModel, ConfigDict, Field

from eloizer.core.types import FrozenMap, empty_map


class Span(BaseModel):
    """Source span of a node."""

    model_config = ConfigDict(frozen=True)

    file: str = ""
    start_line: int = 0
    start_col: int = 0
    end_line: int = 0
    end_col: int = 0

    def with_file(self, file: str) -> "Span":
        if self.file == file:
            return self
        return self.model_copy(update={"file": file})

    @property
    def last_line(self) -> int:
        return max(self.end_line, self.start_line)


class RawNode(BaseModel):
    """One syntax-tree node."""

    model_config = ConfigDict(frozen=True)

    kind: str
    text: str = ""
    children: tuple["RawNode", ...] = ()
    span: Span = Field(default_factory=Span)
    props: FrozenMap = Field(default_factory=empty_map)

    # ── Helper accessors ─────────────────────────────────────────────────

    def child(self, kind: str) -> "RawNode | None":
        for c in self.children:
            if c.kind == kind:
                return c
        return None

    def children_of(self, *kinds: str) -> list["RawNode"]:
        return [c for c in self.children if c.kind in kinds]

    def walk(self) -> Iterator["RawNode"]:
        """Pre-order traversal including this node."""
        stack: list[RawNode] = [self]
        while stack:
            current = stack.pop()
            yield current
            stack.extend(reversed(current.children))

    def depth(self) -> int:
        """Nesting depth of the tree rooted here (a leaf has depth 1)."""
        deepest = 0
        stack: list[tuple[RawNode, int]] = [(self, 1)]
        while stack:
            current, level = stack.pop()
            deepest = max(deepest, level)
            stack.extend((c, level + 1) for c in current.children)
        return deepest

    def find_all(self, kind: str) -> list["RawNode"]:
        return [n for n in self.walk() if n.kind == kind]

    def prop(self, key: str, default: Any = None) -> Any:
        return self.props.get(key, default)


RawNode.model_rebuild()


class SourceUnit(BaseModel):
    """One parsed file: its path, its raw tree and (optionally) its text.

    ``tree`` is ``None`` when the parser collaborator failed on the file;
    the pipeline records such units as build failures.
    """

    model_config = ConfigDict(frozen=True)

    path: str
    tree: RawNode | None = None
    source: str | None = None

    def snippet(self, span: Span, max_lines: int = 3) -> str:
        if not self.source or span.start_line <= 0:
            return ""
        lines = self.source.split("\n")
        start = span.start_line - 1
        end = min(span.last_line, span.start_line + max_lines - 1)
        return "\n".join(line.rstrip() for line in lines[start:end]).strip()


def node(
    kind: str,
    text: str = "",
    *children: RawNode,
    line: int = 0,
    end_line: int | None = None,
    col: int = 0,
    **props: Any,
) -> RawNode:
    """Construct a ``RawNode`` tersely; used by parser adapters and tests."""
    return RawNode(
        kind=kind,
        text=text,
        children=tuple(children),
        span=Span(start_line=line, start_col=col, end_line=line if end_line is None else end_line),
        props=props,
    )
