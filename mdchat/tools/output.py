"""
Structured tool output.

Tools describe their result as an ordered sequence of typed sections and call
``render`` once. The rendered text follows a fixed layout the model learns to
read: headers underlined with a heavy rule, aligned markdown tables, numbered
suggestions and recoverable error blocks.
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field

RULE = "━" * 45


@dataclass(frozen=True)
class Header:
    title: str
    status: str | None = None


@dataclass(frozen=True)
class KeyValue:
    label: str
    value: str


@dataclass(frozen=True)
class Separator:
    pass


@dataclass(frozen=True)
class Section:
    title: str
    content: str


@dataclass(frozen=True)
class Table:
    headers: tuple[str, ...]
    rows: tuple[tuple[str, ...], ...] = ()


@dataclass(frozen=True)
class Suggestions:
    actions: tuple[str, ...]


@dataclass(frozen=True)
class ErrorBlock:
    type: str
    message: str
    recovery: tuple[str, ...] = field(default_factory=tuple)


OutputSection = Header | KeyValue | Separator | Section | Table | Suggestions | ErrorBlock


def table(headers: Sequence[str], rows: Iterable[Sequence[str]]) -> Table:
    return Table(tuple(headers), tuple(tuple(row) for row in rows))


def suggestions(*actions: str) -> Suggestions:
    return Suggestions(actions)


def error_block(type_: str, message: str, recovery: Iterable[str] = ()) -> ErrorBlock:
    return ErrorBlock(type_, message, tuple(recovery))


def _render_header(header: Header) -> list[str]:
    status = f" ({header.status})" if header.status else ""
    return [f"{header.title}{status}", RULE]


def _render_table(tbl: Table) -> list[str]:
    widths = [
        max([len(h)] + [len(row[i]) if i < len(row) else 0 for row in tbl.rows])
        for i, h in enumerate(tbl.headers)
    ]

    def format_row(cells: Sequence[str]) -> str:
        padded = [(cells[i] if i < len(cells) else "").ljust(w) for i, w in enumerate(widths)]
        return "| " + " | ".join(padded) + " |"

    lines = [format_row(tbl.headers), "|" + "|".join("-" * (w + 2) for w in widths) + "|"]
    lines.extend(format_row(row) for row in tbl.rows)
    return lines


def _numbered(items: Iterable[str]) -> list[str]:
    return [f"{i}. {item}" for i, item in enumerate(items, start=1)]


def _render_section(section: OutputSection) -> list[str]:
    if isinstance(section, Header):
        return _render_header(section)
    if isinstance(section, KeyValue):
        return [f"{section.label}: {section.value}"]
    if isinstance(section, Separator):
        return [RULE]
    if isinstance(section, Section):
        return [f"\n{section.title}:\n{section.content}"]
    if isinstance(section, Table):
        return _render_table(section)
    if isinstance(section, Suggestions):
        return ["\nSUGGESTED ACTIONS:", *_numbered(section.actions)]
    if isinstance(section, ErrorBlock):
        return [
            *_render_header(Header(f"ERROR: {section.type}", "Recoverable")),
            f"Reason: {section.message}\n",
            "RECOVERY OPTIONS:",
            *_numbered(section.recovery),
        ]
    raise TypeError(f"Unknown output section: {section!r}")


def render(sections: Iterable[OutputSection]) -> str:
    """Render sections to the final text, one line group per section."""
    lines: list[str] = []
    for section in sections:
        lines.extend(_render_section(section))
    return "\n".join(lines)
