"""Turn a page layout into ordered tab/section grids ready for rendering."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterator, List, Optional

from app.diagnostics import Issue, issue
from app.schema_model import FieldDef, LayoutField, ObjectDef, PageLayout, Section, Tab
from visibility_eval import evaluate


DiagnosticHook = Callable[[Issue], None]

DEFAULT_LAYOUT_FIELD_LIMIT = 10
DEFAULT_LAYOUT_COLUMNS = 2


@dataclass(frozen=True)
class GridCell:
    row: int
    column: int
    field: LayoutField

    def to_dict(self) -> dict:
        return {"row": self.row, "column": self.column, "apiName": self.field.api_name}


@dataclass
class OrderedSectionGrid:
    tab_label: str
    tab_order: int
    section_label: str
    section_order: int
    columns: int
    cells: List[GridCell] = field(default_factory=list)
    rows: List[List[Optional[str]]] = field(default_factory=list)
    collisions: List[GridCell] = field(default_factory=list)
    visible_if: Any = None
    tab_id: Optional[str] = None
    section_id: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "tab": {"id": self.tab_id, "label": self.tab_label, "order": self.tab_order},
            "section": {
                "id": self.section_id,
                "label": self.section_label,
                "order": self.section_order,
                "columns": self.columns,
                "visibleIf": self.visible_if,
            },
            "cells": [cell.to_dict() for cell in self.cells],
            "rows": [list(row) for row in self.rows],
            "collisions": [cell.to_dict() for cell in self.collisions],
        }


def _columns(section: Section) -> int:
    return section.columns if isinstance(section.columns, int) and section.columns > 0 else 1


def cell_for(order: int, column: int, columns: int) -> tuple[int, int]:
    """``row = order // columns``; out-of-range columns fall back to ``order % columns``."""
    columns = max(1, columns)
    order = max(0, order)
    if not isinstance(column, int) or column < 0 or column >= columns:
        column = order % columns
    return order // columns, column


def _build_grid(tab: Tab, section: Section, layout_fields: List[LayoutField]) -> OrderedSectionGrid:
    columns = _columns(section)
    placed = [
        GridCell(*cell_for(lf.order, lf.column, columns), lf)
        for lf in layout_fields
    ]
    # sorted() is stable, so order ties keep declaration order
    cells = sorted(placed, key=lambda c: (c.row, c.column))
    occupied: Dict[tuple[int, int], str] = {}
    collisions: List[GridCell] = []
    for cell in cells:
        key = (cell.row, cell.column)
        if key in occupied:
            collisions.append(cell)
        else:
            occupied[key] = cell.field.api_name
    row_count = max((c.row for c in cells), default=-1) + 1
    rows = [[occupied.get((r, c)) for c in range(columns)] for r in range(row_count)]
    return OrderedSectionGrid(
        tab_label=tab.label,
        tab_order=tab.order,
        section_label=section.label,
        section_order=section.order,
        columns=columns,
        cells=cells,
        rows=rows,
        collisions=collisions,
        visible_if=section.visible_if,
        tab_id=tab.id,
        section_id=section.id,
    )


def _ordered_sections(layout: PageLayout) -> Iterator[tuple[Tab, Section]]:
    for tab in sorted(layout.tabs, key=lambda t: t.order):
        for section in sorted(tab.sections, key=lambda s: s.order):
            yield tab, section


def compose(layout: PageLayout | None) -> List[OrderedSectionGrid]:
    """Grids for every section, tabs then sections in ascending ``order``.

    Empty layouts, tabs and sections are valid and simply contribute nothing.
    Cell collisions are recorded on the grid, never raised.
    """
    if layout is None:
        return []
    return [_build_grid(tab, section, list(section.fields)) for tab, section in _ordered_sections(layout)]


def iter_fields(layout: PageLayout | None) -> Iterator[LayoutField]:
    for grid in compose(layout):
        for cell in grid.cells:
            yield cell.field


def visible_grids(
    layout: PageLayout | None,
    record: dict,
    fields: Dict[str, FieldDef] | None = None,
    on_diagnostic: DiagnosticHook | None = None,
) -> List[OrderedSectionGrid]:
    """Compose, then drop hidden sections and fields for this record snapshot."""
    if layout is None:
        return []
    grids = []
    for tab, section in _ordered_sections(layout):
        if not evaluate(section.visible_if, record, on_diagnostic):
            continue
        shown = []
        for lf in section.fields:
            fdef = fields.get(lf.api_name) if fields is not None else None
            if fields is not None and fdef is None:
                if on_diagnostic is not None:
                    on_diagnostic(
                        issue("UNKNOWN_FIELD", f"Layout field not defined on object: {lf.api_name}", f"{layout.id}.{section.label}.{lf.api_name}")
                    )
                continue
            if fdef is not None and not evaluate(fdef.visible_if, record, on_diagnostic):
                continue
            shown.append(lf)
        grids.append(_build_grid(tab, section, shown))
    return grids


def default_layout(object_def: ObjectDef, layout_type: str = "edit") -> PageLayout:
    """One "Information" tab with a two-column "Details" section of the first fields."""
    chosen = [f for f in object_def.fields if not f.auto_generated][:DEFAULT_LAYOUT_FIELD_LIMIT]
    section = Section(
        label="Details",
        order=0,
        columns=DEFAULT_LAYOUT_COLUMNS,
        fields=[
            LayoutField(api_name=f.api_name, order=i, column=i % DEFAULT_LAYOUT_COLUMNS)
            for i, f in enumerate(chosen)
        ],
    )
    return PageLayout(
        id=f"{object_def.api_name}-default-{layout_type}",
        name="Default",
        layout_type=layout_type,
        is_default=True,
        tabs=[Tab(label="Information", order=0, sections=[section])],
    )
