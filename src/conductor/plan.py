from __future__ import annotations

import re
from dataclasses import dataclass, field
from pathlib import Path

PHASE_HEADING_PATTERN = re.compile(r"^(#{2,3})\s+Phase\s+(\d+(?:\.\d+)?)[:\s]+(.+)$")
CHECKLIST_PATTERN = re.compile(r"^-\s+\[([ xX])\]\s+(.+)$")
METADATA_PATTERN = re.compile(r"^\*\*(\w[\w\s]*):\*\*\s*(.+)$")
COMPLETION_GATE_PATTERN = re.compile(r"^\*\*Completion gate:\*\*\s*(.+)$")
COMPLETE_SUFFIX_PATTERN = re.compile(r"\s*[-–—]\s*COMPLETE\s*$", re.IGNORECASE)
TITLE_PATTERN = re.compile(r"^#\s+(.+)$")
SECTION_BREAK_PATTERN = re.compile(r"^#{1,2}\s+[^#]")


@dataclass(slots=True)
class ChecklistItem:
    text: str
    checked: bool
    line: int


@dataclass(slots=True)
class Phase:
    number: str
    title: str
    heading: str
    line: int
    items: list[ChecklistItem] = field(default_factory=list)
    completion_gate: str | None = None
    is_complete: bool = False


@dataclass(slots=True)
class Plan:
    title: str
    version: str
    status: str
    phases: list[Phase]

    @property
    def current_phase(self) -> Phase | None:
        return next((phase for phase in self.phases if not phase.is_complete), None)

    @property
    def completion_percentage(self) -> int:
        items = [item for phase in self.phases for item in phase.items]
        if not items:
            return 0
        return round(100 * sum(1 for item in items if item.checked) / len(items))

    def phase(self, number: str) -> Phase | None:
        return next((phase for phase in self.phases if phase.number == number), None)


def parse_plan(markdown: str) -> Plan:
    """Parse phases and checklists out of an implementation plan.

    A phase heading looks like ``## Phase 2: Title`` (``###`` and dotted
    numbers are accepted). A phase is complete when its heading ends with
    ``- COMPLETE`` or every checklist item under it is checked.
    """

    lines = markdown.splitlines()
    title = ""
    version = ""
    status = ""
    for line in lines:
        match = TITLE_PATTERN.match(line)
        if match:
            title = match.group(1).strip()
            break
    for line in lines:
        match = METADATA_PATTERN.match(line)
        if not match:
            continue
        key = match.group(1).strip().lower()
        if key == "version":
            version = match.group(2).strip()
        elif key == "status":
            status = match.group(2).strip()

    phases: list[Phase] = []
    current: Phase | None = None
    for line_number, line in enumerate(lines, start=1):
        heading = PHASE_HEADING_PATTERN.match(line)
        if heading:
            raw_title = heading.group(3).strip()
            current = Phase(
                number=heading.group(2),
                title=COMPLETE_SUFFIX_PATTERN.sub("", raw_title).strip(),
                heading=line,
                line=line_number,
                is_complete=bool(COMPLETE_SUFFIX_PATTERN.search(raw_title)),
            )
            phases.append(current)
            continue
        if current is None:
            continue
        gate = COMPLETION_GATE_PATTERN.match(line)
        if gate:
            current.completion_gate = gate.group(1).strip()
            continue
        item = CHECKLIST_PATTERN.match(line)
        if item:
            current.items.append(
                ChecklistItem(
                    text=item.group(2).strip(),
                    checked=item.group(1) != " ",
                    line=line_number,
                )
            )
            continue
        # A new top-level section ends the phase; ### subsections do not.
        if SECTION_BREAK_PATTERN.match(line):
            current = None

    for phase in phases:
        if phase.items and not phase.is_complete:
            phase.is_complete = all(item.checked for item in phase.items)

    return Plan(title=title, version=version, status=status, phases=phases)


def load_plan(path: Path) -> Plan:
    return parse_plan(path.read_text(encoding="utf-8"))
