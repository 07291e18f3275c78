"""Markdown checklist (``@fix_plan.md``) parsing.

Recognised lines::

    - [ ] open item
    - [/] item in progress
    - [x] finished item
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Literal

from yoke.file_io import read_text

logger = logging.getLogger(__name__)

ItemStatus = Literal["todo", "in_progress", "done"]

_ITEM_RE = re.compile(r"^\s*-\s*\[(?P<mark>\s*|x|X|/)\]\s?(?P<text>.*)$")


@dataclass(frozen=True)
class ChecklistItem:
    """One checkbox line."""

    text: str
    status: ItemStatus
    line_number: int

    @property
    def is_open(self) -> bool:
        return self.status != "done"


def parse_checklist(content: str | None) -> list[ChecklistItem]:
    """Return every checkbox item in *content*, in document order."""
    items: list[ChecklistItem] = []
    for number, line in enumerate((content or "").splitlines(), start=1):
        match = _ITEM_RE.match(line)
        if not match:
            continue
        mark = match.group("mark").strip()
        if mark in {"x", "X"}:
            status: ItemStatus = "done"
        elif mark == "/":
            status = "in_progress"
        else:
            status = "todo"
        items.append(ChecklistItem(text=match.group("text").strip(), status=status, line_number=number))
    return items


def next_task(content: str | None) -> str | None:
    """Return the first open (``[ ]``) or in-progress (``[/]``) item, if any."""
    for item in parse_checklist(content):
        if item.is_open:
            return item.text
    return None


def is_complete(content: str | None) -> bool:
    """True when *content* has at least one item and every item is done."""
    items = parse_checklist(content)
    return bool(items) and all(item.status == "done" for item in items)


def progress(content: str | None) -> tuple[int, int]:
    """Return ``(done, total)`` item counts."""
    items = parse_checklist(content)
    return sum(1 for item in items if item.status == "done"), len(items)


class TaskList:
    """A checklist file inside the workspace."""

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)

    def exists(self) -> bool:
        return self.path.is_file()

    def read(self) -> str | None:
        """Return the file text, or ``None`` when it is missing or unreadable."""
        return read_text(self.path)

    def next_task(self) -> str | None:
        return next_task(self.read())

    def is_complete(self) -> bool:
        content = self.read()
        if content is None:
            return False
        return is_complete(content)

    def progress(self) -> tuple[int, int]:
        return progress(self.read())

    def describe_current(self) -> str:
        """Human-readable label for the current item."""
        for item in parse_checklist(self.read()):
            if item.status == "in_progress":
                return f"{item.text} (in progress)"
            if item.status == "todo":
                return item.text
        if not self.exists():
            return "No task list found"
        return "All tasks complete"
