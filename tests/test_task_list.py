"""Unit tests for checklist parsing."""

from __future__ import annotations

from pathlib import Path

from yoke.task_list import TaskList, is_complete, next_task, parse_checklist, progress


def test_parse_statuses_and_line_numbers():
    doc = "# Plan\n- [ ] write parser\n- [x] set up repo\n  - [/] add tests\n- [X] docs\nnot an item\n"
    items = parse_checklist(doc)
    assert [(i.text, i.status, i.line_number) for i in items] == [
        ("write parser", "todo", 2),
        ("set up repo", "done", 3),
        ("add tests", "in_progress", 4),
        ("docs", "done", 5),
    ]


def test_next_task_scenarios():
    assert next_task("- [x] a\n- [ ] b\n") == "b"
    assert next_task("- [x] a\n- [x] b\n") is None
    assert next_task("- [x] a\n- [/] b\n- [ ] c\n") == "b"
    assert next_task("") is None


def test_is_complete_requires_at_least_one_item():
    assert is_complete("- [x] a\n- [x] b\n") is True
    assert is_complete("- [x] a\n- [ ] b\n") is False
    assert is_complete("- [x] a\n- [/] b\n") is False
    assert is_complete("no checklist here") is False


def test_progress_counts():
    assert progress("- [x] a\n- [ ] b\n- [/] c\n") == (1, 3)
    assert progress(None) == (0, 0)


class TestTaskListFile:
    def test_missing_file(self, tmp_path: Path):
        task_list = TaskList(tmp_path / "@fix_plan.md")
        assert task_list.exists() is False
        assert task_list.next_task() is None
        assert task_list.is_complete() is False
        assert task_list.describe_current() == "No task list found"

    def test_reads_file(self, tmp_path: Path):
        path = tmp_path / "@fix_plan.md"
        path.write_text("- [x] a\n- [/] b\n- [ ] c\n", encoding="utf-8")
        task_list = TaskList(path)
        assert task_list.next_task() == "b"
        assert task_list.describe_current() == "b (in progress)"
        assert task_list.progress() == (1, 3)

        path.write_text("- [x] a\n- [x] b\n", encoding="utf-8")
        assert task_list.is_complete() is True
        assert task_list.describe_current() == "All tasks complete"
