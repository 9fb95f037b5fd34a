"""Tests for the task lifecycle state machine."""

from __future__ import annotations

import pytest

from workgraph.errors import InvalidTransition
from workgraph.task_engine.fsm import VALID_TRANSITIONS, allowed_targets, check_transition, describe
from workgraph.task_engine.model import Task, TaskStatus


def _task(status: TaskStatus) -> Task:
    return Task(id="t1", title="x", status=status)


@pytest.mark.parametrize(
    ("current", "target"),
    [
        (TaskStatus.TODO, TaskStatus.DOING),
        (TaskStatus.DOING, TaskStatus.DONE),
        (TaskStatus.DOING, TaskStatus.DOING),
        (TaskStatus.BLOCKED, TaskStatus.TODO),
    ],
)
def test_legal_transitions(current: TaskStatus, target: TaskStatus) -> None:
    check_transition(_task(current), target)


@pytest.mark.parametrize(
    ("current", "target"),
    [
        (TaskStatus.TODO, TaskStatus.DONE),
        (TaskStatus.TODO, TaskStatus.BLOCKED),
        (TaskStatus.DOING, TaskStatus.TODO),
        (TaskStatus.DONE, TaskStatus.TODO),
        (TaskStatus.DONE, TaskStatus.DOING),
        (TaskStatus.SKIPPED, TaskStatus.TODO),
        (TaskStatus.BLOCKED, TaskStatus.DOING),
    ],
)
def test_illegal_transitions(current: TaskStatus, target: TaskStatus) -> None:
    with pytest.raises(InvalidTransition) as excinfo:
        check_transition(_task(current), target, reason="because")
    assert excinfo.value.subject_id == "t1"
    assert excinfo.value.details["current"] == current.value


def test_terminal_states_have_no_exits() -> None:
    assert VALID_TRANSITIONS[TaskStatus.DONE] == frozenset()
    assert VALID_TRANSITIONS[TaskStatus.SKIPPED] == frozenset()


@pytest.mark.parametrize(
    ("current", "target"),
    [
        (TaskStatus.DOING, TaskStatus.BLOCKED),
        (TaskStatus.TODO, TaskStatus.SKIPPED),
        (TaskStatus.DOING, TaskStatus.SKIPPED),
    ],
)
def test_reason_required(current: TaskStatus, target: TaskStatus) -> None:
    with pytest.raises(InvalidTransition, match="requires a reason"):
        check_transition(_task(current), target, reason="  ")
    check_transition(_task(current), target, reason="upstream API gone")


def test_invalid_transition_is_value_error() -> None:
    with pytest.raises(ValueError):
        check_transition(_task(TaskStatus.DONE), TaskStatus.DOING)


def test_allowed_targets_sorted() -> None:
    assert allowed_targets(TaskStatus.DOING) == ["blocked", "doing", "done", "skipped"]


def test_describe_lists_every_state() -> None:
    info = describe()
    assert set(info["states"]) == {s.value for s in TaskStatus}
    assert info["initial"] == "todo"
    assert sorted(info["terminal"]) == ["done", "skipped"]
    assert "doing->blocked" in info["reason_required"]
