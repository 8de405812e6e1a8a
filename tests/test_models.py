"""Tests for KanDo data models."""

import pytest
from pydantic import ValidationError

from kando.models import (
    DEFAULT_EXECUTOR,
    CardFrontmatter,
    CombinedState,
    CreateTaskAttemptPayload,
    ExecutorProfileId,
    TaskStatus,
    VKTaskWithAttemptStatus,
    format_error_message,
    parse_executor_profiles,
    status_value,
)


class TestTaskStatus:
    def test_wire_values(self):
        assert TaskStatus.NOT_SYNCED.value == "notsynced"
        assert TaskStatus.IN_PROGRESS.value == "inprogress"
        assert TaskStatus("inreview") is TaskStatus.IN_REVIEW

    def test_unknown_value_rejected(self):
        with pytest.raises(ValueError):
            TaskStatus("blocked")

    def test_status_value_accepts_enum_and_str(self):
        assert status_value(TaskStatus.DONE) == "done"
        assert status_value("todo") == "todo"


class TestCombinedState:
    def test_structural_equality(self):
        assert CombinedState("todo", False) == CombinedState("todo", False)
        assert CombinedState("todo", False) != CombinedState("todo", True)

    def test_str(self):
        assert str(CombinedState("inprogress", True)) == "inprogress:true"

    def test_terminal(self):
        assert CombinedState("done", False).is_terminal
        assert CombinedState("cancelled", True).is_terminal
        assert CombinedState("deleted", False).is_terminal
        assert not CombinedState("inreview", False).is_terminal

    def test_task_combined_state(self):
        task = VKTaskWithAttemptStatus(
            id="t1", project_id="p1", title="x", status="inprogress",
            has_in_progress_attempt=True,
        )
        assert task.combined_state == CombinedState("inprogress", True)

    def test_task_rejects_unknown_status(self):
        with pytest.raises(ValidationError):
            VKTaskWithAttemptStatus(id="t1", project_id="p1", status="weird")


class TestPayloads:
    def test_attempt_payload_dump(self):
        payload = CreateTaskAttemptPayload(
            task_id="t1",
            executor_profile_id=ExecutorProfileId(executor="CLAUDE_CODE", variant="PLAN"),
            base_branch="main",
        )
        assert payload.model_dump(mode="json") == {
            "task_id": "t1",
            "executor_profile_id": {"executor": "CLAUDE_CODE", "variant": "PLAN"},
            "base_branch": "main",
        }


class TestExecutorProfiles:
    def test_parse_profiles(self):
        profiles = {
            "executors": {
                "CLAUDE_CODE": {"DEFAULT": {}, "PLAN": {}},
                "CODEX": {"DEFAULT": {}},
            }
        }
        options = parse_executor_profiles(profiles)
        assert [o.executor for o in options] == ["CLAUDE_CODE", "CODEX"]
        assert options[0].variants == ["DEFAULT", "PLAN"]

    def test_parse_empty(self):
        assert parse_executor_profiles({}) == []

    def test_default_executor(self):
        assert DEFAULT_EXECUTOR == "CLAUDE_CODE"


class TestCardFrontmatter:
    def test_updates_skip_none(self):
        fm = CardFrontmatter(vk_task_id="t1", vk_status=TaskStatus.TODO)
        assert fm.updates() == {"vk_task_id": "t1", "vk_status": "todo"}

    def test_all_fields_optional(self):
        fm = CardFrontmatter()
        assert fm.updates() == {}


def test_format_error_message():
    assert format_error_message("Push failed", ValueError("boom")) == "Push failed: boom"
