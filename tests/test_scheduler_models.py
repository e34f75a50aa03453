"""Tests for task group configuration and run-record models."""

import json

import pytest

from scheduledtasks.errors import ConfigurationError
from scheduledtasks.scheduler.models import (
    TaskConfig,
    TaskGroupConfig,
    TaskGroupRun,
    TaskRun,
    TaskStatus,
    make_run_id,
    parse_group_configs,
)

GROUP = {
    "groupName": "Nightly",
    "cron": "0 2 * * *",
    "tasks": [
        {"name": "extract", "filePath": "tasks/extract.py", "params": {"limit": 5}},
        {"name": "load", "filePath": "etl.load", "killOnFail": True, "warningHours": 26},
    ],
}


# -- TaskStatus ----------------------------------------------------------------


def test_terminal_statuses() -> None:
    assert not TaskStatus.CREATED.is_terminal
    assert not TaskStatus.IN_PROGRESS.is_terminal
    assert TaskStatus.COMPLETED.is_terminal
    assert TaskStatus.ERROR.is_terminal
    assert TaskStatus.SKIPPED.is_terminal


def test_status_values_are_stored_text() -> None:
    assert str(TaskStatus.IN_PROGRESS) == "in_progress"


# -- TaskGroupConfig -----------------------------------------------------------


def test_group_from_camel_case_json() -> None:
    group = TaskGroupConfig.model_validate(GROUP)
    assert group.group_name == "Nightly"
    assert [t.name for t in group.tasks] == ["extract", "load"]
    assert group.tasks[0].module_path == "tasks/extract.py"
    assert group.tasks[0].params == {"limit": 5}
    assert group.tasks[0].kill_on_fail is False
    assert group.tasks[1].kill_on_fail is True
    assert group.tasks[1].warning_hours == 26


def test_group_accepts_field_names() -> None:
    group = TaskGroupConfig(
        group_name="g",
        cron="*/5 * * * *",
        tasks=[TaskConfig(name="t", module_path="demo.progress")],
    )
    assert group.owner_group == "g"


def test_cron_requires_five_fields() -> None:
    with pytest.raises(ValueError, match="5 fields"):
        TaskGroupConfig(group_name="g", cron="0 0 2 * * *")


def test_get_task() -> None:
    group = TaskGroupConfig.model_validate(GROUP)
    assert group.get_task("load").name == "load"
    assert group.get_task("missing") is None


def test_owner_group_uses_parent() -> None:
    group = TaskGroupConfig(group_name="g_SingleTask_t", cron="0 0 * * *", parent_group="g")
    assert group.owner_group == "g"


def test_parent_group_not_serialized() -> None:
    group = TaskGroupConfig(group_name="x", cron="0 0 * * *", parent_group="g")
    assert "parent_group" not in group.model_dump()


# -- parse_group_configs -------------------------------------------------------


class TestParseGroupConfigs:
    def test_from_list(self):
        groups = parse_group_configs([GROUP])
        assert len(groups) == 1
        assert groups[0].group_name == "Nightly"

    def test_passes_through_models(self):
        model = TaskGroupConfig.model_validate(GROUP)
        assert parse_group_configs([model]) == [model]

    def test_from_file(self, tmp_path):
        path = tmp_path / "groups.json"
        path.write_text(json.dumps([GROUP]))
        groups = parse_group_configs(path)
        assert groups[0].tasks[1].module_path == "etl.load"

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigurationError, match="Cannot read"):
            parse_group_configs(tmp_path / "nope.json")

    def test_malformed_json(self, tmp_path):
        path = tmp_path / "groups.json"
        path.write_text("[{")
        with pytest.raises(ConfigurationError, match="not valid JSON"):
            parse_group_configs(str(path))

    def test_not_an_array(self, tmp_path):
        path = tmp_path / "groups.json"
        path.write_text(json.dumps(GROUP))
        with pytest.raises(ConfigurationError, match="JSON array"):
            parse_group_configs(path)

    def test_invalid_entry(self):
        with pytest.raises(ConfigurationError, match="Invalid task group"):
            parse_group_configs([{"groupName": "g", "cron": "bad"}])

    def test_missing_file_path(self):
        entry = {"groupName": "g", "cron": "0 0 * * *", "tasks": [{"name": "t"}]}
        with pytest.raises(ConfigurationError):
            parse_group_configs([entry])

    def test_duplicate_group_names(self):
        with pytest.raises(ConfigurationError, match="Duplicate task group name: Nightly"):
            parse_group_configs([GROUP, GROUP])

    def test_empty_list(self):
        assert parse_group_configs([]) == []


# -- Run records ---------------------------------------------------------------


def test_group_run_defaults() -> None:
    run = TaskGroupRun(run_id="r1", group_name="g", status=TaskStatus.IN_PROGRESS)
    assert run.created_at != ""
    assert run.start_time == run.created_at
    assert run.end_time is None
    assert run.message == ""


def test_group_run_row_round_trip() -> None:
    run = TaskGroupRun(
        run_id="r1",
        group_name="g",
        status=TaskStatus.ERROR,
        message="failed",
        start_time="2025-01-01T00:00:00+00:00",
        end_time="2025-01-01T00:01:00+00:00",
        stack_trace="Traceback...",
        created_at="2025-01-01T00:00:00+00:00",
    )
    assert TaskGroupRun.from_row(run.to_row()) == run


def test_task_run_defaults_and_params() -> None:
    run = TaskRun(
        run_id="t1",
        task_group_run_id="r1",
        task_name="extract",
        params=json.dumps({"lastChanged": "2000-01-01T00:00:00.000Z"}),
        module_path="tasks/extract.py",
    )
    assert run.status == TaskStatus.CREATED
    assert run.start_time is None
    assert run.created_at != ""
    assert run.params_dict == {"lastChanged": "2000-01-01T00:00:00.000Z"}
    assert run.to_row()[5] == "created"


def test_task_run_empty_params() -> None:
    run = TaskRun(run_id="t", task_group_run_id="r", task_name="n", params="", module_path="m")
    assert run.params_dict == {}


def test_make_run_id_unique() -> None:
    ids = {make_run_id() for _ in range(50)}
    assert len(ids) == 50
    assert all(len(i) == 32 for i in ids)
