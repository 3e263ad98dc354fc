"""Unit tests for task queue loading and status writeback."""

from __future__ import annotations

import json
import threading
from pathlib import Path

import pytest
import yaml

from taskwave.domain.models import TaskStatus
from taskwave.persistence.task_queue import TaskQueue, TaskQueueError


def _write_json(path: Path, payload: object) -> TaskQueue:
    path.write_text(json.dumps(payload), encoding="utf-8")
    return TaskQueue(path)


def test_json_object_document_loads_in_order(tmp_path: Path) -> None:
    queue = _write_json(
        tmp_path / "ready.json",
        {
            "version": 2,
            "tasks": [
                {"id": "B", "title": "Second", "status": "ready", "files": ["src/b.py"]},
                {"id": "A", "status": "done"},
                {"id": 3, "dependsOn": ["B"], "status": "in_progress"},
            ],
        },
    )

    tasks = queue.load()

    assert [task.id for task in tasks] == ["B", "A", "3"]
    assert [task.id for task in queue.schedulable()] == ["B"]
    assert queue.completed_ids() == frozenset({"A"})


def test_yaml_list_document(tmp_path: Path) -> None:
    path = tmp_path / "ready.yaml"
    path.write_text(
        "- id: A\n  acceptanceCriteria:\n    - Tests pass\n- id: B\n  depends_on: [A]\n",
        encoding="utf-8",
    )
    tasks = TaskQueue(path).load()
    assert tasks[0].acceptance_criteria == ("Tests pass",)
    assert tasks[1].depends_on == frozenset({"A"})


def test_update_status_preserves_other_fields(tmp_path: Path) -> None:
    path = tmp_path / "ready.json"
    queue = _write_json(
        path,
        {"version": 2, "tasks": [{"id": "A", "status": "pending", "owner": "kim", "extra": {"x": 1}}]},
    )

    queue.update_status("A", TaskStatus.RUNNING)

    document = json.loads(path.read_text(encoding="utf-8"))
    assert document == {"version": 2, "tasks": [{"id": "A", "status": "running", "owner": "kim", "extra": {"x": 1}}]}


def test_update_status_keeps_key_order(tmp_path: Path) -> None:
    path = tmp_path / "ready.json"
    queue = _write_json(path, {"tasks": [{"title": "Z first", "id": "A", "status": "pending"}], "version": 2})

    queue.update_status("A", TaskStatus.DONE)

    document = json.loads(path.read_text(encoding="utf-8"))
    assert list(document) == ["tasks", "version"]
    assert list(document["tasks"][0]) == ["title", "id", "status"]


def test_yaml_writeback_stays_yaml(tmp_path: Path) -> None:
    path = tmp_path / "ready.yml"
    path.write_text("tasks:\n  - id: 7\n    title: numeric\n", encoding="utf-8")

    TaskQueue(path).update_status("7", TaskStatus.DONE)

    document = yaml.safe_load(path.read_text(encoding="utf-8"))
    assert document == {"tasks": [{"id": 7, "title": "numeric", "status": "done"}]}


def test_concurrent_writebacks_do_not_lose_updates(tmp_path: Path) -> None:
    ids = [f"T-{index}" for index in range(12)]
    queue = _write_json(tmp_path / "ready.json", {"tasks": [{"id": task_id} for task_id in ids]})

    threads = [threading.Thread(target=queue.update_status, args=(task_id, TaskStatus.DONE)) for task_id in ids]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert queue.completed_ids() == frozenset(ids)


@pytest.mark.parametrize(
    ("content", "message"),
    [
        ("{not json", "invalid task queue"),
        ('"just a string"', "queue root must be an object or a list"),
        ('{"tasks": {"id": "A"}}', "'tasks' must be a list"),
        ('[1]', r"tasks\[0\] must be an object"),
        ('[{"id": "A"}, {"id": "A"}]', "duplicate task id 'A'"),
        ('[{"id": "A", "status": "paused"}]', r"tasks\[0\]: Task.status"),
    ],
)
def test_invalid_documents_are_rejected(tmp_path: Path, content: str, message: str) -> None:
    path = tmp_path / "ready.json"
    path.write_text(content, encoding="utf-8")
    with pytest.raises(TaskQueueError, match=message):
        TaskQueue(path).load()


def test_missing_queue_and_unknown_task(tmp_path: Path) -> None:
    missing = TaskQueue(tmp_path / "absent.json")
    assert not missing.exists()
    with pytest.raises(TaskQueueError, match="task queue not found"):
        missing.load()

    queue = _write_json(tmp_path / "ready.json", {"tasks": [{"id": "A"}]})
    with pytest.raises(TaskQueueError, match="unknown task id 'B'"):
        queue.update_status("B", TaskStatus.DONE)


def test_empty_yaml_is_an_empty_queue(tmp_path: Path) -> None:
    path = tmp_path / "ready.yaml"
    path.write_text("", encoding="utf-8")
    assert TaskQueue(path).load() == []
