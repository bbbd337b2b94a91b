from __future__ import annotations

import json
from pathlib import Path

import allure
import pytest

from shikigami.core.errors import TaskNotFoundError, TaskValidationError
from shikigami.core.importer import load_import_file, parse_import_payload
from shikigami.core.models import DependencyType, TaskStatus
from shikigami.core.repository import TaskGraphRepository

pytestmark = [
    allure.epic("Task Graph"),
    allure.feature("Bulk Import"),
]


def test_parse_accepts_single_object_and_aliases() -> None:
    records = parse_import_payload(
        {
            "title": "Auth",
            "description": "Login flow",
            "priority": 3,
            "prdId": "prd-auth",
            "dependencies": [{"id": "sk-abcd", "type": "related"}, "sk-efgh"],
        },
    )

    assert len(records) == 1
    record = records[0]
    assert record.external_doc_id == "prd-auth"
    assert record.priority == 3
    assert [dep.depends_on for dep in record.dependencies] == ["sk-abcd", "sk-efgh"]
    assert record.dependencies[0].dependency_type == DependencyType.RELATED
    assert record.dependencies[1].dependency_type == DependencyType.BLOCKS


@pytest.mark.parametrize(
    ("payload", "field"),
    [
        ([{"description": "no title"}], "title"),
        ([{"title": "no description"}], "description"),
        ([{"title": "t", "description": "d", "priority": "high"}], "priority"),
        (
            [{"title": "t", "description": "d", "dependencies": [{"type": "blocks"}]}],
            "dependencies",
        ),
        (["not an object"], "record"),
        (
            [
                {"title": "a", "description": "d", "ref": "x"},
                {"title": "b", "description": "d", "ref": "x"},
            ],
            "ref",
        ),
    ],
)
def test_parse_rejects_malformed_records(payload: object, field: str) -> None:
    with pytest.raises(TaskValidationError) as error:
        parse_import_payload(payload)

    assert error.value.field == field


def test_load_import_file_reports_invalid_json(tmp_path: Path) -> None:
    path = tmp_path / "broken.json"
    path.write_text("{not json", encoding="utf-8")

    with pytest.raises(TaskValidationError, match="Invalid JSON format"):
        load_import_file(path)


def test_import_resolves_batch_refs_and_existing_tasks(
    repository: TaskGraphRepository,
    make_task,
) -> None:
    existing = make_task("Existing")
    records = parse_import_payload(
        [
            {"title": "Schema", "description": "tables", "ref": "schema"},
            {
                "title": "API",
                "description": "endpoints",
                "parent": "schema",
                "dependencies": [{"id": "schema"}, {"id": existing.id, "type": "related"}],
            },
            {"title": "Docs", "description": "write docs", "dependencies": ["$1"]},
        ],
    )

    result = repository.import_tasks(records, actor="importer")

    schema, api, docs = result.tasks
    assert result.refs["schema"] == schema.id
    assert result.refs["$2"] == docs.id
    assert schema.status == TaskStatus.READY
    assert api.status == TaskStatus.BLOCKED
    assert api.parent_id == schema.id
    assert docs.status == TaskStatus.BLOCKED
    assert {edge.depends_on_id for edge in repository.get_dependencies(api.id)} == {
        schema.id,
        existing.id,
    }


def test_import_is_all_or_nothing(repository: TaskGraphRepository) -> None:
    records = parse_import_payload(
        [
            {"title": "Fine", "description": "ok"},
            {"title": "Broken", "description": "bad", "dependencies": ["sk-missing"]},
        ],
    )

    with pytest.raises(TaskNotFoundError):
        repository.import_tasks(records)

    assert repository.list_tasks(include_deleted=True) == []


def test_import_dry_run_validates_without_writing(repository: TaskGraphRepository) -> None:
    records = parse_import_payload(
        [
            {"title": "One", "description": "1"},
            {"title": "Two", "description": "2", "dependencies": ["$0"]},
        ],
    )

    result = repository.import_tasks(records, dry_run=True)

    assert result.dry_run is True
    assert [task.title for task in result.tasks] == ["One", "Two"]
    assert repository.list_tasks(include_deleted=True) == []


def test_load_import_file_reads_list(tmp_path: Path) -> None:
    path = tmp_path / "tasks.json"
    path.write_text(
        json.dumps([{"title": "A", "description": "a"}, {"title": "B", "description": "b"}]),
        encoding="utf-8",
    )

    assert [record.title for record in load_import_file(path)] == ["A", "B"]
