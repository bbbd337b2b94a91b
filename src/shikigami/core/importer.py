"""Parse bulk task import payloads (JSON) into validated records."""

from __future__ import annotations

import json
from collections.abc import Mapping, Sequence
from pathlib import Path
from typing import Any

from shikigami.core.errors import TaskValidationError
from shikigami.core.models import DependencySpec, ImportRecord, parse_dependency_type

INDEX_REF_PREFIX = "$"

_FIELD_ALIASES = {
    "external_doc_id": ("external_doc_id", "externalDocId", "prdId", "prd_id"),
    "parent": ("parent", "parent_id", "parentId", "parentFudaId"),
}


def load_import_file(path: Path) -> list[ImportRecord]:
    """Read a JSON file holding one task object or a list of them."""

    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise TaskValidationError("file", f"Invalid JSON format in {path}: {exc.msg}") from exc
    return parse_import_payload(raw)


def parse_import_payload(raw: Any) -> list[ImportRecord]:
    items = raw if isinstance(raw, list) else [raw]
    records = [_parse_record(item, index) for index, item in enumerate(items)]
    seen: set[str] = set()
    for record in records:
        if record.ref is None:
            continue
        if record.ref in seen:
            raise TaskValidationError("ref", f"Duplicate import ref: {record.ref!r}")
        seen.add(record.ref)
    return records


def batch_refs(records: Sequence[ImportRecord]) -> list[set[str]]:
    """Names each record answers to inside the batch: ``$<index>`` plus its ``ref``."""

    names: list[set[str]] = []
    for index, record in enumerate(records):
        aliases = {f"{INDEX_REF_PREFIX}{index}"}
        if record.ref:
            aliases.add(record.ref)
        names.append(aliases)
    return names


def _parse_record(item: Any, index: int) -> ImportRecord:
    if not isinstance(item, Mapping):
        raise TaskValidationError("record", f"Import record #{index} must be a JSON object.")
    title = item.get("title")
    description = item.get("description")
    if not isinstance(title, str) or not title.strip():
        raise TaskValidationError("title", f"Import record #{index} is missing a title.")
    if not isinstance(description, str) or not description.strip():
        raise TaskValidationError(
            "description",
            f"Import record #{index} is missing a description.",
        )

    priority = item.get("priority", 0)
    if isinstance(priority, bool) or not isinstance(priority, int):
        raise TaskValidationError("priority", f"Import record #{index} has a non-integer priority.")

    ref = item.get("ref")
    if ref is not None and (not isinstance(ref, str) or not ref.strip()):
        raise TaskValidationError("ref", f"Import record #{index} has an invalid ref.")

    return ImportRecord(
        title=title,
        description=description,
        ref=ref.strip() if ref else None,
        priority=priority,
        parent=_aliased(item, "parent"),
        external_doc_id=_aliased(item, "external_doc_id"),
        dependencies=[_parse_dependency(dep, index) for dep in item.get("dependencies") or []],
    )


def _parse_dependency(dep: Any, index: int) -> DependencySpec:
    if isinstance(dep, str):
        return DependencySpec(depends_on=dep)
    if not isinstance(dep, Mapping) or not isinstance(dep.get("id"), str):
        raise TaskValidationError(
            "dependencies",
            f"Import record #{index} has a dependency without an 'id'.",
        )
    return DependencySpec(
        depends_on=dep["id"],
        dependency_type=parse_dependency_type(dep.get("type") or "blocks"),
    )


def _aliased(item: Mapping[str, Any], field: str) -> str | None:
    for key in _FIELD_ALIASES[field]:
        value = item.get(key)
        if value:
            return str(value)
    return None
