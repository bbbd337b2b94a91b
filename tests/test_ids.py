from __future__ import annotations

import re

import allure
import pytest

from shikigami.core.ids import ID_PREFIX, generate_id, normalize_prefix

pytestmark = [
    allure.epic("Task Graph"),
    allure.feature("Identifiers"),
]

_ID_PATTERN = re.compile(r"^sk-[a-z0-9]{4,6}$")


def test_generated_ids_use_prefix_and_short_alphanumeric_suffix() -> None:
    for _ in range(200):
        assert _ID_PATTERN.match(generate_id())


def test_generate_id_grows_length_when_short_ids_collide() -> None:
    class _EverythingShortTaken:
        def __contains__(self, candidate: object) -> bool:
            return len(str(candidate)) < len(ID_PREFIX) + 6

    task_id = generate_id(_EverythingShortTaken())

    assert len(task_id) == len(ID_PREFIX) + 6


def test_generate_id_keeps_full_length_format_after_length_attempts_run_out() -> None:
    class _FirstThirtyTaken:
        def __init__(self) -> None:
            self.checked = 0

        def __contains__(self, candidate: object) -> bool:
            self.checked += 1
            return self.checked <= 30

    taken = _FirstThirtyTaken()
    task_id = generate_id(taken)

    assert taken.checked == 31
    assert _ID_PATTERN.match(task_id)
    assert len(task_id) == len(ID_PREFIX) + 6


def test_generate_id_raises_when_every_candidate_collides() -> None:
    class _EverythingTaken:
        def __contains__(self, candidate: object) -> bool:
            return True

    with pytest.raises(RuntimeError, match="exhausted"):
        generate_id(_EverythingTaken())


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ("ab12", "sk-ab12"),
        ("sk-ab12", "sk-ab12"),
        ("  SK-AB ", "sk-ab"),
    ],
)
def test_normalize_prefix_accepts_ids_with_or_without_prefix(raw: str, expected: str) -> None:
    assert normalize_prefix(raw) == expected
