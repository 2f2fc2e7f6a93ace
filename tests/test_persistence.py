from __future__ import annotations

from typing import TYPE_CHECKING

import pytest

from llm_orchestrator.utils.persistence import StateFile

if TYPE_CHECKING:
    from pathlib import Path


def test_state_file_load_returns_empty_mapping_when_missing(tmp_path: Path) -> None:
    state = StateFile(tmp_path / "missing.yaml")

    assert not state.exists()
    assert state.load() == {}


@pytest.mark.parametrize("fmt", ["yaml", "json"])
def test_state_file_write_and_load_round_trip(tmp_path: Path, fmt: str) -> None:
    state = StateFile(tmp_path / "nested" / f"ledger.{fmt}", fmt=fmt)
    original = {"models": {"gpt-a": {"remaining_tokens": 42, "cooldown_until": None}}}

    state.write(original)

    assert state.load() == original
    assert [path.name for path in state.path.parent.iterdir()] == [state.path.name]


def test_state_file_rejects_non_mapping_payload(tmp_path: Path) -> None:
    path = tmp_path / "list.yaml"
    path.write_text("- a\n- b\n", encoding="utf-8")

    with pytest.raises(ValueError):
        StateFile(path).load()


def test_state_file_rejects_unknown_format(tmp_path: Path) -> None:
    with pytest.raises(ValueError):
        StateFile(tmp_path / "state.toml", fmt="toml")
