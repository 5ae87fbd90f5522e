"""Tests for persisted deployment state."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from stackgraph.config import MAX_STATE_FILE_SIZE_BYTES
from stackgraph.nodes import UNKNOWN
from stackgraph.security import SECRET_FINGERPRINT_PREFIX, Secret
from stackgraph.state import (
    STATE_SCHEMA_VERSION,
    DeploymentState,
    ResourceRecord,
    StateCorruptionError,
    StateStore,
)


def _state_with_vault() -> DeploymentState:
    state = DeploymentState(stack="demo")
    state.resources["vault"] = ResourceRecord(
        id="vault",
        kind="key-vault",
        outputs={"id": "/v", "name": "kv"},
        properties={"name": "kv"},
        dependencies=["rg"],
    )
    return state


class TestStateForm:
    """Tests for DeploymentState.to_state_form."""

    def test_secret_becomes_salted_fingerprint(self) -> None:
        state = DeploymentState(secret_salt="salt-a")
        stored = state.to_state_form({"password": Secret("hunter2")})
        assert stored["password"].startswith(SECRET_FINGERPRINT_PREFIX)
        assert "hunter2" not in json.dumps(stored)

    def test_fingerprint_stable_for_same_salt(self) -> None:
        state = DeploymentState(secret_salt="salt-a")
        assert state.to_state_form(Secret("x")) == state.to_state_form(Secret("x"))
        assert state.to_state_form(Secret("x")) != state.to_state_form(Secret("y"))

    def test_fingerprint_depends_on_salt(self) -> None:
        a = DeploymentState(secret_salt="salt-a").to_state_form(Secret("x"))
        b = DeploymentState(secret_salt="salt-b").to_state_form(Secret("x"))
        assert a != b

    def test_tuples_become_lists_and_unknown_kept(self) -> None:
        state = DeploymentState()
        assert state.to_state_form({"a": (1, 2), "b": UNKNOWN}) == {"a": [1, 2], "b": UNKNOWN}

    def test_new_states_get_distinct_salts(self) -> None:
        assert DeploymentState().secret_salt != DeploymentState().secret_salt


class TestStateStore:
    """Tests for StateStore load and save."""

    def test_missing_file_is_empty_state(self, tmp_path: Path) -> None:
        state = StateStore(tmp_path / "state.json").load("demo")
        assert state.resources == {}
        assert state.stack == "demo"
        assert state.serial == 0

    def test_round_trip_and_serial(self, tmp_path: Path) -> None:
        store = StateStore(tmp_path / "nested" / "state.json")
        state = _state_with_vault()
        store.save(state)
        assert state.serial == 1
        assert state.updated_at is not None

        loaded = store.load("demo")
        assert loaded.serial == 1
        assert loaded.secret_salt == state.secret_salt
        assert loaded.get("vault") == state.get("vault")

        store.save(loaded)
        assert store.load("demo").serial == 2

    def test_save_leaves_no_temp_files(self, tmp_path: Path) -> None:
        store = StateStore(tmp_path / "state.json")
        store.save(_state_with_vault())
        assert [p.name for p in tmp_path.iterdir()] == ["state.json"]

    def test_file_content_is_json_with_schema_version(self, tmp_path: Path) -> None:
        path = tmp_path / "state.json"
        StateStore(path).save(_state_with_vault())
        raw = json.loads(path.read_text())
        assert raw["schema_version"] == STATE_SCHEMA_VERSION
        assert raw["resources"]["vault"]["dependencies"] == ["rg"]

    def test_invalid_json(self, tmp_path: Path) -> None:
        path = tmp_path / "state.json"
        path.write_text("{not json")
        with pytest.raises(StateCorruptionError, match="Invalid JSON"):
            StateStore(path).load()

    def test_corrupt_file_is_not_overwritten_by_load(self, tmp_path: Path) -> None:
        path = tmp_path / "state.json"
        path.write_text("garbage")
        with pytest.raises(StateCorruptionError):
            StateStore(path).load()
        assert path.read_text() == "garbage"

    def test_non_object(self, tmp_path: Path) -> None:
        path = tmp_path / "state.json"
        path.write_text("[]")
        with pytest.raises(StateCorruptionError, match="JSON object"):
            StateStore(path).load()

    def test_unknown_schema_version(self, tmp_path: Path) -> None:
        path = tmp_path / "state.json"
        path.write_text(json.dumps({"schema_version": 99, "resources": {}}))
        with pytest.raises(StateCorruptionError, match="schema version 99"):
            StateStore(path).load()

    def test_validation_error(self, tmp_path: Path) -> None:
        path = tmp_path / "state.json"
        path.write_text(
            json.dumps({"schema_version": 1, "resources": {"a": {"id": "a"}}})
        )
        with pytest.raises(StateCorruptionError, match="resources.a.kind"):
            StateStore(path).load()

    def test_record_key_mismatch(self, tmp_path: Path) -> None:
        path = tmp_path / "state.json"
        path.write_text(
            json.dumps(
                {"schema_version": 1, "resources": {"a": {"id": "b", "kind": "thing"}}}
            )
        )
        with pytest.raises(StateCorruptionError, match="does not match"):
            StateStore(path).load()

    def test_other_stack_rejected(self, tmp_path: Path) -> None:
        store = StateStore(tmp_path / "state.json")
        store.save(_state_with_vault())
        with pytest.raises(StateCorruptionError, match="belongs to stack 'demo'"):
            store.load("other")

    def test_oversized_file(self, tmp_path: Path) -> None:
        path = tmp_path / "state.json"
        path.write_bytes(b" " * (MAX_STATE_FILE_SIZE_BYTES + 1))
        with pytest.raises(StateCorruptionError, match="maximum size"):
            StateStore(path).load()
