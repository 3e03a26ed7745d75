import json
import os
import time
from pathlib import Path

import pytest

from ralph.errors import DocumentError, StateError
from ralph.state import DocumentStore, JsonStateFile


def test_document_store_read_write_append_ensure(tmp_path: Path) -> None:
    store = DocumentStore(tmp_path)

    store.write("nested/PLAN.md", "# Plan\n")
    store.append("nested/PLAN.md", "- item\n")

    assert store.read("nested/PLAN.md") == "# Plan\n- item\n"
    assert store.exists("nested/PLAN.md") is True
    assert store.ensure("nested/PLAN.md", "other") is False
    assert store.ensure("NOTES.md", "notes") is True
    assert store.read("NOTES.md") == "notes"
    assert store.read_or("absent.md", "(missing)") == "(missing)"


def test_document_store_rejects_paths_outside_root(tmp_path: Path) -> None:
    store = DocumentStore(tmp_path / "root")

    with pytest.raises(DocumentError, match="escapes"):
        store.write("../outside.md", "x")
    assert store.exists("../outside.md") is False
    assert not (tmp_path / "outside.md").exists()


def test_document_store_read_missing_raises(tmp_path: Path) -> None:
    with pytest.raises(DocumentError):
        DocumentStore(tmp_path).read("missing.md")


def test_json_state_file_defaults_and_update(tmp_path: Path) -> None:
    state = JsonStateFile(tmp_path / ".ralph" / "state.json", lambda: {"items": []})

    assert state.read() == {"items": []}

    def _add(payload):
        payload["items"].append("a")
        return payload

    state.update(_add)
    state.update(_add)

    assert state.read() == {"items": ["a", "a"]}
    assert not state.lock_file.exists()


def test_json_state_file_corrupt_content_uses_default(tmp_path: Path) -> None:
    path = tmp_path / "state.json"
    path.write_text("{not json", encoding="utf-8")

    assert JsonStateFile(path, dict).read() == {}


def test_json_state_file_lock_timeout(tmp_path: Path) -> None:
    state = JsonStateFile(tmp_path / "state.json", dict)
    state.lock_file.write_text("123", encoding="utf-8")

    with pytest.raises(StateError, match="Timed out"):
        with state._state_lock(timeout_seconds=0.1):  # noqa: SLF001
            pass


def test_json_state_file_breaks_stale_lock(tmp_path: Path) -> None:
    state = JsonStateFile(tmp_path / "state.json", dict)
    state.lock_file.write_text("123", encoding="utf-8")
    old = time.time() - 120
    os.utime(state.lock_file, (old, old))

    state.write({"ok": True})

    assert json.loads(state.path.read_text(encoding="utf-8")) == {"ok": True}


def test_json_state_file_failed_update_leaves_file_untouched(tmp_path: Path) -> None:
    state = JsonStateFile(tmp_path / "state.json", dict)
    state.write({"n": 1})

    def _explode(payload):
        raise ValueError("no")

    with pytest.raises(ValueError):
        state.update(_explode)

    assert state.read() == {"n": 1}
    assert not state.lock_file.exists()
