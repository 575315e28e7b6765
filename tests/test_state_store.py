from __future__ import annotations

import time
from pathlib import Path

import pytest

from modgate.models import FeatureStatus
from modgate.state_store import FeatureStore, atomic_write_text, sanitize_feature_id


def test_sanitize_feature_id() -> None:
    assert sanitize_feature_id(" feat-1.2_x ") == "feat-1.2_x"
    for bad in ("", "..", "a/b", "a b"):
        with pytest.raises(ValueError):
            sanitize_feature_id(bad)


def test_atomic_write_leaves_no_temp_files(tmp_path: Path) -> None:
    target = tmp_path / "nested" / "file.json"
    atomic_write_text(target, "{}")
    atomic_write_text(target, '{"a": 1}')
    assert target.read_text(encoding="utf-8") == '{"a": 1}'
    assert [path.name for path in target.parent.iterdir()] == ["file.json"]


def test_create_feature_rejects_duplicates(feature_store: FeatureStore) -> None:
    meta = feature_store.create_feature("f1", "First")
    assert meta.status == FeatureStatus.ACTIVE
    assert feature_store.get_history("f1") == []
    with pytest.raises(ValueError):
        feature_store.create_feature("f1", "Again")


def test_record_batch_snapshots_prior_content(feature_store: FeatureStore, project_root: Path) -> None:
    (project_root / "src" / "a.ts").write_text("before\n", encoding="utf-8")
    feature_store.create_feature("f1", "First")

    entry = feature_store.record_batch("f1", ["src/a.ts", "src/b.ts", "src/a.ts"], project_root, message="first")
    assert entry.batch_index == 0
    assert entry.files == ["src/a.ts", "src/b.ts"]
    snapshot = feature_store.snapshot_dir("f1", 0)
    assert (snapshot / "src" / "a.ts").read_text(encoding="utf-8") == "before\n"
    assert feature_store.is_new_file("f1", 0, "src/b.ts") is True
    assert feature_store.is_new_file("f1", 0, "src/a.ts") is False

    second = feature_store.record_batch("f1", ["src/b.ts"], project_root)
    assert second.batch_index == 1
    assert [item.message for item in feature_store.get_history("f1")] == ["first", None]
    assert feature_store.get_feature("f1").status == FeatureStatus.APPLIED  # type: ignore[union-attr]


def test_record_batch_requires_existing_feature(feature_store: FeatureStore, project_root: Path) -> None:
    with pytest.raises(FileNotFoundError):
        feature_store.record_batch("ghost", ["src/a.ts"], project_root)


def test_record_batch_refuses_escaping_paths(feature_store: FeatureStore, project_root: Path) -> None:
    feature_store.create_feature("f1", "First")
    with pytest.raises(ValueError):
        feature_store.record_batch("f1", ["../outside.ts"], project_root)


def test_list_features_most_recent_first(feature_store: FeatureStore) -> None:
    feature_store.create_feature("old", "Old")
    feature_store.create_feature("new", "New")
    time.sleep(0.01)
    feature_store.update_feature_status("old", FeatureStatus.PACKAGED)
    assert [meta.id for meta in feature_store.list_features()][0] == "old"


def test_corrupt_meta_raises(feature_store: FeatureStore) -> None:
    feature_store.create_feature("f1", "First")
    (feature_store.feature_dir("f1") / "meta.json").write_text('{"id": "f1"}', encoding="utf-8")
    with pytest.raises(ValueError):
        feature_store.get_feature("f1")


def test_record_batch_stores_normalized_paths(feature_store: FeatureStore, project_root: Path) -> None:
    feature_store.create_feature("f1", "First")
    entry = feature_store.record_batch("f1", ["./src/a.ts", "src\\a.ts", "src/x/../b.ts"], project_root)
    assert entry.files == ["src/a.ts", "src/b.ts"]
    assert feature_store.get_history("f1")[0].files == ["src/a.ts", "src/b.ts"]
    assert feature_store.is_new_file("f1", 0, "./src/a.ts") is True
