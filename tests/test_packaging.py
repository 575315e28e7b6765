from __future__ import annotations

import json
from pathlib import Path

import pytest

from modgate.canonical import sha256_content_hash
from modgate.models import FeatureStatus, HistoryEntry, ModAction, ModFileEntry, ModPackage
from modgate.packaging import (
    ModFormatError,
    ModPackager,
    OwnerIndex,
    dump_mod_package,
    load_mod_package,
    sign_mod_package,
    verify_mod_package,
)
from modgate.signing import create_signing_keys
from modgate.state_store import FeatureStore


def _apply(store: FeatureStore, root: Path, feature_id: str, edits: dict[str, str]) -> None:
    """Record a batch then write its edits, the way the apply flow does."""
    store.record_batch(feature_id, list(edits), root, message=f"edit {len(edits)} files")
    for relative_path, content in edits.items():
        target = root / relative_path
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(content, encoding="utf-8")


def test_package_feature_without_history_is_empty(feature_store: FeatureStore, project_root: Path) -> None:
    feature_store.create_feature("empty", "Empty feature")
    package = ModPackager(feature_store, project_root).package_feature("empty")
    assert package is not None
    assert package.files == []
    assert package.feature_id == "empty"
    assert package.format == "modgate-mod-v1"


def test_package_unknown_feature_returns_none(feature_store: FeatureStore, project_root: Path) -> None:
    assert ModPackager(feature_store, project_root).package_feature("missing") is None


def test_package_actions_and_hashes(feature_store: FeatureStore, project_root: Path) -> None:
    (project_root / "src" / "app.ts").write_text("export const a = 1;\n", encoding="utf-8")
    feature_store.create_feature("dark-mode", "Dark mode", description="Adds a theme toggle")
    _apply(feature_store, project_root, "dark-mode", {"src/app.ts": "export const a = 2;\n"})
    _apply(
        feature_store,
        project_root,
        "dark-mode",
        {"src/theme.ts": "export const dark = true;\n", "src/app.ts": "export const a = 3;\n"},
    )

    package = ModPackager(feature_store, project_root).package_feature("dark-mode")
    assert package is not None
    assert package.name == "Dark mode"
    assert package.description == "Adds a theme toggle"
    by_path = {entry.path: entry for entry in package.files}
    assert [entry.path for entry in package.files] == ["src/app.ts", "src/theme.ts"]
    assert by_path["src/app.ts"].action == ModAction.MODIFY
    assert by_path["src/app.ts"].content == "export const a = 3;\n"
    assert by_path["src/theme.ts"].action == ModAction.CREATE
    assert by_path["src/theme.ts"].original_hash == sha256_content_hash("export const dark = true;\n")


def test_vanished_files_are_skipped(feature_store: FeatureStore, project_root: Path) -> None:
    feature_store.create_feature("tmp", "Temp files")
    _apply(feature_store, project_root, "tmp", {"src/keep.ts": "keep\n", "src/gone.ts": "gone\n"})
    (project_root / "src" / "gone.ts").unlink()
    package = ModPackager(feature_store, project_root).package_feature("tmp")
    assert package is not None
    assert [entry.path for entry in package.files] == ["src/keep.ts"]


def test_owner_index_dedupes_and_respects_status(feature_store: FeatureStore, project_root: Path) -> None:
    feature_store.create_feature("one", "Feature one")
    feature_store.create_feature("two", "Feature two")
    feature_store.create_feature("old", "Old feature")
    _apply(feature_store, project_root, "one", {"src/shared.ts": "1"})
    _apply(feature_store, project_root, "one", {"src/shared.ts": "2"})
    _apply(feature_store, project_root, "two", {"src/shared.ts": "3"})
    _apply(feature_store, project_root, "old", {"src/shared.ts": "4"})
    feature_store.update_feature_status("old", FeatureStatus.REVERTED)

    index = OwnerIndex.build(feature_store)
    assert sorted(index.owners("src/shared.ts")) == ["Feature one", "Feature two"]
    assert index.owners("src/unknown.ts") == []
    excluded = OwnerIndex.build(feature_store, exclude_feature_id="one")
    assert excluded.owners("src/shared.ts") == ["Feature two"]


def test_detect_conflicts_lists_overlapping_features(feature_store: FeatureStore, project_root: Path) -> None:
    feature_store.create_feature("local", "Local tweak")
    _apply(feature_store, project_root, "local", {"src/app.ts": "local\n"})

    packager = ModPackager(feature_store, project_root)
    incoming = ModPackage(
        name="Incoming",
        feature_id="remote",
        created_at=1,
        files=[
            ModFileEntry(path="src/app.ts", action=ModAction.MODIFY, content="remote\n"),
            ModFileEntry(path="src/new.ts", action=ModAction.CREATE, content="new\n"),
        ],
    )
    report = packager.detect_conflicts(incoming)
    assert report.has_conflicts is True
    assert len(report.conflicts) == 1
    assert report.conflicts[0].path == "src/app.ts"
    assert report.conflicts[0].incoming_mod == "Incoming"
    assert report.conflicts[0].existing_features == ["Local tweak"]

    outcome = packager.install_mod_with_conflict_check(incoming)
    assert outcome.ok is False
    assert (project_root / "src" / "app.ts").read_text(encoding="utf-8") == "local\n"
    assert not (project_root / "src" / "new.ts").exists()


def test_package_does_not_conflict_with_its_own_feature(feature_store: FeatureStore, project_root: Path) -> None:
    feature_store.create_feature("self", "Self")
    _apply(feature_store, project_root, "self", {"src/app.ts": "mine\n"})
    packager = ModPackager(feature_store, project_root)
    package = packager.package_feature("self")
    assert package is not None
    assert packager.detect_conflicts(package).has_conflicts is False


def test_install_without_conflicts_writes_files(feature_store: FeatureStore, tmp_path: Path) -> None:
    target_root = tmp_path / "target"
    package = ModPackage(
        name="Fresh",
        feature_id="fresh",
        created_at=1,
        files=[ModFileEntry(path="src/deep/new.ts", action=ModAction.CREATE, content="hi\n")],
    )
    outcome = ModPackager(feature_store, target_root).install_mod_with_conflict_check(package)
    assert outcome.ok is True
    assert outcome.installed == ["src/deep/new.ts"]
    assert (target_root / "src" / "deep" / "new.ts").read_text(encoding="utf-8") == "hi\n"


@pytest.mark.parametrize("bad_path", ["../escape.ts", "/etc/passwd", "src/../../x", ""])
def test_file_entries_reject_escaping_paths(bad_path: str) -> None:
    with pytest.raises(ValueError):
        ModFileEntry(path=bad_path, action=ModAction.CREATE, content="x")


def test_load_rejects_wrong_format_and_ignores_unknown_fields() -> None:
    payload = {
        "format": "modgate-mod-v1",
        "name": "Theme",
        "featureId": "theme",
        "createdAt": 5,
        "files": [{"path": "src/a.ts", "action": "modify", "content": "x", "originalHash": "sha256-00"}],
        "extraField": {"ignored": True},
    }
    package = load_mod_package(json.dumps(payload))
    assert package.files[0].original_hash == "sha256-00"

    with pytest.raises(ModFormatError):
        load_mod_package(json.dumps({**payload, "format": "other-mod-v9"}))
    with pytest.raises(ModFormatError):
        load_mod_package(json.dumps({key: value for key, value in payload.items() if key != "format"}))
    with pytest.raises(ModFormatError):
        load_mod_package("[]")


def test_dump_uses_camel_case_wire_names() -> None:
    package = ModPackage(name="Theme", feature_id="theme", created_at=5)
    dumped = json.loads(dump_mod_package(package))
    assert dumped["featureId"] == "theme"
    assert dumped["createdAt"] == 5
    assert "signature" not in dumped


def test_signed_package_detects_tampering() -> None:
    keys = create_signing_keys()
    package = ModPackage(
        name="Theme",
        feature_id="theme",
        created_at=5,
        files=[ModFileEntry(path="src/a.ts", action=ModAction.MODIFY, content="original\n")],
    )
    signed = sign_mod_package(package, keys)
    assert verify_mod_package(signed)
    reloaded = load_mod_package(dump_mod_package(signed))
    assert verify_mod_package(reloaded, trusted_public_key_pem=keys.public_key_pem)
    assert not verify_mod_package(reloaded, trusted_public_key_pem=create_signing_keys().public_key_pem)

    tampered_file = signed.files[0].model_copy(update={"content": "evil\n"})
    tampered = signed.model_copy(update={"files": [tampered_file]})
    assert not verify_mod_package(tampered)
    assert not verify_mod_package(package)


def test_conflicts_match_across_path_spellings(feature_store: FeatureStore, project_root: Path) -> None:
    feature_store.create_feature("local", "Local tweak")
    _apply(feature_store, project_root, "local", {"./src/app.ts": "local\n"})
    assert feature_store.get_history("local")[0].files == ["src/app.ts"]

    incoming = ModPackage(
        name="Incoming",
        feature_id="remote",
        created_at=1,
        files=[ModFileEntry(path="./src/app.ts", action=ModAction.MODIFY, content="remote\n")],
    )
    packager = ModPackager(feature_store, project_root)
    report = packager.detect_conflicts(incoming)
    assert report.has_conflicts is True
    assert report.conflicts[0].existing_features == ["Local tweak"]
    assert packager.install_mod_with_conflict_check(incoming).ok is False
    assert (project_root / "src" / "app.ts").read_text(encoding="utf-8") == "local\n"


def test_owner_index_normalizes_legacy_history_paths() -> None:
    index = OwnerIndex()
    index.add_batch("Legacy", HistoryEntry(batch_index=0, files=["./src/app.ts", "src\\lib.ts", "../x"], applied_at=1))
    assert index.owners("src/app.ts") == ["Legacy"]
    assert index.owners("src/lib.ts") == ["Legacy"]
    assert index.owners("./src/lib.ts") == ["Legacy"]
    assert len(index) == 2


def test_package_merges_spellings_of_one_file(feature_store: FeatureStore, project_root: Path) -> None:
    feature_store.create_feature("theme", "Theme")
    _apply(feature_store, project_root, "theme", {"src/app.ts": "one\n"})
    _apply(feature_store, project_root, "theme", {"./src/app.ts": "two\n"})

    package = ModPackager(feature_store, project_root).package_feature("theme")
    assert package is not None
    assert [entry.path for entry in package.files] == ["src/app.ts"]
    assert package.files[0].content == "two\n"
    assert package.files[0].action == ModAction.CREATE


def test_install_checks_every_target_before_writing(feature_store: FeatureStore, tmp_path: Path) -> None:
    target_root = tmp_path / "target"
    (target_root / "src" / "occupied").mkdir(parents=True)
    (target_root / "lib").write_text("a file, not a directory\n", encoding="utf-8")
    packager = ModPackager(feature_store, target_root)

    into_directory = ModPackage(
        name="Broken",
        feature_id="broken",
        created_at=1,
        files=[
            ModFileEntry(path="src/first.ts", action=ModAction.CREATE, content="first\n"),
            ModFileEntry(path="src/occupied", action=ModAction.CREATE, content="second\n"),
        ],
    )
    with pytest.raises(ValueError):
        packager.install_mod_with_conflict_check(into_directory)
    assert not (target_root / "src" / "first.ts").exists()

    under_file = into_directory.model_copy(
        update={
            "files": [
                ModFileEntry(path="src/first.ts", action=ModAction.CREATE, content="first\n"),
                ModFileEntry(path="lib/util.ts", action=ModAction.CREATE, content="util\n"),
            ]
        }
    )
    with pytest.raises(ValueError):
        packager.install_mod(under_file)
    assert not (target_root / "src" / "first.ts").exists()
