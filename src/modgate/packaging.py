"""Export features as mod packages and install them without trampling other features.

A mod package carries the *current* content of every file a feature has ever
touched, so packaging reflects the tree as it is now rather than replaying
history.  Installation is all-or-nothing with respect to conflicts: conflict
detection runs before the first write, and any overlap with another active
feature aborts the install with a report the agent can act on.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path

from pydantic import ValidationError

from .canonical import hash_canonical_json, sha256_content_hash
from .models import (
    MOD_PACKAGE_FORMAT,
    OWNING_FEATURE_STATUSES,
    ConflictInfo,
    ConflictReport,
    FeatureMeta,
    HistoryEntry,
    InstallOutcome,
    ModAction,
    ModAuthor,
    ModFileEntry,
    ModPackage,
    PackageSignature,
)
from .paths import ensure_within_root, join_root, normalize_relative_path
from .signing import SigningKeyRecord, sign_hash, verify_signature
from .state_store import FeatureHistorySource, atomic_write_text, now_ms

logger = logging.getLogger(__name__)


class ModFormatError(ValueError):
    """Raised when a serialized mod package has the wrong format tag or shape."""


def _history_path(raw: str) -> str | None:
    """Normalized spelling of a recorded path, or None if it can never name a file under the root."""
    try:
        return normalize_relative_path(raw)
    except ValueError:
        logger.debug("Ignoring unusable history path %r", raw)
        return None


# ---------------------------------------------------------------------------
# Package serialization
# ---------------------------------------------------------------------------

def load_mod_package(text: str) -> ModPackage:
    """Parse a serialized mod package.

    Unknown top-level fields are ignored.  A missing or different ``format``
    tag is rejected outright.

    Raises:
        ModFormatError: If the text is not a valid package of this format.
    """
    try:
        raw = json.loads(text)
    except json.JSONDecodeError as exc:
        raise ModFormatError(f"mod package is not valid JSON: {exc}") from exc
    if not isinstance(raw, dict):
        raise ModFormatError("mod package must be a JSON object")
    declared = raw.get("format")
    if declared != MOD_PACKAGE_FORMAT:
        raise ModFormatError(f"unsupported mod package format {declared!r}; expected {MOD_PACKAGE_FORMAT!r}")
    try:
        return ModPackage.model_validate(raw)
    except ValidationError as exc:
        raise ModFormatError(f"mod package failed validation: {exc}") from exc


def dump_mod_package(package: ModPackage) -> str:
    return package.model_dump_json(indent=2, by_alias=True, exclude_none=True)


def read_mod_package(path: Path) -> ModPackage:
    return load_mod_package(path.read_text(encoding="utf-8"))


def write_mod_package(package: ModPackage, path: Path) -> Path:
    atomic_write_text(path, dump_mod_package(package))
    return path


# ---------------------------------------------------------------------------
# Signing
# ---------------------------------------------------------------------------

def package_hash_hex(package: ModPackage) -> str:
    """Canonical hash of the package contents, excluding any signature."""
    unsigned = package.model_copy(update={"signature": None})
    payload = unsigned.model_dump(mode="json", by_alias=True, exclude_none=True)
    return hash_canonical_json(payload).hash_hex


def sign_mod_package(package: ModPackage, key_record: SigningKeyRecord) -> ModPackage:
    hash_hex = package_hash_hex(package)
    signature = PackageSignature(
        hash_hex=hash_hex,
        signature=sign_hash(key_record.private_key_pem, hash_hex),
        public_key=key_record.public_key_pem,
    )
    return package.model_copy(update={"signature": signature})


def verify_mod_package(package: ModPackage, *, trusted_public_key_pem: str | None = None) -> bool:
    """Check the package signature against its contents.

    When *trusted_public_key_pem* is given, the embedded key must match it.
    """
    signature = package.signature
    if signature is None:
        return False
    if trusted_public_key_pem is not None and signature.public_key.strip() != trusted_public_key_pem.strip():
        return False
    hash_hex = package_hash_hex(package)
    if hash_hex != signature.hash_hex:
        return False
    return verify_signature(signature.public_key, hash_hex, signature.signature)


# ---------------------------------------------------------------------------
# Ownership index
# ---------------------------------------------------------------------------

class OwnerIndex:
    """Maps each relative path to the names of features that touched it.

    Paths are keyed by their normalized spelling, so ``./src/app.ts`` and
    ``src\\app.ts`` in older history both count as ``src/app.ts``.  Owner
    lists are deduplicated and keep first-seen order.  The index can be
    rebuilt from a history source or extended batch by batch as features apply
    changes.
    """

    def __init__(self) -> None:
        self._owners: dict[str, list[str]] = {}

    def add_batch(self, feature_name: str, entry: HistoryEntry) -> None:
        for raw in entry.files:
            path = _history_path(raw)
            if path is None:
                continue
            owners = self._owners.setdefault(path, [])
            if feature_name not in owners:
                owners.append(feature_name)

    def add_feature(self, feature: FeatureMeta, history: list[HistoryEntry]) -> None:
        for entry in history:
            self.add_batch(feature.name, entry)

    def owners(self, path: str) -> list[str]:
        key = _history_path(path)
        if key is None:
            return []
        return list(self._owners.get(key, ()))

    def __len__(self) -> int:
        return len(self._owners)

    @classmethod
    def build(cls, source: FeatureHistorySource, *, exclude_feature_id: str | None = None) -> "OwnerIndex":
        index = cls()
        for feature in source.list_features():
            if feature.status not in OWNING_FEATURE_STATUSES:
                continue
            if exclude_feature_id is not None and feature.id == exclude_feature_id:
                continue
            index.add_feature(feature, source.get_history(feature.id))
        return index


# ---------------------------------------------------------------------------
# ModPackager
# ---------------------------------------------------------------------------

class ModPackager:
    """Packages features from a history source and installs packages into a source tree."""

    def __init__(self, source: FeatureHistorySource, source_root: Path) -> None:
        self.source = source
        self.source_root = source_root

    def _first_touches(self, history: list[HistoryEntry]) -> dict[str, tuple[int, str]]:
        """Map each normalized path to the batch that first touched it and the spelling recorded there."""
        first: dict[str, tuple[int, str]] = {}
        for entry in history:
            for raw in entry.files:
                path = _history_path(raw)
                if path is not None and path not in first:
                    first[path] = (entry.batch_index, raw)
        return first

    def package_feature(
        self,
        feature_id: str,
        *,
        version: str = "1.0.0",
        author: ModAuthor | None = None,
    ) -> ModPackage | None:
        """Bundle the current content of every file the feature touched.

        Returns:
            The package, or ``None`` when the feature is unknown.  Files that
            no longer exist are left out.
        """
        meta = self.source.get_feature(feature_id)
        if meta is None:
            return None

        first_touches = self._first_touches(self.source.get_history(feature_id))

        files: list[ModFileEntry] = []
        for relative_path, (batch_index, recorded) in first_touches.items():
            try:
                content = Path(join_root(self.source_root, relative_path)).read_text(encoding="utf-8")
            except (OSError, UnicodeDecodeError) as exc:
                logger.debug("Skipping %s while packaging %s: %s", relative_path, feature_id, exc)
                continue
            is_new = self.source.is_new_file(feature_id, batch_index, recorded)
            files.append(
                ModFileEntry(
                    path=relative_path,
                    action=ModAction.CREATE if is_new else ModAction.MODIFY,
                    content=content,
                    original_hash=sha256_content_hash(content),
                )
            )

        logger.info("Packaged feature %s with %d files", feature_id, len(files))
        return ModPackage(
            name=meta.name,
            description=meta.description,
            version=version,
            author=author,
            feature_id=feature_id,
            files=files,
            created_at=now_ms(),
        )

    def detect_conflicts(self, package: ModPackage) -> ConflictReport:
        """Report incoming files already owned by other active or applied features.

        The result is a point-in-time snapshot of the feature set.
        """
        index = OwnerIndex.build(self.source, exclude_feature_id=package.feature_id)
        conflicts: list[ConflictInfo] = []
        for entry in package.files:
            owners = index.owners(entry.path)
            if owners:
                conflicts.append(ConflictInfo(path=entry.path, incoming_mod=package.name, existing_features=owners))
        return ConflictReport(has_conflicts=bool(conflicts), conflicts=conflicts)

    def install_mod(self, package: ModPackage) -> list[str]:
        """Write every package file into the source root.

        Every target is resolved and checked before the first write, so a
        package that cannot be installed in full leaves the tree untouched.

        Raises:
            ValueError: If any path would land outside the source root, or a
                target or one of its parents is occupied by the wrong kind of
                filesystem entry.
        """
        targets = [(entry, Path(join_root(self.source_root, entry.path))) for entry in package.files]
        for entry, target in targets:
            self._check_writable(entry.path, target)
        installed: list[str] = []
        for entry, target in targets:
            atomic_write_text(target, entry.content)
            installed.append(entry.path)
        logger.info("Installed mod %s (%d files)", package.name, len(installed))
        return installed

    def _check_writable(self, relative_path: str, target: Path) -> None:
        if target.is_dir():
            raise ValueError(f"cannot install {relative_path}: target is a directory")
        root = Path(self.source_root)
        parent = target.parent
        while ensure_within_root(root, parent) and parent != parent.parent:
            if parent.exists():
                if not parent.is_dir():
                    raise ValueError(f"cannot install {relative_path}: {parent} is not a directory")
                break
            parent = parent.parent

    def install_mod_with_conflict_check(self, package: ModPackage) -> InstallOutcome:
        report = self.detect_conflicts(package)
        if report.has_conflicts:
            logger.info(
                "Refusing to install mod %s: %d conflicting files",
                package.name,
                len(report.conflicts),
            )
            return InstallOutcome(ok=False, conflicts=report)
        return InstallOutcome(ok=True, installed=self.install_mod(package))
