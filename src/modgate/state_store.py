from __future__ import annotations

import fcntl
import json
import logging
import os
import re
import tempfile
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Protocol

from pydantic import TypeAdapter, ValidationError

from .models import FeatureMeta, FeatureStatus, HistoryEntry
from .paths import join_root, normalize_relative_path

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# File locking helpers
# ---------------------------------------------------------------------------

_LOCK_SUFFIX = ".lock"
NEW_FILE_MARKER_SUFFIX = ".__new__"

_HISTORY_ADAPTER = TypeAdapter(list[HistoryEntry])


@contextmanager
def locked_file(path: Path) -> Iterator[None]:
    """Acquire an exclusive file lock for the duration of the context.

    Uses a separate .lock sidecar file so the actual data file can be
    atomically replaced via ``os.replace`` without disturbing the lock
    handle.  The lock file is created in the same directory as *path*
    so ``os.replace`` stays on the same filesystem.
    """
    lock_path = path.with_suffix(path.suffix + _LOCK_SUFFIX)
    lock_path.parent.mkdir(parents=True, exist_ok=True)
    with lock_path.open("a+", encoding="utf-8") as lock_handle:
        fcntl.flock(lock_handle.fileno(), fcntl.LOCK_EX)
        try:
            yield
        finally:
            fcntl.flock(lock_handle.fileno(), fcntl.LOCK_UN)


def atomic_write_text(path: Path, content: str) -> None:
    """Write *content* to *path* atomically.

    Writes to a temporary file in the same directory, then renames
    (``os.replace``) into place.  This prevents partial/corrupt reads
    if the process crashes mid-write.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(
        dir=str(path.parent),
        prefix=f".{path.name}.",
        suffix=".tmp",
    )
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as tmp_handle:
            tmp_handle.write(content)
            tmp_handle.flush()
            os.fsync(tmp_handle.fileno())
        os.replace(tmp_path, str(path))
    except BaseException:
        # Clean up the temp file on any failure.
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        raise


def safe_read_json(path: Path, model_name: str) -> str:
    """Read a JSON file and raise a clear error if missing or unreadable.

    Args:
        path: Filesystem path to read.
        model_name: Human-readable label used in error messages.

    Returns:
        The raw file text.

    Raises:
        FileNotFoundError: If the file does not exist.
        ValueError: If the file is empty or contains non-UTF-8 data.
    """
    if not path.is_file():
        raise FileNotFoundError(f"{model_name} not found: {path}")
    try:
        text = path.read_text(encoding="utf-8")
    except UnicodeDecodeError as exc:
        raise ValueError(f"{model_name} at {path} contains invalid UTF-8 data") from exc
    if not text.strip():
        raise ValueError(f"{model_name} at {path} is empty")
    return text


def now_ms() -> int:
    return int(time.time() * 1000)


def sanitize_feature_id(feature_id: str) -> str:
    """Validate a feature ID for use as a filesystem path component.

    Raises:
        ValueError: If the ID is empty or contains unsafe characters.
    """
    value = feature_id.strip()
    if not value:
        raise ValueError("feature_id must be non-empty")
    if not re.fullmatch(r"[A-Za-z0-9._-]+", value) or value in {".", ".."}:
        raise ValueError(f"feature_id contains unsafe characters: {feature_id!r}")
    return value


# ---------------------------------------------------------------------------
# Feature history interface consumed by packaging
# ---------------------------------------------------------------------------

class FeatureHistorySource(Protocol):
    def get_feature(self, feature_id: str) -> FeatureMeta | None: ...

    def list_features(self) -> list[FeatureMeta]: ...

    def get_history(self, feature_id: str) -> list[HistoryEntry]: ...

    def is_new_file(self, feature_id: str, batch_index: int, relative_path: str) -> bool: ...


# ---------------------------------------------------------------------------
# FeatureStore
# ---------------------------------------------------------------------------

class FeatureStore:
    """Filesystem store of agent-authored features and their batch history.

    Layout under ``root``::

        features/{feature_id}/meta.json
        features/{feature_id}/history.json
        features/{feature_id}/snapshots/{batch_index}/{relative_path}[.__new__]

    Snapshots hold the pre-apply content of every file a batch touched; a
    ``.__new__`` marker replaces the snapshot for files that did not exist.
    """

    def __init__(self, root: Path) -> None:
        self.root = root
        self.features_dir = self.root / "features"
        self.features_dir.mkdir(parents=True, exist_ok=True)

    def feature_dir(self, feature_id: str) -> Path:
        return self.features_dir / sanitize_feature_id(feature_id)

    def _meta_path(self, feature_id: str) -> Path:
        return self.feature_dir(feature_id) / "meta.json"

    def _history_path(self, feature_id: str) -> Path:
        return self.feature_dir(feature_id) / "history.json"

    def snapshot_dir(self, feature_id: str, batch_index: int) -> Path:
        return self.feature_dir(feature_id) / "snapshots" / str(batch_index)

    # ------------------------------------------------------------------
    # Feature metadata
    # ------------------------------------------------------------------

    def create_feature(self, feature_id: str, name: str, description: str = "", conversation_id: str = "") -> FeatureMeta:
        """Create a feature with an empty history.

        Raises:
            ValueError: If the feature already exists.
        """
        meta_path = self._meta_path(feature_id)
        with locked_file(meta_path):
            if meta_path.exists():
                raise ValueError(f"Feature already exists: {feature_id}")
            timestamp = now_ms()
            meta = FeatureMeta(
                id=sanitize_feature_id(feature_id),
                name=name,
                description=description,
                conversation_id=conversation_id,
                status=FeatureStatus.ACTIVE,
                created_at=timestamp,
                updated_at=timestamp,
            )
            atomic_write_text(meta_path, meta.model_dump_json(indent=2, by_alias=True))
            atomic_write_text(self._history_path(feature_id), "[]")
        logger.info("Created feature %s (%s)", meta.id, meta.name)
        return meta

    def get_feature(self, feature_id: str) -> FeatureMeta | None:
        """Return feature metadata, or ``None`` when the feature does not exist.

        Raises:
            ValueError: If the metadata file is corrupt or fails validation.
        """
        meta_path = self._meta_path(feature_id)
        if not meta_path.is_file():
            return None
        text = safe_read_json(meta_path, f"feature {feature_id}")
        try:
            return FeatureMeta.model_validate_json(text)
        except ValidationError as exc:
            raise ValueError(f"feature {feature_id} at {meta_path} failed validation: {exc}") from exc

    def update_feature_status(self, feature_id: str, status: FeatureStatus) -> FeatureMeta:
        meta_path = self._meta_path(feature_id)
        with locked_file(meta_path):
            meta = self.get_feature(feature_id)
            if meta is None:
                raise FileNotFoundError(f"feature not found: {feature_id}")
            updated = meta.model_copy(update={"status": status, "updated_at": now_ms()})
            atomic_write_text(meta_path, updated.model_dump_json(indent=2, by_alias=True))
        return updated

    def list_features(self) -> list[FeatureMeta]:
        """Return all features, most recently updated first."""
        features: list[FeatureMeta] = []
        for entry in sorted(self.features_dir.iterdir()):
            if not entry.is_dir() or not (entry / "meta.json").is_file():
                continue
            meta = self.get_feature(entry.name)
            if meta is not None:
                features.append(meta)
        return sorted(features, key=lambda meta: meta.updated_at, reverse=True)

    # ------------------------------------------------------------------
    # History
    # ------------------------------------------------------------------

    def get_history(self, feature_id: str) -> list[HistoryEntry]:
        """Return the feature's batches in apply order (empty if none)."""
        history_path = self._history_path(feature_id)
        if not history_path.is_file():
            return []
        text = safe_read_json(history_path, f"history for {feature_id}")
        try:
            return _HISTORY_ADAPTER.validate_json(text)
        except ValidationError as exc:
            raise ValueError(f"history for {feature_id} at {history_path} failed validation: {exc}") from exc

    def record_batch(
        self,
        feature_id: str,
        files: list[str],
        source_root: Path,
        *,
        message: str | None = None,
    ) -> HistoryEntry:
        """Snapshot the current content of *files* and append a history entry.

        Must be called before the batch's edits are written to *source_root*
        so the snapshot captures the prior state.  Files that do not exist yet
        get a new-file marker instead of a snapshot.  Paths are stored in
        their normalized POSIX spelling.

        Raises:
            FileNotFoundError: If the feature does not exist.
            ValueError: If a path is absolute or escapes *source_root*.
        """
        if self.get_feature(feature_id) is None:
            raise FileNotFoundError(f"feature not found: {feature_id}")
        history_path = self._history_path(feature_id)
        with locked_file(history_path):
            history = self.get_history(feature_id)
            batch_index = len(history)
            ordered_files = list(dict.fromkeys(normalize_relative_path(path) for path in files))
            self._take_snapshot(feature_id, batch_index, ordered_files, source_root)
            entry = HistoryEntry(batch_index=batch_index, message=message, files=ordered_files, applied_at=now_ms())
            history.append(entry)
            atomic_write_text(
                history_path,
                json.dumps([item.model_dump(mode="json", by_alias=True) for item in history], indent=2),
            )
        self.update_feature_status(feature_id, FeatureStatus.APPLIED)
        logger.info("Recorded batch %d for feature %s (%d files)", batch_index, feature_id, len(ordered_files))
        return entry

    def _take_snapshot(self, feature_id: str, batch_index: int, files: list[str], source_root: Path) -> None:
        snapshot_root = self.snapshot_dir(feature_id, batch_index)
        for relative_path in files:
            source_path = Path(join_root(source_root, relative_path))
            snapshot_path = Path(join_root(snapshot_root, relative_path))
            snapshot_path.parent.mkdir(parents=True, exist_ok=True)
            try:
                content = source_path.read_bytes()
            except FileNotFoundError:
                marker = snapshot_path.with_name(snapshot_path.name + NEW_FILE_MARKER_SUFFIX)
                marker.write_text("", encoding="utf-8")
                continue
            snapshot_path.write_bytes(content)

    def is_new_file(self, feature_id: str, batch_index: int, relative_path: str) -> bool:
        """Return True when *relative_path* did not exist before batch *batch_index*."""
        try:
            snapshot_path = Path(join_root(self.snapshot_dir(feature_id, batch_index), relative_path))
        except ValueError:
            return False
        return snapshot_path.with_name(snapshot_path.name + NEW_FILE_MARKER_SUFFIX).exists()
