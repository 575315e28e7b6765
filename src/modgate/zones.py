"""Zone classification for paths the agent wants to touch.

A zone is a named region of the project (or of the modgate home directory)
with an associated write policy.  Platform zones hold the application's own
source and may only be changed by the self-modification agent; user zones hold
user-owned outputs.  Anything outside every zone is refused unless the change
was explicitly confirmed by the user.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

from .paths import ensure_within_root, join_root, normalize_absolute_path, relative_to_root, to_posix

logger = logging.getLogger(__name__)


class ZoneKind(str, Enum):
    PLATFORM = "platform"
    USER = "user"
    UNKNOWN = "unknown"


class AgentType(str, Enum):
    SELF_MOD = "self_mod"
    GENERAL = "general"
    EXPLORE = "explore"


@dataclass(frozen=True)
class Zone:
    name: str
    kind: ZoneKind
    description: str
    virtual_root: str
    roots: tuple[str, ...]


@dataclass(frozen=True)
class ZoneClassification:
    absolute_path: str
    zone_relative_path: str
    project_relative_path: str
    virtual_path: str
    zone: Zone | None = None

    @property
    def zone_kind(self) -> ZoneKind:
        return self.zone.kind if self.zone is not None else ZoneKind.UNKNOWN


@dataclass(frozen=True)
class ResolvedPath:
    ok: bool
    path: str = ""
    virtual_path: str = ""
    zone: Zone | None = None
    error: str | None = None


@dataclass(frozen=True)
class GuardContext:
    agent_type: AgentType = AgentType.GENERAL
    override_guard: bool = False
    user_confirmed: bool = False


@dataclass(frozen=True)
class GuardResult:
    ok: bool
    classification: ZoneClassification
    reason: str | None = None


def build_default_zones(project_root: str, home_root: str) -> list[Zone]:
    """Return the default zone table for a project checkout and a modgate home."""
    return [
        Zone(
            name="source",
            kind=ZoneKind.PLATFORM,
            description="Application source tree.",
            virtual_root="/source",
            roots=(os.path.join(project_root, "src"),),
        ),
        Zone(
            name="tests",
            kind=ZoneKind.PLATFORM,
            description="Application test suite.",
            virtual_root="/tests",
            roots=(os.path.join(project_root, "tests"),),
        ),
        Zone(
            name="instructions",
            kind=ZoneKind.PLATFORM,
            description="Folder-local instruction files and platform rules.",
            virtual_root="/instructions",
            roots=(os.path.join(project_root, "instructions"),),
        ),
        Zone(
            name="packs",
            kind=ZoneKind.PLATFORM,
            description="Installed mod packages and their state.",
            virtual_root="/packs",
            roots=(os.path.join(home_root, "packs"),),
        ),
        Zone(
            name="workspace",
            kind=ZoneKind.USER,
            description="User workspace outputs and artifacts.",
            virtual_root="/workspace",
            roots=(os.path.join(home_root, "workspace"),),
        ),
        Zone(
            name="user",
            kind=ZoneKind.USER,
            description="User-owned data and artifacts.",
            virtual_root="/user",
            roots=(os.path.join(home_root, "user"),),
        ),
    ]


@dataclass
class ZoneManager:
    """Classifies paths into zones and enforces the per-zone write guard."""

    project_root: str
    home_root: str
    zones: list[Zone] = field(default_factory=list)

    def __post_init__(self) -> None:
        self.project_root = normalize_absolute_path(self.project_root)
        self.home_root = normalize_absolute_path(self.home_root)
        if not self.zones:
            self.zones = build_default_zones(self.project_root, self.home_root)

    @classmethod
    def from_paths(cls, project_root: Path, home_root: Path) -> "ZoneManager":
        return cls(project_root=str(project_root), home_root=str(home_root))

    def _pick_zone(self, absolute_path: str) -> tuple[Zone, str] | None:
        matches: list[tuple[Zone, str]] = []
        for zone in self.zones:
            for root in zone.roots:
                if ensure_within_root(root, absolute_path):
                    matches.append((zone, root))
        if not matches:
            return None
        # Most specific (longest) root wins.
        matches.sort(key=lambda item: len(item[1]), reverse=True)
        return matches[0]

    def _virtual_to_absolute(self, virtual_path: str) -> tuple[Zone, str] | None:
        segments = [segment for segment in to_posix(virtual_path).split("/") if segment]
        if not segments:
            return None
        zone = next((item for item in self.zones if item.virtual_root == f"/{segments[0]}"), None)
        if zone is None:
            return None
        try:
            absolute = join_root(zone.roots[0], "/".join(segments[1:]))
        except ValueError:
            return None
        return zone, absolute

    def _is_known_location(self, candidate: str) -> bool:
        if not os.path.isabs(candidate):
            return False
        normalized = normalize_absolute_path(candidate)
        if ensure_within_root(self.project_root, normalized):
            return True
        return self._pick_zone(normalized) is not None

    def _classify_absolute(self, absolute_path: str) -> ZoneClassification:
        normalized = normalize_absolute_path(absolute_path)
        best = self._pick_zone(normalized)
        if best is None:
            zone_relative = to_posix(normalized)
            zone = None
            virtual_path = normalized
        else:
            zone, root = best
            zone_relative = relative_to_root(root, normalized)
            virtual_path = f"{zone.virtual_root}/{zone_relative}" if zone_relative else zone.virtual_root
        if ensure_within_root(self.project_root, normalized):
            project_relative = relative_to_root(self.project_root, normalized)
        else:
            project_relative = zone_relative
        return ZoneClassification(
            absolute_path=normalized,
            zone_relative_path=zone_relative,
            project_relative_path=project_relative,
            virtual_path=virtual_path,
            zone=zone,
        )

    def resolve_path(self, input_path: str | Path) -> ResolvedPath:
        """Resolve a virtual, absolute, or project-relative path to an absolute one."""
        trimmed = str(input_path or "").strip()
        if not trimmed:
            return ResolvedPath(ok=False, error="Path is required.")

        # A real path inside the project or a zone wins over a virtual reading of the same string.
        if trimmed.startswith("/") and not self._is_known_location(trimmed):
            virtual = self._virtual_to_absolute(trimmed)
            if virtual is not None:
                zone, absolute = virtual
                return ResolvedPath(ok=True, path=absolute, virtual_path=trimmed, zone=zone)

        if os.path.isabs(trimmed):
            absolute = normalize_absolute_path(trimmed)
        else:
            absolute = normalize_absolute_path(os.path.join(self.project_root, trimmed))
        classification = self._classify_absolute(absolute)
        return ResolvedPath(
            ok=True,
            path=classification.absolute_path,
            virtual_path=classification.virtual_path,
            zone=classification.zone,
        )

    def classify_path(self, input_path: str | Path) -> ZoneClassification:
        """Classify *input_path* into its zone.

        Raises:
            ValueError: If *input_path* is empty.
        """
        resolved = self.resolve_path(input_path)
        if not resolved.ok:
            raise ValueError(resolved.error)
        return self._classify_absolute(resolved.path)

    def enforce_guard(self, input_path: str | Path, context: GuardContext) -> GuardResult:
        """Decide whether an agent of ``context.agent_type`` may write to *input_path*."""
        classification = self.classify_path(input_path)
        zone = classification.zone
        if zone is None:
            if context.agent_type == AgentType.SELF_MOD and context.override_guard and context.user_confirmed:
                return GuardResult(ok=True, classification=classification)
            return GuardResult(
                ok=False,
                classification=classification,
                reason=(
                    "Path is outside all known zones. Refuse to modify it unless explicitly "
                    "routed through a user-confirmed system operation."
                ),
            )

        if zone.kind == ZoneKind.PLATFORM:
            if context.agent_type == AgentType.SELF_MOD:
                return GuardResult(ok=True, classification=classification)
            if context.override_guard and context.user_confirmed:
                return GuardResult(ok=True, classification=classification)
            logger.info("Zone guard blocked %s write to %s", context.agent_type.value, classification.virtual_path)
            return GuardResult(
                ok=False,
                classification=classification,
                reason=(
                    "Platform zones may only be modified by the self-modification agent "
                    f"(or user-confirmed system operations). Blocked zone: {zone.virtual_root}."
                ),
            )

        if context.agent_type == AgentType.EXPLORE:
            return GuardResult(
                ok=False,
                classification=classification,
                reason="Explore agent is read-only and may not write to user zones.",
            )
        return GuardResult(ok=True, classification=classification)

    def platform_zones(self) -> list[Zone]:
        return [zone for zone in self.zones if zone.kind == ZoneKind.PLATFORM]

    def user_zones(self) -> list[Zone]:
        return [zone for zone in self.zones if zone.kind == ZoneKind.USER]
