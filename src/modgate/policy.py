"""Hierarchical policy evaluation over ``INSTRUCTIONS.md`` files.

Any directory may carry an ``INSTRUCTIONS.md`` whose YAML front matter declares
which paths beneath it may be written::

    ---
    blockPaths:
      - "secrets/**"
    allowPaths:
      - "src/**"
    invariants:
      - "Public API signatures must stay stable."
    compatibilityNotes:
      - "Keep Python 3.11 support."
    ---
    Free-form prose for humans (ignored by the engine).

Evaluation walks from the target's directory up to the project root and
applies every policy it finds:

1. **blockPaths** -- any matching glob at any level blocks the write.
2. **allowPaths** -- when present, the list is exclusive: a path matching none
   of its globs is blocked even if no block rule matched.

Invariants and compatibility notes are collected root-first from every file,
whether or not the path ends up blocked.  Policy files are re-read on every
call; a missing, unreadable, or malformed file contributes nothing.
"""

from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass, field
from functools import lru_cache
from pathlib import Path
from typing import Any

import yaml

from .paths import ensure_within_root, normalize_absolute_path, relative_to_root, to_posix
from .zones import GuardContext, ZoneClassification, ZoneManager

logger = logging.getLogger(__name__)

INSTRUCTIONS_FILE = "INSTRUCTIONS.md"

_FRONT_MATTER_RE = re.compile(r"^---[ \t]*\r?\n(.*?)\r?\n---[ \t]*(?:\r?\n|$)", re.DOTALL)


@dataclass(frozen=True)
class InstructionPolicy:
    block_paths: tuple[str, ...] = ()
    allow_paths: tuple[str, ...] = ()
    invariants: tuple[str, ...] = ()
    compatibility_notes: tuple[str, ...] = ()


@dataclass(frozen=True)
class InstructionFile:
    file_path: str
    directory: str
    markdown: str
    policy: InstructionPolicy


@dataclass(frozen=True)
class PolicyEvaluation:
    classification: ZoneClassification
    block_reasons: list[str] = field(default_factory=list)
    invariants: list[str] = field(default_factory=list)
    compatibility_notes: list[str] = field(default_factory=list)
    instruction_files: list[InstructionFile] = field(default_factory=list)

    @property
    def blocked(self) -> bool:
        return bool(self.block_reasons)


@dataclass(frozen=True)
class WriteDecision:
    allowed: bool
    reasons: list[str]
    evaluation: PolicyEvaluation


# ---------------------------------------------------------------------------
# Glob matching
# ---------------------------------------------------------------------------

@lru_cache(maxsize=512)
def glob_to_regex(pattern: str) -> re.Pattern[str]:
    """Compile a shell-style glob into an anchored regular expression.

    ``**`` matches any run of characters including ``/``, ``*`` matches any
    run of non-separator characters and ``?`` matches a single character.
    Everything else is literal.
    """
    parts: list[str] = []
    idx = 0
    while idx < len(pattern):
        char = pattern[idx]
        if char == "*":
            if pattern.startswith("**", idx):
                parts.append(".*")
                idx += 2
                continue
            parts.append("[^/]*")
        elif char == "?":
            parts.append(".")
        else:
            parts.append(re.escape(char))
        idx += 1
    return re.compile("^" + "".join(parts) + "$", re.DOTALL)


def match_any_glob(patterns: tuple[str, ...] | list[str], relative_path: str) -> bool:
    if not patterns:
        return False
    normalized = to_posix(relative_path)
    return any(glob_to_regex(to_posix(pattern)).match(normalized) for pattern in patterns)


# ---------------------------------------------------------------------------
# Policy file parsing
# ---------------------------------------------------------------------------

def _coerce_string_list(value: Any) -> tuple[str, ...]:
    if value is None or value == "" or value == []:
        return ()
    if isinstance(value, (list, tuple)):
        items = [item if isinstance(item, str) else str(item) for item in value]
    elif isinstance(value, str):
        items = value.split("\n")
    else:
        items = [str(value)]
    return tuple(item.strip() for item in items if item.strip())


def parse_front_matter(markdown: str) -> InstructionPolicy:
    """Extract the policy declared in the YAML front matter of *markdown*.

    Returns an empty policy when there is no front matter, when the YAML is
    invalid, or when it does not describe a mapping.
    """
    match = _FRONT_MATTER_RE.match(markdown)
    if match is None:
        return InstructionPolicy()
    try:
        parsed = yaml.safe_load(match.group(1))
    except yaml.YAMLError as exc:
        logger.warning("Ignoring malformed policy front matter: %s", exc)
        return InstructionPolicy()
    if not isinstance(parsed, dict):
        return InstructionPolicy()
    return InstructionPolicy(
        block_paths=_coerce_string_list(parsed.get("blockPaths")),
        allow_paths=_coerce_string_list(parsed.get("allowPaths")),
        invariants=_coerce_string_list(parsed.get("invariants")),
        compatibility_notes=_coerce_string_list(parsed.get("compatibilityNotes")),
    )


def load_instruction_file(file_path: str) -> InstructionFile | None:
    try:
        markdown = Path(file_path).read_text(encoding="utf-8")
    except FileNotFoundError:
        return None
    except (OSError, UnicodeDecodeError) as exc:
        logger.warning("Unable to read policy file %s: %s", file_path, exc)
        return None
    return InstructionFile(
        file_path=file_path,
        directory=os.path.dirname(file_path),
        markdown=markdown,
        policy=parse_front_matter(markdown),
    )


def collect_instruction_files(absolute_file_path: str, project_root: str) -> list[InstructionFile]:
    """Load every policy file from the target's directory up to *project_root*.

    The walk stops after the project root, at a directory already visited,
    or at the first directory outside the project root.  Results are ordered
    root-most first.
    """
    root = normalize_absolute_path(project_root)
    current = os.path.dirname(normalize_absolute_path(absolute_file_path))
    visited: set[str] = set()
    found: list[InstructionFile] = []

    while True:
        normalized = normalize_absolute_path(current)
        if normalized in visited or not ensure_within_root(root, normalized):
            break
        visited.add(normalized)

        loaded = load_instruction_file(os.path.join(normalized, INSTRUCTIONS_FILE))
        if loaded is not None:
            found.append(loaded)

        if normalized == root:
            break
        parent = os.path.dirname(normalized)
        if parent == normalized:
            break
        current = parent

    found.reverse()
    return found


def evaluate_policies(
    instruction_files: list[InstructionFile],
    classification: ZoneClassification,
) -> PolicyEvaluation:
    block_reasons: list[str] = []
    invariants: list[str] = []
    compatibility_notes: list[str] = []

    for instruction in instruction_files:
        relative = relative_to_root(instruction.directory, classification.absolute_path)
        if relative == ".." or relative.startswith("../") or os.path.isabs(relative):
            relative = classification.zone_relative_path
        relative = to_posix(relative)

        policy = instruction.policy
        if policy.block_paths:
            matched = next(
                (pattern for pattern in policy.block_paths if match_any_glob((pattern,), relative)),
                None,
            )
            if matched is not None:
                block_reasons.append(
                    f'Blocked by {instruction.file_path} (blockPaths rule "{matched}" matched "{relative}").'
                )

        if policy.allow_paths and not match_any_glob(policy.allow_paths, relative):
            block_reasons.append(f'Blocked by {instruction.file_path} (path not allowlisted: "{relative}").')

        invariants.extend(policy.invariants)
        compatibility_notes.extend(policy.compatibility_notes)

    return PolicyEvaluation(
        classification=classification,
        block_reasons=block_reasons,
        invariants=invariants,
        compatibility_notes=compatibility_notes,
        instruction_files=list(instruction_files),
    )


def summarize_instruction_files(instruction_files: list[InstructionFile]) -> list[str]:
    return [instruction.file_path for instruction in instruction_files]


class PolicyEngine:
    """Answers "may this path be written, and under which constraints?"."""

    def __init__(self, zone_manager: ZoneManager) -> None:
        self.zone_manager = zone_manager

    def evaluate(self, target_path: str | Path) -> PolicyEvaluation:
        """Evaluate every policy file governing *target_path*.

        Args:
            target_path: Virtual, absolute, or project-relative path.

        Returns:
            The merged evaluation.  ``blocked`` is true iff at least one
            block reason was recorded.

        Raises:
            ValueError: If *target_path* is empty.
        """
        classification = self.zone_manager.classify_path(target_path)
        instruction_files = collect_instruction_files(
            classification.absolute_path,
            self.zone_manager.project_root,
        )
        evaluation = evaluate_policies(instruction_files, classification)
        if evaluation.blocked:
            logger.info(
                "Policy blocked %s: %s",
                classification.project_relative_path,
                "; ".join(evaluation.block_reasons),
            )
        return evaluation

    def authorize_write(self, target_path: str | Path, context: GuardContext) -> WriteDecision:
        """Combine the zone guard and policy evaluation into one decision."""
        guard = self.zone_manager.enforce_guard(target_path, context)
        evaluation = self.evaluate(target_path)
        reasons: list[str] = []
        if not guard.ok and guard.reason:
            reasons.append(guard.reason)
        reasons.extend(evaluation.block_reasons)
        return WriteDecision(allowed=not reasons, reasons=reasons, evaluation=evaluation)
