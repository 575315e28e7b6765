from __future__ import annotations

from enum import Enum
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

from .paths import normalize_relative_path

MOD_PACKAGE_FORMAT = "modgate-mod-v1"


class _WireModel(BaseModel):
    """Base for records persisted or exchanged as camelCase JSON."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


class FeatureStatus(str, Enum):
    ACTIVE = "active"
    APPLIED = "applied"
    REVERTED = "reverted"
    PACKAGED = "packaged"


OWNING_FEATURE_STATUSES: frozenset[FeatureStatus] = frozenset({FeatureStatus.ACTIVE, FeatureStatus.APPLIED})


class FeatureMeta(_WireModel):
    id: str = Field(min_length=1)
    name: str = Field(min_length=1)
    description: str = ""
    conversation_id: str = ""
    status: FeatureStatus = FeatureStatus.ACTIVE
    created_at: int
    updated_at: int


class HistoryEntry(_WireModel):
    batch_index: int = Field(ge=0)
    message: str | None = None
    files: list[str] = Field(default_factory=list)
    applied_at: int


class ModAction(str, Enum):
    MODIFY = "modify"
    CREATE = "create"


class ModAuthor(_WireModel):
    id: str
    name: str


class ModFileEntry(_WireModel):
    path: str
    action: ModAction
    content: str
    original_hash: str | None = None

    @field_validator("path")
    @classmethod
    def _relative_posix_path(cls, value: str) -> str:
        return normalize_relative_path(value)

    @field_validator("original_hash")
    @classmethod
    def _prefixed_hash(cls, value: str | None) -> str | None:
        if value is not None and not value.startswith("sha256-"):
            raise ValueError(f"original_hash must start with 'sha256-': {value!r}")
        return value


class PackageSignature(_WireModel):
    algorithm: Literal["ed25519"] = "ed25519"
    hash_hex: str
    signature: str
    public_key: str


class ModPackage(_WireModel):
    format: Literal["modgate-mod-v1"] = MOD_PACKAGE_FORMAT
    name: str
    description: str = ""
    version: str = "1.0.0"
    author: ModAuthor | None = None
    feature_id: str
    files: list[ModFileEntry] = Field(default_factory=list)
    created_at: int
    signature: PackageSignature | None = None

    @model_validator(mode="after")
    def _unique_paths(self) -> "ModPackage":
        seen: set[str] = set()
        for entry in self.files:
            if entry.path in seen:
                raise ValueError(f"duplicate file path in package: {entry.path}")
            seen.add(entry.path)
        return self


class ConflictInfo(BaseModel):
    path: str
    incoming_mod: str
    existing_features: list[str]


class ConflictReport(BaseModel):
    has_conflicts: bool
    conflicts: list[ConflictInfo] = Field(default_factory=list)


class InstallOutcome(BaseModel):
    ok: bool
    installed: list[str] = Field(default_factory=list)
    conflicts: ConflictReport | None = None
