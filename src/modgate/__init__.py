from importlib.metadata import version

from .canonical import CanonicalHash, canonicalize, hash_canonical_json, sha256_content_hash, to_canonical_json
from .identity import DeviceIdentity, DeviceIdentityStore, IdentityError, sign_device_heartbeat, verify_device_heartbeat
from .models import (
    ConflictInfo,
    ConflictReport,
    FeatureMeta,
    FeatureStatus,
    HistoryEntry,
    InstallOutcome,
    ModAction,
    ModAuthor,
    ModFileEntry,
    ModPackage,
    PackageSignature,
)
from .packaging import (
    ModFormatError,
    ModPackager,
    OwnerIndex,
    dump_mod_package,
    load_mod_package,
    sign_mod_package,
    verify_mod_package,
)
from .policy import InstructionFile, InstructionPolicy, PolicyEngine, PolicyEvaluation, WriteDecision
from .protection import (
    AesGcmSecretProtector,
    KeyringSecretProtector,
    ProtectedStorageUnavailableError,
    SecretProtector,
)
from .settings import RuntimeSettings
from .signing import SigningKeyError, SigningKeyRecord, SigningKeyStore, sign_hash, verify_signature
from .state_store import FeatureStore
from .validations import (
    ValidationResult,
    ValidationRunner,
    ValidationSpec,
    ValidationStatus,
    ValidationSummary,
    run_validations,
    summarize_validation_results,
)
from .zones import AgentType, GuardContext, GuardResult, Zone, ZoneClassification, ZoneKind, ZoneManager


def get_version() -> str:
    try:
        return version(__name__)
    except Exception:
        return "0.0.0"


__all__ = [
    "AesGcmSecretProtector",
    "AgentType",
    "CanonicalHash",
    "ConflictInfo",
    "ConflictReport",
    "DeviceIdentity",
    "DeviceIdentityStore",
    "FeatureMeta",
    "FeatureStatus",
    "FeatureStore",
    "GuardContext",
    "GuardResult",
    "HistoryEntry",
    "IdentityError",
    "InstallOutcome",
    "InstructionFile",
    "InstructionPolicy",
    "KeyringSecretProtector",
    "ModAction",
    "ModAuthor",
    "ModFileEntry",
    "ModFormatError",
    "ModPackage",
    "ModPackager",
    "OwnerIndex",
    "PackageSignature",
    "PolicyEngine",
    "PolicyEvaluation",
    "ProtectedStorageUnavailableError",
    "RuntimeSettings",
    "SecretProtector",
    "SigningKeyError",
    "SigningKeyRecord",
    "SigningKeyStore",
    "ValidationResult",
    "ValidationRunner",
    "ValidationSpec",
    "ValidationStatus",
    "ValidationSummary",
    "WriteDecision",
    "Zone",
    "ZoneClassification",
    "ZoneKind",
    "ZoneManager",
    "canonicalize",
    "dump_mod_package",
    "get_version",
    "hash_canonical_json",
    "load_mod_package",
    "run_validations",
    "sha256_content_hash",
    "sign_device_heartbeat",
    "sign_hash",
    "sign_mod_package",
    "summarize_validation_results",
    "to_canonical_json",
    "verify_device_heartbeat",
    "verify_mod_package",
    "verify_signature",
]
