"""Entry point for `python -m modgate` and the `modgate` CLI script."""

from __future__ import annotations

import argparse
import json
import logging
import os
from dataclasses import asdict
from pathlib import Path
from typing import Sequence

from dotenv import load_dotenv

from modgate.identity import DeviceIdentityStore, IdentityError
from modgate.packaging import (
    ModFormatError,
    ModPackager,
    dump_mod_package,
    read_mod_package,
    sign_mod_package,
    verify_mod_package,
    write_mod_package,
)
from modgate.policy import PolicyEngine, summarize_instruction_files
from modgate.protection import KeyringSecretProtector, ProtectedStorageUnavailableError
from modgate.settings import RuntimeSettings
from modgate.signing import SigningKeyError, SigningKeyStore
from modgate.state_store import FeatureStore
from modgate.validations import (
    ValidationRunner,
    default_validation_specs,
    smoke_validation_specs,
    summarize_validation_results,
)
from modgate.zones import AgentType, GuardContext, ZoneManager


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Guard, validate, and package self-modifications")
    parser.add_argument(
        "--project-root",
        type=Path,
        default=None,
        help="Project checkout to operate on (default: MODGATE_PROJECT_ROOT or cwd)",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Logging verbosity",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    evaluate = subparsers.add_parser("evaluate", help="Check whether a path may be written")
    evaluate.add_argument("path", help="Virtual, absolute, or project-relative path")
    evaluate.add_argument(
        "--agent-type",
        type=lambda value: value.lower(),
        default=AgentType.SELF_MOD.value,
        choices=[item.value for item in AgentType],
        help="Agent requesting the write",
    )
    evaluate.add_argument("--override-guard", action="store_true", help="Request a zone guard override")
    evaluate.add_argument("--user-confirmed", action="store_true", help="The user confirmed the override")

    validate = subparsers.add_parser("validate", help="Run the lint/build validation gate")
    validate.add_argument("--smoke", action="store_true", help="Run the quick build-only gate")
    validate.add_argument("--cwd", type=Path, default=None, help="Working directory (default: project root)")

    package = subparsers.add_parser("package", help="Export a feature as a mod package")
    package.add_argument("feature_id")
    package.add_argument("--out", type=Path, default=None, help="Write the package here instead of stdout")
    package.add_argument("--sign", action="store_true", help="Sign the package with this installation's key")

    install = subparsers.add_parser("install", help="Install a mod package unless it conflicts")
    install.add_argument("package_file", type=Path)

    subparsers.add_parser("keys", help="Print the public signing key, creating it on first use")
    subparsers.add_parser("device-id", help="Print the device id, creating the identity on first use")
    return parser.parse_args(argv)


def _command_evaluate(args: argparse.Namespace, settings: RuntimeSettings) -> int:
    engine = PolicyEngine(ZoneManager.from_paths(settings.project_root_path, settings.home_root_path))
    context = GuardContext(
        agent_type=AgentType(args.agent_type),
        override_guard=args.override_guard,
        user_confirmed=args.user_confirmed,
    )
    decision = engine.authorize_write(args.path, context)
    classification = decision.evaluation.classification
    print(
        json.dumps(
            {
                "allowed": decision.allowed,
                "reasons": decision.reasons,
                "zone": classification.zone.name if classification.zone is not None else None,
                "zoneKind": classification.zone_kind.value,
                "virtualPath": classification.virtual_path,
                "invariants": decision.evaluation.invariants,
                "compatibilityNotes": decision.evaluation.compatibility_notes,
                "instructionFiles": summarize_instruction_files(decision.evaluation.instruction_files),
            },
            indent=2,
        )
    )
    return 0 if decision.allowed else 1


def _command_validate(args: argparse.Namespace, settings: RuntimeSettings) -> int:
    cwd = str((args.cwd or settings.project_root_path).resolve())
    specs = smoke_validation_specs(cwd, settings) if args.smoke else default_validation_specs(cwd, settings)
    results = ValidationRunner.from_settings(settings).run(specs)
    summary = summarize_validation_results(results)
    for result in summary.results:
        print(f"{result.name}: {result.status.value} ({result.duration_ms}ms)")
        if not result.passed:
            print(result.output)
    print(f"validation_ok={summary.ok}")
    return 0 if summary.ok else 1


def _command_package(args: argparse.Namespace, settings: RuntimeSettings) -> int:
    packager = ModPackager(FeatureStore(settings.state_root_path), settings.project_root_path)
    package = packager.package_feature(args.feature_id)
    if package is None:
        logging.error("Feature not found: %s", args.feature_id)
        return 1
    if args.sign:
        store = SigningKeyStore(settings.signing_key_path(), KeyringSecretProtector(settings.keyring_service))
        package = sign_mod_package(package, store.ensure_signing_keys())
    if args.out is not None:
        write_mod_package(package, args.out)
        print(f"package_written={args.out}")
    else:
        print(dump_mod_package(package))
    return 0


def _command_install(args: argparse.Namespace, settings: RuntimeSettings) -> int:
    package = read_mod_package(args.package_file)
    if package.signature is not None and not verify_mod_package(package):
        logging.error("Refusing to install %s: signature does not match its contents", args.package_file)
        return 1
    packager = ModPackager(FeatureStore(settings.state_root_path), settings.project_root_path)
    outcome = packager.install_mod_with_conflict_check(package)
    if not outcome.ok and outcome.conflicts is not None:
        print(json.dumps(outcome.conflicts.model_dump(mode="json"), indent=2))
        return 1
    for path in outcome.installed:
        print(f"installed {path}")
    return 0


def _command_keys(args: argparse.Namespace, settings: RuntimeSettings) -> int:
    store = SigningKeyStore(settings.signing_key_path(), KeyringSecretProtector(settings.keyring_service))
    print(store.ensure_signing_keys().public_key_pem.strip())
    return 0


def _command_device_id(args: argparse.Namespace, settings: RuntimeSettings) -> int:
    store = DeviceIdentityStore(settings.device_record_path(), KeyringSecretProtector(settings.keyring_service))
    identity = store.get_or_create()
    print(json.dumps({k: v for k, v in asdict(identity).items() if k != "private_key"}, indent=2))
    return 0


_COMMANDS = {
    "evaluate": _command_evaluate,
    "validate": _command_validate,
    "package": _command_package,
    "install": _command_install,
    "keys": _command_keys,
    "device-id": _command_device_id,
}


def main(argv: Sequence[str] | None = None) -> int:
    args = parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    # Set the project root before constructing any settings objects.
    if args.project_root is not None:
        os.environ["MODGATE_PROJECT_ROOT"] = str(args.project_root.resolve())
    env_root = Path(os.getenv("MODGATE_PROJECT_ROOT") or Path.cwd())
    load_dotenv(env_root / ".env", override=False)

    try:
        settings = RuntimeSettings.from_env()
    except ValueError as exc:
        logging.error("Invalid configuration: %s", exc)
        return 1

    try:
        return _COMMANDS[args.command](args, settings)
    except (ModFormatError, OSError, ValueError) as exc:
        logging.error("%s failed: %s", args.command, exc)
        return 1
    except (SigningKeyError, IdentityError, ProtectedStorageUnavailableError) as exc:
        logging.error("Key material unavailable: %s", exc)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
