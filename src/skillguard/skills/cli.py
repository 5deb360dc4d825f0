"""CLI für Skill-Lieferkette und Sandbox.

Beispiele:

.. code-block:: bash

    # Checksumme eines Bundles berechnen und ins Manifest schreiben
    skillguard checksum ./bundles/weather/1.0.0 --write

    # Manifest mit einem Vertrauensanker signieren
    skillguard sign ./bundles/weather/1.0.0/manifest.json --key-id release --secret s3cr3t

    # Skill aus der lokalen Registry installieren
    skillguard install weather@1.0.0 --registry ./bundles

    # Installierten Skill in der Sandbox ausführen
    skillguard run ~/.skillguard/skills/weather/1.0.0 --payload '{"city": "Berlin"}'
"""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from pathlib import Path
from typing import Any

from skillguard import __version__
from skillguard.config import load_config
from skillguard.core.errors import SkillGuardError
from skillguard.skills.checksum import checksum_directory_tree, write_manifest_checksum
from skillguard.skills.installer import create_install_plan, install_skill
from skillguard.skills.registry import LocalRegistryClient
from skillguard.skills.sandbox import create_skill_sandbox
from skillguard.skills.trust_anchor import SUPPORTED_SIGNATURE_ALGORITHM, sign_manifest
from skillguard.utils.logging import get_logger, setup_logging

log = get_logger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="skillguard",
        description="SkillGuard – Skills prüfen, installieren und isoliert ausführen",
    )
    parser.add_argument("--version", action="version", version=f"SkillGuard v{__version__}")
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Pfad zur config.yaml (Default: ~/.skillguard/config.yaml)",
    )
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        default=None,
        help="Log-Level überschreiben",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    checksum_parser = subparsers.add_parser("checksum", help="Checksumme eines Bundles berechnen")
    checksum_parser.add_argument("path", type=Path, help="Bundle-Verzeichnis")
    checksum_parser.add_argument(
        "--write", action="store_true", help="Checksumme in manifest.json eintragen",
    )

    sign_parser = subparsers.add_parser("sign", help="Manifest signieren")
    sign_parser.add_argument("manifest", type=Path, help="Pfad zur manifest.json")
    sign_parser.add_argument("--key-id", required=True, help="ID des Vertrauensankers")
    sign_parser.add_argument("--secret", required=True, help="Secret des Vertrauensankers")

    install_parser = subparsers.add_parser("install", help="Skill installieren")
    install_parser.add_argument("reference", help="name@version (oder name ohne Pin-Pflicht)")
    install_parser.add_argument("--registry", type=Path, default=None, help="Lokales Registry-Verzeichnis")
    install_parser.add_argument("--install-root", type=Path, default=None, help="Zielverzeichnis")

    run_parser = subparsers.add_parser("run", help="Skill in der Sandbox ausführen")
    run_parser.add_argument("skill_path", type=Path, help="Verzeichnis des Skills")
    run_parser.add_argument("--entrypoint", default=None, help="Einstiegsdatei (Default: skill.py)")
    run_parser.add_argument("--command", dest="skill_command", default=None, help="Skill-Kommando")
    run_parser.add_argument("--payload", default="{}", help="Payload als JSON")

    return parser


def _cmd_checksum(args: argparse.Namespace) -> int:
    digest = write_manifest_checksum(args.path) if args.write else checksum_directory_tree(args.path)
    print(digest)
    return 0


def _cmd_sign(args: argparse.Namespace) -> int:
    data: dict[str, Any] = json.loads(args.manifest.read_text(encoding="utf-8"))
    data["signatureAlgorithm"] = SUPPORTED_SIGNATURE_ALGORITHM
    data["signatureKeyId"] = args.key_id
    data["signature"] = sign_manifest(data, args.secret)
    args.manifest.write_text(json.dumps(data, indent=2, ensure_ascii=False), encoding="utf-8")
    print(data["signature"])
    return 0


async def _cmd_install(args: argparse.Namespace, config: Any) -> int:
    registry = LocalRegistryClient(args.registry or config.registry_root)
    installed = await install_skill(
        args.reference,
        registry=registry,
        plan=create_install_plan(config.install),
        install_root=args.install_root or config.install_root,
        trust_anchors=config.install.trust_anchors,
    )
    print(json.dumps({
        "name": installed.name,
        "version": installed.version,
        "installPath": str(installed.install_path),
        "checksumVerified": installed.checksum_verified,
        "signatureVerified": installed.signature_verified,
    }, indent=2))
    return 0


async def _cmd_run(args: argparse.Namespace, config: Any) -> int:
    payload = json.loads(args.payload)
    sandbox = await create_skill_sandbox(config.sandbox)
    if sandbox is None:
        log.error("skill_sandbox_disabled")
        return 1
    try:
        result = await sandbox.execute_skill(
            args.skill_path,
            entrypoint=args.entrypoint,
            payload=payload,
            command=args.skill_command,
        )
    finally:
        await sandbox.close()
    print(json.dumps(result, indent=2, ensure_ascii=False))
    return 0


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    config = load_config(args.config)
    setup_logging(
        level=args.log_level or config.logging.level,
        json_logs=config.logging.json_logs,
        console=config.logging.console,
    )

    try:
        if args.command == "checksum":
            return _cmd_checksum(args)
        if args.command == "sign":
            return _cmd_sign(args)
        if args.command == "install":
            return asyncio.run(_cmd_install(args, config))
        if args.command == "run":
            return asyncio.run(_cmd_run(args, config))
    except SkillGuardError as exc:
        log.error("skillguard_command_failed", command=args.command, code=exc.error_code, error=str(exc))
        return 1
    except (OSError, json.JSONDecodeError) as exc:
        log.error("skillguard_command_failed", command=args.command, error=str(exc))
        return 1
    return 2


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
