"""Skill-Installer: Policy, Integrität, Authentizität, Platzierung, Audit.

Ablauf von ``install_skill``:

  1. Referenz auflösen (gepinnt oder ``latest``)
  2. Allow-/Denylist prüfen (Deny hat Vorrang)
  3. Bundle über die Registry beziehen
  4. Checksumme des Dateibaums gegen das Manifest prüfen
  5. Signatur gegen Vertrauensanker prüfen (optional)
  6. Bundle nach ``<install_root>/<name>/<version>`` kopieren
  7. Audit-Zeile und Provenienz-Datei schreiben

Jeder fatale Fehler wird geloggt und geworfen, bevor das Installations-
verzeichnis angefasst wird. Eine abgelehnte Installation hinterlässt
also keine Teilzustände.

Bekannte Einschränkung: Schritt 6 ist last-writer-wins pro Zielpfad und
nicht transaktional. Stirbt der Prozess während des Kopierens, bleibt
ein unvollständiges Verzeichnis zurück.
"""

from __future__ import annotations

import asyncio
import json
import re
import shutil
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any

from skillguard.core.errors import (
    ChecksumMismatchError,
    InstallPolicyDenied,
    MissingChecksumError,
    SignatureVerificationError,
    SkillReferenceError,
)
from skillguard.skills.checksum import checksum_directory_tree
from skillguard.skills.models import InstalledSkill, InstallPlan, SkillBundle, SkillRef
from skillguard.skills.registry import parse_pinned_skill_ref, validate_ref_part
from skillguard.skills.trust_anchor import SignatureVerifier, create_verifier
from skillguard.utils.logging import get_logger, log_warning

if TYPE_CHECKING:
    from skillguard.config import InstallSettings
    from skillguard.core.circuit_breaker import CircuitBreaker
    from skillguard.skills.registry import SkillRegistryClient

log = get_logger(__name__)

AUDIT_FILENAME = ".install-audit.jsonl"
PROVENANCE_FILENAME = "installed-manifest.json"

_UNSAFE_VERSION_CHARS = re.compile(r"[^a-zA-Z0-9._-]+")

__all__ = [
    "AUDIT_FILENAME",
    "PROVENANCE_FILENAME",
    "InstallDecision",
    "create_install_plan",
    "evaluate_install_policy",
    "install_skill",
    "sanitize_version",
]


@dataclass(frozen=True)
class InstallDecision:
    ok: bool
    reason: str | None = None


def evaluate_install_policy(
    identity: str,
    allowlist: Sequence[str],
    denylist: Sequence[str],
) -> InstallDecision:
    """Allow-/Denylist-Entscheidung für ``name@version``.

    Treffer zählen über die volle Identität oder den nackten Namen.
    Die Denylist gewinnt immer, eine leere Allowlist erlaubt alles.
    """
    bare_name = identity.split("@", 1)[0]
    if identity in denylist or bare_name in denylist:
        return InstallDecision(ok=False, reason="skill blocked by denylist")
    if not allowlist:
        return InstallDecision(ok=True)
    if identity in allowlist or bare_name in allowlist:
        return InstallDecision(ok=True)
    return InstallDecision(ok=False, reason="skill not on allowlist")


def sanitize_version(version: str) -> str:
    """Nur Buchstaben, Ziffern, ``.``, ``_``, ``-``; alles andere wird ``-``."""
    return _UNSAFE_VERSION_CHARS.sub("-", version)


def create_install_plan(settings: InstallSettings) -> InstallPlan:
    """Baut einen InstallPlan aus der Konfiguration."""
    return InstallPlan(
        requested_by=settings.requested_by,
        allowlist=tuple(settings.allowlist),
        denylist=tuple(settings.denylist),
        require_pinned=settings.require_pinned,
        require_checksum=settings.require_checksum,
        require_signature=settings.require_signature,
    )


def _resolve_reference(reference: str, plan: InstallPlan) -> SkillRef:
    if plan.require_pinned or "@" in reference:
        return parse_pinned_skill_ref(reference)
    name = validate_ref_part(reference.strip(), reference)
    if not name:
        raise SkillReferenceError("skill reference is empty", details={"reference": reference})
    return SkillRef(name=name, version="latest")


def _target_path(install_root: Path, ref: SkillRef) -> Path:
    install_path = install_root / ref.name / sanitize_version(ref.version)
    root = install_root.resolve()
    try:
        relative = install_path.resolve().relative_to(root)
    except ValueError:
        relative = None
    if relative is None or len(relative.parts) != 2:
        raise SkillReferenceError(
            f"install path for {ref.identity} escapes install root",
            details={"skill": ref.identity, "install_root": str(root)},
        )
    return install_path


def _now_iso() -> str:
    return datetime.now(UTC).isoformat()


def _copy_bundle(source: Path, destination: Path) -> None:
    shutil.rmtree(destination, ignore_errors=True)
    destination.parent.mkdir(parents=True, exist_ok=True)
    shutil.copytree(source, destination)


def _write_artifacts(
    install_path: Path,
    audit_record: dict[str, Any],
    provenance: dict[str, Any],
) -> None:
    with open(install_path / AUDIT_FILENAME, "a", encoding="utf-8") as f:
        f.write(json.dumps(audit_record, ensure_ascii=False) + "\n")
    (install_path / PROVENANCE_FILENAME).write_text(
        json.dumps(provenance, indent=2, ensure_ascii=False),
        encoding="utf-8",
    )


async def _resolve_bundle(
    registry: SkillRegistryClient,
    ref: SkillRef,
    breaker: CircuitBreaker | None,
) -> SkillBundle:
    if breaker is None:
        return await registry.resolve_skill(ref)
    breaker.guard()
    try:
        bundle = await registry.resolve_skill(ref)
    except Exception:
        breaker.record_failure()
        raise
    breaker.record_success()
    return bundle


async def install_skill(
    reference: str,
    *,
    registry: SkillRegistryClient,
    plan: InstallPlan,
    install_root: Path | str,
    logger: Any | None = None,
    signature_verifier: SignatureVerifier | None = None,
    trust_anchors: Mapping[str, str] | None = None,
    breaker: CircuitBreaker | None = None,
) -> InstalledSkill:
    """Installiert einen Skill nach den Regeln des Plans.

    Args:
        reference: ``name@version`` oder (ohne Pin-Pflicht) nur ``name``.
        registry: Kollaborateur, der die Referenz zu einem Bundle auflöst.
        plan: Installations-Policy.
        install_root: Zielwurzel für installierte Skills.
        logger: Strukturierter Logger (Default: Modul-Logger).
        signature_verifier: Eigener Signaturprüfer. Default: Vertrauensanker.
        trust_anchors: keyId → Secret für den Default-Prüfer.
        breaker: Optionaler Circuit Breaker um Registry-Aufrufe.

    Returns:
        InstalledSkill mit Pfad und Verifikationsstatus.

    Raises:
        SkillReferenceError: Ungültige Referenz.
        InstallPolicyDenied: Deny- oder Allowlist verbietet den Skill.
        CircuitOpenError: Registry ist im Backoff.
        MissingChecksumError: Checksumme gefordert, aber nicht deklariert.
        ChecksumMismatchError: Checksumme weicht ab.
        SignatureVerificationError: Signatur gefordert und ungültig.
    """
    logger = logger or log
    verifier = signature_verifier or create_verifier(trust_anchors or {})
    install_root = Path(install_root)

    ref = _resolve_reference(reference, plan)
    identity = ref.identity
    install_path = _target_path(install_root, ref)

    logger.info(
        "skill_install_verification_started",
        skill=identity,
        requested_by=plan.requested_by,
        require_pinned=plan.require_pinned,
        require_checksum=plan.require_checksum,
        require_signature=plan.require_signature,
    )

    # Policy
    decision = evaluate_install_policy(identity, plan.allowlist, plan.denylist)
    if not decision.ok:
        log_warning(
            logger,
            "skill_install_verification_failed",
            skill=identity,
            stage="policy",
            reason=decision.reason or "INSTALL_POLICY_DENIED",
        )
        raise InstallPolicyDenied(
            f"Skill install denied: {decision.reason}",
            details={"skill": identity, "reason": decision.reason},
        )

    bundle = await _resolve_bundle(registry, ref, breaker)
    manifest = bundle.manifest
    declared = manifest.checksum or None

    # Integrität
    if plan.require_checksum and not declared:
        log_warning(
            logger,
            "skill_install_verification_failed",
            skill=identity,
            stage="checksum",
            reason="MISSING_CHECKSUM",
        )
        raise MissingChecksumError(
            f"Missing checksum for {identity}. "
            "Set SKILLGUARD_INSTALL_REQUIRE_CHECKSUM=false to override.",
            details={"skill": identity},
        )
    if not plan.require_checksum:
        logger.info(
            "skill_install_verification_fallback",
            skill=identity,
            stage="checksum",
            reason="CHECKSUM_POLICY_DISABLED",
        )

    computed = await asyncio.to_thread(checksum_directory_tree, bundle.source_path)
    checksum_verified = bool(declared) and computed == declared
    if plan.require_checksum and not checksum_verified:
        log_warning(
            logger,
            "skill_install_verification_failed",
            skill=identity,
            stage="checksum",
            reason="CHECKSUM_MISMATCH",
        )
        raise ChecksumMismatchError(
            f"Checksum mismatch for {identity}. expected={declared} computed={computed}",
            details={"skill": identity, "expected": declared, "computed": computed},
        )

    # Authentizität
    signature_verified = False
    signature_fallback_reason: str | None = None
    if plan.require_signature:
        result = await verifier.verify(manifest, bundle.source_path)
        if not result.ok:
            reason = result.reason or "SIGNATURE_VERIFICATION_FAILED"
            log_warning(
                logger,
                "skill_install_verification_failed",
                skill=identity,
                stage="signature",
                reason=reason,
            )
            raise SignatureVerificationError(
                f"Signature verification failed for {identity}: {reason}",
                error_code=reason,
                details={"skill": identity, "detail": result.detail},
            )
        signature_verified = True
    else:
        signature_fallback_reason = "SIGNATURE_POLICY_DISABLED"
        logger.info(
            "skill_install_verification_fallback",
            skill=identity,
            stage="signature",
            reason=signature_fallback_reason,
        )

    logger.info(
        "skill_install_verification_success",
        skill=identity,
        checksum_verified=checksum_verified,
        signature_verified=signature_verified,
        require_checksum=plan.require_checksum,
        require_signature=plan.require_signature,
    )

    # Platzierung
    await asyncio.to_thread(_copy_bundle, bundle.source_path, install_path)

    audit_record = {
        "at": _now_iso(),
        "event": "skill_install",
        "skill": manifest.qualified_name,
        "sourcePath": str(bundle.source_path),
        "checksumExpected": declared,
        "checksumComputed": computed,
        "checksumVerified": checksum_verified,
        "requireChecksum": plan.require_checksum,
        "signatureVerified": signature_verified,
        "requireSignature": plan.require_signature,
        "signatureFallbackReason": signature_fallback_reason,
        "requestedBy": plan.requested_by,
    }
    provenance = {
        "installedAt": _now_iso(),
        "source": {"name": ref.name, "version": ref.version},
        "requestedBy": plan.requested_by,
    }
    await asyncio.to_thread(_write_artifacts, install_path, audit_record, provenance)

    logger.info(
        "skill_install_completed",
        skill=identity,
        install_path=str(install_path),
        checksum_verified=checksum_verified,
        signature_verified=signature_verified,
    )

    return InstalledSkill(
        name=ref.name,
        version=ref.version,
        install_path=install_path,
        checksum_verified=checksum_verified,
        signature_verified=signature_verified,
    )
