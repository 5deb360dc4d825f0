"""Tests für den Skill-Installer.

Testet:
  - Allow-/Denylist (Deny hat Vorrang, vor jedem Registry-Zugriff)
  - Pin-Pflicht und schwebende Referenzen
  - Checksummen-Durchsetzung: fehlend, abweichend, deaktiviert
  - Signaturprüfung mit Vertrauensankern und eigenem Verifier
  - Platzierung, Audit-Zeile, Provenienz-Datei, Versions-Sanitizing
  - Circuit Breaker um die Registry
"""

from __future__ import annotations

import json
from collections.abc import Callable
from pathlib import Path
from typing import Any
from unittest.mock import AsyncMock

import pytest

from skillguard.config import InstallSettings
from skillguard.core.circuit_breaker import CircuitBreaker
from skillguard.core.errors import (
    ChecksumMismatchError,
    CircuitOpenError,
    InstallPolicyDenied,
    MissingChecksumError,
    RegistryError,
    SignatureVerificationError,
    SkillReferenceError,
)
from skillguard.skills.installer import (
    AUDIT_FILENAME,
    PROVENANCE_FILENAME,
    create_install_plan,
    evaluate_install_policy,
    install_skill,
    sanitize_version,
)
from skillguard.skills.models import InstallPlan, SkillBundle, SkillManifest, SkillRef
from skillguard.skills.registry import LocalRegistryClient
from skillguard.skills.trust_anchor import SignatureVerificationResult, sign_manifest

SECRET = "release-secret"


class FailingRegistry:
    """Registry-Double: zählt Aufrufe und wirft immer."""

    def __init__(self, error: Exception) -> None:
        self.error = error
        self.calls: list[SkillRef] = []

    async def resolve_skill(self, ref: SkillRef) -> SkillBundle:
        self.calls.append(ref)
        raise self.error


class SignedRegistry:
    """Liefert das signierte Manifest getrennt vom Bundle-Verzeichnis aus."""

    def __init__(self, bundle_dir: Path, manifest: SkillManifest) -> None:
        self.bundle_dir = bundle_dir
        self.manifest = manifest

    async def resolve_skill(self, ref: SkillRef) -> SkillBundle:
        return SkillBundle(manifest=self.manifest, source_path=self.bundle_dir)


class StaticVerifier:
    def __init__(self, result: SignatureVerificationResult) -> None:
        self.result = result
        self.calls = 0

    async def verify(self, manifest: SkillManifest, source_path: Path | None = None) -> SignatureVerificationResult:
        self.calls += 1
        return self.result


def _plan(**overrides: Any) -> InstallPlan:
    return InstallPlan(requested_by="tests", **overrides)


def _signed_manifest(bundle_dir: Path, key_id: str = "release", secret: str = SECRET) -> SkillManifest:
    data = json.loads((bundle_dir / "manifest.json").read_text(encoding="utf-8"))
    data["signatureAlgorithm"] = "hmac-sha256"
    data["signatureKeyId"] = key_id
    data["signature"] = sign_manifest(data, secret)
    return SkillManifest.from_dict(data)


# ============================================================================
# Policy
# ============================================================================


class TestEvaluateInstallPolicy:
    def test_empty_lists_allow(self) -> None:
        assert evaluate_install_policy("weather@1.0.0", [], []).ok is True

    def test_deny_by_identity(self) -> None:
        decision = evaluate_install_policy("weather@1.0.0", [], ["weather@1.0.0"])
        assert decision.ok is False
        assert decision.reason == "skill blocked by denylist"

    def test_deny_by_bare_name(self) -> None:
        assert evaluate_install_policy("weather@1.0.0", [], ["weather"]).ok is False

    def test_deny_wins_over_allow(self) -> None:
        decision = evaluate_install_policy("weather@1.0.0", ["weather"], ["weather@1.0.0"])
        assert decision.ok is False
        assert decision.reason == "skill blocked by denylist"

    def test_allowlist_miss(self) -> None:
        decision = evaluate_install_policy("weather@1.0.0", ["calendar"], [])
        assert decision.ok is False
        assert decision.reason == "skill not on allowlist"

    def test_allowlist_hit_by_name_or_identity(self) -> None:
        assert evaluate_install_policy("weather@1.0.0", ["weather"], []).ok is True
        assert evaluate_install_policy("weather@1.0.0", ["weather@1.0.0"], []).ok is True
        assert evaluate_install_policy("weather@1.0.0", ["weather@2.0.0"], []).ok is False


class TestSanitizeVersion:
    @pytest.mark.parametrize(
        ("version", "expected"),
        [
            ("1.0.0", "1.0.0"),
            ("1.0.0-rc_1", "1.0.0-rc_1"),
            ("1.0.0+build/7", "1.0.0-build-7"),
            ("../../etc", "..-..-etc"),
            ("a b  c", "a-b-c"),
        ],
    )
    def test_sanitize(self, version: str, expected: str) -> None:
        assert sanitize_version(version) == expected


class TestCreateInstallPlan:
    def test_from_settings(self) -> None:
        settings = InstallSettings(
            requested_by="ops",
            allowlist="weather, calendar",
            denylist=["evil"],
            require_signature=True,
        )
        plan = create_install_plan(settings)
        assert plan.requested_by == "ops"
        assert plan.allowlist == ("weather", "calendar")
        assert plan.denylist == ("evil",)
        assert plan.require_pinned is True
        assert plan.require_checksum is True
        assert plan.require_signature is True


# ============================================================================
# install_skill
# ============================================================================


class TestInstallPolicy:
    @pytest.mark.asyncio
    async def test_denylist_blocks_before_registry(self, install_root: Path, recording_logger: Any) -> None:
        registry = AsyncMock()
        with pytest.raises(InstallPolicyDenied) as exc_info:
            await install_skill(
                "weather@1.0.0",
                registry=registry,
                plan=_plan(allowlist=("weather",), denylist=("weather@1.0.0",)),
                install_root=install_root,
                logger=recording_logger,
            )
        assert exc_info.value.error_code == "INSTALL_POLICY_DENIED"
        registry.resolve_skill.assert_not_called()
        assert not install_root.exists()
        failed = recording_logger.find("skill_install_verification_failed")
        assert failed == [{"skill": "weather@1.0.0", "stage": "policy", "reason": "skill blocked by denylist"}]

    @pytest.mark.asyncio
    async def test_logger_with_warn_only(self, install_root: Path) -> None:
        class WarnOnlyLogger:
            def __init__(self) -> None:
                self.warned: list[str] = []

            def debug(self, event: str, **fields: Any) -> None: ...

            def info(self, event: str, **fields: Any) -> None: ...

            def warn(self, event: str, **fields: Any) -> None:
                self.warned.append(event)

            def error(self, event: str, **fields: Any) -> None: ...

        logger = WarnOnlyLogger()
        with pytest.raises(InstallPolicyDenied):
            await install_skill(
                "weather@1.0.0",
                registry=AsyncMock(),
                plan=_plan(denylist=("weather",)),
                install_root=install_root,
                logger=logger,
            )
        assert logger.warned == ["skill_install_verification_failed"]

    @pytest.mark.asyncio
    async def test_allowlist_miss(self, install_root: Path) -> None:
        registry = FailingRegistry(AssertionError("registry must not be called"))
        with pytest.raises(InstallPolicyDenied, match="not on allowlist"):
            await install_skill(
                "weather@1.0.0",
                registry=registry,
                plan=_plan(allowlist=("calendar",)),
                install_root=install_root,
            )
        assert registry.calls == []

    @pytest.mark.asyncio
    async def test_unpinned_reference_rejected(self, registry_root: Path, install_root: Path) -> None:
        with pytest.raises(SkillReferenceError):
            await install_skill(
                "weather",
                registry=LocalRegistryClient(registry_root),
                plan=_plan(),
                install_root=install_root,
            )

    @pytest.mark.asyncio
    async def test_latest_allowed_without_pin_requirement(
        self, registry_root: Path, install_root: Path, make_bundle: Callable[..., Path],
    ) -> None:
        make_bundle("weather", "latest")
        installed = await install_skill(
            "weather",
            registry=LocalRegistryClient(registry_root),
            plan=_plan(require_pinned=False),
            install_root=install_root,
        )
        assert installed.version == "latest"
        assert installed.install_path == install_root / "weather" / "latest"


class TestInstallChecksum:
    @pytest.mark.asyncio
    async def test_happy_path(
        self,
        registry_root: Path,
        install_root: Path,
        make_bundle: Callable[..., Path],
        recording_logger: Any,
    ) -> None:
        bundle_dir = make_bundle("weather", "1.0.0", files={"lib/helpers.py": "X = 1\n"})
        installed = await install_skill(
            "weather@1.0.0",
            registry=LocalRegistryClient(registry_root),
            plan=_plan(),
            install_root=install_root,
            logger=recording_logger,
        )
        target = install_root / "weather" / "1.0.0"
        assert installed.install_path == target
        assert installed.qualified_name == "weather@1.0.0"
        assert installed.checksum_verified is True
        assert installed.signature_verified is False
        assert (target / "skill.py").read_text() == (bundle_dir / "skill.py").read_text()
        assert (target / "lib" / "helpers.py").is_file()
        assert recording_logger.names() == [
            "skill_install_verification_started",
            "skill_install_verification_fallback",
            "skill_install_verification_success",
            "skill_install_completed",
        ]

    @pytest.mark.asyncio
    async def test_missing_checksum_rejected(
        self, registry_root: Path, install_root: Path, make_bundle: Callable[..., Path], recording_logger: Any,
    ) -> None:
        make_bundle("weather", "1.0.0", with_checksum=False)
        with pytest.raises(MissingChecksumError) as exc_info:
            await install_skill(
                "weather@1.0.0",
                registry=LocalRegistryClient(registry_root),
                plan=_plan(),
                install_root=install_root,
                logger=recording_logger,
            )
        assert exc_info.value.error_code == "MISSING_CHECKSUM"
        assert not install_root.exists()
        assert recording_logger.find("skill_install_verification_failed")[0]["reason"] == "MISSING_CHECKSUM"

    @pytest.mark.asyncio
    async def test_tampered_bundle_rejected_without_copy(
        self, registry_root: Path, install_root: Path, make_bundle: Callable[..., Path], recording_logger: Any,
    ) -> None:
        bundle_dir = make_bundle("weather", "1.0.0")
        (bundle_dir / "skill.py").write_text("def execute(p, o):\n    return 'pwned'\n", encoding="utf-8")
        with pytest.raises(ChecksumMismatchError) as exc_info:
            await install_skill(
                "weather@1.0.0",
                registry=LocalRegistryClient(registry_root),
                plan=_plan(),
                install_root=install_root,
                logger=recording_logger,
            )
        assert exc_info.value.error_code == "CHECKSUM_MISMATCH"
        assert exc_info.value.details["expected"] != exc_info.value.details["computed"]
        assert not (install_root / "weather" / "1.0.0").exists()
        failed = recording_logger.find("skill_install_verification_failed")
        assert failed[0]["stage"] == "checksum"
        assert failed[0]["reason"] == "CHECKSUM_MISMATCH"
        assert "skill_install_completed" not in recording_logger.names()

    @pytest.mark.asyncio
    async def test_checksum_policy_disabled(
        self, registry_root: Path, install_root: Path, make_bundle: Callable[..., Path],
    ) -> None:
        make_bundle("weather", "1.0.0", with_checksum=False)
        installed = await install_skill(
            "weather@1.0.0",
            registry=LocalRegistryClient(registry_root),
            plan=_plan(require_checksum=False),
            install_root=install_root,
        )
        assert installed.checksum_verified is False
        audit = json.loads((installed.install_path / AUDIT_FILENAME).read_text().splitlines()[-1])
        assert audit["checksumExpected"] is None
        assert audit["requireChecksum"] is False
        assert audit["checksumComputed"]


class TestInstallArtifacts:
    @pytest.mark.asyncio
    async def test_audit_and_provenance(
        self, registry_root: Path, install_root: Path, make_bundle: Callable[..., Path],
    ) -> None:
        bundle_dir = make_bundle("weather", "1.0.0")
        installed = await install_skill(
            "weather@1.0.0",
            registry=LocalRegistryClient(registry_root),
            plan=_plan(),
            install_root=install_root,
        )
        lines = (installed.install_path / AUDIT_FILENAME).read_text(encoding="utf-8").splitlines()
        assert len(lines) == 1
        audit = json.loads(lines[0])
        declared = json.loads((bundle_dir / "manifest.json").read_text())["checksum"]
        assert audit["event"] == "skill_install"
        assert audit["skill"] == "weather@1.0.0"
        assert audit["sourcePath"] == str(bundle_dir.resolve())
        assert audit["checksumExpected"] == declared
        assert audit["checksumComputed"] == declared
        assert audit["checksumVerified"] is True
        assert audit["requireChecksum"] is True
        assert audit["signatureVerified"] is False
        assert audit["requireSignature"] is False
        assert audit["signatureFallbackReason"] == "SIGNATURE_POLICY_DISABLED"
        assert audit["requestedBy"] == "tests"
        assert audit["at"]

        provenance = json.loads((installed.install_path / PROVENANCE_FILENAME).read_text())
        assert provenance["source"] == {"name": "weather", "version": "1.0.0"}
        assert provenance["requestedBy"] == "tests"
        assert provenance["installedAt"]

    @pytest.mark.asyncio
    async def test_reinstall_replaces_stale_files(
        self, registry_root: Path, install_root: Path, make_bundle: Callable[..., Path],
    ) -> None:
        make_bundle("weather", "1.0.0")
        stale = install_root / "weather" / "1.0.0" / "stale.txt"
        stale.parent.mkdir(parents=True)
        stale.write_text("old")
        await install_skill(
            "weather@1.0.0",
            registry=LocalRegistryClient(registry_root),
            plan=_plan(),
            install_root=install_root,
        )
        assert not stale.exists()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("reference", ["..@1.0.0", "../1.0.0@x", "weather@.."])
    async def test_reference_cannot_leave_install_root(self, tmp_path: Path, reference: str) -> None:
        install_root = tmp_path / "root" / "skills"
        precious = tmp_path / "root" / "1.0.0" / "precious.txt"
        precious.parent.mkdir(parents=True)
        precious.write_text("keep")
        registry = FailingRegistry(AssertionError("registry must not be called"))
        with pytest.raises(SkillReferenceError):
            await install_skill(reference, registry=registry, plan=_plan(), install_root=install_root)
        assert precious.read_text() == "keep"
        assert registry.calls == []

    @pytest.mark.asyncio
    async def test_unpinned_dot_segment_rejected(self, install_root: Path) -> None:
        registry = FailingRegistry(AssertionError("registry must not be called"))
        with pytest.raises(SkillReferenceError):
            await install_skill("..", registry=registry, plan=_plan(require_pinned=False), install_root=install_root)
        assert registry.calls == []

    @pytest.mark.asyncio
    async def test_symlinked_skill_dir_rejected(
        self, tmp_path: Path, install_root: Path, make_bundle: Callable[..., Path],
    ) -> None:
        bundle_dir = make_bundle("weather", "1.0.0")
        outside = tmp_path / "outside"
        (outside / "1.0.0").mkdir(parents=True)
        (outside / "1.0.0" / "precious.txt").write_text("keep")
        install_root.mkdir(parents=True)
        (install_root / "weather").symlink_to(outside, target_is_directory=True)
        with pytest.raises(SkillReferenceError, match="escapes install root"):
            await install_skill(
                "weather@1.0.0",
                registry=SignedRegistry(bundle_dir, SkillManifest.from_file(bundle_dir / "manifest.json")),
                plan=_plan(),
                install_root=install_root,
            )
        assert (outside / "1.0.0" / "precious.txt").read_text() == "keep"

    @pytest.mark.asyncio
    async def test_version_sanitized_in_path(self, install_root: Path, make_bundle: Callable[..., Path]) -> None:
        bundle_dir = make_bundle("weather", "1.0.0")
        manifest = SkillManifest.from_file(bundle_dir / "manifest.json")
        registry = SignedRegistry(bundle_dir, manifest)
        installed = await install_skill(
            "weather@1.0.0+build/7",
            registry=registry,
            plan=_plan(),
            install_root=install_root,
        )
        assert installed.install_path == install_root / "weather" / "1.0.0-build-7"
        assert installed.version == "1.0.0+build/7"
        provenance = json.loads((installed.install_path / PROVENANCE_FILENAME).read_text())
        assert provenance["source"]["version"] == "1.0.0+build/7"


class TestInstallSignature:
    @pytest.mark.asyncio
    async def test_valid_signature_with_trust_anchor(
        self, install_root: Path, make_bundle: Callable[..., Path], recording_logger: Any,
    ) -> None:
        bundle_dir = make_bundle("weather", "1.0.0")
        registry = SignedRegistry(bundle_dir, _signed_manifest(bundle_dir))
        installed = await install_skill(
            "weather@1.0.0",
            registry=registry,
            plan=_plan(require_signature=True),
            install_root=install_root,
            trust_anchors={"release": SECRET},
            logger=recording_logger,
        )
        assert installed.checksum_verified is True
        assert installed.signature_verified is True
        audit = json.loads((installed.install_path / AUDIT_FILENAME).read_text())
        assert audit["signatureVerified"] is True
        assert audit["signatureFallbackReason"] is None
        assert not any(f["stage"] == "signature" for f in recording_logger.find("skill_install_verification_fallback"))

    @pytest.mark.asyncio
    async def test_unknown_anchor_rejected(
        self, install_root: Path, make_bundle: Callable[..., Path], recording_logger: Any,
    ) -> None:
        bundle_dir = make_bundle("weather", "1.0.0")
        registry = SignedRegistry(bundle_dir, _signed_manifest(bundle_dir, key_id="rogue"))
        with pytest.raises(SignatureVerificationError) as exc_info:
            await install_skill(
                "weather@1.0.0",
                registry=registry,
                plan=_plan(require_signature=True),
                install_root=install_root,
                trust_anchors={"release": SECRET},
                logger=recording_logger,
            )
        assert exc_info.value.error_code == "UNKNOWN_TRUST_ANCHOR"
        assert not install_root.exists()
        failed = recording_logger.find("skill_install_verification_failed")
        assert failed == [{"skill": "weather@1.0.0", "stage": "signature", "reason": "UNKNOWN_TRUST_ANCHOR"}]

    @pytest.mark.asyncio
    async def test_wrong_secret_rejected(self, install_root: Path, make_bundle: Callable[..., Path]) -> None:
        bundle_dir = make_bundle("weather", "1.0.0")
        registry = SignedRegistry(bundle_dir, _signed_manifest(bundle_dir, secret="forged"))
        with pytest.raises(SignatureVerificationError) as exc_info:
            await install_skill(
                "weather@1.0.0",
                registry=registry,
                plan=_plan(require_signature=True),
                install_root=install_root,
                trust_anchors={"release": SECRET},
            )
        assert exc_info.value.error_code == "SIGNATURE_MISMATCH"

    @pytest.mark.asyncio
    async def test_custom_verifier_reason_propagates(
        self, registry_root: Path, install_root: Path, make_bundle: Callable[..., Path],
    ) -> None:
        make_bundle("weather", "1.0.0")
        verifier = StaticVerifier(SignatureVerificationResult(ok=False))
        with pytest.raises(SignatureVerificationError) as exc_info:
            await install_skill(
                "weather@1.0.0",
                registry=LocalRegistryClient(registry_root),
                plan=_plan(require_signature=True),
                install_root=install_root,
                signature_verifier=verifier,
            )
        assert exc_info.value.error_code == "SIGNATURE_VERIFICATION_FAILED"
        assert verifier.calls == 1

    @pytest.mark.asyncio
    async def test_verifier_not_called_when_disabled(
        self, registry_root: Path, install_root: Path, make_bundle: Callable[..., Path],
    ) -> None:
        make_bundle("weather", "1.0.0")
        verifier = StaticVerifier(SignatureVerificationResult(ok=False, reason="NOPE"))
        installed = await install_skill(
            "weather@1.0.0",
            registry=LocalRegistryClient(registry_root),
            plan=_plan(),
            install_root=install_root,
            signature_verifier=verifier,
        )
        assert verifier.calls == 0
        assert installed.signature_verified is False


class TestInstallCircuitBreaker:
    @pytest.mark.asyncio
    async def test_failures_open_circuit(self, install_root: Path) -> None:
        breaker = CircuitBreaker(max_failures=2, base_backoff_seconds=60.0, name="registry")
        registry = FailingRegistry(RegistryError("registry down"))
        for _ in range(2):
            with pytest.raises(RegistryError):
                await install_skill(
                    "weather@1.0.0",
                    registry=registry,
                    plan=_plan(),
                    install_root=install_root,
                    breaker=breaker,
                )
        with pytest.raises(CircuitOpenError):
            await install_skill(
                "weather@1.0.0",
                registry=registry,
                plan=_plan(),
                install_root=install_root,
                breaker=breaker,
            )
        assert len(registry.calls) == 2

    @pytest.mark.asyncio
    async def test_success_resets(
        self, registry_root: Path, install_root: Path, make_bundle: Callable[..., Path],
    ) -> None:
        make_bundle("weather", "1.0.0")
        breaker = CircuitBreaker(max_failures=3)
        breaker.record_failure()
        await install_skill(
            "weather@1.0.0",
            registry=LocalRegistryClient(registry_root),
            plan=_plan(),
            install_root=install_root,
            breaker=breaker,
        )
        assert breaker.failure_count == 0
