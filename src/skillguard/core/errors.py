"""SkillGuard · Unified Error Hierarchy.

All custom exceptions inherit from SkillGuardError, which carries an
error_code and optional details dict for programmatic handling. The
error_code is the machine-readable reason that ends up in audit events
and in sandbox error frames.

Usage::

    from skillguard.core.errors import ChecksumMismatchError

    raise ChecksumMismatchError(
        "Checksum mismatch for weather@1.0.0",
        details={"expected": declared, "computed": computed},
    )
"""

from __future__ import annotations


class SkillGuardError(Exception):
    """Base exception for all SkillGuard errors."""

    def __init__(
        self,
        message: str,
        error_code: str = "SKILLGUARD_ERROR",
        details: dict | None = None,
    ) -> None:
        super().__init__(message)
        self.error_code = error_code
        self.details = details or {}


class ConfigError(SkillGuardError):
    """Configuration-related errors (loading, validation, missing keys)."""

    def __init__(
        self,
        message: str,
        error_code: str = "CONFIG_ERROR",
        details: dict | None = None,
    ) -> None:
        super().__init__(message, error_code=error_code, details=details)


class SkillReferenceError(SkillGuardError):
    """A skill reference could not be parsed (e.g. not pinned as name@version)."""

    def __init__(
        self,
        message: str,
        error_code: str = "INVALID_SKILL_REFERENCE",
        details: dict | None = None,
    ) -> None:
        super().__init__(message, error_code=error_code, details=details)


class RegistryError(SkillGuardError):
    """The registry could not resolve a skill or returned an invalid bundle."""

    def __init__(
        self,
        message: str,
        error_code: str = "REGISTRY_ERROR",
        details: dict | None = None,
    ) -> None:
        super().__init__(message, error_code=error_code, details=details)


# ============================================================================
# Policy
# ============================================================================


class PolicyViolation(SkillGuardError):
    """Policy violations (allow/deny lists, runtime and egress policy)."""

    def __init__(
        self,
        message: str,
        error_code: str = "POLICY_VIOLATION",
        details: dict | None = None,
    ) -> None:
        super().__init__(message, error_code=error_code, details=details)


class InstallPolicyDenied(PolicyViolation):
    """Installation denied by the allowlist/denylist policy."""

    def __init__(
        self,
        message: str,
        error_code: str = "INSTALL_POLICY_DENIED",
        details: dict | None = None,
    ) -> None:
        super().__init__(message, error_code=error_code, details=details)


class CommandBlockedError(PolicyViolation):
    """A skill command is not on the runtime allowlist."""

    def __init__(
        self,
        message: str,
        error_code: str = "COMMAND_BLOCKED",
        details: dict | None = None,
    ) -> None:
        super().__init__(message, error_code=error_code, details=details)


class EgressBlockedError(PolicyViolation):
    """Outbound network call rejected by the sandbox egress policy."""

    def __init__(
        self,
        message: str,
        error_code: str = "EGRESS_BLOCKED",
        details: dict | None = None,
    ) -> None:
        super().__init__(message, error_code=error_code, details=details)


# ============================================================================
# Integrity / Authenticity
# ============================================================================


class IntegrityError(SkillGuardError):
    """Bundle content does not match what its manifest declares."""

    def __init__(
        self,
        message: str,
        error_code: str = "INTEGRITY_ERROR",
        details: dict | None = None,
    ) -> None:
        super().__init__(message, error_code=error_code, details=details)


class MissingChecksumError(IntegrityError):
    """Checksum enforcement is on but the manifest declares none."""

    def __init__(
        self,
        message: str,
        error_code: str = "MISSING_CHECKSUM",
        details: dict | None = None,
    ) -> None:
        super().__init__(message, error_code=error_code, details=details)


class ChecksumMismatchError(IntegrityError):
    """Computed tree digest differs from the declared checksum."""

    def __init__(
        self,
        message: str,
        error_code: str = "CHECKSUM_MISMATCH",
        details: dict | None = None,
    ) -> None:
        super().__init__(message, error_code=error_code, details=details)


class SignatureVerificationError(SkillGuardError):
    """Manifest signature could not be verified against a trust anchor.

    The error_code is the verifier's reason (e.g. UNKNOWN_TRUST_ANCHOR).
    """

    def __init__(
        self,
        message: str,
        error_code: str = "SIGNATURE_VERIFICATION_FAILED",
        details: dict | None = None,
    ) -> None:
        super().__init__(message, error_code=error_code, details=details)


# ============================================================================
# Sandbox
# ============================================================================


class SandboxError(SkillGuardError):
    """Sandbox-related errors (spawn, transport, worker exit)."""

    def __init__(
        self,
        message: str,
        error_code: str = "SANDBOX_ERROR",
        details: dict | None = None,
    ) -> None:
        super().__init__(message, error_code=error_code, details=details)


class SandboxClosedError(SandboxError):
    """The sandbox was closed before or while a call was pending."""

    def __init__(
        self,
        message: str = "sandbox closed",
        error_code: str = "SANDBOX_CLOSED",
        details: dict | None = None,
    ) -> None:
        super().__init__(message, error_code=error_code, details=details)


class SandboxTimeoutError(SandboxError):
    """No response arrived within the per-call timeout (host side)."""

    def __init__(
        self,
        message: str,
        error_code: str = "SANDBOX_TIMEOUT",
        details: dict | None = None,
    ) -> None:
        super().__init__(message, error_code=error_code, details=details)


class SandboxExecutionError(SandboxError):
    """The worker answered a call with an error frame."""

    def __init__(
        self,
        message: str,
        error_code: str = "SANDBOX_EXECUTION_FAILED",
        details: dict | None = None,
    ) -> None:
        super().__init__(message, error_code=error_code, details=details)


class SkillExecutionTimeout(SandboxError):
    """Skill code exceeded the execution timeout inside the worker."""

    def __init__(
        self,
        message: str = "skill execution timed out",
        error_code: str = "SKILL_EXECUTION_TIMEOUT",
        details: dict | None = None,
    ) -> None:
        super().__init__(message, error_code=error_code, details=details)


class CircuitOpenError(SkillGuardError):
    """The circuit breaker for a resource is in its cooldown window."""

    def __init__(
        self,
        message: str,
        error_code: str = "CIRCUIT_OPEN",
        details: dict | None = None,
    ) -> None:
        super().__init__(message, error_code=error_code, details=details)
