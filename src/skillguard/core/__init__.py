"""SkillGuard core module."""

from skillguard.core.circuit_breaker import CircuitBreaker, CircuitBreakerState  # noqa: F401
from skillguard.core.errors import (  # noqa: F401
    ChecksumMismatchError,
    CircuitOpenError,
    CommandBlockedError,
    ConfigError,
    EgressBlockedError,
    InstallPolicyDenied,
    IntegrityError,
    MissingChecksumError,
    PolicyViolation,
    RegistryError,
    SandboxClosedError,
    SandboxError,
    SandboxExecutionError,
    SandboxTimeoutError,
    SignatureVerificationError,
    SkillExecutionTimeout,
    SkillGuardError,
    SkillReferenceError,
)
