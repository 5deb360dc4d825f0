"""
SkillGuard · Configuration system.

Loads configuration from:
  1. Defaults (defined here)
  2. ~/.skillguard/config.yaml (overrides defaults)
  3. Environment variables SKILLGUARD_* (overrides everything)

The sandbox section doubles as the worker's environment contract:
the supervisor serialises it with ``SandboxSettings.to_worker_env()`` and
the worker reads it back with ``SandboxSettings.from_env()``.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Mapping
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, field_validator

from skillguard.skills.trust_anchor import parse_trust_anchors

log = logging.getLogger(__name__)

ENV_PREFIX = "SKILLGUARD_"


def _split_list(value: Any) -> Any:
    """Akzeptiert Listen auch als kommagetrennten String (aus Env/YAML)."""
    if value is None:
        return []
    if isinstance(value, str):
        return [entry.strip() for entry in value.split(",") if entry.strip()]
    return value


# ============================================================================
# Konfigurationsmodelle
# ============================================================================


class InstallSettings(BaseModel):
    """Installations-Policy und Vertrauensanker."""

    requested_by: str = "skillguard-cli"
    allowlist: list[str] = Field(default_factory=list)
    denylist: list[str] = Field(default_factory=list)
    require_pinned: bool = True
    require_checksum: bool = True
    require_signature: bool = False
    # keyId -> Secret. Wird nie neben Manifesten gespeichert.
    trust_anchors: dict[str, str] = Field(default_factory=dict, repr=False)
    root: Path | None = None

    @field_validator("allowlist", "denylist", mode="before")
    @classmethod
    def _lists(cls, value: Any) -> Any:
        return _split_list(value)

    @field_validator("trust_anchors", mode="before")
    @classmethod
    def _anchors(cls, value: Any) -> Any:
        return parse_trust_anchors(value)


class RegistrySettings(BaseModel):
    """Lokales Registry-Verzeichnis (<root>/<name>/<version>/manifest.json)."""

    root: Path | None = None


class SandboxSettings(BaseModel):
    """Sandbox-Supervisor und Worker-Policy."""

    enabled: bool = True
    entry_timeout_ms: int = Field(default=15_000, ge=1)
    egress_deny: bool = False
    egress_allowlist: list[str] = Field(default_factory=list)
    runtime_allowlist: list[str] = Field(default_factory=list)

    @field_validator("egress_allowlist", "runtime_allowlist", mode="before")
    @classmethod
    def _lists(cls, value: Any) -> Any:
        return _split_list(value)

    def to_worker_env(self) -> dict[str, str]:
        """Serialisiert die Policy als SKILLGUARD_SANDBOX_* Variablen."""
        prefix = f"{ENV_PREFIX}SANDBOX_"
        return {
            f"{prefix}ENTRY_TIMEOUT_MS": str(self.entry_timeout_ms),
            f"{prefix}EGRESS_DENY": "true" if self.egress_deny else "false",
            f"{prefix}EGRESS_ALLOWLIST": ",".join(self.egress_allowlist),
            f"{prefix}RUNTIME_ALLOWLIST": ",".join(self.runtime_allowlist),
        }

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> SandboxSettings:
        """Liest die Sandbox-Policy aus Umgebungsvariablen."""
        data = _apply_env_overrides({"sandbox": {}}, environ)
        return cls(**data["sandbox"])


class LoggingConfig(BaseModel):
    """Logging-Konfiguration."""

    level: str = "INFO"
    json_logs: bool = False
    console: bool = True


# ============================================================================
# Haupt-Konfiguration
# ============================================================================


class SkillGuardConfig(BaseModel):
    """Complete SkillGuard configuration."""

    home: Path = Field(default_factory=lambda: Path.home() / ".skillguard")
    install: InstallSettings = Field(default_factory=InstallSettings)
    registry: RegistrySettings = Field(default_factory=RegistrySettings)
    sandbox: SandboxSettings = Field(default_factory=SandboxSettings)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @property
    def install_root(self) -> Path:
        return self.install.root or self.home / "skills"

    @property
    def registry_root(self) -> Path:
        return self.registry.root or self.home / "registry"

    @property
    def logs_dir(self) -> Path:
        return self.home / "logs"


# ============================================================================
# Config-Laden
# ============================================================================


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Tiefes Mergen von zwei Dicts. Override gewinnt bei Konflikten."""
    result = base.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def _apply_env_overrides(
    data: dict[str, Any],
    environ: Mapping[str, str] | None = None,
) -> dict[str, Any]:
    """Wendet SKILLGUARD_* Umgebungsvariablen an.

    Konvention: SKILLGUARD_SECTION_KEY → data["section"]["key"]
    Beispiel: SKILLGUARD_SANDBOX_EGRESS_DENY → data["sandbox"]["egress_deny"]
    """
    source = os.environ if environ is None else environ
    for key, value in source.items():
        if not key.startswith(ENV_PREFIX):
            continue
        parts = key[len(ENV_PREFIX):].lower().split("_")
        if len(parts) >= 2:
            # In bestehende Sektionen absteigen, Rest als Blatt-Key
            node = data
            consumed = 0
            for i in range(len(parts) - 1):
                candidate = parts[i]
                if candidate in node and isinstance(node[candidate], dict):
                    node = node[candidate]
                    consumed = i + 1
                else:
                    break
            if consumed == 0:
                section = parts[0]
                if section not in node:
                    node[section] = {}
                if isinstance(node[section], dict):
                    node = node[section]
                    consumed = 1
            leaf_key = "_".join(parts[consumed:])
            if leaf_key:
                node[leaf_key] = value
        elif len(parts) == 1:
            data[parts[0]] = value
    return data


def load_config(
    config_path: Path | None = None,
    environ: Mapping[str, str] | None = None,
) -> SkillGuardConfig:
    """Lädt die Konfiguration.

    Reihenfolge (spätere überschreiben frühere):
      1. Defaults (in den Pydantic-Modellen)
      2. config.yaml (wenn vorhanden)
      3. SKILLGUARD_* Umgebungsvariablen

    Args:
        config_path: Expliziter Pfad zur config.yaml. Wenn None: ~/.skillguard/config.yaml
        environ: Umgebungsvariablen (Default: os.environ).

    Returns:
        Vollständig validierte SkillGuardConfig.
    """
    data: dict[str, Any] = {}

    if config_path is None:
        config_path = Path.home() / ".skillguard" / "config.yaml"

    if config_path.exists():
        try:
            with open(config_path, encoding="utf-8") as f:
                file_data = yaml.safe_load(f) or {}
            if isinstance(file_data, dict):
                data = _deep_merge(data, file_data)
        except yaml.YAMLError as exc:
            log.warning("Fehlerhafte config.yaml wird ignoriert: %s", exc)

    data = _apply_env_overrides(data, environ)

    return SkillGuardConfig(**data)
