"""Datenmodell der Skill-Lieferkette.

SkillManifest ist ein Pydantic-Modell mit camelCase-Aliasen, weil die
manifest.json-Dateien der Bundles so aussehen. ``to_dict()`` liefert
genau die Schlüssel, die im Quelldokument standen: das ist das Material,
über das Checksumme und Signatur gebildet werden.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from skillguard.core.errors import RegistryError

MANIFEST_FILENAME = "manifest.json"

__all__ = [
    "MANIFEST_FILENAME",
    "InstallPlan",
    "InstalledSkill",
    "SkillBundle",
    "SkillManifest",
    "SkillPermissions",
    "SkillRef",
]


@dataclass(frozen=True)
class SkillRef:
    """Referenz auf einen Skill. ``version="latest"`` = nicht gepinnt."""

    name: str
    version: str

    @property
    def identity(self) -> str:
        return f"{self.name}@{self.version}"


class SkillPermissions(BaseModel):
    """Laufzeitrechte, die ein Skill im Manifest anfordert."""

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    allowed_egress_hosts: list[str] = Field(default_factory=list, alias="allowedEgressHosts")
    commands: list[str] = Field(default_factory=list)


class SkillManifest(BaseModel):
    """Manifest eines Skill-Bundles (manifest.json)."""

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    name: str
    version: str
    description: str | None = None
    entrypoint: str | None = None
    checksum: str | None = None
    signature_algorithm: str | None = Field(default=None, alias="signatureAlgorithm")
    signature_key_id: str | None = Field(default=None, alias="signatureKeyId")
    signature: str | None = None
    permissions: SkillPermissions = Field(default_factory=SkillPermissions)

    @property
    def qualified_name(self) -> str:
        return f"{self.name}@{self.version}"

    def to_dict(self) -> dict[str, Any]:
        """Serialisiert mit Aliasen; nur Felder, die gesetzt wurden."""
        return self.model_dump(by_alias=True, exclude_unset=True, mode="json")

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SkillManifest:
        return cls.model_validate(data)

    @classmethod
    def from_file(cls, path: Path) -> SkillManifest:
        """Lädt und validiert eine manifest.json.

        Raises:
            RegistryError: Datei fehlt, ist kein JSON-Objekt oder
                name/version fehlen.
        """
        try:
            raw = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            raise RegistryError(
                f"invalid manifest at {path}: {exc}",
                details={"path": str(path)},
            ) from exc
        if not isinstance(raw, dict):
            raise RegistryError(f"invalid manifest at {path}", details={"path": str(path)})
        if not raw.get("name") or not raw.get("version"):
            raise RegistryError(
                f"manifest missing name/version at {path}",
                details={"path": str(path)},
            )
        try:
            return cls.model_validate(raw)
        except ValidationError as exc:
            raise RegistryError(
                f"invalid manifest at {path}: {exc}",
                details={"path": str(path)},
            ) from exc


@dataclass
class SkillBundle:
    """Aufgelöstes Bundle: Manifest + Quellverzeichnis."""

    manifest: SkillManifest
    source_path: Path

    def __post_init__(self) -> None:
        self.source_path = Path(self.source_path)


@dataclass(frozen=True)
class InstallPlan:
    """Installations-Policy, unveränderlich pro Aufruf."""

    requested_by: str
    allowlist: tuple[str, ...] = field(default_factory=tuple)
    denylist: tuple[str, ...] = field(default_factory=tuple)
    require_pinned: bool = True
    require_checksum: bool = True
    require_signature: bool = False

    def __post_init__(self) -> None:
        # Listen aus der Konfiguration einfrieren
        object.__setattr__(self, "allowlist", tuple(self.allowlist))
        object.__setattr__(self, "denylist", tuple(self.denylist))


@dataclass
class InstalledSkill:
    """Ergebnis einer erfolgreichen Installation."""

    name: str
    version: str
    install_path: Path
    checksum_verified: bool
    signature_verified: bool

    @property
    def qualified_name(self) -> str:
        return f"{self.name}@{self.version}"
