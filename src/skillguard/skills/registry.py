"""Registry-Schnittstelle und lokaler Verzeichnis-Adapter.

Der Installer kennt nur das Protokoll ``SkillRegistryClient``: eine
Referenz rein, ``SkillBundle`` (Manifest + Quellpfad) raus. Welche
Registry dahintersteht, ist Sache des Hosts.

``LocalRegistryClient`` bildet das einfachste Layout ab:

    <root>/<name>/<version>/manifest.json
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from skillguard.core.errors import RegistryError, SkillReferenceError
from skillguard.skills.models import MANIFEST_FILENAME, SkillBundle, SkillManifest, SkillRef

# Versionen, die nie als Pin gelten
FLOATING_VERSIONS = frozenset({"latest", "head", "main", "master", "edge"})
MAX_VERSION_LENGTH = 64
# Teile einer Referenz werden zu Pfadsegmenten
_PATH_SEGMENTS = frozenset({".", ".."})

__all__ = [
    "FLOATING_VERSIONS",
    "LocalRegistryClient",
    "RegistryHealth",
    "SkillRegistryClient",
    "parse_pinned_skill_ref",
    "validate_ref_part",
]


def validate_ref_part(value: str, reference: str, part: str = "name") -> str:
    """Lehnt Namen/Versionen ab, die als Pfadsegment ausbrechen könnten.

    Versionen dürfen Trenner enthalten, sie werden für den Zielpfad
    ohnehin bereinigt (``sanitize_version``). Namen nicht.
    """
    separators = part == "name" and ("/" in value or "\\" in value)
    if value in _PATH_SEGMENTS or separators or "\x00" in value:
        raise SkillReferenceError(
            f"invalid skill {part} '{value}'",
            details={"reference": reference},
        )
    return value


def parse_pinned_skill_ref(reference: str) -> SkillRef:
    """Parst ``name@version`` strikt.

    Raises:
        SkillReferenceError: Kein ``@``, leerer Teil, schwebende Version
            (latest, main, ...), zu lange Version, ``.``/``..`` als Name
            oder Version, Pfadtrenner im Namen.
    """
    if not reference or "@" not in reference:
        raise SkillReferenceError(
            "skill reference must be pinned as <name>@<version>",
            details={"reference": reference},
        )
    name, _, version = reference.partition("@")
    name = name.strip()
    version = version.strip()
    if not name or not version:
        raise SkillReferenceError(
            "skill reference must be pinned as <name>@<version>",
            details={"reference": reference},
        )
    if version.lower() in FLOATING_VERSIONS:
        raise SkillReferenceError(
            f"skill reference version must be pinned. Received {version}",
            details={"reference": reference},
        )
    if len(version) > MAX_VERSION_LENGTH:
        raise SkillReferenceError(
            f"invalid skill version '{version}'",
            details={"reference": reference},
        )
    validate_ref_part(name, reference)
    validate_ref_part(version, reference, "version")
    return SkillRef(name=name, version=version)


@dataclass
class RegistryHealth:
    ok: bool
    latency_ms: float
    error: str | None = None


class SkillRegistryClient(Protocol):
    """Kollaborateur, der eine Referenz zu einem Bundle auflöst."""

    async def resolve_skill(self, ref: SkillRef) -> SkillBundle: ...


class LocalRegistryClient:
    """Registry über ein lokales Verzeichnis.

    Args:
        root: Wurzelverzeichnis mit ``<name>/<version>/manifest.json``.
    """

    def __init__(self, root: Path | str) -> None:
        self._root = Path(root).expanduser().resolve()

    @property
    def root(self) -> Path:
        return self._root

    async def resolve_skill(self, ref: SkillRef) -> SkillBundle:
        source_path = self._root / ref.name / ref.version
        manifest_path = source_path / MANIFEST_FILENAME
        inside = source_path.resolve().is_relative_to(self._root)
        if not inside or not manifest_path.is_file():
            raise RegistryError(
                f"skill {ref.identity} not found in local registry",
                error_code="SKILL_NOT_FOUND",
                details={"path": str(manifest_path)},
            )
        manifest = await asyncio.to_thread(SkillManifest.from_file, manifest_path)
        if manifest.name != ref.name or manifest.version != ref.version:
            raise RegistryError(
                f"local manifest mismatch for {ref.identity}",
                error_code="MANIFEST_MISMATCH",
                details={"manifest": manifest.qualified_name},
            )
        return SkillBundle(manifest=manifest, source_path=source_path)

    async def list_skill_versions(self, name: str) -> list[str]:
        target = self._root / name
        if not target.is_dir():
            return []
        return sorted(entry.name for entry in target.iterdir() if entry.is_dir())

    async def healthcheck(self) -> RegistryHealth:
        started = time.monotonic()
        if not self._root.is_dir():
            return RegistryHealth(
                ok=False,
                latency_ms=(time.monotonic() - started) * 1000,
                error=f"registry root missing: {self._root}",
            )
        return RegistryHealth(ok=True, latency_ms=(time.monotonic() - started) * 1000)
