"""
SkillGuard · Shared Test-Fixtures.

Alle Tests nutzen temporäre Verzeichnisse für Registry und
Installationsziel. Bundles werden pro Test frisch erzeugt.
"""

from __future__ import annotations

import json
from collections.abc import Callable
from pathlib import Path
from typing import Any

import pytest

from skillguard.skills.checksum import write_manifest_checksum

ECHO_SKILL = '''\
import asyncio


async def execute(payload, options):
    if options["command"] == "sleep":
        await asyncio.sleep(payload.get("seconds", 5))
    if options["command"] == "fail":
        raise RuntimeError("skill exploded")
    return {
        "echo": payload,
        "command": options["command"],
        "hosts": options["context"]["allowedEgressHosts"],
    }
'''


class RecordingLogger:
    """Strukturierter Logger, der alle Events mitschreibt."""

    def __init__(self) -> None:
        self.events: list[tuple[str, str, dict[str, Any]]] = []

    def _record(self, level: str, event: str, **fields: Any) -> None:
        self.events.append((level, event, fields))

    def debug(self, event: str, **fields: Any) -> None:
        self._record("debug", event, **fields)

    def info(self, event: str, **fields: Any) -> None:
        self._record("info", event, **fields)

    def warning(self, event: str, **fields: Any) -> None:
        self._record("warning", event, **fields)

    def error(self, event: str, **fields: Any) -> None:
        self._record("error", event, **fields)

    def names(self) -> list[str]:
        return [event for _, event, _ in self.events]

    def find(self, event: str) -> list[dict[str, Any]]:
        return [fields for _, name, fields in self.events if name == event]


@pytest.fixture
def recording_logger() -> RecordingLogger:
    return RecordingLogger()


@pytest.fixture
def registry_root(tmp_path: Path) -> Path:
    root = tmp_path / "registry"
    root.mkdir()
    return root


@pytest.fixture
def install_root(tmp_path: Path) -> Path:
    return tmp_path / "installed"


@pytest.fixture
def make_bundle(registry_root: Path) -> Callable[..., Path]:
    """Factory: legt ``<registry>/<name>/<version>`` mit Manifest und skill.py an."""

    def _make(
        name: str = "weather",
        version: str = "1.0.0",
        *,
        with_checksum: bool = True,
        code: str = ECHO_SKILL,
        extra_manifest: dict[str, Any] | None = None,
        files: dict[str, str] | None = None,
    ) -> Path:
        bundle = registry_root / name / version
        bundle.mkdir(parents=True)
        manifest: dict[str, Any] = {
            "name": name,
            "version": version,
            "description": f"{name} skill",
            "entrypoint": "skill.py",
            "permissions": {"allowedEgressHosts": [], "commands": ["default"]},
        }
        manifest.update(extra_manifest or {})
        (bundle / "manifest.json").write_text(json.dumps(manifest, indent=2), encoding="utf-8")
        (bundle / "skill.py").write_text(code, encoding="utf-8")
        for relative, content in (files or {}).items():
            target = bundle / relative
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_text(content, encoding="utf-8")
        if with_checksum:
            write_manifest_checksum(bundle)
        return bundle

    return _make


@pytest.fixture
def skill_dir(tmp_path: Path) -> Path:
    """Ausführbarer Skill für Sandbox-Tests."""
    d = tmp_path / "skill"
    d.mkdir()
    (d / "skill.py").write_text(ECHO_SKILL, encoding="utf-8")
    return d
