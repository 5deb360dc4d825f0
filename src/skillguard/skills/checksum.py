"""Deterministische Checksumme über den Dateibaum eines Skill-Bundles.

Jede Datei liefert einen Eintrag ``<relativer-pfad>:<hex(inhalt)>``.
Die Einträge werden lexikographisch sortiert, mit ``\\n`` verbunden und
einmal mit SHA-256 gehasht. Damit ist das Ergebnis unabhängig von der
Reihenfolge, in der das Dateisystem die Einträge liefert, und der Pfad
gehört zum gehashten Material (Umbenennen ändert die Checksumme).

Sonderfall manifest.json: das Feld ``checksum`` wird vor dem Hashen
entfernt. So kann ein Manifest die Checksumme seines eigenen Bundles
enthalten, ohne dass eine Zirkularität entsteht.

Format-Festlegungen: Pfade sind POSIX-relativ und beginnen ohne ``/``.
Das Manifest wird kompakt mit ``json.dumps`` neu serialisiert, Zahlen
also in Python-Schreibweise (``1.0`` bleibt ``1.0``, nicht ``1``).
Checksummen aus Werkzeugen, die Pfade mit führendem ``/`` aufnehmen
oder Zahlen anders normalisieren, stimmen deshalb nicht überein.
"""

from __future__ import annotations

import hashlib
import json
from pathlib import Path
from typing import Any

from skillguard.skills.models import MANIFEST_FILENAME

__all__ = ["checksum_directory_tree", "write_manifest_checksum"]


def _manifest_material(data: bytes) -> bytes | None:
    """Normalisierte Manifest-Bytes ohne ``checksum``; None = Rohbytes verwenden."""
    try:
        parsed: Any = json.loads(data.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError):
        return None
    if not isinstance(parsed, dict):
        return None
    parsed.pop("checksum", None)
    return json.dumps(parsed, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def checksum_directory_tree(root: Path | str) -> str:
    """Berechnet die SHA-256-Checksumme (hex) eines Verzeichnisbaums.

    Args:
        root: Wurzel des Bundles.

    Returns:
        Hex-Digest.

    Raises:
        FileNotFoundError: ``root`` existiert nicht.
        NotADirectoryError: ``root`` ist kein Verzeichnis.
    """
    root = Path(root)
    if not root.exists():
        raise FileNotFoundError(f"skill bundle not found: {root}")
    if not root.is_dir():
        raise NotADirectoryError(f"skill bundle is not a directory: {root}")

    records: list[str] = []
    for path in root.rglob("*"):
        if not path.is_file():
            continue
        data = path.read_bytes()
        material = None
        if path.name == MANIFEST_FILENAME:
            material = _manifest_material(data)
        if material is None:
            material = data
        relative = path.relative_to(root).as_posix()
        records.append(f"{relative}:{material.hex()}")

    records.sort()
    return hashlib.sha256("\n".join(records).encode("utf-8")).hexdigest()


def write_manifest_checksum(root: Path | str) -> str:
    """Berechnet die Checksumme und trägt sie in ``root/manifest.json`` ein.

    Weil ``checksum`` beim Hashen ignoriert wird, bleibt der Wert nach dem
    Schreiben gültig.
    """
    root = Path(root)
    manifest_path = root / MANIFEST_FILENAME
    data = json.loads(manifest_path.read_text(encoding="utf-8"))
    digest = checksum_directory_tree(root)
    data["checksum"] = digest
    manifest_path.write_text(json.dumps(data, indent=2, ensure_ascii=False), encoding="utf-8")
    return digest
