"""Vertrauensanker: HMAC-SHA256-Signaturen über Skill-Manifeste.

Ein Vertrauensanker ist ein benanntes Secret (keyId → Secret). Das
Manifest nennt in ``signatureKeyId`` den Anker, mit dem es signiert
wurde, und trägt die Signatur in ``signature``.

Signiert wird die kanonische Form des Manifests:
  - ``signature``, ``signatureKeyId`` und ``signatureAlgorithm`` entfernt
  - Schlüssel rekursiv sortiert
  - kompaktes JSON

Dadurch ist die Verifikation nicht zirkulär, und das Einfügen der
Signatur ins Manifest macht sie nicht ungültig.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
import re
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Protocol

from skillguard.skills.models import SkillManifest
from skillguard.utils.logging import get_logger

log = get_logger(__name__)

SUPPORTED_SIGNATURE_ALGORITHM = "hmac-sha256"

_SIGNATURE_FIELDS = ("signature", "signatureKeyId", "signatureAlgorithm")
_HEX_RE = re.compile(r"^[0-9a-fA-F]+$")

__all__ = [
    "SUPPORTED_SIGNATURE_ALGORITHM",
    "SignatureVerificationResult",
    "SignatureVerifier",
    "TrustAnchorVerifier",
    "canonical_signing_payload",
    "create_verifier",
    "parse_trust_anchors",
    "sign_manifest",
]


# ============================================================================
# Parsing
# ============================================================================


def parse_trust_anchors(raw: str | Mapping[str, Any] | None) -> dict[str, str]:
    """Normalisiert Vertrauensanker zu ``{keyId: secret}``.

    Akzeptiert ein JSON-Objekt (als String oder Mapping) oder eine
    kommagetrennte ``keyId=secret``-Liste. Leere Schlüssel/Werte werden
    verworfen, Whitespace wird entfernt.
    """
    if raw is None:
        return {}

    if isinstance(raw, Mapping):
        items: Mapping[str, Any] = raw
    else:
        text = str(raw).strip()
        if not text:
            return {}
        if text.startswith("{"):
            try:
                parsed = json.loads(text)
            except json.JSONDecodeError:
                log.warning("trust_anchors_invalid_json")
                return {}
            if not isinstance(parsed, dict):
                return {}
            items = parsed
        else:
            items = {}
            for token in text.split(","):
                key_id, sep, secret = token.strip().partition("=")
                if not sep:
                    continue
                items[key_id] = secret

    anchors: dict[str, str] = {}
    for key_id, value in items.items():
        key = str(key_id).strip()
        secret = value.strip() if isinstance(value, str) else ""
        if key and secret:
            anchors[key] = secret
    return anchors


# ============================================================================
# Signieren
# ============================================================================


def _normalize(value: Any) -> Any:
    if isinstance(value, list):
        return [_normalize(entry) for entry in value]
    if isinstance(value, dict):
        return {key: _normalize(value[key]) for key in sorted(value)}
    return value


def _manifest_dict(manifest: SkillManifest | Mapping[str, Any]) -> dict[str, Any]:
    if isinstance(manifest, SkillManifest):
        return manifest.to_dict()
    return dict(manifest)


def canonical_signing_payload(manifest: SkillManifest | Mapping[str, Any]) -> str:
    """Kanonische Form des Manifests ohne Signatur-Felder."""
    unsigned = _manifest_dict(manifest)
    for name in _SIGNATURE_FIELDS:
        unsigned.pop(name, None)
    return json.dumps(_normalize(unsigned), separators=(",", ":"), ensure_ascii=False)


def _digest(payload: str, secret: str) -> bytes:
    return hmac.new(secret.encode("utf-8"), payload.encode("utf-8"), hashlib.sha256).digest()


def sign_manifest(manifest: SkillManifest | Mapping[str, Any], secret: str) -> str:
    """Signiert ein Manifest mit HMAC-SHA256.

    Returns:
        Hex-encodierte Signatur.
    """
    return _digest(canonical_signing_payload(manifest), secret).hex()


def _decode_signature(signature: str) -> bytes | None:
    """Dekodiert Hex oder Base64/Base64url; None bei ungültiger Kodierung."""
    text = signature.strip()
    if not text:
        return None
    if _HEX_RE.match(text) and len(text) % 2 == 0:
        return bytes.fromhex(text)
    normalized = text.replace("-", "+").replace("_", "/")
    normalized += "=" * (-len(normalized) % 4)
    try:
        return base64.b64decode(normalized, validate=True)
    except (binascii.Error, ValueError):
        return None


# ============================================================================
# Verifikation
# ============================================================================


@dataclass(frozen=True)
class SignatureVerificationResult:
    """Ergebnis einer Signaturprüfung. ``reason`` ist ein Maschinencode."""

    ok: bool
    reason: str | None = None
    detail: str | None = None


class SignatureVerifier(Protocol):
    """Schnittstelle für austauschbare Signaturprüfer."""

    async def verify(
        self,
        manifest: SkillManifest,
        source_path: Path | None = None,
    ) -> SignatureVerificationResult: ...


class TrustAnchorVerifier:
    """Prüft Manifest-Signaturen gegen konfigurierte Vertrauensanker.

    ``source_path`` wird angenommen, aber nicht gebunden: die Signatur
    deckt nur das Manifest ab. Der Bundle-Inhalt ist über die Checksumme
    im Manifest mitgesichert.
    """

    def __init__(self, trust_anchors: Mapping[str, str]) -> None:
        self._anchors = dict(trust_anchors)

    @property
    def key_ids(self) -> list[str]:
        return sorted(self._anchors)

    async def verify(
        self,
        manifest: SkillManifest,
        source_path: Path | None = None,
    ) -> SignatureVerificationResult:
        algorithm = (manifest.signature_algorithm or SUPPORTED_SIGNATURE_ALGORITHM).strip().lower()
        if algorithm != SUPPORTED_SIGNATURE_ALGORITHM:
            return SignatureVerificationResult(
                ok=False, reason="UNSUPPORTED_SIGNATURE_ALGORITHM", detail=algorithm,
            )

        key_id = (manifest.signature_key_id or "").strip()
        secret = self._anchors.get(key_id) if key_id else None
        if secret is None:
            return SignatureVerificationResult(
                ok=False, reason="UNKNOWN_TRUST_ANCHOR", detail=key_id or None,
            )

        if not (manifest.signature or "").strip():
            return SignatureVerificationResult(ok=False, reason="MISSING_SIGNATURE")

        provided = _decode_signature(manifest.signature or "")
        if not provided:
            return SignatureVerificationResult(ok=False, reason="INVALID_SIGNATURE_ENCODING")

        expected = _digest(canonical_signing_payload(manifest), secret)
        if not hmac.compare_digest(provided, expected):
            return SignatureVerificationResult(ok=False, reason="SIGNATURE_MISMATCH")

        return SignatureVerificationResult(ok=True)


def create_verifier(trust_anchors: Mapping[str, str]) -> TrustAnchorVerifier:
    """Erzeugt einen Verifier über die gegebenen Vertrauensanker."""
    return TrustAnchorVerifier(trust_anchors)
