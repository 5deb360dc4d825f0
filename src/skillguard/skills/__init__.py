"""SkillGuard Skills-Paket.

Lieferkette und Ausführung von Drittanbieter-Skills:

  - ``checksum``: deterministische Checksumme über den Bundle-Baum
  - ``trust_anchor``: HMAC-Signaturen über Manifeste
  - ``installer``: Policy, Verifikation, Platzierung, Audit
  - ``sandbox`` / ``sandbox_worker``: Ausführung in einem Worker-Prozess

Über ``skillguard.skills.cli`` lassen sich Checksummen berechnen,
Manifeste signieren, Skills installieren und ausführen.
"""

from .checksum import checksum_directory_tree  # noqa: F401
from .installer import install_skill  # noqa: F401
from .models import (  # noqa: F401
    InstalledSkill,
    InstallPlan,
    SkillBundle,
    SkillManifest,
    SkillRef,
)
from .registry import LocalRegistryClient, parse_pinned_skill_ref  # noqa: F401
from .sandbox import SkillSandbox, create_skill_sandbox  # noqa: F401
from .trust_anchor import create_verifier, parse_trust_anchors, sign_manifest  # noqa: F401
