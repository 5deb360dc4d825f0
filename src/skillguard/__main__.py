"""
SkillGuard -- Entry Point.

Usage: skillguard <command> ...
       python -m skillguard <command> ...
"""

from __future__ import annotations

import sys

from skillguard.skills.cli import main

if __name__ == "__main__":
    sys.exit(main())
