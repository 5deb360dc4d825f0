"""SkillGuard · Supply-chain checks and process isolation for third-party skills."""

__version__ = "0.3.0"
