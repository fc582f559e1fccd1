"""Service layer helpers (settings, persistence, review sessions)."""

from .settings import AISettings, SecretVault, apply_env_overrides, redact_secret

__all__ = ["AISettings", "SecretVault", "apply_env_overrides", "redact_secret"]
