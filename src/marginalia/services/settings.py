"""AI settings dataclass, environment overrides and secret handling."""

from __future__ import annotations

import logging
import os
from dataclasses import asdict, dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Dict, Mapping

from cryptography.fernet import Fernet, InvalidToken

__all__ = [
    "AISettings",
    "DEFAULT_API_KEYS",
    "PROVIDER_CHOICES",
    "SecretVault",
    "apply_env_overrides",
    "redact_secret",
]

LOGGER = logging.getLogger(__name__)
_SETTINGS_DIR = Path.home() / ".marginalia"
PROVIDER_CHOICES: tuple[str, ...] = ("mock", "openai", "anthropic")
DEFAULT_API_KEYS: Mapping[str, str] = {"openai": "", "anthropic": ""}
_ENV_OVERRIDES: Mapping[str, str] = {
    "MARGINALIA_PROVIDER": "provider",
    "MARGINALIA_MODEL": "model",
}
_API_KEY_ENV_OVERRIDES: Mapping[str, str] = {
    "MARGINALIA_OPENAI_API_KEY": "openai",
    "MARGINALIA_ANTHROPIC_API_KEY": "anthropic",
}
_FLOAT_ENV_OVERRIDES: Mapping[str, str] = {
    "MARGINALIA_REQUEST_TIMEOUT": "request_timeout",
    "MARGINALIA_TEMPERATURE": "temperature",
}
_INT_ENV_OVERRIDES: Mapping[str, str] = {
    "MARGINALIA_MAX_TOKENS": "max_tokens",
    "MARGINALIA_MAX_RETRIES": "max_retries",
}


@dataclass(slots=True)
class AISettings:
    """Process-wide AI configuration read on every query."""

    provider: str = "mock"
    model: str = "gpt-4o-mini"
    api_keys: dict[str, str] = field(default_factory=lambda: dict(DEFAULT_API_KEYS))
    base_urls: dict[str, str] = field(default_factory=dict)
    request_timeout: float = 30.0
    temperature: float = 0.7
    max_tokens: int = 500
    max_retries: int = 2
    retry_min_seconds: float = 0.5
    retry_max_seconds: float = 4.0

    def api_key_for(self, provider: str | None = None) -> str:
        return (self.api_keys.get(provider or self.provider) or "").strip()

    def with_provider(self, provider: str) -> "AISettings":
        return replace(self, provider=provider)

    def with_model(self, model: str) -> "AISettings":
        return replace(self, model=model)

    def with_api_key(self, provider: str, key: str) -> "AISettings":
        api_keys = dict(self.api_keys)
        api_keys[provider] = key
        return replace(self, api_keys=api_keys)

    def merged(self, **updates: Any) -> "AISettings":
        allowed = {item.name for item in fields(AISettings)}
        unknown = sorted(set(updates) - allowed)
        if unknown:
            raise ValueError(f"Unknown AI settings field(s): {', '.join(unknown)}")
        return replace(self, **updates)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any] | None) -> "AISettings":
        if not payload:
            return cls()
        allowed = {item.name for item in fields(cls)}
        data = {key: value for key, value in payload.items() if key in allowed}
        api_keys = dict(DEFAULT_API_KEYS)
        raw_keys = data.get("api_keys")
        if isinstance(raw_keys, Mapping):
            api_keys.update({str(k): str(v or "") for k, v in raw_keys.items()})
        data["api_keys"] = api_keys
        raw_urls = data.get("base_urls")
        data["base_urls"] = dict(raw_urls) if isinstance(raw_urls, Mapping) else {}
        try:
            return cls(**data)
        except TypeError as exc:
            LOGGER.warning("AI settings payload contained unexpected data: %s", exc)
            return cls()

    def redacted(self) -> Dict[str, Any]:
        payload = self.to_dict()
        payload["api_keys"] = {name: redact_secret(value) for name, value in self.api_keys.items()}
        return payload


def apply_env_overrides(settings: AISettings, environ: Mapping[str, str] | None = None) -> AISettings:
    """Return ``settings`` with ``MARGINALIA_*`` environment overrides applied."""

    env = os.environ if environ is None else environ
    overrides: Dict[str, Any] = {}
    for env_name, field_name in _ENV_OVERRIDES.items():
        value = env.get(env_name)
        if value is not None:
            overrides[field_name] = value.strip()
    for env_name, field_name in _FLOAT_ENV_OVERRIDES.items():
        value = env.get(env_name)
        if value is None:
            continue
        try:
            overrides[field_name] = float(value)
        except ValueError:
            LOGGER.warning("Environment override %s=%s is not a valid float", env_name, value)
    for env_name, field_name in _INT_ENV_OVERRIDES.items():
        value = env.get(env_name)
        if value is None:
            continue
        try:
            overrides[field_name] = int(value, 10)
        except ValueError:
            LOGGER.warning("Environment override %s=%s is not a valid integer", env_name, value)
    api_keys = dict(settings.api_keys)
    for env_name, provider in _API_KEY_ENV_OVERRIDES.items():
        value = env.get(env_name)
        if value:
            api_keys[provider] = value.strip()
    if api_keys != settings.api_keys:
        overrides["api_keys"] = api_keys
    if overrides:
        LOGGER.debug("Applying environment AI settings overrides: %s", sorted(overrides))
        settings = replace(settings, **overrides)
    return settings


def redact_secret(value: str | None) -> str:
    """Return a log-safe representation of an API key."""

    if not value:
        return ""
    if len(value) <= 8:
        return "•" * len(value)
    return f"{value[:4]}…{value[-4:]}"


class SecretVault:
    """Encrypts API keys with a Fernet key stored beside the state file."""

    strategy = "fernet"

    def __init__(self, key_path: Path | None = None) -> None:
        self._key_path = key_path or (_SETTINGS_DIR / "state.key")
        self._fernet: Fernet | None = None

    @property
    def key_path(self) -> Path:
        return self._key_path

    def encrypt(self, secret: str) -> str:
        if not secret:
            return ""
        token = self._get_fernet().encrypt(secret.encode("utf-8"))
        return token.decode("ascii")

    def decrypt(self, token: str) -> str:
        if not token:
            return ""
        try:
            raw = self._get_fernet().decrypt(token.encode("ascii"))
        except InvalidToken:
            LOGGER.warning("Stored API key could not be decrypted with %s", self._key_path)
            return ""
        return raw.decode("utf-8")

    def _get_fernet(self) -> Fernet:
        if self._fernet is None:
            self._fernet = Fernet(self._load_or_create_key())
        return self._fernet

    def _load_or_create_key(self) -> bytes:
        path = self._key_path
        path.parent.mkdir(parents=True, exist_ok=True)
        if path.exists():
            return path.read_bytes().strip()
        key = Fernet.generate_key()
        tmp_path = path.with_suffix(path.suffix + ".tmp")
        tmp_path.write_bytes(key)
        if os.name != "nt":  # pragma: no cover - depends on OS
            os.chmod(tmp_path, 0o600)
        tmp_path.replace(path)
        return key
