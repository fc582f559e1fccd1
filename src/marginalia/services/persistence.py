"""Persistence port and adapters for the review workspace snapshot."""

from __future__ import annotations

import copy
import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Mapping, Protocol

from ..threads.models import Thread
from .settings import _SETTINGS_DIR, AISettings, SecretVault

__all__ = [
    "STORAGE_NAMESPACE",
    "InMemoryPersistence",
    "JsonFilePersistence",
    "PersistencePort",
    "WorkspaceSnapshot",
]

LOGGER = logging.getLogger(__name__)
STORAGE_NAMESPACE = "code-review-storage"
_SNAPSHOT_VERSION = 1
_API_KEYS_CIPHERTEXT_FIELD = "api_keys_ciphertext"


def _default_state_path() -> Path:
    return _SETTINGS_DIR / "state.json"


@dataclass(slots=True)
class WorkspaceSnapshot:
    """Everything that survives a restart."""

    threads: list[Thread] = field(default_factory=list)
    active_thread_id: str | None = None
    ai_settings: AISettings = field(default_factory=AISettings)
    document_text: str = ""
    document_language: str = "plaintext"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "version": _SNAPSHOT_VERSION,
            "threads": [thread.to_dict() for thread in self.threads],
            "active_thread_id": self.active_thread_id,
            "ai_settings": self.ai_settings.to_dict(),
            "document_text": self.document_text,
            "document_language": self.document_language,
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "WorkspaceSnapshot":
        threads: list[Thread] = []
        for item in payload.get("threads") or []:
            if not isinstance(item, Mapping):
                continue
            try:
                threads.append(Thread.from_dict(item))
            except (TypeError, ValueError) as exc:
                LOGGER.warning("Skipping unreadable thread record %s: %s", item.get("id"), exc)
        thread_ids = {thread.id for thread in threads}
        active = payload.get("active_thread_id")
        settings_payload = payload.get("ai_settings")
        return cls(
            threads=threads,
            active_thread_id=active if active in thread_ids else None,
            ai_settings=AISettings.from_dict(settings_payload if isinstance(settings_payload, Mapping) else None),
            document_text=str(payload.get("document_text") or ""),
            document_language=str(payload.get("document_language") or "plaintext"),
        )


class PersistencePort(Protocol):
    """Durable key/value storage for the workspace snapshot."""

    def load(self) -> WorkspaceSnapshot | None:  # pragma: no cover - protocol stub
        ...

    def save(self, snapshot: WorkspaceSnapshot) -> None:  # pragma: no cover - protocol stub
        ...


class InMemoryPersistence:
    """Port implementation holding a serialized copy in memory."""

    def __init__(self, snapshot: WorkspaceSnapshot | None = None) -> None:
        self._payload: Dict[str, Any] | None = snapshot.to_dict() if snapshot else None
        self.save_count = 0

    def load(self) -> WorkspaceSnapshot | None:
        if self._payload is None:
            return None
        return WorkspaceSnapshot.from_dict(copy.deepcopy(self._payload))

    def save(self, snapshot: WorkspaceSnapshot) -> None:
        self._payload = snapshot.to_dict()
        self.save_count += 1


class JsonFilePersistence:
    """JSON file adapter storing the snapshot under :data:`STORAGE_NAMESPACE`.

    API keys are encrypted with :class:`SecretVault` before they hit disk.
    """

    def __init__(self, path: Path | None = None, *, vault: SecretVault | None = None) -> None:
        self._path = path or _default_state_path()
        self._vault = vault or SecretVault(key_path=self._path.with_suffix(".key"))

    @property
    def path(self) -> Path:
        return self._path

    def load(self) -> WorkspaceSnapshot | None:
        payload = self._read_payload().get(STORAGE_NAMESPACE)
        if not isinstance(payload, Mapping):
            return None
        data = dict(payload)
        raw_settings = data.get("ai_settings")
        settings_payload = dict(raw_settings) if isinstance(raw_settings, Mapping) else {}
        ciphertexts = settings_payload.pop(_API_KEYS_CIPHERTEXT_FIELD, None)
        if isinstance(ciphertexts, Mapping):
            raw_keys = settings_payload.get("api_keys")
            api_keys = dict(raw_keys) if isinstance(raw_keys, Mapping) else {}
            for provider, token in ciphertexts.items():
                api_keys[str(provider)] = self._vault.decrypt(str(token or ""))
            settings_payload["api_keys"] = api_keys
        data["ai_settings"] = settings_payload
        snapshot = WorkspaceSnapshot.from_dict(data)
        LOGGER.debug(
            "Workspace loaded from %s: %d thread(s), active=%s",
            self._path,
            len(snapshot.threads),
            snapshot.active_thread_id,
        )
        return snapshot

    def save(self, snapshot: WorkspaceSnapshot) -> None:
        data = snapshot.to_dict()
        settings_payload = data["ai_settings"]
        api_keys = settings_payload.pop("api_keys", {}) or {}
        settings_payload[_API_KEYS_CIPHERTEXT_FIELD] = {
            provider: self._vault.encrypt(key) for provider, key in api_keys.items()
        }
        settings_payload["secret_backend"] = self._vault.strategy
        document = self._read_payload()
        document[STORAGE_NAMESPACE] = data
        body = json.dumps(document, indent=2, sort_keys=True, ensure_ascii=False)
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self._path.with_suffix(".tmp")
        tmp_path.write_text(body, encoding="utf-8")
        tmp_path.replace(self._path)
        LOGGER.debug("Workspace saved to %s: %d thread(s)", self._path, len(snapshot.threads))

    def _read_payload(self) -> Dict[str, Any]:
        if not self._path.exists():
            return {}
        try:
            text = self._path.read_text(encoding="utf-8")
            data = json.loads(text)
        except FileNotFoundError:
            return {}
        except json.JSONDecodeError as exc:
            LOGGER.warning("Workspace file %s is not valid JSON: %s", self._path, exc)
            return {}
        if isinstance(data, Mapping):
            return dict(data)
        return {}
