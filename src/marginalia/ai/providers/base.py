"""Backend contract shared by every AI provider variant."""

from __future__ import annotations

import inspect
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Any, AsyncIterator, ClassVar, Mapping, Sequence

from ..ai_types import StreamEvent

__all__ = ["Completion", "ProviderBackend", "ProviderCall", "ProviderKind", "close_quietly", "usage_to_dict"]

LOGGER = logging.getLogger(__name__)


class ProviderKind(Enum):
    """Wire-protocol family a provider speaks."""

    MOCK = "mock"
    CHAT_STYLE = "chat"
    MESSAGES_STYLE = "messages"


@dataclass(slots=True, frozen=True)
class ProviderCall:
    """Fully resolved parameters for one provider round trip."""

    provider_id: str
    model: str
    messages: Sequence[Mapping[str, str]]
    api_key: str = ""
    base_url: str | None = None
    temperature: float | None = 0.7
    max_tokens: int | None = 500
    timeout: float = 30.0


@dataclass(slots=True)
class Completion:
    """Backend output for a non-streamed call."""

    text: str
    usage: Mapping[str, Any] | None = None
    mock: bool = False
    confidence: float | None = None


class ProviderBackend(ABC):
    """One protocol implementation behind :class:`~marginalia.ai.client.ProviderAdapter`.

    Backends raise :class:`~marginalia.ai.errors.QueryError` subclasses for
    expected failures; the adapter turns those into failed results.
    """

    kind: ClassVar[ProviderKind]
    requires_api_key: ClassVar[bool] = True

    @abstractmethod
    async def complete(self, call: ProviderCall) -> Completion:
        """Return the full answer for ``call``."""

    @abstractmethod
    def stream(self, call: ProviderCall) -> AsyncIterator[StreamEvent]:
        """Yield ``content.delta`` events in arrival order, then ``content.done``."""

    async def aclose(self) -> None:
        return None


def usage_to_dict(usage: Any) -> dict[str, Any] | None:
    """Coerce SDK usage objects (pydantic models or mappings) into plain dicts."""

    if usage is None:
        return None
    if isinstance(usage, Mapping):
        return dict(usage)
    dump = getattr(usage, "model_dump", None)
    if callable(dump):
        return dict(dump())
    try:
        return dict(vars(usage))
    except TypeError:
        return None


async def close_quietly(resource: Any) -> None:
    """Close SDK clients that may expose sync or async ``close`` methods."""

    close = getattr(resource, "close", None)
    if close is None:
        return
    try:
        result = close()
    except Exception as exc:  # pragma: no cover
        LOGGER.debug("Provider client close failed to start: %s", exc)
        return
    if inspect.isawaitable(result):
        await result
