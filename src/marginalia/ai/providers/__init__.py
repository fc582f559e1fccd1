"""Provider backends behind the uniform query interface."""

from .base import Completion, ProviderBackend, ProviderCall, ProviderKind
from .chat import ChatCompletionsBackend
from .messages import MessagesBackend
from .mock import MockBackend

__all__ = [
    "ChatCompletionsBackend",
    "Completion",
    "MessagesBackend",
    "MockBackend",
    "ProviderBackend",
    "ProviderCall",
    "ProviderKind",
]
