"""Conversation threads anchored to line ranges.

The store lives in :mod:`marginalia.threads.store`; it depends on the
persistence services, which in turn import these models.
"""

from .export import export_filename, export_thread_text
from .models import Message, MessageRole, Thread, ThreadStatus

__all__ = [
    "Message",
    "MessageRole",
    "Thread",
    "ThreadStatus",
    "export_filename",
    "export_thread_text",
]
