"""
Error taxonomy for kbchat.

Core errors (load, validation, ranking) propagate untouched; only the HTTP
layer in ``routes/chat.py`` turns them into status codes.
"""
from typing import Optional


class KBChatError(Exception):
    """Base class for every error raised by kbchat."""


class ConfigError(KBChatError):
    """Unknown profile, provider or otherwise unusable configuration."""


class LoadError(KBChatError):
    """Knowledge source is missing, unreadable or not valid JSON."""

    def __init__(self, message: str, source: Optional[str] = None):
        super().__init__(message)
        self.source = source


class EmptyKnowledgeBase(LoadError):
    """Knowledge source was read but no entry survived validation."""

    def __init__(self, message: str, source: Optional[str] = None, dropped: int = 0):
        super().__init__(message, source=source)
        self.dropped = dropped


class DimensionMismatch(KBChatError, ValueError):
    """Query and stored embeddings come from differently sized models."""

    def __init__(self, expected: int, actual: int, title: Optional[str] = None):
        where = f" (entry {title!r})" if title else ""
        super().__init__(f"Embedding dimension mismatch: query has {expected}, stored has {actual}{where}")
        self.expected = expected
        self.actual = actual
        self.title = title


class EmbeddingError(KBChatError):
    """The embedding provider failed or returned nothing usable."""

    def __init__(self, message: str, provider: Optional[str] = None):
        super().__init__(message)
        self.provider = provider


class CompletionError(KBChatError):
    """The completion provider failed to start or broke mid-stream."""

    def __init__(self, message: str, provider: Optional[str] = None):
        super().__init__(message)
        self.provider = provider


class InvalidRequest(KBChatError, ValueError):
    """Malformed chat payload; ``index`` points at the offending message."""

    def __init__(self, message: str, index: Optional[int] = None):
        super().__init__(message)
        self.index = index
