# core/tasks/errors.py


class IndexerError(Exception):
    """Base error for the market indexer."""


class FeedUnavailableError(IndexerError):
    """The chain feed cannot serve the request (disconnected or non-streaming)."""


class FatalStartupError(IndexerError):
    """Initialization failed and there is no useful degraded mode."""
