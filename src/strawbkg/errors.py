from __future__ import annotations


class ConfigError(ValueError):
    """Bad or missing configuration; raised at construction/start-up."""


class DataConsistencyError(RuntimeError):
    """Input collections disagree with each other; the event cannot be processed."""
