"""
Knowledge memory exception classes.

Routine misses (absent entry or partition) are returned as ``None`` or an
empty result; these exceptions cover the cases a caller must handle.
"""


class KnowledgeMemoryError(Exception):
    """Base exception for the knowledge memory core."""

    pass


class EntryNotFoundError(KnowledgeMemoryError):
    """Entry is absent from every tier."""

    def __init__(self, entry_id: str, partition_id: str | None = None):
        self.entry_id = entry_id
        self.partition_id = partition_id
        where = f" in partition {partition_id}" if partition_id else ""
        super().__init__(f"Entry not found{where}: {entry_id}")


class MalformedInputError(KnowledgeMemoryError):
    """Ingest request is missing required fields or carries invalid values."""

    def __init__(self, field: str, message: str):
        self.field = field
        super().__init__(f"Malformed input for '{field}': {message}")


class UpstreamUnavailableError(KnowledgeMemoryError):
    """Embedding or summarization capability failed."""

    def __init__(self, service: str, message: str):
        self.service = service
        super().__init__(f"{service} unavailable: {message}")


class StorageError(KnowledgeMemoryError):
    """Extended storage I/O failure."""

    def __init__(self, message: str, path: str | None = None):
        self.path = path
        super().__init__(message)


class BudgetExceededError(KnowledgeMemoryError):
    """Offload failed, so the entry stays in working memory over budget."""

    def __init__(self, entry_id: str, reason: str):
        self.entry_id = entry_id
        self.reason = reason
        super().__init__(f"Could not offload entry {entry_id}: {reason}")
