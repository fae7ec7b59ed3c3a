"""Store-then-mirror write sequence for operations.

The store write commits first. The mirror write is attempted only after that
and its failure is reported back as a warning, never rolled into the store.
A stale mirror stays stale until the next write to the same record or a
``reindex``.
"""

import logging
from dataclasses import dataclass

from . import repo, search
from .errors import SearchBackendError
from .models import Operation
from .settings import Settings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class WriteResult:
    operation: Operation | None
    index_warning: str | None = None


def _mirror(action: str, operation_id: int, fn, *args) -> str | None:
    try:
        fn(*args)
    except SearchBackendError as exc:
        logger.warning(
            "Search index %s failed for operation %s, index is stale: %s",
            action,
            operation_id,
            exc,
        )
        return f"search index {action} failed for operation {operation_id}"
    return None


def create_operation(settings: Settings, operation: Operation) -> WriteResult:
    saved = repo.create_operation(settings.db_path, operation)
    warning = _mirror("update", saved.id, search.index_operation, settings.index_path, saved)
    return WriteResult(saved, warning)


def update_operation(settings: Settings, operation_id: int, operation: Operation) -> WriteResult:
    saved = repo.update_operation(settings.db_path, operation_id, operation)
    warning = _mirror("update", saved.id, search.index_operation, settings.index_path, saved)
    return WriteResult(saved, warning)


def partial_update_operation(settings: Settings, operation_id: int, patch: Operation) -> WriteResult:
    saved = repo.partial_update_operation(settings.db_path, operation_id, patch)
    warning = _mirror("update", saved.id, search.index_operation, settings.index_path, saved)
    return WriteResult(saved, warning)


def delete_operation(settings: Settings, operation_id: int) -> WriteResult:
    removed = repo.delete_operation(settings.db_path, operation_id)
    if not removed:
        logger.debug("Operation %s was already absent", operation_id)
    warning = _mirror(
        "delete", operation_id, search.delete_from_index, settings.index_path, operation_id
    )
    return WriteResult(None, warning)


def reindex(settings: Settings) -> int:
    """Rebuild the mirror from the store."""
    return search.rebuild_index(settings.index_path, repo.iter_operations(settings.db_path))
