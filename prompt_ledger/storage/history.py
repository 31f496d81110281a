"""
History store for generated prompts.

Owns the ordered list of history entries together with the user's model
filter, and persists both as one PersistedHistoryState envelope.
"""

import logging
from typing import Callable, Iterable, List, Optional, Tuple

from prompt_ledger.core.migration import MigrationState, migrate_history
from .db import KeyValueStore
from .events import ChangeNotifier
from .models import (
    HISTORY_KEY,
    HistoryEntry,
    PersistedHistoryState,
    ValidationError,
    validate_history_entry,
)
from .writer import PersistenceWriter

logger = logging.getLogger(__name__)


class HistoryStore:
    """Append-only log of generated prompts with a model-id filter.

    The store is the only writer of its entries. Memory is updated before
    a save is dispatched, so reads right after a write see the new state
    whether or not the save has finished. Overlapping writers are not
    coordinated; callers serialize their own calls.
    """

    def __init__(
        self,
        backend: KeyValueStore,
        key: str = HISTORY_KEY,
        background_writes: bool = False,
        on_persist_error: Optional[Callable[[Exception], None]] = None,
        max_entries: Optional[int] = None,
        autoload: bool = True,
    ):
        """Initialize the store.

        Args:
            backend: Key-value persistence layer
            key: Storage key of the envelope
            background_writes: Dispatch saves on a writer thread
            on_persist_error: Called with the exception when a save fails
            max_entries: Keep at most this many entries, dropping the oldest
            autoload: Load persisted state on construction
        """
        if max_entries is not None and max_entries <= 0:
            raise ValueError("max_entries must be > 0")
        self._backend = backend
        self._key = key
        self._writer = PersistenceWriter(
            backend, on_error=on_persist_error, background=background_writes
        )
        self._notifier = ChangeNotifier()
        self._max_entries = max_entries
        self._entries: List[HistoryEntry] = []
        self._filter_model_ids: Tuple[str, ...] = ()
        if autoload:
            self.load()

    @property
    def entries(self) -> Tuple[HistoryEntry, ...]:
        """All entries in insertion order."""
        return tuple(self._entries)

    @property
    def filter_model_ids(self) -> Tuple[str, ...]:
        return self._filter_model_ids

    def snapshot(self) -> PersistedHistoryState:
        return PersistedHistoryState(
            entries=tuple(self._entries),
            filter_model_ids=self._filter_model_ids,
        )

    def load(self) -> MigrationState:
        """Replace memory with the persisted envelope.

        Unreadable or corrupt storage leaves the store empty.
        """
        try:
            raw = self._backend.load(self._key)
        except Exception as e:
            logger.error("Failed to load history from %s: %s", self._key, e)
            raw = None
        result = migrate_history(raw)
        self._entries = list(result.envelope.entries)
        self._filter_model_ids = result.envelope.filter_model_ids
        return result.state

    def persist(self) -> None:
        self._writer.submit(self._key, self.snapshot().to_bytes())

    def flush(self, timeout: Optional[float] = None) -> bool:
        """Wait for dispatched saves to finish."""
        return self._writer.flush(timeout)

    def subscribe(self, callback: Callable[[PersistedHistoryState], None]) -> Callable[[], None]:
        """Call ``callback`` with the new state after each mutation.

        Returns:
            Function that cancels the subscription
        """
        return self._notifier.subscribe(callback)

    def _commit(self) -> None:
        self.persist()
        self._notifier.notify(self.snapshot())

    def add(self, entry: HistoryEntry) -> None:
        """Append a generated entry.

        Raises:
            ValidationError: If the entry breaks an invariant or its id
                is already present
        """
        validate_history_entry(entry)
        if any(existing.id == entry.id for existing in self._entries):
            raise ValidationError(f"duplicate history entry id: {entry.id}")

        self._entries.append(entry)
        if self._max_entries is not None and len(self._entries) > self._max_entries:
            del self._entries[:len(self._entries) - self._max_entries]
        self._commit()

    def remove(self, entry_id: str) -> bool:
        """Delete the entry with ``entry_id``.

        Returns:
            True if an entry was removed; an unknown id is not an error
        """
        remaining = [entry for entry in self._entries if entry.id != entry_id]
        if len(remaining) == len(self._entries):
            return False
        self._entries = remaining
        self._commit()
        return True

    def clear(self, reset_filter: bool = False) -> None:
        """Drop every entry, keeping the filter unless ``reset_filter``."""
        self._entries = []
        if reset_filter:
            self._filter_model_ids = ()
        self._commit()

    def set_filter(self, model_ids: Iterable[str]) -> None:
        """Show only these model ids; an empty selection shows all."""
        if isinstance(model_ids, str):
            raise ValidationError("model_ids must be a collection of ids, not a string")
        selected = tuple(dict.fromkeys(model_ids))
        if not all(isinstance(model_id, str) for model_id in selected):
            raise ValidationError("model ids must be strings")
        self._filter_model_ids = selected
        self._commit()

    def filtered_view(self, model_ids: Optional[Iterable[str]] = None) -> List[HistoryEntry]:
        """Entries matching the filter, newest first.

        Entries with the same ``created_at`` come out most recently
        appended first.

        Args:
            model_ids: Use these ids for this call instead of the active
                filter; the active filter is not changed
        """
        selected = set(self._filter_model_ids if model_ids is None else model_ids)
        indexed = [
            (position, entry) for position, entry in enumerate(self._entries)
            if not selected or entry.model_id in selected
        ]
        indexed.sort(key=lambda pair: (pair[1].created_at, pair[0]), reverse=True)
        return [entry for _, entry in indexed]

    def model_options(self) -> List[Tuple[str, str]]:
        """Distinct ``(model_id, model_name)`` pairs present in the log."""
        options = {}
        for entry in self._entries:
            options.setdefault(entry.model_id, entry.model_name)
        return list(options.items())
