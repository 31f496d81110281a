"""
Repository for usage data.

Keeps the append-only ledger of billed generations, answers filtered
queries over it and persists it as a UsageHistoryState envelope.
"""

import logging
import uuid
from decimal import Decimal
from typing import Callable, List, Optional, Tuple

from prompt_ledger.core.migration import MigrationState, migrate_usage
from prompt_ledger.core.pricing import DEFAULT_RATE_TABLE, RateTable, compute_cost
from .db import KeyValueStore
from .events import ChangeNotifier
from .models import (
    USAGE_KEY,
    UsageAggregate,
    UsageEntry,
    UsageFilter,
    UsageHistoryState,
    now_ms,
    validate_usage_entry,
)
from .writer import PersistenceWriter

logger = logging.getLogger(__name__)


class UsageStore:
    """Append-only ledger of usage events.

    Entries are never modified once recorded; the only way to remove them
    is :meth:`clear`. Like HistoryStore, memory is updated before saves are
    dispatched and concurrent callers must serialize themselves.
    """

    def __init__(
        self,
        backend: KeyValueStore,
        rate_table: RateTable = DEFAULT_RATE_TABLE,
        key: str = USAGE_KEY,
        background_writes: bool = False,
        on_persist_error: Optional[Callable[[Exception], None]] = None,
        max_entries: Optional[int] = None,
        clock: Callable[[], int] = now_ms,
        autoload: bool = True,
    ):
        """Initialize the store.

        Args:
            backend: Key-value persistence layer
            rate_table: Per-model rates used to price new entries
            key: Storage key of the envelope
            background_writes: Dispatch saves on a writer thread
            on_persist_error: Called with the exception when a save fails
            max_entries: Keep at most this many entries, dropping the oldest
            clock: Source of epoch-ms timestamps for new entries
            autoload: Load persisted state on construction
        """
        if max_entries is not None and max_entries <= 0:
            raise ValueError("max_entries must be > 0")
        self._backend = backend
        self._rate_table = rate_table
        self._key = key
        self._writer = PersistenceWriter(
            backend, on_error=on_persist_error, background=background_writes
        )
        self._notifier = ChangeNotifier()
        self._max_entries = max_entries
        self._clock = clock
        self._entries: List[UsageEntry] = []
        if autoload:
            self.load()

    @property
    def entries(self) -> Tuple[UsageEntry, ...]:
        """All entries in insertion order."""
        return tuple(self._entries)

    @property
    def rate_table(self) -> RateTable:
        return self._rate_table

    def snapshot(self) -> UsageHistoryState:
        return UsageHistoryState(entries=tuple(self._entries))

    def load(self) -> MigrationState:
        """Replace memory with the persisted envelope.

        Unreadable or corrupt storage leaves the store empty.
        """
        try:
            raw = self._backend.load(self._key)
        except Exception as e:
            logger.error("Failed to load usage from %s: %s", self._key, e)
            raw = None
        result = migrate_usage(raw)
        self._entries = list(result.envelope.entries)
        return result.state

    def persist(self) -> None:
        self._writer.submit(self._key, self.snapshot().to_bytes())

    def flush(self, timeout: Optional[float] = None) -> bool:
        """Wait for dispatched saves to finish."""
        return self._writer.flush(timeout)

    def subscribe(self, callback: Callable[[UsageHistoryState], None]) -> Callable[[], None]:
        """Call ``callback`` with the new state after each mutation.

        Returns:
            Function that cancels the subscription
        """
        return self._notifier.subscribe(callback)

    def _commit(self) -> None:
        self.persist()
        self._notifier.notify(self.snapshot())

    def record(
        self,
        model_id: str,
        model_name: str,
        input_tokens: int,
        output_tokens: int,
        success: bool = True,
        error: Optional[str] = None,
        image_preview: Optional[str] = None,
    ) -> UsageEntry:
        """Price and append one billed operation.

        Args:
            model_id: Model identifier used for the rate lookup
            model_name: Display name of the model
            input_tokens: Input token-equivalents
            output_tokens: Output token-equivalents
            success: Whether the generation succeeded
            error: Error message for a failed generation
            image_preview: Optional preview of the source image

        Returns:
            The recorded entry

        Raises:
            UnknownModelError: If the model has no rate; nothing is recorded
            ValidationError: If token counts are invalid; nothing is recorded
        """
        costs = compute_cost(model_id, input_tokens, output_tokens, self._rate_table)

        entry = UsageEntry(
            id=str(uuid.uuid4()),
            timestamp=self._clock(),
            model_id=model_id,
            model_name=model_name,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            input_cost=costs.input_cost,
            output_cost=costs.output_cost,
            total_cost=costs.total_cost,
            success=success,
            error=error,
            image_preview=image_preview,
        )
        validate_usage_entry(entry)

        self._entries.append(entry)
        if self._max_entries is not None and len(self._entries) > self._max_entries:
            del self._entries[:len(self._entries) - self._max_entries]
        self._commit()
        return entry

    def query(self, usage_filter: Optional[UsageFilter] = None) -> List[UsageEntry]:
        """Entries matching ``usage_filter``, oldest first.

        Entries with equal timestamps keep their insertion order.
        """
        usage_filter = usage_filter or UsageFilter()
        matched = [entry for entry in self._entries if usage_filter.matches(entry)]
        return sorted(matched, key=lambda entry: entry.timestamp)

    def aggregate(self, usage_filter: Optional[UsageFilter] = None) -> UsageAggregate:
        """Exact totals over :meth:`query`; all zero when nothing matches."""
        total_cost = Decimal("0")
        total_input_tokens = 0
        total_output_tokens = 0
        count = 0
        for entry in self.query(usage_filter):
            total_cost += entry.total_cost
            total_input_tokens += entry.input_tokens
            total_output_tokens += entry.output_tokens
            count += 1
        return UsageAggregate(
            total_cost=total_cost,
            total_input_tokens=total_input_tokens,
            total_output_tokens=total_output_tokens,
            count=count,
        )

    def model_ids(self) -> List[str]:
        """Distinct model ids in the ledger, in first-seen order."""
        return list(dict.fromkeys(entry.model_id for entry in self._entries))

    def clear(self) -> None:
        """Drop every usage entry."""
        self._entries = []
        self._commit()
