"""
Persistence dispatch for the stores.

Saves are written in the order they were issued. A save that has not
started yet is replaced by a newer save for the same key, so storage
ends up holding the latest payload (last write wins).
"""

import logging
import threading
from collections import OrderedDict
from typing import Callable, Optional

from .db import KeyValueStore

logger = logging.getLogger(__name__)


class PersistenceWriter:
    """Serializes saves for one store onto its key-value backend.

    With ``background=False`` every save runs inline and a failure is
    reported before ``submit`` returns. With ``background=True`` saves run
    on a single daemon thread and ``submit`` never blocks on I/O.
    """

    def __init__(
        self,
        backend: KeyValueStore,
        on_error: Optional[Callable[[Exception], None]] = None,
        background: bool = False,
    ):
        self._backend = backend
        self._on_error = on_error
        self._background = background
        self._pending: "OrderedDict[str, bytes]" = OrderedDict()
        self._cond = threading.Condition()
        self._thread: Optional[threading.Thread] = None

    @property
    def background(self) -> bool:
        return self._background

    def submit(self, key: str, payload: bytes) -> None:
        """Queue ``payload`` for ``key``, superseding any queued payload."""
        if not self._background:
            self._write(key, payload)
            return

        with self._cond:
            self._pending[key] = payload
            self._pending.move_to_end(key)
            if self._thread is None:
                self._thread = threading.Thread(
                    target=self._drain, name="prompt-ledger-writer", daemon=True
                )
                self._thread.start()

    def flush(self, timeout: Optional[float] = None) -> bool:
        """Wait until every queued save has been attempted.

        Returns:
            True if the queue drained, False on timeout
        """
        with self._cond:
            return self._cond.wait_for(
                lambda: not self._pending and self._thread is None, timeout
            )

    def _drain(self) -> None:
        while True:
            with self._cond:
                if not self._pending:
                    self._thread = None
                    self._cond.notify_all()
                    return
                key, payload = self._pending.popitem(last=False)
            self._write(key, payload)

    def _write(self, key: str, payload: bytes) -> None:
        try:
            self._backend.save(key, payload)
        except Exception as e:
            # The in-memory state stays as it is; failures are only reported.
            logger.error("Failed to persist %s: %s", key, e)
            if self._on_error is not None:
                try:
                    self._on_error(e)
                except Exception:
                    logger.exception("Persist error hook failed for %s", key)
