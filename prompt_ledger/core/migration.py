"""
Schema migration for persisted envelopes.

Every payload read from storage passes through here before a store uses
it. A payload ends up either CURRENT (a valid version 1 envelope) or
REJECTED, in which case the caller gets a fresh empty envelope.

Migration is all-or-nothing: a single broken entry discards the whole
payload, since a partial history with broken invariants is worse than
none. Payloads that carry no ``schemaVersion`` at all were written before
versioning existed and are upgraded in place.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple, Union

from prompt_ledger.storage.models import (
    SCHEMA_VERSION,
    HistoryEntry,
    PersistedHistoryState,
    UsageEntry,
    UsageHistoryState,
    ValidationError,
    decode_payload,
)

logger = logging.getLogger(__name__)

RawPayload = Union[None, bytes, str, Dict[str, Any], PersistedHistoryState, UsageHistoryState]


class MigrationState(Enum):
    """States a persisted payload moves through."""
    UNVALIDATED = "unvalidated"
    CURRENT = "current"
    REJECTED = "rejected"


class CorruptPersistedStateError(ValueError):
    """Raised internally when a payload cannot be turned into an envelope."""


@dataclass(frozen=True)
class MigrationResult:
    """Outcome of migrating one payload."""
    state: MigrationState
    envelope: Union[PersistedHistoryState, UsageHistoryState]
    upgraded: bool = False
    reason: Optional[str] = None


def _decode(raw: RawPayload) -> Any:
    if isinstance(raw, (PersistedHistoryState, UsageHistoryState)):
        return raw.to_dict()
    if isinstance(raw, (bytes, str)):
        try:
            return decode_payload(raw)
        except (ValueError, UnicodeDecodeError) as e:
            raise CorruptPersistedStateError(f"payload is not valid JSON: {e}")
    return raw


def _check_version(data: Any) -> bool:
    """Return True when ``data`` is a legacy, unversioned payload."""
    if not isinstance(data, dict):
        raise CorruptPersistedStateError("payload must be an object")
    if "schemaVersion" not in data:
        return True
    version = data["schemaVersion"]
    if isinstance(version, bool) or version != SCHEMA_VERSION:
        raise CorruptPersistedStateError(f"unsupported schemaVersion: {version!r}")
    return False


def _entry_list(data: Dict[str, Any]) -> List[Any]:
    entries = data.get("entries")
    if not isinstance(entries, list):
        raise CorruptPersistedStateError("'entries' must be a list")
    return entries


def _check_unique(ids: List[str]) -> None:
    if len(set(ids)) != len(ids):
        raise CorruptPersistedStateError("duplicate entry ids")


def _history_from_data(data: Any) -> Tuple[PersistedHistoryState, bool]:
    legacy = _check_version(data)

    entries = []
    for index, item in enumerate(_entry_list(data)):
        try:
            entries.append(HistoryEntry.from_dict(item, require_char_count=not legacy))
        except ValidationError as e:
            raise CorruptPersistedStateError(f"entry {index}: {e}")
    _check_unique([entry.id for entry in entries])

    filter_ids = data.get("filterModelIds", [])
    if not isinstance(filter_ids, list) or not all(isinstance(i, str) for i in filter_ids):
        raise CorruptPersistedStateError("'filterModelIds' must be a list of strings")

    envelope = PersistedHistoryState(
        entries=tuple(entries),
        filter_model_ids=tuple(dict.fromkeys(filter_ids)),
    )
    return envelope, legacy


def _usage_from_data(data: Any) -> Tuple[UsageHistoryState, bool]:
    legacy = _check_version(data)

    entries = []
    for index, item in enumerate(_entry_list(data)):
        try:
            entries.append(UsageEntry.from_dict(item))
        except ValidationError as e:
            raise CorruptPersistedStateError(f"entry {index}: {e}")
    _check_unique([entry.id for entry in entries])

    return UsageHistoryState(entries=tuple(entries)), legacy


def _migrate(raw: RawPayload, build, empty, label: str) -> MigrationResult:
    if raw is None:
        return MigrationResult(MigrationState.CURRENT, empty)
    try:
        envelope, upgraded = build(_decode(raw))
    except CorruptPersistedStateError as e:
        logger.warning("Discarding persisted %s: %s", label, e)
        return MigrationResult(MigrationState.REJECTED, empty, reason=str(e))
    if upgraded:
        logger.info("Upgraded unversioned %s payload to schemaVersion %d", label, SCHEMA_VERSION)
    return MigrationResult(MigrationState.CURRENT, envelope, upgraded=upgraded)


def migrate_history(raw: RawPayload) -> MigrationResult:
    """Validate or upgrade a persisted history payload.

    Args:
        raw: Stored bytes or text, a decoded object, an envelope, or None
            when nothing was stored yet

    Returns:
        MigrationResult whose envelope is always a usable
        PersistedHistoryState; never raises for bad payloads
    """
    return _migrate(raw, _history_from_data, PersistedHistoryState(), "history")


def migrate_usage(raw: RawPayload) -> MigrationResult:
    """Validate or upgrade a persisted usage payload.

    Same contract as :func:`migrate_history` for UsageHistoryState.
    """
    return _migrate(raw, _usage_from_data, UsageHistoryState(), "usage")
