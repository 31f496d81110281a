"""
Data models for storage layer.

Defines history and usage entries, the versioned envelopes they are
persisted in, and the query types used to read them back.
"""

import json
import time
import uuid
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, FrozenSet, Optional, Tuple, Union

SCHEMA_VERSION = 1
MAX_PROMPT_LENGTH = 1500

HISTORY_KEY = "image-to-prompt-history-state"
USAGE_KEY = "image-to-prompt-usage-history"

# Largest accepted gap between totalCost and inputCost + outputCost
COST_TOLERANCE = Decimal("0.000001")


class ValidationError(ValueError):
    """Raised when an entry violates a ledger invariant.

    The store rejecting the entry is left unchanged and nothing is persisted.
    """


def now_ms() -> int:
    """Current time as epoch milliseconds."""
    return int(time.time() * 1000)


def to_decimal(value: Any, name: str = "value") -> Decimal:
    """Convert a numeric value to Decimal without binary float drift.

    Floats go through ``str`` so 0.002 becomes Decimal("0.002") rather than
    the exact binary expansion.

    Raises:
        ValidationError: If the value is not numeric
    """
    if isinstance(value, bool):
        raise ValidationError(f"{name} must be a number, got bool")
    if isinstance(value, Decimal):
        result = value
    elif isinstance(value, int):
        result = Decimal(value)
    elif isinstance(value, float):
        result = Decimal(str(value))
    elif isinstance(value, str):
        try:
            result = Decimal(value)
        except InvalidOperation:
            raise ValidationError(f"{name} must be a number, got {value!r}")
    else:
        raise ValidationError(f"{name} must be a number, got {type(value).__name__}")
    if not result.is_finite():
        raise ValidationError(f"{name} must be finite")
    return result


def _require(data: Dict[str, Any], key: str, kind: type) -> Any:
    if key not in data:
        raise ValidationError(f"missing required field '{key}'")
    value = data[key]
    if isinstance(value, bool) and kind is not bool:
        raise ValidationError(f"'{key}' must be {kind.__name__}")
    if not isinstance(value, kind):
        raise ValidationError(f"'{key}' must be {kind.__name__}")
    return value


def _require_number(data: Dict[str, Any], key: str) -> Decimal:
    if key not in data:
        raise ValidationError(f"missing required field '{key}'")
    return to_decimal(data[key], key)


@dataclass(frozen=True)
class HistoryEntry:
    """One generated prompt, immutable once created.

    ``char_count`` is derived from ``prompt`` and cannot be passed in.
    """
    id: str
    image_url: str
    prompt: str
    total_cost: Decimal
    model_id: str
    model_name: str
    created_at: int
    char_count: int = field(init=False)

    def __post_init__(self):
        object.__setattr__(self, "total_cost", to_decimal(self.total_cost, "total_cost"))
        object.__setattr__(self, "char_count", len(self.prompt))

    @classmethod
    def create(
        cls,
        image_url: str,
        prompt: str,
        total_cost: Union[Decimal, float, int],
        model_id: str,
        model_name: str,
        created_at: Optional[int] = None,
    ) -> "HistoryEntry":
        """Build a new entry with a fresh id and the current timestamp."""
        return cls(
            id=str(uuid.uuid4()),
            image_url=image_url,
            prompt=prompt,
            total_cost=total_cost,
            model_id=model_id,
            model_name=model_name,
            created_at=now_ms() if created_at is None else created_at,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "imageUrl": self.image_url,
            "prompt": self.prompt,
            "charCount": self.char_count,
            "totalCost": self.total_cost,
            "modelId": self.model_id,
            "modelName": self.model_name,
            "createdAt": self.created_at,
        }

    @classmethod
    def from_dict(cls, data: Any, require_char_count: bool = True) -> "HistoryEntry":
        """Rebuild an entry from its persisted form.

        Args:
            data: Decoded JSON object
            require_char_count: Whether ``charCount`` must be present

        Raises:
            ValidationError: If a field is missing, mistyped or inconsistent
        """
        if not isinstance(data, dict):
            raise ValidationError("history entry must be an object")
        entry = cls(
            id=_require(data, "id", str),
            image_url=_require(data, "imageUrl", str),
            prompt=_require(data, "prompt", str),
            total_cost=_require_number(data, "totalCost"),
            model_id=_require(data, "modelId", str),
            model_name=_require(data, "modelName", str),
            created_at=_require(data, "createdAt", int),
        )
        if require_char_count or "charCount" in data:
            char_count = _require(data, "charCount", int)
            if char_count != entry.char_count:
                raise ValidationError(
                    f"charCount {char_count} does not match prompt length {entry.char_count}"
                )
        validate_history_entry(entry)
        return entry


@dataclass(frozen=True)
class UsageEntry:
    """Immutable record of one billed generation."""
    id: str
    timestamp: int
    model_id: str
    model_name: str
    input_tokens: int
    output_tokens: int
    input_cost: Decimal
    output_cost: Decimal
    total_cost: Decimal
    success: bool = True
    error: Optional[str] = None
    image_preview: Optional[str] = None

    def __post_init__(self):
        for name in ("input_cost", "output_cost", "total_cost"):
            object.__setattr__(self, name, to_decimal(getattr(self, name), name))

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "id": self.id,
            "timestamp": self.timestamp,
            "modelId": self.model_id,
            "modelName": self.model_name,
            "inputTokens": self.input_tokens,
            "outputTokens": self.output_tokens,
            "inputCost": self.input_cost,
            "outputCost": self.output_cost,
            "totalCost": self.total_cost,
            "success": self.success,
            "error": self.error,
        }
        if self.image_preview is not None:
            data["imagePreview"] = self.image_preview
        return data

    @classmethod
    def from_dict(cls, data: Any) -> "UsageEntry":
        """Rebuild an entry from its persisted form.

        Raises:
            ValidationError: If a field is missing, mistyped or inconsistent
        """
        if not isinstance(data, dict):
            raise ValidationError("usage entry must be an object")
        error = data.get("error")
        if error is not None and not isinstance(error, str):
            raise ValidationError("'error' must be a string or null")
        preview = data.get("imagePreview")
        if preview is not None and not isinstance(preview, str):
            raise ValidationError("'imagePreview' must be a string")
        success = data.get("success", True)
        if not isinstance(success, bool):
            raise ValidationError("'success' must be bool")
        entry = cls(
            id=_require(data, "id", str),
            timestamp=_require(data, "timestamp", int),
            model_id=_require(data, "modelId", str),
            model_name=_require(data, "modelName", str),
            input_tokens=_require(data, "inputTokens", int),
            output_tokens=_require(data, "outputTokens", int),
            input_cost=_require_number(data, "inputCost"),
            output_cost=_require_number(data, "outputCost"),
            total_cost=_require_number(data, "totalCost"),
            success=success,
            error=error,
            image_preview=preview,
        )
        validate_usage_entry(entry)
        return entry


def validate_history_entry(entry: HistoryEntry) -> None:
    """Check the invariants of a history entry.

    Raises:
        ValidationError: If the prompt is too long, the cached character
            count is stale, or the cost is negative
    """
    if entry.char_count != len(entry.prompt):
        raise ValidationError("charCount must equal prompt length")
    if entry.char_count > MAX_PROMPT_LENGTH:
        raise ValidationError(
            f"prompt is {entry.char_count} characters, maximum is {MAX_PROMPT_LENGTH}"
        )
    if entry.total_cost < 0:
        raise ValidationError("totalCost must be >= 0")


def validate_usage_entry(entry: UsageEntry) -> None:
    """Check the invariants of a usage entry.

    Raises:
        ValidationError: On negative tokens or costs, or when totalCost
            differs from inputCost + outputCost by more than COST_TOLERANCE
    """
    for name in ("input_tokens", "output_tokens"):
        value = getattr(entry, name)
        if isinstance(value, bool) or not isinstance(value, int) or value < 0:
            raise ValidationError(f"{name} must be a non-negative integer")
    for name in ("input_cost", "output_cost", "total_cost"):
        if getattr(entry, name) < 0:
            raise ValidationError(f"{name} must be >= 0")
    if abs(entry.total_cost - (entry.input_cost + entry.output_cost)) > COST_TOLERANCE:
        raise ValidationError("totalCost must equal inputCost + outputCost")


@dataclass(frozen=True)
class PersistedHistoryState:
    """Versioned envelope holding history entries and the model filter."""
    entries: Tuple[HistoryEntry, ...] = ()
    filter_model_ids: Tuple[str, ...] = ()
    schema_version: int = SCHEMA_VERSION

    def to_dict(self) -> Dict[str, Any]:
        return {
            "entries": [entry.to_dict() for entry in self.entries],
            "filterModelIds": list(self.filter_model_ids),
            "schemaVersion": self.schema_version,
        }

    def to_bytes(self) -> bytes:
        return encode_payload(self.to_dict())


@dataclass(frozen=True)
class UsageHistoryState:
    """Versioned envelope holding usage entries."""
    entries: Tuple[UsageEntry, ...] = ()
    schema_version: int = SCHEMA_VERSION

    def to_dict(self) -> Dict[str, Any]:
        return {
            "schemaVersion": self.schema_version,
            "entries": [entry.to_dict() for entry in self.entries],
        }

    def to_bytes(self) -> bytes:
        return encode_payload(self.to_dict())


@dataclass(frozen=True)
class UsageFilter:
    """Query over usage entries; never persisted.

    ``start`` and ``end`` are inclusive epoch-ms bounds. An unset bound is
    open. ``model_ids`` of None or empty matches every model.
    """
    start: Optional[int] = None
    end: Optional[int] = None
    model_ids: Optional[FrozenSet[str]] = None

    def matches(self, entry: UsageEntry) -> bool:
        if self.start is not None and entry.timestamp < self.start:
            return False
        if self.end is not None and entry.timestamp > self.end:
            return False
        if self.model_ids and entry.model_id not in self.model_ids:
            return False
        return True


@dataclass(frozen=True)
class UsageAggregate:
    """Totals over a filtered set of usage entries."""
    total_cost: Decimal = Decimal("0")
    total_input_tokens: int = 0
    total_output_tokens: int = 0
    count: int = 0


def _json_default(value: Any) -> Any:
    if isinstance(value, Decimal):
        # A float would round past 17 significant digits.
        return str(value)
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def encode_payload(data: Dict[str, Any]) -> bytes:
    """Serialize an envelope dictionary to UTF-8 JSON bytes.

    Decimal amounts are written as decimal strings so every digit survives.
    """
    return json.dumps(data, default=_json_default, separators=(",", ":")).encode("utf-8")


def decode_payload(raw: Union[bytes, str]) -> Any:
    """Parse persisted JSON, reading fractional numbers as Decimal.

    Amounts may be decimal strings or JSON numbers; ``from_dict`` accepts
    both through ``to_decimal``.
    """
    if isinstance(raw, bytes):
        raw = raw.decode("utf-8")
    return json.loads(raw, parse_float=Decimal)
