"""
Unit tests for schema migration.

Tests round-trips, idempotence, legacy upgrades and fail-soft rejection.
"""

import json
from decimal import Decimal

import pytest

from prompt_ledger.core.migration import (
    MigrationState,
    migrate_history,
    migrate_usage,
)
from prompt_ledger.storage.models import (
    HistoryEntry,
    PersistedHistoryState,
    UsageEntry,
    UsageHistoryState,
)


def _history_entry(entry_id="h1", prompt="a red fox in snow", created_at=1000, model_id="m1"):
    return HistoryEntry(
        id=entry_id,
        image_url="data:image/png;base64,AAAA",
        prompt=prompt,
        total_cost=Decimal("0.0045"),
        model_id=model_id,
        model_name=model_id.upper(),
        created_at=created_at,
    )


def _usage_entry(entry_id="u1", timestamp=1000):
    return UsageEntry(
        id=entry_id,
        timestamp=timestamp,
        model_id="m1",
        model_name="M1",
        input_tokens=85,
        output_tokens=120,
        input_cost=Decimal("0.0002125"),
        output_cost=Decimal("0.0012"),
        total_cost=Decimal("0.0014125"),
    )


def _history_payload(**overrides):
    payload = _history_entry().to_dict()
    payload["totalCost"] = 0.0045
    payload.update(overrides)
    return {"entries": [payload], "filterModelIds": ["m1"], "schemaVersion": 1}


class TestHistoryMigration:
    """Test migration of persisted history payloads."""

    def test_nothing_stored_yields_empty_envelope(self):
        """A missing payload is a valid empty history."""
        result = migrate_history(None)
        assert result.state == MigrationState.CURRENT
        assert result.envelope == PersistedHistoryState()

    def test_round_trip(self):
        """Serializing then migrating returns an equal envelope."""
        state = PersistedHistoryState(
            entries=(_history_entry("h1", created_at=100), _history_entry("h2", "", 200, "m2")),
            filter_model_ids=("m2",),
        )
        result = migrate_history(state.to_bytes())
        assert result.state == MigrationState.CURRENT
        assert result.envelope == state

    @pytest.mark.parametrize("cost", [
        Decimal("0.12345678901234567891"),
        Decimal("1234.000000000000000000001"),
        Decimal("1E+400"),
    ])
    def test_round_trip_keeps_every_digit(self, cost):
        """Costs beyond float precision reload unchanged."""
        entry = HistoryEntry("h1", "data:image/png;base64,AAAA", "a fox", cost, "m1", "M1", 1000)
        state = PersistedHistoryState(entries=(entry,))

        result = migrate_history(state.to_bytes())

        assert result.state == MigrationState.CURRENT
        assert result.envelope == state
        assert str(result.envelope.entries[0].total_cost) == str(cost)

    def test_costs_stored_as_decimal_text(self):
        """Amounts are written as exact decimal strings."""
        entry = HistoryEntry(
            "h1", "data:image/png;base64,AAAA", "a fox",
            Decimal("0.12345678901234567891"), "m1", "M1", 1000,
        )
        stored = json.loads(PersistedHistoryState(entries=(entry,)).to_bytes())
        assert stored["entries"][0]["totalCost"] == "0.12345678901234567891"

    def test_accepts_decoded_dict_and_text(self):
        """Raw payloads may arrive as a mapping or JSON text."""
        payload = _history_payload()
        assert migrate_history(payload).state == MigrationState.CURRENT
        assert migrate_history(json.dumps(payload)).state == MigrationState.CURRENT

    @pytest.mark.parametrize("raw", [
        None,
        b"{not json",
        json.dumps({"entries": "oops", "schemaVersion": 1}),
        PersistedHistoryState(entries=(_history_entry(),)).to_bytes(),
        json.dumps({"entries": [{"prompt": "x"}]}),
    ])
    def test_idempotent(self, raw):
        """Migrating an already migrated envelope changes nothing."""
        once = migrate_history(raw).envelope
        twice = migrate_history(once).envelope
        assert twice == once

    def test_entries_not_a_list_rejected(self):
        """A malformed envelope resolves to an empty version 1 envelope."""
        result = migrate_history(json.dumps({"entries": {"a": 1}, "schemaVersion": 1}))
        assert result.state == MigrationState.REJECTED
        assert result.envelope == PersistedHistoryState()
        assert result.envelope.schema_version == 1

    def test_invalid_json_rejected(self):
        """Unparseable bytes never raise."""
        result = migrate_history(b"\xff\xfe garbage")
        assert result.state == MigrationState.REJECTED
        assert result.reason

    def test_non_object_payload_rejected(self):
        """A JSON array is not an envelope."""
        assert migrate_history(b"[1, 2]").state == MigrationState.REJECTED

    @pytest.mark.parametrize("version", [0, 2, "1", True])
    def test_unknown_version_rejected(self, version):
        """Only version 1 or unversioned payloads are accepted."""
        payload = _history_payload()
        payload["schemaVersion"] = version
        assert migrate_history(payload).state == MigrationState.REJECTED

    def test_one_bad_entry_discards_everything(self):
        """Migration is all-or-nothing."""
        payload = _history_payload()
        broken = dict(payload["entries"][0], id="h2")
        del broken["modelName"]
        payload["entries"].append(broken)

        result = migrate_history(payload)
        assert result.state == MigrationState.REJECTED
        assert result.envelope.entries == ()
        assert result.envelope.filter_model_ids == ()

    def test_stale_char_count_rejected(self):
        """charCount must match the prompt length."""
        assert migrate_history(_history_payload(charCount=3)).state == MigrationState.REJECTED

    def test_overlong_prompt_rejected(self):
        """Prompts over 1500 characters cannot be loaded."""
        payload = _history_payload(prompt="x" * 1501, charCount=1501)
        assert migrate_history(payload).state == MigrationState.REJECTED

    def test_negative_cost_rejected(self):
        """Costs must be non-negative."""
        assert migrate_history(_history_payload(totalCost=-0.5)).state == MigrationState.REJECTED

    def test_duplicate_ids_rejected(self):
        """Entry ids must be unique."""
        payload = _history_payload()
        payload["entries"].append(dict(payload["entries"][0]))
        assert migrate_history(payload).state == MigrationState.REJECTED

    def test_bad_filter_rejected(self):
        """filterModelIds must be a list of strings."""
        payload = _history_payload()
        payload["filterModelIds"] = "m1"
        assert migrate_history(payload).state == MigrationState.REJECTED

    def test_missing_filter_defaults_to_all(self):
        """Absent filterModelIds means show all."""
        payload = _history_payload()
        del payload["filterModelIds"]
        result = migrate_history(payload)
        assert result.state == MigrationState.CURRENT
        assert result.envelope.filter_model_ids == ()

    def test_legacy_payload_upgraded(self):
        """Unversioned payloads are upgraded and charCount derived."""
        entry = _history_entry().to_dict()
        entry["totalCost"] = 0.0045
        del entry["charCount"]
        result = migrate_history({"entries": [entry]})

        assert result.state == MigrationState.CURRENT
        assert result.upgraded is True
        assert result.envelope.schema_version == 1
        assert result.envelope.entries[0].char_count == len("a red fox in snow")

    def test_filter_ids_deduplicated(self):
        """Repeated filter ids collapse to one."""
        payload = _history_payload()
        payload["filterModelIds"] = ["m1", "m2", "m1"]
        assert migrate_history(payload).envelope.filter_model_ids == ("m1", "m2")


class TestUsageMigration:
    """Test migration of persisted usage payloads."""

    def test_round_trip(self):
        """Serializing then migrating returns an equal envelope."""
        state = UsageHistoryState(entries=(_usage_entry("u1", 100), _usage_entry("u2", 50)))
        result = migrate_usage(state.to_bytes())
        assert result.state == MigrationState.CURRENT
        assert result.envelope == state

    def test_round_trip_keeps_every_digit(self):
        """Costs with more than 20 significant digits reload unchanged."""
        entry = UsageEntry(
            id="u1",
            timestamp=100,
            model_id="m1",
            model_name="M1",
            input_tokens=1234,
            output_tokens=1,
            input_cost=Decimal("0.0015234567890123456789"),
            output_cost=Decimal("0.0000000000000000000001"),
            total_cost=Decimal("0.0015234567890123456790"),
        )
        state = UsageHistoryState(entries=(entry,))

        result = migrate_usage(state.to_bytes())

        assert result.state == MigrationState.CURRENT
        assert result.envelope == state
        assert result.envelope.entries[0].input_cost == Decimal("0.0015234567890123456789")

    def test_idempotent(self):
        """Migrating twice equals migrating once."""
        raw = UsageHistoryState(entries=(_usage_entry(),)).to_bytes()
        once = migrate_usage(raw).envelope
        assert migrate_usage(once).envelope == once

    def test_optional_fields_default(self):
        """success, error and imagePreview are optional."""
        entry = _usage_entry().to_dict()
        del entry["success"]
        del entry["error"]
        result = migrate_usage({"schemaVersion": 1, "entries": [entry]})
        assert result.state == MigrationState.CURRENT
        assert result.envelope.entries[0].success is True
        assert result.envelope.entries[0].error is None

    def test_float_sum_within_tolerance_accepted(self):
        """Totals written with binary float error still load."""
        entry = _usage_entry().to_dict()
        entry.update(inputCost=0.1, outputCost=0.2, totalCost=0.1 + 0.2)
        raw = json.dumps({"schemaVersion": 1, "entries": [entry]})
        assert migrate_usage(raw).state == MigrationState.CURRENT

    def test_inconsistent_total_rejected(self):
        """totalCost must equal inputCost + outputCost."""
        entry = _usage_entry().to_dict()
        entry["totalCost"] = Decimal("1")
        assert migrate_usage({"schemaVersion": 1, "entries": [entry]}).state == MigrationState.REJECTED

    def test_negative_tokens_rejected(self):
        """Token counts cannot be negative."""
        entry = _usage_entry().to_dict()
        entry["inputTokens"] = -5
        assert migrate_usage({"schemaVersion": 1, "entries": [entry]}).state == MigrationState.REJECTED

    def test_corrupt_payload_resolves_to_empty(self):
        """Corrupt usage storage yields an empty ledger."""
        result = migrate_usage(json.dumps({"schemaVersion": 1, "entries": None}))
        assert result.state == MigrationState.REJECTED
        assert result.envelope == UsageHistoryState()

    def test_history_envelope_is_not_usage(self):
        """A history envelope fed to the usage migrator is rejected."""
        history = PersistedHistoryState(entries=(_history_entry(),))
        assert migrate_usage(history).state == MigrationState.REJECTED
