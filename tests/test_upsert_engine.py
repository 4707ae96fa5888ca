from __future__ import annotations

from datetime import date, datetime, timedelta
from decimal import Decimal

import duckdb
import pytest

from affiliate_exchange.domain import TargetAffiliateRow
from affiliate_exchange.errors import TransactionError
from affiliate_exchange.upsert_engine import UpsertEngine


def _row(document_id: str, **kwargs) -> TargetAffiliateRow:
    kwargs.setdefault("first_name", "Ana")
    kwargs.setdefault("last_name", "Pérez")
    kwargs.setdefault("plan_code", "PLN-BASIC")
    kwargs.setdefault("plan_name", "Plan Básico")
    return TargetAffiliateRow(document_id=document_id, **kwargs)


class _StepClock:
    def __init__(self, start: datetime):
        self.current = start

    def __call__(self) -> datetime:
        value = self.current
        self.current += timedelta(hours=1)
        return value


def test_inserts_then_updates_by_document_id(store):
    clock = _StepClock(datetime(2025, 1, 15, 6, 0, 0))
    engine = UpsertEngine(clock=clock)

    with store:
        first = engine.apply(store, [_row("001-1", first_name="Ana")], source_system="ARS_HUMANO")
        created = store.fetch_affiliate("001-1")

        second = engine.apply(store, [_row("001-1", first_name="Ana María")], source_system="ARS_HUMANO")
        updated = store.fetch_affiliate("001-1")

    assert first.mutations[0].action == "INSERTED"
    assert second.mutations[0].action == "UPDATED"
    assert first.mutations[0].affiliate_id == second.mutations[0].affiliate_id
    assert updated["first_name"] == "Ana María"
    assert updated["created_at"] == created["created_at"]
    assert updated["updated_at"] > created["updated_at"]


def test_reimport_is_idempotent_for_affiliates(store):
    engine = UpsertEngine()
    rows = [_row("001-1"), _row("001-2")]

    with store:
        engine.apply(store, rows, source_system="ARS_HUMANO")
        engine.apply(store, rows, source_system="ARS_HUMANO")
        stats = store.affiliate_stats()

    assert stats["total_affiliates"] == 2


def test_payment_obligation_only_for_positive_amount(store):
    engine = UpsertEngine()
    rows = [_row("001-1", monthly_amount=0.0), _row("001-2", monthly_amount=50.0)]

    with store:
        result = engine.apply(store, rows, source_system="ARS_HUMANO", source_file="ARS_AFILIACIONES_20250115.json")
        paying = store.fetch_affiliate("001-2")
        obligations = store.count_payment_obligations()
        paying_obligations = store.count_payment_obligations(paying["id"])

    assert result.success_count == 2
    assert obligations == 1
    assert paying_obligations == 1
    assert paying["monthly_amount"] == Decimal("50.00")
    assert [m.payment_obligation_id is not None for m in result.mutations] == [False, True]


def test_obligations_accumulate_on_reimport(store):
    engine = UpsertEngine()
    rows = [_row("001-1", monthly_amount=75.0)]

    with store:
        engine.apply(store, rows, source_system="ARS_HUMANO")
        engine.apply(store, rows, source_system="ARS_HUMANO")
        obligations = store.count_payment_obligations()

    assert obligations == 2


def test_bad_rows_are_skipped_and_reported(store):
    engine = UpsertEngine()
    rows = [
        _row("001-1"),
        _row("001-2", birth_date="1985-13-45"),
        _row("001-3", monthly_amount=-10.0),
        _row("001-4"),
    ]

    with store:
        result = engine.apply(store, rows, source_system="ARS_HUMANO")
        stored = [store.fetch_affiliate(doc) for doc in ("001-1", "001-2", "001-3", "001-4")]

    assert result.success_count == 2
    assert result.failed_count == 2
    assert result.errors[0].startswith("Error upserting 001-2:")
    assert "cannot be negative" in result.errors[1]
    assert [row is not None for row in stored] == [True, False, False, True]


def test_duplicate_document_ids_within_bundle(store):
    engine = UpsertEngine()

    with store:
        result = engine.apply(store, [_row("001-1"), _row(" 001-1 ")], source_system="ARS_HUMANO")

    assert result.success_count == 1
    assert result.failed_count == 1
    assert "duplicate" in result.errors[0]


def test_consumed_file_is_marked_in_same_transaction(store):
    engine = UpsertEngine()

    with store:
        engine.apply(
            store,
            [_row("001-1")],
            source_system="ARS_HUMANO",
            source_file="ARS_AFILIACIONES_20250115.json",
            content_digest="abc123",
        )
        consumed = store.is_consumed("ARS_AFILIACIONES_20250115.json", "abc123")
        other_digest = store.is_consumed("ARS_AFILIACIONES_20250115.json", "def456")

    assert consumed
    assert not other_digest


def test_store_fault_rolls_back_whole_batch(store, monkeypatch):
    engine = UpsertEngine()
    original = store.insert_payment_obligation

    def failing_insert(**kwargs):
        if kwargs["affiliate_id"] is not None and kwargs["monthly_amount"] == 99.0:
            raise duckdb.ConstraintException("simulated constraint failure")
        return original(**kwargs)

    rows = [_row("001-1", monthly_amount=10.0), _row("001-2", monthly_amount=99.0)]

    with store:
        monkeypatch.setattr(store, "insert_payment_obligation", failing_insert)
        with pytest.raises(TransactionError, match="rolled back"):
            engine.apply(store, rows, source_system="ARS_HUMANO", source_file="f.json", content_digest="d1")

        assert store.fetch_affiliate("001-1") is None
        assert store.count_payment_obligations() == 0
        assert not store.is_consumed("f.json", "d1")


def test_oversized_amount_is_a_row_error(store):
    engine = UpsertEngine()
    rows = [
        _row("001-1", monthly_amount=100.0),
        _row("001-2", monthly_amount=1e11),
        _row("001-3", base_salary=5e12),
        _row("001-4", monthly_amount=9_999_999_999.99),
    ]

    with store:
        result = engine.apply(store, rows, source_system="ARS_HUMANO")
        stats = store.affiliate_stats()
        stored = [store.fetch_affiliate(doc) is not None for doc in ("001-1", "001-2", "001-3", "001-4")]

    assert (result.success_count, result.failed_count) == (2, 2)
    assert "exceeds the storable maximum" in result.errors[0]
    assert stats["total_affiliates"] == 2
    assert stored == [True, False, False, True]


def test_birth_date_accepts_exporter_timestamps(store):
    engine = UpsertEngine()

    with store:
        result = engine.apply(store, [_row("001-1", birth_date="1985-04-12T04:00:00.000Z")], source_system="ARS_HUMANO")
        stored = store.fetch_affiliate("001-1")

    assert (result.success_count, result.failed_count) == (1, 0)
    assert stored["birth_date"] == date(1985, 4, 12)
