"""Tests for document numbering."""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor

import pytest

from pos_ledger import data_manager
from pos_ledger.constants import Collection, SequenceName
from pos_ledger.errors import SequenceUnavailableError, ValidationError
from pos_ledger.sequence_counter import DEFAULT_NAMESPACES, SequenceCounter, SequenceNamespace

from conftest import FaultyRecordStore


def _counter(store=None, **kwargs) -> SequenceCounter:
    kwargs.setdefault("sleep", lambda _: None)
    return SequenceCounter(store if store is not None else data_manager.MemoryRecordStore(), **kwargs)


def test_first_numbers_start_after_the_floor():
    counter = _counter()

    assert counter.next(SequenceName.INVOICE) == "1000"
    assert counter.next(SequenceName.INVOICE) == "1001"
    assert counter.next(SequenceName.SUPPLIER_INVOICE) == "1000-S"
    assert counter.next(SequenceName.CUSTOMER_RETURN) == "1000-R"
    assert counter.next(SequenceName.SUPPLIER_RETURN) == "1000-SR"


def test_sequences_are_independent():
    counter = _counter()
    for _ in range(3):
        counter.next(SequenceName.INVOICE)

    assert counter.next("customerReturn") == "1000-R"
    assert counter.peek(SequenceName.INVOICE) == 1002


def test_counter_value_is_stored_in_counters_collection():
    store = data_manager.MemoryRecordStore()
    _counter(store).next_value(SequenceName.INVOICE)

    assert store.get(Collection.COUNTERS, "invoice") == {"value": 1000, "id": "invoice"}


def test_invoice_numbers_wrap_after_ceiling():
    """After 99999 the invoice sequence restarts at 1000."""

    store = data_manager.MemoryRecordStore({"Counters": {"invoice": {"value": 99998}}})
    counter = _counter(store)

    assert counter.next_value(SequenceName.INVOICE) == 99999
    assert counter.next_value(SequenceName.INVOICE) == 1000


@pytest.mark.parametrize("raw", ["garbage", None, True, 500])
def test_invalid_or_low_stored_values_restart_from_floor(raw):
    store = data_manager.MemoryRecordStore({"Counters": {"invoice": {"value": raw}}})

    assert _counter(store).next_value(SequenceName.INVOICE) == 1000


def test_unknown_sequence_is_rejected():
    with pytest.raises(ValidationError):
        _counter().next("layaway")


def test_next_value_retries_lost_races():
    store = FaultyRecordStore()
    store.lose("Counters/invoice/value", times=2)
    delays = []
    counter = _counter(store, backoff_base=0.05, sleep=delays.append)

    assert counter.next(SequenceName.INVOICE) == "1000"
    assert delays == pytest.approx([0.05, 0.1])


def test_exhausted_retries_raise_sequence_unavailable():
    """No number is issued when the claim cannot be confirmed."""

    store = FaultyRecordStore()
    store.lose("Counters/invoice/value", times=5)
    counter = _counter(store, max_attempts=5)

    with pytest.raises(SequenceUnavailableError):
        counter.next(SequenceName.INVOICE)

    assert store.get(Collection.COUNTERS, "invoice") is None


def test_store_failures_raise_sequence_unavailable():
    store = FaultyRecordStore()
    store.break_path("Counters/invoice/value", times=3)

    with pytest.raises(SequenceUnavailableError):
        _counter(store, max_attempts=3).next(SequenceName.INVOICE)


def test_concurrent_callers_never_share_a_number():
    store = data_manager.MemoryRecordStore()
    counter = _counter(store, max_attempts=10_000, backoff_base=0.0)

    with ThreadPoolExecutor(max_workers=8) as pool:
        numbers = list(pool.map(lambda _: counter.next_value(SequenceName.INVOICE), range(200)))

    assert len(set(numbers)) == 200
    assert sorted(numbers) == list(range(1000, 1200))
    assert counter.peek(SequenceName.INVOICE) == 1199


def test_reset_sets_last_issued_value():
    counter = _counter()
    counter.next(SequenceName.INVOICE)

    assert counter.reset(SequenceName.INVOICE, 5000) == 5000
    assert counter.next(SequenceName.INVOICE) == "5001"
    assert counter.reset(SequenceName.INVOICE) == 999
    assert counter.next(SequenceName.INVOICE) == "1000"


@pytest.mark.parametrize("value", [998, 100000, "1200", True])
def test_reset_rejects_out_of_range_values(value):
    with pytest.raises(ValidationError):
        _counter().reset(SequenceName.INVOICE, value)


def test_initialize_seeds_only_missing_counters():
    store = data_manager.MemoryRecordStore({"Counters": {"invoice": {"value": 1500}}})
    counter = _counter(store)

    seeded = counter.initialize_all()

    assert seeded == {
        "invoice": False,
        "supplierInvoice": True,
        "customerReturn": True,
        "supplierReturn": True,
    }
    assert counter.peek(SequenceName.INVOICE) == 1500
    assert counter.peek(SequenceName.SUPPLIER_RETURN) == 999


def test_custom_namespaces_replace_defaults():
    counter = _counter(namespaces=[SequenceNamespace("ticket", floor=0, ceiling=3, suffix="-T")])

    issued = [counter.next("ticket") for _ in range(4)]

    assert issued == ["1-T", "2-T", "3-T", "1-T"]
    with pytest.raises(ValidationError):
        counter.namespace(SequenceName.INVOICE)


def test_default_namespaces_format_with_suffixes():
    assert DEFAULT_NAMESPACES["supplierReturn"].format(1042) == "1042-SR"
    assert DEFAULT_NAMESPACES["invoice"].format(1042) == "1042"
