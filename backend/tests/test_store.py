"""
Tests for the sqlite analysis store
"""
import threading

import pytest
from conftest import OWNER

from cropadvisor.errors import AlreadyCompleted, DuplicateId, InvalidInput, NotFound
from cropadvisor.schemas.analysis import DiagnosisResult

FP = "a" * 64
RESULT = DiagnosisResult(diagnosis="leaf rust", advice="apply fungicide", severity="high", confidence=0.9)


def test_create_pending(store):
    record = store.create_pending("42", OWNER, FP)

    assert record.correlation_id == "42"
    assert record.owner == OWNER
    assert record.image_fingerprint == FP
    assert record.status == "pending"
    assert record.completed_at is None
    assert record.diagnosis is None and record.severity is None and record.confidence is None
    assert record.created_at


def test_duplicate_create_keeps_first_record(store):
    first = store.create_pending("42", OWNER, FP)

    with pytest.raises(DuplicateId):
        store.create_pending("42", "0x" + "cd" * 20, "b" * 64)

    assert store.get("42") == first


def test_duplicate_create_does_not_touch_completed_record(store):
    store.create_pending("42", OWNER, FP)
    completed = store.complete("42", RESULT)

    with pytest.raises(DuplicateId):
        store.create_pending("42", OWNER, FP)

    assert store.get("42") == completed


def test_create_requires_owner(store):
    with pytest.raises(InvalidInput):
        store.create_pending("42", "", FP)


def test_complete_sets_every_field(store):
    store.create_pending("42", OWNER, FP)
    record = store.complete("42", RESULT)

    assert record.status == "completed"
    assert record.completed_at is not None
    assert record.to_result() == RESULT
    assert record.fallback is False
    assert record.image_fingerprint == FP


def test_complete_records_fallback_flag(store):
    store.create_pending("7", OWNER, FP)
    record = store.complete("7", RESULT, fallback=True)
    assert record.fallback is True


def test_complete_unknown_id_fails_without_creating(store):
    with pytest.raises(NotFound):
        store.complete("missing", RESULT)
    assert store.get("missing") is None


def test_second_completion_fails(store):
    store.create_pending("42", OWNER, FP)
    first = store.complete("42", RESULT)
    other = DiagnosisResult(diagnosis="blight", advice="burn it", severity="low", confidence=0.1)

    with pytest.raises(AlreadyCompleted):
        store.complete("42", other)

    assert store.get("42") == first


def test_concurrent_completions_only_one_succeeds(store):
    store.create_pending("42", OWNER, FP)
    outcomes = []
    barrier = threading.Barrier(8)

    def worker():
        barrier.wait()
        try:
            store.complete("42", RESULT)
            outcomes.append("ok")
        except AlreadyCompleted:
            outcomes.append("conflict")

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert outcomes.count("ok") == 1
    assert outcomes.count("conflict") == 7


def test_iter_by_owner_most_recent_first(store):
    store.create_pending("1", OWNER, FP)
    store.create_pending("2", OWNER, FP)
    store.create_pending("3", "0x" + "cd" * 20, FP)
    store.complete("1", RESULT)

    records = list(store.iter_by_owner(OWNER))

    assert [r.correlation_id for r in records] == ["2", "1"]
    assert [r.status for r in records] == ["pending", "completed"]


def test_iter_by_owner_is_lazy_one_shot(store):
    store.create_pending("1", OWNER, FP)
    records = store.iter_by_owner(OWNER)

    assert next(records).correlation_id == "1"
    assert list(records) == []


def test_iter_by_owner_unknown_owner(store):
    assert list(store.iter_by_owner("0x" + "00" * 20)) == []
