"""Tests for executor.recovery — FailureClassifier, SubmissionGuard."""

import pytest

from aggregator.client import AggregatorError, AggregatorUnavailable
from chain.errors import RPCError, TransportError
from core.results import FailureCategory
from executor.recovery import FailureClassifier, GuardConfig, SubmissionGuard


class _Clock:
    def __init__(self):
        self.now = 100.0

    def __call__(self):
        return self.now


class TestFailureClassifier:
    @pytest.mark.parametrize(
        "message, category",
        [
            ("Request timed out", FailureCategory.TRANSPORT),
            ("Network error: connection reset", FailureCategory.TRANSPORT),
            ("HTTP 429 Too Many Requests", FailureCategory.TRANSPORT),
            ("route not found", FailureCategory.APPLICATION),
            ("execution reverted: TRANSFER_FAILED", FailureCategory.REVERT),
            ("Panic: arithmetic overflow/underflow", FailureCategory.REVERT),
            ("Purchase not found", FailureCategory.DATA_INTEGRITY),
            ("something odd", FailureCategory.UNKNOWN),
            ("", FailureCategory.UNKNOWN),
            (None, FailureCategory.UNKNOWN),
        ],
    )
    def test_classify_messages(self, message, category):
        assert FailureClassifier.classify(message) is category

    def test_first_match_wins(self):
        # "timeout" is listed before "revert"
        assert FailureClassifier.classify("revert after timeout") is FailureCategory.TRANSPORT

    def test_classify_exceptions_by_type(self):
        classify = FailureClassifier.classify_exception
        assert classify(AggregatorUnavailable("x")) is FailureCategory.TRANSPORT
        assert classify(AggregatorError("route not found")) is FailureCategory.APPLICATION
        assert classify(TransportError("x")) is FailureCategory.TRANSPORT
        assert classify(RPCError("x", data="0x08c379a0")) is FailureCategory.REVERT
        assert classify(ConnectionError("x")) is FailureCategory.TRANSPORT
        assert classify(RuntimeError("execution reverted")) is FailureCategory.REVERT

    @pytest.mark.parametrize(
        "category",
        [
            FailureCategory.TRANSPORT,
            FailureCategory.APPLICATION,
            FailureCategory.REVERT,
            FailureCategory.VALIDATION,
            FailureCategory.UNKNOWN,
        ],
    )
    def test_everything_but_data_integrity_is_retryable(self, category):
        assert FailureClassifier.is_retryable(category)
        assert not FailureClassifier.is_retryable(FailureCategory.DATA_INTEGRITY)


class TestSubmissionGuard:
    def test_second_acquire_rejected_until_release(self):
        guard = SubmissionGuard()
        key = SubmissionGuard.key_for("0xAB", 1, "0xC", "0xD", 5)

        assert guard.acquire(key)
        assert not guard.acquire(key)
        guard.release(key)
        assert guard.acquire(key)

    def test_key_is_case_insensitive(self):
        assert SubmissionGuard.key_for("0xAB", 1, "0xCD", "0xEF", 5) == SubmissionGuard.key_for(
            "0xab", 1, "0xcd", "0xef", 5
        )

    def test_entries_expire_after_ttl(self):
        clock = _Clock()
        guard = SubmissionGuard(GuardConfig(ttl_seconds=10), clock=clock)
        guard.acquire("a")

        clock.now += 10
        assert len(guard) == 0
        assert guard.acquire("a")

    def test_bounded_size_evicts_oldest(self):
        guard = SubmissionGuard(GuardConfig(max_entries=2))
        for key in ("a", "b", "c"):
            assert guard.acquire(key)

        assert len(guard) == 2
        assert guard.acquire("a")
        assert not guard.acquire("c")
