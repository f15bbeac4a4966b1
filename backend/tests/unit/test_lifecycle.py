"""
Unit Tests — Document lifecycle transitions and staleness
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from knowledge_pipeline.schemas.documents import DocumentStatus as S
from knowledge_pipeline.services.lifecycle import (
    InvalidTransitionError,
    can_transition,
    ensure_transition,
    is_stale,
)

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


@pytest.mark.unit
class TestTransitions:

    @pytest.mark.parametrize("current,target", [
        (S.UPLOADED,   S.PROCESSING),
        (S.UPLOADED,   S.FETCHED),
        (S.FETCHED,    S.PROCESSING),
        (S.PROCESSING, S.COMPLETED),
        (S.PROCESSING, S.ERROR),
        (S.PROCESSING, S.PENDING),
        (S.ERROR,      S.PENDING),
        (S.COMPLETED,  S.PENDING),
    ])
    def test_allowed(self, current, target):
        assert can_transition(current, target)

    @pytest.mark.parametrize("current,target", [
        (S.COMPLETED, S.PROCESSING),
        (S.COMPLETED, S.ERROR),
        (S.PENDING,   S.COMPLETED),
        (S.FETCHED,   S.COMPLETED),
    ])
    def test_rejected(self, current, target):
        with pytest.raises(InvalidTransitionError) as exc_info:
            ensure_transition(current, target)
        assert exc_info.value.current is current
        assert exc_info.value.target is target

    def test_accepts_raw_status_strings(self):
        assert can_transition("error", "pending")


@pytest.mark.unit
class TestStaleness:

    def test_processing_past_threshold_is_stale(self):
        assert is_stale(S.PROCESSING, NOW - timedelta(minutes=11), NOW)

    def test_processing_within_threshold_is_live(self):
        assert not is_stale(S.PROCESSING, NOW - timedelta(minutes=9), NOW)

    def test_processing_without_start_time_is_stale(self):
        assert is_stale("processing", None, NOW)

    def test_naive_start_time_treated_as_utc(self):
        naive = (NOW - timedelta(minutes=30)).replace(tzinfo=None)
        assert is_stale(S.PROCESSING, naive, NOW)

    @pytest.mark.parametrize("status", [S.UPLOADED, S.PENDING, S.COMPLETED, S.ERROR])
    def test_only_processing_can_be_stale(self, status):
        assert not is_stale(status, NOW - timedelta(days=1), NOW)
