# tests/test_retry_queue.py
"""
Retry queue tests

Coverage:
- Backoff table
- Enqueue, single active entry per assessment
- Failure recording, scheduling and dead-lettering
- Atomic claims (including concurrent claimers)
- Batch processing with mixed outcomes
- Maintenance: stale claims, completed-entry cleanup, statistics

Run with: pytest tests/test_retry_queue.py -v
"""

import threading
from datetime import timedelta

import pytest

from scorecard import database
from scorecard.errors import HubSpotError, NotFoundError, ValidationError, SERVER_ERROR
from scorecard.models import SyncResult
from scorecard.rate_limiter import InMemoryRateLimiter
from scorecard.retry_queue import RetryQueueService, calculate_retry_delay
from scorecard.sync import HubSpotSyncService

from conftest import make_assessment


def _seconds_from_now(moment):
    return (moment - database.utcnow()).total_seconds()


def _store(session_id="session-1", **overrides):
    return database.insert_assessment(make_assessment(session_id=session_id, **overrides))


def _shift_clock(monkeypatch, **delta):
    """Make the storage layer's 'now' run ahead by delta."""
    real = database.utcnow
    monkeypatch.setattr(database, "utcnow", lambda: real() + timedelta(**delta))


# ============================================================================
# TEST: Backoff
# ============================================================================

class TestRetryDelay:

    @pytest.mark.parametrize("count,delay", [
        (0, 60), (1, 300), (2, 900), (3, 1800), (4, 3600), (5, 3600), (25, 3600), (-3, 60),
    ])
    def test_delay_table(self, count, delay):
        assert calculate_retry_delay(count) == delay
        assert RetryQueueService.calculate_retry_delay(count) == delay


# ============================================================================
# TEST: Enqueue
# ============================================================================

class TestQueueForRetry:

    def test_new_entry_is_pending_and_due_now(self, retry_queue, stored_assessment):
        entry = retry_queue.queue_for_retry(stored_assessment.id, stored_assessment, SERVER_ERROR)

        assert entry.status == "pending"
        assert entry.retry_count == 0
        assert entry.max_retries == 5
        assert entry.priority == 5
        assert abs(_seconds_from_now(entry.next_retry_at)) < 5
        assert entry.payload.email == "jane@example.com"
        assert database.get_assessment(stored_assessment.id).hubspot_sync_status == "queued"

    def test_custom_priority_and_retries(self, retry_queue, stored_assessment):
        entry = retry_queue.queue_for_retry(
            stored_assessment.id, stored_assessment, "rate_limit", priority=3, max_retries=2,
            error_message="429 from HubSpot",
        )
        assert (entry.priority, entry.max_retries, entry.last_error) == (3, 2, "429 from HubSpot")

    def test_one_active_entry_per_assessment(self, retry_queue, stored_assessment):
        first = retry_queue.queue_for_retry(stored_assessment.id, stored_assessment, SERVER_ERROR)
        second = retry_queue.queue_for_retry(stored_assessment.id, stored_assessment, "network_error")

        assert second.id == first.id
        assert second.error_type == "network_error"
        assert database.count_entries() == 1

    def test_dict_payload_accepted(self, retry_queue, stored_assessment):
        entry = retry_queue.queue_for_retry(
            stored_assessment.id, {"sessionId": "session-1", "email": "jane@example.com", "totalScore": 75},
            SERVER_ERROR,
        )
        assert entry.payload.total_score == 75


# ============================================================================
# TEST: Outcomes
# ============================================================================

class TestRecordFailedAttempt:

    def test_first_failure_waits_60_seconds(self, retry_queue, stored_assessment):
        entry = retry_queue.queue_for_retry(stored_assessment.id, stored_assessment, SERVER_ERROR)

        updated = retry_queue.record_failed_attempt(entry.id, "HubSpot server error (503)")

        assert updated.retry_count == 1
        assert updated.status == "pending"
        assert updated.last_error == "HubSpot server error (503)"
        assert 55 < _seconds_from_now(updated.next_retry_at) <= 60

    def test_backoff_grows_with_each_failure(self, retry_queue, stored_assessment):
        entry = retry_queue.queue_for_retry(stored_assessment.id, stored_assessment, SERVER_ERROR)
        retry_queue.record_failed_attempt(entry.id, "boom")
        updated = retry_queue.record_failed_attempt(entry.id, "boom")

        assert updated.retry_count == 2
        assert 295 < _seconds_from_now(updated.next_retry_at) <= 300

    def test_attempts_counted_on_assessment(self, retry_queue, stored_assessment):
        entry = retry_queue.queue_for_retry(stored_assessment.id, stored_assessment, SERVER_ERROR)
        retry_queue.record_failed_attempt(entry.id, "boom")

        assessment = database.get_assessment(stored_assessment.id)
        assert assessment.hubspot_sync_attempts == 1
        assert assessment.hubspot_sync_error == "boom"
        assert assessment.hubspot_sync_status == "queued"

    def test_exhausted_retries_dead_letter(self, retry_queue, stored_assessment):
        entry = retry_queue.queue_for_retry(stored_assessment.id, stored_assessment, SERVER_ERROR, max_retries=2)

        retry_queue.record_failed_attempt(entry.id, "boom")
        retry_queue.record_failed_attempt(entry.id, "boom")
        updated = retry_queue.record_failed_attempt(entry.id, "final boom")

        assert updated.retry_count == 3
        assert updated.status == "failed"
        assert updated.next_retry_at is None
        assert database.get_assessment(stored_assessment.id).hubspot_sync_status == "failed"
        assert [e.id for e in retry_queue.get_dead_letter_queue()] == [entry.id]

    def test_retry_count_never_exceeds_max_while_pending(self, retry_queue, stored_assessment):
        entry = retry_queue.queue_for_retry(stored_assessment.id, stored_assessment, SERVER_ERROR, max_retries=3)
        for _ in range(4):
            updated = retry_queue.record_failed_attempt(entry.id, "boom")
            if updated.status == "pending":
                assert updated.retry_count <= updated.max_retries
        assert updated.status == "failed"

    def test_validation_error_dead_letters_immediately(self, retry_queue, stored_assessment):
        entry = retry_queue.queue_for_retry(stored_assessment.id, stored_assessment, SERVER_ERROR)

        updated = retry_queue.record_failed_attempt(entry.id, "bad property", error_type="validation_error")

        assert updated.status == "failed"
        assert updated.retry_count == 1
        assert updated.error_type == "validation_error"

    def test_rate_limit_waits_as_long_as_hubspot_asks(self, retry_queue, stored_assessment):
        entry = retry_queue.queue_for_retry(stored_assessment.id, stored_assessment, "rate_limit")

        updated = retry_queue.record_failed_attempt(entry.id, "HubSpot rate limit exceeded", retry_after=7)

        assert updated.status == "pending"
        assert 5 < _seconds_from_now(updated.next_retry_at) <= 7

    def test_retry_after_only_applies_to_rate_limits(self, retry_queue, stored_assessment):
        entry = retry_queue.queue_for_retry(stored_assessment.id, stored_assessment, SERVER_ERROR)

        updated = retry_queue.record_failed_attempt(entry.id, "boom", retry_after=7)

        assert 55 < _seconds_from_now(updated.next_retry_at) <= 60

    def test_terminal_entries_cannot_change(self, retry_queue, stored_assessment):
        entry = retry_queue.queue_for_retry(stored_assessment.id, stored_assessment, "validation_error")
        retry_queue.record_failed_attempt(entry.id, "bad")

        with pytest.raises(ValidationError):
            retry_queue.record_failed_attempt(entry.id, "again")
        with pytest.raises(ValidationError):
            retry_queue.record_successful_sync(entry.id, SyncResult(success=True, contact_id="1"))

    def test_unknown_entry(self, retry_queue):
        with pytest.raises(NotFoundError):
            retry_queue.record_failed_attempt("missing", "boom")


class TestRecordSuccessfulSync:

    def test_marks_entry_and_assessment(self, retry_queue, stored_assessment):
        entry = retry_queue.queue_for_retry(stored_assessment.id, stored_assessment, SERVER_ERROR)

        updated = retry_queue.record_successful_sync(
            entry.id, SyncResult(success=True, contact_id="101", deal_id="201"),
        )

        assert updated.status == "completed"
        assert updated.processed_at is not None
        assert (updated.hubspot_contact_id, updated.hubspot_deal_id) == ("101", "201")

        assessment = database.get_assessment(stored_assessment.id)
        assert assessment.hubspot_sync_status == "synced"
        assert assessment.hubspot_contact_id == "101"
        assert assessment.hubspot_synced_at is not None


# ============================================================================
# TEST: Reads and claims
# ============================================================================

class TestPendingAndClaims:

    def test_pending_ordered_by_priority_then_age(self, retry_queue):
        ids = []
        for i, priority in enumerate([5, 3, 5, 1]):
            a = _store(session_id=f"s-{i}")
            ids.append(retry_queue.queue_for_retry(a.id, a, SERVER_ERROR, priority=priority).id)

        pending = retry_queue.get_pending_entries()
        assert [e.id for e in pending] == [ids[3], ids[1], ids[0], ids[2]]

    def test_entries_not_yet_due_are_excluded(self, retry_queue, stored_assessment):
        entry = retry_queue.queue_for_retry(stored_assessment.id, stored_assessment, SERVER_ERROR)
        retry_queue.record_failed_attempt(entry.id, "boom")

        assert retry_queue.get_pending_entries() == []
        assert retry_queue.claim_pending_entries() == []

    def test_claim_moves_to_processing_once(self, retry_queue, stored_assessment):
        retry_queue.queue_for_retry(stored_assessment.id, stored_assessment, SERVER_ERROR)

        claimed = retry_queue.claim_pending_entries(10)
        assert [e.status for e in claimed] == ["processing"]
        assert claimed[0].claimed_at is not None
        assert retry_queue.claim_pending_entries(10) == []

    def test_claim_respects_limit(self, retry_queue):
        for i in range(5):
            a = _store(session_id=f"s-{i}")
            retry_queue.queue_for_retry(a.id, a, SERVER_ERROR)

        assert len(retry_queue.claim_pending_entries(3)) == 3
        assert len(retry_queue.claim_pending_entries(3)) == 2

    def test_concurrent_claimers_never_share_entries(self, retry_queue):
        for i in range(20):
            a = _store(session_id=f"s-{i}")
            retry_queue.queue_for_retry(a.id, a, SERVER_ERROR)

        results = []
        barrier = threading.Barrier(4)

        def claimer():
            barrier.wait()
            results.append([e.id for e in retry_queue.claim_pending_entries(10)])

        threads = [threading.Thread(target=claimer) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        claimed = [entry_id for batch in results for entry_id in batch]
        assert len(claimed) == 20
        assert len(set(claimed)) == 20


# ============================================================================
# TEST: Batch processing
# ============================================================================

class TestProcessPendingQueue:

    def test_successful_batch(self, retry_queue, mock_client, stored_assessment):
        retry_queue.queue_for_retry(stored_assessment.id, stored_assessment, SERVER_ERROR)

        result = retry_queue.process_pending_queue(10)

        assert (result.processed, result.succeeded, result.failed) == (1, 1, 0)
        mock_client.create_or_update_contact.assert_called_once()
        assert database.get_assessment(stored_assessment.id).hubspot_contact_id == "101"

    def test_one_failure_does_not_stop_the_batch(self, retry_queue, mock_client):
        for i in range(3):
            a = _store(session_id=f"s-{i}")
            retry_queue.queue_for_retry(a.id, a, SERVER_ERROR)

        mock_client.create_or_update_contact.side_effect = [
            {"id": "1", "created": True},
            HubSpotError("HubSpot server error (500)", error_type=SERVER_ERROR, status_code=500),
            {"id": "3", "created": True},
        ]

        result = retry_queue.process_pending_queue(10)

        assert (result.processed, result.succeeded, result.failed) == (3, 2, 1)
        assert result.succeeded + result.failed == result.processed
        assert result.errors[0]["error_type"] == SERVER_ERROR

        stats = retry_queue.get_queue_statistics()
        assert (stats["completed"], stats["pending"], stats["processing"]) == (2, 1, 0)

    def test_unexpected_exception_is_classified(self, retry_queue, mock_client, stored_assessment):
        entry = retry_queue.queue_for_retry(stored_assessment.id, stored_assessment, SERVER_ERROR)
        mock_client.create_or_update_contact.side_effect = KeyError("id")

        result = retry_queue.process_pending_queue()

        assert result.failed == 1
        updated = database.get_queue_entry(entry.id)
        assert (updated.status, updated.retry_count, updated.error_type) == ("pending", 1, SERVER_ERROR)

    def test_validation_failure_is_dead_lettered(self, retry_queue, mock_client, stored_assessment):
        entry = retry_queue.queue_for_retry(stored_assessment.id, stored_assessment, SERVER_ERROR)
        mock_client.create_or_update_contact.side_effect = HubSpotError(
            "HubSpot validation error (400)", error_type="validation_error", status_code=400,
        )

        retry_queue.process_pending_queue()

        assert database.get_queue_entry(entry.id).status == "failed"

    def test_tier_0_payload_completes_as_skipped(self, retry_queue, mock_client):
        a = _store(email=None)
        retry_queue.queue_for_retry(a.id, a, SERVER_ERROR)

        result = retry_queue.process_pending_queue()

        assert result.succeeded == 1
        mock_client.create_or_update_contact.assert_not_called()
        assert database.get_assessment(a.id).hubspot_sync_status == "skipped"

    def test_local_rate_limit_keeps_entry_pending(self, mock_client, clock):
        limiter = InMemoryRateLimiter(max_requests=1, window_seconds=10, clock=clock)
        queue = RetryQueueService(HubSpotSyncService(client=mock_client, rate_limiter=limiter))
        for i in range(2):
            a = _store(session_id=f"s-{i}")
            queue.queue_for_retry(a.id, a, SERVER_ERROR)

        result = queue.process_pending_queue()

        assert (result.succeeded, result.failed) == (1, 1)
        assert result.errors[0]["error_type"] == "rate_limit"
        assert mock_client.create_or_update_contact.call_count == 1
        assert queue.get_queue_statistics()["pending"] == 1

    def test_hubspot_retry_after_schedules_next_attempt(self, retry_queue, mock_client, stored_assessment):
        entry = retry_queue.queue_for_retry(stored_assessment.id, stored_assessment, SERVER_ERROR)
        mock_client.create_or_update_contact.side_effect = HubSpotError(
            "HubSpot rate limit exceeded", error_type="rate_limit", status_code=429, retry_after=20,
        )

        retry_queue.process_pending_queue()

        updated = database.get_queue_entry(entry.id)
        assert updated.error_type == "rate_limit"
        assert 15 < _seconds_from_now(updated.next_retry_at) <= 20

    @pytest.mark.parametrize("batch_size", [0, -1])
    def test_non_positive_batch_size_processes_nothing(self, retry_queue, mock_client, batch_size):
        for i in range(3):
            a = _store(session_id=f"s-{i}")
            retry_queue.queue_for_retry(a.id, a, SERVER_ERROR)

        result = retry_queue.process_pending_queue(batch_size)

        assert result.processed == 0
        assert retry_queue.get_queue_statistics()["pending"] == 3
        mock_client.create_or_update_contact.assert_not_called()

    def test_empty_queue(self, retry_queue):
        assert retry_queue.process_pending_queue().to_dict() == {
            "processed": 0, "succeeded": 0, "failed": 0, "errors": [],
        }


# ============================================================================
# TEST: Maintenance
# ============================================================================

class TestMaintenance:

    def test_stale_claims_return_to_pending(self, retry_queue, stored_assessment, monkeypatch):
        retry_queue.queue_for_retry(stored_assessment.id, stored_assessment, SERVER_ERROR)
        retry_queue.claim_pending_entries()

        assert retry_queue.release_stale_claims() == 0

        _shift_clock(monkeypatch, seconds=601)
        assert retry_queue.release_stale_claims() == 1
        assert [e.status for e in retry_queue.get_pending_entries()] == ["pending"]

    def test_old_completed_entries_are_deleted(self, retry_queue, stored_assessment, monkeypatch):
        entry = retry_queue.queue_for_retry(stored_assessment.id, stored_assessment, SERVER_ERROR)
        retry_queue.record_successful_sync(entry.id, SyncResult(success=True, contact_id="1"))

        assert retry_queue.cleanup_completed_entries() == 0

        _shift_clock(monkeypatch, days=8)
        assert retry_queue.cleanup_completed_entries() == 1
        assert database.get_queue_entry(entry.id) is None

    def test_zero_thresholds_are_not_replaced_by_defaults(self, retry_queue, stored_assessment, monkeypatch):
        entry = retry_queue.queue_for_retry(stored_assessment.id, stored_assessment, SERVER_ERROR)
        retry_queue.claim_pending_entries()
        _shift_clock(monkeypatch, seconds=1)

        assert retry_queue.release_stale_claims(0) == 1

        retry_queue.record_successful_sync(entry.id, SyncResult(success=True, contact_id="1"))
        _shift_clock(monkeypatch, seconds=2)
        assert retry_queue.cleanup_completed_entries(0) == 1

    def test_statistics(self, retry_queue):
        a = _store(session_id="s-1")
        b = _store(session_id="s-2")
        retry_queue.queue_for_retry(a.id, a, SERVER_ERROR)
        failed = retry_queue.queue_for_retry(b.id, b, "validation_error")
        retry_queue.record_failed_attempt(failed.id, "bad")

        stats = retry_queue.get_queue_statistics()
        assert (stats["pending"], stats["failed"]) == (1, 1)
        assert stats["oldest_pending"] is not None
        assert retry_queue.get_error_stats() == {"validation_error": 1}
