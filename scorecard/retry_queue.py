"""HubSpot retry queue: persistent sync jobs with backoff and dead-lettering.

Entry lifecycle:
    pending ─(claimed)→ processing ─(success)→ completed
                                   ─(failure, retries left)→ pending
                                   ─(failure, exhausted or validation error)→ failed
completed and failed are terminal. A failed entry is a dead letter: kept for
inspection, never retried automatically.
"""

import sys
from datetime import timedelta

from . import database
from .config import get_retry_config, get_queue_config
from .errors import HubSpotError, NotFoundError, ValidationError, RATE_LIMIT, VALIDATION_ERROR
from .models import (
    Assessment,
    BatchProcessResult,
    SyncPayload,
    SyncQueueEntry,
    QUEUE_PENDING,
    QUEUE_COMPLETED,
    QUEUE_FAILED,
    SYNC_FAILED,
    SYNC_QUEUED,
    SYNC_SKIPPED,
    SYNC_SYNCED,
)


def calculate_retry_delay(retry_count):
    """Backoff in seconds: 60, 300, 900, 1800, 3600, then 3600 forever."""
    delays = get_retry_config()['delays']
    index = min(max(retry_count, 0), len(delays) - 1)
    return delays[index]


class RetryQueueService:

    def __init__(self, sync_service=None):
        self._sync_service = sync_service

    @property
    def sync_service(self):
        if self._sync_service is None:
            from .sync import HubSpotSyncService
            self._sync_service = HubSpotSyncService()
        return self._sync_service

    calculate_retry_delay = staticmethod(calculate_retry_delay)

    # ─── Enqueue ──────────────────────────────────────────────────────────

    def queue_for_retry(self, assessment_id, payload, error_type, priority=None,
                        max_retries=None, error_message=None):
        """
        Persist a pending entry due immediately (retry_count 0). If the
        assessment already has an active entry, that one is refreshed and
        returned instead of creating a second.
        """
        cfg = get_retry_config()
        priority = cfg['default_priority'] if priority is None else priority
        max_retries = cfg['max_retries'] if max_retries is None else max_retries

        if isinstance(payload, Assessment):
            payload = SyncPayload.from_assessment(payload)
        elif isinstance(payload, dict):
            payload = SyncPayload.from_assessment(Assessment.from_dict(payload))

        message = error_message or f"Error type: {error_type}"

        existing = database.get_active_entry_for_assessment(assessment_id)
        if existing:
            print(f"[retry] Assessment {assessment_id} already queued as {existing.id}", file=sys.stderr)
            return database.update_queue_entry(
                existing.id, payload=payload, last_error=message, error_type=error_type,
            ) or database.get_queue_entry(existing.id)

        entry = database.insert_queue_entry(SyncQueueEntry(
            assessment_id=assessment_id,
            payload=payload,
            retry_count=0,
            max_retries=max_retries,
            priority=priority,
            status=QUEUE_PENDING,
            next_retry_at=database.utcnow(),
            last_error=message,
            error_type=error_type,
        ))
        database.update_assessment(assessment_id, hubspot_sync_status=SYNC_QUEUED)

        print(
            f"[retry] Queued assessment {assessment_id} as {entry.id} "
            f"({error_type}, priority {priority}, max_retries {max_retries})",
            file=sys.stderr,
        )
        return entry

    # ─── Reads ────────────────────────────────────────────────────────────

    def get_entry(self, entry_id):
        entry = database.get_queue_entry(entry_id)
        if entry is None:
            raise NotFoundError(f"Queue entry {entry_id} not found")
        return entry

    def get_pending_entries(self, limit=50):
        """Pending entries that are due, by priority (lower first) then age."""
        return database.list_ready_entries(database.utcnow(), limit)

    def claim_pending_entries(self, limit=10):
        """Atomically take ownership of up to `limit` due entries."""
        return database.claim_ready_entries(database.utcnow(), limit)

    def get_dead_letter_queue(self):
        return database.list_entries_by_status(QUEUE_FAILED, newest_first=True)

    # ─── Outcomes ────────────────────────────────────────────────────────

    def record_failed_attempt(self, entry_id, error_message, error_type=None, retry_after=None):
        """
        Count a failed attempt. The n-th failure schedules the next attempt
        calculate_retry_delay(n - 1) seconds out, or retry_after seconds when
        HubSpot rate-limited us and said how long to wait. Exceeding
        max_retries, or a validation error, dead-letters the entry.
        """
        entry = self.get_entry(entry_id)
        if entry.is_terminal:
            raise ValidationError(f"Queue entry {entry_id} is already {entry.status}")

        retry_count = entry.retry_count + 1
        error_type = error_type or entry.error_type
        dead = retry_count > entry.max_retries or error_type == VALIDATION_ERROR

        if dead:
            updated = database.update_queue_entry(
                entry_id,
                expected_status=entry.status,
                retry_count=retry_count,
                last_error=error_message,
                error_type=error_type,
                status=QUEUE_FAILED,
                next_retry_at=None,
                claimed_at=None,
            )
            reason = "non-retryable error" if error_type == VALIDATION_ERROR else "retries exhausted"
            print(
                f"[retry] Entry {entry_id} dead-lettered after {retry_count} failure(s) ({reason}): {error_message}",
                file=sys.stderr,
            )
            database.increment_sync_attempts(entry.assessment_id, error=error_message, status=SYNC_FAILED)
        else:
            if error_type == RATE_LIMIT and retry_after:
                delay = retry_after
            else:
                delay = calculate_retry_delay(retry_count - 1)
            updated = database.update_queue_entry(
                entry_id,
                expected_status=entry.status,
                retry_count=retry_count,
                last_error=error_message,
                error_type=error_type,
                status=QUEUE_PENDING,
                next_retry_at=database.utcnow() + timedelta(seconds=delay),
                claimed_at=None,
            )
            print(
                f"[retry] Entry {entry_id} failed (attempt {retry_count}/{entry.max_retries}), "
                f"retrying in {delay}s: {error_message}",
                file=sys.stderr,
            )
            database.increment_sync_attempts(entry.assessment_id, error=error_message, status=SYNC_QUEUED)

        if updated is None:
            raise ValidationError(f"Queue entry {entry_id} changed status concurrently")
        return updated

    def record_successful_sync(self, entry_id, result):
        """Mark the entry completed and store the HubSpot ids on entry and assessment."""
        entry = self.get_entry(entry_id)
        if entry.is_terminal:
            raise ValidationError(f"Queue entry {entry_id} is already {entry.status}")

        now = database.utcnow()
        updated = database.update_queue_entry(
            entry_id,
            expected_status=entry.status,
            status=QUEUE_COMPLETED,
            processed_at=now,
            next_retry_at=None,
            hubspot_contact_id=result.contact_id,
            hubspot_deal_id=result.deal_id,
        )
        if updated is None:
            raise ValidationError(f"Queue entry {entry_id} changed status concurrently")

        database.update_assessment(
            entry.assessment_id,
            hubspot_sync_status=SYNC_SKIPPED if result.skipped else SYNC_SYNCED,
            hubspot_contact_id=result.contact_id,
            hubspot_deal_id=result.deal_id,
            hubspot_synced_at=now,
            hubspot_sync_error=None,
        )
        return updated

    # ─── Batch processing ────────────────────────────────────────────────

    def process_pending_queue(self, batch_size=None):
        """
        Claim up to batch_size due entries and sync each one. One entry's
        failure never stops the batch; succeeded + failed == processed.
        """
        if batch_size is None:
            batch_size = get_queue_config()['batch_size']
        if batch_size <= 0:
            return BatchProcessResult()
        entries = self.claim_pending_entries(batch_size)
        result = BatchProcessResult(processed=len(entries))

        for entry in entries:
            try:
                sync_result = self.sync_service.create_or_update_contact(entry.payload.to_assessment())
            except Exception as e:
                error = HubSpotError.from_exception(e)
                result.failed += 1
                result.errors.append({"entry_id": entry.id, "error": str(error), "error_type": error.error_type})
                self._record_failure_safely(entry, error)
                continue

            try:
                self.record_successful_sync(entry.id, sync_result)
                result.succeeded += 1
            except Exception as e:
                result.failed += 1
                result.errors.append({"entry_id": entry.id, "error": str(e), "error_type": None})
                print(f"[retry] Could not record success for entry {entry.id}: {e}", file=sys.stderr)

        if entries:
            print(
                f"[retry] Batch complete: {result.processed} processed, "
                f"{result.succeeded} succeeded, {result.failed} failed",
                file=sys.stderr,
            )
        return result

    def _record_failure_safely(self, entry, error):
        try:
            self.record_failed_attempt(entry.id, str(error), error_type=error.error_type,
                                       retry_after=error.retry_after)
        except Exception as e:
            # Left in processing; release_stale_claims() returns it to pending
            print(f"[retry] Could not record failure for entry {entry.id}: {e}", file=sys.stderr)

    # ─── Maintenance ─────────────────────────────────────────────────────

    def release_stale_claims(self, older_than_seconds=None):
        """Return entries stuck in processing (e.g. after a crash) to pending."""
        seconds = older_than_seconds
        if seconds is None:
            seconds = get_queue_config()['stale_claim_seconds']
        released = database.release_stale_claims(database.utcnow() - timedelta(seconds=seconds))
        if released:
            print(f"[retry] Released {released} stale claim(s)", file=sys.stderr)
        return released

    def cleanup_completed_entries(self, retention_days=None):
        days = retention_days
        if days is None:
            days = get_queue_config()['completed_retention_days']
        deleted = database.delete_completed_before(database.utcnow() - timedelta(days=days))
        if deleted:
            print(f"[retry] Deleted {deleted} completed entr{'y' if deleted == 1 else 'ies'} older than {days}d", file=sys.stderr)
        return deleted

    def get_queue_statistics(self):
        counts = database.count_entries_by_status()
        oldest, newest = database.pending_age_bounds()
        return {
            **counts,
            "oldest_pending": oldest.isoformat() if oldest else None,
            "newest_pending": newest.isoformat() if newest else None,
        }

    def get_error_stats(self):
        """Dead-lettered entries per error type."""
        return database.count_failed_by_error_type()
