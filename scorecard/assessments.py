"""Assessment completion: score, persist, qualify, then sync or enqueue.

A HubSpot failure never fails the completion. It is classified, written to
the retry queue (dead-lettered at once when not retryable) and reported in
the returned sync_status.
"""

import sys
from datetime import timedelta

from . import database
from .config import get_retention_config, get_retry_config
from .errors import HubSpotError, NotFoundError, ValidationError, RATE_LIMIT
from .models import Assessment, SYNC_CONSENT_WITHDRAWN, SYNC_QUEUED, SYNC_FAILED, SYNC_SKIPPED, SYNC_SYNCED
from .qualification import qualify_lead
from .retry_queue import RetryQueueService
from .scoring import calculate_assessment_score
from .sessions import complete_session, is_valid_email
from .sync import HubSpotSyncService, get_lead_quality_label

# Contact fields the session table also tracks
_SESSION_CONTACT_FIELDS = ('email', 'first_name', 'last_name', 'company')


def _contact_fields(contact_info):
    """Pick the known contact fields out of a snake/camel-case dict. Blank strings count as missing."""
    if not contact_info:
        return {}
    parsed = Assessment.from_dict(contact_info)
    fields = {}
    for key in Assessment.CONTACT_FIELDS:
        value = getattr(parsed, key)
        if isinstance(value, str):
            value = value.strip() or None
        if value is not None:
            fields[key] = value
    return fields


def _validate_contact(contact):
    email = (contact.get('email') or '').strip()
    if email and not is_valid_email(email):
        raise ValidationError("Invalid email format")


def get_assessment(assessment_id):
    assessment = database.get_assessment(assessment_id)
    if assessment is None:
        raise NotFoundError(f"Assessment {assessment_id} not found")
    return assessment


def _save(session_id, fields):
    """Create the session's assessment, or update it if one already exists."""
    existing = database.get_assessment_by_session(session_id)
    if existing:
        return database.update_assessment(existing.id, **fields)
    return database.insert_assessment(Assessment(session_id=session_id, **fields))


# ─── Completion ──────────────────────────────────────────────────────────────

def complete_assessment(session_id, responses, contact_info=None, completion_time_seconds=None,
                        sync=True, sync_service=None, retry_queue=None):
    """
    Score and store a finished assessment, then attempt the HubSpot sync.

    Raises ValidationError for a missing session id, empty responses or a
    malformed email. Returns plain data for the caller to render.
    """
    if not session_id:
        raise ValidationError("Session ID is required")
    if not isinstance(responses, dict) or not responses:
        raise ValidationError("Responses are required")

    contact = _contact_fields(contact_info)
    _validate_contact(contact)

    score = calculate_assessment_score(responses)
    assessment = _save(session_id, {
        'responses': responses,
        'total_score': score['total_score'],
        'score_breakdown': score['score_breakdown'],
        'score_category': score['score_category'],
        'recommendations': score['recommendations'],
        'completion_time_seconds': completion_time_seconds,
        'completed_at': database.utcnow(),
        **contact,
    })
    print(
        f"[assessments] Completed assessment {assessment.id} "
        f"(score {assessment.total_score}, {assessment.score_category})",
        file=sys.stderr,
    )

    if database.get_session(session_id) is not None:
        complete_session(session_id, responses=responses,
                         **{k: v for k, v in contact.items() if k in _SESSION_CONTACT_FIELDS})

    qualification = qualify_lead(assessment)
    outcome = {'sync_status': assessment.hubspot_sync_status}
    if sync:
        outcome = sync_or_enqueue(assessment, sync_service=sync_service, retry_queue=retry_queue)
        assessment = database.get_assessment(assessment.id)

    return {
        'assessment_id': assessment.id,
        'session_id': assessment.session_id,
        'total_score': assessment.total_score,
        'score_category': assessment.score_category,
        'score_breakdown': score['score_breakdown'].to_dict(),
        'recommendations': assessment.recommendations,
        'skipped_questions': score['skipped_questions'],
        'tier': qualification.tier,
        'lead_quality': get_lead_quality_label(qualification.tier),
        'qualified_for_briefing': qualification.qualified_for_briefing,
        'qualification_reasons': qualification.reasons,
        'hubspot_contact_id': assessment.hubspot_contact_id,
        'hubspot_deal_id': assessment.hubspot_deal_id,
        **outcome,
    }


def sync_contact(data, sync_service=None, retry_queue=None):
    """
    Immediate sync for an assessment posted as a dict (snake or camel keys).
    The assessment is stored first so a failed sync has a record to queue
    against.
    """
    if not data or not isinstance(data, dict):
        raise ValidationError("Request body required")

    incoming = Assessment.from_dict(data)
    if not incoming.session_id:
        raise ValidationError("sessionId is required")
    _validate_contact({'email': incoming.email})

    fields = _contact_fields(data)
    for key in ('total_score', 'score_breakdown', 'score_category', 'completion_time_seconds'):
        value = getattr(incoming, key)
        if value is not None:
            fields[key] = value
    if incoming.responses:
        fields['responses'] = incoming.responses
    fields.setdefault('completed_at', incoming.completed_at or database.utcnow())

    assessment = _save(incoming.session_id, fields)
    qualification = qualify_lead(assessment)
    outcome = sync_or_enqueue(assessment, sync_service=sync_service, retry_queue=retry_queue)
    return {
        'assessment_id': assessment.id,
        'qualification': qualification.to_dict(),
        **outcome,
    }


def sync_or_enqueue(assessment, sync_service=None, retry_queue=None):
    """
    Try the sync once. On failure the error is classified and queued:
    rate limits jump ahead (priority 3), everything else waits its turn, and
    non-retryable errors go straight to the dead-letter queue.
    """
    if assessment.hubspot_sync_status == SYNC_CONSENT_WITHDRAWN:
        return {
            'success': True,
            'sync_status': SYNC_CONSENT_WITHDRAWN,
            'contact_id': None,
            'deal_id': None,
            'skipped': True,
            'reason': "Consent withdrawn",
            'queued_for_retry': False,
        }

    sync_service = sync_service or HubSpotSyncService()
    retry_queue = retry_queue or RetryQueueService(sync_service)

    try:
        result = sync_service.create_or_update_contact(assessment)
    except Exception as e:
        return _enqueue_failure(assessment, HubSpotError.from_exception(e), retry_queue)

    status = SYNC_SKIPPED if result.skipped else SYNC_SYNCED
    fields = {
        'hubspot_sync_status': status,
        'hubspot_contact_id': result.contact_id,
        'hubspot_deal_id': result.deal_id,
        'hubspot_sync_error': None,
    }
    if not result.skipped:
        fields['hubspot_synced_at'] = database.utcnow()
        fields['hubspot_sync_attempts'] = assessment.hubspot_sync_attempts + 1
    database.update_assessment(assessment.id, **fields)

    # A queued retry for this assessment would sync it a second time
    active = database.get_active_entry_for_assessment(assessment.id)
    if active:
        try:
            retry_queue.record_successful_sync(active.id, result)
        except ValidationError as e:
            print(f"[assessments] Could not close queue entry {active.id}: {e}", file=sys.stderr)

    return {
        'success': True,
        'sync_status': status,
        'contact_id': result.contact_id,
        'deal_id': result.deal_id,
        'skipped': result.skipped,
        'reason': result.reason,
        'queued_for_retry': False,
    }


def _enqueue_failure(assessment, error, retry_queue):
    cfg = get_retry_config()
    priority = cfg['rate_limit_priority'] if error.error_type == RATE_LIMIT else cfg['default_priority']
    print(
        f"[assessments] Sync failed for assessment {assessment.id} ({error.error_type}): {error}",
        file=sys.stderr,
    )

    entry = retry_queue.queue_for_retry(
        assessment.id, assessment, error.error_type,
        priority=priority, error_message=str(error),
    )
    if error.is_retryable:
        database.increment_sync_attempts(assessment.id, error=str(error), status=SYNC_QUEUED)
        status = SYNC_QUEUED
    else:
        entry = retry_queue.record_failed_attempt(entry.id, str(error), error_type=error.error_type)
        status = SYNC_FAILED

    return {
        'success': False,
        'sync_status': status,
        'error': str(error),
        'error_type': error.error_type,
        'retry_after': error.retry_after,
        'queue_entry_id': entry.id,
        'queued_for_retry': status == SYNC_QUEUED,
    }


# ─── Privacy ─────────────────────────────────────────────────────────────────

def scrub_contact_data(assessment_id):
    """Remove contact details from one assessment. Scores and responses stay."""
    get_assessment(assessment_id)
    return database.scrub_assessment(assessment_id)


def scrub_expired_contact_data(retention_days=None, batch_size=None):
    """
    Scrub contact details from assessments completed more than retention_days
    ago. Per-record failures are collected, not raised, so one bad row does
    not stop the sweep.
    """
    cfg = get_retention_config()
    if retention_days is None:
        retention_days = cfg['email_retention_days']
    if batch_size is None:
        batch_size = cfg['batch_size']

    cutoff = database.utcnow() - timedelta(days=retention_days)
    scrubbed = 0
    errors = []
    for assessment in database.list_assessments_for_scrubbing(cutoff, batch_size):
        try:
            database.scrub_assessment(assessment.id)
            scrubbed += 1
        except Exception as e:
            errors.append(f"Failed to scrub assessment {assessment.id}: {e}")

    if scrubbed or errors:
        print(f"[assessments] Scrubbed contact data from {scrubbed} assessment(s), {len(errors)} error(s)", file=sys.stderr)
    return {'scrubbed': scrubbed, 'errors': errors}


def _require_email(email):
    email = (email or '').strip()
    if not email:
        raise ValidationError("Email is required")
    if not is_valid_email(email):
        raise ValidationError("Invalid email format")
    return email


def delete_user_data(email):
    """Right to be forgotten: delete every assessment and session held for an email."""
    email = _require_email(email)
    assessments_deleted = database.delete_assessments_by_email(email)
    sessions_deleted = database.delete_sessions_by_email(email)
    print(
        f"[assessments] Deleted user data: {assessments_deleted} assessment(s), {sessions_deleted} session(s)",
        file=sys.stderr,
    )
    return {'assessments_deleted': assessments_deleted, 'sessions_deleted': sessions_deleted}


def process_consent_withdrawal(email, withdrawal_type='full'):
    """
    'marketing_only' keeps the assessments but stops all further HubSpot
    syncing for them. 'full' deletes the user's data outright.
    """
    email = _require_email(email)
    if withdrawal_type == 'marketing_only':
        flagged = database.mark_consent_withdrawn(email)
        print(f"[assessments] Marketing consent withdrawn for {flagged} assessment(s)", file=sys.stderr)
        return {'marketing_data_removed': True, 'assessment_data_preserved': True}
    if withdrawal_type == 'full':
        delete_user_data(email)
        return {'marketing_data_removed': True, 'assessment_data_preserved': False}
    raise ValidationError("withdrawal_type must be 'full' or 'marketing_only'")
