"""SQLite storage layer for assessments, sessions and the HubSpot sync queue."""

import os
import json
import uuid
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime, timezone

from .errors import NotFoundError
from .models import (
    Assessment,
    ScoreBreakdown,
    SyncPayload,
    SyncQueueEntry,
    QUEUE_PENDING,
    QUEUE_PROCESSING,
    QUEUE_COMPLETED,
    QUEUE_FAILED,
    SYNC_CONSENT_WITHDRAWN,
    format_datetime,
    parse_datetime,
)


_db = None
_lock = threading.RLock()

DB_PATH = os.getenv('DATABASE_PATH', os.path.join(os.path.dirname(__file__), '..', 'scorecard.db'))


def utcnow():
    return datetime.now(timezone.utc)


def new_id():
    return uuid.uuid4().hex


def _get_db():
    """Return a shared SQLite connection (created once)."""
    global _db
    if _db is not None:
        return _db

    with _lock:
        if _db is None:
            # Autocommit mode; multi-statement writes go through _transaction()
            db = sqlite3.connect(DB_PATH, check_same_thread=False, isolation_level=None, timeout=30)
            db.row_factory = sqlite3.Row
            db.execute("PRAGMA journal_mode=WAL")
            db.execute("PRAGMA foreign_keys=ON")
            _init_tables(db)
            _db = db
    return _db


def close_db():
    """Close the shared connection. The next access reopens DB_PATH."""
    global _db
    with _lock:
        if _db is not None:
            _db.close()
            _db = None


@contextmanager
def _transaction():
    """Serialise a write transaction in-process (lock) and across processes (BEGIN IMMEDIATE)."""
    with _lock:
        db = _get_db()
        db.execute("BEGIN IMMEDIATE")
        try:
            yield db
        except BaseException:
            db.execute("ROLLBACK")
            raise
        db.execute("COMMIT")


def _init_tables(db):
    db.executescript("""
        CREATE TABLE IF NOT EXISTS assessments (
            id                      TEXT PRIMARY KEY,
            session_id              TEXT NOT NULL UNIQUE,
            responses               TEXT NOT NULL DEFAULT '{}',
            total_score             INTEGER,
            score_breakdown         TEXT,
            score_category          TEXT,
            recommendations         TEXT NOT NULL DEFAULT '[]',
            email                   TEXT,
            first_name              TEXT,
            last_name               TEXT,
            company                 TEXT,
            phone                   TEXT,
            job_title               TEXT,
            industry                TEXT,
            completion_time_seconds INTEGER,
            hubspot_sync_status     TEXT NOT NULL DEFAULT 'pending',
            hubspot_sync_attempts   INTEGER NOT NULL DEFAULT 0,
            hubspot_sync_error      TEXT,
            hubspot_contact_id      TEXT,
            hubspot_deal_id         TEXT,
            hubspot_synced_at       TEXT,
            created_at              TEXT NOT NULL,
            completed_at            TEXT,
            email_scrubbed_at       TEXT,
            updated_at              TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS assessment_sessions (
            session_id     TEXT PRIMARY KEY,
            current_step   INTEGER NOT NULL DEFAULT 0,
            responses      TEXT NOT NULL DEFAULT '{}',
            email          TEXT,
            first_name     TEXT,
            last_name      TEXT,
            company        TEXT,
            is_complete    INTEGER NOT NULL DEFAULT 0,
            user_agent     TEXT,
            ip_hash        TEXT,
            referrer       TEXT,
            last_activity  TEXT NOT NULL,
            expires_at     TEXT NOT NULL,
            created_at     TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS hubspot_sync_queue (
            id                 TEXT PRIMARY KEY,
            assessment_id      TEXT NOT NULL REFERENCES assessments(id) ON DELETE CASCADE,
            payload            TEXT NOT NULL,
            retry_count        INTEGER NOT NULL DEFAULT 0,
            max_retries        INTEGER NOT NULL DEFAULT 5,
            priority           INTEGER NOT NULL DEFAULT 5,
            status             TEXT NOT NULL DEFAULT 'pending',
            next_retry_at      TEXT,
            last_error         TEXT,
            error_type         TEXT,
            hubspot_contact_id TEXT,
            hubspot_deal_id    TEXT,
            claimed_at         TEXT,
            processed_at       TEXT,
            created_at         TEXT NOT NULL,
            updated_at         TEXT NOT NULL
        );

        CREATE INDEX IF NOT EXISTS idx_queue_ready
            ON hubspot_sync_queue (status, next_retry_at, priority, created_at);
        CREATE INDEX IF NOT EXISTS idx_queue_assessment
            ON hubspot_sync_queue (assessment_id, status);
        CREATE INDEX IF NOT EXISTS idx_sessions_expiry
            ON assessment_sessions (expires_at);
    """)


def ping():
    """Trivial query used by the health check."""
    with _lock:
        return _get_db().execute("SELECT 1 AS health_check").fetchone()[0] == 1


def _set_clause(fields, allowed):
    unknown = set(fields) - allowed
    if unknown:
        raise ValueError(f"Unknown column(s): {sorted(unknown)}")
    return ", ".join(f"{name} = ?" for name in fields)


# ─── Assessments ─────────────────────────────────────────────────────────────

_ASSESSMENT_COLUMNS = {
    'session_id', 'responses', 'total_score', 'score_breakdown', 'score_category',
    'recommendations', 'email', 'first_name', 'last_name', 'company', 'phone',
    'job_title', 'industry', 'completion_time_seconds', 'hubspot_sync_status',
    'hubspot_sync_attempts', 'hubspot_sync_error', 'hubspot_contact_id',
    'hubspot_deal_id', 'hubspot_synced_at', 'completed_at', 'email_scrubbed_at',
}


def _assessment_column_value(name, value):
    if name == 'responses':
        return json.dumps(value or {})
    if name == 'recommendations':
        return json.dumps(value or [])
    if name == 'score_breakdown':
        breakdown = ScoreBreakdown.from_value(value)
        return json.dumps(breakdown.to_dict()) if breakdown else None
    if isinstance(value, datetime):
        return format_datetime(value)
    return value


def _row_to_assessment(row):
    data = dict(row)
    data['responses'] = json.loads(data['responses'] or '{}')
    data['recommendations'] = json.loads(data['recommendations'] or '[]')
    return Assessment.from_dict(data)


def insert_assessment(assessment):
    """Insert a new assessment. Returns the stored record (with id and timestamps)."""
    now = format_datetime(utcnow())
    assessment_id = assessment.id or new_id()
    values = {name: _assessment_column_value(name, getattr(assessment, name)) for name in _ASSESSMENT_COLUMNS}

    columns = ['id', 'created_at', 'updated_at'] + sorted(values)
    params = [assessment_id, now, now] + [values[name] for name in sorted(values)]

    with _transaction() as db:
        db.execute(
            f"INSERT INTO assessments ({', '.join(columns)}) VALUES ({', '.join('?' for _ in columns)})",
            params,
        )
    return get_assessment(assessment_id)


def get_assessment(assessment_id):
    """Fetch an assessment by id. Returns Assessment or None."""
    with _lock:
        row = _get_db().execute("SELECT * FROM assessments WHERE id = ?", (assessment_id,)).fetchone()
    return _row_to_assessment(row) if row else None


def get_assessment_by_session(session_id):
    with _lock:
        row = _get_db().execute("SELECT * FROM assessments WHERE session_id = ?", (session_id,)).fetchone()
    return _row_to_assessment(row) if row else None


def update_assessment(assessment_id, **fields):
    """Update selected columns of an assessment. Returns the updated record."""
    if not fields:
        return get_assessment(assessment_id)

    clause = _set_clause(fields, _ASSESSMENT_COLUMNS)
    params = [_assessment_column_value(k, v) for k, v in fields.items()]

    with _transaction() as db:
        cur = db.execute(
            f"UPDATE assessments SET {clause}, updated_at = ? WHERE id = ?",
            params + [format_datetime(utcnow()), assessment_id],
        )
        if cur.rowcount == 0:
            raise NotFoundError(f"Assessment {assessment_id} not found")
    return get_assessment(assessment_id)


def increment_sync_attempts(assessment_id, error=None, status=None):
    """Bump hubspot_sync_attempts and record the latest error."""
    sets = ["hubspot_sync_attempts = hubspot_sync_attempts + 1", "hubspot_sync_error = ?", "updated_at = ?"]
    params = [error, format_datetime(utcnow())]
    if status:
        sets.append("hubspot_sync_status = ?")
        params.append(status)

    with _transaction() as db:
        db.execute(f"UPDATE assessments SET {', '.join(sets)} WHERE id = ?", params + [assessment_id])


def list_assessments_for_scrubbing(completed_before, limit=100):
    """Completed assessments older than the cutoff that still hold contact data."""
    with _lock:
        rows = _get_db().execute("""
            SELECT * FROM assessments
            WHERE completed_at IS NOT NULL
              AND completed_at < ?
              AND email_scrubbed_at IS NULL
              AND (email IS NOT NULL OR first_name IS NOT NULL OR last_name IS NOT NULL
                   OR company IS NOT NULL OR phone IS NOT NULL)
            ORDER BY completed_at ASC
            LIMIT ?
        """, (format_datetime(completed_before), limit)).fetchall()
    return [_row_to_assessment(row) for row in rows]


def scrub_assessment(assessment_id):
    """Null out contact fields. Scores, category and responses are left as-is."""
    with _transaction() as db:
        cur = db.execute("""
            UPDATE assessments
            SET email = NULL, first_name = NULL, last_name = NULL, company = NULL,
                phone = NULL, job_title = NULL,
                email_scrubbed_at = ?, updated_at = ?
            WHERE id = ?
        """, (format_datetime(utcnow()), format_datetime(utcnow()), assessment_id))
        if cur.rowcount == 0:
            raise NotFoundError(f"Assessment {assessment_id} not found")
    return get_assessment(assessment_id)


def delete_assessments_by_email(email):
    """Delete every assessment for an email (case-insensitive). Queue entries cascade."""
    with _transaction() as db:
        cur = db.execute("DELETE FROM assessments WHERE lower(email) = lower(?)", (email,))
        return cur.rowcount


def mark_consent_withdrawn(email):
    """
    Flag the email's assessments as consent_withdrawn and drop their
    pending/processing queue entries so nothing syncs them again.
    Returns the number of assessments flagged.
    """
    now = format_datetime(utcnow())
    with _transaction() as db:
        db.execute("""
            DELETE FROM hubspot_sync_queue
            WHERE status IN (?, ?)
              AND assessment_id IN (SELECT id FROM assessments WHERE lower(email) = lower(?))
        """, (QUEUE_PENDING, QUEUE_PROCESSING, email))
        cur = db.execute(
            "UPDATE assessments SET hubspot_sync_status = ?, updated_at = ? WHERE lower(email) = lower(?)",
            (SYNC_CONSENT_WITHDRAWN, now, email),
        )
        return cur.rowcount


# ─── Sessions ────────────────────────────────────────────────────────────────

_SESSION_COLUMNS = {
    'current_step', 'responses', 'email', 'first_name', 'last_name', 'company',
    'is_complete', 'user_agent', 'ip_hash', 'referrer', 'last_activity', 'expires_at',
}


def _session_column_value(name, value):
    if name == 'responses':
        return json.dumps(value or {})
    if name == 'is_complete':
        return 1 if value else 0
    if isinstance(value, datetime):
        return format_datetime(value)
    return value


def _row_to_session(row):
    data = dict(row)
    data['responses'] = json.loads(data['responses'] or '{}')
    data['is_complete'] = bool(data['is_complete'])
    for key in ('last_activity', 'expires_at', 'created_at'):
        data[key] = parse_datetime(data[key])
    return data


def insert_session(session_id, expires_at, **fields):
    now = utcnow()
    values = {name: _session_column_value(name, v) for name, v in fields.items()}
    _set_clause(values, _SESSION_COLUMNS)
    values.setdefault('last_activity', format_datetime(now))
    values['expires_at'] = format_datetime(expires_at)

    columns = ['session_id', 'created_at'] + sorted(values)
    params = [session_id, format_datetime(now)] + [values[name] for name in sorted(values)]

    with _transaction() as db:
        db.execute(
            f"INSERT INTO assessment_sessions ({', '.join(columns)}) VALUES ({', '.join('?' for _ in columns)})",
            params,
        )
    return get_session(session_id)


def get_session(session_id):
    with _lock:
        row = _get_db().execute(
            "SELECT * FROM assessment_sessions WHERE session_id = ?", (session_id,)
        ).fetchone()
    return _row_to_session(row) if row else None


def update_session(session_id, **fields):
    clause = _set_clause(fields, _SESSION_COLUMNS)
    params = [_session_column_value(k, v) for k, v in fields.items()]

    with _transaction() as db:
        cur = db.execute(
            f"UPDATE assessment_sessions SET {clause} WHERE session_id = ?",
            params + [session_id],
        )
        if cur.rowcount == 0:
            raise NotFoundError(f"Session {session_id} not found")
    return get_session(session_id)


def delete_expired_sessions(now):
    """Delete sessions whose expiry has passed. Returns the count removed."""
    with _transaction() as db:
        cur = db.execute("DELETE FROM assessment_sessions WHERE expires_at < ?", (format_datetime(now),))
        return cur.rowcount


def delete_sessions_by_email(email):
    with _transaction() as db:
        cur = db.execute("DELETE FROM assessment_sessions WHERE lower(email) = lower(?)", (email,))
        return cur.rowcount


# ─── HubSpot sync queue ──────────────────────────────────────────────────────

_QUEUE_COLUMNS = {
    'payload', 'retry_count', 'max_retries', 'priority', 'status', 'next_retry_at',
    'last_error', 'error_type', 'hubspot_contact_id', 'hubspot_deal_id',
    'claimed_at', 'processed_at',
}


def _queue_column_value(name, value):
    if name == 'payload':
        return value.to_json() if isinstance(value, SyncPayload) else json.dumps(value)
    if isinstance(value, datetime):
        return format_datetime(value)
    return value


def _row_to_entry(row):
    data = dict(row)
    for key in ('next_retry_at', 'claimed_at', 'processed_at', 'created_at', 'updated_at'):
        data[key] = parse_datetime(data[key])
    data['payload'] = SyncPayload.from_json(data['payload'])
    return SyncQueueEntry(**data)


def insert_queue_entry(entry):
    now = format_datetime(utcnow())
    entry_id = entry.id or new_id()
    values = {name: _queue_column_value(name, getattr(entry, name)) for name in _QUEUE_COLUMNS}

    columns = ['id', 'assessment_id', 'created_at', 'updated_at'] + sorted(values)
    params = [entry_id, entry.assessment_id, now, now] + [values[name] for name in sorted(values)]

    with _transaction() as db:
        db.execute(
            f"INSERT INTO hubspot_sync_queue ({', '.join(columns)}) VALUES ({', '.join('?' for _ in columns)})",
            params,
        )
    return get_queue_entry(entry_id)


def get_queue_entry(entry_id):
    with _lock:
        row = _get_db().execute("SELECT * FROM hubspot_sync_queue WHERE id = ?", (entry_id,)).fetchone()
    return _row_to_entry(row) if row else None


def get_active_entry_for_assessment(assessment_id):
    """The assessment's pending/processing entry, if it has one."""
    with _lock:
        row = _get_db().execute("""
            SELECT * FROM hubspot_sync_queue
            WHERE assessment_id = ? AND status IN (?, ?)
            ORDER BY created_at DESC LIMIT 1
        """, (assessment_id, QUEUE_PENDING, QUEUE_PROCESSING)).fetchone()
    return _row_to_entry(row) if row else None


def update_queue_entry(entry_id, expected_status=None, **fields):
    """
    Update a queue entry. With expected_status, the update only applies if
    the entry is still in that status (conditional update). Returns the
    updated entry, or None if the condition did not hold.
    """
    clause = _set_clause(fields, _QUEUE_COLUMNS)
    params = [_queue_column_value(k, v) for k, v in fields.items()]
    params.append(format_datetime(utcnow()))

    where = "id = ?"
    params.append(entry_id)
    if expected_status is not None:
        where += " AND status = ?"
        params.append(expected_status)

    with _transaction() as db:
        cur = db.execute(f"UPDATE hubspot_sync_queue SET {clause}, updated_at = ? WHERE {where}", params)
        updated = cur.rowcount
    return get_queue_entry(entry_id) if updated else None


def list_ready_entries(now, limit=50):
    """Pending entries due at or before now, by priority then age."""
    with _lock:
        rows = _get_db().execute("""
            SELECT * FROM hubspot_sync_queue
            WHERE status = ? AND next_retry_at IS NOT NULL AND next_retry_at <= ?
            ORDER BY priority ASC, created_at ASC
            LIMIT ?
        """, (QUEUE_PENDING, format_datetime(now), limit)).fetchall()
    return [_row_to_entry(row) for row in rows]


def claim_ready_entries(now, limit=10):
    """
    Atomically move up to `limit` due entries from pending to processing and
    return them. Concurrent callers never receive the same entry.
    """
    stamp = format_datetime(now)
    with _transaction() as db:
        rows = db.execute("""
            SELECT id FROM hubspot_sync_queue
            WHERE status = ? AND next_retry_at IS NOT NULL AND next_retry_at <= ?
            ORDER BY priority ASC, created_at ASC
            LIMIT ?
        """, (QUEUE_PENDING, stamp, limit)).fetchall()

        claimed = []
        for row in rows:
            cur = db.execute("""
                UPDATE hubspot_sync_queue
                SET status = ?, claimed_at = ?, updated_at = ?
                WHERE id = ? AND status = ?
            """, (QUEUE_PROCESSING, stamp, stamp, row['id'], QUEUE_PENDING))
            if cur.rowcount:
                claimed.append(row['id'])

    entries = [get_queue_entry(entry_id) for entry_id in claimed]
    return sorted(entries, key=lambda e: (e.priority, e.created_at))


def release_stale_claims(claimed_before):
    """Return processing entries claimed before the cutoff to pending."""
    stamp = format_datetime(claimed_before)
    now = format_datetime(utcnow())
    with _transaction() as db:
        cur = db.execute("""
            UPDATE hubspot_sync_queue
            SET status = ?, claimed_at = NULL, next_retry_at = ?, updated_at = ?
            WHERE status = ? AND claimed_at < ?
        """, (QUEUE_PENDING, now, now, QUEUE_PROCESSING, stamp))
        return cur.rowcount


def list_entries_by_status(status, newest_first=True, limit=None):
    order = "DESC" if newest_first else "ASC"
    sql = f"SELECT * FROM hubspot_sync_queue WHERE status = ? ORDER BY updated_at {order}"
    params = [status]
    if limit:
        sql += " LIMIT ?"
        params.append(limit)
    with _lock:
        rows = _get_db().execute(sql, params).fetchall()
    return [_row_to_entry(row) for row in rows]


def count_entries(status=None, updated_since=None):
    sql = "SELECT COUNT(*) FROM hubspot_sync_queue WHERE 1 = 1"
    params = []
    if status:
        sql += " AND status = ?"
        params.append(status)
    if updated_since:
        sql += " AND updated_at >= ?"
        params.append(format_datetime(updated_since))
    with _lock:
        return _get_db().execute(sql, params).fetchone()[0]


def count_entries_by_status():
    counts = {QUEUE_PENDING: 0, QUEUE_PROCESSING: 0, QUEUE_COMPLETED: 0, QUEUE_FAILED: 0}
    with _lock:
        rows = _get_db().execute(
            "SELECT status, COUNT(*) AS n FROM hubspot_sync_queue GROUP BY status"
        ).fetchall()
    for row in rows:
        counts[row['status']] = row['n']
    return counts


def count_failed_by_error_type():
    with _lock:
        rows = _get_db().execute("""
            SELECT error_type, COUNT(*) AS n FROM hubspot_sync_queue
            WHERE status = ? AND error_type IS NOT NULL
            GROUP BY error_type
        """, (QUEUE_FAILED,)).fetchall()
    return {row['error_type']: row['n'] for row in rows}


def pending_age_bounds():
    """(oldest, newest) created_at among pending entries, or (None, None)."""
    with _lock:
        row = _get_db().execute(
            "SELECT MIN(created_at) AS oldest, MAX(created_at) AS newest FROM hubspot_sync_queue WHERE status = ?",
            (QUEUE_PENDING,),
        ).fetchone()
    return parse_datetime(row['oldest']), parse_datetime(row['newest'])


def last_processed_at():
    with _lock:
        row = _get_db().execute(
            "SELECT MAX(processed_at) FROM hubspot_sync_queue WHERE status = ?", (QUEUE_COMPLETED,)
        ).fetchone()
    return parse_datetime(row[0])


def delete_completed_before(cutoff):
    with _transaction() as db:
        cur = db.execute(
            "DELETE FROM hubspot_sync_queue WHERE status = ? AND processed_at < ?",
            (QUEUE_COMPLETED, format_datetime(cutoff)),
        )
        return cur.rowcount
