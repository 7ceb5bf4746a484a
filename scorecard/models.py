"""Record types shared by the scoring, qualification, sync and queue layers.

Stored JSON blobs (score breakdowns, queue payloads) are parsed into these
fixed-shape records at the storage boundary so the rest of the code never
handles open-ended dicts.
"""

import json
from dataclasses import dataclass, field, asdict, fields
from datetime import datetime
from typing import Optional, List, Dict

CATEGORY_KEYS = ('value_assurance', 'customer_safe', 'risk_compliance', 'governance')

# camelCase keys sent by the web layer → snake_case attribute names
_ALIASES = {
    'sessionId': 'session_id',
    'totalScore': 'total_score',
    'scoreBreakdown': 'score_breakdown',
    'scoreCategory': 'score_category',
    'firstName': 'first_name',
    'lastName': 'last_name',
    'jobTitle': 'job_title',
    'completedAt': 'completed_at',
    'completionTimeSeconds': 'completion_time_seconds',
    'valueAssurance': 'value_assurance',
    'customerSafe': 'customer_safe',
    'riskCompliance': 'risk_compliance',
}

SYNC_PENDING = 'pending'
SYNC_SYNCED = 'synced'
SYNC_SKIPPED = 'skipped'
SYNC_QUEUED = 'queued'
SYNC_FAILED = 'failed'
SYNC_CONSENT_WITHDRAWN = 'consent_withdrawn'

QUEUE_PENDING = 'pending'
QUEUE_PROCESSING = 'processing'
QUEUE_COMPLETED = 'completed'
QUEUE_FAILED = 'failed'
QUEUE_TERMINAL = (QUEUE_COMPLETED, QUEUE_FAILED)


def _normalize_keys(data):
    return {_ALIASES.get(k, k): v for k, v in data.items()}


def parse_datetime(value):
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value).replace('Z', '+00:00'))


def format_datetime(value):
    if value is None:
        return None
    return value.isoformat(timespec='microseconds')


@dataclass
class ScoreBreakdown:
    """Per-category 0-100 scores. None means the category had no answers."""
    value_assurance: Optional[int] = None
    customer_safe: Optional[int] = None
    risk_compliance: Optional[int] = None
    governance: Optional[int] = None

    def items(self):
        return [(key, getattr(self, key)) for key in CATEGORY_KEYS]

    def to_dict(self):
        return dict(self.items())

    @classmethod
    def from_value(cls, value):
        """Accept a ScoreBreakdown, a dict (snake or camel keys), a JSON string, or None."""
        if value is None or isinstance(value, cls):
            return value
        if isinstance(value, str):
            try:
                value = json.loads(value)
            except ValueError:
                return None
        if not isinstance(value, dict):
            return None

        data = _normalize_keys(value)
        kwargs = {}
        for key in CATEGORY_KEYS:
            score = data.get(key)
            kwargs[key] = int(score) if isinstance(score, (int, float)) else None
        return cls(**kwargs)


@dataclass
class Assessment:
    session_id: str
    responses: Dict[str, str] = field(default_factory=dict)
    id: Optional[str] = None
    total_score: Optional[int] = None
    score_breakdown: Optional[ScoreBreakdown] = None
    score_category: Optional[str] = None
    recommendations: List[str] = field(default_factory=list)
    email: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    company: Optional[str] = None
    phone: Optional[str] = None
    job_title: Optional[str] = None
    industry: Optional[str] = None
    completion_time_seconds: Optional[int] = None
    hubspot_sync_status: str = SYNC_PENDING
    hubspot_sync_attempts: int = 0
    hubspot_sync_error: Optional[str] = None
    hubspot_contact_id: Optional[str] = None
    hubspot_deal_id: Optional[str] = None
    hubspot_synced_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    email_scrubbed_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    CONTACT_FIELDS = ('email', 'first_name', 'last_name', 'company', 'phone', 'job_title', 'industry')

    @classmethod
    def from_dict(cls, data):
        data = _normalize_keys(data)
        known = {f.name for f in fields(cls)}
        kwargs = {k: v for k, v in data.items() if k in known}
        kwargs.setdefault('session_id', '')
        kwargs['score_breakdown'] = ScoreBreakdown.from_value(kwargs.get('score_breakdown'))
        for key in ('hubspot_synced_at', 'created_at', 'completed_at', 'email_scrubbed_at', 'updated_at'):
            kwargs[key] = parse_datetime(kwargs.get(key))
        if kwargs.get('total_score') is not None:
            kwargs['total_score'] = int(kwargs['total_score'])
        return cls(**kwargs)

    def to_dict(self):
        data = asdict(self)
        data['score_breakdown'] = self.score_breakdown.to_dict() if self.score_breakdown else None
        for key in ('hubspot_synced_at', 'created_at', 'completed_at', 'email_scrubbed_at', 'updated_at'):
            data[key] = format_datetime(data[key])
        return data


@dataclass
class SyncPayload:
    """Snapshot of an assessment stored with a queue entry.

    Tagged with kind/version so a payload written by an older release is
    recognised rather than silently misread.
    """
    KIND = 'assessment_sync'
    VERSION = 1

    session_id: str = ''
    email: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    company: Optional[str] = None
    phone: Optional[str] = None
    industry: Optional[str] = None
    total_score: Optional[int] = None
    score_category: Optional[str] = None
    score_breakdown: Optional[ScoreBreakdown] = None
    completed_at: Optional[datetime] = None
    completion_time_seconds: Optional[int] = None

    @classmethod
    def from_assessment(cls, assessment):
        kwargs = {f.name: getattr(assessment, f.name) for f in fields(cls)}
        return cls(**kwargs)

    def to_assessment(self):
        kwargs = {f.name: getattr(self, f.name) for f in fields(self)}
        return Assessment(**kwargs)

    def to_json(self):
        data = asdict(self)
        data['score_breakdown'] = self.score_breakdown.to_dict() if self.score_breakdown else None
        data['completed_at'] = format_datetime(self.completed_at)
        return json.dumps({'kind': self.KIND, 'version': self.VERSION, 'data': data})

    @classmethod
    def from_json(cls, raw):
        envelope = json.loads(raw) if isinstance(raw, str) else raw
        if envelope.get('kind') != cls.KIND:
            raise ValueError(f"Unknown sync payload kind: {envelope.get('kind')!r}")
        if envelope.get('version') != cls.VERSION:
            raise ValueError(f"Unsupported sync payload version: {envelope.get('version')!r}")

        data = envelope.get('data') or {}
        known = {f.name for f in fields(cls)}
        kwargs = {k: v for k, v in data.items() if k in known}
        kwargs['score_breakdown'] = ScoreBreakdown.from_value(kwargs.get('score_breakdown'))
        kwargs['completed_at'] = parse_datetime(kwargs.get('completed_at'))
        return cls(**kwargs)


@dataclass
class SyncQueueEntry:
    assessment_id: str
    payload: SyncPayload
    id: Optional[str] = None
    retry_count: int = 0
    max_retries: int = 5
    priority: int = 5
    status: str = QUEUE_PENDING
    next_retry_at: Optional[datetime] = None
    last_error: Optional[str] = None
    error_type: Optional[str] = None
    hubspot_contact_id: Optional[str] = None
    hubspot_deal_id: Optional[str] = None
    claimed_at: Optional[datetime] = None
    processed_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def is_terminal(self):
        return self.status in QUEUE_TERMINAL

    def to_dict(self):
        return {
            'id': self.id,
            'assessment_id': self.assessment_id,
            'retry_count': self.retry_count,
            'max_retries': self.max_retries,
            'priority': self.priority,
            'status': self.status,
            'next_retry_at': format_datetime(self.next_retry_at),
            'last_error': self.last_error,
            'error_type': self.error_type,
            'hubspot_contact_id': self.hubspot_contact_id,
            'hubspot_deal_id': self.hubspot_deal_id,
            'claimed_at': format_datetime(self.claimed_at),
            'processed_at': format_datetime(self.processed_at),
            'created_at': format_datetime(self.created_at),
            'updated_at': format_datetime(self.updated_at),
        }


@dataclass
class QualificationResult:
    tier: int
    hubspot_sync_required: bool
    qualified_for_briefing: bool
    deal_creation_required: bool
    reasons: List[str] = field(default_factory=list)

    def to_dict(self):
        return asdict(self)


@dataclass
class SyncResult:
    success: bool
    contact_id: Optional[str] = None
    deal_id: Optional[str] = None
    skipped: bool = False
    reason: Optional[str] = None
    tier: Optional[int] = None
    lead_quality: Optional[str] = None

    def to_dict(self):
        return asdict(self)


@dataclass
class BatchProcessResult:
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    errors: List[dict] = field(default_factory=list)

    def to_dict(self):
        return asdict(self)
