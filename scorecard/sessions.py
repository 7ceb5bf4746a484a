"""Assessment sessions: in-progress state for a visitor working through the scorecard."""

import re
import sys
import hashlib
from datetime import timedelta

from . import database
from .config import get_choice_points, get_session_config
from .errors import NotFoundError, ValidationError

EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")


def is_valid_email(email):
    return bool(email and EMAIL_PATTERN.match(email))


def hash_value(value):
    """SHA-256 hex digest. Used so raw IP addresses are never stored."""
    return hashlib.sha256(value.encode('utf-8')).hexdigest()


def _expiry_from_now():
    return database.utcnow() + timedelta(hours=get_session_config()['ttl_hours'])


def _is_expired(session):
    return session['expires_at'] < database.utcnow()


def create_session(user_agent=None, ip_address=None, referrer=None, expires_at=None):
    session_id = database.new_id()
    return database.insert_session(
        session_id,
        expires_at or _expiry_from_now(),
        user_agent=user_agent,
        ip_hash=hash_value(ip_address) if ip_address else None,
        referrer=referrer,
    )


def get_session(session_id):
    session = database.get_session(session_id)
    if session is None:
        raise NotFoundError(f"Assessment session {session_id} not found")
    return session


def validate_progression(current_step, new_step, responses):
    """Return a list of error messages; empty when the step change is valid."""
    errors = []
    if new_step > current_step + 1:
        errors.append(f"Cannot skip from step {current_step} to {new_step}")

    if new_step > 1 and len(responses) < new_step:
        errors.append(f"Step {new_step} requires {new_step} responses, got {len(responses)}")

    letters = get_choice_points()
    for question, answer in responses.items():
        if str(answer or '').strip().upper() not in letters:
            errors.append(f"Invalid response value for {question}: {answer}")
    return errors


def update_session_progress(session_id, current_step=None, responses=None, email=None,
                            first_name=None, last_name=None, company=None):
    """Record progress on an unexpired session. Raises ValidationError on bad input."""
    session = get_session(session_id)
    if _is_expired(session):
        raise ValidationError(f"Assessment session {session_id} has expired")

    if current_step is not None and responses is not None:
        errors = validate_progression(session['current_step'], current_step, responses)
        if errors:
            raise ValidationError(", ".join(errors))

    if email and not is_valid_email(email):
        raise ValidationError("Invalid email format")

    fields = {
        'current_step': current_step,
        'responses': responses,
        'email': email,
        'first_name': first_name,
        'last_name': last_name,
        'company': company,
    }
    fields = {k: v for k, v in fields.items() if v is not None}
    fields['last_activity'] = database.utcnow()
    return database.update_session(session_id, **fields)


def touch_session(session_id):
    """Mark activity and push the expiry out by another TTL."""
    now = database.utcnow()
    return database.update_session(session_id, last_activity=now, expires_at=_expiry_from_now())


def complete_session(session_id, responses=None, **contact):
    fields = {k: v for k, v in contact.items() if v is not None}
    if responses is not None:
        fields['responses'] = responses
    return database.update_session(
        session_id,
        current_step=get_session_config()['total_steps'],
        is_complete=True,
        last_activity=database.utcnow(),
        **fields,
    )


def cleanup_expired_sessions():
    deleted = database.delete_expired_sessions(database.utcnow())
    if deleted:
        print(f"[sessions] Deleted {deleted} expired session(s)", file=sys.stderr)
    return deleted
