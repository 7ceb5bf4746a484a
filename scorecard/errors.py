"""Error types and HubSpot error classification."""

import requests

RATE_LIMIT = 'rate_limit'
SERVER_ERROR = 'server_error'
NETWORK_ERROR = 'network_error'
AUTH_ERROR = 'auth_error'
VALIDATION_ERROR = 'validation_error'

ERROR_TYPES = (RATE_LIMIT, SERVER_ERROR, NETWORK_ERROR, AUTH_ERROR, VALIDATION_ERROR)

# Resending the same invalid data cannot succeed.
NON_RETRYABLE = frozenset({VALIDATION_ERROR})


class ScorecardError(Exception):
    """Base class for all errors raised by this package."""


class ValidationError(ScorecardError, ValueError):
    """Bad input. Surfaced to the caller, never retried."""


class NotFoundError(ScorecardError, LookupError):
    pass


class HubSpotError(ScorecardError):
    """A failed HubSpot call, classified for the retry queue."""

    def __init__(self, message, error_type=SERVER_ERROR, status_code=None, retry_after=None):
        super().__init__(message)
        self.error_type = error_type if error_type in ERROR_TYPES else SERVER_ERROR
        self.status_code = status_code
        self.retry_after = retry_after

    @property
    def is_retryable(self):
        return self.error_type not in NON_RETRYABLE

    def to_dict(self):
        return {
            'error': str(self),
            'error_type': self.error_type,
            'status_code': self.status_code,
            'retry_after': self.retry_after,
            'retryable': self.is_retryable,
        }

    @classmethod
    def from_response(cls, resp):
        """Classify a non-2xx HubSpot response by status code."""
        status = resp.status_code
        retry_after = None

        if status in (401, 403):
            error_type, message = AUTH_ERROR, 'HubSpot authentication failed'
        elif status == 429:
            error_type, message = RATE_LIMIT, 'HubSpot rate limit exceeded'
            retry_after = _parse_retry_after(resp.headers.get('Retry-After'))
        elif status in (400, 409, 422):
            error_type, message = VALIDATION_ERROR, 'HubSpot validation error'
        elif status >= 500:
            error_type, message = SERVER_ERROR, 'HubSpot server error'
        else:
            error_type, message = SERVER_ERROR, 'Unexpected HubSpot response'

        detail = _response_message(resp)
        if detail:
            message = f"{message}: {detail}"

        return cls(f"{message} ({status})", error_type=error_type,
                   status_code=status, retry_after=retry_after)

    @classmethod
    def from_exception(cls, exc):
        """Wrap any exception raised during a sync attempt."""
        if isinstance(exc, HubSpotError):
            return exc
        if isinstance(exc, (requests.exceptions.Timeout, requests.exceptions.ConnectionError)):
            return cls(f"HubSpot network error: {exc}", error_type=NETWORK_ERROR)
        if isinstance(exc, ValidationError):
            return cls(f"HubSpot validation error: {exc}", error_type=VALIDATION_ERROR)
        return cls(f"Unexpected HubSpot error: {exc}", error_type=SERVER_ERROR)


class RateLimitExceeded(HubSpotError):
    """The local limiter refused capacity for a sync. Transient."""

    def __init__(self, retry_after=None, message='Local HubSpot rate limit reached'):
        super().__init__(message, error_type=RATE_LIMIT, status_code=429, retry_after=retry_after)


def _parse_retry_after(value):
    if not value:
        return None
    try:
        return max(1, int(value))
    except (TypeError, ValueError):
        return None


def _response_message(resp):
    try:
        body = resp.json()
    except ValueError:
        return (resp.text or '')[:200]
    if not isinstance(body, dict):
        return ''
    if body.get('message'):
        return body['message']
    error = body.get('error')
    if isinstance(error, dict):
        return error.get('message', '')
    return error or ''
