"""Config loader: reads config.yaml and environment variables."""

import os
import yaml

_config = None

CONFIG_PATH = os.getenv(
    'SCORECARD_CONFIG',
    os.path.join(os.path.dirname(__file__), '..', 'config.yaml'),
)


def get_config():
    """Load and cache the YAML config file. A missing file means all defaults."""
    global _config
    if _config is not None:
        return _config

    if os.path.exists(CONFIG_PATH):
        with open(CONFIG_PATH, 'r') as f:
            _config = yaml.safe_load(f) or {}
    else:
        _config = {}

    return _config


# ─── Scoring ──────────────────────────────────────────────────────────────────

DEFAULT_CATEGORIES = {
    'value_assurance': {'weight': 25, 'keywords': ['value', 'q1']},
    'customer_safe': {'weight': 35, 'keywords': ['customer', 'q2']},
    'risk_compliance': {'weight': 25, 'keywords': ['risk', 'q3']},
    'governance': {'weight': 15, 'keywords': ['governance', 'q4']},
}


def get_choice_points():
    """Points per answer letter, keys upper-cased."""
    points = get_config().get('scoring', {}).get('choice_points') or {
        'A': 10, 'B': 7, 'C': 4, 'D': 1, 'E': 0,
    }
    return {str(k).upper(): v for k, v in points.items()}


def get_category_config():
    """Return the per-category weight/keyword table. Weights must sum to 100."""
    categories = get_config().get('scoring', {}).get('categories') or DEFAULT_CATEGORIES
    total = sum(c.get('weight', 0) for c in categories.values())
    if total != 100:
        raise ValueError(f"Category weights must sum to 100, got {total}")
    return categories


def get_score_category_config():
    """Return score-category thresholds, sorted descending by min_score."""
    labels = get_config().get('scoring', {}).get('score_categories', [
        {"label": "champion", "min_score": 80},
        {"label": "builder", "min_score": 60},
        {"label": "risk_zone", "min_score": 40},
        {"label": "alert", "min_score": 20},
        {"label": "crisis", "min_score": 0},
    ])
    return sorted(labels, key=lambda t: t['min_score'], reverse=True)


def get_recommendation_config():
    return get_config().get('scoring', {}).get('recommendations', {})


# ─── Qualification ───────────────────────────────────────────────────────────

def get_qualification_config():
    defaults = {
        'executive_briefing_score_threshold': 60,
        'large_company_keywords': [
            'corp', 'inc', 'llc', 'ltd', 'group', 'holdings',
            'corporation', 'enterprise', 'solutions', 'business',
        ],
        'high_value_industries': [
            'finance', 'banking', 'healthcare', 'technology', 'manufacturing',
        ],
        'critical_category_thresholds': {'customer_safe': 40},
    }
    return {**defaults, **(get_config().get('qualification') or {})}


# ─── HubSpot ──────────────────────────────────────────────────────────────────

def get_hubspot_config():
    defaults = {
        'base_url': 'https://api.hubapi.com',
        'timeout_seconds': 10,
        'lead_source': 'AI Reality Check Scorecard',
        'max_custom_properties': 10,
    }
    return {**defaults, **(get_config().get('hubspot') or {})}


def get_deal_config():
    defaults = {
        'amount': '5000',
        'pipeline': 'ai_consulting_pipeline',
        'stage': 'executive_briefing_requested',
        'days_to_close': 30,
        'name_prefix': 'AI Reality Check',
    }
    return {**defaults, **(get_config().get('deals') or {})}


# ─── Rate limiting ───────────────────────────────────────────────────────────

def get_rate_limit_config():
    """Rate limit settings. HUBSPOT_MAX_REQUESTS / HUBSPOT_RATE_WINDOW / RATE_LIMIT_BACKEND override YAML."""
    defaults = {
        'backend': 'memory',
        'max_requests': 100,
        'window_seconds': 10,
        'identifier': 'hubspot',
        'redis_key_prefix': 'scorecard:ratelimit',
    }
    cfg = {**defaults, **(get_config().get('rate_limiting') or {})}

    if os.getenv('HUBSPOT_MAX_REQUESTS'):
        cfg['max_requests'] = int(os.getenv('HUBSPOT_MAX_REQUESTS'))
    if os.getenv('HUBSPOT_RATE_WINDOW'):
        cfg['window_seconds'] = int(os.getenv('HUBSPOT_RATE_WINDOW'))
    if os.getenv('RATE_LIMIT_BACKEND'):
        cfg['backend'] = os.getenv('RATE_LIMIT_BACKEND')

    return cfg


# ─── Retry queue ──────────────────────────────────────────────────────────────

def get_retry_config():
    defaults = {
        'delays': [60, 300, 900, 1800, 3600],
        'max_retries': 5,
        'default_priority': 5,
        'rate_limit_priority': 3,
    }
    return {**defaults, **(get_config().get('retry') or {})}


def get_queue_config():
    defaults = {
        'batch_size': 10,
        'processing_interval': 60,
        'maintenance_interval': 3600,
        'stale_claim_seconds': 600,
        'completed_retention_days': 7,
    }
    return {**defaults, **(get_config().get('queue') or {})}


# ─── Sessions / retention / health ───────────────────────────────────────────

def get_session_config():
    defaults = {'ttl_hours': 24, 'total_steps': 4}
    return {**defaults, **(get_config().get('sessions') or {})}


def get_retention_config():
    defaults = {'email_retention_days': 30, 'batch_size': 100}
    return {**defaults, **(get_config().get('retention') or {})}


def get_health_config():
    defaults = {
        'max_pending': 1000,
        'max_recent_failures': 50,
        'failure_window_hours': 24,
    }
    return {**defaults, **(get_config().get('health') or {})}
