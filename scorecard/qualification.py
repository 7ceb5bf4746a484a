"""Lead qualification: assessment + scores → tier 0-3 and sync/deal flags.

Tier 0: no email, nothing to sync.
Tier 1: email only.
Tier 2: email + first name + company.
Tier 3: a tier 1/2 lead that matches any executive-briefing rule below;
        these get a HubSpot deal as well as a contact.
"""

from .config import get_qualification_config
from .errors import ValidationError
from .models import Assessment, QualificationResult, ScoreBreakdown


def _present(value):
    return bool(value and str(value).strip())


# ─── Executive briefing rules ────────────────────────────────────────────────
# Each rule takes (assessment, config) and returns True when it matches.
# Evaluated in order; any match promotes the lead to tier 3.

def _has_complete_contact(a, cfg):
    return all(_present(v) for v in (a.first_name, a.last_name, a.company, a.phone))


def _needs_help(a, cfg):
    return a.total_score is not None and a.total_score < cfg['executive_briefing_score_threshold']


def _is_large_company(a, cfg):
    if not _present(a.company):
        return False
    company = a.company.lower()
    return any(kw.lower() in company for kw in cfg['large_company_keywords'])


def _is_high_value_industry(a, cfg):
    haystack = ' '.join(v.lower() for v in (a.company, a.industry) if _present(v))
    if not haystack:
        return False
    return any(industry.lower() in haystack for industry in cfg['high_value_industries'])


def _has_critical_category(a, cfg):
    breakdown = ScoreBreakdown.from_value(a.score_breakdown)
    if breakdown is None:
        return False
    for key, threshold in (cfg.get('critical_category_thresholds') or {}).items():
        score = getattr(breakdown, key, None)
        if score is not None and score < threshold:
            return True
    return False


BRIEFING_RULES = [
    ("complete_contact", _has_complete_contact),
    ("needs_help", _needs_help),
    ("large_company", _is_large_company),
    ("high_value_industry", _is_high_value_industry),
    ("critical_category", _has_critical_category),
]


def matching_briefing_rules(assessment, config=None):
    """Names of every briefing rule the assessment satisfies."""
    cfg = config or get_qualification_config()
    return [name for name, rule in BRIEFING_RULES if rule(assessment, cfg)]


def qualify_lead(assessment):
    """
    Qualify an assessment (Assessment or dict with snake/camel keys).

    Raises ValidationError for a missing assessment. A missing score
    breakdown is fine; the other signals still apply.
    """
    if assessment is None:
        raise ValidationError("Invalid assessment data: assessment is required")
    if isinstance(assessment, dict):
        assessment = Assessment.from_dict(assessment)
    elif not isinstance(assessment, Assessment):
        raise ValidationError(f"Invalid assessment data: {type(assessment).__name__}")

    if not _present(assessment.email):
        return QualificationResult(
            tier=0,
            hubspot_sync_required=False,
            qualified_for_briefing=False,
            deal_creation_required=False,
        )

    tier = 2 if _present(assessment.first_name) and _present(assessment.company) else 1

    reasons = matching_briefing_rules(assessment)
    if reasons:
        tier = 3

    qualified = tier == 3
    return QualificationResult(
        tier=tier,
        hubspot_sync_required=True,
        qualified_for_briefing=qualified,
        deal_creation_required=qualified,
        reasons=reasons,
    )
