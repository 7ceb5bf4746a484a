"""HubSpot sync: qualification → rate limiter → contact (+ deal) calls.

Failures are raised, never swallowed; the caller decides between retry and
dead-letter (see retry_queue.py and assessments.py).
"""

import sys
from datetime import datetime, timedelta, timezone

from . import hubspot_client
from .config import get_hubspot_config, get_deal_config
from .errors import RateLimitExceeded, ValidationError
from .models import Assessment, ScoreBreakdown, SyncResult
from .qualification import qualify_lead
from .rate_limiter import get_rate_limiter

LEAD_QUALITY_LABELS = {
    0: "unqualified",
    1: "basic",
    2: "enhanced",
    3: "executive_briefing_qualified",
}

# HubSpot's standard contact properties; everything else counts against the
# free-tier custom property cap.
STANDARD_CONTACT_PROPERTIES = ("email", "firstname", "lastname", "company", "phone")


def get_lead_quality_label(tier):
    return LEAD_QUALITY_LABELS.get(tier, "unqualified")


def _as_str(value):
    return None if value is None else str(value)


class HubSpotSyncService:
    """Creates/updates HubSpot contacts (and deals for tier 3 leads)."""

    def __init__(self, client=hubspot_client, rate_limiter=None):
        self.client = client
        self._rate_limiter = rate_limiter

    @property
    def rate_limiter(self):
        if self._rate_limiter is None:
            self._rate_limiter = get_rate_limiter()
        return self._rate_limiter

    def create_or_update_contact(self, assessment):
        """
        Sync one assessment. Returns SyncResult; tier 0 leads are skipped
        without any HubSpot call. Raises RateLimitExceeded when the limiter
        has no room and HubSpotError when a HubSpot call fails.
        """
        if isinstance(assessment, dict):
            assessment = Assessment.from_dict(assessment)

        qualification = qualify_lead(assessment)
        lead_quality = get_lead_quality_label(qualification.tier)

        if not qualification.hubspot_sync_required:
            return SyncResult(
                success=True,
                skipped=True,
                reason="Insufficient qualification for HubSpot sync (no email)",
                tier=qualification.tier,
                lead_quality=lead_quality,
            )

        properties = self.build_contact_properties(assessment, qualification.tier)

        # Reserve every call this sync will make up front, all or nothing
        calls = 2 if qualification.deal_creation_required else 1
        limit = self.rate_limiter.check_batch_rate_limit(calls)
        if not limit.allowed:
            raise RateLimitExceeded(retry_after=limit.retry_after)

        contact = self.client.create_or_update_contact(properties)
        result = SyncResult(
            success=True,
            contact_id=contact["id"],
            tier=qualification.tier,
            lead_quality=lead_quality,
        )
        print(
            f"[sync] Contact {contact['id']} {'created' if contact.get('created') else 'updated'} "
            f"for session {assessment.session_id} (tier {qualification.tier})",
            file=sys.stderr,
        )

        if qualification.deal_creation_required:
            deal = self.client.create_deal(self.build_deal_properties(assessment), contact_id=contact["id"])
            result.deal_id = deal["id"]
            print(f"[sync] Deal {deal['id']} created for contact {contact['id']}", file=sys.stderr)

        return result

    def build_contact_properties(self, assessment, tier):
        """Standard fields plus the capped set of ai_* custom properties. None values dropped."""
        cfg = get_hubspot_config()
        breakdown = ScoreBreakdown.from_value(assessment.score_breakdown) or ScoreBreakdown()
        completed = assessment.completed_at or datetime.now(timezone.utc)

        properties = {
            "email": assessment.email.strip(),
            "firstname": assessment.first_name,
            "lastname": assessment.last_name,
            "company": assessment.company,
            "phone": assessment.phone,
            "ai_assessment_score": _as_str(assessment.total_score),
            "ai_assessment_category": assessment.score_category,
            "ai_value_score": _as_str(breakdown.value_assurance),
            "ai_customer_score": _as_str(breakdown.customer_safe),
            "ai_risk_score": _as_str(breakdown.risk_compliance),
            "ai_governance_score": _as_str(breakdown.governance),
            "ai_assessment_date": completed.strftime("%Y-%m-%d"),
            "ai_completion_time": _as_str(assessment.completion_time_seconds),
            "ai_lead_quality": get_lead_quality_label(tier),
            "lead_source": cfg['lead_source'],
        }
        properties = {k: v for k, v in properties.items() if v is not None}

        custom = [k for k in properties if k not in STANDARD_CONTACT_PROPERTIES]
        if len(custom) > cfg['max_custom_properties']:
            raise ValidationError(
                f"{len(custom)} custom properties exceeds HubSpot limit of {cfg['max_custom_properties']}"
            )
        return properties

    def build_deal_properties(self, assessment):
        cfg = get_deal_config()
        name = " ".join(p for p in (assessment.first_name, assessment.last_name) if p) or assessment.email
        if assessment.company:
            name = f"{name} ({assessment.company})"

        close_date = datetime.now(timezone.utc) + timedelta(days=cfg['days_to_close'])
        properties = {
            "dealname": f"{cfg['name_prefix']} - {name}",
            "dealstage": cfg['stage'],
            "pipeline": cfg['pipeline'],
            "amount": str(cfg['amount']),
            "closedate": close_date.strftime("%Y-%m-%dT%H:%M:%S.000Z"),
            "ai_assessment_score": _as_str(assessment.total_score),
        }
        return {k: v for k, v in properties.items() if v is not None}
