"""Score calculator: assessment responses → category scores, overall score, label.

Responses map question ids to single answer letters. Each letter is worth a
fixed number of points; each question belongs to one of four categories by
keyword. Category scores are normalised to 0-100 and combined with fixed
weights into the overall score.
"""

import sys

from .config import (
    get_choice_points,
    get_category_config,
    get_score_category_config,
    get_recommendation_config,
)
from .models import CATEGORY_KEYS, ScoreBreakdown


_HEADLINES = {
    "champion": "Excellent work! You're leading in AI readiness.",
    "builder": "Strong foundation! Focus on scaling your AI initiatives.",
    "risk_zone": "Your AI programme has gaps that expose the business to avoidable risk.",
    "alert": "Priority focus needed on AI governance and compliance.",
    "crisis": "Urgent action needed: AI is in use without the controls to make it safe.",
}

_CATEGORY_ADVICE = {
    "value_assurance": "Establish clear AI value measurement processes.",
    "customer_safe": "Implement robust customer-safe AI practices.",
    "risk_compliance": "Strengthen your AI risk management framework.",
    "governance": "Put an accountable AI governance structure in place.",
}


def classify_question(question_id, categories=None):
    """Return the category key for a question id, or None if it matches none."""
    categories = categories or get_category_config()
    qid = str(question_id).lower()
    for key in CATEGORY_KEYS:
        keywords = categories.get(key, {}).get('keywords', [])
        if any(kw.lower() in qid for kw in keywords):
            return key
    return None


def classify_score(total_score):
    """Map a 0-100 score to its category label."""
    for band in get_score_category_config():
        if total_score >= band['min_score']:
            return band['label']
    return get_score_category_config()[-1]['label']


def calculate_assessment_score(responses):
    """
    Score a completed assessment.

    Returns a dict with total_score, score_breakdown (ScoreBreakdown),
    score_category, recommendations and skipped_questions. Answers that are
    not a known letter, and questions that map to no category, are skipped
    and listed in skipped_questions rather than failing the whole score.
    """
    if responses is None:
        responses = {}

    points = get_choice_points()
    max_points = max(points.values())
    categories = get_category_config()

    raw = {key: 0 for key in CATEGORY_KEYS}
    answered = {key: 0 for key in CATEGORY_KEYS}
    skipped = []

    for question_id, answer in responses.items():
        letter = str(answer or '').strip().upper()
        if letter not in points:
            skipped.append(question_id)
            continue

        category = classify_question(question_id, categories)
        if category is None:
            skipped.append(question_id)
            continue

        raw[category] += points[letter]
        answered[category] += 1

    if skipped:
        print(f"[scoring] Skipped {len(skipped)} unrecognised response(s): {sorted(skipped)}", file=sys.stderr)

    category_scores = {}
    for key in CATEGORY_KEYS:
        if answered[key]:
            category_scores[key] = round(raw[key] / (answered[key] * max_points) * 100)

    total_score = _weighted_total(category_scores, categories)
    score_category = classify_score(total_score)
    breakdown = ScoreBreakdown(**category_scores)

    return {
        "total_score": total_score,
        "score_breakdown": breakdown,
        "score_category": score_category,
        "recommendations": generate_recommendations(breakdown, score_category),
        "skipped_questions": sorted(skipped),
    }


def _weighted_total(category_scores, categories):
    """
    Weighted average of category scores, redistributing weight from
    categories that had no answers.
    """
    if not category_scores:
        return 0

    active = {k: categories[k].get('weight', 0) for k in category_scores}
    total_weight = sum(active.values())
    if total_weight == 0:
        return 0

    composite = sum(category_scores[k] * w / total_weight for k, w in active.items())
    return max(0, min(100, round(composite)))


def generate_recommendations(breakdown, score_category):
    """
    Headline for the category, then advice for the weakest categories
    (below the configured threshold), weakest first.
    """
    cfg = get_recommendation_config()
    threshold = cfg.get('weak_category_threshold', 60)
    max_items = cfg.get('max_category_items', 3)

    recommendations = [_HEADLINES.get(score_category, _HEADLINES["alert"])]

    order = {key: i for i, key in enumerate(CATEGORY_KEYS)}
    weak = [(score, key) for key, score in breakdown.items() if score is not None and score < threshold]
    weak.sort(key=lambda item: (item[0], order[item[1]]))

    for _, key in weak[:max_items]:
        recommendations.append(_CATEGORY_ADVICE[key])

    return recommendations
