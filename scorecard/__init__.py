"""AI Reality Check Scorecard: lead sync core.

Scores executive self-assessments, qualifies the resulting leads into tiers
and syncs them to HubSpot through a rate limiter and a persistent retry queue.
"""
from dotenv import load_dotenv
load_dotenv()
