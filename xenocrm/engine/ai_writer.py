"""
AI Writer - Campaign copy and performance summaries.
Every function degrades to fixed text when the AI backend is missing or fails.
"""

import logging
import re
from typing import List

from xenocrm.logging_config import log_call
from xenocrm.models import CampaignStats

logger = logging.getLogger(__name__)

FALLBACK_MESSAGES = [
    "Hi {name}, here's 10% off on your next order! 🎉",
    "Don't miss out {name}! Special offer just for you! 💫",
    "Welcome back {name}! We've missed you - here's 15% off! ❤️",
]

_NUMBERING_RE = re.compile(r'^\s*(?:\d+[.)]?|[-*•])\s*')


def parse_messages(response: str, limit: int = 3) -> List[str]:
    """First `limit` non-empty lines of an AI reply, list numbering stripped."""
    messages = []
    for line in response.splitlines():
        text = _NUMBERING_RE.sub('', line).strip().strip('"')
        if text:
            messages.append(text)
        if len(messages) == limit:
            break
    return messages


@log_call
def generate_campaign_messages(objective: str, audience: str = 'general audience', ai=None) -> List[str]:
    """
    Suggest three short campaign messages using the {name} placeholder.
    Returns FALLBACK_MESSAGES when the AI is unavailable or says nothing usable.
    """
    if ai is None:
        return list(FALLBACK_MESSAGES)

    prompt = f"""Create 3 marketing messages for a campaign.

Objective: {objective}
Audience: {audience}

Requirements:
- Personalized (use {{name}} placeholder)
- Include discount/offer
- Keep under 100 characters
- Professional tone

Reply with one message per line, nothing else."""

    try:
        messages = parse_messages(ai.complete(prompt, max_tokens=300))
    except Exception as e:
        logger.warning(f"Message generation failed ({type(e).__name__}: {e}); using fallback messages")
        return list(FALLBACK_MESSAGES)

    return messages or list(FALLBACK_MESSAGES)


def delivery_rate(stats: CampaignStats) -> float:
    """Percentage of messages sent, 0.0 for an empty campaign."""
    if not stats.total:
        return 0.0
    return stats.sent / stats.total * 100


def fallback_summary(stats: CampaignStats) -> str:
    return (
        f"Your campaign reached {stats.total} customers with a {delivery_rate(stats):.1f}% delivery rate. "
        f"{stats.sent} messages were successfully delivered, {stats.failed} failed"
        + (f" and {stats.pending} are still pending." if stats.pending else ".")
    )


@log_call
def generate_campaign_summary(stats: CampaignStats, ai=None) -> str:
    """Two or three business-friendly sentences about a campaign's delivery."""
    if ai is None:
        return fallback_summary(stats)

    prompt = f"""Summarize this campaign performance in 2-3 sentences:

Campaign Results:
- Total messages: {stats.total}
- Successfully delivered: {stats.sent}
- Failed: {stats.failed}
- Still pending: {stats.pending}
- Delivery rate: {delivery_rate(stats):.1f}%

Write a business-friendly summary:"""

    try:
        summary = ai.complete(prompt, max_tokens=200).strip()
    except Exception as e:
        logger.warning(f"Summary generation failed ({type(e).__name__}: {e}); using fallback summary")
        return fallback_summary(stats)

    return summary or fallback_summary(stats)
