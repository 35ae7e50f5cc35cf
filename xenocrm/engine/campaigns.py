"""
Campaign Orchestrator - Audience resolution and message fan-out.
Creates a campaign plus exactly one PENDING message log per matched
customer, then hands the campaign to the dispatcher without waiting on it.
"""

import logging
import time
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from xenocrm.config import config
from xenocrm.engine import crm, segmentation
from xenocrm.errors import CampaignNotFound, EmptyAudience
from xenocrm.logging_config import log_call
from xenocrm.models import Campaign, CampaignStats, Customer, MessageLog, Predicate, CAMPAIGN_ACTIVE, LOG_PENDING
from xenocrm.bus.events import bus, EVENT_CAMPAIGN_CREATED

logger = logging.getLogger(__name__)

NAME_PLACEHOLDER = '{name}'


def render_message(template: str, customer: Customer) -> str:
    """Substitute the customer's name for every {name} in the template."""
    return template.replace(NAME_PLACEHOLDER, customer.name or '')


@log_call
def create_campaign(
    name: Optional[str],
    rules: segmentation.Rules,
    dispatcher,
    message: Optional[str] = None,
    created_by: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Campaign:
    """
    Create a campaign for everyone matching `rules` and start delivery.

    The audience is a snapshot: later customer changes never alter the
    campaign, its audience_size or its message logs.

    Args:
        name: Campaign name; defaults to "Campaign <epoch ms>"
        rules: Wire-format rules dict or a Predicate
        dispatcher: Dispatcher that will send the messages in the background
        message: Template, may contain {name}
        created_by: Creator identity
        now: Evaluation instant for relative (days-since) clauses

    Returns: the stored Campaign, before any message has been sent
    Raises: EmptyAudience (nothing persisted), InvalidPredicate
    """
    predicate = segmentation.parse_predicate(rules)
    # Keep what the caller submitted, for audit; Predicates are serialised
    stored_rules = segmentation.to_rules(rules) if isinstance(rules, Predicate) else dict(rules or {})

    # Keyed by id so one customer can never get two logs
    audience = {c.id: c for c in segmentation.evaluate(predicate, now=now)}
    if not audience:
        logger.info(f"create_campaign: no customers match {stored_rules}")
        raise EmptyAudience(stored_rules)

    template = message or config.DEFAULT_MESSAGE_TEMPLATE
    size = len(audience)

    campaign = Campaign(
        name=name or f"Campaign {int(time.time() * 1000)}",
        rules=stored_rules,
        message=template,
        created_by=created_by or config.DEFAULT_CREATED_BY,
        audience_size=size,
        status=CAMPAIGN_ACTIVE,
        stats=CampaignStats(total=size, sent=0, failed=0, pending=size),
    )
    logs = [
        MessageLog(customer_id=customer.id, message=render_message(template, customer), status=LOG_PENDING)
        for customer in audience.values()
    ]

    campaign = crm.insert_campaign(campaign, logs)
    bus.emit(EVENT_CAMPAIGN_CREATED, {'campaign_id': campaign.id, 'audience_size': size})

    dispatcher.launch(campaign.id)
    return campaign


def preview_audience(rules: segmentation.Rules, now: Optional[datetime] = None) -> int:
    """Audience size for a rule set, without creating anything."""
    return segmentation.count(rules, now=now)


def get_campaign_detail(campaign_id: int) -> Tuple[Campaign, List[Dict[str, Any]]]:
    """
    Campaign with its message logs (recipient name/email included).
    Raises: CampaignNotFound
    """
    campaign = crm.get_campaign(campaign_id)
    if campaign is None:
        raise CampaignNotFound(campaign_id)
    return campaign, crm.get_message_logs(campaign_id)
