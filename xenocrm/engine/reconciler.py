"""
Receipt Reconciler - Applies vendor delivery receipts.
Moves a message log from PENDING to its terminal status and recomputes the
owning campaign's stats/status from the full set of its logs.

Receipts arrive on vendor timer threads (or the inbound callback), in any
order, possibly after the dispatch run has drained.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Tuple

import psycopg2

from xenocrm.engine import crm
from xenocrm.engine.vendor import parse_receipt
from xenocrm.logging_config import log_call
from xenocrm.models import (
    Campaign, CampaignStats, DeliveryReceipt,
    CAMPAIGN_ACTIVE, CAMPAIGN_COMPLETED, LOG_FAILED, LOG_PENDING, LOG_SENT, LOG_TERMINAL_STATUSES,
)
from xenocrm.bus.events import bus, EVENT_RECEIPT_APPLIED, EVENT_CAMPAIGN_COMPLETED

logger = logging.getLogger(__name__)


def summarize(counts: Dict[str, int]) -> Tuple[CampaignStats, str]:
    """
    Turn {log status: count} into campaign stats and status.
    completed iff nothing is pending and there is at least one log.
    """
    stats = CampaignStats(
        sent=counts.get(LOG_SENT, 0),
        failed=counts.get(LOG_FAILED, 0),
        pending=counts.get(LOG_PENDING, 0),
    )
    stats.total = stats.sent + stats.failed + stats.pending
    status = CAMPAIGN_COMPLETED if stats.pending == 0 and stats.total > 0 else CAMPAIGN_ACTIVE
    return stats, status


def refresh_campaign(campaign_id: int) -> Optional[Campaign]:
    """
    Recompute a campaign's stats and status.
    Database errors are logged, not raised: the campaign keeps its last
    committed stats and the next receipt or dispatch event recomputes again.
    """
    try:
        campaign = crm.update_campaign_stats(campaign_id, summarize)
    except psycopg2.Error as e:
        logger.error(f"Stats recomputation failed for campaign {campaign_id}, will retry on next event: {e}")
        return None

    if campaign:
        s = campaign.stats
        logger.debug(
            f"Campaign {campaign_id} stats: total={s.total} sent={s.sent} "
            f"failed={s.failed} pending={s.pending} -> {campaign.status}"
        )
    return campaign


@log_call
def apply_receipt(
    message_id: int,
    status: str,
    timestamp: Optional[datetime] = None,
    payload: Optional[Dict[str, Any]] = None,
) -> bool:
    """
    Apply one delivery receipt.

    The log transition is compare-and-set from PENDING: a duplicate or late
    receipt for a log that is already SENT/FAILED changes nothing. Campaign
    stats are recomputed either way, which also heals a previously failed
    recomputation.

    Returns: True if this receipt moved the log out of PENDING
    """
    status = str(status).upper()
    if status not in LOG_TERMINAL_STATUSES:
        raise ValueError(f"Receipt status must be SENT or FAILED, got {status!r}")

    sent_at = timestamp or datetime.now(timezone.utc)
    campaign_id = crm.transition_log(message_id, status, sent_at, payload)
    applied = campaign_id is not None

    if not applied:
        log = crm.get_message_log(message_id)
        if log is None:
            logger.warning(f"Receipt for unknown message {message_id} ignored")
            return False
        logger.info(f"Receipt {message_id} -> {status} ignored: log already {log.status}")
        campaign_id = log.campaign_id

    campaign = refresh_campaign(campaign_id)

    if applied:
        logger.info(f"Receipt applied: message {message_id} -> {status} (campaign {campaign_id})")
        bus.emit(EVENT_RECEIPT_APPLIED, {'message_id': message_id, 'campaign_id': campaign_id, 'status': status})
        if campaign and campaign.status == CAMPAIGN_COMPLETED:
            logger.info(f"Campaign {campaign_id} completed: {campaign.stats.as_dict()}")
            bus.emit(EVENT_CAMPAIGN_COMPLETED, {'campaign_id': campaign_id, 'stats': campaign.stats.as_dict()})

    return applied


def apply(receipt: DeliveryReceipt) -> bool:
    """apply_receipt for a DeliveryReceipt (the vendor simulator's callback)."""
    return apply_receipt(receipt.message_id, receipt.status, receipt.timestamp, receipt.vendor_response)


def handle_receipt_callback(payload: Dict[str, Any]) -> Dict[str, Any]:
    """
    Entry point for the vendor's receipt callback body.
    Raises ValueError for a malformed payload; otherwise acknowledges.
    """
    receipt = parse_receipt(payload)
    apply(receipt)
    return {'success': True, 'message': 'Receipt processed'}
