"""
Delivery Dispatcher - Rate-limited outbound send loop.

Each campaign gets one background dispatch run on a worker thread:
    STARTED -> (send one PENDING log -> fixed delay)* -> DRAINED

The run draws the campaign's PENDING logs once at start and sends them
strictly one at a time. An accepted message stays PENDING until its
receipt arrives; a failed accept call marks the log FAILED immediately.
Runs for different campaigns proceed independently, up to max_campaigns
(DISPATCH_MAX_CAMPAIGNS) at a time; further launches queue for a free worker.
"""

import logging
import threading
import time
from collections import OrderedDict
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import dataclass
from functools import partial
from typing import Dict, List, Optional

import psycopg2

from xenocrm.config import config
from xenocrm.engine import crm, reconciler
from xenocrm.errors import VendorAcceptFailure
from xenocrm.models import PendingDelivery, LOG_FAILED
from xenocrm.bus.events import (
    bus, EVENT_DISPATCH_STARTED, EVENT_MESSAGE_ACCEPTED, EVENT_MESSAGE_FAILED, EVENT_DISPATCH_DRAINED,
)

logger = logging.getLogger(__name__)

# Finished runs kept so wait() still returns their result after they drain
FINISHED_RUNS_KEPT = 256


@dataclass
class DispatchResult:
    """Outcome of one drained dispatch run."""
    campaign_id: int
    attempted: int = 0
    accepted: int = 0
    failed: int = 0


class Dispatcher:
    """
    Launches and supervises dispatch runs. Every run is a Future: callers
    can wait on it, and a crashed run is logged when it finishes.
    """

    def __init__(
        self,
        vendor,
        delay_seconds: Optional[float] = None,
        accept_timeout: Optional[float] = None,
        max_campaigns: Optional[int] = None,
    ):
        self.vendor = vendor
        self.delay_seconds = config.DISPATCH_DELAY_SECONDS if delay_seconds is None else delay_seconds
        self.accept_timeout = config.VENDOR_ACCEPT_TIMEOUT_SECONDS if accept_timeout is None else accept_timeout
        self._executor = ThreadPoolExecutor(
            max_workers=max_campaigns or config.DISPATCH_MAX_CAMPAIGNS,
            thread_name_prefix='dispatch',
        )
        self._runs: Dict[int, Future] = {}
        self._finished: "OrderedDict[int, Future]" = OrderedDict()
        self._lock = threading.Lock()

    # -------------------------------------------------------------------------
    # Supervision
    # -------------------------------------------------------------------------

    def launch(self, campaign_id: int) -> Future:
        """
        Start a background dispatch run for a campaign and return its Future.
        If a run for that campaign is still going, its Future is returned instead.
        """
        with self._lock:
            current = self._runs.get(campaign_id)
            if current is not None and not current.done():
                logger.info(f"Dispatch run for campaign {campaign_id} already in progress")
                return current
            future = self._executor.submit(self.run, campaign_id)
            self._runs[campaign_id] = future

        future.add_done_callback(partial(self._on_run_done, campaign_id))
        logger.info(f"Launched dispatch run for campaign {campaign_id}")
        return future

    def _on_run_done(self, campaign_id: int, future: Future) -> None:
        with self._lock:
            if self._runs.get(campaign_id) is future:
                del self._runs[campaign_id]
            self._finished.pop(campaign_id, None)
            self._finished[campaign_id] = future
            while len(self._finished) > FINISHED_RUNS_KEPT:
                self._finished.popitem(last=False)

        if future.cancelled():
            logger.warning(f"Dispatch run for campaign {campaign_id} was cancelled before it started")
            return
        exc = future.exception()
        if exc is not None:
            logger.error(f"Dispatch run for campaign {campaign_id} crashed: {type(exc).__name__}: {exc}")

    def run_for(self, campaign_id: int) -> Optional[Future]:
        """The active run for a campaign, else its most recent finished one."""
        with self._lock:
            return self._runs.get(campaign_id) or self._finished.get(campaign_id)

    def wait(self, campaign_id: int, timeout: Optional[float] = None) -> DispatchResult:
        """Block until the campaign's run drains. Re-raises the run's exception."""
        future = self.run_for(campaign_id)
        if future is None:
            raise KeyError(f"No dispatch run launched for campaign {campaign_id}")
        return future.result(timeout=timeout)

    def wait_all(self, timeout: Optional[float] = None) -> bool:
        """Block until every launched run is done. False if any is still going at timeout."""
        with self._lock:
            futures = list(self._runs.values())
        _, not_done = wait(futures, timeout=timeout)
        return not not_done

    def shutdown(self, wait: bool = True) -> None:
        """Stop accepting runs. With wait=True, in-flight runs drain first."""
        self._executor.shutdown(wait=wait)

    # -------------------------------------------------------------------------
    # The send loop
    # -------------------------------------------------------------------------

    def run(self, campaign_id: int) -> DispatchResult:
        """Drain one campaign synchronously. launch() runs this on a worker thread."""
        deliveries: List[PendingDelivery] = crm.get_pending_deliveries(campaign_id)
        result = DispatchResult(campaign_id=campaign_id)

        logger.info(f"Delivering campaign {campaign_id} to {len(deliveries)} customers")
        bus.emit(EVENT_DISPATCH_STARTED, {'campaign_id': campaign_id, 'batch_size': len(deliveries)})

        unrecorded = []
        for delivery in deliveries:
            result.attempted += 1
            try:
                self.vendor.send(
                    message_id=delivery.log_id,
                    recipient_address=delivery.customer_email,
                    recipient_name=delivery.customer_name,
                    message=delivery.message,
                    timeout=self.accept_timeout,
                )
                result.accepted += 1
                bus.emit(EVENT_MESSAGE_ACCEPTED, {'campaign_id': campaign_id, 'message_id': delivery.log_id})
            except VendorAcceptFailure as e:
                result.failed += 1
                if not self._mark_failed(delivery, e):
                    unrecorded.append((delivery, e))

            time.sleep(self.delay_seconds)

        for delivery, error in unrecorded:
            if not self._mark_failed(delivery, error):
                logger.error(f"Message {delivery.log_id} left PENDING: its accept failure could not be stored")

        # Catches up any stats recomputation that failed during the run
        reconciler.refresh_campaign(campaign_id)

        logger.info(
            f"Dispatch run for campaign {campaign_id} drained: "
            f"{result.attempted} attempted, {result.accepted} accepted, {result.failed} failed"
        )
        bus.emit(EVENT_DISPATCH_DRAINED, {
            'campaign_id': campaign_id,
            'attempted': result.attempted,
            'accepted': result.accepted,
            'failed': result.failed,
        })
        return result

    def _mark_failed(self, delivery: PendingDelivery, error: VendorAcceptFailure) -> bool:
        """
        Accept call failed: terminal FAILED now, no receipt will follow.
        Returns False only when the database write itself failed.
        """
        try:
            campaign_id = crm.transition_log(delivery.log_id, LOG_FAILED, None, {'error': error.reason})
        except psycopg2.Error as e:
            logger.error(f"Could not mark message {delivery.log_id} FAILED: {type(e).__name__}: {e}")
            return False

        if campaign_id is None:
            logger.info(f"Message {delivery.log_id} already terminal; accept failure not recorded")
            return True

        logger.warning(f"Message {delivery.log_id} FAILED at accept: {error.reason}")
        bus.emit(EVENT_MESSAGE_FAILED, {
            'campaign_id': delivery.campaign_id,
            'message_id': delivery.log_id,
            'error': error.reason,
        })
        reconciler.refresh_campaign(campaign_id)
        return True
