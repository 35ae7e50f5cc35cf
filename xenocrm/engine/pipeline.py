"""
Pipeline - Process-wide wiring of the delivery components.
Built once at startup and passed to whoever needs it.
"""

import logging
from dataclasses import dataclass
from typing import Any, Optional

from xenocrm.config import config
from xenocrm.engine import reconciler
from xenocrm.engine.ai_client import AIClient
from xenocrm.engine.dispatcher import Dispatcher
from xenocrm.engine.vendor import VendorClient, VendorSimulator

logger = logging.getLogger(__name__)

VENDOR_MODES = ['simulator', 'http']


@dataclass
class Pipeline:
    ai: AIClient
    vendor: Any
    dispatcher: Dispatcher

    def settle(self, campaign_id: int, timeout: Optional[float] = None) -> bool:
        """
        Wait for the campaign's dispatch run to drain and, with the simulator,
        for every scheduled receipt to be reconciled.
        Returns False if the timeout ran out first.
        """
        future = self.dispatcher.run_for(campaign_id)
        if future is not None:
            future.result(timeout=timeout)
        if isinstance(self.vendor, VendorSimulator):
            return self.vendor.wait_idle(timeout=timeout)
        return True

    def close(self) -> None:
        """Drain dispatch runs, then cancel any receipt timers still pending."""
        self.dispatcher.shutdown(wait=True)
        if isinstance(self.vendor, VendorSimulator):
            self.vendor.close()


def build_pipeline(vendor_mode: Optional[str] = None, ai_model: Optional[str] = None) -> Pipeline:
    """
    Construct AI client, vendor and dispatcher from config.
    In simulator mode, receipts are fed straight into the reconciler.
    """
    mode = vendor_mode or config.VENDOR_MODE
    if mode == 'simulator':
        vendor = VendorSimulator.from_config(on_receipt=reconciler.apply)
    elif mode == 'http':
        vendor = VendorClient.from_config()
    else:
        raise ValueError(f"Unknown vendor mode '{mode}'. Choose from: {', '.join(VENDOR_MODES)}")

    logger.info(f"Pipeline built with {mode} vendor")
    return Pipeline(
        ai=AIClient.from_config(config, model=ai_model),
        vendor=vendor,
        dispatcher=Dispatcher(vendor),
    )
