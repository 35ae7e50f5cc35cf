"""
Vendor Clients - Outbound message delivery.

VendorClient talks to a real delivery vendor over HTTP. VendorSimulator is
an in-process stand-in that behaves like an unreliable vendor: it accepts
every message after a short delay and later reports SENT or FAILED on an
independent timer.

Both expose the same accept call:
    send(message_id, recipient_address, recipient_name, message, timeout=None) -> dict
which either returns the vendor's ACCEPTED body or raises VendorAcceptFailure.
"""

import logging
import random
import threading
import time
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional, Tuple

import requests

from xenocrm.config import config
from xenocrm.errors import VendorAcceptFailure
from xenocrm.models import DeliveryReceipt, LOG_FAILED, LOG_SENT, LOG_TERMINAL_STATUSES

logger = logging.getLogger(__name__)

ACCEPTED = 'ACCEPTED'


# =============================================================================
# HTTP VENDOR
# =============================================================================

class VendorClient:
    """HTTP client for the vendor's accept-for-delivery endpoint."""

    def __init__(self, base_url: str, timeout: float = 5.0):
        self.base_url = base_url.rstrip('/')
        self.timeout = timeout

    @classmethod
    def from_config(cls) -> 'VendorClient':
        return cls(config.VENDOR_BASE_URL, timeout=config.VENDOR_ACCEPT_TIMEOUT_SECONDS)

    def send(
        self,
        message_id: int,
        recipient_address: str,
        recipient_name: str,
        message: str,
        timeout: Optional[float] = None,
    ) -> Dict[str, Any]:
        """
        POST the message to the vendor. Returns the ACCEPTED response body.
        Raises VendorAcceptFailure on timeout, network error, non-2xx, or any
        reply that isn't an acceptance.
        """
        url = f"{self.base_url}/send-message"
        payload = {
            'message_id': message_id,
            'recipient_address': recipient_address,
            'recipient_name': recipient_name,
            'message': message,
        }

        try:
            logger.debug(f"Vendor accept call for message {message_id} -> {url}")
            response = requests.post(url, json=payload, timeout=timeout or self.timeout)
            response.raise_for_status()
            body = response.json()
        except requests.exceptions.RequestException as e:
            logger.warning(f"Vendor accept failed for message {message_id}: {e}")
            raise VendorAcceptFailure(message_id, str(e)) from e
        except ValueError as e:
            raise VendorAcceptFailure(message_id, f"unreadable vendor response: {e}") from e

        if not isinstance(body, dict) or body.get('status') != ACCEPTED:
            status = body.get('status') if isinstance(body, dict) else body
            raise VendorAcceptFailure(message_id, f"vendor did not accept (status={status!r})")

        return body


# =============================================================================
# SIMULATED VENDOR
# =============================================================================

class VendorSimulator:
    """
    Unreliable vendor stand-in.

    send() blocks for a random accept delay, then answers ACCEPTED and
    schedules exactly one receipt on a threading.Timer after a second,
    independent random delay. The receipt goes to on_receipt(DeliveryReceipt).
    close() cancels every timer that hasn't fired.
    """

    def __init__(
        self,
        on_receipt: Callable[[DeliveryReceipt], Any],
        success_rate: float = 0.9,
        accept_delay: Tuple[float, float] = (0.5, 1.5),
        receipt_delay: Tuple[float, float] = (1.0, 3.0),
        rng: Optional[random.Random] = None,
    ):
        if not 0.0 <= success_rate <= 1.0:
            raise ValueError(f"success_rate must be between 0 and 1, got {success_rate}")
        self.on_receipt = on_receipt
        self.success_rate = success_rate
        self.accept_delay = accept_delay
        self.receipt_delay = receipt_delay
        self._rng = rng or random.Random()
        self._lock = threading.Lock()
        self._settled = threading.Condition(self._lock)
        self._closed = threading.Event()
        self._timers: Dict[Any, threading.Timer] = {}
        self._outstanding = 0  # accepted messages whose receipt callback hasn't finished

    @classmethod
    def from_config(cls, on_receipt: Callable[[DeliveryReceipt], Any]) -> 'VendorSimulator':
        return cls(
            on_receipt,
            success_rate=config.VENDOR_SUCCESS_RATE,
            accept_delay=(config.VENDOR_ACCEPT_DELAY_MIN, config.VENDOR_ACCEPT_DELAY_MAX),
            receipt_delay=(config.VENDOR_RECEIPT_DELAY_MIN, config.VENDOR_RECEIPT_DELAY_MAX),
        )

    @property
    def pending_receipts(self) -> int:
        with self._lock:
            return self._outstanding

    def send(
        self,
        message_id: int,
        recipient_address: str,
        recipient_name: str,
        message: str,
        timeout: Optional[float] = None,
    ) -> Dict[str, Any]:
        """Accept a message for delivery. Outcome is decided now, reported later."""
        if self._closed.is_set():
            raise VendorAcceptFailure(message_id, "vendor simulator is closed")

        with self._lock:
            accept_delay = self._rng.uniform(*self.accept_delay)
            receipt_delay = self._rng.uniform(*self.receipt_delay)
            delivered = self._rng.random() < self.success_rate

        if timeout is not None and accept_delay > timeout:
            self._closed.wait(timeout)
            raise VendorAcceptFailure(message_id, f"accept timed out after {timeout}s")

        # Event.wait doubles as an interruptible sleep: close() cuts it short
        if self._closed.wait(accept_delay):
            raise VendorAcceptFailure(message_id, "vendor simulator is closed")

        with self._lock:
            # close() may have run since the wait; a timer made now would never be cancelled
            if self._closed.is_set():
                raise VendorAcceptFailure(message_id, "vendor simulator is closed")
            # One receipt per message: a repeat send while one is scheduled is acknowledged only
            if message_id not in self._timers:
                timer = threading.Timer(receipt_delay, self._emit_receipt, args=(message_id, delivered))
                timer.daemon = True
                self._timers[message_id] = timer
                self._outstanding += 1
                timer.start()

        logger.info(f"Vendor: accepted message {message_id} for {recipient_name} ({recipient_address})")
        return {
            'message_id': message_id,
            'status': ACCEPTED,
            'estimated_delivery': f"{self.receipt_delay[0]:g}-{self.receipt_delay[1]:g} seconds",
        }

    def _emit_receipt(self, message_id: int, delivered: bool) -> None:
        with self._lock:
            if self._timers.pop(message_id, None) is None:
                return  # cancelled by close()

        if delivered:
            vendor_response = {'delivery_id': f"del_{int(time.time() * 1000)}", 'provider': 'MockVendor'}
        else:
            vendor_response = {'error': 'Network timeout', 'error_code': 'TIMEOUT'}

        receipt = DeliveryReceipt(
            message_id=message_id,
            status=LOG_SENT if delivered else LOG_FAILED,
            timestamp=datetime.now(timezone.utc),
            vendor_response=vendor_response,
        )
        logger.info(f"Vendor: delivery receipt {message_id} -> {receipt.status}")

        try:
            self.on_receipt(receipt)
        except Exception as e:
            logger.error(f"Vendor: receipt callback failed for message {message_id}: {e}")
        finally:
            with self._lock:
                self._outstanding -= 1
                self._settled.notify_all()

    def wait_idle(self, timeout: Optional[float] = None) -> bool:
        """Block until every scheduled receipt has been delivered. False on timeout."""
        with self._settled:
            return self._settled.wait_for(lambda: self._outstanding == 0, timeout=timeout)

    def close(self) -> int:
        """Stop accepting, cancel unfired receipt timers. Returns how many were cancelled."""
        self._closed.set()
        with self._lock:
            timers = list(self._timers.values())
            self._timers.clear()
            for timer in timers:
                timer.cancel()
            self._outstanding -= len(timers)
            self._settled.notify_all()

        if timers:
            logger.info(f"Vendor: cancelled {len(timers)} pending receipts on close")
        return len(timers)


# =============================================================================
# RECEIPT CALLBACK WIRE FORMAT
# =============================================================================

def parse_receipt(payload: Dict[str, Any]) -> DeliveryReceipt:
    """
    Validate an inbound receipt callback body:
        {message_id, status: SENT|FAILED, timestamp, vendor_response}
    Raises ValueError on a malformed payload.
    """
    if not isinstance(payload, dict):
        raise ValueError("Receipt payload must be a JSON object")

    try:
        message_id = int(payload['message_id'])
    except (KeyError, TypeError, ValueError):
        raise ValueError(f"Receipt has no valid message_id: {payload.get('message_id')!r}")

    status = str(payload.get('status', '')).upper()
    if status not in LOG_TERMINAL_STATUSES:
        raise ValueError(f"Receipt status must be SENT or FAILED, got {payload.get('status')!r}")

    timestamp = payload.get('timestamp')
    if isinstance(timestamp, str):
        try:
            timestamp = datetime.fromisoformat(timestamp.replace('Z', '+00:00'))
        except ValueError:
            raise ValueError(f"Receipt timestamp is not ISO 8601: {timestamp!r}")
    elif timestamp is not None and not isinstance(timestamp, datetime):
        raise ValueError(f"Receipt timestamp is not ISO 8601: {timestamp!r}")

    vendor_response = payload.get('vendor_response')
    if vendor_response is not None and not isinstance(vendor_response, dict):
        vendor_response = {'raw': vendor_response}

    return DeliveryReceipt(
        message_id=message_id,
        status=status,
        timestamp=timestamp,
        vendor_response=vendor_response,
    )
