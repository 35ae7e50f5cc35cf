"""
Data Models
Dataclasses for all entities. These are pure Python objects, no database logic.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional, Tuple

# MessageLog.status
LOG_PENDING = 'PENDING'
LOG_SENT = 'SENT'
LOG_FAILED = 'FAILED'
LOG_STATUSES = (LOG_PENDING, LOG_SENT, LOG_FAILED)
LOG_TERMINAL_STATUSES = (LOG_SENT, LOG_FAILED)

# Campaign.status
CAMPAIGN_ACTIVE = 'active'
CAMPAIGN_COMPLETED = 'completed'
CAMPAIGN_FAILED = 'failed'

# Order.status
ORDER_STATUSES = ('pending', 'completed', 'cancelled')


@dataclass
class Customer:
    """Customer record. Spend/visit figures are aggregated from orders."""
    id: Optional[int] = None
    name: str = ''
    email: str = ''
    phone: Optional[str] = None
    total_spend: float = 0
    visit_count: int = 0
    last_visit: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


@dataclass
class Order:
    id: Optional[int] = None
    customer_id: int = 0
    amount: float = 0
    order_date: Optional[datetime] = None
    status: str = 'completed'
    created_at: Optional[datetime] = None


@dataclass(frozen=True)
class Clause:
    """One comparison: field <operator> value."""
    field: str
    operator: str
    value: Any


@dataclass(frozen=True)
class Predicate:
    """Conjunction of clauses. No clauses matches every customer."""
    clauses: Tuple[Clause, ...] = ()

    def __bool__(self):
        return bool(self.clauses)


@dataclass
class CampaignStats:
    total: int = 0
    sent: int = 0
    failed: int = 0
    pending: int = 0

    def as_dict(self) -> Dict[str, int]:
        return {'total': self.total, 'sent': self.sent, 'failed': self.failed, 'pending': self.pending}


@dataclass
class Campaign:
    """Campaign entity. `rules` is the segmentation rule set exactly as submitted."""
    id: Optional[int] = None
    name: str = ''
    rules: Dict[str, Any] = field(default_factory=dict)
    message: str = ''
    created_by: str = 'system'
    audience_size: int = 0
    status: str = CAMPAIGN_ACTIVE
    stats: CampaignStats = field(default_factory=CampaignStats)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


@dataclass
class MessageLog:
    """Per-recipient delivery record"""
    id: Optional[int] = None
    campaign_id: int = 0
    customer_id: int = 0
    message: str = ''
    status: str = LOG_PENDING
    sent_at: Optional[datetime] = None
    delivery_receipt: Optional[Dict[str, Any]] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


@dataclass
class PendingDelivery:
    """A PENDING message log joined with its recipient's contact fields."""
    log_id: int
    campaign_id: int
    customer_name: str
    customer_email: str
    message: str


@dataclass
class DeliveryReceipt:
    """Vendor's asynchronous report of a message's final outcome."""
    message_id: int
    status: str
    timestamp: Optional[datetime] = None
    vendor_response: Optional[Dict[str, Any]] = None
